"""
Final report schema produced by the structuring step.

The models are deliberately lenient: every field has a default, unknown keys
are kept, unparseable numbers become null and bare strings are accepted where
a SWOT point object is expected. Only a payload that is not a JSON object is
rejected outright.
"""
from typing import Annotated, Any, Dict, List, Optional, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, model_validator


def _to_number(value: Any) -> Any:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    try:
        text = str(value).replace(",", "").replace("$", "").strip()
        number = float(text)
    except ValueError:
        return None
    return int(number) if number.is_integer() else number


def _to_ids(value: Any) -> List[int]:
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        value = [value]
    ids = []
    for item in value:
        number = _to_number(item)
        if number is not None:
            ids.append(int(number))
    return ids


def _to_list(value: Any) -> Any:
    return [] if value is None else value


LooseNumber = Annotated[Optional[Union[int, float]], BeforeValidator(_to_number)]
SourceIds = Annotated[List[int], BeforeValidator(_to_ids)]


class _Lenient(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class InsightScore(_Lenient):
    score: LooseNumber = None
    rationale: Optional[str] = ""


class Valuation(_Lenient):
    low: LooseNumber = None
    high: LooseNumber = None
    currency: Optional[str] = "USD"
    narrative: Optional[str] = ""


class SwotPoint(_Lenient):
    point: str = ""
    source_ids: SourceIds = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _accept_plain_text(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"point": data}
        return data


SwotPoints = Annotated[List[SwotPoint], BeforeValidator(_to_list)]


class SwotAnalysis(_Lenient):
    strengths: SwotPoints = Field(default_factory=list)
    weaknesses: SwotPoints = Field(default_factory=list)
    opportunities: SwotPoints = Field(default_factory=list)
    threats: SwotPoints = Field(default_factory=list)


class MarketMetric(_Lenient):
    metric: str = ""
    value: LooseNumber = None
    year: LooseNumber = None
    source_ids: SourceIds = Field(default_factory=list)


class MarketAnalysis(_Lenient):
    narrative: Optional[str] = ""
    market_size: Annotated[List[MarketMetric], BeforeValidator(_to_list)] = Field(
        default_factory=list, alias="marketSize"
    )


class Competitor(_Lenient):
    competitor_name: str = Field(default="", alias="competitorName")
    funding: Optional[str] = None
    key_differentiator: Optional[str] = Field(default="", alias="keyDifferentiator")
    source_ids: SourceIds = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _stringify_funding(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("funding"), (int, float)):
            data = {**data, "funding": str(data["funding"])}
        return data


class ReportSource(_Lenient):
    id: int
    title: str
    url: str


_OBJECT_SECTIONS = ("insightScore", "valuation", "swotAnalysis", "marketAnalysis")


class FinalReport(_Lenient):
    company_name: Optional[str] = Field(default="", alias="companyName")
    summary: Optional[str] = ""
    insight_score: InsightScore = Field(default_factory=InsightScore, alias="insightScore")
    valuation: Valuation = Field(default_factory=Valuation)
    swot_analysis: SwotAnalysis = Field(default_factory=SwotAnalysis, alias="swotAnalysis")
    market_analysis: MarketAnalysis = Field(default_factory=MarketAnalysis, alias="marketAnalysis")
    competitor_landscape: Annotated[List[Competitor], BeforeValidator(_to_list)] = Field(
        default_factory=list, alias="competitorLandscape"
    )
    team_analysis: Union[str, Dict[str, Any], None] = Field(default="", alias="teamAnalysis")
    sources: List[ReportSource] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _drop_null_sections(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = {k: v for k, v in data.items() if not (v is None and k in _OBJECT_SECTIONS)}
        score = data.get("insightScore")
        if score is not None and not isinstance(score, dict):
            data["insightScore"] = {"score": score}
        return data

    def to_payload(self) -> Dict[str, Any]:
        """JSON-ready dict with the camelCase keys clients expect."""
        return self.model_dump(by_alias=True, mode="json")
