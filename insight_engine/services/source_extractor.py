"""
Source Extractor: mines the trailing "Sources:" section of a research report.

The research model is asked to end its answer with numbered entries such as::

    Sources:
    1. [Descriptive Title] https://example.com/report

but in practice brackets go missing, numbering drifts and some entries carry
no URL at all. This is a best-effort routine: it never raises, and returns an
empty list when nothing usable is found.

Placeholder rules (deterministic):
    * no title but a URL      -> the URL's host name is used as title
    * a title but no URL      -> a search-engine URL is built from the title
    * neither title nor URL   -> the line is dropped
Ids are 1-based positions in the returned list so they line up with the
inline ``[^n^]`` markers in the report text.
"""
from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote_plus, urlparse

logger = logging.getLogger(__name__)

SEARCH_FALLBACK_URL = "https://www.google.com/search?q={query}"

HEADING_RE = re.compile(
    r"^[ \t>]*(?:#{1,6}[ \t]*)?[*_]{0,2}(?:sources|references|citations)[*_]{0,2}[ \t]*(?::[*_]{0,2}|$)",
    re.IGNORECASE | re.MULTILINE,
)
URL_RE = re.compile(r"https?://[^\s<>\"'\]]+", re.IGNORECASE)

NUMBERED_RE = re.compile(r"^\s*\[?\d+[.)\]]")
FOOTNOTE_RE = re.compile(r"\[\^?\d+\^?\]:")
BULLET_RE = re.compile(r"^\s*[-*•+]\s+")

# "- 1. ", "[^1^]: ", "1) ", "[3] ", "* "
PREFIX_RE = re.compile(r"^\s*(?:[-*•+]\s+)?(?:\[\^?\d+\^?\]:?\s*|\[?\d+[.)\]]\s*)?")
BRACKETED_RE = re.compile(r"\[(?P<title>[^\[\]]+)\]\s*[(<]?\s*(?P<url>https?://[^\s<>\"']+)", re.IGNORECASE)
LOOSE_RE = re.compile(r"^(?P<title>.*?)\s*(?P<url>https?://[^\s<>\"']+)", re.IGNORECASE)
INLINE_MARKER_RE = re.compile(r"\[\^?\d+\^?\]")

_TITLE_STRIP = " \t\"'`*_\u201c\u201d\u2018\u2019-\u2013\u2014:|,;([<"
_URL_TRAILING = ".,;:!?'\"]}>"


@dataclass
class Source:
    id: int
    title: str
    url: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ─── Helpers ─────────────────────────────────────────────────────────────────

def _clean_url(url: str) -> str:
    url = url.rstrip(_URL_TRAILING)
    # keep ")" only when it closes a "(" inside the URL (e.g. wiki links)
    while url.endswith(")") and url.count(")") > url.count("("):
        url = url[:-1].rstrip(_URL_TRAILING)
    return url


def _clean_title(title: str) -> str:
    title = INLINE_MARKER_RE.sub("", title)
    title = title.replace("**", "").replace("__", "")
    title = re.sub(r"\s+", " ", title)
    title = title.strip(_TITLE_STRIP)
    return title.rstrip(")]>").strip(_TITLE_STRIP)


def _host(url: str) -> str:
    try:
        return urlparse(url).hostname or ""
    except ValueError:
        return ""


def _is_candidate(line: str) -> bool:
    return bool(
        NUMBERED_RE.match(line)
        or FOOTNOTE_RE.search(line)
        or BULLET_RE.match(line)
        or URL_RE.search(line)
    )


def find_sources_section(text: str) -> Optional[str]:
    """Text after the last Sources/References/Citations heading, or None."""
    matches = list(HEADING_RE.finditer(text))
    if not matches:
        return None
    return text[matches[-1].end():]


def parse_source_line(line: str) -> Optional[Tuple[str, str]]:
    """Extract (title, url) from one candidate line, or None if it holds nothing."""
    body = PREFIX_RE.sub("", line, count=1).strip()
    if not body:
        return None

    title, url = "", ""
    bracketed = BRACKETED_RE.search(body)
    loose = LOOSE_RE.search(body)
    if bracketed:
        title, url = bracketed.group("title"), bracketed.group("url")
    elif loose and _clean_title(loose.group("title")):
        title, url = loose.group("title"), loose.group("url")
    else:
        found = URL_RE.search(body)
        url = found.group(0) if found else ""
        title = URL_RE.sub(" ", body)

    title = _clean_title(title)
    url = _clean_url(url) if url else ""

    if not title and not url:
        return None
    if not url:
        url = SEARCH_FALLBACK_URL.format(query=quote_plus(title))
    if not title:
        title = _host(url) or url
    return title, url


# ─── Public API ──────────────────────────────────────────────────────────────

def extract_sources(text: Any) -> List[Source]:
    """Parse the trailing sources section of ``text`` into numbered Source entries."""
    if not text or not isinstance(text, str):
        return []

    section = find_sources_section(text.replace("\r\n", "\n"))
    if section is None:
        return []

    sources: List[Source] = []
    for line in section.split("\n"):
        if not line.strip() or not _is_candidate(line):
            continue
        parsed = parse_source_line(line)
        if parsed is None:
            continue
        title, url = parsed
        sources.append(Source(id=len(sources) + 1, title=title, url=url))

    logger.debug(f"Extracted {len(sources)} sources")
    return sources
