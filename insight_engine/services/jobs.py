r"""
Job entity and its lifecycle state machine.

    pending -> parsing -> prompting -> researching -> synthesizing -> complete
                  \___________\_____________\______________\______-> error

Statuses only move forward. ``error`` is reachable from every non-terminal
status, and both ``complete`` and ``error`` are absorbing.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional


class JobStatus(str, Enum):
    PENDING = "pending"
    PARSING = "parsing"
    PROMPTING = "prompting"
    RESEARCHING = "researching"
    SYNTHESIZING = "synthesizing"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


PIPELINE_ORDER = (
    JobStatus.PENDING,
    JobStatus.PARSING,
    JobStatus.PROMPTING,
    JobStatus.RESEARCHING,
    JobStatus.SYNTHESIZING,
    JobStatus.COMPLETE,
)
TERMINAL_STATUSES: FrozenSet[JobStatus] = frozenset({JobStatus.COMPLETE, JobStatus.ERROR})


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    """True if a job sitting in ``current`` may be moved to ``target``."""
    current, target = JobStatus(current), JobStatus(target)
    if current.is_terminal:
        return False
    if target == JobStatus.ERROR:
        return True
    return PIPELINE_ORDER.index(target) > PIPELINE_ORDER.index(current)


def allowed_sources(target: JobStatus) -> FrozenSet[JobStatus]:
    """All statuses from which ``target`` is a legal next status."""
    return frozenset(s for s in JobStatus if can_transition(s, target))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_job_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Job:
    id: str
    email: str
    status: JobStatus = JobStatus.PENDING
    file_path: str = ""
    mime_type: str = "text/plain"
    marketing_opt_in: bool = False
    text_content: Optional[str] = None
    deep_research_prompt: Optional[str] = None
    final_report: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def for_text(cls, email: str, text: str, marketing_opt_in: bool = False) -> "Job":
        """A job whose input is already-extracted text (client-side OCR)."""
        job_id = new_job_id()
        return cls(
            id=job_id,
            email=email,
            file_path=f"text-{job_id}",  # virtual path, nothing on disk
            mime_type="text/plain",
            marketing_opt_in=marketing_opt_in,
            text_content=text,
        )

    @classmethod
    def for_file(cls, email: str, file_path: str, mime_type: str, marketing_opt_in: bool = False) -> "Job":
        return cls(
            id=new_job_id(),
            email=email,
            file_path=file_path,
            mime_type=mime_type,
            marketing_opt_in=marketing_opt_in,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def public_view(self) -> Dict[str, Any]:
        """Narrowed projection served to polling clients."""
        return {
            "status": self.status.value,
            "error": self.error,
            "finalReport": self.final_report,
        }


JOB_FIELDS = frozenset(f.name for f in fields(Job))
