from __future__ import annotations
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

class JobStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.ERROR)


class WaveStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    # Reserved. A wave with failed members still ends as completed; failures only show in the counters.
    ERROR = "error"


STATUS_SYNONYMS = {
    "success": JobStatus.COMPLETED,
    "completed": JobStatus.COMPLETED,
    "failed": JobStatus.ERROR,
    "error": JobStatus.ERROR,
    "in_progress": JobStatus.IN_PROGRESS,
    "running": JobStatus.IN_PROGRESS,
    "pending": JobStatus.PENDING,
}

WAVE_ID_PATTERN = re.compile(r"^\d+_\d+$")


def normalize_status(value: str | JobStatus) -> JobStatus:
    if isinstance(value, JobStatus):
        return value
    try:
        return STATUS_SYNONYMS[str(value).strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown migration status: {value!r}") from None


def is_wave_id(token: Any) -> bool:
    return isinstance(token, str) and bool(WAVE_ID_PATTERN.match(token))


@dataclass(frozen=True)
class JobKey:
    """Natural key of a migration job: (source project id, target project id)."""
    source_id: str
    target_id: int

    def __str__(self) -> str:
        return f"{self.source_id}:{self.target_id}"

    @property
    def lock_name(self) -> str:
        return f"{self.source_id}-{self.target_id}.lock"


@dataclass(frozen=True)
class DispatchRequest:
    """Everything needed to hand one job to the migration server."""
    key: JobKey
    site_id: int
    secret: str
    workspace_id: Optional[int] = None
    page_slug: Optional[str] = None
    manual: bool = False
    quality_analysis: Optional[bool] = None
    wave_id: Optional[str] = None

    def stored_params(self) -> dict:
        """Parameters persisted for later restarts; the secret is never stored."""
        return {
            "site_id": self.site_id,
            "workspace_id": self.workspace_id,
            "page_slug": self.page_slug,
            "manual": self.manual,
            "quality_analysis": self.quality_analysis,
        }


@dataclass
class StepResult:
    step: str
    ok: bool
    message: str
    details: dict = field(default_factory=dict)
