"""Records and collaborator protocols for saving and resuming transactions."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

# Request statuses reported by the resume source
PENDING = "PENDING"
VERIFIED = "VERIFIED"
REJECTED = "REJECTED"
IN_PROGRESS = "IN_PROGRESS"
COMPLETED = "COMPLETED"

REQUEST_STATUSES = (PENDING, VERIFIED, REJECTED, IN_PROGRESS, COMPLETED)

_STATUS_TITLES = {
    PENDING: "Request under review",
    REJECTED: "Request rejected",
    IN_PROGRESS: "Request in progress",
    COMPLETED: "Request already completed",
}


@dataclass
class ResumeRecord:
    transaction_type: str
    form_data: dict[str, str] = field(default_factory=dict)
    last_completed_step: int = -1


@dataclass
class RequestStatusRecord:
    id: str
    status: str
    transaction_type: str
    form_data: dict[str, str] = field(default_factory=dict)
    last_completed_step: int = -1
    rejection_reason: str | None = None

    @property
    def is_resumable(self) -> bool:
        return self.status == VERIFIED

    def to_resume_record(self) -> ResumeRecord:
        return ResumeRecord(self.transaction_type, dict(self.form_data), self.last_completed_step)

    def interrupt_title(self) -> str:
        return _STATUS_TITLES.get(self.status, f"Request {self.status.lower()}")


@dataclass
class DraftRecord:
    user_id: str
    transaction_type: str
    entity: dict[str, Any] | None
    form_data: dict[str, str]
    last_completed_step: int
    status: str = PENDING


class ResumeSource(Protocol):
    """Looks up a saved request. Implementations may be sync or async."""

    def get_request_status(self, request_id: str) -> Any: ...


class ProgressSink(Protocol):
    """Persists a draft and returns an opaque request id. Sync or async."""

    def save_draft(self, draft: DraftRecord) -> Any: ...
