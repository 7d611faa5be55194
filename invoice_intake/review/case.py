"""Review case model and lifecycle.

States::

    PENDING -> IN_REVIEW -> APPROVED | REJECTED -> ARCHIVED
    REJECTED -> IN_REVIEW, APPROVED -> IN_REVIEW   (reopen)

ARCHIVED is terminal. Every transition and manual edit is appended to the
case's audit log.
"""

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from invoice_intake.resolution.resolver import ResolvedRecord
from invoice_intake.store.artifacts import ArtifactRef
from invoice_intake.validation.rules_engine import ValidationResult


class ReviewState(StrEnum):
    PENDING = "pending"
    IN_REVIEW = "in_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    ARCHIVED = "archived"


TRANSITIONS: dict[ReviewState, set[ReviewState]] = {
    ReviewState.PENDING: {ReviewState.IN_REVIEW},
    ReviewState.IN_REVIEW: {ReviewState.APPROVED, ReviewState.REJECTED},
    ReviewState.APPROVED: {ReviewState.IN_REVIEW, ReviewState.ARCHIVED},
    ReviewState.REJECTED: {ReviewState.IN_REVIEW, ReviewState.ARCHIVED},
    ReviewState.ARCHIVED: set(),
}


def can_transition(current: ReviewState, target: ReviewState) -> bool:
    return target in TRANSITIONS[current]


@dataclass(frozen=True)
class AuditEntry:
    """One immutable line of a case's history."""

    timestamp: float
    actor: str
    action: str
    before: Any = None
    after: Any = None
    detail: dict[str, Any] = field(default_factory=dict)
    session_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "actor": self.actor,
            "action": self.action,
            "before": self.before,
            "after": self.after,
            "detail": self.detail,
            "session_id": self.session_id,
        }


@dataclass
class ReviewCase:
    """A document's resolved record awaiting a reviewer's decision."""

    case_id: str
    document_id: str
    record: ResolvedRecord
    validation: ValidationResult
    created_at: float
    critical_fields: tuple[str, ...] = ()
    vendor_id: str | None = None
    state: ReviewState = ReviewState.PENDING
    version: int = 0
    updated_at: float = 0.0
    assignee: str | None = None
    audit: list[AuditEntry] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    orchestration: dict[str, Any] = field(default_factory=dict)
    record_history: list[ArtifactRef] = field(default_factory=list)

    @property
    def confidence(self) -> float:
        """Lowest confidence among the critical fields (all fields if none)."""
        names = self.critical_fields or tuple(self.record.fields)
        if not names:
            return 0.0
        return min(
            self.record.fields[name].confidence if name in self.record.fields else 0.0
            for name in names
        )

    @property
    def flags(self) -> dict[str, tuple[str, ...]]:
        """Flags raised on the record, by field name."""
        return {name: f.flags for name, f in self.record.fields.items() if f.flags}

    @property
    def warning_count(self) -> int:
        return self.validation.warning_count

    @property
    def hard_failure_ids(self) -> list[str]:
        return self.validation.failed_rule_ids

    def last_transition(self) -> AuditEntry | None:
        for entry in reversed(self.audit):
            if entry.action in ("transition", "undo"):
                return entry
        return None

    def summary(self) -> dict[str, Any]:
        return {
            "case_id": self.case_id,
            "document_id": self.document_id,
            "vendor_id": self.vendor_id,
            "state": str(self.state),
            "version": self.version,
            "confidence": round(self.confidence, 4),
            "warnings": self.warning_count,
            "hard_failures": ",".join(self.hard_failure_ids),
            "assignee": self.assignee or "",
            "ocr_state": self.orchestration.get("state", ""),
        }
