"""Exception hierarchy for the invoice intake pipeline.

Ingest errors are not retryable without new input, pass-level engine errors
are retried once by the orchestrator, and case-level errors surface to the
reviewer through the review case audit log.
"""

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from invoice_intake.ingest.ingestor import IngestResult


class InvoiceIntakeError(Exception):
    """Base exception for all pipeline errors."""


class ConfigurationError(InvoiceIntakeError):
    """Raised when a configuration file is malformed or inconsistent."""


class UnsupportedFormat(InvoiceIntakeError):
    """Raised when the declared MIME type cannot be ingested."""

    def __init__(self, mime_type: str) -> None:
        super().__init__(f"Unsupported document format: {mime_type}")
        self.mime_type = mime_type


class CorruptDocument(InvoiceIntakeError):
    """Raised when rasterization fails part-way through a document.

    Args:
        message: Description of the failure.
        partial: Ingest result holding the pages produced before the failure.
    """

    def __init__(self, message: str, partial: "IngestResult | None" = None) -> None:
        super().__init__(message)
        self.partial = partial


class EngineError(InvoiceIntakeError):
    """Raised by an OCR engine when a recognition pass fails."""


class EngineTimeout(EngineError):
    """Raised when an OCR engine call exceeds its per-call timeout."""


class ArtifactNotFound(InvoiceIntakeError):
    """Raised when an artifact reference is not present in the store."""

    def __init__(self, ref: Any) -> None:
        super().__init__(f"Artifact not found: {ref}")
        self.ref = ref


class ArtifactPersistenceError(InvoiceIntakeError):
    """Raised when the persistence backend fails twice for the same write."""


class InvalidTransition(InvoiceIntakeError):
    """Raised when a state machine is asked for a move it does not allow."""

    def __init__(self, current: Any, target: Any) -> None:
        super().__init__(f"Invalid transition: {current} -> {target}")
        self.current = current
        self.target = target


class ConcurrentModification(InvoiceIntakeError):
    """Raised when a review case changed since the caller last read it.

    The caller must re-fetch the case and retry against its current version.
    """

    def __init__(self, case_id: str, expected: int | None, actual: int) -> None:
        super().__init__(
            f"Case {case_id} was modified concurrently "
            f"(expected version {expected}, found {actual})"
        )
        self.case_id = case_id
        self.expected = expected
        self.actual = actual


class CaseNotFound(InvoiceIntakeError):
    """Raised when a review case id is unknown to the queue."""


class HardValidationFailure(InvoiceIntakeError):
    """Raised when approval is refused because hard rules fail.

    Args:
        case_id: Case that could not be approved.
        rule_ids: Identifiers of the failing hard rules.
    """

    def __init__(self, case_id: str, rule_ids: list[str]) -> None:
        super().__init__(
            f"Case {case_id} has failing hard rules: {', '.join(rule_ids)}"
        )
        self.case_id = case_id
        self.rule_ids = rule_ids


class HandoffFailed(InvoiceIntakeError):
    """Raised when the downstream approval handoff rejects or errors."""
