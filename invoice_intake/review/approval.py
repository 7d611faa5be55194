"""Approval gate: the only path from IN_REVIEW to APPROVED.

Under the case lock the gate re-validates the current record, refuses on
any failing hard rule, hands the record and its evidence chain to the
downstream boundary, and marks the case APPROVED only after the boundary
acknowledged it. A rejected or failed handoff leaves the case IN_REVIEW and
is recorded in the audit log.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass

from invoice_intake.errors import HandoffFailed, HardValidationFailure, InvalidTransition
from invoice_intake.resolution.resolver import ResolvedRecord
from invoice_intake.store.artifacts import ArtifactRecord, ArtifactStore
from invoice_intake.utils.logger import get_logger

from .case import ReviewCase, ReviewState
from .queue import ReviewQueue

logger = get_logger(__name__)


@dataclass(frozen=True)
class Ack:
    """Downstream accepted the record."""

    reference: str = ""


@dataclass(frozen=True)
class HandoffRejected:
    """Downstream refused the record."""

    reason: str


class ApprovalHandoff(ABC):
    """Boundary receiving approved records."""

    @abstractmethod
    def submit(
        self, record: ResolvedRecord, evidence_chain: list[ArtifactRecord]
    ) -> Ack | HandoffRejected:
        """Deliver an approved record with the lineage of its evidence."""


class ApprovalGate:
    """Approves review cases.

    Args:
        queue: Review queue; the gate takes its approval capability.
        store: Artifact store, for building the evidence chain.
        handoff: Downstream boundary.
    """

    def __init__(self, queue: ReviewQueue, store: ArtifactStore, handoff: ApprovalHandoff) -> None:
        self.queue = queue
        self.store = store
        self.handoff = handoff
        self._key = queue.bind_approval_gate()

    def evidence_chain(self, case: ReviewCase) -> list[ArtifactRecord]:
        """Every stored artifact the record depends on, record first."""
        if case.record.ref is None:
            return []
        return [
            self.store.record(ref)
            for ref in self.store.lineage([case.record.ref])
            if ref in self.store
        ]

    def approve(
        self,
        case_id: str,
        reviewer: str,
        expected_version: int | None = None,
        session_id: str | None = None,
    ) -> ReviewCase:
        """Approve a case that is IN_REVIEW.

        Raises:
            ConcurrentModification: If ``expected_version`` is stale.
            InvalidTransition: If the case is not IN_REVIEW.
            HardValidationFailure: If a hard rule fails on re-validation.
            HandoffFailed: If the downstream boundary rejects or errors.
        """
        log = get_logger(__name__, case_id=case_id)
        with self.queue.case_lock(case_id):
            case = self.queue.get(case_id)
            self.queue.check_version(case, expected_version)
            if case.state != ReviewState.IN_REVIEW:
                raise InvalidTransition(case.state, ReviewState.APPROVED)

            validation = self.queue.revalidate(case_id)
            if not validation.passed:
                rule_ids = validation.failed_rule_ids
                self.queue.record_event(
                    case_id, reviewer, "approval_refused", {"rule_ids": rule_ids}
                )
                log.warning("Approval refused by hard rules: %s", rule_ids)
                raise HardValidationFailure(case_id, rule_ids)

            chain = self.evidence_chain(case)
            try:
                response = self.handoff.submit(case.record, chain)
            except Exception as exc:
                self.queue.record_event(
                    case_id,
                    reviewer,
                    "handoff_failed",
                    {"error": f"{type(exc).__name__}: {exc}"},
                )
                log.error("Handoff raised: %s", exc)
                raise HandoffFailed(f"Handoff for case {case_id} failed: {exc}") from exc

            if isinstance(response, HandoffRejected):
                self.queue.record_event(
                    case_id, reviewer, "handoff_rejected", {"reason": response.reason}
                )
                log.warning("Handoff rejected: %s", response.reason)
                raise HandoffFailed(f"Handoff for case {case_id} rejected: {response.reason}")

            case = self.queue.transition(
                case_id,
                ReviewState.APPROVED,
                reviewer,
                session_id=session_id,
                detail={"handoff_reference": response.reference, "evidence": len(chain)},
                approval_key=self._key,
            )
        log.info("Approved by %s (%d evidence artifacts)", reviewer, len(chain))
        return case
