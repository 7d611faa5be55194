"""Review queue: case storage, transitions, edits and reviewer sessions.

Concurrent operations on one case serialize on that case's lock. Callers
that read a case and then act on it pass the version they read; if the case
changed in between, :class:`~invoice_intake.errors.ConcurrentModification`
is raised and the caller must re-fetch.

Moving a case to APPROVED needs the approval capability, which the queue
hands out exactly once, to the approval gate.
"""

import itertools
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from invoice_intake.errors import (
    CaseNotFound,
    ConcurrentModification,
    ConfigurationError,
    InvalidTransition,
)
from invoice_intake.extraction.fields import FieldCatalog
from invoice_intake.layout.masks import UserMask
from invoice_intake.layout.zones import ZoneOverride
from invoice_intake.resolution.resolver import FieldResolver, ResolvedRecord
from invoice_intake.store.artifacts import ArtifactStore
from invoice_intake.utils.config import ReviewConfig
from invoice_intake.utils.logger import get_logger
from invoice_intake.validation.rules_engine import RulesEngine, ValidationResult
from invoice_intake.vendors import VendorStore

from .case import AuditEntry, ReviewCase, ReviewState, can_transition

logger = get_logger(__name__)

CONFIDENCE_BANDS = ("low", "medium", "high")


@dataclass
class ReviewSession:
    """A reviewer's batch of claimed cases."""

    session_id: str
    reviewer: str
    started_at: float
    case_ids: list[str] = field(default_factory=list)
    closed: bool = False


@dataclass
class QueueStats:
    """Aggregate view of the queue."""

    total: int = 0
    by_state: dict[str, int] = field(default_factory=dict)
    mean_confidence: float = 0.0
    with_warnings: int = 0
    with_hard_failures: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "by_state": self.by_state,
            "mean_confidence": round(self.mean_confidence, 4),
            "with_warnings": self.with_warnings,
            "with_hard_failures": self.with_hard_failures,
        }


class ReviewQueue:
    """Holds review cases and applies every change to them.

    Args:
        rules: Validation engine run after every change.
        resolver: Resolver applying manual field values.
        store: Artifact store; case evidence is pinned against eviction.
        catalog: Field definitions (critical and learnable fields).
        vendors: Vendor store that learns from reviewer corrections.
        config: Confidence band limits.
        clock: Wall-clock time source.
    """

    def __init__(
        self,
        rules: RulesEngine,
        resolver: FieldResolver,
        store: ArtifactStore,
        catalog: FieldCatalog,
        vendors: VendorStore | None = None,
        config: ReviewConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.rules = rules
        self.resolver = resolver
        self.store = store
        self.catalog = catalog
        self.vendors = vendors
        self.config = config or ReviewConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._cases: dict[str, ReviewCase] = {}
        self._case_locks: dict[str, threading.RLock] = {}
        self._sessions: dict[str, ReviewSession] = {}
        self._session_ids = itertools.count(1)
        self._approval_key = object()
        self._approval_bound = False

    def bind_approval_gate(self) -> object:
        """Hand out the approval capability. Only one gate may hold it.

        Raises:
            ConfigurationError: If a gate is already bound.
        """
        with self._lock:
            if self._approval_bound:
                raise ConfigurationError("An approval gate is already bound to this queue")
            self._approval_bound = True
        return self._approval_key

    def case_lock(self, case_id: str) -> threading.RLock:
        with self._lock:
            if case_id not in self._cases:
                raise CaseNotFound(f"Unknown case: {case_id}")
            return self._case_locks[case_id]

    def add(
        self,
        record: ResolvedRecord,
        validation: ValidationResult,
        warnings: list[str] | None = None,
        orchestration: dict[str, Any] | None = None,
    ) -> ReviewCase:
        """Create a PENDING case for a resolved record and pin its evidence."""
        now = self._clock()
        with self._lock:
            case_id = record.document_id
            suffix = 1
            while case_id in self._cases:
                suffix += 1
                case_id = f"{record.document_id}-{suffix}"
            case = ReviewCase(
                case_id=case_id,
                document_id=record.document_id,
                record=record,
                validation=validation,
                created_at=now,
                updated_at=now,
                critical_fields=tuple(self.catalog.critical),
                vendor_id=record.vendor_id,
                warnings=list(warnings or []),
                orchestration=dict(orchestration or {}),
                record_history=[record.ref] if record.ref else [],
            )
            case.audit.append(
                AuditEntry(
                    timestamp=now,
                    actor="system",
                    action="created",
                    after=str(case.state),
                    detail={
                        "hard_failures": validation.failed_rule_ids,
                        "warnings": validation.warning_count,
                        "pipeline_warnings": list(case.warnings),
                    },
                )
            )
            self._cases[case_id] = case
            self._case_locks[case_id] = threading.RLock()

        if case.record_history:
            self.store.pin(case_id, case.record_history)
        get_logger(__name__, case_id=case_id).info(
            "Case created: confidence %.3f, %d hard failure(s), %d warning(s)",
            case.confidence,
            len(validation.hard_failures),
            validation.warning_count,
        )
        return case

    def get(self, case_id: str) -> ReviewCase:
        with self._lock:
            case = self._cases.get(case_id)
        if case is None:
            raise CaseNotFound(f"Unknown case: {case_id}")
        return case

    def band(self, confidence: float) -> str:
        if confidence < self.config.low_confidence_below:
            return "low"
        if confidence >= self.config.high_confidence_from:
            return "high"
        return "medium"

    def find(
        self,
        state: ReviewState | str | None = None,
        vendor_id: str | None = None,
        band: str | None = None,
        min_confidence: float | None = None,
        max_confidence: float | None = None,
        has_flags: bool | None = None,
        sort: str = "age",
    ) -> list[ReviewCase]:
        """Filter and sort cases.

        Args:
            state: Only cases in this state.
            vendor_id: Only cases of this vendor.
            band: ``low``, ``medium`` or ``high`` confidence band.
            min_confidence: Inclusive lower confidence bound.
            max_confidence: Exclusive upper confidence bound.
            has_flags: Only cases with (True) or without (False) field flags.
            sort: ``age`` (oldest first) or ``confidence`` (lowest first).

        Returns:
            Matching cases.
        """
        if band is not None and band not in CONFIDENCE_BANDS:
            raise ValueError(f"Unknown confidence band: {band}")
        if sort not in ("age", "confidence"):
            raise ValueError(f"Unknown sort order: {sort}")
        with self._lock:
            cases = list(self._cases.values())

        if state is not None:
            cases = [c for c in cases if c.state == ReviewState(state)]
        if vendor_id is not None:
            cases = [c for c in cases if c.vendor_id == vendor_id]
        if band is not None:
            cases = [c for c in cases if self.band(c.confidence) == band]
        if min_confidence is not None:
            cases = [c for c in cases if c.confidence >= min_confidence]
        if max_confidence is not None:
            cases = [c for c in cases if c.confidence < max_confidence]
        if has_flags is not None:
            cases = [c for c in cases if bool(c.flags) == has_flags]

        if sort == "confidence":
            return sorted(cases, key=lambda c: (c.confidence, c.created_at, c.case_id))
        return sorted(cases, key=lambda c: (c.created_at, c.case_id))

    def next_case(self) -> ReviewCase | None:
        """Return the PENDING case most in need of review, the least confident one."""
        pending = self.find(state=ReviewState.PENDING, sort="confidence")
        return pending[0] if pending else None

    @staticmethod
    def check_version(case: ReviewCase, expected_version: int | None) -> None:
        if expected_version is not None and expected_version != case.version:
            raise ConcurrentModification(case.case_id, expected_version, case.version)

    def _touch(self, case: ReviewCase) -> None:
        case.version += 1
        case.updated_at = self._clock()

    def _validate(self, record: ResolvedRecord) -> ValidationResult:
        # Rule edits on disk apply to the next decision, not the next document.
        self.rules.reload_if_changed()
        return self.rules.validate(record)

    def revalidate(self, case_id: str) -> ValidationResult:
        """Re-run validation on a case's current record against the current rules."""
        with self.case_lock(case_id):
            case = self.get(case_id)
            case.validation = self._validate(case.record)
            return case.validation

    def record_event(
        self,
        case_id: str,
        actor: str,
        action: str,
        detail: dict[str, Any] | None = None,
    ) -> None:
        """Append a non-transition entry to a case's audit log."""
        with self.case_lock(case_id):
            case = self.get(case_id)
            case.audit.append(
                AuditEntry(
                    timestamp=self._clock(),
                    actor=actor,
                    action=action,
                    detail=dict(detail or {}),
                )
            )
            self._touch(case)

    def transition(
        self,
        case_id: str,
        target: ReviewState | str,
        actor: str,
        expected_version: int | None = None,
        session_id: str | None = None,
        detail: dict[str, Any] | None = None,
        approval_key: object | None = None,
    ) -> ReviewCase:
        """Move a case to another state and re-validate it.

        Raises:
            CaseNotFound: If the case is unknown.
            ConcurrentModification: If ``expected_version`` is stale.
            InvalidTransition: If the move is not allowed, or is a move to
                APPROVED without the approval capability.
        """
        target = ReviewState(target)
        with self.case_lock(case_id):
            case = self.get(case_id)
            self.check_version(case, expected_version)
            if not can_transition(case.state, target):
                raise InvalidTransition(case.state, target)
            if target == ReviewState.APPROVED and approval_key is not self._approval_key:
                raise InvalidTransition(case.state, target)

            before = case.state
            case.state = target
            if target == ReviewState.IN_REVIEW:
                case.assignee = actor
            case.validation = self._validate(case.record)
            case.audit.append(
                AuditEntry(
                    timestamp=self._clock(),
                    actor=actor,
                    action="transition",
                    before=str(before),
                    after=str(target),
                    detail=dict(detail or {}),
                    session_id=session_id,
                )
            )
            self._touch(case)
            if target == ReviewState.ARCHIVED:
                self.store.unpin(case_id)
            if session_id is not None:
                self._remember(session_id, case_id)

        get_logger(__name__, case_id=case_id).info("%s: %s -> %s", actor, before, target)
        return case

    def claim(
        self,
        case_id: str,
        reviewer: str,
        expected_version: int | None = None,
        session_id: str | None = None,
    ) -> ReviewCase:
        """Take a PENDING case into review.

        Raises:
            ConcurrentModification: If ``expected_version`` is stale or
                another reviewer claimed the case first.
            InvalidTransition: If the case was already decided.
        """
        with self.case_lock(case_id):
            case = self.get(case_id)
            self.check_version(case, expected_version)
            if case.state == ReviewState.IN_REVIEW:
                raise ConcurrentModification(case_id, expected_version, case.version)
            if case.state != ReviewState.PENDING:
                raise InvalidTransition(case.state, ReviewState.IN_REVIEW)
            return self.transition(
                case_id, ReviewState.IN_REVIEW, reviewer, expected_version, session_id
            )

    def reject(
        self,
        case_id: str,
        reviewer: str,
        reason: str,
        expected_version: int | None = None,
        session_id: str | None = None,
    ) -> ReviewCase:
        return self.transition(
            case_id,
            ReviewState.REJECTED,
            reviewer,
            expected_version,
            session_id,
            detail={"reason": reason},
        )

    def reopen(
        self,
        case_id: str,
        reviewer: str,
        expected_version: int | None = None,
        session_id: str | None = None,
    ) -> ReviewCase:
        """Return an APPROVED or REJECTED case to review."""
        return self.transition(
            case_id, ReviewState.IN_REVIEW, reviewer, expected_version, session_id
        )

    def archive(
        self, case_id: str, actor: str, expected_version: int | None = None
    ) -> ReviewCase:
        """Archive a decided case and release its pinned evidence."""
        return self.transition(case_id, ReviewState.ARCHIVED, actor, expected_version)

    def edit_field(
        self,
        case_id: str,
        field_name: str,
        value: Any,
        reviewer: str,
        expected_version: int | None = None,
        session_id: str | None = None,
    ) -> ReviewCase:
        """Replace a field value by hand and re-validate.

        Learnable fields teach the case's vendor profile.

        Raises:
            InvalidTransition: If the case is not IN_REVIEW.
            ValueError: If the value is invalid for the field type.
        """
        with self.case_lock(case_id):
            case = self.get(case_id)
            self.check_version(case, expected_version)
            if case.state != ReviewState.IN_REVIEW:
                raise InvalidTransition(case.state, "edit")

            before = case.record.value(field_name)
            case.record = self.resolver.apply_manual(case.record, field_name, value, reviewer)
            if case.record.ref is not None:
                case.record_history.append(case.record.ref)
                self.store.pin(case_id, case.record_history)
            case.validation = self._validate(case.record)
            after = case.record.value(field_name)
            case.audit.append(
                AuditEntry(
                    timestamp=self._clock(),
                    actor=reviewer,
                    action="edit",
                    before=before,
                    after=after,
                    detail={
                        "field": field_name,
                        "hard_failures": case.validation.failed_rule_ids,
                    },
                    session_id=session_id,
                )
            )
            self._touch(case)

        definition = self.catalog.get(field_name)
        if definition.learnable and case.vendor_id and self.vendors is not None:
            self.vendors.learn_correction(case.vendor_id, field_name, str(value))
        get_logger(__name__, case_id=case_id).info(
            "%s edited %s: %r -> %r", reviewer, field_name, before, after
        )
        return case

    def add_mask(self, case_id: str, mask: UserMask, reviewer: str) -> None:
        """Store a reviewer-drawn mask on the case's vendor profile."""
        case = self.get(case_id)
        if not case.vendor_id or self.vendors is None:
            raise ValueError(f"Case {case_id} has no vendor to store the mask on")
        self.vendors.add_mask(case.vendor_id, mask)
        self.record_event(case_id, reviewer, "mask", {"mask": mask.to_dict()})

    def set_zone_override(self, case_id: str, override: ZoneOverride, reviewer: str) -> None:
        """Store a reviewer-drawn zone on the case's vendor profile."""
        case = self.get(case_id)
        if not case.vendor_id or self.vendors is None:
            raise ValueError(f"Case {case_id} has no vendor to store the zone on")
        self.vendors.set_zone_override(case.vendor_id, override)
        self.record_event(case_id, reviewer, "zone_override", {"zone": override.to_dict()})

    def open_session(self, reviewer: str) -> ReviewSession:
        with self._lock:
            session_id = f"session-{next(self._session_ids)}"
            session = ReviewSession(session_id, reviewer, self._clock())
            self._sessions[session_id] = session
        logger.info("Session %s opened for %s", session_id, reviewer)
        return session

    def close_session(self, session_id: str) -> None:
        with self._lock:
            self._session(session_id).closed = True

    def _session(self, session_id: str) -> ReviewSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise KeyError(f"Unknown session: {session_id}")
        return session

    def _remember(self, session_id: str, case_id: str) -> None:
        with self._lock:
            session = self._session(session_id)
            if case_id not in session.case_ids:
                session.case_ids.append(case_id)

    def undo_session(self, session_id: str, actor: str) -> list[str]:
        """Revert the last transition each case had within a session.

        A case is skipped when a later transition happened outside the
        session, when it is ARCHIVED or APPROVED (a handed-off approval is
        only reversed by :meth:`reopen`), or when the undo would restore
        APPROVED without the approval gate.

        Returns:
            Ids of the cases that were reverted.
        """
        with self._lock:
            case_ids = list(self._session(session_id).case_ids)

        reverted: list[str] = []
        for case_id in case_ids:
            with self.case_lock(case_id):
                case = self.get(case_id)
                last = case.last_transition()
                if last is None or last.session_id != session_id or last.action != "transition":
                    continue
                before = ReviewState(last.before)
                locked = (ReviewState.ARCHIVED, ReviewState.APPROVED)
                if case.state in locked or before == ReviewState.APPROVED:
                    logger.warning(
                        "Session %s: cannot undo %s -> %s on %s",
                        session_id,
                        last.before,
                        last.after,
                        case_id,
                    )
                    continue
                case.state = before
                if before == ReviewState.PENDING:
                    case.assignee = None
                case.validation = self._validate(case.record)
                case.audit.append(
                    AuditEntry(
                        timestamp=self._clock(),
                        actor=actor,
                        action="undo",
                        before=last.after,
                        after=last.before,
                        session_id=session_id,
                    )
                )
                self._touch(case)
                reverted.append(case_id)

        logger.info("Session %s undone: %d case(s) reverted", session_id, len(reverted))
        return reverted

    def stats(self) -> QueueStats:
        with self._lock:
            cases = list(self._cases.values())
        stats = QueueStats(total=len(cases))
        for state in ReviewState:
            stats.by_state[str(state)] = sum(1 for c in cases if c.state == state)
        if cases:
            stats.mean_confidence = sum(c.confidence for c in cases) / len(cases)
        stats.with_warnings = sum(1 for c in cases if c.warning_count)
        stats.with_hard_failures = sum(1 for c in cases if c.hard_failure_ids)
        return stats
