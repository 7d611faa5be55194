"""Tests for review cases, the review queue and reviewer sessions."""

import threading

import pytest
from helpers import GOOD_VALUES, ReviewEnv

from invoice_intake.errors import (
    CaseNotFound,
    ConcurrentModification,
    ConfigurationError,
    InvalidTransition,
)
from invoice_intake.layout.masks import UserMask
from invoice_intake.layout.zones import ZoneOverride, ZoneType
from invoice_intake.ocr.engine import BoundingBox
from invoice_intake.review.approval import Ack, ApprovalGate, ApprovalHandoff
from invoice_intake.review.case import ReviewState, can_transition

MISSING_TOTAL = {k: v for k, v in GOOD_VALUES.items() if k != "total"}


class AcceptAll(ApprovalHandoff):
    def submit(self, record, evidence_chain):
        return Ack("ok")


class TestTransitions:
    """Tests for the case state machine."""

    @pytest.mark.parametrize(
        ("current", "target", "allowed"),
        [
            (ReviewState.PENDING, ReviewState.IN_REVIEW, True),
            (ReviewState.PENDING, ReviewState.APPROVED, False),
            (ReviewState.IN_REVIEW, ReviewState.REJECTED, True),
            (ReviewState.APPROVED, ReviewState.IN_REVIEW, True),
            (ReviewState.REJECTED, ReviewState.ARCHIVED, True),
            (ReviewState.ARCHIVED, ReviewState.IN_REVIEW, False),
        ],
    )
    def test_allowed_moves(
        self, current: ReviewState, target: ReviewState, allowed: bool
    ) -> None:
        assert can_transition(current, target) is allowed


class TestReviewQueue:
    """Tests for case creation and transitions through the queue."""

    def test_new_case_is_pending_and_pinned(self, review_env: ReviewEnv) -> None:
        case = review_env.add_case()
        assert case.case_id == "doc-1"
        assert case.state == ReviewState.PENDING
        assert case.version == 0
        assert case.audit[0].action == "created"
        assert case.record.ref in review_env.store.pinned()
        assert case.confidence == pytest.approx(0.95)

    def test_colliding_document_ids_get_suffix(self, review_env: ReviewEnv) -> None:
        review_env.add_case()
        assert review_env.add_case().case_id == "doc-1-2"
        assert review_env.add_case().case_id == "doc-1-3"

    def test_claim_assigns_reviewer(self, review_env: ReviewEnv) -> None:
        case = review_env.add_case()
        claimed = review_env.queue.claim(case.case_id, "alice", expected_version=0)
        assert claimed.state == ReviewState.IN_REVIEW
        assert claimed.assignee == "alice"
        assert claimed.version == 1
        with pytest.raises(ConcurrentModification):
            review_env.queue.claim(case.case_id, "bob")
        assert case.assignee == "alice"

    def test_concurrent_claims_one_wins(self, review_env: ReviewEnv) -> None:
        case = review_env.add_case()
        barrier = threading.Barrier(2)
        outcomes: dict[str, str] = {}

        def claim(reviewer: str) -> None:
            barrier.wait()
            try:
                review_env.queue.claim(case.case_id, reviewer, expected_version=0)
                outcomes[reviewer] = "claimed"
            except ConcurrentModification:
                outcomes[reviewer] = "conflict"

        threads = [threading.Thread(target=claim, args=(name,)) for name in ("alice", "bob")]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(outcomes.values()) == ["claimed", "conflict"]
        winner = next(name for name, outcome in outcomes.items() if outcome == "claimed")
        assert case.assignee == winner
        assert case.version == 1

    def test_decided_case_cannot_be_claimed(self, review_env: ReviewEnv) -> None:
        case = review_env.add_case()
        review_env.queue.claim(case.case_id, "alice")
        review_env.queue.reject(case.case_id, "alice", "duplicate")
        with pytest.raises(InvalidTransition):
            review_env.queue.claim(case.case_id, "bob")

    def test_stale_version_rejected(self, review_env: ReviewEnv) -> None:
        case = review_env.add_case()
        review_env.queue.claim(case.case_id, "alice")
        with pytest.raises(ConcurrentModification) as excinfo:
            review_env.queue.reject(case.case_id, "bob", "dup", expected_version=0)
        assert excinfo.value.actual == 1
        assert review_env.queue.get(case.case_id).state == ReviewState.IN_REVIEW

    def test_approval_needs_the_gate(self, review_env: ReviewEnv) -> None:
        case = review_env.add_case()
        review_env.queue.claim(case.case_id, "alice")
        with pytest.raises(InvalidTransition):
            review_env.queue.transition(case.case_id, ReviewState.APPROVED, "alice")

    def test_reject_reopen_archive(self, review_env: ReviewEnv) -> None:
        case = review_env.add_case()
        queue = review_env.queue
        queue.claim(case.case_id, "alice")
        queue.reject(case.case_id, "alice", "duplicate invoice")
        assert case.audit[-1].detail == {"reason": "duplicate invoice"}

        assert queue.reopen(case.case_id, "bob").state == ReviewState.IN_REVIEW
        assert case.assignee == "bob"
        queue.reject(case.case_id, "bob", "still a duplicate")
        queue.archive(case.case_id, "system")
        assert case.state == ReviewState.ARCHIVED
        assert case.record.ref not in review_env.store.pinned()
        with pytest.raises(InvalidTransition):
            queue.reopen(case.case_id, "bob")

    def test_pending_case_cannot_be_archived(self, review_env: ReviewEnv) -> None:
        case = review_env.add_case()
        with pytest.raises(InvalidTransition):
            review_env.queue.archive(case.case_id, "system")

    def test_unknown_case(self, review_env: ReviewEnv) -> None:
        with pytest.raises(CaseNotFound):
            review_env.queue.get("nope")
        with pytest.raises(CaseNotFound):
            review_env.queue.claim("nope", "alice")

    def test_single_approval_gate(self, review_env: ReviewEnv) -> None:
        ApprovalGate(review_env.queue, review_env.store, AcceptAll())
        with pytest.raises(ConfigurationError):
            ApprovalGate(review_env.queue, review_env.store, AcceptAll())

    def test_summary(self, review_env: ReviewEnv) -> None:
        case = review_env.add_case(MISSING_TOTAL, vendor_id="acme")
        summary = case.summary()
        assert summary["state"] == "pending"
        assert summary["vendor_id"] == "acme"
        assert summary["hard_failures"] == "required_fields"
        assert summary["confidence"] == 0.0


class TestEdits:
    """Tests for manual field edits and masks."""

    def test_edit_requires_review(self, review_env: ReviewEnv) -> None:
        case = review_env.add_case()
        with pytest.raises(InvalidTransition):
            review_env.queue.edit_field(case.case_id, "total", "99.00", "alice")

    def test_edit_revalidates_and_audits(self, review_env: ReviewEnv) -> None:
        case = review_env.add_case(MISSING_TOTAL)
        assert case.hard_failure_ids == ["required_fields"]
        review_env.queue.claim(case.case_id, "alice")

        edited = review_env.queue.edit_field(case.case_id, "total", "$99", "alice")
        assert edited.record.value("total") == "99.00"
        assert edited.validation.passed
        assert edited.version == 2
        entry = edited.audit[-1]
        assert (entry.action, entry.before, entry.after) == ("edit", None, "99.00")
        assert len(edited.record_history) == 2
        assert edited.record.ref in review_env.store.pinned()

    def test_invalid_edit_leaves_case_unchanged(self, review_env: ReviewEnv) -> None:
        case = review_env.add_case()
        review_env.queue.claim(case.case_id, "alice")
        with pytest.raises(ValueError):
            review_env.queue.edit_field(case.case_id, "invoice_date", "someday", "alice")
        assert case.version == 1
        assert case.record.value("invoice_date") == "2024-03-15"

    def test_learnable_edit_teaches_vendor(self, review_env: ReviewEnv) -> None:
        case = review_env.add_case(vendor_id="acme")
        review_env.queue.claim(case.case_id, "alice")
        review_env.queue.edit_field(case.case_id, "vendor_name", "Acme Ltd", "alice")
        review_env.queue.edit_field(case.case_id, "total", "121.00", "alice")
        assert review_env.vendors.get("acme").known_values == {"vendor_name": ["Acme Ltd"]}

    def test_mask_stored_on_vendor(self, review_env: ReviewEnv) -> None:
        case = review_env.add_case(vendor_id="acme")
        mask = UserMask(BoundingBox(0, 0, 50, 20), "stamp", "alice")
        review_env.queue.add_mask(case.case_id, mask, "alice")
        assert review_env.vendors.masks_for("acme") == [mask]
        assert case.audit[-1].action == "mask"

    def test_zone_override_stored_on_vendor(self, review_env: ReviewEnv) -> None:
        case = review_env.add_case(vendor_id="acme")
        override = ZoneOverride(ZoneType.TOTALS_BOX, BoundingBox(0, 500, 400, 100), "alice")
        review_env.queue.set_zone_override(case.case_id, override, "alice")
        assert review_env.vendors.zone_overrides_for("acme") == [override]
        assert case.audit[-1].action == "zone_override"
        assert case.audit[-1].detail["zone"]["zone_type"] == "TotalsBox"

    def test_mask_needs_vendor(self, review_env: ReviewEnv) -> None:
        case = review_env.add_case()
        mask = UserMask(BoundingBox(0, 0, 50, 20), "stamp", "alice")
        with pytest.raises(ValueError, match="no vendor"):
            review_env.queue.add_mask(case.case_id, mask, "alice")


class TestFind:
    """Tests for filtering and sorting cases."""

    def setup_cases(self, env: ReviewEnv) -> None:
        env.add_case(document_id="a", vendor_id="acme", confidence=0.9)
        env.add_case(document_id="b", vendor_id="globex", confidence=0.5)
        env.add_case(document_id="c", vendor_id="acme", confidence=0.75)

    def test_bands(self, review_env: ReviewEnv) -> None:
        self.setup_cases(review_env)
        queue = review_env.queue
        assert [c.case_id for c in queue.find(band="high")] == ["a"]
        assert [c.case_id for c in queue.find(band="medium")] == ["c"]
        assert [c.case_id for c in queue.find(band="low")] == ["b"]

    def test_sort_and_filters(self, review_env: ReviewEnv) -> None:
        self.setup_cases(review_env)
        queue = review_env.queue
        assert [c.case_id for c in queue.find()] == ["a", "b", "c"]
        assert [c.case_id for c in queue.find(sort="confidence")] == ["b", "c", "a"]
        assert [c.case_id for c in queue.find(vendor_id="acme")] == ["a", "c"]
        assert [c.case_id for c in queue.find(min_confidence=0.5, max_confidence=0.9)] == ["c"]
        queue.claim("b", "alice")
        assert [c.case_id for c in queue.find(state="in_review")] == ["b"]

    def test_flag_filter(self, review_env: ReviewEnv) -> None:
        self.setup_cases(review_env)
        queue = review_env.queue
        assert [c.case_id for c in queue.find(has_flags=True)] == ["b"]
        assert [c.case_id for c in queue.find(has_flags=False)] == ["a", "c"]
        assert "low_confidence" in queue.get("b").flags["total"]

    def test_next_case_is_least_confident_pending(self, review_env: ReviewEnv) -> None:
        queue = review_env.queue
        assert queue.next_case() is None
        self.setup_cases(review_env)
        assert queue.next_case().case_id == "b"
        queue.claim("b", "alice")
        assert queue.next_case().case_id == "c"

    @pytest.mark.parametrize("kwargs", [{"band": "extreme"}, {"sort": "vendor"}])
    def test_invalid_arguments(self, review_env: ReviewEnv, kwargs: dict) -> None:
        with pytest.raises(ValueError):
            review_env.queue.find(**kwargs)

    def test_stats(self, review_env: ReviewEnv) -> None:
        self.setup_cases(review_env)
        review_env.add_case(MISSING_TOTAL, document_id="d")
        review_env.queue.claim("a", "alice")
        stats = review_env.queue.stats()
        assert stats.total == 4
        assert stats.by_state["pending"] == 3
        assert stats.by_state["in_review"] == 1
        assert stats.with_hard_failures == 1
        assert stats.with_warnings >= 1
        assert 0.0 < stats.mean_confidence < 1.0
        assert stats.to_dict()["by_state"]["archived"] == 0


class TestSessions:
    """Tests for session undo."""

    def test_undo_reverts_session_transitions(self, review_env: ReviewEnv) -> None:
        queue = review_env.queue
        review_env.add_case(document_id="a")
        review_env.add_case(document_id="b")
        session = queue.open_session("alice")
        queue.claim("a", "alice", session_id=session.session_id)
        queue.claim("b", "alice", session_id=session.session_id)
        queue.reject("b", "alice", "blurry", session_id=session.session_id)

        assert queue.undo_session(session.session_id, "alice") == ["a", "b"]
        a, b = queue.get("a"), queue.get("b")
        assert a.state == ReviewState.PENDING
        assert a.assignee is None
        assert b.state == ReviewState.IN_REVIEW
        assert a.audit[-1].action == "undo"

    def test_later_outside_change_blocks_undo(self, review_env: ReviewEnv) -> None:
        queue = review_env.queue
        review_env.add_case(document_id="a")
        session = queue.open_session("alice")
        queue.claim("a", "alice", session_id=session.session_id)
        queue.reject("a", "bob", "duplicate")
        assert queue.undo_session(session.session_id, "alice") == []
        assert queue.get("a").state == ReviewState.REJECTED

    def test_undo_skips_approved_cases(self, review_env: ReviewEnv) -> None:
        queue = review_env.queue
        gate = ApprovalGate(queue, review_env.store, AcceptAll())
        review_env.add_case(document_id="a")
        review_env.add_case(document_id="b")
        session = queue.open_session("alice")
        queue.claim("a", "alice", session_id=session.session_id)
        gate.approve("a", "alice", session_id=session.session_id)
        queue.claim("b", "alice")
        gate.approve("b", "alice")
        queue.reopen("b", "alice", session_id=session.session_id)

        assert queue.undo_session(session.session_id, "alice") == []
        assert queue.get("a").state == ReviewState.APPROVED
        assert queue.get("b").state == ReviewState.IN_REVIEW

    def test_undo_twice_is_a_no_op(self, review_env: ReviewEnv) -> None:
        queue = review_env.queue
        review_env.add_case(document_id="a")
        session = queue.open_session("alice")
        queue.claim("a", "alice", session_id=session.session_id)
        queue.undo_session(session.session_id, "alice")
        assert queue.undo_session(session.session_id, "alice") == []

    def test_unknown_session(self, review_env: ReviewEnv) -> None:
        with pytest.raises(KeyError):
            review_env.queue.undo_session("session-99", "alice")
