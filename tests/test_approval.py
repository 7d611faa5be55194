"""Tests for the approval gate and the downstream handoff."""

import os
import threading
from pathlib import Path

import pytest
import yaml
from helpers import GOOD_VALUES, TODAY, ReviewEnv

from invoice_intake.errors import (
    ConcurrentModification,
    HandoffFailed,
    HardValidationFailure,
    InvalidTransition,
)
from invoice_intake.review.approval import Ack, ApprovalGate, ApprovalHandoff, HandoffRejected
from invoice_intake.review.case import ReviewState
from invoice_intake.store.artifacts import ArtifactKind
from invoice_intake.validation.rules_engine import RulesEngine

ITEMS = [
    {"description": "Consulting", "quantity": "1", "unit_price": "100.00", "amount": "100.00"},
    {"description": "Travel", "quantity": "1", "unit_price": "42.50", "amount": "42.50"},
]


class RecordingHandoff(ApprovalHandoff):
    """Handoff double that records submissions and answers as scripted."""

    def __init__(self, response=None, error: Exception | None = None) -> None:
        self.response = response or Ack("ERP-1")
        self.error = error
        self.submissions = []
        self._lock = threading.Lock()

    def submit(self, record, evidence_chain):
        with self._lock:
            self.submissions.append((record, evidence_chain))
        if self.error is not None:
            raise self.error
        return self.response


class TestApprovalGate:
    """Tests for approving review cases."""

    def setup_gate(self, env: ReviewEnv, handoff: RecordingHandoff | None = None) -> None:
        self.handoff = handoff or RecordingHandoff()
        self.gate = ApprovalGate(env.queue, env.store, self.handoff)

    def test_handoff_interface_is_abstract(self) -> None:
        with pytest.raises(TypeError):
            ApprovalHandoff()

    def test_approve_hands_off_record_with_evidence(self, review_env: ReviewEnv) -> None:
        self.setup_gate(review_env)
        case = review_env.add_case()
        review_env.queue.claim(case.case_id, "alice")

        approved = self.gate.approve(case.case_id, "alice", expected_version=1)
        assert approved.state == ReviewState.APPROVED
        assert approved.audit[-1].detail["handoff_reference"] == "ERP-1"

        [(record, chain)] = self.handoff.submissions
        assert record is case.record
        assert chain[0].ref == case.record.ref
        kinds = {entry.ref.kind for entry in chain}
        assert {ArtifactKind.RESOLVED, ArtifactKind.CANDIDATE, ArtifactKind.PAGE} <= kinds

    def test_only_cases_in_review(self, review_env: ReviewEnv) -> None:
        self.setup_gate(review_env)
        case = review_env.add_case()
        with pytest.raises(InvalidTransition):
            self.gate.approve(case.case_id, "alice")
        assert self.handoff.submissions == []

    def test_hard_failure_refuses_until_corrected(self, review_env: ReviewEnv) -> None:
        self.setup_gate(review_env)
        case = review_env.add_case({**GOOD_VALUES, "total": "145.00", "line_items": ITEMS})
        review_env.queue.claim(case.case_id, "alice")

        with pytest.raises(HardValidationFailure) as excinfo:
            self.gate.approve(case.case_id, "alice")
        assert excinfo.value.rule_ids == ["line_items_sum"]
        assert case.state == ReviewState.IN_REVIEW
        assert case.audit[-1].action == "approval_refused"
        assert self.handoff.submissions == []

        review_env.queue.edit_field(case.case_id, "total", "142.50", "alice")
        assert self.gate.approve(case.case_id, "alice").state == ReviewState.APPROVED
        assert case.record.value("total") == "142.50"

    def test_rejected_handoff_keeps_case_in_review(self, review_env: ReviewEnv) -> None:
        self.setup_gate(review_env, RecordingHandoff(HandoffRejected("duplicate in ERP")))
        case = review_env.add_case()
        review_env.queue.claim(case.case_id, "alice")
        with pytest.raises(HandoffFailed, match="duplicate in ERP"):
            self.gate.approve(case.case_id, "alice")
        assert case.state == ReviewState.IN_REVIEW
        assert case.audit[-1].action == "handoff_rejected"

    def test_failing_handoff_keeps_case_in_review(self, review_env: ReviewEnv) -> None:
        self.setup_gate(review_env, RecordingHandoff(error=ConnectionError("ERP down")))
        case = review_env.add_case()
        review_env.queue.claim(case.case_id, "alice")
        with pytest.raises(HandoffFailed) as excinfo:
            self.gate.approve(case.case_id, "alice")
        assert isinstance(excinfo.value.__cause__, ConnectionError)
        assert case.state == ReviewState.IN_REVIEW
        assert case.audit[-1].detail["error"] == "ConnectionError: ERP down"

    def test_stale_version(self, review_env: ReviewEnv) -> None:
        self.setup_gate(review_env)
        case = review_env.add_case()
        review_env.queue.claim(case.case_id, "alice")
        with pytest.raises(ConcurrentModification):
            self.gate.approve(case.case_id, "alice", expected_version=0)
        assert self.handoff.submissions == []

    def test_concurrent_approvals_hand_off_once(self, review_env: ReviewEnv) -> None:
        self.setup_gate(review_env)
        case = review_env.add_case()
        review_env.queue.claim(case.case_id, "alice")
        version = case.version
        barrier = threading.Barrier(2)
        outcomes: list[str] = []

        def approve(reviewer: str) -> None:
            barrier.wait()
            try:
                self.gate.approve(case.case_id, reviewer, expected_version=version)
                outcomes.append("approved")
            except ConcurrentModification:
                outcomes.append("conflict")

        threads = [threading.Thread(target=approve, args=(name,)) for name in ("alice", "bob")]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(outcomes) == ["approved", "conflict"]
        assert len(self.handoff.submissions) == 1
        assert case.state == ReviewState.APPROVED

    def test_reopen_and_approve_again(self, review_env: ReviewEnv) -> None:
        self.setup_gate(review_env)
        case = review_env.add_case()
        review_env.queue.claim(case.case_id, "alice")
        self.gate.approve(case.case_id, "alice")
        first_record = case.record.to_dict()
        first_validation = case.validation.to_dict()
        review_env.queue.reopen(case.case_id, "bob")
        assert case.state == ReviewState.IN_REVIEW
        self.gate.approve(case.case_id, "bob")
        assert len(self.handoff.submissions) == 2
        assert case.record.to_dict() == first_record
        assert case.validation.to_dict() == first_validation
        [(_, first_chain), (_, second_chain)] = self.handoff.submissions
        assert [e.ref for e in first_chain] == [e.ref for e in second_chain]

    def test_rules_changed_on_disk_apply_at_approval(
        self, review_env: ReviewEnv, tmp_path: Path
    ) -> None:
        path = tmp_path / "rules.yaml"
        path.write_text(yaml.safe_dump({"version": 1, "rules": []}))
        review_env.queue.rules = RulesEngine(path, today=lambda: TODAY)
        self.setup_gate(review_env)
        case = review_env.add_case()
        review_env.queue.claim(case.case_id, "alice")

        rule = {
            "id": "po_required",
            "check": "required",
            "severity": "hard",
            "fields": ["po_number"],
        }
        path.write_text(yaml.safe_dump({"version": 2, "rules": [rule]}))
        stat = path.stat()
        os.utime(path, (stat.st_atime + 10, stat.st_mtime + 10))

        with pytest.raises(HardValidationFailure) as excinfo:
            self.gate.approve(case.case_id, "alice")
        assert excinfo.value.rule_ids == ["po_required"]
        assert case.validation.ruleset_version == 2
        assert case.state == ReviewState.IN_REVIEW
        assert self.handoff.submissions == []

    def test_evidence_chain_of_unpersisted_record(self, review_env: ReviewEnv) -> None:
        self.setup_gate(review_env)
        case = review_env.add_case()
        case.record = review_env.resolver.resolve("doc-1", [], [], persist=False)
        assert self.gate.evidence_chain(case) == []
