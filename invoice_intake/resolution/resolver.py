"""Field resolution: candidates to one calibrated value per field.

For each field the candidates are grouped by normalized value. A group's
weight is the sum of ``source_weight * raw_confidence`` over its members.
The heaviest group wins; ties go to the group with the highest variant
readiness, then the most trusted source type, then the smallest value, so
the same candidates always resolve the same way. The raw confidence is the
best member's confidence scaled by the winner's share of the total weight,
plus a small bonus when several strategies or source types agree. It is
then calibrated, and cross-field arithmetic checks may penalize it.

Every resolved field is stored as a Resolved artifact whose parents are its
supporting candidates, so it can be traced back to the page it came from.
"""

from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import date, timedelta
from decimal import Decimal
from enum import StrEnum
from typing import Any

from invoice_intake.extraction.candidates import SOURCE_RANK, Candidate, SourceType
from invoice_intake.extraction.fields import FieldCatalog, FieldDefinition, FieldType
from invoice_intake.extraction.normalize import normalize, normalize_text, parse_amount
from invoice_intake.store.artifacts import (
    ArtifactKind,
    ArtifactRef,
    ArtifactStore,
    canonical_json,
)
from invoice_intake.utils.config import ResolutionConfig
from invoice_intake.utils.logger import get_logger

from .calibration import Calibrator

logger = get_logger(__name__)

CROSS_FLAG_PREFIX = "cross_field:"

_CONFIDENCE_LABELS = [
    (0.95, "Very confident"),
    (0.85, "Confident"),
    (0.70, "Moderately confident"),
    (0.50, "Low confidence"),
    (0.0, "Very low confidence"),
]


class FieldStatus(StrEnum):
    """How a field's value was obtained."""

    RESOLVED = "resolved"
    UNRESOLVED = "unresolved"
    MANUAL = "manual"


@dataclass(frozen=True)
class Alternative:
    """A losing value kept for the reviewer."""

    value: Any
    share: float
    supporters: int

    def to_dict(self) -> dict[str, Any]:
        return {"value": self.value, "share": round(self.share, 4), "supporters": self.supporters}


@dataclass(frozen=True)
class CrossCheck:
    """Outcome of one arithmetic check across fields."""

    name: str
    passed: bool
    fields: tuple[str, ...]
    expected: str
    actual: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "passed": self.passed,
            "fields": list(self.fields),
            "expected": self.expected,
            "actual": self.actual,
        }


@dataclass(frozen=True)
class ResolvedField:
    """The chosen value of one field with its confidence and evidence."""

    name: str
    field_type: str
    value: Any
    confidence: float
    base_confidence: float
    raw_confidence: float
    status: FieldStatus
    evidence: tuple[ArtifactRef, ...] = ()
    flags: tuple[str, ...] = ()
    alternatives: tuple[Alternative, ...] = ()
    summary: str = ""
    calibration_version: int = 0
    ref: ArtifactRef | None = None

    @property
    def explanation(self) -> str:
        label = next(text for floor, text in _CONFIDENCE_LABELS if self.confidence >= floor)
        text = f"{label} ({self.confidence:.2f})"
        if self.summary:
            text += f": {self.summary}"
        if self.flags:
            text += f"; flags: {', '.join(self.flags)}"
        return text

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "field_type": self.field_type,
            "value": self.value,
            "confidence": round(self.confidence, 4),
            "base_confidence": round(self.base_confidence, 4),
            "raw_confidence": round(self.raw_confidence, 4),
            "status": str(self.status),
            "evidence": [[str(r.kind), r.digest] for r in self.evidence],
            "flags": list(self.flags),
            "alternatives": [a.to_dict() for a in self.alternatives],
            "explanation": self.explanation,
            "calibration_version": self.calibration_version,
        }


@dataclass(frozen=True)
class ResolvedRecord:
    """All resolved fields of one document."""

    document_id: str
    fields: dict[str, ResolvedField] = field(default_factory=dict)
    vendor_id: str | None = None
    cross_checks: tuple[CrossCheck, ...] = ()
    ref: ArtifactRef | None = None

    def value(self, name: str, default: Any = None) -> Any:
        resolved = self.fields.get(name)
        if resolved is None or resolved.status == FieldStatus.UNRESOLVED:
            return default
        return resolved.value

    def confidences(self) -> dict[str, float]:
        return {name: f.confidence for name, f in self.fields.items()}

    @property
    def evidence(self) -> list[ArtifactRef]:
        refs: list[ArtifactRef] = []
        for resolved in self.fields.values():
            refs.extend(r for r in resolved.evidence if r not in refs)
        return refs

    def to_dict(self) -> dict[str, Any]:
        return {
            "document_id": self.document_id,
            "vendor_id": self.vendor_id,
            "fields": {name: f.to_dict() for name, f in sorted(self.fields.items())},
            "cross_checks": [c.to_dict() for c in self.cross_checks],
        }


class FieldResolver:
    """Resolves candidates into a :class:`ResolvedRecord`.

    Args:
        catalog: Field definitions.
        calibrator: Calibration curves, shared read-only.
        store: Artifact store receiving Candidate and Resolved artifacts.
        config: Weights, bonus, tolerance and flag thresholds.
        today: Date source for the future-date flag.
    """

    def __init__(
        self,
        catalog: FieldCatalog,
        calibrator: Calibrator,
        store: ArtifactStore,
        config: ResolutionConfig | None = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.catalog = catalog
        self.calibrator = calibrator
        self.store = store
        self.config = config or ResolutionConfig()
        self._today = today

    def resolve(
        self,
        document_id: str,
        candidates: list[Candidate],
        searched: list[ArtifactRef],
        vendor_id: str | None = None,
        persist: bool = True,
    ) -> ResolvedRecord:
        """Resolve every catalogue field.

        Args:
            document_id: Document the candidates belong to.
            candidates: All candidates for the document.
            searched: Sources that were searched (OCR results, text layers or
                pages). A required field with no candidate is recorded as
                unresolved with an absence candidate whose parents are these.
            vendor_id: Vendor of the document, if known.
            persist: Store Resolved artifacts. Probes pass ``False``.

        Returns:
            Record with one entry per found or required field.
        """
        by_field: dict[str, list[Candidate]] = {}
        for candidate in candidates:
            by_field.setdefault(candidate.field_name, []).append(candidate)

        fields: dict[str, ResolvedField] = {}
        for definition in self.catalog:
            found = by_field.get(definition.name, [])
            if found:
                fields[definition.name] = self._resolve_field(definition, found)
            elif definition.required:
                fields[definition.name] = self._absent(definition, searched, persist)

        record = ResolvedRecord(document_id=document_id, fields=fields, vendor_id=vendor_id)
        record = self._finalize(record)
        if persist:
            record = self._persist(record)
            logger.info(
                "Resolved %s: %s",
                document_id,
                {name: round(f.confidence, 3) for name, f in record.fields.items()},
            )
        return record

    def _weight(self, candidate: Candidate) -> float:
        weight = self.config.source_weights.get(str(candidate.source_type), 0.5)
        return weight * candidate.confidence

    def _resolve_field(
        self, definition: FieldDefinition, candidates: list[Candidate]
    ) -> ResolvedField:
        groups: dict[str, list[Candidate]] = {}
        for candidate in candidates:
            groups.setdefault(candidate.value_key, []).append(candidate)
        weights = {key: sum(self._weight(c) for c in group) for key, group in groups.items()}

        def rank(key: str) -> tuple:
            group = groups[key]
            return (
                -round(weights[key], 9),
                -max(c.readiness for c in group),
                min(SOURCE_RANK[c.source_type] for c in group),
                key,
            )

        ordered = sorted(groups, key=rank)
        winner = groups[ordered[0]]
        total_weight = sum(weights.values())
        agreement = weights[ordered[0]] / total_weight if total_weight else 0.0
        best = max(c.confidence for c in winner)
        supporters = {(c.strategy, c.source_type) for c in winner}
        bonus = min(
            self.config.consensus_bonus * (len(supporters) - 1),
            self.config.max_consensus_bonus,
        )
        raw = min(max(best * agreement + bonus, 0.0), 1.0)
        curve = self.calibrator.curve(definition.field_type, self.config.calibration_version)
        calibrated = curve.apply(raw)

        alternatives = tuple(
            Alternative(
                value=groups[key][0].value,
                share=weights[key] / total_weight if total_weight else 0.0,
                supporters=len(groups[key]),
            )
            for key in ordered[1 : 1 + self.config.max_alternatives]
        )
        strategies = ", ".join(sorted({c.strategy for c in winner}))
        sources = ", ".join(sorted({str(c.source_type) for c in winner}))
        summary = f"{len(winner)} of {len(candidates)} candidates agree ({strategies}; {sources})"

        return ResolvedField(
            name=definition.name,
            field_type=str(definition.field_type),
            value=winner[0].value,
            confidence=calibrated,
            base_confidence=calibrated,
            raw_confidence=raw,
            status=FieldStatus.RESOLVED,
            evidence=tuple(c.ref for c in winner if c.ref is not None),
            alternatives=alternatives,
            summary=summary,
            calibration_version=curve.version,
        )

    def _absent(
        self, definition: FieldDefinition, searched: list[ArtifactRef], persist: bool
    ) -> ResolvedField:
        evidence: tuple[ArtifactRef, ...] = ()
        if persist:
            absence = self.store.put(
                ArtifactKind.CANDIDATE,
                sorted(set(searched)),
                {"field": definition.name, "strategy": "absence"},
                canonical_json({"field": definition.name, "value": None, "absent": True}),
            )
            evidence = (absence,)
        return ResolvedField(
            name=definition.name,
            field_type=str(definition.field_type),
            value=None,
            confidence=0.0,
            base_confidence=0.0,
            raw_confidence=0.0,
            status=FieldStatus.UNRESOLVED,
            evidence=evidence,
            summary=f"not found in {len(searched)} searched sources",
        )

    def apply_manual(
        self, record: ResolvedRecord, field_name: str, value: Any, actor: str
    ) -> ResolvedRecord:
        """Replace a field with a reviewer-entered value.

        The manual candidate's parents are the field's previous evidence, so
        lineage still reaches the page the original value came from.

        Raises:
            KeyError: If the field is not in the catalogue.
            ValueError: If the value does not normalize for the field type.
        """
        definition = self.catalog.get(field_name)
        normalized = self.normalize_manual(definition, value)
        prior = record.fields.get(field_name)
        if prior is not None and prior.evidence:
            parents = list(prior.evidence)
        else:
            parents = [record.ref] if record.ref else []

        candidate = Candidate(
            field_name=field_name,
            value=normalized,
            raw_text=str(value),
            confidence=1.0,
            strategy="manual",
            source_type=SourceType.MANUAL,
        )
        candidate_ref = self.store.put(
            ArtifactKind.CANDIDATE,
            parents,
            {"field": field_name, "strategy": "manual", "actor": actor},
            canonical_json(candidate.to_payload()),
        )

        alternatives: tuple[Alternative, ...] = ()
        if prior is not None and prior.value is not None and prior.value != normalized:
            alternatives = (Alternative(prior.value, prior.confidence, len(prior.evidence)),)
        fields = dict(record.fields)
        fields[field_name] = ResolvedField(
            name=field_name,
            field_type=str(definition.field_type),
            value=normalized,
            confidence=1.0,
            base_confidence=1.0,
            raw_confidence=1.0,
            status=FieldStatus.MANUAL,
            evidence=(candidate_ref,),
            alternatives=alternatives,
            summary=f"entered by {actor}",
        )
        updated = self._finalize(replace(record, fields=fields, ref=None))
        logger.info("Manual value for %s.%s by %s", record.document_id, field_name, actor)
        return self._persist(updated)

    @staticmethod
    def normalize_manual(definition: FieldDefinition, value: Any) -> Any:
        if definition.field_type == FieldType.LINE_ITEMS:
            if not isinstance(value, list):
                raise ValueError("line_items must be a list of rows")
            rows = []
            for row in value:
                amount = parse_amount(str(row.get("amount", "")))
                unit_price = parse_amount(str(row.get("unit_price", row.get("amount", ""))))
                if amount is None or unit_price is None:
                    raise ValueError(f"Invalid line item: {row!r}")
                rows.append(
                    {
                        "description": normalize_text(str(row.get("description", ""))) or "",
                        "quantity": str(row.get("quantity", "1")),
                        "unit_price": f"{unit_price:.2f}",
                        "amount": f"{amount:.2f}",
                    }
                )
            return rows
        normalized = normalize(definition.field_type, str(value))
        if normalized is None:
            raise ValueError(f"Invalid value for {definition.name}: {value!r}")
        return normalized

    def _finalize(self, record: ResolvedRecord) -> ResolvedRecord:
        """Run cross-field checks and recompute confidences and flags."""
        checks = self._cross_checks(record)
        failed_fields: dict[str, list[str]] = {}
        for check in checks:
            if not check.passed:
                for name in check.fields:
                    failed_fields.setdefault(name, []).append(check.name)

        fields: dict[str, ResolvedField] = {}
        for name, resolved in record.fields.items():
            confidence = resolved.base_confidence
            failures = failed_fields.get(name, [])
            if failures and resolved.status == FieldStatus.RESOLVED:
                confidence *= self.config.cross_field_penalty
            flags = self._intrinsic_flags(resolved)
            flags.extend(f"{CROSS_FLAG_PREFIX}{check}" for check in failures)
            if (
                resolved.status != FieldStatus.UNRESOLVED
                and confidence < self.config.low_confidence_flag
            ):
                flags.append("low_confidence")
            fields[name] = replace(resolved, confidence=confidence, flags=tuple(flags))
        return replace(record, fields=fields, cross_checks=tuple(checks))

    def _intrinsic_flags(self, resolved: ResolvedField) -> list[str]:
        flags: list[str] = []
        if resolved.status == FieldStatus.UNRESOLVED:
            return ["unresolved"]
        if resolved.field_type == FieldType.DATE:
            grace = timedelta(days=self.config.future_date_grace_days)
            if date.fromisoformat(resolved.value) > self._today() + grace:
                flags.append("future_date")
        elif resolved.field_type == FieldType.AMOUNT:
            amount = Decimal(resolved.value)
            if amount < 0 or (amount == 0 and resolved.name == "total"):
                flags.append("invalid_amount")
            if amount > Decimal(str(self.config.large_amount_flag)):
                flags.append("unusually_large_amount")
        return flags

    def _tolerance(self, expected: Decimal) -> Decimal:
        absolute = Decimal(str(self.config.cross_field_tolerance))
        relative = abs(expected) * Decimal(str(self.config.cross_field_tolerance_percent)) / 100
        return max(absolute, relative)

    def _cross_checks(self, record: ResolvedRecord) -> list[CrossCheck]:
        def amount(name: str) -> Decimal | None:
            value = record.value(name)
            return Decimal(value) if isinstance(value, str) else None

        subtotal, tax, total = amount("subtotal"), amount("tax"), amount("total")
        items = record.value("line_items")
        checks: list[CrossCheck] = []

        if items and (subtotal is not None or total is not None):
            items_sum = sum((Decimal(row["amount"]) for row in items), Decimal("0"))
            if subtotal is not None:
                expected, touched = subtotal, ("line_items", "subtotal")
            else:
                expected = total - (tax or Decimal("0"))
                touched = ("line_items", "total") + (("tax",) if tax is not None else ())
            checks.append(
                CrossCheck(
                    name="line_items_sum",
                    passed=abs(items_sum - expected) <= self._tolerance(expected),
                    fields=touched,
                    expected=f"{expected:.2f}",
                    actual=f"{items_sum:.2f}",
                )
            )

        if subtotal is not None and tax is not None and total is not None:
            computed = subtotal + tax
            checks.append(
                CrossCheck(
                    name="totals_reconcile",
                    passed=abs(computed - total) <= self._tolerance(total),
                    fields=("subtotal", "tax", "total"),
                    expected=f"{total:.2f}",
                    actual=f"{computed:.2f}",
                )
            )
        return checks

    def _persist(self, record: ResolvedRecord) -> ResolvedRecord:
        fields: dict[str, ResolvedField] = {}
        for name, resolved in record.fields.items():
            ref = self.store.put(
                ArtifactKind.RESOLVED,
                resolved.evidence,
                {"field": name},
                canonical_json(resolved.to_dict()),
            )
            fields[name] = replace(resolved, ref=ref)
        record = replace(record, fields=fields)
        record_ref = self.store.put(
            ArtifactKind.RESOLVED,
            [fields[name].ref for name in sorted(fields)],
            {"document_id": record.document_id, "record": True},
            canonical_json(record.to_dict()),
        )
        return replace(record, ref=record_ref)

