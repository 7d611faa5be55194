"""Configurable validation rules engine for resolved invoice records.

Rules are loaded from a versioned YAML file. Each rule names a check,
a severity (hard or soft), the fields it covers, parameters and optional
per-mode thresholds. The mode (fast, balanced or strict) selects thresholds
and may promote soft rules to hard. Every rule's outcome is reported, not
only the failures.

The rule file is re-read when its modification time changes; the new rule
set replaces the old one in a single assignment, so a validation in
progress always sees one consistent version.
"""

import re
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation
from enum import StrEnum
from pathlib import Path
from typing import Any

import yaml

from invoice_intake.errors import ConfigurationError
from invoice_intake.extraction.normalize import parse_date
from invoice_intake.resolution.resolver import FieldStatus, ResolvedRecord
from invoice_intake.utils.logger import get_logger

logger = get_logger(__name__)


class Severity(StrEnum):
    HARD = "hard"
    SOFT = "soft"


class ValidationMode(StrEnum):
    FAST = "fast"
    BALANCED = "balanced"
    STRICT = "strict"


DEFAULT_RULES: dict[str, Any] = {
    "version": 1,
    "modes": {
        "fast": {"promote": []},
        "balanced": {"promote": []},
        "strict": {"promote": ["min_confidence", "date_order", "invoice_number_format"]},
    },
    "rules": [
        {
            "id": "required_fields",
            "check": "required",
            "severity": "hard",
            "fields": ["invoice_number", "invoice_date", "total"],
        },
        {"id": "unresolved_fields", "check": "unresolved", "severity": "soft"},
        {
            "id": "total_positive",
            "check": "positive_amount",
            "severity": "hard",
            "fields": ["total"],
        },
        {
            "id": "total_range",
            "check": "amount_range",
            "severity": "soft",
            "fields": ["total", "subtotal"],
            "params": {"min": 0.01, "max": 1000000},
        },
        {
            "id": "date_format",
            "check": "date_format",
            "severity": "hard",
            "fields": ["invoice_date", "due_date"],
        },
        {
            "id": "invoice_date_not_future",
            "check": "date_not_future",
            "severity": "hard",
            "fields": ["invoice_date"],
            "params": {"max_days_ahead": 30},
            "thresholds": {"strict": {"max_days_ahead": 0}},
        },
        {
            "id": "date_order",
            "check": "date_order",
            "severity": "soft",
            "fields": ["invoice_date", "due_date"],
        },
        {
            "id": "invoice_number_format",
            "check": "regex",
            "severity": "soft",
            "fields": ["invoice_number"],
            "params": {"pattern": r"[A-Z0-9][A-Z0-9\-/]{2,49}"},
        },
        {
            "id": "line_items_sum",
            "check": "line_items_sum",
            "severity": "hard",
            "params": {"tolerance_percent": 1.0, "tolerance_abs": 0.02},
            "thresholds": {
                "fast": {"tolerance_percent": 2.0},
                "strict": {"tolerance_percent": 0.5},
            },
        },
        {
            "id": "totals_reconcile",
            "check": "totals_reconcile",
            "severity": "hard",
            "params": {"tolerance_percent": 1.0, "tolerance_abs": 0.02},
            "thresholds": {
                "fast": {"tolerance_percent": 2.0},
                "strict": {"tolerance_percent": 0.5},
            },
        },
        {
            "id": "min_confidence",
            "check": "min_confidence",
            "severity": "soft",
            "params": {"threshold": 0.7},
            "thresholds": {
                "fast": {"threshold": 0.5},
                "strict": {"threshold": 0.85},
            },
        },
    ],
}


@dataclass
class Rule:
    """One configured rule."""

    id: str
    check: str
    severity: Severity
    fields: list[str] = field(default_factory=list)
    params: dict[str, Any] = field(default_factory=dict)
    thresholds: dict[str, dict[str, Any]] = field(default_factory=dict)

    def params_for(self, mode: ValidationMode) -> dict[str, Any]:
        return {**self.params, **self.thresholds.get(str(mode), {})}


@dataclass
class RuleSet:
    """A parsed, versioned rule file."""

    version: int
    rules: list[Rule]
    promotions: dict[str, list[str]] = field(default_factory=dict)

    def severity(self, rule: Rule, mode: ValidationMode) -> Severity:
        if rule.id in self.promotions.get(str(mode), []):
            return Severity.HARD
        return rule.severity


@dataclass
class RuleOutcome:
    """Result of one rule against one record."""

    rule_id: str
    check: str
    severity: Severity
    passed: bool
    message: str
    fields: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "check": self.check,
            "severity": str(self.severity),
            "passed": self.passed,
            "message": self.message,
            "fields": self.fields,
        }


@dataclass
class ValidationResult:
    """Every rule outcome for one record."""

    mode: ValidationMode
    ruleset_version: int
    outcomes: list[RuleOutcome] = field(default_factory=list)

    @property
    def hard_failures(self) -> list[RuleOutcome]:
        return [o for o in self.outcomes if not o.passed and o.severity == Severity.HARD]

    @property
    def soft_failures(self) -> list[RuleOutcome]:
        return [o for o in self.outcomes if not o.passed and o.severity == Severity.SOFT]

    @property
    def warning_count(self) -> int:
        return len(self.soft_failures)

    @property
    def passed(self) -> bool:
        return not self.hard_failures

    @property
    def failed_rule_ids(self) -> list[str]:
        return [o.rule_id for o in self.hard_failures]

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": str(self.mode),
            "ruleset_version": self.ruleset_version,
            "passed": self.passed,
            "hard_failures": [o.rule_id for o in self.hard_failures],
            "warnings": [o.rule_id for o in self.soft_failures],
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


def parse_rules(data: dict[str, Any]) -> RuleSet:
    """Build a :class:`RuleSet` from a YAML-shaped mapping.

    Raises:
        ConfigurationError: If a rule is malformed or uses an unknown check.
    """
    try:
        rules = [
            Rule(
                id=str(entry["id"]),
                check=str(entry["check"]),
                severity=Severity(entry.get("severity", "soft")),
                fields=list(entry.get("fields") or []),
                params=dict(entry.get("params") or {}),
                thresholds={
                    str(mode): dict(values)
                    for mode, values in (entry.get("thresholds") or {}).items()
                },
            )
            for entry in data.get("rules", [])
        ]
        promotions = {
            str(mode): list((settings or {}).get("promote") or [])
            for mode, settings in (data.get("modes") or {}).items()
        }
        version = int(data.get("version", 1))
    except (KeyError, TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid validation rules: {exc}") from exc

    unknown = [r.check for r in rules if r.check not in RulesEngine.CHECKS]
    if unknown:
        raise ConfigurationError(f"Unknown rule checks: {unknown}")
    ids = [r.id for r in rules]
    if len(ids) != len(set(ids)):
        raise ConfigurationError("Duplicate rule ids in validation rules")
    return RuleSet(version=version, rules=rules, promotions=promotions)


def _amount(value: Any) -> Decimal | None:
    if value is None:
        return None
    try:
        return Decimal(str(value).replace(",", "").replace("$", ""))
    except InvalidOperation:
        return None


def _tolerance(expected: Decimal, params: dict[str, Any]) -> Decimal:
    relative = abs(expected) * Decimal(str(params.get("tolerance_percent", 1.0))) / 100
    return max(Decimal(str(params.get("tolerance_abs", 0.02))), relative)


class RulesEngine:
    """Validates resolved records against a hot-reloadable rule file.

    Args:
        rules_path: YAML rule file. Built-in defaults apply when it is
            missing or ``None``.
        mode: Default validation mode.
        today: Date source for date checks.
    """

    CHECKS = (
        "required",
        "unresolved",
        "positive_amount",
        "amount_range",
        "date_format",
        "date_not_future",
        "date_order",
        "regex",
        "line_items_sum",
        "totals_reconcile",
        "min_confidence",
    )

    def __init__(
        self,
        rules_path: Path | str | None = None,
        mode: str = "balanced",
        today: Callable[[], date] = date.today,
    ) -> None:
        self.rules_path = Path(rules_path) if rules_path else None
        self.mode = ValidationMode(mode)
        self._today = today
        self._reload_lock = threading.Lock()
        self._mtime: float | None = None
        self._ruleset = self._load()
        self._validators: dict[
            str, Callable[[Rule, dict[str, Any], ResolvedRecord], tuple[bool, str]]
        ] = {
            "required": self._validate_required,
            "unresolved": self._validate_unresolved,
            "positive_amount": self._validate_positive_amount,
            "amount_range": self._validate_amount_range,
            "date_format": self._validate_date_format,
            "date_not_future": self._validate_date_not_future,
            "date_order": self._validate_date_order,
            "regex": self._validate_regex,
            "line_items_sum": self._validate_line_items_sum,
            "totals_reconcile": self._validate_totals_reconcile,
            "min_confidence": self._validate_min_confidence,
        }

    @property
    def ruleset(self) -> RuleSet:
        return self._ruleset

    def _load(self) -> RuleSet:
        if self.rules_path is not None and self.rules_path.exists():
            with open(self.rules_path) as f:
                try:
                    data = yaml.safe_load(f) or {}
                except yaml.YAMLError as exc:
                    raise ConfigurationError(
                        f"Cannot parse rules file {self.rules_path}: {exc}"
                    ) from exc
            self._mtime = self.rules_path.stat().st_mtime
            ruleset = parse_rules(data)
            logger.info(
                "Loaded validation rules v%d from %s (%d rules)",
                ruleset.version,
                self.rules_path,
                len(ruleset.rules),
            )
            return ruleset
        logger.debug("Using default validation rules")
        return parse_rules(DEFAULT_RULES)

    def reload_if_changed(self) -> bool:
        """Re-read the rule file if its modification time changed.

        Returns:
            True if a new rule set was swapped in.

        Raises:
            ConfigurationError: If the changed file is invalid. The previous
                rule set stays active.
        """
        if self.rules_path is None or not self.rules_path.exists():
            return False
        with self._reload_lock:
            mtime = self.rules_path.stat().st_mtime
            if mtime == self._mtime:
                return False
            previous = self._ruleset.version
            self._ruleset = self._load()
        logger.info("Validation rules reloaded: v%d -> v%d", previous, self._ruleset.version)
        return True

    def validate(self, record: ResolvedRecord, mode: str | None = None) -> ValidationResult:
        """Run every rule against a record.

        Args:
            record: Resolved record to check.
            mode: Validation mode; defaults to the engine's mode.

        Returns:
            Result listing every rule outcome.
        """
        ruleset = self._ruleset
        active = ValidationMode(mode) if mode else self.mode
        result = ValidationResult(mode=active, ruleset_version=ruleset.version)

        for rule in ruleset.rules:
            validator = self._validators[rule.check]
            passed, message = validator(rule, rule.params_for(active), record)
            result.outcomes.append(
                RuleOutcome(
                    rule_id=rule.id,
                    check=rule.check,
                    severity=ruleset.severity(rule, active),
                    passed=passed,
                    message=message,
                    fields=list(rule.fields),
                )
            )

        logger.info(
            "Validation of %s (%s, rules v%d): %s, %d hard failure(s), %d warning(s)",
            record.document_id,
            active,
            ruleset.version,
            "PASSED" if result.passed else "FAILED",
            len(result.hard_failures),
            result.warning_count,
        )
        return result

    def _validate_required(
        self, rule: Rule, params: dict[str, Any], record: ResolvedRecord
    ) -> tuple[bool, str]:
        missing = [name for name in rule.fields if record.value(name) in (None, "", [])]
        if missing:
            return False, f"Required fields missing: {', '.join(missing)}"
        return True, "All required fields present"

    def _validate_unresolved(
        self, rule: Rule, params: dict[str, Any], record: ResolvedRecord
    ) -> tuple[bool, str]:
        names = rule.fields or list(record.fields)
        unresolved = [
            name
            for name in names
            if name in record.fields and record.fields[name].status == FieldStatus.UNRESOLVED
        ]
        if unresolved:
            return False, f"Unresolved fields: {', '.join(unresolved)}"
        return True, "No unresolved fields"

    def _validate_positive_amount(
        self, rule: Rule, params: dict[str, Any], record: ResolvedRecord
    ) -> tuple[bool, str]:
        for name in rule.fields:
            value = record.value(name)
            if value is None:
                continue
            amount = _amount(value)
            if amount is None:
                return False, f"Invalid amount format for {name}: {value}"
            if amount <= 0:
                return False, f"Amount must be positive: {name}={amount}"
        return True, "Amounts positive"

    def _validate_amount_range(
        self, rule: Rule, params: dict[str, Any], record: ResolvedRecord
    ) -> tuple[bool, str]:
        min_val = Decimal(str(params.get("min", 0)))
        max_val = Decimal(str(params.get("max", 1_000_000)))
        for name in rule.fields:
            amount = _amount(record.value(name))
            if amount is None:
                continue
            if not min_val <= amount <= max_val:
                return False, f"{name}={amount} outside range [{min_val}, {max_val}]"
        return True, f"Amounts within [{min_val}, {max_val}]"

    def _validate_date_format(
        self, rule: Rule, params: dict[str, Any], record: ResolvedRecord
    ) -> tuple[bool, str]:
        for name in rule.fields:
            value = record.value(name)
            if value is None:
                continue
            if parse_date(str(value)) is None:
                return False, f"Invalid date format: {name}={value}"
        return True, "Dates well formed"

    def _validate_date_not_future(
        self, rule: Rule, params: dict[str, Any], record: ResolvedRecord
    ) -> tuple[bool, str]:
        limit = self._today() + timedelta(days=int(params.get("max_days_ahead", 0)))
        for name in rule.fields:
            parsed = parse_date(str(record.value(name) or ""))
            if parsed is not None and parsed.date() > limit:
                return False, f"{name} {parsed.date()} is after {limit}"
        return True, "No dates in the future"

    def _validate_date_order(
        self, rule: Rule, params: dict[str, Any], record: ResolvedRecord
    ) -> tuple[bool, str]:
        if len(rule.fields) != 2:
            return False, "date_order needs exactly two fields"
        first, second = (parse_date(str(record.value(name) or "")) for name in rule.fields)
        if first is None or second is None:
            return True, "Not applicable"
        if first > second:
            return False, f"{rule.fields[0]} is after {rule.fields[1]}"
        return True, "Dates in order"

    def _validate_regex(
        self, rule: Rule, params: dict[str, Any], record: ResolvedRecord
    ) -> tuple[bool, str]:
        pattern = params.get("pattern", "")
        for name in rule.fields:
            value = record.value(name)
            if value is None:
                continue
            if not re.fullmatch(pattern, str(value)):
                return False, f"{name}={value} does not match {pattern}"
        return True, "Pattern matched"

    def _validate_line_items_sum(
        self, rule: Rule, params: dict[str, Any], record: ResolvedRecord
    ) -> tuple[bool, str]:
        items = record.value("line_items")
        subtotal = _amount(record.value("subtotal"))
        total = _amount(record.value("total"))
        if not items or (subtotal is None and total is None):
            return True, "Not applicable"

        amounts = [_amount(item.get("amount")) for item in items]
        if any(a is None for a in amounts):
            return False, "Line item with invalid amount"
        items_sum = sum(amounts, Decimal("0"))
        if subtotal is not None:
            expected, label = subtotal, "subtotal"
        else:
            expected = total - (_amount(record.value("tax")) or Decimal("0"))
            label = "total minus tax"
        if abs(items_sum - expected) > _tolerance(expected, params):
            return False, f"Line items sum ({items_sum}) doesn't match {label} ({expected})"
        return True, f"Line items sum matches {label}"

    def _validate_totals_reconcile(
        self, rule: Rule, params: dict[str, Any], record: ResolvedRecord
    ) -> tuple[bool, str]:
        subtotal = _amount(record.value("subtotal"))
        tax = _amount(record.value("tax"))
        total = _amount(record.value("total"))
        if subtotal is None or tax is None or total is None:
            return True, "Not applicable"
        if abs(subtotal + tax - total) > _tolerance(total, params):
            return False, f"Subtotal ({subtotal}) + tax ({tax}) != total ({total})"
        return True, "Subtotal and tax reconcile with total"

    def _validate_min_confidence(
        self, rule: Rule, params: dict[str, Any], record: ResolvedRecord
    ) -> tuple[bool, str]:
        threshold = float(params.get("threshold", 0.7))
        names = rule.fields or list(record.fields)
        low = [
            f"{name} ({record.fields[name].confidence:.2f})"
            for name in names
            if name in record.fields
            and record.fields[name].status != FieldStatus.UNRESOLVED
            and record.fields[name].confidence < threshold
        ]
        if low:
            return False, f"Below {threshold:.2f}: {', '.join(low)}"
        return True, f"All fields at or above {threshold:.2f}"
