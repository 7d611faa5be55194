"""Accuracy and calibration benchmarking for resolved records.

Scores predicted field values against labeled ground truth and checks
whether reported confidences can be trusted: predictions are grouped
into equal-width confidence buckets, and each bucket's observed accuracy
is compared with its mean confidence. A well-calibrated resolver has a
mean calibration error near zero, which is what new calibration curve
versions are judged on before they are shipped.
"""

import csv
import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from invoice_intake.extraction.normalize import parse_amount, parse_date
from invoice_intake.utils.logger import get_logger

logger = get_logger(__name__)

_AMOUNT_CHARS = re.compile(r"[$€£\-()\d.,]+")
_RULE = "-" * 60
_BANNER = "=" * 60


def _ratio(numerator: float, denominator: float) -> float:
    return numerator / denominator if denominator else 0.0


@dataclass
class FieldMetrics:
    """Match counts for one field across the labeled set.

    ``exact_matches`` counts predictions equal to the label as typed;
    ``true_positives`` also includes values equal after normalization.
    """

    field_name: str
    true_positives: int = 0
    false_positives: int = 0
    false_negatives: int = 0
    exact_matches: int = 0
    total: int = 0

    @property
    def precision(self) -> float:
        return _ratio(self.true_positives, self.true_positives + self.false_positives)

    @property
    def recall(self) -> float:
        return _ratio(self.true_positives, self.true_positives + self.false_negatives)

    @property
    def f1(self) -> float:
        return _ratio(2 * self.precision * self.recall, self.precision + self.recall)

    @property
    def accuracy(self) -> float:
        return _ratio(self.true_positives, self.total)


@dataclass
class ReliabilityBucket:
    """Predictions whose confidence fell in ``[lower, upper)``."""

    lower: float
    upper: float
    count: int = 0
    correct: int = 0
    confidence_sum: float = 0.0

    @property
    def accuracy(self) -> float:
        return _ratio(self.correct, self.count)

    @property
    def mean_confidence(self) -> float:
        return _ratio(self.confidence_sum, self.count)

    @property
    def gap(self) -> float:
        return abs(self.accuracy - self.mean_confidence)

    def add(self, confidence: float, correct: bool) -> None:
        self.count += 1
        self.confidence_sum += confidence
        self.correct += int(correct)


@dataclass
class BenchmarkResult:
    """Aggregated benchmark results across all documents and fields.

    Args:
        total_documents: Number of documents in ground truth.
        successful_documents: Number of documents with predictions.
        overall_accuracy: Mean field-level accuracy.
        overall_f1: Mean field-level F1 score.
        field_metrics: Per-field metric details.
        buckets: Reliability table over reported confidences.
        mean_calibration_error: Count-weighted mean gap between bucket
            accuracy and bucket mean confidence.
        errors: Documents that could not be scored.
    """

    total_documents: int
    successful_documents: int
    overall_accuracy: float
    overall_f1: float
    field_metrics: dict[str, FieldMetrics]
    buckets: list[ReliabilityBucket] = field(default_factory=list)
    mean_calibration_error: float = 0.0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        fields = {}
        for name, m in sorted(self.field_metrics.items()):
            fields[name] = {
                "precision": round(m.precision, 4),
                "recall": round(m.recall, 4),
                "f1": round(m.f1, 4),
                "accuracy": round(m.accuracy, 4),
                "total": m.total,
            }
        buckets = [
            {
                "range": [b.lower, b.upper],
                "count": b.count,
                "accuracy": round(b.accuracy, 4),
                "mean_confidence": round(b.mean_confidence, 4),
            }
            for b in self.buckets
        ]
        return {
            "total_documents": self.total_documents,
            "successful_documents": self.successful_documents,
            "overall_accuracy": round(self.overall_accuracy, 4),
            "overall_f1": round(self.overall_f1, 4),
            "mean_calibration_error": round(self.mean_calibration_error, 4),
            "fields": fields,
            "buckets": buckets,
            "errors": self.errors,
        }


def _split(prediction: Any) -> tuple[Any, float | None]:
    """Accept either a bare value or ``{"value": ..., "confidence": ...}``."""
    if isinstance(prediction, dict) and "value" in prediction:
        confidence = prediction.get("confidence")
        return prediction["value"], None if confidence is None else float(confidence)
    return prediction, None


class Evaluator:
    """Scores predictions against ground truth and builds the reliability table.

    Amounts and dates are compared after normalization, so ``1,234.50``
    matches ``1234.5`` and ``03/15/2024`` matches ``2024-03-15``.

    Args:
        fuzzy_threshold: Largest amount difference still counted as a match.
        bucket_count: Number of equal-width confidence buckets.
    """

    def __init__(self, fuzzy_threshold: float = 0.01, bucket_count: int = 10) -> None:
        if bucket_count < 1:
            raise ValueError("bucket_count must be at least 1")
        self.fuzzy_threshold = fuzzy_threshold
        self.bucket_count = bucket_count

    def _new_buckets(self) -> list[ReliabilityBucket]:
        edges = [round(i / self.bucket_count, 4) for i in range(self.bucket_count + 1)]
        return [ReliabilityBucket(lo, hi) for lo, hi in zip(edges, edges[1:])]

    def _bucket_index(self, confidence: float) -> int:
        # Confidence 1.0 belongs to the last bucket.
        return min(int(max(confidence, 0.0) * self.bucket_count), self.bucket_count - 1)

    def _matches(self, predicted: Any, expected: Any) -> tuple[bool, bool]:
        """Return ``(exact, correct)`` for one predicted value."""
        pred_value = str(predicted).strip().lower()
        exp_value = str(expected).strip().lower()
        if pred_value == exp_value:
            return True, True
        return False, self._fuzzy_match(pred_value, exp_value)

    def evaluate(
        self,
        predictions: dict[str, dict[str, Any]],
        ground_truth: dict[str, dict[str, str]],
    ) -> BenchmarkResult:
        """Compare predictions against ground truth and compute metrics.

        A labeled field with no predicted value counts as a false negative;
        only predictions that carry a confidence enter the reliability table.

        Args:
            predictions: Mapping of document to field values, each either a
                bare value or a mapping with ``value`` and ``confidence``.
            ground_truth: Mapping of document to expected field values.

        Returns:
            Aggregated benchmark results with per-field metrics and the
            reliability table.
        """
        metrics: dict[str, FieldMetrics] = {}
        buckets = self._new_buckets()
        errors: list[str] = []

        for filename, expected in ground_truth.items():
            predicted = predictions.get(filename)
            if predicted is None:
                errors.append(f"Missing prediction for {filename}")
                predicted = {}

            for field_name, expected_value in expected.items():
                m = metrics.setdefault(field_name, FieldMetrics(field_name))
                m.total += 1
                value, confidence = _split(predicted.get(field_name))
                if value is None or value == "":
                    m.false_negatives += 1
                    continue

                exact, correct = self._matches(value, expected_value)
                m.exact_matches += int(exact)
                if correct:
                    m.true_positives += 1
                else:
                    m.false_positives += 1
                if confidence is not None:
                    buckets[self._bucket_index(confidence)].add(confidence, correct)

        scored = [m for m in metrics.values() if m.total]
        counted = sum(b.count for b in buckets)
        result = BenchmarkResult(
            total_documents=len(ground_truth),
            successful_documents=len(ground_truth) - len(errors),
            overall_accuracy=_ratio(sum(m.accuracy for m in scored), len(scored)),
            overall_f1=_ratio(sum(m.f1 for m in scored), len(scored)),
            field_metrics=metrics,
            buckets=buckets,
            mean_calibration_error=_ratio(sum(b.count * b.gap for b in buckets), counted),
            errors=errors,
        )
        logger.info(
            "Scored %d documents: accuracy %.3f, calibration error %.3f",
            result.total_documents,
            result.overall_accuracy,
            result.mean_calibration_error,
        )
        return result

    def _fuzzy_match(self, pred: str, expected: str) -> bool:
        """Check if two values match after normalizing amounts and dates.

        Args:
            pred: Predicted value (lowercased, stripped).
            expected: Expected value (lowercased, stripped).

        Returns:
            True if values are considered equivalent.
        """
        pred_clean = pred.replace(" ", "")
        exp_clean = expected.replace(" ", "")
        if pred_clean == exp_clean:
            return True

        pred_date, exp_date = parse_date(pred), parse_date(expected)
        if pred_date is not None and exp_date is not None:
            return pred_date == exp_date

        if not (_AMOUNT_CHARS.fullmatch(pred_clean) and _AMOUNT_CHARS.fullmatch(exp_clean)):
            return False
        pred_num, exp_num = parse_amount(pred), parse_amount(expected)
        if pred_num is None or exp_num is None:
            return False
        return abs(float(pred_num - exp_num)) < self.fuzzy_threshold

    def generate_report(
        self, result: BenchmarkResult, output_path: Path | None = None
    ) -> str:
        """Format the field metrics and reliability table as plain text.

        Args:
            result: Benchmark results to format.
            output_path: Optional path to write the report file.

        Returns:
            Formatted report string.
        """
        summary = [
            ("Total Documents", str(result.total_documents)),
            ("Successful", str(result.successful_documents)),
            ("Overall Accuracy", f"{result.overall_accuracy:.2%}"),
            ("Overall F1 Score", f"{result.overall_f1:.3f}"),
            ("Mean Calibration Error", f"{result.mean_calibration_error:.3f}"),
        ]
        lines = [_BANNER, "BENCHMARK REPORT", _BANNER]
        lines.extend(f"{label + ':':<23} {value}" for label, value in summary)

        lines += ["", "Field-Level Metrics:", _RULE]
        lines.append(f"{'Field':<20} {'Precision':>10} {'Recall':>10} {'F1':>10} {'Accuracy':>10}")
        lines.append(_RULE)
        for name, m in sorted(result.field_metrics.items()):
            lines.append(
                f"{name:<20} {m.precision:>10.2%} {m.recall:>10.2%} "
                f"{m.f1:>10.3f} {m.accuracy:>10.2%}"
            )

        lines += [_RULE, "", "Reliability:", _RULE]
        lines.append(f"{'Confidence':<20} {'Count':>10} {'Accuracy':>14} {'Mean conf':>14}")
        lines.append(_RULE)
        for b in result.buckets:
            if b.count:
                label = f"{b.lower:.2f}-{b.upper:.2f}"
                lines.append(
                    f"{label:<20} {b.count:>10} {b.accuracy:>14.2%} {b.mean_confidence:>14.3f}"
                )
        lines.append(_BANNER)

        if result.errors:
            lines += ["", "Errors:"]
            lines.extend(f"  - {error}" for error in result.errors)

        report = "\n".join(lines)
        if output_path:
            output_path.parent.mkdir(parents=True, exist_ok=True)
            output_path.write_text(report)
            logger.info("Report written to %s", output_path)
        return report


def load_ground_truth(path: Path) -> dict[str, dict[str, str]]:
    """Load ground truth labels from a JSON or CSV file.

    JSON holds ``{"filename": {"field": "value", ...}, ...}``; CSV holds a
    ``filename`` column plus one column per field, where blank cells mean
    the field is not labeled.

    Raises:
        ValueError: If the file format is not supported.
    """
    suffix = path.suffix.lower()
    if suffix == ".json":
        return json.loads(path.read_text())
    if suffix == ".csv":
        with open(path, newline="") as f:
            return {
                row.pop("filename"): {k: v for k, v in row.items() if v}
                for row in csv.DictReader(f)
            }
    raise ValueError(f"Unsupported ground truth format: {path.suffix}")


def load_predictions(path: Path) -> dict[str, dict[str, Any]]:
    """Load predictions written by ``invoice-intake extract``.

    Accepts a JSON mapping of document to fields, or a directory of
    ``extract`` JSON outputs keyed by their ``filename`` entry.
    """
    if not path.is_dir():
        return json.loads(path.read_text())

    predictions: dict[str, dict[str, Any]] = {}
    for item in sorted(path.glob("*.json")):
        data = json.loads(item.read_text())
        fields = data.get("record", {}).get("fields", {})
        predictions[data.get("filename", item.stem)] = {
            name: {"value": entry.get("value"), "confidence": entry.get("confidence")}
            for name, entry in fields.items()
        }
    return predictions
