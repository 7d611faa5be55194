"""Confidence calibration curves.

A curve maps a raw confidence in [0, 1] to a calibrated one by piecewise
linear interpolation between fixed points, one curve per field type. Curves
are versioned and append-only: a new version is added, an existing one is
never modified, so any past resolution can be reproduced by naming the
version it used. Curves are loaded once and shared read-only.
"""

from dataclasses import dataclass
from pathlib import Path

import numpy as np
import yaml

from invoice_intake.errors import ConfigurationError
from invoice_intake.utils.config import load_yaml
from invoice_intake.utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_POINTS: list[tuple[float, float]] = [
    (0.0, 0.0),
    (0.3, 0.2),
    (0.5, 0.45),
    (0.7, 0.68),
    (0.85, 0.88),
    (0.9, 0.95),
    (1.0, 0.99),
]


@dataclass(frozen=True)
class CalibrationCurve:
    """One version of the calibration curve for one field type."""

    field_type: str
    version: int
    points: tuple[tuple[float, float], ...]

    def __post_init__(self) -> None:
        if len(self.points) < 2:
            raise ConfigurationError(
                f"Calibration curve {self.field_type} v{self.version} needs two points"
            )
        xs = [x for x, _ in self.points]
        ys = [y for _, y in self.points]
        if xs != sorted(xs) or len(set(xs)) != len(xs):
            raise ConfigurationError(
                f"Calibration curve {self.field_type} v{self.version}: "
                "raw values must be strictly increasing"
            )
        if ys != sorted(ys):
            raise ConfigurationError(
                f"Calibration curve {self.field_type} v{self.version} must be monotonic"
            )
        if min(xs + ys) < 0.0 or max(xs + ys) > 1.0:
            raise ConfigurationError(
                f"Calibration curve {self.field_type} v{self.version} leaves [0, 1]"
            )

    def apply(self, raw: float) -> float:
        xs = [x for x, _ in self.points]
        ys = [y for _, y in self.points]
        return float(np.interp(min(max(raw, 0.0), 1.0), xs, ys))

    def to_dict(self) -> dict:
        return {
            "field_type": self.field_type,
            "version": self.version,
            "points": [list(p) for p in self.points],
        }


class Calibrator:
    """Versioned calibration curves keyed by field type.

    Field types without a curve of their own use the ``default`` curve.

    Args:
        curves: Initial curves. A built-in ``default`` v1 curve is added
            when none is supplied.
    """

    DEFAULT_TYPE = "default"

    def __init__(self, curves: list[CalibrationCurve] | None = None) -> None:
        self._curves: dict[str, list[CalibrationCurve]] = {}
        for curve in curves or []:
            self.append(curve)
        if self.DEFAULT_TYPE not in self._curves:
            self.append(CalibrationCurve(self.DEFAULT_TYPE, 1, tuple(DEFAULT_POINTS)))

    @classmethod
    def load(cls, path: Path | str) -> "Calibrator":
        """Load curves from YAML.

        The file holds a ``curves`` list with ``field_type``, ``version``
        and ``points`` (pairs of raw and calibrated values).

        Raises:
            ConfigurationError: If a curve is malformed or a version repeats.
        """
        raw = load_yaml(path)
        curves: list[CalibrationCurve] = []
        if raw:
            try:
                for entry in raw.get("curves", []):
                    curves.append(
                        CalibrationCurve(
                            field_type=str(entry["field_type"]),
                            version=int(entry["version"]),
                            points=tuple((float(x), float(y)) for x, y in entry["points"]),
                        )
                    )
            except (KeyError, TypeError, ValueError) as exc:
                raise ConfigurationError(f"Invalid calibration file {path}: {exc}") from exc
            logger.info("Loaded %d calibration curves from %s", len(curves), path)
        return cls(curves)

    def save(self, path: Path | str) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        curves = [c.to_dict() for versions in self._curves.values() for c in versions]
        with open(path, "w") as f:
            yaml.safe_dump({"curves": curves}, f, sort_keys=False)

    def append(self, curve: CalibrationCurve) -> None:
        """Add a new curve version.

        Raises:
            ConfigurationError: If the version is not newer than the latest
                version for that field type.
        """
        versions = self._curves.setdefault(curve.field_type, [])
        if versions and curve.version <= versions[-1].version:
            raise ConfigurationError(
                f"Calibration curve {curve.field_type} v{curve.version} is not newer "
                f"than v{versions[-1].version}"
            )
        versions.append(curve)

    def curve(self, field_type: str, version: int | None = None) -> CalibrationCurve:
        """Return the curve for a field type.

        Args:
            field_type: Field type name.
            version: Newest version to consider; ``None`` means latest.
        """
        versions = self._curves.get(str(field_type)) or self._curves[self.DEFAULT_TYPE]
        eligible = [c for c in versions if version is None or c.version <= version]
        if not eligible:
            raise ConfigurationError(
                f"No calibration curve for {field_type} at version {version}"
            )
        return eligible[-1]

    def calibrate(self, field_type: str, raw: float, version: int | None = None) -> float:
        return self.curve(field_type, version).apply(raw)

    def versions(self, field_type: str) -> list[int]:
        return [c.version for c in self._curves.get(str(field_type), [])]
