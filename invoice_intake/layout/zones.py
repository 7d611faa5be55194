"""Zone detection for invoice pages.

Segments a page into horizontal bands separated by whitespace gaps and
ruled lines, then classifies each band from its position, column structure,
font size and ink density. Bands that match no rule become Unclassified;
nothing on the page is dropped.
"""

from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Any

import cv2
import numpy as np

from invoice_intake.errors import ConfigurationError
from invoice_intake.ocr.engine import BoundingBox
from invoice_intake.preprocessing.binarize import ink_mask
from invoice_intake.utils.config import ZoneConfig
from invoice_intake.utils.logger import get_logger

logger = get_logger(__name__)

# Ink covering less than this share of the page counts as a blank page.
BLANK_INK_RATIO = 0.0005
LARGE_FONT_FACTOR = 1.6


class ZoneType(StrEnum):
    """Semantic type of a page region."""

    HEADER_FIELDS = "HeaderFields"
    TOTALS_BOX = "TotalsBox"
    LINE_ITEMS_TABLE = "LineItemsTable"
    FOOTER = "Footer"
    NOISE = "Noise"
    UNCLASSIFIED = "Unclassified"


@dataclass(frozen=True)
class ZoneBox:
    """A classified page region.

    ``whiteouts`` are mask rectangles (page coordinates) too small to mask
    the whole zone; they are painted white when the zone is cropped.
    """

    zone_type: ZoneType
    bbox: BoundingBox
    index: int = 0
    columns: int = 1
    font_size: float = 0.0
    masked: bool = False
    mask_reason: str | None = None
    whiteouts: tuple[BoundingBox, ...] = field(default_factory=tuple)
    manual: bool = False

    def to_params(self) -> dict[str, Any]:
        params = {
            "zone_type": str(self.zone_type),
            "bbox": self.bbox.to_list(),
            "index": self.index,
            "whiteouts": [w.to_list() for w in self.whiteouts],
        }
        if self.manual:
            params["manual"] = True
        return params


@dataclass(frozen=True)
class ZoneOverride:
    """A reviewer-drawn zone that replaces the detected zone of its type."""

    zone_type: ZoneType
    bbox: BoundingBox
    author: str = "unknown"

    def to_dict(self) -> dict[str, Any]:
        return {
            "zone_type": str(self.zone_type),
            "bbox": self.bbox.to_list(),
            "author": self.author,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ZoneOverride":
        return cls(
            zone_type=ZoneType(data["zone_type"]),
            bbox=BoundingBox.from_list(data["bbox"]),
            author=str(data.get("author", "unknown")),
        )


@dataclass
class _Band:
    top: int
    bottom: int
    left: int = 0
    right: int = 0
    columns: int = 1
    font_size: float = 0.0
    ink_ratio: float = 0.0
    zone_type: ZoneType = ZoneType.UNCLASSIFIED


def crop_zone(image: np.ndarray, zone: ZoneBox) -> np.ndarray:
    """Cut a zone out of a page-sized image, whiting out partial masks."""
    b = zone.bbox
    crop = image[b.y : b.bottom, b.x : b.right].copy()
    for rect in zone.whiteouts:
        x0 = max(rect.x - b.x, 0)
        y0 = max(rect.y - b.y, 0)
        x1 = min(rect.right - b.x, crop.shape[1])
        y1 = min(rect.bottom - b.y, crop.shape[0])
        if x1 > x0 and y1 > y0:
            crop[y0:y1, x0:x1] = 255
    return crop


def _runs(flags: np.ndarray) -> list[tuple[int, int]]:
    """Return ``[start, end)`` runs of True values in a 1-D boolean array."""
    padded = np.concatenate([[False], flags.astype(bool), [False]])
    diff = np.diff(padded.astype(np.int8))
    starts = np.flatnonzero(diff == 1)
    ends = np.flatnonzero(diff == -1)
    return list(zip(starts.tolist(), ends.tolist()))


class ZoneDetector:
    """Layout heuristics that turn a page image into typed zones.

    Args:
        config: Zone detection thresholds.
    """

    def __init__(self, config: ZoneConfig | None = None) -> None:
        self.config = config or ZoneConfig()

    def detect(self, image: np.ndarray) -> list[ZoneBox]:
        """Detect and classify zones on a page.

        Args:
            image: Page image (grayscale or RGB).

        Returns:
            Zones in top-to-bottom order. A blank page yields a single
            Unclassified zone covering the whole page.
        """
        h, w = image.shape[:2]
        ink = ink_mask(image)
        if ink.mean() < BLANK_INK_RATIO:
            logger.debug("Blank page, returning a single unclassified zone")
            return [ZoneBox(ZoneType.UNCLASSIFIED, BoundingBox(0, 0, w, h))]

        rules = self._rule_rows(ink, w)
        text_ink = ink.copy()
        for top, bottom in rules:
            text_ink[top:bottom, :] = False

        body_font = self._body_font_size(text_ink)
        bands = self._bands(text_ink, rules, h)
        for band in bands:
            self._measure(band, text_ink, body_font, w)
            band.zone_type = self._classify(band, body_font, w, h)

        zones = self._merge(bands, w, h)
        logger.info(
            "Detected %d zones: %s",
            len(zones),
            ", ".join(str(z.zone_type) for z in zones),
        )
        return zones

    def apply_override(self, zones: list[ZoneBox], override: ZoneOverride) -> list[ZoneBox]:
        """Replace every detected zone of the override's type with the override.

        Args:
            zones: Zones of one page.
            override: Reviewer-drawn zone, clipped to the page extent.

        Returns:
            Zones in top-to-bottom order, re-indexed.

        Raises:
            ConfigurationError: If manual overrides are disabled.
        """
        if not self.config.manual_override_enabled:
            raise ConfigurationError("Manual zone overrides are disabled")

        kept = [z for z in zones if z.zone_type != override.zone_type]
        kept.append(ZoneBox(override.zone_type, override.bbox, manual=True))
        kept.sort(key=lambda z: (z.bbox.y, z.bbox.x))
        logger.info(
            "Zone override by %s: %s at %s",
            override.author,
            override.zone_type,
            override.bbox.to_list(),
        )
        return [replace(zone, index=i) for i, zone in enumerate(kept)]

    def _rule_rows(self, ink: np.ndarray, width: int) -> list[tuple[int, int]]:
        """Find horizontal ruled lines as runs of rows holding a long stroke."""
        kernel_width = max(width // 4, 10)
        kernel = cv2.getStructuringElement(cv2.MORPH_RECT, (kernel_width, 1))
        lines = cv2.morphologyEx(ink.astype(np.uint8), cv2.MORPH_OPEN, kernel)
        return _runs(lines.any(axis=1))

    @staticmethod
    def _body_font_size(text_ink: np.ndarray) -> float:
        """Median connected-component height, a proxy for body text size."""
        count, _, stats, _ = cv2.connectedComponentsWithStats(
            text_ink.astype(np.uint8), connectivity=8
        )
        heights = [
            stats[i, cv2.CC_STAT_HEIGHT]
            for i in range(1, count)
            if stats[i, cv2.CC_STAT_AREA] >= 4
        ]
        return float(np.median(heights)) if heights else 0.0

    def _bands(
        self, text_ink: np.ndarray, rules: list[tuple[int, int]], height: int
    ) -> list[_Band]:
        min_gap = max(self.config.min_band_height, int(height * self.config.min_gap_ratio))
        row_runs = _runs(text_ink.any(axis=1))

        bands: list[_Band] = []
        for top, bottom in row_runs:
            if bands:
                previous = bands[-1]
                gap = top - previous.bottom
                ruled = any(previous.bottom <= r_top < top for r_top, _ in rules)
                if gap < min_gap and not ruled:
                    previous.bottom = bottom
                    continue
            bands.append(_Band(top=top, bottom=bottom))
        return bands

    def _measure(
        self, band: _Band, text_ink: np.ndarray, body_font: float, width: int
    ) -> None:
        region = text_ink[band.top : band.bottom, :]
        cols = region.any(axis=0)
        col_runs = _runs(cols)
        band.left = col_runs[0][0]
        band.right = col_runs[-1][1]

        min_col_gap = max(int(body_font * 2), width // 50, 4)
        groups = 1
        for (_, prev_end), (start, _) in zip(col_runs, col_runs[1:]):
            if start - prev_end >= min_col_gap:
                groups += 1
        band.columns = groups

        count, _, stats, _ = cv2.connectedComponentsWithStats(
            region.astype(np.uint8), connectivity=8
        )
        heights = [stats[i, cv2.CC_STAT_HEIGHT] for i in range(1, count)]
        band.font_size = float(np.median(heights)) if heights else 0.0
        area = max((band.bottom - band.top) * (band.right - band.left), 1)
        band.ink_ratio = float(region.sum()) / area

    def _classify(
        self, band: _Band, body_font: float, width: int, height: int
    ) -> ZoneType:
        cfg = self.config
        band_height = band.bottom - band.top
        lines = max(1, round(band_height / max(body_font * 1.8, 1.0)))

        if band.ink_ratio > cfg.noise_ink_ratio or band_height < cfg.min_band_height:
            return ZoneType.NOISE
        if band.top >= height * (1 - cfg.footer_ratio):
            return ZoneType.FOOTER
        if band.columns >= cfg.table_min_columns and lines >= 2:
            return ZoneType.LINE_ITEMS_TABLE
        if band.bottom <= height * cfg.header_ratio:
            return ZoneType.HEADER_FIELDS
        if body_font and band.font_size > body_font * LARGE_FONT_FACTOR and band.top < height / 2:
            return ZoneType.HEADER_FIELDS
        if band.left >= width * 0.45 and band.top >= height * cfg.header_ratio:
            return ZoneType.TOTALS_BOX
        return ZoneType.UNCLASSIFIED

    def _merge(self, bands: list[_Band], width: int, height: int) -> list[ZoneBox]:
        pad = self.config.zone_padding
        zones: list[ZoneBox] = []
        for band in bands:
            box = BoundingBox(
                max(band.left - pad, 0),
                max(band.top - pad, 0),
                min(band.right + pad, width) - max(band.left - pad, 0),
                min(band.bottom + pad, height) - max(band.top - pad, 0),
            )
            if zones and zones[-1].zone_type == band.zone_type:
                last = zones[-1]
                zones[-1] = replace(
                    last,
                    bbox=last.bbox.union(box),
                    columns=max(last.columns, band.columns),
                    font_size=max(last.font_size, band.font_size),
                )
                continue
            zones.append(
                ZoneBox(
                    zone_type=band.zone_type,
                    bbox=box,
                    index=len(zones),
                    columns=band.columns,
                    font_size=band.font_size,
                )
            )
        return zones


def zone_for_box(zones: list[ZoneBox], box: BoundingBox) -> ZoneBox | None:
    """Return the zone holding the largest share of a box, if any."""
    best: ZoneBox | None = None
    best_overlap = 0
    for zone in zones:
        overlap = zone.bbox.intersection_area(box)
        if overlap > best_overlap:
            best, best_overlap = zone, overlap
    return best
