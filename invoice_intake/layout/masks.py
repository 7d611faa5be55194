"""Automatic and user-authored masks over page zones.

Masks hide regions that only produce OCR noise: Noise zones, logos and
watermarks are found automatically; reviewers can add rectangles per
vendor that are reused on every later document from that vendor. A zone
covered beyond the configured ratio is flagged masked and never scheduled
for OCR; smaller overlaps are whited out in the zone crop.
"""

from dataclasses import dataclass, replace
from typing import Any

import cv2
import numpy as np

from invoice_intake.ocr.engine import BoundingBox
from invoice_intake.preprocessing.binarize import ink_mask, to_gray
from invoice_intake.utils.config import ZoneConfig
from invoice_intake.utils.logger import get_logger

from .zones import ZoneBox, ZoneType

logger = get_logger(__name__)


@dataclass(frozen=True)
class Mask:
    """A rectangle in page coordinates that should not be read."""

    rect: BoundingBox
    reason: str
    author: str = "auto"

    def to_dict(self) -> dict[str, Any]:
        return {"rect": self.rect.to_list(), "reason": self.reason, "author": self.author}


@dataclass(frozen=True)
class UserMask(Mask):
    """A reviewer-authored mask stored with the vendor profile."""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "UserMask":
        return cls(
            rect=BoundingBox.from_list(data["rect"]),
            reason=str(data.get("reason", "")),
            author=str(data.get("author", "unknown")),
        )


class MaskEngine:
    """Finds automatic masks and applies masks to zones.

    Args:
        config: Zone configuration holding the mask thresholds.
    """

    def __init__(self, config: ZoneConfig | None = None) -> None:
        self.config = config or ZoneConfig()

    def auto_masks(self, image: np.ndarray, zones: list[ZoneBox]) -> list[Mask]:
        """Detect noise, logo and watermark masks on a page.

        Args:
            image: Page image.
            zones: Zones detected on the same page.

        Returns:
            Automatic masks; empty when auto-masking is disabled.
        """
        if not self.config.auto_mask_enabled:
            return []

        masks = [Mask(z.bbox, "noise") for z in zones if z.zone_type == ZoneType.NOISE]
        masks.extend(self._logo_masks(image))
        masks.extend(self._watermark_masks(image))
        if masks:
            logger.info(
                "Auto masks: %s", ", ".join(f"{m.reason}@{m.rect.to_list()}" for m in masks)
            )
        return masks

    def _logo_masks(self, image: np.ndarray) -> list[Mask]:
        """Large, dense connected components that are not text strokes."""
        h, w = image.shape[:2]
        page_area = h * w
        ink = ink_mask(image).astype(np.uint8)
        closed = cv2.morphologyEx(ink, cv2.MORPH_CLOSE, np.ones((5, 5), np.uint8))
        count, _, stats, _ = cv2.connectedComponentsWithStats(closed, connectivity=8)

        masks: list[Mask] = []
        for i in range(1, count):
            x, y, bw, bh, _ = (int(v) for v in stats[i])
            box_area = bw * bh
            if box_area < page_area * self.config.logo_min_area_ratio:
                continue
            fill = float(ink[y : y + bh, x : x + bw].mean())
            aspect = bw / max(bh, 1)
            # Ruled lines and table borders are long and thin, not logos.
            if fill >= self.config.logo_min_fill and 0.2 <= aspect <= 5.0:
                masks.append(Mask(BoundingBox(x, y, bw, bh), "logo"))
        return masks

    def _watermark_masks(self, image: np.ndarray) -> list[Mask]:
        """Large regions of light-gray, low-contrast coverage."""
        gray = to_gray(image)
        h, w = gray.shape
        light = ((gray >= 170) & (gray <= 235)).astype(np.uint8)
        kernel = np.ones((15, 15), np.uint8)
        blob = cv2.morphologyEx(light, cv2.MORPH_CLOSE, kernel)
        count, _, stats, _ = cv2.connectedComponentsWithStats(blob, connectivity=8)

        masks: list[Mask] = []
        for i in range(1, count):
            x, y, bw, bh, _ = (int(v) for v in stats[i])
            if bw * bh < h * w * self.config.watermark_min_coverage:
                continue
            density = float(light[y : y + bh, x : x + bw].mean())
            if density >= 0.3:
                masks.append(Mask(BoundingBox(x, y, bw, bh), "watermark"))
        return masks

    def apply(self, zones: list[ZoneBox], masks: list[Mask]) -> list[ZoneBox]:
        """Flag or white out zones covered by masks.

        Args:
            zones: Detected zones.
            masks: Automatic and user masks in page coordinates.

        Returns:
            New zone list. Zones covered beyond ``mask_overlap_ratio`` are
            flagged masked with the reason of the largest covering mask;
            others carry the partial overlaps as whiteout rectangles.
        """
        result: list[ZoneBox] = []
        for zone in zones:
            area = max(zone.bbox.area, 1)
            covering: list[tuple[float, Mask]] = []
            for mask in masks:
                overlap = zone.bbox.intersection_area(mask.rect)
                if overlap:
                    covering.append((overlap / area, mask))

            if not covering:
                result.append(zone)
                continue

            ratio, strongest = max(covering, key=lambda item: item[0])
            if ratio >= self.config.mask_overlap_ratio or zone.zone_type == ZoneType.NOISE:
                result.append(replace(zone, masked=True, mask_reason=strongest.reason))
                logger.debug(
                    "Zone %d (%s) masked: %s (%.0f%% covered)",
                    zone.index,
                    zone.zone_type,
                    strongest.reason,
                    ratio * 100,
                )
            else:
                result.append(
                    replace(zone, whiteouts=tuple(m.rect for _, m in covering))
                )
        return result
