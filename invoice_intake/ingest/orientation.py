"""Quarter-turn orientation detection and box transforms.

Rotation is chosen among 0, 90, 180 and 270 degrees (clockwise correction)
by scoring three kinds of evidence:

* axis evidence: text lines make the ink profile along their axis much
  more uneven than across it;
* margin evidence: lines of left-aligned text start at the same offset and
  end at different ones, which tells the two directions of an axis apart;
* Tesseract OSD, when available, adds weight to the angle it reports.
"""

from collections.abc import Callable
from dataclasses import dataclass, field

import cv2
import numpy as np

from invoice_intake.ocr.engine import BoundingBox, OCRWord
from invoice_intake.preprocessing.binarize import ink_mask
from invoice_intake.utils.logger import get_logger

logger = get_logger(__name__)

ANALYSIS_MAX_SIDE = 1000
MIN_MARGIN_EVIDENCE = 0.2
ROTATE_FACTOR = 1.25
OSD_WEIGHT = 0.5

OsdFunction = Callable[[np.ndarray], tuple[int, float] | None]


@dataclass
class OrientationEvidence:
    """Scores per candidate rotation and the decision taken."""

    rotation: int
    scores: dict[int, float] = field(default_factory=dict)
    osd: tuple[int, float] | None = None


def _profile_unevenness(profile: np.ndarray) -> float:
    mean = float(profile.mean())
    if mean <= 0:
        return 0.0
    return float(profile.var()) / (mean * mean)


def _margin_preference(mask: np.ndarray) -> float:
    """Compare alignment of line starts versus line ends for horizontal lines.

    Returns:
        Value in [-1, 1]; positive when starts are better aligned (text
        reads left to right), negative when ends are.
    """
    rows = mask.any(axis=1)
    padded = np.concatenate([[False], rows, [False]]).astype(np.int8)
    diff = np.diff(padded)
    starts, ends = np.flatnonzero(diff == 1), np.flatnonzero(diff == -1)

    line_starts: list[int] = []
    line_ends: list[int] = []
    for top, bottom in zip(starts, ends):
        cols = np.flatnonzero(mask[top:bottom].any(axis=0))
        if cols.size:
            line_starts.append(int(cols[0]))
            line_ends.append(int(cols[-1]))
    if len(line_starts) < 3:
        return 0.0

    start_spread = float(np.std(line_starts))
    end_spread = float(np.std(line_ends))
    total = start_spread + end_spread
    if total <= 0:
        return 0.0
    return (end_spread - start_spread) / total


class OrientationDetector:
    """Scores quarter-turn rotations of a page.

    Args:
        osd: Optional callable returning ``(rotate, confidence)`` from
            Tesseract OSD, or ``None`` when it cannot decide.
    """

    def __init__(self, osd: OsdFunction | None = None) -> None:
        self.osd = osd

    def detect(self, image: np.ndarray) -> OrientationEvidence:
        """Pick the clockwise rotation that makes the page upright.

        Args:
            image: Page image (grayscale or RGB).

        Returns:
            Evidence with the chosen rotation; 0 when no evidence is
            decisive.
        """
        mask = ink_mask(image).astype(np.uint8)
        if not mask.any():
            return OrientationEvidence(rotation=0, scores={0: 1.0, 90: 0.0, 180: 0.0, 270: 0.0})

        scale = min(1.0, ANALYSIS_MAX_SIDE / max(mask.shape))
        if scale < 1.0:
            mask = cv2.resize(mask, None, fx=scale, fy=scale, interpolation=cv2.INTER_AREA)

        row_uneven = _profile_unevenness(mask.sum(axis=1, dtype=np.float64))
        col_uneven = _profile_unevenness(mask.sum(axis=0, dtype=np.float64))
        axis_h = row_uneven / (row_uneven + col_uneven) if row_uneven + col_uneven else 0.5

        margin_h = _margin_preference(mask)
        margin_v = _margin_preference(mask.T)
        if abs(margin_h) < MIN_MARGIN_EVIDENCE:
            margin_h = 0.0
        if abs(margin_v) < MIN_MARGIN_EVIDENCE:
            margin_v = 0.0

        scores = {
            0: axis_h * (1 + margin_h) / 2,
            180: axis_h * (1 - margin_h) / 2,
            # Top-aligned vertical lines mean the page was turned clockwise.
            270: (1 - axis_h) * (1 + margin_v) / 2,
            90: (1 - axis_h) * (1 - margin_v) / 2,
        }

        osd_result = self.osd(image) if self.osd else None
        if osd_result is not None:
            rotate, confidence = osd_result
            if rotate in scores:
                scores[rotate] += OSD_WEIGHT * min(confidence / 10.0, 1.0)

        best = max(scores, key=lambda angle: (scores[angle], -angle))
        rotation = best if scores[best] > scores[0] * ROTATE_FACTOR else 0
        logger.debug(
            "Orientation scores %s (osd=%s) -> %d",
            {k: round(v, 3) for k, v in scores.items()},
            osd_result,
            rotation,
        )
        return OrientationEvidence(rotation=rotation, scores=scores, osd=osd_result)


def apply_rotation(image: np.ndarray, rotation: int) -> np.ndarray:
    """Rotate an image clockwise by a multiple of 90 degrees."""
    k = (rotation // 90) % 4
    if k == 0:
        return image
    return np.ascontiguousarray(np.rot90(image, k=-k))


def rotate_box(box: BoundingBox, rotation: int, width: int, height: int) -> BoundingBox:
    """Map a box through a clockwise quarter-turn of a ``width x height`` image."""
    rotation %= 360
    if rotation == 90:
        return BoundingBox(height - box.bottom, box.x, box.height, box.width)
    if rotation == 180:
        return BoundingBox(width - box.right, height - box.bottom, box.width, box.height)
    if rotation == 270:
        return BoundingBox(box.y, width - box.right, box.height, box.width)
    return box


def transform_box(box: BoundingBox, matrix: np.ndarray) -> BoundingBox:
    """Map a box through a 2x3 affine matrix, returning the enclosing box."""
    corners = np.array(
        [
            [box.x, box.y, 1],
            [box.right, box.y, 1],
            [box.x, box.bottom, 1],
            [box.right, box.bottom, 1],
        ],
        dtype=np.float64,
    )
    mapped = corners @ matrix.T
    x0, y0 = mapped.min(axis=0)
    x1, y1 = mapped.max(axis=0)
    return BoundingBox(int(round(x0)), int(round(y0)), int(round(x1 - x0)), int(round(y1 - y0)))


def rotate_words(
    words: list[OCRWord], rotation: int, width: int, height: int
) -> list[OCRWord]:
    """Apply a quarter-turn to text-layer word boxes."""
    if rotation % 360 == 0:
        return words
    return [
        OCRWord(
            text=w.text,
            bbox=rotate_box(w.bbox, rotation, width, height),
            confidence=w.confidence,
            block_num=w.block_num,
            line_num=w.line_num,
            word_num=w.word_num,
        )
        for w in words
    ]


def skew_words(words: list[OCRWord], angle: float, width: int, height: int) -> list[OCRWord]:
    """Apply the same small-angle rotation used by deskew to word boxes."""
    if not angle:
        return words
    matrix = cv2.getRotationMatrix2D((width // 2, height // 2), angle, 1.0)
    return [
        OCRWord(
            text=w.text,
            bbox=transform_box(w.bbox, matrix),
            confidence=w.confidence,
            block_num=w.block_num,
            line_num=w.line_num,
            word_num=w.word_num,
        )
        for w in words
    ]
