"""Deskew correction for scanned invoice pages.

Detects small rotational skew with a Hough line transform and falls back
to a projection-profile search when no usable lines are found.
"""

import cv2
import numpy as np

from invoice_intake.utils.logger import get_logger

from .binarize import ink_mask, to_gray

logger = get_logger(__name__)

SEARCH_STEP_DEGREES = 0.25
SEARCH_MAX_SIDE = 1000


def detect_skew_angle(image: np.ndarray, max_skew: float = 15.0) -> float | None:
    """Detect the skew angle of a page from its dominant line segments.

    Uses Hough line transform on the edge-detected image and returns the
    median angle of near-horizontal segments.

    Args:
        image: Input image as a numpy array (RGB or grayscale).
        max_skew: Segments steeper than this (degrees) are ignored.

    Returns:
        Estimated skew angle in degrees, or ``None`` without usable lines.
    """
    gray = to_gray(image)
    edges = cv2.Canny(gray, 50, 150, apertureSize=3)
    min_length = max(100, gray.shape[1] // 8)
    lines = cv2.HoughLinesP(
        edges, 1, np.pi / 180, 100, minLineLength=min_length, maxLineGap=10
    )

    if lines is None:
        logger.debug("No lines detected for skew estimation")
        return None

    angles = [
        np.arctan2(y2 - y1, x2 - x1) * 180 / np.pi for x1, y1, x2, y2 in lines[:, 0]
    ]
    angles = [a for a in angles if abs(a) < max_skew]
    if not angles:
        logger.debug("No near-horizontal lines for skew estimation")
        return None

    median_angle = float(np.median(angles))
    logger.debug("Detected skew angle: %.2f degrees", median_angle)
    return median_angle


def _profile_score(mask: np.ndarray, angle: float) -> float:
    h, w = mask.shape
    matrix = cv2.getRotationMatrix2D((w / 2, h / 2), angle, 1.0)
    rotated = cv2.warpAffine(mask, matrix, (w, h), flags=cv2.INTER_NEAREST)
    return float(np.var(rotated.sum(axis=1, dtype=np.float64)))


def search_skew_angle(image: np.ndarray, max_skew: float = 15.0) -> float:
    """Find the rotation that maximizes the variance of the row ink profile.

    Text lines aligned with the pixel rows produce sharp peaks and valleys,
    so the correct correction angle has the highest profile variance.

    Args:
        image: Input image as a numpy array (RGB or grayscale).
        max_skew: Search range in degrees, symmetric around zero.

    Returns:
        Correction angle in degrees (0.0 for blank pages).
    """
    mask = ink_mask(image).astype(np.uint8)
    if not mask.any():
        return 0.0

    scale = min(1.0, SEARCH_MAX_SIDE / max(mask.shape))
    if scale < 1.0:
        mask = cv2.resize(mask, None, fx=scale, fy=scale, interpolation=cv2.INTER_AREA)

    candidates = np.arange(-max_skew, max_skew + SEARCH_STEP_DEGREES, SEARCH_STEP_DEGREES)
    scores = [_profile_score(mask, float(a)) for a in candidates]
    best = float(candidates[int(np.argmax(scores))])
    logger.debug("Projection search skew angle: %.2f degrees", best)
    return best


def rotate_image(image: np.ndarray, angle: float) -> np.ndarray:
    """Rotate an image about its center, keeping the original size."""
    h, w = image.shape[:2]
    center = (w // 2, h // 2)
    rotation_matrix = cv2.getRotationMatrix2D(center, angle, 1.0)
    return cv2.warpAffine(
        image,
        rotation_matrix,
        (w, h),
        flags=cv2.INTER_CUBIC,
        borderMode=cv2.BORDER_REPLICATE,
    )


def deskew(
    image: np.ndarray,
    angle_threshold: float = 0.5,
    max_skew: float = 15.0,
) -> tuple[np.ndarray, float]:
    """Correct rotational skew in a page image.

    Args:
        image: Input image as a numpy array (RGB or grayscale).
        angle_threshold: Minimum angle (degrees) to trigger correction.
        max_skew: Largest skew considered; larger angles are left to the
            quarter-turn orientation detector.

    Returns:
        Tuple of (deskewed image, measured angle). The image keeps the
        input shape and dtype; the angle is 0.0 when nothing was measured.
    """
    angle = detect_skew_angle(image, max_skew)
    if angle is None:
        angle = search_skew_angle(image, max_skew)

    if abs(angle) < angle_threshold:
        logger.debug("Skew angle below threshold, skipping correction")
        return image, angle

    result = rotate_image(image, angle)
    logger.info("Applied deskew correction: %.2f degrees", angle)
    return result, angle
