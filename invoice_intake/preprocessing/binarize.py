"""Binarization and contrast enhancement for invoice page images.

Provides Otsu's thresholding, adaptive thresholding, CLAHE contrast
enhancement and the simple intensity transforms used by variant recipes.
"""

import cv2
import numpy as np

from invoice_intake.utils.logger import get_logger

logger = get_logger(__name__)


def to_gray(image: np.ndarray) -> np.ndarray:
    """Convert an image to grayscale if it has color channels.

    Args:
        image: Input image (RGB, RGBA or grayscale).

    Returns:
        Grayscale image.
    """
    if image.ndim == 3 and image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_RGBA2GRAY)
    if image.ndim == 3:
        return cv2.cvtColor(image, cv2.COLOR_RGB2GRAY)
    return image


def binarize_otsu(image: np.ndarray) -> np.ndarray:
    """Binarize an image using Otsu's automatic thresholding.

    Args:
        image: Input image (RGB or grayscale).

    Returns:
        Binary image with pixel values 0 or 255.
    """
    gray = to_gray(image)
    _, binary = cv2.threshold(gray, 0, 255, cv2.THRESH_BINARY + cv2.THRESH_OTSU)
    logger.debug("Applied Otsu binarization")
    return binary


def ink_mask(image: np.ndarray) -> np.ndarray:
    """Return a boolean mask of dark (ink) pixels using an inverted Otsu threshold."""
    gray = to_gray(image)
    if gray.size == 0 or int(gray.min()) == int(gray.max()):
        # Uniform pages carry no ink; Otsu would split them arbitrarily.
        return np.zeros(gray.shape, dtype=bool)
    _, inverted = cv2.threshold(
        gray, 0, 255, cv2.THRESH_BINARY_INV + cv2.THRESH_OTSU
    )
    return inverted > 0


def binarize_adaptive(
    image: np.ndarray, block_size: int = 11, c: int = 2
) -> np.ndarray:
    """Binarize an image using adaptive Gaussian thresholding.

    Args:
        image: Input image (RGB or grayscale).
        block_size: Size of the pixel neighborhood for threshold calculation.
            Even values are bumped to the next odd size.
        c: Constant subtracted from the mean.

    Returns:
        Binary image with pixel values 0 or 255.
    """
    gray = to_gray(image)
    if block_size % 2 == 0:
        block_size += 1
    result = cv2.adaptiveThreshold(
        gray,
        255,
        cv2.ADAPTIVE_THRESH_GAUSSIAN_C,
        cv2.THRESH_BINARY,
        block_size,
        c,
    )
    logger.debug("Applied adaptive binarization (block=%d, c=%d)", block_size, c)
    return result


def apply_clahe(
    image: np.ndarray,
    clip_limit: float = 2.0,
    tile_size: int = 8,
) -> np.ndarray:
    """Enhance contrast using CLAHE (Contrast Limited Adaptive Histogram Equalization).

    Args:
        image: Input image (RGB or grayscale).
        clip_limit: Threshold for contrast limiting.
        tile_size: Size of the grid for histogram equalization.

    Returns:
        Contrast-enhanced grayscale image.
    """
    gray = to_gray(image)
    clahe = cv2.createCLAHE(clipLimit=clip_limit, tileGridSize=(tile_size, tile_size))
    result = clahe.apply(gray)
    logger.debug("Applied CLAHE (clip=%.1f, tile=%d)", clip_limit, tile_size)
    return result


def adjust_brightness_contrast(
    image: np.ndarray, alpha: float = 1.3, beta: int = 10
) -> np.ndarray:
    """Scale and shift intensities: ``alpha * pixel + beta``, saturated to uint8."""
    return cv2.convertScaleAbs(to_gray(image), alpha=alpha, beta=beta)


def apply_gamma(image: np.ndarray, gamma: float = 0.8) -> np.ndarray:
    """Apply gamma correction through a lookup table.

    Values below 1 darken mid-tones, which thickens faint strokes.
    """
    table = np.array(
        [((i / 255.0) ** (1.0 / gamma)) * 255 for i in range(256)]
    ).astype(np.uint8)
    return cv2.LUT(to_gray(image), table)
