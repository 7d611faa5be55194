"""Noise reduction and stroke repair filters for invoice page images.

Every filter takes a page in any channel layout and returns a grayscale
page of the same height and width, so recipes can chain them freely.
Gaussian and median blurs clean sensor and fax speckle, the bilateral
filter smooths paper texture without softening glyph edges, and the
unsharp mask and morphological close recover faint or broken strokes.
"""

from collections.abc import Callable

import cv2
import numpy as np

from invoice_intake.utils.logger import get_logger

from .binarize import to_gray

logger = get_logger(__name__)


def _odd(size: int) -> int:
    return size if size % 2 else size + 1


def denoise_gaussian(image: np.ndarray, kernel_size: int = 5) -> np.ndarray:
    """Blur away sensor noise with a Gaussian kernel.

    Args:
        image: Page image.
        kernel_size: Kernel size; even sizes are bumped to the next odd one.

    Returns:
        Smoothed grayscale page.
    """
    size = _odd(kernel_size)
    logger.debug("Gaussian denoise, kernel %dx%d", size, size)
    return cv2.GaussianBlur(to_gray(image), (size, size), 0)


def denoise_median(image: np.ndarray, kernel_size: int = 3) -> np.ndarray:
    """Remove isolated salt-and-pepper specks, common on faxed invoices."""
    return cv2.medianBlur(to_gray(image), _odd(kernel_size))


def denoise_bilateral(
    image: np.ndarray,
    d: int = 9,
    sigma_color: int = 75,
    sigma_space: int = 75,
) -> np.ndarray:
    """Smooth flat paper regions while keeping glyph edges sharp.

    Args:
        image: Page image.
        d: Diameter of each pixel neighborhood.
        sigma_color: How different two intensities may be and still mix.
        sigma_space: How far apart two pixels may be and still mix.
    """
    logger.debug("Bilateral denoise, d=%d", d)
    return cv2.bilateralFilter(to_gray(image), d, sigma_color, sigma_space)


def sharpen_unsharp(
    image: np.ndarray, sigma: float = 1.0, amount: float = 1.5
) -> np.ndarray:
    """Sharpen with an unsharp mask: ``(1 + amount) * img - amount * blur``."""
    gray = to_gray(image)
    blurred = cv2.GaussianBlur(gray, (0, 0), sigma)
    return cv2.addWeighted(gray, 1.0 + amount, blurred, -amount, 0)


def morph_close(image: np.ndarray, kernel_size: int = 2) -> np.ndarray:
    """Close small gaps in dark strokes on a light background.

    Dark text is the foreground, so closing the strokes is an erosion
    followed by a dilation of the light background (a morphological open
    of the image itself).
    """
    gray = to_gray(image)
    kernel = np.ones((kernel_size, kernel_size), np.uint8)
    return cv2.morphologyEx(gray, cv2.MORPH_OPEN, kernel)


_METHODS: dict[str, Callable[[np.ndarray], np.ndarray]] = {
    "gaussian": denoise_gaussian,
    "median": denoise_median,
    "bilateral": denoise_bilateral,
}


def denoise(image: np.ndarray, method: str = "bilateral") -> np.ndarray:
    """Apply one of the named denoise filters with its default settings.

    Raises:
        ValueError: If ``method`` is not ``gaussian``, ``median`` or
            ``bilateral``.
    """
    try:
        apply = _METHODS[method]
    except KeyError:
        raise ValueError(f"Unsupported denoise method: {method}") from None
    return apply(image)
