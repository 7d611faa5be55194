"""Preprocessing variant generation with readiness scoring.

Each page is rendered through an ordered catalogue of preprocessing recipes.
Every variant is stored as a Variant artifact whose parent is the page, and
gets a readiness score in [0, 1] built from contrast, edge density, noise
and sharpness sub-scores. The score orders OCR passes; it never removes a
variant from the schedule.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import cv2
import numpy as np

from invoice_intake.store.artifacts import ArtifactKind, ArtifactRef, ArtifactStore
from invoice_intake.utils.config import VariantConfig
from invoice_intake.utils.images import encode_png
from invoice_intake.utils.logger import get_logger

from .binarize import (
    adjust_brightness_contrast,
    apply_clahe,
    apply_gamma,
    binarize_adaptive,
    binarize_otsu,
    to_gray,
)
from .denoise import (
    denoise,
    denoise_bilateral,
    denoise_gaussian,
    morph_close,
    sharpen_unsharp,
)

logger = get_logger(__name__)

SCORE_MAX_SIDE = 1000
SCORE_WEIGHTS = {
    "contrast": 0.3,
    "edge_density": 0.3,
    "noise": 0.2,
    "sharpness": 0.2,
}


@dataclass
class Variant:
    """One preprocessed rendering of a page."""

    recipe: str
    params: dict[str, Any]
    image: np.ndarray
    ref: ArtifactRef
    page_ref: ArtifactRef
    readiness: float
    scores: dict[str, float] = field(default_factory=dict)
    rank: int = 0


def _downscale(gray: np.ndarray) -> np.ndarray:
    scale = min(1.0, SCORE_MAX_SIDE / max(gray.shape))
    if scale < 1.0:
        return cv2.resize(gray, None, fx=scale, fy=scale, interpolation=cv2.INTER_AREA)
    return gray


def contrast_score(gray: np.ndarray) -> float:
    """Score the normalized intensity range; 0.7-0.9 is ideal."""
    if gray.size == 0:
        return 0.0
    contrast = (float(gray.max()) - float(gray.min())) / 255.0
    if 0.7 <= contrast <= 0.9:
        return 1.0
    if contrast < 0.7:
        return contrast / 0.7
    return 1.0 - (contrast - 0.9) / 0.1


def edge_density_score(gray: np.ndarray) -> float:
    """Score the share of Canny edge pixels; 0.05-0.15 is typical for text."""
    if gray.size == 0:
        return 0.0
    edges = cv2.Canny(gray, 50, 100)
    density = float(np.count_nonzero(edges)) / edges.size
    if 0.05 <= density <= 0.15:
        return 1.0
    if density < 0.05:
        return density / 0.05
    return 1.0 - min((density - 0.15) / 0.15, 1.0)


def noise_score(gray: np.ndarray) -> float:
    """Score local 3x3 variance around each pixel; higher means cleaner."""
    h, w = gray.shape
    if h < 3 or w < 3:
        return 1.0
    img = gray.astype(np.float32)
    center = img[1:-1, 1:-1]
    total = np.zeros_like(center)
    for dy in (-1, 0, 1):
        for dx in (-1, 0, 1):
            neighbor = img[1 + dy : h - 1 + dy, 1 + dx : w - 1 + dx]
            total += (neighbor - center) ** 2
    avg_variance = float((total / 9.0).mean())
    return 1.0 - min(avg_variance / 100.0, 1.0)


def sharpness_score(gray: np.ndarray) -> float:
    """Score the mean forward-difference gradient magnitude."""
    h, w = gray.shape
    if h < 2 or w < 2:
        return 0.5
    img = gray.astype(np.float32)
    gx = np.abs(img[:-1, 1:] - img[:-1, :-1])
    gy = np.abs(img[1:, :-1] - img[:-1, :-1])
    avg_gradient = float(np.sqrt(gx**2 + gy**2).mean())
    return min(avg_gradient / 50.0, 1.0)


def readiness(image: np.ndarray) -> tuple[float, dict[str, float]]:
    """Compute the weighted readiness score of an image.

    Args:
        image: Variant image (grayscale or RGB).

    Returns:
        Tuple of (overall score in [0, 1], per-component scores).
    """
    gray = _downscale(to_gray(image))
    scores = {
        "contrast": contrast_score(gray),
        "edge_density": edge_density_score(gray),
        "noise": noise_score(gray),
        "sharpness": sharpness_score(gray),
    }
    overall = sum(SCORE_WEIGHTS[name] * value for name, value in scores.items())
    return float(min(max(overall, 0.0), 1.0)), scores


class VariantGenerator:
    """Renders pages through the recipe catalogue and stores the results.

    Args:
        config: Variant configuration (recipe parameters and the cap).
        store: Artifact store receiving Variant artifacts.
    """

    def __init__(self, config: VariantConfig, store: ArtifactStore) -> None:
        self.config = config
        self.store = store
        self._recipes = self._build_recipes()

    def _build_recipes(
        self,
    ) -> list[tuple[str, dict[str, Any], Callable[[np.ndarray], np.ndarray]]]:
        c = self.config
        return [
            ("grayscale", {}, to_gray),
            (
                "clahe",
                {"clip_limit": c.clahe_clip_limit, "tile_size": c.clahe_tile_size},
                lambda img: apply_clahe(img, c.clahe_clip_limit, c.clahe_tile_size),
            ),
            (
                "brightness_contrast",
                {"alpha": c.contrast_alpha, "beta": c.brightness_beta},
                lambda img: adjust_brightness_contrast(
                    img, c.contrast_alpha, c.brightness_beta
                ),
            ),
            ("bilateral", {"d": 9}, denoise_bilateral),
            (
                "gaussian",
                {"kernel_size": 3},
                lambda img: denoise_gaussian(img, 3),
            ),
            ("otsu", {}, binarize_otsu),
            (
                "adaptive",
                {"block_size": c.adaptive_block_size},
                lambda img: binarize_adaptive(img, c.adaptive_block_size, 8),
            ),
            (
                "clahe_adaptive",
                {"clip_limit": c.clahe_clip_limit, "block_size": c.adaptive_block_size},
                lambda img: binarize_adaptive(
                    apply_clahe(img, c.clahe_clip_limit, c.clahe_tile_size),
                    c.adaptive_block_size,
                    8,
                ),
            ),
            (
                "denoise_otsu",
                {"method": "median"},
                lambda img: binarize_otsu(denoise(img, "median")),
            ),
            ("sharpen", {"sigma": 1.0, "amount": 1.5}, sharpen_unsharp),
            ("morph_close", {"kernel_size": 2}, morph_close),
            ("gamma", {"gamma": c.gamma}, lambda img: apply_gamma(img, c.gamma)),
        ]

    @property
    def recipe_names(self) -> list[str]:
        return [name for name, _, _ in self._recipes][: self.config.max_variants]

    def generate(self, page_ref: ArtifactRef, image: np.ndarray) -> list[Variant]:
        """Produce the configured number of variants for one page.

        Args:
            page_ref: Reference of the Page artifact the image came from.
            image: Page pixels.

        Returns:
            Variants sorted by readiness, highest first. Ties keep catalogue
            order, and every generated variant is returned.
        """
        variants: list[Variant] = []
        for name, params, transform in self._recipes[: self.config.max_variants]:
            rendered = transform(image)
            score, scores = readiness(rendered)
            ref = self.store.put(
                ArtifactKind.VARIANT,
                [page_ref],
                {"recipe": name, **params},
                encode_png(rendered),
            )
            variants.append(
                Variant(
                    recipe=name,
                    params=params,
                    image=rendered,
                    ref=ref,
                    page_ref=page_ref,
                    readiness=round(score, 6),
                    scores=scores,
                )
            )

        variants.sort(key=lambda v: -v.readiness)
        for rank, variant in enumerate(variants):
            variant.rank = rank

        logger.info(
            "Generated %d variants for %s (best: %s %.3f)",
            len(variants),
            page_ref,
            variants[0].recipe if variants else "-",
            variants[0].readiness if variants else 0.0,
        )
        return variants
