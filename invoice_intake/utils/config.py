"""Configuration management for the invoice intake pipeline.

Loads and validates YAML configuration with sensible defaults for the
artifact store, ingestion, preprocessing variants, zoning, OCR
orchestration, extraction, resolution, validation and review settings.
"""

import logging
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)


class StoreConfig(BaseModel):
    """Configuration for the content-addressed artifact store."""

    backend: str = "memory"
    root: str = "data/artifacts"
    ttl_seconds: float = 24 * 3600
    max_bytes: int = 2 * 1024**3
    eviction_interval_seconds: float = 300.0
    persist_timeout_seconds: float = 10.0

    @field_validator("backend")
    @classmethod
    def _known_backend(cls, value: str) -> str:
        if value not in {"memory", "disk"}:
            raise ValueError(f"Unknown store backend: {value}")
        return value


class IngestConfig(BaseModel):
    """Configuration for document rasterization and orientation."""

    dpi: int = 300
    max_pages: int = 50
    detect_rotation: bool = True
    use_osd: bool = True
    deskew_enabled: bool = True
    deskew_angle_threshold: float = 0.5
    max_skew_degrees: float = 15.0


class VariantConfig(BaseModel):
    """Configuration for preprocessing variant generation."""

    max_variants: int = Field(default=8, ge=6, le=12)
    clahe_clip_limit: float = 2.0
    clahe_tile_size: int = 8
    adaptive_block_size: int = 15
    contrast_alpha: float = 1.3
    brightness_beta: int = 10
    gamma: float = 0.8


class ZoneConfig(BaseModel):
    """Configuration for zone detection and masking."""

    min_gap_ratio: float = 0.012
    header_ratio: float = 0.30
    footer_ratio: float = 0.12
    min_band_height: int = 6
    table_min_columns: int = 3
    noise_ink_ratio: float = 0.55
    auto_mask_enabled: bool = True
    manual_override_enabled: bool = True
    logo_min_area_ratio: float = 0.01
    logo_min_fill: float = 0.5
    watermark_min_coverage: float = 0.25
    mask_overlap_ratio: float = 0.5
    zone_padding: int = 4


class OCRConfig(BaseModel):
    """Configuration for OCR engines and the orchestrator."""

    tesseract_cmd: str | None = None
    default_lang: str = "eng"
    profiles_path: str = "configs/ocr_profiles.yaml"
    default_profile: str = "standard"
    worker_pool_size: int = 4
    call_timeout_seconds: float = 30.0
    high_res_dpi: int = 300


class ExtractionConfig(BaseModel):
    """Configuration for candidate extraction."""

    fields_path: str = "configs/fields.yaml"
    lexicon_path: str = "configs/lexicon.yaml"
    vendor_dir: str = "configs/vendors"
    min_label_score: float = 0.8
    max_candidates_per_strategy: int = 5


class ResolutionConfig(BaseModel):
    """Configuration for field resolution and calibration."""

    source_weights: dict[str, float] = Field(
        default_factory=lambda: {
            "pdf_text": 1.0,
            "ocr_high_res": 0.8,
            "ocr_low_res": 0.6,
            "manual": 1.0,
        }
    )
    consensus_bonus: float = 0.05
    max_consensus_bonus: float = 0.10
    cross_field_tolerance: float = 0.02
    cross_field_tolerance_percent: float = 0.5
    cross_field_penalty: float = 0.5
    calibration_path: str = "configs/calibration.yaml"
    calibration_version: int | None = None
    max_alternatives: int = 3
    low_confidence_flag: float = 0.70
    large_amount_flag: float = 1_000_000.0
    future_date_grace_days: int = 0


class ValidationConfig(BaseModel):
    """Configuration for the validation rules engine."""

    rules_path: str = "configs/validation_rules.yaml"
    mode: str = "balanced"

    @field_validator("mode")
    @classmethod
    def _known_mode(cls, value: str) -> str:
        if value not in {"fast", "balanced", "strict"}:
            raise ValueError(f"Unknown validation mode: {value}")
        return value


class ReviewConfig(BaseModel):
    """Configuration for the review queue."""

    low_confidence_below: float = 0.70
    high_confidence_from: float = 0.90


class AppConfig(BaseModel):
    """Top-level application configuration."""

    store: StoreConfig = Field(default_factory=StoreConfig)
    ingest: IngestConfig = Field(default_factory=IngestConfig)
    variants: VariantConfig = Field(default_factory=VariantConfig)
    zones: ZoneConfig = Field(default_factory=ZoneConfig)
    ocr: OCRConfig = Field(default_factory=OCRConfig)
    extraction: ExtractionConfig = Field(default_factory=ExtractionConfig)
    resolution: ResolutionConfig = Field(default_factory=ResolutionConfig)
    validation: ValidationConfig = Field(default_factory=ValidationConfig)
    review: ReviewConfig = Field(default_factory=ReviewConfig)
    log_level: str = "INFO"


def load_config(path: Path | None = None) -> AppConfig:
    """Load configuration from a YAML file.

    Args:
        path: Path to the YAML configuration file.
            Defaults to configs/config.yaml.

    Returns:
        Validated application configuration.
    """
    if path is None:
        path = Path("configs/config.yaml")

    if path.exists():
        logger.info("Loading configuration from %s", path)
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
        return AppConfig(**raw)

    logger.info("No config file found at %s, using defaults", path)
    return AppConfig()


def load_yaml(path: Path | str) -> dict | None:
    """Read a YAML side file, returning ``None`` when it does not exist.

    Args:
        path: Location of the YAML file.

    Returns:
        Parsed mapping, an empty dict for an empty file, or ``None``.
    """
    path = Path(path)
    if not path.exists():
        logger.debug("No file at %s", path)
        return None
    with open(path) as f:
        return yaml.safe_load(f) or {}
