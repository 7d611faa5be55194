"""Declarative OCR profiles.

A profile lists the OCR passes to run (engine, page segmentation mode,
engine mode, language, character whitelist, upscaling factor and the zone
types each pass applies to) together with the budget that bounds a run:
critical fields, early-stop threshold, maximum passes, wall-clock budget,
per-document concurrency and how many variants each zone is read from.
Profiles load from YAML; a built-in set is used when no file exists.
"""

from pathlib import Path

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from invoice_intake.errors import ConfigurationError
from invoice_intake.layout.zones import ZoneType
from invoice_intake.utils.config import load_yaml
from invoice_intake.utils.logger import get_logger

logger = get_logger(__name__)

ALL_TEXT_ZONES = [
    ZoneType.HEADER_FIELDS,
    ZoneType.TOTALS_BOX,
    ZoneType.LINE_ITEMS_TABLE,
    ZoneType.UNCLASSIFIED,
    ZoneType.FOOTER,
]


class PassConfig(BaseModel):
    """Settings for one OCR pass."""

    name: str
    engine: str = "tesseract"
    psm: int = Field(default=6, ge=0, le=13)
    oem: int = Field(default=3, ge=0, le=3)
    lang: str | None = None
    whitelist: str | None = None
    blacklist: str | None = None
    scale: float = Field(default=1.0, gt=0, le=4.0)
    zone_types: list[ZoneType] = Field(default_factory=lambda: list(ALL_TEXT_ZONES))

    def applies_to(self, zone_type: ZoneType) -> bool:
        return zone_type in self.zone_types

    def to_params(self) -> dict:
        return self.model_dump(mode="json")


class OcrProfile(BaseModel):
    """An ordered set of passes plus the budget for one document run."""

    name: str
    passes: list[PassConfig]
    critical_fields: list[str] = Field(
        default_factory=lambda: ["invoice_number", "invoice_date", "total"]
    )
    early_stop_threshold: float = Field(default=0.90, gt=0, le=1.0)
    max_passes: int = Field(default=24, ge=1)
    max_wall_seconds: float = Field(default=120.0, gt=0)
    max_concurrency: int = Field(default=2, ge=1)
    variants_per_zone: int = Field(default=3, ge=1)
    # vendor id -> zone type -> pass names used instead of the defaults
    vendor_overrides: dict[str, dict[ZoneType, list[str]]] = Field(default_factory=dict)

    @field_validator("passes")
    @classmethod
    def _unique_pass_names(cls, passes: list[PassConfig]) -> list[PassConfig]:
        if not passes:
            raise ValueError("a profile needs at least one pass")
        names = [p.name for p in passes]
        if len(names) != len(set(names)):
            raise ValueError(f"duplicate pass names: {names}")
        return passes

    @model_validator(mode="after")
    def _overrides_reference_known_passes(self) -> "OcrProfile":
        known = {p.name for p in self.passes}
        for vendor_id, zones in self.vendor_overrides.items():
            for zone_type, names in zones.items():
                unknown = set(names) - known
                if unknown:
                    raise ValueError(
                        f"vendor '{vendor_id}' override for {zone_type} "
                        f"references unknown passes {sorted(unknown)}"
                    )
        return self

    def passes_for(
        self, zone_type: ZoneType, vendor_id: str | None = None
    ) -> list[PassConfig]:
        """Passes to run over a zone type, honoring vendor overrides.

        Args:
            zone_type: Type of the zone being scheduled.
            vendor_id: Vendor of the document, if known.

        Returns:
            Pass configs in profile order.
        """
        override = self.vendor_overrides.get(vendor_id or "", {}).get(zone_type)
        if override is not None:
            return [p for p in self.passes if p.name in override]
        return [p for p in self.passes if p.applies_to(zone_type)]


def default_profiles() -> dict[str, OcrProfile]:
    """Built-in profiles used when no profile file is configured."""
    block = PassConfig(name="block", psm=6)
    sparse = PassConfig(
        name="sparse",
        psm=11,
        zone_types=[ZoneType.HEADER_FIELDS, ZoneType.UNCLASSIFIED, ZoneType.FOOTER],
    )
    column = PassConfig(
        name="upscaled_column",
        psm=4,
        scale=1.5,
        zone_types=[ZoneType.TOTALS_BOX, ZoneType.LINE_ITEMS_TABLE],
    )
    return {
        "standard": OcrProfile(name="standard", passes=[block, sparse, column]),
        "fast": OcrProfile(
            name="fast",
            passes=[block],
            max_passes=5,
            max_wall_seconds=30.0,
            variants_per_zone=2,
        ),
        "thorough": OcrProfile(
            name="thorough",
            passes=[block, sparse, column],
            early_stop_threshold=0.95,
            max_passes=60,
            max_wall_seconds=300.0,
            variants_per_zone=6,
        ),
    }


class ProfileCatalog:
    """Named OCR profiles.

    Args:
        profiles: Profiles keyed by name.
    """

    def __init__(self, profiles: dict[str, OcrProfile] | None = None) -> None:
        self.profiles = profiles if profiles is not None else default_profiles()

    @classmethod
    def load(cls, path: Path | str) -> "ProfileCatalog":
        """Load profiles from YAML, falling back to the built-in set.

        The file holds a ``profiles`` list; each entry is an
        :class:`OcrProfile` mapping.

        Raises:
            ConfigurationError: If the file is present but invalid.
        """
        raw = load_yaml(path)
        if not raw:
            logger.info("No OCR profiles at %s, using built-in profiles", path)
            return cls()
        try:
            profiles = [OcrProfile(**entry) for entry in raw.get("profiles", [])]
        except (ValidationError, TypeError) as exc:
            raise ConfigurationError(f"Invalid OCR profile file {path}: {exc}") from exc
        if not profiles:
            raise ConfigurationError(f"No profiles defined in {path}")
        logger.info("Loaded %d OCR profiles from %s", len(profiles), path)
        return cls({p.name: p for p in profiles})

    def get(self, name: str) -> OcrProfile:
        try:
            return self.profiles[name]
        except KeyError:
            raise ConfigurationError(
                f"Unknown OCR profile '{name}'. Available: {sorted(self.profiles)}"
            ) from None
