"""Vendor lexicon and mask storage.

The global :class:`Lexicon` maps each field to the label phrases that
introduce it on an invoice. A :class:`VendorStore` keeps per-vendor
overrides in a directory of YAML files (one per vendor id): extra label
synonyms, values learned from reviewer corrections, user masks and zone
overrides. The store is loaded once at startup, re-read when a file changes
on disk and written back when a reviewer confirms a correction, draws a mask
or redraws a zone. It is
passed explicitly to the components that need it.
"""

import re
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from invoice_intake.errors import ConfigurationError
from invoice_intake.layout.masks import UserMask
from invoice_intake.layout.zones import ZoneOverride
from invoice_intake.utils.config import load_yaml
from invoice_intake.utils.logger import get_logger

logger = get_logger(__name__)

_VENDOR_ID_RE = re.compile(r"^[A-Za-z0-9_.-]+$")

DEFAULT_SYNONYMS: dict[str, list[str]] = {
    "invoice_number": [
        "invoice number",
        "invoice no",
        "invoice #",
        "invoice num",
        "inv no",
        "inv #",
        "bill number",
    ],
    "invoice_date": ["invoice date", "date of invoice", "issue date", "bill date", "date"],
    "due_date": ["due date", "payment due", "due by", "pay by"],
    "vendor_name": ["vendor", "supplier", "sold by", "bill from", "remit to", "from"],
    "po_number": ["po number", "po no", "po #", "purchase order", "p.o."],
    "subtotal": ["subtotal", "sub total", "sub-total", "net amount"],
    "tax": ["tax", "vat", "gst", "hst", "sales tax", "tax amount"],
    "total": [
        "total",
        "amount due",
        "total due",
        "grand total",
        "balance due",
        "invoice total",
    ],
}


class Lexicon:
    """Global label synonyms per field.

    Args:
        synonyms: Field name to label phrases. Defaults to the built-in set.
    """

    def __init__(self, synonyms: dict[str, list[str]] | None = None) -> None:
        self.synonyms = {
            name: [s.lower() for s in labels]
            for name, labels in (synonyms or DEFAULT_SYNONYMS).items()
        }

    @classmethod
    def load(cls, path: Path | str) -> "Lexicon":
        """Load synonyms from YAML, extending the built-in defaults.

        The file holds a ``synonyms`` mapping of field name to label list.
        """
        raw = load_yaml(path)
        merged = {name: list(labels) for name, labels in DEFAULT_SYNONYMS.items()}
        if raw:
            extra = raw.get("synonyms", {})
            if not isinstance(extra, dict):
                raise ConfigurationError(f"'synonyms' in {path} must be a mapping")
            for name, labels in extra.items():
                merged.setdefault(name, [])
                merged[name].extend(label for label in labels if label not in merged[name])
        return cls(merged)

    def labels_for(self, field_name: str, vendor: "VendorProfile | None" = None) -> list[str]:
        """Label phrases for a field, vendor overrides first, longest first."""
        labels = list(vendor.synonyms.get(field_name, [])) if vendor else []
        labels.extend(
            label for label in self.synonyms.get(field_name, []) if label not in labels
        )
        return sorted(labels, key=len, reverse=True)


@dataclass
class VendorProfile:
    """Everything the pipeline has learned about one vendor."""

    vendor_id: str
    name: str = ""
    synonyms: dict[str, list[str]] = field(default_factory=dict)
    known_values: dict[str, list[str]] = field(default_factory=dict)
    masks: list[UserMask] = field(default_factory=list)
    zone_overrides: list[ZoneOverride] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "vendor_id": self.vendor_id,
            "name": self.name,
            "synonyms": self.synonyms,
            "known_values": self.known_values,
            "masks": [m.to_dict() for m in self.masks],
            "zone_overrides": [z.to_dict() for z in self.zone_overrides],
        }

    @classmethod
    def from_dict(cls, vendor_id: str, data: dict[str, Any]) -> "VendorProfile":
        synonyms = data.get("synonyms") or {}
        known_values = data.get("known_values") or {}
        return cls(
            vendor_id=vendor_id,
            name=str(data.get("name", "")),
            synonyms={k: [str(s).lower() for s in v] for k, v in synonyms.items()},
            known_values={k: [str(s) for s in v] for k, v in known_values.items()},
            masks=[UserMask.from_dict(m) for m in data.get("masks") or []],
            zone_overrides=[
                ZoneOverride.from_dict(z) for z in data.get("zone_overrides") or []
            ],
        )


class VendorStore:
    """Directory of per-vendor YAML files with change-driven reload.

    Args:
        directory: Folder holding ``<vendor_id>.yaml`` files. Created when
            the first profile is written.
    """

    def __init__(self, directory: Path | str) -> None:
        self.directory = Path(directory)
        self._lock = threading.Lock()
        self._profiles: dict[str, VendorProfile] = {}
        self._mtimes: dict[str, float] = {}

    def _path(self, vendor_id: str) -> Path:
        if not _VENDOR_ID_RE.match(vendor_id):
            raise ValueError(f"Invalid vendor id: {vendor_id!r}")
        return self.directory / f"{vendor_id}.yaml"

    def _read(self, path: Path) -> VendorProfile:
        try:
            raw = load_yaml(path) or {}
            return VendorProfile.from_dict(path.stem, raw)
        except (yaml.YAMLError, KeyError, TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid vendor file {path}: {exc}") from exc

    def load(self) -> int:
        """Read every vendor file. Returns the number of profiles loaded."""
        profiles: dict[str, VendorProfile] = {}
        mtimes: dict[str, float] = {}
        if self.directory.exists():
            for path in sorted(self.directory.glob("*.yaml")):
                profiles[path.stem] = self._read(path)
                mtimes[path.stem] = path.stat().st_mtime
        with self._lock:
            self._profiles = profiles
            self._mtimes = mtimes
        logger.info("Loaded %d vendor profiles from %s", len(profiles), self.directory)
        return len(profiles)

    def reload_if_changed(self) -> bool:
        """Re-read files whose modification time changed.

        Returns:
            True if any profile was added, changed or removed.
        """
        current: dict[str, float] = {}
        if self.directory.exists():
            current = {p.stem: p.stat().st_mtime for p in self.directory.glob("*.yaml")}

        with self._lock:
            known = dict(self._mtimes)
        changed = [vid for vid, mtime in current.items() if known.get(vid) != mtime]
        removed = [vid for vid in known if vid not in current]
        if not changed and not removed:
            return False

        fresh = {vid: self._read(self._path(vid)) for vid in changed}
        with self._lock:
            for vid in removed:
                self._profiles.pop(vid, None)
                self._mtimes.pop(vid, None)
            for vid, profile in fresh.items():
                self._profiles[vid] = profile
                self._mtimes[vid] = current[vid]
        logger.info("Reloaded vendor profiles: changed=%s removed=%s", changed, removed)
        return True

    def get(self, vendor_id: str | None) -> VendorProfile | None:
        if not vendor_id:
            return None
        with self._lock:
            return self._profiles.get(vendor_id)

    def vendor_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._profiles)

    def _save(self, profile: VendorProfile) -> None:
        path = self._path(profile.vendor_id)
        self.directory.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".yaml.tmp")
        with open(tmp_path, "w") as f:
            yaml.safe_dump(profile.to_dict(), f, sort_keys=True)
        tmp_path.replace(path)
        self._mtimes[profile.vendor_id] = path.stat().st_mtime

    def _profile_for_update(self, vendor_id: str) -> VendorProfile:
        profile = self._profiles.get(vendor_id)
        if profile is None:
            self._path(vendor_id)
            profile = VendorProfile(vendor_id=vendor_id)
            self._profiles[vendor_id] = profile
        return profile

    def learn_correction(self, vendor_id: str, field_name: str, value: str) -> bool:
        """Remember a reviewer-confirmed value for a field.

        Args:
            vendor_id: Vendor the document belongs to.
            field_name: Field that was corrected.
            value: Corrected value, as entered.

        Returns:
            True if the value was new and the profile was written.
        """
        value = value.strip()
        if not value:
            return False
        with self._lock:
            profile = self._profile_for_update(vendor_id)
            values = profile.known_values.setdefault(field_name, [])
            if value in values:
                return False
            values.append(value)
            self._save(profile)
        logger.info("Learned %s=%r for vendor %s", field_name, value, vendor_id)
        return True

    def add_mask(self, vendor_id: str, mask: UserMask) -> None:
        """Persist a user mask for reuse on the vendor's later documents."""
        with self._lock:
            profile = self._profile_for_update(vendor_id)
            if mask not in profile.masks:
                profile.masks.append(mask)
                self._save(profile)
        logger.info("Stored %s mask for vendor %s by %s", mask.reason, vendor_id, mask.author)

    def masks_for(self, vendor_id: str | None) -> list[UserMask]:
        profile = self.get(vendor_id)
        return list(profile.masks) if profile else []

    def set_zone_override(self, vendor_id: str, override: ZoneOverride) -> None:
        """Persist a zone override, replacing the vendor's previous one of that type."""
        with self._lock:
            profile = self._profile_for_update(vendor_id)
            profile.zone_overrides = [
                z for z in profile.zone_overrides if z.zone_type != override.zone_type
            ]
            profile.zone_overrides.append(override)
            self._save(profile)
        logger.info(
            "Stored %s zone override for vendor %s by %s",
            override.zone_type,
            vendor_id,
            override.author,
        )

    def zone_overrides_for(self, vendor_id: str | None) -> list[ZoneOverride]:
        profile = self.get(vendor_id)
        return list(profile.zone_overrides) if profile else []
