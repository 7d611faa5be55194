"""Tests for the lexicon and the per-vendor profile store."""

import os
from pathlib import Path

import pytest
import yaml

from invoice_intake.errors import ConfigurationError
from invoice_intake.layout.masks import UserMask
from invoice_intake.layout.zones import ZoneOverride, ZoneType
from invoice_intake.ocr.engine import BoundingBox
from invoice_intake.vendors import Lexicon, VendorProfile, VendorStore


def _bump_mtime(path: Path, seconds: float = 10.0) -> None:
    stat = path.stat()
    os.utime(path, (stat.st_atime + seconds, stat.st_mtime + seconds))


class TestLexicon:
    """Tests for label synonyms."""

    def test_missing_file_uses_defaults(self, tmp_path: Path) -> None:
        lexicon = Lexicon.load(tmp_path / "missing.yaml")
        assert "amount due" in lexicon.labels_for("total")

    def test_file_extends_defaults(self, tmp_path: Path) -> None:
        path = tmp_path / "lexicon.yaml"
        path.write_text(yaml.safe_dump({"synonyms": {"total": ["Zu Zahlen"], "iban": ["IBAN"]}}))
        lexicon = Lexicon.load(path)
        assert "zu zahlen" in lexicon.labels_for("total")
        assert "grand total" in lexicon.labels_for("total")
        assert lexicon.labels_for("iban") == ["iban"]

    def test_synonyms_must_be_mapping(self, tmp_path: Path) -> None:
        path = tmp_path / "lexicon.yaml"
        path.write_text(yaml.safe_dump({"synonyms": ["total"]}))
        with pytest.raises(ConfigurationError):
            Lexicon.load(path)

    def test_vendor_labels_first_and_longest_first(self) -> None:
        lexicon = Lexicon({"total": ["total", "grand total"]})
        vendor = VendorProfile("acme", synonyms={"total": ["endbetrag"]})
        labels = lexicon.labels_for("total", vendor)
        assert labels == sorted(labels, key=len, reverse=True)
        assert set(labels) == {"total", "grand total", "endbetrag"}


class TestVendorStore:
    """Tests for loading, learning and reloading vendor profiles."""

    def setup_method(self) -> None:
        self.mask = UserMask(BoundingBox(10, 20, 100, 40), "stamp", "alice")

    def test_load_reads_every_file(self, tmp_path: Path) -> None:
        (tmp_path / "acme.yaml").write_text(
            yaml.safe_dump({"name": "Acme", "synonyms": {"total": ["Endbetrag"]}})
        )
        (tmp_path / "globex.yaml").write_text("")
        store = VendorStore(tmp_path)
        assert store.load() == 2
        assert store.vendor_ids() == ["acme", "globex"]
        assert store.get("acme").synonyms == {"total": ["endbetrag"]}

    def test_missing_directory_is_empty(self, tmp_path: Path) -> None:
        store = VendorStore(tmp_path / "none")
        assert store.load() == 0
        assert store.get("acme") is None
        assert store.get(None) is None

    def test_invalid_file_raises(self, tmp_path: Path) -> None:
        (tmp_path / "bad.yaml").write_text("masks: [{rect: [1, 2]}]")
        with pytest.raises(ConfigurationError, match="bad.yaml"):
            VendorStore(tmp_path).load()

    def test_learn_correction_persists(self, tmp_path: Path) -> None:
        store = VendorStore(tmp_path / "vendors")
        assert store.learn_correction("acme", "vendor_name", " Acme Ltd ")
        assert not store.learn_correction("acme", "vendor_name", "Acme Ltd")
        assert not store.learn_correction("acme", "vendor_name", "   ")

        reopened = VendorStore(tmp_path / "vendors")
        reopened.load()
        assert reopened.get("acme").known_values == {"vendor_name": ["Acme Ltd"]}

    def test_masks_persist_without_duplicates(self, tmp_path: Path) -> None:
        store = VendorStore(tmp_path)
        store.add_mask("acme", self.mask)
        store.add_mask("acme", self.mask)
        assert store.masks_for("acme") == [self.mask]
        assert store.masks_for("globex") == []

        reopened = VendorStore(tmp_path)
        reopened.load()
        assert reopened.masks_for("acme") == [self.mask]

    def test_zone_override_replaces_same_type(self, tmp_path: Path) -> None:
        store = VendorStore(tmp_path)
        first = ZoneOverride(ZoneType.TOTALS_BOX, BoundingBox(0, 500, 400, 100), "alice")
        second = ZoneOverride(ZoneType.TOTALS_BOX, BoundingBox(0, 600, 400, 100), "bob")
        header = ZoneOverride(ZoneType.HEADER_FIELDS, BoundingBox(0, 0, 400, 100), "bob")
        store.set_zone_override("acme", first)
        store.set_zone_override("acme", header)
        store.set_zone_override("acme", second)
        assert store.zone_overrides_for("acme") == [header, second]
        assert store.zone_overrides_for(None) == []

        reopened = VendorStore(tmp_path)
        reopened.load()
        assert reopened.zone_overrides_for("acme") == [header, second]

    def test_invalid_vendor_id_rejected(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError, match="Invalid vendor id"):
            VendorStore(tmp_path).learn_correction("../escape", "total", "1.00")

    def test_reload_picks_up_changes(self, tmp_path: Path) -> None:
        path = tmp_path / "acme.yaml"
        path.write_text(yaml.safe_dump({"name": "Acme"}))
        store = VendorStore(tmp_path)
        store.load()
        assert not store.reload_if_changed()

        path.write_text(yaml.safe_dump({"name": "Acme Corp"}))
        _bump_mtime(path)
        assert store.reload_if_changed()
        assert store.get("acme").name == "Acme Corp"

        path.unlink()
        assert store.reload_if_changed()
        assert store.get("acme") is None

    def test_own_writes_do_not_trigger_reload(self, tmp_path: Path) -> None:
        store = VendorStore(tmp_path)
        store.load()
        store.add_mask("acme", self.mask)
        assert not store.reload_if_changed()
