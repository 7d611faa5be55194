"""Builders shared by the test modules: fake engines, documents and records."""

import threading
import time
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Any

import pymupdf
import yaml
from PIL import Image

from invoice_intake.errors import EngineError
from invoice_intake.extraction.candidates import Candidate, SourceType
from invoice_intake.extraction.fields import FieldCatalog
from invoice_intake.ocr.engine import BoundingBox, OCRResult, OCRWord, OcrEngine
from invoice_intake.resolution.resolver import FieldResolver
from invoice_intake.review.case import ReviewCase
from invoice_intake.review.queue import ReviewQueue
from invoice_intake.store.artifacts import ArtifactKind, ArtifactStore, canonical_json
from invoice_intake.utils.config import AppConfig
from invoice_intake.validation.rules_engine import RulesEngine
from invoice_intake.vendors import VendorStore

TODAY = date(2024, 4, 1)

GOOD_VALUES: dict[str, Any] = {
    "invoice_number": "INV-001",
    "invoice_date": "2024-03-15",
    "total": "120.00",
}


def words_for_lines(
    lines: list[str],
    confidence: float = 0.95,
    x: int = 10,
    y: int = 10,
    char_width: int = 10,
    line_height: int = 20,
    line_gap: int = 20,
) -> list[OCRWord]:
    """Lay out text lines as word boxes, one visual line per entry."""
    words: list[OCRWord] = []
    for line_no, text in enumerate(lines):
        top = y + line_no * (line_height + line_gap)
        cursor = x
        for word_no, token in enumerate(text.split()):
            width = len(token) * char_width
            words.append(
                OCRWord(
                    text=token,
                    bbox=BoundingBox(cursor, top, width, line_height),
                    confidence=confidence,
                    block_num=1,
                    line_num=line_no + 1,
                    word_num=word_no + 1,
                )
            )
            cursor += width + char_width
    return words


class FakeEngine(OcrEngine):
    """Scripted OCR engine returning the same lines for every pass.

    Args:
        lines: Text lines to "recognize", laid out top to bottom.
        confidence: Confidence of every word.
        failures: Number of initial calls that raise ``EngineError``.
        name: Registry name.
        delay: Seconds each call sleeps before answering.
    """

    def __init__(
        self,
        lines: list[str] | None = None,
        confidence: float = 0.95,
        failures: int = 0,
        name: str = "tesseract",
        delay: float = 0.0,
    ) -> None:
        self.lines = list(lines or [])
        self.confidence = confidence
        self.failures_left = failures
        self.name = name
        self.delay = delay
        self.calls = 0
        self.passes: list[str] = []
        self._lock = threading.Lock()

    def recognize(self, image_bytes: bytes, pass_config) -> OCRResult:
        with self._lock:
            self.calls += 1
            self.passes.append(pass_config.name)
            fail = self.failures_left > 0
            if fail:
                self.failures_left -= 1
        if self.delay:
            time.sleep(self.delay)
        if fail:
            raise EngineError("scripted failure")
        return OCRResult(
            text="\n".join(self.lines),
            words=words_for_lines(self.lines, self.confidence),
            language="eng",
            confidence=self.confidence,
            engine=self.name,
            pass_name=pass_config.name,
        )


def build_pdf(pages: list[list[tuple[float, float, str]]]) -> bytes:
    """Create a PDF with a text layer; each item is ``(x, y, text)`` in points."""
    doc = pymupdf.open()
    for items in pages:
        page = doc.new_page(width=612, height=792)
        for x, y, text in items:
            page.insert_text((x, y), text, fontsize=11)
    data = doc.tobytes()
    doc.close()
    return data


def render_with_pymupdf(
    pdf_bytes: bytes, dpi: int = 200, first_page: int = 1, last_page: int | None = None, **_: Any
) -> list[Image.Image]:
    """Stand-in for ``pdf2image.convert_from_bytes`` that needs no poppler."""
    with pymupdf.open(stream=pdf_bytes, filetype="pdf") as doc:
        pixmap = doc[first_page - 1].get_pixmap(dpi=dpi)
        return [Image.frombytes("RGB", (pixmap.width, pixmap.height), pixmap.samples)]


def write_profiles(path: Path, profiles: list[dict[str, Any]]) -> Path:
    with open(path, "w") as f:
        yaml.safe_dump({"profiles": profiles}, f)
    return path


def make_config(tmp_path: Path, **sections: dict[str, Any]) -> AppConfig:
    """Configuration with every side file under ``tmp_path``.

    Side files that do not exist fall back to built-in defaults.
    """
    raw: dict[str, dict[str, Any]] = {
        "store": {"eviction_interval_seconds": 0},
        "ingest": {"dpi": 100, "use_osd": False},
        "ocr": {
            "profiles_path": str(tmp_path / "ocr_profiles.yaml"),
            "worker_pool_size": 2,
            "call_timeout_seconds": 10,
        },
        "extraction": {
            "fields_path": str(tmp_path / "fields.yaml"),
            "lexicon_path": str(tmp_path / "lexicon.yaml"),
            "vendor_dir": str(tmp_path / "vendors"),
        },
        "resolution": {"calibration_path": str(tmp_path / "calibration.yaml")},
        "validation": {"rules_path": str(tmp_path / "validation_rules.yaml")},
    }
    for section, values in sections.items():
        raw.setdefault(section, {}).update(values)
    return AppConfig(**raw)


def make_candidates(
    values: dict[str, Any],
    store: ArtifactStore | None = None,
    confidence: float = 0.9,
    strategy: str = "pattern",
    source_type: SourceType = SourceType.PDF_TEXT,
) -> list[Candidate]:
    """One candidate per field; with a store, a page-rooted evidence chain too."""
    source_ref = None
    if store is not None:
        page_ref = store.put(ArtifactKind.PAGE, [], {"index": 0}, b"page-pixels")
        source_ref = store.put(ArtifactKind.OCR_RESULT, [page_ref], {"source": "test"}, b"words")
    candidates: list[Candidate] = []
    for name, value in values.items():
        candidate = Candidate(
            field_name=name,
            value=value,
            raw_text=str(value),
            confidence=confidence,
            strategy=strategy,
            source_type=source_type,
            source_ref=source_ref,
        )
        if store is not None:
            candidate.ref = store.put(
                ArtifactKind.CANDIDATE,
                [source_ref],
                {"field": name, "strategy": strategy},
                canonical_json(candidate.to_payload()),
            )
        candidates.append(candidate)
    return candidates


@dataclass
class ReviewEnv:
    """Resolver, rules and queue wired over one store."""

    store: ArtifactStore
    catalog: FieldCatalog
    resolver: FieldResolver
    rules: RulesEngine
    vendors: VendorStore
    queue: ReviewQueue

    def add_case(
        self,
        values: dict[str, Any] | None = None,
        document_id: str = "doc-1",
        vendor_id: str | None = None,
        confidence: float = 0.9,
    ) -> ReviewCase:
        candidates = make_candidates(values or GOOD_VALUES, self.store, confidence)
        record = self.resolver.resolve(document_id, candidates, [], vendor_id)
        return self.queue.add(record, self.rules.validate(record))


