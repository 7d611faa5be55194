"""Candidate generation for invoice fields.

Every token source (the PDF text layer of a page, or the words of one OCR
pass over one zone) is read by four strategies:

* ``pattern``: label-anchored regular expressions per field.
* ``lexicon``: label synonyms from the global lexicon and the vendor
  profile, matched exactly or fuzzily, plus values learned for the vendor.
* ``positional``: layout heuristics such as the top header line for the
  vendor name and the last amount of the totals box.
* ``row_parser``: line-item rows read from table lines.

Each hit becomes a :class:`Candidate` carrying its raw confidence, source
type, page location and the artifact it was read from. Candidates are
stored as Candidate artifacts so every resolved value can be traced back to
its pixels.
"""

import difflib
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import StrEnum
from statistics import median
from typing import Any

from invoice_intake.errors import ConfigurationError
from invoice_intake.ingest.ingestor import TextLayer
from invoice_intake.layout.zones import ZoneBox, ZoneType, zone_for_box
from invoice_intake.ocr.engine import BoundingBox, OCRWord
from invoice_intake.ocr.orchestrator import PassOutcome
from invoice_intake.store.artifacts import (
    ArtifactKind,
    ArtifactRef,
    ArtifactStore,
    canonical_json,
)
from invoice_intake.utils.config import ExtractionConfig
from invoice_intake.utils.logger import get_logger
from invoice_intake.vendors import Lexicon, VendorProfile, VendorStore

from .fields import FieldCatalog, FieldDefinition, FieldType
from .normalize import DATE_RE, normalize, normalize_text, parse_amount

logger = get_logger(__name__)

AMOUNT_TOKEN = r"\(?-?[$€£]?\s?\d{1,3}(?:[,.]?\d{3})*[.,]\d{2}\)?"
_ID_TOKEN = r"((?=[A-Z\-/]*\d)[A-Z0-9][A-Z0-9\-/]{2,})"

# (regex, base_confidence) per field; group 1 holds the value.
FIELD_PATTERNS: dict[str, list[tuple[str, float]]] = {
    "invoice_number": [
        (rf"\b(?:invoice|inv)\.?\s*(?:number|num|no\.?|#)?\s*[:#]?\s*{_ID_TOKEN}", 0.9),
    ],
    "po_number": [
        (
            rf"\b(?:p\.?\s?o\.?|purchase\s+order)\s*(?:number|no\.?|#)?\s*[:#]?\s*{_ID_TOKEN}",
            0.9,
        ),
    ],
    "invoice_date": [
        (
            rf"\b(?:invoice\s+date|date\s+of\s+invoice|issue\s+date|invoice\s+dated)"
            rf"\s*:?\s*({DATE_RE})",
            0.9,
        ),
        (rf"(?<!due )(?<!due-)\bdate\s*:\s*({DATE_RE})", 0.8),
    ],
    "due_date": [
        (rf"\b(?:due\s+date|payment\s+due|due\s+by|pay\s+by)\s*:?\s*({DATE_RE})", 0.9),
    ],
    "subtotal": [
        (rf"\bsub[\s\-]?total\s*:?\s*({AMOUNT_TOKEN})", 0.9),
    ],
    "tax": [
        (
            rf"\b(?:sales\s+)?(?:tax|vat|gst|hst)(?:\s*\(\s*\d+(?:\.\d+)?\s*%\s*\))?"
            rf"\s*:?\s*({AMOUNT_TOKEN})",
            0.9,
        ),
    ],
    "total": [
        (
            rf"\b(?:grand\s+total|total\s+due|amount\s+due|balance\s+due|invoice\s+total)"
            rf"\s*:?\s*({AMOUNT_TOKEN})",
            0.95,
        ),
        (rf"(?<!sub )(?<!sub-)\btotal\s*:?\s*({AMOUNT_TOKEN})", 0.85),
    ],
    "vendor_name": [
        (r"^(?:vendor|supplier|sold\s+by|bill\s+from|from)\s*:\s*(.+?)\s*$", 0.9),
        (
            r"^([A-Z][A-Za-z0-9&'.,\- ]+?\s"
            r"(?:Inc|LLC|Ltd|Limited|Corp|Corporation|Company|Co|GmbH|PLC)\.?)$",
            0.7,
        ),
    ],
}

_ROW_FULL = re.compile(
    rf"^(?P<description>.*?[A-Za-z].*?)\s+(?P<quantity>\d+(?:[.,]\d+)?)\s+"
    rf"(?P<unit_price>{AMOUNT_TOKEN})\s+(?P<amount>{AMOUNT_TOKEN})$"
)
_ROW_SHORT = re.compile(rf"^(?P<description>.*?[A-Za-z].*?)\s+(?P<amount>{AMOUNT_TOKEN})$")
_TOTALS_LABEL = re.compile(
    r"\b(?:sub[\s\-]?total|total|tax|vat|gst|hst|amount\s+due|balance|discount|shipping)\b",
    re.IGNORECASE,
)
_LEGAL_SUFFIX = re.compile(
    r"\s(?:Inc|LLC|Ltd|Limited|Corp|Corporation|Company|Co|GmbH|PLC)\.?$", re.IGNORECASE
)
_POSITIONAL_STOPWORDS = {"invoice", "tax invoice", "bill", "statement", "receipt", "page"}

PATTERN_CONFIDENCE_FLOOR = 0.05
CUSTOM_PATTERN_BASE = 0.85
LEXICON_BASE = 0.9
LEXICON_BELOW_FACTOR = 0.9
KNOWN_VALUE_BASE = 0.85
KNOWN_VALUE_MIN_RATIO = 0.9
POSITIONAL_BASE = 0.5
POSITIONAL_ENTITY_BASE = 0.9
ROW_BASE = 0.92
ROW_INCONSISTENT_FACTOR = 0.7


class SourceType(StrEnum):
    """Where a candidate's text came from, in tie-break preference order."""

    MANUAL = "manual"
    PDF_TEXT = "pdf_text"
    OCR_HIGH_RES = "ocr_high_res"
    OCR_LOW_RES = "ocr_low_res"


SOURCE_RANK = {source: rank for rank, source in enumerate(SourceType)}


@dataclass
class TokenSource:
    """Words from one text layer page or one OCR pass."""

    source_type: SourceType
    ref: ArtifactRef | None
    page_index: int
    words: list[OCRWord]
    readiness: float = 1.0
    zone_type: ZoneType | None = None
    label: str = ""


@dataclass
class TextLine:
    """Words on one visual line with character spans into ``text``."""

    words: list[OCRWord]
    text: str = ""
    spans: list[tuple[int, int]] = field(default_factory=list)
    zone_type: ZoneType | None = None
    label_hits: list["_LabelHit"] | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if not self.text:
            parts: list[str] = []
            offset = 0
            for word in self.words:
                self.spans.append((offset, offset + len(word.text)))
                parts.append(word.text)
                offset += len(word.text) + 1
            self.text = " ".join(parts)

    @property
    def bbox(self) -> BoundingBox:
        box = self.words[0].bbox
        for word in self.words[1:]:
            box = box.union(word.bbox)
        return box

    def words_in(self, start: int, end: int) -> list[OCRWord]:
        return [
            word
            for word, (w_start, w_end) in zip(self.words, self.spans)
            if w_start < end and w_end > start
        ]

    def confidence(self, start: int = 0, end: int | None = None) -> float:
        words = self.words_in(start, len(self.text) if end is None else end)
        if not words:
            return 0.0
        return sum(w.confidence for w in words) / len(words)

    def box_of(self, start: int, end: int) -> BoundingBox | None:
        words = self.words_in(start, end)
        if not words:
            return None
        box = words[0].bbox
        for word in words[1:]:
            box = box.union(word.bbox)
        return box


@dataclass
class Candidate:
    """One proposed value for one field."""

    field_name: str
    value: Any
    raw_text: str
    confidence: float
    strategy: str
    source_type: SourceType
    source_ref: ArtifactRef | None = None
    page_index: int = 0
    bbox: BoundingBox | None = None
    zone_type: ZoneType | None = None
    readiness: float = 1.0
    ref: ArtifactRef | None = None

    @property
    def value_key(self) -> str:
        if isinstance(self.value, str):
            return self.value
        return canonical_json(self.value).decode("utf-8")

    def to_payload(self) -> dict[str, Any]:
        return {
            "field": self.field_name,
            "value": self.value,
            "raw_text": self.raw_text,
            "confidence": round(self.confidence, 4),
            "strategy": self.strategy,
            "source_type": str(self.source_type),
            "page_index": self.page_index,
            "bbox": self.bbox.to_list() if self.bbox else None,
            "zone_type": str(self.zone_type) if self.zone_type else None,
            "readiness": round(self.readiness, 4),
        }


@dataclass
class _LabelHit:
    start: int
    end: int
    field_name: str
    score: float


def group_lines(words: Iterable[OCRWord]) -> list[TextLine]:
    """Cluster words into visual lines, top to bottom, left to right."""
    words = [w for w in words if w.text.strip()]
    if not words:
        return []
    line_height = max(median(w.bbox.height for w in words), 1)
    rows: list[list[OCRWord]] = []
    for word in sorted(words, key=lambda w: (w.bbox.center_y, w.bbox.x)):
        if rows:
            current = rows[-1]
            center = sum(w.bbox.center_y for w in current) / len(current)
            if abs(word.bbox.center_y - center) <= line_height * 0.5:
                current.append(word)
                continue
        rows.append([word])
    return [TextLine(sorted(row, key=lambda w: w.bbox.x)) for row in rows]


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _clamp(value: float) -> float:
    return min(max(value, 0.0), 1.0)


def _typed_value(field_type: FieldType, text: str) -> tuple[str, str] | None:
    """Find the first value of a type inside text.

    Returns:
        Tuple of (raw matched text, normalized value), or None.
    """
    text = text.strip().lstrip(":#-. ").strip()
    if not text:
        return None
    if field_type == FieldType.AMOUNT:
        match = re.search(AMOUNT_TOKEN, text)
        raw = match.group(0) if match else text.split()[0]
    elif field_type == FieldType.DATE:
        match = re.search(DATE_RE, text, re.IGNORECASE)
        if not match:
            return None
        raw = match.group(0)
    elif field_type == FieldType.IDENTIFIER:
        raw = text.split()[0]
    else:
        raw = text
    value = normalize(field_type, raw)
    return (raw, value) if value else None


def _quantity(raw: str) -> str | None:
    try:
        value = Decimal(raw.replace(",", "."))
    except InvalidOperation:
        return None
    return format(value.normalize(), "f")


def source_type_for_dpi(effective_dpi: float, high_res_dpi: int) -> SourceType:
    if effective_dpi >= high_res_dpi:
        return SourceType.OCR_HIGH_RES
    return SourceType.OCR_LOW_RES


class CandidateGenerator:
    """Turns token sources into stored field candidates.

    Args:
        catalog: Field definitions to extract.
        lexicon: Global label synonyms.
        store: Artifact store receiving Candidate artifacts.
        config: Extraction settings.
        vendors: Vendor profiles supplying synonyms and known values.
        high_res_dpi: Effective DPI at which OCR counts as high resolution.
    """

    def __init__(
        self,
        catalog: FieldCatalog,
        lexicon: Lexicon,
        store: ArtifactStore,
        config: ExtractionConfig | None = None,
        vendors: VendorStore | None = None,
        high_res_dpi: int = 300,
    ) -> None:
        self.catalog = catalog
        self.lexicon = lexicon
        self.store = store
        self.config = config or ExtractionConfig()
        self.vendors = vendors
        self.high_res_dpi = high_res_dpi
        self._patterns: dict[str, list[tuple[re.Pattern, float]]] = {}
        for definition in catalog:
            patterns = FIELD_PATTERNS.get(definition.name, []) + [
                (regex, CUSTOM_PATTERN_BASE) for regex in definition.patterns
            ]
            try:
                self._patterns[definition.name] = [
                    (re.compile(regex, re.IGNORECASE), conf) for regex, conf in patterns
                ]
            except re.error as exc:
                raise ConfigurationError(
                    f"Invalid pattern for field {definition.name}: {exc}"
                ) from exc

    def sources(
        self,
        outcomes: Iterable[PassOutcome],
        text_layers: dict[int, TextLayer] | None = None,
    ) -> list[TokenSource]:
        """Build token sources from text layers and successful OCR passes."""
        sources = [
            TokenSource(
                source_type=SourceType.PDF_TEXT,
                ref=layer.ref,
                page_index=layer.page_index,
                words=layer.words,
                label="text_layer",
            )
            for _, layer in sorted((text_layers or {}).items())
        ]
        for outcome in outcomes:
            if outcome.failed or outcome.ref is None:
                continue
            sources.append(
                TokenSource(
                    source_type=source_type_for_dpi(outcome.effective_dpi, self.high_res_dpi),
                    ref=outcome.ref,
                    page_index=outcome.page_index,
                    words=outcome.words,
                    readiness=outcome.readiness,
                    zone_type=outcome.zone_type,
                    label=f"{outcome.variant_recipe}/{outcome.pass_name}",
                )
            )
        return sources

    def generate(
        self,
        sources: list[TokenSource],
        zones: dict[int, list[ZoneBox]] | None = None,
        vendor_id: str | None = None,
        persist: bool = True,
    ) -> list[Candidate]:
        """Run every strategy over every source.

        Args:
            sources: Token sources to read.
            zones: Zones per page index, used to place text-layer lines.
            vendor_id: Vendor whose synonyms and known values apply.
            persist: Store candidates as artifacts. Probes during OCR pass
                ``False`` since only the confidences matter there.

        Returns:
            Candidates in source order.
        """
        vendor = self.vendors.get(vendor_id) if self.vendors else None
        zones = zones or {}
        candidates: list[Candidate] = []
        for source in sources:
            lines = self._lines(source, zones.get(source.page_index, []))
            if not lines:
                continue
            found: list[Candidate] = []
            for definition in self.catalog:
                if definition.field_type == FieldType.LINE_ITEMS:
                    found.extend(self._row_candidates(definition, source, lines))
                    continue
                for strategy in (self._pattern, self._lexicon, self._positional):
                    hits = strategy(definition, source, lines, vendor)
                    hits.sort(key=lambda c: -c.confidence)
                    found.extend(hits[: self.config.max_candidates_per_strategy])
            if persist:
                for candidate in found:
                    self._persist(candidate)
            candidates.extend(found)

        logger.debug("Generated %d candidates from %d sources", len(candidates), len(sources))
        return candidates

    def _persist(self, candidate: Candidate) -> None:
        parents = [candidate.source_ref] if candidate.source_ref else []
        candidate.ref = self.store.put(
            ArtifactKind.CANDIDATE,
            parents,
            {"field": candidate.field_name, "strategy": candidate.strategy},
            canonical_json(candidate.to_payload()),
        )

    def _lines(self, source: TokenSource, zones: list[ZoneBox]) -> list[TextLine]:
        lines = group_lines(source.words)
        if source.zone_type is not None or not zones:
            for line in lines:
                line.zone_type = source.zone_type
            return lines
        placed: list[TextLine] = []
        for line in lines:
            zone = zone_for_box(zones, line.bbox)
            if zone is not None and zone.masked:
                continue
            line.zone_type = zone.zone_type if zone else None
            placed.append(line)
        return placed

    def _candidate(
        self,
        definition: FieldDefinition,
        source: TokenSource,
        line: TextLine,
        value: Any,
        raw_text: str,
        confidence: float,
        strategy: str,
        span: tuple[int, int] | None = None,
    ) -> Candidate:
        bbox = line.box_of(*span) if span else line.bbox
        return Candidate(
            field_name=definition.name,
            value=value,
            raw_text=raw_text,
            confidence=round(_clamp(confidence), 6),
            strategy=strategy,
            source_type=source.source_type,
            source_ref=source.ref,
            page_index=source.page_index,
            bbox=bbox,
            zone_type=line.zone_type,
            readiness=source.readiness,
        )

    def _pattern(
        self,
        definition: FieldDefinition,
        source: TokenSource,
        lines: list[TextLine],
        vendor: VendorProfile | None,
    ) -> list[Candidate]:
        found: list[Candidate] = []
        for line in lines:
            for pattern, base in self._patterns.get(definition.name, []):
                for match in pattern.finditer(line.text):
                    group = 1 if pattern.groups else 0
                    raw = match.group(group).strip()
                    value = normalize(definition.field_type, raw)
                    if not value:
                        continue
                    span = match.span(group)
                    confidence = base * line.confidence(*span)
                    if confidence < PATTERN_CONFIDENCE_FLOOR:
                        continue
                    found.append(
                        self._candidate(
                            definition, source, line, value, raw, confidence, "pattern", span
                        )
                    )
        return found

    def _label_hits(self, line: TextLine, vendor: VendorProfile | None) -> list[_LabelHit]:
        if line.label_hits is None:
            line.label_hits = self._find_labels(line, vendor)
        return line.label_hits

    def _find_labels(self, line: TextLine, vendor: VendorProfile | None) -> list[_LabelHit]:
        hits: list[_LabelHit] = []
        lowered = line.text.lower()
        for definition in self.catalog.scalar:
            for label in self.lexicon.labels_for(definition.name, vendor):
                regex = rf"(?<!\w){re.escape(label)}(?!\w)"
                for match in re.finditer(regex, lowered):
                    start, end = match.span()
                    leading = lowered[:start].strip(" :#-|")
                    followed = lowered[end:].lstrip().startswith((":", "#"))
                    if leading and not followed:
                        continue
                    hits.append(_LabelHit(start, end, definition.name, 1.0))

        # A label inside a longer label (``date`` in ``due date``) is not a label.
        hits = [
            hit
            for hit in hits
            if not any(
                other.start <= hit.start
                and other.end >= hit.end
                and other.end - other.start > hit.end - hit.start
                for other in hits
            )
        ]
        if hits:
            return sorted(hits, key=lambda h: h.start)

        fuzzy = self._fuzzy_label(line, vendor)
        return [fuzzy] if fuzzy else []

    def _fuzzy_label(self, line: TextLine, vendor: VendorProfile | None) -> _LabelHit | None:
        tokens = line.text.split(" ")
        best: _LabelHit | None = None
        for definition in self.catalog.scalar:
            for label in self.lexicon.labels_for(definition.name, vendor):
                size = len(label.split())
                if size > len(tokens):
                    continue
                head = " ".join(tokens[:size]).lower().rstrip(":#")
                score = difflib.SequenceMatcher(None, head, label).ratio()
                if score < self.config.min_label_score:
                    continue
                if best is None or score > best.score:
                    end = len(" ".join(tokens[:size]))
                    best = _LabelHit(0, end, definition.name, score)
        return best

    def _lexicon(
        self,
        definition: FieldDefinition,
        source: TokenSource,
        lines: list[TextLine],
        vendor: VendorProfile | None,
    ) -> list[Candidate]:
        found: list[Candidate] = []
        for index, line in enumerate(lines):
            hits = self._label_hits(line, vendor)
            for position, hit in enumerate(hits):
                if hit.field_name != definition.name:
                    continue
                stop = hits[position + 1].start if position + 1 < len(hits) else len(line.text)
                segment = line.text[hit.end : stop]
                typed = _typed_value(definition.field_type, segment)
                if typed is not None:
                    raw, value = typed
                    offset = hit.end + segment.find(raw)
                    span = (offset, offset + len(raw))
                    confidence = LEXICON_BASE * hit.score * line.confidence(*span)
                    found.append(
                        self._candidate(
                            definition, source, line, value, raw, confidence, "lexicon", span
                        )
                    )
                    continue
                if segment.strip(" :#-"):
                    continue
                below = self._line_below(lines, index, line.box_of(hit.start, hit.end))
                if below is None:
                    continue
                typed = _typed_value(definition.field_type, below.text)
                if typed is not None:
                    raw, value = typed
                    confidence = (
                        LEXICON_BASE * LEXICON_BELOW_FACTOR * hit.score * below.confidence()
                    )
                    found.append(
                        self._candidate(
                            definition, source, below, value, raw, confidence, "lexicon"
                        )
                    )

        if vendor is not None:
            found.extend(self._known_values(definition, source, lines, vendor))
        return found

    @staticmethod
    def _line_below(
        lines: list[TextLine], index: int, label_box: BoundingBox | None
    ) -> TextLine | None:
        if label_box is None:
            return None
        for line in lines[index + 1 :]:
            box = line.bbox
            if box.y - label_box.bottom > label_box.height * 2:
                return None
            if box.x < label_box.right and box.right > label_box.x:
                return line
        return None

    def _known_values(
        self,
        definition: FieldDefinition,
        source: TokenSource,
        lines: list[TextLine],
        vendor: VendorProfile,
    ) -> list[Candidate]:
        found: list[Candidate] = []
        for known in vendor.known_values.get(definition.name, []):
            value = normalize(definition.field_type, known)
            if not value:
                continue
            needle = known.lower()
            for line in lines:
                lowered = line.text.lower()
                start = lowered.find(needle)
                if start >= 0:
                    span = (start, start + len(needle))
                    confidence = KNOWN_VALUE_BASE * line.confidence(*span)
                    found.append(
                        self._candidate(
                            definition, source, line, value, known, confidence, "lexicon", span
                        )
                    )
                    continue
                ratio = difflib.SequenceMatcher(None, lowered, needle).ratio()
                if ratio >= KNOWN_VALUE_MIN_RATIO:
                    confidence = KNOWN_VALUE_BASE * ratio * line.confidence()
                    found.append(
                        self._candidate(
                            definition, source, line, value, line.text, confidence, "lexicon"
                        )
                    )
        return found

    def _positional(
        self,
        definition: FieldDefinition,
        source: TokenSource,
        lines: list[TextLine],
        vendor: VendorProfile | None,
    ) -> list[Candidate]:
        zone_lines = [line for line in lines if line.zone_type in definition.zones]
        if not zone_lines:
            return []

        if definition.field_type == FieldType.TEXT and source.page_index == 0:
            for line in zone_lines:
                text = line.text.strip()
                letters = sum(ch.isalpha() for ch in text)
                if letters < 3 or any(ch.isdigit() for ch in text):
                    continue
                if text.lower() in _POSITIONAL_STOPWORDS or self._label_hits(line, vendor):
                    continue
                value = normalize_text(text)
                # A top header line naming a legal entity is the letterhead.
                base = POSITIONAL_ENTITY_BASE if _LEGAL_SUFFIX.search(text) else POSITIONAL_BASE
                confidence = base * line.confidence()
                return [
                    self._candidate(
                        definition, source, line, value, text, confidence, "positional"
                    )
                ]
            return []

        if definition.field_type == FieldType.AMOUNT and definition.name == "total":
            for line in reversed(zone_lines):
                matches = list(re.finditer(AMOUNT_TOKEN, line.text))
                if not matches:
                    continue
                match = matches[-1]
                amount = parse_amount(match.group(0))
                if amount is None:
                    continue
                confidence = POSITIONAL_BASE * line.confidence(*match.span())
                return [
                    self._candidate(
                        definition,
                        source,
                        line,
                        f"{amount:.2f}",
                        match.group(0),
                        confidence,
                        "positional",
                        match.span(),
                    )
                ]
        return []

    def _row_candidates(
        self,
        definition: FieldDefinition,
        source: TokenSource,
        lines: list[TextLine],
    ) -> list[Candidate]:
        rows: list[dict[str, str]] = []
        confidences: list[float] = []
        consistent = True
        row_lines: list[TextLine] = []
        for line in lines:
            text = line.text.strip()
            in_table = line.zone_type in definition.zones
            match = _ROW_FULL.match(text)
            if match:
                quantity = _quantity(match.group("quantity"))
                unit_price = parse_amount(match.group("unit_price"))
                amount = parse_amount(match.group("amount"))
                if quantity is None or unit_price is None or amount is None:
                    continue
                if abs(Decimal(quantity) * unit_price - amount) > Decimal("0.01"):
                    consistent = False
                rows.append(
                    {
                        "description": normalize_text(match.group("description")) or "",
                        "quantity": quantity,
                        "unit_price": f"{unit_price:.2f}",
                        "amount": f"{amount:.2f}",
                    }
                )
            elif in_table and not _TOTALS_LABEL.search(text):
                match = _ROW_SHORT.match(text)
                if not match:
                    continue
                amount = parse_amount(match.group("amount"))
                if amount is None:
                    continue
                rows.append(
                    {
                        "description": normalize_text(match.group("description")) or "",
                        "quantity": "1",
                        "unit_price": f"{amount:.2f}",
                        "amount": f"{amount:.2f}",
                    }
                )
            else:
                continue
            confidences.append(line.confidence())
            row_lines.append(line)

        if not rows:
            return []
        confidence = ROW_BASE * _mean(confidences)
        if not consistent:
            confidence *= ROW_INCONSISTENT_FACTOR
        box = row_lines[0].bbox
        for line in row_lines[1:]:
            box = box.union(line.bbox)
        return [
            Candidate(
                field_name=definition.name,
                value=rows,
                raw_text="\n".join(line.text for line in row_lines),
                confidence=round(_clamp(confidence), 6),
                strategy="row_parser",
                source_type=source.source_type,
                source_ref=source.ref,
                page_index=source.page_index,
                bbox=box,
                zone_type=row_lines[0].zone_type,
                readiness=source.readiness,
            )
        ]
