"""End-to-end document pipeline.

Wires ingestion, variant generation, zoning and masking, OCR orchestration,
candidate generation, resolution and validation, and hands the result to
the review queue. One :class:`InvoicePipeline` is shared by every document
processed in a run; its store, worker pool and queue are process-wide.
"""

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from invoice_intake.errors import CorruptDocument
from invoice_intake.extraction.candidates import Candidate, CandidateGenerator
from invoice_intake.extraction.fields import FieldCatalog
from invoice_intake.ingest.ingestor import DocumentIngestor, IngestResult
from invoice_intake.ingest.orientation import OsdFunction
from invoice_intake.layout.masks import MaskEngine
from invoice_intake.layout.zones import ZoneBox, ZoneDetector
from invoice_intake.ocr.engine import EngineRegistry
from invoice_intake.ocr.orchestrator import (
    OcrOrchestrator,
    OrchestrationResult,
    PageWork,
    PassOutcome,
)
from invoice_intake.ocr.pool import WorkerPool
from invoice_intake.ocr.profiles import ProfileCatalog
from invoice_intake.ocr.tesseract_engine import TesseractEngine
from invoice_intake.preprocessing.variants import VariantGenerator
from invoice_intake.resolution.calibration import Calibrator
from invoice_intake.resolution.resolver import FieldResolver, ResolvedRecord
from invoice_intake.review.approval import ApprovalGate, ApprovalHandoff
from invoice_intake.review.case import ReviewCase
from invoice_intake.review.queue import ReviewQueue
from invoice_intake.store.artifacts import ArtifactRef, ArtifactStore
from invoice_intake.store.backends import LocalDiskBackend, MemoryBackend
from invoice_intake.utils.config import AppConfig
from invoice_intake.utils.logger import get_logger
from invoice_intake.validation.rules_engine import RulesEngine, ValidationResult
from invoice_intake.vendors import Lexicon, VendorStore

logger = get_logger(__name__)


@dataclass
class ExtractionOutcome:
    """Everything produced for one document before it enters review."""

    document_id: str
    ingest: IngestResult
    orchestration: OrchestrationResult
    candidates: list[Candidate]
    record: ResolvedRecord
    validation: ValidationResult
    warnings: list[str] = field(default_factory=list)

    def orchestration_summary(self) -> dict[str, Any]:
        return {
            "state": str(self.orchestration.state),
            "profile": self.orchestration.profile,
            "stats": self.orchestration.stats.to_dict(),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "document_id": self.document_id,
            "pages": len(self.ingest.pages),
            "record": self.record.to_dict(),
            "validation": self.validation.to_dict(),
            "orchestration": self.orchestration_summary(),
            "candidates": len(self.candidates),
            "warnings": self.warnings,
        }


def build_store(config: AppConfig) -> ArtifactStore:
    """Create the artifact store described by ``config.store``.

    A disk store re-reads its index so artifacts from earlier runs are
    found again.
    """
    settings = config.store
    if settings.backend == "disk":
        backend = LocalDiskBackend(settings.root)
    else:
        backend = MemoryBackend()
    store = ArtifactStore(
        backend,
        ttl_seconds=settings.ttl_seconds,
        max_bytes=settings.max_bytes,
        persist_timeout=settings.persist_timeout_seconds,
    )
    if settings.backend == "disk":
        store.load_index()
    return store


class InvoicePipeline:
    """Processes documents into review cases.

    Args:
        config: Application configuration.
        registry: OCR engines. Defaults to a Tesseract engine.
        store: Artifact store. Defaults to :func:`build_store`.
        osd: Orientation detector. Defaults to Tesseract OSD when the
            registry holds the default Tesseract engine.
        today: Date source for date flags and rules.
    """

    def __init__(
        self,
        config: AppConfig | None = None,
        registry: EngineRegistry | None = None,
        store: ArtifactStore | None = None,
        osd: OsdFunction | None = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.config = config or AppConfig()
        cfg = self.config
        self.store = store or build_store(cfg)

        if registry is None:
            tesseract = TesseractEngine(cfg.ocr.tesseract_cmd, cfg.ocr.default_lang)
            registry = EngineRegistry([tesseract])
            osd = osd or tesseract.detect_orientation
        self.registry = registry

        self.ingestor = DocumentIngestor(cfg.ingest, self.store, osd=osd)
        self.variants = VariantGenerator(cfg.variants, self.store)
        self.zones = ZoneDetector(cfg.zones)
        self.masks = MaskEngine(cfg.zones)

        self.profiles = ProfileCatalog.load(cfg.ocr.profiles_path)
        self.pool = WorkerPool(cfg.ocr.worker_pool_size)
        self.orchestrator = OcrOrchestrator(
            registry, self.pool, self.store, call_timeout=cfg.ocr.call_timeout_seconds
        )

        self.catalog = FieldCatalog.load(cfg.extraction.fields_path)
        self.lexicon = Lexicon.load(cfg.extraction.lexicon_path)
        self.vendors = VendorStore(cfg.extraction.vendor_dir)
        self.vendors.load()
        self.generator = CandidateGenerator(
            self.catalog,
            self.lexicon,
            self.store,
            cfg.extraction,
            vendors=self.vendors,
            high_res_dpi=cfg.ocr.high_res_dpi,
        )

        self.calibrator = Calibrator.load(cfg.resolution.calibration_path)
        self.resolver = FieldResolver(
            self.catalog, self.calibrator, self.store, cfg.resolution, today=today
        )
        self.rules = RulesEngine(cfg.validation.rules_path, cfg.validation.mode, today=today)
        self.queue = ReviewQueue(
            self.rules,
            self.resolver,
            self.store,
            self.catalog,
            vendors=self.vendors,
            config=cfg.review,
        )
        self._gate: ApprovalGate | None = None

        if cfg.store.eviction_interval_seconds > 0:
            self.store.start_background_eviction(cfg.store.eviction_interval_seconds)

    def approval_gate(self, handoff: ApprovalHandoff) -> ApprovalGate:
        """Create the queue's single approval gate.

        Raises:
            ConfigurationError: If a gate was already created.
        """
        self._gate = ApprovalGate(self.queue, self.store, handoff)
        return self._gate

    def _prepare_pages(self, ingest: IngestResult, vendor_id: str | None) -> list[PageWork]:
        user_masks = self.vendors.masks_for(vendor_id)
        overrides = []
        if self.config.zones.manual_override_enabled:
            overrides = self.vendors.zone_overrides_for(vendor_id)
        pages: list[PageWork] = []
        for page in ingest.pages:
            variants = self.variants.generate(page.ref, page.image)
            zones = self.zones.detect(page.image)
            for override in overrides:
                zones = self.zones.apply_override(zones, override)
            masks = list(user_masks)
            if self.config.zones.auto_mask_enabled:
                masks.extend(self.masks.auto_masks(page.image, zones))
            zones = self.masks.apply(zones, masks)
            pages.append(
                PageWork(
                    page_index=page.index,
                    page_ref=page.ref,
                    dpi=page.dpi,
                    variants=variants,
                    zones=zones,
                )
            )
        return pages

    def extract(
        self,
        data: bytes,
        mime_type: str,
        document_id: str | None = None,
        vendor_id: str | None = None,
        profile: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> ExtractionOutcome:
        """Run a document through every stage up to validation.

        Args:
            data: Raw document bytes.
            mime_type: Declared MIME type.
            document_id: Identifier; defaults to a content digest prefix.
            vendor_id: Known vendor, enabling vendor profiles and masks.
            profile: OCR profile name; defaults to the configured one.
            cancel_event: Stops scheduling further OCR passes when set.

        Returns:
            The extraction outcome.

        Raises:
            UnsupportedFormat: If the MIME type is not supported.
            CorruptDocument: If no page of the document can be rasterized.
                A failure after some pages continues with those pages.
        """
        self.vendors.reload_if_changed()
        self.rules.reload_if_changed()

        try:
            ingest = self.ingestor.ingest(data, mime_type, document_id)
        except CorruptDocument as exc:
            if exc.partial is None:
                raise
            # The ingest warnings already name the page that failed.
            ingest = exc.partial
        doc_id = ingest.document_id
        log = get_logger(__name__, document_id=doc_id)

        pages = self._prepare_pages(ingest, vendor_id)
        zones_by_page: dict[int, list[ZoneBox]] = {p.page_index: p.zones for p in pages}
        ocr_profile = self.profiles.get(profile or self.config.ocr.default_profile)

        def probe(outcomes: list[PassOutcome]) -> dict[str, float]:
            sources = self.generator.sources(outcomes, ingest.text_layers)
            found = self.generator.generate(sources, zones_by_page, vendor_id, persist=False)
            interim = self.resolver.resolve(doc_id, found, [], vendor_id, persist=False)
            return interim.confidences()

        orchestration = self.orchestrator.run(
            doc_id, pages, ocr_profile, probe, vendor_id=vendor_id, cancel_event=cancel_event
        )

        sources = self.generator.sources(orchestration.successful, ingest.text_layers)
        candidates = self.generator.generate(sources, zones_by_page, vendor_id)
        searched: list[ArtifactRef] = [s.ref for s in sources if s.ref is not None]
        if not searched:
            searched = [page.page_ref for page in pages]
        record = self.resolver.resolve(doc_id, candidates, searched, vendor_id)
        validation = self.rules.validate(record)

        warnings = list(ingest.warnings)
        for page_index, zone_index, recipe, pass_name in orchestration.permanently_failed:
            warnings.append(
                f"OCR pass {pass_name} on page {page_index + 1} zone {zone_index} "
                f"({recipe}) failed permanently"
            )
        log.info(
            "Extracted %d field(s) from %d candidate(s), OCR %s, validation %s",
            len(record.fields),
            len(candidates),
            orchestration.state,
            "passed" if validation.passed else "failed",
        )
        return ExtractionOutcome(
            document_id=doc_id,
            ingest=ingest,
            orchestration=orchestration,
            candidates=candidates,
            record=record,
            validation=validation,
            warnings=warnings,
        )

    def process(
        self,
        data: bytes,
        mime_type: str,
        document_id: str | None = None,
        vendor_id: str | None = None,
        profile: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> ReviewCase:
        """Extract a document and enqueue it for review."""
        outcome = self.extract(data, mime_type, document_id, vendor_id, profile, cancel_event)
        return self.queue.add(
            outcome.record,
            outcome.validation,
            warnings=outcome.warnings,
            orchestration=outcome.orchestration_summary(),
        )

    def close(self) -> None:
        """Stop background eviction and the worker pool."""
        self.store.stop_background_eviction()
        self.pool.shutdown()
