"""Budgeted multi-pass OCR orchestration.

A run schedules one OCR pass per zone x variant x pass configuration and
executes them on the shared :class:`~invoice_intake.ocr.pool.WorkerPool`,
never more than the profile's per-document concurrency at a time. After
every completed pass a confidence probe re-scores the critical fields; once
all of them exceed the early-stop threshold no further pass is scheduled.

Run states::

    PENDING -> RUNNING -> EARLY_STOPPED | BUDGET_EXHAUSTED | COMPLETED | CANCELLED

Budget exhaustion is a normal terminal state, not an error. Failed passes
are recorded, retried once and then counted as permanently failed; they
never abort the document.
"""

import threading
import time
from collections import deque
from collections.abc import Callable
from concurrent.futures import FIRST_COMPLETED, Future, wait
from dataclasses import dataclass, field
from enum import StrEnum

import cv2
import numpy as np

from invoice_intake.errors import (
    ArtifactPersistenceError,
    EngineError,
    EngineTimeout,
    InvalidTransition,
)
from invoice_intake.layout.zones import ZoneBox, ZoneType, crop_zone
from invoice_intake.preprocessing.variants import Variant
from invoice_intake.store.artifacts import (
    ArtifactKind,
    ArtifactRef,
    ArtifactStore,
    canonical_json,
)
from invoice_intake.utils.images import encode_png
from invoice_intake.utils.logger import get_logger
from invoice_intake.utils.timeouts import call_with_timeout

from .engine import EngineRegistry, OCRWord
from .pool import WorkerPool
from .profiles import OcrProfile, PassConfig

logger = get_logger(__name__)

ZONE_PRIORITY = {
    ZoneType.TOTALS_BOX: 0,
    ZoneType.HEADER_FIELDS: 1,
    ZoneType.LINE_ITEMS_TABLE: 2,
    ZoneType.UNCLASSIFIED: 3,
    ZoneType.FOOTER: 4,
}


class RunState(StrEnum):
    """Lifecycle of one orchestration run."""

    PENDING = "pending"
    RUNNING = "running"
    EARLY_STOPPED = "early_stopped"
    BUDGET_EXHAUSTED = "budget_exhausted"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


_TRANSITIONS: dict[RunState, set[RunState]] = {
    RunState.PENDING: {RunState.RUNNING, RunState.CANCELLED},
    RunState.RUNNING: {
        RunState.EARLY_STOPPED,
        RunState.BUDGET_EXHAUSTED,
        RunState.COMPLETED,
        RunState.CANCELLED,
    },
}


@dataclass
class PageWork:
    """One page's variants and zones, ready for scheduling."""

    page_index: int
    page_ref: ArtifactRef
    dpi: int
    variants: list[Variant]
    zones: list[ZoneBox]


@dataclass(frozen=True)
class PassTask:
    """One scheduled pass over one zone of one variant."""

    page_index: int
    dpi: int
    zone: ZoneBox
    variant: Variant
    pass_config: PassConfig
    attempt: int = 0

    @property
    def key(self) -> tuple[int, int, str, str]:
        return (self.page_index, self.zone.index, self.variant.recipe, self.pass_config.name)


@dataclass
class PassOutcome:
    """Result of one executed pass, successful or failed.

    Word boxes are in page pixel coordinates.
    """

    page_index: int
    zone_index: int
    zone_type: ZoneType
    variant_recipe: str
    variant_rank: int
    readiness: float
    pass_name: str
    scale: float
    dpi: int
    attempt: int
    words: list[OCRWord] = field(default_factory=list)
    ref: ArtifactRef | None = None
    zone_ref: ArtifactRef | None = None
    failed: bool = False
    error: str | None = None
    sequence: int = 0

    @property
    def effective_dpi(self) -> float:
        return self.dpi * self.scale


@dataclass
class OrchestrationStats:
    """Counters for one run."""

    scheduled: int = 0
    passes_run: int = 0
    passes_failed: int = 0
    retries: int = 0
    permanently_failed: int = 0
    probes: int = 0
    wall_seconds: float = 0.0

    @property
    def success_rate(self) -> float:
        if not self.passes_run:
            return 0.0
        return (self.passes_run - self.passes_failed) / self.passes_run

    def to_dict(self) -> dict[str, float]:
        return {
            "scheduled": self.scheduled,
            "passes_run": self.passes_run,
            "passes_failed": self.passes_failed,
            "retries": self.retries,
            "permanently_failed": self.permanently_failed,
            "probes": self.probes,
            "wall_seconds": round(self.wall_seconds, 3),
            "success_rate": round(self.success_rate, 4),
        }


@dataclass
class OrchestrationResult:
    """Everything a run produced."""

    document_id: str
    state: RunState
    profile: str
    outcomes: list[PassOutcome] = field(default_factory=list)
    stats: OrchestrationStats = field(default_factory=OrchestrationStats)
    permanently_failed: list[tuple[int, int, str, str]] = field(default_factory=list)
    confidences: dict[str, float] = field(default_factory=dict)

    @property
    def successful(self) -> list[PassOutcome]:
        return [o for o in self.outcomes if not o.failed]


ConfidenceProbe = Callable[[list[PassOutcome]], dict[str, float]]


class OcrRun:
    """State machine for a single document run."""

    def __init__(self, document_id: str) -> None:
        self.document_id = document_id
        self.state = RunState.PENDING

    def transition(self, target: RunState) -> None:
        if target not in _TRANSITIONS.get(self.state, set()):
            raise InvalidTransition(self.state, target)
        logger.debug("Run %s: %s -> %s", self.document_id, self.state, target)
        self.state = target


class OcrOrchestrator:
    """Runs OCR passes for documents under a profile's budget.

    Args:
        registry: Engines by name.
        pool: Worker pool shared by all documents.
        store: Artifact store receiving Zone and OcrResult artifacts.
        call_timeout: Per engine call timeout in seconds.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        registry: EngineRegistry,
        pool: WorkerPool,
        store: ArtifactStore,
        call_timeout: float | None = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registry = registry
        self.pool = pool
        self.store = store
        self.call_timeout = call_timeout
        self._clock = clock

    def build_schedule(
        self,
        pages: list[PageWork],
        profile: OcrProfile,
        vendor_id: str | None = None,
    ) -> list[PassTask]:
        """Order passes: variant rank, then pass config, then zone priority.

        Masked zones are never scheduled.
        """
        zones = sorted(
            (
                (page, zone)
                for page in pages
                for zone in page.zones
                if not zone.masked and zone.zone_type in ZONE_PRIORITY
            ),
            key=lambda item: (
                ZONE_PRIORITY[item[1].zone_type], item[0].page_index, item[1].index
            ),
        )
        tasks: list[PassTask] = []
        for rank in range(profile.variants_per_zone):
            for pass_config in profile.passes:
                for page, zone in zones:
                    if rank >= len(page.variants):
                        continue
                    if pass_config not in profile.passes_for(zone.zone_type, vendor_id):
                        continue
                    tasks.append(
                        PassTask(
                            page_index=page.page_index,
                            dpi=page.dpi,
                            zone=zone,
                            variant=page.variants[rank],
                            pass_config=pass_config,
                        )
                    )
        return tasks

    def run(
        self,
        document_id: str,
        pages: list[PageWork],
        profile: OcrProfile,
        probe: ConfidenceProbe | None = None,
        vendor_id: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> OrchestrationResult:
        """Execute the schedule until early stop, budget or completion.

        Args:
            document_id: Document identifier, used as the pool lane.
            pages: Variants and zones per page.
            profile: OCR profile with passes and budget.
            probe: Returns calibrated confidences per field from the
                successful outcomes gathered so far.
            vendor_id: Vendor, for per-vendor pass overrides.
            cancel_event: When set, no further pass is scheduled; passes
                already running finish and are recorded.

        Returns:
            Outcomes in completion order, final state and statistics.
        """
        log = get_logger(__name__, document_id=document_id)
        run = OcrRun(document_id)
        result = OrchestrationResult(
            document_id=document_id, state=run.state, profile=profile.name
        )
        stats = result.stats
        cancel_event = cancel_event or threading.Event()

        if cancel_event.is_set():
            run.transition(RunState.CANCELLED)
            result.state = run.state
            return result

        pending = deque(self.build_schedule(pages, profile, vendor_id))
        stats.scheduled = len(pending)
        run.transition(RunState.RUNNING)
        log.info(
            "OCR run started: %d passes scheduled, budget %d passes / %.0fs, concurrency %d",
            stats.scheduled,
            profile.max_passes,
            profile.max_wall_seconds,
            profile.max_concurrency,
        )

        started_at = self._clock()
        deadline = started_at + profile.max_wall_seconds
        in_flight: dict[Future, PassTask] = {}
        started = 0
        sequence = 0
        stop: RunState | None = None
        while True:
            # One pass at a time until the first confidence check.
            limit = profile.max_concurrency if probe is None or stats.probes else 1
            while stop is None and pending and len(in_flight) < limit:
                if cancel_event.is_set():
                    stop = RunState.CANCELLED
                    break
                if started >= profile.max_passes or self._clock() >= deadline:
                    stop = RunState.BUDGET_EXHAUSTED
                    break
                task = pending.popleft()
                future = self.pool.submit(document_id, lambda t=task: self._execute(t))
                in_flight[future] = task
                started += 1

            if not in_flight:
                break

            timeout = None
            if stop is None:
                timeout = max(deadline - self._clock(), 0.0)
            done, _ = wait(list(in_flight), timeout=timeout, return_when=FIRST_COMPLETED)
            if not done:
                # Wall-clock budget ran out while passes were still running.
                stop = stop or RunState.BUDGET_EXHAUSTED
                continue

            for future in sorted(done, key=lambda f: in_flight[f].key):
                task = in_flight.pop(future)
                outcome = future.result()
                sequence += 1
                outcome.sequence = sequence
                result.outcomes.append(outcome)
                stats.passes_run += 1

                if outcome.failed:
                    stats.passes_failed += 1
                    if task.attempt == 0:
                        stats.retries += 1
                        pending.appendleft(
                            PassTask(
                                page_index=task.page_index,
                                dpi=task.dpi,
                                zone=task.zone,
                                variant=task.variant,
                                pass_config=task.pass_config,
                                attempt=1,
                            )
                        )
                        log.warning(
                            "Pass %s on page %d zone %d (%s, %s) failed, retrying: %s",
                            task.pass_config.name,
                            task.page_index,
                            task.zone.index,
                            task.zone.zone_type,
                            task.variant.recipe,
                            outcome.error,
                        )
                    else:
                        stats.permanently_failed += 1
                        result.permanently_failed.append(task.key)
                        log.error(
                            "Pass %s on page %d zone %d (%s, %s) permanently failed: %s",
                            task.pass_config.name,
                            task.page_index,
                            task.zone.index,
                            task.zone.zone_type,
                            task.variant.recipe,
                            outcome.error,
                        )
                    continue

                if probe is not None and stop is None:
                    stats.probes += 1
                    result.confidences = probe(result.successful)
                    if self._critical_fields_confident(result.confidences, profile):
                        stop = RunState.EARLY_STOPPED
                        log.info(
                            "Early stop after %d passes: %s",
                            stats.passes_run,
                            {
                                f: round(result.confidences.get(f, 0.0), 3)
                                for f in profile.critical_fields
                            },
                        )

            if stop is None and cancel_event.is_set():
                stop = RunState.CANCELLED
            if stop is None and self._clock() >= deadline and pending:
                stop = RunState.BUDGET_EXHAUSTED

        if stop is None and pending:
            stop = RunState.BUDGET_EXHAUSTED
        run.transition(stop or RunState.COMPLETED)
        result.state = run.state
        stats.wall_seconds = self._clock() - started_at
        log.info("OCR run finished: %s %s", result.state, stats.to_dict())
        return result

    @staticmethod
    def _critical_fields_confident(confidences: dict[str, float], profile: OcrProfile) -> bool:
        return all(
            confidences.get(name, 0.0) > profile.early_stop_threshold
            for name in profile.critical_fields
        )

    def _execute(self, task: PassTask) -> PassOutcome:
        """Run one pass and store its Zone and OcrResult artifacts."""
        pass_config = task.pass_config
        outcome = PassOutcome(
            page_index=task.page_index,
            zone_index=task.zone.index,
            zone_type=task.zone.zone_type,
            variant_recipe=task.variant.recipe,
            variant_rank=task.variant.rank,
            readiness=task.variant.readiness,
            pass_name=pass_config.name,
            scale=pass_config.scale,
            dpi=task.dpi,
            attempt=task.attempt,
        )

        engine = self.registry.get(pass_config.engine)
        try:
            crop = crop_zone(task.variant.image, task.zone)
            outcome.zone_ref = self.store.put(
                ArtifactKind.ZONE, [task.variant.ref], task.zone.to_params(), encode_png(crop)
            )
            if pass_config.scale != 1.0:
                crop = cv2.resize(
                    crop,
                    None,
                    fx=pass_config.scale,
                    fy=pass_config.scale,
                    interpolation=cv2.INTER_CUBIC,
                )
            image_bytes = encode_png(np.ascontiguousarray(crop))
            ocr = call_with_timeout(
                lambda: engine.recognize(image_bytes, pass_config),
                self.call_timeout,
                lambda: EngineTimeout(
                    f"Pass {pass_config.name} exceeded {self.call_timeout}s"
                ),
            )

            offset_x, offset_y = task.zone.bbox.x, task.zone.bbox.y
            outcome.words = [
                OCRWord(
                    text=w.text,
                    bbox=w.bbox.scale(1.0 / pass_config.scale).translate(offset_x, offset_y),
                    confidence=w.confidence,
                    block_num=w.block_num,
                    line_num=w.line_num,
                    word_num=w.word_num,
                )
                for w in ocr.words
            ]
            outcome.ref = self.store.put(
                ArtifactKind.OCR_RESULT,
                [outcome.zone_ref],
                {"pass": pass_config.to_params()},
                canonical_json(
                    {
                        "engine": ocr.engine,
                        "language": ocr.language,
                        "confidence": round(ocr.confidence, 4),
                        "words": [w.to_dict() for w in outcome.words],
                    }
                ),
            )
        except (EngineError, ArtifactPersistenceError) as exc:
            self._fail(outcome, pass_config, exc)
        except Exception as exc:
            # Engines are pluggable; whatever they raise fails this pass only.
            error = EngineError(f"{pass_config.engine} crashed: {type(exc).__name__}: {exc}")
            error.__cause__ = exc
            logger.exception("Pass %s raised unexpectedly", pass_config.name)
            self._fail(outcome, pass_config, error)
        return outcome

    def _fail(self, outcome: PassOutcome, pass_config: PassConfig, exc: Exception) -> None:
        outcome.failed = True
        outcome.words = []
        outcome.error = f"{type(exc).__name__}: {exc}"
        self._record_failure(outcome, pass_config)

    def _record_failure(self, outcome: PassOutcome, pass_config: PassConfig) -> None:
        if outcome.zone_ref is None:
            return
        try:
            outcome.ref = self.store.put(
                ArtifactKind.OCR_RESULT,
                [outcome.zone_ref],
                {"pass": pass_config.to_params(), "attempt": outcome.attempt, "failed": True},
                canonical_json({"failed": True, "error": outcome.error}),
            )
        except ArtifactPersistenceError as exc:
            logger.error("Could not store failed result for %s: %s", pass_config.name, exc)
