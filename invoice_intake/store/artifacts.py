"""Content-addressed artifact store with TTL and LRU eviction.

Every intermediate result of the pipeline (input document, page, variant,
zone crop, OCR result, candidate, resolved field) is stored here as an
immutable artifact. The key is a SHA-256 digest over the artifact kind, its
ordered parent references, its creation parameters and its bytes, so
identical inputs always produce the same reference and re-runs reuse the
cache. Parent references form the evidence chain that links a resolved
field back to the page pixels it was read from.

Eviction never removes an artifact pinned by a live review case. When an
eviction pass would need to remove one, the entry is skipped and a
:class:`RetentionWarning` is emitted instead.
"""

import hashlib
import json
import threading
import time
import warnings
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from invoice_intake.errors import (
    ArtifactNotFound,
    ArtifactPersistenceError,
)
from invoice_intake.utils.logger import get_logger
from invoice_intake.utils.timeouts import call_with_timeout

from .backends import ArtifactBackend, MemoryBackend

logger = get_logger(__name__)


class ArtifactKind(StrEnum):
    """The seven artifact families, stored in one table keyed by kind+hash."""

    INPUT = "input"
    PAGE = "page"
    VARIANT = "variant"
    ZONE = "zone"
    OCR_RESULT = "ocr_result"
    CANDIDATE = "candidate"
    RESOLVED = "resolved"


class RetentionWarning(UserWarning):
    """Eviction skipped an artifact that a live review case still needs."""


@dataclass(frozen=True, order=True)
class ArtifactRef:
    """Reference to a stored artifact."""

    kind: ArtifactKind
    digest: str

    def __str__(self) -> str:
        return f"{self.kind}:{self.digest[:16]}"

    @property
    def key(self) -> tuple[str, str]:
        return (str(self.kind), self.digest)


@dataclass
class ArtifactRecord:
    """Index entry describing one stored artifact."""

    ref: ArtifactRef
    parents: tuple[ArtifactRef, ...]
    params: dict[str, Any]
    size: int
    created_at: float
    last_accessed: float

    def to_meta(self) -> dict[str, Any]:
        return {
            "kind": str(self.ref.kind),
            "digest": self.ref.digest,
            "parents": [[str(p.kind), p.digest] for p in self.parents],
            "params": self.params,
            "size": self.size,
            "created_at": self.created_at,
            "last_accessed": self.last_accessed,
        }

    @classmethod
    def from_meta(cls, meta: dict[str, Any]) -> "ArtifactRecord":
        return cls(
            ref=ArtifactRef(ArtifactKind(meta["kind"]), meta["digest"]),
            parents=tuple(
                ArtifactRef(ArtifactKind(kind), digest)
                for kind, digest in meta.get("parents", [])
            ),
            params=meta.get("params", {}),
            size=int(meta.get("size", 0)),
            created_at=float(meta["created_at"]),
            last_accessed=float(meta.get("last_accessed", meta["created_at"])),
        )


@dataclass
class EvictionReport:
    """Outcome of one eviction pass."""

    removed: list[ArtifactRef] = field(default_factory=list)
    skipped_pinned: list[ArtifactRef] = field(default_factory=list)
    failed: list[ArtifactRef] = field(default_factory=list)


def canonical_json(payload: Any) -> bytes:
    """Serialize a payload deterministically for hashing and storage.

    Args:
        payload: JSON-compatible data. Enums, decimals and other scalars
            fall back to ``str``.

    Returns:
        UTF-8 JSON bytes with sorted keys and no insignificant whitespace.
    """
    return json.dumps(
        payload, sort_keys=True, separators=(",", ":"), default=str
    ).encode("utf-8")


def compute_ref(
    kind: ArtifactKind,
    parents: Iterable[ArtifactRef],
    params: dict[str, Any],
    data: bytes,
) -> ArtifactRef:
    """Compute the deterministic reference for an artifact.

    Args:
        kind: Artifact family.
        parents: Ordered parent references.
        params: Creation parameters.
        data: Artifact bytes.

    Returns:
        Reference whose digest covers every input.
    """
    envelope = {
        "kind": str(kind),
        "parents": [[str(p.kind), p.digest] for p in parents],
        "params": params,
        "data": hashlib.sha256(data).hexdigest(),
    }
    return ArtifactRef(kind, hashlib.sha256(canonical_json(envelope)).hexdigest())


class ArtifactStore:
    """Thread-safe content-addressed cache over a persistence backend.

    Args:
        backend: Persistence backend. Defaults to an in-memory backend.
        ttl_seconds: Age after which an unpinned artifact expires.
        max_bytes: Byte budget enforced by least-recently-used eviction.
        persist_timeout: Per-call timeout for backend reads and writes.
        clock: Time source, injectable for tests.
    """

    def __init__(
        self,
        backend: ArtifactBackend | None = None,
        ttl_seconds: float = 24 * 3600,
        max_bytes: int = 2 * 1024**3,
        persist_timeout: float | None = 10.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.backend = backend or MemoryBackend()
        self.ttl_seconds = ttl_seconds
        self.max_bytes = max_bytes
        self.persist_timeout = persist_timeout
        self._clock = clock
        self._lock = threading.RLock()
        self._index: dict[ArtifactRef, ArtifactRecord] = {}
        self._pins: dict[str, set[ArtifactRef]] = {}
        self._stop_event: threading.Event | None = None
        self._evictor: threading.Thread | None = None

    def __contains__(self, ref: ArtifactRef) -> bool:
        with self._lock:
            return ref in self._index

    def __len__(self) -> int:
        with self._lock:
            return len(self._index)

    @property
    def total_bytes(self) -> int:
        with self._lock:
            return sum(r.size for r in self._index.values())

    def load_index(self) -> int:
        """Rebuild the in-memory index from the backend's metadata.

        Returns:
            Number of artifacts indexed.
        """
        loaded = 0
        with self._lock:
            for meta in self.backend.scan():
                record = ArtifactRecord.from_meta(meta)
                if not self.backend.exists(record.ref.key):
                    logger.warning("Metadata without data for %s, skipping", record.ref)
                    continue
                self._index[record.ref] = record
                loaded += 1
        logger.info("Indexed %d persisted artifacts", loaded)
        return loaded

    def put(
        self,
        kind: ArtifactKind,
        parents: Iterable[ArtifactRef],
        params: dict[str, Any],
        data: bytes,
    ) -> ArtifactRef:
        """Store an artifact, returning its deterministic reference.

        Identical calls return the same reference without storing twice.
        Concurrent identical writes are harmless because equal keys always
        carry equal content.

        Args:
            kind: Artifact family.
            parents: Ordered parent references.
            params: JSON-compatible creation parameters.
            data: Artifact bytes.

        Returns:
            Reference of the stored artifact.

        Raises:
            ArtifactPersistenceError: If the backend write fails twice.
        """
        parents = tuple(parents)
        ref = compute_ref(kind, parents, params, data)

        with self._lock:
            existing = self._index.get(ref)
            if existing is not None:
                existing.last_accessed = self._clock()
                return ref

        now = self._clock()
        record = ArtifactRecord(
            ref=ref,
            parents=parents,
            params=json.loads(canonical_json(params)),
            size=len(data),
            created_at=now,
            last_accessed=now,
        )
        self._persist(
            "write", lambda: self.backend.write(ref.key, data, record.to_meta())
        )

        with self._lock:
            self._index.setdefault(ref, record)
        logger.debug("Stored %s (%d bytes)", ref, len(data))
        return ref

    def get(self, ref: ArtifactRef) -> bytes:
        """Return the bytes of a stored artifact.

        Raises:
            ArtifactNotFound: If the reference is unknown or was evicted.
        """
        with self._lock:
            record = self._index.get(ref)
            if record is None:
                raise ArtifactNotFound(ref)
            record.last_accessed = self._clock()
        return self._persist("read", lambda: self.backend.read(ref.key))

    def get_json(self, ref: ArtifactRef) -> Any:
        """Return a stored artifact decoded as JSON."""
        return json.loads(self.get(ref))

    def record(self, ref: ArtifactRef) -> ArtifactRecord:
        """Return the index entry for a reference.

        Raises:
            ArtifactNotFound: If the reference is unknown.
        """
        with self._lock:
            record = self._index.get(ref)
        if record is None:
            raise ArtifactNotFound(ref)
        return record

    def lineage(self, refs: Iterable[ArtifactRef]) -> list[ArtifactRef]:
        """Walk parents breadth-first from ``refs``.

        Args:
            refs: Starting references (included in the result).

        Returns:
            Every reachable reference, each listed once, in BFS order.
            References missing from the index end their branch.
        """
        seen: set[ArtifactRef] = set()
        ordered: list[ArtifactRef] = []
        queue = deque(refs)
        with self._lock:
            while queue:
                ref = queue.popleft()
                if ref in seen:
                    continue
                seen.add(ref)
                ordered.append(ref)
                record = self._index.get(ref)
                if record is not None:
                    queue.extend(record.parents)
        return ordered

    def find_ancestor(
        self, ref: ArtifactRef, kind: ArtifactKind
    ) -> ArtifactRecord | None:
        """Return the nearest ancestor (or self) of the given kind."""
        for candidate in self.lineage([ref]):
            if candidate.kind == kind and candidate in self:
                return self.record(candidate)
        return None

    def pin(self, owner: str, refs: Iterable[ArtifactRef]) -> int:
        """Protect ``refs`` and their full lineage from eviction.

        Args:
            owner: Pin holder, typically a review case id. Re-pinning
                replaces the owner's previous set.
            refs: References whose evidence chain must survive.

        Returns:
            Number of artifacts now pinned by the owner.
        """
        closure = set(self.lineage(refs))
        with self._lock:
            self._pins[owner] = closure
        return len(closure)

    def unpin(self, owner: str) -> None:
        """Release every artifact pinned by ``owner``."""
        with self._lock:
            self._pins.pop(owner, None)

    def pinned(self) -> set[ArtifactRef]:
        with self._lock:
            return set().union(*self._pins.values()) if self._pins else set()

    def evict(self, now: float | None = None) -> EvictionReport:
        """Remove expired artifacts, then least-recently-used ones over budget.

        Args:
            now: Current time, defaults to the store clock.

        Returns:
            Report of removed, skipped (pinned) and failed references. A
            backend failure on one artifact leaves it indexed and moves on.
        """
        now = self._clock() if now is None else now
        report = EvictionReport()

        with self._lock:
            pinned = self.pinned()
            expired = [
                r.ref
                for r in self._index.values()
                if now - r.created_at > self.ttl_seconds
            ]
            for ref in expired:
                if ref in pinned:
                    report.skipped_pinned.append(ref)
                else:
                    self._evict_one(ref, report)

            total = sum(r.size for r in self._index.values())
            if total > self.max_bytes:
                by_age = sorted(self._index.values(), key=lambda r: r.last_accessed)
                for record in by_age:
                    if total <= self.max_bytes:
                        break
                    if record.ref in pinned:
                        if record.ref not in report.skipped_pinned:
                            report.skipped_pinned.append(record.ref)
                        continue
                    if self._evict_one(record.ref, report):
                        total -= record.size

        if report.skipped_pinned:
            message = (
                f"Eviction skipped {len(report.skipped_pinned)} artifact(s) "
                "still referenced by live review cases"
            )
            logger.warning(message)
            warnings.warn(message, RetentionWarning, stacklevel=2)
        if report.removed:
            logger.info("Evicted %d artifacts", len(report.removed))
        return report

    def _evict_one(self, ref: ArtifactRef, report: EvictionReport) -> bool:
        try:
            self._remove(ref)
        except ArtifactPersistenceError as exc:
            logger.error("Could not evict %s: %s", ref, exc)
            report.failed.append(ref)
            return False
        report.removed.append(ref)
        return True

    def start_background_eviction(self, interval: float) -> None:
        """Run :meth:`evict` every ``interval`` seconds on a daemon thread."""
        if self._evictor is not None:
            return
        self._stop_event = threading.Event()
        stop_event = self._stop_event

        def _loop() -> None:
            while not stop_event.wait(interval):
                try:
                    self.evict()
                except ArtifactPersistenceError as exc:
                    logger.error("Background eviction failed: %s", exc)

        self._evictor = threading.Thread(
            target=_loop, name="artifact-evictor", daemon=True
        )
        self._evictor.start()

    def stop_background_eviction(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
        if self._evictor is not None:
            self._evictor.join(timeout=5)
        self._evictor = None
        self._stop_event = None

    def _remove(self, ref: ArtifactRef) -> None:
        self._persist("delete", lambda: self.backend.delete(ref.key))
        self._index.pop(ref, None)

    def _persist(self, operation: str, call: Callable[[], Any]) -> Any:
        """Run a backend call with a timeout, retrying once on failure."""
        last_error: Exception | None = None
        for attempt in (1, 2):
            try:
                return call_with_timeout(
                    call,
                    self.persist_timeout,
                    lambda: ArtifactPersistenceError(
                        f"Backend {operation} timed out after {self.persist_timeout}s"
                    ),
                )
            except ArtifactNotFound:
                raise
            except (OSError, ArtifactPersistenceError) as exc:
                last_error = exc
                logger.warning(
                    "Backend %s failed (attempt %d): %s", operation, attempt, exc
                )
        raise ArtifactPersistenceError(
            f"Backend {operation} failed twice: {last_error}"
        ) from last_error
