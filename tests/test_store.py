"""Tests for the content-addressed artifact store and its backends."""

import time
from pathlib import Path
from unittest.mock import patch

import pytest

from invoice_intake.errors import ArtifactNotFound, ArtifactPersistenceError
from invoice_intake.store.artifacts import (
    ArtifactKind,
    ArtifactStore,
    RetentionWarning,
    compute_ref,
)
from invoice_intake.store.backends import LocalDiskBackend, MemoryBackend


class FakeClock:
    """Settable time source."""

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class FlakyBackend(MemoryBackend):
    """Memory backend whose first writes raise."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures
        self.writes = 0

    def write(self, key, data, meta) -> None:
        self.writes += 1
        if self.failures > 0:
            self.failures -= 1
            raise OSError("disk full")
        super().write(key, data, meta)


class SlowBackend(MemoryBackend):
    def write(self, key, data, meta) -> None:
        time.sleep(0.5)
        super().write(key, data, meta)


class TestReferences:
    """Tests for deterministic artifact references."""

    def test_identical_put_returns_same_ref(self, store: ArtifactStore) -> None:
        first = store.put(ArtifactKind.INPUT, [], {"mime_type": "image/png"}, b"abc")
        second = store.put(ArtifactKind.INPUT, [], {"mime_type": "image/png"}, b"abc")
        assert first == second
        assert len(store) == 1

    def test_param_order_does_not_matter(self) -> None:
        a = compute_ref(ArtifactKind.VARIANT, [], {"a": 1, "b": 2}, b"x")
        b = compute_ref(ArtifactKind.VARIANT, [], {"b": 2, "a": 1}, b"x")
        assert a == b

    def test_every_input_changes_the_ref(self, store: ArtifactStore) -> None:
        parent = store.put(ArtifactKind.INPUT, [], {}, b"doc")
        base = compute_ref(ArtifactKind.PAGE, [parent], {"index": 0}, b"px")
        assert compute_ref(ArtifactKind.VARIANT, [parent], {"index": 0}, b"px") != base
        assert compute_ref(ArtifactKind.PAGE, [], {"index": 0}, b"px") != base
        assert compute_ref(ArtifactKind.PAGE, [parent], {"index": 1}, b"px") != base
        assert compute_ref(ArtifactKind.PAGE, [parent], {"index": 0}, b"py") != base

    def test_ref_string_is_kind_and_short_digest(self, store: ArtifactStore) -> None:
        ref = store.put(ArtifactKind.ZONE, [], {}, b"zone")
        assert str(ref) == f"zone:{ref.digest[:16]}"


class TestReadWrite:
    """Tests for storing and reading artifacts."""

    def test_get_returns_bytes(self, store: ArtifactStore) -> None:
        ref = store.put(ArtifactKind.INPUT, [], {}, b"payload")
        assert store.get(ref) == b"payload"

    def test_get_json(self, store: ArtifactStore) -> None:
        ref = store.put(ArtifactKind.CANDIDATE, [], {}, b'{"value": "42.00"}')
        assert store.get_json(ref) == {"value": "42.00"}

    def test_unknown_ref_raises(self, store: ArtifactStore) -> None:
        ref = compute_ref(ArtifactKind.PAGE, [], {}, b"never stored")
        with pytest.raises(ArtifactNotFound):
            store.get(ref)
        with pytest.raises(ArtifactNotFound):
            store.record(ref)

    def test_record_keeps_parents_and_params(self, store: ArtifactStore) -> None:
        parent = store.put(ArtifactKind.INPUT, [], {}, b"doc")
        ref = store.put(ArtifactKind.PAGE, [parent], {"index": 0, "dpi": 300}, b"px")
        record = store.record(ref)
        assert record.parents == (parent,)
        assert record.params == {"index": 0, "dpi": 300}
        assert record.size == 2


class TestLineage:
    """Tests for walking the evidence chain."""

    def test_lineage_is_breadth_first(self, store: ArtifactStore) -> None:
        doc = store.put(ArtifactKind.INPUT, [], {}, b"doc")
        page = store.put(ArtifactKind.PAGE, [doc], {}, b"page")
        variant = store.put(ArtifactKind.VARIANT, [page], {"recipe": "otsu"}, b"v")
        zone = store.put(ArtifactKind.ZONE, [variant], {}, b"z")
        assert store.lineage([zone]) == [zone, variant, page, doc]

    def test_shared_ancestors_listed_once(self, store: ArtifactStore) -> None:
        page = store.put(ArtifactKind.PAGE, [], {}, b"page")
        a = store.put(ArtifactKind.OCR_RESULT, [page], {"pass": "a"}, b"a")
        b = store.put(ArtifactKind.OCR_RESULT, [page], {"pass": "b"}, b"b")
        chain = store.lineage([a, b])
        assert chain.count(page) == 1
        assert set(chain) == {a, b, page}

    def test_find_ancestor_reaches_page(self, store: ArtifactStore) -> None:
        page = store.put(ArtifactKind.PAGE, [], {"index": 2}, b"page")
        result = store.put(ArtifactKind.OCR_RESULT, [page], {}, b"words")
        candidate = store.put(ArtifactKind.CANDIDATE, [result], {}, b"cand")
        resolved = store.put(ArtifactKind.RESOLVED, [candidate], {}, b"res")
        found = store.find_ancestor(resolved, ArtifactKind.PAGE)
        assert found is not None
        assert found.ref == page
        assert found.params["index"] == 2

    def test_find_ancestor_missing_kind(self, store: ArtifactStore) -> None:
        ref = store.put(ArtifactKind.CANDIDATE, [], {}, b"orphan")
        assert store.find_ancestor(ref, ArtifactKind.PAGE) is None


class TestEviction:
    """Tests for TTL and size-based eviction with pinning."""

    def setup_method(self) -> None:
        self.clock = FakeClock()
        self.store = ArtifactStore(
            ttl_seconds=100, max_bytes=1000, persist_timeout=None, clock=self.clock
        )

    def test_expired_artifacts_removed(self) -> None:
        ref = self.store.put(ArtifactKind.INPUT, [], {}, b"old")
        self.clock.now += 50
        assert self.store.evict().removed == []
        self.clock.now += 100
        report = self.store.evict()
        assert report.removed == [ref]
        assert ref not in self.store

    def test_access_does_not_extend_ttl(self) -> None:
        ref = self.store.put(ArtifactKind.INPUT, [], {}, b"old")
        self.clock.now += 90
        self.store.get(ref)
        self.clock.now += 20
        assert self.store.evict().removed == [ref]

    def test_pinned_lineage_survives_with_warning(self) -> None:
        page = self.store.put(ArtifactKind.PAGE, [], {}, b"page")
        resolved = self.store.put(ArtifactKind.RESOLVED, [page], {}, b"record")
        assert self.store.pin("case-1", [resolved]) == 2
        self.clock.now += 500

        with pytest.warns(RetentionWarning):
            report = self.store.evict()
        assert set(report.skipped_pinned) == {page, resolved}
        assert page in self.store
        assert resolved in self.store

    def test_backend_delete_failure_skips_one_artifact(self) -> None:
        stuck = self.store.put(ArtifactKind.INPUT, [], {}, b"stuck")
        other = self.store.put(ArtifactKind.INPUT, [], {}, b"other")
        kept = self.store.put(ArtifactKind.RESOLVED, [], {}, b"record")
        self.store.pin("case-1", [kept])
        self.clock.now += 500
        delete = self.store.backend.delete

        def failing_delete(key):
            if key == stuck.key:
                raise OSError("read-only filesystem")
            delete(key)

        with patch.object(self.store.backend, "delete", side_effect=failing_delete):
            with pytest.warns(RetentionWarning):
                report = self.store.evict()

        assert report.failed == [stuck]
        assert report.removed == [other]
        assert report.skipped_pinned == [kept]
        assert stuck in self.store
        assert other not in self.store

    def test_unpin_releases(self) -> None:
        ref = self.store.put(ArtifactKind.RESOLVED, [], {}, b"record")
        self.store.pin("case-1", [ref])
        self.store.unpin("case-1")
        self.clock.now += 500
        assert self.store.evict().removed == [ref]

    def test_repin_replaces_owner_set(self) -> None:
        a = self.store.put(ArtifactKind.RESOLVED, [], {}, b"a")
        b = self.store.put(ArtifactKind.RESOLVED, [], {}, b"b")
        self.store.pin("case-1", [a])
        self.store.pin("case-1", [b])
        assert self.store.pinned() == {b}

    def test_lru_eviction_over_budget(self) -> None:
        store = ArtifactStore(max_bytes=10, persist_timeout=None, clock=self.clock)
        a = store.put(ArtifactKind.INPUT, [], {}, b"aaaaaa")
        self.clock.now += 1
        b = store.put(ArtifactKind.INPUT, [], {}, b"bbbbbb")
        self.clock.now += 1
        store.get(a)
        report = store.evict()
        assert report.removed == [b]
        assert a in store
        assert store.total_bytes == 6

    def test_background_eviction_runs(self) -> None:
        store = ArtifactStore(ttl_seconds=0.01, persist_timeout=None)
        ref = store.put(ArtifactKind.INPUT, [], {}, b"short-lived")
        store.start_background_eviction(0.02)
        try:
            deadline = time.time() + 2
            while ref in store and time.time() < deadline:
                time.sleep(0.02)
        finally:
            store.stop_background_eviction()
        assert ref not in store


class TestPersistence:
    """Tests for backend failures and the disk backend."""

    def test_write_retried_once(self) -> None:
        backend = FlakyBackend(failures=1)
        store = ArtifactStore(backend, persist_timeout=None)
        ref = store.put(ArtifactKind.INPUT, [], {}, b"doc")
        assert backend.writes == 2
        assert store.get(ref) == b"doc"

    def test_second_failure_raises(self) -> None:
        backend = FlakyBackend(failures=2)
        store = ArtifactStore(backend, persist_timeout=None)
        with pytest.raises(ArtifactPersistenceError):
            store.put(ArtifactKind.INPUT, [], {}, b"doc")
        assert len(store) == 0

    def test_write_timeout_raises(self) -> None:
        store = ArtifactStore(SlowBackend(), persist_timeout=0.05)
        with pytest.raises(ArtifactPersistenceError, match="failed twice"):
            store.put(ArtifactKind.INPUT, [], {}, b"doc")

    def test_disk_round_trip_and_reload(self, tmp_path: Path) -> None:
        store = ArtifactStore(LocalDiskBackend(tmp_path), persist_timeout=None)
        page = store.put(ArtifactKind.PAGE, [], {"index": 0}, b"page")
        result = store.put(ArtifactKind.OCR_RESULT, [page], {}, b"words")

        reopened = ArtifactStore(LocalDiskBackend(tmp_path), persist_timeout=None)
        assert reopened.load_index() == 2
        assert reopened.get(result) == b"words"
        assert reopened.lineage([result]) == [result, page]

    def test_disk_eviction_deletes_files(self, tmp_path: Path) -> None:
        clock = FakeClock()
        store = ArtifactStore(
            LocalDiskBackend(tmp_path), ttl_seconds=1, persist_timeout=None, clock=clock
        )
        ref = store.put(ArtifactKind.INPUT, [], {}, b"doc")
        assert list(tmp_path.rglob("*.bin"))
        clock.now += 10
        store.evict()
        assert not list(tmp_path.rglob("*.bin"))
        assert ref not in store

    def test_load_index_skips_metadata_without_data(self, tmp_path: Path) -> None:
        store = ArtifactStore(LocalDiskBackend(tmp_path), persist_timeout=None)
        store.put(ArtifactKind.INPUT, [], {}, b"doc")
        for path in tmp_path.rglob("*.bin"):
            path.unlink()
        reopened = ArtifactStore(LocalDiskBackend(tmp_path), persist_timeout=None)
        assert reopened.load_index() == 0
