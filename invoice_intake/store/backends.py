"""Persistence backends for the artifact store.

A backend is a durable content-addressed key/value store. Keys are artifact
references; values are raw bytes plus a small JSON metadata record so a
restarted store can rebuild its index.
"""

import json
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterator
from pathlib import Path
from typing import Any

from invoice_intake.errors import ArtifactNotFound
from invoice_intake.utils.logger import get_logger

logger = get_logger(__name__)


class ArtifactBackend(ABC):
    """Contract for artifact persistence backends."""

    @abstractmethod
    def write(self, key: tuple[str, str], data: bytes, meta: dict[str, Any]) -> None:
        """Persist bytes and metadata under ``(kind, digest)``."""

    @abstractmethod
    def read(self, key: tuple[str, str]) -> bytes:
        """Return the stored bytes.

        Raises:
            ArtifactNotFound: If nothing is stored under the key.
        """

    @abstractmethod
    def delete(self, key: tuple[str, str]) -> None:
        """Remove the bytes and metadata. Missing keys are ignored."""

    @abstractmethod
    def exists(self, key: tuple[str, str]) -> bool:
        """Return whether bytes are stored under the key."""

    @abstractmethod
    def scan(self) -> Iterator[dict[str, Any]]:
        """Yield every stored metadata record."""


class MemoryBackend(ArtifactBackend):
    """Process-local backend, used by tests and single-shot CLI runs."""

    def __init__(self) -> None:
        self._data: dict[tuple[str, str], bytes] = {}
        self._meta: dict[tuple[str, str], dict[str, Any]] = {}
        self._lock = threading.Lock()

    def write(self, key: tuple[str, str], data: bytes, meta: dict[str, Any]) -> None:
        with self._lock:
            self._data[key] = data
            self._meta[key] = dict(meta)

    def read(self, key: tuple[str, str]) -> bytes:
        with self._lock:
            try:
                return self._data[key]
            except KeyError:
                raise ArtifactNotFound(key) from None

    def delete(self, key: tuple[str, str]) -> None:
        with self._lock:
            self._data.pop(key, None)
            self._meta.pop(key, None)

    def exists(self, key: tuple[str, str]) -> bool:
        with self._lock:
            return key in self._data

    def scan(self) -> Iterator[dict[str, Any]]:
        with self._lock:
            records = [dict(m) for m in self._meta.values()]
        yield from records


class LocalDiskBackend(ArtifactBackend):
    """Stores artifacts as files under ``<root>/<kind>/<hh>/<digest>``.

    Args:
        root: Directory holding the artifact tree. Created if missing.
    """

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _paths(self, key: tuple[str, str]) -> tuple[Path, Path]:
        kind, digest = key
        directory = self.root / kind / digest[:2]
        return directory / f"{digest}.bin", directory / f"{digest}.json"

    @staticmethod
    def _write_atomic(path: Path, payload: bytes) -> None:
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_bytes(payload)
        tmp_path.replace(path)

    def write(self, key: tuple[str, str], data: bytes, meta: dict[str, Any]) -> None:
        data_path, meta_path = self._paths(key)
        data_path.parent.mkdir(parents=True, exist_ok=True)
        self._write_atomic(data_path, data)
        self._write_atomic(
            meta_path, json.dumps(meta, sort_keys=True, default=str).encode("utf-8")
        )

    def read(self, key: tuple[str, str]) -> bytes:
        data_path, _ = self._paths(key)
        try:
            return data_path.read_bytes()
        except FileNotFoundError:
            raise ArtifactNotFound(key) from None

    def delete(self, key: tuple[str, str]) -> None:
        for path in self._paths(key):
            path.unlink(missing_ok=True)

    def exists(self, key: tuple[str, str]) -> bool:
        return self._paths(key)[0].exists()

    def scan(self) -> Iterator[dict[str, Any]]:
        for meta_path in sorted(self.root.glob("*/*/*.json")):
            try:
                yield json.loads(meta_path.read_text())
            except (OSError, json.JSONDecodeError) as exc:
                logger.warning("Skipping unreadable metadata %s: %s", meta_path, exc)
