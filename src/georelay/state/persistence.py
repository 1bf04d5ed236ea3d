"""Key-value blob persistence hooks for viewer state."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

_logger = logging.getLogger(__name__)


class BlobStore(Protocol):
    """Structural interface of the external key-value blob store.

    Having a protocol here makes it easy to plug in browser-local storage,
    a database row or a test double without the store knowing which.
    """

    def load(self, key: str) -> str | None: ...

    def save(self, key: str, blob: str) -> None: ...


class MemoryBlobStore:
    """Process-local blob store."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._blobs: dict[str, str] = dict(initial or {})

    def load(self, key: str) -> str | None:
        return self._blobs.get(key)

    def save(self, key: str, blob: str) -> None:
        self._blobs[key] = blob


class FileBlobStore:
    """Blob store keeping one ``<key>.json`` file per key in a directory."""

    def __init__(self, directory: str | Path) -> None:
        self._directory = Path(directory)

    def _path(self, key: str) -> Path:
        safe_key = "".join(ch if ch.isalnum() or ch in "-_." else "_" for ch in key)
        return self._directory / f"{safe_key}.json"

    def load(self, key: str) -> str | None:
        path = self._path(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def save(self, key: str, blob: str) -> None:
        self._directory.mkdir(parents=True, exist_ok=True)
        path = self._path(key)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(blob, encoding="utf-8")
        tmp.replace(path)
        _logger.debug("Saved blob key=%s bytes=%d", key, len(blob))
