from __future__ import annotations

import logging
import re
import threading
import time
from pathlib import Path

from ax2_studio.core.errors import StorageWriteError

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"[^A-Za-z0-9_.-]")


class BlobStore:
    def put(self, blob_id: str, data: bytes) -> None:
        raise NotImplementedError

    def delete(self, blob_id: str) -> bool:
        raise NotImplementedError

    def exists(self, blob_id: str) -> bool:
        raise NotImplementedError

    def path(self, blob_id: str) -> Path | None:
        return None


class FileBlobStore(BlobStore):
    def __init__(self, root: Path) -> None:
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)

    def path(self, blob_id: str) -> Path:
        return self.root / _SAFE_ID.sub("_", blob_id)

    def put(self, blob_id: str, data: bytes) -> None:
        target = self.path(blob_id)
        tmp = target.with_name(target.name + ".part")
        tmp.write_bytes(data)
        tmp.replace(target)

    def delete(self, blob_id: str) -> bool:
        target = self.path(blob_id)
        if not target.exists():
            return False
        target.unlink()
        return True

    def exists(self, blob_id: str) -> bool:
        return self.path(blob_id).exists()


class InMemoryBlobStore(BlobStore):
    def __init__(self) -> None:
        self._blobs: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put(self, blob_id: str, data: bytes) -> None:
        with self._lock:
            self._blobs[blob_id] = bytes(data)

    def delete(self, blob_id: str) -> bool:
        with self._lock:
            return self._blobs.pop(blob_id, None) is not None

    def exists(self, blob_id: str) -> bool:
        with self._lock:
            return blob_id in self._blobs


def put_with_retry(blobs: BlobStore, blob_id: str, data: bytes, backoff_seconds: float = 0.5) -> None:
    try:
        blobs.put(blob_id, data)
        return
    except OSError as exc:
        logger.warning("Blob write for %s failed (%s), retrying in %.2fs", blob_id, exc, backoff_seconds)
    time.sleep(backoff_seconds)
    try:
        blobs.put(blob_id, data)
    except OSError as exc:
        raise StorageWriteError(f"blob write for {blob_id} failed twice: {exc}") from exc


def delete_quietly(blobs: BlobStore, blob_id: str) -> None:
    try:
        blobs.delete(blob_id)
    except OSError:
        logger.warning("Blob delete for %s failed", blob_id, exc_info=True)
