"""
Content-addressable FileStorage implementations.

Handles are the lowercase hex SHA-256 of the stored bytes, so storing the
same upload twice yields the same handle and one stored copy.
"""

from __future__ import annotations

import hashlib
import io
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import BinaryIO

from txn_kernel.exceptions import FileHandleNotFoundError, StorageUnavailableError
from txn_kernel.logging_config import get_logger

logger = get_logger("batch.file_storage")

_HANDLE = re.compile(r"^[0-9a-f]{64}$")


def content_handle(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class LocalFileStorage:
    """Files under ``root/<first two hex chars>/<handle>``."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, handle: str) -> Path:
        if not _HANDLE.match(handle or ""):
            raise FileHandleNotFoundError(handle)
        return self._root / handle[:2] / handle

    def put(self, data: bytes) -> str:
        handle = content_handle(data)
        path = self._path(handle)
        if path.exists():
            return handle

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".upload-")
            try:
                with os.fdopen(fd, "wb") as tmp:
                    tmp.write(data)
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise StorageUnavailableError(str(exc)) from exc

        logger.info(
            "file_stored",
            extra={"handle": handle, "size_bytes": len(data)},
        )
        return handle

    def open_read(self, handle: str) -> BinaryIO:
        path = self._path(handle)
        try:
            return path.open("rb")
        except FileNotFoundError:
            raise FileHandleNotFoundError(handle) from None
        except OSError as exc:
            raise StorageUnavailableError(str(exc)) from exc


class InMemoryFileStorage:
    """Dict-backed storage for tests and the in-memory orchestrator."""

    def __init__(self) -> None:
        self._blobs: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put(self, data: bytes) -> str:
        handle = content_handle(data)
        with self._lock:
            self._blobs.setdefault(handle, bytes(data))
        return handle

    def open_read(self, handle: str) -> BinaryIO:
        with self._lock:
            data = self._blobs.get(handle)
        if data is None:
            raise FileHandleNotFoundError(handle)
        return io.BytesIO(data)

    def __contains__(self, handle: str) -> bool:
        with self._lock:
            return handle in self._blobs
