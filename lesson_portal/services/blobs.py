"""Blob storage for uploaded lesson files."""

from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
import shutil
import time
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Iterable, List, Protocol, Union

from .events import FILE_OP, emit_event


LOGGER = logging.getLogger(__name__)

BlobData = Union[bytes, BinaryIO]

_DEFAULT_CHUNK_SIZE = 1024 * 1024


class BlobStoreError(RuntimeError):
    """Raised when the object store rejects or fails an operation."""


class BlobNotFoundError(BlobStoreError):
    """Raised when a key has no stored blob."""


class BlobStore(Protocol):
    """Opaque key/value blob storage without versioning."""

    async def put(self, key: str, data: BlobData, content_type: str) -> None:
        ...

    async def get(self, key: str) -> bytes:
        ...

    async def delete(self, keys: Iterable[str]) -> None:
        ...

    async def exists(self, key: str) -> bool:
        ...

    async def locate(self, key: str) -> Path:
        ...


def _copy_stream(source: BinaryIO, target: Path, *, chunk_size: int) -> None:
    if hasattr(source, "seek"):
        with contextlib.suppress(OSError, ValueError):
            source.seek(0)
    with target.open("xb") as buffer:
        shutil.copyfileobj(source, buffer, length=chunk_size)


class LocalBlobStore:
    """Store blobs as files below ``root`` using the key as relative path.

    Blocking filesystem work runs in the default executor so callers on the
    event loop are never stalled by large uploads.
    """

    def __init__(self, root: Path, *, chunk_size: int = _DEFAULT_CHUNK_SIZE) -> None:
        self._root = Path(root).resolve()
        self._chunk_size = chunk_size

    @property
    def root(self) -> Path:
        return self._root

    def resolve(self, key: str) -> Path:
        """Return the file backing *key*, refusing keys that escape the root."""

        if not key or "\0" in key:
            raise BlobStoreError("Storage key is empty or contains a null byte")
        relative = PurePosixPath(key)
        if relative.is_absolute() or ".." in relative.parts:
            raise BlobStoreError(f"Storage key '{key}' is not a relative path")
        target = (self._root / Path(*relative.parts)).resolve()
        if target == self._root or self._root not in target.parents:
            raise BlobStoreError(f"Storage key '{key}' resolves outside the blob root")
        return target

    async def _run(self, func, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))

    # ------------------------------------------------------------------
    # Synchronous implementations
    # ------------------------------------------------------------------
    def _put_sync(self, key: str, data: BlobData, content_type: str) -> int:
        target = self.resolve(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        if target.exists():
            raise BlobStoreError(f"A blob already exists at '{key}'")
        try:
            if isinstance(data, (bytes, bytearray, memoryview)):
                with target.open("xb") as handle:
                    handle.write(data)
            else:
                _copy_stream(data, target, chunk_size=self._chunk_size)
        except FileExistsError as error:
            raise BlobStoreError(f"A blob already exists at '{key}'") from error
        except OSError as error:
            with contextlib.suppress(OSError):
                target.unlink()
            raise BlobStoreError(f"Could not write blob '{key}': {error}") from error
        return target.stat().st_size

    def _get_sync(self, key: str) -> bytes:
        target = self.resolve(key)
        try:
            return target.read_bytes()
        except FileNotFoundError as error:
            raise BlobNotFoundError(f"No blob stored at '{key}'") from error
        except OSError as error:
            raise BlobStoreError(f"Could not read blob '{key}': {error}") from error

    def _delete_sync(self, keys: List[str]) -> int:
        removed = 0
        for key in keys:
            target = self.resolve(key)
            try:
                target.unlink()
            except FileNotFoundError:
                LOGGER.debug("Blob '%s' already absent", key)
                continue
            except OSError as error:
                raise BlobStoreError(f"Could not delete blob '{key}': {error}") from error
            removed += 1
            parent = target.parent
            if parent != self._root:
                with contextlib.suppress(OSError):
                    parent.rmdir()
        return removed

    # ------------------------------------------------------------------
    # Async API
    # ------------------------------------------------------------------
    async def put(self, key: str, data: BlobData, content_type: str) -> None:
        start = time.perf_counter()
        size = await self._run(self._put_sync, key, data, content_type)
        emit_event(
            FILE_OP,
            "blob.put",
            payload={"key": key, "content_type": content_type, "bytes": size},
            duration_ms=(time.perf_counter() - start) * 1000.0,
        )

    async def get(self, key: str) -> bytes:
        return await self._run(self._get_sync, key)

    async def delete(self, keys: Iterable[str]) -> None:
        key_list = list(keys)
        start = time.perf_counter()
        removed = await self._run(self._delete_sync, key_list)
        emit_event(
            FILE_OP,
            "blob.delete",
            payload={"keys": key_list, "removed": removed},
            duration_ms=(time.perf_counter() - start) * 1000.0,
        )

    async def exists(self, key: str) -> bool:
        target = self.resolve(key)
        return await self._run(target.is_file)

    async def locate(self, key: str) -> Path:
        """Return the file backing *key* so callers can stream it from disk."""

        target = self.resolve(key)
        if not await self._run(target.is_file):
            raise BlobNotFoundError(f"No blob stored at '{key}'")
        return target


__all__ = [
    "BlobData",
    "BlobNotFoundError",
    "BlobStore",
    "BlobStoreError",
    "LocalBlobStore",
]
