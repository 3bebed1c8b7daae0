from __future__ import annotations

import asyncio
import io
from pathlib import Path

import pytest

from lesson_portal.services.blobs import BlobNotFoundError, BlobStoreError, LocalBlobStore


def test_put_get_delete_cycle(tmp_path: Path) -> None:
    store = LocalBlobStore(tmp_path / "blobs")
    key = "class_2/1700000000000_abc123_notes.pdf"

    async def scenario() -> None:
        await store.put(key, b"%PDF-1.7 lesson", "application/pdf")
        assert await store.exists(key)
        assert await store.get(key) == b"%PDF-1.7 lesson"

        await store.delete([key])
        assert not await store.exists(key)

    asyncio.run(scenario())
    assert not (tmp_path / "blobs" / "class_2").exists()


def test_put_streams_file_objects(tmp_path: Path) -> None:
    store = LocalBlobStore(tmp_path / "blobs", chunk_size=4)
    payload = b"0123456789" * 10
    source = io.BytesIO(payload)
    source.read(5)

    asyncio.run(store.put("class_1/video.mp4", source, "video/mp4"))

    assert (tmp_path / "blobs" / "class_1" / "video.mp4").read_bytes() == payload


def test_put_refuses_to_overwrite(tmp_path: Path) -> None:
    store = LocalBlobStore(tmp_path / "blobs")

    async def scenario() -> None:
        await store.put("class_1/a.pdf", b"first", "application/pdf")
        with pytest.raises(BlobStoreError):
            await store.put("class_1/a.pdf", b"second", "application/pdf")

    asyncio.run(scenario())
    assert (tmp_path / "blobs" / "class_1" / "a.pdf").read_bytes() == b"first"


def test_get_missing_blob_raises_not_found(tmp_path: Path) -> None:
    store = LocalBlobStore(tmp_path / "blobs")

    with pytest.raises(BlobNotFoundError):
        asyncio.run(store.get("class_1/missing.pdf"))


def test_delete_missing_blob_is_not_an_error(tmp_path: Path) -> None:
    store = LocalBlobStore(tmp_path / "blobs")
    asyncio.run(store.delete(["class_1/missing.pdf"]))


@pytest.mark.parametrize("key", ["", "../escape.pdf", "/etc/passwd", "class_1/../../x", "a\0b"])
def test_resolve_rejects_keys_outside_root(tmp_path: Path, key: str) -> None:
    store = LocalBlobStore(tmp_path / "blobs")
    with pytest.raises(BlobStoreError):
        store.resolve(key)


def test_locate_returns_backing_file(tmp_path: Path) -> None:
    store = LocalBlobStore(tmp_path / "blobs")
    key = "class_3/1700000000000_abc123_video.mp4"

    async def scenario() -> Path:
        await store.put(key, b"frames", "video/mp4")
        return await store.locate(key)

    path = asyncio.run(scenario())

    assert path == (tmp_path / "blobs" / "class_3" / "1700000000000_abc123_video.mp4").resolve()
    assert path.read_bytes() == b"frames"
    with pytest.raises(BlobNotFoundError):
        asyncio.run(store.locate("class_3/missing.mp4"))
