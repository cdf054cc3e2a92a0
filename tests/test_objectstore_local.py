"""Local object store: signed part URLs, multi-part assembly, listing."""

import hashlib
import time
from urllib.parse import parse_qs, urlparse

import pytest

from reelvault.server.errors import UpstreamStorageError, ValidationError
from reelvault.server.objectstore.local import sign_part

from tests.conftest import chunks

KEY = "video/alice/v1_clip.mp4"


@pytest.mark.asyncio
async def test_presigned_url_round_trips_through_verification(store):
    upload_id = await store.create_multipart_upload(KEY, "video/mp4")
    url = await store.presign_upload_part(KEY, upload_id, 3, 60)

    parsed = urlparse(url)
    assert parsed.path == f"/api/storage/parts/{upload_id}/3"
    query = {k: v[0] for k, v in parse_qs(parsed.query).items()}
    assert query["key"] == KEY

    expires = int(query["expires"])
    assert store.verify_part_signature(KEY, upload_id, 3, expires, query["signature"])
    # Bound to the exact part, key and deadline
    assert not store.verify_part_signature(KEY, upload_id, 4, expires, query["signature"])
    assert not store.verify_part_signature("video/alice/other.mp4", upload_id, 3, expires, query["signature"])
    assert not store.verify_part_signature(KEY, upload_id, 3, expires + 1, query["signature"])


@pytest.mark.asyncio
async def test_expired_signature_is_rejected(store):
    expires = int(time.time()) - 1
    signature = sign_part("test-secret", KEY, "u1", 1, expires)
    assert not store.verify_part_signature(KEY, "u1", 1, expires, signature)


@pytest.mark.asyncio
async def test_write_and_complete_multipart(store):
    upload_id = await store.create_multipart_upload(KEY, "video/mp4")
    etag1 = await store.write_part(KEY, upload_id, 1, chunks(b"hello "))
    etag2 = await store.write_part(KEY, upload_id, 2, chunks(b"world"))
    assert etag1 == f'"{hashlib.md5(b"hello ").hexdigest()}"'

    etag = await store.complete_multipart_upload(KEY, upload_id, [(1, etag1), (2, etag2.strip('"'))])
    assert etag.endswith('-2"')
    assert store.object_path(KEY).read_bytes() == b"hello world"
    assert await store.object_exists(KEY)
    assert not (store.multipart_path / upload_id).exists()


@pytest.mark.asyncio
async def test_complete_rejects_etag_mismatch(store):
    upload_id = await store.create_multipart_upload(KEY, "video/mp4")
    await store.write_part(KEY, upload_id, 1, chunks(b"data"))

    with pytest.raises(ValidationError):
        await store.complete_multipart_upload(KEY, upload_id, [(1, '"0000"')])
    assert not await store.object_exists(KEY)


@pytest.mark.asyncio
async def test_part_must_belong_to_upload_key(store):
    upload_id = await store.create_multipart_upload(KEY, "video/mp4")
    with pytest.raises(ValidationError):
        await store.write_part("video/alice/other.mp4", upload_id, 1, chunks(b"data"))


@pytest.mark.asyncio
async def test_unknown_upload(store):
    with pytest.raises(UpstreamStorageError):
        await store.abort_multipart_upload(KEY, "does-not-exist")
    with pytest.raises(ValidationError):
        await store.write_part(KEY, "../escape", 1, chunks(b"data"))


@pytest.mark.asyncio
async def test_object_path_rejects_traversal(store):
    with pytest.raises(ValidationError):
        store.object_path("../outside.mp4")
    with pytest.raises(ValidationError):
        store.object_path("video/../../etc/passwd")


@pytest.mark.asyncio
async def test_list_and_delete_objects(store):
    for key in ("video/bob/b.mp4", "video/alice/a.mp4", "misc/readme.txt"):
        path = store.object_path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"x")

    pages = [page async for page in store.list_objects("video/", page_size=1)]
    assert pages == [["video/alice/a.mp4"], ["video/bob/b.mp4"]]

    await store.delete_object("video/bob/b.mp4")
    await store.delete_object("video/bob/b.mp4")
    assert not await store.object_exists("video/bob/b.mp4")
