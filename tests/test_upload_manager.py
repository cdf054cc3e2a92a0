"""Upload lifecycle: init -> parts -> complete -> finalize, abort and the dedup race."""

import asyncio

import pytest

from reelvault.common.models import UploadedPart
from reelvault.server.errors import (
    DuplicateContentError,
    ForbiddenKeyError,
    QuotaExceededError,
    ReservationNotFoundError,
    UpstreamStorageError,
    ValidationError,
)
from reelvault.server.upload.session import InvalidTransition, UploadSession, UploadState

from tests.conftest import chunks, commit_video, transfer


@pytest.mark.asyncio
async def test_full_upload_commits_video(services):
    data = b"0123456789" * 5
    uploads = services.uploads

    session = await uploads.init_upload("Alice", "Holiday Clip.MP4", len(data), "fp-holiday", "video/mp4")
    assert session.state == UploadState.RESERVED
    assert session.user_id == "alice"
    assert session.object_key.startswith("video/alice/")
    assert session.object_key.endswith("_Holiday_Clip.MP4")
    assert session.bucket == "videos"
    assert (await services.ledger.get_profile("alice")).reserved_bytes == len(data)

    target = await uploads.get_part_upload_target("alice", session.object_key, session.upload_id, 1)
    assert target.url.startswith("http://testserver/api/storage/parts/")
    assert target.method == "PUT"

    etag1 = await services.store.write_part(session.object_key, session.upload_id, 1, chunks(data[:30]))
    etag2 = await services.store.write_part(session.object_key, session.upload_id, 2, chunks(data[30:]))
    await uploads.complete_upload(
        "alice",
        session.object_key,
        session.upload_id,
        [UploadedPart(part_number=2, etag=etag2), UploadedPart(part_number=1, etag=etag1)],
    )
    assert services.store.object_path(session.object_key).read_bytes() == data

    done = await uploads.finalize_upload("alice", session.object_key, "fp-holiday")
    assert done.state == UploadState.COMMITTED
    assert done.video_id == session.video_id

    profile = await services.ledger.get_profile("alice")
    assert (profile.used_bytes, profile.reserved_bytes, profile.videos_count) == (len(data), 0, 1)

    record = await services.records.require("alice", session.video_id)
    assert record.size == len(data)
    assert record.original_name == "Holiday Clip.MP4"
    assert record.content_type == "video/mp4"
    assert (await services.dedup.get("alice", "fp-holiday")).video_id == session.video_id
    assert await services.ledger.get_reservation("alice", session.video_id) is None


@pytest.mark.asyncio
async def test_init_rejects_known_content(services):
    first = await commit_video(services, "a.mp4", b"same-bytes", "fp-same")

    with pytest.raises(DuplicateContentError) as exc:
        await services.uploads.init_upload("alice", "b.mp4", 10, "fp-same")
    assert exc.value.video_id == first.video_id
    assert exc.value.to_dict()["duplicate"] is True
    assert (await services.ledger.get_profile("alice")).reserved_bytes == 0


@pytest.mark.asyncio
async def test_same_content_for_different_users_is_not_duplicate(services):
    await commit_video(services, "a.mp4", b"shared", "fp-shared", user_id="alice")
    session = await services.uploads.init_upload("bob", "a.mp4", 6, "fp-shared")
    assert session.state == UploadState.RESERVED


@pytest.mark.asyncio
async def test_concurrent_finalize_of_same_content_commits_once(services):
    uploads = services.uploads
    first = await uploads.init_upload("alice", "one.mp4", 50, "fp-race")
    second = await uploads.init_upload("alice", "two.mp4", 60, "fp-race")
    assert (await services.ledger.get_profile("alice")).reserved_bytes == 110
    await transfer(services, first, b"1" * 50)
    await transfer(services, second, b"2" * 60)

    results = await asyncio.gather(
        uploads.finalize_upload("alice", first.object_key, "fp-race"),
        uploads.finalize_upload("alice", second.object_key, "fp-race"),
        return_exceptions=True,
    )
    committed = [r for r in results if not isinstance(r, Exception)]
    rejected = [r for r in results if isinstance(r, Exception)]
    assert len(committed) == 1
    assert len(rejected) == 1
    assert isinstance(rejected[0], DuplicateContentError)
    assert rejected[0].video_id == committed[0].video_id

    winner_size = 50 if committed[0].video_id == first.video_id else 60
    profile = await services.ledger.get_profile("alice")
    assert profile.used_bytes == winner_size
    assert profile.reserved_bytes == 0
    assert profile.videos_count == 1
    assert len(await services.records.list_videos("alice")) == 1
    assert await services.ledger.list_reservations("alice") == []


@pytest.mark.asyncio
async def test_init_validation(services):
    uploads = services.uploads
    with pytest.raises(ValidationError):
        await uploads.init_upload("alice", "notes.txt", 10, "fp")
    with pytest.raises(ValidationError):
        await uploads.init_upload("alice", "clip.mp4", 0, "fp")
    with pytest.raises(ValidationError):
        await uploads.init_upload("alice", "clip.mp4", 501, "fp")
    with pytest.raises(ValidationError):
        await uploads.init_upload("alice", "clip.mp4", 10, "")
    with pytest.raises(ValidationError):
        await uploads.init_upload("a:b", "clip.mp4", 10, "fp")


@pytest.mark.asyncio
async def test_init_rejects_when_quota_is_full(services):
    uploads = services.uploads
    await uploads.init_upload("alice", "a.mp4", 500, "fp-a")
    await uploads.init_upload("alice", "b.mp4", 500, "fp-b")

    # 1000 + 20 > quota 1000 + grace 10
    with pytest.raises(QuotaExceededError):
        await uploads.init_upload("alice", "c.mp4", 20, "fp-c")
    assert (await services.ledger.get_profile("alice")).reserved_bytes == 1000


@pytest.mark.asyncio
async def test_failed_reservation_aborts_multipart_session(services, monkeypatch):
    async def refuse(user_id, reservation):
        raise QuotaExceededError("Storage quota is busy, try again", retry=True)

    monkeypatch.setattr(services.ledger, "reserve", refuse)

    with pytest.raises(QuotaExceededError):
        await services.uploads.init_upload("alice", "a.mp4", 10, "fp-a")
    assert list(services.store.multipart_path.iterdir()) == []


@pytest.mark.asyncio
async def test_part_target_checks_namespace_and_session(services):
    uploads = services.uploads
    session = await uploads.init_upload("alice", "a.mp4", 10, "fp-a")

    with pytest.raises(ForbiddenKeyError):
        await uploads.get_part_upload_target("bob", session.object_key, session.upload_id, 1)
    with pytest.raises(ValidationError):
        await uploads.get_part_upload_target("alice", session.object_key, session.upload_id, 0)
    with pytest.raises(ValidationError):
        await uploads.get_part_upload_target("alice", "video/alice/", session.upload_id, 1)
    with pytest.raises(ReservationNotFoundError):
        await uploads.get_part_upload_target("alice", session.object_key, "someone-elses-upload", 1)


@pytest.mark.asyncio
async def test_complete_validates_parts(services):
    uploads = services.uploads
    session = await uploads.init_upload("alice", "a.mp4", 10, "fp-a")

    with pytest.raises(ValidationError):
        await uploads.complete_upload("alice", session.object_key, session.upload_id, [])
    with pytest.raises(ValidationError):
        await uploads.complete_upload(
            "alice",
            session.object_key,
            session.upload_id,
            [UploadedPart(part_number=1, etag="a"), UploadedPart(part_number=1, etag="b")],
        )
    with pytest.raises(ValidationError):
        await uploads.complete_upload(
            "alice", session.object_key, session.upload_id, [UploadedPart(part_number=1, etag="never-sent")]
        )


@pytest.mark.asyncio
async def test_finalize_twice_is_rejected(services):
    session = await commit_video(services, "a.mp4", b"abc", "fp-a")

    with pytest.raises(ReservationNotFoundError):
        await services.uploads.finalize_upload("alice", session.object_key, "fp-a")
    profile = await services.ledger.get_profile("alice")
    assert (profile.used_bytes, profile.videos_count) == (3, 1)


@pytest.mark.asyncio
async def test_abort_releases_reservation_and_is_idempotent(services):
    uploads = services.uploads
    session = await uploads.init_upload("alice", "a.mp4", 40, "fp-a")
    await services.store.write_part(session.object_key, session.upload_id, 1, chunks(b"partial"))

    aborted = await uploads.abort_upload("alice", session.object_key, session.upload_id)
    assert aborted.state == UploadState.ABORTED
    assert aborted.size_bytes == 40
    assert (await services.ledger.get_profile("alice")).reserved_bytes == 0
    assert not (services.store.multipart_path / session.upload_id).exists()

    again = await uploads.abort_upload("alice", session.object_key, session.upload_id)
    assert again.state == UploadState.ABORTED
    assert again.size_bytes == 0
    assert (await services.ledger.get_profile("alice")).reserved_bytes == 0

    with pytest.raises(ReservationNotFoundError):
        await uploads.finalize_upload("alice", session.object_key, "fp-a")


@pytest.mark.asyncio
async def test_abort_of_foreign_key_is_forbidden(services):
    session = await services.uploads.init_upload("alice", "a.mp4", 40, "fp-a")
    with pytest.raises(ForbiddenKeyError):
        await services.uploads.abort_upload("mallory", session.object_key, session.upload_id)
    assert (await services.ledger.get_profile("alice")).reserved_bytes == 40


@pytest.mark.asyncio
async def test_fingerprint_must_be_a_plain_token(services):
    uploads = services.uploads
    for bad in ("x:reserve:y", "fp*", "fp?", "a/b", "fp\n"):
        with pytest.raises(ValidationError):
            await uploads.init_upload("alice", "clip.mp4", 10, bad)
    assert (await services.ledger.get_profile("alice")).reserved_bytes == 0

    session = await uploads.init_upload("alice", "clip.mp4", 3, "fp-a")
    await transfer(services, session, b"abc")
    with pytest.raises(ValidationError):
        await uploads.finalize_upload("alice", session.object_key, "x:reserve:y")
    assert await services.ledger.get_reservation("alice", session.video_id) is not None

    with pytest.raises(ValidationError):
        await services.dedup.get("alice", "x:*")


@pytest.mark.asyncio
async def test_finalize_before_complete_keeps_reservation(services):
    uploads = services.uploads
    session = await uploads.init_upload("alice", "a.mp4", 5, "fp-a")
    await services.store.write_part(session.object_key, session.upload_id, 1, chunks(b"early"))

    with pytest.raises(ValidationError) as exc:
        await uploads.finalize_upload("alice", session.object_key, "fp-a")
    assert exc.value.message == "Upload not completed"
    assert await services.records.get("alice", session.video_id) is None
    assert (await services.ledger.get_profile("alice")).reserved_bytes == 5

    await transfer(services, session, b"later")
    done = await uploads.finalize_upload("alice", session.object_key, "fp-a")
    assert done.state == UploadState.COMMITTED
    profile = await services.ledger.get_profile("alice")
    assert (profile.used_bytes, profile.reserved_bytes) == (5, 0)


@pytest.mark.asyncio
async def test_abort_survives_object_store_failure(services, monkeypatch):
    uploads = services.uploads
    session = await uploads.init_upload("alice", "a.mp4", 40, "fp-a")

    async def broken_abort(key, upload_id):
        raise OSError("disk gone")

    monkeypatch.setattr(services.store, "abort_multipart_upload", broken_abort)
    aborted = await uploads.abort_upload("alice", session.object_key, session.upload_id)
    assert aborted.state == UploadState.ABORTED
    assert aborted.size_bytes == 40
    assert (await services.ledger.get_profile("alice")).reserved_bytes == 0


@pytest.mark.asyncio
async def test_abort_survives_release_failure(services, monkeypatch):
    uploads = services.uploads
    session = await uploads.init_upload("alice", "a.mp4", 40, "fp-a")

    async def state_down(txn):
        raise UpstreamStorageError("state store down")

    monkeypatch.setattr(services.state, "transact", state_down)
    aborted = await uploads.abort_upload("alice", session.object_key, session.upload_id)
    assert aborted.state == UploadState.ABORTED
    assert aborted.size_bytes == 0

    # Still reserved; the expiry sweep reclaims it later
    monkeypatch.undo()
    assert await services.ledger.get_reservation("alice", session.video_id) is not None
    assert (await services.ledger.get_profile("alice")).reserved_bytes == 40


def test_session_passes_through_transferring():
    session = UploadSession(user_id="alice", state=UploadState.RESERVED)
    session.advance(UploadState.TRANSFERRING).advance(UploadState.FINALIZING).advance(UploadState.COMMITTED)
    assert session.state.is_terminal

    with pytest.raises(InvalidTransition):
        UploadSession(user_id="alice").advance(UploadState.TRANSFERRING)
