"""Shared fixtures: in-memory state, a local object store and the wired services."""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest_asyncio

from reelvault.common.models import UploadedPart
from reelvault.server.config import ServerSettings
from reelvault.server.objectstore.local import LocalObjectStore
from reelvault.server.quota.models import UploadReservation, utcnow
from reelvault.server.services.container import build_services
from reelvault.server.services.state import BackendType, StateManager


def make_settings(tmp_path: Path, **overrides) -> ServerSettings:
    values = dict(
        state_backend="memory",
        state_path=tmp_path / "data",
        storage_path=tmp_path / "storage",
        signing_secret="test-secret",
        public_url="http://testserver",
        default_quota_bytes=1000,
        grace_bytes=10,
        max_upload_bytes=500,
        auth_enabled=False,
        deletion_worker_enabled=False,
        reconcile_interval=0,
        reconcile_on_startup=False,
        config_watch=False,
    )
    values.update(overrides)
    return ServerSettings(**values)


def make_reservation(video_id: str, size: int, user_id: str = "alice", **extra) -> UploadReservation:
    now = utcnow()
    values = dict(
        video_id=video_id,
        object_key=f"video/{user_id}/{video_id}",
        upload_id=f"upload-{video_id}",
        size_bytes=size,
        file_name=f"{video_id}.mp4",
        fingerprint=f"fp-{video_id}",
        created_at=now,
        expires_at=now + timedelta(hours=1),
    )
    values.update(extra)
    return UploadReservation(**values)


@pytest_asyncio.fixture
async def state():
    manager = StateManager(BackendType.MEMORY)
    await manager.connect()
    yield manager
    await manager.disconnect()


@pytest_asyncio.fixture
async def settings(tmp_path: Path) -> ServerSettings:
    return make_settings(tmp_path)


@pytest_asyncio.fixture
async def store(tmp_path: Path) -> LocalObjectStore:
    local = LocalObjectStore(
        root=tmp_path / "storage",
        signing_secret="test-secret",
        public_url="http://testserver",
    )
    await local.initialize()
    return local


@pytest_asyncio.fixture
async def services(settings, state, store):
    return build_services(settings, state, store)


async def chunks(data: bytes, size: int = 4):
    for start in range(0, len(data), size):
        yield data[start : start + size]


async def transfer(services, session, data: bytes) -> None:
    """Upload `data` as a single part and assemble the object."""
    etag = await services.store.write_part(session.object_key, session.upload_id, 1, chunks(data))
    await services.uploads.complete_upload(
        session.user_id, session.object_key, session.upload_id, [UploadedPart(part_number=1, etag=etag)]
    )


async def commit_video(services, file_name: str, data: bytes, fingerprint: str, user_id: str = "alice"):
    """Run a whole upload through the local store; returns the committed session."""
    session = await services.uploads.init_upload(user_id, file_name, len(data), fingerprint)
    await transfer(services, session, data)
    return await services.uploads.finalize_upload(user_id, session.object_key, fingerprint)
