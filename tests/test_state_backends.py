"""State backends: memory and file share one contract."""

from pathlib import Path

import pytest
import pytest_asyncio

from reelvault.server.services.state import BackendType, StateManager
from reelvault.server.services.transaction import ConditionalUpdate, Insert, Transaction, TransactionCanceled


@pytest_asyncio.fixture(params=["memory", "file"])
async def manager(request, tmp_path: Path):
    mgr = StateManager(BackendType(request.param), storage_path=tmp_path)
    await mgr.connect()
    yield mgr
    await mgr.disconnect()


@pytest.mark.asyncio
async def test_get_set_delete(manager):
    assert await manager.get("k") is None
    assert await manager.set("k", "v") is True
    assert await manager.get("k") == "v"
    assert await manager.exists("k") is True
    assert await manager.delete("k") == 1
    assert await manager.delete("k") == 0


@pytest.mark.asyncio
async def test_set_nx(manager):
    assert await manager.set("k", "first", nx=True) is True
    assert await manager.set("k", "second", nx=True) is False
    assert await manager.get("k") == "first"


@pytest.mark.asyncio
async def test_scan_keys_pattern_and_pagination(manager):
    for i in range(250):
        await manager.set(f"rv:user:alice:video:{i:03d}", "{}")
    await manager.set("rv:user:bob:video:1", "{}")

    keys = await manager.scan_keys("rv:user:alice:video:*")
    assert len(keys) == 250
    assert all(k.startswith("rv:user:alice:") for k in keys)


@pytest.mark.asyncio
async def test_transact_applies_all_or_nothing(manager):
    await manager.set("p", '{"n": 1}')
    await manager.transact(Transaction([ConditionalUpdate("p", expect={"n": 1}, increment={"n": 1}), Insert("q", "x")]))
    assert (await manager.get_json("p"))["n"] == 2
    assert await manager.get("q") == "x"

    with pytest.raises(TransactionCanceled):
        await manager.transact(Transaction([ConditionalUpdate("p", increment={"n": 1}), Insert("q", "y")]))
    assert (await manager.get_json("p"))["n"] == 2


@pytest.mark.asyncio
async def test_empty_transaction_is_noop(manager):
    await manager.transact(Transaction())
    assert await manager.ping() is True


@pytest.mark.asyncio
async def test_file_backend_persists_across_restart(tmp_path: Path):
    first = StateManager(BackendType.FILE, storage_path=tmp_path)
    await first.connect()
    await first.transact(Transaction([Insert("rv:user:alice:profile", '{"used_bytes": 5}')]))
    await first.disconnect()

    second = StateManager(BackendType.FILE, storage_path=tmp_path)
    await second.connect()
    try:
        assert (await second.get_json("rv:user:alice:profile")) == {"used_bytes": 5}
        assert (tmp_path / "state" / "state.json").exists()
    finally:
        await second.disconnect()
