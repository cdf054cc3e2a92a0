"""Quota ledger: reserve / commit / release accounting."""

import asyncio

import pytest

from reelvault.common.constants import StateKeys
from reelvault.server.errors import QuotaExceededError, ValidationError
from reelvault.server.quota.ledger import QuotaLedger
from reelvault.server.quota.models import ContentHashLock, UserQuotaProfile, normalize_user_id
from reelvault.server.services.transaction import Delete, Transaction

from tests.conftest import make_reservation


async def _seed_profile(state, user_id="alice", quota=100, used=0, reserved=0, videos=0) -> None:
    profile = UserQuotaProfile(
        user_id=user_id, quota_bytes=quota, used_bytes=used, reserved_bytes=reserved, videos_count=videos
    )
    await state.set(StateKeys.profile(user_id), profile.to_state())


@pytest.mark.asyncio
async def test_ensure_profile_creates_default_once(state, settings):
    ledger = QuotaLedger(state, settings)
    first = await ledger.ensure_profile("alice")
    assert first.quota_bytes == settings.default_quota_bytes
    assert first.used_bytes == first.reserved_bytes == first.videos_count == 0

    await ledger.set_quota("alice", 5000)
    again = await ledger.ensure_profile("alice")
    assert again.quota_bytes == 5000


@pytest.mark.asyncio
async def test_reserve_within_grace_is_accepted(state, settings):
    # quota 100, used 90, grace 10: 90 + 0 + 15 = 105 <= 110
    await _seed_profile(state, quota=100, used=90)
    ledger = QuotaLedger(state, settings)

    await ledger.reserve("alice", make_reservation("v1", 15))

    profile = await ledger.get_profile("alice")
    assert profile.reserved_bytes == 15
    assert profile.used_bytes == 90
    assert await ledger.get_reservation("alice", "v1") is not None


@pytest.mark.asyncio
async def test_reserve_beyond_grace_is_rejected(state, settings):
    # 90 + 0 + 21 = 111 > 110
    await _seed_profile(state, quota=100, used=90)
    ledger = QuotaLedger(state, settings)

    with pytest.raises(QuotaExceededError) as exc:
        await ledger.reserve("alice", make_reservation("v1", 21))
    assert exc.value.status_code == 507
    assert exc.value.extra["requested_bytes"] == 21

    profile = await ledger.get_profile("alice")
    assert profile.reserved_bytes == 0
    assert await ledger.get_reservation("alice", "v1") is None


@pytest.mark.asyncio
async def test_reserve_exactly_at_limit(state, settings):
    await _seed_profile(state, quota=100, used=60, reserved=30)
    ledger = QuotaLedger(state, settings)
    await ledger.reserve("alice", make_reservation("v1", 20))
    assert (await ledger.get_profile("alice")).reserved_bytes == 50


@pytest.mark.asyncio
async def test_concurrent_reserves_never_exceed_quota_plus_grace(state, settings):
    await _seed_profile(state, quota=100, used=0)
    ledger = QuotaLedger(state, settings)

    async def attempt(i: int) -> bool:
        try:
            await ledger.reserve("alice", make_reservation(f"v{i}", 30))
            return True
        except QuotaExceededError:
            return False

    results = await asyncio.gather(*(attempt(i) for i in range(8)))

    profile = await ledger.get_profile("alice")
    accepted = sum(results)
    assert accepted <= 3  # 3 * 30 = 90 fits, 4 * 30 = 120 > 110
    assert profile.reserved_bytes == accepted * 30
    assert profile.used_bytes + profile.reserved_bytes <= profile.quota_bytes + settings.grace_bytes
    assert len(await ledger.list_reservations("alice")) == accepted


@pytest.mark.asyncio
async def test_reserve_gives_up_after_three_conflicts(state, settings, monkeypatch):
    await _seed_profile(state, quota=1000)
    ledger = QuotaLedger(state, settings)
    real_get_profile = ledger.get_profile
    reads = []

    async def racing_get_profile(user_id):
        profile = await real_get_profile(user_id)
        reads.append(profile)
        # Another writer bumps the counters right after every read
        bumped = profile.model_copy(update={"used_bytes": profile.used_bytes + 1})
        await state.set(StateKeys.profile(user_id), bumped.to_state())
        return profile

    monkeypatch.setattr(ledger, "get_profile", racing_get_profile)

    with pytest.raises(QuotaExceededError) as exc:
        await ledger.reserve("alice", make_reservation("v1", 10))
    assert exc.value.extra.get("retry") is True
    assert len(reads) == 3
    assert await state.get(StateKeys.reservation("alice", "v1")) is None


@pytest.mark.asyncio
async def test_release_is_idempotent(state, settings):
    await _seed_profile(state, quota=1000)
    ledger = QuotaLedger(state, settings)
    await ledger.reserve("alice", make_reservation("v1", 40))
    key = ledger.reservation_key("alice", "v1")

    assert await ledger.release("alice", key, 40) is True
    assert await ledger.release("alice", key, 40) is False
    assert (await ledger.get_profile("alice")).reserved_bytes == 0


@pytest.mark.asyncio
async def test_commit_moves_reserved_to_used(state, settings):
    await _seed_profile(state, quota=1000)
    ledger = QuotaLedger(state, settings)
    await ledger.reserve("alice", make_reservation("v1", 40))

    await state.transact(
        Transaction([Delete(ledger.reservation_key("alice", "v1"), must_exist=True), ledger.commit_ops("alice", 40)])
    )

    profile = await ledger.get_profile("alice")
    assert profile.reserved_bytes == 0
    assert profile.used_bytes == 40
    assert profile.videos_count == 1


@pytest.mark.asyncio
async def test_bytes_are_conserved_across_lifecycle(state, settings):
    await _seed_profile(state, quota=1000)
    ledger = QuotaLedger(state, settings)
    for i, size in enumerate([100, 200, 300]):
        await ledger.reserve("alice", make_reservation(f"v{i}", size))

    await state.transact(
        Transaction([Delete(ledger.reservation_key("alice", "v0"), must_exist=True), ledger.commit_ops("alice", 100)])
    )
    await ledger.release("alice", ledger.reservation_key("alice", "v1"), 200)

    profile = await ledger.get_profile("alice")
    assert profile.used_bytes == 100
    assert profile.reserved_bytes == 300

    await state.transact(Transaction([ledger.debit_ops("alice", 100)]))
    profile = await ledger.get_profile("alice")
    assert profile.used_bytes == 0
    assert profile.videos_count == 0


@pytest.mark.asyncio
async def test_recalculate_only_when_drifted(state, settings):
    await _seed_profile(state, quota=1000, used=500, reserved=50, videos=3)
    ledger = QuotaLedger(state, settings)

    assert await ledger.recalculate("alice", used=500, reserved=50, videos=3) is False
    assert await ledger.recalculate("alice", used=120, reserved=0, videos=1) is True

    profile = await ledger.get_profile("alice")
    assert (profile.used_bytes, profile.reserved_bytes, profile.videos_count) == (120, 0, 1)


@pytest.mark.asyncio
async def test_recalculate_skips_when_counters_moved(state, settings):
    await _seed_profile(state, quota=1000, used=500)
    ledger = QuotaLedger(state, settings)
    stale = await ledger.get_profile("alice")

    await ledger.reserve("alice", make_reservation("v1", 10))

    assert await ledger.recalculate("alice", used=0, reserved=0, videos=0, expected=stale) is False
    assert (await ledger.get_profile("alice")).reserved_bytes == 10


@pytest.mark.asyncio
async def test_list_users_and_reservations(state, settings):
    ledger = QuotaLedger(state, settings)
    await ledger.ensure_profile("bob")
    await ledger.ensure_profile("alice")
    await ledger.reserve("bob", make_reservation("v1", 5, user_id="bob"))

    assert await ledger.list_users() == ["alice", "bob"]
    owners = [(owner, r.video_id) for owner, r in await ledger.list_reservations()]
    assert owners == [("bob", "v1")]


def test_state_key_escaping_and_parsing():
    assert StateKeys.escape("a?c[1]*@x.com") == "a[?]c[[]1][*]@x.com"
    assert StateKeys.scan_pattern("a?c@x.com", StateKeys.VIDEO) == "rv:user:a[?]c@x.com:video:*"
    assert StateKeys.scan_pattern("*", StateKeys.RESERVE) == "rv:user:*:reserve:*"
    assert StateKeys.parse("rv:user:alice:hash:x:reserve:y") == ("alice", "hash", "x:reserve:y")
    assert StateKeys.parse("rv:user:alice:profile") == ("alice", "profile", "")
    assert StateKeys.parse("rv:queue:delete-video:1") is None


def test_user_ids_are_canonical():
    assert normalize_user_id("  A?C@X.com ") == "a?c@x.com"
    for bad in ("", "a:b", "a/b", "a*", "a\\b"):
        with pytest.raises(ValidationError):
            normalize_user_id(bad)


@pytest.mark.asyncio
async def test_reservation_scan_ignores_other_record_types(state, settings):
    ledger = QuotaLedger(state, settings)
    await _seed_profile(state, reserved=30)
    await state.set(StateKeys.reservation("alice", "vid-1"), make_reservation("vid-1", 30).to_state())
    lock = ContentHashLock(fingerprint="x:reserve:y", video_id="vid-2")
    await state.set("rv:user:alice:hash:x:reserve:y", lock.to_state())
    await state.set("rv:user:alice:hash:x:profile", lock.to_state())

    everyone = await ledger.list_reservations()
    assert [(owner, r.video_id) for owner, r in everyone] == [("alice", "vid-1")]
    assert [r.video_id for _, r in await ledger.list_reservations("alice")] == ["vid-1"]
    assert await ledger.list_users() == ["alice"]


@pytest.mark.asyncio
async def test_glob_characters_in_user_id_stay_in_their_namespace(state, settings):
    ledger = QuotaLedger(state, settings)
    await _seed_profile(state, user_id="abc@x.com", reserved=30)
    await _seed_profile(state, user_id="a?c@x.com")
    await state.set(StateKeys.reservation("abc@x.com", "vid-1"), make_reservation("vid-1", 30).to_state())

    assert await ledger.list_reservations("a?c@x.com") == []
    assert len(await ledger.list_reservations("abc@x.com")) == 1
    assert await ledger.list_users() == ["a?c@x.com", "abc@x.com"]
