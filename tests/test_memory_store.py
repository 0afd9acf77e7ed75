"""Tests for the in-memory digest store primitives."""

import asyncio
import gc
from datetime import UTC, datetime, timedelta

import pytest

from contracts.digest import DigestAlertItem
from core.db.memory import InMemoryDigestStore

T0 = datetime(2025, 11, 2, 0, 0, tzinfo=UTC)


def make_item(event_id: str, minutes: int = 0) -> DigestAlertItem:
    return DigestAlertItem(
        event_id=event_id,
        summary=f"Warning: pH 8.9 ({event_id})",
        timestamp=T0 + timedelta(minutes=minutes),
        value=8.9,
        severity="Warning",
        device_name="Tank 1",
        parameter="ph",
    )


async def merge(store, item, now=T0, token="a" * 64):
    return await store.merge_item(
        digest_id="u1_ph_high_2025-11-02",
        recipient_uid="u1",
        recipient_email="staff@example.com",
        category="ph_high",
        day="2025-11-02",
        item=item,
        now=now,
        ack_token=token,
    )


@pytest.mark.asyncio
async def test_merge_creates_digest_with_initial_state():
    store = InMemoryDigestStore()

    digest = await merge(store, make_item("e1"))

    assert digest.digest_id == "u1_ph_high_2025-11-02"
    assert digest.created_at == T0
    assert digest.last_updated_at == T0
    assert digest.cooldown_until == T0
    assert digest.send_attempts == 0
    assert digest.is_acknowledged is False
    assert digest.ack_token == "a" * 64
    assert [item.event_id for item in digest.items] == ["e1"]


@pytest.mark.asyncio
async def test_merge_keeps_creation_fields_and_updates_last_updated():
    store = InMemoryDigestStore()
    await merge(store, make_item("e1"), now=T0, token="first")

    later = T0 + timedelta(minutes=2)
    digest = await merge(store, make_item("e2", 2), now=later, token="second")

    assert digest.created_at == T0
    assert digest.last_updated_at == later
    assert digest.ack_token == "first"
    assert [item.event_id for item in digest.items] == ["e1", "e2"]


@pytest.mark.asyncio
async def test_merge_evicts_oldest_items_beyond_cap():
    store = InMemoryDigestStore()

    for i in range(14):
        digest = await merge(store, make_item(f"e{i}", i))

    assert len(digest.items) == 10
    assert [item.event_id for item in digest.items] == [f"e{i}" for i in range(4, 14)]


@pytest.mark.asyncio
async def test_merge_ignores_duplicate_event_ids():
    store = InMemoryDigestStore()
    await merge(store, make_item("e1"))

    digest = await merge(store, make_item("e1"), now=T0 + timedelta(minutes=5))

    assert len(digest.items) == 1
    assert digest.last_updated_at == T0


@pytest.mark.asyncio
async def test_concurrent_merges_on_new_key_lose_nothing():
    store = InMemoryDigestStore()

    results = await asyncio.gather(
        *(merge(store, make_item(f"e{i:02d}", i)) for i in range(20))
    )

    assert len(results) == 20
    digest = await store.get("u1_ph_high_2025-11-02")
    event_ids = [item.event_id for item in digest.items]
    assert len(event_ids) == 10
    assert len(set(event_ids)) == 10
    assert event_ids == [f"e{i:02d}" for i in range(10, 20)]


@pytest.mark.asyncio
async def test_returned_digest_is_a_copy():
    store = InMemoryDigestStore()
    digest = await merge(store, make_item("e1"))

    digest.items.clear()
    digest.send_attempts = 3

    stored = await store.get(digest.digest_id)
    assert len(stored.items) == 1
    assert stored.send_attempts == 0


@pytest.mark.asyncio
async def test_claim_send_increments_attempts_and_takes_lease():
    store = InMemoryDigestStore()
    await merge(store, make_item("e1"))
    lease_until = T0 + timedelta(minutes=15)

    claimed = await store.claim_send(
        "u1_ph_high_2025-11-02", now=T0, lease_until=lease_until
    )
    second = await store.claim_send(
        "u1_ph_high_2025-11-02", now=T0, lease_until=lease_until
    )

    assert claimed.send_attempts == 1
    assert claimed.send_lease_until == lease_until
    assert second is None


@pytest.mark.asyncio
async def test_claim_send_respects_attempt_ceiling():
    store = InMemoryDigestStore()
    await merge(store, make_item("e1"))
    digest_id = "u1_ph_high_2025-11-02"

    for _ in range(3):
        assert await store.claim_send(digest_id, now=T0, lease_until=T0) is not None
        await store.record_send_failure(digest_id, reason="smtp down")

    assert await store.claim_send(digest_id, now=T0, lease_until=T0) is None
    stored = await store.get(digest_id)
    assert stored.send_attempts == 3
    assert stored.last_failure_reason == "smtp down"


@pytest.mark.asyncio
async def test_record_success_never_moves_cooldown_backwards():
    store = InMemoryDigestStore()
    await merge(store, make_item("e1"))
    digest_id = "u1_ph_high_2025-11-02"

    first = await store.record_send_success(
        digest_id, sent_at=T0, cooldown_until=T0 + timedelta(hours=24)
    )
    second = await store.record_send_success(
        digest_id, sent_at=T0, cooldown_until=T0 + timedelta(hours=1)
    )

    assert first.cooldown_until == T0 + timedelta(hours=24)
    assert second.cooldown_until == T0 + timedelta(hours=24)


@pytest.mark.asyncio
async def test_iter_eligible_filters_on_all_conditions():
    store = InMemoryDigestStore()
    await merge(store, make_item("e1"))

    eligible = [d async for d in store.iter_eligible(T0, limit=50)]
    early = [d async for d in store.iter_eligible(T0 - timedelta(seconds=1), limit=50)]

    assert [d.digest_id for d in eligible] == ["u1_ph_high_2025-11-02"]
    assert early == []

    await store.mark_acknowledged("u1_ph_high_2025-11-02", actor_uid="u1", now=T0)
    assert [d async for d in store.iter_eligible(T0, limit=50)] == []


@pytest.mark.asyncio
async def test_mark_acknowledged_is_exactly_once():
    store = InMemoryDigestStore()
    await merge(store, make_item("e1"))
    digest_id = "u1_ph_high_2025-11-02"
    await store.claim_send(digest_id, now=T0, lease_until=T0)

    first = await store.mark_acknowledged(digest_id, actor_uid="u1", now=T0)
    second = await store.mark_acknowledged(
        digest_id, actor_uid="u2", now=T0 + timedelta(hours=1)
    )

    assert first.is_acknowledged is True
    assert first.send_attempts == 0
    assert second is None
    stored = await store.get(digest_id)
    assert stored.acknowledged_by == "u1"
    assert stored.acknowledged_at == T0


@pytest.mark.asyncio
async def test_per_digest_locks_are_released_after_use():
    store = InMemoryDigestStore()

    await asyncio.gather(
        *(merge(store, make_item(f"e{i:02d}", i)) for i in range(20))
    )
    await store.claim_send("u1_ph_high_2025-11-02", now=T0, lease_until=T0)
    gc.collect()

    assert len(store._locks) == 0
    assert len((await store.get("u1_ph_high_2025-11-02")).items) == 10
