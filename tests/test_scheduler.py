"""Tests for the cooldown scheduler sweep."""

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest
from prometheus_client import CollectorRegistry

from apps.notifier.acknowledgment import AcknowledgmentHandler
from apps.notifier.aggregator import DigestAggregator
from apps.notifier.coordinator import SendCoordinator, SendOutcome, SendStatus
from apps.notifier.scheduler import CooldownScheduler, CycleReport
from contracts.digest import RawAlertEvent
from core.alerting.metrics import DigestMetrics
from core.alerting.transport import DigestTransport
from core.db.memory import InMemoryDigestStore
from core.db.store import DigestStoreError

T0 = datetime(2025, 11, 2, 0, 0, tzinfo=UTC)


class FakeClock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now


class RecordingTransport(DigestTransport):
    def __init__(self, result=True, clock=None, send_duration=None):
        self.result = result
        self.clock = clock
        self.send_duration = send_duration
        self.emails = []

    async def send(self, email):
        self.emails.append(email)
        if self.send_duration is not None:
            self.clock.now += self.send_duration
        return self.result


def make_event(event_id, recipient_uid="u1", value=9.1):
    return RawAlertEvent(
        parameter="ph",
        value=value,
        severity="Critical",
        event_id=event_id,
        timestamp=T0,
        recipient_uid=recipient_uid,
        recipient_email=f"{recipient_uid}@example.com",
        device_name="Tank 1",
    )


def build(transport=None, batch_size=50, max_concurrency=5, clock=None):
    clock = clock or FakeClock()
    store = InMemoryDigestStore()
    metrics = DigestMetrics(registry=CollectorRegistry())
    transport = transport or RecordingTransport()
    coordinator = SendCoordinator(store, transport, metrics=metrics, clock=clock)
    scheduler = CooldownScheduler(
        store,
        coordinator,
        batch_size=batch_size,
        max_concurrency=max_concurrency,
        clock=clock,
    )
    aggregator = DigestAggregator(store, metrics=metrics)
    return store, aggregator, scheduler, transport


async def run_at(scheduler, moment):
    scheduler.clock.now = moment
    return await scheduler.run_cycle()


@pytest.mark.asyncio
async def test_full_digest_lifecycle():
    store, aggregator, scheduler, transport = build()
    acks = AcknowledgmentHandler(store)

    await aggregator.ingest_event(make_event("e1"), now=T0)
    digest = await aggregator.ingest_event(
        make_event("e2"), now=T0 + timedelta(minutes=2)
    )
    assert len(digest.items) == 2

    first_run = T0 + timedelta(minutes=5)
    report = await run_at(scheduler, first_run)
    assert report.sent == 1
    assert len(transport.emails) == 1
    assert [item.event_id for item in transport.emails[0].items] == ["e1", "e2"]

    stored = await store.get(digest.digest_id)
    assert stored.send_attempts == 1
    assert stored.cooldown_until == datetime(2025, 11, 3, 0, 5, tzinfo=UTC)

    await aggregator.ingest_event(make_event("e3"), now=T0 + timedelta(hours=1))
    report = await run_at(scheduler, T0 + timedelta(hours=1, minutes=5))
    assert report.sent == 0
    assert len(transport.emails) == 1

    result = await acks.acknowledge(
        digest.digest_id, stored.ack_token, now=T0 + timedelta(hours=2)
    )
    assert result.ok

    report = await run_at(scheduler, T0 + timedelta(days=2))
    assert report.sent == 0
    assert len(transport.emails) == 1


@pytest.mark.asyncio
async def test_reminder_after_cooldown_then_exhaustion():
    store, aggregator, scheduler, transport = build()
    await aggregator.ingest_event(make_event("e1"), now=T0)

    for day in range(5):
        await run_at(scheduler, T0 + timedelta(days=day, minutes=5))

    assert [email.attempt for email in transport.emails] == [1, 2, 3]


@pytest.mark.asyncio
async def test_select_eligible_digests_yields_each_digest_once():
    store, aggregator, scheduler, _ = build()
    for uid in ("u1", "u2", "u3"):
        await aggregator.ingest_event(make_event(f"e-{uid}", recipient_uid=uid), now=T0)

    selected = [d.digest_id async for d in scheduler.select_eligible_digests(T0)]
    again = [d.digest_id async for d in scheduler.select_eligible_digests(T0)]

    assert len(selected) == 3
    assert len(set(selected)) == 3
    assert sorted(again) == sorted(selected)


@pytest.mark.asyncio
async def test_select_eligible_digests_respects_cooldown_and_batch_size():
    store, aggregator, scheduler, _ = build(batch_size=2)
    for uid in ("u1", "u2", "u3"):
        await aggregator.ingest_event(make_event(f"e-{uid}", recipient_uid=uid), now=T0)

    earlier = T0 - timedelta(seconds=1)
    before = [d async for d in scheduler.select_eligible_digests(earlier)]
    batch = [d async for d in scheduler.select_eligible_digests(T0)]

    assert before == []
    assert len(batch) == 2


@pytest.mark.asyncio
async def test_concurrent_cycles_never_double_send():
    store, aggregator, scheduler, transport = build()
    for uid in ("u1", "u2", "u3", "u4"):
        await aggregator.ingest_event(make_event(f"e-{uid}", recipient_uid=uid), now=T0)

    reports = await asyncio.gather(
        run_at(scheduler, T0 + timedelta(minutes=5)),
        run_at(scheduler, T0 + timedelta(minutes=5)),
    )

    assert sum(report.sent for report in reports) == 4
    assert len(transport.emails) == 4
    assert len({email.digest_id for email in transport.emails}) == 4


@pytest.mark.asyncio
async def test_failed_sends_are_counted_and_retried_next_cycle():
    store, aggregator, scheduler, transport = build(RecordingTransport(result=False))
    await aggregator.ingest_event(make_event("e1"), now=T0)

    first = await run_at(scheduler, T0 + timedelta(minutes=5))
    second = await run_at(scheduler, T0 + timedelta(minutes=10))

    assert first.failed == 1
    assert second.failed == 1
    assert len(transport.emails) == 2


@pytest.mark.asyncio
async def test_scan_failure_aborts_cycle_without_sending():
    store, aggregator, scheduler, transport = build()
    await aggregator.ingest_event(make_event("e1"), now=T0)

    async def broken_scan(now, *, limit):
        raise DigestStoreError("mongo down")
        yield  # pragma: no cover

    store.iter_eligible = broken_scan

    report = await run_at(scheduler, T0 + timedelta(minutes=5))

    assert report.aborted is True
    assert report.sent == 0
    assert transport.emails == []


@pytest.mark.asyncio
async def test_start_and_stop_run_the_loop():
    store, aggregator, scheduler, _ = build()
    scheduler.interval_seconds = 0.01
    scheduler.run_cycle = AsyncMock(return_value=CycleReport(started_at=T0))

    await scheduler.start()
    await asyncio.sleep(0.05)
    await scheduler.stop()

    assert scheduler.run_cycle.await_count >= 1
    assert scheduler._task is None


def test_cycle_report_counts_outcomes():
    report = CycleReport(started_at=T0)
    report.add(SendOutcome("a", SendStatus.SENT))
    report.add(SendOutcome("b", SendStatus.FAILED, "timeout"))
    report.add(SendOutcome("c", SendStatus.SKIPPED))

    assert (report.sent, report.failed, report.skipped) == (1, 1, 1)
    assert len(report.outcomes) == 3


@pytest.mark.asyncio
async def test_sends_are_stamped_when_claimed_not_when_cycle_started():
    clock = FakeClock()
    transport = RecordingTransport(clock=clock, send_duration=timedelta(minutes=10))
    store, aggregator, scheduler, _ = build(transport, max_concurrency=1, clock=clock)
    for uid in ("u1", "u2"):
        await aggregator.ingest_event(make_event(f"e-{uid}", recipient_uid=uid), now=T0)

    report = await run_at(scheduler, T0 + timedelta(minutes=5))

    assert report.sent == 2
    first, second = [outcome.digest_id for outcome in report.outcomes]
    first_digest = await store.get(first)
    second_digest = await store.get(second)
    assert first_digest.last_sent_at == T0 + timedelta(minutes=5)
    assert second_digest.last_sent_at == T0 + timedelta(minutes=15)
    assert second_digest.cooldown_until == T0 + timedelta(hours=24, minutes=15)


@pytest.mark.asyncio
async def test_unexpected_send_error_is_counted_as_failure():
    store, aggregator, scheduler, transport = build()
    await aggregator.ingest_event(make_event("e1"), now=T0)
    scheduler.coordinator.attempt_send = AsyncMock(side_effect=ValueError("bad doc"))

    report = await run_at(scheduler, T0 + timedelta(minutes=5))

    assert report.failed == 1
    assert report.outcomes[0].reason.startswith("unexpected_error")
    assert report.aborted is False


@pytest.mark.asyncio
async def test_unexpected_scan_error_aborts_cycle():
    store, aggregator, scheduler, transport = build()
    await aggregator.ingest_event(make_event("e1"), now=T0)

    async def malformed_scan(now, *, limit):
        raise ValueError("1 validation error for AlertDigest")
        yield  # pragma: no cover

    store.iter_eligible = malformed_scan

    report = await run_at(scheduler, T0 + timedelta(minutes=5))

    assert report.aborted is True
    assert transport.emails == []


@pytest.mark.asyncio
async def test_loop_survives_failing_cycles_and_stops_cleanly():
    store, aggregator, scheduler, _ = build()
    scheduler.interval_seconds = 0.01
    scheduler.run_cycle = AsyncMock(side_effect=ValueError("malformed digest"))

    await scheduler.start()
    await asyncio.sleep(0.1)
    await scheduler.stop()

    assert scheduler.run_cycle.await_count > 1
    assert scheduler._task is None
