"""Periodic cooldown sweep that hands eligible digests to the coordinator."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from apps.notifier.coordinator import SendCoordinator, SendOutcome, SendStatus
from contracts.digest import DIGEST_BATCH_SIZE, AlertDigest
from core.db.store import DigestStore, DigestStoreError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CycleReport:
    """Counts for one scheduler sweep."""

    started_at: datetime
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    aborted: bool = False
    outcomes: list[SendOutcome] = field(default_factory=list)

    def add(self, outcome: SendOutcome) -> None:
        self.outcomes.append(outcome)
        if outcome.status == SendStatus.SENT:
            self.sent += 1
        elif outcome.status == SendStatus.FAILED:
            self.failed += 1
        else:
            self.skipped += 1


class CooldownScheduler:
    """Selects digests whose cooldown elapsed and sends them."""

    def __init__(
        self,
        store: DigestStore,
        coordinator: SendCoordinator,
        *,
        batch_size: int = DIGEST_BATCH_SIZE,
        max_concurrency: int = 5,
        interval_seconds: float = 300.0,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self.store = store
        self.coordinator = coordinator
        self.batch_size = batch_size
        self.max_concurrency = max_concurrency
        self.interval_seconds = interval_seconds
        self.clock = clock
        self._running = False
        self._task: asyncio.Task[Any] | None = None

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.run_cycle()
            except Exception as exc:
                logger.exception(f"Digest send cycle crashed: {exc}")
            await asyncio.sleep(self.interval_seconds)

    async def select_eligible_digests(
        self, now: datetime
    ) -> AsyncIterator[AlertDigest]:
        """
        Lazily yield digests eligible for sending at `now`.

        Unacknowledged, non-empty, under the attempt ceiling, cooldown
        elapsed. Each digest is yielded at most once per call; calling
        again restarts the scan.
        """
        seen: set[str] = set()
        async for digest in self.store.iter_eligible(now, limit=self.batch_size):
            if digest.digest_id in seen or not digest.is_eligible(now):
                continue
            seen.add(digest.digest_id)
            yield digest

    async def run_cycle(self, now: datetime | None = None) -> CycleReport:
        now = now or self.clock()
        report = CycleReport(started_at=now)
        semaphore = asyncio.Semaphore(self.max_concurrency)
        tasks: list[asyncio.Task[SendOutcome]] = []

        async def send_one(digest: AlertDigest) -> SendOutcome:
            async with semaphore:
                try:
                    # The coordinator stamps the claim with its own clock.
                    return await self.coordinator.attempt_send(digest)
                except Exception as exc:
                    logger.exception(f"Unexpected error sending {digest.digest_id}")
                    return SendOutcome(
                        digest.digest_id, SendStatus.FAILED, f"unexpected_error: {exc}"
                    )

        logger.info("Starting digest send cycle")
        try:
            async for digest in self.select_eligible_digests(now):
                tasks.append(asyncio.create_task(send_one(digest)))
        except DigestStoreError as exc:
            logger.error(f"Failed to query eligible digests: {exc}")
            report.aborted = True
        except Exception:
            logger.exception("Unexpected error while scanning eligible digests")
            report.aborted = True

        for outcome in await asyncio.gather(*tasks):
            report.add(outcome)

        if not tasks and not report.aborted:
            logger.info("No eligible digests to send at this time")
        logger.info(
            f"Digest send cycle complete: {report.sent} sent, "
            f"{report.failed} failed, {report.skipped} skipped"
        )
        return report
