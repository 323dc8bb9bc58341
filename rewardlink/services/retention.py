"""Periodic purge of expired interaction logs, entry attempts and KV rows."""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from rewardlink.db.kv_store import KeyValueStore
from rewardlink.db.models import utc_now
from rewardlink.db.repositories import EntryAttemptRepository, InteractionLogRepository

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 3600.0


@dataclass
class PurgeReport:
    interaction_logs: int = 0
    entry_attempts: int = 0
    kv_entries: int = 0

    @property
    def total(self) -> int:
        return self.interaction_logs + self.entry_attempts + self.kv_entries


class RetentionSweeper:
    """Supervised retention task with explicit shutdown."""

    def __init__(
        self,
        interaction_logs: InteractionLogRepository,
        attempts: EntryAttemptRepository,
        kv: KeyValueStore,
        interval: float = DEFAULT_INTERVAL_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._interaction_logs = interaction_logs
        self._attempts = attempts
        self._kv = kv
        self.interval = interval
        self._clock = clock
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="rewardlink-retention")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None

    async def _run(self) -> None:
        while True:
            try:
                await self.purge()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Retention purge failed")
            await asyncio.sleep(self.interval)

    async def purge(self) -> PurgeReport:
        """Delete every expired row once."""
        now = self._clock()
        report = PurgeReport(
            interaction_logs=await self._interaction_logs.purge_expired(now),
            entry_attempts=await self._attempts.purge_expired(now),
            kv_entries=await self._kv.purge_expired(),
        )
        if report.total:
            logger.info(
                "Retention purged %d interaction logs, %d attempts, %d kv rows",
                report.interaction_logs, report.entry_attempts, report.kv_entries,
            )
        return report
