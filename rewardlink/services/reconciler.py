"""Reconciler: drives every posted message toward the backend's truth.

Two paths share one diff/emit routine:

* the periodic sweep, a supervised task that wakes on a jittered
  interval and reconciles every due connection with bounded concurrency;
* the priority path (``request``), used by webhooks and by the entry
  pipeline after a successful entry.

Per connection, reconciles are serialized; a request that arrives while
one is in flight is coalesced into a single follow-up run.
"""

import asyncio
import json
import logging
import random
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from pydantic import ValidationError

from rewardlink.db.models import (
    ConnectionState,
    PostConnection,
    from_iso,
    utc_now,
)
from rewardlink.db.repositories import ConnectionRepository
from rewardlink.errors.domain import EntityNotFound
from rewardlink.services.backend_client import BackendClient, BackendError
from rewardlink.services.chat_gateway import ChatGateway, ChatGatewayError, NotFound
from rewardlink.services.entities import (
    Projection,
    diff_projection,
    dump_entity,
    is_terminal,
    parse_entity,
)
from rewardlink.services.message_builder import (
    build_end_notice,
    build_post,
    build_terminal_post,
)
from rewardlink.services.metrics import (
    RECONCILE_EDITS,
    RECONCILE_FAILING_CONNECTIONS,
    RECONCILE_FAILURE,
    RECONCILE_MAX_LAG_SECONDS,
    RECONCILE_SUCCESS,
    MetricsRegistry,
)
from rewardlink.utils.redaction import sanitize_error_message

logger = logging.getLogger(__name__)


@dataclass
class ReconcilerSettings:
    """Cadence and back-off knobs.

    Attributes:
        interval: Mean seconds between sweeps.
        jitter: Fractional jitter applied to each interval (0.1 = ±10 %).
        concurrency: Connections reconciled at once during a sweep.
        staleness_max: Seconds an active projection may lag (R_max).
        failure_cap: Seconds of sustained failure before operator alerting.
        backoff_base: First retry delay after a failure, in seconds.
        backoff_cap: Largest retry delay, in seconds.
        archive_grace: Seconds an ended connection is kept before archiving.
    """

    interval: float = 30.0
    jitter: float = 0.1
    concurrency: int = 8
    staleness_max: float = 60.0
    failure_cap: float = 3600.0
    backoff_base: float = 30.0
    backoff_cap: float = 600.0
    archive_grace: float = 24 * 3600.0


@dataclass
class ReconcileResult:
    connection_id: str
    status: str
    changed: list[str] = field(default_factory=list)
    error: str | None = None


@dataclass
class SweepReport:
    reconciled: int = 0
    failed: int = 0
    archived: int = 0
    results: list[ReconcileResult] = field(default_factory=list)


def backoff_delay(failures: int, base: float = 30.0, cap: float = 600.0) -> float:
    """min(base * 2^(failures-1), cap) seconds."""
    return min(base * (2 ** max(failures - 1, 0)), cap)


class Reconciler:
    """Periodic and event-driven projection sync."""

    def __init__(
        self,
        connections: ConnectionRepository,
        backend: BackendClient,
        gateway: ChatGateway,
        metrics: MetricsRegistry | None = None,
        settings: ReconcilerSettings | None = None,
        site_url: str | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._connections = connections
        self._backend = backend
        self._gateway = gateway
        self._metrics = metrics or MetricsRegistry()
        self.settings = settings or ReconcilerSettings()
        self._site_url = site_url
        self._clock = clock
        self._task: asyncio.Task[None] | None = None
        self._inflight: set[str] = set()
        self._followups: set[str] = set()
        self._priority: set[asyncio.Task[ReconcileResult]] = set()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the sweep loop. Idempotent."""
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="rewardlink-reconciler")
        logger.info(
            "Reconciler started (interval=%.0fs, concurrency=%d)",
            self.settings.interval, self.settings.concurrency,
        )

    async def stop(self) -> None:
        """Cancel the sweep loop and any in-flight priority reconciles."""
        tasks = list(self._priority)
        if self._task is not None:
            tasks.append(self._task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._task = None
        logger.info("Reconciler stopped")

    def _next_interval(self) -> float:
        jitter = self.settings.jitter
        return self.settings.interval * random.uniform(1 - jitter, 1 + jitter)

    async def _run(self) -> None:
        while True:
            try:
                await self.sweep()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Reconciler sweep failed")
            await asyncio.sleep(self._next_interval())

    async def sweep(self) -> SweepReport:
        """Reconcile every due connection, archive expired ones, update gauges."""
        now = self._clock()
        due = await self._connections.list_due(now)
        semaphore = asyncio.Semaphore(self.settings.concurrency)

        async def _one(connection: PostConnection) -> ReconcileResult:
            async with semaphore:
                return await self.reconcile(connection.id)

        report = SweepReport()
        report.results = list(await asyncio.gather(*(_one(c) for c in due)))
        for result in report.results:
            if result.status == "failed":
                report.failed += 1
            elif result.status == "archived":
                report.archived += 1
            elif result.status not in ("skipped", "coalesced"):
                report.reconciled += 1

        report.archived += await self._archive_expired(self._clock())
        await self._update_gauges(self._clock())
        if due:
            logger.debug(
                "Sweep: %d due, %d reconciled, %d failed, %d archived",
                len(due), report.reconciled, report.failed, report.archived,
            )
        return report

    async def _archive_expired(self, now: datetime) -> int:
        grace = timedelta(seconds=self.settings.archive_grace)
        archived = 0
        for connection in await self._connections.list_by_state(ConnectionState.ended):
            ended_at = from_iso(connection.ended_at)
            if ended_at is not None and ended_at + grace <= now:
                if await self._connections.archive(connection.id, "ended-grace-elapsed"):
                    archived += 1
        return archived

    async def _update_gauges(self, now: datetime) -> None:
        open_connections = await self._connections.list_by_state(
            ConnectionState.active, ConnectionState.ended
        )
        max_lag = 0.0
        failing = 0
        cap = timedelta(seconds=self.settings.failure_cap)
        for connection in open_connections:
            if connection.state == ConnectionState.active.value:
                reconciled_at = from_iso(connection.last_reconciled_at) or from_iso(
                    connection.created_at
                )
                if reconciled_at is not None:
                    max_lag = max(max_lag, (now - reconciled_at).total_seconds())
            failing_since = from_iso(connection.failing_since)
            if failing_since is not None and now - failing_since >= cap:
                failing += 1
        self._metrics.set_gauge(RECONCILE_MAX_LAG_SECONDS, max_lag)
        self._metrics.set_gauge(RECONCILE_FAILING_CONNECTIONS, failing)
        if max_lag > self.settings.staleness_max:
            logger.warning("Projection lag %.0fs exceeds %.0fs", max_lag, self.settings.staleness_max)

    async def request(self, connection_id: str) -> None:
        """Priority path: reconcile soon, without waiting for the result."""
        task = asyncio.create_task(self.reconcile(connection_id))
        self._priority.add(task)
        task.add_done_callback(self._priority.discard)

    async def request_entity(self, entity_id: str) -> int:
        """Priority-reconcile every open connection reflecting an entity."""
        connections = await self._connections.list_open_for_entity(entity_id)
        for connection in connections:
            await self.request(connection.id)
        return len(connections)

    async def drain(self) -> None:
        """Wait for every scheduled priority reconcile."""
        while self._priority:
            await asyncio.gather(*list(self._priority), return_exceptions=True)

    async def reconcile(self, connection_id: str) -> ReconcileResult:
        """Reconcile one connection, coalescing concurrent requests."""
        if connection_id in self._inflight:
            self._followups.add(connection_id)
            return ReconcileResult(connection_id, "coalesced")
        self._inflight.add(connection_id)
        try:
            while True:
                try:
                    result = await self._reconcile_once(connection_id)
                except Exception as e:
                    logger.exception("Reconcile of connection %s crashed", connection_id)
                    result = await self._record_failure(connection_id, e)
                if connection_id not in self._followups:
                    return result
                self._followups.discard(connection_id)
        finally:
            self._inflight.discard(connection_id)

    def _parse_projection(self, connection: PostConnection) -> Projection | None:
        try:
            return parse_entity(connection.kind, json.loads(connection.projection_json))
        except (ValueError, ValidationError):
            logger.warning("Stored projection of connection %s is unreadable", connection.id)
            return None

    async def _reconcile_once(self, connection_id: str) -> ReconcileResult:
        connection = await self._connections.get(connection_id)
        if connection is None or connection.state == ConnectionState.archived.value:
            return ReconcileResult(connection_id, "skipped")
        now = self._clock()
        old = self._parse_projection(connection)

        try:
            payload = await self._backend.fetch_entity(connection.kind, connection.entity_id)
        except EntityNotFound:
            return await self._archive_removed(connection, old)
        except BackendError as e:
            return await self._record_failure(connection_id, e)

        entity = parse_entity(connection.kind, payload)
        changed = diff_projection(old, entity)
        terminal = is_terminal(entity, now)
        was_active = connection.state == ConnectionState.active.value

        try:
            if terminal and (was_active or changed):
                await self._gateway.edit_message(
                    connection.channel_id,
                    connection.message_id,
                    build_terminal_post(connection.id, connection.kind, entity, site_url=self._site_url),
                )
                self._metrics.inc(RECONCILE_EDITS)
            elif changed:
                await self._gateway.edit_message(
                    connection.channel_id,
                    connection.message_id,
                    build_post(connection.id, connection.kind, entity, now, site_url=self._site_url),
                )
                self._metrics.inc(RECONCILE_EDITS)
            else:
                await self._gateway.ensure_message(connection.channel_id, connection.message_id)
        except NotFound:
            await self._connections.archive(connection.id, "message-deleted")
            logger.info("Message for connection %s is gone; archived", connection.id)
            return ReconcileResult(connection_id, "archived", changed)
        except ChatGatewayError as e:
            return await self._record_failure(connection_id, e)

        status = "updated" if changed else "unchanged"
        if terminal and was_active:
            await self._connections.mark_ended(connection.id, now)
            logger.info("Connection %s ended (entity %s)", connection.id, connection.entity_id)
            status = "ended"
        if terminal and connection.end_notified_at is None:
            await self._send_end_notice(connection, entity, now)

        next_at = now + timedelta(seconds=self._next_interval())
        if changed:
            await self._connections.update_projection(connection.id, dump_entity(entity), now, next_at)
        else:
            await self._connections.mark_reconciled(connection.id, now, next_at)
        self._metrics.inc(RECONCILE_SUCCESS)
        return ReconcileResult(connection_id, status, changed)

    async def _send_end_notice(
        self, connection: PostConnection, entity: Projection, now: datetime
    ) -> None:
        """Post the one-shot end notice; the claim is released if posting fails."""
        if not await self._connections.mark_end_notified(connection.id, now):
            return
        try:
            await self._gateway.send_notice(
                connection.channel_id, build_end_notice(connection.kind, entity)
            )
        except ChatGatewayError as e:
            logger.warning("End notice for connection %s failed: %s", connection.id, e)
            await self._connections.clear_end_notified(connection.id)
            return
        logger.info("Posted end notice for connection %s", connection.id)

    async def _archive_removed(
        self, connection: PostConnection, old: Projection | None
    ) -> ReconcileResult:
        await self._connections.archive(connection.id, "entity-removed")
        logger.info(
            "Entity %s no longer exists; archived connection %s",
            connection.entity_id, connection.id,
        )
        if old is not None:
            try:
                await self._gateway.edit_message(
                    connection.channel_id,
                    connection.message_id,
                    build_terminal_post(
                        connection.id, connection.kind, old, site_url=self._site_url, archived=True
                    ),
                )
            except ChatGatewayError as e:
                logger.warning("Terminal edit for removed entity failed: %s", e)
        return ReconcileResult(connection.id, "archived")

    async def _record_failure(self, connection_id: str, error: Exception) -> ReconcileResult:
        now = self._clock()
        connection = await self._connections.get(connection_id)
        failures = (connection.failure_count if connection else 0) + 1
        delay = backoff_delay(failures, self.settings.backoff_base, self.settings.backoff_cap)
        message = sanitize_error_message(str(error)) or type(error).__name__
        updated = await self._connections.record_failure(
            connection_id, message, now, now + timedelta(seconds=delay)
        )
        self._metrics.inc(RECONCILE_FAILURE)
        failing_since = from_iso(updated.failing_since) if updated else None
        if failing_since is not None and (now - failing_since).total_seconds() >= self.settings.failure_cap:
            logger.error(
                "Connection %s failing since %s (%d failures): %s",
                connection_id, updated.failing_since, failures, message,
            )
        else:
            logger.warning(
                "Reconcile of connection %s failed (%d), retry in %.0fs: %s",
                connection_id, failures, delay, message,
            )
        return ReconcileResult(connection_id, "failed", error=message)
