"""Explicit dependency wiring for the bot process and CLI commands.

Nothing here is global: ``build_runtime`` returns every collaborator in
one ``Runtime`` object, and ``Runtime.aclose`` releases them.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta

from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from rewardlink.api.main import create_app
from rewardlink.bot.client import RewardLinkBot
from rewardlink.cli.config import RewardLinkConfig
from rewardlink.db.connection import (
    close_db,
    create_engine_from_url,
    create_session_factory,
    init_db,
)
from rewardlink.db.kv_store import KeyValueStore
from rewardlink.db.repositories import (
    AccountLinkRepository,
    CommunityLinkRepository,
    ConnectionRepository,
    EntryAttemptRepository,
    InteractionLogRepository,
)
from rewardlink.services.backend_client import BackendClient
from rewardlink.services.chat_gateway import ChatGateway
from rewardlink.services.engine import InteractivePostEngine
from rewardlink.services.entry_pipeline import EntryPipeline
from rewardlink.services.locks import DistributedLock
from rewardlink.services.metrics import MetricsRegistry
from rewardlink.services.rate_limit import RateLimiter
from rewardlink.services.reconciler import Reconciler, ReconcilerSettings
from rewardlink.services.retention import RetentionSweeper
from rewardlink.services.verifiers import VerifierRegistry

logger = logging.getLogger(__name__)


@dataclass
class Storage:
    """Database engines and repositories."""

    engine: AsyncEngine
    kv_engine: AsyncEngine
    sessions: async_sessionmaker[AsyncSession]
    connections: ConnectionRepository
    account_links: AccountLinkRepository
    attempts: EntryAttemptRepository
    interaction_logs: InteractionLogRepository
    community_links: CommunityLinkRepository
    kv: KeyValueStore

    async def init(self) -> None:
        await init_db(self.engine)
        if self.kv_engine is not self.engine:
            await init_db(self.kv_engine)

    async def aclose(self) -> None:
        if self.kv_engine is not self.engine:
            await close_db(self.kv_engine)
        await close_db(self.engine)


@dataclass
class Runtime:
    config: RewardLinkConfig
    storage: Storage
    metrics: MetricsRegistry
    backend: BackendClient
    bot: RewardLinkBot
    gateway: ChatGateway
    pipeline: EntryPipeline
    reconciler: Reconciler
    retention: RetentionSweeper
    engine: InteractivePostEngine
    app: FastAPI

    async def aclose(self) -> None:
        await self.engine.stop()
        await self.backend.aclose()
        await self.storage.aclose()


def build_storage(config: RewardLinkConfig) -> Storage:
    engine = create_engine_from_url(config.storage.database_url)
    kv_engine = (
        engine
        if config.kv_url == config.storage.database_url
        else create_engine_from_url(config.kv_url)
    )
    sessions = create_session_factory(engine)
    retention = config.retention
    return Storage(
        engine=engine,
        kv_engine=kv_engine,
        sessions=sessions,
        connections=ConnectionRepository(sessions),
        account_links=AccountLinkRepository(sessions),
        attempts=EntryAttemptRepository(sessions, retention=timedelta(days=retention.attempt_days)),
        interaction_logs=InteractionLogRepository(
            sessions, retention=timedelta(days=retention.interaction_log_days)
        ),
        community_links=CommunityLinkRepository(sessions),
        kv=KeyValueStore(create_session_factory(kv_engine)),
    )


def build_backend(config: RewardLinkConfig) -> BackendClient:
    backend = config.backend
    return BackendClient(
        base_url=backend.base_url,
        api_key=backend.api_key,
        timeout=backend.timeout,
        max_retries=backend.max_retries,
        base_delay=backend.base_delay,
    )


def reconciler_settings(config: RewardLinkConfig) -> ReconcilerSettings:
    rc = config.reconciler
    return ReconcilerSettings(
        interval=rc.interval_seconds,
        jitter=rc.jitter,
        concurrency=rc.concurrency,
        staleness_max=rc.staleness_max_seconds,
        failure_cap=rc.failure_cap_seconds,
        backoff_base=rc.backoff_base_seconds,
        backoff_cap=rc.backoff_cap_seconds,
        archive_grace=rc.archive_grace_hours * 3600,
    )


def build_runtime(config: RewardLinkConfig, storage: Storage | None = None) -> Runtime:
    """Wire every component from configuration.

    Args:
        config: Validated configuration.
        storage: Pre-built storage (tests pass one over a temp database).

    Returns:
        Runtime with the engine attached to the bot but not yet started.
    """
    storage = storage or build_storage(config)
    metrics = MetricsRegistry()
    backend = build_backend(config)
    bot = RewardLinkBot(metrics=metrics, sync_guild_id=config.bot.sync_guild_id)
    gateway = ChatGateway(bot, metrics=metrics)

    reconciler = Reconciler(
        connections=storage.connections,
        backend=backend,
        gateway=gateway,
        metrics=metrics,
        settings=reconciler_settings(config),
        site_url=config.bot.site_url,
    )
    pipeline = EntryPipeline(
        connections=storage.connections,
        account_links=storage.account_links,
        attempts=storage.attempts,
        backend=backend,
        verifiers=VerifierRegistry.default(backend, gateway),
        rate_limiter=RateLimiter(
            storage.kv,
            max_attempts=config.rate_limit.max_attempts,
            window=timedelta(seconds=config.rate_limit.window_seconds),
        ),
        distributed_lock=DistributedLock(
            storage.kv, ttl=timedelta(seconds=config.kv.lock_ttl_seconds)
        ),
        metrics=metrics,
        request_refresh=reconciler.request,
        link_url=config.bot.link_url,
        budget_seconds=config.pipeline.budget_seconds,
    )
    retention = RetentionSweeper(
        storage.interaction_logs,
        storage.attempts,
        storage.kv,
        interval=config.retention.interval_seconds,
    )
    engine = InteractivePostEngine(
        connections=storage.connections,
        community_links=storage.community_links,
        interaction_logs=storage.interaction_logs,
        backend=backend,
        gateway=gateway,
        pipeline=pipeline,
        reconciler=reconciler,
        retention=retention,
        site_url=config.bot.site_url,
    )
    bot.attach(engine)
    app = create_app(engine, metrics, config.api.webhook_secret)
    logger.debug("Runtime wired (database=%s)", config.storage.database_url)
    return Runtime(
        config=config,
        storage=storage,
        metrics=metrics,
        backend=backend,
        bot=bot,
        gateway=gateway,
        pipeline=pipeline,
        reconciler=reconciler,
        retention=retention,
        engine=engine,
        app=app,
    )
