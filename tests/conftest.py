"""Root-level pytest fixtures for all tests.

Provides shared fixtures:
- Database fixtures (file-based SQLite over aiosqlite)
- Repositories and key-value store bound to a controllable clock
- A fake chat gateway and responder standing in for discord.py
- An AsyncMock backend client
- Pipeline, reconciler and engine wired over all of the above
"""

import os
import tempfile
from collections.abc import AsyncGenerator
from typing import Any
from unittest.mock import AsyncMock

import pytest

from rewardlink.db.connection import close_db, create_engine_from_url, create_session_factory, init_db
from rewardlink.db.kv_store import KeyValueStore
from rewardlink.db.repositories import (
    AccountLinkRepository,
    CommunityLinkRepository,
    ConnectionRepository,
    EntryAttemptRepository,
    InteractionLogRepository,
)
from rewardlink.services.backend_client import BackendClient, SubmissionResult
from rewardlink.services.engine import InteractivePostEngine
from rewardlink.services.entry_pipeline import EntryPipeline
from rewardlink.services.locks import DistributedLock
from rewardlink.services.metrics import MetricsRegistry
from rewardlink.services.rate_limit import RateLimiter
from rewardlink.services.reconciler import Reconciler
from rewardlink.services.verifiers import VerifierRegistry
from tests.helpers import FakeChatGateway, FakeResponder, MutableClock, task_payload


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
async def db_engine() -> AsyncGenerator[Any, None]:
    """File-based SQLite database with every table created.

    A file (not :memory:) so concurrent sessions see each other's writes.
    """
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    engine = create_engine_from_url(f"sqlite:///{path}")
    await init_db(engine)
    yield engine
    await close_db(engine)
    for suffix in ("", "-wal", "-shm"):
        if os.path.exists(path + suffix):
            os.unlink(path + suffix)


@pytest.fixture
def sessions(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
def connections(sessions, clock) -> ConnectionRepository:
    return ConnectionRepository(sessions, clock=clock)


@pytest.fixture
def account_links(sessions, clock) -> AccountLinkRepository:
    return AccountLinkRepository(sessions, clock=clock)


@pytest.fixture
def attempts(sessions, clock) -> EntryAttemptRepository:
    return EntryAttemptRepository(sessions, clock=clock)


@pytest.fixture
def interaction_logs(sessions, clock) -> InteractionLogRepository:
    return InteractionLogRepository(sessions, clock=clock)


@pytest.fixture
def community_links(sessions, clock) -> CommunityLinkRepository:
    return CommunityLinkRepository(sessions, clock=clock)


@pytest.fixture
def kv(sessions, clock) -> KeyValueStore:
    return KeyValueStore(sessions, clock=clock)


@pytest.fixture
def metrics() -> MetricsRegistry:
    return MetricsRegistry()


# ============================================================================
# Fakes
# ============================================================================


@pytest.fixture
def gateway() -> FakeChatGateway:
    return FakeChatGateway()


@pytest.fixture
def responder() -> FakeResponder:
    return FakeResponder()


@pytest.fixture
def backend() -> AsyncMock:
    """Backend client whose every call succeeds for task-1 by default."""
    client = AsyncMock(spec=BackendClient)
    client.fetch_entity.return_value = task_payload()
    client.fetch_user.return_value = {"_id": "remote-1", "level": 5}
    client.check_prior_entry.return_value = False
    client.submit_entry.return_value = SubmissionResult(status="accepted", data={"ok": True})
    client.verify_requirement.return_value = {"verified": True}
    client.fetch_analytics.return_value = {"completions": 3}
    client.notify_binding.return_value = None
    return client


# ============================================================================
# Engine Components
# ============================================================================


@pytest.fixture
def reconciler(connections, backend, gateway, metrics, clock) -> Reconciler:
    return Reconciler(connections, backend, gateway, metrics=metrics, clock=clock)


@pytest.fixture
def refresh() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def pipeline(
    connections, account_links, attempts, backend, gateway, kv, metrics, refresh, clock
) -> EntryPipeline:
    """Pipeline whose refresh hook is a recording AsyncMock."""
    return EntryPipeline(
        connections=connections,
        account_links=account_links,
        attempts=attempts,
        backend=backend,
        verifiers=VerifierRegistry.default(backend, gateway),
        rate_limiter=RateLimiter(kv, clock=clock),
        distributed_lock=DistributedLock(kv, poll_interval=0.01),
        metrics=metrics,
        request_refresh=refresh,
        link_url="https://rewards.example/link",
        clock=clock,
    )


@pytest.fixture
def engine(
    connections, community_links, interaction_logs, backend, gateway, pipeline, reconciler, clock
) -> InteractivePostEngine:
    return InteractivePostEngine(
        connections=connections,
        community_links=community_links,
        interaction_logs=interaction_logs,
        backend=backend,
        gateway=gateway,
        pipeline=pipeline,
        reconciler=reconciler,
        site_url="https://rewards.example",
        clock=clock,
    )
