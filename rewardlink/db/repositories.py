"""Typed repositories over the RewardLink document store.

Every mutating method opens its own session and touches exactly one row.
There are no multi-row transactions: invariants that need atomicity
(one open connection per guild/entity, one accepted entry per
connection/user) are enforced by the partial unique indexes declared
on the models and surfaced here as domain exceptions.

Example:
    session_factory = create_session_factory(engine)
    connections = ConnectionRepository(session_factory)
    conn = await connections.get(connection_id)
"""

import json
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rewardlink.db.models import (
    AccountLink,
    CommunityLink,
    ConnectionState,
    EntryAttempt,
    EntryOutcome,
    InteractionLog,
    PostConnection,
    generate_uuid,
    to_iso,
    utc_now,
)
from rewardlink.errors.domain import AlreadyBound, DuplicateAcceptedEntry

logger = logging.getLogger(__name__)

SessionFactory = async_sessionmaker[AsyncSession]
Clock = Callable[[], datetime]

# Default retention for non-accepted entry attempts
DEFAULT_ATTEMPT_RETENTION = timedelta(days=7)

# Default retention for interaction logs
DEFAULT_INTERACTION_LOG_RETENTION = timedelta(days=30)


class ConnectionRepository:
    """Repository for post connections."""

    def __init__(self, session_factory: SessionFactory, clock: Clock = utc_now) -> None:
        self._sessions = session_factory
        self._clock = clock

    async def create(
        self,
        kind: str,
        entity_id: str,
        guild_id: str,
        channel_id: str,
        message_id: str,
        projection: dict[str, Any],
        created_by: str,
        next_reconcile_at: datetime | None = None,
        connection_id: str | None = None,
    ) -> PostConnection:
        """Persist a new active connection.

        Raises:
            AlreadyBound: If a non-archived connection exists for
                (guild_id, entity_id).
        """
        now = self._clock()
        row = PostConnection(
            id=connection_id or generate_uuid(),
            kind=kind,
            entity_id=entity_id,
            guild_id=guild_id,
            channel_id=channel_id,
            message_id=message_id,
            projection_json=json.dumps(projection, default=str),
            state=ConnectionState.active.value,
            created_by=created_by,
            created_at=to_iso(now),
            last_reconciled_at=to_iso(now),
            next_reconcile_at=to_iso(next_reconcile_at or now),
        )
        async with self._sessions() as session:
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise AlreadyBound(guild_id, entity_id, kind) from e
        return row

    async def get(self, connection_id: str) -> PostConnection | None:
        """Get a connection by id."""
        async with self._sessions() as session:
            return await session.get(PostConnection, connection_id)

    async def find_open(self, guild_id: str, entity_id: str) -> PostConnection | None:
        """Find the non-archived connection for (guild_id, entity_id), if any."""
        stmt = select(PostConnection).where(
            PostConnection.guild_id == guild_id,
            PostConnection.entity_id == entity_id,
            PostConnection.state != ConnectionState.archived.value,
        )
        async with self._sessions() as session:
            return (await session.execute(stmt)).scalars().first()

    async def list_by_state(self, *states: ConnectionState) -> list[PostConnection]:
        """List connections in any of the given states, oldest first."""
        stmt = (
            select(PostConnection)
            .where(PostConnection.state.in_([s.value for s in states]))
            .order_by(PostConnection.created_at)
        )
        async with self._sessions() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def list_open_for_entity(self, entity_id: str) -> list[PostConnection]:
        """List all non-archived connections reflecting a remote entity."""
        stmt = select(PostConnection).where(
            PostConnection.entity_id == entity_id,
            PostConnection.state != ConnectionState.archived.value,
        )
        async with self._sessions() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def list_due(self, now: datetime) -> list[PostConnection]:
        """List active/ended connections whose next reconcile time has passed."""
        now_iso = to_iso(now)
        stmt = (
            select(PostConnection)
            .where(
                PostConnection.state.in_(
                    [ConnectionState.active.value, ConnectionState.ended.value]
                ),
                (PostConnection.next_reconcile_at.is_(None))
                | (PostConnection.next_reconcile_at <= now_iso),
            )
            .order_by(PostConnection.next_reconcile_at)
        )
        async with self._sessions() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def update_projection(
        self,
        connection_id: str,
        projection: dict[str, Any],
        reconciled_at: datetime,
        next_reconcile_at: datetime,
    ) -> None:
        """Store a fresh projection and clear any failure streak."""
        await self._update(
            connection_id,
            projection_json=json.dumps(projection, default=str),
            last_reconciled_at=to_iso(reconciled_at),
            next_reconcile_at=to_iso(next_reconcile_at),
            failure_count=0,
            failing_since=None,
            last_error=None,
        )

    async def mark_reconciled(
        self,
        connection_id: str,
        reconciled_at: datetime,
        next_reconcile_at: datetime,
    ) -> None:
        """Record a successful reconcile that produced no projection change."""
        await self._update(
            connection_id,
            last_reconciled_at=to_iso(reconciled_at),
            next_reconcile_at=to_iso(next_reconcile_at),
            failure_count=0,
            failing_since=None,
            last_error=None,
        )

    async def mark_ended(self, connection_id: str, ended_at: datetime) -> bool:
        """Transition active -> ended. Returns False if it was not active."""
        stmt = (
            update(PostConnection)
            .where(
                PostConnection.id == connection_id,
                PostConnection.state == ConnectionState.active.value,
            )
            .values(state=ConnectionState.ended.value, ended_at=to_iso(ended_at))
        )
        return await self._execute_update(stmt)

    async def mark_end_notified(self, connection_id: str, notified_at: datetime) -> bool:
        """Claim the one-shot end-of-life notice.

        Returns True only for the caller that set ``end_notified_at``;
        every later caller gets False and must not post the notice.
        """
        stmt = (
            update(PostConnection)
            .where(
                PostConnection.id == connection_id,
                PostConnection.end_notified_at.is_(None),
            )
            .values(end_notified_at=to_iso(notified_at))
        )
        return await self._execute_update(stmt)

    async def clear_end_notified(self, connection_id: str) -> None:
        """Release a notice claim after the notice could not be posted."""
        await self._update(connection_id, end_notified_at=None)

    async def record_failure(
        self,
        connection_id: str,
        error: str,
        failed_at: datetime,
        next_reconcile_at: datetime,
    ) -> PostConnection | None:
        """Increment the failure streak and schedule the backed-off retry."""
        stmt = (
            update(PostConnection)
            .where(PostConnection.id == connection_id)
            .values(
                failure_count=PostConnection.failure_count + 1,
                failing_since=func.coalesce(
                    PostConnection.failing_since, to_iso(failed_at)
                ),
                next_reconcile_at=to_iso(next_reconcile_at),
                last_error=error[:1000],
            )
        )
        await self._execute_update(stmt)
        return await self.get(connection_id)

    async def archive(self, connection_id: str, reason: str) -> bool:
        """Archive a connection. Returns False if it was already archived."""
        stmt = (
            update(PostConnection)
            .where(
                PostConnection.id == connection_id,
                PostConnection.state != ConnectionState.archived.value,
            )
            .values(
                state=ConnectionState.archived.value,
                archived_at=to_iso(self._clock()),
                archive_reason=reason,
            )
        )
        archived = await self._execute_update(stmt)
        if archived:
            logger.info("Archived connection %s (reason=%s)", connection_id, reason)
        return archived

    async def increment_counters(self, connection_id: str, accepted: bool) -> None:
        """Bump the per-connection attempt (and entry) counters."""
        values: dict[str, Any] = {"attempt_count": PostConnection.attempt_count + 1}
        if accepted:
            values["entry_count"] = PostConnection.entry_count + 1
        stmt = update(PostConnection).where(PostConnection.id == connection_id).values(**values)
        await self._execute_update(stmt)

    async def _update(self, connection_id: str, **values: Any) -> bool:
        stmt = update(PostConnection).where(PostConnection.id == connection_id).values(**values)
        return await self._execute_update(stmt)

    async def _execute_update(self, stmt: Any) -> bool:
        async with self._sessions() as session:
            result = await session.execute(stmt)
            await session.commit()
            return (result.rowcount or 0) > 0


class AccountLinkRepository:
    """Repository for chat-user to remote-user account links."""

    def __init__(self, session_factory: SessionFactory, clock: Clock = utc_now) -> None:
        self._sessions = session_factory
        self._clock = clock

    async def get_active(self, chat_user_id: str) -> AccountLink | None:
        """Get the active link for a chat user, if any."""
        stmt = select(AccountLink).where(
            AccountLink.chat_user_id == chat_user_id,
            AccountLink.active.is_(True),
        )
        async with self._sessions() as session:
            return (await session.execute(stmt)).scalars().first()

    async def touch(self, chat_user_id: str) -> None:
        """Mark the link as used. The only write the engine performs on links."""
        stmt = (
            update(AccountLink)
            .where(AccountLink.chat_user_id == chat_user_id)
            .values(last_used_at=to_iso(self._clock()))
        )
        async with self._sessions() as session:
            await session.execute(stmt)
            await session.commit()

    async def upsert(self, chat_user_id: str, remote_user_id: str) -> AccountLink:
        """Create or replace the link for a chat user.

        Used by the account-linking flow. A chat user has at most one row,
        so re-linking replaces the remote user and reactivates the link.
        """
        async with self._sessions() as session:
            stmt = select(AccountLink).where(AccountLink.chat_user_id == chat_user_id)
            row = (await session.execute(stmt)).scalars().first()
            now_iso = to_iso(self._clock())
            if row is None:
                row = AccountLink(
                    chat_user_id=chat_user_id,
                    remote_user_id=remote_user_id,
                    verified_at=now_iso,
                    active=True,
                )
                session.add(row)
            else:
                row.remote_user_id = remote_user_id
                row.verified_at = now_iso
                row.active = True
            await session.commit()
            return row

    async def deactivate(self, chat_user_id: str) -> bool:
        """Deactivate a link on explicit unlink."""
        stmt = (
            update(AccountLink)
            .where(AccountLink.chat_user_id == chat_user_id, AccountLink.active.is_(True))
            .values(active=False)
        )
        async with self._sessions() as session:
            result = await session.execute(stmt)
            await session.commit()
            return (result.rowcount or 0) > 0


class EntryAttemptRepository:
    """Repository for entry attempts."""

    def __init__(
        self,
        session_factory: SessionFactory,
        clock: Clock = utc_now,
        retention: timedelta = DEFAULT_ATTEMPT_RETENTION,
    ) -> None:
        self._sessions = session_factory
        self._clock = clock
        self._retention = retention

    async def record(
        self,
        connection_id: str,
        chat_user_id: str,
        started_at: datetime,
        stage: str,
        outcome: EntryOutcome,
        reason: str | None = None,
        remote_user_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> EntryAttempt:
        """Persist a finished attempt.

        Accepted attempts never expire; all other outcomes get the
        configured retention.

        Raises:
            DuplicateAcceptedEntry: If an accepted attempt already exists
                for (connection_id, chat_user_id).
        """
        now = self._clock()
        row = EntryAttempt(
            connection_id=connection_id,
            chat_user_id=chat_user_id,
            remote_user_id=remote_user_id,
            started_at=to_iso(started_at),
            finished_at=to_iso(now),
            stage=stage,
            outcome=outcome.value,
            reason=reason,
            details_json=json.dumps(details, default=str) if details else None,
            expires_at=None if outcome == EntryOutcome.accepted else to_iso(now + self._retention),
        )
        async with self._sessions() as session:
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise DuplicateAcceptedEntry(connection_id, chat_user_id) from e
        return row

    async def find_accepted(self, connection_id: str, chat_user_id: str) -> EntryAttempt | None:
        """Get the accepted attempt for (connection, user), if any."""
        stmt = select(EntryAttempt).where(
            EntryAttempt.connection_id == connection_id,
            EntryAttempt.chat_user_id == chat_user_id,
            EntryAttempt.outcome == EntryOutcome.accepted.value,
        )
        async with self._sessions() as session:
            return (await session.execute(stmt)).scalars().first()

    async def count_accepted(self, connection_id: str) -> int:
        """Count accepted attempts recorded for a connection."""
        stmt = select(func.count()).select_from(EntryAttempt).where(
            EntryAttempt.connection_id == connection_id,
            EntryAttempt.outcome == EntryOutcome.accepted.value,
        )
        async with self._sessions() as session:
            return int((await session.execute(stmt)).scalar_one())

    async def list_for(self, connection_id: str, chat_user_id: str) -> list[EntryAttempt]:
        """List every stored attempt for (connection, user), oldest first."""
        stmt = (
            select(EntryAttempt)
            .where(
                EntryAttempt.connection_id == connection_id,
                EntryAttempt.chat_user_id == chat_user_id,
            )
            .order_by(EntryAttempt.finished_at)
        )
        async with self._sessions() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def purge_expired(self, now: datetime | None = None) -> int:
        """Delete ephemeral attempts past their expiry."""
        cutoff = to_iso(now or self._clock())
        stmt = delete(EntryAttempt).where(
            EntryAttempt.expires_at.is_not(None),
            EntryAttempt.expires_at <= cutoff,
        )
        async with self._sessions() as session:
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount or 0


class InteractionLogRepository:
    """Repository for routed interaction logs."""

    def __init__(
        self,
        session_factory: SessionFactory,
        clock: Clock = utc_now,
        retention: timedelta = DEFAULT_INTERACTION_LOG_RETENTION,
    ) -> None:
        self._sessions = session_factory
        self._clock = clock
        self._retention = retention

    async def record(
        self,
        interaction_id: str,
        interaction_type: str,
        chat_user_id: str,
        custom_id: str,
        guild_id: str | None = None,
        channel_id: str | None = None,
        outcome: str | None = None,
        latency_ms: int | None = None,
    ) -> InteractionLog:
        """Persist one interaction log row."""
        now = self._clock()
        row = InteractionLog(
            interaction_id=interaction_id,
            interaction_type=interaction_type,
            chat_user_id=chat_user_id,
            guild_id=guild_id,
            channel_id=channel_id,
            custom_id=custom_id[:100],
            outcome=outcome,
            latency_ms=latency_ms,
            created_at=to_iso(now),
            expires_at=to_iso(now + self._retention),
        )
        async with self._sessions() as session:
            session.add(row)
            await session.commit()
        return row

    async def recent(self, chat_user_id: str, limit: int = 20) -> list[InteractionLog]:
        """Most recent interactions for a user, newest first."""
        stmt = (
            select(InteractionLog)
            .where(InteractionLog.chat_user_id == chat_user_id)
            .order_by(InteractionLog.created_at.desc())
            .limit(limit)
        )
        async with self._sessions() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def purge_expired(self, now: datetime | None = None) -> int:
        """Delete logs past their expiry."""
        cutoff = to_iso(now or self._clock())
        stmt = delete(InteractionLog).where(InteractionLog.expires_at <= cutoff)
        async with self._sessions() as session:
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount or 0


class CommunityLinkRepository:
    """Repository for guild to community mappings."""

    def __init__(self, session_factory: SessionFactory, clock: Clock = utc_now) -> None:
        self._sessions = session_factory
        self._clock = clock

    async def get_active(self, guild_id: str) -> CommunityLink | None:
        """Get the active community link for a guild, if any."""
        stmt = select(CommunityLink).where(
            CommunityLink.guild_id == guild_id,
            CommunityLink.active.is_(True),
        )
        async with self._sessions() as session:
            return (await session.execute(stmt)).scalars().first()

    async def upsert(self, guild_id: str, community_id: str, linked_by: str) -> CommunityLink:
        """Create or replace the community link for a guild."""
        async with self._sessions() as session:
            stmt = select(CommunityLink).where(CommunityLink.guild_id == guild_id)
            row = (await session.execute(stmt)).scalars().first()
            now_iso = to_iso(self._clock())
            if row is None:
                row = CommunityLink(
                    guild_id=guild_id,
                    community_id=community_id,
                    linked_by=linked_by,
                    linked_at=now_iso,
                    active=True,
                )
                session.add(row)
            else:
                row.community_id = community_id
                row.linked_by = linked_by
                row.linked_at = now_iso
                row.active = True
            await session.commit()
            return row

    async def list_active(self) -> list[CommunityLink]:
        """List all active community links."""
        stmt = select(CommunityLink).where(CommunityLink.active.is_(True))
        async with self._sessions() as session:
            return list((await session.execute(stmt)).scalars().all())
