"""Short-lived key-value store backed by the shared database.

Every key carries an expiry. Expired rows are treated as absent by every
read and write path, so correctness never depends on the retention
sweeper having run; ``purge_expired`` only reclaims space.

Key namespaces in use:
    lock:{connection_id}:{chat_user_id}   entry pipeline serialization
    rl:{kind}:{subject}                   rate-limit windows
    session:{...}                         account-linking sessions
"""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rewardlink.db.models import KeyValueEntry, from_iso, to_iso, utc_now

logger = logging.getLogger(__name__)


class KeyValueStore:
    """TTL key-value store over the ``kv_entries`` table."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._sessions = session_factory
        self._clock = clock

    async def get(self, key: str) -> str | None:
        """Return the live value for a key, or None if absent or expired."""
        async with self._sessions() as session:
            row = await session.get(KeyValueEntry, key)
            if row is None or row.expires_at <= to_iso(self._clock()):
                return None
            return row.value

    async def set(self, key: str, value: str, ttl: timedelta) -> None:
        """Unconditionally write a value with a fresh expiry."""
        expires_at = to_iso(self._clock() + ttl)
        async with self._sessions() as session:
            row = await session.get(KeyValueEntry, key)
            if row is None:
                session.add(KeyValueEntry(key=key, value=value, expires_at=expires_at))
            else:
                row.value = value
                row.expires_at = expires_at
            try:
                await session.commit()
            except IntegrityError:
                # Lost an insert race; the other writer's row is overwritten.
                await session.rollback()
                row = await session.get(KeyValueEntry, key)
                if row is not None:
                    row.value = value
                    row.expires_at = expires_at
                    await session.commit()

    async def add(self, key: str, value: str, ttl: timedelta) -> bool:
        """Set a key only if no live value exists.

        Returns:
            True if this call created the key, False if a live value was
            already present.
        """
        now_iso = to_iso(self._clock())
        async with self._sessions() as session:
            await session.execute(
                delete(KeyValueEntry).where(
                    KeyValueEntry.key == key,
                    KeyValueEntry.expires_at <= now_iso,
                )
            )
            session.add(
                KeyValueEntry(key=key, value=value, expires_at=to_iso(self._clock() + ttl))
            )
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
            return True

    async def delete(self, key: str, expected_value: str | None = None) -> bool:
        """Delete a key, optionally only when it still holds ``expected_value``.

        Returns:
            True if a row was removed.
        """
        stmt = delete(KeyValueEntry).where(KeyValueEntry.key == key)
        if expected_value is not None:
            stmt = stmt.where(KeyValueEntry.value == expected_value)
        async with self._sessions() as session:
            result = await session.execute(stmt)
            await session.commit()
            return (result.rowcount or 0) > 0

    async def expires_at(self, key: str) -> datetime | None:
        """Expiry of a live key, or None."""
        async with self._sessions() as session:
            row = await session.execute(
                select(KeyValueEntry.expires_at).where(KeyValueEntry.key == key)
            )
            value = row.scalar_one_or_none()
        if value is None or value <= to_iso(self._clock()):
            return None
        return from_iso(value)

    async def purge_expired(self) -> int:
        """Delete every expired row. Returns the number removed."""
        stmt = delete(KeyValueEntry).where(KeyValueEntry.expires_at <= to_iso(self._clock()))
        async with self._sessions() as session:
            result = await session.execute(stmt)
            await session.commit()
            removed = result.rowcount or 0
        if removed:
            logger.debug("Purged %d expired kv entries", removed)
        return removed
