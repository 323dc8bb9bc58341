"""SQLAlchemy ORM models for the RewardLink document store.

Defines the collections owned or read by the Interactive-Post Engine:
post connections, account links, entry attempts, interaction logs,
community links and the TTL-bounded key-value table. Uses SQLAlchemy 2.0
style with Mapped and mapped_column.

Timestamps are stored as ISO8601 UTC strings with microsecond precision so
that lexicographic order equals chronological order on every backend.
"""

from datetime import UTC, datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
)


def generate_uuid() -> str:
    """Generate a UUID4 string for primary keys."""
    return str(uuid4())


def utc_now() -> datetime:
    """Return the current aware UTC datetime."""
    return datetime.now(UTC)


def to_iso(value: datetime) -> str:
    """Serialize a datetime as a fixed-width ISO8601 UTC string.

    Naive datetimes are assumed to already be UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    """Parse an ISO8601 string produced by :func:`to_iso` (or the backend)."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def utc_now_iso() -> str:
    """Generate current UTC timestamp in ISO8601 format."""
    return to_iso(utc_now())


# Enums matching the database schema constraints


class ConnectionKind(str, Enum):
    """Kind of remote entity a post connection reflects."""

    task = "task"
    allowlist = "allowlist"


class ConnectionState(str, Enum):
    """Lifecycle of a post connection.

    Lifecycle: active -> ended -> archived
               active -> archived (unbind, lost message, entity removed)
    """

    active = "active"
    ended = "ended"
    archived = "archived"


class EntryStage(str, Enum):
    """Entry pipeline stages, in execution order."""

    ingress = "ingress"
    rate_limit = "rate_limit"
    identity = "identity"
    connection = "connection"
    prior_outcome = "prior_outcome"
    eligibility = "eligibility"
    verification = "verification"
    submission = "submission"
    post_actions = "post_actions"


class EntryOutcome(str, Enum):
    """Terminal outcome of one entry attempt."""

    accepted = "accepted"
    already_entered = "already_entered"
    rate_limited = "rate_limited"
    account_not_linked = "account_not_linked"
    connection_inactive = "connection_inactive"
    not_eligible = "not_eligible"
    requirements_unmet = "requirements_unmet"
    transport_error = "transport_error"
    timeout = "timeout"
    internal = "internal"

    @property
    def is_success(self) -> bool:
        """Whether the user should see this outcome as a success."""
        return self in (EntryOutcome.accepted, EntryOutcome.already_entered)


# SQLAlchemy Base


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# Models


class PostConnection(Base):
    """Durable binding of one remote entity to one posted chat message.

    Attributes:
        id: UUID primary key
        kind: Remote entity kind (task or allowlist)
        entity_id: Remote entity identifier
        guild_id: Chat server the message lives in
        channel_id: Channel the message was posted to
        message_id: Posted message identifier
        projection_json: Cached snapshot of the remote entity (JSON)
        state: active, ended or archived
        created_by: Chat user id of the operator who bound the entity
        created_at: ISO8601 timestamp of binding
        last_reconciled_at: Last successful reconciliation
        end_notified_at: Set once the end-of-life notice was posted
        ended_at: When the reconciler observed the terminal transition
        archived_at: When the connection was archived
        archive_reason: Why the connection was archived
        failure_count: Consecutive reconciliation failures
        failing_since: First failure of the current failure streak
        next_reconcile_at: Earliest time of the next periodic reconcile
        last_error: Last reconciliation error message
        entry_count: Accepted entries recorded through this post
        attempt_count: Entry attempts that reached a terminal outcome
    """

    __tablename__ = "post_connections"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    guild_id: Mapped[str] = mapped_column(String(32), nullable=False)
    channel_id: Mapped[str] = mapped_column(String(32), nullable=False)
    message_id: Mapped[str] = mapped_column(String(32), nullable=False)
    projection_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    state: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ConnectionState.active.value
    )
    created_by: Mapped[str] = mapped_column(String(32), nullable=False)

    # Timestamps
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    last_reconciled_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    end_notified_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    ended_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    archived_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    archive_reason: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # Reconciliation back-off
    failure_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    failing_since: Mapped[str | None] = mapped_column(String(50), nullable=True)
    next_reconcile_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Counters
    entry_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    attempt_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )

    __table_args__ = (
        Index(
            "uq_post_connections_open_entity",
            "guild_id",
            "entity_id",
            unique=True,
            sqlite_where=text("state != 'archived'"),
            postgresql_where=text("state != 'archived'"),
        ),
        Index("idx_post_connections_state", "state"),
        Index("idx_post_connections_entity", "entity_id"),
        Index("idx_post_connections_next_reconcile", "next_reconcile_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<PostConnection(id={self.id!r}, kind={self.kind!r}, "
            f"entity_id={self.entity_id!r}, state={self.state!r})>"
        )


class AccountLink(Base):
    """Link between a chat user and a remote (backend) user.

    Created by the OAuth subsystem. The engine only reads links and bumps
    ``last_used_at``; identity fields are never written here.
    """

    __tablename__ = "account_links"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    chat_user_id: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    remote_user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    verified_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    active: Mapped[bool] = mapped_column(nullable=False, default=True)
    last_used_at: Mapped[str | None] = mapped_column(String(50), nullable=True)

    __table_args__ = (Index("idx_account_links_remote_user", "remote_user_id"),)

    def __repr__(self) -> str:
        return (
            f"<AccountLink(chat_user_id={self.chat_user_id!r}, "
            f"remote_user_id={self.remote_user_id!r}, active={self.active!r})>"
        )


class EntryAttempt(Base):
    """One run of the entry pipeline for a (connection, user) pair.

    Accepted attempts are kept indefinitely (``expires_at`` is NULL);
    every other outcome is ephemeral and purged by the retention sweeper.
    """

    __tablename__ = "entry_attempts"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    connection_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("post_connections.id", ondelete="CASCADE"), nullable=False
    )
    chat_user_id: Mapped[str] = mapped_column(String(32), nullable=False)
    remote_user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    started_at: Mapped[str] = mapped_column(String(50), nullable=False)
    finished_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    stage: Mapped[str] = mapped_column(String(20), nullable=False)
    outcome: Mapped[str] = mapped_column(String(30), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    details_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[str | None] = mapped_column(String(50), nullable=True)

    __table_args__ = (
        Index(
            "uq_entry_attempts_accepted",
            "connection_id",
            "chat_user_id",
            unique=True,
            sqlite_where=text("outcome = 'accepted'"),
            postgresql_where=text("outcome = 'accepted'"),
        ),
        Index("idx_entry_attempts_connection_user", "connection_id", "chat_user_id"),
        Index("idx_entry_attempts_expires_at", "expires_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<EntryAttempt(id={self.id!r}, connection_id={self.connection_id!r}, "
            f"user={self.chat_user_id!r}, outcome={self.outcome!r})>"
        )


class InteractionLog(Base):
    """Record of one routed chat interaction (TTL-bounded)."""

    __tablename__ = "interaction_logs"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    interaction_id: Mapped[str] = mapped_column(String(32), nullable=False)
    interaction_type: Mapped[str] = mapped_column(String(20), nullable=False)
    chat_user_id: Mapped[str] = mapped_column(String(32), nullable=False)
    guild_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    channel_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    custom_id: Mapped[str] = mapped_column(String(100), nullable=False)
    outcome: Mapped[str | None] = mapped_column(String(30), nullable=True)
    latency_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    expires_at: Mapped[str] = mapped_column(String(50), nullable=False)

    __table_args__ = (
        Index("idx_interaction_logs_user", "chat_user_id"),
        Index("idx_interaction_logs_expires_at", "expires_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<InteractionLog(id={self.id!r}, custom_id={self.custom_id!r}, "
            f"outcome={self.outcome!r})>"
        )


class CommunityLink(Base):
    """Mapping of a chat server to a remote community.

    Written by the community-linking flow; read by the engine when binding.
    """

    __tablename__ = "community_links"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    guild_id: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    community_id: Mapped[str] = mapped_column(String(64), nullable=False)
    linked_by: Mapped[str] = mapped_column(String(32), nullable=False)
    linked_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    active: Mapped[bool] = mapped_column(nullable=False, default=True)

    def __repr__(self) -> str:
        return (
            f"<CommunityLink(guild_id={self.guild_id!r}, "
            f"community_id={self.community_id!r}, active={self.active!r})>"
        )


class KeyValueEntry(Base):
    """Short-lived key-value row. Every key carries an expiry."""

    __tablename__ = "kv_entries"

    key: Mapped[str] = mapped_column(String(200), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    expires_at: Mapped[str] = mapped_column(String(50), nullable=False)

    __table_args__ = (Index("idx_kv_entries_expires_at", "expires_at"),)

    def __repr__(self) -> str:
        return f"<KeyValueEntry(key={self.key!r}, expires_at={self.expires_at!r})>"
