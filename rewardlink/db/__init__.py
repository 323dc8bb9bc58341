"""Database module for RewardLink state management and persistence."""

from rewardlink.db.connection import (
    close_db,
    create_engine_from_url,
    create_session_factory,
    init_db,
)
from rewardlink.db.models import (
    AccountLink,
    Base,
    CommunityLink,
    ConnectionKind,
    ConnectionState,
    EntryAttempt,
    EntryOutcome,
    EntryStage,
    InteractionLog,
    KeyValueEntry,
    PostConnection,
)

__all__ = [
    # Models
    "Base",
    "PostConnection",
    "AccountLink",
    "EntryAttempt",
    "InteractionLog",
    "CommunityLink",
    "KeyValueEntry",
    # Enums
    "ConnectionKind",
    "ConnectionState",
    "EntryOutcome",
    "EntryStage",
    # Connection
    "create_engine_from_url",
    "create_session_factory",
    "init_db",
    "close_db",
]
