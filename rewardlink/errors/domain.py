"""Typed domain exceptions raised by the Interactive-Post Engine.

These exceptions give callers (slash commands, the CLI, the webhook API)
a stable contract instead of string matching. Each carries the registry
code used to render it for users.

Usage:
    # In service layer
    raise EntityNotFound("allowlist", allowlist_id)

    # In a command handler
    try:
        await engine.bind(...)
    except DomainError as e:
        await responder.followup(e.user_message(), ephemeral=True)
"""

from rewardlink.errors.registry import render_message


class DomainError(Exception):
    """Base exception for all domain errors."""

    code = "E-4001"

    def __init__(self, message: str) -> None:
        super().__init__(message)

    def user_message(self) -> str:
        """Message safe to show to chat users."""
        return render_message(self.code, detail=str(self))


class InputValidationError(DomainError):
    """Operator input failed validation."""

    code = "E-1001"


class NotAuthorized(DomainError):
    """Caller may not perform the operation."""

    code = "E-1002"


class AlreadyBound(DomainError):
    """A non-archived connection already exists for (guild, entity)."""

    code = "E-1003"

    def __init__(self, guild_id: str, entity_id: str, kind: str = "entity") -> None:
        super().__init__(f"{kind} '{entity_id}' is already bound in guild {guild_id}")
        self.guild_id = guild_id
        self.entity_id = entity_id
        self.kind = kind

    def user_message(self) -> str:
        return render_message(self.code, kind=self.kind)


class ConnectionNotFound(DomainError):
    """Post connection does not exist."""

    code = "E-1004"

    def __init__(self, connection_id: str) -> None:
        super().__init__(f"Connection '{connection_id}' not found")
        self.connection_id = connection_id

    def user_message(self) -> str:
        return render_message(self.code, connection_id=self.connection_id)


class EntityNotFound(DomainError):
    """Remote task/allowlist does not exist."""

    code = "E-3001"

    def __init__(self, kind: str, entity_id: str) -> None:
        super().__init__(f"{kind} '{entity_id}' not found")
        self.kind = kind
        self.entity_id = entity_id

    def user_message(self) -> str:
        return render_message(self.code, kind=self.kind.capitalize(), entity_id=self.entity_id)


class ChatPostFailed(DomainError):
    """Initial message could not be posted to the chat channel."""

    code = "E-5001"

    def __init__(self, channel_id: str, reason: str) -> None:
        super().__init__(f"Could not post to channel {channel_id}: {reason}")
        self.channel_id = channel_id
        self.reason = reason

    def user_message(self) -> str:
        return render_message(self.code, channel_id=self.channel_id, detail=self.reason)


class InvariantViolation(DomainError):
    """A store-level invariant was found broken. Escalated to operators."""

    code = "E-4002"


class DuplicateAcceptedEntry(InvariantViolation):
    """Second accepted attempt for one (connection, user) pair."""

    def __init__(self, connection_id: str, chat_user_id: str) -> None:
        super().__init__(
            f"Duplicate accepted entry for connection {connection_id} user {chat_user_id}"
        )
        self.connection_id = connection_id
        self.chat_user_id = chat_user_id
