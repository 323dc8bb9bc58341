"""Projection schema for remote Tasks and Allowlists.

These Pydantic models fix the shape of the entity snapshot cached on a
post connection. The backend payloads are camelCase and carry many
fields the engine does not use; unknown fields are ignored and a few
historical spellings (``status``/``state``, ``type``/``taskType``,
``socialTasks``/``requirements``) are accepted on input.

Example:
    entity = parse_entity(ConnectionKind.task, payload)
    changed = diff_projection(old_projection, entity)
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from rewardlink.db.models import ConnectionKind

# Remote states after which nobody can enter or complete
TERMINAL_STATES = frozenset({"ended", "expired", "completed", "cancelled"})

_MODEL_CONFIG = ConfigDict(
    alias_generator=to_camel,
    populate_by_name=True,
    extra="ignore",
)


class RequirementKind(str, Enum):
    """Kinds of sub-requirement a verifier can judge."""

    external_follow = "external_follow"
    chat_membership = "chat_membership"
    channel_membership = "channel_membership"
    custom = "custom"


# Remote task type -> requirement kind
TASK_TYPE_KINDS: dict[str, RequirementKind] = {
    "twitter_follow": RequirementKind.external_follow,
    "discord_join": RequirementKind.chat_membership,
    "telegram_join": RequirementKind.channel_membership,
    "custom": RequirementKind.custom,
}


def _params_from_verification(kind: RequirementKind, data: dict[str, Any]) -> dict[str, Any]:
    """Flatten the backend's nested ``verificationData`` into verifier params."""
    if kind == RequirementKind.external_follow:
        twitter = data.get("twitter") or {}
        return {"handle": twitter.get("username") or data.get("username")}
    if kind == RequirementKind.chat_membership:
        discord_data = data.get("discord") or {}
        role = discord_data.get("requiredRole")
        return {
            "guild_id": discord_data.get("serverId"),
            "guild_name": discord_data.get("serverName"),
            "roles": [role] if role else list(discord_data.get("roles") or []),
        }
    if kind == RequirementKind.channel_membership:
        telegram = data.get("telegram") or {}
        return {
            "channel_id": telegram.get("channelId"),
            "channel_name": telegram.get("channelName"),
        }
    custom = data.get("custom") or {}
    return {
        "verification_url": custom.get("verificationUrl"),
        "instructions": custom.get("instructions"),
    }


class Requirement(BaseModel):
    """One verifiable sub-requirement of an entity.

    Attributes:
        id: Remote id of the requirement (social task id for allowlists)
        kind: Verifier selector
        required: Whether failure blocks submission
        label: Human-readable label for embeds and reasons
        params: Kind-specific data (handle, guild_id, roles, channel_id, ...)
    """

    model_config = _MODEL_CONFIG

    id: str = Field(default="", validation_alias=AliasChoices("id", "taskId", "_id"))
    kind: str
    required: bool = True
    label: str = Field(default="", validation_alias=AliasChoices("label", "title", "name"))
    params: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _from_social_task(cls, data: Any) -> Any:
        """Accept the backend's social-task shape ``{type, verificationData}``."""
        if not isinstance(data, dict) or "kind" in data:
            return data
        task_type = data.get("type") or data.get("taskType")
        if task_type is None:
            return data
        kind = TASK_TYPE_KINDS.get(task_type)
        converted = dict(data)
        if kind is None:
            # Unknown remote types are kept so the registry can report them
            converted["kind"] = task_type
            return converted
        converted["kind"] = kind.value
        converted.setdefault(
            "params", _params_from_verification(kind, data.get("verificationData") or {})
        )
        return converted

    def describe(self) -> str:
        """Short label used in embeds and reason lists."""
        if self.label:
            return self.label
        if self.kind == RequirementKind.external_follow.value and self.params.get("handle"):
            return f"Follow @{self.params['handle']}"
        if self.kind == RequirementKind.chat_membership.value:
            return f"Join {self.params.get('guild_name') or 'the required server'}"
        if self.kind == RequirementKind.channel_membership.value:
            return f"Join {self.params.get('channel_name') or 'the required channel'}"
        return self.kind.replace("_", " ").capitalize()


class GateKind(str, Enum):
    """Per-user gates the backend advertises on an entity."""

    minimum_level = "minimum_level"
    required_tasks = "required_tasks"
    account_age_days = "account_age_days"


class Gate(BaseModel):
    """A static per-user eligibility gate."""

    model_config = _MODEL_CONFIG

    kind: str = Field(validation_alias=AliasChoices("kind", "type"))
    value: Any = None


class EntryPrice(BaseModel):
    """Allowlist entry price; amount 0 means free."""

    model_config = _MODEL_CONFIG

    amount: float = 0
    token_type: str | None = Field(
        default=None, validation_alias=AliasChoices("tokenType", "token_type", "token")
    )

    @property
    def is_free(self) -> bool:
        return self.amount == 0


class _EntityBase(BaseModel):
    model_config = _MODEL_CONFIG

    id: str = Field(validation_alias=AliasChoices("id", "_id"))
    community_id: str | None = None
    title: str = ""
    description: str = ""
    state: str = Field(default="active", validation_alias=AliasChoices("state", "status"))
    start_time: datetime | None = None
    end_time: datetime | None = None
    requirements: list[Requirement] = Field(
        default_factory=list,
        validation_alias=AliasChoices("requirements", "socialTasks"),
    )
    gates: list[Gate] = Field(default_factory=list)

    @field_validator("start_time", "end_time", mode="after")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    def required_requirements(self) -> list[Requirement]:
        return [r for r in self.requirements if r.required]

    def optional_requirements(self) -> list[Requirement]:
        return [r for r in self.requirements if not r.required]


class TaskEntity(_EntityBase):
    """Remote social task projection.

    A task with no explicit ``requirements`` list derives exactly one
    requirement from its ``task_type`` and ``verification`` data.
    """

    kind: Literal["task"] = "task"
    task_type: str = Field(default="custom", validation_alias=AliasChoices("taskType", "type"))
    points: int = 0
    completions_count: int = Field(
        default=0, validation_alias=AliasChoices("completionsCount", "completedBy")
    )
    max_completions: int | None = None
    verification: dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("verification", "verificationData")
    )

    @model_validator(mode="after")
    def _derive_requirement(self) -> "TaskEntity":
        if not self.requirements:
            kind = TASK_TYPE_KINDS.get(self.task_type, RequirementKind.custom)
            self.requirements = [
                Requirement(
                    id=self.id,
                    kind=kind.value,
                    label="",
                    params=_params_from_verification(kind, self.verification),
                )
            ]
        return self


class AllowlistEntity(_EntityBase):
    """Remote allowlist projection."""

    kind: Literal["allowlist"] = "allowlist"
    prize: str | None = None
    winner_count: int | Literal["everyone"] = 1
    entry_price: EntryPrice = Field(default_factory=EntryPrice)
    participants_count: int = Field(
        default=0, validation_alias=AliasChoices("participantsCount", "totalEntries")
    )
    max_entries: int | None = None
    profit_guarantee_pct: float | None = Field(
        default=None,
        validation_alias=AliasChoices("profitGuaranteePct", "profitGuaranteePercentage"),
    )

    @field_validator("entry_price", mode="before")
    @classmethod
    def _coerce_price(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, (int, float, str)):
            return {"amount": float(value or 0)}
        return value


Projection = TaskEntity | AllowlistEntity


class RemoteUser(BaseModel):
    """Backend user as seen by the eligibility checks."""

    model_config = _MODEL_CONFIG

    id: str = Field(validation_alias=AliasChoices("id", "_id"))
    level: int = 0
    created_at: datetime | None = None
    completed_task_ids: list[str] = Field(default_factory=list)
    wallet_address: str | None = None

    @field_validator("created_at", mode="after")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


def parse_entity(kind: ConnectionKind | str, payload: dict[str, Any]) -> Projection:
    """Validate a backend payload (or a stored projection) into a typed entity.

    Raises:
        pydantic.ValidationError: If required fields are missing.
    """
    if ConnectionKind(kind) == ConnectionKind.task:
        return TaskEntity.model_validate(payload)
    return AllowlistEntity.model_validate(payload)


def dump_entity(entity: Projection) -> dict[str, Any]:
    """Serialize an entity for storage in ``projection_json``."""
    return entity.model_dump(mode="json", by_alias=True)


# Fields compared by the reconciler, per kind
_COMMON_DIFF_FIELDS = ("state", "end_time")
_TASK_DIFF_FIELDS = ("completions_count", "points", "max_completions")
_ALLOWLIST_DIFF_FIELDS = (
    "participants_count",
    "winner_count",
    "prize",
    "max_entries",
    "entry_price",
)


def diff_projection(old: Projection | None, new: Projection) -> list[str]:
    """Return the names of stable fields that differ between two snapshots.

    A missing old snapshot reports every compared field as changed.
    """
    fields = _COMMON_DIFF_FIELDS + (
        _TASK_DIFF_FIELDS if isinstance(new, TaskEntity) else _ALLOWLIST_DIFF_FIELDS
    )
    if old is None or type(old) is not type(new):
        return list(fields)
    return [name for name in fields if getattr(old, name) != getattr(new, name)]


def is_terminal(entity: Projection, now: datetime) -> bool:
    """Whether the entity can no longer be entered or completed."""
    if entity.state.lower() in TERMINAL_STATES:
        return True
    return entity.end_time is not None and entity.end_time <= now


def is_capacity_reached(entity: Projection) -> bool:
    """Whether the entity has no room for another entry."""
    if isinstance(entity, AllowlistEntity):
        return entity.max_entries is not None and entity.participants_count >= entity.max_entries
    return (
        entity.max_completions is not None
        and entity.completions_count >= entity.max_completions
    )
