"""Platform-neutral message content for interactive posts.

Every function here is pure: it turns a projection (and sometimes an
entry result) into a ``MessageContent`` made of an embed dict and
control specs. Only the chat gateway turns these into platform objects.

Custom ids follow ``ipe:{action}:{connection_id}`` so that any instance
can route a click without in-memory state.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any

from rewardlink.db.models import ConnectionKind, EntryOutcome
from rewardlink.errors.registry import code_for_outcome, render_message
from rewardlink.services.entities import (
    AllowlistEntity,
    Projection,
    Requirement,
    RequirementKind,
    TaskEntity,
    is_terminal,
)

if TYPE_CHECKING:
    from rewardlink.services.entry_pipeline import EntryResult

CUSTOM_ID_PREFIX = "ipe"

COLORS = {
    "primary": 0x3B82F6,
    "success": 0x10B981,
    "warning": 0xF59E0B,
    "error": 0xEF4444,
    "info": 0x6366F1,
    "gray": 0x6B7280,
}

FOOTER = {"text": "Powered by RewardLink"}

TASK_TYPE_LABELS = {
    "twitter_follow": "Twitter Follow",
    "discord_join": "Discord Join",
    "telegram_join": "Telegram Join",
    "custom": "Custom Task",
}


class Action(str, Enum):
    """Control actions encoded in custom ids."""

    enter = "enter"
    view = "view"
    requirements = "requirements"
    proof = "proof"


@dataclass
class ButtonSpec:
    """A button. Link buttons carry ``url`` instead of ``custom_id``."""

    label: str
    custom_id: str | None = None
    url: str | None = None
    style: str = "primary"
    disabled: bool = False
    emoji: str | None = None


@dataclass
class SelectOptionSpec:
    label: str
    value: str
    description: str | None = None


@dataclass
class SelectSpec:
    custom_id: str
    placeholder: str
    options: list[SelectOptionSpec] = field(default_factory=list)
    disabled: bool = False


@dataclass
class TextInputSpec:
    custom_id: str
    label: str
    placeholder: str | None = None
    required: bool = True
    long: bool = False


@dataclass
class ModalSpec:
    custom_id: str
    title: str
    inputs: list[TextInputSpec] = field(default_factory=list)


@dataclass
class MessageContent:
    """Embed plus controls, ready for the chat gateway.

    Attributes:
        embed: Embed in the platform's dict form (title, description,
            color, fields, footer, timestamp, url).
        buttons: Buttons on the first action row.
        select: Optional select menu on its own row.
        text: Optional plain message text.
    """

    embed: dict[str, Any] | None = None
    buttons: list[ButtonSpec] = field(default_factory=list)
    select: SelectSpec | None = None
    text: str | None = None


def make_custom_id(action: Action, connection_id: str) -> str:
    return f"{CUSTOM_ID_PREFIX}:{action.value}:{connection_id}"


def parse_custom_id(custom_id: str) -> tuple[Action | None, str] | None:
    """Split an ``ipe:`` custom id.

    Returns:
        ``(action, connection_id)`` where ``action`` is None for an unknown
        action, or None if the id does not belong to the engine at all.
    """
    parts = custom_id.split(":", 2)
    if len(parts) != 3 or parts[0] != CUSTOM_ID_PREFIX or not parts[2]:
        return None
    try:
        return Action(parts[1]), parts[2]
    except ValueError:
        return None, parts[2]


def entity_url(site_url: str, kind: ConnectionKind | str, entity_id: str) -> str:
    path = "tasks" if ConnectionKind(kind) == ConnectionKind.task else "allowlist"
    return f"{site_url.rstrip('/')}/{path}/{entity_id}"


def _relative_time(value: datetime) -> str:
    return f"<t:{int(value.timestamp())}:R>"


def _status_text(state: str) -> str:
    emoji = "🟢" if state == "active" else "🔴"
    return f"{emoji} {state.capitalize()}"


def _requirement_lines(requirements: list[Requirement]) -> str:
    return "\n".join(f"• {r.describe()}" for r in requirements)


def _winner_text(entity: AllowlistEntity) -> str:
    if entity.winner_count == "everyone":
        return "Everyone Wins!"
    return f"{entity.winner_count} Winners"


def _price_text(entity: AllowlistEntity) -> str:
    price = entity.entry_price
    if price.is_free:
        return "Free"
    amount = f"{price.amount:g}"
    return f"{amount} {price.token_type}" if price.token_type else amount


def _allowlist_embed(entity: AllowlistEntity, color: int) -> dict[str, Any]:
    fields: list[dict[str, Any]] = []
    if entity.prize:
        fields.append({"name": "🏆 Prize", "value": entity.prize, "inline": True})
    fields.append({"name": "👥 Winners", "value": _winner_text(entity), "inline": True})
    fields.append({"name": "💰 Entry Price", "value": _price_text(entity), "inline": True})
    participants = str(entity.participants_count)
    if entity.max_entries:
        participants = f"{entity.participants_count}/{entity.max_entries}"
    fields.append({"name": "📊 Participants", "value": participants, "inline": True})
    if entity.end_time:
        fields.append({"name": "⏰ Ends", "value": _relative_time(entity.end_time), "inline": True})
    fields.append({"name": "📈 Status", "value": _status_text(entity.state), "inline": True})
    required = entity.required_requirements()
    if required:
        fields.append(
            {"name": "📋 Requirements", "value": _requirement_lines(required), "inline": False}
        )
    if entity.profit_guarantee_pct:
        fields.append({
            "name": "💎 Profit Guarantee",
            "value": f"{entity.profit_guarantee_pct:g}% of winner sales distributed to losers",
            "inline": False,
        })
    return {
        "title": f"🎫 {entity.title or 'Allowlist'}",
        "description": entity.description or "Enter for a chance to win!",
        "color": color,
        "fields": fields,
        "footer": FOOTER,
    }


def _task_embed(entity: TaskEntity, color: int) -> dict[str, Any]:
    fields: list[dict[str, Any]] = [
        {"name": "💰 Reward", "value": f"+{entity.points} points", "inline": True},
        {
            "name": "📝 Type",
            "value": TASK_TYPE_LABELS.get(entity.task_type, entity.task_type),
            "inline": True,
        },
    ]
    completions = str(entity.completions_count)
    if entity.max_completions:
        completions = f"{entity.completions_count}/{entity.max_completions}"
    fields.append({"name": "✅ Completed By", "value": f"{completions} users", "inline": True})
    if entity.end_time:
        fields.append({"name": "⏰ Ends", "value": _relative_time(entity.end_time), "inline": True})
    fields.append({"name": "📈 Status", "value": _status_text(entity.state), "inline": True})
    required = entity.required_requirements()
    if required:
        fields.append(
            {"name": "📋 Requirements", "value": _requirement_lines(required), "inline": False}
        )
    return {
        "title": f"🎯 {entity.title or 'Social Task'}",
        "description": entity.description or "Complete this task to earn points!",
        "color": color,
        "fields": fields,
        "footer": FOOTER,
    }


def _embed_for(entity: Projection, color: int) -> dict[str, Any]:
    if isinstance(entity, AllowlistEntity):
        return _allowlist_embed(entity, color)
    return _task_embed(entity, color)


def _controls(
    connection_id: str,
    kind: ConnectionKind | str,
    entity: Projection,
    site_url: str | None,
    disabled: bool,
) -> tuple[list[ButtonSpec], SelectSpec | None]:
    is_task = ConnectionKind(kind) == ConnectionKind.task
    buttons = [
        ButtonSpec(
            label="Complete Task" if is_task else "Enter Allowlist",
            custom_id=make_custom_id(Action.enter, connection_id),
            style="success",
            emoji="✅" if is_task else "🎫",
            disabled=disabled,
        ),
        ButtonSpec(
            label="View Details",
            custom_id=make_custom_id(Action.view, connection_id),
            style="secondary",
            emoji="👁️",
            disabled=disabled,
        ),
    ]
    if site_url:
        buttons.append(
            ButtonSpec(label="Open Website", url=entity_url(site_url, kind, entity.id), style="link")
        )
    select = None
    if entity.requirements:
        select = SelectSpec(
            custom_id=make_custom_id(Action.requirements, connection_id),
            placeholder="How do I complete a requirement?",
            options=[
                SelectOptionSpec(
                    label=r.describe()[:100],
                    value=str(index),
                    description="Required" if r.required else "Optional",
                )
                for index, r in enumerate(entity.requirements[:25])
            ],
            disabled=disabled,
        )
    return buttons, select


def build_post(
    connection_id: str,
    kind: ConnectionKind | str,
    entity: Projection,
    now: datetime,
    site_url: str | None = None,
) -> MessageContent:
    """Build the live interactive post for an entity.

    Entry controls are disabled when the entity is already terminal.
    """
    if is_terminal(entity, now):
        return build_terminal_post(connection_id, kind, entity, site_url=site_url)
    embed = _embed_for(entity, COLORS["success"] if isinstance(entity, AllowlistEntity) else COLORS["primary"])
    embed["timestamp"] = now.isoformat()
    buttons, select = _controls(connection_id, kind, entity, site_url, disabled=False)
    return MessageContent(embed=embed, buttons=buttons, select=select)


def build_terminal_post(
    connection_id: str,
    kind: ConnectionKind | str,
    entity: Projection,
    site_url: str | None = None,
    archived: bool = False,
) -> MessageContent:
    """Build the final form of a post: same facts, every control disabled."""
    embed = _embed_for(entity, COLORS["gray"])
    if archived:
        embed["footer"] = {"text": "This post is no longer connected · Powered by RewardLink"}
    else:
        for item in embed["fields"]:
            if item["name"] == "📈 Status" and entity.state == "active":
                item["value"] = _status_text("ended")
    buttons, select = _controls(connection_id, kind, entity, site_url, disabled=True)
    return MessageContent(embed=embed, buttons=buttons, select=select)


def build_end_notice(kind: ConnectionKind | str, entity: Projection) -> MessageContent:
    """One-shot channel notice posted when an entity ends."""
    if isinstance(entity, AllowlistEntity):
        embed = {
            "title": "⏰ Allowlist Ended",
            "description": f"**{entity.title}** has ended. Winners will be announced soon!",
            "color": COLORS["warning"],
            "fields": [
                {
                    "name": "📊 Total Participants",
                    "value": str(entity.participants_count),
                    "inline": True,
                },
                {"name": "👥 Winners", "value": _winner_text(entity), "inline": True},
            ],
            "footer": FOOTER,
        }
    else:
        embed = {
            "title": "⏰ Task Ended",
            "description": f"**{entity.title}** is no longer accepting completions.",
            "color": COLORS["warning"],
            "fields": [
                {
                    "name": "✅ Completed By",
                    "value": f"{entity.completions_count} users",
                    "inline": True,
                },
                {"name": "💰 Reward", "value": f"+{entity.points} points", "inline": True},
            ],
            "footer": FOOTER,
        }
    return MessageContent(embed=embed)


def requirement_guidance(requirement: Requirement) -> str:
    """How-to text for one requirement, shown from the select menu."""
    params = requirement.params
    if requirement.kind == RequirementKind.external_follow.value:
        handle = params.get("handle")
        return f"Follow @{handle} on Twitter, then press the entry button again." if handle else (
            "Follow the required account, then press the entry button again."
        )
    if requirement.kind == RequirementKind.chat_membership.value:
        text = f"Join the Discord server {params.get('guild_name') or 'listed on the post'}."
        if params.get("roles"):
            text += f" You also need the role: {', '.join(str(r) for r in params['roles'])}."
        return text
    if requirement.kind == RequirementKind.channel_membership.value:
        return f"Join the Telegram channel {params.get('channel_name') or ''}".rstrip() + "."
    if requirement.kind == RequirementKind.custom.value:
        text = params.get("instructions") or "Complete the task and submit your proof."
        if params.get("verification_url"):
            text += f"\n{params['verification_url']}"
        return text
    return "This requirement cannot be checked by the bot yet."


def build_details(
    kind: ConnectionKind | str,
    entity: Projection,
    analytics: dict[str, Any] | None = None,
) -> MessageContent:
    """Ephemeral detail view for the View Details button."""
    embed = _embed_for(entity, COLORS["info"])
    embed["title"] = f"ℹ️ {entity.title or ConnectionKind(kind).value.capitalize()}"
    if entity.requirements:
        lines = [
            f"**{r.describe()}**{'' if r.required else ' (optional)'}\n{requirement_guidance(r)}"
            for r in entity.requirements
        ]
        embed["fields"] = [f for f in embed["fields"] if f["name"] != "📋 Requirements"]
        embed["fields"].append(
            {"name": "📋 How to qualify", "value": "\n\n".join(lines)[:1024], "inline": False}
        )
    if entity.gates:
        gate_lines = [f"• {g.kind.replace('_', ' ')}: {g.value}" for g in entity.gates]
        embed["fields"].append(
            {"name": "🔒 Eligibility", "value": "\n".join(gate_lines), "inline": False}
        )
    if analytics:
        stats = ", ".join(f"{k}: {v}" for k, v in list(analytics.items())[:6])
        embed["fields"].append({"name": "📊 Stats", "value": stats[:1024], "inline": False})
    return MessageContent(embed=embed)


def build_proof_modal(connection_id: str, requirement: Requirement) -> ModalSpec:
    """Modal asking for proof of a custom requirement."""
    return ModalSpec(
        custom_id=make_custom_id(Action.proof, connection_id),
        title="Submit proof"[:45],
        inputs=[
            TextInputSpec(
                custom_id="proof",
                label=requirement.describe()[:45],
                placeholder="Link or description of what you did",
                long=True,
            ),
            TextInputSpec(
                custom_id="requirement_id",
                label="Requirement",
                placeholder=requirement.id or "custom",
                required=False,
            ),
        ],
    )


def _format_retry_after(retry_after: timedelta | None) -> str:
    if retry_after is None:
        return "a few minutes"
    seconds = max(1, int(retry_after.total_seconds() + 0.999))
    if seconds < 60:
        return f"{seconds} seconds"
    minutes = (seconds + 59) // 60
    return "1 minute" if minutes == 1 else f"{minutes} minutes"


def build_outcome_message(result: "EntryResult") -> str:
    """User-facing ephemeral text for an entry result."""
    is_task = ConnectionKind(result.kind) == ConnectionKind.task if result.kind else True
    if result.outcome == EntryOutcome.accepted:
        if result.pending_review:
            return "📝 Submitted for review! You'll be notified once it is approved."
        if is_task:
            points = f" +{result.points} points" if result.points is not None else ""
            return f"✅ Task completed!{points}"
        return "🎉 Successfully entered the allowlist! Good luck!"
    if result.outcome == EntryOutcome.already_entered:
        if is_task:
            return "✅ You have already completed this task!"
        return "✅ You are already entered in this allowlist!"

    code = code_for_outcome(result.outcome) or "E-4001"
    reasons = "\n".join(f"• {reason}" for reason in result.reasons) or "• Unknown reason"
    return "❌ " + render_message(
        code,
        retry_after=_format_retry_after(result.retry_after),
        link_url=result.link_url or "the website",
        kind="task" if is_task else "allowlist",
        reasons=reasons,
    )
