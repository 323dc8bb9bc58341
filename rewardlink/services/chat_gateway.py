"""Chat Gateway Adapter: the only component that talks to Discord.

Wraps a ``discord.Client`` behind a small async API that speaks in
string ids and ``MessageContent``. Every outbound call first takes a
token from the per-destination buckets (``channel:{id}``, ``guild:{id}``)
and from the global bucket, then translates discord.py exceptions into a
uniform taxonomy so callers never import discord.

Example:
    gateway = ChatGateway(bot, metrics=metrics)
    message_id = await gateway.post_message(channel_id, content)
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TypeVar

import discord

from rewardlink.services.message_builder import MessageContent, ModalSpec
from rewardlink.services.metrics import CHAT_GATEWAY_ERRORS, MetricsRegistry
from rewardlink.services.rate_limit import TokenBucket

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Published platform limits
CHANNEL_BUCKET = (5, 5.0)  # 5 messages per 5 s per channel
GUILD_BUCKET = (10, 1.0)
GLOBAL_BUCKET = (50, 1.0)  # 50 requests per second per bot

_BUTTON_STYLES = {
    "primary": discord.ButtonStyle.primary,
    "secondary": discord.ButtonStyle.secondary,
    "success": discord.ButtonStyle.success,
    "danger": discord.ButtonStyle.danger,
    "link": discord.ButtonStyle.link,
}


class ChatGatewayError(Exception):
    """Base error for chat platform calls.

    Attributes:
        operation: Gateway operation that failed (e.g. ``edit_message``).
        status: HTTP status from the platform, when there was one.
    """

    kind = "permanent"

    def __init__(self, operation: str, message: str, status: int | None = None) -> None:
        self.operation = operation
        self.status = status
        super().__init__(f"{operation}: {message}")


class Unreachable(ChatGatewayError):
    """Platform could not be reached (network, gateway closed, timeout)."""

    kind = "unreachable"


class Forbidden(ChatGatewayError):
    """Bot lacks permission for the target."""

    kind = "forbidden"


class NotFound(ChatGatewayError):
    """Target channel, message, guild or member does not exist."""

    kind = "not_found"


class RateLimited(ChatGatewayError):
    """Platform rejected the call with 429."""

    kind = "rate_limited"

    def __init__(self, operation: str, message: str, retry_after: float | None = None) -> None:
        super().__init__(operation, message, status=429)
        self.retry_after = retry_after


class Transient(ChatGatewayError):
    """Platform 5xx; safe to retry later."""

    kind = "transient"


class Permanent(ChatGatewayError):
    """Any other rejected request."""

    kind = "permanent"


@dataclass
class GuildInfo:
    """Guild with its role map (id -> name)."""

    id: str
    name: str
    roles: dict[str, str] = field(default_factory=dict)


@dataclass
class MemberInfo:
    """Normalized guild member."""

    user_id: str
    guild_id: str
    role_ids: list[str] = field(default_factory=list)
    role_names: list[str] = field(default_factory=list)
    joined_at: datetime | None = None


def to_embed(content: MessageContent) -> discord.Embed | None:
    if content.embed is None:
        return None
    return discord.Embed.from_dict(content.embed)


def to_view(content: MessageContent) -> discord.ui.View | None:
    """Build a persistent-style view (no timeout) from control specs."""
    if not content.buttons and content.select is None:
        return None
    view = discord.ui.View(timeout=None)
    for spec in content.buttons:
        style = _BUTTON_STYLES.get(spec.style, discord.ButtonStyle.secondary)
        if spec.url:
            view.add_item(
                discord.ui.Button(
                    style=discord.ButtonStyle.link,
                    label=spec.label,
                    url=spec.url,
                    emoji=spec.emoji,
                )
            )
        else:
            view.add_item(
                discord.ui.Button(
                    style=style,
                    label=spec.label,
                    custom_id=spec.custom_id,
                    disabled=spec.disabled,
                    emoji=spec.emoji,
                    row=0,
                )
            )
    if content.select is not None:
        select = content.select
        view.add_item(
            discord.ui.Select(
                custom_id=select.custom_id,
                placeholder=select.placeholder,
                options=[
                    discord.SelectOption(
                        label=option.label, value=option.value, description=option.description
                    )
                    for option in select.options
                ],
                disabled=select.disabled,
                row=1,
            )
        )
    return view


def to_modal(spec: ModalSpec) -> discord.ui.Modal:
    modal = discord.ui.Modal(title=spec.title, custom_id=spec.custom_id, timeout=600)
    for item in spec.inputs:
        modal.add_item(
            discord.ui.TextInput(
                custom_id=item.custom_id,
                label=item.label,
                placeholder=item.placeholder,
                required=item.required,
                style=discord.TextStyle.paragraph if item.long else discord.TextStyle.short,
            )
        )
    return modal


class ChatGateway:
    """Rate-limited, error-normalizing facade over a discord.py client."""

    def __init__(
        self,
        client: discord.Client,
        metrics: MetricsRegistry | None = None,
        channel_limit: tuple[int, float] = CHANNEL_BUCKET,
        guild_limit: tuple[int, float] = GUILD_BUCKET,
        global_limit: tuple[int, float] = GLOBAL_BUCKET,
    ) -> None:
        self._client = client
        self._metrics = metrics or MetricsRegistry()
        self._limits = {"channel": channel_limit, "guild": guild_limit}
        self._buckets: dict[str, TokenBucket] = {}
        self._global = TokenBucket(*global_limit)

    def _bucket(self, scope: str) -> TokenBucket:
        bucket = self._buckets.get(scope)
        if bucket is None:
            capacity, period = self._limits[scope.split(":", 1)[0]]
            bucket = self._buckets[scope] = TokenBucket(capacity, period)
        return bucket

    def _translate(self, operation: str, exc: Exception) -> ChatGatewayError:
        if isinstance(exc, discord.NotFound):
            error: ChatGatewayError = NotFound(operation, exc.text or "not found", exc.status)
        elif isinstance(exc, discord.Forbidden):
            error = Forbidden(operation, exc.text or "forbidden", exc.status)
        elif isinstance(exc, discord.RateLimited):
            error = RateLimited(operation, "client-side rate limit", exc.retry_after)
        elif isinstance(exc, discord.HTTPException):
            if exc.status == 429:
                error = RateLimited(operation, exc.text or "rate limited")
            elif exc.status >= 500:
                error = Transient(operation, exc.text or "server error", exc.status)
            else:
                error = Permanent(operation, exc.text or "rejected", exc.status)
        else:
            error = Unreachable(operation, str(exc) or type(exc).__name__)
        self._metrics.inc(CHAT_GATEWAY_ERRORS, kind=error.kind)
        return error

    async def _call(
        self,
        operation: str,
        scopes: list[str],
        factory: Callable[[], Awaitable[T]],
    ) -> T:
        for scope in scopes:
            await self._bucket(scope).acquire()
        await self._global.acquire()
        try:
            return await factory()
        except ChatGatewayError:
            raise
        except (
            discord.HTTPException,
            discord.RateLimited,
            discord.ConnectionClosed,
            OSError,
            asyncio.TimeoutError,
        ) as e:
            error = self._translate(operation, e)
            if isinstance(error, RateLimited):
                for scope in scopes:
                    self._bucket(scope).penalize(error.retry_after or 1.0)
            logger.warning("Chat gateway %s failed: %s", operation, error)
            raise error from e

    async def _resolve_channel(self, channel_id: str) -> Any:
        channel = self._client.get_channel(int(channel_id))
        if channel is None:
            channel = await self._client.fetch_channel(int(channel_id))
        return channel

    async def post_message(self, channel_id: str, content: MessageContent) -> str:
        """Post a message and return its id."""

        async def _post() -> str:
            channel = await self._resolve_channel(channel_id)
            kwargs: dict[str, Any] = {"content": content.text, "embed": to_embed(content)}
            view = to_view(content)
            if view is not None:
                kwargs["view"] = view
            message = await channel.send(**kwargs)
            return str(message.id)

        return await self._call("post_message", [f"channel:{channel_id}"], _post)

    async def edit_message(self, channel_id: str, message_id: str, content: MessageContent) -> None:
        """Replace a message's embed and controls.

        Raises:
            NotFound: The message (or its channel) was deleted.
        """

        async def _edit() -> None:
            channel = await self._resolve_channel(channel_id)
            message = channel.get_partial_message(int(message_id))
            await message.edit(
                content=content.text,
                embed=to_embed(content),
                view=to_view(content),
            )

        await self._call("edit_message", [f"channel:{channel_id}"], _edit)

    async def send_notice(self, channel_id: str, content: MessageContent) -> str:
        """Post a plain (control-less) channel notification."""
        return await self.post_message(
            channel_id, MessageContent(embed=content.embed, text=content.text)
        )

    async def fetch_guild(self, guild_id: str) -> GuildInfo:
        async def _fetch() -> GuildInfo:
            guild = self._client.get_guild(int(guild_id))
            if guild is None:
                guild = await self._client.fetch_guild(int(guild_id))
            return GuildInfo(
                id=str(guild.id),
                name=guild.name,
                roles={str(r.id): r.name for r in guild.roles},
            )

        return await self._call("fetch_guild", [f"guild:{guild_id}"], _fetch)

    async def ensure_message(self, channel_id: str, message_id: str) -> None:
        """Confirm a posted message still exists.

        Raises:
            NotFound: The message (or its channel) was deleted.
        """

        async def _fetch() -> None:
            channel = await self._resolve_channel(channel_id)
            await channel.fetch_message(int(message_id))

        await self._call("ensure_message", [f"channel:{channel_id}"], _fetch)

    async def fetch_member(self, guild_id: str, user_id: str) -> MemberInfo:
        """Fetch a member of a guild.

        Raises:
            NotFound: Guild unknown to the bot, or user not a member.
            Forbidden: Bot cannot read that guild.
        """

        async def _fetch() -> MemberInfo:
            guild = self._client.get_guild(int(guild_id))
            if guild is None:
                guild = await self._client.fetch_guild(int(guild_id))
            member = guild.get_member(int(user_id))
            if member is None:
                member = await guild.fetch_member(int(user_id))
            roles = [r for r in member.roles if not r.is_default()]
            return MemberInfo(
                user_id=str(member.id),
                guild_id=str(guild.id),
                role_ids=[str(r.id) for r in roles],
                role_names=[r.name for r in roles],
                joined_at=member.joined_at,
            )

        return await self._call("fetch_member", [f"guild:{guild_id}"], _fetch)


class InteractionResponder:
    """Replies to one interaction. Wraps ``discord.Interaction``."""

    def __init__(self, interaction: discord.Interaction, metrics: MetricsRegistry | None = None) -> None:
        self._interaction = interaction
        self._metrics = metrics or MetricsRegistry()

    @property
    def is_done(self) -> bool:
        return self._interaction.response.is_done()

    async def defer(self, ephemeral: bool = True) -> None:
        if self.is_done:
            return
        try:
            await self._interaction.response.defer(ephemeral=ephemeral, thinking=True)
        except discord.HTTPException as e:
            self._metrics.inc(CHAT_GATEWAY_ERRORS, kind="defer")
            logger.warning("Failed to defer interaction %s: %s", self._interaction.id, e)

    async def followup(
        self,
        text: str | None = None,
        content: MessageContent | None = None,
        ephemeral: bool = True,
    ) -> None:
        """Send a reply, using the initial response slot if still free."""
        embed = to_embed(content) if content is not None else None
        kwargs: dict[str, Any] = {"ephemeral": ephemeral}
        if text is not None:
            kwargs["content"] = text
        if embed is not None:
            kwargs["embed"] = embed
        try:
            if self.is_done:
                await self._interaction.followup.send(**kwargs)
            else:
                await self._interaction.response.send_message(**kwargs)
        except discord.HTTPException as e:
            self._metrics.inc(CHAT_GATEWAY_ERRORS, kind="followup")
            logger.warning("Failed to reply to interaction %s: %s", self._interaction.id, e)

    async def send_modal(self, spec: ModalSpec) -> None:
        """Open a modal. Only valid as the first response."""
        await self._interaction.response.send_modal(to_modal(spec))
