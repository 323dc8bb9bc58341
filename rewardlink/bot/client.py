"""discord.py client: slash commands in, component/modal interactions routed.

The client is thin. Slash commands translate into
``engine.bind`` / ``engine.unbind`` calls; every button, select or modal
interaction is wrapped into an ``InteractionEvent`` and handed to
``engine.route_interaction``.
"""

import logging
from typing import Any

import discord
from discord import app_commands

from rewardlink.db.models import ConnectionKind
from rewardlink.errors import DomainError, render_message
from rewardlink.services.backend_client import BackendError, BackendRequestError
from rewardlink.services.chat_gateway import InteractionResponder
from rewardlink.services.engine import InteractionEvent, InteractivePostEngine, Operator
from rewardlink.services.metrics import MetricsRegistry

logger = logging.getLogger(__name__)

_ROUTED_TYPES = (discord.InteractionType.component, discord.InteractionType.modal_submit)


def default_intents() -> discord.Intents:
    """Guilds and members: role checks need member lookups."""
    intents = discord.Intents.default()
    intents.members = True
    return intents


def interaction_to_event(
    interaction: discord.Interaction, responder: Any
) -> InteractionEvent | None:
    """Extract routing data from a component or modal interaction.

    Returns None for interactions the engine does not handle.
    """
    if interaction.type not in _ROUTED_TYPES:
        return None
    data: dict[str, Any] = dict(interaction.data or {})
    custom_id = str(data.get("custom_id") or "")
    fields: dict[str, str] = {}
    for row in data.get("components") or []:
        for component in row.get("components") or []:
            if "custom_id" in component:
                fields[component["custom_id"]] = component.get("value") or ""
    is_modal = interaction.type == discord.InteractionType.modal_submit
    return InteractionEvent(
        interaction_id=str(interaction.id),
        interaction_type="modal_submit" if is_modal else "component",
        custom_id=custom_id,
        chat_user_id=str(interaction.user.id),
        responder=responder,
        guild_id=str(interaction.guild_id) if interaction.guild_id else None,
        channel_id=str(interaction.channel_id) if interaction.channel_id else None,
        values=[str(v) for v in data.get("values") or []],
        fields=fields,
        chat_username=getattr(interaction.user, "name", None),
    )


def operator_from(interaction: discord.Interaction) -> Operator:
    permissions = interaction.permissions
    return Operator(
        user_id=str(interaction.user.id),
        can_manage=bool(permissions.manage_guild or permissions.administrator),
        guild_id=str(interaction.guild_id) if interaction.guild_id else None,
    )


def operator_failure_message(exc: Exception) -> str:
    """Reply text for a failed operator command."""
    if isinstance(exc, DomainError):
        return f"❌ {exc.user_message()}"
    if isinstance(exc, BackendRequestError):
        return "❌ " + render_message("E-3003", detail=exc.detail or str(exc))
    if isinstance(exc, BackendError):
        return "❌ " + render_message("E-3002")
    return "❌ " + render_message("E-4001")


async def handle_connect(
    engine: InteractivePostEngine,
    responder: Any,
    operator: Operator,
    kind: ConnectionKind,
    entity_id: str,
    channel_id: str,
    guild_id: str,
) -> None:
    """Body of /connect-task and /connect-allowlist."""
    await responder.defer(ephemeral=True)
    try:
        connection = await engine.bind(entity_id, kind, channel_id, guild_id, operator)
    except (DomainError, BackendError) as e:
        logger.warning("Connect of %s %s failed: %s", kind.value, entity_id, e)
        await responder.followup(operator_failure_message(e), ephemeral=True)
        return
    except Exception as e:
        logger.exception("Connect of %s %s crashed", kind.value, entity_id)
        await responder.followup(operator_failure_message(e), ephemeral=True)
        return
    await responder.followup(
        f"✅ Connected {kind.value} `{entity_id}` to <#{channel_id}> "
        f"(connection `{connection.id}`).",
        ephemeral=True,
    )


async def handle_disconnect(
    engine: InteractivePostEngine,
    responder: Any,
    operator: Operator,
    connection_id: str,
) -> None:
    """Body of /disconnect."""
    await responder.defer(ephemeral=True)
    try:
        connection = await engine.unbind(connection_id, operator)
    except (DomainError, BackendError) as e:
        logger.warning("Disconnect of %s failed: %s", connection_id, e)
        await responder.followup(operator_failure_message(e), ephemeral=True)
        return
    except Exception as e:
        logger.exception("Disconnect of %s crashed", connection_id)
        await responder.followup(operator_failure_message(e), ephemeral=True)
        return
    await responder.followup(
        f"✅ Disconnected {connection.kind} `{connection.entity_id}`.", ephemeral=True
    )


class RewardLinkBot(discord.Client):
    """Discord client owning the command tree and the engine lifecycle."""

    def __init__(
        self,
        metrics: MetricsRegistry | None = None,
        sync_guild_id: str | None = None,
        intents: discord.Intents | None = None,
    ) -> None:
        super().__init__(intents=intents or default_intents())
        self.tree = app_commands.CommandTree(self)
        self.engine: InteractivePostEngine | None = None
        self._metrics = metrics or MetricsRegistry()
        self._sync_guild_id = sync_guild_id
        self._register_commands()

    def attach(self, engine: InteractivePostEngine) -> None:
        """Wire the engine; the gateway built on this client exists first."""
        self.engine = engine

    def _responder(self, interaction: discord.Interaction) -> InteractionResponder:
        return InteractionResponder(interaction, self._metrics)

    def _register_commands(self) -> None:
        bot = self

        async def _connect(
            interaction: discord.Interaction,
            kind: ConnectionKind,
            entity_id: str,
            channel: discord.TextChannel | None,
        ) -> None:
            channel_id = str(channel.id) if channel else str(interaction.channel_id)
            await handle_connect(
                bot.engine, bot._responder(interaction), operator_from(interaction),
                kind, entity_id, channel_id, str(interaction.guild_id),
            )

        @self.tree.command(name="connect-task", description="Post an interactive task in a channel")
        @app_commands.describe(task_id="Task id from the website", channel="Channel to post in")
        @app_commands.default_permissions(manage_guild=True)
        @app_commands.guild_only()
        async def connect_task(
            interaction: discord.Interaction,
            task_id: str,
            channel: discord.TextChannel | None = None,
        ) -> None:
            await _connect(interaction, ConnectionKind.task, task_id, channel)

        @self.tree.command(
            name="connect-allowlist", description="Post an interactive allowlist in a channel"
        )
        @app_commands.describe(allowlist_id="Allowlist id from the website", channel="Channel to post in")
        @app_commands.default_permissions(manage_guild=True)
        @app_commands.guild_only()
        async def connect_allowlist(
            interaction: discord.Interaction,
            allowlist_id: str,
            channel: discord.TextChannel | None = None,
        ) -> None:
            await _connect(interaction, ConnectionKind.allowlist, allowlist_id, channel)

        @self.tree.command(name="disconnect", description="Stop an interactive post")
        @app_commands.describe(connection_id="Connection id shown when the post was created")
        @app_commands.default_permissions(manage_guild=True)
        @app_commands.guild_only()
        async def disconnect(interaction: discord.Interaction, connection_id: str) -> None:
            await handle_disconnect(
                bot.engine, bot._responder(interaction), operator_from(interaction), connection_id
            )

    async def setup_hook(self) -> None:
        if self._sync_guild_id:
            guild = discord.Object(id=int(self._sync_guild_id))
            self.tree.copy_global_to(guild=guild)
            synced = await self.tree.sync(guild=guild)
        else:
            synced = await self.tree.sync()
        logger.info("Synced %d application commands", len(synced))
        if self.engine is not None:
            self.engine.start()

    async def on_ready(self) -> None:
        logger.info("RewardLink bot connected as %s", self.user)

    async def on_interaction(self, interaction: discord.Interaction) -> None:
        if self.engine is None:
            return
        event = interaction_to_event(interaction, self._responder(interaction))
        if event is None:
            return
        await self.engine.route_interaction(event)

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.stop()
        await super().close()
