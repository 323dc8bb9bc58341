"""Interactive-Post Engine facade.

Binds remote tasks and allowlists to chat messages, routes the
interactions those messages produce, and owns the background tasks
(reconciler, retention) that keep them true.

Example:
    engine = InteractivePostEngine(...)
    engine.start()
    connection = await engine.bind("task-1", "task", channel_id, guild_id, operator)
    ...
    await engine.stop()
"""

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol

from pydantic import ValidationError

from rewardlink.db.models import (
    ConnectionKind,
    ConnectionState,
    EntryOutcome,
    PostConnection,
    generate_uuid,
    utc_now,
)
from rewardlink.db.repositories import (
    CommunityLinkRepository,
    ConnectionRepository,
    InteractionLogRepository,
)
from rewardlink.errors.domain import (
    AlreadyBound,
    ChatPostFailed,
    ConnectionNotFound,
    EntityNotFound,
    InputValidationError,
    NotAuthorized,
)
from rewardlink.errors.registry import code_for_outcome, render_message
from rewardlink.services.backend_client import BackendClient, BackendError
from rewardlink.services.chat_gateway import ChatGateway, ChatGatewayError, NotFound
from rewardlink.services.entities import (
    Projection,
    RequirementKind,
    dump_entity,
    is_terminal,
    parse_entity,
)
from rewardlink.services.entry_pipeline import EntryPipeline, EntryRequest
from rewardlink.services.message_builder import (
    Action,
    MessageContent,
    ModalSpec,
    build_details,
    build_post,
    build_proof_modal,
    build_terminal_post,
    parse_custom_id,
    requirement_guidance,
)
from rewardlink.services.reconciler import Reconciler
from rewardlink.services.retention import RetentionSweeper

logger = logging.getLogger(__name__)

UNKNOWN_CONTROL_MESSAGE = "❓ This control is not recognised. It may belong to an older post."


class InteractionResponderLike(Protocol):
    """Reply channel the engine needs for one interaction."""

    async def defer(self, ephemeral: bool = True) -> None: ...

    async def followup(
        self,
        text: str | None = None,
        content: MessageContent | None = None,
        ephemeral: bool = True,
    ) -> None: ...

    async def send_modal(self, spec: ModalSpec) -> None: ...


@dataclass(frozen=True)
class Operator:
    """Chat user performing an operator action.

    Attributes:
        user_id: Discord user id.
        can_manage: Whether the user holds the manage-server permission.
        guild_id: Guild the command was issued from, when known.
    """

    user_id: str
    can_manage: bool = False
    guild_id: str | None = None


@dataclass
class InteractionEvent:
    """A component or modal interaction, decoupled from discord.py.

    Attributes:
        interaction_id: Platform interaction id.
        interaction_type: ``component`` or ``modal_submit``.
        custom_id: Custom id of the pressed control or submitted modal.
        chat_user_id: User who interacted.
        responder: Reply channel for this interaction.
        guild_id: Guild of the interaction.
        channel_id: Channel of the interaction.
        values: Selected values for select menus.
        fields: Submitted text inputs for modals, by custom id.
        chat_username: Display name of the user.
    """

    interaction_id: str
    interaction_type: str
    custom_id: str
    chat_user_id: str
    responder: InteractionResponderLike
    guild_id: str | None = None
    channel_id: str | None = None
    values: list[str] = field(default_factory=list)
    fields: dict[str, str] = field(default_factory=dict)
    chat_username: str | None = None


class InteractivePostEngine:
    """Facade over the pipeline, reconciler and repositories."""

    def __init__(
        self,
        connections: ConnectionRepository,
        community_links: CommunityLinkRepository,
        interaction_logs: InteractionLogRepository,
        backend: BackendClient,
        gateway: ChatGateway,
        pipeline: EntryPipeline,
        reconciler: Reconciler,
        retention: RetentionSweeper | None = None,
        site_url: str | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._connections = connections
        self._community_links = community_links
        self._interaction_logs = interaction_logs
        self._backend = backend
        self._gateway = gateway
        self._pipeline = pipeline
        self.reconciler = reconciler
        self._retention = retention
        self._site_url = site_url
        self._clock = clock

    # Lifecycle

    def start(self) -> None:
        self.reconciler.start()
        if self._retention is not None:
            self._retention.start()

    async def stop(self) -> None:
        await self.reconciler.stop()
        if self._retention is not None:
            await self._retention.stop()
        await self._pipeline.drain()
        logger.info("Interactive-post engine stopped")

    # Operator actions

    async def bind(
        self,
        entity_id: str,
        kind: ConnectionKind | str,
        channel_id: str,
        guild_id: str,
        operator: Operator,
    ) -> PostConnection:
        """Post an interactive message for a remote entity and persist it.

        Args:
            entity_id: Remote task or allowlist id.
            kind: ``task`` or ``allowlist``.
            channel_id: Channel to post into.
            guild_id: Guild owning the channel.
            operator: Who asked for the binding.

        Returns:
            The new active connection.

        Raises:
            InputValidationError: Malformed kind or id, or the entity already ended.
            NotAuthorized: Missing permission, unlinked guild, or the entity
                belongs to another community.
            AlreadyBound: The entity already has an open post in this guild.
            EntityNotFound: The backend does not know the entity.
            ChatPostFailed: The message could not be posted.
        """
        if not operator.can_manage:
            raise NotAuthorized("Binding posts requires the Manage Server permission")
        try:
            kind = ConnectionKind(kind)
        except ValueError as e:
            raise InputValidationError(f"Unknown kind '{kind}'") from e
        entity_id = (entity_id or "").strip()
        if not entity_id:
            raise InputValidationError("An entity id is required")

        community = await self._community_links.get_active(guild_id)
        if community is None:
            raise NotAuthorized("This server is not linked to a community")
        if await self._connections.find_open(guild_id, entity_id) is not None:
            raise AlreadyBound(guild_id, entity_id, kind.value)

        entity = parse_entity(kind, await self._backend.fetch_entity(kind, entity_id))
        if entity.community_id and entity.community_id != community.community_id:
            raise NotAuthorized(f"This {kind.value} belongs to another community")
        now = self._clock()
        if is_terminal(entity, now):
            raise InputValidationError(f"This {kind.value} has already ended")

        connection_id = generate_uuid()
        content = build_post(connection_id, kind, entity, now, site_url=self._site_url)
        try:
            message_id = await self._gateway.post_message(channel_id, content)
        except ChatGatewayError as e:
            logger.warning("Posting %s %s to channel %s failed: %s", kind.value, entity_id, channel_id, e)
            raise ChatPostFailed(channel_id, str(e)) from e

        try:
            connection = await self._connections.create(
                kind=kind.value,
                entity_id=entity_id,
                guild_id=guild_id,
                channel_id=channel_id,
                message_id=message_id,
                projection=dump_entity(entity),
                created_by=operator.user_id,
                next_reconcile_at=now + timedelta(seconds=self.reconciler.settings.interval),
                connection_id=connection_id,
            )
        except AlreadyBound:
            # Lost a concurrent bind; leave no live controls behind.
            await self._retire_orphan(channel_id, message_id, connection_id, kind, entity)
            raise

        logger.info(
            "Bound %s %s to channel %s in guild %s as connection %s",
            kind.value, entity_id, channel_id, guild_id, connection.id,
        )
        try:
            await self._backend.notify_binding(
                kind, entity_id, guild_id, channel_id, message_id, connected=True
            )
        except BackendError as e:
            logger.warning("Backend was not told about connection %s: %s", connection.id, e)
        return connection

    async def _retire_orphan(
        self,
        channel_id: str,
        message_id: str,
        connection_id: str,
        kind: ConnectionKind,
        entity: Projection,
    ) -> None:
        try:
            await self._gateway.edit_message(
                channel_id,
                message_id,
                build_terminal_post(connection_id, kind, entity, site_url=self._site_url, archived=True),
            )
        except ChatGatewayError as e:
            logger.warning("Could not retire orphan message %s: %s", message_id, e)

    async def unbind(self, connection_id: str, operator: Operator) -> PostConnection:
        """Archive a connection and turn its message into its terminal form.

        Raises:
            ConnectionNotFound: No such connection.
            NotAuthorized: Missing permission or a different guild.
        """
        if not operator.can_manage:
            raise NotAuthorized("Removing posts requires the Manage Server permission")
        connection = await self._connections.get(connection_id)
        if connection is None:
            raise ConnectionNotFound(connection_id)
        if operator.guild_id and operator.guild_id != connection.guild_id:
            raise NotAuthorized("This post belongs to another server")
        if connection.state == ConnectionState.archived.value:
            return connection

        await self._connections.archive(connection.id, "unbound")
        projection = self._projection(connection)
        if projection is not None:
            try:
                await self._gateway.edit_message(
                    connection.channel_id,
                    connection.message_id,
                    build_terminal_post(
                        connection.id, connection.kind, projection,
                        site_url=self._site_url, archived=True,
                    ),
                )
            except NotFound:
                logger.info("Message for connection %s was already deleted", connection.id)
            except ChatGatewayError as e:
                logger.warning("Terminal edit for connection %s failed: %s", connection.id, e)
        try:
            await self._backend.notify_binding(
                connection.kind, connection.entity_id, connection.guild_id,
                connection.channel_id, connection.message_id, connected=False,
            )
        except BackendError as e:
            logger.warning("Backend was not told about unbinding %s: %s", connection.id, e)
        logger.info("Unbound connection %s by %s", connection.id, operator.user_id)
        return await self._connections.get(connection.id) or connection

    # Lifecycle callbacks

    async def on_entity_status_changed(self, entity_id: str, status: str | None = None) -> int:
        """Backend reported a change to an entity; refresh every post of it.

        Returns:
            Number of connections scheduled for a priority reconcile.
        """
        scheduled = await self.reconciler.request_entity(entity_id)
        logger.info(
            "Entity %s changed (status=%s); refreshing %d connection(s)",
            entity_id, status, scheduled,
        )
        return scheduled

    # Interaction handling

    async def route_interaction(self, event: InteractionEvent) -> str:
        """Dispatch one component or modal interaction by its custom id.

        Returns:
            Short outcome label, also written to the interaction log.
        """
        started = asyncio.get_running_loop().time()
        parsed = parse_custom_id(event.custom_id)
        if parsed is None or parsed[0] is None:
            await event.responder.followup(UNKNOWN_CONTROL_MESSAGE, ephemeral=True)
            outcome = "unknown-control"
        else:
            action, connection_id = parsed
            try:
                outcome = await self._dispatch(action, connection_id, event)
            except Exception:
                logger.exception(
                    "Interaction %s (%s) failed", event.interaction_id, event.custom_id
                )
                await event.responder.followup(
                    "❌ " + render_message("E-4001"), ephemeral=True
                )
                outcome = EntryOutcome.internal.value

        latency_ms = int((asyncio.get_running_loop().time() - started) * 1000)
        try:
            await self._interaction_logs.record(
                interaction_id=event.interaction_id,
                interaction_type=event.interaction_type,
                chat_user_id=event.chat_user_id,
                custom_id=event.custom_id,
                guild_id=event.guild_id,
                channel_id=event.channel_id,
                outcome=outcome,
                latency_ms=latency_ms,
            )
        except Exception:
            logger.exception("Failed to log interaction %s", event.interaction_id)
        return outcome

    async def _dispatch(self, action: Action, connection_id: str, event: InteractionEvent) -> str:
        if action in (Action.enter, Action.proof):
            proof = {k: v for k, v in event.fields.items() if v} if action == Action.proof else {}
            result = await self._pipeline.run(
                EntryRequest(
                    connection_id=connection_id,
                    chat_user_id=event.chat_user_id,
                    responder=event.responder,
                    guild_id=event.guild_id,
                    proof=proof,
                    chat_username=event.chat_username,
                )
            )
            return result.outcome.value
        if action == Action.view:
            return await self._show_details(connection_id, event)
        return await self._show_requirement(connection_id, event)

    def _projection(self, connection: PostConnection) -> Projection | None:
        try:
            return parse_entity(connection.kind, json.loads(connection.projection_json))
        except (ValueError, ValidationError):
            logger.warning("Stored projection of connection %s is unreadable", connection.id)
            return None

    async def _inactive(self, event: InteractionEvent, connection: PostConnection | None) -> str:
        kind = connection.kind if connection is not None else "post"
        await event.responder.followup(
            "❌ " + render_message(code_for_outcome(EntryOutcome.connection_inactive), kind=kind),
            ephemeral=True,
        )
        return EntryOutcome.connection_inactive.value

    async def _show_details(self, connection_id: str, event: InteractionEvent) -> str:
        await event.responder.defer(ephemeral=True)
        connection = await self._connections.get(connection_id)
        projection = self._projection(connection) if connection is not None else None
        if connection is None or projection is None:
            return await self._inactive(event, connection)

        entity: Projection = projection
        analytics: dict[str, Any] | None = None
        try:
            entity = parse_entity(
                connection.kind,
                await self._backend.fetch_entity(connection.kind, connection.entity_id),
            )
            analytics = await self._backend.fetch_analytics(connection.kind, connection.entity_id)
        except (BackendError, EntityNotFound) as e:
            logger.info("Showing cached details for connection %s: %s", connection.id, e)
        await event.responder.followup(
            content=build_details(connection.kind, entity, analytics), ephemeral=True
        )
        return "details"

    async def _show_requirement(self, connection_id: str, event: InteractionEvent) -> str:
        connection = await self._connections.get(connection_id)
        projection = self._projection(connection) if connection is not None else None
        if connection is None or projection is None:
            return await self._inactive(event, connection)
        try:
            requirement = projection.requirements[int(event.values[0])]
        except (IndexError, ValueError):
            await event.responder.followup(
                "That requirement is no longer listed on this post.", ephemeral=True
            )
            return "requirement-missing"

        if (
            requirement.kind == RequirementKind.custom.value
            and connection.state == ConnectionState.active.value
        ):
            # A modal must be the first response; no defer before it.
            await event.responder.send_modal(build_proof_modal(connection.id, requirement))
            return "proof-modal"
        await event.responder.followup(
            f"**{requirement.describe()}**\n{requirement_guidance(requirement)}", ephemeral=True
        )
        return "guidance"
