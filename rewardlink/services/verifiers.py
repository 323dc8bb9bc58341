"""Verifier registry: one verifier per requirement kind.

Every verifier implements ``verify(requirement, subject)`` and returns a
``VerificationOutcome``. Verifiers never touch engine state; their only
effects go through the backend client or the chat gateway.

Failures to reach a dependency are reported as ``ok=False`` with a
reason rather than raised, so one broken requirement never hides the
results of the others.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from rewardlink.services.backend_client import BackendClient, BackendError
from rewardlink.services.chat_gateway import (
    ChatGateway,
    ChatGatewayError,
    NotFound,
)
from rewardlink.services.entities import Requirement, RequirementKind

logger = logging.getLogger(__name__)

# Failure reasons
GUILD_UNREACHABLE = "guild-unreachable"
NOT_A_MEMBER = "not-a-member"
ROLE_MISSING = "role-missing"
UNSUPPORTED_REQUIREMENT = "unsupported-requirement"
VERIFICATION_UNAVAILABLE = "verification-unavailable"

_REVIEW_KEYS = ("pendingReview", "status")


@dataclass
class VerificationSubject:
    """Who is being verified.

    Attributes:
        chat_user_id: Discord user id.
        remote_user_id: Backend user id from the account link.
        guild_id: Guild the interaction came from.
        entity_id: Task or allowlist being entered.
        proof: Fields submitted through the proof modal, if any.
    """

    chat_user_id: str
    remote_user_id: str
    guild_id: str | None = None
    entity_id: str | None = None
    proof: dict[str, str] = field(default_factory=dict)


@dataclass
class VerificationOutcome:
    ok: bool
    evidence: dict[str, Any] = field(default_factory=dict)
    reason: str | None = None
    guidance: str | None = None

    @property
    def pending_review(self) -> bool:
        return bool(self.evidence.get("pending_review"))


class Verifier(Protocol):
    async def verify(
        self, requirement: Requirement, subject: VerificationSubject
    ) -> VerificationOutcome: ...


class _BackendVerifier:
    """Shared plumbing for verifiers that delegate to the backend."""

    requirement_kind: str = ""

    def __init__(self, backend: BackendClient) -> None:
        self._backend = backend

    def _payload(self, requirement: Requirement, subject: VerificationSubject) -> dict[str, Any]:
        return {
            "userId": subject.remote_user_id,
            "discordId": subject.chat_user_id,
            "taskId": requirement.id or subject.entity_id,
        }

    def _guidance(self, requirement: Requirement) -> str:
        return f"Complete: {requirement.describe()}"

    async def verify(
        self, requirement: Requirement, subject: VerificationSubject
    ) -> VerificationOutcome:
        try:
            body = await self._backend.verify_requirement(
                self.requirement_kind, self._payload(requirement, subject)
            )
        except BackendError as e:
            logger.warning(
                "Backend verification of %s for user %s failed: %s",
                requirement.kind, subject.chat_user_id, e,
            )
            return VerificationOutcome(
                ok=False,
                reason=VERIFICATION_UNAVAILABLE,
                guidance="Verification is temporarily unavailable. Please try again shortly.",
            )
        data = body.get("data") if isinstance(body.get("data"), dict) else {}
        evidence = dict(data)
        # An unwrapped body carries the review flags at the top level
        for key in _REVIEW_KEYS:
            if key in body and key not in evidence:
                evidence[key] = body[key]
        if body.get("verified"):
            return VerificationOutcome(ok=True, evidence=evidence)
        return VerificationOutcome(
            ok=False,
            evidence=evidence,
            reason=body.get("reason") or "not-verified",
            guidance=body.get("guidance") or self._guidance(requirement),
        )


class ExternalFollowVerifier(_BackendVerifier):
    """Follow of a third-party account, checked by the backend."""

    requirement_kind = RequirementKind.external_follow.value

    def _payload(self, requirement: Requirement, subject: VerificationSubject) -> dict[str, Any]:
        payload = super()._payload(requirement, subject)
        payload["targetUsername"] = requirement.params.get("handle")
        return payload

    def _guidance(self, requirement: Requirement) -> str:
        handle = requirement.params.get("handle")
        return f"Please follow @{handle} on Twitter" if handle else super()._guidance(requirement)


class RemoteChannelMembershipVerifier(_BackendVerifier):
    """Membership of an external channel, checked by the backend."""

    requirement_kind = RequirementKind.channel_membership.value

    def _payload(self, requirement: Requirement, subject: VerificationSubject) -> dict[str, Any]:
        payload = super()._payload(requirement, subject)
        payload["channelId"] = requirement.params.get("channel_id")
        return payload

    def _guidance(self, requirement: Requirement) -> str:
        name = requirement.params.get("channel_name")
        return f"Please join the Telegram channel: {name}" if name else super()._guidance(requirement)


class CustomVerifier(_BackendVerifier):
    """Manual/custom requirement; the backend may queue it for review."""

    requirement_kind = RequirementKind.custom.value

    def _payload(self, requirement: Requirement, subject: VerificationSubject) -> dict[str, Any]:
        payload = super()._payload(requirement, subject)
        payload["verificationUrl"] = requirement.params.get("verification_url")
        if subject.proof:
            payload["submission"] = dict(subject.proof)
        return payload

    async def verify(
        self, requirement: Requirement, subject: VerificationSubject
    ) -> VerificationOutcome:
        outcome = await super().verify(requirement, subject)
        evidence = outcome.evidence
        status = str(evidence.get("status", "")).lower()
        if evidence.get("pendingReview") or status in ("pending", "pending_review"):
            evidence["pending_review"] = True
            outcome.ok = True
            outcome.reason = None
            outcome.guidance = None
        return outcome


def role_matches(
    required: str,
    role_ids: list[str],
    role_names: list[str],
    guild_role_ids: frozenset[str] = frozenset(),
) -> bool:
    """Match a required role by id or by name; an id match wins.

    When ``required`` is the id of some guild role, only holding that role
    satisfies it, even if another role the member holds has that name.
    """
    if required in role_ids:
        return True
    if required in guild_role_ids:
        return False
    return required in role_names


class ChatMembershipVerifier:
    """Membership (and optionally roles) in a Discord guild."""

    def __init__(self, gateway: ChatGateway) -> None:
        self._gateway = gateway

    async def verify(
        self, requirement: Requirement, subject: VerificationSubject
    ) -> VerificationOutcome:
        guild_id = requirement.params.get("guild_id") or subject.guild_id
        guild_name = requirement.params.get("guild_name") or "the required server"
        if not guild_id:
            return VerificationOutcome(
                ok=False,
                reason=GUILD_UNREACHABLE,
                guidance="This requirement has no server configured. Contact the community team.",
            )
        try:
            guild = await self._gateway.fetch_guild(str(guild_id))
        except ChatGatewayError as e:
            logger.warning("Guild %s unreachable during verification: %s", guild_id, e)
            return VerificationOutcome(
                ok=False,
                reason=GUILD_UNREACHABLE,
                guidance=f"The bot cannot access {guild_name}. Contact the community team.",
            )
        try:
            member = await self._gateway.fetch_member(str(guild_id), subject.chat_user_id)
        except NotFound:
            return VerificationOutcome(
                ok=False,
                reason=NOT_A_MEMBER,
                guidance=f"Please join the Discord server: {guild_name}",
            )
        except ChatGatewayError as e:
            logger.warning("Member lookup in guild %s failed: %s", guild_id, e)
            return VerificationOutcome(
                ok=False,
                reason=GUILD_UNREACHABLE,
                guidance=f"The bot cannot access {guild_name}. Please try again later.",
            )

        required_roles = [str(r) for r in requirement.params.get("roles") or []]
        missing = [
            role
            for role in required_roles
            if not role_matches(role, member.role_ids, member.role_names, frozenset(guild.roles))
        ]
        if missing:
            return VerificationOutcome(
                ok=False,
                evidence={"member_id": member.user_id},
                reason=ROLE_MISSING,
                guidance=f"Missing required role: {', '.join(missing)}",
            )
        return VerificationOutcome(
            ok=True,
            evidence={"member_id": member.user_id, "guild_id": member.guild_id},
        )


class VerifierRegistry:
    """Selects a verifier by ``requirement.kind``."""

    def __init__(self, verifiers: dict[str, Verifier] | None = None) -> None:
        self._verifiers: dict[str, Verifier] = dict(verifiers or {})

    @classmethod
    def default(cls, backend: BackendClient, gateway: ChatGateway) -> "VerifierRegistry":
        return cls({
            RequirementKind.external_follow.value: ExternalFollowVerifier(backend),
            RequirementKind.channel_membership.value: RemoteChannelMembershipVerifier(backend),
            RequirementKind.chat_membership.value: ChatMembershipVerifier(gateway),
            RequirementKind.custom.value: CustomVerifier(backend),
        })

    def register(self, kind: str, verifier: Verifier) -> None:
        self._verifiers[kind] = verifier

    def kinds(self) -> list[str]:
        return sorted(self._verifiers)

    async def verify(
        self, requirement: Requirement, subject: VerificationSubject
    ) -> VerificationOutcome:
        verifier = self._verifiers.get(requirement.kind)
        if verifier is None:
            return VerificationOutcome(
                ok=False,
                reason=UNSUPPORTED_REQUIREMENT,
                guidance="This requirement cannot be verified by the bot.",
            )
        return await verifier.verify(requirement, subject)
