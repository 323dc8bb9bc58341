"""Tests for the verifier registry and the built-in verifiers."""

import pytest

from rewardlink.services.backend_client import BackendTransportError
from rewardlink.services.chat_gateway import GuildInfo, MemberInfo
from rewardlink.services.entities import Requirement
from rewardlink.services.verifiers import (
    GUILD_UNREACHABLE,
    NOT_A_MEMBER,
    ROLE_MISSING,
    UNSUPPORTED_REQUIREMENT,
    VERIFICATION_UNAVAILABLE,
    ChatMembershipVerifier,
    VerificationSubject,
    VerifierRegistry,
    role_matches,
)

SUBJECT = VerificationSubject(chat_user_id="user-1", remote_user_id="remote-1", guild_id="guild-1")


def _membership(roles: list[str] | None = None) -> Requirement:
    return Requirement(
        kind="chat_membership",
        params={"guild_id": "g-9", "guild_name": "Acme HQ", "roles": roles or []},
    )


class TestRoleMatches:
    """Tests for role_matches."""

    def test_matches_by_id(self):
        assert role_matches("r-1", ["r-1"], ["OG"])

    def test_matches_by_name(self):
        assert role_matches("OG", ["r-1"], ["OG"])

    def test_id_of_other_role_does_not_match_by_name(self):
        # "r-2" is a real role id; holding a role *named* "r-2" is not enough
        assert not role_matches("r-2", ["r-1"], ["r-2"], frozenset({"r-1", "r-2"}))


class TestChatMembershipVerifier:
    """Tests for ChatMembershipVerifier against the fake gateway."""

    @pytest.fixture
    def verifier(self, gateway) -> ChatMembershipVerifier:
        gateway.guilds["g-9"] = GuildInfo("g-9", "Acme HQ", {"r-1": "OG", "r-2": "Mod"})
        return ChatMembershipVerifier(gateway)

    async def test_member_with_role(self, verifier, gateway):
        gateway.members[("g-9", "user-1")] = MemberInfo("user-1", "g-9", ["r-1"], ["OG"])

        outcome = await verifier.verify(_membership(["OG"]), SUBJECT)

        assert outcome.ok
        assert outcome.evidence == {"member_id": "user-1", "guild_id": "g-9"}

    async def test_missing_role(self, verifier, gateway):
        gateway.members[("g-9", "user-1")] = MemberInfo("user-1", "g-9", ["r-1"], ["OG"])

        outcome = await verifier.verify(_membership(["r-2"]), SUBJECT)

        assert not outcome.ok
        assert outcome.reason == ROLE_MISSING
        assert outcome.guidance == "Missing required role: r-2"

    async def test_not_a_member(self, verifier):
        outcome = await verifier.verify(_membership(), SUBJECT)

        assert outcome.reason == NOT_A_MEMBER
        assert outcome.guidance == "Please join the Discord server: Acme HQ"

    async def test_unreachable_guild(self, gateway):
        outcome = await ChatMembershipVerifier(gateway).verify(_membership(), SUBJECT)

        assert outcome.reason == GUILD_UNREACHABLE

    async def test_defaults_to_interaction_guild(self, gateway):
        gateway.guilds["guild-1"] = GuildInfo("guild-1", "Home")
        gateway.members[("guild-1", "user-1")] = MemberInfo("user-1", "guild-1")

        outcome = await ChatMembershipVerifier(gateway).verify(
            Requirement(kind="chat_membership"), SUBJECT
        )

        assert outcome.ok


class TestBackendVerifiers:
    """Verifiers that delegate to the backend."""

    async def test_follow_payload(self, backend, gateway):
        registry = VerifierRegistry.default(backend, gateway)
        requirement = Requirement(id="st-1", kind="external_follow", params={"handle": "acme"})

        outcome = await registry.verify(requirement, SUBJECT)

        assert outcome.ok
        kind, payload = backend.verify_requirement.await_args.args
        assert kind == "external_follow"
        assert payload == {
            "userId": "remote-1",
            "discordId": "user-1",
            "taskId": "st-1",
            "targetUsername": "acme",
        }

    async def test_channel_guidance(self, backend, gateway):
        backend.verify_requirement.return_value = {"verified": False}
        requirement = Requirement(
            kind="channel_membership", params={"channel_name": "acme_news"}
        )

        outcome = await VerifierRegistry.default(backend, gateway).verify(requirement, SUBJECT)

        assert not outcome.ok
        assert outcome.guidance == "Please join the Telegram channel: acme_news"

    async def test_backend_down_is_unavailable(self, backend, gateway):
        backend.verify_requirement.side_effect = BackendTransportError("down")
        requirement = Requirement(kind="external_follow", params={"handle": "acme"})

        outcome = await VerifierRegistry.default(backend, gateway).verify(requirement, SUBJECT)

        assert outcome.reason == VERIFICATION_UNAVAILABLE

    async def test_custom_pending_review(self, backend, gateway):
        backend.verify_requirement.return_value = {
            "verified": False,
            "data": {"pendingReview": True},
        }

        outcome = await VerifierRegistry.default(backend, gateway).verify(
            Requirement(kind="custom"), SUBJECT
        )

        assert outcome.ok
        assert outcome.pending_review

    @pytest.mark.parametrize(
        "body",
        [
            {"verified": False, "pendingReview": True},
            {"verified": False, "status": "pending_review", "reason": "queued"},
        ],
    )
    async def test_custom_pending_review_unwrapped(self, backend, gateway, body):
        backend.verify_requirement.return_value = body

        outcome = await VerifierRegistry.default(backend, gateway).verify(
            Requirement(kind="custom"), SUBJECT
        )

        assert outcome.ok
        assert outcome.pending_review
        assert outcome.reason is None


class TestRegistry:
    """Tests for VerifierRegistry."""

    async def test_unsupported_kind(self, backend, gateway):
        outcome = await VerifierRegistry.default(backend, gateway).verify(
            Requirement(kind="quiz"), SUBJECT
        )

        assert not outcome.ok
        assert outcome.reason == UNSUPPORTED_REQUIREMENT

    def test_register_adds_kind(self, backend, gateway):
        registry = VerifierRegistry.default(backend, gateway)
        registry.register("quiz", ChatMembershipVerifier(gateway))

        assert "quiz" in registry.kinds()
        assert "chat_membership" in registry.kinds()
