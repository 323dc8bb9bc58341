"""Tests for the typed repositories."""

from datetime import timedelta

import pytest

from rewardlink.db.models import ConnectionState, EntryOutcome, from_iso
from rewardlink.errors import AlreadyBound, DuplicateAcceptedEntry
from tests.helpers import allowlist_payload, seed_connection


class TestConnectionRepository:
    """Tests for ConnectionRepository."""

    async def test_create_and_get(self, connections, clock):
        conn = await seed_connection(connections)

        loaded = await connections.get(conn.id)
        assert loaded is not None
        assert loaded.state == ConnectionState.active.value
        assert loaded.entity_id == "task-1"
        assert from_iso(loaded.created_at) == clock.now

    async def test_create_uses_given_id(self, connections):
        conn = await connections.create(
            kind="task",
            entity_id="task-1",
            guild_id="guild-1",
            channel_id="channel-1",
            message_id="1000",
            projection={},
            created_by="op",
            connection_id="fixed-id",
        )
        assert conn.id == "fixed-id"

    async def test_second_open_binding_rejected(self, connections):
        await seed_connection(connections)
        with pytest.raises(AlreadyBound):
            await seed_connection(connections, message_id="1001")

    async def test_same_entity_in_other_guild_allowed(self, connections):
        await seed_connection(connections)
        other = await seed_connection(connections, guild_id="guild-2")
        assert other.guild_id == "guild-2"

    async def test_rebind_allowed_after_archive(self, connections):
        first = await seed_connection(connections)
        assert await connections.archive(first.id, "unbound")

        second = await seed_connection(connections, message_id="1001")
        assert second.id != first.id
        assert (await connections.find_open("guild-1", "task-1")).id == second.id

    async def test_archive_is_idempotent(self, connections):
        conn = await seed_connection(connections)
        assert await connections.archive(conn.id, "unbound") is True
        assert await connections.archive(conn.id, "unbound") is False

        loaded = await connections.get(conn.id)
        assert loaded.archive_reason == "unbound"
        assert loaded.archived_at is not None

    async def test_list_due_skips_future_and_archived(self, connections, clock):
        due = await seed_connection(connections)
        later = await connections.create(
            kind="allowlist",
            entity_id="allowlist-1",
            guild_id="guild-1",
            channel_id="channel-1",
            message_id="1001",
            projection=allowlist_payload(),
            created_by="op",
            next_reconcile_at=clock.now + timedelta(minutes=5),
        )
        archived = await seed_connection(connections, guild_id="guild-2")
        await connections.archive(archived.id, "unbound")

        ids = [c.id for c in await connections.list_due(clock.now)]
        assert ids == [due.id]

        clock.advance(600)
        ids = {c.id for c in await connections.list_due(clock.now)}
        assert ids == {due.id, later.id}

    async def test_mark_ended_only_from_active(self, connections, clock):
        conn = await seed_connection(connections)
        assert await connections.mark_ended(conn.id, clock.now) is True
        assert await connections.mark_ended(conn.id, clock.now) is False

        loaded = await connections.get(conn.id)
        assert loaded.state == ConnectionState.ended.value

    async def test_end_notice_claim_is_one_shot(self, connections, clock):
        conn = await seed_connection(connections)
        assert await connections.mark_end_notified(conn.id, clock.now) is True
        assert await connections.mark_end_notified(conn.id, clock.now) is False

        await connections.clear_end_notified(conn.id)
        assert await connections.mark_end_notified(conn.id, clock.now) is True

    async def test_record_failure_keeps_first_failing_since(self, connections, clock):
        conn = await seed_connection(connections)
        first_at = clock.now
        await connections.record_failure(conn.id, "boom", first_at, first_at)
        clock.advance(60)
        updated = await connections.record_failure(conn.id, "boom again", clock.now, clock.now)

        assert updated.failure_count == 2
        assert from_iso(updated.failing_since) == first_at
        assert updated.last_error == "boom again"

    async def test_success_clears_failure_streak(self, connections, clock):
        conn = await seed_connection(connections)
        await connections.record_failure(conn.id, "boom", clock.now, clock.now)
        await connections.mark_reconciled(conn.id, clock.now, clock.now + timedelta(seconds=30))

        loaded = await connections.get(conn.id)
        assert loaded.failure_count == 0
        assert loaded.failing_since is None
        assert loaded.last_error is None

    async def test_increment_counters(self, connections):
        conn = await seed_connection(connections)
        await connections.increment_counters(conn.id, accepted=True)
        await connections.increment_counters(conn.id, accepted=False)

        loaded = await connections.get(conn.id)
        assert loaded.attempt_count == 2
        assert loaded.entry_count == 1

    async def test_list_open_for_entity(self, connections):
        a = await seed_connection(connections)
        b = await seed_connection(connections, guild_id="guild-2")
        await connections.archive(b.id, "unbound")

        assert [c.id for c in await connections.list_open_for_entity("task-1")] == [a.id]


class TestAccountLinkRepository:
    """Tests for AccountLinkRepository."""

    async def test_upsert_and_get_active(self, account_links):
        await account_links.upsert("user-1", "remote-1")
        link = await account_links.get_active("user-1")
        assert link.remote_user_id == "remote-1"

    async def test_relink_replaces_remote_user(self, account_links):
        await account_links.upsert("user-1", "remote-1")
        await account_links.upsert("user-1", "remote-2")
        assert (await account_links.get_active("user-1")).remote_user_id == "remote-2"

    async def test_deactivated_link_is_invisible(self, account_links):
        await account_links.upsert("user-1", "remote-1")
        assert await account_links.deactivate("user-1") is True
        assert await account_links.get_active("user-1") is None

    async def test_touch_sets_last_used(self, account_links, clock):
        await account_links.upsert("user-1", "remote-1")
        await account_links.touch("user-1")
        link = await account_links.get_active("user-1")
        assert from_iso(link.last_used_at) == clock.now


class TestEntryAttemptRepository:
    """Tests for EntryAttemptRepository."""

    async def test_accepted_never_expires(self, connections, attempts, clock):
        conn = await seed_connection(connections)
        row = await attempts.record(
            conn.id, "user-1", clock.now, "submission", EntryOutcome.accepted
        )
        assert row.expires_at is None

    async def test_second_accepted_raises(self, connections, attempts, clock):
        conn = await seed_connection(connections)
        await attempts.record(conn.id, "user-1", clock.now, "submission", EntryOutcome.accepted)
        with pytest.raises(DuplicateAcceptedEntry):
            await attempts.record(
                conn.id, "user-1", clock.now, "submission", EntryOutcome.accepted
            )
        assert await attempts.count_accepted(conn.id) == 1

    async def test_failures_are_not_unique(self, connections, attempts, clock):
        conn = await seed_connection(connections)
        for _ in range(3):
            await attempts.record(
                conn.id, "user-1", clock.now, "verification", EntryOutcome.requirements_unmet
            )
        assert len(await attempts.list_for(conn.id, "user-1")) == 3
        assert await attempts.find_accepted(conn.id, "user-1") is None

    async def test_purge_removes_only_expired_ephemeral_rows(self, connections, attempts, clock):
        conn = await seed_connection(connections)
        await attempts.record(conn.id, "user-1", clock.now, "submission", EntryOutcome.accepted)
        await attempts.record(
            conn.id, "user-2", clock.now, "eligibility", EntryOutcome.not_eligible
        )

        assert await attempts.purge_expired(clock.now + timedelta(days=1)) == 0
        assert await attempts.purge_expired(clock.now + timedelta(days=8)) == 1
        assert await attempts.find_accepted(conn.id, "user-1") is not None


class TestInteractionLogRepository:
    """Tests for InteractionLogRepository."""

    async def test_record_and_recent(self, interaction_logs, clock):
        await interaction_logs.record("i-1", "component", "user-1", "rl:v1:enter:c:task")
        clock.advance(1)
        await interaction_logs.record("i-2", "component", "user-1", "rl:v1:view:c:task")

        recent = await interaction_logs.recent("user-1")
        assert [r.interaction_id for r in recent] == ["i-2", "i-1"]

    async def test_purge_after_retention(self, interaction_logs, clock):
        await interaction_logs.record("i-1", "component", "user-1", "x")
        assert await interaction_logs.purge_expired(clock.now + timedelta(days=29)) == 0
        assert await interaction_logs.purge_expired(clock.now + timedelta(days=31)) == 1

    async def test_custom_id_truncated(self, interaction_logs):
        row = await interaction_logs.record("i-1", "component", "user-1", "x" * 150)
        assert len(row.custom_id) == 100


class TestCommunityLinkRepository:
    """Tests for CommunityLinkRepository."""

    async def test_upsert_replaces(self, community_links):
        await community_links.upsert("guild-1", "community-1", "op")
        await community_links.upsert("guild-1", "community-2", "op")

        link = await community_links.get_active("guild-1")
        assert link.community_id == "community-2"
        assert len(await community_links.list_active()) == 1

    async def test_missing_guild(self, community_links):
        assert await community_links.get_active("guild-404") is None
