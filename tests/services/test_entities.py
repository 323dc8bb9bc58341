"""Tests for entity projections, diffs and lifecycle predicates."""

from datetime import UTC, datetime, timedelta

import pytest
from pydantic import ValidationError

from rewardlink.services.entities import (
    AllowlistEntity,
    RequirementKind,
    TaskEntity,
    diff_projection,
    dump_entity,
    is_capacity_reached,
    is_terminal,
    parse_entity,
)
from tests.helpers import allowlist_payload, task_payload

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


class TestParseTask:
    """Backend task payloads."""

    def test_derives_single_requirement(self):
        entity = parse_entity("task", task_payload())

        assert isinstance(entity, TaskEntity)
        assert entity.points == 50
        [requirement] = entity.requirements
        assert requirement.kind == RequirementKind.external_follow.value
        assert requirement.params == {"handle": "acme"}
        assert requirement.describe() == "Follow @acme"

    def test_discord_join_roles(self):
        entity = parse_entity(
            "task",
            task_payload(
                taskType="discord_join",
                verificationData={
                    "discord": {"serverId": "g-9", "serverName": "Acme HQ", "requiredRole": "OG"}
                },
            ),
        )

        requirement = entity.requirements[0]
        assert requirement.kind == RequirementKind.chat_membership.value
        assert requirement.params["guild_id"] == "g-9"
        assert requirement.params["roles"] == ["OG"]
        assert requirement.describe() == "Join Acme HQ"

    def test_missing_id_is_invalid(self):
        payload = task_payload()
        del payload["_id"]
        with pytest.raises(ValidationError):
            parse_entity("task", payload)

    def test_naive_end_time_assumed_utc(self):
        entity = parse_entity("task", task_payload(endTime="2026-03-02T00:00:00"))
        assert entity.end_time == datetime(2026, 3, 2, tzinfo=UTC)


class TestParseAllowlist:
    """Backend allowlist payloads."""

    def test_social_tasks_become_requirements(self):
        entity = parse_entity(
            "allowlist",
            allowlist_payload(
                socialTasks=[
                    {
                        "taskId": "st-1",
                        "type": "telegram_join",
                        "verificationData": {"telegram": {"channelName": "acme_news"}},
                    },
                    {"taskId": "st-2", "type": "twitter_follow", "required": False},
                ]
            ),
        )

        assert isinstance(entity, AllowlistEntity)
        assert [r.id for r in entity.required_requirements()] == ["st-1"]
        assert [r.id for r in entity.optional_requirements()] == ["st-2"]
        assert entity.requirements[0].describe() == "Join acme_news"

    def test_unknown_social_task_kept(self):
        entity = parse_entity(
            "allowlist", allowlist_payload(socialTasks=[{"taskId": "st-1", "type": "quiz"}])
        )
        assert entity.requirements[0].kind == "quiz"

    def test_numeric_entry_price(self):
        entity = parse_entity("allowlist", allowlist_payload(entryPrice=5))
        assert entity.entry_price.amount == 5
        assert not entity.entry_price.is_free

    def test_everyone_wins(self):
        entity = parse_entity("allowlist", allowlist_payload(winnerCount="everyone"))
        assert entity.winner_count == "everyone"

    def test_stored_projection_round_trips(self):
        entity = parse_entity("allowlist", allowlist_payload())
        assert parse_entity("allowlist", dump_entity(entity)) == entity


class TestDiff:
    """Tests for diff_projection."""

    def test_no_change(self):
        old = parse_entity("task", task_payload())
        assert diff_projection(old, parse_entity("task", task_payload())) == []

    def test_counter_and_state_changes(self):
        old = parse_entity("task", task_payload())
        new = parse_entity("task", task_payload(completionsCount=4, status="ended"))
        assert diff_projection(old, new) == ["state", "completions_count"]

    def test_description_is_not_compared(self):
        old = parse_entity("task", task_payload())
        new = parse_entity("task", task_payload(description="Updated copy"))
        assert diff_projection(old, new) == []

    def test_missing_old_reports_everything(self):
        new = parse_entity("allowlist", allowlist_payload())
        assert "participants_count" in diff_projection(None, new)


class TestLifecycle:
    """Terminal and capacity predicates."""

    @pytest.mark.parametrize("status", ["ended", "expired", "completed", "Cancelled"])
    def test_terminal_states(self, status):
        assert is_terminal(parse_entity("task", task_payload(status=status)), NOW)

    def test_end_time_boundary(self):
        entity = parse_entity("task", task_payload(endTime=NOW.isoformat()))
        assert is_terminal(entity, NOW)
        assert not is_terminal(entity, NOW - timedelta(seconds=1))

    def test_allowlist_capacity(self):
        full = parse_entity("allowlist", allowlist_payload(totalEntries=500))
        assert is_capacity_reached(full)
        assert not is_capacity_reached(parse_entity("allowlist", allowlist_payload()))

    def test_uncapped_task(self):
        assert not is_capacity_reached(parse_entity("task", task_payload(completionsCount=10**6)))
