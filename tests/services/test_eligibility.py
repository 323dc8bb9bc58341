"""Tests for static eligibility checks."""

from datetime import UTC, datetime, timedelta

from rewardlink.services.eligibility import check_eligibility
from rewardlink.services.entities import RemoteUser, parse_entity
from tests.helpers import allowlist_payload, task_payload

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _user(**overrides) -> RemoteUser:
    return RemoteUser.model_validate({"_id": "remote-1", "level": 5, **overrides})


def _codes(result) -> list[str]:
    return [r.code for r in result.reasons]


class TestCheckEligibility:
    """Tests for check_eligibility."""

    def test_active_entity_is_eligible(self):
        result = check_eligibility(parse_entity("task", task_payload()), _user(), NOW)

        assert result.eligible
        assert result.messages() == []

    def test_not_started(self):
        starts = (NOW + timedelta(hours=1)).isoformat()
        entity = parse_entity("allowlist", allowlist_payload(startTime=starts))

        assert _codes(check_eligibility(entity, _user(), NOW)) == ["not-started"]

    def test_collects_every_reason(self):
        entity = parse_entity(
            "allowlist",
            allowlist_payload(
                status="ended",
                totalEntries=500,
                gates=[{"kind": "minimum_level", "value": 10}],
            ),
        )

        result = check_eligibility(entity, _user(), NOW)

        assert not result.eligible
        assert _codes(result) == ["ended", "capacity-reached", "level-too-low"]

    def test_prerequisite_tasks(self):
        entity = parse_entity(
            "task", task_payload(gates=[{"kind": "required_tasks", "value": ["t-0", "t-9"]}])
        )

        result = check_eligibility(entity, _user(completedTaskIds=["t-0"]), NOW)

        assert result.messages() == ["Complete 1 prerequisite task(s) first"]

    def test_account_age(self):
        entity = parse_entity(
            "task", task_payload(gates=[{"kind": "account_age_days", "value": 30}])
        )

        young = _user(createdAt=(NOW - timedelta(days=3)).isoformat())
        old = _user(createdAt=(NOW - timedelta(days=45)).isoformat())

        assert _codes(check_eligibility(entity, young, NOW)) == ["account-too-new"]
        assert check_eligibility(entity, old, NOW).eligible
        assert _codes(check_eligibility(entity, _user(), NOW)) == ["account-age-unknown"]

    def test_unknown_gate_is_ignored(self):
        entity = parse_entity("task", task_payload(gates=[{"kind": "vip_only", "value": True}]))

        assert check_eligibility(entity, _user(), NOW).eligible
