"""Tests for the staged entry pipeline."""

import asyncio
from datetime import timedelta

import pytest

from rewardlink.db.models import EntryOutcome, EntryStage
from rewardlink.services.backend_client import (
    BackendRequestError,
    BackendTransportError,
    SubmissionResult,
)
from rewardlink.services.entry_pipeline import EntryPipeline, EntryRequest
from rewardlink.services.locks import DistributedLock
from rewardlink.services.metrics import (
    ENTRY_OUTCOMES,
    INVARIANT_VIOLATIONS,
    PIPELINE_INTERNAL_ERRORS,
)
from rewardlink.services.rate_limit import RateLimiter
from rewardlink.services.verifiers import VerifierRegistry
from tests.helpers import FakeResponder, seed_connection, task_payload


def _press(connection_id: str, responder: FakeResponder, **kwargs) -> EntryRequest:
    return EntryRequest(
        connection_id=connection_id,
        chat_user_id="user-1",
        responder=responder,
        guild_id="guild-1",
        **kwargs,
    )


@pytest.fixture
def make_pipeline(connections, account_links, attempts, backend, gateway, kv, metrics, clock):
    """Build a pipeline with a custom budget."""

    def _make(budget_seconds: float) -> EntryPipeline:
        return EntryPipeline(
            connections=connections,
            account_links=account_links,
            attempts=attempts,
            backend=backend,
            verifiers=VerifierRegistry.default(backend, gateway),
            rate_limiter=RateLimiter(kv, clock=clock),
            distributed_lock=DistributedLock(kv, poll_interval=0.01),
            metrics=metrics,
            budget_seconds=budget_seconds,
            clock=clock,
        )

    return _make


@pytest.fixture
async def linked(account_links):
    await account_links.upsert("user-1", "remote-1")


class TestConnectionStage:
    """Connection must be active and its projection live."""

    async def test_unknown_connection(self, pipeline, linked, responder):
        result = await pipeline.run(_press("missing", responder))

        assert result.outcome == EntryOutcome.connection_inactive
        assert result.reasons == ["connection-missing"]

    async def test_projection_past_end_time(self, pipeline, connections, linked, backend, clock):
        ends = (clock.now - timedelta(minutes=1)).isoformat()
        conn = await seed_connection(connections, payload=task_payload(endTime=ends))

        result = await pipeline.run(_press(conn.id, FakeResponder()))

        assert result.outcome == EntryOutcome.connection_inactive
        assert result.stage == EntryStage.connection
        backend.check_prior_entry.assert_not_awaited()


class TestPriorOutcome:
    """Prior entries short-circuit before any eligibility work."""

    async def test_backend_prior_entry(self, pipeline, connections, attempts, linked, backend):
        backend.check_prior_entry.return_value = True
        conn = await seed_connection(connections)

        result = await pipeline.run(_press(conn.id, FakeResponder()))

        assert result.outcome == EntryOutcome.already_entered
        assert result.reasons == ["backend-record"]
        backend.fetch_entity.assert_not_awaited()
        accepted = await attempts.find_accepted(conn.id, "user-1")
        assert accepted.reason == "discovered:prior-check"


class TestEligibilityStage:
    """Fresh backend state decides eligibility."""

    async def test_backend_says_ended(self, pipeline, connections, linked, backend, refresh):
        backend.fetch_entity.return_value = task_payload(status="completed")
        conn = await seed_connection(connections)

        result = await pipeline.run(_press(conn.id, FakeResponder()))

        assert result.outcome == EntryOutcome.connection_inactive
        assert result.reasons == ["entity-ended"]
        refresh.assert_awaited_once_with(conn.id)

    async def test_level_gate(self, pipeline, connections, linked, backend):
        backend.fetch_entity.return_value = task_payload(
            gates=[{"kind": "minimum_level", "value": 10}]
        )
        conn = await seed_connection(connections)
        responder = FakeResponder()

        result = await pipeline.run(_press(conn.id, responder))

        assert result.outcome == EntryOutcome.not_eligible
        assert result.details == {"codes": ["level-too-low"]}
        assert "Requires level 10 (you are level 5)" in responder.last
        backend.fetch_user.assert_awaited_once_with("remote-1")
        backend.verify_requirement.assert_not_awaited()

    async def test_capacity_reached(self, pipeline, connections, linked, backend):
        backend.fetch_entity.return_value = task_payload(maxCompletions=10, completionsCount=10)
        conn = await seed_connection(connections)

        result = await pipeline.run(_press(conn.id, FakeResponder()))

        assert result.outcome == EntryOutcome.not_eligible
        backend.fetch_user.assert_not_awaited()

    async def test_backend_unreachable(self, pipeline, connections, linked, backend, metrics):
        backend.fetch_entity.side_effect = BackendTransportError("GET failed")
        conn = await seed_connection(connections)
        responder = FakeResponder()

        result = await pipeline.run(_press(conn.id, responder))

        assert result.outcome == EntryOutcome.transport_error
        assert responder.last.startswith("❌ The rewards service could not be reached")
        assert metrics.counter(ENTRY_OUTCOMES, outcome="transport_error") == 1


class TestVerificationStage:
    """Required requirements gate submission."""

    async def test_unmet_requirement_lists_guidance(self, pipeline, connections, linked, backend):
        backend.verify_requirement.return_value = {"verified": False}
        conn = await seed_connection(connections)
        responder = FakeResponder()

        result = await pipeline.run(_press(conn.id, responder))

        assert result.outcome == EntryOutcome.requirements_unmet
        assert "Please follow @acme on Twitter" in responder.last
        backend.submit_entry.assert_not_awaited()

    async def test_verifier_crash_is_internal(self, pipeline, connections, linked, backend, metrics):
        backend.verify_requirement.side_effect = RuntimeError("boom")
        conn = await seed_connection(connections)
        responder = FakeResponder()

        result = await pipeline.run(_press(conn.id, responder))

        assert result.outcome == EntryOutcome.internal
        assert metrics.counter(PIPELINE_INTERNAL_ERRORS) == 1
        assert "Something went wrong" in responder.last

    async def test_custom_proof_forwarded(self, pipeline, connections, linked, backend):
        payload = task_payload(
            taskType="custom",
            verificationData={"custom": {"instructions": "Post a screenshot"}},
        )
        backend.fetch_entity.return_value = payload
        backend.verify_requirement.return_value = {
            "verified": False,
            "data": {"status": "pending_review"},
        }
        conn = await seed_connection(connections, payload=payload)
        responder = FakeResponder()

        result = await pipeline.run(
            _press(conn.id, responder, proof={"proof": "https://img.example/1.png"})
        )

        assert result.outcome == EntryOutcome.accepted
        assert result.pending_review
        assert responder.last.startswith("📝 Submitted for review!")
        kind, body = backend.verify_requirement.await_args.args
        assert kind == "custom"
        assert body["submission"] == {"proof": "https://img.example/1.png"}


class TestSubmissionStage:
    """Submission outcomes and their persistence."""

    async def test_rejected_submission_is_not_eligible(
        self, pipeline, connections, attempts, linked, backend
    ):
        backend.submit_entry.side_effect = BackendRequestError(
            "POST returned 400", 400, "Wallet required"
        )
        conn = await seed_connection(connections)
        responder = FakeResponder()

        result = await pipeline.run(_press(conn.id, responder))

        assert result.outcome == EntryOutcome.not_eligible
        assert "Wallet required" in responder.last
        assert await attempts.find_accepted(conn.id, "user-1") is None

    async def test_backend_points_win(self, pipeline, connections, linked, backend, responder):
        backend.submit_entry.return_value = SubmissionResult(status="accepted", points=75)
        conn = await seed_connection(connections)

        await pipeline.run(_press(conn.id, responder))

        assert responder.last == "✅ Task completed! +75 points"

    async def test_duplicate_accept_is_invariant_violation(
        self, pipeline, connections, attempts, linked, backend, metrics, clock
    ):
        conn = await seed_connection(connections)

        async def _accept_elsewhere(*args):
            # Another instance records the same user's entry mid-flight
            await attempts.record(conn.id, "user-1", clock.now, "submission", EntryOutcome.accepted)
            return SubmissionResult(status="accepted")

        backend.submit_entry.side_effect = _accept_elsewhere
        responder = FakeResponder()

        result = await pipeline.run(_press(conn.id, responder))

        assert result.outcome == EntryOutcome.already_entered
        assert "duplicate-accepted-entry" in result.reasons
        assert metrics.counter(INVARIANT_VIOLATIONS) == 1
        assert await attempts.count_accepted(conn.id) == 1


class TestBudget:
    """The wall-clock budget bounds checks; submission is shielded."""

    async def test_slow_backend_times_out_without_counting(
        self, make_pipeline, connections, attempts, kv, linked, backend
    ):
        async def _slow(*args):
            await asyncio.sleep(1)
            return task_payload()

        backend.fetch_entity.side_effect = _slow
        pipeline = make_pipeline(0.2)
        conn = await seed_connection(connections)
        responder = FakeResponder()

        result = await pipeline.run(_press(conn.id, responder))

        assert result.outcome == EntryOutcome.timeout
        assert "took too long" in responder.last
        assert await attempts.list_for(conn.id, "user-1") == []
        assert await kv.get(RateLimiter.key("entry", "user-1", conn.id)) is None

    async def test_late_submission_settles_in_background(
        self, make_pipeline, connections, attempts, linked, backend
    ):
        async def _slow_submit(*args):
            await asyncio.sleep(0.6)
            return SubmissionResult(status="accepted")

        backend.submit_entry.side_effect = _slow_submit
        pipeline = make_pipeline(0.3)
        conn = await seed_connection(connections)

        result = await pipeline.run(_press(conn.id, FakeResponder()))
        assert result.outcome == EntryOutcome.timeout
        assert await attempts.find_accepted(conn.id, "user-1") is None

        await asyncio.sleep(0.5)
        await pipeline.drain()

        accepted = await attempts.find_accepted(conn.id, "user-1")
        assert accepted is not None
        assert accepted.reason == "settled-after-timeout"
        assert (await connections.get(conn.id)).entry_count == 1
