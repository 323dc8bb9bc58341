"""Tests for BackendClient over httpx.MockTransport."""

import json

import httpx
import pytest

from rewardlink.errors import EntityNotFound
from rewardlink.services.backend_client import (
    BackendClient,
    BackendRequestError,
    BackendTransportError,
)


def _client(handler, **kwargs) -> BackendClient:
    return BackendClient(
        "https://api.example.com/",
        "secret-key",
        base_delay=0,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class TestFetchEntity:
    """Tests for fetch_entity."""

    async def test_unwraps_envelope(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"success": True, "data": {"_id": "task-1"}})

        async with _client(handler) as client:
            payload = await client.fetch_entity("task", "task-1")

        assert payload == {"_id": "task-1"}
        assert seen[0].url.path == "/api/social-tasks/task-1"
        assert seen[0].headers["Authorization"] == "Bearer secret-key"

    async def test_allowlist_path(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/allowlists/al-1"
            return httpx.Response(200, json={"_id": "al-1"})

        async with _client(handler) as client:
            assert await client.fetch_entity("allowlist", "al-1") == {"_id": "al-1"}

    async def test_404_is_entity_not_found(self):
        async with _client(lambda r: httpx.Response(404)) as client:
            with pytest.raises(EntityNotFound):
                await client.fetch_entity("task", "task-404")

    async def test_retries_server_errors(self):
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            if calls < 3:
                return httpx.Response(503)
            return httpx.Response(200, json={"_id": "task-1"})

        async with _client(handler) as client:
            assert await client.fetch_entity("task", "task-1") == {"_id": "task-1"}
        assert calls == 3

    async def test_exhausted_retries_raise_transport_error(self):
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(502, json={"message": "bad gateway"})

        async with _client(handler, max_retries=1) as client:
            with pytest.raises(BackendTransportError) as exc_info:
                await client.fetch_entity("task", "task-1")

        assert calls == 2
        assert exc_info.value.status_code == 502
        assert exc_info.value.detail == "bad gateway"

    async def test_connect_error_is_transport_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        async with _client(handler, max_retries=0) as client:
            with pytest.raises(BackendTransportError):
                await client.fetch_entity("task", "task-1")


class TestSubmitEntry:
    """Tests for submit_entry."""

    async def test_accepted_with_points(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/social-tasks/task-1/complete"
            assert json.loads(request.content) == {"userId": "remote-1"}
            return httpx.Response(200, json={"success": True, "data": {"pointsAwarded": 50}})

        async with _client(handler) as client:
            result = await client.submit_entry("task", "task-1", {"userId": "remote-1"})

        assert result.accepted
        assert result.points == 50
        assert not result.pending_review

    async def test_pending_review(self):
        body = {"data": {"status": "pending_review"}}
        async with _client(lambda r: httpx.Response(201, json=body)) as client:
            result = await client.submit_entry("allowlist", "al-1", {})
        assert result.pending_review

    async def test_409_is_already_entered(self):
        async with _client(lambda r: httpx.Response(409)) as client:
            result = await client.submit_entry("task", "task-1", {})
        assert result.status == "already_entered"

    async def test_never_retried(self):
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(503)

        async with _client(handler) as client:
            with pytest.raises(BackendTransportError):
                await client.submit_entry("task", "task-1", {})
        assert calls == 1

    async def test_client_error(self):
        body = {"message": "Wallet required"}
        async with _client(lambda r: httpx.Response(400, json=body)) as client:
            with pytest.raises(BackendRequestError) as exc_info:
                await client.submit_entry("task", "task-1", {})
        assert exc_info.value.status_code == 400
        assert exc_info.value.detail == "Wallet required"


class TestOtherCalls:
    """Prior-entry checks and requirement verification."""

    async def test_prior_entry_404_is_false(self):
        async with _client(lambda r: httpx.Response(404)) as client:
            assert await client.check_prior_entry("task", "task-1", "remote-1") is False

    async def test_prior_entry_flag(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/allowlists/al-1/participation"
            assert request.url.params["userId"] == "remote-1"
            return httpx.Response(200, json={"data": {"entered": True}})

        async with _client(handler) as client:
            assert await client.check_prior_entry("allowlist", "al-1", "remote-1") is True

    async def test_verify_unwraps_data(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/social-tasks/verify-twitter-follow"
            return httpx.Response(200, json={"success": True, "data": {"verified": True}})

        async with _client(handler) as client:
            result = await client.verify_requirement("external_follow", {"handle": "acme"})
        assert result == {"verified": True}

    async def test_verify_unknown_kind(self):
        async with _client(lambda r: httpx.Response(200)) as client:
            with pytest.raises(ValueError):
                await client.verify_requirement("quiz", {})
