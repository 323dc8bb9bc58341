"""Authenticated HTTP client for the rewards backend.

Wraps httpx with bearer auth, per-endpoint timeouts bounded by the
caller's inherited deadline, and retry with jittered exponential backoff
on idempotent calls. Entry submission is never retried.

Example:
    async with BackendClient("https://api.example.com", api_key) as client:
        payload = await client.fetch_entity(ConnectionKind.task, "t-1")
"""

import asyncio
import logging
import random
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any

import httpx

from rewardlink.db.models import ConnectionKind
from rewardlink.errors.domain import EntityNotFound
from rewardlink.utils.redaction import sanitize_error_message

logger = logging.getLogger(__name__)

# Absolute loop-time deadline inherited by every backend call in this context
_deadline: ContextVar[float | None] = ContextVar("rewardlink_backend_deadline", default=None)

# Status codes retried on idempotent calls
RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})

# Verification endpoint per requirement kind
VERIFY_ENDPOINTS: dict[str, str] = {
    "external_follow": "/api/social-tasks/verify-twitter-follow",
    "channel_membership": "/api/social-tasks/verify-telegram-join",
    "custom": "/api/social-tasks/verify-custom-task",
}


class BackendError(Exception):
    """Base error for backend calls.

    Attributes:
        status_code: HTTP status, or None for transport failures.
        detail: Sanitized error detail from the response body.
    """

    def __init__(self, message: str, status_code: int | None = None, detail: str = "") -> None:
        self.status_code = status_code
        self.detail = detail
        super().__init__(message)


class BackendTransportError(BackendError):
    """Network failure, timeout, or 5xx/429 after retries."""


class BackendRequestError(BackendError):
    """Non-retryable 4xx response."""


@dataclass
class SubmissionResult:
    """Normalized outcome of an entry submission.

    Attributes:
        status: ``accepted`` or ``already_entered``.
        data: Response body (empty for 409).
        pending_review: Backend queued the entry for manual review.
        points: Points awarded, when the backend reports them.
    """

    status: str
    data: dict[str, Any] = field(default_factory=dict)
    pending_review: bool = False
    points: int | None = None

    @property
    def accepted(self) -> bool:
        return self.status == "accepted"


@contextmanager
def deadline_scope(seconds: float) -> Iterator[float]:
    """Bound every backend call in this context to ``seconds`` from now.

    Nested scopes can only shorten the inherited deadline.
    """
    loop = asyncio.get_running_loop()
    proposed = loop.time() + seconds
    current = _deadline.get()
    effective = proposed if current is None else min(current, proposed)
    token = _deadline.set(effective)
    try:
        yield effective
    finally:
        _deadline.reset(token)


def remaining_budget() -> float | None:
    """Seconds left on the inherited deadline, or None when unbounded."""
    deadline = _deadline.get()
    if deadline is None:
        return None
    return max(0.0, deadline - asyncio.get_running_loop().time())


def _unwrap(body: Any) -> Any:
    """Strip the backend's ``{"success": ..., "data": {...}}`` envelope."""
    if isinstance(body, dict) and "data" in body and ("success" in body or len(body) == 1):
        return body["data"]
    return body


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return sanitize_error_message(response.text[:500]) or ""
    if isinstance(body, dict):
        detail = body.get("message") or body.get("error") or body.get("detail") or ""
        return sanitize_error_message(str(detail)) or ""
    return ""


class BackendClient:
    """Typed operations over the rewards backend HTTP API."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 10.0,
        max_retries: int = 2,
        base_delay: float = 0.5,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Backend root URL.
            api_key: Long-lived bearer API key.
            timeout: Per-endpoint timeout in seconds.
            max_retries: Extra attempts on idempotent calls.
            base_delay: Base backoff delay in seconds (doubles per retry).
            transport: Optional httpx transport (tests use MockTransport).
        """
        self._timeout = timeout
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={
                "Authorization": f"Bearer {api_key}",
                "X-Discord-Bot-Sync": "true",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "BackendClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def _call_timeout(self) -> float:
        """min(endpoint timeout, inherited deadline remaining)."""
        remaining = remaining_budget()
        if remaining is None:
            return self._timeout
        if remaining <= 0:
            raise BackendTransportError("Deadline exceeded before request")
        return min(self._timeout, remaining)

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._client.request(
                method, path, timeout=self._call_timeout(), **kwargs
            )
        except httpx.TimeoutException as e:
            raise BackendTransportError(f"{method} {path} timed out") from e
        except httpx.TransportError as e:
            raise BackendTransportError(f"{method} {path} failed: {e}") from e

    async def _request(
        self,
        method: str,
        path: str,
        *,
        retry: bool = True,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request, retrying transport errors, 429 and 5xx.

        Returns the final response for the caller to interpret; raises
        ``BackendTransportError`` once retries are exhausted.
        """
        attempts = self._max_retries + 1 if retry else 1
        last_error = BackendTransportError(f"{method} {path} failed")
        for attempt in range(attempts):
            try:
                response = await self._send(method, path, **kwargs)
            except BackendTransportError as e:
                last_error = e
            else:
                if response.status_code not in RETRYABLE_STATUS:
                    return response
                last_error = BackendTransportError(
                    f"{method} {path} returned {response.status_code}",
                    status_code=response.status_code,
                    detail=_error_detail(response),
                )

            if attempt + 1 >= attempts:
                break
            delay = self._base_delay * (2 ** attempt) * random.uniform(0.5, 1.5)
            remaining = remaining_budget()
            if remaining is not None and remaining <= delay:
                break
            logger.warning(
                "Backend %s %s failed (attempt %d/%d), retrying in %.2fs: %s",
                method, path, attempt + 1, attempts, delay, last_error,
            )
            await asyncio.sleep(delay)

        raise last_error

    def _raise_for_status(self, response: httpx.Response) -> None:
        if response.status_code < 400:
            return
        detail = _error_detail(response)
        message = f"{response.request.method} {response.request.url.path} returned {response.status_code}"
        if response.status_code >= 500 or response.status_code == 429:
            raise BackendTransportError(message, response.status_code, detail)
        raise BackendRequestError(message, response.status_code, detail)

    @staticmethod
    def _entity_path(kind: ConnectionKind | str, entity_id: str) -> str:
        if ConnectionKind(kind) == ConnectionKind.task:
            return f"/api/social-tasks/{entity_id}"
        return f"/api/allowlists/{entity_id}"

    async def fetch_entity(self, kind: ConnectionKind | str, entity_id: str) -> dict[str, Any]:
        """Fetch the authoritative task or allowlist payload.

        Raises:
            EntityNotFound: Backend returned 404.
            BackendTransportError: Network failure or 5xx after retries.
            BackendRequestError: Other 4xx.
        """
        response = await self._request("GET", self._entity_path(kind, entity_id))
        if response.status_code == 404:
            raise EntityNotFound(ConnectionKind(kind).value, entity_id)
        self._raise_for_status(response)
        return _unwrap(response.json())

    async def fetch_user(self, remote_user_id: str) -> dict[str, Any]:
        """Fetch a backend user (level, creation date, completed tasks)."""
        response = await self._request("GET", f"/api/users/{remote_user_id}")
        self._raise_for_status(response)
        return _unwrap(response.json())

    async def check_prior_entry(
        self,
        kind: ConnectionKind | str,
        entity_id: str,
        remote_user_id: str,
    ) -> bool:
        """Ask the backend whether the user already entered or completed.

        404 means no prior entry.
        """
        suffix = "completion" if ConnectionKind(kind) == ConnectionKind.task else "participation"
        response = await self._request(
            "GET",
            f"{self._entity_path(kind, entity_id)}/{suffix}",
            params={"userId": remote_user_id},
        )
        if response.status_code == 404:
            return False
        self._raise_for_status(response)
        if not response.content:
            return False
        body = _unwrap(response.json())
        if isinstance(body, dict):
            for flag in ("entered", "completed", "exists"):
                if flag in body:
                    return bool(body[flag])
        return bool(body)

    async def submit_entry(
        self,
        kind: ConnectionKind | str,
        entity_id: str,
        payload: dict[str, Any],
    ) -> SubmissionResult:
        """Record an entry or completion. Never retried.

        Returns:
            SubmissionResult with status ``accepted`` (2xx) or
            ``already_entered`` (409).

        Raises:
            BackendTransportError: Network failure, timeout, or 5xx.
            BackendRequestError: Any other 4xx.
        """
        action = "complete" if ConnectionKind(kind) == ConnectionKind.task else "enter"
        response = await self._request(
            "POST",
            f"{self._entity_path(kind, entity_id)}/{action}",
            retry=False,
            json=payload,
        )
        if response.status_code == 409:
            return SubmissionResult(status="already_entered")
        self._raise_for_status(response)
        data = _unwrap(response.json()) if response.content else {}
        if not isinstance(data, dict):
            data = {"result": data}
        status = str(data.get("status", "")).lower()
        points = data.get("pointsAwarded", data.get("points"))
        return SubmissionResult(
            status="accepted",
            data=data,
            pending_review=status in ("pending", "pending_review") or bool(data.get("pendingReview")),
            points=int(points) if isinstance(points, (int, float)) else None,
        )

    async def notify_binding(
        self,
        kind: ConnectionKind | str,
        entity_id: str,
        guild_id: str,
        channel_id: str,
        message_id: str,
        connected: bool,
    ) -> None:
        """Tell the backend a post was bound to (or unbound from) a channel."""
        response = await self._request(
            "POST",
            f"{self._entity_path(kind, entity_id)}/discord-connection",
            json={
                "guildId": guild_id,
                "channelId": channel_id,
                "messageId": message_id,
                "connected": connected,
            },
        )
        self._raise_for_status(response)

    async def verify_requirement(
        self,
        requirement_kind: str,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        """Delegate one requirement check to the backend.

        Returns:
            Dict with ``verified``, ``data``, ``reason`` and ``guidance``.
        """
        path = VERIFY_ENDPOINTS.get(requirement_kind)
        if path is None:
            raise ValueError(f"No backend verification for '{requirement_kind}'")
        response = await self._request("POST", path, json=payload)
        self._raise_for_status(response)
        body = response.json() if response.content else {}
        if not isinstance(body, dict):
            return {"verified": bool(body)}
        if "verified" not in body and isinstance(body.get("data"), dict) and "verified" in body["data"]:
            return body["data"]
        return body

    async def fetch_analytics(self, kind: ConnectionKind | str, entity_id: str) -> dict[str, Any]:
        """Fetch entry/completion analytics for an entity."""
        response = await self._request("GET", f"{self._entity_path(kind, entity_id)}/analytics")
        if response.status_code == 404:
            raise EntityNotFound(ConnectionKind(kind).value, entity_id)
        self._raise_for_status(response)
        return _unwrap(response.json())
