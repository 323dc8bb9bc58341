"""Entry pipeline: turns one button press into at most one recorded entry.

Stages run in order on the interaction's own task and each may
short-circuit with a terminal outcome:

    1. ingress        defer the interaction, capture who/what/when
    2. rate_limit     fixed window per (user, connection)
    3. identity       active account link required
    4. connection     connection active and projection not terminal
    5. prior_outcome  local accepted attempt, then backend (authoritative)
    6. eligibility    fresh entity: time window, capacity, user gates
    7. verification   every required requirement, optional best-effort
    8. submission     single, never-retried backend call
    9. post_actions   persist attempt, counters, refresh, touch link, reply

Runs for the same (connection, user) never overlap: an in-process keyed
lock and a short-TTL key-value lock are held from stage 2 to stage 9.
Stages 2-7 share a wall-clock budget; when it expires the user sees
``timeout`` and nothing is persisted or counted. A submission already in
flight is shielded from the budget and settled in the background.
"""

import asyncio
import contextvars
import json
import logging
from collections.abc import Awaitable, Callable
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol

from rewardlink.db.models import (
    AccountLink,
    ConnectionState,
    EntryOutcome,
    EntryStage,
    PostConnection,
    utc_now,
)
from rewardlink.db.repositories import (
    AccountLinkRepository,
    ConnectionRepository,
    EntryAttemptRepository,
)
from rewardlink.errors.domain import DuplicateAcceptedEntry, EntityNotFound
from rewardlink.services.backend_client import (
    BackendClient,
    BackendRequestError,
    BackendTransportError,
    SubmissionResult,
    deadline_scope,
)
from rewardlink.services.eligibility import check_eligibility
from rewardlink.services.entities import (
    Projection,
    RemoteUser,
    is_terminal,
    parse_entity,
)
from rewardlink.services.locks import DistributedLock, KeyedLock, LockTimeout
from rewardlink.services.message_builder import build_outcome_message
from rewardlink.services.metrics import (
    ENTRY_OUTCOMES,
    INVARIANT_VIOLATIONS,
    PIPELINE_INTERNAL_ERRORS,
    MetricsRegistry,
)
from rewardlink.services.rate_limit import RateLimiter
from rewardlink.services.verifiers import VerificationSubject, VerifierRegistry

logger = logging.getLogger(__name__)

DEFAULT_BUDGET_SECONDS = 8.0
RATE_LIMIT_KIND = "entry"


class Responder(Protocol):
    """Reply channel for one interaction."""

    async def defer(self, ephemeral: bool = True) -> None: ...

    async def followup(
        self, text: str | None = None, content: Any = None, ephemeral: bool = True
    ) -> None: ...


@dataclass
class EntryRequest:
    """One user press of an entry control.

    Attributes:
        connection_id: Connection parsed from the control's custom id.
        chat_user_id: Discord user who pressed.
        responder: Used to defer and to send the ephemeral outcome.
        guild_id: Guild the interaction came from.
        proof: Modal-submitted proof fields (custom requirements).
        chat_username: Display name forwarded to the backend.
    """

    connection_id: str
    chat_user_id: str
    responder: Responder
    guild_id: str | None = None
    proof: dict[str, str] = field(default_factory=dict)
    chat_username: str | None = None


@dataclass
class EntryResult:
    """Terminal result of one pipeline run."""

    outcome: EntryOutcome
    stage: EntryStage
    kind: str | None = None
    reasons: list[str] = field(default_factory=list)
    points: int | None = None
    pending_review: bool = False
    retry_after: timedelta | None = None
    link_url: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    message: str = ""


@dataclass
class _Attempt:
    """Mutable state carried between stages of one run."""

    request: EntryRequest
    started_at: datetime
    deadline: float = 0.0
    stage: EntryStage = EntryStage.ingress
    counted: bool = False
    link: AccountLink | None = None
    connection: PostConnection | None = None
    entity: Projection | None = None
    pending_review: bool = False
    evidence: dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> str | None:
        return self.connection.kind if self.connection is not None else None

    def result(self, outcome: EntryOutcome, **kwargs: Any) -> EntryResult:
        return EntryResult(outcome=outcome, stage=self.stage, kind=self.kind, **kwargs)


class EntryPipeline:
    """Staged, serialized, budgeted entry pipeline."""

    def __init__(
        self,
        connections: ConnectionRepository,
        account_links: AccountLinkRepository,
        attempts: EntryAttemptRepository,
        backend: BackendClient,
        verifiers: VerifierRegistry,
        rate_limiter: RateLimiter,
        distributed_lock: DistributedLock,
        metrics: MetricsRegistry | None = None,
        request_refresh: Callable[[str], Awaitable[None]] | None = None,
        link_url: str | None = None,
        budget_seconds: float = DEFAULT_BUDGET_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the pipeline.

        Args:
            connections: Connection repository.
            account_links: Account link repository.
            attempts: Entry attempt repository.
            backend: Backend client.
            verifiers: Verifier registry.
            rate_limiter: Per-user entry rate limiter.
            distributed_lock: Cross-instance lock over the key-value store.
            metrics: Operator metrics.
            request_refresh: Priority reconcile hook, called with a
                connection id after a successful entry.
            link_url: Account-linking URL shown to unlinked users.
            budget_seconds: Wall-clock budget for stages 2-8.
            clock: Wall-clock source.
        """
        self._connections = connections
        self._account_links = account_links
        self._attempts = attempts
        self._backend = backend
        self._verifiers = verifiers
        self._rate_limiter = rate_limiter
        self._local_locks = KeyedLock()
        self._distributed_lock = distributed_lock
        self._metrics = metrics or MetricsRegistry()
        self._request_refresh = request_refresh
        self._link_url = link_url
        self._budget = budget_seconds
        self._clock = clock
        self._background: set[asyncio.Task[None]] = set()

    @staticmethod
    def lock_key(connection_id: str, chat_user_id: str) -> str:
        return f"lock:{connection_id}:{chat_user_id}"

    async def run(self, request: EntryRequest) -> EntryResult:
        """Run every stage and reply to the user. Never raises."""
        # Stage 1: ingress & ack
        attempt = _Attempt(request=request, started_at=self._clock())
        await request.responder.defer(ephemeral=True)

        with deadline_scope(self._budget) as deadline:
            attempt.deadline = deadline
            try:
                result = await self._run_serialized(attempt)
            except Exception:
                logger.exception(
                    "Entry pipeline failed at %s for connection %s user %s",
                    attempt.stage.value, request.connection_id, request.chat_user_id,
                )
                self._metrics.inc(PIPELINE_INTERNAL_ERRORS)
                result = attempt.result(EntryOutcome.internal)

        self._metrics.inc(ENTRY_OUTCOMES, outcome=result.outcome.value)
        result.message = build_outcome_message(result)
        await request.responder.followup(result.message, ephemeral=True)
        logger.info(
            "Entry %s for connection %s user %s at stage %s",
            result.outcome.value, request.connection_id, request.chat_user_id, result.stage.value,
        )
        return result

    async def _run_serialized(self, attempt: _Attempt) -> EntryResult:
        request = attempt.request
        key = self.lock_key(request.connection_id, request.chat_user_id)
        async with AsyncExitStack() as locks:
            try:
                async with asyncio.timeout_at(attempt.deadline):
                    await locks.enter_async_context(self._local_locks.hold(key))
                    remaining = attempt.deadline - asyncio.get_running_loop().time()
                    await locks.enter_async_context(
                        self._distributed_lock.hold(key, timeout=max(remaining, 0.0))
                    )
                    result = await self._run_checks(attempt)
            except (TimeoutError, LockTimeout):
                logger.warning(
                    "Entry for connection %s user %s exceeded budget at %s",
                    request.connection_id, request.chat_user_id, attempt.stage.value,
                )
                return attempt.result(EntryOutcome.timeout)

            if result is None:
                attempt.stage = EntryStage.submission
                result = await self._submit(attempt)
                if result.outcome == EntryOutcome.timeout:
                    return result

            await self._post_actions(attempt, result)
            return result

    async def _run_checks(self, attempt: _Attempt) -> EntryResult | None:
        """Stages 2-7. Returns a short-circuit result, or None to submit."""
        stages = (
            (EntryStage.rate_limit, self._check_rate_limit),
            (EntryStage.identity, self._resolve_identity),
            (EntryStage.connection, self._load_connection),
            (EntryStage.prior_outcome, self._check_prior_outcome),
            (EntryStage.eligibility, self._check_eligibility),
            (EntryStage.verification, self._verify_requirements),
        )
        for stage, handler in stages:
            attempt.stage = stage
            try:
                result = await handler(attempt)
            except BackendTransportError as e:
                logger.error(
                    "Backend unavailable at %s for connection %s: %s",
                    stage.value, attempt.request.connection_id, e, exc_info=True,
                )
                return attempt.result(EntryOutcome.transport_error, reasons=[str(e)])
            except Exception:
                logger.exception(
                    "Internal error at %s for connection %s",
                    stage.value, attempt.request.connection_id,
                )
                self._metrics.inc(PIPELINE_INTERNAL_ERRORS)
                return attempt.result(EntryOutcome.internal)
            if result is not None:
                return result
        return None

    async def _check_rate_limit(self, attempt: _Attempt) -> EntryResult | None:
        request = attempt.request
        decision = await self._rate_limiter.check(
            RATE_LIMIT_KIND, request.chat_user_id, request.connection_id
        )
        if not decision.allowed:
            return attempt.result(EntryOutcome.rate_limited, retry_after=decision.retry_after)
        attempt.counted = True
        return None

    async def _resolve_identity(self, attempt: _Attempt) -> EntryResult | None:
        link = await self._account_links.get_active(attempt.request.chat_user_id)
        if link is None:
            return attempt.result(EntryOutcome.account_not_linked, link_url=self._link_url)
        attempt.link = link
        return None

    async def _load_connection(self, attempt: _Attempt) -> EntryResult | None:
        connection = await self._connections.get(attempt.request.connection_id)
        if connection is None:
            return attempt.result(EntryOutcome.connection_inactive, reasons=["connection-missing"])
        attempt.connection = connection
        if connection.state != ConnectionState.active.value:
            return attempt.result(EntryOutcome.connection_inactive, reasons=[connection.state])
        projection = parse_entity(connection.kind, json.loads(connection.projection_json))
        if is_terminal(projection, self._clock()):
            return attempt.result(EntryOutcome.connection_inactive, reasons=["entity-ended"])
        attempt.entity = projection
        return None

    async def _check_prior_outcome(self, attempt: _Attempt) -> EntryResult | None:
        connection = attempt.connection
        assert connection is not None and attempt.link is not None
        local = await self._attempts.find_accepted(connection.id, attempt.request.chat_user_id)
        if local is not None:
            return attempt.result(EntryOutcome.already_entered, reasons=["local-record"])
        entered = await self._backend.check_prior_entry(
            connection.kind, connection.entity_id, attempt.link.remote_user_id
        )
        if entered:
            await self._record_discovered(attempt, "prior-check")
            return attempt.result(EntryOutcome.already_entered, reasons=["backend-record"])
        return None

    async def _check_eligibility(self, attempt: _Attempt) -> EntryResult | None:
        connection = attempt.connection
        assert connection is not None and attempt.link is not None
        try:
            payload = await self._backend.fetch_entity(connection.kind, connection.entity_id)
        except EntityNotFound:
            await self._refresh(connection.id)
            return attempt.result(EntryOutcome.connection_inactive, reasons=["entity-missing"])
        entity = parse_entity(connection.kind, payload)
        attempt.entity = entity
        now = self._clock()
        if is_terminal(entity, now):
            # Backend time wins over the cached projection
            await self._refresh(connection.id)
            return attempt.result(EntryOutcome.connection_inactive, reasons=["entity-ended"])

        if entity.gates:
            user = RemoteUser.model_validate(
                await self._backend.fetch_user(attempt.link.remote_user_id)
            )
        else:
            user = RemoteUser(id=attempt.link.remote_user_id)
        eligibility = check_eligibility(entity, user, now)
        if not eligibility.eligible:
            return attempt.result(
                EntryOutcome.not_eligible,
                reasons=eligibility.messages(),
                details={"codes": [r.code for r in eligibility.reasons]},
            )
        return None

    async def _verify_requirements(self, attempt: _Attempt) -> EntryResult | None:
        entity = attempt.entity
        assert entity is not None and attempt.link is not None
        subject = VerificationSubject(
            chat_user_id=attempt.request.chat_user_id,
            remote_user_id=attempt.link.remote_user_id,
            guild_id=attempt.request.guild_id,
            entity_id=entity.id,
            proof=attempt.request.proof,
        )
        failures: list[str] = []
        failure_codes: dict[str, str] = {}
        for requirement in entity.required_requirements():
            outcome = await self._verifiers.verify(requirement, subject)
            if not outcome.ok:
                failures.append(f"{requirement.describe()}: {outcome.guidance or outcome.reason}")
                failure_codes[requirement.id or requirement.kind] = outcome.reason or "not-verified"
                continue
            attempt.evidence[requirement.id or requirement.kind] = outcome.evidence
            if outcome.pending_review:
                attempt.pending_review = True

        for requirement in entity.optional_requirements():
            try:
                outcome = await self._verifiers.verify(requirement, subject)
            except Exception as e:
                logger.warning("Optional requirement %s check failed: %s", requirement.id, e)
                continue
            if outcome.ok:
                attempt.evidence[requirement.id or requirement.kind] = outcome.evidence

        if failures:
            return attempt.result(
                EntryOutcome.requirements_unmet,
                reasons=failures,
                details={"requirements": failure_codes},
            )
        return None

    def _submission_payload(self, attempt: _Attempt) -> dict[str, Any]:
        assert attempt.link is not None
        return {
            "userId": attempt.link.remote_user_id,
            "discordId": attempt.request.chat_user_id,
            "discordUsername": attempt.request.chat_username,
            "completedTasks": sorted(attempt.evidence),
            "verification": attempt.evidence,
            "pendingReview": attempt.pending_review,
        }

    async def _submit(self, attempt: _Attempt) -> EntryResult:
        """Stage 8. The backend call runs in its own task without the budget."""
        connection = attempt.connection
        assert connection is not None
        loop = asyncio.get_running_loop()
        remaining = attempt.deadline - loop.time()
        if remaining <= 0:
            return attempt.result(EntryOutcome.timeout)

        # A fresh context drops the inherited deadline: the submission keeps
        # its own endpoint timeout and is never cut short by the budget.
        task = loop.create_task(
            self._backend.submit_entry(
                connection.kind, connection.entity_id, self._submission_payload(attempt)
            ),
            context=contextvars.Context(),
        )
        try:
            submission = await asyncio.wait_for(asyncio.shield(task), timeout=remaining)
        except TimeoutError:
            logger.warning(
                "Submission for connection %s user %s outlived the budget; settling in background",
                connection.id, attempt.request.chat_user_id,
            )
            task.add_done_callback(lambda t: self._settle_later(attempt, t))
            return attempt.result(EntryOutcome.timeout)
        except BackendTransportError as e:
            logger.error(
                "Submission for connection %s failed: %s", connection.id, e, exc_info=True
            )
            return attempt.result(EntryOutcome.transport_error, reasons=[str(e)])
        except BackendRequestError as e:
            logger.warning("Submission for connection %s rejected: %s", connection.id, e)
            return attempt.result(
                EntryOutcome.not_eligible,
                reasons=[e.detail or "The rewards service rejected this entry"],
            )
        except Exception:
            logger.exception("Submission for connection %s raised unexpectedly", connection.id)
            self._metrics.inc(PIPELINE_INTERNAL_ERRORS)
            return attempt.result(EntryOutcome.internal)
        return await self._interpret_submission(attempt, submission)

    async def _interpret_submission(
        self, attempt: _Attempt, submission: SubmissionResult
    ) -> EntryResult:
        if submission.status == "already_entered":
            await self._record_discovered(attempt, "submission-409")
            return attempt.result(EntryOutcome.already_entered, reasons=["backend-409"])
        points = submission.points
        if points is None and attempt.entity is not None:
            points = getattr(attempt.entity, "points", None)
        return attempt.result(
            EntryOutcome.accepted,
            points=points,
            pending_review=attempt.pending_review or submission.pending_review,
            details={"submission": submission.data},
        )

    def _settle_later(self, attempt: _Attempt, task: "asyncio.Task[SubmissionResult]") -> None:
        settle = asyncio.ensure_future(self._settle(attempt, task))
        self._background.add(settle)
        settle.add_done_callback(self._background.discard)

    async def _settle(self, attempt: _Attempt, task: "asyncio.Task[SubmissionResult]") -> None:
        """Record the result of a submission that finished after the budget."""
        connection = attempt.connection
        assert connection is not None
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(
                "Late submission for connection %s user %s failed: %s",
                connection.id, attempt.request.chat_user_id, error,
            )
            return
        submission = task.result()
        if submission.status == "already_entered":
            await self._record_discovered(attempt, "late-409")
            return
        try:
            await self._attempts.record(
                connection_id=connection.id,
                chat_user_id=attempt.request.chat_user_id,
                remote_user_id=attempt.link.remote_user_id if attempt.link else None,
                started_at=attempt.started_at,
                stage=EntryStage.submission.value,
                outcome=EntryOutcome.accepted,
                reason="settled-after-timeout",
                details={"submission": submission.data},
            )
        except DuplicateAcceptedEntry:
            logger.info("Late accepted entry for connection %s already recorded", connection.id)
            return
        await self._connections.increment_counters(connection.id, accepted=True)
        await self._refresh(connection.id)
        logger.info(
            "Settled late submission for connection %s user %s as accepted",
            connection.id, attempt.request.chat_user_id,
        )

    async def drain(self) -> None:
        """Wait for background settlements (shutdown and tests)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _record_discovered(self, attempt: _Attempt, source: str) -> None:
        """Persist an accepted entry the backend knew about but we did not."""
        connection = attempt.connection
        assert connection is not None
        try:
            await self._attempts.record(
                connection_id=connection.id,
                chat_user_id=attempt.request.chat_user_id,
                remote_user_id=attempt.link.remote_user_id if attempt.link else None,
                started_at=attempt.started_at,
                stage=attempt.stage.value,
                outcome=EntryOutcome.accepted,
                reason=f"discovered:{source}",
            )
        except DuplicateAcceptedEntry:
            logger.debug("Discovered entry for connection %s already recorded", connection.id)

    async def _refresh(self, connection_id: str) -> None:
        if self._request_refresh is None:
            return
        try:
            await self._request_refresh(connection_id)
        except Exception:
            logger.exception("Failed to request refresh for connection %s", connection_id)

    async def _post_actions(self, attempt: _Attempt, result: EntryResult) -> None:
        """Stage 9. Failures here are logged; the outcome stands."""
        request = attempt.request
        connection = attempt.connection
        previous_stage = result.stage
        attempt.stage = EntryStage.post_actions
        try:
            if attempt.counted:
                await self._rate_limiter.hit(
                    RATE_LIMIT_KIND, request.chat_user_id, request.connection_id
                )
            if connection is None:
                return
            try:
                await self._attempts.record(
                    connection_id=connection.id,
                    chat_user_id=request.chat_user_id,
                    remote_user_id=attempt.link.remote_user_id if attempt.link else None,
                    started_at=attempt.started_at,
                    stage=previous_stage.value,
                    outcome=result.outcome,
                    reason="; ".join(result.reasons)[:1000] or None,
                    details=result.details or None,
                )
            except DuplicateAcceptedEntry as e:
                logger.critical(
                    "Invariant violation: %s (backend accepted a second entry)", e
                )
                self._metrics.inc(INVARIANT_VIOLATIONS)
                result.outcome = EntryOutcome.already_entered
                result.reasons.append("duplicate-accepted-entry")
                return
            await self._connections.increment_counters(
                connection.id, accepted=result.outcome == EntryOutcome.accepted
            )
            if result.outcome.is_success:
                await self._refresh(connection.id)
            if attempt.link is not None:
                await self._account_links.touch(request.chat_user_id)
        except Exception:
            logger.exception("Post-actions failed for connection %s", request.connection_id)
            self._metrics.inc(PIPELINE_INTERNAL_ERRORS)
