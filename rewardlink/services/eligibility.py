"""Static eligibility checks run before verification.

Only facts that need no third party are checked here: the entity's time
window and capacity, and the per-user gates the backend advertises on
the entity. The entity passed in must be the freshly fetched one, so a
backend ``ended`` always wins over a stale projection.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime

from rewardlink.services.entities import (
    GateKind,
    Projection,
    RemoteUser,
    is_capacity_reached,
    is_terminal,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EligibilityReason:
    """One structured reason a user is not eligible."""

    code: str
    message: str


@dataclass
class EligibilityResult:
    eligible: bool
    reasons: list[EligibilityReason] = field(default_factory=list)

    def messages(self) -> list[str]:
        return [r.message for r in self.reasons]


def _check_gate(kind: str, value: object, user: RemoteUser, now: datetime) -> EligibilityReason | None:
    if kind == GateKind.minimum_level.value:
        required = int(value or 0)
        if user.level < required:
            return EligibilityReason(
                "level-too-low", f"Requires level {required} (you are level {user.level})"
            )
        return None
    if kind == GateKind.required_tasks.value:
        required_ids = [str(v) for v in (value or [])] if isinstance(value, list) else [str(value)]
        missing = [t for t in required_ids if t not in user.completed_task_ids]
        if missing:
            return EligibilityReason(
                "prerequisite-missing",
                f"Complete {len(missing)} prerequisite task(s) first",
            )
        return None
    if kind == GateKind.account_age_days.value:
        required_days = int(value or 0)
        if user.created_at is None:
            return EligibilityReason(
                "account-age-unknown", "Your account age could not be determined"
            )
        age_days = (now - user.created_at).days
        if age_days < required_days:
            return EligibilityReason(
                "account-too-new",
                f"Your account must be at least {required_days} days old",
            )
        return None
    logger.warning("Ignoring unknown eligibility gate '%s'", kind)
    return None


def check_eligibility(entity: Projection, user: RemoteUser, now: datetime) -> EligibilityResult:
    """Evaluate every static check and collect all failing reasons."""
    reasons: list[EligibilityReason] = []
    if entity.start_time is not None and now < entity.start_time:
        reasons.append(EligibilityReason("not-started", "This has not started yet"))
    if is_terminal(entity, now):
        reasons.append(EligibilityReason("ended", "This has already ended"))
    if is_capacity_reached(entity):
        reasons.append(EligibilityReason("capacity-reached", "This has reached maximum capacity"))
    for gate in entity.gates:
        reason = _check_gate(gate.kind, gate.value, user, now)
        if reason is not None:
            reasons.append(reason)
    return EligibilityResult(eligible=not reasons, reasons=reasons)
