"""Error code registry with E-XXXX format codes.

This module defines the error code system for RewardLink, organizing errors
into categories:
- E-1xxx: Input and authorization errors
- E-2xxx: Entry pipeline outcomes shown to users
- E-3xxx: Backend API errors
- E-4xxx: System/internal errors
- E-5xxx: Chat platform errors

Each error includes a code, title, message template, and remediation steps.
The entry pipeline renders its user-facing messages from this registry.
"""

from dataclasses import dataclass
from enum import Enum

from rewardlink.db.models import EntryOutcome


class ErrorCategory(str, Enum):
    """Categories for error codes."""

    INPUT = "input"  # E-1xxx: Input and authorization errors
    ENTRY = "entry"  # E-2xxx: Entry pipeline outcomes
    BACKEND = "backend"  # E-3xxx: Backend API errors
    SYSTEM = "system"  # E-4xxx: System/internal errors
    CHAT = "chat"  # E-5xxx: Chat platform errors


@dataclass
class ErrorCode:
    """Definition of an error code with metadata.

    Attributes:
        code: Error code in E-XXXX format.
        category: Error category for grouping.
        title: Short title for display.
        message_template: Message with {placeholders} for context.
        remediation: Action user should take to resolve.
        is_retryable: Whether the operation can be retried without user action.
    """

    code: str  # E-XXXX format
    category: ErrorCategory
    title: str  # Short title for display
    message_template: str  # Message with {placeholders}
    remediation: str  # Action user should take
    is_retryable: bool = False  # Can be retried without user action


# Error registry - all defined error codes
ERROR_REGISTRY: dict[str, ErrorCode] = {
    # Input and authorization errors (E-1xxx)
    "E-1001": ErrorCode(
        code="E-1001",
        category=ErrorCategory.INPUT,
        title="Invalid Input",
        message_template="{detail}",
        remediation="Check the command arguments and try again.",
    ),
    "E-1002": ErrorCode(
        code="E-1002",
        category=ErrorCategory.INPUT,
        title="Not Authorized",
        message_template="You are not allowed to do that: {detail}",
        remediation="Ask a server administrator with Manage Server permission.",
    ),
    "E-1003": ErrorCode(
        code="E-1003",
        category=ErrorCategory.INPUT,
        title="Already Connected",
        message_template="This {kind} is already posted in this server.",
        remediation="Disconnect the existing post before posting it again.",
    ),
    "E-1004": ErrorCode(
        code="E-1004",
        category=ErrorCategory.INPUT,
        title="Connection Not Found",
        message_template="No post connection '{connection_id}' exists.",
        remediation="Use the connection id shown when the post was created.",
    ),
    # Entry pipeline outcomes (E-2xxx)
    "E-2001": ErrorCode(
        code="E-2001",
        category=ErrorCategory.ENTRY,
        title="Slow Down",
        message_template="You are attempting this too frequently. Please wait {retry_after} and try again.",
        remediation="Wait for the rate-limit window to pass.",
    ),
    "E-2002": ErrorCode(
        code="E-2002",
        category=ErrorCategory.ENTRY,
        title="Account Not Linked",
        message_template="You need to link your account first. Visit {link_url} to get started.",
        remediation="Link your account, then press the button again.",
    ),
    "E-2003": ErrorCode(
        code="E-2003",
        category=ErrorCategory.ENTRY,
        title="No Longer Active",
        message_template="This {kind} is no longer active.",
        remediation="Look for a newer post in this server.",
    ),
    "E-2004": ErrorCode(
        code="E-2004",
        category=ErrorCategory.ENTRY,
        title="Not Eligible",
        message_template="You are not eligible yet:\n{reasons}",
        remediation="Meet the listed conditions and try again.",
    ),
    "E-2005": ErrorCode(
        code="E-2005",
        category=ErrorCategory.ENTRY,
        title="Requirements Not Met",
        message_template="Requirements not met:\n{reasons}",
        remediation="Complete the listed requirements and try again.",
        is_retryable=True,
    ),
    "E-2006": ErrorCode(
        code="E-2006",
        category=ErrorCategory.ENTRY,
        title="Timed Out",
        message_template="This took too long. If your entry went through it will show up shortly; otherwise please try again.",
        remediation="Press the button again in a moment.",
        is_retryable=True,
    ),
    # Backend API errors (E-3xxx)
    "E-3001": ErrorCode(
        code="E-3001",
        category=ErrorCategory.BACKEND,
        title="Entity Not Found",
        message_template="{kind} '{entity_id}' was not found.",
        remediation="Check the id on the website and try again.",
    ),
    "E-3002": ErrorCode(
        code="E-3002",
        category=ErrorCategory.BACKEND,
        title="Service Unavailable",
        message_template="The rewards service could not be reached. Please try again.",
        remediation="Retry in a few seconds.",
        is_retryable=True,
    ),
    "E-3003": ErrorCode(
        code="E-3003",
        category=ErrorCategory.BACKEND,
        title="Request Rejected",
        message_template="The rewards service rejected the request: {detail}",
        remediation="Check the requirements and try again.",
    ),
    # System errors (E-4xxx)
    "E-4001": ErrorCode(
        code="E-4001",
        category=ErrorCategory.SYSTEM,
        title="Internal Error",
        message_template="Something went wrong on our side. The team has been notified.",
        remediation="Try again later.",
    ),
    "E-4002": ErrorCode(
        code="E-4002",
        category=ErrorCategory.SYSTEM,
        title="Invariant Violation",
        message_template="Duplicate accepted entry detected for connection {connection_id} and user {chat_user_id}.",
        remediation="Operator attention required.",
    ),
    # Chat platform errors (E-5xxx)
    "E-5001": ErrorCode(
        code="E-5001",
        category=ErrorCategory.CHAT,
        title="Post Failed",
        message_template="Could not post to channel {channel_id}: {detail}",
        remediation="Check the bot can send messages and embed links in that channel.",
        is_retryable=True,
    ),
}


# Entry outcome -> error code used for the user-facing message.
# Success outcomes have no error code.
OUTCOME_CODES: dict[EntryOutcome, str] = {
    EntryOutcome.rate_limited: "E-2001",
    EntryOutcome.account_not_linked: "E-2002",
    EntryOutcome.connection_inactive: "E-2003",
    EntryOutcome.not_eligible: "E-2004",
    EntryOutcome.requirements_unmet: "E-2005",
    EntryOutcome.timeout: "E-2006",
    EntryOutcome.transport_error: "E-3002",
    EntryOutcome.internal: "E-4001",
}


def get_error(code: str) -> ErrorCode | None:
    """Get error definition by code.

    Args:
        code: Error code in E-XXXX format.

    Returns:
        ErrorCode if found, None otherwise.
    """
    return ERROR_REGISTRY.get(code)


def get_errors_by_category(category: ErrorCategory) -> list[ErrorCode]:
    """Get all errors in a category.

    Args:
        category: The error category to filter by.

    Returns:
        List of ErrorCode objects in the specified category.
    """
    return [e for e in ERROR_REGISTRY.values() if e.category == category]


def code_for_outcome(outcome: EntryOutcome) -> str | None:
    """Return the error code rendered for a non-success entry outcome."""
    return OUTCOME_CODES.get(outcome)


def render_message(code: str, **context: object) -> str:
    """Render an error's message template with context values.

    Missing placeholders leave the template untouched rather than failing,
    so a partially-populated context still yields a readable message.
    """
    error_def = get_error(code)
    if error_def is None:
        return f"Unknown error: {code}"
    try:
        return error_def.message_template.format(**context)
    except (KeyError, IndexError):
        return error_def.message_template
