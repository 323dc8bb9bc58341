"""Error handling framework for RewardLink.

This package provides:
- Error code registry with E-XXXX format codes
- Typed domain exceptions raised by the Interactive-Post Engine

Error categories:
- E-1xxx: Input and authorization errors
- E-2xxx: Entry pipeline outcomes
- E-3xxx: Backend API errors
- E-4xxx: System/internal errors
- E-5xxx: Chat platform errors
"""

from rewardlink.errors.domain import (
    AlreadyBound,
    ChatPostFailed,
    ConnectionNotFound,
    DomainError,
    DuplicateAcceptedEntry,
    EntityNotFound,
    InputValidationError,
    InvariantViolation,
    NotAuthorized,
)
from rewardlink.errors.registry import (
    ERROR_REGISTRY,
    ErrorCategory,
    ErrorCode,
    code_for_outcome,
    get_error,
    get_errors_by_category,
    render_message,
)

__all__ = [
    # Registry
    "ErrorCode",
    "ErrorCategory",
    "ERROR_REGISTRY",
    "get_error",
    "get_errors_by_category",
    "code_for_outcome",
    "render_message",
    # Domain exceptions
    "DomainError",
    "InputValidationError",
    "NotAuthorized",
    "AlreadyBound",
    "ConnectionNotFound",
    "EntityNotFound",
    "ChatPostFailed",
    "InvariantViolation",
    "DuplicateAcceptedEntry",
]
