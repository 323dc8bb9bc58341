"""Secret redaction for logs, config dumps and persisted error text.

The bot handles three kinds of credentials: the chat platform token, the
backend API key and the webhook/OAuth signing secrets. None of them may
reach a log line, the ``config show`` output, or ``last_error`` columns.
"""

import re
from typing import Any

# Key substrings whose values are always masked (case-insensitive)
SENSITIVE_KEY_PARTS = frozenset({
    "api_key", "apikey", "token", "secret", "authorization", "password",
    "signature",
})

REDACTED = "***REDACTED***"


def _is_sensitive(key: str, parts: frozenset[str]) -> bool:
    lowered = key.lower()
    return any(part in lowered for part in parts)


def redact_for_logging(
    obj: dict[str, Any],
    sensitive_parts: frozenset[str] = SENSITIVE_KEY_PARTS,
) -> dict[str, Any]:
    """Return a copy of ``obj`` with sensitive values masked.

    Nested dicts and lists of dicts are walked recursively. Header
    mappings (``X-Signature``, ``Authorization``) are matched the same
    way as config keys.

    Args:
        obj: Mapping to redact. Not mutated.
        sensitive_parts: Key substrings that mark a value as secret.

    Returns:
        New dict safe to log or print.
    """
    redacted: dict[str, Any] = {}
    for key, value in obj.items():
        if _is_sensitive(str(key), sensitive_parts):
            redacted[key] = REDACTED if value not in (None, "") else value
        elif isinstance(value, dict):
            redacted[key] = redact_for_logging(value, sensitive_parts)
        elif isinstance(value, list):
            redacted[key] = [
                redact_for_logging(item, sensitive_parts) if isinstance(item, dict) else item
                for item in value
            ]
        else:
            redacted[key] = value
    return redacted


_INLINE_SECRET = re.compile(
    r"(?i)(?:bearer\s+[A-Za-z0-9._\-]+|(?:api_key|token|secret)\s*[=:]\s*\S+)"
)


def sanitize_error_message(message: str | None, max_length: int = 1000) -> str | None:
    """Mask inline credentials in free text and cap its length.

    Used before persisting reconciler errors and before logging backend
    error bodies.
    """
    if message is None:
        return None
    cleaned = _INLINE_SECRET.sub(REDACTED, message)
    if len(cleaned) > max_length:
        cleaned = cleaned[: max_length - 3] + "..."
    return cleaned
