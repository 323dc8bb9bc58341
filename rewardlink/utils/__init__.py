"""Shared utilities for RewardLink."""

from rewardlink.utils.redaction import redact_for_logging, sanitize_error_message

__all__ = ["redact_for_logging", "sanitize_error_message"]
