"""Test helper utilities: fakes for Discord and builders for backend payloads."""

from tests.helpers.fakes import FakeChatGateway, FakeResponder, MutableClock
from tests.helpers.payloads import allowlist_payload, seed_connection, task_payload

__all__ = [
    "FakeChatGateway",
    "FakeResponder",
    "MutableClock",
    "allowlist_payload",
    "seed_connection",
    "task_payload",
]
