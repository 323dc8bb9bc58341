"""Tests for the E-XXXX error registry and domain exceptions."""

from rewardlink.db.models import EntryOutcome
from rewardlink.errors import (
    AlreadyBound,
    ChatPostFailed,
    ConnectionNotFound,
    DuplicateAcceptedEntry,
    EntityNotFound,
    ErrorCategory,
    InputValidationError,
    InvariantViolation,
    code_for_outcome,
    get_error,
    get_errors_by_category,
    render_message,
)
from rewardlink.errors.registry import ERROR_REGISTRY


class TestErrorRegistry:
    """Registry lookups and rendering."""

    def test_codes_match_their_keys(self):
        for key, err in ERROR_REGISTRY.items():
            assert err.code == key

    def test_get_unknown_code_returns_none(self):
        assert get_error("E-9999") is None

    def test_category_filter(self):
        entry_codes = {e.code for e in get_errors_by_category(ErrorCategory.ENTRY)}
        assert {"E-2001", "E-2002", "E-2003", "E-2004", "E-2005", "E-2006"} <= entry_codes
        assert all(code.startswith("E-2") for code in entry_codes)

    def test_render_fills_placeholders(self):
        msg = render_message("E-2002", link_url="https://example.test/link")
        assert "https://example.test/link" in msg

    def test_render_missing_placeholder_keeps_template(self):
        assert render_message("E-2003") == "This {kind} is no longer active."

    def test_render_unknown_code(self):
        assert render_message("E-0000") == "Unknown error: E-0000"


class TestOutcomeCodes:
    """Every failure outcome maps to a user-facing code."""

    def test_success_outcomes_have_no_code(self):
        assert code_for_outcome(EntryOutcome.accepted) is None
        assert code_for_outcome(EntryOutcome.already_entered) is None

    def test_failure_outcomes_have_codes(self):
        for outcome in EntryOutcome:
            if outcome.is_success:
                continue
            code = code_for_outcome(outcome)
            assert code is not None, outcome
            assert get_error(code) is not None


class TestDomainErrors:
    """Domain exceptions render through the registry."""

    def test_already_bound_message(self):
        err = AlreadyBound("guild-1", "task-1", "task")
        assert err.code == "E-1003"
        assert err.user_message() == "This task is already posted in this server."

    def test_connection_not_found_message(self):
        assert "conn-9" in ConnectionNotFound("conn-9").user_message()

    def test_entity_not_found_capitalizes_kind(self):
        assert EntityNotFound("allowlist", "a-1").user_message() == (
            "Allowlist 'a-1' was not found."
        )

    def test_chat_post_failed_carries_reason(self):
        msg = ChatPostFailed("chan-1", "Missing Access").user_message()
        assert "chan-1" in msg and "Missing Access" in msg

    def test_input_validation_uses_detail(self):
        assert InputValidationError("bad id").user_message() == "bad id"

    def test_duplicate_entry_is_invariant_violation(self):
        err = DuplicateAcceptedEntry("conn-1", "user-1")
        assert isinstance(err, InvariantViolation)
        assert err.code == "E-4002"
