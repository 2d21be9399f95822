"""Tests for the execution context helpers and template resolution."""

import pytest

from services.execution.context import (
    MISSING,
    get_path,
    is_valid_variable_name,
    require_variable_name,
    user_view,
    with_output,
)
from services.execution.errors import ConfigurationError
from services.parameter_resolver import ParameterResolver, resolve_text, resolve_value


CONTEXT = {
    "user": {"name": "Ada", "tags": ["admin", "ops"], "profile": {"first name": "Ada"}},
    "count": 3,
    "active": True,
    "items": [{"id": 1}, {"id": 2}],
}


class TestGetPath:
    def test_dot_and_index_paths(self):
        assert get_path(CONTEXT, "user.name") == "Ada"
        assert get_path(CONTEXT, "user.tags.1") == "ops"
        assert get_path(CONTEXT, "items[0].id") == 1

    def test_quoted_bracket_keys(self):
        assert get_path(CONTEXT, 'user.profile["first name"]') == "Ada"

    def test_missing_segments(self):
        assert get_path(CONTEXT, "user.email") is MISSING
        assert get_path(CONTEXT, "items[5].id") is MISSING
        assert get_path(CONTEXT, "count.value", default=None) is None

    def test_stored_none_is_not_missing(self):
        assert get_path({"a": None}, "a") is None


class TestVariableNames:
    @pytest.mark.parametrize("name", ["result", "_private", "item2"])
    def test_valid(self, name):
        assert is_valid_variable_name(name)

    @pytest.mark.parametrize("name", ["__error", "2fast", "has space", "", None])
    def test_invalid(self, name):
        assert not is_valid_variable_name(name)

    def test_missing_name_without_default(self):
        with pytest.raises(ConfigurationError) as exc_info:
            require_variable_name({})
        assert exc_info.value.error_code == "VARIABLE_NAME_MISSING"

    def test_default_is_used(self):
        assert require_variable_name({"variableName": "  "}, default="loop") == "loop"

    def test_reserved_name_rejected(self):
        with pytest.raises(ConfigurationError) as exc_info:
            require_variable_name({"variableName": "__loopData"})
        assert exc_info.value.error_code == "INVALID_VARIABLE_NAME"


def test_with_output_returns_new_context():
    original = {"a": 1}
    updated = with_output(original, "b", 2, **{"__signal": True})
    assert original == {"a": 1}
    assert updated == {"a": 1, "b": 2, "__signal": True}
    assert user_view(updated) == {"a": 1, "b": 2}


def test_with_output_replace_drops_prior_keys():
    assert with_output({"a": 1}, "b", 2, replace=True) == {"b": 2}


class TestTemplates:
    def test_text_substitution(self):
        assert resolve_text("Hi {{user.name}}, you have {{ count }} items", CONTEXT) == \
            "Hi Ada, you have 3 items"

    def test_unresolved_token_becomes_empty(self):
        assert resolve_text("[{{user.email}}]", CONTEXT) == "[]"

    def test_booleans_and_collections_render_as_json(self):
        assert resolve_text("{{active}}", CONTEXT) == "true"
        assert resolve_text("tags={{user.tags}}", CONTEXT) == 'tags=["admin","ops"]'

    def test_json_helper(self):
        assert resolve_text("{{json user.name}}", CONTEXT) == '"Ada"'

    def test_non_template_passthrough(self):
        assert resolve_text("plain text", CONTEXT) == "plain text"
        assert resolve_text(None, CONTEXT) == ""

    def test_single_token_keeps_type(self):
        assert resolve_value("{{items}}", CONTEXT) == [{"id": 1}, {"id": 2}]
        assert resolve_value(" {{count}} ", CONTEXT) == 3

    def test_nested_structures(self):
        resolved = resolve_value({"to": "{{user.name}}", "cc": ["{{user.tags.0}}"]}, CONTEXT)
        assert resolved == {"to": "Ada", "cc": ["admin"]}

    def test_resolver_limits_fields(self):
        params = {"url": "https://x/{{count}}", "body": "{{count}}"}
        resolved = ParameterResolver(CONTEXT).resolve(params, "url")
        assert resolved == {"url": "https://x/3", "body": "{{count}}"}
