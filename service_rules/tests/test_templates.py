"""
Unit tests for template placeholder resolution.
"""

import pytest
from datetime import datetime, timezone

from service_rules.app.rules.models import RuleExecutionContext
from service_rules.app.rules.templates import (
    TemplateResolver, get_path, resolve_templates, set_path
)


class TestTemplateResolution:
    """Test cases for resolve_templates."""

    @pytest.fixture
    def context(self):
        """Create execution context with a nested entity."""
        return RuleExecutionContext(
            entity_id="order-1",
            entity_type="order",
            user_id="user-7",
            correlation_id="corr-123",
            timestamp=datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc),
            entity={
                "name": "Ann",
                "amount": 42,
                "note": None,
                "customer": {"email": "ann@example.com", "tier": "gold"},
                "items": [{"sku": "A-1", "qty": 2}, {"sku": "B-2", "qty": 1}],
            }
        )

    def test_entity_path_interpolation(self, context):
        """Test resolving an entity path inside text."""
        assert resolve_templates("Hello {{entity.name}}", context) == "Hello Ann"

    def test_unknown_path_left_intact(self, context):
        """Test that an unresolved placeholder stays literal."""
        assert resolve_templates("Hello {{entity.missing}}", context) == "Hello {{entity.missing}}"
        assert resolve_templates("{{nothing.here}}", context) == "{{nothing.here}}"

    def test_context_roots(self, context):
        """Test resolving every context root name."""
        assert resolve_templates("{{entityId}}", context) == "order-1"
        assert resolve_templates("{{entityType}}", context) == "order"
        assert resolve_templates("{{userId}}", context) == "user-7"
        assert resolve_templates("{{correlationId}}", context) == "corr-123"

    def test_bare_path_navigates_entity(self, context):
        """Test that a non-root leading segment navigates into the entity."""
        assert resolve_templates("{{customer.email}}", context) == "ann@example.com"

    def test_single_placeholder_keeps_type(self, context):
        """Test that a whole-string placeholder yields the raw value."""
        assert resolve_templates("{{entity.amount}}", context) == 42
        assert resolve_templates("{{entity.customer}}", context) == {
            "email": "ann@example.com",
            "tier": "gold",
        }

    def test_list_index_segments(self, context):
        """Test numeric segments index into lists."""
        assert resolve_templates("{{entity.items.1.sku}}", context) == "B-2"
        assert resolve_templates("{{entity.items.5.sku}}", context) == "{{entity.items.5.sku}}"

    def test_interpolated_value_rendering(self, context):
        """Test text rendering of None, numbers and timestamps."""
        assert resolve_templates("[{{entity.note}}]", context) == "[]"
        assert resolve_templates("Total: {{entity.amount}}", context) == "Total: 42"
        assert resolve_templates("At {{timestamp}}", context) == "At 2024-05-01T12:30:00+00:00"

    def test_whitespace_inside_braces(self, context):
        """Test whitespace around the path is allowed."""
        assert resolve_templates("{{ entity.name }}", context) == "Ann"

    def test_malformed_placeholders_untouched(self, context):
        """Test text that does not match the grammar is left alone."""
        assert resolve_templates("{{}}", context) == "{{}}"
        assert resolve_templates("{{entity name}}", context) == "{{entity name}}"
        assert resolve_templates("{{entity.}}", context) == "{{entity.}}"
        assert resolve_templates("open {{entity.name", context) == "open {{entity.name"

    def test_multiple_placeholders(self, context):
        """Test several placeholders in one string."""
        result = resolve_templates("{{entity.name}} <{{customer.email}}> on {{entityType}}", context)
        assert result == "Ann <ann@example.com> on order"

    def test_recurses_through_containers(self, context):
        """Test resolution recurses through dicts and lists."""
        value = {
            "to": ["{{customer.email}}", "ops@example.com"],
            "body": {"greeting": "Hi {{entity.name}}", "count": 3},
        }

        result = resolve_templates(value, context)

        assert result == {
            "to": ["ann@example.com", "ops@example.com"],
            "body": {"greeting": "Hi Ann", "count": 3},
        }

    def test_non_string_values_pass_through(self, context):
        """Test that numbers and None are returned unchanged."""
        assert resolve_templates(5, context) == 5
        assert resolve_templates(None, context) is None

    def test_resolution_does_not_mutate_input(self, context):
        """Test that the source parameters are not modified."""
        params = {"message": "Hi {{entity.name}}"}
        resolve_templates(params, context)
        assert params == {"message": "Hi {{entity.name}}"}

    def test_extra_names_take_precedence(self, context):
        """Test extra lookup names shadow entity fields."""
        resolver = TemplateResolver(context, extra={"name": "Bob"})
        assert resolver.resolve("{{name}}") == "Bob"
        assert resolver.resolve("{{entity.name}}") == "Ann"


class TestPathHelpers:
    """Test cases for get_path and set_path."""

    def test_get_path(self):
        """Test walking dicts and lists."""
        data = {"a": {"b": [10, {"c": "deep"}]}}
        assert get_path(data, ["a", "b", "1", "c"]) == "deep"
        assert get_path(data, ["a", "x"], "default") == "default"
        assert get_path(data, ["a", "b", "x"]) is None

    def test_set_path_creates_intermediate_dicts(self):
        """Test writing a nested field."""
        data = {"a": 1}
        set_path(data, "b.c.d", "value")
        assert data == {"a": 1, "b": {"c": {"d": "value"}}}

    def test_set_path_overwrites(self):
        """Test overwriting an existing field."""
        data = {"status": "draft"}
        set_path(data, "status", "approved")
        assert data["status"] == "approved"
