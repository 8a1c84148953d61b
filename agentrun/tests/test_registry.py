from __future__ import annotations

import pytest

from agentrun.src.core.errors import InvalidToolDefinitionError, ToolAlreadyRegisteredError, ToolExecutionError
from agentrun.src.core.tools import RetryPolicy, ToolDefinition, is_retryable, next_delay
from agentrun.src.core.tools.registry import ToolRegistry, permission_matches
from agentrun.src.core.tools.validation import missing_required, validate_input


CATALOG = [
    {
        "id": "memory:read",
        "category": "read",
        "riskLevel": "read",
        "permissions": ["memory:*"],
        "inputSchema": {"type": "object", "required": ["key"]},
    },
    {
        "id": "memory:write",
        "category": "write",
        "riskLevel": "write",
        "permissions": ["memory:write"],
        "deprecated": True,
        "deprecatedMessage": "use memory:put",
    },
    {
        "id": "email:send",
        "name": "Send email",
        "category": "sideEffect",
        "riskLevel": "publish",
        "permissions": ["*"],
    },
]


def test_catalog_is_normalised_and_queryable() -> None:
    registry = ToolRegistry(CATALOG)

    assert len(registry) == 3
    assert "memory:read" in registry
    assert registry.get("unknown") is None
    assert [tool.id for tool in registry.get_by_category("write")] == ["memory:write"]
    assert [tool.id for tool in registry.get_by_category("sideeffect")] == ["email:send"]
    assert [tool.id for tool in registry.get_by_risk_level("PUBLISH")] == ["email:send"]
    assert registry.get("email:send").display_name == "Send email"
    assert registry.get("memory:read").display_name == "memory:read"


def test_duplicate_registration_is_rejected() -> None:
    registry = ToolRegistry(CATALOG[:1])
    with pytest.raises(ToolAlreadyRegisteredError):
        registry.register(CATALOG[0])
    registry.unregister("memory:read")
    registry.register(CATALOG[0])
    assert len(registry) == 1


@pytest.mark.parametrize(
    "definition",
    [
        {"category": "read"},
        {"id": "x", "category": "launch"},
        {"id": "x", "riskLevel": "extreme"},
        {"id": "x", "inputSchema": {"type": 12}},
        {"id": "x", "timeout": 0},
        {"id": "x", "retryPolicy": {"maxRetries": -1}},
        {"id": "x", "budgetCost": {"defaultTokens": -5}},
    ],
)
def test_invalid_definitions_fail_at_registration(definition) -> None:
    with pytest.raises(InvalidToolDefinitionError):
        ToolRegistry([definition])


def test_permission_wildcards() -> None:
    registry = ToolRegistry(CATALOG)

    assert registry.has_permission("memory:read", "memory:read")
    assert registry.has_permission("memory:read", "memory:delete")
    assert not registry.has_permission("memory:write", "memory:delete")
    assert registry.has_permission("email:send", "anything")
    assert not registry.has_permission("unknown", "memory:read")
    assert permission_matches("a:*", "a:b")
    assert not permission_matches("a:*", "ab")


def test_deprecation_and_side_effects() -> None:
    registry = ToolRegistry(CATALOG)

    assert registry.is_deprecated("memory:write")
    assert not registry.is_deprecated("memory:read")
    assert registry.get("email:send").causes_side_effect
    assert not registry.get("memory:write").causes_side_effect


def test_dataclass_definitions_are_accepted() -> None:
    registry = ToolRegistry(
        [ToolDefinition(id="search:web", category="READ", risk_level="Read", permissions=["search:*"])]
    )

    spec = registry.get("search:web")
    assert spec.category == "read"
    assert spec.risk_level == "read"
    assert spec.permissions == ("search:*",)
    assert spec.to_dict()["riskLevel"] == "read"


def test_backoff_is_exponential_and_capped() -> None:
    policy = RetryPolicy(max_retries=5, backoff_ms=1000, backoff_multiplier=2, max_backoff_ms=3000)

    assert [next_delay(attempt, policy) for attempt in range(4)] == [1000, 2000, 3000, 3000]
    assert next_delay(0, None) == 0.0


def test_retryable_errors_match_on_code() -> None:
    policy = RetryPolicy(max_retries=1, retryable_errors=["TEMPORARY"])

    assert is_retryable(ToolExecutionError("TEMPORARY"), policy)
    assert not is_retryable(ToolExecutionError("FATAL"), policy)
    assert not is_retryable(RuntimeError("no code"), policy)
    assert not is_retryable(ToolExecutionError("TEMPORARY"), RetryPolicy(max_retries=1))


def test_validation_reports_missing_fields_first() -> None:
    registry = ToolRegistry(
        [
            {
                "id": "notes:add",
                "inputSchema": {
                    "type": "object",
                    "required": ["title", "body"],
                    "properties": {"title": {"type": "string"}, "tags": {"type": "array"}},
                },
            }
        ]
    )
    spec = registry.get("notes:add")

    assert missing_required(spec.input_schema, {"title": "x"}) == ["body"]
    assert validate_input(spec, {"title": "x"}) == ["missing required field 'body'"]
    assert validate_input(spec, {"title": "x", "body": "y", "tags": "a"}) == ["tags: 'a' is not of type 'array'"]
    assert validate_input(spec, {"title": "x", "body": "y"}) == []
    assert validate_input(spec, None) == ["missing required field 'title'", "missing required field 'body'"]


def test_empty_schema_accepts_anything() -> None:
    registry = ToolRegistry([{"id": "noop"}])
    assert validate_input(registry.get("noop"), {"whatever": 1}) == []
