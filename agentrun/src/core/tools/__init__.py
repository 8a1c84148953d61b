from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Mapping, Sequence

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

from ..errors import InvalidToolDefinitionError


RISK_LEVELS = ("read", "write", "publish", "critical")
CATEGORIES = ("read", "write", "publish", "sideEffect")

_RISK_ORDER = {level: index for index, level in enumerate(RISK_LEVELS)}


def normalise_risk_level(level: str | None) -> str:
    if not level:
        return "read"
    level = str(level).strip().lower()
    if level not in _RISK_ORDER:
        raise InvalidToolDefinitionError(f"Unknown risk level: {level}")
    return level


def risk_value(level: str) -> int:
    return _RISK_ORDER[normalise_risk_level(level)]


def normalise_category(category: str | None) -> str:
    if not category:
        return "read"
    text = str(category).strip()
    if text.lower() == "sideeffect":
        return "sideEffect"
    text = text.lower()
    if text not in CATEGORIES:
        raise InvalidToolDefinitionError(f"Unknown tool category: {category}")
    return text


def _copy_mapping(mapping: Mapping[str, Any] | None) -> dict[str, Any]:
    return dict(mapping or {})


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff settings for a tool's internal retry loop."""

    max_retries: int = 0
    backoff_ms: float = 1000
    backoff_multiplier: float = 2.0
    max_backoff_ms: float = 30000
    retryable_errors: Sequence[str] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise InvalidToolDefinitionError("retry_policy.max_retries must be >= 0")
        if self.backoff_ms < 0 or self.max_backoff_ms < 0:
            raise InvalidToolDefinitionError("retry_policy backoff values must be >= 0")
        if self.backoff_multiplier < 1:
            raise InvalidToolDefinitionError("retry_policy.backoff_multiplier must be >= 1")
        object.__setattr__(self, "retryable_errors", tuple(str(code) for code in self.retryable_errors))


@dataclass(frozen=True)
class BudgetCost:
    """Estimated consumption of a single call; ``default_time_ms`` doubles as timeout."""

    default_tokens: int | None = None
    default_time_ms: float | None = None


@dataclass(frozen=True)
class ToolDefinition:
    """Static, registry-owned description of a tool."""

    id: str
    category: str
    risk_level: str
    input_schema: Mapping[str, Any] = field(default_factory=dict)
    output_schema: Mapping[str, Any] | None = None
    permissions: Sequence[str] = field(default_factory=tuple)
    budget_cost: BudgetCost = field(default_factory=BudgetCost)
    retry_policy: RetryPolicy | None = None
    name: str | None = None
    description: str | None = None
    timeout_ms: float | None = None
    deprecated: bool = False
    deprecated_message: str | None = None

    @property
    def display_name(self) -> str:
        return self.name or self.id

    @property
    def causes_side_effect(self) -> bool:
        return self.category in {"publish", "sideEffect"} or self.risk_level in {"publish", "critical"}

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "name": self.display_name,
            "category": self.category,
            "riskLevel": self.risk_level,
            "inputSchema": dict(self.input_schema),
            "permissions": list(self.permissions),
            "budgetCost": {
                "defaultTokens": self.budget_cost.default_tokens,
                "defaultTimeMs": self.budget_cost.default_time_ms,
            },
            "deprecated": self.deprecated,
        }
        if self.output_schema is not None:
            payload["outputSchema"] = dict(self.output_schema)
        if self.description:
            payload["description"] = self.description
        if self.timeout_ms is not None:
            payload["timeout"] = self.timeout_ms
        if self.deprecated_message:
            payload["deprecatedMessage"] = self.deprecated_message
        if self.retry_policy is not None:
            policy = self.retry_policy
            payload["retryPolicy"] = {
                "maxRetries": policy.max_retries,
                "backoffMs": policy.backoff_ms,
                "backoffMultiplier": policy.backoff_multiplier,
                "maxBackoffMs": policy.max_backoff_ms,
                "retryableErrors": list(policy.retryable_errors),
            }
        return payload


def _pick(raw: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return default


def _coerce_retry_policy(raw: Any) -> RetryPolicy | None:
    if raw is None:
        return None
    if isinstance(raw, RetryPolicy):
        return raw
    if not isinstance(raw, Mapping):
        raise InvalidToolDefinitionError("retry_policy must be a RetryPolicy or mapping")
    return RetryPolicy(
        max_retries=int(_pick(raw, "max_retries", "maxRetries", default=0)),
        backoff_ms=float(_pick(raw, "backoff_ms", "backoffMs", default=1000)),
        backoff_multiplier=float(_pick(raw, "backoff_multiplier", "backoffMultiplier", default=2)),
        max_backoff_ms=float(_pick(raw, "max_backoff_ms", "maxBackoffMs", default=30000)),
        retryable_errors=tuple(_pick(raw, "retryable_errors", "retryableErrors", default=()) or ()),
    )


def _coerce_budget_cost(raw: Any) -> BudgetCost:
    if raw is None:
        return BudgetCost()
    if isinstance(raw, BudgetCost):
        return raw
    if not isinstance(raw, Mapping):
        raise InvalidToolDefinitionError("budget_cost must be a BudgetCost or mapping")
    tokens = _pick(raw, "default_tokens", "defaultTokens")
    time_ms = _pick(raw, "default_time_ms", "defaultTimeMs")
    if tokens is not None and int(tokens) < 0:
        raise InvalidToolDefinitionError("budget_cost.default_tokens must be >= 0")
    if time_ms is not None and float(time_ms) < 0:
        raise InvalidToolDefinitionError("budget_cost.default_time_ms must be >= 0")
    return BudgetCost(
        default_tokens=None if tokens is None else int(tokens),
        default_time_ms=None if time_ms is None else float(time_ms),
    )


def _check_schema(schema: Mapping[str, Any], *, label: str, tool_id: str) -> None:
    try:
        Draft202012Validator.check_schema(dict(schema))
    except SchemaError as exc:
        raise InvalidToolDefinitionError(f"Tool {tool_id} has an invalid {label}: {exc.message}") from exc


def normalise_definition(definition: ToolDefinition | Mapping[str, Any]) -> ToolDefinition:
    """Return a validated :class:`ToolDefinition`.

    Mappings may use either snake_case or the camelCase keys found in JSON tool
    catalogs (``riskLevel``, ``inputSchema``, ``budgetCost`` ...).  Schemas are
    checked for JSON-Schema well-formedness so a broken catalog fails at
    registration rather than on the first call.
    """

    if isinstance(definition, Mapping):
        raw = definition
        tool_id = _pick(raw, "id")
        if not tool_id:
            raise InvalidToolDefinitionError("Tool definition requires an id")
        definition = ToolDefinition(
            id=str(tool_id),
            category=_pick(raw, "category", default="read"),
            risk_level=_pick(raw, "risk_level", "riskLevel", default="read"),
            input_schema=_pick(raw, "input_schema", "inputSchema", default={}),
            output_schema=_pick(raw, "output_schema", "outputSchema"),
            permissions=tuple(_pick(raw, "permissions", default=()) or ()),
            budget_cost=_coerce_budget_cost(_pick(raw, "budget_cost", "budgetCost")),
            retry_policy=_coerce_retry_policy(_pick(raw, "retry_policy", "retryPolicy")),
            name=_pick(raw, "name"),
            description=_pick(raw, "description"),
            timeout_ms=_pick(raw, "timeout_ms", "timeout"),
            deprecated=bool(_pick(raw, "deprecated", default=False)),
            deprecated_message=_pick(raw, "deprecated_message", "deprecatedMessage"),
        )
    if not isinstance(definition, ToolDefinition):
        raise TypeError("definition must be a ToolDefinition or mapping")
    if not str(definition.id).strip():
        raise InvalidToolDefinitionError("Tool definition requires an id")

    input_schema = _copy_mapping(definition.input_schema)
    _check_schema(input_schema, label="input schema", tool_id=definition.id)
    output_schema = None
    if definition.output_schema is not None:
        output_schema = _copy_mapping(definition.output_schema)
        _check_schema(output_schema, label="output schema", tool_id=definition.id)
    timeout_ms = definition.timeout_ms
    if timeout_ms is not None:
        timeout_ms = float(timeout_ms)
        if timeout_ms <= 0:
            raise InvalidToolDefinitionError("timeout_ms must be positive")
    description = definition.description
    if description is not None:
        description = str(description).strip() or None

    return replace(
        definition,
        id=str(definition.id),
        category=normalise_category(definition.category),
        risk_level=normalise_risk_level(definition.risk_level),
        input_schema=input_schema,
        output_schema=output_schema,
        permissions=tuple(str(item) for item in definition.permissions),
        budget_cost=_coerce_budget_cost(definition.budget_cost),
        retry_policy=_coerce_retry_policy(definition.retry_policy),
        description=description,
        timeout_ms=timeout_ms,
    )


def next_delay(attempt: int, policy: RetryPolicy | None) -> float:
    """Backoff in milliseconds before retry number ``attempt + 1``."""

    if policy is None:
        return 0.0
    delay = policy.backoff_ms * (policy.backoff_multiplier ** max(attempt, 0))
    return float(min(delay, policy.max_backoff_ms))


def side_effect_target(tool_id: str, payload: Mapping[str, Any]) -> str:
    """Identity of what a side-effecting call acted on (``target`` input, else the tool)."""

    for key in ("target", "targetId", "resource"):
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
    return tool_id


def error_code(error: BaseException) -> str:
    code = getattr(error, "code", None)
    return str(code) if code else "UNKNOWN"


def is_retryable(error: BaseException, policy: RetryPolicy | None) -> bool:
    if policy is None or not policy.retryable_errors:
        return False
    return error_code(error) in policy.retryable_errors


__all__ = [
    "BudgetCost",
    "CATEGORIES",
    "RISK_LEVELS",
    "RetryPolicy",
    "ToolDefinition",
    "error_code",
    "is_retryable",
    "next_delay",
    "normalise_category",
    "normalise_definition",
    "normalise_risk_level",
    "risk_value",
    "side_effect_target",
]
