"""Runtime validation of tool inputs at the untyped ``dict`` boundary.

Tool definitions are data, so inputs can only be checked dynamically.  The
minimal contract is required-field presence; on top of that the declared JSON
schema is applied for type tags and nested constraints.
"""

from __future__ import annotations

from typing import Any, List, Mapping

from jsonschema import Draft202012Validator

from . import ToolDefinition


def missing_required(schema: Mapping[str, Any], payload: Any) -> List[str]:
    required = schema.get("required")
    if not isinstance(required, (list, tuple)):
        return []
    if not isinstance(payload, Mapping):
        return [str(name) for name in required]
    return [str(name) for name in required if name not in payload]


def validate_input(definition: ToolDefinition, payload: Any) -> List[str]:
    """Return human-readable problems with ``payload``; empty when valid."""

    schema = dict(definition.input_schema)
    if not schema:
        return []
    problems = [f"missing required field '{name}'" for name in missing_required(schema, payload)]
    if problems:
        return problems
    validator = Draft202012Validator(schema)
    for error in sorted(validator.iter_errors(payload), key=lambda err: list(err.path)):
        location = "/".join(str(part) for part in error.path) or "<root>"
        problems.append(f"{location}: {error.message}")
    return problems


__all__ = ["missing_required", "validate_input"]
