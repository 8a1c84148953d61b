"""Exception hierarchy for the episode runtime.

Two families exist.  :class:`ConfigurationError` subclasses signal that the
runtime was assembled incorrectly (unknown tool, missing handler, invalid
recursion policy) and are always raised.  The remaining errors describe
operational conditions; inside the tool pipeline they are folded into a
structured :class:`~agentrun.src.core.types.ToolResult` instead of escaping.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, Mapping, Optional


class ConfigurationError(RuntimeError):
    """Raised when the runtime has been wired together incorrectly."""

    code = "CONFIGURATION_ERROR"


class UnknownToolError(ConfigurationError, KeyError):
    code = "UNKNOWN_TOOL"

    def __init__(self, tool_id: str) -> None:
        self.tool_id = tool_id
        super().__init__(f"Unknown tool: {tool_id}")

    def __str__(self) -> str:
        return self.args[0]


class NoHandlerError(ConfigurationError):
    code = "NO_HANDLER"

    def __init__(self, tool_id: str) -> None:
        self.tool_id = tool_id
        super().__init__(f"No handler registered for tool: {tool_id}")


class ToolAlreadyRegisteredError(ConfigurationError):
    code = "ALREADY_REGISTERED"

    def __init__(self, tool_id: str) -> None:
        self.tool_id = tool_id
        super().__init__(f"Tool already registered: {tool_id}")


class InvalidToolDefinitionError(ConfigurationError, ValueError):
    code = "INVALID_TOOL_DEFINITION"


class InvalidRecursionPolicyError(ConfigurationError, ValueError):
    code = "INVALID_RECURSION_POLICY"


class BudgetExceededError(RuntimeError):
    """Raised before a consuming operation when it would breach the budget."""

    code = "BUDGET_EXCEEDED"

    def __init__(
        self,
        violations: Iterable[str],
        details: Mapping[str, Any] | None = None,
    ) -> None:
        self.violations = list(violations)
        self.details: Dict[str, Any] = dict(details or {})
        super().__init__(f"Budget exceeded: {', '.join(self.violations) or 'unknown'}")


class EpisodeTerminalError(RuntimeError):
    code = "EPISODE_TERMINAL"

    def __init__(self, episode_id: str, status: str) -> None:
        self.episode_id = episode_id
        self.status = status
        super().__init__(f"Episode {episode_id} is terminal ({status})")


class InvalidTransitionError(RuntimeError):
    code = "INVALID_TRANSITION"

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid transition from {current} to {target}")


class CheckpointError(RuntimeError):
    code = "CHECKPOINT_ERROR"


class ToolExecutionError(Exception):
    """Error raised by tool handlers to signal a coded failure.

    The retry loop only inspects the ``code`` attribute, so handlers may raise
    any exception that exposes one; this class simply makes that convenient.
    """

    def __init__(
        self,
        code: str,
        message: Optional[str] = None,
        *,
        retryable: bool = False,
        details: Mapping[str, Any] | None = None,
    ) -> None:
        self.code = code
        self.retryable = retryable
        self.details = dict(details or {})
        super().__init__(message or code)


class ToolTimeoutError(Exception):
    code = "TIMEOUT"

    def __init__(self, timeout_ms: float) -> None:
        self.timeout_ms = timeout_ms
        super().__init__(f"Tool execution exceeded {timeout_ms:g}ms")


__all__ = [
    "BudgetExceededError",
    "CheckpointError",
    "ConfigurationError",
    "EpisodeTerminalError",
    "InvalidRecursionPolicyError",
    "InvalidToolDefinitionError",
    "InvalidTransitionError",
    "NoHandlerError",
    "ToolAlreadyRegisteredError",
    "ToolExecutionError",
    "ToolTimeoutError",
    "UnknownToolError",
]
