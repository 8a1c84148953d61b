"""Shared type definitions for the episode runtime."""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional, Protocol

if TYPE_CHECKING:
    from .tools import ToolDefinition


UID = str

# Error codes surfaced through ToolResult.error.code
INVALID_INPUT = "INVALID_INPUT"
POLICY_DENIED = "POLICY_DENIED"
BUDGET_EXCEEDED = "BUDGET_EXCEEDED"
TIMEOUT = "TIMEOUT"
EXECUTION_ERROR = "EXECUTION_ERROR"
INTERNAL_ERROR = "INTERNAL_ERROR"
CANCELLED = "CANCELLED"

TOOL_INVOKED = "TOOL_INVOKED"


@dataclass
class ToolInvocationContext:
    """Identity of the episode issuing a tool call."""

    episode_id: UID
    client_id: str
    agent_id: str
    request_id: Optional[str] = None
    parent_tool_call_id: Optional[str] = None


@dataclass
class InvocationOptions:
    timeout_ms: Optional[float] = None
    skip_policy_check: bool = False


@dataclass
class ToolInvocation:
    """Request to run ``tool_id`` through the invocation pipeline."""

    tool_id: str
    input: Dict[str, Any]
    context: ToolInvocationContext
    options: InvocationOptions = field(default_factory=InvocationOptions)


@dataclass
class ToolError:
    code: str
    message: str
    retryable: bool = False
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class InvocationMetadata:
    tool_id: str
    invocation_id: UID
    started_at: float
    completed_at: float
    duration_ms: float
    retry_count: int = 0
    tokens_used: Optional[int] = None


@dataclass
class ToolResult:
    """Outcome of one invocation; exactly one of ``output``/``error`` is set."""

    success: bool
    output: Optional[Any]
    error: Optional[ToolError]
    metadata: InvocationMetadata

    def __post_init__(self) -> None:
        if self.success:
            if self.error is not None:
                raise ValueError("successful ToolResult cannot carry an error")
            if self.output is None:
                self.output = {}
        else:
            if self.error is None:
                raise ValueError("failed ToolResult requires an error")
            self.output = None

    @property
    def code(self) -> Optional[str]:
        return None if self.error is None else self.error.code

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "output": self.output,
            "error": None if self.error is None else self.error.to_dict(),
            "metadata": asdict(self.metadata),
        }


@dataclass
class HandlerContext:
    """Context passed to tool handlers.

    ``cancelled`` is set when the invocation times out or the owning episode is
    cancelled.  Handlers that poll it can stop early; handlers that ignore it
    are simply abandoned.
    """

    episode_id: UID
    client_id: str
    agent_id: str
    tool_definition: "ToolDefinition"
    invocation_id: UID
    request_id: Optional[str] = None
    parent_tool_call_id: Optional[str] = None
    attempt: int = 0
    cancelled: asyncio.Event = field(default_factory=asyncio.Event)


ToolHandler = Callable[[Dict[str, Any], HandlerContext], Awaitable[Any]]


# ---------------------------------------------------------------------------
# Policy engine contract
# ---------------------------------------------------------------------------

CHECK_PASSED = "passed"
CHECK_SKIPPED = "skipped"
CHECK_DENIED = "denied"
CHECK_NOT_REQUIRED = "not_required"


@dataclass
class PolicyRequest:
    action: str
    resource: str
    client_id: str
    actor_type: str
    actor_id: str
    attributes: Dict[str, Any] = field(default_factory=dict)
    request_id: Optional[str] = None
    episode_id: Optional[str] = None


@dataclass
class PolicyDecision:
    effect: str
    reason: str
    checked_at: float
    evaluation_ms: float
    denied_by: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.effect == "allow"


@dataclass
class PolicyChecks:
    kill_switch: str = CHECK_SKIPPED
    rate_limit: str = CHECK_SKIPPED
    rules: str = CHECK_SKIPPED
    approval: str = CHECK_NOT_REQUIRED

    def to_dict(self) -> Dict[str, str]:
        return {
            "killSwitch": self.kill_switch,
            "rateLimit": self.rate_limit,
            "rules": self.rules,
            "approval": self.approval,
        }


@dataclass
class PolicyResult:
    decision: PolicyDecision
    checks: PolicyChecks = field(default_factory=PolicyChecks)


class PolicyEngine(Protocol):
    """External decision service consulted before every tool execution."""

    async def evaluate(self, request: PolicyRequest) -> PolicyResult:  # pragma: no cover - interface
        ...


# ---------------------------------------------------------------------------
# Audit contract
# ---------------------------------------------------------------------------


@dataclass
class AuditEvent:
    type: str
    actor: str
    target: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "actor": self.actor,
            "target": self.target,
            "metadata": dict(self.metadata),
        }


class AuditEmitter(Protocol):
    """Append-only sink for audit events."""

    async def emit(self, event: AuditEvent) -> None:  # pragma: no cover - interface
        ...


__all__ = [
    "AuditEmitter",
    "AuditEvent",
    "BUDGET_EXCEEDED",
    "CANCELLED",
    "CHECK_DENIED",
    "CHECK_NOT_REQUIRED",
    "CHECK_PASSED",
    "CHECK_SKIPPED",
    "EXECUTION_ERROR",
    "HandlerContext",
    "INTERNAL_ERROR",
    "INVALID_INPUT",
    "InvocationMetadata",
    "InvocationOptions",
    "POLICY_DENIED",
    "PolicyChecks",
    "PolicyDecision",
    "PolicyEngine",
    "PolicyRequest",
    "PolicyResult",
    "TIMEOUT",
    "TOOL_INVOKED",
    "ToolError",
    "ToolHandler",
    "ToolInvocation",
    "ToolInvocationContext",
    "ToolResult",
    "UID",
]
