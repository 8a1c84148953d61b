"""Episode model and lifecycle state machine."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from .budget import Budget, BudgetGuard, BudgetWarning
from .errors import EpisodeTerminalError, InvalidTransitionError
from .telemetry import NULL_TELEMETRY, Telemetry
from .tools import side_effect_target
from .types import (
    BUDGET_EXCEEDED,
    CANCELLED,
    INVALID_INPUT,
    POLICY_DENIED,
    InvocationOptions,
    ToolError,
    ToolInvocation,
    ToolInvocationContext,
    ToolResult,
)

if TYPE_CHECKING:
    from ..governance.kill_switch import KillSwitchService
    from .recursion import RecursionPolicy
    from .wrapper import ToolWrapper


logger = logging.getLogger(__name__)

PENDING = "pending"
RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"
ESCALATED = "escalated"
CANCELLED_STATUS = "cancelled"

STATUSES = (PENDING, RUNNING, COMPLETED, FAILED, ESCALATED, CANCELLED_STATUS)
TERMINAL_STATUSES = frozenset({COMPLETED, FAILED, ESCALATED, CANCELLED_STATUS})

PHASES = ("intake", "plan", "act", "verify", "commit")

DEFAULT_PHASE_REQUIREMENTS: Dict[str, Tuple[str, ...]] = {
    "intake": ("context",),
    "plan": ("plan",),
    "act": ("actions",),
    "verify": ("verification",),
    "commit": ("result",),
}

# Failures whose handler never ran cannot have caused a side effect.
_NOT_ATTEMPTED = frozenset({INVALID_INPUT, POLICY_DENIED, BUDGET_EXCEEDED})


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_episode_id() -> str:
    return f"ep_{uuid.uuid4().hex}"


@dataclass
class Transition:
    from_status: str
    to_status: str
    at: str
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"from": self.from_status, "to": self.to_status, "at": self.at, "reason": self.reason}


@dataclass
class PhaseRecord:
    phase: str
    entered_at: str
    completed_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"phase": self.phase, "enteredAt": self.entered_at, "completedAt": self.completed_at}


@dataclass
class FailureRecord:
    tool_id: str
    code: str
    message: str
    retry_count: int
    phase: str
    invocation_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "toolId": self.tool_id,
            "code": self.code,
            "message": self.message,
            "retryCount": self.retry_count,
            "phase": self.phase,
            "invocationId": self.invocation_id,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "FailureRecord":
        return cls(
            tool_id=str(payload["toolId"]),
            code=str(payload["code"]),
            message=str(payload.get("message", "")),
            retry_count=int(payload.get("retryCount", 0)),
            phase=str(payload.get("phase", PHASES[0])),
            invocation_id=str(payload.get("invocationId", "")),
        )


@dataclass
class EpisodeSummary:
    """Explanation attached to every terminal episode."""

    status: str
    reason: str
    phase: str
    tool_id: Optional[str] = None
    error_code: Optional[str] = None
    retry_count: Optional[int] = None
    tool_calls: int = 0
    tokens_used: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "reason": self.reason,
            "phase": self.phase,
            "toolId": self.tool_id,
            "errorCode": self.error_code,
            "retryCount": self.retry_count,
            "toolCalls": self.tool_calls,
            "tokensUsed": self.tokens_used,
        }


@dataclass
class Episode:
    """One bounded unit of work; mutated only by its :class:`EpisodeStateMachine`."""

    goal: str
    client_id: str
    agent_id: str
    budget: Budget = field(default_factory=Budget)
    id: str = field(default_factory=new_episode_id)
    status: str = PENDING
    phase: str = PHASES[0]
    depth: int = 0
    parent_episode_id: Optional[str] = None
    root_episode_id: Optional[str] = None
    child_type: Optional[str] = None
    inputs: Dict[str, Any] = field(default_factory=dict)
    outputs: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    recursion_policy: Optional["RecursionPolicy"] = None
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)
    history: List[Transition] = field(default_factory=list)
    phase_history: List[PhaseRecord] = field(default_factory=list)
    failures: List[FailureRecord] = field(default_factory=list)
    side_effect_targets: Set[str] = field(default_factory=set)
    inherited_side_effect_targets: Set[str] = field(default_factory=set)
    child_ids: List[str] = field(default_factory=list)
    summary: Optional[EpisodeSummary] = None
    wrap_up_advised: bool = False

    def __post_init__(self) -> None:
        if self.depth < 0:
            raise ValueError("episode depth must be >= 0")
        if self.root_episode_id is None:
            self.root_episode_id = self.id

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def touch(self) -> None:
        self.updated_at = _now_iso()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "clientId": self.client_id,
            "agentId": self.agent_id,
            "goal": self.goal,
            "status": self.status,
            "phase": self.phase,
            "depth": self.depth,
            "parentEpisodeId": self.parent_episode_id,
            "rootEpisodeId": self.root_episode_id,
            "childType": self.child_type,
            "budget": self.budget.to_dict(),
            "outputs": {phase: dict(values) for phase, values in self.outputs.items()},
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "history": [item.to_dict() for item in self.history],
            "failures": [item.to_dict() for item in self.failures],
            "sideEffectTargets": sorted(self.side_effect_targets),
            "inheritedSideEffectTargets": sorted(self.inherited_side_effect_targets),
            "childIds": list(self.child_ids),
            "summary": None if self.summary is None else self.summary.to_dict(),
        }


@dataclass
class ToolCallRequest:
    """One entry of :meth:`EpisodeStateMachine.invoke_many`."""

    tool_id: str
    input: Dict[str, Any] = field(default_factory=dict)
    options: Optional[InvocationOptions] = None


class EpisodeStateMachine:
    """Owns the lifecycle of one episode and is the only caller of the wrapper for it.

    ``pending -> running -> {completed, failed, escalated, cancelled}``.  While
    running, the episode progresses through ``intake -> plan -> act -> verify ->
    commit``; advancing requires the current phase's outputs to be recorded.
    """

    def __init__(
        self,
        episode: Episode,
        wrapper: "ToolWrapper",
        *,
        budget_guard: BudgetGuard | None = None,
        kill_switch: "KillSwitchService | None" = None,
        telemetry: Telemetry | None = None,
        phase_requirements: Mapping[str, Sequence[str]] | None = None,
        warning_threshold: float = 0.7,
    ) -> None:
        self.episode = episode
        self.wrapper = wrapper
        self.telemetry = telemetry or NULL_TELEMETRY
        self.kill_switch = kill_switch
        self.guard = budget_guard or BudgetGuard(
            episode.budget,
            registry=wrapper.registry,
            episode_id=episode.id,
            warning_threshold=warning_threshold,
            telemetry=self.telemetry,
        )
        self.guard.add_warning_listener(self._on_budget_warning)
        requirements = DEFAULT_PHASE_REQUIREMENTS if phase_requirements is None else phase_requirements
        self.phase_requirements: Dict[str, Tuple[str, ...]] = {
            phase: tuple(requirements.get(phase, ())) for phase in PHASES
        }
        self._in_flight: Set[asyncio.Event] = set()
        self._idle_hooks: List[Callable[["EpisodeStateMachine"], None]] = []

    def add_idle_hook(self, hook: Callable[["EpisodeStateMachine"], None]) -> None:
        """Call ``hook`` whenever the last in-flight tool call of a running episode settles."""

        self._idle_hooks.append(hook)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    @property
    def status(self) -> str:
        return self.episode.status

    @property
    def phase(self) -> str:
        return self.episode.phase

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def missing_outputs(self, phase: str | None = None) -> List[str]:
        phase = phase or self.episode.phase
        produced = self.episode.outputs.get(phase, {})
        return [name for name in self.phase_requirements.get(phase, ()) if name not in produced]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> bool:
        """Move ``pending -> running``; fails the episode if the budget is already spent."""

        if self.episode.status != PENDING:
            raise InvalidTransitionError(self.episode.status, RUNNING)
        self.guard.start()
        if self.guard.is_exhausted():
            violations = self.guard.check_all().violations
            self._terminate(
                FAILED,
                f"budget exhausted at start: {', '.join(violations)}",
                error_code=BUDGET_EXCEEDED,
            )
            return False
        self._transition(RUNNING, "started")
        self._enter_phase(self.episode.phase)
        return True

    def resume_running(self, reason: str = "resumed") -> None:
        """Re-enter ``running`` at the current phase (used by checkpoint restore)."""

        if self.episode.status != PENDING:
            raise InvalidTransitionError(self.episode.status, RUNNING)
        self.guard.start()
        self._transition(RUNNING, reason)
        self._enter_phase(self.episode.phase)

    def record_output(self, name: str, value: Any, *, phase: str | None = None) -> None:
        self._ensure_running()
        target = phase or self.episode.phase
        if target not in PHASES:
            raise ValueError(f"Unknown phase: {target}")
        self.episode.outputs.setdefault(target, {})[name] = value
        self.episode.touch()

    def advance_phase(self) -> bool:
        """Advance to the next phase; escalate if required outputs are missing.

        Advancing from ``commit`` completes the episode.
        """

        self._ensure_running()
        current = self.episode.phase
        missing = self.missing_outputs(current)
        if missing:
            self.escalate(f"phase {current} missing required outputs: {', '.join(missing)}")
            return False
        self._close_phase()
        index = PHASES.index(current)
        if index == len(PHASES) - 1:
            self.complete()
            return True
        self.episode.phase = PHASES[index + 1]
        self._enter_phase(self.episode.phase)
        self.telemetry.emit(
            "episode.phase_advanced",
            episode_id=self.episode.id,
            from_phase=current,
            to_phase=self.episode.phase,
        )
        return True

    def complete(self, reason: str = "completed") -> None:
        self._ensure_running()
        self._close_phase()
        self._terminate(COMPLETED, reason)

    def fail(self, reason: str, *, result: ToolResult | None = None) -> None:
        self._ensure_running()
        if result is not None and result.error is not None:
            self._terminate(
                FAILED,
                reason,
                tool_id=result.metadata.tool_id,
                error_code=result.error.code,
                retry_count=result.metadata.retry_count,
            )
            return
        self._terminate(FAILED, reason)

    def escalate(self, ticket: str) -> None:
        self._ensure_running()
        self._terminate(ESCALATED, ticket)

    def cancel(self, reason: str = "cancelled") -> bool:
        """Cancel from any non-terminal state; repeated calls are no-ops.

        In-flight tool calls are signalled but not awaited; their results are
        discarded when they arrive.
        """

        if self.episode.is_terminal:
            return False
        for event in list(self._in_flight):
            event.set()
        self._terminate(CANCELLED_STATUS, reason, error_code=CANCELLED)
        self.telemetry.emit(
            "episode.cancelled",
            episode_id=self.episode.id,
            reason=reason,
            in_flight=len(self._in_flight),
        )
        return True

    # ------------------------------------------------------------------
    # Tool invocation
    # ------------------------------------------------------------------
    async def invoke_tool(
        self,
        tool_id: str,
        payload: Mapping[str, Any] | None = None,
        *,
        options: InvocationOptions | None = None,
        request_id: str | None = None,
        parent_tool_call_id: str | None = None,
    ) -> ToolResult:
        self._ensure_can_invoke(tool_id)
        invocation = ToolInvocation(
            tool_id=tool_id,
            input=dict(payload or {}),
            context=ToolInvocationContext(
                episode_id=self.episode.id,
                client_id=self.episode.client_id,
                agent_id=self.episode.agent_id,
                request_id=request_id,
                parent_tool_call_id=parent_tool_call_id,
            ),
            options=options or InvocationOptions(),
        )
        phase = self.episode.phase
        cancelled = asyncio.Event()
        self._in_flight.add(cancelled)
        try:
            result = await self.wrapper.invoke(
                invocation,
                budget_guard=self.guard,
                cancelled=cancelled,
                blocked_targets=self.episode.inherited_side_effect_targets,
            )
        finally:
            self._in_flight.discard(cancelled)

        definition = self.wrapper.registry.get(tool_id)
        if definition is not None and definition.causes_side_effect and result.code not in _NOT_ATTEMPTED:
            self.episode.side_effect_targets.add(side_effect_target(tool_id, invocation.input))

        if self.episode.is_terminal:
            logger.info(
                "discarding result of %s (%s): episode %s is %s",
                tool_id,
                result.metadata.invocation_id,
                self.episode.id,
                self.episode.status,
            )
            return ToolResult(
                success=False,
                output=None,
                error=ToolError(
                    code=CANCELLED,
                    message=f"Episode {self.episode.id} was {self.episode.status} while {tool_id} was running",
                    details={"discarded": True, "originalSuccess": result.success},
                ),
                metadata=result.metadata,
            )

        if not result.success and result.error is not None:
            self.episode.failures.append(
                FailureRecord(
                    tool_id=tool_id,
                    code=result.error.code,
                    message=result.error.message,
                    retry_count=result.metadata.retry_count,
                    phase=phase,
                    invocation_id=result.metadata.invocation_id,
                )
            )
        self.episode.touch()
        if not self._in_flight:
            for hook in list(self._idle_hooks):
                hook(self)
        return result

    async def invoke_many(self, calls: Iterable[ToolCallRequest | Tuple[str, Mapping[str, Any]]]) -> List[ToolResult]:
        """Run independent calls of the current phase concurrently.

        Each call is admitted by the budget guard atomically, so concurrent
        calls never overshoot a dimension between them.
        """

        requests: List[ToolCallRequest] = []
        for call in calls:
            if isinstance(call, ToolCallRequest):
                requests.append(call)
            else:
                tool_id, payload = call
                requests.append(ToolCallRequest(tool_id=tool_id, input=dict(payload)))
        return list(
            await asyncio.gather(
                *(self.invoke_tool(item.tool_id, item.input, options=item.options) for item in requests)
            )
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _ensure_running(self) -> None:
        if self.episode.is_terminal:
            raise EpisodeTerminalError(self.episode.id, self.episode.status)
        if self.episode.status != RUNNING:
            raise InvalidTransitionError(self.episode.status, RUNNING)

    def _ensure_can_invoke(self, tool_id: str) -> None:
        self._ensure_running()
        if self.kill_switch is None:
            return
        active = self.kill_switch.check(client_id=self.episode.client_id, tool_id=tool_id)
        if active is not None:
            logger.warning("kill switch %s engaged; cancelling episode %s", active.scope_label, self.episode.id)
            self.cancel(f"kill switch ({active.scope_label}): {active.reason}")
            raise EpisodeTerminalError(self.episode.id, self.episode.status)

    def _on_budget_warning(self, warning: BudgetWarning) -> None:
        if not self.episode.wrap_up_advised:
            logger.info(
                "episode %s crossed %.0f%% of its %s budget; wrap-up advised",
                self.episode.id,
                warning.ratio * 100,
                warning.dimension,
            )
        self.episode.wrap_up_advised = True

    def _enter_phase(self, phase: str) -> None:
        self.episode.phase_history.append(PhaseRecord(phase=phase, entered_at=_now_iso()))

    def _close_phase(self) -> None:
        if self.episode.phase_history and self.episode.phase_history[-1].completed_at is None:
            self.episode.phase_history[-1].completed_at = _now_iso()

    def _transition(self, target: str, reason: str | None) -> None:
        current = self.episode.status
        if current in TERMINAL_STATUSES:
            raise EpisodeTerminalError(self.episode.id, current)
        self.episode.status = target
        self.episode.touch()
        self.episode.history.append(
            Transition(from_status=current, to_status=target, at=self.episode.updated_at, reason=reason)
        )
        self.telemetry.emit(
            "episode.transition",
            episode_id=self.episode.id,
            from_status=current,
            to_status=target,
            phase=self.episode.phase,
            reason=reason,
        )

    def _terminate(
        self,
        status: str,
        reason: str,
        *,
        tool_id: str | None = None,
        error_code: str | None = None,
        retry_count: int | None = None,
    ) -> None:
        if status in {FAILED, ESCALATED} and tool_id is None and self.episode.failures:
            last = self.episode.failures[-1]
            tool_id = last.tool_id
            error_code = error_code or last.code
            retry_count = last.retry_count
        self._transition(status, reason)
        self.guard.stop()
        self.episode.summary = EpisodeSummary(
            status=status,
            reason=reason,
            phase=self.episode.phase,
            tool_id=tool_id,
            error_code=error_code,
            retry_count=retry_count,
            tool_calls=self.episode.budget.tool_calls.used,
            tokens_used=self.episode.budget.tokens.used,
        )


__all__ = [
    "CANCELLED_STATUS",
    "COMPLETED",
    "DEFAULT_PHASE_REQUIREMENTS",
    "ESCALATED",
    "Episode",
    "EpisodeStateMachine",
    "EpisodeSummary",
    "FAILED",
    "FailureRecord",
    "PENDING",
    "PHASES",
    "PhaseRecord",
    "RUNNING",
    "STATUSES",
    "TERMINAL_STATUSES",
    "ToolCallRequest",
    "Transition",
    "new_episode_id",
    "side_effect_target",
]
