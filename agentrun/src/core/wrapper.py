"""Tool invocation pipeline.

Every external effect an episode can cause goes through :meth:`ToolWrapper.invoke`:

1. resolve the definition (unknown tool raises),
2. validate the input,
3. deny side effects an ancestor episode already caused, then consult the policy engine,
4. resolve the handler (missing handler raises),
5. run the handler under the budget guard, racing its retry loop against a timeout
   that never outlasts the episode's remaining time budget,
6. emit exactly one audit event and package a :class:`ToolResult`.

Only configuration errors escape; every operational failure comes back as a
structured result with a stable error code.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
import uuid
from dataclasses import dataclass, field
from time import perf_counter
from typing import Any, Awaitable, Callable, Collection, Dict, Optional

from .budget import BudgetGuard, extract_token_usage
from .config import DEFAULT_TIMEOUT_MS
from .errors import BudgetExceededError, NoHandlerError, UnknownToolError
from .telemetry import NULL_TELEMETRY, SPAN_ERROR, SPAN_OK, Telemetry
from .tools import ToolDefinition, error_code, is_retryable, next_delay, side_effect_target
from .tools.registry import ToolRegistry
from .tools.validation import validate_input
from .types import (
    BUDGET_EXCEEDED,
    EXECUTION_ERROR,
    INTERNAL_ERROR,
    INVALID_INPUT,
    POLICY_DENIED,
    TIMEOUT,
    TOOL_INVOKED,
    AuditEmitter,
    AuditEvent,
    HandlerContext,
    InvocationMetadata,
    PolicyEngine,
    PolicyRequest,
    ToolError,
    ToolHandler,
    ToolInvocation,
    ToolResult,
)


logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


def new_invocation_id() -> str:
    return f"ti_{uuid.uuid4().hex}"


def _now_ms() -> float:
    return time.time() * 1000


@dataclass
class _Attempts:
    retries: int = 0


@dataclass
class _Outcome:
    """What the timed execution produced; read by the budget guard for reconciliation."""

    output: Any = None
    error: Optional[ToolError] = None
    retry_count: int = 0
    tokens_used: Optional[int] = None


@dataclass
class InvocationStats:
    invoked: int = 0
    succeeded: int = 0
    failed: int = 0
    by_code: Dict[str, int] = field(default_factory=dict)

    def record(self, result: ToolResult) -> None:
        self.invoked += 1
        if result.success:
            self.succeeded += 1
            return
        self.failed += 1
        code = result.code or "UNKNOWN"
        self.by_code[code] = self.by_code.get(code, 0) + 1


def _consume_abandoned(task: "asyncio.Future[Any]") -> None:
    # Timed-out handlers are never awaited; retrieve their outcome so the loop
    # does not log "exception was never retrieved".
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug("abandoned tool task finished with %s", type(exc).__name__)


class ToolWrapper:
    """Owns the handler table and runs invocations through the pipeline.

    One instance is constructed per process (or per test) and passed to the
    episodes that use it; there is no module-level handler registry.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        *,
        policy_engine: PolicyEngine | None = None,
        audit: AuditEmitter | None = None,
        telemetry: Telemetry | None = None,
        budget_guard: BudgetGuard | None = None,
        default_timeout_ms: float = DEFAULT_TIMEOUT_MS,
        max_concurrent_per_client: int | None = None,
        sleep: Sleep | None = None,
    ) -> None:
        self.registry = registry
        self.policy_engine = policy_engine
        self.audit = audit
        self.telemetry = telemetry or NULL_TELEMETRY
        self.budget_guard = budget_guard
        self.default_timeout_ms = default_timeout_ms
        self.max_concurrent_per_client = max_concurrent_per_client
        self._sleep: Sleep = sleep or asyncio.sleep
        self._handlers: Dict[str, ToolHandler] = {}
        self._client_slots: Dict[str, asyncio.Semaphore] = {}
        self.stats = InvocationStats()

    # ------------------------------------------------------------------
    # Handler table
    # ------------------------------------------------------------------
    def register_handler(self, tool_id: str, handler: ToolHandler) -> None:
        if tool_id not in self.registry:
            raise UnknownToolError(tool_id)
        self._handlers[tool_id] = handler

    def unregister_handler(self, tool_id: str) -> None:
        self._handlers.pop(tool_id, None)

    def has_handler(self, tool_id: str) -> bool:
        return tool_id in self._handlers

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------
    def resolve_timeout(self, definition: ToolDefinition, invocation: ToolInvocation) -> float:
        for candidate in (
            invocation.options.timeout_ms,
            definition.timeout_ms,
            definition.budget_cost.default_time_ms,
        ):
            if candidate is not None and candidate > 0:
                return float(candidate)
        return float(self.default_timeout_ms)

    def _slot(self, client_id: str) -> asyncio.Semaphore | None:
        if not self.max_concurrent_per_client:
            return None
        slot = self._client_slots.get(client_id)
        if slot is None:
            slot = asyncio.Semaphore(self.max_concurrent_per_client)
            self._client_slots[client_id] = slot
        return slot

    async def invoke(
        self,
        invocation: ToolInvocation,
        *,
        budget_guard: BudgetGuard | None = None,
        cancelled: asyncio.Event | None = None,
        blocked_targets: Collection[str] = (),
    ) -> ToolResult:
        """Run ``invocation`` through the pipeline.

        ``blocked_targets`` are side-effect targets an ancestor episode already
        acted on; side-effecting calls against them are denied.
        """

        definition = self.registry.get(invocation.tool_id)
        if definition is None:
            raise UnknownToolError(invocation.tool_id)

        ctx = invocation.context
        invocation_id = new_invocation_id()
        started_at = _now_ms()
        started = perf_counter()
        with self.telemetry.span(
            "tool.invoke",
            **{
                "tool.id": definition.id,
                "tool.invocation_id": invocation_id,
                "tool.episode_id": ctx.episode_id,
                "tool.client_id": ctx.client_id,
            },
        ) as span:
            if definition.deprecated:
                message = definition.deprecated_message or f"Tool {definition.id} is deprecated"
                logger.warning("%s (invocation %s)", message, invocation_id)
                self.telemetry.emit(
                    "tool.deprecated",
                    tool_id=definition.id,
                    invocation_id=invocation_id,
                    message=message,
                )

            outcome = await self._run_pipeline(
                definition,
                invocation,
                invocation_id=invocation_id,
                budget_guard=budget_guard or self.budget_guard,
                cancelled=cancelled,
                blocked_targets=blocked_targets,
            )

            completed_at = _now_ms()
            result = ToolResult(
                success=outcome.error is None,
                output=outcome.output,
                error=outcome.error,
                metadata=InvocationMetadata(
                    tool_id=definition.id,
                    invocation_id=invocation_id,
                    started_at=started_at,
                    completed_at=completed_at,
                    duration_ms=round((perf_counter() - started) * 1000, 3),
                    retry_count=outcome.retry_count,
                    tokens_used=outcome.tokens_used,
                ),
            )
            await self._emit_audit(invocation, result)
            self.stats.record(result)

            span.set_attributes(
                {
                    "tool.success": result.success,
                    "tool.retry_count": result.metadata.retry_count,
                    "tool.duration_ms": result.metadata.duration_ms,
                }
            )
            if result.success:
                span.set_status(SPAN_OK)
            else:
                span.set_attribute("tool.error_code", result.code)
                span.set_status(SPAN_ERROR, result.error.message if result.error else None)
            return result

    async def _run_pipeline(
        self,
        definition: ToolDefinition,
        invocation: ToolInvocation,
        *,
        invocation_id: str,
        budget_guard: BudgetGuard | None,
        cancelled: asyncio.Event | None,
        blocked_targets: Collection[str] = (),
    ) -> _Outcome:
        problems = validate_input(definition, invocation.input)
        if problems:
            return _Outcome(
                error=ToolError(
                    code=INVALID_INPUT,
                    message=f"Invalid input for {definition.id}: {problems[0]}",
                    details={"problems": problems},
                )
            )

        if blocked_targets and definition.causes_side_effect:
            target = side_effect_target(definition.id, invocation.input)
            if target in blocked_targets:
                return _Outcome(
                    error=ToolError(
                        code=POLICY_DENIED,
                        message=f"{target} was already acted on by an ancestor episode",
                        details={"deniedBy": "side_effect_guard", "target": target},
                    )
                )

        if not invocation.options.skip_policy_check and self.policy_engine is not None:
            denial = await self._check_policy(definition, invocation)
            if denial is not None:
                return _Outcome(error=denial)

        handler = self._handlers.get(definition.id)
        if handler is None:
            raise NoHandlerError(definition.id)

        timeout_ms = self.resolve_timeout(definition, invocation)
        budget_capped = False
        if budget_guard is not None:
            remaining_ms = budget_guard.get_remaining_budget().time_ms
            if remaining_ms < timeout_ms:
                timeout_ms = max(remaining_ms, 0.0)
                budget_capped = True
        handler_ctx = HandlerContext(
            episode_id=invocation.context.episode_id,
            client_id=invocation.context.client_id,
            agent_id=invocation.context.agent_id,
            tool_definition=definition,
            invocation_id=invocation_id,
            request_id=invocation.context.request_id,
            parent_tool_call_id=invocation.context.parent_tool_call_id,
            cancelled=cancelled or asyncio.Event(),
        )

        async def execute() -> _Outcome:
            return await self._timed(
                handler, definition, invocation, handler_ctx, timeout_ms, budget_capped=budget_capped
            )

        slot = self._slot(invocation.context.client_id)
        try:
            if slot is not None:
                async with slot:
                    return await self._guarded(definition, execute, budget_guard)
            return await self._guarded(definition, execute, budget_guard)
        except BudgetExceededError as exc:
            return _Outcome(
                error=ToolError(
                    code=BUDGET_EXCEEDED,
                    message=str(exc),
                    details={"violations": list(exc.violations), **exc.details},
                )
            )
        except Exception as exc:
            logger.exception("internal failure while invoking %s (%s)", definition.id, invocation_id)
            return _Outcome(
                error=ToolError(
                    code=INTERNAL_ERROR,
                    message=f"Internal error: {exc}",
                    details={"exception": type(exc).__name__},
                )
            )

    async def _guarded(
        self,
        definition: ToolDefinition,
        execute: Callable[[], Awaitable[_Outcome]],
        budget_guard: BudgetGuard | None,
    ) -> _Outcome:
        if budget_guard is None:
            return await execute()
        return await budget_guard.guard_tool_call(definition.id, execute)

    async def _check_policy(self, definition: ToolDefinition, invocation: ToolInvocation) -> ToolError | None:
        ctx = invocation.context
        request = PolicyRequest(
            action="tool:invoke",
            resource=definition.id,
            client_id=ctx.client_id,
            actor_type="agent",
            actor_id=ctx.agent_id,
            attributes={
                "category": definition.category,
                "riskLevel": definition.risk_level,
                "input": dict(invocation.input),
            },
            request_id=ctx.request_id,
            episode_id=ctx.episode_id,
        )
        try:
            response = await self.policy_engine.evaluate(request)  # type: ignore[union-attr]
        except Exception as exc:
            logger.warning("policy engine failed for %s; denying", definition.id, exc_info=True)
            return ToolError(
                code=POLICY_DENIED,
                message=f"Policy engine unavailable: {exc}",
                details={"deniedBy": "policy_engine_error"},
            )
        decision = response.decision
        if decision.effect == "allow":
            return None
        details: Dict[str, Any] = {"checks": response.checks.to_dict()}
        if decision.denied_by:
            details["deniedBy"] = decision.denied_by
        return ToolError(code=POLICY_DENIED, message=decision.reason or "Denied by policy", details=details)

    async def _timed(
        self,
        handler: ToolHandler,
        definition: ToolDefinition,
        invocation: ToolInvocation,
        handler_ctx: HandlerContext,
        timeout_ms: float,
        *,
        budget_capped: bool = False,
    ) -> _Outcome:
        """Race the retry loop against ``timeout_ms``.

        On timeout the handler context is flagged as cancelled and the task is
        cancelled, but it is not awaited.  When ``budget_capped`` is set the
        deadline came from the episode's remaining time budget, so the timeout
        is not retryable.
        """

        attempts = _Attempts()
        task = asyncio.ensure_future(self._attempt_loop(handler, definition, invocation, handler_ctx, attempts))
        done, _ = await asyncio.wait({task}, timeout=timeout_ms / 1000)
        if task not in done:
            handler_ctx.cancelled.set()
            task.cancel()
            task.add_done_callback(_consume_abandoned)
            timeout_details: Dict[str, Any] = {"timeoutMs": timeout_ms}
            if budget_capped:
                timeout_details["cappedByBudget"] = True
            return _Outcome(
                error=ToolError(
                    code=TIMEOUT,
                    message=f"Tool {definition.id} exceeded {timeout_ms:g}ms",
                    retryable=not budget_capped,
                    details=timeout_details,
                ),
                retry_count=attempts.retries,
            )
        if task.cancelled():
            # The handler raised CancelledError itself, usually in answer to ctx.cancelled.
            return _Outcome(
                error=ToolError(
                    code=EXECUTION_ERROR,
                    message=f"Tool {definition.id} was cancelled by its handler",
                    details={"exception": "CancelledError", "cancelRequested": handler_ctx.cancelled.is_set()},
                ),
                retry_count=attempts.retries,
            )
        exc = task.exception()
        if exc is not None:
            details: Dict[str, Any] = {"exception": type(exc).__name__}
            cause = getattr(exc, "code", None)
            if cause:
                details["cause_code"] = str(cause)
            extra = getattr(exc, "details", None)
            if isinstance(extra, dict) and extra:
                details.update(extra)
            return _Outcome(
                error=ToolError(
                    code=EXECUTION_ERROR,
                    message=str(exc) or type(exc).__name__,
                    retryable=bool(getattr(exc, "retryable", False)),
                    details=details,
                ),
                retry_count=attempts.retries,
            )
        output = task.result()
        return _Outcome(output=output, retry_count=attempts.retries, tokens_used=extract_token_usage(output))

    async def _attempt_loop(
        self,
        handler: ToolHandler,
        definition: ToolDefinition,
        invocation: ToolInvocation,
        handler_ctx: HandlerContext,
        attempts: _Attempts,
    ) -> Any:
        policy = definition.retry_policy
        while True:
            handler_ctx.attempt = attempts.retries
            try:
                value = handler(dict(invocation.input), handler_ctx)
                if inspect.isawaitable(value):
                    value = await value
                return value
            except Exception as exc:
                if (
                    policy is None
                    or attempts.retries >= policy.max_retries
                    or not is_retryable(exc, policy)
                    or handler_ctx.cancelled.is_set()
                ):
                    raise
                delay_ms = next_delay(attempts.retries, policy)
                attempts.retries += 1
                logger.info(
                    "retrying %s after %s (attempt %d/%d, backoff %.0fms)",
                    definition.id,
                    error_code(exc),
                    attempts.retries,
                    policy.max_retries,
                    delay_ms,
                )
                await self._sleep(delay_ms / 1000)

    async def _emit_audit(self, invocation: ToolInvocation, result: ToolResult) -> None:
        if self.audit is None:
            return
        ctx = invocation.context
        metadata: Dict[str, Any] = {
            "invocationId": result.metadata.invocation_id,
            "episodeId": ctx.episode_id,
            "clientId": ctx.client_id,
            "success": result.success,
            "durationMs": result.metadata.duration_ms,
            "retryCount": result.metadata.retry_count,
        }
        if ctx.request_id:
            metadata["requestId"] = ctx.request_id
        if ctx.parent_tool_call_id:
            metadata["parentToolCallId"] = ctx.parent_tool_call_id
        if result.metadata.tokens_used is not None:
            metadata["tokensUsed"] = result.metadata.tokens_used
        if result.error is not None:
            metadata["error"] = result.error.to_dict()
        event = AuditEvent(type=TOOL_INVOKED, actor=ctx.agent_id, target=invocation.tool_id, metadata=metadata)
        try:
            await self.audit.emit(event)
        except Exception as exc:
            logger.warning(
                "audit emission failed for invocation %s: %s",
                result.metadata.invocation_id,
                exc,
            )
            self.telemetry.emit(
                "tool.audit_failed",
                tool_id=invocation.tool_id,
                invocation_id=result.metadata.invocation_id,
                error=str(exc),
            )


__all__ = ["InvocationStats", "ToolWrapper", "new_invocation_id"]
