from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Iterable, Mapping, Sequence, Set, Tuple

from ..core.tools import RISK_LEVELS, normalise_risk_level, risk_value
from ..core.tools.registry import permission_matches
from ..core.types import (
    CHECK_DENIED,
    CHECK_NOT_REQUIRED,
    CHECK_PASSED,
    PolicyChecks,
    PolicyDecision,
    PolicyRequest,
    PolicyResult,
)
from .kill_switch import KillSwitchService


@dataclass(slots=True)
class Gatekeeper:
    """Reference policy engine for tool invocations.

    Checks run in order: kill switch, rate limit, rules, approval.  The policy
    dictionary recognises these optional keys:

    ``max_risk``
        The highest risk level permitted for all tools.  Defaults to
        ``"write"`` which keeps publishing and critical tools blocked unless a
        per-tool override allows them.

    ``tools``
        A mapping of tool id to an overridden ``max_risk``.

    ``deny``
        Tool id patterns (exact, ``prefix:*`` or ``*``) that are always denied.

    ``rate_limit``
        ``{"max_requests": int, "window_s": float}`` applied per client and tool.

    ``require_approval``
        Risk levels that need an explicit grant (see :meth:`grant_approval`).
    """

    policy: Mapping[str, Any] = field(default_factory=dict)
    kill_switch: KillSwitchService | None = None
    clock: Callable[[], float] = time.monotonic
    counters: Dict[str, int] = field(default_factory=lambda: {"evaluated": 0, "denied": 0})
    _windows: Dict[Tuple[str, str], Deque[float]] = field(default_factory=dict)
    _approvals: Set[Tuple[str, str]] = field(default_factory=set)

    def _max_allowed_for(self, tool: str | None) -> str:
        default_level = normalise_risk_level(str(self.policy.get("max_risk", "write")))
        if not tool:
            return default_level
        tool_policies = self.policy.get("tools", {})
        if isinstance(tool_policies, Mapping):
            override = tool_policies.get(tool)
            if override is not None:
                return normalise_risk_level(str(override))
        return default_level

    def review(self, risk_level: str, *, tool: str | None = None) -> bool:
        """Return ``True`` when ``risk_level`` is within the ceiling for ``tool``."""

        requested = normalise_risk_level(risk_level)
        return risk_value(requested) <= risk_value(self._max_allowed_for(tool))

    def _denied_patterns(self) -> Iterable[str]:
        deny = self.policy.get("deny", ())
        if isinstance(deny, str):
            deny = [deny]
        if isinstance(deny, Sequence):
            for item in deny:
                if item:
                    yield str(item)

    def _approval_levels(self) -> Set[str]:
        levels = self.policy.get("require_approval", ())
        if isinstance(levels, str):
            levels = [levels]
        return {normalise_risk_level(str(level)) for level in levels or ()}

    def grant_approval(self, tool_id: str, *, client_id: str = "*") -> None:
        self._approvals.add((client_id, tool_id))

    def revoke_approval(self, tool_id: str, *, client_id: str = "*") -> None:
        self._approvals.discard((client_id, tool_id))

    def _approved(self, client_id: str, tool_id: str) -> bool:
        return (client_id, tool_id) in self._approvals or ("*", tool_id) in self._approvals

    def _rate_window(self, client_id: str, tool_id: str) -> Tuple[Deque[float], int, float] | None:
        config = self.policy.get("rate_limit")
        if not isinstance(config, Mapping):
            return None
        limit = int(config.get("max_requests", 0))
        if limit <= 0:
            return None
        window_s = float(config.get("window_s", 60))
        window = self._windows.setdefault((client_id, tool_id), deque())
        now = self.clock()
        while window and now - window[0] >= window_s:
            window.popleft()
        return window, limit, window_s

    async def evaluate(self, request: PolicyRequest) -> PolicyResult:
        started = time.perf_counter()
        checks = PolicyChecks()
        self.counters["evaluated"] += 1

        def finish(effect: str, reason: str, denied_by: str | None = None) -> PolicyResult:
            if effect != "allow":
                self.counters["denied"] += 1
                self.counters[denied_by or "unknown"] = self.counters.get(denied_by or "unknown", 0) + 1
            decision = PolicyDecision(
                effect=effect,
                reason=reason,
                checked_at=time.time() * 1000,
                evaluation_ms=round((time.perf_counter() - started) * 1000, 3),
                denied_by=denied_by,
            )
            return PolicyResult(decision=decision, checks=checks)

        tool_id = request.resource
        if self.kill_switch is not None:
            active = self.kill_switch.check(client_id=request.client_id, tool_id=tool_id)
            if active is not None:
                checks.kill_switch = CHECK_DENIED
                return finish("deny", active.reason or "Kill switch is active", "kill_switch")
            checks.kill_switch = CHECK_PASSED

        window = self._rate_window(request.client_id, tool_id)
        if window is not None:
            entries, limit, window_s = window
            if len(entries) >= limit:
                checks.rate_limit = CHECK_DENIED
                return finish("deny", f"Rate limit of {limit} per {window_s:g}s exceeded", "rate_limit")
            checks.rate_limit = CHECK_PASSED

        for pattern in self._denied_patterns():
            if permission_matches(pattern, tool_id):
                checks.rules = CHECK_DENIED
                return finish("deny", f"Tool {tool_id} is denied by policy", "rules")
        risk_level = str(request.attributes.get("riskLevel") or RISK_LEVELS[0])
        if not self.review(risk_level, tool=tool_id):
            checks.rules = CHECK_DENIED
            ceiling = self._max_allowed_for(tool_id)
            return finish("deny", f"Risk level {risk_level} exceeds allowed {ceiling}", "rules")
        checks.rules = CHECK_PASSED

        if normalise_risk_level(risk_level) in self._approval_levels():
            if not self._approved(request.client_id, tool_id):
                checks.approval = CHECK_DENIED
                return finish("deny", f"Approval required for {tool_id}", "approval")
            checks.approval = CHECK_PASSED
        else:
            checks.approval = CHECK_NOT_REQUIRED

        if window is not None:
            window[0].append(self.clock())
        return finish("allow", "Allowed")


__all__ = ["Gatekeeper"]
