"""Budget accounting and enforcement for a single episode.

A :class:`Budget` is a plain ledger with four dimensions: tokens, wall-clock
time, tool calls and subcalls (child episodes).  A :class:`BudgetGuard` owns
one budget and is the only thing allowed to mutate it.  Every consuming
operation is checked *before* it runs and the consumption is recorded under a
lock, so concurrent tool calls of one phase never race each other past a limit.

Token estimates for in-flight calls are held as a reservation rather than as
usage.  When the call finishes the reservation is released and the actual
usage reported by the handler (or the estimate, if none is reported) is added
to ``used``.  ``used`` therefore never decreases and never exceeds ``max``.
"""

from __future__ import annotations

import inspect
import logging
import math
import time
from collections import Counter
from dataclasses import dataclass, field
from threading import Lock
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Mapping, Optional, TypeVar

from .config import MAX_CHILD_FRACTION
from .errors import BudgetExceededError
from .telemetry import NULL_TELEMETRY, Telemetry

if TYPE_CHECKING:
    from .tools.registry import ToolRegistry


logger = logging.getLogger(__name__)

T = TypeVar("T")

DIMENSIONS = ("tokens", "time", "tool_calls", "subcalls")


@dataclass
class Allowance:
    """Counter dimension; ``max=None`` means unlimited."""

    used: int = 0
    max: Optional[int] = None

    def __post_init__(self) -> None:
        if self.max is not None and self.max < 0:
            raise ValueError("budget max must be >= 0")
        if self.used < 0:
            raise ValueError("budget used must be >= 0")
        if self.max is not None and self.used > self.max:
            raise ValueError("budget used cannot exceed max")

    @property
    def remaining(self) -> float:
        if self.max is None:
            return math.inf
        return float(self.max - self.used)

    def ratio(self) -> float:
        if not self.max:
            return 0.0 if self.max is None else 1.0
        return self.used / self.max

    def to_dict(self) -> Dict[str, Any]:
        return {"used": self.used, "max": self.max}


@dataclass
class TimeAllowance:
    """Wall-clock dimension.

    ``elapsed_ms`` accumulates across pause/resume and checkpoint/resume so a
    resumed episode never gets a fresh clock.
    Time spent past ``max_ms`` is kept out of ``used`` and reported as
    ``overrun_ms`` instead.
    """

    max_ms: Optional[float] = None
    started_at: Optional[float] = None
    elapsed_ms: float = 0.0
    overrun_ms: float = 0.0
    running_since: Optional[float] = field(default=None, repr=False)

    @property
    def used(self) -> float:
        if self.max_ms is None:
            return self.elapsed_ms
        return min(self.elapsed_ms, self.max_ms)

    @property
    def remaining(self) -> float:
        if self.max_ms is None:
            return math.inf
        return max(self.max_ms - self.elapsed_ms, 0.0)

    def ratio(self) -> float:
        if not self.max_ms:
            return 0.0 if self.max_ms is None else 1.0
        return min(self.elapsed_ms / self.max_ms, 1.0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "startedAt": self.started_at,
            "elapsedMs": round(self.used, 3),
            "max": self.max_ms,
            "overrunMs": round(self.overrun_ms, 3),
        }


@dataclass
class Budget:
    tokens: Allowance = field(default_factory=Allowance)
    time: TimeAllowance = field(default_factory=TimeAllowance)
    tool_calls: Allowance = field(default_factory=Allowance)
    subcalls: Allowance = field(default_factory=Allowance)

    @classmethod
    def create(
        cls,
        *,
        max_tokens: Optional[int] = None,
        max_time_ms: Optional[float] = None,
        max_tool_calls: Optional[int] = None,
        max_subcalls: Optional[int] = None,
    ) -> "Budget":
        return cls(
            tokens=Allowance(max=max_tokens),
            time=TimeAllowance(max_ms=max_time_ms),
            tool_calls=Allowance(max=max_tool_calls),
            subcalls=Allowance(max=max_subcalls),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tokens": self.tokens.to_dict(),
            "timeMs": self.time.to_dict(),
            "toolCalls": self.tool_calls.to_dict(),
            "subcalls": self.subcalls.to_dict(),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Budget":
        tokens = payload.get("tokens") or {}
        time_payload = payload.get("timeMs") or payload.get("time") or {}
        tool_calls = payload.get("toolCalls") or payload.get("tool_calls") or {}
        subcalls = payload.get("subcalls") or {}
        return cls(
            tokens=Allowance(used=int(tokens.get("used", 0)), max=_opt_int(tokens.get("max"))),
            time=TimeAllowance(
                max_ms=_opt_float(time_payload.get("max")),
                started_at=_opt_float(time_payload.get("startedAt")),
                elapsed_ms=float(time_payload.get("elapsedMs", 0.0)) + float(time_payload.get("overrunMs", 0.0)),
                overrun_ms=float(time_payload.get("overrunMs", 0.0)),
            ),
            tool_calls=Allowance(used=int(tool_calls.get("used", 0)), max=_opt_int(tool_calls.get("max"))),
            subcalls=Allowance(used=int(subcalls.get("used", 0)), max=_opt_int(subcalls.get("max"))),
        )


def _opt_int(value: Any) -> Optional[int]:
    return None if value is None else int(value)


def _opt_float(value: Any) -> Optional[float]:
    return None if value is None else float(value)


@dataclass(frozen=True)
class RemainingBudget:
    tokens: float
    time_ms: float
    tool_calls: float
    subcalls: float


@dataclass(frozen=True)
class BudgetWarning:
    """Advisory raised once per dimension when consumption crosses the threshold."""

    dimension: str
    used: float
    max: float
    ratio: float


@dataclass(frozen=True)
class BudgetCheck:
    allowed: bool
    violations: List[str] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class BudgetFloor:
    """Minimum viable allocation per dimension for a child episode."""

    tokens: int = 1
    time_ms: float = 1000
    tool_calls: int = 1


def extract_token_usage(value: Any) -> Optional[int]:
    """Best-effort extraction of real token usage from a handler result."""

    direct = getattr(value, "tokens_used", None)
    if isinstance(direct, (int, float)) and not isinstance(direct, bool):
        return int(direct)
    if isinstance(value, Mapping):
        for key in ("tokensUsed", "tokens_used"):
            raw = value.get(key)
            if isinstance(raw, (int, float)) and not isinstance(raw, bool):
                return int(raw)
        usage = value.get("usage")
        if isinstance(usage, Mapping):
            total = usage.get("total_tokens")
            if isinstance(total, (int, float)):
                return int(total)
            parts = [usage.get("input_tokens"), usage.get("output_tokens")]
            if any(isinstance(part, (int, float)) for part in parts):
                return int(sum(part for part in parts if isinstance(part, (int, float))))
    usage = getattr(value, "usage", None)
    if usage is not None and not isinstance(value, Mapping):
        return extract_token_usage({"usage": usage if isinstance(usage, Mapping) else vars(usage)})
    return None


WarningListener = Callable[[BudgetWarning], None]


class BudgetGuard:
    """Atomic accounting and enforcement for exactly one episode's budget."""

    def __init__(
        self,
        budget: Budget | None = None,
        *,
        registry: "ToolRegistry | None" = None,
        episode_id: Optional[str] = None,
        warning_threshold: float = 0.7,
        telemetry: Telemetry | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.budget = budget or Budget()
        self.registry = registry
        self.episode_id = episode_id
        self.warning_threshold = warning_threshold
        self.telemetry = telemetry or NULL_TELEMETRY
        self._clock = clock
        self._lock = Lock()
        self._reserved_tokens = 0
        self._warned: set[str] = set()
        self._listeners: List[WarningListener] = []
        self.warnings: List[BudgetWarning] = []
        self.tool_call_counts: Counter[str] = Counter()
        self.child_episode_ids: List[str] = []

    # ------------------------------------------------------------------
    # Time accounting
    # ------------------------------------------------------------------
    def start(self) -> None:
        clock = self.budget.time
        if clock.running_since is not None:
            return
        if clock.started_at is None:
            clock.started_at = time.time() * 1000
        clock.running_since = self._clock()

    def pause(self) -> None:
        with self._lock:
            self._sync_time()
            self.budget.time.running_since = None

    def resume(self) -> None:
        if self.budget.time.running_since is None:
            self.budget.time.running_since = self._clock()

    def stop(self) -> None:
        self.pause()
        self._check_thresholds()

    @property
    def running(self) -> bool:
        return self.budget.time.running_since is not None

    def _sync_time(self) -> None:
        clock = self.budget.time
        if clock.running_since is None:
            return
        now = self._clock()
        clock.elapsed_ms += max(now - clock.running_since, 0.0) * 1000
        clock.running_since = now

    def elapsed_ms(self) -> float:
        with self._lock:
            self._sync_time()
            return self.budget.time.elapsed_ms

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------
    def add_warning_listener(self, listener: WarningListener) -> None:
        self._listeners.append(listener)

    @property
    def wrap_up_advised(self) -> bool:
        return bool(self.warnings)

    def _check_thresholds(self) -> None:
        fired: List[BudgetWarning] = []
        with self._lock:
            self._sync_time()
            dims = {
                "tokens": (self.budget.tokens.used, self.budget.tokens.max, self.budget.tokens.ratio()),
                "time": (self.budget.time.used, self.budget.time.max_ms, self.budget.time.ratio()),
                "tool_calls": (self.budget.tool_calls.used, self.budget.tool_calls.max, self.budget.tool_calls.ratio()),
                "subcalls": (self.budget.subcalls.used, self.budget.subcalls.max, self.budget.subcalls.ratio()),
            }
            for name, (used, maximum, ratio) in dims.items():
                if maximum is None or name in self._warned:
                    continue
                if ratio >= self.warning_threshold:
                    self._warned.add(name)
                    warning = BudgetWarning(dimension=name, used=used, max=maximum, ratio=round(ratio, 4))
                    self.warnings.append(warning)
                    fired.append(warning)
        for warning in fired:
            self.telemetry.emit(
                "budget.warning",
                episode_id=self.episode_id,
                dimension=warning.dimension,
                used=warning.used,
                max=warning.max,
                ratio=warning.ratio,
            )
            for listener in list(self._listeners):
                listener(warning)

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------
    def _evaluate(self, *, tokens: int = 0, tool_calls: int = 0, subcalls: int = 0) -> BudgetCheck:
        # Caller holds the lock.
        self._sync_time()
        violations: List[str] = []
        details: Dict[str, Any] = {}
        budget = self.budget
        if budget.tokens.max is not None:
            would_use = budget.tokens.used + self._reserved_tokens + tokens
            if would_use > budget.tokens.max:
                violations.append("tokens")
                details["tokens"] = {"wouldExceedBy": would_use - budget.tokens.max}
        if budget.tool_calls.max is not None:
            would_use = budget.tool_calls.used + tool_calls
            if would_use > budget.tool_calls.max:
                violations.append("toolCalls")
                details["toolCalls"] = {"wouldExceedBy": would_use - budget.tool_calls.max}
        if budget.subcalls.max is not None:
            would_use = budget.subcalls.used + subcalls
            if would_use > budget.subcalls.max:
                violations.append("subcalls")
                details["subcalls"] = {"wouldExceedBy": would_use - budget.subcalls.max}
        if budget.time.max_ms is not None and budget.time.elapsed_ms >= budget.time.max_ms:
            violations.append("time")
            details["time"] = {"exceededBy": round(budget.time.elapsed_ms - budget.time.max_ms, 3)}
        return BudgetCheck(allowed=not violations, violations=violations, details=details)

    def check(self, *, tokens: int = 0, tool_calls: int = 0, subcalls: int = 0) -> BudgetCheck:
        """Pure check of a prospective consumption; records nothing."""

        with self._lock:
            return self._evaluate(tokens=tokens, tool_calls=tool_calls, subcalls=subcalls)

    def check_all(self) -> BudgetCheck:
        """Report every dimension that is already fully consumed."""

        with self._lock:
            self._sync_time()
            violations: List[str] = []
            budget = self.budget
            if budget.tokens.max is not None and budget.tokens.used >= budget.tokens.max:
                violations.append("tokens")
            if budget.tool_calls.max is not None and budget.tool_calls.used >= budget.tool_calls.max:
                violations.append("toolCalls")
            if budget.subcalls.max is not None and budget.subcalls.used >= budget.subcalls.max:
                violations.append("subcalls")
            if budget.time.max_ms is not None and budget.time.elapsed_ms >= budget.time.max_ms:
                violations.append("time")
            return BudgetCheck(allowed=not violations, violations=violations)

    def is_exhausted(self) -> bool:
        """True when no further tool call could be admitted."""

        result = self.check_all()
        return any(name in result.violations for name in ("tokens", "toolCalls", "time"))

    def _reject(self, check: BudgetCheck, operation: str) -> BudgetExceededError:
        self.telemetry.emit(
            "budget.exceeded",
            episode_id=self.episode_id,
            operation=operation,
            violations=list(check.violations),
            details=dict(check.details),
        )
        return BudgetExceededError(check.violations, check.details)

    # ------------------------------------------------------------------
    # Guarded operations
    # ------------------------------------------------------------------
    def estimate_tokens(self, tool_id: str) -> int:
        if self.registry is None:
            return 0
        definition = self.registry.get(tool_id)
        if definition is None or definition.budget_cost.default_tokens is None:
            return 0
        return int(definition.budget_cost.default_tokens)

    async def guard_tool_call(
        self,
        tool_id: str,
        fn: Callable[[], Awaitable[T]],
        *,
        estimated_tokens: Optional[int] = None,
    ) -> T:
        """Run ``fn`` only if the estimated cost of ``tool_id`` fits the budget.

        Raises :class:`BudgetExceededError` without calling ``fn`` otherwise.
        """

        estimate = self.estimate_tokens(tool_id) if estimated_tokens is None else int(estimated_tokens)
        with self._lock:
            check = self._evaluate(tokens=estimate, tool_calls=1)
            if not check.allowed:
                raise self._reject(check, f"tool:{tool_id}")
            self._reserved_tokens += estimate
            self.budget.tool_calls.used += 1
            self.tool_call_counts[tool_id] += 1
        actual: Optional[int] = None
        try:
            result = await fn()
            actual = extract_token_usage(result)
            return result
        finally:
            self._settle(estimate, estimate if actual is None else actual)
            self._report_time_overrun(f"tool:{tool_id}")
            self._check_thresholds()

    async def guard_llm_call(self, fn: Callable[[], Any], *, estimated_tokens: int) -> Any:
        with self._lock:
            check = self._evaluate(tokens=estimated_tokens)
            if not check.allowed:
                raise self._reject(check, "llm")
            self._reserved_tokens += estimated_tokens
        actual: Optional[int] = None
        try:
            result = fn()
            if inspect.isawaitable(result):
                result = await result
            actual = extract_token_usage(result)
            return result
        finally:
            self._settle(estimated_tokens, estimated_tokens if actual is None else actual)
            self._report_time_overrun("llm")
            self._check_thresholds()

    def _settle(self, reserved: int, actual: int) -> None:
        overrun = 0
        with self._lock:
            self._reserved_tokens = max(self._reserved_tokens - reserved, 0)
            tokens = self.budget.tokens
            new_used = tokens.used + max(int(actual), 0)
            if tokens.max is not None and new_used > tokens.max:
                overrun = new_used - tokens.max
                new_used = tokens.max
            tokens.used = new_used
        if overrun:
            logger.warning(
                "episode %s reported %d tokens beyond its budget; usage clamped at max",
                self.episode_id,
                overrun,
            )
            self.telemetry.emit("budget.overrun", episode_id=self.episode_id, dimension="tokens", overrun=overrun)

    def _report_time_overrun(self, operation: str) -> None:
        with self._lock:
            self._sync_time()
            clock = self.budget.time
            if clock.max_ms is None:
                return
            total = clock.elapsed_ms - clock.max_ms
            if total <= clock.overrun_ms:
                return
            overrun = round(total - clock.overrun_ms, 3)
            clock.overrun_ms = total
        logger.warning(
            "episode %s ran %.0fms past its time budget during %s",
            self.episode_id,
            overrun,
            operation,
        )
        self.telemetry.emit(
            "budget.overrun",
            episode_id=self.episode_id,
            dimension="time",
            operation=operation,
            overrun=overrun,
        )

    def allocate_subcall_budget(
        self,
        fraction: float,
        *,
        floor: BudgetFloor | None = None,
        max_fraction: float = MAX_CHILD_FRACTION,
        child_episode_id: Optional[str] = None,
    ) -> Budget:
        """Carve a child budget out of what remains of this one.

        ``fraction`` is clamped to ``[0, min(max_fraction, 0.5)]`` so a child
        can never receive more than half of any remaining dimension.  When a
        ``floor`` is given, allocations that would leave the child below it are
        refused instead of producing a budget that fails on its first call.
        """

        cap = min(max(float(max_fraction), 0.0), MAX_CHILD_FRACTION)
        share = min(max(float(fraction), 0.0), cap)
        with self._lock:
            check = self._evaluate(subcalls=1)
            check = BudgetCheck(
                allowed="subcalls" not in check.violations and "time" not in check.violations,
                violations=[name for name in check.violations if name in {"subcalls", "time"}],
                details={key: value for key, value in check.details.items() if key in {"subcalls", "time"}},
            )
            if not check.allowed:
                raise self._reject(check, "subcall")
            budget = self.budget
            child = Budget()
            if budget.tokens.max is not None:
                remaining = budget.tokens.max - budget.tokens.used - self._reserved_tokens
                child.tokens = Allowance(max=max(math.floor(share * remaining), 0))
            if budget.time.max_ms is not None:
                remaining_ms = budget.time.max_ms - budget.time.elapsed_ms
                child.time = TimeAllowance(max_ms=float(max(math.floor(share * remaining_ms), 0)))
            if budget.tool_calls.max is not None:
                remaining = budget.tool_calls.max - budget.tool_calls.used
                child.tool_calls = Allowance(max=max(math.floor(share * remaining), 0))
            if budget.subcalls.max is not None:
                remaining = budget.subcalls.max - (budget.subcalls.used + 1)
                child.subcalls = Allowance(max=max(math.floor(share * remaining), 0))
            if floor is not None:
                short: List[str] = []
                if child.tokens.max is not None and child.tokens.max < floor.tokens:
                    short.append("tokens")
                if child.time.max_ms is not None and child.time.max_ms < floor.time_ms:
                    short.append("time")
                if child.tool_calls.max is not None and child.tool_calls.max < floor.tool_calls:
                    short.append("toolCalls")
                if short:
                    refusal = BudgetCheck(
                        allowed=False,
                        violations=short,
                        details={"reason": "below_minimum_viable_budget", "child": child.to_dict()},
                    )
                    raise self._reject(refusal, "subcall")
            budget.subcalls.used += 1
            if child_episode_id:
                self.child_episode_ids.append(child_episode_id)
        self._check_thresholds()
        return child

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------
    def get_remaining_budget(self) -> RemainingBudget:
        """Read-only view; not an authorisation check (use the guards for that)."""

        with self._lock:
            self._sync_time()
            budget = self.budget
            tokens = budget.tokens.remaining
            if budget.tokens.max is not None:
                tokens -= self._reserved_tokens
            return RemainingBudget(
                tokens=tokens,
                time_ms=budget.time.remaining,
                tool_calls=budget.tool_calls.remaining,
                subcalls=budget.subcalls.remaining,
            )

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            self._sync_time()
            return self.budget.to_dict()


__all__ = [
    "Allowance",
    "Budget",
    "BudgetCheck",
    "BudgetFloor",
    "BudgetGuard",
    "BudgetWarning",
    "DIMENSIONS",
    "RemainingBudget",
    "TimeAllowance",
    "extract_token_usage",
]
