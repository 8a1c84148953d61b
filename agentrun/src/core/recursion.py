"""Controlled recursion into child episodes.

The controller decides whether an episode may spawn a child, carves the
child's budget out of the parent's remaining budget, derives a child policy
that is never looser than the parent's, and tracks the outcomes that stop a
parent's recursion altogether.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .budget import BudgetFloor
from .config import MAX_CHILD_FRACTION
from .episode import Episode, EpisodeStateMachine
from .errors import BudgetExceededError, InvalidRecursionPolicyError
from .telemetry import NULL_TELEMETRY, Telemetry


logger = logging.getLogger(__name__)

STOP_BUDGET_EXHAUSTED = "budget_exhausted"
STOP_DEPTH_EXCEEDED = "depth_exceeded"
STOP_NO_NEW_INFORMATION = "no_new_information"
STOP_REPEATED_FAILURE = "repeated_failure"
STOP_POLICY_BLOCKED = "policy_blocked"
STOP_OBJECTIVE_SATISFIED = "objective_satisfied"

STOP_CONDITIONS = (
    STOP_BUDGET_EXHAUSTED,
    STOP_DEPTH_EXCEEDED,
    STOP_NO_NEW_INFORMATION,
    STOP_REPEATED_FAILURE,
    STOP_POLICY_BLOCKED,
    STOP_OBJECTIVE_SATISFIED,
)

TRIGGER_MISSING_CONTEXT = "missing_context"
TRIGGER_AMBIGUOUS_HIGH_RISK = "ambiguous_high_risk"
TRIGGER_PREDICTED_BUDGET_BREACH = "predicted_budget_breach"
TRIGGER_SIDE_EFFECT_VERIFICATION = "side_effect_verification"
TRIGGER_CONFLICTING_EVIDENCE = "conflicting_evidence"

VERIFICATION_CHILD = "verification"


def _names(values: Sequence[str] | None) -> Tuple[str, ...]:
    return tuple(dict.fromkeys(str(value) for value in (values or ())))


@dataclass(frozen=True)
class RecursionPolicy:
    """Limits on the children an episode may spawn.

    An empty ``allowed_child_types`` allows every type not explicitly forbidden.
    """

    max_depth: int = 3
    max_children: int = 5
    max_total_episodes: int = 20
    allowed_child_types: Tuple[str, ...] = ()
    forbidden_child_types: Tuple[str, ...] = ()
    stop_conditions: Tuple[str, ...] = STOP_CONDITIONS
    no_new_info_limit: int = 2
    repeated_failure_limit: int = 3

    def __post_init__(self) -> None:
        object.__setattr__(self, "allowed_child_types", _names(self.allowed_child_types))
        object.__setattr__(self, "forbidden_child_types", _names(self.forbidden_child_types))
        object.__setattr__(self, "stop_conditions", _names(self.stop_conditions))
        for name in ("max_depth", "max_children", "max_total_episodes"):
            if getattr(self, name) < 0:
                raise InvalidRecursionPolicyError(f"{name} must be >= 0")
        for name in ("no_new_info_limit", "repeated_failure_limit"):
            if getattr(self, name) < 1:
                raise InvalidRecursionPolicyError(f"{name} must be >= 1")
        unknown = set(self.stop_conditions) - set(STOP_CONDITIONS)
        if unknown:
            raise InvalidRecursionPolicyError(f"Unknown stop conditions: {', '.join(sorted(unknown))}")
        overlap = set(self.allowed_child_types) & set(self.forbidden_child_types)
        if overlap:
            raise InvalidRecursionPolicyError(
                f"Child types both allowed and forbidden: {', '.join(sorted(overlap))}"
            )

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "RecursionPolicy":
        aliases = {
            "maxDepth": "max_depth",
            "maxChildren": "max_children",
            "maxTotalEpisodes": "max_total_episodes",
            "allowedChildTypes": "allowed_child_types",
            "forbiddenChildTypes": "forbidden_child_types",
            "stopConditions": "stop_conditions",
        }
        known = {item.name for item in fields(cls)}
        values: Dict[str, Any] = {}
        for key, value in raw.items():
            name = aliases.get(key, key)
            if name not in known:
                raise InvalidRecursionPolicyError(f"Unknown recursion policy field: {key}")
            values[name] = tuple(value) if isinstance(value, (list, tuple)) else value
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        """Serialise with the keys :meth:`from_mapping` accepts."""

        return {
            "maxDepth": self.max_depth,
            "maxChildren": self.max_children,
            "maxTotalEpisodes": self.max_total_episodes,
            "allowedChildTypes": list(self.allowed_child_types),
            "forbiddenChildTypes": list(self.forbidden_child_types),
            "stopConditions": list(self.stop_conditions),
            "no_new_info_limit": self.no_new_info_limit,
            "repeated_failure_limit": self.repeated_failure_limit,
        }

    def permits_child_type(self, child_type: str) -> bool:
        if child_type in self.forbidden_child_types:
            return False
        return not self.allowed_child_types or child_type in self.allowed_child_types

    def is_within(self, parent: "RecursionPolicy") -> bool:
        """True when this policy is equal to or stricter than ``parent``."""

        if self.max_depth > parent.max_depth:
            return False
        if self.max_children > parent.max_children:
            return False
        if self.max_total_episodes > parent.max_total_episodes:
            return False
        if self.no_new_info_limit > parent.no_new_info_limit:
            return False
        if self.repeated_failure_limit > parent.repeated_failure_limit:
            return False
        if parent.allowed_child_types:
            if not self.allowed_child_types:
                return False
            if not set(self.allowed_child_types) <= set(parent.allowed_child_types):
                return False
        if not set(parent.forbidden_child_types) <= set(self.forbidden_child_types):
            return False
        return set(parent.stop_conditions) <= set(self.stop_conditions)

    def tighten(self, **overrides: Any) -> "RecursionPolicy":
        """Derive a child policy; overrides may only make it stricter.

        Raises :class:`InvalidRecursionPolicyError` when an override would
        loosen any limit.
        """

        candidate = replace(self, **overrides) if overrides else self
        if not candidate.is_within(self):
            raise InvalidRecursionPolicyError("child recursion policy cannot be looser than its parent")
        return candidate


@dataclass
class RecursionRequest:
    child_type: str
    goal: str
    fraction: float = 0.25
    trigger: Optional[str] = None
    target: Optional[str] = None
    agent_id: Optional[str] = None
    inputs: Dict[str, Any] = field(default_factory=dict)
    policy_overrides: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RecursionDecision:
    allowed: bool
    reason: str
    stop_condition: Optional[str] = None


@dataclass
class SpawnResult:
    decision: RecursionDecision
    child: Optional[EpisodeStateMachine] = None

    @property
    def spawned(self) -> bool:
        return self.child is not None


@dataclass(frozen=True)
class ChildOutcome:
    child_episode_id: str
    status: str
    new_information: bool = True
    failure_class: Optional[str] = None
    policy_blocked: bool = False
    objective_satisfied: bool = False
    verified: bool = False


@dataclass
class _ParentState:
    children: List[EpisodeStateMachine] = field(default_factory=list)
    consecutive_no_new_info: int = 0
    failures: Counter[str] = field(default_factory=Counter)
    policy_blocked: bool = False
    objective_satisfied: bool = False
    stopped: Optional[str] = None


class RecursionController:
    """Spawns bounded children for one process-wide family of episodes."""

    def __init__(
        self,
        wrapper: Any,
        *,
        default_policy: RecursionPolicy | None = None,
        floor: BudgetFloor | None = None,
        max_fraction: float = MAX_CHILD_FRACTION,
        telemetry: Telemetry | None = None,
    ) -> None:
        self.wrapper = wrapper
        self.default_policy = default_policy or RecursionPolicy()
        self.floor = floor or BudgetFloor()
        self.max_fraction = max_fraction
        self.telemetry = telemetry or NULL_TELEMETRY
        self._parents: Dict[str, _ParentState] = {}
        self._chain_sizes: Dict[str, int] = {}

    def policy_for(self, episode: Episode) -> RecursionPolicy:
        return episode.recursion_policy or self.default_policy

    def _state(self, episode: Episode) -> _ParentState:
        return self._parents.setdefault(episode.id, _ParentState())

    def chain_size(self, episode: Episode) -> int:
        root = episode.root_episode_id or episode.id
        return self._chain_sizes.get(root, 1)

    def children_of(self, parent: EpisodeStateMachine) -> List[EpisodeStateMachine]:
        return list(self._state(parent.episode).children)

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------
    def suggest_trigger(self, signals: Mapping[str, Any]) -> Optional[str]:
        """Map observations about the current work to a spawn trigger, if any."""

        if signals.get("missing_context"):
            return TRIGGER_MISSING_CONTEXT
        if signals.get("high_risk") and signals.get("ambiguous"):
            return TRIGGER_AMBIGUOUS_HIGH_RISK
        predicted = signals.get("predicted_tokens")
        remaining = signals.get("remaining_tokens")
        if isinstance(predicted, (int, float)) and isinstance(remaining, (int, float)) and predicted > remaining:
            return TRIGGER_PREDICTED_BUDGET_BREACH
        if signals.get("unverified_side_effect"):
            return TRIGGER_SIDE_EFFECT_VERIFICATION
        if signals.get("conflicting_evidence"):
            return TRIGGER_CONFLICTING_EVIDENCE
        return None

    def stop_condition(self, parent: EpisodeStateMachine) -> Optional[str]:
        """First stop condition currently in force for ``parent``'s recursion."""

        episode = parent.episode
        policy = self.policy_for(episode)
        state = self._state(episode)
        if state.stopped is not None:
            return state.stopped
        checks = (
            (STOP_BUDGET_EXHAUSTED, parent.guard.is_exhausted()),
            (STOP_DEPTH_EXCEEDED, episode.depth >= policy.max_depth),
            (STOP_NO_NEW_INFORMATION, state.consecutive_no_new_info >= policy.no_new_info_limit),
            (
                STOP_REPEATED_FAILURE,
                any(count >= policy.repeated_failure_limit for count in state.failures.values()),
            ),
            (STOP_POLICY_BLOCKED, state.policy_blocked),
            (STOP_OBJECTIVE_SATISFIED, state.objective_satisfied),
        )
        for name, hit in checks:
            if hit and name in policy.stop_conditions:
                state.stopped = name
                logger.info("recursion stopped for episode %s: %s", episode.id, name)
                self.telemetry.emit("recursion.stopped", episode_id=episode.id, condition=name)
                return name
        return None

    def evaluate(self, parent: EpisodeStateMachine, request: RecursionRequest) -> RecursionDecision:
        episode = parent.episode
        if episode.is_terminal:
            return RecursionDecision(False, f"parent episode is {episode.status}")
        stop = self.stop_condition(parent)
        if stop is not None:
            return RecursionDecision(False, f"recursion stopped: {stop}", stop_condition=stop)
        policy = self.policy_for(episode)
        state = self._state(episode)
        if episode.depth + 1 > policy.max_depth:
            return RecursionDecision(False, f"depth {episode.depth + 1} exceeds max {policy.max_depth}")
        if len(state.children) >= policy.max_children:
            return RecursionDecision(False, f"max children ({policy.max_children}) reached")
        if self.chain_size(episode) >= policy.max_total_episodes:
            return RecursionDecision(False, f"max total episodes ({policy.max_total_episodes}) reached")
        if not policy.permits_child_type(request.child_type):
            return RecursionDecision(False, f"child type {request.child_type} is not permitted")
        acted_on = episode.side_effect_targets | episode.inherited_side_effect_targets
        if acted_on and request.child_type != VERIFICATION_CHILD:
            if request.target is None or request.target in acted_on:
                return RecursionDecision(
                    False,
                    "episode chain already caused a side effect; only verification children may follow",
                )
        return RecursionDecision(True, "allowed")

    # ------------------------------------------------------------------
    # Spawning
    # ------------------------------------------------------------------
    def _refuse(self, parent: EpisodeStateMachine, request: RecursionRequest, decision: RecursionDecision) -> SpawnResult:
        self.telemetry.emit(
            "recursion.refused",
            episode_id=parent.episode.id,
            child_type=request.child_type,
            reason=decision.reason,
            stop_condition=decision.stop_condition,
        )
        return SpawnResult(decision=decision)

    def spawn(self, parent: EpisodeStateMachine, request: RecursionRequest) -> SpawnResult:
        decision = self.evaluate(parent, request)
        if not decision.allowed:
            return self._refuse(parent, request, decision)

        episode = parent.episode
        child_policy = self.policy_for(episode).tighten(**request.policy_overrides)
        child = Episode(
            goal=request.goal,
            client_id=episode.client_id,
            agent_id=request.agent_id or episode.agent_id,
            depth=episode.depth + 1,
            parent_episode_id=episode.id,
            root_episode_id=episode.root_episode_id,
            child_type=request.child_type,
            inputs=dict(request.inputs),
            recursion_policy=child_policy,
            inherited_side_effect_targets=episode.side_effect_targets | episode.inherited_side_effect_targets,
        )
        try:
            child.budget = parent.guard.allocate_subcall_budget(
                request.fraction,
                floor=self.floor,
                max_fraction=self.max_fraction,
                child_episode_id=child.id,
            )
        except BudgetExceededError as exc:
            return self._refuse(
                parent,
                request,
                RecursionDecision(False, f"cannot allocate child budget: {exc}", stop_condition=None),
            )

        machine = EpisodeStateMachine(
            child,
            self.wrapper,
            kill_switch=parent.kill_switch,
            telemetry=self.telemetry,
            phase_requirements=parent.phase_requirements,
            warning_threshold=parent.guard.warning_threshold,
        )
        self._state(episode).children.append(machine)
        episode.child_ids.append(child.id)
        root = episode.root_episode_id or episode.id
        self._chain_sizes[root] = self.chain_size(episode) + 1
        episode.touch()
        self.telemetry.emit(
            "recursion.spawned",
            episode_id=episode.id,
            child_episode_id=child.id,
            child_type=request.child_type,
            trigger=request.trigger,
            depth=child.depth,
            budget=child.budget.to_dict(),
        )
        return SpawnResult(decision=decision, child=machine)

    def record_child_outcome(self, parent: EpisodeStateMachine, outcome: ChildOutcome) -> Optional[str]:
        """Fold a child's result into the parent's stop conditions; return any now in force."""

        state = self._state(parent.episode)
        if outcome.new_information:
            state.consecutive_no_new_info = 0
        else:
            state.consecutive_no_new_info += 1
        if outcome.failure_class:
            state.failures[outcome.failure_class] += 1
        if outcome.policy_blocked:
            state.policy_blocked = True
        if outcome.objective_satisfied and outcome.verified:
            state.objective_satisfied = True
        return self.stop_condition(parent)

    def cascade_cancel(self, parent: EpisodeStateMachine, reason: str = "parent cancelled") -> List[str]:
        """Cancel every live descendant of ``parent``; returns the cancelled ids."""

        cancelled: List[str] = []
        for child in self._state(parent.episode).children:
            if child.cancel(reason):
                cancelled.append(child.episode.id)
            cancelled.extend(self.cascade_cancel(child, reason))
        return cancelled


__all__ = [
    "ChildOutcome",
    "RecursionController",
    "RecursionDecision",
    "RecursionPolicy",
    "RecursionRequest",
    "STOP_BUDGET_EXHAUSTED",
    "STOP_CONDITIONS",
    "STOP_DEPTH_EXCEEDED",
    "STOP_NO_NEW_INFORMATION",
    "STOP_OBJECTIVE_SATISFIED",
    "STOP_POLICY_BLOCKED",
    "STOP_REPEATED_FAILURE",
    "SpawnResult",
    "TRIGGER_AMBIGUOUS_HIGH_RISK",
    "TRIGGER_CONFLICTING_EVIDENCE",
    "TRIGGER_MISSING_CONTEXT",
    "TRIGGER_PREDICTED_BUDGET_BREACH",
    "TRIGGER_SIDE_EFFECT_VERIFICATION",
    "VERIFICATION_CHILD",
]
