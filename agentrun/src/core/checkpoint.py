"""Checkpoint snapshots and resume.

A checkpoint captures an episode's status, phase, budget ledger and partial
outputs at a phase boundary.  Resuming rebuilds a ``running`` episode at the
saved phase with the saved budget; it never grants fresh budget and never
replays tool calls, so side effects that already happened stay recorded in
``side_effect_targets`` instead of being repeated.
"""

from __future__ import annotations

import copy
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Protocol, Sequence

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .budget import Budget
from .errors import CheckpointError
from .episode import PHASES, STATUSES, TERMINAL_STATUSES, Episode, EpisodeStateMachine, FailureRecord
from .recursion import RecursionPolicy
from .telemetry import NULL_TELEMETRY, Telemetry

if TYPE_CHECKING:
    from .wrapper import ToolWrapper


logger = logging.getLogger(__name__)

CHECKPOINT_SCHEMA_VERSION = "1.1"

PHASE_COMPLETE = "phase_complete"
BUDGET_WARNING = "budget_warning"
MANUAL = "manual"


def new_checkpoint_id() -> str:
    return f"cp_{uuid.uuid4().hex}"


class Checkpoint(BaseModel):
    """Serialisable snapshot of one episode."""

    model_config = ConfigDict(extra="forbid")

    schema_version: str = Field(default=CHECKPOINT_SCHEMA_VERSION)
    id: str = Field(default_factory=new_checkpoint_id)
    episode_id: str
    client_id: str
    agent_id: str
    goal: str
    status: str
    phase: str
    depth: int = 0
    parent_episode_id: Optional[str] = None
    root_episode_id: Optional[str] = None
    child_type: Optional[str] = None
    budget: Dict[str, Any]
    inputs: Dict[str, Any] = Field(default_factory=dict)
    outputs: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    completed_phases: List[str] = Field(default_factory=list)
    side_effect_targets: List[str] = Field(default_factory=list)
    inherited_side_effect_targets: List[str] = Field(default_factory=list)
    child_ids: List[str] = Field(default_factory=list)
    recursion_policy: Optional[Dict[str, Any]] = None
    phase_requirements: Dict[str, List[str]] = Field(default_factory=dict)
    failures: List[Dict[str, Any]] = Field(default_factory=list)
    trigger: str = MANUAL
    created_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @field_validator("status")
    @classmethod
    def _validate_status(cls, value: str) -> str:
        if value not in STATUSES:
            raise ValueError(f"Unknown episode status: {value}")
        return value

    @field_validator("phase")
    @classmethod
    def _validate_phase(cls, value: str) -> str:
        if value not in PHASES:
            raise ValueError(f"Unknown phase: {value}")
        return value


def checkpoint(machine: EpisodeStateMachine, *, trigger: str = MANUAL) -> Checkpoint:
    """Snapshot ``machine``'s episode; only legal between tool calls."""

    if machine.in_flight:
        raise CheckpointError(
            f"Cannot checkpoint episode {machine.episode.id} with {machine.in_flight} tool call(s) in flight"
        )
    episode = machine.episode
    current = PHASES.index(episode.phase)
    return Checkpoint(
        episode_id=episode.id,
        client_id=episode.client_id,
        agent_id=episode.agent_id,
        goal=episode.goal,
        status=episode.status,
        phase=episode.phase,
        depth=episode.depth,
        parent_episode_id=episode.parent_episode_id,
        root_episode_id=episode.root_episode_id,
        child_type=episode.child_type,
        budget=machine.guard.snapshot(),
        inputs=copy.deepcopy(episode.inputs),
        outputs=copy.deepcopy(episode.outputs),
        completed_phases=list(PHASES[:current]),
        side_effect_targets=sorted(episode.side_effect_targets),
        inherited_side_effect_targets=sorted(episode.inherited_side_effect_targets),
        child_ids=list(episode.child_ids),
        recursion_policy=None if episode.recursion_policy is None else episode.recursion_policy.to_dict(),
        phase_requirements={phase: list(names) for phase, names in machine.phase_requirements.items()},
        failures=[item.to_dict() for item in episode.failures],
        trigger=trigger,
    )


def resume(
    snapshot: Checkpoint,
    wrapper: "ToolWrapper",
    *,
    telemetry: Telemetry | None = None,
    **machine_options: Any,
) -> EpisodeStateMachine:
    """Rebuild a running episode from ``snapshot``.

    Resuming the same checkpoint twice yields two machines with identical
    starting state.
    """

    if snapshot.status in TERMINAL_STATUSES:
        raise CheckpointError(f"Checkpoint {snapshot.id} captured a {snapshot.status} episode")
    episode = Episode(
        id=snapshot.episode_id,
        goal=snapshot.goal,
        client_id=snapshot.client_id,
        agent_id=snapshot.agent_id,
        budget=Budget.from_dict(snapshot.budget),
        phase=snapshot.phase,
        depth=snapshot.depth,
        parent_episode_id=snapshot.parent_episode_id,
        root_episode_id=snapshot.root_episode_id,
        child_type=snapshot.child_type,
        inputs=copy.deepcopy(snapshot.inputs),
        outputs=copy.deepcopy(snapshot.outputs),
        side_effect_targets=set(snapshot.side_effect_targets),
        inherited_side_effect_targets=set(snapshot.inherited_side_effect_targets),
        child_ids=list(snapshot.child_ids),
        recursion_policy=(
            None if snapshot.recursion_policy is None else RecursionPolicy.from_mapping(snapshot.recursion_policy)
        ),
        failures=[FailureRecord.from_dict(item) for item in snapshot.failures],
    )
    telemetry = telemetry or NULL_TELEMETRY
    if snapshot.phase_requirements:
        machine_options.setdefault("phase_requirements", snapshot.phase_requirements)
    machine = EpisodeStateMachine(episode, wrapper, telemetry=telemetry, **machine_options)
    machine.resume_running(f"resumed from checkpoint {snapshot.id}")
    telemetry.emit(
        "checkpoint.resumed",
        checkpoint_id=snapshot.id,
        episode_id=episode.id,
        phase=episode.phase,
    )
    return machine


class CheckpointStore(Protocol):
    """Persistence contract for checkpoints."""

    def save(self, checkpoint: Checkpoint) -> str:  # pragma: no cover - interface
        ...

    def load(self, checkpoint_id: str) -> Checkpoint:  # pragma: no cover - interface
        ...

    def list_checkpoints(self, episode_id: str) -> List[Checkpoint]:  # pragma: no cover - interface
        ...

    def prune(self, episode_id: str, *, keep_latest: int = 1) -> int:  # pragma: no cover - interface
        ...


class InMemoryCheckpointStore:
    def __init__(self) -> None:
        self._items: Dict[str, Checkpoint] = {}
        self._lock = Lock()

    def save(self, checkpoint: Checkpoint) -> str:
        with self._lock:
            self._items[checkpoint.id] = checkpoint.model_copy(deep=True)
        return checkpoint.id

    def load(self, checkpoint_id: str) -> Checkpoint:
        with self._lock:
            item = self._items.get(checkpoint_id)
        if item is None:
            raise CheckpointError(f"Unknown checkpoint: {checkpoint_id}")
        return item.model_copy(deep=True)

    def list_checkpoints(self, episode_id: str) -> List[Checkpoint]:
        with self._lock:
            # dict preserves insertion order, which is creation order
            return [item for item in self._items.values() if item.episode_id == episode_id]

    def prune(self, episode_id: str, *, keep_latest: int = 1) -> int:
        items = self.list_checkpoints(episode_id)
        stale = items[: max(len(items) - max(keep_latest, 0), 0)]
        with self._lock:
            for item in stale:
                self._items.pop(item.id, None)
        return len(stale)


@dataclass
class CheckpointStrategy:
    """Decides when :meth:`CheckpointManager.maybe_checkpoint` writes a snapshot."""

    on_phase_complete: bool = True
    on_budget_warning: bool = False
    interval_ms: Optional[float] = None
    phases: Optional[Sequence[str]] = None

    def should_checkpoint(
        self,
        event: str,
        *,
        phase: str | None = None,
        last_checkpoint_at: float | None = None,
        now: float | None = None,
    ) -> bool:
        if self.on_phase_complete and event == PHASE_COMPLETE:
            if self.phases is not None and phase not in self.phases:
                return False
            return True
        if self.on_budget_warning and event == BUDGET_WARNING:
            return True
        if self.interval_ms is not None and last_checkpoint_at is not None:
            current = time.monotonic() if now is None else now
            if (current - last_checkpoint_at) * 1000 >= self.interval_ms:
                return True
        return False


class CheckpointManager:
    def __init__(
        self,
        store: CheckpointStore,
        *,
        strategy: CheckpointStrategy | None = None,
        telemetry: Telemetry | None = None,
    ) -> None:
        self.store = store
        self.strategy = strategy or CheckpointStrategy()
        self.telemetry = telemetry or NULL_TELEMETRY
        self._last_at: Dict[str, float] = {}

    def maybe_checkpoint(
        self,
        machine: EpisodeStateMachine,
        event: str,
        *,
        phase: str | None = None,
    ) -> Optional[Checkpoint]:
        episode_id = machine.episode.id
        if not self.strategy.should_checkpoint(
            event,
            phase=phase,
            last_checkpoint_at=self._last_at.get(episode_id),
        ):
            return None
        return self.force_checkpoint(machine, trigger=event)

    def force_checkpoint(self, machine: EpisodeStateMachine, *, trigger: str = MANUAL) -> Checkpoint:
        snapshot = checkpoint(machine, trigger=trigger)
        self.store.save(snapshot)
        self._last_at[snapshot.episode_id] = time.monotonic()
        logger.debug("checkpoint %s saved for episode %s (%s)", snapshot.id, snapshot.episode_id, trigger)
        self.telemetry.emit(
            "checkpoint.saved",
            checkpoint_id=snapshot.id,
            episode_id=snapshot.episode_id,
            phase=snapshot.phase,
            trigger=trigger,
        )
        return snapshot

    def restore_latest(self, episode_id: str, wrapper: "ToolWrapper", **machine_options: Any) -> Optional[EpisodeStateMachine]:
        items = self.store.list_checkpoints(episode_id)
        if not items:
            return None
        return resume(items[-1], wrapper, telemetry=self.telemetry, **machine_options)

    def history(self, episode_id: str) -> List[Checkpoint]:
        return self.store.list_checkpoints(episode_id)

    def cleanup(self, episode_id: str, *, keep_latest: int = 1) -> int:
        return self.store.prune(episode_id, keep_latest=keep_latest)


__all__ = [
    "BUDGET_WARNING",
    "CHECKPOINT_SCHEMA_VERSION",
    "Checkpoint",
    "CheckpointManager",
    "CheckpointStore",
    "CheckpointStrategy",
    "InMemoryCheckpointStore",
    "MANUAL",
    "PHASE_COMPLETE",
    "checkpoint",
    "new_checkpoint_id",
    "resume",
]
