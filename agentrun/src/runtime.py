"""Composition root wiring the registry, pipeline, episodes and oversight together."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .core.budget import Budget, BudgetFloor, BudgetWarning
from .core.checkpoint import (
    BUDGET_WARNING,
    PHASE_COMPLETE,
    Checkpoint,
    CheckpointManager,
    CheckpointStore,
    CheckpointStrategy,
    InMemoryCheckpointStore,
    resume,
)
from .core.config import RuntimeSettings
from .core.episode import Episode, EpisodeStateMachine
from .core.recursion import RecursionController, RecursionPolicy, RecursionRequest, SpawnResult
from .core.telemetry import JsonLinesSink, OversightSink, Telemetry, TelemetrySink
from .core.tools import ToolDefinition
from .core.tools.registry import ToolRegistry
from .core.types import AuditEmitter, PolicyEngine, ToolHandler
from .core.wrapper import Sleep, ToolWrapper
from .governance.kill_switch import KillSwitchService
from .oversight.store import OversightStore


logger = logging.getLogger(__name__)


class EpisodeRuntime:
    """Process-wide runtime: one registry and pipeline shared by many episodes."""

    def __init__(
        self,
        settings: RuntimeSettings | None = None,
        *,
        registry: ToolRegistry | None = None,
        policy_engine: PolicyEngine | None = None,
        audit: AuditEmitter | None = None,
        telemetry: Telemetry | None = None,
        kill_switch: KillSwitchService | None = None,
        checkpoint_store: CheckpointStore | None = None,
        checkpoint_strategy: CheckpointStrategy | None = None,
        default_recursion_policy: RecursionPolicy | None = None,
        sleep: Sleep | None = None,
    ) -> None:
        self.settings = settings or RuntimeSettings()
        self.store: OversightStore | None = None
        if self.settings.database_path is not None:
            self.store = OversightStore(db_path=self.settings.database_path)

        if telemetry is None:
            sinks: List[TelemetrySink] = []
            if self.settings.telemetry_path is not None:
                sinks.append(JsonLinesSink(self.settings.telemetry_path))
            if self.store is not None:
                sinks.append(OversightSink(self.store))
            telemetry = Telemetry(sinks=sinks)
        self.telemetry = telemetry

        self.registry = registry or ToolRegistry()
        self.kill_switch = kill_switch or KillSwitchService(telemetry=self.telemetry)
        self.wrapper = ToolWrapper(
            self.registry,
            policy_engine=policy_engine,
            audit=audit if audit is not None else self.store,
            telemetry=self.telemetry,
            default_timeout_ms=self.settings.default_timeout_ms,
            max_concurrent_per_client=self.settings.max_concurrent_tool_calls_per_client,
            sleep=sleep,
        )
        self.floor = BudgetFloor(
            tokens=self.settings.min_child_tokens,
            time_ms=self.settings.min_child_time_ms,
            tool_calls=self.settings.min_child_tool_calls,
        )
        self.recursion = RecursionController(
            self.wrapper,
            default_policy=default_recursion_policy,
            floor=self.floor,
            max_fraction=self.settings.max_child_fraction,
            telemetry=self.telemetry,
        )
        store: CheckpointStore
        if checkpoint_store is not None:
            store = checkpoint_store
        elif self.store is not None:
            store = self.store
        else:
            store = InMemoryCheckpointStore()
        self.checkpoints = CheckpointManager(store, strategy=checkpoint_strategy, telemetry=self.telemetry)
        self.episodes: Dict[str, EpisodeStateMachine] = {}

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------
    def register_tool(
        self,
        definition: ToolDefinition | Mapping[str, Any],
        handler: ToolHandler | None = None,
    ) -> ToolDefinition:
        spec = self.registry.register(definition)
        if handler is not None:
            self.wrapper.register_handler(spec.id, handler)
        return spec

    def register_tools(self, definitions: Iterable[ToolDefinition | Mapping[str, Any]]) -> List[ToolDefinition]:
        return [self.register_tool(definition) for definition in definitions]

    def register_handler(self, tool_id: str, handler: ToolHandler) -> None:
        self.wrapper.register_handler(tool_id, handler)

    # ------------------------------------------------------------------
    # Episodes
    # ------------------------------------------------------------------
    def _attach(self, machine: EpisodeStateMachine) -> EpisodeStateMachine:
        # Warnings fire inside the budget guard while a call is in flight; the
        # snapshot is taken once the episode is idle again.
        due: List[BudgetWarning] = []

        def on_warning(warning: BudgetWarning) -> None:
            due.append(warning)

        def on_idle(_: EpisodeStateMachine) -> None:
            if due:
                due.clear()
                self.checkpoints.maybe_checkpoint(machine, BUDGET_WARNING)

        machine.guard.add_warning_listener(on_warning)
        machine.add_idle_hook(on_idle)
        self.episodes[machine.episode.id] = machine
        return machine

    def create_episode(
        self,
        goal: str,
        *,
        client_id: str,
        agent_id: str,
        budget: Budget | None = None,
        inputs: Mapping[str, Any] | None = None,
        recursion_policy: RecursionPolicy | None = None,
        phase_requirements: Mapping[str, Iterable[str]] | None = None,
    ) -> EpisodeStateMachine:
        episode = Episode(
            goal=goal,
            client_id=client_id,
            agent_id=agent_id,
            budget=budget or Budget(),
            inputs=dict(inputs or {}),
            recursion_policy=recursion_policy,
        )
        machine = EpisodeStateMachine(
            episode,
            self.wrapper,
            kill_switch=self.kill_switch,
            telemetry=self.telemetry,
            phase_requirements=phase_requirements,
            warning_threshold=self.settings.warning_threshold,
        )
        return self._attach(machine)

    def advance(self, machine: EpisodeStateMachine) -> bool:
        """Advance ``machine`` one phase and checkpoint per the strategy."""

        phase = machine.phase
        advanced = machine.advance_phase()
        if advanced and not machine.episode.is_terminal:
            self.checkpoints.maybe_checkpoint(machine, PHASE_COMPLETE, phase=phase)
        return advanced

    def spawn_child(self, parent: EpisodeStateMachine, request: RecursionRequest) -> SpawnResult:
        result = self.recursion.spawn(parent, request)
        if result.child is not None:
            self._attach(result.child)
        return result

    def cancel(self, machine: EpisodeStateMachine, reason: str = "cancelled", *, cascade: bool = False) -> List[str]:
        cancelled: List[str] = []
        if machine.cancel(reason):
            cancelled.append(machine.episode.id)
        if cascade:
            cancelled.extend(self.recursion.cascade_cancel(machine, reason))
        return cancelled

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------
    def checkpoint(self, machine: EpisodeStateMachine) -> Checkpoint:
        return self.checkpoints.force_checkpoint(machine)

    def resume(self, checkpoint_id: str) -> EpisodeStateMachine:
        snapshot = self.checkpoints.store.load(checkpoint_id)
        machine = resume(
            snapshot,
            self.wrapper,
            telemetry=self.telemetry,
            kill_switch=self.kill_switch,
            warning_threshold=self.settings.warning_threshold,
        )
        return self._attach(machine)

    def restore_latest(self, episode_id: str) -> Optional[EpisodeStateMachine]:
        machine = self.checkpoints.restore_latest(
            episode_id,
            self.wrapper,
            kill_switch=self.kill_switch,
            warning_threshold=self.settings.warning_threshold,
        )
        return None if machine is None else self._attach(machine)

    def close(self) -> None:
        if self.store is not None:
            self.store.close()


__all__ = ["EpisodeRuntime"]
