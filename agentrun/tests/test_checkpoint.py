from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
from pydantic import ValidationError

from agentrun.src.core.budget import Budget
from agentrun.src.core.checkpoint import (
    BUDGET_WARNING,
    MANUAL,
    PHASE_COMPLETE,
    Checkpoint,
    CheckpointManager,
    CheckpointStrategy,
    InMemoryCheckpointStore,
    checkpoint,
    resume,
)
from agentrun.src.core.episode import RUNNING, Episode, EpisodeStateMachine
from agentrun.src.core.errors import CheckpointError
from agentrun.src.core.recursion import RecursionPolicy
from agentrun.src.core.telemetry import InMemorySink, Telemetry
from agentrun.src.core.tools.registry import ToolRegistry
from agentrun.src.core.wrapper import ToolWrapper
from agentrun.src.oversight.store import OversightStore


class CountingTool:
    def __init__(self) -> None:
        self.calls = 0

    async def __call__(self, payload, ctx):
        self.calls += 1
        return {"sent": payload.get("target")}


def _setup():
    tool = CountingTool()
    wrapper = ToolWrapper(
        ToolRegistry(
            [
                {"id": "memory:read", "category": "read"},
                {"id": "email:send", "category": "sideEffect", "riskLevel": "publish"},
            ]
        )
    )
    wrapper.register_handler("memory:read", tool)
    wrapper.register_handler("email:send", tool)
    episode = Episode(
        goal="notify the customer",
        client_id="client-1",
        agent_id="agent-1",
        budget=Budget.create(max_tokens=1000, max_tool_calls=10),
        inputs={"customer": "c-42"},
    )
    machine = EpisodeStateMachine(episode, wrapper)
    machine.start()
    return machine, wrapper, tool


def _reach_act(machine: EpisodeStateMachine) -> None:
    machine.record_output("context", "ctx")
    machine.advance_phase()
    machine.record_output("plan", ["email the customer"])
    machine.advance_phase()


def test_snapshot_captures_phase_budget_and_outputs() -> None:
    machine, _, _ = _setup()
    _reach_act(machine)
    asyncio.run(machine.invoke_tool("email:send", {"target": "c-42"}))

    snapshot = checkpoint(machine, trigger=PHASE_COMPLETE)

    assert snapshot.id.startswith("cp_")
    assert snapshot.episode_id == machine.episode.id
    assert snapshot.status == RUNNING
    assert snapshot.phase == "act"
    assert snapshot.completed_phases == ["intake", "plan"]
    assert snapshot.outputs["plan"] == {"plan": ["email the customer"]}
    assert snapshot.budget["toolCalls"] == {"used": 1, "max": 10}
    assert snapshot.side_effect_targets == ["c-42"]
    assert snapshot.inputs == {"customer": "c-42"}
    assert snapshot.trigger == PHASE_COMPLETE


def test_snapshot_is_refused_while_calls_are_in_flight() -> None:
    machine, wrapper, _ = _setup()
    release = asyncio.Event()

    async def blocking(payload, ctx):
        await release.wait()
        return {}

    wrapper.register_handler("memory:read", blocking)

    async def scenario():
        task = asyncio.ensure_future(machine.invoke_tool("memory:read", {}))
        await asyncio.sleep(0.01)
        with pytest.raises(CheckpointError):
            checkpoint(machine)
        release.set()
        await task
        return checkpoint(machine)

    snapshot = asyncio.run(scenario())
    assert snapshot.budget["toolCalls"]["used"] == 1


def test_resume_keeps_identity_and_consumed_budget() -> None:
    machine, wrapper, tool = _setup()
    _reach_act(machine)
    asyncio.run(machine.invoke_tool("email:send", {"target": "c-42"}))
    snapshot = checkpoint(machine)

    resumed = resume(snapshot, wrapper)

    assert resumed.episode.id == machine.episode.id
    assert resumed.status == RUNNING
    assert resumed.phase == "act"
    assert resumed.episode.budget.tool_calls.used == 1
    assert resumed.episode.budget.tool_calls.max == 10
    assert resumed.episode.side_effect_targets == {"c-42"}
    assert resumed.episode.outputs["intake"] == {"context": "ctx"}
    assert tool.calls == 1
    assert resumed.episode.history[-1].reason == f"resumed from checkpoint {snapshot.id}"


def test_resume_keeps_policy_requirements_and_failures() -> None:
    wrapper = ToolWrapper(ToolRegistry([{"id": "memory:read", "category": "read"}]))

    async def broken(payload, ctx):
        raise RuntimeError("store offline")

    wrapper.register_handler("memory:read", broken)
    episode = Episode(
        goal="dig into the ticket",
        client_id="client-1",
        agent_id="agent-1",
        budget=Budget.create(max_tokens=1000, max_tool_calls=10),
        depth=1,
        child_type="verification",
        recursion_policy=RecursionPolicy(max_depth=2, max_children=1),
        inherited_side_effect_targets={"post-1"},
    )
    machine = EpisodeStateMachine(episode, wrapper, phase_requirements={"intake": ("brief", "ticket")})
    machine.start()
    failed = asyncio.run(machine.invoke_tool("memory:read", {}))
    assert not failed.success

    snapshot = checkpoint(machine)
    restored = Checkpoint.model_validate_json(snapshot.model_dump_json())
    resumed = resume(restored, wrapper)

    assert resumed.episode.recursion_policy.max_children == 1
    assert resumed.episode.recursion_policy.max_depth == 2
    assert resumed.phase_requirements["intake"] == ("brief", "ticket")
    assert resumed.missing_outputs("intake") == ["brief", "ticket"]
    assert resumed.episode.inherited_side_effect_targets == {"post-1"}
    assert [item.tool_id for item in resumed.episode.failures] == ["memory:read"]
    assert resumed.episode.failures[0].message == machine.episode.failures[0].message


def test_resuming_twice_yields_identical_state() -> None:
    machine, wrapper, _ = _setup()
    _reach_act(machine)
    snapshot = checkpoint(machine)

    first = resume(snapshot, wrapper)
    second = resume(snapshot, wrapper)
    first.record_output("actions", ["mutated"])

    assert second.episode.outputs.get("act") is None
    assert first.episode.budget is not second.episode.budget
    assert second.episode.budget.to_dict()["toolCalls"] == snapshot.budget["toolCalls"]
    assert second.phase == first.phase == "act"


def test_resumed_episode_continues_to_completion() -> None:
    machine, wrapper, _ = _setup()
    _reach_act(machine)
    resumed = resume(checkpoint(machine), wrapper)

    for name, phase_value in (("actions", [1]), ("verification", True), ("result", "done")):
        resumed.record_output(name, phase_value)
        resumed.advance_phase()

    assert resumed.status == "completed"


def test_terminal_snapshot_cannot_be_resumed() -> None:
    machine, wrapper, _ = _setup()
    machine.cancel("stop")
    snapshot = checkpoint(machine)

    with pytest.raises(CheckpointError):
        resume(snapshot, wrapper)


def test_checkpoint_model_rejects_unknown_values() -> None:
    with pytest.raises(ValidationError):
        Checkpoint(episode_id="e", client_id="c", agent_id="a", goal="g", status="sleeping", phase="act", budget={})
    with pytest.raises(ValidationError):
        Checkpoint(episode_id="e", client_id="c", agent_id="a", goal="g", status="running", phase="dream", budget={})


def test_checkpoint_json_round_trip() -> None:
    machine, _, _ = _setup()
    snapshot = checkpoint(machine)

    restored = Checkpoint.model_validate_json(snapshot.model_dump_json())

    assert restored == snapshot


def test_strategy_decisions() -> None:
    default = CheckpointStrategy()
    assert default.should_checkpoint(PHASE_COMPLETE, phase="plan")
    assert not default.should_checkpoint(BUDGET_WARNING)

    selective = CheckpointStrategy(phases=["verify"], on_budget_warning=True)
    assert not selective.should_checkpoint(PHASE_COMPLETE, phase="plan")
    assert selective.should_checkpoint(PHASE_COMPLETE, phase="verify")
    assert selective.should_checkpoint(BUDGET_WARNING)

    timed = CheckpointStrategy(on_phase_complete=False, interval_ms=1000)
    assert not timed.should_checkpoint(MANUAL, last_checkpoint_at=10.0, now=10.5)
    assert timed.should_checkpoint(MANUAL, last_checkpoint_at=10.0, now=11.0)
    assert not timed.should_checkpoint(MANUAL, last_checkpoint_at=None, now=11.0)


def test_manager_history_cleanup_and_restore() -> None:
    sink = InMemorySink()
    telemetry = Telemetry(sinks=[sink])
    manager = CheckpointManager(InMemoryCheckpointStore(), telemetry=telemetry)
    machine, wrapper, _ = _setup()

    first = manager.maybe_checkpoint(machine, PHASE_COMPLETE, phase="intake")
    _reach_act(machine)
    latest = manager.force_checkpoint(machine)

    assert manager.maybe_checkpoint(machine, BUDGET_WARNING) is None
    assert [item.id for item in manager.history(machine.episode.id)] == [first.id, latest.id]
    assert len(sink.of_type("checkpoint.saved")) == 2

    restored = manager.restore_latest(machine.episode.id, wrapper)
    assert restored.phase == "act"
    assert len(sink.of_type("checkpoint.resumed")) == 1
    assert manager.restore_latest("ep_unknown", wrapper) is None

    assert manager.cleanup(machine.episode.id) == 1
    assert [item.id for item in manager.history(machine.episode.id)] == [latest.id]


def test_in_memory_store_rejects_unknown_ids() -> None:
    with pytest.raises(CheckpointError):
        InMemoryCheckpointStore().load("cp_missing")


def test_sqlite_store_survives_reopen(tmp_path: Path) -> None:
    db_path = tmp_path / "oversight.db"
    machine, wrapper, _ = _setup()
    _reach_act(machine)

    store = OversightStore(db_path=db_path)
    saved = CheckpointManager(store).force_checkpoint(machine)
    store.close()

    reopened = OversightStore(db_path=db_path)
    try:
        loaded = reopened.load(saved.id)
        resumed = resume(loaded, wrapper)
    finally:
        reopened.close()

    assert loaded == saved
    assert resumed.phase == "act"
    assert resumed.episode.outputs["plan"] == {"plan": ["email the customer"]}
