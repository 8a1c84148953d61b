from __future__ import annotations

import asyncio

import pytest

from agentrun.src.core.budget import Budget, BudgetFloor
from agentrun.src.core.episode import CANCELLED_STATUS, Episode, EpisodeStateMachine
from agentrun.src.core.errors import InvalidRecursionPolicyError
from agentrun.src.core.recursion import (
    STOP_BUDGET_EXHAUSTED,
    STOP_DEPTH_EXCEEDED,
    STOP_NO_NEW_INFORMATION,
    STOP_OBJECTIVE_SATISFIED,
    STOP_POLICY_BLOCKED,
    STOP_REPEATED_FAILURE,
    TRIGGER_AMBIGUOUS_HIGH_RISK,
    TRIGGER_MISSING_CONTEXT,
    TRIGGER_PREDICTED_BUDGET_BREACH,
    ChildOutcome,
    RecursionController,
    RecursionPolicy,
    RecursionRequest,
)
from agentrun.src.core.telemetry import InMemorySink, Telemetry
from agentrun.src.core.tools.registry import ToolRegistry
from agentrun.src.core.wrapper import ToolWrapper


def _wrapper() -> ToolWrapper:
    wrapper = ToolWrapper(
        ToolRegistry(
            [
                {"id": "search:web", "category": "read"},
                {"id": "crm:update", "category": "sideEffect", "riskLevel": "write"},
            ]
        )
    )

    async def handler(payload, ctx):
        return {"ok": True}

    wrapper.register_handler("search:web", handler)
    wrapper.register_handler("crm:update", handler)
    return wrapper


def _root(wrapper: ToolWrapper, budget: Budget | None = None, policy: RecursionPolicy | None = None) -> EpisodeStateMachine:
    episode = Episode(
        goal="research and update the account",
        client_id="client-1",
        agent_id="agent-1",
        budget=budget or Budget.create(max_tokens=10000, max_time_ms=600000, max_tool_calls=40, max_subcalls=10),
        recursion_policy=policy,
    )
    machine = EpisodeStateMachine(episode, wrapper)
    machine.start()
    return machine


def _controller(wrapper: ToolWrapper, **kwargs) -> RecursionController:
    kwargs.setdefault("floor", BudgetFloor(tokens=1, time_ms=1, tool_calls=1))
    return RecursionController(wrapper, **kwargs)


def test_policy_validation() -> None:
    with pytest.raises(InvalidRecursionPolicyError):
        RecursionPolicy(max_depth=-1)
    with pytest.raises(InvalidRecursionPolicyError):
        RecursionPolicy(no_new_info_limit=0)
    with pytest.raises(InvalidRecursionPolicyError):
        RecursionPolicy(stop_conditions=("bored",))
    with pytest.raises(InvalidRecursionPolicyError):
        RecursionPolicy(allowed_child_types=("research",), forbidden_child_types=("research",))


def test_policy_from_mapping_accepts_camel_case() -> None:
    policy = RecursionPolicy.from_mapping({"maxDepth": 2, "allowedChildTypes": ["research", "verification"]})

    assert policy.max_depth == 2
    assert policy.allowed_child_types == ("research", "verification")
    assert policy.permits_child_type("research")
    assert not policy.permits_child_type("publish")
    with pytest.raises(InvalidRecursionPolicyError):
        RecursionPolicy.from_mapping({"maxBreadth": 2})


def test_child_policy_can_only_tighten() -> None:
    parent = RecursionPolicy(max_depth=3, forbidden_child_types=("publish",))

    child = parent.tighten(max_depth=2, forbidden_child_types=("publish", "delete"))

    assert child.is_within(parent)
    assert not parent.is_within(child)
    with pytest.raises(InvalidRecursionPolicyError):
        parent.tighten(max_children=6)
    with pytest.raises(InvalidRecursionPolicyError):
        parent.tighten(forbidden_child_types=())
    with pytest.raises(InvalidRecursionPolicyError):
        parent.tighten(stop_conditions=(STOP_BUDGET_EXHAUSTED,))


def test_spawn_links_child_and_caps_budget() -> None:
    sink = InMemorySink()
    wrapper = _wrapper()
    controller = _controller(wrapper, telemetry=Telemetry(sinks=[sink]))
    parent = _root(wrapper)

    result = controller.spawn(parent, RecursionRequest(child_type="research", goal="find facts", fraction=0.9))

    assert result.spawned
    child = result.child.episode
    assert child.depth == 1
    assert child.parent_episode_id == parent.episode.id
    assert child.root_episode_id == parent.episode.id
    assert child.client_id == "client-1"
    assert child.budget.tokens.max <= 5000
    assert child.budget.tool_calls.max <= 20
    assert parent.episode.child_ids == [child.id]
    assert parent.episode.budget.subcalls.used == 1
    assert controller.chain_size(parent.episode) == 2
    assert result.child.status == "pending"
    assert sink.of_type("recursion.spawned")[0]["child_episode_id"] == child.id


def test_child_inherits_tightened_policy() -> None:
    wrapper = _wrapper()
    controller = _controller(wrapper)
    parent = _root(wrapper, policy=RecursionPolicy(max_depth=3))

    result = controller.spawn(
        parent,
        RecursionRequest(child_type="research", goal="dig", policy_overrides={"max_children": 1}),
    )

    assert result.child.episode.recursion_policy.max_children == 1
    assert result.child.episode.recursion_policy.max_depth == 3


def test_depth_limit() -> None:
    wrapper = _wrapper()
    controller = _controller(wrapper)
    current = _root(wrapper, policy=RecursionPolicy(max_depth=2))

    for expected_depth in (1, 2):
        result = controller.spawn(current, RecursionRequest(child_type="research", goal="deeper", fraction=0.5))
        assert result.spawned
        current = result.child
        current.start()
        assert current.episode.depth == expected_depth

    refused = controller.spawn(current, RecursionRequest(child_type="research", goal="too deep"))

    assert not refused.spawned
    assert refused.decision.stop_condition == STOP_DEPTH_EXCEEDED


def test_max_children_limit() -> None:
    wrapper = _wrapper()
    controller = _controller(wrapper)
    parent = _root(wrapper, policy=RecursionPolicy(max_children=2))

    outcomes = [
        controller.spawn(parent, RecursionRequest(child_type="research", goal=f"task {index}", fraction=0.1)).spawned
        for index in range(3)
    ]

    assert outcomes == [True, True, False]
    assert len(controller.children_of(parent)) == 2


def test_max_total_episodes_counts_the_whole_chain() -> None:
    wrapper = _wrapper()
    controller = _controller(wrapper)
    parent = _root(wrapper, policy=RecursionPolicy(max_total_episodes=3))

    first = controller.spawn(parent, RecursionRequest(child_type="research", goal="a", fraction=0.2))
    first.child.start()
    second = controller.spawn(first.child, RecursionRequest(child_type="research", goal="b", fraction=0.2))
    third = controller.spawn(parent, RecursionRequest(child_type="research", goal="c", fraction=0.2))

    assert first.spawned and second.spawned
    assert not third.spawned
    assert "max total episodes" in third.decision.reason


def test_child_type_rules() -> None:
    wrapper = _wrapper()
    controller = _controller(wrapper)
    parent = _root(wrapper, policy=RecursionPolicy(forbidden_child_types=("publish",)))

    refused = controller.spawn(parent, RecursionRequest(child_type="publish", goal="post"))

    assert not refused.spawned
    assert "not permitted" in refused.decision.reason


def test_side_effect_restricts_followup_children() -> None:
    wrapper = _wrapper()
    controller = _controller(wrapper)
    parent = _root(wrapper)
    asyncio.run(parent.invoke_tool("crm:update", {"target": "acct-1"}))

    same_target = controller.spawn(parent, RecursionRequest(child_type="research", goal="redo", target="acct-1"))
    no_target = controller.spawn(parent, RecursionRequest(child_type="research", goal="redo"))
    verification = controller.spawn(
        parent, RecursionRequest(child_type="verification", goal="check acct-1", target="acct-1", fraction=0.1)
    )
    other = controller.spawn(
        parent, RecursionRequest(child_type="research", goal="other account", target="acct-2", fraction=0.1)
    )

    assert not same_target.spawned
    assert not no_target.spawned
    assert verification.spawned
    assert other.spawned


def test_side_effect_restrictions_follow_the_whole_chain() -> None:
    wrapper = _wrapper()
    controller = _controller(wrapper)
    parent = _root(wrapper)
    asyncio.run(parent.invoke_tool("crm:update", {"target": "acct-1"}))
    child = controller.spawn(
        parent, RecursionRequest(child_type="verification", goal="check acct-1", target="acct-1", fraction=0.5)
    ).child
    child.start()

    assert child.episode.inherited_side_effect_targets == {"acct-1"}
    assert child.episode.side_effect_targets == set()

    same_target = controller.spawn(child, RecursionRequest(child_type="research", goal="redo", target="acct-1"))
    no_target = controller.spawn(child, RecursionRequest(child_type="research", goal="redo"))
    other = controller.spawn(
        child, RecursionRequest(child_type="research", goal="other account", target="acct-2", fraction=0.5)
    )

    assert not same_target.spawned
    assert "episode chain already caused a side effect" in same_target.decision.reason
    assert not no_target.spawned
    assert other.spawned
    assert other.child.episode.inherited_side_effect_targets == {"acct-1"}


def test_descendant_cannot_repeat_an_ancestor_side_effect() -> None:
    wrapper = _wrapper()
    updates = []

    async def update(payload, ctx):
        updates.append(payload["target"])
        return {"ok": True}

    wrapper.register_handler("crm:update", update)
    controller = _controller(wrapper)
    parent = _root(wrapper)
    asyncio.run(parent.invoke_tool("crm:update", {"target": "acct-1"}))
    child = controller.spawn(
        parent, RecursionRequest(child_type="verification", goal="check acct-1", target="acct-1", fraction=0.5)
    ).child
    child.start()

    repeated = asyncio.run(child.invoke_tool("crm:update", {"target": "acct-1"}))
    elsewhere = asyncio.run(child.invoke_tool("crm:update", {"target": "acct-2"}))

    assert not repeated.success
    assert repeated.error.code == "POLICY_DENIED"
    assert repeated.error.details == {"deniedBy": "side_effect_guard", "target": "acct-1"}
    assert elsewhere.success
    assert updates == ["acct-1", "acct-2"]
    assert child.episode.side_effect_targets == {"acct-2"}


def test_refuses_when_child_would_fall_below_floor() -> None:
    sink = InMemorySink()
    wrapper = _wrapper()
    controller = RecursionController(
        wrapper,
        floor=BudgetFloor(tokens=100, time_ms=1, tool_calls=1),
        telemetry=Telemetry(sinks=[sink]),
    )
    parent = _root(wrapper, budget=Budget.create(max_tokens=150, max_tool_calls=10, max_subcalls=5))

    result = controller.spawn(parent, RecursionRequest(child_type="research", goal="tiny", fraction=0.5))

    assert not result.spawned
    assert "cannot allocate child budget" in result.decision.reason
    assert parent.episode.budget.subcalls.used == 0
    assert parent.episode.child_ids == []
    assert sink.of_type("recursion.refused")


def test_exhausted_parent_stops_recursion() -> None:
    wrapper = _wrapper()
    controller = _controller(wrapper)
    parent = _root(wrapper, budget=Budget.create(max_tool_calls=1, max_subcalls=5))
    asyncio.run(parent.invoke_tool("search:web", {}))

    result = controller.spawn(parent, RecursionRequest(child_type="research", goal="more"))

    assert result.decision.stop_condition == STOP_BUDGET_EXHAUSTED


@pytest.mark.parametrize(
    "outcomes, expected",
    [
        ([ChildOutcome("c1", "completed", new_information=False)] * 2, STOP_NO_NEW_INFORMATION),
        ([ChildOutcome("c1", "failed", failure_class="timeout")] * 3, STOP_REPEATED_FAILURE),
        ([ChildOutcome("c1", "failed", policy_blocked=True)], STOP_POLICY_BLOCKED),
        ([ChildOutcome("c1", "completed", objective_satisfied=True, verified=True)], STOP_OBJECTIVE_SATISFIED),
    ],
)
def test_stop_conditions_from_child_outcomes(outcomes, expected) -> None:
    wrapper = _wrapper()
    controller = _controller(wrapper)
    parent = _root(wrapper)

    stops = [controller.record_child_outcome(parent, outcome) for outcome in outcomes]

    assert stops[-1] == expected
    assert all(stop is None for stop in stops[:-1])
    refused = controller.spawn(parent, RecursionRequest(child_type="research", goal="again"))
    assert refused.decision.stop_condition == expected


def test_unverified_objective_does_not_stop() -> None:
    wrapper = _wrapper()
    controller = _controller(wrapper)
    parent = _root(wrapper)

    assert controller.record_child_outcome(parent, ChildOutcome("c1", "completed", objective_satisfied=True)) is None


def test_new_information_resets_the_streak() -> None:
    wrapper = _wrapper()
    controller = _controller(wrapper)
    parent = _root(wrapper)

    controller.record_child_outcome(parent, ChildOutcome("c1", "completed", new_information=False))
    controller.record_child_outcome(parent, ChildOutcome("c2", "completed", new_information=True))

    assert controller.record_child_outcome(parent, ChildOutcome("c3", "completed", new_information=False)) is None


def test_disabled_stop_condition_is_ignored() -> None:
    wrapper = _wrapper()
    controller = _controller(wrapper)
    policy = RecursionPolicy(stop_conditions=(STOP_BUDGET_EXHAUSTED, STOP_DEPTH_EXCEEDED))
    parent = _root(wrapper, policy=policy)

    assert controller.record_child_outcome(parent, ChildOutcome("c1", "failed", policy_blocked=True)) is None


def test_suggest_trigger() -> None:
    controller = _controller(_wrapper())

    assert controller.suggest_trigger({"missing_context": True}) == TRIGGER_MISSING_CONTEXT
    assert controller.suggest_trigger({"high_risk": True, "ambiguous": True}) == TRIGGER_AMBIGUOUS_HIGH_RISK
    assert controller.suggest_trigger({"high_risk": True}) is None
    assert (
        controller.suggest_trigger({"predicted_tokens": 500, "remaining_tokens": 100})
        == TRIGGER_PREDICTED_BUDGET_BREACH
    )
    assert controller.suggest_trigger({}) is None


def test_cascade_cancel_reaches_grandchildren() -> None:
    wrapper = _wrapper()
    controller = _controller(wrapper)
    parent = _root(wrapper)
    child = controller.spawn(parent, RecursionRequest(child_type="research", goal="a", fraction=0.5)).child
    child.start()
    grandchild = controller.spawn(child, RecursionRequest(child_type="research", goal="b", fraction=0.5)).child

    parent.cancel("operator stop")
    cancelled = controller.cascade_cancel(parent, "operator stop")

    assert cancelled == [child.episode.id, grandchild.episode.id]
    assert child.status == grandchild.status == CANCELLED_STATUS
    assert controller.cascade_cancel(parent) == []


def test_terminal_parent_cannot_spawn() -> None:
    wrapper = _wrapper()
    controller = _controller(wrapper)
    parent = _root(wrapper)
    parent.cancel()

    result = controller.spawn(parent, RecursionRequest(child_type="research", goal="late"))

    assert not result.spawned
    assert "cancelled" in result.decision.reason
