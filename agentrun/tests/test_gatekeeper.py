from __future__ import annotations

import asyncio

from agentrun.src.core.tools.registry import ToolRegistry
from agentrun.src.core.types import PolicyRequest, ToolInvocation, ToolInvocationContext
from agentrun.src.core.wrapper import ToolWrapper
from agentrun.src.governance.gatekeeper import Gatekeeper
from agentrun.src.governance.kill_switch import KillSwitchService


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _request(tool_id: str, risk: str = "read", client_id: str = "client-1") -> PolicyRequest:
    return PolicyRequest(
        action="tool:invoke",
        resource=tool_id,
        client_id=client_id,
        actor_type="agent",
        actor_id="agent-1",
        attributes={"riskLevel": risk},
    )


def test_review_enforces_risk_ceiling() -> None:
    gatekeeper = Gatekeeper(policy={"max_risk": "write", "tools": {"social:post": "publish"}})

    assert gatekeeper.review("read")
    assert gatekeeper.review("write")
    assert not gatekeeper.review("publish")
    assert gatekeeper.review("publish", tool="social:post")
    assert not gatekeeper.review("critical", tool="social:post")


def test_allows_within_ceiling() -> None:
    gatekeeper = Gatekeeper()

    result = asyncio.run(gatekeeper.evaluate(_request("memory:read")))

    assert result.decision.allowed
    assert result.checks.rules == "passed"
    assert result.checks.approval == "not_required"
    assert gatekeeper.counters["evaluated"] == 1


def test_denies_above_ceiling() -> None:
    gatekeeper = Gatekeeper()

    result = asyncio.run(gatekeeper.evaluate(_request("email:send", risk="publish")))

    assert result.decision.effect == "deny"
    assert result.decision.denied_by == "rules"
    assert "exceeds allowed write" in result.decision.reason
    assert gatekeeper.counters["denied"] == 1


def test_deny_patterns() -> None:
    gatekeeper = Gatekeeper(policy={"deny": ["shell:*"]})

    denied = asyncio.run(gatekeeper.evaluate(_request("shell:exec")))
    allowed = asyncio.run(gatekeeper.evaluate(_request("shellfish:read")))

    assert denied.decision.denied_by == "rules"
    assert allowed.decision.allowed


def test_kill_switch_is_checked_first() -> None:
    kill_switch = KillSwitchService()
    kill_switch.activate("client", client_id="client-1", reason="incident 42")
    gatekeeper = Gatekeeper(policy={"deny": ["*"]}, kill_switch=kill_switch)

    result = asyncio.run(gatekeeper.evaluate(_request("memory:read")))

    assert result.decision.denied_by == "kill_switch"
    assert result.decision.reason == "incident 42"
    assert result.checks.kill_switch == "denied"
    assert result.checks.rules == "skipped"


def test_rate_limit_counts_only_allowed_calls() -> None:
    clock = FakeClock()
    gatekeeper = Gatekeeper(policy={"rate_limit": {"max_requests": 2, "window_s": 10}}, clock=clock)

    results = [asyncio.run(gatekeeper.evaluate(_request("search:web"))) for _ in range(3)]
    other_client = asyncio.run(gatekeeper.evaluate(_request("search:web", client_id="client-2")))

    assert [item.decision.allowed for item in results] == [True, True, False]
    assert results[2].decision.denied_by == "rate_limit"
    assert other_client.decision.allowed

    clock.now = 10.0
    assert asyncio.run(gatekeeper.evaluate(_request("search:web"))).decision.allowed


def test_approval_required_for_configured_levels() -> None:
    gatekeeper = Gatekeeper(policy={"max_risk": "critical", "require_approval": ["critical"]})
    request = _request("db:drop", risk="critical")

    first = asyncio.run(gatekeeper.evaluate(request))
    gatekeeper.grant_approval("db:drop", client_id="client-1")
    second = asyncio.run(gatekeeper.evaluate(request))
    gatekeeper.revoke_approval("db:drop", client_id="client-1")
    third = asyncio.run(gatekeeper.evaluate(request))

    assert first.decision.denied_by == "approval"
    assert second.decision.allowed
    assert second.checks.approval == "passed"
    assert third.decision.denied_by == "approval"


def test_gatekeeper_plugs_into_wrapper() -> None:
    registry = ToolRegistry(
        [
            {"id": "memory:read", "riskLevel": "read"},
            {"id": "email:send", "category": "publish", "riskLevel": "publish"},
        ]
    )
    wrapper = ToolWrapper(registry, policy_engine=Gatekeeper())

    async def handler(payload, ctx):
        return {"done": True}

    wrapper.register_handler("memory:read", handler)
    wrapper.register_handler("email:send", handler)
    context = ToolInvocationContext(episode_id="ep-1", client_id="client-1", agent_id="agent-1")

    async def scenario():
        read = await wrapper.invoke(ToolInvocation(tool_id="memory:read", input={}, context=context))
        send = await wrapper.invoke(ToolInvocation(tool_id="email:send", input={}, context=context))
        return read, send

    read, send = asyncio.run(scenario())

    assert read.success
    assert send.error.code == "POLICY_DENIED"
    assert send.error.details["deniedBy"] == "rules"
    assert send.error.details["checks"]["rules"] == "denied"
