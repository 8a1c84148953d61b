"""Convenience exports for the agentrun package.

Attributes are resolved lazily so that ``import agentrun`` stays cheap and does
not depend on the import order inside ``agentrun.src``.
"""

from __future__ import annotations

import importlib
from typing import Any, Dict

__all__ = (
    "Budget",
    "BudgetGuard",
    "Episode",
    "EpisodeRuntime",
    "EpisodeStateMachine",
    "Gatekeeper",
    "KillSwitchService",
    "OversightStore",
    "RecursionController",
    "RecursionPolicy",
    "RuntimeSettings",
    "ToolDefinition",
    "ToolRegistry",
    "ToolWrapper",
)

_IMPORT_MAP: Dict[str, str] = {
    "Budget": "agentrun.src.core.budget",
    "BudgetGuard": "agentrun.src.core.budget",
    "Episode": "agentrun.src.core.episode",
    "EpisodeRuntime": "agentrun.src.runtime",
    "EpisodeStateMachine": "agentrun.src.core.episode",
    "Gatekeeper": "agentrun.src.governance.gatekeeper",
    "KillSwitchService": "agentrun.src.governance.kill_switch",
    "OversightStore": "agentrun.src.oversight.store",
    "RecursionController": "agentrun.src.core.recursion",
    "RecursionPolicy": "agentrun.src.core.recursion",
    "RuntimeSettings": "agentrun.src.core.config",
    "ToolDefinition": "agentrun.src.core.tools",
    "ToolRegistry": "agentrun.src.core.tools.registry",
    "ToolWrapper": "agentrun.src.core.wrapper",
}


def __getattr__(name: str) -> Any:
    module_name = _IMPORT_MAP.get(name)
    if module_name is None:
        raise AttributeError(name)
    return getattr(importlib.import_module(module_name), name)


def __dir__() -> list[str]:
    return sorted(set(globals().keys()) | set(__all__))
