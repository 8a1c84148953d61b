from __future__ import annotations

from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional

from ..errors import ToolAlreadyRegisteredError
from . import ToolDefinition, normalise_definition, normalise_risk_level, normalise_category


def permission_matches(granted: str, requested: str) -> bool:
    """Return ``True`` if the registered permission ``granted`` covers ``requested``.

    Supported forms are an exact string, a ``prefix:*`` wildcard matching any
    permission sharing the ``prefix:`` and the bare ``*`` wildcard.
    """

    if granted == "*":
        return True
    if granted == requested:
        return True
    if granted.endswith(":*"):
        return requested.startswith(granted[:-1])
    return False


class ToolRegistry:
    """Authoritative catalog of tool definitions.

    The registry is populated at startup and read-only afterwards, so it is
    shared between concurrently running episodes without locking.
    """

    def __init__(self, definitions: Iterable[ToolDefinition | Mapping[str, Any]] = ()) -> None:
        self._tools: Dict[str, ToolDefinition] = {}
        for definition in definitions:
            self.register(definition)

    def register(self, definition: ToolDefinition | Mapping[str, Any]) -> ToolDefinition:
        spec = normalise_definition(definition)
        if spec.id in self._tools:
            raise ToolAlreadyRegisteredError(spec.id)
        self._tools[spec.id] = spec
        return spec

    def unregister(self, tool_id: str) -> None:
        self._tools.pop(tool_id, None)

    def get(self, tool_id: str) -> Optional[ToolDefinition]:
        return self._tools.get(tool_id)

    def get_by_category(self, category: str) -> List[ToolDefinition]:
        wanted = normalise_category(category)
        return [tool for tool in self._tools.values() if tool.category == wanted]

    def get_by_risk_level(self, level: str) -> List[ToolDefinition]:
        wanted = normalise_risk_level(level)
        return [tool for tool in self._tools.values() if tool.risk_level == wanted]

    def list(self) -> List[ToolDefinition]:
        return list(self._tools.values())

    def has_permission(self, tool_id: str, permission: str) -> bool:
        tool = self._tools.get(tool_id)
        if tool is None:
            return False
        return any(permission_matches(granted, permission) for granted in tool.permissions)

    def is_deprecated(self, tool_id: str) -> bool:
        tool = self._tools.get(tool_id)
        return bool(tool and tool.deprecated)

    def __contains__(self, tool_id: object) -> bool:
        return tool_id in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def __iter__(self) -> Iterator[ToolDefinition]:
        return iter(list(self._tools.values()))


__all__ = ["ToolRegistry", "permission_matches"]
