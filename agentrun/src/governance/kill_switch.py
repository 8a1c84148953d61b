"""Out-of-band emergency stop for autonomous work.

Switches are scoped globally, per client or per tool (optionally limited to one
client).  Episodes consult :meth:`KillSwitchService.check` before every tool
invocation and cancel themselves when a matching switch is active.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, List, Optional

from ..core.telemetry import NULL_TELEMETRY, Telemetry
from ..core.tools.registry import permission_matches


logger = logging.getLogger(__name__)

SCOPES = ("global", "client", "tool")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class KillSwitch:
    scope: str
    client_id: Optional[str] = None
    tool_pattern: Optional[str] = None
    id: str = field(default_factory=lambda: f"ks_{uuid.uuid4().hex[:12]}")
    is_active: bool = False
    reason: Optional[str] = None
    activated_by: Optional[str] = None
    activated_at: Optional[str] = None

    @property
    def scope_label(self) -> str:
        if self.scope == "global":
            return "global"
        if self.scope == "client":
            return f"client:{self.client_id}"
        if self.client_id:
            return f"tool:{self.tool_pattern}@{self.client_id}"
        return f"tool:{self.tool_pattern}"

    def matches(self, *, client_id: str | None, tool_id: str | None) -> bool:
        if not self.is_active:
            return False
        if self.scope == "global":
            return True
        if self.scope == "client":
            return client_id is not None and client_id == self.client_id
        if self.client_id and client_id != self.client_id:
            return False
        return tool_id is not None and permission_matches(self.tool_pattern or "", tool_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "scope": self.scope,
            "clientId": self.client_id,
            "toolPattern": self.tool_pattern,
            "isActive": self.is_active,
            "reason": self.reason,
            "activatedBy": self.activated_by,
            "activatedAt": self.activated_at,
        }


@dataclass(frozen=True)
class KillSwitchHistoryEntry:
    switch_id: str
    action: str
    actor: Optional[str]
    reason: Optional[str]
    at: str


class KillSwitchService:
    """In-process registry of kill switches with an activation history."""

    def __init__(self, *, telemetry: Telemetry | None = None) -> None:
        self.telemetry = telemetry or NULL_TELEMETRY
        self._switches: Dict[str, KillSwitch] = {}
        self._history: List[KillSwitchHistoryEntry] = []
        self._lock = Lock()

    def _key(self, scope: str, client_id: str | None, tool_pattern: str | None) -> str:
        if scope not in SCOPES:
            raise ValueError(f"Unknown kill switch scope: {scope}")
        if scope == "client" and not client_id:
            raise ValueError("client scoped kill switch requires client_id")
        if scope == "tool" and not tool_pattern:
            raise ValueError("tool scoped kill switch requires tool_pattern")
        if scope == "global":
            return "global"
        if scope == "client":
            return f"client:{client_id}"
        return f"tool:{client_id or '*'}:{tool_pattern}"

    def activate(
        self,
        scope: str = "global",
        *,
        client_id: str | None = None,
        tool_pattern: str | None = None,
        reason: str | None = None,
        actor: str | None = None,
    ) -> KillSwitch:
        key = self._key(scope, client_id, tool_pattern)
        with self._lock:
            switch = self._switches.get(key)
            if switch is None:
                switch = KillSwitch(scope=scope, client_id=client_id, tool_pattern=tool_pattern)
                self._switches[key] = switch
            switch.is_active = True
            switch.reason = reason
            switch.activated_by = actor
            switch.activated_at = _now_iso()
            self._history.append(
                KillSwitchHistoryEntry(switch.id, "activated", actor, reason, switch.activated_at)
            )
        logger.warning("kill switch %s activated by %s: %s", switch.scope_label, actor or "unknown", reason)
        self.telemetry.emit("killswitch.activated", switch=switch.to_dict())
        return switch

    def deactivate(
        self,
        scope: str = "global",
        *,
        client_id: str | None = None,
        tool_pattern: str | None = None,
        reason: str | None = None,
        actor: str | None = None,
    ) -> bool:
        key = self._key(scope, client_id, tool_pattern)
        with self._lock:
            switch = self._switches.get(key)
            if switch is None or not switch.is_active:
                return False
            switch.is_active = False
            self._history.append(KillSwitchHistoryEntry(switch.id, "deactivated", actor, reason, _now_iso()))
        logger.info("kill switch %s deactivated by %s", switch.scope_label, actor or "unknown")
        self.telemetry.emit("killswitch.deactivated", switch=switch.to_dict())
        return True

    def check(self, *, client_id: str | None = None, tool_id: str | None = None) -> Optional[KillSwitch]:
        """Return the first active switch covering ``client_id``/``tool_id``, if any."""

        with self._lock:
            switches = list(self._switches.values())
        for switch in switches:
            if switch.matches(client_id=client_id, tool_id=tool_id):
                return switch
        return None

    def is_active(self, *, client_id: str | None = None, tool_id: str | None = None) -> bool:
        return self.check(client_id=client_id, tool_id=tool_id) is not None

    def active(self) -> List[KillSwitch]:
        with self._lock:
            return [switch for switch in self._switches.values() if switch.is_active]

    def history(self) -> List[KillSwitchHistoryEntry]:
        with self._lock:
            return list(self._history)


__all__ = ["KillSwitch", "KillSwitchHistoryEntry", "KillSwitchService", "SCOPES"]
