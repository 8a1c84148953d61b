"""Audit emitters that do not need a database."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List

from ..core.telemetry import Telemetry
from ..core.types import AuditEvent


@dataclass
class InMemoryAuditEmitter:
    """Keeps audit events in a list for inspection in tests and tooling."""

    events: List[AuditEvent] = field(default_factory=list)

    async def emit(self, event: AuditEvent) -> None:
        self.events.append(event)

    def for_target(self, target: str) -> List[AuditEvent]:
        return [event for event in self.events if event.target == target]


@dataclass
class TelemetryAuditEmitter:
    """Forwards audit events to telemetry as ``audit.recorded``."""

    telemetry: Telemetry

    async def emit(self, event: AuditEvent) -> None:
        self.telemetry.emit("audit.recorded", audit=event.to_dict())


__all__ = ["InMemoryAuditEmitter", "TelemetryAuditEmitter"]
