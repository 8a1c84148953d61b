from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional
import uuid

from ..core.types import AuditEvent


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _copy_payload(data: Mapping[str, Any] | None) -> Dict[str, Any]:
    if not data:
        return {}
    return {key: value for key, value in data.items()}


@dataclass(frozen=True)
class AuditRecord:
    """An audit event as persisted by the oversight store."""

    id: str
    recorded_at: str
    type: str
    actor: str
    target: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def build(cls, event: AuditEvent, *, ident: Optional[str] = None) -> "AuditRecord":
        return cls(
            id=ident or uuid.uuid4().hex,
            recorded_at=_now_iso(),
            type=event.type,
            actor=event.actor,
            target=event.target,
            metadata=_copy_payload(event.metadata),
        )

    @property
    def episode_id(self) -> Optional[str]:
        value = self.metadata.get("episodeId")
        return str(value) if value else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "recordedAt": self.recorded_at,
            "type": self.type,
            "actor": self.actor,
            "target": self.target,
            "metadata": dict(self.metadata),
        }


__all__ = ["AuditRecord"]
