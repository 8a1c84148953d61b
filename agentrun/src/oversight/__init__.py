from .audit import InMemoryAuditEmitter, TelemetryAuditEmitter
from .models import AuditRecord
from .store import OversightStore

__all__ = [
    "AuditRecord",
    "InMemoryAuditEmitter",
    "OversightStore",
    "TelemetryAuditEmitter",
]
