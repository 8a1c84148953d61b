"""Structured telemetry and lightweight tracing for the episode runtime."""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from time import perf_counter
from typing import TYPE_CHECKING, Any, Dict, Iterable, Iterator, List, MutableMapping, Optional, Protocol

if TYPE_CHECKING:
    from ..oversight.store import OversightStore


logger = logging.getLogger(__name__)

SPAN_OK = "ok"
SPAN_ERROR = "error"
SPAN_UNSET = "unset"


class TelemetrySink(Protocol):
    """A destination for telemetry events."""

    def write(self, event: Dict[str, Any]) -> None:
        """Persist or forward a telemetry event."""


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Span:
    """A timed unit of work whose attributes and status end up in telemetry."""

    name: str
    attributes: Dict[str, Any] = field(default_factory=dict)
    status: str = SPAN_UNSET
    status_message: Optional[str] = None
    exceptions: List[str] = field(default_factory=list)
    duration_ms: Optional[float] = None
    _started: float = field(default_factory=perf_counter, repr=False)

    def set_attribute(self, key: str, value: Any) -> None:
        self.attributes[key] = value

    def set_attributes(self, values: Dict[str, Any]) -> None:
        self.attributes.update(values)

    def set_status(self, status: str, message: Optional[str] = None) -> None:
        self.status = status
        self.status_message = message

    def record_exception(self, exc: BaseException) -> None:
        self.exceptions.append(f"{type(exc).__name__}: {exc}")

    def finish(self) -> None:
        self.duration_ms = round((perf_counter() - self._started) * 1000, 3)


@dataclass
class Telemetry:
    """Dispatcher that fan-outs events to the configured sinks."""

    sinks: Iterable[TelemetrySink] = field(default_factory=tuple)
    context: MutableMapping[str, Any] = field(default_factory=dict)

    def emit(self, event: str, **payload: Any) -> None:
        if not self.sinks:
            return
        base: Dict[str, Any] = {"event": event, "time": _now_iso()}
        if self.context:
            base.update(self.context)
        base.update(payload)
        for sink in self.sinks:
            try:
                sink.write(dict(base))
            except Exception:  # pragma: no cover - telemetry failures must not break runs
                logger.warning("telemetry sink %r failed for %s", sink, event, exc_info=True)
                continue

    @contextmanager
    def span(self, name: str, **attributes: Any) -> Iterator[Span]:
        """Trace the enclosed block.

        Exceptions escaping the block mark the span as failed and are re-raised.
        A span whose status was never set is reported as ``ok``.
        """

        span = Span(name=name, attributes=dict(attributes))
        self.emit("span.started", span=name, attributes=dict(span.attributes))
        try:
            yield span
        except BaseException as exc:
            span.record_exception(exc)
            if span.status == SPAN_UNSET:
                span.set_status(SPAN_ERROR, str(exc))
            raise
        finally:
            span.finish()
            if span.status == SPAN_UNSET:
                span.set_status(SPAN_OK)
            self.emit(
                "span.completed",
                span=name,
                attributes=dict(span.attributes),
                status=span.status,
                status_message=span.status_message,
                exceptions=list(span.exceptions),
                duration_ms=span.duration_ms,
            )


@dataclass
class InMemorySink:
    """Sink that keeps telemetry in-memory for inspection in tests."""

    events: List[Dict[str, Any]] = field(default_factory=list)

    def write(self, event: Dict[str, Any]) -> None:
        self.events.append(dict(event))

    def of_type(self, name: str) -> List[Dict[str, Any]]:
        return [event for event in self.events if event.get("event") == name]


@dataclass
class JsonLinesSink:
    """Append-only JSONL sink for telemetry events."""

    path: Path
    _lock: Lock = field(default_factory=Lock, init=False)

    def write(self, event: Dict[str, Any]) -> None:
        line = json.dumps(event, sort_keys=True, default=str)
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as fh:
                fh.write(line + "\n")


@dataclass
class OversightSink:
    """Telemetry sink that mirrors events into an :class:`OversightStore`."""

    store: "OversightStore"

    def write(self, event: Dict[str, Any]) -> None:
        self.store.record_telemetry(event)


NULL_TELEMETRY = Telemetry()


__all__ = [
    "InMemorySink",
    "JsonLinesSink",
    "NULL_TELEMETRY",
    "OversightSink",
    "SPAN_ERROR",
    "SPAN_OK",
    "Span",
    "Telemetry",
    "TelemetrySink",
]
