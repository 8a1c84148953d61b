from __future__ import annotations

import asyncio
import threading
from pathlib import Path

import pytest

from agentrun.src.core.errors import CheckpointError
from agentrun.src.core.telemetry import InMemorySink, OversightSink, Telemetry
from agentrun.src.core.types import AuditEvent
from agentrun.src.oversight import AuditRecord, InMemoryAuditEmitter, OversightStore, TelemetryAuditEmitter


def _event(episode_id: str, target: str = "memory:read", success: bool = True) -> AuditEvent:
    return AuditEvent(
        type="TOOL_INVOKED",
        actor="agent-1",
        target=target,
        metadata={"episodeId": episode_id, "success": success},
    )


def test_store_records_audit_in_memory() -> None:
    store = OversightStore()

    asyncio.run(store.emit(_event("ep-1")))
    store.record_audit(_event("ep-2", target="email:send"))
    store.record_audit(_event("ep-1", success=False))

    assert store.db_path is None
    assert [record.episode_id for record in store.audit_events()] == ["ep-1", "ep-2", "ep-1"]
    assert len(store.audit_events(episode_id="ep-1")) == 2
    assert [record.target for record in store.audit_events(target="email:send")] == ["email:send"]
    latest = store.audit_events(limit=1)
    assert latest[0].metadata["success"] is False


def test_store_persists_and_reloads(tmp_path: Path) -> None:
    store = OversightStore(base_dir=tmp_path)
    store.record_audit(_event("ep-1"))
    store.record_telemetry({"event": "budget.warning", "dimension": "tokens"})
    store.close()

    assert (tmp_path / "oversight.db").exists()

    reopened = OversightStore(base_dir=tmp_path)
    try:
        records = reopened.audit_events()
        assert len(records) == 1
        assert records[0].metadata == {"episodeId": "ep-1", "success": True}
        assert reopened.telemetry() == [{"event": "budget.warning", "dimension": "tokens"}]
    finally:
        reopened.close()


def test_telemetry_is_bounded(tmp_path: Path) -> None:
    store = OversightStore(db_path=tmp_path / "db.sqlite", telemetry_limit=3)
    for index in range(5):
        store.record_telemetry({"event": "tick", "index": index})
    store.close()

    assert [event["index"] for event in store.telemetry()] == [2, 3, 4]
    reopened = OversightStore(db_path=tmp_path / "db.sqlite", telemetry_limit=3)
    try:
        assert [event["index"] for event in reopened.telemetry(limit=2)] == [3, 4]
    finally:
        reopened.close()


def test_oversight_sink_mirrors_telemetry() -> None:
    store = OversightStore()
    telemetry = Telemetry(sinks=[OversightSink(store)])

    telemetry.emit("episode.transition", episode_id="ep-1", to_status="running")

    events = store.telemetry()
    assert events[0]["event"] == "episode.transition"
    assert events[0]["to_status"] == "running"


def test_unknown_checkpoint_raises() -> None:
    with pytest.raises(CheckpointError):
        OversightStore().load("cp_missing")


def test_audit_record_serialisation() -> None:
    record = AuditRecord.build(_event("ep-9"), ident="fixed")

    payload = record.to_dict()

    assert payload["id"] == "fixed"
    assert payload["type"] == "TOOL_INVOKED"
    assert payload["metadata"]["episodeId"] == "ep-9"
    assert AuditRecord.build(AuditEvent(type="X", actor="a", target="t")).episode_id is None


def test_simple_emitters() -> None:
    memory = InMemoryAuditEmitter()
    sink = InMemorySink()
    forwarding = TelemetryAuditEmitter(Telemetry(sinks=[sink]))

    asyncio.run(memory.emit(_event("ep-1", target="a")))
    asyncio.run(memory.emit(_event("ep-1", target="b")))
    asyncio.run(forwarding.emit(_event("ep-1")))

    assert [event.target for event in memory.for_target("b")] == ["b"]
    assert sink.of_type("audit.recorded")[0]["audit"]["target"] == "memory:read"


def test_async_emit_writes_off_the_event_loop_thread(tmp_path: Path) -> None:
    store = OversightStore(db_path=tmp_path / "oversight.db")
    writer_threads = []
    record_audit = store.record_audit

    def tracking_record(event):
        writer_threads.append(threading.get_ident())
        return record_audit(event)

    store.record_audit = tracking_record  # type: ignore[method-assign]

    async def scenario():
        await store.emit(_event("ep-1"))
        return threading.get_ident()

    loop_thread = asyncio.run(scenario())
    store.close()

    assert writer_threads and writer_threads[0] != loop_thread
    reopened = OversightStore(db_path=tmp_path / "oversight.db")
    try:
        assert [record.episode_id for record in reopened.audit_events()] == ["ep-1"]
    finally:
        reopened.close()
