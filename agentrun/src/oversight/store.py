from __future__ import annotations

import asyncio
import json
import sqlite3
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterable, List, Mapping, Optional

from ..core.checkpoint import Checkpoint
from ..core.errors import CheckpointError
from ..core.types import AuditEvent
from .models import AuditRecord


def _json_dumps(data: Any) -> str:
    return json.dumps(data, ensure_ascii=False, sort_keys=True, default=str)


def _json_loads(text: Optional[str]) -> Any:
    if text in (None, ""):
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return None


class OversightStore:
    """Append-only audit log, telemetry mirror and checkpoint store.

    Data is kept in memory and, when a database path is configured, persisted
    to SQLite and reloaded on construction.  The store satisfies both the audit
    emitter contract (:meth:`emit`) and the checkpoint store contract.
    """

    def __init__(
        self,
        *,
        base_dir: Optional[Path] = None,
        db_path: Optional[Path] = None,
        telemetry_limit: int = 2000,
    ) -> None:
        self.base_dir = Path(base_dir) if base_dir is not None else None
        self._db_path = Path(db_path) if db_path is not None else None
        if self._db_path is None and self.base_dir is not None:
            self._db_path = self.base_dir / "oversight.db"
        self._telemetry_limit = telemetry_limit

        self._audit: List[AuditRecord] = []
        self._telemetry: List[Dict[str, Any]] = []
        self._checkpoints: Dict[str, Checkpoint] = {}

        self._lock = Lock()
        self._db_lock = Lock()
        self._conn: Optional[sqlite3.Connection] = None
        if self._db_path is not None:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
            self._conn.execute("PRAGMA journal_mode=WAL;")
            self._conn.execute("PRAGMA synchronous=NORMAL;")
            self._init_db()
            self._load_from_db()

    @property
    def db_path(self) -> Optional[Path]:
        return self._db_path

    def close(self) -> None:
        if self._conn is not None:
            with self._db_lock:
                self._conn.close()
            self._conn = None

    # ------------------------------------------------------------------
    # Database helpers
    # ------------------------------------------------------------------
    def _execute(self, sql: str, params: Iterable[Any] = ()) -> sqlite3.Cursor:
        if self._conn is None:
            raise RuntimeError("SQLite connection not initialised")
        with self._db_lock:
            cursor = self._conn.execute(sql, tuple(params))
            self._conn.commit()
            return cursor

    def _query(self, sql: str, params: Iterable[Any] = ()) -> List[sqlite3.Row]:
        if self._conn is None:
            raise RuntimeError("SQLite connection not initialised")
        with self._db_lock:
            self._conn.row_factory = sqlite3.Row
            cursor = self._conn.execute(sql, tuple(params))
            rows = cursor.fetchall()
            self._conn.row_factory = None
            return rows

    def _init_db(self) -> None:
        assert self._conn is not None
        with self._db_lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS audit_events (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    recorded_at TEXT NOT NULL,
                    type TEXT NOT NULL,
                    actor TEXT NOT NULL,
                    target TEXT NOT NULL,
                    episode_id TEXT,
                    metadata TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS telemetry (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    event TEXT NOT NULL,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                );

                CREATE TABLE IF NOT EXISTS checkpoints (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    episode_id TEXT NOT NULL,
                    phase TEXT NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    payload TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_checkpoints_episode ON checkpoints (episode_id, seq);
                """
            )
            self._conn.commit()

    def _load_from_db(self) -> None:
        if self._conn is None:
            return
        for row in self._query("SELECT * FROM audit_events ORDER BY seq"):
            self._audit.append(
                AuditRecord(
                    id=row["id"],
                    recorded_at=row["recorded_at"],
                    type=row["type"],
                    actor=row["actor"],
                    target=row["target"],
                    metadata=_json_loads(row["metadata"]) or {},
                )
            )

        # Telemetry (keep latest within limit)
        telemetry_rows = self._query(
            "SELECT event FROM telemetry ORDER BY id DESC LIMIT ?",
            (self._telemetry_limit,),
        )
        events = [_json_loads(row["event"]) for row in reversed(telemetry_rows)]
        self._telemetry = [event for event in events if isinstance(event, dict)]

        for row in self._query("SELECT payload FROM checkpoints ORDER BY seq"):
            payload = _json_loads(row["payload"])
            if not isinstance(payload, dict):
                continue
            snapshot = Checkpoint.model_validate(payload)
            self._checkpoints[snapshot.id] = snapshot

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------
    def record_audit(self, event: AuditEvent) -> AuditRecord:
        record = AuditRecord.build(event)
        if self._conn is not None:
            self._execute(
                """
                INSERT INTO audit_events (id, recorded_at, type, actor, target, episode_id, metadata)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.recorded_at,
                    record.type,
                    record.actor,
                    record.target,
                    record.episode_id,
                    _json_dumps(record.metadata),
                ),
            )
        with self._lock:
            self._audit.append(record)
        return record

    async def emit(self, event: AuditEvent) -> None:
        # SQLite writes block; keep them off the event loop.
        await asyncio.to_thread(self.record_audit, event)

    def audit_events(
        self,
        *,
        episode_id: Optional[str] = None,
        target: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[AuditRecord]:
        with self._lock:
            records = list(self._audit)
        if episode_id is not None:
            records = [record for record in records if record.episode_id == episode_id]
        if target is not None:
            records = [record for record in records if record.target == target]
        if limit is not None and limit > 0:
            records = records[-limit:]
        return records

    # ------------------------------------------------------------------
    # Telemetry mirror
    # ------------------------------------------------------------------
    def record_telemetry(self, event: Mapping[str, Any]) -> None:
        payload = dict(event)
        if self._conn is not None:
            self._execute(
                "INSERT INTO telemetry (event) VALUES (?)",
                (_json_dumps(payload),),
            )
        with self._lock:
            self._telemetry.append(payload)
            if len(self._telemetry) > self._telemetry_limit:
                excess = len(self._telemetry) - self._telemetry_limit
                if excess > 0:
                    del self._telemetry[:excess]

    def telemetry(self, *, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        with self._lock:
            records = list(self._telemetry)
        if limit is not None and limit > 0:
            records = records[-limit:]
        return records

    # ------------------------------------------------------------------
    # Checkpoint store
    # ------------------------------------------------------------------
    def save(self, checkpoint: Checkpoint) -> str:
        snapshot = checkpoint.model_copy(deep=True)
        if self._conn is not None:
            self._execute(
                """
                INSERT INTO checkpoints (id, episode_id, phase, status, created_at, payload)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET payload=excluded.payload
                """,
                (
                    snapshot.id,
                    snapshot.episode_id,
                    snapshot.phase,
                    snapshot.status,
                    snapshot.created_at,
                    snapshot.model_dump_json(),
                ),
            )
        with self._lock:
            self._checkpoints[snapshot.id] = snapshot
        return snapshot.id

    def load(self, checkpoint_id: str) -> Checkpoint:
        with self._lock:
            snapshot = self._checkpoints.get(checkpoint_id)
        if snapshot is None:
            raise CheckpointError(f"Unknown checkpoint: {checkpoint_id}")
        return snapshot.model_copy(deep=True)

    def list_checkpoints(self, episode_id: Optional[str] = None) -> List[Checkpoint]:
        with self._lock:
            items = list(self._checkpoints.values())
        if episode_id is not None:
            items = [item for item in items if item.episode_id == episode_id]
        return items

    def prune(self, episode_id: str, *, keep_latest: int = 1) -> int:
        items = self.list_checkpoints(episode_id)
        stale = items[: max(len(items) - max(keep_latest, 0), 0)]
        if not stale:
            return 0
        if self._conn is not None:
            for item in stale:
                self._execute("DELETE FROM checkpoints WHERE id = ?", (item.id,))
        with self._lock:
            for item in stale:
                self._checkpoints.pop(item.id, None)
        return len(stale)


__all__ = ["OversightStore"]
