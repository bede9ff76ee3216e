"""
Decision lineage — one DecisionTrace per request, persisted exactly once.
=========================================================================
DecisionTrace is filled in by the engine as stages complete. Sealing turns it
into a plain dict and freezes the object; any later write raises.

LineageRecorder hands the sealed record to a LineageSink with a bounded,
fire-and-forget write (asyncio.create_task) so persistence never blocks the
response. A sink failure or timeout moves the record to a local buffer;
flush_buffer() re-sends it.

Sinks:
  InMemoryLineageSink — list of dicts (tests, embedding)
  JsonlLineageSink    — one JSON object per line, append-only
  SqliteLineageSink   — aiosqlite table, append-only, keyed by audit_id

Usage
-----
    recorder = LineageRecorder(SqliteLineageSink("lineage.db"), timeout_s=2.0)
    trace = DecisionTrace(audit_id=new_audit_id(), app_id="support-bot", tenant_id="acme")
    ...
    recorder.submit(trace)
    await recorder.drain()          # at shutdown
"""
from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import aiosqlite

from .hooks import EventType, HookRegistry
from .metrics import MetricsSink, NullMetrics
from .models import TraceStatus

logger = logging.getLogger("governed_router.audit")


def new_audit_id() -> str:
    return uuid.uuid4().hex


class TraceSealedError(RuntimeError):
    """Raised on any write to a DecisionTrace after it was sealed."""


# ─────────────────────────────────────────────────────────────────────────────
# DecisionTrace
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class DecisionTrace:
    """
    Everything needed to reconstruct why a request went where it went.

    Fields
    ------
    planned_chain : list[str]
        Selection order: recommended model first, then the fallback chain.
    attempts : list
        AttemptRecord-like entries (anything with to_dict() or a dict).
    stage_timings_ms : dict[str, float]
        Wall time per pipeline stage.
    removed : dict[str, list[str]]
        Models each stage removed, keyed by stage name.
    """
    audit_id: str
    app_id: str
    tenant_id: str
    team_id: Optional[str] = None
    policy_version: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    rule_id: Optional[str] = None
    subscription_scope: Optional[str] = None
    recommended_model: Optional[str] = None
    final_model: Optional[str] = None
    planned_chain: list = field(default_factory=list)
    attempts: list = field(default_factory=list)
    fell_back: bool = False
    minimal_completion: bool = False
    firewall: Optional[dict] = None
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    stage_timings_ms: dict = field(default_factory=dict)
    removed: dict = field(default_factory=dict)
    experiment_id: Optional[str] = None
    experiment_arm: Optional[str] = None
    budget_action: Optional[str] = None
    status: TraceStatus = TraceStatus.PENDING
    reason: Optional[str] = None
    _sealed: bool = field(default=False, repr=False)

    def __setattr__(self, name: str, value: Any) -> None:
        if self.__dict__.get("_sealed"):
            raise TraceSealedError(f"trace {self.__dict__.get('audit_id')} is sealed")
        super().__setattr__(name, value)

    @property
    def sealed(self) -> bool:
        return self._sealed

    def mark_stage(self, stage: str, started: float) -> None:
        """Record elapsed ms since ``started`` (a time.monotonic() value)."""
        timings = dict(self.stage_timings_ms)
        timings[stage] = round((time.monotonic() - started) * 1000, 3)
        self.stage_timings_ms = timings

    def mark_removed(self, stage: str, names) -> None:
        if names:
            removed = dict(self.removed)
            removed[stage] = list(names)
            self.removed = removed

    def to_dict(self) -> dict:
        out: dict[str, Any] = {}
        for f in fields(self):
            if f.name == "_sealed":
                continue
            value = getattr(self, f.name)
            if f.name == "attempts":
                value = [a.to_dict() if hasattr(a, "to_dict") else dict(a) for a in value]
            elif isinstance(value, TraceStatus):
                value = value.value
            elif isinstance(value, (list, dict)):
                value = json.loads(json.dumps(value, default=str))
            out[f.name] = value
        return out

    def seal(self) -> dict:
        """Freeze the trace and return its persisted form. Only once."""
        if self._sealed:
            raise TraceSealedError(f"trace {self.audit_id} is already sealed")
        record = self.to_dict()
        record["sealed_at"] = time.time()
        object.__setattr__(self, "_sealed", True)
        return record


# ─────────────────────────────────────────────────────────────────────────────
# Sinks
# ─────────────────────────────────────────────────────────────────────────────

class LineageSink(ABC):
    """Append-only destination for sealed trace records."""

    @abstractmethod
    async def write(self, record: dict) -> None:
        ...


class InMemoryLineageSink(LineageSink):

    def __init__(self) -> None:
        self.records: list[dict] = []

    async def write(self, record: dict) -> None:
        self.records.append(record)

    def get(self, audit_id: str) -> Optional[dict]:
        for r in self.records:
            if r["audit_id"] == audit_id:
                return r
        return None

    def __len__(self) -> int:
        return len(self.records)


class JsonlLineageSink(LineageSink):
    """
    One JSON object per line. The file is only ever appended to.

    A record whose audit_id is already in the file is skipped, so a buffer
    replay after a timed-out (but still completing) write stays exactly-once.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._written: set[str] = {r["audit_id"] for r in self.read_all() if "audit_id" in r}

    def _append(self, audit_id: str, line: str) -> None:
        with self._lock:
            if audit_id in self._written:
                logger.debug("Lineage record %s already written; skipping", audit_id)
                return
            with open(self._path, "a", encoding="utf-8") as fh:
                fh.write(line + "\n")
            self._written.add(audit_id)

    async def write(self, record: dict) -> None:
        await asyncio.to_thread(self._append, record["audit_id"],
                                json.dumps(record, default=str))

    def read_all(self) -> list[dict]:
        if not self._path.exists():
            return []
        with open(self._path, encoding="utf-8") as fh:
            return [json.loads(line) for line in fh if line.strip()]


_SCHEMA = """
CREATE TABLE IF NOT EXISTS decision_traces (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    audit_id     TEXT    NOT NULL UNIQUE,
    app_id       TEXT    NOT NULL,
    tenant_id    TEXT    NOT NULL,
    status       TEXT    NOT NULL,
    reason       TEXT,
    final_model  TEXT,
    cost_usd     REAL    NOT NULL,
    payload      TEXT    NOT NULL,
    recorded_at  REAL    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_traces_app
    ON decision_traces(app_id, recorded_at);
"""


class SqliteLineageSink(LineageSink):
    """
    Append-only SQLite table (INSERT only). A re-sent record with an audit_id
    that is already stored is ignored, so buffer replays stay exactly-once.

    Pass a tmp_path in tests.
    """

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialised = False

    async def _ensure_schema(self) -> None:
        if self._initialised:
            return
        async with aiosqlite.connect(self._db_path) as db:
            await db.executescript(_SCHEMA)
            await db.commit()
        self._initialised = True

    async def write(self, record: dict) -> None:
        await self._ensure_schema()
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute(
                """
                INSERT OR IGNORE INTO decision_traces
                    (audit_id, app_id, tenant_id, status, reason, final_model,
                     cost_usd, payload, recorded_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record["audit_id"],
                    record["app_id"],
                    record["tenant_id"],
                    record["status"],
                    record.get("reason"),
                    record.get("final_model"),
                    record.get("cost_usd", 0.0),
                    json.dumps(record, default=str),
                    time.time(),
                ),
            )
            await db.commit()

    async def get(self, audit_id: str) -> Optional[dict]:
        await self._ensure_schema()
        async with aiosqlite.connect(self._db_path) as db:
            async with db.execute(
                "SELECT payload FROM decision_traces WHERE audit_id = ?", (audit_id,)
            ) as cur:
                row = await cur.fetchone()
        return json.loads(row[0]) if row else None

    async def query(self, app_id: Optional[str] = None, status: Optional[str] = None,
                    limit: int = 100) -> list[dict]:
        """Most recent first."""
        await self._ensure_schema()
        clauses, params = [], []
        if app_id is not None:
            clauses.append("app_id = ?")
            params.append(app_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        async with aiosqlite.connect(self._db_path) as db:
            async with db.execute(
                f"SELECT payload FROM decision_traces {where} ORDER BY id DESC LIMIT ?",
                (*params, limit),
            ) as cur:
                rows = await cur.fetchall()
        return [json.loads(r[0]) for r in rows]

    async def count(self) -> int:
        await self._ensure_schema()
        async with aiosqlite.connect(self._db_path) as db:
            async with db.execute("SELECT COUNT(*) FROM decision_traces") as cur:
                row = await cur.fetchone()
        return int(row[0])


# ─────────────────────────────────────────────────────────────────────────────
# LineageRecorder
# ─────────────────────────────────────────────────────────────────────────────

class LineageRecorder:

    def __init__(
        self,
        sink: LineageSink,
        timeout_s: float = 2.0,
        hooks: Optional[HookRegistry] = None,
        metrics: Optional[MetricsSink] = None,
        max_buffer: int = 10_000,
    ) -> None:
        self._sink = sink
        self._timeout_s = timeout_s
        self._hooks = hooks
        self._metrics = metrics or NullMetrics()
        self._buffer: deque[dict] = deque(maxlen=max_buffer)
        self._tasks: set[asyncio.Task] = set()

    @property
    def sink(self) -> LineageSink:
        return self._sink

    @property
    def buffered(self) -> list[dict]:
        return list(self._buffer)

    def submit(self, trace: DecisionTrace) -> asyncio.Task:
        """Seal the trace and write it in the background. Must run inside a loop."""
        record = trace.seal()
        task = asyncio.get_running_loop().create_task(self._write(record))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def persist(self, trace: DecisionTrace) -> bool:
        """Seal and write, awaiting the bounded write. True when the sink accepted it."""
        return await self._write(trace.seal())

    async def _write(self, record: dict) -> bool:
        try:
            await asyncio.wait_for(self._sink.write(record), timeout=self._timeout_s)
            return True
        except asyncio.TimeoutError:
            self._buffer_record(record, "timeout")
        except Exception as exc:
            self._buffer_record(record, type(exc).__name__)
        return False

    def _buffer_record(self, record: dict, reason: str) -> None:
        if len(self._buffer) == self._buffer.maxlen:
            logger.error("Lineage buffer full; dropping oldest record %s",
                         self._buffer[0].get("audit_id"))
        self._buffer.append(record)
        logger.warning("Lineage write for %s failed (%s); buffered locally (%d pending)",
                       record.get("audit_id"), reason, len(self._buffer))
        self._metrics.increment("router_lineage_buffered_total", {"reason": reason})
        if self._hooks is not None:
            self._hooks.fire(EventType.LINEAGE_BUFFERED,
                             audit_id=record.get("audit_id"), error=reason)

    async def flush_buffer(self) -> int:
        """Re-send buffered records. Returns how many the sink accepted."""
        pending = list(self._buffer)
        self._buffer.clear()
        written = 0
        for record in pending:
            try:
                await asyncio.wait_for(self._sink.write(record), timeout=self._timeout_s)
                written += 1
            except asyncio.TimeoutError:
                self._buffer.append(record)
            except Exception as exc:
                logger.debug("Re-send of %s failed: %s", record.get("audit_id"), exc)
                self._buffer.append(record)
        if pending:
            logger.info("Lineage buffer flush: %d/%d written", written, len(pending))
        return written

    async def drain(self) -> None:
        """Wait for every in-flight background write."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks))
