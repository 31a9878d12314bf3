"""SQLite implementation of the run repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, TypeVar

from ..errors import ConflictError, NotFoundError, StorageError
from ..models import (
    ACTIVE_RUN_STATUSES,
    LogEntry,
    LogLevel,
    Run,
    RunStatus,
    Step,
    StepStatus,
    utcnow,
)
from .repository import RunRepository

T = TypeVar("T")

_STEP_COLUMNS = (
    "id, run_id, ordinal, step_type, status, input, result, error_message, "
    "started_at, finished_at"
)
_LOG_COLUMNS = "id, run_id, level, message, timestamp, counter, step_id, metadata"


class SQLiteRunRepository(RunRepository):
    """Persist run state using SQLite.

    One connection is shared between worker threads; ``_lock`` serializes
    each unit of work so a CAS update and its row count are read together.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._lock = threading.Lock()
        try:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._ensure_schema()
        except sqlite3.Error as exc:
            raise StorageError() from exc

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._conn:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS runs (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    automation_id TEXT,
                    "trigger" TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    finished_at TEXT
                );
                CREATE TABLE IF NOT EXISTS steps (
                    id TEXT PRIMARY KEY,
                    run_id TEXT NOT NULL REFERENCES runs(id),
                    ordinal INTEGER NOT NULL,
                    step_type TEXT NOT NULL,
                    status TEXT NOT NULL,
                    input TEXT NOT NULL,
                    result TEXT,
                    error_message TEXT,
                    started_at TEXT,
                    finished_at TEXT,
                    UNIQUE (run_id, ordinal)
                );
                CREATE TABLE IF NOT EXISTS run_logs (
                    id TEXT PRIMARY KEY,
                    run_id TEXT NOT NULL REFERENCES runs(id),
                    level TEXT NOT NULL,
                    message TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    counter INTEGER NOT NULL,
                    step_id TEXT,
                    metadata TEXT,
                    UNIQUE (run_id, counter)
                );
                """
            )

    # ------------------------------------------------------------------
    # Helper methods
    def _transaction(self, work: Callable[[sqlite3.Cursor], T]) -> T:
        with self._lock:
            try:
                with self._conn:
                    return work(self._conn.cursor())
            except sqlite3.Error as exc:
                raise StorageError() from exc

    async def _run(self, work: Callable[[sqlite3.Cursor], T]) -> T:
        return await asyncio.to_thread(self._transaction, work)

    # ------------------------------------------------------------------
    # Repository API
    async def create_run(self, run: Run, steps: list[Step]) -> None:
        def work(cur: sqlite3.Cursor) -> None:
            if run.automation_id is not None:
                cur.execute(
                    "SELECT 1 FROM runs WHERE automation_id = ? AND status IN (?, ?)",
                    (run.automation_id, *[s.value for s in ACTIVE_RUN_STATUSES]),
                )
                if cur.fetchone():
                    raise ConflictError(
                        "An automation run is already active for this automation"
                    )
            cur.execute(
                'INSERT INTO runs (id, owner_id, status, automation_id, "trigger", created_at, finished_at) VALUES (?, ?, ?, ?, ?, ?, ?)',
                (
                    run.id,
                    run.owner_id,
                    run.status.value,
                    run.automation_id,
                    run.trigger,
                    run.created_at.isoformat(),
                    _iso(run.finished_at),
                ),
            )
            cur.executemany(
                f"INSERT INTO steps ({_STEP_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    (
                        s.id,
                        s.run_id,
                        s.ordinal,
                        s.step_type,
                        s.status.value,
                        json.dumps(s.input),
                        _dumps(s.result),
                        s.error_message,
                        _iso(s.started_at),
                        _iso(s.finished_at),
                    )
                    for s in steps
                ],
            )

        await self._run(work)

    async def get_run(self, run_id: str) -> Run | None:
        def work(cur: sqlite3.Cursor) -> sqlite3.Row | None:
            cur.execute("SELECT * FROM runs WHERE id = ?", (run_id,))
            return cur.fetchone()

        row = await self._run(work)
        return _row_to_run(row) if row else None

    async def list_runs(self, owner_id: Optional[str] = None) -> list[Run]:
        def work(cur: sqlite3.Cursor) -> list[sqlite3.Row]:
            if owner_id is None:
                cur.execute("SELECT * FROM runs ORDER BY created_at DESC")
            else:
                cur.execute(
                    "SELECT * FROM runs WHERE owner_id = ? ORDER BY created_at DESC",
                    (owner_id,),
                )
            return cur.fetchall()

        return [_row_to_run(r) for r in await self._run(work)]

    async def get_steps(self, run_id: str) -> list[Step]:
        def work(cur: sqlite3.Cursor) -> list[sqlite3.Row]:
            cur.execute(
                f"SELECT {_STEP_COLUMNS} FROM steps WHERE run_id = ? ORDER BY ordinal",
                (run_id,),
            )
            return cur.fetchall()

        return [_row_to_step(r) for r in await self._run(work)]

    async def next_pending_step(self, run_id: str) -> Step | None:
        def work(cur: sqlite3.Cursor) -> sqlite3.Row | None:
            cur.execute(
                f"SELECT {_STEP_COLUMNS} FROM steps WHERE run_id = ? AND status = ? ORDER BY ordinal LIMIT 1",
                (run_id, StepStatus.PENDING.value),
            )
            return cur.fetchone()

        row = await self._run(work)
        return _row_to_step(row) if row else None

    async def transition_run(
        self,
        run_id: str,
        expected: Iterable[RunStatus],
        new_status: RunStatus,
        finished_at: Optional[datetime] = None,
    ) -> bool:
        expected_values = [s.value for s in expected]
        if new_status.is_terminal:
            finished_at = finished_at or utcnow()
        placeholders = ", ".join("?" for _ in expected_values)

        def work(cur: sqlite3.Cursor) -> bool:
            cur.execute(
                f"UPDATE runs SET status = ?, finished_at = ? WHERE id = ? AND status IN ({placeholders})",
                (new_status.value, _iso(finished_at), run_id, *expected_values),
            )
            return cur.rowcount == 1

        return await self._run(work)

    async def transition_step(
        self,
        step_id: str,
        expected: StepStatus,
        new_status: StepStatus,
        *,
        result: Optional[dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> bool:
        assignments, params = _step_assignments(new_status, result, error_message)

        def work(cur: sqlite3.Cursor) -> bool:
            cur.execute(
                f"UPDATE steps SET {assignments} WHERE id = ? AND status = ?",
                (*params, step_id, expected.value),
            )
            return cur.rowcount == 1

        return await self._run(work)

    async def cancel_open_steps(
        self, run_id: str, statuses: Iterable[StepStatus]
    ) -> list[Step]:
        wanted = [s.value for s in statuses]
        placeholders = ", ".join("?" for _ in wanted)
        assignments, params = _step_assignments(StepStatus.CANCELLED, None, None)

        def work(cur: sqlite3.Cursor) -> list[sqlite3.Row]:
            cur.execute(
                f"SELECT id, status FROM steps WHERE run_id = ? AND status IN ({placeholders}) ORDER BY ordinal",
                (run_id, *wanted),
            )
            won: list[str] = []
            for row in cur.fetchall():
                cur.execute(
                    f"UPDATE steps SET {assignments} WHERE id = ? AND status = ?",
                    (*params, row["id"], row["status"]),
                )
                if cur.rowcount == 1:
                    won.append(row["id"])
            if not won:
                return []
            cur.execute(
                f"SELECT {_STEP_COLUMNS} FROM steps WHERE id IN ({', '.join('?' for _ in won)}) ORDER BY ordinal",
                won,
            )
            return cur.fetchall()

        return [_row_to_step(r) for r in await self._run(work)]

    async def append_log(
        self,
        run_id: str,
        level: LogLevel,
        message: str,
        step_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> LogEntry:
        def work(cur: sqlite3.Cursor) -> LogEntry:
            cur.execute("SELECT 1 FROM runs WHERE id = ?", (run_id,))
            if cur.fetchone() is None:
                raise NotFoundError("Run not found")
            cur.execute(
                "SELECT counter, timestamp FROM run_logs WHERE run_id = ? ORDER BY counter DESC LIMIT 1",
                (run_id,),
            )
            last = cur.fetchone()
            timestamp = utcnow()
            counter = 1
            if last is not None:
                counter = last["counter"] + 1
                timestamp = max(timestamp, datetime.fromisoformat(last["timestamp"]))
            entry = LogEntry(
                run_id=run_id,
                level=level,
                message=message,
                timestamp=timestamp,
                counter=counter,
                step_id=step_id,
                metadata=metadata or {},
            )
            cur.execute(
                f"INSERT INTO run_logs ({_LOG_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    entry.id,
                    entry.run_id,
                    entry.level.value,
                    entry.message,
                    entry.timestamp.isoformat(),
                    entry.counter,
                    entry.step_id,
                    json.dumps(entry.metadata),
                ),
            )
            return entry

        return await self._run(work)

    async def read_logs(
        self, run_id: str, after_counter: int = 0, limit: Optional[int] = None
    ) -> list[LogEntry]:
        def work(cur: sqlite3.Cursor) -> list[sqlite3.Row]:
            cur.execute(
                f"SELECT {_LOG_COLUMNS} FROM run_logs WHERE run_id = ? AND counter > ? ORDER BY timestamp, counter LIMIT ?",
                (run_id, after_counter, -1 if limit is None else limit),
            )
            return cur.fetchall()

        return [
            LogEntry(
                id=r["id"],
                run_id=r["run_id"],
                level=LogLevel(r["level"]),
                message=r["message"],
                timestamp=datetime.fromisoformat(r["timestamp"]),
                counter=r["counter"],
                step_id=r["step_id"],
                metadata=json.loads(r["metadata"]) if r["metadata"] else {},
            )
            for r in await self._run(work)
        ]


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _dumps(value: Optional[dict[str, Any]]) -> Optional[str]:
    return json.dumps(value) if value is not None else None


def _step_assignments(
    new_status: StepStatus,
    result: Optional[dict[str, Any]],
    error_message: Optional[str],
) -> tuple[str, list[Any]]:
    columns = ["status = ?"]
    params: list[Any] = [new_status.value]
    now = utcnow().isoformat()
    if new_status == StepStatus.RUNNING:
        columns.append("started_at = ?")
        params.append(now)
    if new_status.is_terminal:
        columns.append("finished_at = ?")
        params.append(now)
    if result is not None:
        columns.append("result = ?")
        params.append(json.dumps(result))
    if error_message is not None:
        columns.append("error_message = ?")
        params.append(error_message)
    return ", ".join(columns), params


def _row_to_run(row: sqlite3.Row) -> Run:
    return Run(
        id=row["id"],
        owner_id=row["owner_id"],
        status=RunStatus(row["status"]),
        automation_id=row["automation_id"],
        trigger=row["trigger"],
        created_at=datetime.fromisoformat(row["created_at"]),
        finished_at=_parse(row["finished_at"]),
    )


def _row_to_step(row: sqlite3.Row) -> Step:
    return Step(
        id=row["id"],
        run_id=row["run_id"],
        ordinal=row["ordinal"],
        step_type=row["step_type"],
        status=StepStatus(row["status"]),
        input=json.loads(row["input"]) if row["input"] else {},
        result=json.loads(row["result"]) if row["result"] else None,
        error_message=row["error_message"],
        started_at=_parse(row["started_at"]),
        finished_at=_parse(row["finished_at"]),
    )
