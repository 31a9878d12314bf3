"""PostgreSQL implementation of the run repository."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Iterable, Optional

import asyncpg

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

_STEP_COLUMNS = (
    "id, run_id, ordinal, step_type, status, input, result, error_message, "
    "started_at, finished_at"
)
_LOG_COLUMNS = "id, run_id, level, message, timestamp, counter, step_id, metadata"


class PostgresRunRepository(RunRepository):
    """Persist run state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        try:
            conn = await asyncpg.connect(self._dsn)
            if not self._initialized:
                await self._ensure_schema(conn)
                self._initialized = True
        except (OSError, asyncpg.PostgresError) as exc:
            raise StorageError() from exc
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                status TEXT NOT NULL,
                automation_id TEXT,
                trigger TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                finished_at TIMESTAMPTZ
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS steps (
                id TEXT PRIMARY KEY,
                run_id TEXT NOT NULL REFERENCES runs(id),
                ordinal INTEGER NOT NULL,
                step_type TEXT NOT NULL,
                status TEXT NOT NULL,
                input JSONB NOT NULL,
                result JSONB,
                error_message TEXT,
                started_at TIMESTAMPTZ,
                finished_at TIMESTAMPTZ,
                UNIQUE (run_id, ordinal)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS run_logs (
                id TEXT PRIMARY KEY,
                run_id TEXT NOT NULL REFERENCES runs(id),
                level TEXT NOT NULL,
                message TEXT NOT NULL,
                timestamp TIMESTAMPTZ NOT NULL,
                counter INTEGER NOT NULL,
                step_id TEXT,
                metadata JSONB,
                UNIQUE (run_id, counter)
            )
            """
        )

    # ------------------------------------------------------------------
    async def create_run(self, run: Run, steps: list[Step]) -> None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                if run.automation_id is not None:
                    # serializes concurrent starts of the same automation
                    await conn.execute(
                        "SELECT pg_advisory_xact_lock(hashtext($1))", run.automation_id
                    )
                    active = await conn.fetchval(
                        "SELECT 1 FROM runs WHERE automation_id = $1 AND status = ANY($2::text[])",
                        run.automation_id,
                        [s.value for s in ACTIVE_RUN_STATUSES],
                    )
                    if active:
                        raise ConflictError(
                            "An automation run is already active for this automation"
                        )
                await conn.execute(
                    "INSERT INTO runs (id, owner_id, status, automation_id, trigger, created_at, finished_at) VALUES ($1, $2, $3, $4, $5, $6, $7)",
                    run.id,
                    run.owner_id,
                    run.status.value,
                    run.automation_id,
                    run.trigger,
                    run.created_at,
                    run.finished_at,
                )
                await conn.executemany(
                    f"INSERT INTO steps ({_STEP_COLUMNS}) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)",
                    [
                        (
                            s.id,
                            s.run_id,
                            s.ordinal,
                            s.step_type,
                            s.status.value,
                            json.dumps(s.input),
                            json.dumps(s.result) if s.result is not None else None,
                            s.error_message,
                            s.started_at,
                            s.finished_at,
                        )
                        for s in steps
                    ],
                )
        except asyncpg.PostgresError as exc:
            raise StorageError() from exc
        finally:
            await conn.close()

    async def get_run(self, run_id: str) -> Run | None:
        row = await self._fetchrow("SELECT * FROM runs WHERE id = $1", run_id)
        return _record_to_run(row) if row else None

    async def list_runs(self, owner_id: Optional[str] = None) -> list[Run]:
        if owner_id is None:
            rows = await self._fetch("SELECT * FROM runs ORDER BY created_at DESC")
        else:
            rows = await self._fetch(
                "SELECT * FROM runs WHERE owner_id = $1 ORDER BY created_at DESC",
                owner_id,
            )
        return [_record_to_run(r) for r in rows]

    async def get_steps(self, run_id: str) -> list[Step]:
        rows = await self._fetch(
            f"SELECT {_STEP_COLUMNS} FROM steps WHERE run_id = $1 ORDER BY ordinal",
            run_id,
        )
        return [_record_to_step(r) for r in rows]

    async def next_pending_step(self, run_id: str) -> Step | None:
        row = await self._fetchrow(
            f"SELECT {_STEP_COLUMNS} FROM steps WHERE run_id = $1 AND status = $2 ORDER BY ordinal LIMIT 1",
            run_id,
            StepStatus.PENDING.value,
        )
        return _record_to_step(row) if row else None

    async def transition_run(
        self,
        run_id: str,
        expected: Iterable[RunStatus],
        new_status: RunStatus,
        finished_at: Optional[datetime] = None,
    ) -> bool:
        if new_status.is_terminal:
            finished_at = finished_at or utcnow()
        status = await self._execute(
            "UPDATE runs SET status = $1, finished_at = $2 WHERE id = $3 AND status = ANY($4::text[])",
            new_status.value,
            finished_at,
            run_id,
            [s.value for s in expected],
        )
        return _affected(status) == 1

    async def transition_step(
        self,
        step_id: str,
        expected: StepStatus,
        new_status: StepStatus,
        *,
        result: Optional[dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> bool:
        now = utcnow()
        status = await self._execute(
            """
            UPDATE steps
            SET status = $1,
                started_at = CASE WHEN $1 = 'running' THEN $2 ELSE started_at END,
                finished_at = CASE WHEN $3 THEN $2 ELSE finished_at END,
                result = COALESCE($4::jsonb, result),
                error_message = COALESCE($5, error_message)
            WHERE id = $6 AND status = $7
            """,
            new_status.value,
            now,
            new_status.is_terminal,
            json.dumps(result) if result is not None else None,
            error_message,
            step_id,
            expected.value,
        )
        return _affected(status) == 1

    async def cancel_open_steps(
        self, run_id: str, statuses: Iterable[StepStatus]
    ) -> list[Step]:
        rows = await self._fetch(
            f"""
            UPDATE steps SET status = $1, finished_at = $2
            WHERE run_id = $3 AND status = ANY($4::text[])
            RETURNING {_STEP_COLUMNS}
            """,
            StepStatus.CANCELLED.value,
            utcnow(),
            run_id,
            [s.value for s in statuses],
        )
        return sorted((_record_to_step(r) for r in rows), key=lambda s: s.ordinal)

    async def append_log(
        self,
        run_id: str,
        level: LogLevel,
        message: str,
        step_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> LogEntry:
        conn = await self._connect()
        try:
            async with conn.transaction():
                # row lock on the run allocates counters one writer at a time
                exists = await conn.fetchval(
                    "SELECT 1 FROM runs WHERE id = $1 FOR UPDATE", run_id
                )
                if not exists:
                    raise NotFoundError("Run not found")
                last = await conn.fetchrow(
                    "SELECT counter, timestamp FROM run_logs WHERE run_id = $1 ORDER BY counter DESC LIMIT 1",
                    run_id,
                )
                timestamp = utcnow()
                counter = 1
                if last is not None:
                    counter = last["counter"] + 1
                    timestamp = max(timestamp, last["timestamp"])
                entry = LogEntry(
                    run_id=run_id,
                    level=level,
                    message=message,
                    timestamp=timestamp,
                    counter=counter,
                    step_id=step_id,
                    metadata=metadata or {},
                )
                await conn.execute(
                    f"INSERT INTO run_logs ({_LOG_COLUMNS}) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)",
                    entry.id,
                    entry.run_id,
                    entry.level.value,
                    entry.message,
                    entry.timestamp,
                    entry.counter,
                    entry.step_id,
                    json.dumps(entry.metadata),
                )
        except asyncpg.PostgresError as exc:
            raise StorageError() from exc
        finally:
            await conn.close()
        return entry

    async def read_logs(
        self, run_id: str, after_counter: int = 0, limit: Optional[int] = None
    ) -> list[LogEntry]:
        rows = await self._fetch(
            f"SELECT {_LOG_COLUMNS} FROM run_logs WHERE run_id = $1 AND counter > $2 ORDER BY timestamp, counter LIMIT $3",
            run_id,
            after_counter,
            limit,
        )
        return [
            LogEntry(
                id=r["id"],
                run_id=r["run_id"],
                level=LogLevel(r["level"]),
                message=r["message"],
                timestamp=r["timestamp"],
                counter=r["counter"],
                step_id=r["step_id"],
                metadata=_loads(r["metadata"]) or {},
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    async def _execute(self, query: str, *args: Any) -> str:
        conn = await self._connect()
        try:
            return await conn.execute(query, *args)
        except asyncpg.PostgresError as exc:
            raise StorageError() from exc
        finally:
            await conn.close()

    async def _fetch(self, query: str, *args: Any) -> list[asyncpg.Record]:
        conn = await self._connect()
        try:
            return await conn.fetch(query, *args)
        except asyncpg.PostgresError as exc:
            raise StorageError() from exc
        finally:
            await conn.close()

    async def _fetchrow(self, query: str, *args: Any) -> asyncpg.Record | None:
        conn = await self._connect()
        try:
            return await conn.fetchrow(query, *args)
        except asyncpg.PostgresError as exc:
            raise StorageError() from exc
        finally:
            await conn.close()


def _affected(status: str) -> int:
    # asyncpg returns the command tag, e.g. "UPDATE 1"
    return int(status.rsplit(" ", 1)[-1])


def _loads(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


def _record_to_run(row: asyncpg.Record) -> Run:
    return Run(
        id=row["id"],
        owner_id=row["owner_id"],
        status=RunStatus(row["status"]),
        automation_id=row["automation_id"],
        trigger=row["trigger"],
        created_at=row["created_at"],
        finished_at=row["finished_at"],
    )


def _record_to_step(row: asyncpg.Record) -> Step:
    return Step(
        id=row["id"],
        run_id=row["run_id"],
        ordinal=row["ordinal"],
        step_type=row["step_type"],
        status=StepStatus(row["status"]),
        input=_loads(row["input"]) or {},
        result=_loads(row["result"]),
        error_message=row["error_message"],
        started_at=row["started_at"],
        finished_at=row["finished_at"],
    )
