"""Data models for automation runs, their steps and audit log."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_RUN_STATUSES


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in OPEN_STEP_STATUSES


class LogLevel(str, Enum):
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


TERMINAL_RUN_STATUSES = frozenset(
    {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.STOPPED}
)
ACTIVE_RUN_STATUSES = frozenset({RunStatus.PENDING, RunStatus.RUNNING})
OPEN_STEP_STATUSES = frozenset({StepStatus.PENDING, StepStatus.RUNNING})


class StepDefinition(BaseModel):
    """One entry of the ordered step sequence given to ``start_run``."""

    step_type: str
    input: dict[str, Any] = Field(default_factory=dict)

    @field_validator("step_type")
    @classmethod
    def _step_type_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("step_type must not be empty")
        return value


class Run(BaseModel):
    """Persisted execution instance of a stored automation."""

    id: str = Field(default_factory=new_id)
    owner_id: str
    status: RunStatus = RunStatus.PENDING
    automation_id: Optional[str] = None
    trigger: Literal["manual", "auto"] = "manual"
    created_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None


class Step(BaseModel):
    """One ordered unit of work within a run."""

    id: str = Field(default_factory=new_id)
    run_id: str
    ordinal: int
    step_type: str
    status: StepStatus = StepStatus.PENDING
    input: dict[str, Any] = Field(default_factory=dict)
    result: Optional[dict[str, Any]] = None
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class LogEntry(BaseModel):
    """Immutable audit record; ordered by ``(timestamp, counter)``."""

    id: str = Field(default_factory=new_id)
    run_id: str
    level: LogLevel
    message: str
    timestamp: datetime
    counter: int
    step_id: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def sort_key(self) -> tuple[datetime, int]:
        return (self.timestamp, self.counter)


class StepResult(BaseModel):
    """Outcome reported by a step executor."""

    success: bool
    output: Optional[dict[str, Any]] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, output: Optional[dict[str, Any]] = None) -> "StepResult":
        return cls(success=True, output=output or {})

    @classmethod
    def failed(cls, error: str) -> "StepResult":
        return cls(success=False, error=error)


class RunSnapshot(BaseModel):
    """Point-in-time view of a run and all of its steps."""

    run: Run
    steps: list[Step] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.run.status.is_terminal


class ChangeEvent(BaseModel):
    """Published for every committed run or step status transition."""

    entity_kind: Literal["run", "step"]
    entity_id: str
    run_id: str
    new_status: str
    occurred_at: datetime = Field(default_factory=utcnow)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> "ChangeEvent":
        return cls.model_validate_json(data)

    @property
    def is_terminal_run_event(self) -> bool:
        return (
            self.entity_kind == "run"
            and RunStatus(self.new_status) in TERMINAL_RUN_STATUSES
        )


class StopResult(BaseModel):
    success: bool = True
    message: str
