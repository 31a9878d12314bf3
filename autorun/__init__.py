"""Autorun: orchestration of automation runs with safe mid-flight stop."""

from .config import AutorunConfig, load_config
from .dispatch import ChangeStream, RunDispatcher, RunHandle
from .errors import (
    AutorunError,
    ConcurrencyConflict,
    ConflictError,
    ExecutorFailure,
    NotFoundError,
    PermissionDenied,
    StorageError,
    ValidationError,
)
from .executors import (
    FunctionStepExecutor,
    HttpStepExecutor,
    StepExecutor,
    StepExecutorRegistry,
)
from .models import (
    ChangeEvent,
    LogEntry,
    LogLevel,
    Run,
    RunSnapshot,
    RunStatus,
    Step,
    StepDefinition,
    StepResult,
    StepStatus,
    StopResult,
)
from .persistence import get_repository
from .security import PolicyEngine
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "AutorunConfig",
    "load_config",
    "RunDispatcher",
    "RunHandle",
    "ChangeStream",
    "AutorunError",
    "ValidationError",
    "PermissionDenied",
    "NotFoundError",
    "ConflictError",
    "ConcurrencyConflict",
    "StorageError",
    "ExecutorFailure",
    "StepExecutor",
    "FunctionStepExecutor",
    "StepExecutorRegistry",
    "HttpStepExecutor",
    "ChangeEvent",
    "LogEntry",
    "LogLevel",
    "Run",
    "RunSnapshot",
    "RunStatus",
    "Step",
    "StepDefinition",
    "StepResult",
    "StepStatus",
    "StopResult",
    "PolicyEngine",
    "get_repository",
    "get_transport",
]
