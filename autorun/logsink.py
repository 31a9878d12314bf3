"""Append-only audit log for runs."""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Optional

from .models import LogEntry, LogLevel
from .persistence import RunRepository

logger = logging.getLogger(__name__)

_PAGE_SIZE = 100


class LogStream:
    """Lazy, finite view over a run's log entries.

    Each ``async for`` starts again from the first entry and pages through
    the repository, so a stream can be iterated any number of times.
    """

    def __init__(
        self, repository: RunRepository, run_id: str, page_size: int = _PAGE_SIZE
    ) -> None:
        self._repository = repository
        self._run_id = run_id
        self._page_size = page_size

    async def __aiter__(self) -> AsyncIterator[LogEntry]:
        after = 0
        while True:
            page = await self._repository.read_logs(
                self._run_id, after_counter=after, limit=self._page_size
            )
            for entry in page:
                yield entry
            if len(page) < self._page_size:
                return
            after = page[-1].counter

    async def to_list(self) -> list[LogEntry]:
        return [entry async for entry in self]


class LogSink:
    def __init__(self, repository: RunRepository) -> None:
        self._repository = repository

    async def append(
        self,
        run_id: str,
        level: LogLevel,
        message: str,
        step_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> LogEntry:
        """Record ``message`` for ``run_id``; raises ``NotFoundError`` for unknown runs."""
        entry = await self._repository.append_log(
            run_id, level, message, step_id=step_id, metadata=metadata
        )
        logger.debug(f"[{level.value}] run_id={run_id} #{entry.counter}: {message}")
        return entry

    async def info(self, run_id: str, message: str, **kwargs: Any) -> LogEntry:
        return await self.append(run_id, LogLevel.INFO, message, **kwargs)

    async def warn(self, run_id: str, message: str, **kwargs: Any) -> LogEntry:
        return await self.append(run_id, LogLevel.WARN, message, **kwargs)

    async def error(self, run_id: str, message: str, **kwargs: Any) -> LogEntry:
        return await self.append(run_id, LogLevel.ERROR, message, **kwargs)

    def read(self, run_id: str) -> LogStream:
        return LogStream(self._repository, run_id)
