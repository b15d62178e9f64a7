"""Structured execution logs.

Each run owns an ``ExecutionLogger``. Entries are kept in memory (filtered by
a minimum level), mirrored to the ``marathon`` Python logger, and exported as
``{id, executionId, nodeId, timestamp, level, message, data?, duration?}``
records for download.
"""

from __future__ import annotations

import itertools
import json
import logging
from typing import Any

from marathon.domain.models import ExecutionLog, LogLevel

logger = logging.getLogger(__name__)

_LEVEL_ORDER: dict[str, int] = {"debug": 10, "info": 20, "warning": 30, "error": 40}


class ExecutionLogger:
    """Collects log entries for one execution id."""

    def __init__(self, execution_id: str, *, level: LogLevel = "info") -> None:
        self.execution_id = execution_id
        self.level = level
        self.entries: list[ExecutionLog] = []
        self._counter = itertools.count(1)

    def log(
        self,
        level: LogLevel,
        message: str,
        *,
        node_id: str = "system",
        data: Any = None,
        duration: float | None = None,
    ) -> ExecutionLog | None:
        """Record an entry; returns None when below the minimum level."""
        logger.log(_LEVEL_ORDER[level], "[%s] %s: %s", self.execution_id, node_id, message)
        if _LEVEL_ORDER[level] < _LEVEL_ORDER[self.level]:
            return None
        entry = ExecutionLog(
            id=f"log-{self.execution_id}-{next(self._counter)}",
            execution_id=self.execution_id,
            node_id=node_id,
            level=level,
            message=message,
            data=data,
            duration=duration,
        )
        self.entries.append(entry)
        return entry

    def debug(self, message: str, **kwargs: Any) -> ExecutionLog | None:
        return self.log("debug", message, **kwargs)

    def info(self, message: str, **kwargs: Any) -> ExecutionLog | None:
        return self.log("info", message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> ExecutionLog | None:
        return self.log("warning", message, **kwargs)

    def error(self, message: str, **kwargs: Any) -> ExecutionLog | None:
        return self.log("error", message, **kwargs)

    def extend(self, other: "ExecutionLogger") -> None:
        """Append another logger's entries (used for nested subflow runs)."""
        self.entries.extend(other.entries)

    def for_node(self, node_id: str) -> list[ExecutionLog]:
        return [entry for entry in self.entries if entry.node_id == node_id]

    def clear(self) -> None:
        self.entries.clear()

    def export(self) -> list[dict[str, Any]]:
        """Entries as JSON-ready dicts with camelCase keys and ISO timestamps."""
        return [
            entry.model_dump(mode="json", by_alias=True, exclude_none=True)
            for entry in self.entries
        ]

    def export_json(self, indent: int = 2) -> str:
        return json.dumps(self.export(), indent=indent, ensure_ascii=False)
