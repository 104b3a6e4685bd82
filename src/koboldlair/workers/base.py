from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from koboldlair.models import TaskRecord


class WorkerExecutionError(RuntimeError):
    """Raised when a worker cannot carry out a task."""

    def __init__(
        self,
        message: str,
        *,
        worker: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.worker = worker
        self.exit_code = exit_code
        self.retriable = retriable


class WorkerTimeoutError(WorkerExecutionError):
    """Raised when a worker exceeds its configured timeout."""


class WorkerProcessError(WorkerExecutionError):
    """Raised when a worker process cannot be started or supervised."""


@dataclass(slots=True)
class WorkerResult:
    success: bool
    output: str = ""
    error: str | None = None
    transient: bool = False
    files_changed: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


class Worker(ABC):
    @abstractmethod
    async def run(self, task: TaskRecord, working_directory: Path) -> WorkerResult:
        """Carry out ``task`` inside ``working_directory``.

        A successful result is only a claim; the caller validates the
        filesystem before the task counts as done.
        """
