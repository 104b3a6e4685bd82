from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from koboldlair.models import TaskRecord
from koboldlair.workers.base import Worker, WorkerExecutionError, WorkerResult, WorkerTimeoutError

WorkerEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 900.0


class ResilientWorker(Worker):
    """Wraps primary/fallback workers with timeout, retry, and failover."""

    def __init__(
        self,
        primary_name: str,
        primary_worker: Worker,
        fallback_name: str | None = None,
        fallback_worker: Worker | None = None,
        retry_policy: RetryPolicy | None = None,
        event_hook: WorkerEventHook | None = None,
    ) -> None:
        self.primary_name = primary_name
        self.primary_worker = primary_worker
        self.fallback_name = fallback_name or primary_name
        self.fallback_worker = fallback_worker
        self.retry_policy = retry_policy or RetryPolicy()
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def _attempt(
        self, worker: Worker, task: TaskRecord, working_directory: Path
    ) -> WorkerResult:
        try:
            return await asyncio.wait_for(
                worker.run(task, working_directory),
                timeout=self.retry_policy.timeout_seconds,
            )
        except TimeoutError as exc:
            raise WorkerTimeoutError(
                f"Worker timed out after {self.retry_policy.timeout_seconds:.1f}s",
                retriable=True,
            ) from exc

    async def run(self, task: TaskRecord, working_directory: Path) -> WorkerResult:
        attempts: list[tuple[str, Worker]] = [(self.primary_name, self.primary_worker)]
        if self.fallback_worker is not None and self.fallback_name != self.primary_name:
            attempts.append((self.fallback_name, self.fallback_worker))

        errors: list[str] = []
        for worker_name, worker in attempts:
            for attempt in range(self.retry_policy.max_retries + 1):
                if attempt > 0:
                    delay = self.retry_policy.backoff_seconds * (2 ** (attempt - 1))
                    self._emit(
                        {
                            "event": "worker_retry",
                            "worker": worker_name,
                            "attempt": attempt,
                            "delay_seconds": delay,
                            "task_id": task.id,
                        }
                    )
                    await asyncio.sleep(delay)
                try:
                    result = await self._attempt(worker, task, working_directory)
                except WorkerExecutionError as exc:
                    errors.append(f"{worker_name}[{attempt}]: {exc}")
                    self._emit(
                        {
                            "event": "worker_attempt_failed",
                            "worker": worker_name,
                            "attempt": attempt,
                            "task_id": task.id,
                            "error": str(exc),
                            "retriable": exc.retriable,
                        }
                    )
                    if not exc.retriable:
                        break
                    continue

                if not result.success and result.transient:
                    errors.append(f"{worker_name}[{attempt}]: {result.error}")
                    self._emit(
                        {
                            "event": "worker_attempt_failed",
                            "worker": worker_name,
                            "attempt": attempt,
                            "task_id": task.id,
                            "error": result.error,
                            "retriable": True,
                        }
                    )
                    continue

                if worker_name != self.primary_name:
                    self._emit(
                        {
                            "event": "worker_fallback_success",
                            "worker": worker_name,
                            "attempt": attempt,
                            "task_id": task.id,
                        }
                    )
                result.metadata.setdefault("worker", worker_name)
                return result

        summary = "; ".join(errors[-6:])
        raise WorkerExecutionError(
            f"All worker attempts failed for task {task.id}. {summary}",
            retriable=False,
        )
