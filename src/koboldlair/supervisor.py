from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Collection, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path

from koboldlair.config import SupervisorConfig
from koboldlair.errors import CapacityExceededError
from koboldlair.kobolds import Kobold, KoboldFactory
from koboldlair.models import ExecutionState, TaskRecord, TaskStatus, utcnow
from koboldlair.tracker import TaskTracker
from koboldlair.validation import StepValidationService
from koboldlair.workers.base import Worker, WorkerExecutionError, WorkerResult
from koboldlair.workers.classifier import is_retriable

logger = logging.getLogger(__name__)

StatusHook = Callable[[dict[str, TaskStatus]], None]
ExecutionGate = Callable[[], ExecutionState]

DEFAULT_WORKER_KEY = "*"


@dataclass(slots=True)
class DrakeStatistics:
    total_kobolds: int = 0
    unassigned_kobolds: int = 0
    assigned_kobolds: int = 0
    working_kobolds: int = 0
    done_kobolds: int = 0
    failed_kobolds: int = 0
    total_tasks: int = 0
    unassigned_tasks: int = 0
    not_initialized_tasks: int = 0
    working_tasks: int = 0
    done_tasks: int = 0
    failed_tasks: int = 0
    blocked_tasks: int = 0
    active_assignments: int = 0

    def __str__(self) -> str:
        return (
            f"Kobolds: {self.total_kobolds} total, {self.working_kobolds} working | "
            f"Tasks: {self.total_tasks} total, {self.working_tasks} working, "
            f"{self.done_tasks} done, {self.blocked_tasks} blocked"
        )


@dataclass(slots=True)
class DrakeRunSummary:
    name: str
    project_id: str
    area: str
    started_at: datetime
    ended_at: datetime
    dispatched: int = 0
    done: list[str] = field(default_factory=list)
    blocked: list[str] = field(default_factory=list)
    stopped: bool = False


class Drake:
    """Supervises one work area: admits ready tasks, runs them, validates results."""

    def __init__(
        self,
        *,
        project_id: str,
        area: str,
        tracker: TaskTracker,
        factory: KoboldFactory,
        workers: Mapping[str, Worker],
        working_directory: Path,
        validation: StepValidationService | None = None,
        config: SupervisorConfig | None = None,
        status_hook: StatusHook | None = None,
        execution_gate: ExecutionGate | None = None,
        exit_when_idle: bool = False,
        disabled_agent_types: Collection[str] = (),
        name: str | None = None,
    ) -> None:
        self.project_id = project_id
        self.area = area
        self.tracker = tracker
        self.factory = factory
        self.workers = dict(workers)
        self.working_directory = working_directory
        self.validation = validation or StepValidationService()
        self.config = config or SupervisorConfig()
        self.status_hook = status_hook
        self.execution_gate = execution_gate
        self.exit_when_idle = exit_when_idle
        self.disabled_agent_types = frozenset(disabled_agent_types)
        self.name = name or f"drake-{project_id}-{area}"
        self._in_flight: dict[str, asyncio.Task[None]] = {}
        self._wake: asyncio.Event | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._stopping = False
        self._summary: DrakeRunSummary | None = None
        self._stuck: dict[str, str] = {}
        self._failure: Exception | None = None

    @property
    def in_flight(self) -> list[str]:
        return list(self._in_flight)

    @property
    def stopping(self) -> bool:
        return self._stopping

    def wake(self) -> None:
        if self._wake is None or self._loop is None:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._wake.set()
        else:
            self._loop.call_soon_threadsafe(self._wake.set)

    def stop(self) -> None:
        """Stop admitting tasks; in-flight tasks still finish and get validated."""
        if not self._stopping:
            logger.info("%s stopping with %d task(s) in flight", self.name, len(self._in_flight))
        self._stopping = True
        self.wake()

    def _worker_for(self, agent_type: str) -> Worker | None:
        return self.workers.get(agent_type) or self.workers.get(DEFAULT_WORKER_KEY)

    def _dispatch_allowed(self) -> bool:
        if self._stopping:
            return False
        if self.execution_gate is None:
            return True
        return self.execution_gate() == ExecutionState.RUNNING

    def _publish_status(self) -> None:
        if self.status_hook is not None:
            self.status_hook(self.tracker.statuses())

    def _dispatch_admissible(self) -> int:
        dispatched = 0
        for task in self.tracker.get_admissible(self.area):
            if not self._dispatch_allowed():
                break
            if task.id in self._in_flight:
                continue
            if task.agent_type in self.disabled_agent_types:
                self.tracker.block(task.id, f"Agent type '{task.agent_type}' is disabled")
                continue
            worker = self._worker_for(task.agent_type)
            if worker is None:
                self.tracker.block(task.id, f"No worker registered for agent type '{task.agent_type}'")
                continue
            try:
                kobold = self.factory.create(task.agent_type, self.project_id, task_id=task.id)
            except CapacityExceededError as exc:
                logger.debug("%s deferring %s: %s", self.name, task.id, exc)
                break
            self.tracker.update_status(
                task.id, TaskStatus.NOT_INITIALIZED, assigned_kobold=kobold.id
            )
            logger.info("%s dispatching %s to %s", self.name, task.id, kobold.id)
            self._in_flight[task.id] = asyncio.create_task(
                self._execute(task, kobold, worker), name=f"{self.name}:{task.id}"
            )
            dispatched += 1
        return dispatched

    async def _invoke(self, worker: Worker, task: TaskRecord, working_directory: Path) -> WorkerResult:
        timeout = self.config.task_timeout_seconds
        try:
            return await asyncio.wait_for(
                worker.run(task, working_directory),
                timeout=timeout if timeout and timeout > 0 else None,
            )
        except TimeoutError:
            return WorkerResult(
                success=False, error=f"Task timed out after {timeout:.1f}s", transient=True
            )
        except WorkerExecutionError as exc:
            return WorkerResult(success=False, error=str(exc), transient=exc.retriable)

    async def _execute(self, task: TaskRecord, kobold: Kobold, worker: Worker) -> None:
        try:
            await self._attempt(task, kobold, worker)
        except Exception as exc:
            self._record_failure(exc)
        finally:
            self._in_flight.pop(task.id, None)
            self.wake()
            self._publish_status_safely()

    async def _attempt(self, task: TaskRecord, kobold: Kobold, worker: Worker) -> None:
        working_directory = Path(task.working_directory or self.working_directory)
        started_at = utcnow()
        for step in task.steps:
            step.started_at = started_at
        discard = False
        try:
            self.tracker.set_step_started(task.id, started_at)
            self.tracker.update_status(task.id, TaskStatus.WORKING)
            self.factory.start(kobold.id)
            try:
                result = await self._invoke(worker, task, working_directory)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("%s worker crashed on %s", self.name, task.id)
                discard = True
                result = WorkerResult(success=False, error=str(exc), transient=is_retriable(str(exc)))

            self.factory.complete(kobold.id, success=result.success, error=result.error)
            if result.success:
                verdict = await self.validation.validate_steps(task.steps, working_directory)
                self.tracker.record_validation(task.id, task.steps)
                passed, reason = verdict.success, verdict.reason
            else:
                passed, reason = False, result.error or "Worker reported failure"

            if passed:
                self.tracker.update_status(task.id, TaskStatus.DONE)
                logger.info("%s completed %s", self.name, task.id)
                if self._summary is not None:
                    self._summary.done.append(task.id)
            else:
                kind = "transient" if result.transient else "failure"
                logger.warning("%s task %s failed (%s): %s", self.name, task.id, kind, reason)
                self._fail(task.id, reason)
        except asyncio.CancelledError:
            reason = self._stuck.pop(task.id, None)
            if reason is None:
                current = self.tracker.get(task.id)
                if current.status == TaskStatus.WORKING:
                    self.tracker.update_status(task.id, TaskStatus.FAILED, error="Interrupted")
                    self.tracker.readmit(task.id, consume_retry=False)
                elif current.status == TaskStatus.NOT_INITIALIZED:
                    self.tracker.update_status(task.id, TaskStatus.UNASSIGNED)
                raise
            this_task = asyncio.current_task()
            if this_task is not None:
                this_task.uncancel()
            discard = True
            if self.factory.get(kobold.id).is_active:
                self.factory.complete(kobold.id, success=False, error=reason)
            if self.tracker.get(task.id).status == TaskStatus.WORKING:
                self._fail(task.id, reason)
        finally:
            self.factory.release(kobold.id, discard=discard)

    def _fail(self, task_id: str, reason: str) -> None:
        self.tracker.update_status(task_id, TaskStatus.FAILED, error=reason)
        if not self.tracker.readmit(task_id) and self._summary is not None:
            self._summary.blocked.append(task_id)

    def _record_failure(self, exc: Exception) -> None:
        if self._failure is None:
            self._failure = exc
            logger.error("%s stopping after error: %s", self.name, exc)
        else:
            logger.error("%s additional error while stopping: %s", self.name, exc)
        self._stopping = True

    def _publish_status_safely(self) -> None:
        try:
            self._publish_status()
        except Exception as exc:
            self._record_failure(exc)

    async def run(self) -> DrakeRunSummary:
        self._loop = asyncio.get_running_loop()
        self._wake = asyncio.Event()
        self._failure = None
        self._stuck.clear()
        self._summary = DrakeRunSummary(
            name=self.name,
            project_id=self.project_id,
            area=self.area,
            started_at=utcnow(),
            ended_at=utcnow(),
        )
        unsubscribe = self.tracker.subscribe(lambda *_: self.wake())
        idle = max(0.01, float(self.config.idle_interval_seconds))
        logger.info("%s started", self.name)
        try:
            while True:
                self._wake.clear()
                allowed = self._dispatch_allowed()
                if allowed:
                    self._summary.dispatched += self._dispatch_admissible()
                if not self._in_flight:
                    if not allowed or not self.tracker.has_pending(self.area):
                        break
                    if self.exit_when_idle and not self.tracker.get_admissible(self.area):
                        break
                try:
                    await asyncio.wait_for(self._wake.wait(), timeout=idle)
                except TimeoutError:
                    self._publish_status_safely()
        except asyncio.CancelledError:
            pending = list(self._in_flight.values())
            for in_flight in pending:
                in_flight.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            raise
        finally:
            unsubscribe()
            self._publish_status_safely()
            self._summary.ended_at = utcnow()
            self._summary.stopped = not self._dispatch_allowed()
        if self._failure is not None:
            raise self._failure
        logger.info(
            "%s finished: %d done, %d blocked",
            self.name,
            len(self._summary.done),
            len(self._summary.blocked),
        )
        return self._summary

    def handle_stuck_kobolds(
        self, timeout: timedelta | None = None, *, now: datetime | None = None
    ) -> list[str]:
        """Cancel in-flight tasks whose kobold has been working longer than ``timeout``.

        Each cancelled task fails with a stuck reason and goes through the
        normal retry path. Returns the ids of the tasks that were cancelled.
        """
        if timeout is None:
            timeout = timedelta(seconds=self.config.task_timeout_seconds)
        handled: list[str] = []
        for kobold in self.factory.stuck(timeout, now):
            task_id = kobold.task_id
            if kobold.project_id != self.project_id or task_id is None:
                continue
            in_flight = self._in_flight.get(task_id)
            if in_flight is None or task_id in self._stuck:
                continue
            minutes = timeout.total_seconds() / 60
            reason = f"Kobold {kobold.id} stuck for more than {minutes:g} minute(s)"
            logger.warning("%s cancelling %s: %s", self.name, task_id, reason)
            self._stuck[task_id] = reason
            in_flight.cancel()
            handled.append(task_id)
        return handled

    def statistics(self) -> DrakeStatistics:
        kobolds = self.factory.statistics(self.project_id)
        tasks = self.tracker.status_counts(self.area)
        return DrakeStatistics(
            total_kobolds=kobolds.total,
            unassigned_kobolds=kobolds.unassigned,
            assigned_kobolds=kobolds.assigned,
            working_kobolds=kobolds.working,
            done_kobolds=kobolds.done,
            failed_kobolds=kobolds.failed,
            total_tasks=sum(tasks.values()),
            unassigned_tasks=tasks[TaskStatus.UNASSIGNED],
            not_initialized_tasks=tasks[TaskStatus.NOT_INITIALIZED],
            working_tasks=tasks[TaskStatus.WORKING],
            done_tasks=tasks[TaskStatus.DONE],
            failed_tasks=tasks[TaskStatus.FAILED],
            blocked_tasks=tasks[TaskStatus.BLOCKED],
            active_assignments=len(self._in_flight),
        )
