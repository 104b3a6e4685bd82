from __future__ import annotations

import copy
import logging
import threading
from collections import Counter
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime, timedelta
from typing import Any

from koboldlair.errors import InvalidTransitionError, LairError, NotFoundError
from koboldlair.models import (
    ACTIVE_TASK_STATUSES,
    TERMINAL_TASK_STATUSES,
    ImplementationStep,
    TaskRecord,
    TaskStatus,
    can_transition_task,
    utcnow,
)

logger = logging.getLogger(__name__)

StatusListener = Callable[[str, TaskStatus, TaskStatus], None]


class TaskTracker:
    """Thread-safe store of one project's task records.

    Every read returns deep copies so callers never observe a record while it
    is being mutated under the lock.
    """

    def __init__(
        self,
        *,
        max_retries: int = 3,
        strict_level_barrier: bool = False,
        retry_backoff: Sequence[float] = (),
    ) -> None:
        self.max_retries = max(0, int(max_retries))
        self.strict_level_barrier = strict_level_barrier
        self.retry_backoff = [max(0.0, float(delay)) for delay in retry_backoff]
        self._tasks: dict[str, TaskRecord] = {}
        self._lock = threading.RLock()
        self._listeners: list[StatusListener] = []

    def __len__(self) -> int:
        with self._lock:
            return len(self._tasks)

    def __contains__(self, task_id: object) -> bool:
        with self._lock:
            return task_id in self._tasks

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self, changes: list[tuple[str, TaskStatus, TaskStatus]]) -> None:
        if not changes:
            return
        with self._lock:
            listeners = list(self._listeners)
        for task_id, old, new in changes:
            for listener in listeners:
                listener(task_id, old, new)

    def _require(self, task_id: str) -> TaskRecord:
        record = self._tasks.get(task_id)
        if record is None:
            raise NotFoundError(f"Unknown task: {task_id}")
        return record

    def _dependencies_done(self, record: TaskRecord) -> bool:
        for dep_id in record.dependencies:
            dependency = self._tasks.get(dep_id)
            if dependency is None or dependency.status != TaskStatus.DONE:
                return False
        return True

    def _lower_levels_done(self, record: TaskRecord) -> bool:
        return all(
            other.status == TaskStatus.DONE
            for other in self._tasks.values()
            if other.area == record.area and other.dependency_level < record.dependency_level
        )

    def _set_status(
        self, record: TaskRecord, status: TaskStatus, error: str | None = None
    ) -> tuple[str, TaskStatus, TaskStatus]:
        old = record.status
        record.status = status
        record.updated_at = utcnow()
        if error is not None:
            record.error_message = error
        if status in {TaskStatus.UNASSIGNED, *TERMINAL_TASK_STATUSES}:
            record.assigned_kobold = None
        record.next_retry_at = None
        return record.id, old, status

    def _retry_delay(self, retry_count: int) -> float:
        if not self.retry_backoff or retry_count <= 0:
            return 0.0
        return self.retry_backoff[min(retry_count, len(self.retry_backoff)) - 1]

    def add_task(self, record: TaskRecord) -> str:
        with self._lock:
            if record.id in self._tasks:
                raise LairError(f"Task already tracked: {record.id}")
            self._tasks[record.id] = copy.deepcopy(record)
        return record.id

    def get(self, task_id: str) -> TaskRecord:
        with self._lock:
            return copy.deepcopy(self._require(task_id))

    def update_status(
        self,
        task_id: str,
        new_status: TaskStatus,
        error: str | None = None,
        *,
        assigned_kobold: str | None = None,
    ) -> TaskRecord:
        with self._lock:
            record = self._require(task_id)
            if not can_transition_task(record.status, new_status):
                raise InvalidTransitionError(
                    f"Task {task_id} cannot move from {record.status} to {new_status}."
                )
            if new_status in ACTIVE_TASK_STATUSES and not self._dependencies_done(record):
                raise InvalidTransitionError(
                    f"Task {task_id} cannot start before its dependencies are done."
                )
            change = self._set_status(record, new_status, error)
            if assigned_kobold is not None:
                record.assigned_kobold = assigned_kobold
            if new_status == TaskStatus.DONE:
                record.error_message = None
            snapshot = copy.deepcopy(record)
        self._notify([change])
        return snapshot

    def set_step_started(self, task_id: str, started_at: datetime | None = None) -> None:
        with self._lock:
            record = self._require(task_id)
            moment = started_at or utcnow()
            for step in record.steps:
                step.started_at = moment

    def record_validation(self, task_id: str, steps: Sequence[ImplementationStep]) -> None:
        """Copy step metrics gathered on a dispatched copy back onto the stored record."""
        with self._lock:
            record = self._require(task_id)
            for stored, validated in zip(record.steps, steps):
                stored.metrics = copy.copy(validated.metrics)
            record.updated_at = utcnow()

    def _dependents(self, task_id: str) -> list[str]:
        found: list[str] = []
        frontier = [task_id]
        seen = {task_id}
        while frontier:
            current = frontier.pop()
            for other in self._tasks.values():
                if other.id in seen or current not in other.dependencies:
                    continue
                seen.add(other.id)
                found.append(other.id)
                frontier.append(other.id)
        return found

    def _block_locked(self, task_id: str, reason: str) -> list[tuple[str, TaskStatus, TaskStatus]]:
        changes: list[tuple[str, TaskStatus, TaskStatus]] = []
        record = self._require(task_id)
        if record.status != TaskStatus.BLOCKED:
            if not can_transition_task(record.status, TaskStatus.BLOCKED):
                raise InvalidTransitionError(
                    f"Task {task_id} cannot move from {record.status} to blocked."
                )
            changes.append(self._set_status(record, TaskStatus.BLOCKED, reason))
        for dependent_id in self._dependents(task_id):
            dependent = self._tasks[dependent_id]
            if dependent.status in TERMINAL_TASK_STATUSES:
                continue
            if dependent.status != TaskStatus.UNASSIGNED:
                # Only reachable through corrupted state; the dependency guard
                # keeps dependents unassigned until this task is done.
                logger.warning(
                    "Dependent %s of blocked task %s is %s", dependent_id, task_id, dependent.status
                )
                continue
            changes.append(
                self._set_status(
                    dependent, TaskStatus.BLOCKED, f"Blocked by failed dependency {task_id}"
                )
            )
        return changes

    def block(self, task_id: str, reason: str) -> list[str]:
        """Block a task and every transitive dependent that is not done yet."""
        with self._lock:
            changes = self._block_locked(task_id, reason)
        if changes:
            logger.warning("Blocked %d task(s) after %s: %s", len(changes), task_id, reason)
        self._notify(changes)
        return [task for task, _, _ in changes]

    def readmit(self, task_id: str, *, consume_retry: bool = True) -> bool:
        """Return a failed task to the queue, or block it once retries are spent."""
        with self._lock:
            record = self._require(task_id)
            if record.status != TaskStatus.FAILED:
                raise InvalidTransitionError(
                    f"Task {task_id} must be failed to be readmitted (is {record.status})."
                )
            if consume_retry and record.retry_count >= self.max_retries:
                reason = record.error_message or "Retry budget exhausted"
                changes = self._block_locked(
                    task_id, f"Retry budget exhausted after {record.retry_count} retries: {reason}"
                )
                readmitted = False
            else:
                if consume_retry:
                    record.retry_count += 1
                changes = [self._set_status(record, TaskStatus.UNASSIGNED)]
                delay = self._retry_delay(record.retry_count) if consume_retry else 0.0
                if delay > 0:
                    record.next_retry_at = utcnow() + timedelta(seconds=delay)
                readmitted = True
            retry_count = record.retry_count
        if readmitted:
            logger.info("Readmitted task %s (retry %d)", task_id, retry_count)
        else:
            logger.warning("Task %s exhausted its retry budget and is blocked", task_id)
        self._notify(changes)
        return readmitted

    def get_admissible(
        self, area: str | None = None, *, now: datetime | None = None
    ) -> list[TaskRecord]:
        moment = now or utcnow()
        with self._lock:
            candidates = [
                record
                for record in self._tasks.values()
                if (area is None or record.area == area)
                and record.status == TaskStatus.UNASSIGNED
                and (record.next_retry_at is None or record.next_retry_at <= moment)
                and self._dependencies_done(record)
                and (not self.strict_level_barrier or self._lower_levels_done(record))
            ]
            # sorted() is stable, so equal keys keep insertion order.
            ordered = sorted(
                candidates,
                key=lambda record: (
                    record.dependency_level,
                    -int(record.priority),
                    record.created_at,
                ),
            )
            return copy.deepcopy(ordered)

    def pending_retry_at(self, area: str | None = None) -> datetime | None:
        """Earliest moment a backed-off task becomes admissible again."""
        with self._lock:
            moments = [
                record.next_retry_at
                for record in self._tasks.values()
                if (area is None or record.area == area)
                and record.status == TaskStatus.UNASSIGNED
                and record.next_retry_at is not None
            ]
        return min(moments) if moments else None

    def snapshot(self, area: str | None = None) -> list[TaskRecord]:
        with self._lock:
            return copy.deepcopy(
                [record for record in self._tasks.values() if area is None or record.area == area]
            )

    def statuses(self) -> dict[str, TaskStatus]:
        with self._lock:
            return {task_id: record.status for task_id, record in self._tasks.items()}

    def status_counts(self, area: str | None = None) -> dict[TaskStatus, int]:
        with self._lock:
            counts = Counter(
                record.status
                for record in self._tasks.values()
                if area is None or record.area == area
            )
        return {status: counts.get(status, 0) for status in TaskStatus}

    def has_pending(self, area: str | None = None) -> bool:
        with self._lock:
            return any(
                record.status not in TERMINAL_TASK_STATUSES
                for record in self._tasks.values()
                if area is None or record.area == area
            )

    def areas(self) -> list[str]:
        with self._lock:
            seen: dict[str, None] = {}
            for record in self._tasks.values():
                seen.setdefault(record.area, None)
            return list(seen)

    def merge_area(
        self, area: str, records: Iterable[TaskRecord]
    ) -> tuple[list[str], list[str], list[str]]:
        """Replace an area's definitions while keeping the state of surviving ids."""
        incoming = list(records)
        added: list[str] = []
        kept: list[str] = []
        with self._lock:
            incoming_ids = {record.id for record in incoming}
            removed = [
                record.id
                for record in self._tasks.values()
                if record.area == area and record.id not in incoming_ids
            ]
            for task_id in removed:
                if self._tasks[task_id].status in ACTIVE_TASK_STATUSES:
                    raise InvalidTransitionError(
                        f"Task {task_id} is running and cannot be removed from area {area}."
                    )
            for task_id in removed:
                del self._tasks[task_id]
            for record in incoming:
                existing = self._tasks.get(record.id)
                if existing is None:
                    self._tasks[record.id] = copy.deepcopy(record)
                    added.append(record.id)
                    continue
                existing.description = record.description
                existing.area = record.area
                existing.agent_type = record.agent_type
                existing.dependencies = list(record.dependencies)
                existing.dependency_level = record.dependency_level
                existing.priority = record.priority
                existing.feature_id = record.feature_id
                existing.steps = copy.deepcopy(record.steps)
                existing.updated_at = utcnow()
                kept.append(record.id)
        logger.info(
            "Merged area %s: %d added, %d kept, %d removed", area, len(added), len(kept), len(removed)
        )
        return added, kept, removed

    def remove_area(self, area: str) -> list[str]:
        removed: list[str] = []
        with self._lock:
            for task_id in [r.id for r in self._tasks.values() if r.area == area]:
                if self._tasks[task_id].status in ACTIVE_TASK_STATUSES:
                    raise InvalidTransitionError(
                        f"Task {task_id} is running and cannot be removed from area {area}."
                    )
                removed.append(task_id)
            for task_id in removed:
                del self._tasks[task_id]
        return removed

    def recover_orphaned(self) -> int:
        """Reset tasks left active by a process that no longer exists."""
        changes: list[tuple[str, TaskStatus, TaskStatus]] = []
        with self._lock:
            for record in self._tasks.values():
                if record.status in ACTIVE_TASK_STATUSES:
                    changes.append(self._set_status(record, TaskStatus.UNASSIGNED))
        if changes:
            logger.info("Recovered %d orphaned task(s)", len(changes))
        self._notify(changes)
        return len(changes)

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            return {
                "max_retries": self.max_retries,
                "strict_level_barrier": self.strict_level_barrier,
                "retry_backoff": list(self.retry_backoff),
                "tasks": [record.to_dict() for record in self._tasks.values()],
            }

    @classmethod
    def from_dict(
        cls,
        data: dict[str, Any],
        *,
        max_retries: int | None = None,
        retry_backoff: Sequence[float] | None = None,
    ) -> TaskTracker:
        tracker = cls(
            max_retries=int(data.get("max_retries", 3)) if max_retries is None else max_retries,
            strict_level_barrier=bool(data.get("strict_level_barrier", False)),
            retry_backoff=(
                data.get("retry_backoff", []) if retry_backoff is None else retry_backoff
            ),
        )
        for item in data.get("tasks", []):
            tracker.add_task(TaskRecord.from_dict(item))
        return tracker

    def generate_markdown(self, area: str, title: str | None = None) -> str:
        records = self.snapshot(area)
        lines = [f"# {title or area.title() + ' Tasks'}", ""]
        lines.append("| Task | Assigned Agent | Status | Level | Retries |")
        lines.append("|------|----------------|--------|-------|---------|")
        for record in records:
            description = record.description.replace("|", "\\|").replace("\n", " ")
            if len(description) > 80:
                description = description[:77] + "..."
            lines.append(
                f"| {record.id}: {description} | {record.agent_type} | {record.status.value} "
                f"| {record.dependency_level} | {record.retry_count} |"
            )
        counts = Counter(record.status for record in records)
        lines.extend(["", "## Summary", ""])
        lines.append(f"- Total: {len(records)}")
        for status in TaskStatus:
            if counts.get(status):
                lines.append(f"- {status.value}: {counts[status]}")
        errors = [record for record in records if record.error_message]
        if errors:
            lines.extend(["", "## Errors", ""])
            for record in errors:
                lines.append(f"- {record.id}: {record.error_message}")
        return "\n".join(lines) + "\n"
