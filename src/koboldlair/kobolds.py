from __future__ import annotations

import copy
import logging
import threading
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from uuid import uuid4

from koboldlair.errors import CapacityExceededError, InvalidTransitionError, NotFoundError
from koboldlair.models import KoboldStatus, utcnow

logger = logging.getLogger(__name__)

ACTIVE_KOBOLD_STATUSES = frozenset({KoboldStatus.ASSIGNED, KoboldStatus.WORKING})

CeilingLookup = Callable[[str], int]


@dataclass(slots=True)
class Kobold:
    id: str
    agent_type: str
    project_id: str
    status: KoboldStatus = KoboldStatus.UNASSIGNED
    task_id: str | None = None
    error_message: str | None = None
    runs: int = 0
    created_at: datetime = field(default_factory=utcnow)
    assigned_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_KOBOLD_STATUSES

    def working_for(self, now: datetime | None = None) -> timedelta | None:
        if self.status != KoboldStatus.WORKING or self.started_at is None:
            return None
        return (now or utcnow()) - self.started_at


@dataclass(slots=True)
class KoboldStatistics:
    total: int = 0
    unassigned: int = 0
    assigned: int = 0
    working: int = 0
    done: int = 0
    failed: int = 0
    by_agent_type: dict[str, int] = field(default_factory=dict)
    by_project: dict[str, int] = field(default_factory=dict)

    @property
    def active(self) -> int:
        return self.assigned + self.working

    def __str__(self) -> str:
        return (
            f"Kobolds: {self.total} total, {self.working} working, {self.assigned} assigned, "
            f"{self.unassigned} idle, {self.done} done, {self.failed} failed"
        )


class KoboldFactory:
    """Pool of worker handles, capped per project.

    The capacity check and the handle assignment happen under one lock so two
    callers can never both slip under the ceiling.
    """

    def __init__(self, ceiling: CeilingLookup | int = 1) -> None:
        if isinstance(ceiling, int):
            limit = ceiling
            self._ceiling: CeilingLookup = lambda _project_id: limit
        else:
            self._ceiling = ceiling
        self._kobolds: dict[str, Kobold] = {}
        self._lock = threading.Lock()

    def ceiling(self, project_id: str) -> int:
        return max(0, int(self._ceiling(project_id)))

    def _active_count(self, project_id: str) -> int:
        return sum(
            1
            for kobold in self._kobolds.values()
            if kobold.project_id == project_id and kobold.is_active
        )

    def _require(self, kobold_id: str) -> Kobold:
        kobold = self._kobolds.get(kobold_id)
        if kobold is None:
            raise NotFoundError(f"Unknown kobold: {kobold_id}")
        return kobold

    def active_count(self, project_id: str) -> int:
        with self._lock:
            return self._active_count(project_id)

    def can_create(self, project_id: str) -> bool:
        limit = self.ceiling(project_id)
        with self._lock:
            return self._active_count(project_id) < limit

    def create(self, agent_type: str, project_id: str, task_id: str | None = None) -> Kobold:
        limit = self.ceiling(project_id)
        with self._lock:
            active = self._active_count(project_id)
            if active >= limit:
                raise CapacityExceededError(project_id, active, limit)
            kobold = next(
                (
                    candidate
                    for candidate in self._kobolds.values()
                    if candidate.status == KoboldStatus.UNASSIGNED
                    and candidate.project_id == project_id
                    and candidate.agent_type == agent_type
                ),
                None,
            )
            if kobold is None:
                kobold = Kobold(
                    id=f"kobold-{uuid4().hex[:10]}",
                    agent_type=agent_type,
                    project_id=project_id,
                )
                self._kobolds[kobold.id] = kobold
            kobold.status = KoboldStatus.ASSIGNED
            kobold.task_id = task_id
            kobold.error_message = None
            kobold.assigned_at = utcnow()
            kobold.started_at = None
            kobold.completed_at = None
            snapshot = copy.copy(kobold)
        logger.debug(
            "Assigned %s (%s) to task %s in project %s", kobold.id, agent_type, task_id, project_id
        )
        return snapshot

    def try_create(
        self, agent_type: str, project_id: str, task_id: str | None = None
    ) -> Kobold | None:
        try:
            return self.create(agent_type, project_id, task_id)
        except CapacityExceededError:
            return None

    def start(self, kobold_id: str) -> Kobold:
        with self._lock:
            kobold = self._require(kobold_id)
            if kobold.status != KoboldStatus.ASSIGNED:
                raise InvalidTransitionError(
                    f"Kobold {kobold_id} cannot start from {kobold.status}."
                )
            kobold.status = KoboldStatus.WORKING
            kobold.started_at = utcnow()
            kobold.runs += 1
            return copy.copy(kobold)

    def complete(self, kobold_id: str, *, success: bool, error: str | None = None) -> Kobold:
        with self._lock:
            kobold = self._require(kobold_id)
            if not kobold.is_active:
                raise InvalidTransitionError(
                    f"Kobold {kobold_id} cannot complete from {kobold.status}."
                )
            kobold.status = KoboldStatus.DONE if success else KoboldStatus.FAILED
            kobold.error_message = None if success else error
            kobold.completed_at = utcnow()
            return copy.copy(kobold)

    def release(self, kobold_id: str, *, discard: bool = False) -> None:
        """Return a handle to the idle pool, or drop it entirely."""
        with self._lock:
            kobold = self._kobolds.get(kobold_id)
            if kobold is None:
                return
            if discard:
                del self._kobolds[kobold_id]
                return
            kobold.status = KoboldStatus.UNASSIGNED
            kobold.task_id = None
            kobold.assigned_at = None
            kobold.started_at = None

    def get(self, kobold_id: str) -> Kobold:
        with self._lock:
            return copy.copy(self._require(kobold_id))

    def get_by_task(self, task_id: str) -> Kobold | None:
        with self._lock:
            for kobold in self._kobolds.values():
                if kobold.task_id == task_id and kobold.is_active:
                    return copy.copy(kobold)
        return None

    def kobolds(
        self, project_id: str | None = None, status: KoboldStatus | None = None
    ) -> list[Kobold]:
        with self._lock:
            return [
                copy.copy(kobold)
                for kobold in self._kobolds.values()
                if (project_id is None or kobold.project_id == project_id)
                and (status is None or kobold.status == status)
            ]

    def stuck(self, timeout: timedelta, now: datetime | None = None) -> list[Kobold]:
        moment = now or utcnow()
        with self._lock:
            return [
                copy.copy(kobold)
                for kobold in self._kobolds.values()
                if (elapsed := kobold.working_for(moment)) is not None and elapsed > timeout
            ]

    def prune_idle(self, project_id: str | None = None) -> int:
        with self._lock:
            idle = [
                kobold.id
                for kobold in self._kobolds.values()
                if kobold.status == KoboldStatus.UNASSIGNED
                and (project_id is None or kobold.project_id == project_id)
            ]
            for kobold_id in idle:
                del self._kobolds[kobold_id]
        return len(idle)

    def statistics(self, project_id: str | None = None) -> KoboldStatistics:
        kobolds = self.kobolds(project_id)
        counts = Counter(kobold.status for kobold in kobolds)
        return KoboldStatistics(
            total=len(kobolds),
            unassigned=counts.get(KoboldStatus.UNASSIGNED, 0),
            assigned=counts.get(KoboldStatus.ASSIGNED, 0),
            working=counts.get(KoboldStatus.WORKING, 0),
            done=counts.get(KoboldStatus.DONE, 0),
            failed=counts.get(KoboldStatus.FAILED, 0),
            by_agent_type=dict(Counter(kobold.agent_type for kobold in kobolds)),
            by_project=dict(Counter(kobold.project_id for kobold in kobolds)),
        )
