from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import IntEnum, StrEnum
from typing import Any

SLUG_PATTERN = re.compile(r"[^a-z0-9]+")


def utcnow() -> datetime:
    return datetime.now(UTC)


def slugify(value: str, *, max_length: int = 48) -> str:
    slug = SLUG_PATTERN.sub("-", value.strip().lower()).strip("-")
    return slug[:max_length].rstrip("-") or "item"


def _dt_to_str(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def _dt_from_str(value: Any) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class ProjectStatus(StrEnum):
    NEW = "new"
    ASSIGNED_TO_ANALYZER = "assigned_to_analyzer"
    ANALYZED = "analyzed"
    SPECIFICATION_MODIFIED = "specification_modified"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class FeatureStatus(StrEnum):
    NEW = "new"
    ASSIGNED_TO_ANALYZER = "assigned_to_analyzer"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class TaskStatus(StrEnum):
    UNASSIGNED = "unassigned"
    NOT_INITIALIZED = "not_initialized"
    WORKING = "working"
    DONE = "done"
    FAILED = "failed"
    BLOCKED = "blocked"


class KoboldStatus(StrEnum):
    UNASSIGNED = "unassigned"
    ASSIGNED = "assigned"
    WORKING = "working"
    DONE = "done"
    FAILED = "failed"


class ExecutionState(StrEnum):
    RUNNING = "running"
    PAUSED = "paused"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"


class TaskPriority(IntEnum):
    LOW = 0
    NORMAL = 1
    HIGH = 2
    CRITICAL = 3

    @classmethod
    def parse(cls, value: Any) -> TaskPriority:
        if isinstance(value, TaskPriority):
            return value
        if isinstance(value, int):
            return cls(max(cls.LOW, min(cls.CRITICAL, value)))
        text = str(value or "").strip().lower()
        if text in {"", "medium", "normal", "default"}:
            return cls.NORMAL
        if text.isdigit():
            return cls.parse(int(text))
        try:
            return cls[text.upper()]
        except KeyError as exc:
            raise ValueError(f"Unknown task priority: {value!r}") from exc


TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.UNASSIGNED: frozenset({TaskStatus.NOT_INITIALIZED, TaskStatus.BLOCKED}),
    TaskStatus.NOT_INITIALIZED: frozenset({TaskStatus.WORKING, TaskStatus.UNASSIGNED}),
    TaskStatus.WORKING: frozenset({TaskStatus.DONE, TaskStatus.FAILED}),
    TaskStatus.FAILED: frozenset({TaskStatus.UNASSIGNED, TaskStatus.BLOCKED}),
    TaskStatus.DONE: frozenset(),
    TaskStatus.BLOCKED: frozenset(),
}

TERMINAL_TASK_STATUSES = frozenset({TaskStatus.DONE, TaskStatus.BLOCKED})
ACTIVE_TASK_STATUSES = frozenset({TaskStatus.NOT_INITIALIZED, TaskStatus.WORKING})

PROJECT_TRANSITIONS: dict[ProjectStatus, frozenset[ProjectStatus]] = {
    ProjectStatus.NEW: frozenset({ProjectStatus.ASSIGNED_TO_ANALYZER, ProjectStatus.FAILED}),
    ProjectStatus.ASSIGNED_TO_ANALYZER: frozenset(
        {ProjectStatus.ANALYZED, ProjectStatus.FAILED}
    ),
    ProjectStatus.ANALYZED: frozenset(
        {
            ProjectStatus.IN_PROGRESS,
            ProjectStatus.SPECIFICATION_MODIFIED,
            ProjectStatus.FAILED,
        }
    ),
    ProjectStatus.SPECIFICATION_MODIFIED: frozenset(
        {ProjectStatus.ANALYZED, ProjectStatus.FAILED}
    ),
    ProjectStatus.IN_PROGRESS: frozenset(
        {
            ProjectStatus.COMPLETED,
            ProjectStatus.SPECIFICATION_MODIFIED,
            ProjectStatus.FAILED,
        }
    ),
    ProjectStatus.COMPLETED: frozenset(),
    ProjectStatus.FAILED: frozenset(),
}


def can_transition_task(current: TaskStatus, new: TaskStatus) -> bool:
    return new in TASK_TRANSITIONS[current]


def can_transition_project(current: ProjectStatus, new: ProjectStatus) -> bool:
    return new in PROJECT_TRANSITIONS[current]


def derive_feature_status(
    current: FeatureStatus, statuses: Iterable[TaskStatus | None]
) -> FeatureStatus:
    """Compute a feature's status from the statuses of the tasks it owns.

    ``None`` stands for a task id the tracker no longer knows; it counts as
    not done. A feature without tasks keeps its current status.
    """
    owned = list(statuses)
    if not owned:
        return current
    if all(status == TaskStatus.DONE for status in owned):
        return FeatureStatus.COMPLETED
    if any(
        status in ACTIVE_TASK_STATUSES or status == TaskStatus.DONE for status in owned
    ):
        return FeatureStatus.IN_PROGRESS
    if current == FeatureStatus.COMPLETED:
        return FeatureStatus.IN_PROGRESS
    return current


@dataclass(slots=True)
class StepMetrics:
    validation_attempts: int = 0


@dataclass(slots=True)
class ImplementationStep:
    index: int = 0
    description: str = ""
    files_to_create: list[str] = field(default_factory=list)
    files_to_modify: list[str] = field(default_factory=list)
    expected_content: list[str] = field(default_factory=list)
    started_at: datetime | None = None
    metrics: StepMetrics = field(default_factory=StepMetrics)

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "description": self.description,
            "files_to_create": list(self.files_to_create),
            "files_to_modify": list(self.files_to_modify),
            "expected_content": list(self.expected_content),
            "started_at": _dt_to_str(self.started_at),
            "validation_attempts": self.metrics.validation_attempts,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ImplementationStep:
        return cls(
            index=int(data.get("index", 0)),
            description=str(data.get("description", "")),
            files_to_create=[str(item) for item in data.get("files_to_create", [])],
            files_to_modify=[str(item) for item in data.get("files_to_modify", [])],
            expected_content=[str(item) for item in data.get("expected_content", [])],
            started_at=_dt_from_str(data.get("started_at")),
            metrics=StepMetrics(validation_attempts=int(data.get("validation_attempts", 0))),
        )


@dataclass(slots=True)
class WyvernTask:
    id: str
    name: str
    description: str = ""
    agent_type: str = "coding"
    dependencies: list[str] = field(default_factory=list)
    dependency_level: int = 0
    priority: TaskPriority = TaskPriority.NORMAL
    feature_id: str | None = None
    steps: list[ImplementationStep] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "agent_type": self.agent_type,
            "dependencies": list(self.dependencies),
            "dependency_level": self.dependency_level,
            "priority": self.priority.name.lower(),
            "feature_id": self.feature_id,
            "steps": [step.to_dict() for step in self.steps],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WyvernTask:
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or data["id"]),
            description=str(data.get("description", "")),
            agent_type=str(data.get("agent_type") or "coding"),
            dependencies=[str(item) for item in data.get("dependencies", [])],
            dependency_level=int(data.get("dependency_level", 0)),
            priority=TaskPriority.parse(data.get("priority")),
            feature_id=data.get("feature_id"),
            steps=[ImplementationStep.from_dict(item) for item in data.get("steps", [])],
        )


@dataclass(slots=True)
class WorkArea:
    name: str
    tasks: list[WyvernTask] = field(default_factory=list)
    content_hash: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "content_hash": self.content_hash,
            "tasks": [task.to_dict() for task in self.tasks],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkArea:
        return cls(
            name=str(data["name"]),
            content_hash=str(data.get("content_hash", "")),
            tasks=[WyvernTask.from_dict(item) for item in data.get("tasks", [])],
        )


@dataclass(slots=True)
class WyvernAnalysis:
    project_name: str
    areas: list[WorkArea] = field(default_factory=list)
    analyzed_at: datetime = field(default_factory=utcnow)
    specification_version: int = 1
    processed_features: list[str] = field(default_factory=list)
    reprocessed_areas: list[str] = field(default_factory=list)

    @property
    def total_tasks(self) -> int:
        return sum(len(area.tasks) for area in self.areas)

    def area(self, name: str) -> WorkArea | None:
        for area in self.areas:
            if area.name == name:
                return area
        return None

    def task(self, task_id: str) -> WyvernTask | None:
        for area in self.areas:
            for task in area.tasks:
                if task.id == task_id:
                    return task
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_name": self.project_name,
            "analyzed_at": _dt_to_str(self.analyzed_at),
            "specification_version": self.specification_version,
            "total_tasks": self.total_tasks,
            "processed_features": list(self.processed_features),
            "reprocessed_areas": list(self.reprocessed_areas),
            "areas": [area.to_dict() for area in self.areas],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WyvernAnalysis:
        return cls(
            project_name=str(data.get("project_name", "")),
            areas=[WorkArea.from_dict(item) for item in data.get("areas", [])],
            analyzed_at=_dt_from_str(data.get("analyzed_at")) or utcnow(),
            specification_version=int(data.get("specification_version", 1)),
            processed_features=[str(item) for item in data.get("processed_features", [])],
            reprocessed_areas=[str(item) for item in data.get("reprocessed_areas", [])],
        )


@dataclass(slots=True)
class TaskRecord:
    id: str
    description: str
    area: str = "general"
    agent_type: str = "coding"
    dependencies: list[str] = field(default_factory=list)
    dependency_level: int = 0
    priority: TaskPriority = TaskPriority.NORMAL
    feature_id: str | None = None
    project_id: str | None = None
    status: TaskStatus = TaskStatus.UNASSIGNED
    retry_count: int = 0
    error_message: str | None = None
    assigned_kobold: str | None = None
    working_directory: str | None = None
    steps: list[ImplementationStep] = field(default_factory=list)
    next_retry_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "area": self.area,
            "agent_type": self.agent_type,
            "dependencies": list(self.dependencies),
            "dependency_level": self.dependency_level,
            "priority": self.priority.name.lower(),
            "feature_id": self.feature_id,
            "project_id": self.project_id,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "error_message": self.error_message,
            "assigned_kobold": self.assigned_kobold,
            "working_directory": self.working_directory,
            "steps": [step.to_dict() for step in self.steps],
            "next_retry_at": _dt_to_str(self.next_retry_at),
            "created_at": _dt_to_str(self.created_at),
            "updated_at": _dt_to_str(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskRecord:
        return cls(
            id=str(data["id"]),
            description=str(data.get("description", "")),
            area=str(data.get("area") or "general"),
            agent_type=str(data.get("agent_type") or "coding"),
            dependencies=[str(item) for item in data.get("dependencies", [])],
            dependency_level=int(data.get("dependency_level", 0)),
            priority=TaskPriority.parse(data.get("priority")),
            feature_id=data.get("feature_id"),
            project_id=data.get("project_id"),
            status=TaskStatus(data.get("status", TaskStatus.UNASSIGNED.value)),
            retry_count=int(data.get("retry_count", 0)),
            error_message=data.get("error_message"),
            assigned_kobold=data.get("assigned_kobold"),
            working_directory=data.get("working_directory"),
            steps=[ImplementationStep.from_dict(item) for item in data.get("steps", [])],
            next_retry_at=_dt_from_str(data.get("next_retry_at")),
            created_at=_dt_from_str(data.get("created_at")) or utcnow(),
            updated_at=_dt_from_str(data.get("updated_at")) or utcnow(),
        )


@dataclass(slots=True)
class Feature:
    id: str
    name: str
    description: str = ""
    priority: str = "normal"
    status: FeatureStatus = FeatureStatus.NEW
    task_ids: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "priority": self.priority,
            "status": self.status.value,
            "task_ids": list(self.task_ids),
            "created_at": _dt_to_str(self.created_at),
            "updated_at": _dt_to_str(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Feature:
        name = str(data.get("name") or data.get("id") or "feature")
        return cls(
            id=str(data.get("id") or slugify(name)),
            name=name,
            description=str(data.get("description", "")),
            priority=str(data.get("priority") or "normal"),
            status=FeatureStatus(data.get("status", FeatureStatus.NEW.value)),
            task_ids=[str(item) for item in data.get("task_ids", [])],
            created_at=_dt_from_str(data.get("created_at")) or utcnow(),
            updated_at=_dt_from_str(data.get("updated_at")) or utcnow(),
        )


@dataclass(slots=True)
class Specification:
    content: str
    version: int = 1
    features: list[Feature] = field(default_factory=list)
    updated_at: datetime = field(default_factory=utcnow)

    def update_content(self, content: str) -> bool:
        if content == self.content:
            return False
        self.content = content
        self.version += 1
        self.updated_at = utcnow()
        return True

    def feature(self, feature_id: str) -> Feature | None:
        for feature in self.features:
            if feature.id == feature_id:
                return feature
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "updated_at": _dt_to_str(self.updated_at),
            "features": [feature.to_dict() for feature in self.features],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], content: str = "") -> Specification:
        return cls(
            content=str(data.get("content", content)),
            version=int(data.get("version", 1)),
            features=[Feature.from_dict(item) for item in data.get("features", [])],
            updated_at=_dt_from_str(data.get("updated_at")) or utcnow(),
        )


@dataclass(slots=True)
class Project:
    id: str
    name: str
    specification: Specification
    status: ProjectStatus = ProjectStatus.NEW
    execution_state: ExecutionState = ExecutionState.RUNNING
    config_overrides: dict[str, Any] = field(default_factory=dict)
    error_message: str | None = None
    working_directory: str | None = None
    pending_areas: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    analyzed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "execution_state": self.execution_state.value,
            "config_overrides": dict(self.config_overrides),
            "error_message": self.error_message,
            "pending_areas": list(self.pending_areas),
            "working_directory": self.working_directory,
            "created_at": _dt_to_str(self.created_at),
            "updated_at": _dt_to_str(self.updated_at),
            "analyzed_at": _dt_to_str(self.analyzed_at),
            "specification": self.specification.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], content: str = "") -> Project:
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or data["id"]),
            specification=Specification.from_dict(data.get("specification", {}), content),
            status=ProjectStatus(data.get("status", ProjectStatus.NEW.value)),
            execution_state=ExecutionState(
                data.get("execution_state", ExecutionState.RUNNING.value)
            ),
            config_overrides=dict(data.get("config_overrides") or {}),
            error_message=data.get("error_message"),
            pending_areas=[str(item) for item in data.get("pending_areas", [])],
            working_directory=data.get("working_directory"),
            created_at=_dt_from_str(data.get("created_at")) or utcnow(),
            updated_at=_dt_from_str(data.get("updated_at")) or utcnow(),
            analyzed_at=_dt_from_str(data.get("analyzed_at")),
        )
