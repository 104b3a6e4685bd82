from __future__ import annotations

import asyncio
import logging
from collections import Counter
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from koboldlair.analyzer import Analyzer, MarkdownDecomposer
from koboldlair.config import LairConfig, ProjectConfig
from koboldlair.errors import (
    AnalysisError,
    InvalidDependencyGraphError,
    InvalidTransitionError,
    LairError,
    NotFoundError,
)
from koboldlair.kobolds import KoboldFactory
from koboldlair.models import (
    ExecutionState,
    Feature,
    FeatureStatus,
    Project,
    ProjectStatus,
    Specification,
    TaskStatus,
    WyvernAnalysis,
    can_transition_project,
    slugify,
    utcnow,
)
from koboldlair.registry import ProjectRegistry
from koboldlair.supervisor import DEFAULT_WORKER_KEY, Drake, DrakeRunSummary, DrakeStatistics
from koboldlair.tracker import TaskTracker
from koboldlair.validation import StepValidationService
from koboldlair.workers.base import Worker

logger = logging.getLogger(__name__)

FINISHED_PROJECT_STATUSES = frozenset({ProjectStatus.COMPLETED, ProjectStatus.FAILED})

# (provider, model, timeout_seconds) -> worker
WorkerBuilder = Callable[[str, str | None, float], Worker]


@dataclass(slots=True)
class ProjectRunSummary:
    project_id: str
    status: ProjectStatus
    started_at: datetime
    ended_at: datetime
    total_tasks: int = 0
    done_tasks: int = 0
    blocked_tasks: int = 0
    stopped: bool = False
    drakes: list[DrakeRunSummary] = field(default_factory=list)


@dataclass(slots=True)
class _ProjectRuntime:
    project: Project
    tracker: TaskTracker | None = None
    analysis: WyvernAnalysis | None = None
    drakes: dict[str, Drake] = field(default_factory=dict)
    stop_requested: bool = False
    running: bool = False
    last_statuses: dict[str, TaskStatus] = field(default_factory=dict)


class ProjectService:
    """Owns project lifecycles and wires the analyzer, supervisors and registry together."""

    def __init__(
        self,
        config: LairConfig | None = None,
        *,
        analyzer: Analyzer | None = None,
        workers: Mapping[str, Worker] | None = None,
        worker_builder: WorkerBuilder | None = None,
        registry: ProjectRegistry | None = None,
        validation: StepValidationService | None = None,
        factory: KoboldFactory | None = None,
        workspace_root: Path | None = None,
    ) -> None:
        self.config = config or LairConfig.default()
        self.analyzer = analyzer or Analyzer(MarkdownDecomposer())
        self.workers = dict(workers or {})
        self.worker_builder = worker_builder
        self._built_workers: dict[tuple[str, str | None, float], Worker] = {}
        self.registry = registry
        self.validation = validation or StepValidationService()
        self.factory = factory or KoboldFactory(
            lambda project_id: self.project_config(project_id).max_parallel_kobolds
        )
        self.workspace_root = (workspace_root or Path.cwd()).resolve()
        self._projects: dict[str, _ProjectRuntime] = {}
        self._analysis_slots: tuple[asyncio.AbstractEventLoop, asyncio.Semaphore] | None = None

    def _runtime(self, project_id: str) -> _ProjectRuntime:
        runtime = self._projects.get(project_id)
        if runtime is None:
            raise NotFoundError(f"Unknown project: {project_id}")
        return runtime

    def _analysis_semaphore(self) -> asyncio.Semaphore:
        loop = asyncio.get_running_loop()
        if self._analysis_slots is None or self._analysis_slots[0] is not loop:
            limit = max(1, self.config.limits.max_parallel_wyverns)
            self._analysis_slots = (loop, asyncio.Semaphore(limit))
        return self._analysis_slots[1]

    def _save(self, project: Project) -> None:
        project.updated_at = utcnow()
        if self.registry is not None:
            self.registry.save_project(project)

    def _save_tasks(self, runtime: _ProjectRuntime) -> None:
        if self.registry is not None and runtime.tracker is not None:
            self.registry.save_tasks(runtime.project.id, runtime.tracker)

    def _transition(
        self, project: Project, status: ProjectStatus, *, error: str | None = None
    ) -> None:
        if project.status == status:
            return
        if not can_transition_project(project.status, status):
            raise InvalidTransitionError(
                f"Project {project.id} cannot move from {project.status} to {status}."
            )
        logger.info("Project %s: %s -> %s", project.id, project.status, status)
        project.status = status
        project.error_message = error
        self._save(project)

    def project_config(self, project_id: str) -> ProjectConfig:
        runtime = self._projects.get(project_id)
        overrides = runtime.project.config_overrides if runtime is not None else None
        return self.config.resolve(project_id, overrides)

    def working_directory(self, project_id: str) -> Path:
        project = self._runtime(project_id).project
        if project.working_directory:
            return Path(project.working_directory)
        if self.registry is not None:
            return self.registry.project_dir(project_id) / "workspace"
        return self.workspace_root / project_id

    def register_project(
        self,
        name: str,
        content: str,
        *,
        features: Iterable[Feature | Mapping[str, Any]] | None = None,
        overrides: Mapping[str, Any] | None = None,
        working_directory: Path | None = None,
    ) -> Project:
        project_id = slugify(name, max_length=64)
        if project_id in self._projects or (
            self.registry is not None and self.registry.exists(project_id)
        ):
            raise LairError(f"Project already registered: {project_id}")
        try:
            self.config.resolve(project_id, overrides)
        except (TypeError, ValueError) as exc:
            raise LairError(f"Invalid overrides for {project_id}: {exc}") from exc

        parsed_features = [
            item if isinstance(item, Feature) else Feature.from_dict(dict(item))
            for item in features or []
        ]
        project = Project(
            id=project_id,
            name=name,
            specification=Specification(content=content, features=parsed_features),
            config_overrides=dict(overrides or {}),
            working_directory=str(working_directory) if working_directory else None,
        )
        self._projects[project_id] = _ProjectRuntime(project=project)
        self._save(project)
        logger.info("Registered project %s", project_id)
        return project

    def get_project(self, project_id: str) -> Project:
        return self._runtime(project_id).project

    def list_projects(self, status: ProjectStatus | None = None) -> list[Project]:
        return [
            runtime.project
            for runtime in self._projects.values()
            if status is None or runtime.project.status == status
        ]

    def remove_project(self, project_id: str) -> None:
        runtime = self._runtime(project_id)
        if runtime.running:
            raise LairError(f"Project {project_id} is running; stop it first.")
        del self._projects[project_id]
        if self.registry is not None and self.registry.exists(project_id):
            self.registry.remove_project(project_id)
        self.factory.prune_idle(project_id)

    def tracker(self, project_id: str) -> TaskTracker:
        runtime = self._runtime(project_id)
        if runtime.tracker is None:
            raise NotFoundError(f"Project {project_id} has not been analyzed yet.")
        return runtime.tracker

    def analysis(self, project_id: str) -> WyvernAnalysis | None:
        return self._runtime(project_id).analysis

    def assign_analyzer(self, project_id: str) -> Project:
        project = self.get_project(project_id)
        self._transition(project, ProjectStatus.ASSIGNED_TO_ANALYZER)
        return project

    def _fail(self, project: Project, reason: str) -> None:
        logger.warning("Project %s failed: %s", project.id, reason)
        self._transition(project, ProjectStatus.FAILED, error=reason)

    async def analyze(self, project_id: str) -> WyvernAnalysis:
        runtime = self._runtime(project_id)
        project = runtime.project
        if project.status not in {
            ProjectStatus.ASSIGNED_TO_ANALYZER,
            ProjectStatus.SPECIFICATION_MODIFIED,
        }:
            raise InvalidTransitionError(
                f"Project {project_id} cannot be analyzed while {project.status}."
            )
        config = self.project_config(project_id)
        if not config.is_enabled("wyvern"):
            raise LairError(f"Analysis is disabled for project {project_id}.")

        specification = project.specification
        async with self._analysis_semaphore():
            try:
                if runtime.analysis is not None and runtime.tracker is not None:
                    analysis = await self.analyzer.reanalyze(
                        runtime.analysis, specification, project.pending_areas or None
                    )
                else:
                    analysis = await self.analyzer.analyze(project.name, specification)
            except (InvalidDependencyGraphError, AnalysisError) as exc:
                self._fail(project, str(exc))
                raise

        Analyzer.assign_features(specification.features)
        Analyzer.link_tasks_to_features(analysis, specification.features)
        records = Analyzer.build_task_records(
            analysis, project_id, self.working_directory(project_id)
        )
        if runtime.tracker is None:
            runtime.tracker = TaskTracker(
                max_retries=config.supervisor.max_task_retries,
                strict_level_barrier=config.supervisor.strict_level_barrier,
                retry_backoff=config.supervisor.retry_backoff_seconds,
            )
        tracker = runtime.tracker
        area_names = [area.name for area in analysis.areas]
        for area in area_names:
            tracker.merge_area(area, [record for record in records if record.area == area])
        for stale_area in [area for area in tracker.areas() if area not in area_names]:
            tracker.remove_area(stale_area)
        Analyzer.update_feature_status(specification.features, tracker.statuses())

        runtime.analysis = analysis
        project.pending_areas = []
        project.analyzed_at = analysis.analyzed_at
        self.working_directory(project_id).mkdir(parents=True, exist_ok=True)
        if self.registry is not None:
            self.registry.save_analysis(project_id, analysis, Analyzer.generate_report(analysis))
        self._save_tasks(runtime)
        self._transition(project, ProjectStatus.ANALYZED)
        return analysis

    def update_specification(self, project_id: str, content: str) -> Project:
        runtime = self._runtime(project_id)
        project = runtime.project
        if not project.specification.update_content(content):
            return project
        if runtime.analysis is not None:
            changed = self.analyzer.changed_areas(runtime.analysis, project.specification)
            project.pending_areas = sorted({*project.pending_areas, *changed})
        logger.info(
            "Specification of %s is now version %d", project_id, project.specification.version
        )
        self._mark_modified(runtime)
        return project

    def add_feature(
        self,
        project_id: str,
        name: str,
        description: str = "",
        priority: str = "normal",
    ) -> Feature:
        runtime = self._runtime(project_id)
        specification = runtime.project.specification
        feature_id = slugify(name)
        if specification.feature(feature_id) is not None:
            raise LairError(f"Feature already exists: {feature_id}")
        feature = Feature(id=feature_id, name=name, description=description, priority=priority)
        specification.features.append(feature)
        self._mark_modified(runtime)
        return feature

    def _mark_modified(self, runtime: _ProjectRuntime) -> None:
        project = runtime.project
        if project.status in {ProjectStatus.ANALYZED, ProjectStatus.IN_PROGRESS}:
            self.stop(project.id)
            self._transition(project, ProjectStatus.SPECIFICATION_MODIFIED)
        else:
            self._save(project)

    def _execution_state(self, project_id: str) -> ExecutionState:
        return self._runtime(project_id).project.execution_state

    def _on_status(self, project_id: str, statuses: dict[str, TaskStatus]) -> None:
        runtime = self._projects.get(project_id)
        if runtime is None or statuses == runtime.last_statuses:
            return
        runtime.last_statuses = dict(statuses)
        changed = Analyzer.update_feature_status(runtime.project.specification.features, statuses)
        for feature in changed:
            logger.info("Feature %s is now %s", feature.id, feature.status)
        self._save_tasks(runtime)
        if changed:
            self._save(runtime.project)

    def _built_worker(self, provider: str, model: str | None, timeout: float) -> Worker:
        assert self.worker_builder is not None
        key = (provider, model, timeout)
        worker = self._built_workers.get(key)
        if worker is None:
            worker = self.worker_builder(provider, model, timeout)
            self._built_workers[key] = worker
        return worker

    def _workers_for(self, config: ProjectConfig) -> dict[str, Worker]:
        """Workers keyed by kobold type; explicitly registered workers win."""
        workers: dict[str, Worker] = {}
        if self.worker_builder is not None:
            workers[DEFAULT_WORKER_KEY] = self._built_worker(
                config.provider_for("kobold"),
                config.model_for("kobold"),
                config.timeout_for("kobold"),
            )
            for agent_type, agent in config.kobold_types.items():
                if not agent.enabled:
                    continue
                workers[agent_type] = self._built_worker(
                    config.provider_for("kobold", agent_type),
                    config.model_for("kobold", agent_type),
                    config.timeout_for("kobold", agent_type),
                )
        workers.update(self.workers)
        return workers

    def _build_drake(
        self, project_id: str, area: str, config: ProjectConfig, workers: Mapping[str, Worker]
    ) -> Drake:
        runtime = self._runtime(project_id)
        assert runtime.tracker is not None
        return Drake(
            project_id=project_id,
            area=area,
            tracker=runtime.tracker,
            factory=self.factory,
            workers=workers,
            working_directory=self.working_directory(project_id),
            validation=self.validation,
            config=config.supervisor,
            status_hook=lambda statuses: self._on_status(project_id, statuses),
            execution_gate=lambda: self._execution_state(project_id),
            exit_when_idle=True,
            disabled_agent_types=config.disabled_kobold_types(),
        )

    def check_stuck(self, project_id: str, *, now: datetime | None = None) -> list[str]:
        """Cancel tasks whose kobold outlived ``limits.stuck_kobold_timeout_minutes``."""
        timeout = timedelta(minutes=self.config.limits.stuck_kobold_timeout_minutes)
        handled: list[str] = []
        for drake in list(self._runtime(project_id).drakes.values()):
            handled.extend(drake.handle_stuck_kobolds(timeout, now=now))
        return handled

    async def run(self, project_id: str) -> ProjectRunSummary:
        runtime = self._runtime(project_id)
        project = runtime.project
        if runtime.running:
            raise LairError(f"Project {project_id} is already running.")
        if project.execution_state == ExecutionState.CANCELLED:
            raise LairError(f"Project {project_id} was cancelled.")
        config = self.project_config(project_id)
        for role in ("drake", "kobold"):
            if not config.is_enabled(role):
                raise LairError(f"Task execution is disabled for project {project_id} ({role}).")
        if project.status == ProjectStatus.ANALYZED:
            self._transition(project, ProjectStatus.IN_PROGRESS)
        elif project.status != ProjectStatus.IN_PROGRESS:
            raise InvalidTransitionError(
                f"Project {project_id} cannot run while {project.status}."
            )
        tracker = self.tracker(project_id)
        workers = self._workers_for(config)
        idle = max(0.01, float(config.supervisor.idle_interval_seconds))
        monitoring = max(0.0, float(self.config.limits.monitoring_interval_seconds))
        loop = asyncio.get_running_loop()
        last_check = loop.time()
        started_at = utcnow()
        summaries: list[DrakeRunSummary] = []
        running: dict[str, asyncio.Task[DrakeRunSummary]] = {}
        runtime.running = True
        runtime.stop_requested = False
        try:
            while True:
                dispatching = (
                    not runtime.stop_requested
                    and project.execution_state == ExecutionState.RUNNING
                )
                if dispatching:
                    for area in tracker.areas():
                        if area in running or len(running) >= max(1, config.max_parallel_drakes):
                            continue
                        if not tracker.get_admissible(area):
                            continue
                        drake = self._build_drake(project_id, area, config, workers)
                        runtime.drakes[area] = drake
                        running[area] = asyncio.create_task(drake.run(), name=drake.name)
                if not running:
                    retry_at = tracker.pending_retry_at()
                    if not dispatching or retry_at is None:
                        break
                    wait = (retry_at - utcnow()).total_seconds()
                    logger.debug("Project %s waiting %.2fs for a retry", project_id, wait)
                    await asyncio.sleep(min(idle, max(0.01, wait)))
                    continue
                finished, _ = await asyncio.wait(
                    running.values(), timeout=idle, return_when=asyncio.FIRST_COMPLETED
                )
                for area, task in list(running.items()):
                    if task in finished:
                        del running[area]
                        runtime.drakes.pop(area, None)
                        summaries.append(task.result())
                if loop.time() - last_check >= monitoring:
                    last_check = loop.time()
                    self.check_stuck(project_id)
        finally:
            for task in running.values():
                task.cancel()
            if running:
                await asyncio.gather(*running.values(), return_exceptions=True)
            runtime.drakes.clear()
            runtime.running = False

        statuses = tracker.statuses()
        Analyzer.update_feature_status(project.specification.features, statuses)
        counts = tracker.status_counts()
        stopped = runtime.stop_requested or project.execution_state != ExecutionState.RUNNING
        if not stopped and project.status == ProjectStatus.IN_PROGRESS and not tracker.has_pending():
            if counts[TaskStatus.BLOCKED]:
                self._fail(project, f"{counts[TaskStatus.BLOCKED]} task(s) blocked after failures")
            elif self._features_complete(project):
                self._transition(project, ProjectStatus.COMPLETED)
        self._save_tasks(runtime)
        self._save(project)
        return ProjectRunSummary(
            project_id=project_id,
            status=project.status,
            started_at=started_at,
            ended_at=utcnow(),
            total_tasks=sum(counts.values()),
            done_tasks=counts[TaskStatus.DONE],
            blocked_tasks=counts[TaskStatus.BLOCKED],
            stopped=stopped,
            drakes=summaries,
        )

    @staticmethod
    def _features_complete(project: Project) -> bool:
        owned = [feature for feature in project.specification.features if feature.task_ids]
        return all(feature.status == FeatureStatus.COMPLETED for feature in owned)

    def stop(self, project_id: str) -> None:
        runtime = self._runtime(project_id)
        if not runtime.running:
            return
        runtime.stop_requested = True
        for drake in list(runtime.drakes.values()):
            drake.stop()

    def _set_execution_state(self, project_id: str, state: ExecutionState) -> Project:
        project = self.get_project(project_id)
        if state != ExecutionState.RUNNING and project.status in FINISHED_PROJECT_STATUSES:
            raise InvalidTransitionError(
                f"Project {project_id} is {project.status} and cannot be {state}."
            )
        if project.execution_state == ExecutionState.CANCELLED and state != ExecutionState.CANCELLED:
            raise InvalidTransitionError(f"Project {project_id} was cancelled.")
        project.execution_state = state
        self._save(project)
        for drake in list(self._runtime(project_id).drakes.values()):
            drake.wake()
        logger.info("Project %s execution state: %s", project_id, state)
        return project

    def pause(self, project_id: str) -> Project:
        return self._set_execution_state(project_id, ExecutionState.PAUSED)

    def suspend(self, project_id: str) -> Project:
        return self._set_execution_state(project_id, ExecutionState.SUSPENDED)

    def resume(self, project_id: str) -> Project:
        return self._set_execution_state(project_id, ExecutionState.RUNNING)

    def cancel(self, project_id: str) -> Project:
        project = self._set_execution_state(project_id, ExecutionState.CANCELLED)
        self.stop(project_id)
        return project

    def statistics(self, project_id: str) -> DrakeStatistics:
        runtime = self._runtime(project_id)
        kobolds = self.factory.statistics(project_id)
        tasks = (
            runtime.tracker.status_counts()
            if runtime.tracker is not None
            else dict.fromkeys(TaskStatus, 0)
        )
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
            active_assignments=sum(len(drake.in_flight) for drake in runtime.drakes.values()),
        )

    def project_statistics(self) -> dict[str, int]:
        counts = Counter(runtime.project.status for runtime in self._projects.values())
        payload = {status.value: counts.get(status, 0) for status in ProjectStatus}
        payload["total"] = len(self._projects)
        return payload

    def status(self, project_id: str, verbose: bool = False) -> dict[str, Any]:
        runtime = self._runtime(project_id)
        project = runtime.project
        payload: dict[str, Any] = {
            "project": {
                "id": project.id,
                "name": project.name,
                "status": project.status.value,
                "execution_state": project.execution_state.value,
                "specification_version": project.specification.version,
                "error": project.error_message,
                "pending_areas": list(project.pending_areas),
            },
            "features": [
                {"id": feature.id, "status": feature.status.value, "tasks": len(feature.task_ids)}
                for feature in project.specification.features
            ],
            "statistics": _statistics_dict(self.statistics(project_id)),
            "running_areas": sorted(runtime.drakes),
        }
        if runtime.tracker is not None:
            if verbose:
                payload["tasks"] = [record.to_dict() for record in runtime.tracker.snapshot()]
            else:
                payload["tasks"] = [
                    {
                        "id": record.id,
                        "area": record.area,
                        "status": record.status.value,
                        "retries": record.retry_count,
                    }
                    for record in runtime.tracker.snapshot()
                ]
        return payload

    def load(self) -> list[Project]:
        """Restore every project from the registry, resetting orphaned tasks."""
        if self.registry is None:
            return []
        loaded: list[Project] = []
        for project_id in self.registry.list_projects():
            project = self.registry.load_project(project_id)
            runtime = _ProjectRuntime(project=project)
            self._projects[project_id] = runtime
            config = self.project_config(project_id)
            runtime.tracker = self.registry.load_tasks(
                project_id, max_retries=config.supervisor.max_task_retries
            )
            runtime.analysis = self.registry.load_analysis(project_id)
            if runtime.tracker is not None:
                runtime.tracker.strict_level_barrier = config.supervisor.strict_level_barrier
                runtime.tracker.retry_backoff = list(config.supervisor.retry_backoff_seconds)
                if runtime.tracker.recover_orphaned():
                    self._save_tasks(runtime)
            loaded.append(project)
        logger.info("Loaded %d project(s) from %s", len(loaded), self.registry.root)
        return loaded


def _statistics_dict(statistics: DrakeStatistics) -> dict[str, int]:
    return {
        "total_kobolds": statistics.total_kobolds,
        "working_kobolds": statistics.working_kobolds,
        "total_tasks": statistics.total_tasks,
        "unassigned_tasks": statistics.unassigned_tasks,
        "working_tasks": statistics.working_tasks,
        "done_tasks": statistics.done_tasks,
        "failed_tasks": statistics.failed_tasks,
        "blocked_tasks": statistics.blocked_tasks,
        "active_assignments": statistics.active_assignments,
    }
