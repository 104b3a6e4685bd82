import asyncio
import time
from pathlib import Path

import pytest

from koboldlair.analyzer import Analyzer, MarkdownDecomposer
from koboldlair.config import AgentConfig, LairConfig
from koboldlair.errors import (
    InvalidDependencyGraphError,
    InvalidTransitionError,
    LairError,
    NotFoundError,
    RegistryError,
)
from koboldlair.models import (
    ExecutionState,
    FeatureStatus,
    ProjectStatus,
    TaskRecord,
    TaskStatus,
)
from koboldlair.projects import ProjectService
from koboldlair.registry import ProjectRegistry
from koboldlair.supervisor import DEFAULT_WORKER_KEY
from koboldlair.tracker import TaskTracker
from koboldlair.workers.base import Worker, WorkerResult

SPEC = """# Shop

## Backend
- [schema] Define schema
  - creates: schema.sql
  - expects: CREATE TABLE
- [api] Build checkout API (depends on: schema)
  - creates: api.py

## Frontend
- [page] Build checkout page (depends on: api)
  - creates: page.html
- [header] Style header
  - creates: header.css
"""


class ScriptedWorker(Worker):
    """Writes the expected files unless the task id is listed as broken."""

    def __init__(self, broken: set[str] | None = None) -> None:
        self.broken = set(broken or ())
        self.calls: list[str] = []

    async def run(self, task: TaskRecord, working_directory: Path) -> WorkerResult:
        self.calls.append(task.id)
        await asyncio.sleep(0)
        if task.id in self.broken:
            return WorkerResult(success=False, error="compile error")
        for step in task.steps:
            for path in step.files_to_create:
                content = "CREATE TABLE shop;\n" if path.endswith(".sql") else f"{task.id}\n"
                (working_directory / path).write_text(content, encoding="utf-8")
        return WorkerResult(success=True)


def _config(**limits: int) -> LairConfig:
    config = LairConfig.default()
    config.supervisor.idle_interval_seconds = 0.01
    config.supervisor.max_task_retries = 1
    config.supervisor.retry_backoff_seconds = []
    for key, value in limits.items():
        setattr(config.limits, key, value)
    return config


def _service(
    tmp_path: Path,
    worker: Worker | None = None,
    *,
    registry: bool = False,
    config: LairConfig | None = None,
) -> ProjectService:
    return ProjectService(
        config or _config(max_parallel_kobolds=2, max_parallel_drakes=2),
        analyzer=Analyzer(MarkdownDecomposer()),
        workers={DEFAULT_WORKER_KEY: worker or ScriptedWorker()},
        registry=ProjectRegistry(tmp_path / "projects") if registry else None,
        workspace_root=tmp_path / "work",
    )


def _analyzed(service: ProjectService, name: str = "Shop", **kwargs) -> str:
    project = service.register_project(name, SPEC, **kwargs)
    service.assign_analyzer(project.id)
    asyncio.run(service.analyze(project.id))
    return project.id


def test_register_and_lookup(tmp_path: Path) -> None:
    service = _service(tmp_path)

    project = service.register_project("Shop Front", SPEC, features=[{"name": "Checkout"}])

    assert project.id == "shop-front"
    assert project.status is ProjectStatus.NEW
    assert project.specification.features[0].id == "checkout"
    assert service.get_project("shop-front") is project
    assert service.list_projects(ProjectStatus.NEW) == [project]
    assert service.list_projects(ProjectStatus.ANALYZED) == []
    with pytest.raises(LairError, match="already registered"):
        service.register_project("shop front", SPEC)
    with pytest.raises(NotFoundError):
        service.get_project("ghost")


def test_register_rejects_bad_overrides(tmp_path: Path) -> None:
    service = _service(tmp_path)

    with pytest.raises(LairError, match="Invalid overrides"):
        service.register_project("Shop", SPEC, overrides={"max_goblins": 1})


def test_analyze_requires_assignment_and_builds_tracker(tmp_path: Path) -> None:
    service = _service(tmp_path)
    project = service.register_project("Shop", SPEC, features=[{"name": "Checkout"}])

    with pytest.raises(InvalidTransitionError):
        asyncio.run(service.analyze(project.id))

    service.assign_analyzer(project.id)
    analysis = asyncio.run(service.analyze(project.id))
    tracker = service.tracker(project.id)

    assert project.status is ProjectStatus.ANALYZED
    assert analysis.total_tasks == 4
    assert len(tracker) == 4
    assert tracker.get("page").dependency_level == 2
    assert project.specification.features[0].task_ids == ["api", "page"]
    assert project.specification.features[0].status is FeatureStatus.ASSIGNED_TO_ANALYZER
    assert project.analyzed_at is not None


def test_invalid_graph_fails_project(tmp_path: Path) -> None:
    service = _service(tmp_path)
    project = service.register_project("Broken", "## Backend\n- [a] A (depends on: b)\n")
    service.assign_analyzer(project.id)

    with pytest.raises(InvalidDependencyGraphError):
        asyncio.run(service.analyze(project.id))

    assert project.status is ProjectStatus.FAILED
    assert "unknown task b" in (project.error_message or "")


def test_disabled_wyvern_refuses_analysis(tmp_path: Path) -> None:
    service = _service(tmp_path)
    project = service.register_project(
        "Shop", SPEC, overrides={"agents": {"wyvern": {"enabled": False}}}
    )
    service.assign_analyzer(project.id)

    with pytest.raises(LairError, match="disabled"):
        asyncio.run(service.analyze(project.id))

    assert project.status is ProjectStatus.ASSIGNED_TO_ANALYZER


def test_run_completes_project_and_features(tmp_path: Path) -> None:
    worker = ScriptedWorker()
    service = _service(tmp_path, worker)
    project_id = _analyzed(service, features=[{"name": "Checkout"}])

    summary = asyncio.run(service.run(project_id))

    project = service.get_project(project_id)
    assert summary.status is ProjectStatus.COMPLETED
    assert summary.done_tasks == 4
    assert summary.total_tasks == 4
    assert summary.stopped is False
    assert project.status is ProjectStatus.COMPLETED
    assert project.specification.features[0].status is FeatureStatus.COMPLETED
    assert worker.calls.index("schema") < worker.calls.index("api") < worker.calls.index("page")
    assert (tmp_path / "work" / project_id / "schema.sql").exists()
    assert service.factory.active_count(project_id) == 0


def test_run_fails_project_when_tasks_block(tmp_path: Path) -> None:
    worker = ScriptedWorker(broken={"api"})
    service = _service(tmp_path, worker)
    project_id = _analyzed(service)

    summary = asyncio.run(service.run(project_id))

    tracker = service.tracker(project_id)
    project = service.get_project(project_id)
    assert summary.status is ProjectStatus.FAILED
    assert summary.blocked_tasks == 2
    assert tracker.get("api").status is TaskStatus.BLOCKED
    assert tracker.get("page").status is TaskStatus.BLOCKED
    assert tracker.get("header").status is TaskStatus.DONE
    assert worker.calls.count("api") == 2
    assert "2 task(s) blocked" in (project.error_message or "")


def test_run_respects_kobold_ceiling_across_drakes(tmp_path: Path) -> None:
    class CountingWorker(ScriptedWorker):
        def __init__(self) -> None:
            super().__init__()
            self.active = 0
            self.max_active = 0

        async def run(self, task: TaskRecord, working_directory: Path) -> WorkerResult:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            try:
                await asyncio.sleep(0.02)
                return await super().run(task, working_directory)
            finally:
                self.active -= 1

    worker = CountingWorker()
    service = _service(
        tmp_path, worker, config=_config(max_parallel_kobolds=1, max_parallel_drakes=2)
    )
    project_id = _analyzed(service)

    summary = asyncio.run(service.run(project_id))

    assert summary.status is ProjectStatus.COMPLETED
    assert worker.max_active == 1


def test_paused_project_does_not_dispatch(tmp_path: Path) -> None:
    worker = ScriptedWorker()
    service = _service(tmp_path, worker)
    project_id = _analyzed(service)

    service.pause(project_id)
    summary = asyncio.run(service.run(project_id))

    assert worker.calls == []
    assert summary.stopped is True
    assert service.get_project(project_id).status is ProjectStatus.IN_PROGRESS

    service.resume(project_id)
    resumed = asyncio.run(service.run(project_id))
    assert resumed.status is ProjectStatus.COMPLETED


def test_cancelled_project_cannot_resume_or_run(tmp_path: Path) -> None:
    service = _service(tmp_path)
    project_id = _analyzed(service)

    service.cancel(project_id)

    assert service.get_project(project_id).execution_state is ExecutionState.CANCELLED
    with pytest.raises(InvalidTransitionError):
        service.resume(project_id)
    with pytest.raises(LairError, match="cancelled"):
        asyncio.run(service.run(project_id))


def test_finished_project_cannot_be_paused(tmp_path: Path) -> None:
    service = _service(tmp_path)
    project_id = _analyzed(service)
    asyncio.run(service.run(project_id))

    with pytest.raises(InvalidTransitionError):
        service.pause(project_id)


def test_specification_update_triggers_incremental_reanalysis(tmp_path: Path) -> None:
    worker = ScriptedWorker()
    service = _service(tmp_path, worker)
    project_id = _analyzed(service)
    tracker = service.tracker(project_id)
    for task_id in ("schema", "api"):
        tracker.update_status(task_id, TaskStatus.NOT_INITIALIZED)
        tracker.update_status(task_id, TaskStatus.WORKING)
        tracker.update_status(task_id, TaskStatus.DONE)

    unchanged = service.update_specification(project_id, SPEC)
    assert unchanged.specification.version == 1
    assert unchanged.status is ProjectStatus.ANALYZED

    updated_spec = SPEC.replace("- [header] Style header", "- [footer] Style footer")
    updated_spec = updated_spec.replace("header.css", "footer.css")
    project = service.update_specification(project_id, updated_spec)

    assert project.status is ProjectStatus.SPECIFICATION_MODIFIED
    assert project.specification.version == 2
    assert project.pending_areas == ["Frontend"]
    with pytest.raises(InvalidTransitionError):
        asyncio.run(service.run(project_id))

    analysis = asyncio.run(service.analyze(project_id))

    assert analysis.reprocessed_areas == ["Frontend"]
    assert project.status is ProjectStatus.ANALYZED
    assert project.pending_areas == []
    assert tracker.get("schema").status is TaskStatus.DONE
    assert tracker.get("api").status is TaskStatus.DONE
    assert "header" not in tracker
    assert tracker.get("footer").status is TaskStatus.UNASSIGNED

    summary = asyncio.run(service.run(project_id))
    assert summary.status is ProjectStatus.COMPLETED
    assert "schema" not in worker.calls


def test_add_feature_marks_analyzed_project_modified(tmp_path: Path) -> None:
    service = _service(tmp_path)
    project_id = _analyzed(service)

    feature = service.add_feature(project_id, "Header polish", "Make the header shine")

    assert feature.id == "header-polish"
    assert service.get_project(project_id).status is ProjectStatus.SPECIFICATION_MODIFIED
    with pytest.raises(LairError, match="already exists"):
        service.add_feature(project_id, "Header Polish")

    asyncio.run(service.analyze(project_id))
    assert feature.task_ids == []


def test_statistics_and_status_views(tmp_path: Path) -> None:
    service = _service(tmp_path)
    project_id = _analyzed(service)
    service.register_project("Other", SPEC)

    stats = service.statistics(project_id)
    counts = service.project_statistics()
    status = service.status(project_id)
    verbose = service.status(project_id, verbose=True)

    assert stats.total_tasks == 4
    assert stats.unassigned_tasks == 4
    assert counts["analyzed"] == 1
    assert counts["new"] == 1
    assert counts["total"] == 2
    assert status["project"]["status"] == "analyzed"
    assert {task["id"] for task in status["tasks"]} == {"schema", "api", "page", "header"}
    assert "steps" in verbose["tasks"][0]


def test_registry_persistence_and_reload(tmp_path: Path) -> None:
    service = _service(tmp_path, registry=True)
    project_id = _analyzed(service, features=[{"name": "Checkout"}])
    tracker = service.tracker(project_id)
    tracker.update_status("schema", TaskStatus.NOT_INITIALIZED)
    tracker.update_status("schema", TaskStatus.WORKING)
    service.registry.save_tasks(project_id, tracker)

    reloaded = _service(tmp_path, registry=True)
    projects = reloaded.load()

    assert [project.id for project in projects] == [project_id]
    restored = reloaded.get_project(project_id)
    assert restored.status is ProjectStatus.ANALYZED
    assert restored.specification.features[0].task_ids == ["api", "page"]
    assert reloaded.tracker(project_id).get("schema").status is TaskStatus.UNASSIGNED
    assert reloaded.analysis(project_id) is not None

    summary = asyncio.run(reloaded.run(project_id))
    assert summary.status is ProjectStatus.COMPLETED
    assert reloaded.registry.load_project(project_id).status is ProjectStatus.COMPLETED


def test_remove_project(tmp_path: Path) -> None:
    service = _service(tmp_path, registry=True)
    project_id = _analyzed(service)

    service.remove_project(project_id)

    assert service.list_projects() == []
    assert service.registry.list_projects() == []
    with pytest.raises(NotFoundError):
        service.get_project(project_id)


class FlakyRegistry(ProjectRegistry):
    def __init__(self, root: Path) -> None:
        super().__init__(root)
        self.fail_tasks = False

    def save_tasks(self, project_id: str, tracker: TaskTracker) -> None:
        if self.fail_tasks:
            raise RegistryError("disk full")
        super().save_tasks(project_id, tracker)


class HangingWorker(Worker):
    def __init__(self) -> None:
        self.calls: list[str] = []

    async def run(self, task: TaskRecord, working_directory: Path) -> WorkerResult:
        self.calls.append(task.id)
        await asyncio.sleep(30)
        return WorkerResult(success=True)


CSS_SPEC = SPEC.replace("  - creates: header.css", "  - agent: css\n  - creates: header.css")


def test_registry_failure_during_run_is_raised(tmp_path: Path) -> None:
    registry = FlakyRegistry(tmp_path / "projects")
    worker = ScriptedWorker()
    service = ProjectService(
        _config(max_parallel_kobolds=1, max_parallel_drakes=1),
        analyzer=Analyzer(MarkdownDecomposer()),
        workers={DEFAULT_WORKER_KEY: worker},
        registry=registry,
        workspace_root=tmp_path / "work",
    )
    project_id = _analyzed(service)

    registry.fail_tasks = True
    with pytest.raises(RegistryError, match="disk full"):
        asyncio.run(service.run(project_id))

    assert worker.calls == ["schema"]
    assert service.get_project(project_id).status is ProjectStatus.IN_PROGRESS
    assert service.status(project_id)["running_areas"] == []

    registry.fail_tasks = False
    summary = asyncio.run(service.run(project_id))
    assert summary.status is ProjectStatus.COMPLETED
    assert worker.calls.count("schema") == 1


def test_retry_backoff_defers_redispatch(tmp_path: Path) -> None:
    class RecoveringWorker(ScriptedWorker):
        async def run(self, task: TaskRecord, working_directory: Path) -> WorkerResult:
            result = await super().run(task, working_directory)
            self.broken.discard(task.id)
            return result

    config = _config(max_parallel_kobolds=2, max_parallel_drakes=2)
    config.supervisor.retry_backoff_seconds = [0.2]
    worker = RecoveringWorker(broken={"schema"})
    service = _service(tmp_path, worker, config=config)
    project_id = _analyzed(service)

    started = time.monotonic()
    summary = asyncio.run(service.run(project_id))
    elapsed = time.monotonic() - started

    record = service.tracker(project_id).get("schema")
    assert summary.status is ProjectStatus.COMPLETED
    assert worker.calls.count("schema") == 2
    assert record.retry_count == 1
    assert record.next_retry_at is None
    assert elapsed >= 0.2


def test_workers_are_built_per_kobold_type(tmp_path: Path) -> None:
    config = _config(max_parallel_kobolds=2, max_parallel_drakes=2)
    config.agents.kobold.provider = "claude"
    config.agents.kobold_types["css"] = AgentConfig(provider="codex", model="small")
    built: dict[tuple[str, str | None, float], ScriptedWorker] = {}

    def build(provider: str, model: str | None, timeout: float) -> Worker:
        worker = ScriptedWorker()
        built[(provider, model, timeout)] = worker
        return worker

    service = ProjectService(
        config,
        analyzer=Analyzer(MarkdownDecomposer()),
        worker_builder=build,
        workspace_root=tmp_path / "work",
    )
    project = service.register_project("Shop", CSS_SPEC)
    service.assign_analyzer(project.id)
    asyncio.run(service.analyze(project.id))

    summary = asyncio.run(service.run(project.id))

    assert summary.status is ProjectStatus.COMPLETED
    assert set(built) == {("claude", None, 0.0), ("codex", "small", 0.0)}
    assert built[("codex", "small", 0.0)].calls == ["header"]
    assert sorted(built[("claude", None, 0.0)].calls) == ["api", "page", "schema"]


def test_disabled_kobold_type_blocks_its_tasks(tmp_path: Path) -> None:
    config = _config(max_parallel_kobolds=2, max_parallel_drakes=2)
    config.agents.kobold_types["css"] = AgentConfig(enabled=False)
    worker = ScriptedWorker()
    service = _service(tmp_path, worker, config=config)
    project = service.register_project("Shop", CSS_SPEC)
    service.assign_analyzer(project.id)
    asyncio.run(service.analyze(project.id))

    summary = asyncio.run(service.run(project.id))

    header = service.tracker(project.id).get("header")
    assert summary.status is ProjectStatus.FAILED
    assert header.status is TaskStatus.BLOCKED
    assert "Agent type 'css' is disabled" in (header.error_message or "")
    assert "header" not in worker.calls


def test_disabled_kobold_role_refuses_run(tmp_path: Path) -> None:
    worker = ScriptedWorker()
    service = _service(tmp_path, worker)
    project_id = _analyzed(service, overrides={"agents": {"kobold": {"enabled": False}}})

    with pytest.raises(LairError, match="disabled"):
        asyncio.run(service.run(project_id))

    assert worker.calls == []
    assert service.get_project(project_id).status is ProjectStatus.ANALYZED


def test_stuck_kobolds_are_cancelled_by_monitor(tmp_path: Path) -> None:
    config = _config(max_parallel_kobolds=1, max_parallel_drakes=1)
    config.limits.monitoring_interval_seconds = 0.0
    config.limits.stuck_kobold_timeout_minutes = 0.0
    worker = HangingWorker()
    service = _service(tmp_path, worker, config=config)
    project_id = _analyzed(service)

    summary = asyncio.run(asyncio.wait_for(service.run(project_id), timeout=10))

    schema = service.tracker(project_id).get("schema")
    assert summary.status is ProjectStatus.FAILED
    assert summary.blocked_tasks == 4
    assert schema.status is TaskStatus.BLOCKED
    assert "stuck" in (schema.error_message or "")
    assert worker.calls.count("schema") == 2
    assert service.factory.active_count(project_id) == 0
