import asyncio
import sys
from pathlib import Path
from typing import Any

import pytest

from koboldlair.models import ImplementationStep, TaskRecord
from koboldlair.workers import (
    CommandWorker,
    ErrorCategory,
    ResilientWorker,
    RetryPolicy,
    Worker,
    WorkerExecutionError,
    WorkerProcessError,
    WorkerResult,
    classify_error,
    is_retriable,
)


def _task(task_id: str = "backend-models") -> TaskRecord:
    return TaskRecord(
        id=task_id,
        description="Create models",
        area="backend",
        agent_type="python",
        project_id="demo",
        steps=[ImplementationStep(index=1, description="models", files_to_create=["models.py"])],
    )


class AlwaysFailWorker(Worker):
    def __init__(self, *, retriable: bool = True) -> None:
        self.calls = 0
        self.retriable = retriable

    async def run(self, task: TaskRecord, working_directory: Path) -> WorkerResult:
        _ = task, working_directory
        self.calls += 1
        raise WorkerExecutionError("boom", worker="fake", retriable=self.retriable)


class TransientThenOkWorker(Worker):
    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0

    async def run(self, task: TaskRecord, working_directory: Path) -> WorkerResult:
        _ = task, working_directory
        self.calls += 1
        if self.calls <= self.failures:
            return WorkerResult(success=False, error="503 service unavailable", transient=True)
        return WorkerResult(success=True, output="ok")


class SuccessWorker(Worker):
    def __init__(self) -> None:
        self.calls = 0

    async def run(self, task: TaskRecord, working_directory: Path) -> WorkerResult:
        _ = task, working_directory
        self.calls += 1
        return WorkerResult(success=True, output="ok")


class SlowWorker(Worker):
    async def run(self, task: TaskRecord, working_directory: Path) -> WorkerResult:
        _ = task, working_directory
        await asyncio.sleep(5)
        return WorkerResult(success=True)


def test_classify_error_categories() -> None:
    assert classify_error("HTTP 429 Too Many Requests") is ErrorCategory.TRANSIENT
    assert classify_error("Connection reset by peer") is ErrorCategory.TRANSIENT
    assert classify_error("401 Unauthorized") is ErrorCategory.PERMANENT
    assert classify_error("Invalid API key provided") is ErrorCategory.PERMANENT
    assert classify_error("something odd happened") is ErrorCategory.UNKNOWN
    assert classify_error(None) is ErrorCategory.UNKNOWN
    assert is_retriable("something odd happened") is True
    assert is_retriable("permission denied") is False


def test_command_worker_build_command_shape() -> None:
    worker = CommandWorker(["agent", "-p"])
    command = worker.build_command(_task())

    assert command[:2] == ["agent", "-p"]
    assert worker.name == "agent"
    assert "Task backend-models (backend, python):" in command[-1]
    assert "Create: models.py" in command[-1]


def test_command_worker_rejects_empty_command() -> None:
    with pytest.raises(ValueError):
        CommandWorker([])


def test_command_worker_runs_in_working_directory(tmp_path: Path) -> None:
    script = (
        "import os, sys; "
        "open('marker.txt', 'w').write(os.environ['LAIR_TASK_ID']); "
        "print('ok')"
    )
    worker = CommandWorker([sys.executable, "-c", script])

    result = asyncio.run(worker.run(_task(), tmp_path))

    assert result.success is True
    assert result.output == "ok"
    assert (tmp_path / "marker.txt").read_text(encoding="utf-8") == "backend-models"


def test_command_worker_nonzero_exit_raises_with_classification(tmp_path: Path) -> None:
    script = "import sys; sys.stderr.write('401 unauthorized'); sys.exit(3)"
    worker = CommandWorker([sys.executable, "-c", script])

    with pytest.raises(WorkerExecutionError) as excinfo:
        asyncio.run(worker.run(_task(), tmp_path))

    assert excinfo.value.exit_code == 3
    assert excinfo.value.retriable is False
    assert "401 unauthorized" in str(excinfo.value)


def test_command_worker_missing_binary(tmp_path: Path) -> None:
    worker = CommandWorker(["definitely-not-a-real-agent-binary"])

    with pytest.raises(WorkerProcessError) as excinfo:
        asyncio.run(worker.run(_task(), tmp_path))

    assert excinfo.value.retriable is False


def test_command_worker_complete_returns_stdout(tmp_path: Path) -> None:
    worker = CommandWorker([sys.executable, "-c", "import sys; print(sys.argv[-1].upper())"])

    output = asyncio.run(worker.complete("hello", tmp_path))

    assert output == "HELLO"


def test_resilient_worker_uses_fallback_after_retries(tmp_path: Path) -> None:
    events: list[dict[str, Any]] = []
    primary = AlwaysFailWorker()
    fallback = SuccessWorker()
    worker = ResilientWorker(
        primary_name="primary",
        primary_worker=primary,
        fallback_name="fallback",
        fallback_worker=fallback,
        retry_policy=RetryPolicy(max_retries=1, backoff_seconds=0, timeout_seconds=5),
        event_hook=events.append,
    )

    result = asyncio.run(worker.run(_task(), tmp_path))

    assert result.success is True
    assert result.metadata["worker"] == "fallback"
    assert primary.calls == 2
    assert fallback.calls == 1
    assert any(event["event"] == "worker_retry" for event in events)
    assert any(event["event"] == "worker_fallback_success" for event in events)


def test_resilient_worker_retries_transient_results(tmp_path: Path) -> None:
    primary = TransientThenOkWorker(failures=2)
    worker = ResilientWorker(
        primary_name="primary",
        primary_worker=primary,
        retry_policy=RetryPolicy(max_retries=2, backoff_seconds=0, timeout_seconds=5),
    )

    result = asyncio.run(worker.run(_task(), tmp_path))

    assert result.success is True
    assert primary.calls == 3


def test_resilient_worker_stops_on_permanent_error(tmp_path: Path) -> None:
    primary = AlwaysFailWorker(retriable=False)
    worker = ResilientWorker(
        primary_name="primary",
        primary_worker=primary,
        retry_policy=RetryPolicy(max_retries=3, backoff_seconds=0, timeout_seconds=5),
    )

    with pytest.raises(WorkerExecutionError) as excinfo:
        asyncio.run(worker.run(_task(), tmp_path))

    assert primary.calls == 1
    assert excinfo.value.retriable is False
    assert "All worker attempts failed" in str(excinfo.value)


def test_resilient_worker_times_out(tmp_path: Path) -> None:
    events: list[dict[str, Any]] = []
    worker = ResilientWorker(
        primary_name="slow",
        primary_worker=SlowWorker(),
        retry_policy=RetryPolicy(max_retries=0, backoff_seconds=0, timeout_seconds=0.05),
        event_hook=events.append,
    )

    with pytest.raises(WorkerExecutionError):
        asyncio.run(worker.run(_task(), tmp_path))

    assert events[0]["event"] == "worker_attempt_failed"
    assert "timed out" in events[0]["error"]
