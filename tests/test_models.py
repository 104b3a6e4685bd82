from datetime import UTC, datetime

import pytest

from koboldlair.models import (
    FeatureStatus,
    ImplementationStep,
    Project,
    ProjectStatus,
    Specification,
    TaskPriority,
    TaskRecord,
    TaskStatus,
    can_transition_project,
    can_transition_task,
    derive_feature_status,
    slugify,
)


def test_slugify_normalizes_and_falls_back() -> None:
    assert slugify("  User Auth / API  ") == "user-auth-api"
    assert slugify("!!!") == "item"
    assert slugify("a" * 80, max_length=10) == "a" * 10


def test_task_transition_table() -> None:
    assert can_transition_task(TaskStatus.UNASSIGNED, TaskStatus.NOT_INITIALIZED)
    assert can_transition_task(TaskStatus.WORKING, TaskStatus.DONE)
    assert can_transition_task(TaskStatus.FAILED, TaskStatus.UNASSIGNED)
    assert not can_transition_task(TaskStatus.UNASSIGNED, TaskStatus.DONE)
    assert not can_transition_task(TaskStatus.DONE, TaskStatus.UNASSIGNED)
    assert not can_transition_task(TaskStatus.BLOCKED, TaskStatus.UNASSIGNED)


def test_project_transition_table() -> None:
    assert can_transition_project(ProjectStatus.NEW, ProjectStatus.ASSIGNED_TO_ANALYZER)
    assert can_transition_project(ProjectStatus.IN_PROGRESS, ProjectStatus.SPECIFICATION_MODIFIED)
    assert can_transition_project(ProjectStatus.SPECIFICATION_MODIFIED, ProjectStatus.ANALYZED)
    assert not can_transition_project(ProjectStatus.NEW, ProjectStatus.IN_PROGRESS)
    assert not can_transition_project(ProjectStatus.COMPLETED, ProjectStatus.IN_PROGRESS)


def test_priority_parse_accepts_aliases() -> None:
    assert TaskPriority.parse("medium") is TaskPriority.NORMAL
    assert TaskPriority.parse(None) is TaskPriority.NORMAL
    assert TaskPriority.parse("High") is TaskPriority.HIGH
    assert TaskPriority.parse(9) is TaskPriority.CRITICAL
    with pytest.raises(ValueError):
        TaskPriority.parse("urgent-ish")


def test_derive_feature_status() -> None:
    new = FeatureStatus.ASSIGNED_TO_ANALYZER
    assert derive_feature_status(new, []) is new
    assert derive_feature_status(new, [TaskStatus.UNASSIGNED]) is new
    assert derive_feature_status(new, [TaskStatus.WORKING, TaskStatus.UNASSIGNED]) is (
        FeatureStatus.IN_PROGRESS
    )
    assert derive_feature_status(new, [TaskStatus.DONE, TaskStatus.DONE]) is FeatureStatus.COMPLETED
    assert derive_feature_status(FeatureStatus.COMPLETED, [TaskStatus.DONE, None]) is (
        FeatureStatus.IN_PROGRESS
    )


def test_specification_version_only_bumps_on_change() -> None:
    spec = Specification(content="# A")

    assert spec.update_content("# A") is False
    assert spec.version == 1
    assert spec.update_content("# B") is True
    assert spec.version == 2


def test_task_record_roundtrip_preserves_steps() -> None:
    started = datetime(2024, 1, 2, 3, 4, 5, tzinfo=UTC)
    record = TaskRecord(
        id="backend-models",
        description="Create models",
        area="Backend",
        dependencies=["backend-schema"],
        dependency_level=1,
        priority=TaskPriority.HIGH,
        status=TaskStatus.FAILED,
        retry_count=2,
        error_message="boom",
        steps=[
            ImplementationStep(
                index=1,
                files_to_create=["models.py"],
                expected_content=["class User"],
                started_at=started,
            )
        ],
    )
    record.steps[0].metrics.validation_attempts = 3

    loaded = TaskRecord.from_dict(record.to_dict())

    assert loaded == record


def test_project_roundtrip_keeps_content_outside_document() -> None:
    project = Project(
        id="demo",
        name="Demo",
        specification=Specification(content="# Demo\n", version=3),
        status=ProjectStatus.ANALYZED,
        pending_areas=["Backend"],
        working_directory="/tmp/demo",
    )

    payload = project.to_dict()
    loaded = Project.from_dict(payload, "# Demo\n")

    assert "content" not in payload["specification"]
    assert loaded.specification.content == "# Demo\n"
    assert loaded.specification.version == 3
    assert loaded.status is ProjectStatus.ANALYZED
    assert loaded.pending_areas == ["Backend"]
    assert loaded.working_directory == "/tmp/demo"
