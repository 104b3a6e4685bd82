from __future__ import annotations


class LairError(RuntimeError):
    """Base class for orchestration failures."""


class NotFoundError(LairError):
    """Raised when a project, feature, task or worker id is unknown."""


class CapacityExceededError(LairError):
    """Raised when a project's worker ceiling is already reached."""

    def __init__(self, project_id: str, active: int, ceiling: int) -> None:
        super().__init__(
            f"Project '{project_id}' has {active} active workers (ceiling {ceiling})."
        )
        self.project_id = project_id
        self.active = active
        self.ceiling = ceiling


class InvalidDependencyGraphError(LairError):
    """Raised when task dependencies are unknown, duplicated or cyclic."""

    def __init__(self, message: str, *, tasks: list[str] | None = None) -> None:
        super().__init__(message)
        self.tasks = list(tasks or [])


class InvalidTransitionError(LairError):
    """Raised when a status change is not allowed by the state machine."""


class AnalysisError(LairError):
    """Raised when a specification cannot be decomposed."""


class RegistryError(LairError):
    """Raised when persisted project state cannot be read or written."""
