from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path

from koboldlair.models import ImplementationStep


@dataclass(slots=True)
class ValidationResult:
    success: bool
    issues: list[str] = field(default_factory=list)
    validator_name: str = ""


@dataclass(slots=True)
class CombinedValidationResult:
    success: bool
    issues: list[str] = field(default_factory=list)
    results: list[ValidationResult] = field(default_factory=list)

    @property
    def reason(self) -> str:
        return "; ".join(self.issues)


class StepValidator(ABC):
    name: str = "Validator"

    @abstractmethod
    async def validate(self, step: ImplementationStep, working_directory: Path) -> ValidationResult:
        """Check one implementation step against the files in ``working_directory``."""


def resolve_path(path: str, working_directory: Path) -> Path:
    candidate = Path(path)
    if candidate.is_absolute():
        return candidate
    return working_directory / candidate
