from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from pathlib import Path

from koboldlair.models import ImplementationStep
from koboldlair.validation.base import CombinedValidationResult, StepValidator, ValidationResult
from koboldlair.validation.validators import (
    ContentExpectationValidator,
    FileCreationValidator,
    FileModificationValidator,
)

logger = logging.getLogger(__name__)


def default_validators() -> list[StepValidator]:
    return [FileCreationValidator(), FileModificationValidator(), ContentExpectationValidator()]


class StepValidationService:
    """Runs an ordered list of validators and merges their verdicts."""

    def __init__(self, validators: Sequence[StepValidator] | None = None) -> None:
        self._validators: list[StepValidator] = (
            default_validators() if validators is None else list(validators)
        )

    @property
    def validator_names(self) -> list[str]:
        return [validator.name for validator in self._validators]

    def add_validator(self, validator: StepValidator) -> None:
        self._validators.append(validator)

    def remove_validator(self, name: str) -> bool:
        for index, validator in enumerate(self._validators):
            if validator.name == name:
                del self._validators[index]
                return True
        return False

    async def validate_step(
        self, step: ImplementationStep, working_directory: Path
    ) -> CombinedValidationResult:
        step.metrics.validation_attempts += 1
        results: list[ValidationResult] = []
        issues: list[str] = []
        for validator in list(self._validators):
            try:
                result = await validator.validate(step, working_directory)
            except Exception as exc:
                logger.warning("Validator %s raised on step %d: %s", validator.name, step.index, exc)
                result = ValidationResult(
                    success=False,
                    issues=[f"Validation error: {exc}"],
                    validator_name=validator.name,
                )
            results.append(result)
            issues.extend(f"[{validator.name}] {issue}" for issue in result.issues)
            if not result.success and not result.issues:
                issues.append(f"[{validator.name}] Validation failed")
        return CombinedValidationResult(
            success=all(result.success for result in results),
            issues=issues,
            results=results,
        )

    async def validate_steps(
        self, steps: Iterable[ImplementationStep], working_directory: Path
    ) -> CombinedValidationResult:
        results: list[ValidationResult] = []
        issues: list[str] = []
        success = True
        for step in steps:
            combined = await self.validate_step(step, working_directory)
            success = success and combined.success
            results.extend(combined.results)
            issues.extend(combined.issues)
        return CombinedValidationResult(success=success, issues=issues, results=results)
