from __future__ import annotations

import logging
from datetime import UTC, datetime
from pathlib import Path

from koboldlair.models import ImplementationStep
from koboldlair.validation.base import StepValidator, ValidationResult, resolve_path

logger = logging.getLogger(__name__)


class FileCreationValidator(StepValidator):
    name = "FileCreation"

    async def validate(self, step: ImplementationStep, working_directory: Path) -> ValidationResult:
        issues = [
            f"Expected file not created: {path}"
            for path in step.files_to_create
            if not resolve_path(path, working_directory).is_file()
        ]
        return ValidationResult(success=not issues, issues=issues, validator_name=self.name)


class FileModificationValidator(StepValidator):
    name = "FileModification"

    async def validate(self, step: ImplementationStep, working_directory: Path) -> ValidationResult:
        issues: list[str] = []
        for path in step.files_to_modify:
            full_path = resolve_path(path, working_directory)
            if not full_path.is_file():
                issues.append(f"Expected file not found: {path}")
                continue
            if step.started_at is None:
                continue
            modified_at = datetime.fromtimestamp(full_path.stat().st_mtime, UTC)
            if modified_at < step.started_at:
                issues.append(f"File not modified since step started: {path}")
        return ValidationResult(success=not issues, issues=issues, validator_name=self.name)


class ContentExpectationValidator(StepValidator):
    name = "ContentExpectation"

    async def validate(self, step: ImplementationStep, working_directory: Path) -> ValidationResult:
        targets = [*step.files_to_create, *step.files_to_modify]
        if not step.expected_content or not targets:
            return ValidationResult(success=True, validator_name=self.name)

        contents: list[str] = []
        for path in targets:
            full_path = resolve_path(path, working_directory)
            if not full_path.is_file():
                continue
            try:
                contents.append(full_path.read_text(encoding="utf-8"))
            except (OSError, UnicodeDecodeError) as exc:
                logger.debug("Skipping unreadable file %s: %s", full_path, exc)

        issues: list[str] = []
        file_list = ", ".join(targets)
        for expected in step.expected_content:
            if not expected.strip():
                continue
            if not any(expected in content for content in contents):
                issues.append(f"Expected content not found: '{expected}' in [{file_list}]")
        return ValidationResult(success=not issues, issues=issues, validator_name=self.name)
