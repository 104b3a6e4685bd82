from koboldlair.validation.base import (
    CombinedValidationResult,
    StepValidator,
    ValidationResult,
)
from koboldlair.validation.service import StepValidationService, default_validators
from koboldlair.validation.validators import (
    ContentExpectationValidator,
    FileCreationValidator,
    FileModificationValidator,
)

__all__ = [
    "CombinedValidationResult",
    "ContentExpectationValidator",
    "FileCreationValidator",
    "FileModificationValidator",
    "StepValidationService",
    "StepValidator",
    "ValidationResult",
    "default_validators",
]
