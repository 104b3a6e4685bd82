from koboldlair.workers.base import (
    Worker,
    WorkerExecutionError,
    WorkerProcessError,
    WorkerResult,
    WorkerTimeoutError,
)
from koboldlair.workers.classifier import ErrorCategory, classify_error, is_retriable
from koboldlair.workers.command import CommandWorker
from koboldlair.workers.resilient import ResilientWorker, RetryPolicy

__all__ = [
    "CommandWorker",
    "ErrorCategory",
    "ResilientWorker",
    "RetryPolicy",
    "Worker",
    "WorkerExecutionError",
    "WorkerProcessError",
    "WorkerResult",
    "WorkerTimeoutError",
    "classify_error",
    "is_retriable",
]
