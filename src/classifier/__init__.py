"""ASL letter classification: worker supervisor and worker process."""

from src.classifier.correlator import RequestCorrelator
from src.classifier.errors import (
    ClassificationError,
    ClassificationTimeoutError,
    ClassifierError,
    WorkerExitedError,
    WorkerStartError,
    WorkerUnavailableError,
)
from src.classifier.supervisor import ClassifierWorkerSupervisor, WorkerState

__all__ = [
    "ClassificationError",
    "ClassificationTimeoutError",
    "ClassifierError",
    "ClassifierWorkerSupervisor",
    "RequestCorrelator",
    "WorkerExitedError",
    "WorkerStartError",
    "WorkerState",
    "WorkerUnavailableError",
]
