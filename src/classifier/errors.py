"""Classifier error taxonomy.

Only ClassificationError and ClassificationTimeoutError are caller-visible
outcomes of a healthy worker; the others describe worker lifecycle failures.
"""


class ClassifierError(Exception):
    """Base class for classifier failures."""


class ClassificationError(ClassifierError):
    """Worker reported a domain error for one request (worker keeps running)."""


class ClassificationTimeoutError(ClassifierError):
    """No worker response arrived before the request deadline."""


class WorkerExitedError(ClassifierError):
    """Worker process exited while the request was pending."""


class WorkerStartError(ClassifierError):
    """Worker process could not be spawned or never signalled readiness."""


class WorkerUnavailableError(ClassifierError):
    """Worker process is not running (e.g. supervisor stopped)."""
