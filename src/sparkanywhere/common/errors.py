"""
Exception taxonomy for sparkanywhere.

Configuration and provider-construction errors are fatal at startup.
Validation errors are returned to the HTTP caller. Launch, wait and log
errors come out of the task providers.
"""


class SparkAnywhereError(Exception):
    """Base error"""
    status_code: int = 500
    reason: str = "InternalError"


class ConfigurationError(SparkAnywhereError):
    """Invalid or contradictory settings"""
    status_code = 400
    reason = "BadRequest"


class ProviderConstructionError(SparkAnywhereError):
    """Backend resources could not be resolved while building a provider"""
    status_code = 503
    reason = "ServiceUnavailable"


class PodValidationError(SparkAnywhereError):
    """Submitted pod cannot be turned into a task"""
    status_code = 422
    reason = "Invalid"


class TaskLaunchError(SparkAnywhereError):
    """Backend refused or failed to start a task"""
    status_code = 502
    reason = "InternalError"


class TaskWaitError(SparkAnywhereError):
    """Waiting on a task failed"""
    status_code = 502
    reason = "InternalError"


class TaskTimeoutError(TaskWaitError):
    """A blocking provider operation ran past its deadline"""
    status_code = 504
    reason = "Timeout"


class TaskCancelledError(TaskWaitError):
    """A blocking provider operation was cancelled"""
    status_code = 503
    reason = "ServiceUnavailable"


class LogRetrievalError(SparkAnywhereError):
    """Task logs could not be fetched or persisted"""
    status_code = 502
    reason = "InternalError"
