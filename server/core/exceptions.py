"""Error taxonomy for the store, cache and analysis job layers."""


class WorklogError(Exception):
    """Base exception for all service errors."""


class StoreError(WorklogError):
    """Backing-store failure."""


class ConnectionFailed(StoreError):
    """Connection could not be established after all retries."""

    def __init__(self, attempts: int, message: str):
        self.attempts = attempts
        super().__init__(f"Database connection failed after {attempts} attempts: {message}")


class ConnectTimeout(StoreError):
    """Timed out waiting for an in-flight connection attempt."""


class OperationFailed(StoreError):
    """A labelled store operation failed; the original error is kept as ``cause``."""

    def __init__(self, label: str, cause: BaseException):
        self.label = label
        self.cause = cause
        super().__init__(f"{label} failed: {cause}")


class OperationTimeout(OperationFailed):
    """A store operation exceeded its deadline."""

    def __init__(self, label: str, timeout: float, cause: BaseException = None):
        self.timeout = timeout
        super().__init__(label, cause or TimeoutError(f"Operation timeout after {timeout:g} seconds"))


class ApplicationError(WorklogError):
    """Constraint, lookup or validation error. Never retried."""


class UnknownModelError(ApplicationError):
    """Model name is not registered with the store."""

    def __init__(self, model: str):
        self.model = model
        super().__init__(f"Unknown model: {model}")


class RecordNotFoundError(ApplicationError):
    """No record matched the lookup."""

    def __init__(self, model: str, where: dict):
        self.model = model
        self.where = where
        super().__init__(f"No {model} record matches {where}")


class CacheUnavailable(WorklogError):
    """External cache lookup or write failed."""

    def __init__(self, operation: str, key: str, cause: BaseException):
        self.operation = operation
        self.key = key
        self.cause = cause
        super().__init__(f"Cache {operation} failed for {key}: {cause}")


class JobExecutionError(WorklogError):
    """Analysis work inside a background job failed."""
