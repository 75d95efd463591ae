# taskrelay/common/exceptions.py


class TaskRelayException(Exception):
    """Base exception for the taskrelay library."""

    pass


class ConfigurationError(TaskRelayException):
    """Raised for unknown task types and malformed task or schedule definitions.

    Configuration errors are never retried.
    """

    pass


class TaskValidationError(TaskRelayException):
    """Raised when a task input is rejected by its definition's validator."""

    pass


class TaskTimeoutError(TaskRelayException):
    """Raised when a handler runs longer than its definition allows."""

    def __init__(self, message: str = "Task timeout"):
        super().__init__(message)


class BackendError(TaskRelayException):
    """Raised when a key-value backend operation fails."""

    pass
