from typing import Any


class EngineError(Exception):
    """Base class for errors raised by the generation engine."""


class ResourceNotFound(EngineError):
    """A project or fragment the run depends on does not exist."""


class EnvironmentProvisioningError(EngineError):
    """The execution environment could not be created or reconnected."""


class UnsupportedOperation(EngineError):
    """An operation was invoked on an environment that lacks the capability."""

    def __init__(self, operation: str, backend: str) -> None:
        super().__init__(f"Operation '{operation}' is not supported by the {backend} environment")
        self.operation = operation
        self.backend = backend


class InvalidPathError(EngineError, ValueError):
    """A file path failed workspace validation."""

    def __init__(self, path: Any, reason: str) -> None:
        super().__init__(f"Invalid file path: {path!r} ({reason})")
        self.path = path
        self.reason = reason

