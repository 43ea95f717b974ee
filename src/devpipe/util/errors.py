"""Application-level error types."""


class DevpipeError(Exception):
    """Base error for devpipe."""


class ConfigurationError(DevpipeError):
    """Raised when the manifest is invalid: unknown dependency, cycle, conflicting install."""


class StateError(DevpipeError):
    """Raised when a lifecycle operation is not allowed from the environment's state."""


class ExecutionError(DevpipeError):
    """Raised when a command exits non-zero."""

    def __init__(self, message: str, exit_code: int | None = None) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class AggregationError(DevpipeError):
    """Raised when a merge step is missing required contributing results."""

    def __init__(self, message: str, missing: list[str] | None = None) -> None:
        super().__init__(message)
        self.missing = missing or []


class EnvironmentConflictError(DevpipeError):
    """Raised when another mutation already holds the environment."""


class RunStateError(DevpipeError):
    """Raised when a persisted run state cannot be read."""
