"""Error taxonomy for the sandbox runner."""

from __future__ import annotations


class SandboxError(RuntimeError):
    """Base error for all sandbox runner failures."""


class NotFoundError(SandboxError, LookupError):
    """Raised when a language id has no runtime profile."""


class ValidationError(SandboxError, ValueError):
    """Raised when a request is malformed or outside the allowed ranges."""


class InfrastructureFault(SandboxError):
    """Raised when the sandbox itself failed, as opposed to the submitted code."""


class CapacityExceeded(InfrastructureFault):
    """Raised when host-wide resource ceilings leave no room for a new execution."""


class ExecutionTimeout(SandboxError):
    """Raised by ``ExecutionResult.raise_for_outcome`` for timed-out executions."""

    def __init__(self, message: str, *, execution_id: str | None = None) -> None:
        super().__init__(message)
        self.execution_id = execution_id


class ExecutionSignaled(SandboxError):
    """Raised by ``ExecutionResult.raise_for_outcome`` when the workload died by a signal."""

    def __init__(self, message: str, *, signal: int | None = None, execution_id: str | None = None) -> None:
        super().__init__(message)
        self.signal = signal
        self.execution_id = execution_id
