"""Sandboxed compile/run execution core for the IDE backend."""

from .config import RunnerSettings, load_settings
from .errors import (
    CapacityExceeded,
    ExecutionSignaled,
    ExecutionTimeout,
    InfrastructureFault,
    NotFoundError,
    SandboxError,
    ValidationError,
)
from .models import ExecutionRequest, ExecutionResult, ExitClassification, SourceFile
from .profiles import ProfileRegistry, RuntimeProfile
from .service import ExecutionService

__all__ = [
    "RunnerSettings",
    "load_settings",
    "CapacityExceeded",
    "ExecutionSignaled",
    "ExecutionTimeout",
    "InfrastructureFault",
    "NotFoundError",
    "SandboxError",
    "ValidationError",
    "ExecutionRequest",
    "ExecutionResult",
    "ExitClassification",
    "SourceFile",
    "ProfileRegistry",
    "RuntimeProfile",
    "ExecutionService",
]
