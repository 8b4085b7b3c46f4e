"""Typed models for execution requests, results and the runner API."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, TypedDict

from .errors import ExecutionSignaled, ExecutionTimeout


class RunInputFile(TypedDict, total=False):
    path: str
    content: str
    content_b64: str


class RunRequest(TypedDict, total=False):
    request_id: str
    execution_id: str
    language: str
    files: list[RunInputFile]
    entry_file: str
    command: list[str]
    stdin: str
    stdin_b64: str
    timeout_s: float
    limits: dict[str, Any]
    interleave: bool


class RunTruncated(TypedDict):
    stdout: bool
    stderr: bool


class RunResponse(TypedDict, total=False):
    id: str
    execution_id: str
    request_id: str
    language: str
    classification: str
    exit_code: int | None
    signal: int | None
    stdout: str
    stderr: str
    output: str
    truncated: RunTruncated
    stdout_bytes: int
    stderr_bytes: int
    duration_ms: int
    timed_out: bool
    termination_reason: str | None
    usage: dict[str, Any]
    error: str


class ExitClassification(str, Enum):
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    SIGNALED = "signaled"
    CANCELLED = "cancelled"
    FAULTED = "faulted"


@dataclass(frozen=True)
class SourceFile:
    path: str
    content: bytes


@dataclass(frozen=True)
class ExecutionRequest:
    """One compile/run job as handed over by the job queue."""

    language: str
    files: tuple[SourceFile, ...]
    stdin: bytes = b""
    limit_overrides: Mapping[str, Any] = field(default_factory=dict)
    timeout_s: float | None = None
    command: tuple[str, ...] | None = None
    entry_file: str | None = None
    request_id: str = ""
    interleave: bool = False


@dataclass(frozen=True)
class CapturedOutput:
    """Bounded capture of one output stream.

    ``data`` is always the exact prefix of what the process wrote;
    ``total_bytes`` counts everything it wrote, so ``truncated`` is only set
    when the process produced more than the cap.
    """

    data: bytes = b""
    total_bytes: int = 0
    truncated: bool = False

    def text(self) -> str:
        return self.data.decode("utf-8", errors="replace")


@dataclass(frozen=True)
class ResourceUsage:
    cpu_time_s: float | None = None
    peak_memory_kb: int | None = None
    oom_killed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "cpu_time_s": self.cpu_time_s,
            "peak_memory_kb": self.peak_memory_kb,
            "oom_killed": self.oom_killed,
        }


@dataclass(frozen=True)
class ExecutionResult:
    execution_id: str
    request_id: str
    language: str
    classification: ExitClassification
    exit_code: int | None
    signal: int | None
    stdout: CapturedOutput
    stderr: CapturedOutput
    duration_ms: int
    usage: ResourceUsage = field(default_factory=ResourceUsage)
    termination_reason: str | None = None
    combined: CapturedOutput | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.classification is ExitClassification.COMPLETED and self.exit_code == 0

    @property
    def non_zero_exit(self) -> bool:
        return self.classification is ExitClassification.COMPLETED and self.exit_code not in (None, 0)

    def raise_for_outcome(self) -> None:
        """Raise for timeouts and signal deaths; completed runs pass through."""
        if self.classification is ExitClassification.TIMED_OUT:
            raise ExecutionTimeout(f"execution {self.execution_id} 逾時", execution_id=self.execution_id)
        if self.classification is ExitClassification.SIGNALED:
            raise ExecutionSignaled(
                f"execution {self.execution_id} 被 signal {self.signal} 終止",
                signal=self.signal,
                execution_id=self.execution_id,
            )

    def to_response(self) -> RunResponse:
        response: RunResponse = {
            "id": self.execution_id,
            "execution_id": self.execution_id,
            "request_id": self.request_id,
            "language": self.language,
            "classification": self.classification.value,
            "exit_code": self.exit_code,
            "signal": self.signal,
            "stdout": self.stdout.text(),
            "stderr": self.stderr.text(),
            "truncated": {"stdout": self.stdout.truncated, "stderr": self.stderr.truncated},
            "stdout_bytes": self.stdout.total_bytes,
            "stderr_bytes": self.stderr.total_bytes,
            "duration_ms": self.duration_ms,
            "timed_out": self.classification is ExitClassification.TIMED_OUT,
            "termination_reason": self.termination_reason,
            "usage": self.usage.to_dict(),
        }
        if self.combined is not None:
            response["output"] = self.combined.text()
        if self.error:
            response["error"] = self.error
        return response
