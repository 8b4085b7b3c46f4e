"""Turns a terminal state plus captured output into an ``ExecutionResult``."""

from __future__ import annotations

from typing import TYPE_CHECKING

from .models import CapturedOutput, ExecutionResult, ExitClassification

if TYPE_CHECKING:
    from .controller import SandboxHandle, TerminalState

_FORCED = {
    "timeout": ExitClassification.TIMED_OUT,
    "cancelled": ExitClassification.CANCELLED,
}


def classify(terminal: "TerminalState") -> ExitClassification:
    """Once a termination signal went out, the forced reason wins over whatever exit raced it."""
    if terminal.termination_signal_sent and terminal.termination_reason in _FORCED:
        return _FORCED[terminal.termination_reason]
    if terminal.error:
        return ExitClassification.FAULTED
    if terminal.signal is not None:
        return ExitClassification.SIGNALED
    return ExitClassification.COMPLETED


def assemble(
    handle: "SandboxHandle",
    stdout: CapturedOutput,
    stderr: CapturedOutput,
    terminal: "TerminalState",
    *,
    execution_id: str | None = None,
    request_id: str = "",
    combined: CapturedOutput | None = None,
    error: str | None = None,
) -> ExecutionResult:
    classification = classify(terminal)
    duration_ms = 0
    if handle.started_at is not None and handle.finished_at is not None:
        duration_ms = max(0, int((handle.finished_at - handle.started_at) * 1000))

    detail = error or terminal.error
    exit_code = terminal.exit_code
    if classification is ExitClassification.FAULTED:
        exit_code = None

    return ExecutionResult(
        execution_id=execution_id or handle.sandbox_id,
        request_id=request_id,
        language=handle.profile.language,
        classification=classification,
        exit_code=exit_code,
        signal=terminal.signal,
        stdout=stdout,
        stderr=stderr,
        duration_ms=duration_ms,
        usage=terminal.usage,
        termination_reason=terminal.termination_reason if terminal.termination_signal_sent else None,
        combined=combined,
        error=detail,
    )
