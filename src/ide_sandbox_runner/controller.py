"""Sandbox lifecycle: create, start, await, terminate and destroy."""

from __future__ import annotations

import logging
import os
import shutil
import signal as signals
import subprocess
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Iterator

from .assembler import classify
from .backends import IsolationBackend
from .config import RunnerSettings
from .errors import InfrastructureFault, ValidationError
from .limits import CapacityLease, LimitSet
from .logging_utils import log_event
from .models import ExitClassification, ResourceUsage, SourceFile
from .paths import reject_directory_conflicts, validate_relative_path, workspace_target
from .profiles import RuntimeProfile

logger = logging.getLogger("ide_sandbox_runner")

_KILL_WAIT_S = 5.0


class SandboxState(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    SIGNALED = "signaled"
    CANCELLED = "cancelled"
    FAULTED = "faulted"
    DESTROYED = "destroyed"


_STATE_FOR = {
    ExitClassification.COMPLETED: SandboxState.COMPLETED,
    ExitClassification.TIMED_OUT: SandboxState.TIMED_OUT,
    ExitClassification.SIGNALED: SandboxState.SIGNALED,
    ExitClassification.CANCELLED: SandboxState.CANCELLED,
    ExitClassification.FAULTED: SandboxState.FAULTED,
}


@dataclass
class SandboxHandle:
    """Live bookkeeping for one sandbox. Never reused across requests."""

    sandbox_id: str
    profile: RuntimeProfile
    limits: LimitSet
    root_dir: Path
    workspace_dir: Path
    lease: CapacityLease | None = None
    argv: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    state: SandboxState = SandboxState.CREATED
    backend_id: str | None = None
    process: subprocess.Popen | None = None
    created_at: float = field(default_factory=time.time)
    started_at: float | None = None
    finished_at: float | None = None
    termination_reason: str | None = None
    termination_signal_sent: bool = False
    backend_state: dict[str, Any] = field(default_factory=dict)
    destroyed: bool = False
    _destroy_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)


@dataclass(frozen=True)
class TerminalState:
    """What the controller observed when the sandboxed process ended."""

    returncode: int | None
    exit_code: int | None
    signal: int | None
    termination_reason: str | None
    termination_signal_sent: bool
    usage: ResourceUsage = field(default_factory=ResourceUsage)
    error: str | None = None


class SandboxController:
    def __init__(self, backend: IsolationBackend, settings: RunnerSettings) -> None:
        self.backend = backend
        self.settings = settings

    def create(
        self,
        profile: RuntimeProfile,
        limits: LimitSet,
        files: Iterable[SourceFile],
        lease: CapacityLease | None = None,
        *,
        command: Iterable[str] | None = None,
        entry_file: str | None = None,
        sandbox_id: str | None = None,
    ) -> SandboxHandle:
        """Materialize the workspace and prepare the launch; destroys on failure."""
        sandbox_id = sandbox_id or uuid.uuid4().hex
        jobs_dir = self.settings.jobs_dir
        root_dir = jobs_dir / sandbox_id
        handle = SandboxHandle(
            sandbox_id=sandbox_id,
            profile=profile,
            limits=limits,
            root_dir=root_dir,
            workspace_dir=root_dir / "workspace",
            lease=lease,
        )
        files = tuple(files)
        try:
            if not files:
                raise ValidationError("至少需要一個 source file")
            reject_directory_conflicts(validate_relative_path(source.path) for source in files)
            jobs_dir.mkdir(parents=True, exist_ok=True)
            jobs_dir.chmod(0o711)
            root_dir.mkdir(mode=0o700)
            handle.workspace_dir.mkdir(mode=0o700)
            for source in files:
                target = workspace_target(handle.workspace_dir, source.path)
                if target.exists():
                    raise ValidationError(f"重複的 source file：{source.path}")
                try:
                    target.parent.mkdir(parents=True, exist_ok=True)
                    target.write_bytes(source.content)
                except (FileExistsError, NotADirectoryError, IsADirectoryError) as exc:
                    raise ValidationError(f"source file 路徑衝突：{source.path}") from exc
            self.backend.grant_workspace(handle)

            entry = entry_file or files[0].path
            workload = profile.build_command(entry, command, workspace=self.backend.workspace_path(handle))
            handle.argv = self.backend.argv(profile, workload)
            handle.env = self.backend.environment(profile, limits)
            self.backend.prepare(handle)
        except (ValidationError, InfrastructureFault):
            self.destroy(handle)
            raise
        except Exception as exc:
            self.destroy(handle)
            raise InfrastructureFault(f"建立 sandbox 失敗：{exc}") from exc

        log_event(
            "sandbox.create",
            sandbox_id=sandbox_id,
            language=profile.language,
            backend=self.backend.name,
            backend_id=handle.backend_id,
            files=len(files),
            limits=limits.to_dict(),
        )
        return handle

    def start(self, handle: SandboxHandle) -> None:
        if handle.state is not SandboxState.CREATED:
            raise InfrastructureFault(f"sandbox {handle.sandbox_id} 狀態為 {handle.state.value}，無法啟動")
        try:
            handle.process = self.backend.launch(handle)
        except InfrastructureFault:
            self.destroy(handle)
            raise
        except Exception as exc:
            self.destroy(handle)
            raise InfrastructureFault(f"啟動 sandbox 失敗：{exc}") from exc
        handle.started_at = time.monotonic()
        handle.state = SandboxState.RUNNING

    def await_completion(
        self,
        handle: SandboxHandle,
        deadline: float,
        cancel_event: threading.Event | None = None,
    ) -> TerminalState:
        """Wait for natural exit, the monotonic ``deadline`` or cancellation."""
        if handle.state is not SandboxState.RUNNING:
            raise InfrastructureFault(f"sandbox {handle.sandbox_id} 尚未執行")
        try:
            returncode = self._wait(handle, deadline, cancel_event)
            status = self.backend.outcome(handle, returncode)
        except Exception as exc:
            logger.exception("等待 sandbox %s 時發生錯誤", handle.sandbox_id)
            self.drain_or_reap(handle)
            terminal = TerminalState(
                returncode=None,
                exit_code=None,
                signal=None,
                termination_reason=handle.termination_reason,
                termination_signal_sent=handle.termination_signal_sent,
                error=str(exc) or exc.__class__.__name__,
            )
        else:
            terminal = TerminalState(
                returncode=returncode,
                exit_code=status.exit_code,
                signal=status.signal,
                termination_reason=handle.termination_reason,
                termination_signal_sent=handle.termination_signal_sent,
                usage=status.usage,
                error=status.error,
            )
        handle.finished_at = time.monotonic()
        handle.state = _STATE_FOR[classify(terminal)]
        return terminal

    def _wait(self, handle: SandboxHandle, deadline: float, cancel_event: threading.Event | None) -> int | None:
        interval = self.settings.poll_interval_s
        while True:
            returncode = self.backend.poll(handle)
            if returncode is not None:
                return returncode
            if cancel_event is not None and cancel_event.is_set():
                return self._terminate(handle, "cancelled")
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return self._terminate(handle, "timeout")
            pause = min(interval, remaining)
            if cancel_event is not None:
                cancel_event.wait(pause)
            else:
                time.sleep(pause)

    def _terminate(self, handle: SandboxHandle, reason: str) -> int | None:
        """SIGTERM the group, wait the grace period, then SIGKILL."""
        returncode = self.backend.poll(handle)
        if returncode is not None:
            # exited before we signalled: the natural exit stands
            return returncode
        handle.termination_reason = reason
        handle.termination_signal_sent = True
        grace = handle.limits.grace_period_s
        log_event("sandbox.terminate", sandbox_id=handle.sandbox_id, reason=reason, grace_period_s=grace)

        self.backend.signal(handle, int(signals.SIGTERM))
        returncode = self._wait_exit(handle, grace)
        if returncode is not None:
            return returncode
        self.backend.kill(handle)
        return self._wait_exit(handle, _KILL_WAIT_S)

    def _wait_exit(self, handle: SandboxHandle, timeout: float) -> int | None:
        deadline = time.monotonic() + timeout
        while True:
            returncode = self.backend.poll(handle)
            if returncode is not None or time.monotonic() >= deadline:
                return returncode
            time.sleep(min(self.settings.poll_interval_s, max(0.0, deadline - time.monotonic())))

    def drain_or_reap(self, handle: SandboxHandle) -> None:
        """Kill group members still holding the output pipes after the main process ended."""
        try:
            self.backend.kill(handle)
        except Exception as exc:  # noqa: BLE001
            logger.warning("回收 sandbox %s 殘留 process 失敗：%s", handle.sandbox_id, exc)

    def destroy(self, handle: SandboxHandle) -> None:
        """Tear the sandbox down; safe to call any number of times."""
        with handle._destroy_lock:
            if handle.destroyed:
                return
            handle.destroyed = True

        attempts = max(1, self.settings.destroy_attempts)
        cleaned = False
        try:
            for attempt in range(1, attempts + 1):
                try:
                    self.backend.teardown(handle)
                    if handle.root_dir.exists():
                        shutil.rmtree(handle.root_dir)
                    cleaned = True
                    break
                except Exception as exc:  # noqa: BLE001
                    log_event(
                        "sandbox.destroy.retry",
                        sandbox_id=handle.sandbox_id,
                        attempt=attempt,
                        attempts=attempts,
                        error=str(exc),
                    )
                    if attempt < attempts:
                        time.sleep(self.settings.destroy_retry_delay_s * attempt)
            if not cleaned:
                logger.error("sandbox %s 清理失敗，留待 janitor 處理", handle.sandbox_id)
        finally:
            if handle.lease is not None:
                handle.lease.release()
            handle.state = SandboxState.DESTROYED
            log_event(
                "sandbox.destroy",
                sandbox_id=handle.sandbox_id,
                backend_id=handle.backend_id,
                cleaned=cleaned,
                pid=getattr(handle.process, "pid", None),
                workspace_removed=not os.path.exists(handle.root_dir),
            )

    @contextmanager
    def session(
        self,
        profile: RuntimeProfile,
        limits: LimitSet,
        files: Iterable[SourceFile],
        lease: CapacityLease | None = None,
        **options: Any,
    ) -> Iterator[SandboxHandle]:
        handle = self.create(profile, limits, files, lease, **options)
        try:
            yield handle
        finally:
            self.destroy(handle)
