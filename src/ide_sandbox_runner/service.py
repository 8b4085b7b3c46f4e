"""Caller-facing execution service tying registry, limits, controller and capture together."""

from __future__ import annotations

import base64
import binascii
import logging
import re
import threading
import time
import uuid
from collections import Counter, OrderedDict
from dataclasses import dataclass
from typing import Any, Mapping

from .assembler import assemble
from .backends import IsolationBackend, create_backend
from .capture import pump
from .config import RunnerSettings
from .controller import SandboxController
from .errors import CapacityExceeded, InfrastructureFault, NotFoundError, ValidationError
from .janitor import Janitor
from .limits import ResourceAccountant, compute_limits
from .logging_utils import log_event
from .models import ExecutionRequest, ExecutionResult, RunRequest, RunResponse, SourceFile
from .paths import reject_directory_conflicts, validate_relative_path
from .profiles import ProfileRegistry

logger = logging.getLogger("ide_sandbox_runner")

_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$")


@dataclass
class _ActiveExecution:
    execution_id: str
    request_id: str
    language: str
    started_at: float
    cancel_event: threading.Event


class ExecutionService:
    def __init__(
        self,
        settings: RunnerSettings,
        *,
        registry: ProfileRegistry | None = None,
        backend: IsolationBackend | None = None,
    ) -> None:
        self.settings = settings
        self.registry = registry or ProfileRegistry.load(settings.profiles_path)
        self.backend = backend or create_backend(settings.backend, settings.docker)
        self.controller = SandboxController(self.backend, settings)
        self.accountant = ResourceAccountant(settings.max_concurrency, settings.memory_budget_mb)
        self.janitor = Janitor(self.backend, settings, active_ids=self.active_ids)
        self._lock = threading.Lock()
        self._active: dict[str, _ActiveExecution] = {}
        self._history: OrderedDict[str, tuple[float, ExecutionResult]] = OrderedDict()
        self._counters: Counter[str] = Counter()
        self._duration_total_ms = 0

    def execute(
        self,
        request: ExecutionRequest,
        cancel_event: threading.Event | None = None,
        execution_id: str | None = None,
    ) -> ExecutionResult:
        """Run one request to completion; returns a result or raises a typed error."""
        cancel_event = cancel_event or threading.Event()
        try:
            self._validate_request(request)
            profile = self.registry.resolve(request.language)
            limits = compute_limits(request, profile, self.settings)
            execution_id = self._claim_id(execution_id, cancel_event)
        except (ValidationError, NotFoundError):
            self._count("rejected")
            raise

        request_id = request.request_id or uuid.uuid4().hex
        try:
            lease = self.accountant.acquire(limits)
        except CapacityExceeded:
            self._release_id(execution_id)
            self._count("rejected")
            raise

        with self._lock:
            self._active[execution_id] = _ActiveExecution(
                execution_id=execution_id,
                request_id=request_id,
                language=profile.language,
                started_at=time.time(),
                cancel_event=cancel_event,
            )
        log_event(
            "sandbox.run.start",
            execution_id=execution_id,
            request_id=request_id,
            language=profile.language,
            files=len(request.files),
            stdin_bytes=len(request.stdin),
            timeout_s=limits.wall_timeout_s,
        )

        result: ExecutionResult | None = None
        try:
            with self.controller.session(
                profile,
                limits,
                request.files,
                lease,
                command=request.command,
                entry_file=request.entry_file,
                sandbox_id=execution_id,
            ) as handle:
                self.controller.start(handle)
                deadline = handle.started_at + limits.wall_timeout_s
                channel = pump(handle, request.stdin, limits.max_output_bytes, interleave=request.interleave)
                terminal = self.controller.await_completion(handle, deadline, cancel_event)
                if not channel.wait(self.settings.drain_timeout_s):
                    self.controller.drain_or_reap(handle)
                    channel.wait(self.settings.drain_timeout_s)
                stdout, stderr, combined = channel.outputs()
                for exc in channel.errors:
                    logger.warning("sandbox %s 串流擷取錯誤：%s", execution_id, exc)
                result = assemble(
                    handle,
                    stdout,
                    stderr,
                    terminal,
                    execution_id=execution_id,
                    request_id=request_id,
                    combined=combined,
                )
            return result
        except InfrastructureFault:
            self._count("infrastructure_fault")
            raise
        finally:
            with self._lock:
                self._active.pop(execution_id, None)
            if result is not None:
                self._record(result)
            log_event(
                "sandbox.run.finish",
                execution_id=execution_id,
                request_id=request_id,
                language=profile.language,
                classification=result.classification.value if result else "error",
                exit_code=result.exit_code if result else None,
                signal=result.signal if result else None,
                duration_ms=result.duration_ms if result else None,
                stdout_bytes=result.stdout.total_bytes if result else 0,
                stderr_bytes=result.stderr.total_bytes if result else 0,
                truncated=bool(result and (result.stdout.truncated or result.stderr.truncated)),
            )

    def run(self, payload: RunRequest) -> RunResponse:
        """JSON wire form of ``execute``."""
        if not isinstance(payload, Mapping):
            raise ValidationError("request 必須是 JSON object")
        request = self._request_from_payload(payload)
        execution_id = str(payload.get("execution_id") or "").strip() or None
        return self.execute(request, execution_id=execution_id).to_response()

    def cancel(self, execution_id: str) -> bool:
        with self._lock:
            active = self._active.get(execution_id)
        if active is None:
            return False
        active.cancel_event.set()
        log_event("sandbox.cancel", execution_id=execution_id, request_id=active.request_id)
        return True

    def is_active(self, execution_id: str) -> bool:
        with self._lock:
            return execution_id in self._active

    def active_ids(self) -> list[str]:
        with self._lock:
            return list(self._active)

    def get_execution(self, execution_id: str) -> ExecutionResult | None:
        with self._lock:
            entry = self._history.get(execution_id)
        return entry[1] if entry else None

    def cleanup_history(self, max_age_s: float | None = None) -> int:
        max_age = self.settings.history_max_age_s if max_age_s is None else max_age_s
        cutoff = time.time() - max_age
        with self._lock:
            stale = [key for key, (recorded_at, _) in self._history.items() if recorded_at <= cutoff]
            for key in stale:
                del self._history[key]
        return len(stale)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            counters = dict(self._counters)
            finished = sum(counters.get(key, 0) for key in ("completed", "timed_out", "signaled", "cancelled", "faulted"))
            average = int(self._duration_total_ms / finished) if finished else 0
            active = len(self._active)
            history = len(self._history)
        return {
            "total": finished,
            "completed": counters.get("completed", 0),
            "timed_out": counters.get("timed_out", 0),
            "signaled": counters.get("signaled", 0),
            "cancelled": counters.get("cancelled", 0),
            "faulted": counters.get("faulted", 0),
            "rejected": counters.get("rejected", 0),
            "infrastructure_faults": counters.get("infrastructure_fault", 0),
            "average_duration_ms": average,
            "active": active,
            "history": history,
            "capacity": self.accountant.snapshot(),
        }

    def health_snapshot(self) -> dict[str, Any]:
        profiles = self.registry.snapshot()
        backend = self.backend.health(images={entry["image"] for entry in profiles.values()})
        return {
            "status": "ok" if backend.get("available") else "degraded",
            "backend": backend,
            "languages": self.registry.languages(),
            "concurrency": self.accountant.snapshot(),
            "active": len(self.active_ids()),
        }

    def _claim_id(self, execution_id: str | None, cancel_event: threading.Event) -> str:
        candidate = execution_id or uuid.uuid4().hex
        if not _ID_PATTERN.match(candidate):
            raise ValidationError("execution_id 只能包含英數字、底線與連字號")
        with self._lock:
            if candidate in self._active or candidate in self._history:
                raise ValidationError(f"execution_id 已存在：{candidate}")
            # reserved until the run registers itself
            self._active[candidate] = _ActiveExecution(candidate, "", "", time.time(), cancel_event)
        return candidate

    def _release_id(self, execution_id: str) -> None:
        with self._lock:
            self._active.pop(execution_id, None)

    def _record(self, result: ExecutionResult) -> None:
        with self._lock:
            self._history[result.execution_id] = (time.time(), result)
            while len(self._history) > max(1, self.settings.history_size):
                self._history.popitem(last=False)
            self._counters[result.classification.value] += 1
            self._duration_total_ms += result.duration_ms

    def _count(self, key: str) -> None:
        with self._lock:
            self._counters[key] += 1

    def _validate_request(self, request: ExecutionRequest) -> None:
        limits = self.settings.limits
        if not str(request.language or "").strip():
            raise ValidationError("language 不可為空")
        if not request.files:
            raise ValidationError("files 至少需要一個檔案")
        if len(request.files) > limits.max_file_count:
            raise ValidationError("files 數量超過上限")

        seen: set[str] = set()
        total = 0
        for source in request.files:
            rel = validate_relative_path(source.path)
            if rel in seen:
                raise ValidationError(f"重複的 source file：{rel}")
            seen.add(rel)
            size = len(source.content)
            if size > limits.max_single_file_bytes:
                raise ValidationError(f"source file 超過單檔上限：{rel}")
            total += size
            if total > limits.max_input_total_bytes:
                raise ValidationError("files 總大小超過上限")
        reject_directory_conflicts(seen)

        if request.entry_file is not None and validate_relative_path(request.entry_file) not in seen:
            raise ValidationError(f"entry_file 不在 files 中：{request.entry_file}")
        if len(request.stdin) > limits.max_stdin_bytes:
            raise ValidationError("stdin 大小超過上限")
        if request.command is not None and (
            not request.command or not all(isinstance(token, str) and token for token in request.command)
        ):
            raise ValidationError("command 必須是非空字串陣列")

    def _request_from_payload(self, payload: Mapping[str, Any]) -> ExecutionRequest:
        raw_files = payload.get("files")
        if not isinstance(raw_files, list) or not raw_files:
            raise ValidationError("files 必須是非空陣列")
        if len(raw_files) > self.settings.limits.max_file_count:
            raise ValidationError("files 數量超過上限")
        files = tuple(self._decode_file(item) for item in raw_files)

        if "stdin_b64" in payload:
            stdin = _b64decode(payload.get("stdin_b64"), "stdin_b64")
        else:
            stdin = str(payload.get("stdin") or "").encode("utf-8")

        command = payload.get("command")
        if command is not None:
            if not isinstance(command, list):
                raise ValidationError("command 必須是字串陣列")
            command = tuple(command)

        limits = payload.get("limits") or {}
        if not isinstance(limits, Mapping):
            raise ValidationError("limits 必須是 object")

        timeout_s = payload.get("timeout_s")
        if timeout_s is not None and (isinstance(timeout_s, bool) or not isinstance(timeout_s, (int, float))):
            raise ValidationError("timeout_s 必須是數字")

        entry_file = payload.get("entry_file")
        return ExecutionRequest(
            language=str(payload.get("language") or "").strip(),
            files=files,
            stdin=stdin,
            limit_overrides=dict(limits),
            timeout_s=timeout_s,
            command=command,
            entry_file=str(entry_file) if entry_file else None,
            request_id=str(payload.get("request_id") or "").strip(),
            interleave=bool(payload.get("interleave", False)),
        )

    def _decode_file(self, item: Any) -> SourceFile:
        if not isinstance(item, Mapping):
            raise ValidationError("files 項目必須是 object")
        rel = validate_relative_path(str(item.get("path") or ""))
        if "content_b64" in item:
            data = _b64decode(item.get("content_b64"), rel)
        elif isinstance(item.get("content"), str):
            data = item["content"].encode("utf-8")
        else:
            raise ValidationError(f"source file 缺少 content：{rel}")
        return SourceFile(path=rel, content=data)


def _b64decode(raw: Any, label: str) -> bytes:
    try:
        return base64.b64decode(str(raw or ""), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError(f"非法 base64：{label}") from exc
