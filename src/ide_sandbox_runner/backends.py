"""Host isolation primitives used by the sandbox controller.

``DockerBackend`` is the production backend: one short-lived container per
execution, driven through the docker CLI. ``LocalProcessBackend`` runs the
workload as a plain process group under rlimits; it is meant for development
and tests on hosts without docker and gives much weaker isolation.
"""

from __future__ import annotations

import json
import logging
import os
import resource
import shlex
import signal as signals
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable, Protocol

from .config import DockerPolicy
from .errors import InfrastructureFault
from .models import ResourceUsage

if TYPE_CHECKING:
    from .controller import SandboxHandle
    from .limits import LimitSet
    from .profiles import RuntimeProfile

logger = logging.getLogger("ide_sandbox_runner")

# exit codes of `docker start` itself rather than of the workload
_DOCKER_CLI_FAILURES = {125}
_SIGNAL_EXIT_BASE = 128
_MAX_SIGNAL = 64


@dataclass(frozen=True)
class ExitStatus:
    exit_code: int | None
    signal: int | None
    usage: ResourceUsage
    error: str | None = None


@dataclass(frozen=True)
class SandboxRecord:
    container_id: str
    execution_id: str
    created_at: float


class IsolationBackend(Protocol):
    """Isolation primitives the controller relies on."""

    name: str
    isolates_sandboxes: bool

    def workspace_path(self, handle: "SandboxHandle") -> str: ...

    def grant_workspace(self, handle: "SandboxHandle") -> None: ...

    def argv(self, profile: "RuntimeProfile", command: list[str]) -> list[str]: ...

    def environment(self, profile: "RuntimeProfile", limits: "LimitSet") -> dict[str, str]: ...

    def prepare(self, handle: "SandboxHandle") -> None: ...

    def launch(self, handle: "SandboxHandle") -> subprocess.Popen: ...

    def poll(self, handle: "SandboxHandle") -> int | None: ...

    def outcome(self, handle: "SandboxHandle", returncode: int | None) -> ExitStatus: ...

    def signal(self, handle: "SandboxHandle", sig: int) -> None: ...

    def kill(self, handle: "SandboxHandle") -> None: ...

    def teardown(self, handle: "SandboxHandle") -> None: ...

    def health(self, images: Iterable[str] = ()) -> dict[str, Any]: ...

    def list_sandboxes(self) -> list[SandboxRecord]: ...

    def remove_sandbox(self, container_id: str) -> None: ...


def create_backend(name: str, docker: DockerPolicy | None = None) -> IsolationBackend:
    normalized = (name or "docker").strip().lower()
    if normalized == "docker":
        return DockerBackend(docker or DockerPolicy())
    if normalized == "local":
        return LocalProcessBackend()
    raise ValueError(f"不支援的 sandbox backend：{name}（可用：docker、local）")


def _chown_tree(root: Path, uid: int, gid: int) -> None:
    os.chown(root, uid, gid)
    for path in root.rglob("*"):
        os.chown(path, uid, gid, follow_symlinks=False)


def _open_tree(root: Path) -> None:
    root.chmod(0o755)
    for path in root.rglob("*"):
        if path.is_symlink():
            continue
        path.chmod(0o755 if path.is_dir() else 0o644)


def _lower_rlimit(kind: int, soft: int, hard: int) -> None:
    """Apply a limit without trying to raise the inherited hard limit."""
    _, current_hard = resource.getrlimit(kind)
    if current_hard != resource.RLIM_INFINITY:
        hard = min(hard, current_hard)
        soft = min(soft, hard)
    resource.setrlimit(kind, (soft, hard))


def _split_signal_exit(code: int) -> tuple[int | None, int | None]:
    if _SIGNAL_EXIT_BASE < code <= _SIGNAL_EXIT_BASE + _MAX_SIGNAL:
        return None, code - _SIGNAL_EXIT_BASE
    return code, None


class DockerBackend:
    """One container per sandbox, driven through the docker CLI.

    The host workspace is only ever mounted read-only at
    ``policy.source_mount``. The workload's ``/workspace`` is a tmpfs capped at
    ``fs_write_mb``; the launch command copies the sources into it before
    exec'ing the workload, so every write the submission makes counts against
    that one quota and none of it reaches the host disk.
    """

    name = "docker"
    isolates_sandboxes = True

    def __init__(self, policy: DockerPolicy) -> None:
        self.policy = policy

    def workspace_path(self, handle: "SandboxHandle") -> str:
        return handle.profile.workspace

    def grant_workspace(self, handle: "SandboxHandle") -> None:
        if os.geteuid() == 0:
            _chown_tree(handle.workspace_dir, handle.profile.user.uid, handle.profile.user.gid)
        else:
            # mounted read-only; the container user only needs to read it
            _open_tree(handle.workspace_dir)

    def argv(self, profile: "RuntimeProfile", command: list[str]) -> list[str]:
        stage = 'cp -R {src}/. {dest}/ && exec "$@"'.format(
            src=shlex.quote(self.policy.source_mount),
            dest=shlex.quote(profile.workspace),
        )
        return profile.launch_argv(["sh", "-c", stage, "sandbox-stage", *command])

    def environment(self, profile: "RuntimeProfile", limits: "LimitSet") -> dict[str, str]:
        env = dict(profile.env)
        env["LANGUAGE"] = profile.language
        return env

    def container_name(self, handle: "SandboxHandle") -> str:
        return f"{self.policy.label_prefix}-{handle.profile.language}-{handle.sandbox_id[:12]}"

    def create_command(self, handle: "SandboxHandle") -> list[str]:
        profile = handle.profile
        limits = handle.limits
        prefix = self.policy.label_prefix
        fsize = limits.fs_write_mb * 1024 * 1024
        cpu = int(limits.cpu_time_s)
        tmpfs_opt = f"rw,nosuid,nodev,noexec,size={limits.tmpfs_mb}m"
        var_tmp_opt = f"rw,nosuid,nodev,noexec,size={self.policy.var_tmp_mb}m"
        # compiled binaries run from the workspace, so it keeps exec
        workspace_opt = (
            f"rw,nosuid,nodev,exec,size={limits.fs_write_mb}m,"
            f"uid={profile.user.uid},gid={profile.user.gid},mode=0700"
        )
        cmd = [
            self.policy.binary,
            "create",
            "--name",
            self.container_name(handle),
            "--interactive",
            "--label",
            f"{prefix}.sandbox=1",
            "--label",
            f"{prefix}.execution={handle.sandbox_id}",
            "--label",
            f"{prefix}.language={profile.language}",
            "--label",
            f"{prefix}.created={int(handle.created_at)}",
            "--user",
            f"{profile.user.uid}:{profile.user.gid}",
            "--workdir",
            profile.workspace,
            "--network",
            limits.network,
            "--cap-drop",
            "ALL",
        ]
        for opt in self.policy.security_opts:
            cmd.extend(["--security-opt", opt])
        if self.policy.read_only_rootfs:
            cmd.append("--read-only")
        cmd.extend(
            [
                "--pids-limit",
                str(limits.pids),
                "--memory",
                f"{limits.memory_mb}m",
                "--memory-swap",
                f"{limits.memory_mb}m",
                "--cpus",
                str(self.policy.cpus),
                "--ulimit",
                f"cpu={cpu}:{cpu}",
                "--ulimit",
                f"nofile={limits.nofile}:{limits.nofile}",
                "--ulimit",
                f"fsize={fsize}:{fsize}",
                "--tmpfs",
                f"/tmp:{tmpfs_opt}",
                "--tmpfs",
                f"/var/tmp:{var_tmp_opt}",
                "--tmpfs",
                f"{profile.workspace}:{workspace_opt}",
                "-v",
                f"{handle.workspace_dir.resolve()}:{self.policy.source_mount}:ro",
            ]
        )
        for key, value in sorted(handle.env.items()):
            cmd.extend(["--env", f"{key}={value}"])
        cmd.extend(["--entrypoint", handle.argv[0], profile.image, *handle.argv[1:]])
        return cmd

    def prepare(self, handle: "SandboxHandle") -> None:
        completed = self._docker(self.create_command(handle))
        if completed.returncode != 0:
            raise InfrastructureFault(f"docker create 失敗：{_text(completed.stderr)[:500]}")
        container_id = _text(completed.stdout).strip()
        if not container_id:
            raise InfrastructureFault("docker create 未回傳 container id")
        handle.backend_id = container_id

    def launch(self, handle: "SandboxHandle") -> subprocess.Popen:
        if not handle.backend_id:
            raise InfrastructureFault(f"sandbox {handle.sandbox_id} 尚未建立 container")
        try:
            return subprocess.Popen(
                [self.policy.binary, "start", "--attach", "--interactive", handle.backend_id],
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=0,
                start_new_session=True,
            )
        except OSError as exc:
            raise InfrastructureFault(f"docker start 失敗：{exc}") from exc

    def poll(self, handle: "SandboxHandle") -> int | None:
        return handle.process.poll() if handle.process is not None else None

    def outcome(self, handle: "SandboxHandle", returncode: int | None) -> ExitStatus:
        state = self._inspect_state(handle)
        usage = ResourceUsage(oom_killed=bool(state.get("OOMKilled", False)))
        docker_error = str(state.get("Error") or "").strip()
        if returncode is None:
            return ExitStatus(exit_code=None, signal=None, usage=usage, error="container 未能終止")
        if docker_error or (returncode in _DOCKER_CLI_FAILURES and not state):
            return ExitStatus(exit_code=None, signal=None, usage=usage, error=docker_error or f"docker start exit {returncode}")

        code = int(state.get("ExitCode", returncode)) if state else returncode
        if usage.oom_killed:
            return ExitStatus(exit_code=None, signal=int(signals.SIGKILL), usage=usage)
        exit_code, signal_number = _split_signal_exit(code)
        return ExitStatus(exit_code=exit_code, signal=signal_number, usage=usage)

    def signal(self, handle: "SandboxHandle", sig: int) -> None:
        if not handle.backend_id:
            return
        name = signals.Signals(sig).name
        completed = self._docker([self.policy.binary, "kill", "--signal", name, handle.backend_id])
        if completed.returncode != 0:
            # usually the container has already stopped
            logger.debug("docker kill --signal %s %s: %s", name, handle.backend_id, _text(completed.stderr).strip())

    def kill(self, handle: "SandboxHandle") -> None:
        self.signal(handle, int(signals.SIGKILL))

    def teardown(self, handle: "SandboxHandle") -> None:
        if handle.backend_id:
            self.remove_sandbox(handle.backend_id)
        process = handle.process
        if process is not None and process.poll() is None:
            process.kill()
            process.wait(timeout=self.policy.command_timeout_s)

    def remove_sandbox(self, container_id: str) -> None:
        completed = self._docker([self.policy.binary, "rm", "--force", "--volumes", container_id])
        if completed.returncode != 0 and "no such container" not in _text(completed.stderr).lower():
            raise InfrastructureFault(f"docker rm 失敗：{_text(completed.stderr)[:500]}")

    def list_sandboxes(self) -> list[SandboxRecord]:
        prefix = self.policy.label_prefix
        fmt = f'{{{{.ID}}}}\t{{{{.Label "{prefix}.execution"}}}}\t{{{{.Label "{prefix}.created"}}}}'
        completed = self._docker(
            [self.policy.binary, "ps", "--all", "--no-trunc", "--filter", f"label={prefix}.sandbox=1", "--format", fmt]
        )
        if completed.returncode != 0:
            raise InfrastructureFault(f"docker ps 失敗：{_text(completed.stderr)[:500]}")
        records: list[SandboxRecord] = []
        for line in _text(completed.stdout).splitlines():
            parts = line.split("\t")
            if len(parts) != 3 or not parts[0]:
                continue
            try:
                created = float(parts[2])
            except ValueError:
                created = 0.0
            records.append(SandboxRecord(container_id=parts[0], execution_id=parts[1], created_at=created))
        return records

    def health(self, images: Iterable[str] = ()) -> dict[str, Any]:
        snapshot: dict[str, Any] = {
            "backend": self.name,
            "available": False,
            "isolated": self.isolates_sandboxes,
            "version": None,
            "images": {},
            "error": None,
        }
        try:
            completed = self._docker([self.policy.binary, "version", "--format", "{{.Server.Version}}"])
        except InfrastructureFault as exc:
            snapshot["error"] = str(exc)
            return snapshot
        if completed.returncode != 0:
            snapshot["error"] = _text(completed.stderr).strip() or "docker daemon unavailable"
            return snapshot
        snapshot["available"] = True
        snapshot["version"] = _text(completed.stdout).strip() or None
        for image in sorted(set(images)):
            inspected = self._docker([self.policy.binary, "image", "inspect", image])
            snapshot["images"][image] = inspected.returncode == 0
        return snapshot

    def _inspect_state(self, handle: "SandboxHandle") -> dict[str, Any]:
        if not handle.backend_id:
            return {}
        try:
            completed = self._docker([self.policy.binary, "inspect", "--format", "{{json .State}}", handle.backend_id])
        except InfrastructureFault:
            return {}
        if completed.returncode != 0:
            return {}
        try:
            parsed = json.loads(_text(completed.stdout) or "{}")
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}

    def _docker(self, cmd: list[str]) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=self.policy.command_timeout_s,
                check=False,
            )
        except FileNotFoundError as exc:
            raise InfrastructureFault(f"找不到 docker CLI：{self.policy.binary}") from exc
        except subprocess.TimeoutExpired as exc:
            raise InfrastructureFault(f"docker 指令逾時：{' '.join(cmd[:3])}") from exc


class LocalProcessBackend:
    """Runs the workload as its own session/process group under rlimits.

    When the runner is root each sandbox gets a uid of its own out of
    ``uid_range`` and its private tree is chowned to it, so sibling sandboxes
    cannot read each other's workspaces. Otherwise every workload runs as the
    runner's own uid and ``isolates_sandboxes`` is False.
    """

    name = "local"

    def __init__(
        self,
        *,
        use_entrypoint: bool = False,
        drop_privileges: bool = True,
        kill_wait_s: float = 5.0,
        uid_range: tuple[int, int] = (200000, 201024),
    ) -> None:
        self.use_entrypoint = use_entrypoint
        self.drop_privileges = drop_privileges
        self.kill_wait_s = kill_wait_s
        self.uid_range = uid_range
        self._uid_lock = threading.Lock()
        self._uids_in_use: set[int] = set()

    @property
    def isolates_sandboxes(self) -> bool:
        return self._switches_user()

    def _switches_user(self) -> bool:
        return self.drop_privileges and os.geteuid() == 0

    def _claim_uid(self, handle: "SandboxHandle") -> int:
        uid = handle.backend_state.get("uid")
        if uid is not None:
            return uid
        with self._uid_lock:
            for candidate in range(*self.uid_range):
                if candidate not in self._uids_in_use:
                    self._uids_in_use.add(candidate)
                    handle.backend_state["uid"] = candidate
                    return candidate
        raise InfrastructureFault("沒有可用的 sandbox uid")

    def _release_uid(self, handle: "SandboxHandle") -> None:
        uid = handle.backend_state.pop("uid", None)
        if uid is not None:
            with self._uid_lock:
                self._uids_in_use.discard(uid)

    def uids_in_use(self) -> int:
        with self._uid_lock:
            return len(self._uids_in_use)

    def workspace_path(self, handle: "SandboxHandle") -> str:
        return str(handle.workspace_dir)

    def grant_workspace(self, handle: "SandboxHandle") -> None:
        if self._switches_user():
            uid = self._claim_uid(handle)
            _chown_tree(handle.root_dir, uid, uid)

    def argv(self, profile: "RuntimeProfile", command: list[str]) -> list[str]:
        # the process group already receives every signal we send
        return profile.launch_argv(command) if self.use_entrypoint else list(command)

    def environment(self, profile: "RuntimeProfile", limits: "LimitSet") -> dict[str, str]:
        env = dict(profile.env)
        env["PATH"] = os.environ.get("PATH", env.get("PATH", "/usr/bin:/bin"))
        env["LANGUAGE"] = profile.language
        return env

    def prepare(self, handle: "SandboxHandle") -> None:
        return None

    def launch(self, handle: "SandboxHandle") -> subprocess.Popen:
        limits = handle.limits
        uid = handle.backend_state.get("uid") if self._switches_user() else None

        def _apply_limits() -> None:
            cpu = int(limits.cpu_time_s)
            memory = limits.memory_mb * 1024 * 1024
            fsize = limits.fs_write_mb * 1024 * 1024
            _lower_rlimit(resource.RLIMIT_CPU, cpu, cpu + 1)
            _lower_rlimit(resource.RLIMIT_AS, memory, memory)
            _lower_rlimit(resource.RLIMIT_FSIZE, fsize, fsize)
            _lower_rlimit(resource.RLIMIT_NOFILE, limits.nofile, limits.nofile)
            _lower_rlimit(resource.RLIMIT_CORE, 0, 0)
            if uid is not None:
                # RLIMIT_NPROC counts per uid, so it only bounds us once we own a dedicated uid
                _lower_rlimit(resource.RLIMIT_NPROC, limits.pids, limits.pids)
                os.setgroups([])
                os.setgid(uid)
                os.setuid(uid)

        if self._switches_user() and uid is None:
            raise InfrastructureFault(f"sandbox {handle.sandbox_id} 尚未分配 uid")
        try:
            return subprocess.Popen(
                handle.argv,
                cwd=str(handle.workspace_dir),
                env=handle.env,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=0,
                start_new_session=True,
                preexec_fn=_apply_limits,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            raise InfrastructureFault(f"啟動 process 失敗：{exc}") from exc

    def poll(self, handle: "SandboxHandle") -> int | None:
        process = handle.process
        if process is None:
            return None
        if process.returncode is not None:
            return process.returncode
        try:
            pid, status, rusage = os.wait4(process.pid, os.WNOHANG)
        except ChildProcessError:
            return process.poll()
        if pid == 0:
            return None
        process.returncode = os.waitstatus_to_exitcode(status)
        handle.backend_state["rusage"] = rusage
        return process.returncode

    def outcome(self, handle: "SandboxHandle", returncode: int | None) -> ExitStatus:
        rusage = handle.backend_state.get("rusage")
        usage = ResourceUsage()
        if rusage is not None:
            usage = ResourceUsage(
                cpu_time_s=round(rusage.ru_utime + rusage.ru_stime, 3),
                peak_memory_kb=int(rusage.ru_maxrss),
            )
        if returncode is None:
            return ExitStatus(exit_code=None, signal=None, usage=usage, error="process 未能終止")
        if returncode < 0:
            return ExitStatus(exit_code=None, signal=-returncode, usage=usage)
        return ExitStatus(exit_code=returncode, signal=None, usage=usage)

    def signal(self, handle: "SandboxHandle", sig: int) -> None:
        process = handle.process
        if process is None:
            return
        try:
            os.killpg(process.pid, sig)
        except ProcessLookupError:
            pass

    def kill(self, handle: "SandboxHandle") -> None:
        self.signal(handle, int(signals.SIGKILL))

    def teardown(self, handle: "SandboxHandle") -> None:
        process = handle.process
        if process is not None:
            self.kill(handle)
            deadline = time.monotonic() + self.kill_wait_s
            while self.poll(handle) is None:
                if time.monotonic() >= deadline:
                    # the uid stays claimed while anything may still run under it
                    raise InfrastructureFault(f"process group {process.pid} 未能終止")
                time.sleep(0.02)
        self._release_uid(handle)

    def health(self, images: Iterable[str] = ()) -> dict[str, Any]:
        return {
            "backend": self.name,
            "available": True,
            "isolated": self.isolates_sandboxes,
            "version": None,
            "images": {},
            "error": None,
        }

    def list_sandboxes(self) -> list[SandboxRecord]:
        return []

    def remove_sandbox(self, container_id: str) -> None:
        return None


def _text(raw: bytes | str | None) -> str:
    if raw is None:
        return ""
    if isinstance(raw, bytes):
        return raw.decode("utf-8", errors="replace")
    return raw
