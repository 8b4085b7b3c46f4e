"""Shared helpers for sandbox runner tests."""

import signal
import sys
from pathlib import Path
from typing import Any

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from ide_sandbox_runner.backends import ExitStatus, LocalProcessBackend
from ide_sandbox_runner.config import RunnerSettings
from ide_sandbox_runner.models import ResourceUsage
from ide_sandbox_runner.profiles import ProfileRegistry


SHELL_PROFILES = {
    "version": 1,
    "defaults": {
        "user": {"name": "appuser", "uid": 1001, "gid": 1001},
        "workspace": "/workspace",
        "entrypoint": ["dumb-init", "--"],
        "forwards_signals_to_child": True,
        "env": {"HOME": "/tmp", "USER": "appuser"},
    },
    "profiles": {
        "shell": {
            "image": "ide-shell:latest",
            "aliases": ["sh"],
            "source_extension": "sh",
            "default_command": ["sh", "{main}"],
        },
    },
}


def shell_registry() -> ProfileRegistry:
    return ProfileRegistry.from_mapping(SHELL_PROFILES)


def fast_settings(jobs_dir: Path, **overrides: Any) -> RunnerSettings:
    options: dict[str, Any] = {
        "jobs_dir": jobs_dir,
        "backend": "local",
        "poll_interval_s": 0.01,
        "drain_timeout_s": 1.0,
        "destroy_retry_delay_s": 0.0,
    }
    options.update(overrides)
    return RunnerSettings(**options)


def local_backend() -> LocalProcessBackend:
    # tests run the workload as the current user so it can reach the interpreter's tools
    return LocalProcessBackend(drop_privileges=False, kill_wait_s=2.0)


class FakeProcess:
    def __init__(self) -> None:
        self.pid = 4242
        self.returncode = None
        self.stdin = None
        self.stdout = None
        self.stderr = None

    def poll(self):
        return self.returncode


class FakeBackend:
    """In-memory backend with switchable failure points; no real processes."""

    name = "fake"
    isolates_sandboxes = True

    def __init__(
        self,
        *,
        fail_prepare: bool = False,
        fail_launch: bool = False,
        fail_poll: bool = False,
        exit_after_polls: int | None = None,
        exit_code: int = 0,
        honours_term: bool = True,
        teardown_failures: int = 0,
    ) -> None:
        self.fail_prepare = fail_prepare
        self.fail_launch = fail_launch
        self.fail_poll = fail_poll
        self.exit_after_polls = exit_after_polls
        self.exit_code = exit_code
        self.honours_term = honours_term
        self.teardown_failures = teardown_failures
        self.polls = 0
        self.signals: list[int] = []
        self.teardowns = 0
        self.exit_on_next_poll = False

    def workspace_path(self, handle) -> str:
        return handle.profile.workspace

    def grant_workspace(self, handle) -> None:
        return None

    def argv(self, profile, command):
        return profile.launch_argv(command)

    def environment(self, profile, limits):
        return dict(profile.env)

    def prepare(self, handle) -> None:
        if self.fail_prepare:
            raise RuntimeError("prepare exploded")
        handle.backend_id = "fake-" + handle.sandbox_id[:8]

    def launch(self, handle):
        if self.fail_launch:
            raise RuntimeError("launch exploded")
        return FakeProcess()

    def poll(self, handle):
        if self.fail_poll:
            raise RuntimeError("poll exploded")
        self.polls += 1
        process = handle.process
        if process.returncode is None and (
            self.exit_on_next_poll or (self.exit_after_polls is not None and self.polls >= self.exit_after_polls)
        ):
            process.returncode = self.exit_code
        return process.returncode

    def outcome(self, handle, returncode):
        if returncode is None:
            return ExitStatus(exit_code=None, signal=None, usage=ResourceUsage(), error="stuck")
        if returncode < 0:
            return ExitStatus(exit_code=None, signal=-returncode, usage=ResourceUsage())
        return ExitStatus(exit_code=returncode, signal=None, usage=ResourceUsage())

    def signal(self, handle, sig: int) -> None:
        self.signals.append(sig)
        process = handle.process
        if process is None or process.returncode is not None:
            return
        if sig == signal.SIGKILL or self.honours_term:
            process.returncode = -sig

    def kill(self, handle) -> None:
        self.signal(handle, int(signal.SIGKILL))

    def teardown(self, handle) -> None:
        self.teardowns += 1
        if self.teardown_failures > 0:
            self.teardown_failures -= 1
            raise RuntimeError("teardown exploded")

    def health(self, images=()):
        return {"backend": self.name, "available": True, "version": None, "images": {}, "error": None}

    def list_sandboxes(self):
        return []

    def remove_sandbox(self, container_id: str) -> None:
        return None
