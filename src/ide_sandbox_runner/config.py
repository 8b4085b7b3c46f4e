"""Runtime settings for the sandbox runner."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

ENV_PREFIX = "IDE_SANDBOX_"


@dataclass(frozen=True)
class RunnerLimits:
    """Size limits on what a caller may submit."""

    max_file_count: int = 32
    max_single_file_bytes: int = 2 * 1024 * 1024
    max_input_total_bytes: int = 8 * 1024 * 1024
    max_stdin_bytes: int = 1024 * 1024


@dataclass(frozen=True)
class LimitDefaults:
    """Limits applied when neither the profile nor the caller says otherwise."""

    wall_timeout_s: float = 10.0
    cpu_time_s: int = 10
    memory_mb: int = 256
    pids: int = 50
    max_output_bytes: int = 1024 * 1024
    fs_write_mb: int = 100
    network: str = "none"
    nofile: int = 1024
    tmpfs_mb: int = 50
    grace_period_s: float = 5.0


@dataclass(frozen=True)
class LimitCeilings:
    """Operator hard ceilings; computed limits are clamped to these."""

    wall_timeout_s: float = 30.0
    cpu_time_s: int = 30
    memory_mb: int = 512
    pids: int = 128
    max_output_bytes: int = 8 * 1024 * 1024
    fs_write_mb: int = 256
    allow_network: bool = False
    nofile: int = 4096
    tmpfs_mb: int = 256
    grace_period_s: float = 10.0


@dataclass(frozen=True)
class DockerPolicy:
    binary: str = "docker"
    cpus: float = 1.0
    label_prefix: str = "ide"
    command_timeout_s: float = 30.0
    read_only_rootfs: bool = True
    security_opts: tuple[str, ...] = ("no-new-privileges",)
    source_mount: str = "/opt/sandbox/src"
    var_tmp_mb: int = 10


@dataclass(frozen=True)
class RunnerSettings:
    host: str = "127.0.0.1"
    port: int = 8088
    api_key: str = ""
    backend: str = "docker"
    max_concurrency: int = 4
    memory_budget_mb: int = 4096
    jobs_dir: Path = Path(".sandbox_jobs")
    profiles_path: Path | None = None
    poll_interval_s: float = 0.05
    drain_timeout_s: float = 2.0
    destroy_attempts: int = 3
    destroy_retry_delay_s: float = 0.2
    history_size: int = 256
    history_max_age_s: float = 24 * 60 * 60
    orphan_max_age_s: float = 30 * 60
    log_file: Path | None = None
    limits: RunnerLimits = field(default_factory=RunnerLimits)
    defaults: LimitDefaults = field(default_factory=LimitDefaults)
    ceilings: LimitCeilings = field(default_factory=LimitCeilings)
    docker: DockerPolicy = field(default_factory=DockerPolicy)


def _env(name: str, default: str) -> str:
    return os.environ.get(ENV_PREFIX + name, default)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(ENV_PREFIX + name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_path(name: str) -> Path | None:
    raw = os.environ.get(ENV_PREFIX + name, "").strip()
    return Path(raw).expanduser() if raw else None


def load_settings() -> RunnerSettings:
    limits = RunnerLimits()
    defaults = LimitDefaults()
    ceilings = LimitCeilings()
    docker = DockerPolicy()
    return RunnerSettings(
        host=_env("HOST", "127.0.0.1"),
        port=int(_env("PORT", "8088")),
        api_key=_env("API_KEY", ""),
        backend=_env("BACKEND", "docker").strip().lower(),
        max_concurrency=int(_env("MAX_CONCURRENCY", "4")),
        memory_budget_mb=int(_env("MEMORY_BUDGET_MB", "4096")),
        jobs_dir=Path(_env("JOBS_DIR", ".sandbox_jobs")),
        profiles_path=_env_path("PROFILES"),
        poll_interval_s=float(_env("POLL_INTERVAL_S", "0.05")),
        drain_timeout_s=float(_env("DRAIN_TIMEOUT_S", "2.0")),
        destroy_attempts=int(_env("DESTROY_ATTEMPTS", "3")),
        destroy_retry_delay_s=float(_env("DESTROY_RETRY_DELAY_S", "0.2")),
        history_size=int(_env("HISTORY_SIZE", "256")),
        history_max_age_s=float(_env("HISTORY_MAX_AGE_S", str(24 * 60 * 60))),
        orphan_max_age_s=float(_env("ORPHAN_MAX_AGE_S", str(30 * 60))),
        log_file=_env_path("LOG_FILE"),
        limits=RunnerLimits(
            max_file_count=int(_env("MAX_FILE_COUNT", str(limits.max_file_count))),
            max_single_file_bytes=int(_env("MAX_SINGLE_FILE_BYTES", str(limits.max_single_file_bytes))),
            max_input_total_bytes=int(_env("MAX_INPUT_TOTAL_BYTES", str(limits.max_input_total_bytes))),
            max_stdin_bytes=int(_env("MAX_STDIN_BYTES", str(limits.max_stdin_bytes))),
        ),
        defaults=LimitDefaults(
            wall_timeout_s=float(_env("DEFAULT_TIMEOUT_S", str(defaults.wall_timeout_s))),
            cpu_time_s=int(_env("DEFAULT_CPU_TIME_S", str(defaults.cpu_time_s))),
            memory_mb=int(_env("DEFAULT_MEMORY_MB", str(defaults.memory_mb))),
            pids=int(_env("DEFAULT_PIDS", str(defaults.pids))),
            max_output_bytes=int(_env("DEFAULT_MAX_OUTPUT_BYTES", str(defaults.max_output_bytes))),
            fs_write_mb=int(_env("DEFAULT_FS_WRITE_MB", str(defaults.fs_write_mb))),
            network=_env("DEFAULT_NETWORK", defaults.network),
            nofile=int(_env("DEFAULT_NOFILE", str(defaults.nofile))),
            tmpfs_mb=int(_env("DEFAULT_TMPFS_MB", str(defaults.tmpfs_mb))),
            grace_period_s=float(_env("GRACE_PERIOD_S", str(defaults.grace_period_s))),
        ),
        ceilings=LimitCeilings(
            wall_timeout_s=float(_env("MAX_TIMEOUT_S", str(ceilings.wall_timeout_s))),
            cpu_time_s=int(_env("MAX_CPU_TIME_S", str(ceilings.cpu_time_s))),
            memory_mb=int(_env("MAX_MEMORY_MB", str(ceilings.memory_mb))),
            pids=int(_env("MAX_PIDS", str(ceilings.pids))),
            max_output_bytes=int(_env("MAX_OUTPUT_BYTES", str(ceilings.max_output_bytes))),
            fs_write_mb=int(_env("MAX_FS_WRITE_MB", str(ceilings.fs_write_mb))),
            allow_network=_env_bool("ALLOW_NETWORK", ceilings.allow_network),
            nofile=int(_env("MAX_NOFILE", str(ceilings.nofile))),
            tmpfs_mb=int(_env("MAX_TMPFS_MB", str(ceilings.tmpfs_mb))),
            grace_period_s=float(_env("MAX_GRACE_PERIOD_S", str(ceilings.grace_period_s))),
        ),
        docker=DockerPolicy(
            binary=_env("DOCKER_BINARY", docker.binary),
            cpus=float(_env("CPUS", str(docker.cpus))),
            label_prefix=_env("LABEL_PREFIX", docker.label_prefix),
            command_timeout_s=float(_env("DOCKER_COMMAND_TIMEOUT_S", str(docker.command_timeout_s))),
            read_only_rootfs=_env_bool("READ_ONLY_ROOTFS", docker.read_only_rootfs),
            source_mount=_env("SOURCE_MOUNT", docker.source_mount),
            var_tmp_mb=int(_env("VAR_TMP_MB", str(docker.var_tmp_mb))),
        ),
    )
