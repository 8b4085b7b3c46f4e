"""Resource limits for one execution and host-wide capacity accounting."""

from __future__ import annotations

import threading
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any

from .errors import CapacityExceeded, ValidationError

if TYPE_CHECKING:
    from .config import RunnerSettings
    from .models import ExecutionRequest
    from .profiles import RuntimeProfile

NETWORK_POLICIES = frozenset({"none", "bridge"})
_INT_KEYS = frozenset({"cpu_time_s", "memory_mb", "pids", "max_output_bytes", "fs_write_mb", "nofile", "tmpfs_mb"})
_FLOAT_KEYS = frozenset({"wall_timeout_s", "grace_period_s"})
LIMIT_KEYS = _INT_KEYS | _FLOAT_KEYS | {"network"}


@dataclass(frozen=True)
class LimitSet:
    wall_timeout_s: float
    cpu_time_s: int
    memory_mb: int
    pids: int
    max_output_bytes: int
    fs_write_mb: int
    network: str
    nofile: int
    tmpfs_mb: int
    grace_period_s: float

    @property
    def network_enabled(self) -> bool:
        return self.network != "none"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def compute_limits(request: "ExecutionRequest", profile: "RuntimeProfile", settings: "RunnerSettings") -> LimitSet:
    """Merge global defaults, profile defaults and caller overrides, then clamp to the ceilings."""
    merged: dict[str, Any] = {key: getattr(settings.defaults, key) for key in LIMIT_KEYS}
    for key, raw in profile.default_limits.items():
        merged[key] = _coerce(key, raw)

    overrides = dict(request.limit_overrides or {})
    unknown = set(overrides) - LIMIT_KEYS
    if unknown:
        raise ValidationError(f"未知的 limit 欄位：{', '.join(sorted(unknown))}")
    for key, raw in overrides.items():
        merged[key] = _coerce(key, raw)
    if request.timeout_s is not None:
        caller_timeout = _coerce("wall_timeout_s", request.timeout_s)
        if "wall_timeout_s" in overrides:
            caller_timeout = min(caller_timeout, merged["wall_timeout_s"])
        merged["wall_timeout_s"] = caller_timeout

    ceilings = settings.ceilings
    for key in _INT_KEYS | _FLOAT_KEYS:
        merged[key] = min(merged[key], getattr(ceilings, key))
    if merged["network"] != "none" and not ceilings.allow_network:
        merged["network"] = "none"

    return LimitSet(**merged)


def _coerce(key: str, raw: Any) -> Any:
    if key == "network":
        value = str(raw or "").strip().lower()
        if value not in NETWORK_POLICIES:
            raise ValidationError(f"network 僅支援 {', '.join(sorted(NETWORK_POLICIES))}")
        return value
    if isinstance(raw, bool):
        raise ValidationError(f"{key} 必須是數字")
    try:
        value = int(raw) if key in _INT_KEYS else float(raw)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{key} 必須是數字") from exc
    if value <= 0:
        raise ValidationError(f"{key} 必須大於 0")
    return value


class CapacityLease:
    """Reservation of host capacity for one sandbox; released exactly once."""

    def __init__(self, accountant: "ResourceAccountant", memory_mb: int) -> None:
        self._accountant = accountant
        self.memory_mb = memory_mb
        self.released = False

    def release(self) -> None:
        self._accountant._release(self)


class ResourceAccountant:
    """Host-wide counters shared by all concurrent executions."""

    def __init__(self, max_concurrency: int, memory_budget_mb: int) -> None:
        self.max_concurrency = max(1, int(max_concurrency))
        self.memory_budget_mb = max(1, int(memory_budget_mb))
        self._lock = threading.Lock()
        self._inflight = 0
        self._memory_reserved_mb = 0

    def acquire(self, limits: LimitSet) -> CapacityLease:
        with self._lock:
            if self._inflight >= self.max_concurrency:
                raise CapacityExceeded("runner busy, please retry")
            if self._memory_reserved_mb + limits.memory_mb > self.memory_budget_mb:
                raise CapacityExceeded("host memory budget exhausted, please retry")
            self._inflight += 1
            self._memory_reserved_mb += limits.memory_mb
        return CapacityLease(self, limits.memory_mb)

    def _release(self, lease: CapacityLease) -> None:
        with self._lock:
            if lease.released:
                return
            lease.released = True
            self._inflight -= 1
            self._memory_reserved_mb -= lease.memory_mb

    @property
    def inflight(self) -> int:
        with self._lock:
            return self._inflight

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            inflight = self._inflight
            reserved = self._memory_reserved_mb
        return {
            "max": self.max_concurrency,
            "inflight": inflight,
            "utilization": round(inflight / self.max_concurrency, 4),
            "memory_reserved_mb": reserved,
            "memory_budget_mb": self.memory_budget_mb,
        }
