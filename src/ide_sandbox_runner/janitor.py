"""Removes sandboxes and workspaces left behind by a crashed or killed runner."""

from __future__ import annotations

import logging
import shutil
import time
from typing import Any, Callable, Iterable

from .backends import IsolationBackend
from .config import RunnerSettings
from .errors import InfrastructureFault
from .logging_utils import log_event

logger = logging.getLogger("ide_sandbox_runner")


class Janitor:
    def __init__(
        self,
        backend: IsolationBackend,
        settings: RunnerSettings,
        active_ids: Callable[[], Iterable[str]] = lambda: (),
    ) -> None:
        self.backend = backend
        self.settings = settings
        self._active_ids = active_ids

    def sweep(self, max_age_s: float | None = None) -> dict[str, Any]:
        """Remove untracked sandboxes older than ``max_age_s`` (default ``orphan_max_age_s``).

        Pass ``0`` at startup: nothing can be tracked yet, so every labelled
        container and every workspace belongs to a previous process.
        """
        max_age = self.settings.orphan_max_age_s if max_age_s is None else max(0.0, max_age_s)
        active = set(self._active_ids())
        now = time.time()
        summary: dict[str, Any] = {"containers_removed": 0, "workspaces_removed": 0, "errors": []}

        try:
            records = self.backend.list_sandboxes()
        except InfrastructureFault as exc:
            logger.warning("列出 sandbox 失敗：%s", exc)
            summary["errors"].append(str(exc))
            records = []
        for record in records:
            if record.execution_id in active or now - record.created_at < max_age:
                continue
            try:
                self.backend.remove_sandbox(record.container_id)
                summary["containers_removed"] += 1
            except InfrastructureFault as exc:
                logger.warning("移除孤兒 sandbox %s 失敗：%s", record.container_id, exc)
                summary["errors"].append(str(exc))

        jobs_dir = self.settings.jobs_dir
        if jobs_dir.is_dir():
            for path in jobs_dir.iterdir():
                if not path.is_dir() or path.is_symlink() or path.name in active:
                    continue
                try:
                    if now - path.stat().st_mtime < max_age:
                        continue
                    shutil.rmtree(path)
                    summary["workspaces_removed"] += 1
                except OSError as exc:
                    logger.warning("移除過期 workspace %s 失敗：%s", path, exc)
                    summary["errors"].append(str(exc))

        log_event(
            "janitor.sweep",
            containers_removed=summary["containers_removed"],
            workspaces_removed=summary["workspaces_removed"],
            errors=len(summary["errors"]),
            max_age_s=max_age,
        )
        return summary
