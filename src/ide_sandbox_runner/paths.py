"""Path rules for files staged into a sandbox workspace."""

from __future__ import annotations

from pathlib import Path, PurePosixPath
from typing import Iterable

from .errors import ValidationError

MAX_PATH_DEPTH = 8
MAX_SEGMENT_LENGTH = 128


def validate_relative_path(path: str) -> str:
    """Normalize a workspace-relative path declared by the caller."""
    raw = (path or "").strip()
    if not raw:
        raise ValidationError("path 不可為空")
    if "\x00" in raw:
        raise ValidationError("path 不可包含 NUL")

    pure = PurePosixPath(raw.replace("\\", "/"))
    if pure.is_absolute():
        raise ValidationError(f"不允許絕對路徑：{raw}")

    parts = pure.parts
    if any(part in {"", ".", ".."} for part in parts):
        raise ValidationError(f"path 包含不合法 segment：{raw}")
    if parts[0].endswith(":"):
        raise ValidationError(f"不允許磁碟機路徑前綴：{raw}")
    if len(parts) > MAX_PATH_DEPTH:
        raise ValidationError(f"path 層數超過上限：{raw}")
    if any(len(part) > MAX_SEGMENT_LENGTH for part in parts):
        raise ValidationError(f"path segment 過長：{raw}")

    return pure.as_posix()


def workspace_target(workspace: Path, rel_path: str) -> Path:
    """Resolve ``rel_path`` under ``workspace`` and refuse anything escaping it."""
    rel = validate_relative_path(rel_path)
    base = workspace.resolve()
    candidate = (base / rel).resolve(strict=False)
    try:
        candidate.relative_to(base)
    except ValueError as exc:
        raise ValidationError(f"path 超出 workspace：{rel}") from exc
    return candidate


def reject_directory_conflicts(paths: Iterable[str]) -> None:
    """Refuse a layout where one file path is a directory of another."""
    files = set(paths)
    for rel in sorted(files):
        for parent in PurePosixPath(rel).parents:
            if parent.as_posix() in files:
                raise ValidationError(f"source file 與目錄路徑衝突：{parent.as_posix()} / {rel}")
