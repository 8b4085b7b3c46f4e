"""Runtime profile registry: language id -> immutable runtime profile."""

from __future__ import annotations

import shlex
from dataclasses import dataclass
from importlib import resources
from pathlib import Path, PurePosixPath
from types import MappingProxyType
from typing import Any, Iterable, Mapping

import yaml

from .errors import NotFoundError
from .limits import LIMIT_KEYS

PROFILE_FORMAT_VERSION = 1
_BUNDLED_PROFILES = "profiles.yaml"
_PLACEHOLDERS = ("{main}", "{main_stem}", "{workspace}")


@dataclass(frozen=True)
class UserIdentity:
    name: str
    uid: int
    gid: int


@dataclass(frozen=True)
class RuntimeProfile:
    """How to execute code for one language inside its runtime image."""

    language: str
    image: str
    user: UserIdentity
    workspace: str
    entrypoint: tuple[str, ...]
    forwards_signals_to_child: bool
    default_command: tuple[str, ...]
    source_extension: str
    env: Mapping[str, str]
    default_limits: Mapping[str, Any]
    aliases: tuple[str, ...] = ()

    def build_command(
        self,
        entry_file: str,
        command: Iterable[str] | None = None,
        *,
        workspace: str | None = None,
    ) -> list[str]:
        """Expand the command template for ``entry_file``.

        A token that is exactly a placeholder is replaced verbatim; placeholders
        embedded in a larger token (shell snippets) are shell-quoted.
        ``workspace`` overrides the in-sandbox workspace path for ``{workspace}``.
        """
        template = tuple(command) if command else self.default_command
        stem = PurePosixPath(entry_file).stem
        values = {"{main}": entry_file, "{main_stem}": stem, "{workspace}": workspace or self.workspace}
        expanded: list[str] = []
        for token in template:
            if token in values:
                expanded.append(values[token])
                continue
            for key in _PLACEHOLDERS:
                if key in token:
                    token = token.replace(key, shlex.quote(values[key]))
            expanded.append(token)
        return expanded

    def launch_argv(self, command: list[str]) -> list[str]:
        return [*self.entrypoint, *command]


class ProfileRegistry:
    """Read-only lookup of runtime profiles, loaded once at startup."""

    def __init__(self, profiles: Iterable[RuntimeProfile]) -> None:
        by_id: dict[str, RuntimeProfile] = {}
        aliases: dict[str, str] = {}
        for profile in profiles:
            key = profile.language.lower()
            if key in by_id or key in aliases:
                raise RuntimeError(f"runtime profile 重複：{profile.language}")
            by_id[key] = profile
        for key, profile in by_id.items():
            for alias in profile.aliases:
                alias_key = alias.lower()
                if alias_key in by_id or alias_key in aliases:
                    raise RuntimeError(f"runtime profile alias 重複：{alias}")
                aliases[alias_key] = key
        self._profiles = MappingProxyType(by_id)
        self._aliases = MappingProxyType(aliases)

    @classmethod
    def from_mapping(cls, document: Mapping[str, Any]) -> "ProfileRegistry":
        return cls(_parse_document(document))

    @classmethod
    def from_yaml(cls, path: Path) -> "ProfileRegistry":
        try:
            document = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise RuntimeError(f"讀取 runtime profile 失敗：{path}") from exc
        return cls.from_mapping(document)

    @classmethod
    def load(cls, path: Path | None = None) -> "ProfileRegistry":
        """Load ``path`` when given, otherwise the profiles bundled with the package."""
        if path is not None:
            return cls.from_yaml(path)
        raw = resources.files(__package__).joinpath(_BUNDLED_PROFILES).read_text(encoding="utf-8")
        return cls.from_mapping(yaml.safe_load(raw) or {})

    def resolve(self, language_id: str) -> RuntimeProfile:
        key = str(language_id or "").strip().lower()
        key = self._aliases.get(key, key)
        profile = self._profiles.get(key)
        if profile is None:
            raise NotFoundError(f"不支援的 language：{language_id}")
        return profile

    def languages(self) -> list[str]:
        return sorted(self._profiles)

    def snapshot(self) -> dict[str, Any]:
        return {
            key: {
                "image": profile.image,
                "aliases": list(profile.aliases),
                "user": f"{profile.user.uid}:{profile.user.gid}",
                "workspace": profile.workspace,
                "forwards_signals_to_child": profile.forwards_signals_to_child,
            }
            for key, profile in sorted(self._profiles.items())
        }


def _parse_document(document: Mapping[str, Any]) -> list[RuntimeProfile]:
    if not isinstance(document, Mapping):
        raise RuntimeError("runtime profile 文件必須是 mapping")
    version = document.get("version")
    if version != PROFILE_FORMAT_VERSION:
        raise RuntimeError(f"不支援的 runtime profile 版本：{version}")

    defaults = document.get("defaults") or {}
    entries = document.get("profiles") or {}
    if not isinstance(defaults, Mapping) or not isinstance(entries, Mapping) or not entries:
        raise RuntimeError("runtime profile 文件缺少 profiles")

    return [_parse_profile(str(language), entry or {}, defaults) for language, entry in entries.items()]


def _parse_profile(language: str, entry: Mapping[str, Any], defaults: Mapping[str, Any]) -> RuntimeProfile:
    def pick(key: str, fallback: Any = None) -> Any:
        if key in entry:
            return entry[key]
        return defaults.get(key, fallback)

    image = str(entry.get("image") or "").strip()
    if not image:
        raise RuntimeError(f"{language} profile 缺少 image")

    user_raw = pick("user") or {}
    try:
        user = UserIdentity(name=str(user_raw["name"]), uid=int(user_raw["uid"]), gid=int(user_raw["gid"]))
    except (KeyError, TypeError, ValueError) as exc:
        raise RuntimeError(f"{language} profile user 設定錯誤") from exc
    if user.uid == 0 or user.gid == 0:
        raise RuntimeError(f"{language} profile 不可使用 root 身分")

    workspace = str(pick("workspace", "/workspace"))
    if not PurePosixPath(workspace).is_absolute():
        raise RuntimeError(f"{language} profile workspace 必須是絕對路徑")

    entrypoint = tuple(str(token) for token in (pick("entrypoint") or ()))
    forwards = bool(pick("forwards_signals_to_child", False))
    if not entrypoint or not forwards:
        raise RuntimeError(f"{language} profile 必須提供會轉送 signal 的 entrypoint wrapper")

    default_command = tuple(str(token) for token in (entry.get("default_command") or pick("default_command") or ()))
    if not default_command:
        raise RuntimeError(f"{language} profile 缺少 default_command")

    env = {str(key): str(value) for key, value in (defaults.get("env") or {}).items()}
    env.update({str(key): str(value) for key, value in (entry.get("env") or {}).items()})

    default_limits = dict(entry.get("default_limits") or {})
    unknown = set(default_limits) - LIMIT_KEYS
    if unknown:
        raise RuntimeError(f"{language} profile default_limits 含未知欄位：{', '.join(sorted(unknown))}")

    return RuntimeProfile(
        language=language.lower(),
        image=image,
        user=user,
        workspace=workspace,
        entrypoint=entrypoint,
        forwards_signals_to_child=forwards,
        default_command=default_command,
        source_extension=str(entry.get("source_extension") or "txt"),
        env=MappingProxyType(env),
        default_limits=MappingProxyType(default_limits),
        aliases=tuple(str(alias).lower() for alias in (entry.get("aliases") or ())),
    )
