"""Configuration, favorites and groups persistence.

All state lives as JSON files in one directory, resolved in this order:

1. $GIT_HERD_CONFIG_DIR environment variable
2. ~/.config/git-herd (XDG-compliant)

Missing or malformed files fall back to defaults; the engine only ever sees
plain in-memory values.
"""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

from loguru import logger

from .models import FAVORITES_GROUP, FetchMode, Group

CONFIG_DIR_ENV = "GIT_HERD_CONFIG_DIR"
ROOT_DIR_ENV = "GIT_HERD_DIR"


@dataclass
class HerdConfig:
    """Application configuration."""

    git_dir: str = ""
    fetch_mode: FetchMode = FetchMode.ALL
    show_pull_results: bool = True
    max_commits_per_repo: int = 5
    max_workers: int = 8

    def to_dict(self) -> dict:
        data = asdict(self)
        data["fetch_mode"] = self.fetch_mode.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HerdConfig:
        """Build a config from stored values, ignoring unknown or invalid keys."""
        config = cls()
        known = {f.name for f in fields(cls)}
        for key, value in data.items():
            if key not in known:
                continue
            try:
                config.set(key, value)
            except ValueError as e:
                logger.warning("Ignoring config value {}={!r}: {}", key, value, e)
        return config

    def set(self, key: str, value: Any) -> None:
        """Set one option, converting from its stored or command-line form."""
        match key:
            case "git_dir":
                self.git_dir = str(value)
            case "fetch_mode":
                self.fetch_mode = FetchMode(value)
            case "show_pull_results":
                self.show_pull_results = _to_bool(value)
            case "max_commits_per_repo":
                self.max_commits_per_repo = _to_positive_int(value)
            case "max_workers":
                self.max_workers = _to_positive_int(value)
            case _:
                raise ValueError(f"unknown option {key!r}")


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"not a boolean: {value!r}")


def _to_positive_int(value: Any) -> int:
    number = int(value)
    if number <= 0:
        raise ValueError(f"must be positive: {value!r}")
    return number


def resolve_config_dir() -> Path:
    """Directory holding config.json, favorites.json and groups.json."""
    env_dir = os.environ.get(CONFIG_DIR_ENV)
    if env_dir:
        return Path(env_dir).expanduser()
    return Path.home() / ".config" / "git-herd"


def resolve_root_dir(cli_path: Path | None, config: HerdConfig) -> Path:
    """Pick the directory to scan: argument, $GIT_HERD_DIR, config, then cwd."""
    if cli_path:
        return cli_path.expanduser().resolve()
    env_root = os.environ.get(ROOT_DIR_ENV)
    if env_root:
        return Path(env_root).expanduser().resolve()
    if config.git_dir:
        return Path(config.git_dir).expanduser().resolve()
    return Path(".").resolve()


class ConfigStore:
    """Load and save git-herd state files."""

    def __init__(self, config_dir: Path | None = None):
        self.config_dir = config_dir or resolve_config_dir()

    @property
    def config_path(self) -> Path:
        return self.config_dir / "config.json"

    @property
    def favorites_path(self) -> Path:
        return self.config_dir / "favorites.json"

    @property
    def groups_path(self) -> Path:
        return self.config_dir / "groups.json"

    def _read_json(self, path: Path) -> Any:
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Failed to read {}: {}", path, e)
            return None

    def _write_json(self, path: Path, data: Any) -> None:
        self.config_dir.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data, indent=2) + "\n")

    def load_config(self) -> HerdConfig:
        data = self._read_json(self.config_path)
        if not isinstance(data, dict):
            return HerdConfig()
        return HerdConfig.from_dict(data)

    def save_config(self, config: HerdConfig) -> None:
        self._write_json(self.config_path, config.to_dict())

    def load_favorites(self) -> set[str]:
        data = self._read_json(self.favorites_path)
        if not isinstance(data, list):
            return set()
        return {p for p in data if isinstance(p, str)}

    def save_favorites(self, favorites: set[str]) -> None:
        self._write_json(self.favorites_path, sorted(favorites))

    def load_groups(self) -> list[Group]:
        """User-defined groups; the built-in Favorites group is never stored."""
        data = self._read_json(self.groups_path)
        if not isinstance(data, dict):
            return []
        groups = []
        for entry in data.get("groups", []):
            if not isinstance(entry, dict) or not entry.get("name"):
                continue
            if entry["name"] == FAVORITES_GROUP:
                continue
            repos = [p for p in entry.get("repos", []) if isinstance(p, str)]
            groups.append(Group(name=entry["name"], repos=repos))
        return groups

    def save_groups(self, groups: list[Group]) -> None:
        to_save = [g.to_dict() for g in groups if not g.is_builtin]
        self._write_json(self.groups_path, {"groups": to_save})
