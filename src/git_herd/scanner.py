"""Discover repositories directly under a root directory."""

from __future__ import annotations

import os
from pathlib import Path

from loguru import logger

from .models import Repository


def scan_for_repos(root: str | Path) -> list[Repository]:
    """Return immediate subdirectories of `root` that have a `.git` directory.

    Only one directory listing is made; nested repositories are not searched.
    An unreadable root yields an empty list.
    """
    root_path = Path(root).expanduser().resolve()
    repos = []
    try:
        entries = sorted(os.scandir(root_path), key=lambda e: e.name)
    except OSError as e:
        logger.warning("Cannot list {}: {}", root_path, e)
        return repos

    for entry in entries:
        if not entry.is_dir():
            continue
        path = Path(entry.path)
        if (path / ".git").is_dir():
            repos.append(Repository(path=str(path), name=entry.name))

    logger.debug("Found {} repositories in {}", len(repos), root_path)
    return repos
