"""Domain models shared by the engine, tasks and formatters."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum

FAVORITES_GROUP = "Favorites"


class RepoStatus(StrEnum):
    """Working tree status of a repository."""

    UNKNOWN = "unknown"
    CLEAN = "clean"
    CLEAN_BEHIND = "clean_behind"  # clean locally but behind remote
    DIRTY = "dirty"
    ERROR = "error"


class FetchMode(StrEnum):
    """Which repositories get a status refresh after a scan."""

    ALL = "all"
    ON_DEMAND = "on_demand"
    FAVORITES = "favorites"


@dataclass
class Repository:
    """A git working directory tracked by the herd."""

    path: str
    name: str
    branch: str = ""
    status: RepoStatus = RepoStatus.UNKNOWN
    status_text: str = ""
    is_favorite: bool = False
    pull_result: str = ""
    behind_count: int = 0

    @property
    def is_dirty(self) -> bool:
        return self.status == RepoStatus.DIRTY

    @property
    def is_behind(self) -> bool:
        return self.behind_count > 0

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "name": self.name,
            "branch": self.branch,
            "status": self.status.value,
            "status_text": self.status_text,
            "is_favorite": self.is_favorite,
            "pull_result": self.pull_result,
            "behind_count": self.behind_count,
        }


@dataclass
class BranchInfo:
    """A branch as seen from one repository, local and/or remote."""

    name: str
    is_local: bool
    is_remote: bool
    is_current: bool = False
    remote_name: str = ""  # e.g. "origin/main" if tracking

    @property
    def is_remote_only(self) -> bool:
        return self.is_remote and not self.is_local

    @property
    def checkout_name(self) -> str:
        """Name to hand to `git checkout` for this branch."""
        if self.is_remote_only and self.remote_name:
            return self.remote_name
        return self.name

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "is_local": self.is_local,
            "is_remote": self.is_remote,
            "is_current": self.is_current,
            "remote_name": self.remote_name,
        }


@dataclass(frozen=True)
class CommitInfo:
    """One commit brought in by a pull."""

    hash: str
    message: str
    author: str
    time: str  # relative, e.g. "2 hours ago"

    def to_dict(self) -> dict:
        return {
            "hash": self.hash,
            "message": self.message,
            "author": self.author,
            "time": self.time,
        }


@dataclass(frozen=True)
class FileChange:
    """A changed file in a commit."""

    path: str
    additions: int
    deletions: int

    @property
    def total(self) -> int:
        return self.additions + self.deletions

    def to_dict(self) -> dict:
        return {"path": self.path, "additions": self.additions, "deletions": self.deletions}


@dataclass(frozen=True)
class PullResultInfo:
    """Summary of the new commits one repository received in a pull round."""

    repo_path: str
    repo_name: str
    commits: tuple[CommitInfo, ...] = ()
    files_changed: int = 0
    updated: bool = True

    def to_dict(self) -> dict:
        return {
            "repo_path": self.repo_path,
            "repo_name": self.repo_name,
            "commits": [c.to_dict() for c in self.commits],
            "files_changed": self.files_changed,
            "updated": self.updated,
        }


@dataclass
class Group:
    """A named collection of repository paths."""

    name: str
    repos: list[str] = field(default_factory=list)
    is_builtin: bool = False  # runtime flag for Favorites, never persisted

    def to_dict(self) -> dict:
        return {"name": self.name, "repos": list(self.repos)}


@dataclass(frozen=True)
class GroupSummary:
    """List row standing for a group on the homepage."""

    name: str
    repo_count: int = 0
    dirty_count: int = 0
    behind_count: int = 0

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "repo_count": self.repo_count,
            "dirty_count": self.dirty_count,
            "behind_count": self.behind_count,
        }


# Rows of the main list; the rendering layer tells them apart with `match`.
ListItem = Repository | GroupSummary
