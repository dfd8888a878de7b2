"""Events produced by tasks and consumed by the engine and the rendering layer.

Every task yields exactly one of these. Each event carries the repository
path it concerns together with the outcome of the operation.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from .models import BranchInfo, FileChange, PullResultInfo, RepoStatus, Repository


@dataclass(frozen=True)
class ScanCompleted:
    root: str
    repos: list[Repository] = field(default_factory=list)


@dataclass(frozen=True)
class StatusUpdated:
    path: str
    branch: str
    status: RepoStatus
    text: str = ""
    behind_count: int = 0


@dataclass(frozen=True)
class PullCompleted:
    path: str
    ok: bool
    output: str  # full output for error display
    short_result: str  # shortened for list display
    result: PullResultInfo | None = None


@dataclass(frozen=True)
class BranchesLoaded:
    path: str
    branches: list[BranchInfo]
    current: str


@dataclass(frozen=True)
class BranchCreated:
    path: str
    branch: str
    ok: bool
    error: str = ""


@dataclass(frozen=True)
class BranchDeleted:
    path: str
    branch: str
    ok: bool
    error: str = ""


@dataclass(frozen=True)
class BranchSwitched:
    path: str
    branch: str
    ok: bool
    error: str = ""
    blocked_by_changes: bool = False  # working tree dirty, nothing was run


@dataclass(frozen=True)
class StashCompleted:
    path: str
    ok: bool
    error: str = ""


@dataclass(frozen=True)
class DetailLoaded:
    path: str
    content: str


@dataclass(frozen=True)
class FilesLoaded:
    repo_path: str
    commit_hash: str
    files: list[FileChange]
    ok: bool = True


@dataclass(frozen=True)
class CommandOutput:
    path: str
    command: str
    output: str
    ok: bool
    error: str = ""


@dataclass(frozen=True)
class ResultsReady:
    """Emitted by the engine when a pull round finishes with new commits."""

    results: list[PullResultInfo]


Event = (
    ScanCompleted
    | StatusUpdated
    | PullCompleted
    | BranchesLoaded
    | BranchCreated
    | BranchDeleted
    | BranchSwitched
    | StashCompleted
    | DetailLoaded
    | FilesLoaded
    | CommandOutput
    | ResultsReady
)
