"""
Orchestration engine: the single owner of all git-herd state.

The engine is a reducer. User commands and task completion events go in,
state is updated in place, and the tasks to dispatch next come out. It never
runs git on its own except for reading a repository's head when a pull is
issued, and it is only ever called from one thread.
"""

from __future__ import annotations

import functools
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field, replace
from enum import IntEnum, StrEnum
from pathlib import Path
from types import MappingProxyType

from loguru import logger

from .config import ConfigStore, HerdConfig
from .core import get_head_commit
from .events import (
    BranchCreated,
    BranchDeleted,
    BranchesLoaded,
    BranchSwitched,
    CommandOutput,
    DetailLoaded,
    Event,
    FilesLoaded,
    PullCompleted,
    ResultsReady,
    ScanCompleted,
    StashCompleted,
    StatusUpdated,
)
from .models import (
    FAVORITES_GROUP,
    BranchInfo,
    CommitInfo,
    FetchMode,
    FileChange,
    Group,
    GroupSummary,
    ListItem,
    PullResultInfo,
    Repository,
)
from .tasks import Task, TaskFactory

# =============================================================================
# Errors
# =============================================================================


class HerdError(Exception):
    """A command was given something the engine cannot act on."""


class RepositoryNotFound(HerdError):
    pass


class BranchNotFound(HerdError):
    pass


class GroupError(HerdError):
    pass


# =============================================================================
# View State
# =============================================================================


class ViewMode(StrEnum):
    LIST = "list"
    DETAIL = "detail"
    ACTION_SELECT = "action_select"  # dirty tree blocks a branch switch
    ERROR = "error"
    PULL_RESULTS = "pull_results"


class SwitchAction(StrEnum):
    """Ways out of a branch switch blocked by local changes."""

    STASH = "stash"
    DISCARD = "discard"
    CANCEL = "cancel"


class CursorLevel(IntEnum):
    REPO = 0
    COMMIT = 1
    FILE = 2


FileKey = tuple[str, str]  # (repo path, commit hash)


# =============================================================================
# Batch Join Tracker
# =============================================================================


class BatchJoinTracker:
    """Know when every pull of a round has reported back.

    The pending map goes from repository path to the head captured just
    before that pull was issued. The round is done exactly when the map is
    empty, whatever order completions arrive in.
    """

    def __init__(self, head_reader: Callable[[str], str]):
        self._head_reader = head_reader
        self._pending: dict[str, str] = {}

    def begin(self, paths: Iterable[str]) -> dict[str, str]:
        """Capture each path's head and mark it pending. Returns the captured heads."""
        captured = {}
        for path in paths:
            # A path already pending is overwritten by the newer capture
            captured[path] = self._head_reader(path)
        self._pending.update(captured)
        return captured

    def complete(self, path: str) -> bool:
        """Mark `path` finished; True when nothing is pending any more."""
        self._pending.pop(path, None)
        return not self._pending

    def is_pending(self, path: str) -> bool:
        return path in self._pending

    def head_for(self, path: str) -> str | None:
        return self._pending.get(path)

    def reset(self) -> None:
        self._pending.clear()

    @property
    def pending(self) -> Mapping[str, str]:
        return MappingProxyType(self._pending)

    @property
    def done(self) -> bool:
        return not self._pending

    def __len__(self) -> int:
        return len(self._pending)


# =============================================================================
# Result Tree Navigator
# =============================================================================


@dataclass
class PullResultsCursor:
    """Position in the repository -> commit -> file tree."""

    level: CursorLevel = CursorLevel.REPO
    repo_idx: int = 0
    commit_idx: int = 0
    file_idx: int = 0


class ResultTreeNavigator:
    """Browse the results of one pull round.

    Commit file lists are loaded lazily: `descend` into a commit returns the
    key to fetch when its files are not cached yet, and `store_files` fills
    the cache once per key.
    """

    def __init__(self, results: Iterable[PullResultInfo]):
        self.results: list[PullResultInfo] = list(results)
        self.cursor = PullResultsCursor()
        self.expanded: set[str] = set()
        self.files: dict[FileKey, list[FileChange]] = {}
        if self.results:
            self.expanded.add(self.results[0].repo_path)

    # ----- selection -----

    def selected_repo(self) -> PullResultInfo | None:
        if 0 <= self.cursor.repo_idx < len(self.results):
            return self.results[self.cursor.repo_idx]
        return None

    def selected_commit(self) -> CommitInfo | None:
        repo = self.selected_repo()
        if repo is None or self.cursor.level < CursorLevel.COMMIT:
            return None
        if 0 <= self.cursor.commit_idx < len(repo.commits):
            return repo.commits[self.cursor.commit_idx]
        return None

    def selected_key(self) -> FileKey | None:
        repo = self.selected_repo()
        commit = self.selected_commit()
        if repo is None or commit is None:
            return None
        return (repo.repo_path, commit.hash)

    def selected_file(self) -> FileChange | None:
        if self.cursor.level < CursorLevel.FILE:
            return None
        files = self.files_for(self.selected_key())
        if files and 0 <= self.cursor.file_idx < len(files):
            return files[self.cursor.file_idx]
        return None

    def files_for(self, key: FileKey | None) -> list[FileChange] | None:
        """Cached files for a commit, None while not loaded."""
        if key is None:
            return None
        return self.files.get(key)

    def is_expanded(self, repo_path: str) -> bool:
        return repo_path in self.expanded

    def _count_at_level(self) -> int:
        match self.cursor.level:
            case CursorLevel.REPO:
                return len(self.results)
            case CursorLevel.COMMIT:
                repo = self.selected_repo()
                return len(repo.commits) if repo else 0
            case CursorLevel.FILE:
                return len(self.files_for(self.selected_key()) or [])
        return 0

    # ----- movement -----

    def descend(self) -> FileKey | None:
        """Go one level deeper. Returns a commit key whose files must be loaded."""
        match self.cursor.level:
            case CursorLevel.REPO:
                repo = self.selected_repo()
                if repo is None or not repo.commits:
                    return None
                self.cursor.level = CursorLevel.COMMIT
                self.cursor.commit_idx = 0
                self.expanded.add(repo.repo_path)
            case CursorLevel.COMMIT:
                key = self.selected_key()
                if key is None:
                    return None
                self.cursor.level = CursorLevel.FILE
                self.cursor.file_idx = 0
                if key not in self.files:
                    return key
        return None

    def ascend(self) -> bool:
        if self.cursor.level == CursorLevel.REPO:
            return False
        self.cursor.level = CursorLevel(self.cursor.level - 1)
        return True

    def move(self, delta: int) -> bool:
        """Move within the current level, clamped to the ends."""
        count = self._count_at_level()
        if count == 0:
            return False
        match self.cursor.level:
            case CursorLevel.REPO:
                attr = "repo_idx"
            case CursorLevel.COMMIT:
                attr = "commit_idx"
            case _:
                attr = "file_idx"
        current = getattr(self.cursor, attr)
        target = max(0, min(count - 1, current + delta))
        setattr(self.cursor, attr, target)
        return target != current

    def toggle_expand(self) -> None:
        repo = self.selected_repo()
        if repo is None:
            return
        if repo.repo_path in self.expanded:
            self.expanded.discard(repo.repo_path)
            self.cursor.level = CursorLevel.REPO
        else:
            self.expanded.add(repo.repo_path)

    def toggle_expand_all(self) -> None:
        """Expand every repository if any is collapsed, otherwise collapse all."""
        paths = {r.repo_path for r in self.results}
        if paths - self.expanded:
            self.expanded = paths
        else:
            self.expanded = set()
            self.cursor.level = CursorLevel.REPO

    def store_files(self, key: FileKey, files: list[FileChange]) -> bool:
        """Cache a commit's files unless already cached."""
        if key in self.files:
            return False
        self.files[key] = list(files)
        return True


# =============================================================================
# Snapshot
# =============================================================================


@dataclass(frozen=True)
class EngineSnapshot:
    """Read-only copy of the engine state for the rendering layer."""

    mode: ViewMode
    root: str
    repos: tuple[Repository, ...]
    items: tuple[ListItem, ...]
    current_group: str | None
    filter_dirty: bool
    filter_behind: bool
    filter_text: str
    status_message: str
    error_message: str
    scanning: bool
    pulling: bool
    pending_pulls: int
    fetch_mode: FetchMode
    results: tuple[PullResultInfo, ...] = ()
    cursor: PullResultsCursor | None = None
    expanded: frozenset[str] = frozenset()
    files: Mapping[FileKey, tuple[FileChange, ...]] = field(default_factory=dict)
    detail_path: str | None = None
    detail_content: str = ""
    branches: tuple[BranchInfo, ...] = ()
    branch_index: int = 0
    command_output: str = ""


# =============================================================================
# Engine
# =============================================================================


Subscriber = Callable[[Event | None], None]


def _favorites_first(repo: Repository) -> tuple[bool, str]:
    return (not repo.is_favorite, repo.name)


def _command(method):
    """Notify subscribers after a user command has changed state."""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        result = method(self, *args, **kwargs)
        self._notify(None)
        return result

    return wrapper


class Engine:
    """Owns repositories, filters, favorites, groups, pulls and views."""

    def __init__(
        self,
        root: str | Path,
        config: HerdConfig | None = None,
        favorites: Iterable[str] = (),
        groups: Iterable[Group] = (),
        tasks: TaskFactory | None = None,
        head_reader: Callable[[str], str] | None = None,
        store: ConfigStore | None = None,
    ):
        self.root = str(root)
        self.config = config or HerdConfig()
        self.tasks = tasks or TaskFactory(max_commits=self.config.max_commits_per_repo)
        self.store = store

        if head_reader is None:
            runner = self.tasks.runner

            def head_reader(path: str) -> str:
                return get_head_commit(path, runner)

        self.tracker = BatchJoinTracker(head_reader)

        self.favorites: set[str] = set(favorites)
        self.groups: list[Group] = [
            Group(name=FAVORITES_GROUP, repos=sorted(self.favorites), is_builtin=True)
        ]
        self.groups.extend(g for g in groups if g.name != FAVORITES_GROUP)

        self._repos: dict[str, Repository] = {}
        self._subscribers: list[Subscriber] = []
        self._outbox: list[Event] = []

        self.mode = ViewMode.LIST
        self.previous_mode = ViewMode.LIST
        self.fetch_mode = self.config.fetch_mode
        self.force_full_fetch = False
        self.scanning = False
        self.pulling = False
        self.status_message = ""
        self.error_message = ""

        # List filters
        self.current_group: str | None = None
        self.filter_dirty = False
        self.filter_behind = False
        self.filter_text = ""
        self.filter_editing = False
        self.saved_filter = ""

        # Pull results
        self.results: list[PullResultInfo] = []
        self.navigator: ResultTreeNavigator | None = None

        # Detail view
        self.detail_path: str | None = None
        self.detail_content = ""
        self.branches: list[BranchInfo] = []
        self.branch_index = 0
        self.target_branch = ""
        self.target_checkout = ""
        self.command_output = ""
        self.command_running = False

    @classmethod
    def from_store(
        cls, root: str | Path, store: ConfigStore, tasks: TaskFactory | None = None
    ) -> Engine:
        """Build an engine from persisted config, favorites and groups."""
        config = store.load_config()
        if tasks is None:
            tasks = TaskFactory(max_commits=config.max_commits_per_repo)
        return cls(
            root,
            config=config,
            favorites=store.load_favorites(),
            groups=store.load_groups(),
            tasks=tasks,
            store=store,
        )

    # ===== Subscribers =====

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a render callback. Returns a function that unregisters it."""
        self._subscribers.append(callback)
        return lambda: self._subscribers.remove(callback)

    def _notify(self, event: Event | None) -> None:
        for callback in list(self._subscribers):
            callback(event)

    def _emit(self, event: Event) -> None:
        self._outbox.append(event)

    # ===== Repositories =====

    @property
    def repos(self) -> list[Repository]:
        return list(self._repos.values())

    def get_repo(self, ref: str) -> Repository:
        """Look up a repository by path, then by name."""
        repo = self._repos.get(ref)
        if repo is None:
            resolved = str(Path(ref).expanduser().resolve()) if ref else ref
            repo = self._repos.get(resolved)
        if repo is None:
            repo = next((r for r in self._repos.values() if r.name == ref), None)
        if repo is None:
            raise RepositoryNotFound(f"Repository not found: {ref}")
        return repo

    def _passes_status_filters(self, repo: Repository) -> bool:
        if self.filter_dirty and not repo.is_dirty:
            return False
        if self.filter_behind and not repo.is_behind:
            return False
        return True

    def _passes_text_filter(self, repo: Repository) -> bool:
        return not self.filter_text or self.filter_text.lower() in repo.name.lower()

    def filtered_repos(self) -> list[Repository]:
        """Repositories matching the dirty/behind filters, in scan order."""
        return [r for r in self._repos.values() if self._passes_status_filters(r)]

    # ===== Groups =====

    def get_group(self, name: str) -> Group:
        for group in self.groups:
            if group.name == name:
                return group
        raise GroupError(f"Unknown group: {name}")

    def group_of(self, path: str) -> str | None:
        for group in self.groups:
            if path in group.repos:
                return group.name
        return None

    def group_repos(self, name: str) -> list[Repository]:
        members = set(self.get_group(name).repos)
        return [r for r in self._repos.values() if r.path in members]

    def ungrouped_repos(self) -> list[Repository]:
        grouped = {p for g in self.groups for p in g.repos}
        return [r for r in self._repos.values() if r.path not in grouped]

    def group_summary(self, group: Group) -> GroupSummary:
        repos = self.group_repos(group.name)
        return GroupSummary(
            name=group.name,
            repo_count=len(repos),
            dirty_count=sum(1 for r in repos if r.is_dirty),
            behind_count=sum(1 for r in repos if r.is_behind),
        )

    def visible_items(self) -> list[ListItem]:
        """Rows of the main list for the current group, filters and text filter."""
        if self.current_group is not None:
            repos = sorted(self.group_repos(self.current_group), key=lambda r: r.name)
            return [
                r for r in repos if self._passes_status_filters(r) and self._passes_text_filter(r)
            ]

        if self.filter_text:
            repos = sorted(self._repos.values(), key=_favorites_first)
            return [
                r for r in repos if self._passes_status_filters(r) and self._passes_text_filter(r)
            ]

        items: list[ListItem] = []
        groups = sorted(self.groups, key=lambda g: (g.name != FAVORITES_GROUP, g.name))
        for group in groups:
            summary = self.group_summary(group)
            if summary.repo_count > 0 or not group.is_builtin:
                items.append(summary)

        ungrouped = sorted(self.ungrouped_repos(), key=_favorites_first)
        items.extend(r for r in ungrouped if self._passes_status_filters(r))
        return items

    @_command
    def enter_group(self, name: str) -> None:
        self.get_group(name)
        self.current_group = name
        self.status_message = f"Entered group: {name}"

    @_command
    def leave_group(self) -> None:
        self.current_group = None
        self.status_message = ""

    @_command
    def create_group(self, name: str) -> Group:
        name = name.strip()
        if not name:
            raise GroupError("Group name cannot be empty")
        if any(g.name == name for g in self.groups):
            raise GroupError(f"Group already exists: {name}")
        group = Group(name=name)
        self.groups.append(group)
        self._save_groups()
        self.status_message = f"Created group: {name}"
        return group

    @_command
    def rename_group(self, old_name: str, new_name: str) -> None:
        group = self.get_group(old_name)
        if group.is_builtin:
            raise GroupError("Cannot rename built-in group")
        new_name = new_name.strip()
        if not new_name:
            raise GroupError("Group name cannot be empty")
        if new_name == old_name:
            return
        if any(g.name == new_name for g in self.groups):
            raise GroupError(f"Group already exists: {new_name}")
        group.name = new_name
        if self.current_group == old_name:
            self.current_group = new_name
        self._save_groups()
        self.status_message = f"Renamed group to: {new_name}"

    @_command
    def delete_group(self, name: str) -> None:
        group = self.get_group(name)
        if group.is_builtin:
            raise GroupError("Cannot delete built-in group")
        self.groups.remove(group)
        if self.current_group == name:
            self.current_group = None
        self._save_groups()
        self.status_message = f"Deleted group: {name}"

    @_command
    def move_to_group(self, path: str, group_name: str | None) -> None:
        """Put a repository in exactly one group, or in none when `group_name` is None."""
        repo = self.get_repo(path)
        target = self.get_group(group_name) if group_name is not None else None

        for group in self.groups:
            if repo.path in group.repos:
                group.repos.remove(repo.path)

        if target is not None:
            target.repos.append(repo.path)
            self.status_message = f"Moved {repo.name} to {target.name}"
        else:
            self.status_message = f"Removed {repo.name} from group"

        in_favorites = target is not None and target.name == FAVORITES_GROUP
        if in_favorites != (repo.path in self.favorites):
            self._set_favorite(repo, in_favorites)
        self._save_groups()

    @_command
    def add_to_group(self, group_name: str, path: str) -> None:
        """Add an ungrouped repository to a group."""
        group = self.get_group(group_name)
        repo = self.get_repo(path)
        owner = self.group_of(repo.path)
        if owner is not None:
            raise GroupError(f"{repo.name} is already in {owner}")
        if group.is_builtin:
            self._set_favorite(repo, True)
        else:
            group.repos.append(repo.path)
            self._save_groups()
        self.status_message = f"Added {repo.name} to {group.name}"

    @_command
    def remove_from_group(self, path: str, group_name: str | None = None) -> None:
        """Take a repository out of a group (the current one by default)."""
        name = group_name or self.current_group
        if name is None:
            raise GroupError("No group selected")
        group = self.get_group(name)
        repo = self.get_repo(path)
        if repo.path not in group.repos:
            raise GroupError(f"{repo.name} is not in {group.name}")
        if group.is_builtin:
            self._set_favorite(repo, False)
        else:
            group.repos.remove(repo.path)
            self._save_groups()
        self.status_message = f"Removed {repo.name} from {group.name}"

    # ===== Favorites =====

    def _set_favorite(self, repo: Repository, value: bool) -> None:
        favorites_group = self.get_group(FAVORITES_GROUP)
        if value:
            self.favorites.add(repo.path)
            if repo.path not in favorites_group.repos:
                favorites_group.repos.append(repo.path)
        else:
            self.favorites.discard(repo.path)
            if repo.path in favorites_group.repos:
                favorites_group.repos.remove(repo.path)
        repo.is_favorite = value
        self._save_favorites()

    @_command
    def toggle_favorite(self, path: str) -> bool:
        repo = self.get_repo(path)
        value = repo.path not in self.favorites
        self._set_favorite(repo, value)
        if value:
            self.status_message = f"Added to favorites: {repo.name}"
        else:
            self.status_message = f"Removed from favorites: {repo.name}"
        return value

    # ===== Filters =====

    def _filter_message(self, dirty_first: bool) -> str:
        """Describe the active filters, naming the one just toggled first."""
        order = [
            (self.filter_dirty, "Filter: showing repos with local changes"),
            (self.filter_behind, "Filter: showing repos behind remote"),
        ]
        if not dirty_first:
            order.reverse()
        for active, message in order:
            if active:
                return message
        return "Filter cleared"

    @_command
    def toggle_dirty_filter(self) -> None:
        self.filter_dirty = not self.filter_dirty
        self.status_message = self._filter_message(dirty_first=True)

    @_command
    def toggle_behind_filter(self) -> None:
        self.filter_behind = not self.filter_behind
        self.status_message = self._filter_message(dirty_first=False)

    @_command
    def clear_filters(self) -> None:
        self.filter_dirty = False
        self.filter_behind = False
        self.status_message = "Filters cleared"

    @_command
    def begin_filter_edit(self) -> None:
        self.filter_editing = True

    @_command
    def set_filter_text(self, text: str) -> None:
        self.filter_text = text

    @_command
    def apply_filter(self) -> None:
        self.filter_editing = False

    @_command
    def clear_text_filter(self) -> None:
        self.filter_text = ""
        self.filter_editing = False

    def _restore_filter(self) -> None:
        if self.saved_filter:
            self.filter_text = self.saved_filter
            self.saved_filter = ""

    # ===== Scan & Status =====

    @_command
    def trigger_scan(self, force_full: bool = False) -> list[Task]:
        self.scanning = True
        self.force_full_fetch = force_full
        self.status_message = "Scanning all..." if force_full else "Scanning..."
        logger.info("Scanning {}", self.root)
        return [self.tasks.scan(self.root)]

    @_command
    def trigger_status(self, target: str = "all") -> list[Task]:
        """Refresh status of one repository, "all" or "favorites"."""
        match target:
            case "all":
                paths = list(self._repos)
            case "favorites":
                paths = [p for p, r in self._repos.items() if r.is_favorite]
            case _:
                paths = [self.get_repo(target).path]
        return [self.tasks.status(p) for p in paths]

    def _status_tasks(self, repos: Iterable[Repository]) -> list[Task]:
        return [self.tasks.status(r.path) for r in repos]

    @_command
    def refresh(self, selected: ListItem | None = None) -> list[Task]:
        """Refresh following the fetch mode, relative to the selected row."""
        if self.current_group is not None:
            group = self.current_group
            match self.fetch_mode:
                case FetchMode.ON_DEMAND:
                    return self._refresh_selected(selected)
                case FetchMode.FAVORITES:
                    repos = self._favorites_plus(self.group_repos(group))
                    if not repos:
                        self.status_message = "No repos to refresh"
                        return []
                    self.status_message = f"Refreshing favorites + {group} ({len(repos)} repos)..."
                    return self._status_tasks(repos)
                case _:
                    return self._refresh_group(group)

        match selected:
            case GroupSummary(name=name):
                return self._refresh_group(name)

        match self.fetch_mode:
            case FetchMode.ON_DEMAND:
                return self._refresh_selected(selected)
            case FetchMode.FAVORITES:
                extra = [selected] if isinstance(selected, Repository) else []
                repos = self._favorites_plus(extra)
                if not repos:
                    self.status_message = "No repos to refresh"
                    return []
                self.status_message = f"Refreshing favorites + selected ({len(repos)} repos)..."
                return self._status_tasks(repos)
            case _:
                return self.trigger_scan()

    @_command
    def refresh_all(self) -> list[Task]:
        """Refresh the whole current group, or rescan and fetch everything."""
        if self.current_group is not None:
            return self._refresh_group(self.current_group, prefix="all ")
        return self.trigger_scan(force_full=True)

    def _refresh_selected(self, selected: ListItem | None) -> list[Task]:
        match selected:
            case Repository():
                repo = self.get_repo(selected.path)
                self.status_message = f"Refreshing {repo.name} (1 repo)..."
                return [self.tasks.status(repo.path)]
        return []

    def _refresh_group(self, name: str, prefix: str = "") -> list[Task]:
        repos = self.group_repos(name)
        if not repos:
            self.status_message = f"No repos to refresh in {name}"
            return []
        self.status_message = f"Refreshing {prefix}{len(repos)} repos in {name}..."
        return self._status_tasks(repos)

    def _favorites_plus(self, extra: Iterable[Repository]) -> list[Repository]:
        repos = [r for r in self._repos.values() if r.is_favorite]
        seen = {r.path for r in repos}
        for repo in extra:
            if repo.path not in seen and repo.path in self._repos:
                repos.append(self._repos[repo.path])
                seen.add(repo.path)
        return repos

    @_command
    def set_fetch_mode(self, mode: FetchMode) -> None:
        mode = FetchMode(mode)
        if mode == self.fetch_mode:
            return
        self.fetch_mode = mode
        self.config.fetch_mode = mode
        if self.store is not None:
            self.store.save_config(self.config)
        match mode:
            case FetchMode.ALL:
                self.status_message = "Fetch mode: All repos"
            case FetchMode.ON_DEMAND:
                self.status_message = "Fetch mode: On-demand (visible only)"
            case FetchMode.FAVORITES:
                self.status_message = "Fetch mode: Favorites only"

    # ===== Pulls =====

    def _start_pulls(self, repos: list[Repository], new_round: bool) -> list[Task]:
        self.results = []
        self.navigator = None
        if new_round:
            self.tracker.reset()
        heads = self.tracker.begin(r.path for r in repos)
        self.pulling = True
        logger.info("Pulling {} repositories", len(repos))
        return [self.tasks.pull(r.path, r.name, heads[r.path]) for r in repos]

    @_command
    def trigger_pull(self, paths: Iterable[str]) -> list[Task]:
        """Pull an arbitrary set of repositories as one round."""
        # One pull per working tree, however many ways it was named
        repos = list({r.path: r for r in map(self.get_repo, paths)}.values())
        if not repos:
            self.status_message = "Nothing to pull"
            return []
        self.status_message = f"Pulling {len(repos)} repos..."
        return self._start_pulls(repos, new_round=True)

    @_command
    def pull_selected(self, path: str) -> list[Task]:
        """Pull one repository, joining any round still in progress."""
        repo = self.get_repo(path)
        self.status_message = f"Pulling {repo.name}..."
        return self._start_pulls([repo], new_round=False)

    @_command
    def pull_behind(self) -> list[Task]:
        repos = [r for r in self.filtered_repos() if r.is_behind]
        if not repos:
            self.status_message = "No repos behind remote to pull"
            return []
        self.status_message = f"Pulling {len(repos)} repos behind remote..."
        return self._start_pulls(repos, new_round=True)

    @_command
    def pull_favorites(self) -> list[Task]:
        repos = [r for r in self._repos.values() if r.is_favorite]
        if not repos:
            self.status_message = "No favorites to pull"
            return []
        self.status_message = f"Pulling {len(repos)} favorites..."
        return self._start_pulls(repos, new_round=True)

    @_command
    def pull_group(self, name: str | None = None) -> list[Task]:
        name = name or self.current_group
        if name is None:
            raise GroupError("No group selected")
        repos = self.group_repos(name)
        if not repos:
            self.status_message = f"No repos to pull in {name}"
            return []
        self.status_message = f"Pulling {len(repos)} repos in {name}..."
        return self._start_pulls(repos, new_round=True)

    # ===== Detail View =====

    @_command
    def open_detail(self, path: str) -> list[Task]:
        repo = self.get_repo(path)
        self.mode = ViewMode.DETAIL
        self.detail_path = repo.path
        self.detail_content = "Loading..."
        self.branches = []
        self.branch_index = 0
        self.command_output = ""
        return [self.tasks.detail(repo.path), self.tasks.branches(repo.path)]

    @_command
    def reload_detail(self) -> list[Task]:
        if self.detail_path is None:
            return []
        return [self.tasks.detail(self.detail_path), self.tasks.branches(self.detail_path)]

    @_command
    def close_detail(self) -> None:
        self.mode = ViewMode.LIST
        self.detail_path = None
        self.detail_content = ""
        self.command_output = ""
        self.branches = []
        self._restore_filter()

    @_command
    def trigger_branch_load(self, path: str) -> list[Task]:
        return [self.tasks.branches(self.get_repo(path).path)]

    def find_branch(self, path: str, name: str) -> BranchInfo:
        repo = self.get_repo(path)
        if self.detail_path != repo.path:
            raise BranchNotFound(f"Branches of {repo.name} are not loaded")
        for branch in self.branches:
            if branch.name == name:
                return branch
        raise BranchNotFound(f"Unknown branch: {name}")

    @_command
    def switch_branch(self, path: str, branch_name: str) -> list[Task]:
        """Check out a branch; a dirty working tree routes to the action select view."""
        branch = self.find_branch(path, branch_name)
        if branch.is_current:
            self.status_message = f"Already on {branch.name}"
            return []
        self.target_branch = branch.name
        self.target_checkout = branch.checkout_name
        self.status_message = f"Switching to {branch.name}..."
        return [self.tasks.switch_branch(self.detail_path, branch.checkout_name)]

    @_command
    def resolve_dirty_switch(self, action: SwitchAction) -> list[Task]:
        if self.detail_path is None:
            self.mode = ViewMode.DETAIL
            return []
        match SwitchAction(action):
            case SwitchAction.STASH:
                self.status_message = "Stashing changes..."
                return [self.tasks.stash(self.detail_path)]
            case SwitchAction.DISCARD:
                self.status_message = "Discarding changes..."
                return [self.tasks.discard(self.detail_path)]
            case SwitchAction.CANCEL:
                self.mode = ViewMode.DETAIL
                self.target_branch = ""
                self.target_checkout = ""
                self.status_message = ""
        return []

    @_command
    def delete_branch(self, path: str, branch_name: str, force: bool = False) -> list[Task]:
        branch = self.find_branch(path, branch_name)
        if branch.is_current:
            self.status_message = "Cannot delete current branch"
            return []
        if not branch.is_local:
            if force:
                self.status_message = "Branch is remote-only"
            else:
                self.status_message = "Branch is remote-only, nothing to delete locally"
            return []
        if branch.is_remote and not force:
            self.status_message = "Branch exists on remote. Use 'X' to force delete."
            return []
        return [self.tasks.delete_branch(self.detail_path, branch.name, force)]

    @_command
    def create_branch(self, path: str, branch_name: str) -> list[Task]:
        """Create a local tracking branch for a remote-only branch."""
        branch = self.find_branch(path, branch_name)
        if branch.is_local:
            self.status_message = "Branch already exists locally"
            return []
        if not branch.is_remote:
            self.status_message = "Branch is not on remote"
            return []
        self.status_message = f"Creating local branch {branch.name}..."
        return [self.tasks.create_branch(self.detail_path, branch.name, branch.remote_name)]

    @_command
    def run_command(self, path: str, command: str) -> list[Task]:
        repo = self.get_repo(path)
        command = command.strip()
        if not command or self.command_running:
            return []
        self.command_running = True
        self.command_output = f"Running: {command}\n\n"
        return [self.tasks.command(repo.path, command)]

    # ===== Pull Results =====

    @_command
    def results_descend(self) -> list[Task]:
        if self.navigator is None:
            return []
        key = self.navigator.descend()
        if key is None:
            return []
        return [self.tasks.files(*key)]

    @_command
    def results_ascend(self) -> bool:
        return self.navigator is not None and self.navigator.ascend()

    @_command
    def results_move(self, delta: int) -> bool:
        return self.navigator is not None and self.navigator.move(delta)

    @_command
    def results_toggle_expand(self) -> None:
        if self.navigator is not None:
            self.navigator.toggle_expand()

    @_command
    def results_toggle_expand_all(self) -> None:
        if self.navigator is not None:
            self.navigator.toggle_expand_all()

    @_command
    def close_results(self) -> None:
        self.mode = ViewMode.LIST
        self.results = []
        self.navigator = None
        self._restore_filter()

    def _show_results(self) -> None:
        self.navigator = ResultTreeNavigator(self.results)
        self._emit(ResultsReady(results=list(self.results)))

    # ===== Errors =====

    def _enter_error(self, message: str) -> None:
        self.error_message = message
        if self.mode != ViewMode.ERROR:
            self.previous_mode = self.mode
            # The list is hidden behind the error; its text filter comes back on return
            if self.filter_text:
                self.saved_filter = self.filter_text
                self.filter_text = ""
                self.filter_editing = False
        self.mode = ViewMode.ERROR

    @_command
    def dismiss_error(self) -> list[Task]:
        """Return to the view that was active before the error."""
        self.error_message = ""
        if self.previous_mode in (ViewMode.DETAIL, ViewMode.ACTION_SELECT) and self.detail_path:
            self.mode = ViewMode.DETAIL
            return [self.tasks.detail(self.detail_path)]
        if self.previous_mode == ViewMode.PULL_RESULTS and self.navigator is not None:
            self.mode = ViewMode.PULL_RESULTS
            return []
        self.mode = ViewMode.LIST
        self.detail_path = None
        self._restore_filter()
        return []

    # ===== Event Handling =====

    def handle(self, event: Event) -> list[Task]:
        """Merge one completion event into the state. Returns follow-up tasks."""
        match event:
            case ScanCompleted():
                tasks = self._on_scan_completed(event)
            case StatusUpdated():
                tasks = self._on_status_updated(event)
            case PullCompleted():
                tasks = self._on_pull_completed(event)
            case BranchesLoaded():
                tasks = self._on_branches_loaded(event)
            case BranchSwitched():
                tasks = self._on_branch_switched(event)
            case BranchDeleted() | BranchCreated():
                tasks = self._on_branch_changed(event)
            case StashCompleted():
                tasks = self._on_stash_completed(event)
            case DetailLoaded():
                if event.path == self.detail_path:
                    self.detail_content = event.content
                tasks = []
            case FilesLoaded():
                tasks = self._on_files_loaded(event)
            case CommandOutput():
                tasks = self._on_command_output(event)
            case _:
                tasks = []

        # Typing into the text filter must not be disturbed by background refreshes
        if not (isinstance(event, StatusUpdated) and self.filter_editing):
            self._notify(event)
        outbox, self._outbox = self._outbox, []
        for extra in outbox:
            self._notify(extra)
        return tasks

    def _on_scan_completed(self, event: ScanCompleted) -> list[Task]:
        self._repos = {}
        for repo in event.repos:
            self._repos[repo.path] = replace(repo, is_favorite=repo.path in self.favorites)
        self.scanning = False
        self.status_message = f"Found {len(self._repos)} repositories"
        logger.info("Found {} repositories in {}", len(self._repos), event.root)

        if self.force_full_fetch:
            self.force_full_fetch = False
            return self._status_tasks(self._repos.values())
        match self.fetch_mode:
            case FetchMode.ON_DEMAND:
                return []
            case FetchMode.FAVORITES:
                return self._status_tasks(r for r in self._repos.values() if r.is_favorite)
            case _:
                return self._status_tasks(self._repos.values())

    def _on_status_updated(self, event: StatusUpdated) -> list[Task]:
        repo = self._repos.get(event.path)
        if repo is None:
            return []
        repo.status = event.status
        repo.status_text = event.text
        repo.branch = event.branch
        repo.behind_count = event.behind_count
        return []

    def _on_pull_completed(self, event: PullCompleted) -> list[Task]:
        repo = self._repos.get(event.path)
        name = repo.name if repo else Path(event.path).name
        if repo is not None:
            repo.pull_result = event.short_result if event.ok else "error"
        if event.ok and self.mode != ViewMode.ERROR:
            self.error_message = ""

        tracked = self.tracker.is_pending(event.path)
        finished = False
        if tracked:
            if event.result is not None:
                self.results.append(event.result)
            finished = self.tracker.complete(event.path)
            self.pulling = not finished

        show_results = finished and self.config.show_pull_results and bool(self.results)
        if finished:
            logger.info("Pull round finished with {} updated repositories", len(self.results))

        if not event.ok:
            self.status_message = ""
            self._enter_error(f"Pull failed for {name}:\n\n{event.output}")
            if show_results:
                self.previous_mode = ViewMode.PULL_RESULTS
                self._show_results()
        elif show_results:
            self._show_results()
            if self.mode == ViewMode.ERROR:
                self.previous_mode = ViewMode.PULL_RESULTS
            else:
                self.mode = ViewMode.PULL_RESULTS
            self.status_message = ""
        else:
            self.status_message = f"Pulled {name}: {event.short_result}"

        return [self.tasks.status(event.path)]

    def _on_branches_loaded(self, event: BranchesLoaded) -> list[Task]:
        if event.path != self.detail_path:
            return []
        self.branches = list(event.branches)
        self.branch_index = next((i for i, b in enumerate(self.branches) if b.is_current), 0)
        return []

    def _on_branch_switched(self, event: BranchSwitched) -> list[Task]:
        if event.blocked_by_changes:
            self.mode = ViewMode.ACTION_SELECT
            self.status_message = ""
            return []
        if not event.ok:
            self._enter_error(f"Branch switch failed:\n\n{event.error}")
            return []

        self.status_message = f"Switched to {event.branch}"
        self.error_message = ""
        self.mode = ViewMode.DETAIL
        self.target_branch = ""
        self.target_checkout = ""
        repo = self._repos.get(event.path)
        if repo is not None:
            repo.branch = event.branch
        return [
            self.tasks.detail(event.path),
            self.tasks.branches(event.path),
            self.tasks.status(event.path),
        ]

    def _on_branch_changed(self, event: BranchDeleted | BranchCreated) -> list[Task]:
        if not event.ok:
            verb = "Delete" if isinstance(event, BranchDeleted) else "Create"
            self.error_message = f"{verb} failed: {event.error}"
            return []
        if isinstance(event, BranchDeleted):
            self.status_message = f"Deleted branch: {event.branch}"
        else:
            self.status_message = f"Created local branch: {event.branch}"
        if self.detail_path is None:
            return []
        return [self.tasks.branches(self.detail_path)]

    def _on_stash_completed(self, event: StashCompleted) -> list[Task]:
        if not event.ok:
            self._enter_error(f"Operation failed:\n\n{event.error}")
            return []
        if self.detail_path is None or not self.target_checkout:
            return []
        self.mode = ViewMode.DETAIL
        self.status_message = f"Switching to {self.target_branch}..."
        self.error_message = ""
        return [self.tasks.switch_branch(self.detail_path, self.target_checkout, check_clean=False)]

    def _on_files_loaded(self, event: FilesLoaded) -> list[Task]:
        if self.navigator is None:
            return []
        if not event.ok:
            logger.warning("Could not load files of {} in {}", event.commit_hash, event.repo_path)
        self.navigator.store_files((event.repo_path, event.commit_hash), event.files)
        return []

    def _on_command_output(self, event: CommandOutput) -> list[Task]:
        self.command_running = False
        if not event.ok:
            self.command_output += f"Error: {event.error}\n\n"
        if event.output:
            self.command_output += event.output
        elif event.ok:
            self.command_output += "(no output)\n"
        if self.detail_path is None:
            return []
        return [
            self.tasks.detail(self.detail_path),
            self.tasks.branches(self.detail_path),
            self.tasks.status(self.detail_path),
        ]

    # ===== Persistence =====

    def _save_favorites(self) -> None:
        if self.store is not None:
            self.store.save_favorites(self.favorites)

    def _save_groups(self) -> None:
        if self.store is not None:
            self.store.save_groups(self.groups)

    # ===== Snapshot =====

    def snapshot(self) -> EngineSnapshot:
        nav = self.navigator
        return EngineSnapshot(
            mode=self.mode,
            root=self.root,
            repos=tuple(replace(r) for r in self._repos.values()),
            items=tuple(
                replace(item) if isinstance(item, Repository) else item
                for item in self.visible_items()
            ),
            current_group=self.current_group,
            filter_dirty=self.filter_dirty,
            filter_behind=self.filter_behind,
            filter_text=self.filter_text,
            status_message=self.status_message,
            error_message=self.error_message,
            scanning=self.scanning,
            pulling=self.pulling,
            pending_pulls=len(self.tracker),
            fetch_mode=self.fetch_mode,
            results=tuple(self.results),
            cursor=replace(nav.cursor) if nav else None,
            expanded=frozenset(nav.expanded) if nav else frozenset(),
            files=MappingProxyType({k: tuple(v) for k, v in nav.files.items()}) if nav else {},
            detail_path=self.detail_path,
            detail_content=self.detail_content,
            branches=tuple(replace(b) for b in self.branches),
            branch_index=self.branch_index,
            command_output=self.command_output,
        )
