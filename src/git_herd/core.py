"""
git-herd: track and synchronize many git repositories from one screen.

Git plumbing used by the tasks: command execution, branch reconciliation,
status refresh and pull result aggregation. Nothing here raises on a failed
git invocation; failures become typed outcomes or conservative defaults.
"""

from __future__ import annotations

import os
import re
import shlex
import subprocess
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger

from .events import BranchesLoaded, StatusUpdated
from .models import BranchInfo, CommitInfo, FileChange, PullResultInfo, RepoStatus

DEFAULT_TIMEOUT = 300
UP_TO_DATE_MARKER = "Already up to date"
UNKNOWN_BRANCH = "?"
STASH_MESSAGE = "git-herd: auto-stash before branch switch"

# =============================================================================
# Command Execution
# =============================================================================


@dataclass
class CommandResult:
    """Captured outcome of one external-tool invocation."""

    args: list[str] = field(default_factory=list)
    returncode: int = 0
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """Combined stdout and stderr, trimmed."""
        parts = [self.stdout.strip(), self.stderr.strip()]
        return "\n".join(p for p in parts if p)


CommandRunner = Callable[[Sequence[str], Path], CommandResult]


def run_command(args: Sequence[str], cwd: Path, timeout: int = DEFAULT_TIMEOUT) -> CommandResult:
    """Run a program in `cwd` and capture its output.

    Never raises: a missing program, an unreadable directory or a timeout
    are reported as a failed CommandResult.
    """
    argv = list(args)
    env = {**os.environ, "GIT_TERMINAL_PROMPT": "0"}
    try:
        result = subprocess.run(
            argv,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout,
            env=env,
        )
    except subprocess.TimeoutExpired:
        logger.debug("Timed out after {}s: {} (in {})", timeout, " ".join(argv), cwd)
        return CommandResult(argv, 124, stderr=f"{argv[0]} timed out after {timeout}s")
    except OSError as e:
        logger.debug("Could not run {} in {}: {}", " ".join(argv), cwd, e)
        return CommandResult(argv, 127, stderr=str(e))

    if result.returncode != 0:
        logger.debug(
            "{} exited {} in {}: {}",
            " ".join(argv),
            result.returncode,
            cwd,
            result.stderr.strip(),
        )
    return CommandResult(argv, result.returncode, result.stdout, result.stderr)


# =============================================================================
# Git Operations (Low-level)
# =============================================================================


class GitOperations:
    """Low-level Git operations for a single repository."""

    def __init__(self, repo_path: str | Path, runner: CommandRunner = run_command):
        self.repo_path = Path(repo_path)
        self._runner = runner

    def _run(self, *args: str) -> CommandResult:
        """Run a git command in the repository."""
        return self._runner(["git", *args], self.repo_path)

    def fetch(self, all_remotes: bool = False) -> bool:
        """Fetch quietly; callers treat failure as stale-but-usable data."""
        if all_remotes:
            result = self._run("fetch", "--all", "--prune", "--quiet")
        else:
            result = self._run("fetch", "--quiet")
        return result.ok

    def get_current_branch(self) -> str:
        """Get current branch name.

        Returns "HEAD" when detached (git's own answer) and "" on failure.
        """
        result = self._run("rev-parse", "--abbrev-ref", "HEAD")
        if result.ok:
            return result.stdout.strip()
        return ""

    def get_head_commit(self) -> str:
        """Get the full hash of HEAD."""
        result = self._run("rev-parse", "HEAD")
        if result.ok:
            return result.stdout.strip()
        return ""

    def get_behind_count(self) -> int:
        """Count commits on the upstream that are not in HEAD."""
        result = self._run("rev-list", "--count", "HEAD..@{u}")
        if result.ok:
            try:
                return int(result.stdout.strip())
            except ValueError:
                pass
        return 0

    def get_porcelain_status(self) -> list[str] | None:
        """Changed paths from `git status --porcelain`, None if the query fails."""
        result = self._run("status", "--porcelain")
        if not result.ok:
            return None
        return [line for line in result.stdout.splitlines() if line.strip()]

    def has_uncommitted_changes(self) -> bool:
        return bool(self.get_porcelain_status())

    def get_local_branches(self) -> dict[str, str]:
        """Map each local branch to its configured upstream ("" if none)."""
        result = self._run(
            "for-each-ref", "--format=%(refname:short) %(upstream:short)", "refs/heads/"
        )
        branches: dict[str, str] = {}
        if not result.ok:
            return branches
        for line in result.stdout.splitlines():
            parts = line.split()
            if parts:
                branches[parts[0]] = parts[1] if len(parts) > 1 else ""
        return branches

    def get_remote_refs(self) -> set[str]:
        """All remote-tracking refs, without the remote HEAD pointers."""
        result = self._run("for-each-ref", "--format=%(refname:short)", "refs/remotes/")
        refs: set[str] = set()
        if not result.ok:
            return refs
        for line in result.stdout.splitlines():
            ref = line.strip()
            # "origin/HEAD" shortens to plain "origin" on recent git
            if ref and "/" in ref and not ref.endswith("/HEAD"):
                refs.add(ref)
        return refs

    def pull(self) -> CommandResult:
        """Fast-forward pull from the upstream."""
        return self._run("pull", "--ff-only")

    def get_commits_between(self, old: str, new: str, limit: int = 0) -> list[CommitInfo]:
        """Commits reachable from `new` but not `old`, newest first."""
        args = ["log", "--format=%h%x1f%s%x1f%an%x1f%cr"]
        if limit > 0:
            args.append(f"-n{limit}")
        args.append(f"{old}..{new}")
        result = self._run(*args)
        if not result.ok:
            return []
        commits = []
        for line in result.stdout.splitlines():
            parts = line.split("\x1f")
            if len(parts) == 4:
                commits.append(CommitInfo(*parts))
        return commits

    def count_files_changed(self, old: str, new: str) -> int:
        """Sum of per-commit changed-file counts over `old..new`."""
        result = self._run("log", "--format=", "--name-only", f"{old}..{new}")
        if not result.ok:
            return 0
        return len([line for line in result.stdout.splitlines() if line.strip()])

    def show_stat(self, commit: str) -> CommandResult:
        return self._run("show", "--stat", "--format=", commit)

    def checkout(self, branch: str) -> CommandResult:
        return self._run("checkout", branch)

    def delete_branch(self, branch: str, force: bool = False) -> CommandResult:
        return self._run("branch", "-D" if force else "-d", branch)

    def create_tracking_branch(self, local_name: str, remote_name: str) -> CommandResult:
        return self._run("branch", "--track", local_name, remote_name)

    def stash(self, message: str = STASH_MESSAGE) -> CommandResult:
        return self._run("stash", "push", "-m", message)

    def discard_changes(self) -> CommandResult:
        """Unstage everything, then throw away unstaged edits."""
        self._run("reset", "HEAD")
        return self._run("checkout", "--", ".")

    def get_detail_report(self) -> str:
        """Status, diff stats and recent/incoming commits as one text block."""
        sections = [
            ("Status", ("status", "--short", "--branch")),
            ("Unstaged Changes", ("diff", "--stat")),
            ("Staged Changes", ("diff", "--cached", "--stat")),
            ("Recent Commits", ("log", "--oneline", "-10", "--pretty=format:%h %s (%cr)")),
            (
                "Incoming from Remote",
                ("log", "--oneline", "-10", "--pretty=format:%h %s (%cr)", "HEAD..@{u}"),
            ),
        ]
        chunks = []
        for title, args in sections:
            result = self._run(*args)
            text = result.stdout.rstrip() if result.ok else ""
            # Status is always shown, the rest only when non-empty
            if text or title == "Status":
                chunks.append(f"--- {title} ---\n{text}")
        return "\n\n".join(chunks) + "\n"

    def run_user_command(self, command: str) -> CommandResult:
        """Run an arbitrary command line inside the repository."""
        try:
            parts = shlex.split(command)
        except ValueError as e:
            return CommandResult([command], 2, stderr=f"Cannot parse command: {e}")
        if not parts:
            return CommandResult([], 2, stderr="empty command")
        return self._runner(parts, self.repo_path)


# =============================================================================
# Branch Reconciler
# =============================================================================


def branch_sort_key(branch: BranchInfo) -> tuple[bool, bool, bool, str]:
    """Current first, then local+remote, then local-only, then remote-only."""
    both = branch.is_local and branch.is_remote
    return (not branch.is_current, not both, not branch.is_local, branch.name)


class BranchReconciler:
    """Work out the local/remote branch topology of one repository."""

    def __init__(self, ops: GitOperations):
        self.ops = ops

    def reconcile(self, fetch: bool = True) -> tuple[list[BranchInfo], str]:
        """Return (branches in display order, current branch name).

        Each git query that fails contributes nothing, so the result may be
        incomplete but is always returned.
        """
        if fetch:
            self.ops.fetch(all_remotes=True)

        current = self.ops.get_current_branch()
        local_branches = self.ops.get_local_branches()
        remote_refs = self.ops.get_remote_refs()

        branches: list[BranchInfo] = []
        claimed: set[str] = set()

        for local_name, upstream in local_branches.items():
            has_remote = False
            remote_name = upstream
            if upstream:
                has_remote = upstream in remote_refs
                claimed.add(upstream)
            else:
                candidate = f"origin/{local_name}"
                if candidate in remote_refs:
                    has_remote = True
                    remote_name = candidate
                    claimed.add(candidate)

            branches.append(
                BranchInfo(
                    name=local_name,
                    is_local=True,
                    is_remote=has_remote,
                    is_current=local_name == current,
                    remote_name=remote_name,
                )
            )

        for remote_ref in remote_refs - claimed:
            _, _, local_name = remote_ref.partition("/")
            branches.append(
                BranchInfo(
                    name=local_name,
                    is_local=False,
                    is_remote=True,
                    remote_name=remote_ref,
                )
            )

        branches.sort(key=branch_sort_key)
        return branches, current

    def load(self) -> BranchesLoaded:
        branches, current = self.reconcile()
        return BranchesLoaded(path=str(self.ops.repo_path), branches=branches, current=current)


# =============================================================================
# Status Refresher
# =============================================================================


class StatusRefresher:
    """Determine working tree state and distance behind upstream."""

    def __init__(self, ops: GitOperations):
        self.ops = ops

    def refresh(self) -> StatusUpdated:
        path = str(self.ops.repo_path)
        branch = self.ops.get_current_branch()
        if branch in ("", "HEAD"):
            branch = UNKNOWN_BRANCH

        # Best effort so the behind count reflects the remote
        self.ops.fetch()
        behind = self.ops.get_behind_count()

        changed = self.ops.get_porcelain_status()
        if changed is None:
            return StatusUpdated(
                path=path, branch=branch, status=RepoStatus.ERROR, text="failed to get status"
            )

        if not changed:
            if behind > 0:
                return StatusUpdated(
                    path=path, branch=branch, status=RepoStatus.CLEAN_BEHIND, behind_count=behind
                )
            return StatusUpdated(path=path, branch=branch, status=RepoStatus.CLEAN)

        return StatusUpdated(
            path=path,
            branch=branch,
            status=RepoStatus.DIRTY,
            text=f"{len(changed)} changed",
            behind_count=behind,
        )


# =============================================================================
# Pull Result Aggregation
# =============================================================================


def shorten_pull_output(output: str, ok: bool) -> str:
    """Label shown next to a repository after a pull."""
    if not ok:
        return output
    if UP_TO_DATE_MARKER in output:
        return "up to date"
    if "Fast-forward" in output:
        return "updated"
    if len(output) > 30:
        return output[:30] + "..."
    return output


class PullAggregator:
    """Summarize what a pull brought in, given the head captured before it."""

    def __init__(self, ops: GitOperations, max_commits: int = 0):
        self.ops = ops
        self.max_commits = max_commits

    def aggregate(
        self, repo_name: str, old_head: str, outcome: CommandResult
    ) -> PullResultInfo | None:
        """Return a PullResultInfo, or None when nothing reportable happened."""
        if not outcome.ok or UP_TO_DATE_MARKER in outcome.output:
            return None
        if not old_head:
            logger.debug("No pre-pull head recorded for {}, skipping summary", repo_name)
            return None

        new_head = self.ops.get_head_commit()
        if not new_head or new_head == old_head:
            return None

        commits = self.ops.get_commits_between(old_head, new_head, self.max_commits)
        if not commits:
            return None

        return PullResultInfo(
            repo_path=str(self.ops.repo_path),
            repo_name=repo_name,
            commits=tuple(commits),
            files_changed=self.ops.count_files_changed(old_head, new_head),
            updated=True,
        )


# Pattern: " path/to/file | 10 +++---" or " path/to/file | Bin 0 -> 123 bytes"
_STAT_LINE = re.compile(r"^\s*(.+?)\s*\|\s*(\d+)?\s*(\+*)(-*)")


def parse_stat_output(output: str) -> list[FileChange]:
    """Parse the per-file lines of `git show --stat` / `git diff --stat`.

    The graph is scaled by git, so the numeric count is split between
    additions and deletions in the ratio of the +/- marks (additions
    rounded down). A count without marks is split evenly with the
    remainder going to deletions.
    """
    files = []
    for line in output.strip().splitlines():
        if not line.strip():
            continue
        if "files changed" in line or "file changed" in line:
            continue

        match = _STAT_LINE.match(line)
        if match is None:
            continue

        path = match.group(1).strip()
        plus = len(match.group(3))
        minus = len(match.group(4))

        if match.group(2) is None:
            # Binary files carry no line count
            additions, deletions = plus, minus
        else:
            count = int(match.group(2))
            if plus or minus:
                additions = count * plus // (plus + minus)
            else:
                additions = count // 2
            deletions = count - additions

        files.append(FileChange(path=path, additions=additions, deletions=deletions))
    return files


def get_head_commit(path: str, runner: CommandRunner = run_command) -> str:
    """Head of the repository at `path`, "" if it cannot be read."""
    return GitOperations(path, runner).get_head_commit()
