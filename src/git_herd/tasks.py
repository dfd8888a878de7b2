"""Tasks: asynchronous units of work that each yield exactly one event.

The engine never runs git itself. It returns Task objects, the Runtime runs
them on a thread pool, and their events are fed back to the engine one at a
time from a single thread.
"""

from __future__ import annotations

import queue
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from loguru import logger

from .core import (
    BranchReconciler,
    CommandRunner,
    GitOperations,
    PullAggregator,
    StatusRefresher,
    parse_stat_output,
    run_command,
    shorten_pull_output,
)
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
    ScanCompleted,
    StashCompleted,
    StatusUpdated,
)
from .models import RepoStatus
from .scanner import scan_for_repos

if TYPE_CHECKING:
    from .engine import Engine


@dataclass(frozen=True)
class Task:
    """One external-tool invocation delivering exactly one event.

    `work` produces the event; if it raises, `fallback` turns the error
    text into the event instead, so a dispatched task never goes silent.
    """

    name: str
    path: str
    work: Callable[[], Event]
    fallback: Callable[[str], Event]

    def run(self) -> Event:
        try:
            return self.work()
        except Exception as e:
            logger.exception("Task {} crashed for {}", self.name, self.path)
            return self.fallback(str(e))


class TaskFactory:
    """Build the tasks the engine hands out."""

    def __init__(self, runner: CommandRunner = run_command, max_commits: int = 5):
        self.runner = runner
        self.max_commits = max_commits

    def _ops(self, path: str) -> GitOperations:
        return GitOperations(path, self.runner)

    def scan(self, root: str) -> Task:
        return Task(
            name="scan",
            path=root,
            work=lambda: ScanCompleted(root=root, repos=scan_for_repos(root)),
            fallback=lambda err: ScanCompleted(root=root, repos=[]),
        )

    def status(self, path: str) -> Task:
        return Task(
            name="status",
            path=path,
            work=lambda: StatusRefresher(self._ops(path)).refresh(),
            fallback=lambda err: StatusUpdated(
                path=path, branch="?", status=RepoStatus.ERROR, text=err
            ),
        )

    def pull(self, path: str, repo_name: str, old_head: str) -> Task:
        """Pull, then summarize new commits against the head captured at dispatch."""

        def work() -> PullCompleted:
            ops = self._ops(path)
            outcome = ops.pull()
            output = outcome.output
            result = PullAggregator(ops, self.max_commits).aggregate(repo_name, old_head, outcome)
            return PullCompleted(
                path=path,
                ok=outcome.ok,
                output=output,
                short_result=shorten_pull_output(output, outcome.ok),
                result=result,
            )

        return Task(
            name="pull",
            path=path,
            work=work,
            fallback=lambda err: PullCompleted(path=path, ok=False, output=err, short_result=err),
        )

    def branches(self, path: str) -> Task:
        return Task(
            name="branches",
            path=path,
            work=lambda: BranchReconciler(self._ops(path)).load(),
            fallback=lambda err: BranchesLoaded(path=path, branches=[], current=""),
        )

    def switch_branch(self, path: str, checkout_name: str, check_clean: bool = True) -> Task:
        def work() -> BranchSwitched:
            ops = self._ops(path)
            if check_clean and ops.has_uncommitted_changes():
                return BranchSwitched(
                    path=path, branch=checkout_name, ok=False, blocked_by_changes=True
                )
            result = ops.checkout(checkout_name)
            return BranchSwitched(
                path=path,
                branch=checkout_name,
                ok=result.ok,
                error="" if result.ok else result.output,
            )

        return Task(
            name="switch",
            path=path,
            work=work,
            fallback=lambda err: BranchSwitched(
                path=path, branch=checkout_name, ok=False, error=err
            ),
        )

    def delete_branch(self, path: str, branch: str, force: bool = False) -> Task:
        def work() -> BranchDeleted:
            result = self._ops(path).delete_branch(branch, force)
            return BranchDeleted(
                path=path, branch=branch, ok=result.ok, error="" if result.ok else result.output
            )

        return Task(
            name="delete-branch",
            path=path,
            work=work,
            fallback=lambda err: BranchDeleted(path=path, branch=branch, ok=False, error=err),
        )

    def create_branch(self, path: str, local_name: str, remote_name: str) -> Task:
        def work() -> BranchCreated:
            result = self._ops(path).create_tracking_branch(local_name, remote_name)
            return BranchCreated(
                path=path,
                branch=local_name,
                ok=result.ok,
                error="" if result.ok else result.output,
            )

        return Task(
            name="create-branch",
            path=path,
            work=work,
            fallback=lambda err: BranchCreated(path=path, branch=local_name, ok=False, error=err),
        )

    def stash(self, path: str) -> Task:
        def work() -> StashCompleted:
            result = self._ops(path).stash()
            return StashCompleted(path=path, ok=result.ok, error="" if result.ok else result.output)

        return Task(
            name="stash",
            path=path,
            work=work,
            fallback=lambda err: StashCompleted(path=path, ok=False, error=err),
        )

    def discard(self, path: str) -> Task:
        def work() -> StashCompleted:
            result = self._ops(path).discard_changes()
            return StashCompleted(path=path, ok=result.ok, error="" if result.ok else result.output)

        return Task(
            name="discard",
            path=path,
            work=work,
            fallback=lambda err: StashCompleted(path=path, ok=False, error=err),
        )

    def detail(self, path: str) -> Task:
        return Task(
            name="detail",
            path=path,
            work=lambda: DetailLoaded(path=path, content=self._ops(path).get_detail_report()),
            fallback=lambda err: DetailLoaded(path=path, content=f"Failed to load details: {err}"),
        )

    def files(self, repo_path: str, commit_hash: str) -> Task:
        def work() -> FilesLoaded:
            result = self._ops(repo_path).show_stat(commit_hash)
            if not result.ok:
                return FilesLoaded(repo_path=repo_path, commit_hash=commit_hash, files=[], ok=False)
            return FilesLoaded(
                repo_path=repo_path,
                commit_hash=commit_hash,
                files=parse_stat_output(result.stdout),
            )

        return Task(
            name="files",
            path=repo_path,
            work=work,
            fallback=lambda err: FilesLoaded(
                repo_path=repo_path, commit_hash=commit_hash, files=[], ok=False
            ),
        )

    def command(self, path: str, command: str) -> Task:
        def work() -> CommandOutput:
            result = self._ops(path).run_user_command(command)
            return CommandOutput(
                path=path,
                command=command,
                output=result.stdout + result.stderr,
                ok=result.ok,
                error="" if result.ok else f"exit status {result.returncode}",
            )

        return Task(
            name="command",
            path=path,
            work=work,
            fallback=lambda err: CommandOutput(
                path=path, command=command, output="", ok=False, error=err
            ),
        )


# =============================================================================
# Runtime
# =============================================================================


class Runtime:
    """Run tasks concurrently and feed their events to the engine serially.

    Only the thread calling `perform`/`process_next`/`run_until_idle` ever
    touches the engine; pool threads just run tasks and enqueue events.
    """

    def __init__(self, engine: Engine, max_workers: int = 8):
        self.engine = engine
        self._events: queue.Queue[Event] = queue.Queue()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="git-herd")
        self._in_flight = 0

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def dispatch(self, tasks: Iterable[Task]) -> None:
        for task in tasks:
            self._in_flight += 1
            logger.debug("Dispatching {} for {}", task.name, Path(task.path).name)
            self._executor.submit(self._execute, task)

    def _execute(self, task: Task) -> None:
        self._events.put(task.run())

    def perform(self, action: Callable[[Engine], list[Task]]) -> None:
        """Apply a user action to the engine and dispatch the tasks it returns."""
        self.dispatch(action(self.engine))

    def process_next(self, timeout: float | None = None) -> bool:
        """Hand one completed event to the engine. False if none arrived in time."""
        try:
            event = self._events.get(timeout=timeout)
        except queue.Empty:
            return False
        self._in_flight -= 1
        self.dispatch(self.engine.handle(event))
        return True

    def run_until_idle(self, on_event: Callable[[], None] | None = None) -> None:
        """Process events until no task is left running, including follow-ups."""
        while self._in_flight > 0:
            self.process_next()
            if on_event is not None:
                on_event()

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    def __enter__(self) -> Runtime:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
