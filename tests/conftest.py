"""Shared fixtures: a scripted stand-in for the git binary."""

from __future__ import annotations

import threading
from collections.abc import Sequence
from pathlib import Path

import pytest

from git_herd.core import CommandResult
from git_herd.engine import Engine
from git_herd.events import ScanCompleted
from git_herd.models import Repository
from git_herd.tasks import TaskFactory


class FakeGit:
    """Command runner answering from a table of scripted responses.

    Responses are keyed by (repository path, argv); a response registered
    without a path applies to every repository. Unscripted commands succeed
    with empty output.
    """

    def __init__(self):
        self.responses: dict[tuple[str, tuple[str, ...]], CommandResult] = {}
        self.calls: list[tuple[str, tuple[str, ...]]] = []
        self._lock = threading.Lock()

    def git(self, *args: str, stdout: str = "", stderr: str = "", returncode: int = 0, path=None):
        argv = ("git", *args)
        key = (str(path) if path is not None else "*", argv)
        self.responses[key] = CommandResult(list(argv), returncode, stdout, stderr)

    def __call__(self, args: Sequence[str], cwd: Path) -> CommandResult:
        argv = tuple(args)
        with self._lock:
            self.calls.append((str(cwd), argv))
        for key in ((str(cwd), argv), ("*", argv)):
            if key in self.responses:
                return self.responses[key]
        return CommandResult(list(argv), 0, "", "")

    def called(self, *args: str, path=None) -> bool:
        argv = ("git", *args)
        return any(
            call_args == argv and (path is None or cwd == str(path))
            for cwd, call_args in self.calls
        )


@pytest.fixture
def fake_git() -> FakeGit:
    return FakeGit()


@pytest.fixture
def make_engine(fake_git):
    """Factory for an engine that has already scanned repositories under /work."""

    def factory(names=("alpha", "beta", "gamma"), **kwargs) -> Engine:
        engine = Engine(
            "/work",
            tasks=TaskFactory(runner=fake_git),
            head_reader=lambda path: f"head-{Path(path).name}",
            **kwargs,
        )
        repos = [Repository(path=f"/work/{name}", name=name) for name in names]
        engine.handle(ScanCompleted(root="/work", repos=repos))
        return engine

    return factory
