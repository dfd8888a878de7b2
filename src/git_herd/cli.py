"""Command line interface: drive the engine for one action, then print the result."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import typer
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn

from ._version import __version__
from .config import ConfigStore, resolve_root_dir
from .engine import Engine, HerdError, SwitchAction, ViewMode
from .events import Event, PullCompleted
from .formatters import OutputFormatter
from .log import setup_logging
from .models import FetchMode
from .tasks import Runtime, Task, TaskFactory

# =============================================================================
# CLI Application
# =============================================================================


app = typer.Typer(
    name="git-herd",
    help="Keep a herd of Git repositories up to date from one place.",
    no_args_is_help=True,
)
group_app = typer.Typer(help="Manage repository groups.", no_args_is_help=True)
config_app = typer.Typer(help="Show or change configuration.", no_args_is_help=True)
app.add_typer(group_app, name="group")
app.add_typer(config_app, name="config")


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        print(f"git-herd {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log every git invocation to stderr",
    ),
):
    """git-herd: keep a herd of Git repositories up to date from one place."""
    setup_logging(verbose)


def get_console_and_formatter(json_output: bool) -> tuple[Console, OutputFormatter]:
    """Create console and formatter."""
    console = Console(force_terminal=not json_output)
    formatter = OutputFormatter(console, use_json=json_output)
    return console, formatter


def fail(console: Console, message: str):
    console.print(f"[red]Error: {message}[/]")
    raise typer.Exit(1)


# =============================================================================
# Engine Session
# =============================================================================


class Session:
    """An engine plus the runtime that feeds it, for one command."""

    def __init__(self, root: Path | None, console: Console, show_progress: bool):
        self.store = ConfigStore()
        config = self.store.load_config()
        self.root = resolve_root_dir(root, config)
        self.engine = Engine.from_store(
            self.root,
            self.store,
            tasks=TaskFactory(max_commits=config.max_commits_per_repo),
        )
        self.runtime = Runtime(self.engine, max_workers=config.max_workers)
        self.console = console
        self.show_progress = show_progress

    def __enter__(self) -> Session:
        return self

    def __exit__(self, *exc_info) -> None:
        self.runtime.close()

    def run(self, action: Callable[[Engine], list[Task]], description: str):
        """Apply an action and process events until every task has finished."""
        if not self.show_progress:
            self.runtime.perform(action)
            self.runtime.run_until_idle()
            return

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=self.console,
        ) as progress:
            task_id = progress.add_task(description, total=None)
            self.runtime.perform(action)

            def update():
                if self.engine.pulling:
                    text = f"Pulling... {len(self.engine.tracker)} left"
                else:
                    text = self.engine.status_message or description
                progress.update(task_id, description=text)

            self.runtime.run_until_idle(on_event=update)

    def scan(self, fetch: str = "config"):
        """Discover repositories. `fetch` is "none", "config" or "all"."""
        if fetch == "none":
            self.engine.fetch_mode = FetchMode.ON_DEMAND
        force = fetch == "all"
        self.run(lambda e: e.trigger_scan(force_full=force), "Scanning repositories...")

    def report(self):
        """Print the outcome of a detail-view action and fail on errors."""
        engine = self.engine
        if engine.error_message:
            fail(self.console, engine.error_message)
        if engine.status_message:
            self.console.print(f"[green]{engine.status_message}[/]")


ROOT_OPTION = typer.Option(
    None,
    "--root",
    "-r",
    help="Directory containing the repositories",
)


# =============================================================================
# Commands
# =============================================================================


@app.command()
def status(
    path: Path = typer.Argument(
        None,
        help="Directory containing the repositories",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output as JSON",
    ),
    dirty: bool = typer.Option(
        False,
        "--dirty",
        "-d",
        help="Only repositories with local changes",
    ),
    behind: bool = typer.Option(
        False,
        "--behind",
        "-b",
        help="Only repositories behind their remote",
    ),
    group: str = typer.Option(
        None,
        "--group",
        "-g",
        help="Show the repositories of one group",
    ),
    no_fetch: bool = typer.Option(
        False,
        "--no-fetch",
        help="Skip status checks; only list repositories",
    ),
    fetch_all: bool = typer.Option(
        False,
        "--all",
        "-a",
        help="Check every repository regardless of the fetch mode",
    ),
):
    """Show status of all repositories."""
    console, formatter = get_console_and_formatter(json_output)

    with Session(path, console, show_progress=not json_output) as session:
        engine = session.engine
        if no_fetch:
            session.scan("none")
        else:
            session.scan("all" if fetch_all else "config")

        try:
            if group:
                engine.enter_group(group)
        except HerdError as e:
            fail(console, str(e))
        if dirty:
            engine.toggle_dirty_filter()
        if behind:
            engine.toggle_behind_filter()

        if not json_output:
            console.print(f"Found [bold]{len(engine.repos)}[/] repositories\n")
        formatter.print_status_list(engine.snapshot())


@app.command()
def pull(
    repos: list[str] = typer.Argument(
        None,
        help="Repositories to pull (names or paths); all when omitted",
    ),
    root: Path = ROOT_OPTION,
    behind: bool = typer.Option(
        False,
        "--behind",
        "-b",
        help="Pull every repository behind its remote",
    ),
    favorites: bool = typer.Option(
        False,
        "--favorites",
        "-f",
        help="Pull favorite repositories",
    ),
    group: str = typer.Option(
        None,
        "--group",
        "-g",
        help="Pull the repositories of one group",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output as JSON",
    ),
):
    """Pull repositories and summarize the commits they received."""
    console, formatter = get_console_and_formatter(json_output)

    with Session(root, console, show_progress=not json_output) as session:
        engine = session.engine
        failures: dict[str, str] = {}

        def collect_failures(event: Event | None):
            if isinstance(event, PullCompleted) and not event.ok:
                failures[Path(event.path).name] = event.output

        def start_pull(e: Engine) -> list[Task]:
            if repos:
                return e.trigger_pull(repos)
            if behind:
                return e.pull_behind()
            if favorites:
                return e.pull_favorites()
            if group:
                return e.pull_group(group)
            return e.trigger_pull([r.path for r in e.repos])

        engine.subscribe(collect_failures)
        # Behind counts are only known after a full status pass
        session.scan("all" if behind else "none")

        try:
            session.run(start_pull, "Pulling...")
        except HerdError as e:
            fail(console, str(e))

        if not json_output and not engine.results and not failures:
            console.print(f"[dim]{engine.status_message}[/]")

        nav = engine.navigator
        if nav is not None and {r.repo_path for r in nav.results} - nav.expanded:
            engine.results_toggle_expand_all()
        formatter.print_pull_results(engine.snapshot(), failures)


@app.command()
def files(
    repo: str = typer.Argument(..., help="Repository name or path"),
    commit: str = typer.Argument(..., help="Commit hash"),
    root: Path = ROOT_OPTION,
    json_output: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output as JSON",
    ),
):
    """Show the files changed by one commit."""
    console, formatter = get_console_and_formatter(json_output)

    with Session(root, console, show_progress=False) as session:
        session.scan("none")
        try:
            target = session.engine.get_repo(repo)
        except HerdError as e:
            fail(console, str(e))

        event = session.engine.tasks.files(target.path, commit).run()
        if not event.ok:
            fail(console, f"Cannot read commit {commit} in {target.name}")
        formatter.print_files(target.name, commit, event.files)


@app.command()
def detail(
    repo: str = typer.Argument(..., help="Repository name or path"),
    root: Path = ROOT_OPTION,
    command: str = typer.Option(
        None,
        "--command",
        "-c",
        help="Run a command inside the repository first",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output as JSON",
    ),
):
    """Show status, diff stats and recent commits of one repository."""
    console, formatter = get_console_and_formatter(json_output)

    with Session(root, console, show_progress=not json_output) as session:
        engine = session.engine
        session.scan("none")
        try:
            target = engine.get_repo(repo)
            session.run(lambda e: e.open_detail(target.path), "Loading details...")
            if command:
                session.run(lambda e: e.run_command(target.path, command), f"Running {command}...")
        except HerdError as e:
            fail(console, str(e))

        if command and not json_output:
            formatter.print_command_output(engine.command_output)
        formatter.print_detail(target.name, engine.detail_content)


@app.command()
def branches(
    repo: str = typer.Argument(..., help="Repository name or path"),
    root: Path = ROOT_OPTION,
    json_output: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output as JSON",
    ),
):
    """List local and remote branches of a repository."""
    console, formatter = get_console_and_formatter(json_output)

    with Session(root, console, show_progress=not json_output) as session:
        session.scan("none")
        try:
            target = session.engine.get_repo(repo)
            session.run(lambda e: e.trigger_branch_load(target.path), "Fetching branches...")
        except HerdError as e:
            fail(console, str(e))
        formatter.print_branches(target.name, session.engine.branches)


def _open_branches(session: Session, repo: str) -> str:
    """Scan and load the branches of `repo`. Returns its path."""
    session.scan("none")
    target = session.engine.get_repo(repo)
    session.run(lambda e: e.open_detail(target.path), "Fetching branches...")
    return target.path


@app.command()
def switch(
    repo: str = typer.Argument(..., help="Repository name or path"),
    branch: str = typer.Argument(..., help="Branch to check out"),
    root: Path = ROOT_OPTION,
    stash: bool = typer.Option(
        False,
        "--stash",
        help="Stash local changes before switching",
    ),
    discard: bool = typer.Option(
        False,
        "--discard",
        help="Throw away local changes before switching",
    ),
):
    """Check out a branch, handling local changes on request."""
    console = Console()
    if stash and discard:
        fail(console, "--stash and --discard are mutually exclusive")

    with Session(root, console, show_progress=True) as session:
        engine = session.engine
        try:
            path = _open_branches(session, repo)
            session.run(lambda e: e.switch_branch(path, branch), f"Switching to {branch}...")
        except HerdError as e:
            fail(console, str(e))

        if engine.mode == ViewMode.ACTION_SELECT:
            if not (stash or discard):
                fail(console, "Working tree has local changes; use --stash or --discard")
            choice = SwitchAction.STASH if stash else SwitchAction.DISCARD
            session.run(lambda e: e.resolve_dirty_switch(choice), f"Switching to {branch}...")

        session.report()


@app.command()
def track(
    repo: str = typer.Argument(..., help="Repository name or path"),
    branch: str = typer.Argument(..., help="Remote-only branch to track locally"),
    root: Path = ROOT_OPTION,
):
    """Create a local branch tracking a remote-only branch."""
    console = Console()
    with Session(root, console, show_progress=True) as session:
        try:
            path = _open_branches(session, repo)
            session.run(lambda e: e.create_branch(path, branch), f"Creating {branch}...")
        except HerdError as e:
            fail(console, str(e))
        session.report()


@app.command("delete-branch")
def delete_branch(
    repo: str = typer.Argument(..., help="Repository name or path"),
    branch: str = typer.Argument(..., help="Local branch to delete"),
    root: Path = ROOT_OPTION,
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Delete even if unmerged or still on the remote",
    ),
):
    """Delete a local branch."""
    console = Console()
    with Session(root, console, show_progress=True) as session:
        try:
            path = _open_branches(session, repo)
            session.run(lambda e: e.delete_branch(path, branch, force), f"Deleting {branch}...")
        except HerdError as e:
            fail(console, str(e))
        session.report()


@app.command()
def favorite(
    repo: str = typer.Argument(..., help="Repository name or path"),
    root: Path = ROOT_OPTION,
):
    """Toggle a repository's favorite flag."""
    console = Console()
    with Session(root, console, show_progress=False) as session:
        session.scan("none")
        try:
            session.engine.toggle_favorite(repo)
        except HerdError as e:
            fail(console, str(e))
        console.print(f"[yellow]★[/] {session.engine.status_message}")


# =============================================================================
# Groups
# =============================================================================


@group_app.command("list")
def group_list(
    root: Path = ROOT_OPTION,
    json_output: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output as JSON",
    ),
):
    """List groups with their repository counts."""
    console, formatter = get_console_and_formatter(json_output)
    with Session(root, console, show_progress=False) as session:
        session.scan("none")
        engine = session.engine
        formatter.print_groups([engine.group_summary(g) for g in engine.groups])


def _group_action(root: Path | None, action: Callable[[Engine], object], scan: bool = False):
    console = Console()
    with Session(root, console, show_progress=False) as session:
        if scan:
            session.scan("none")
        try:
            action(session.engine)
        except HerdError as e:
            fail(console, str(e))
        console.print(f"[green]{session.engine.status_message}[/]")


@group_app.command("create")
def group_create(
    name: str = typer.Argument(..., help="Group name"),
):
    """Create an empty group."""
    _group_action(None, lambda e: e.create_group(name))


@group_app.command("rename")
def group_rename(
    old_name: str = typer.Argument(..., help="Current group name"),
    new_name: str = typer.Argument(..., help="New group name"),
):
    """Rename a group."""
    _group_action(None, lambda e: e.rename_group(old_name, new_name))


@group_app.command("delete")
def group_delete(
    name: str = typer.Argument(..., help="Group name"),
):
    """Delete a group; its repositories become ungrouped."""
    _group_action(None, lambda e: e.delete_group(name))


@group_app.command("add")
def group_add(
    name: str = typer.Argument(..., help="Group name"),
    repo: str = typer.Argument(..., help="Ungrouped repository name or path"),
    root: Path = ROOT_OPTION,
):
    """Add an ungrouped repository to a group."""
    _group_action(root, lambda e: e.add_to_group(name, repo), scan=True)


@group_app.command("move")
def group_move(
    repo: str = typer.Argument(..., help="Repository name or path"),
    name: str = typer.Argument(None, help="Target group; omit to ungroup"),
    root: Path = ROOT_OPTION,
):
    """Move a repository to another group, or out of all groups."""
    _group_action(root, lambda e: e.move_to_group(repo, name), scan=True)


@group_app.command("remove")
def group_remove(
    name: str = typer.Argument(..., help="Group name"),
    repo: str = typer.Argument(..., help="Repository name or path"),
    root: Path = ROOT_OPTION,
):
    """Take a repository out of a group."""
    _group_action(root, lambda e: e.remove_from_group(repo, name), scan=True)


# =============================================================================
# Config
# =============================================================================


@config_app.command("show")
def config_show(
    json_output: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output as JSON",
    ),
):
    """Print the current configuration."""
    _, formatter = get_console_and_formatter(json_output)
    store = ConfigStore()
    formatter.print_config(store.load_config(), str(store.config_dir))


@config_app.command("set")
def config_set(
    key: str = typer.Argument(..., help="Option name"),
    value: str = typer.Argument(..., help="New value"),
):
    """Change one configuration option."""
    console = Console()
    store = ConfigStore()
    config = store.load_config()
    try:
        config.set(key, value)
    except ValueError as e:
        fail(console, f"Invalid value for {key}: {e}")
    store.save_config(config)
    console.print(f"[green]{key} = {getattr(config, key)}[/]")
