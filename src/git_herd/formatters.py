"""Output formatters for console and JSON display."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.tree import Tree

from .models import GroupSummary, Repository, RepoStatus

if TYPE_CHECKING:
    from .config import HerdConfig
    from .engine import EngineSnapshot
    from .models import BranchInfo, CommitInfo, FileChange, PullResultInfo


class OutputFormatter:
    """Format engine snapshots for console or JSON."""

    def __init__(self, console: Console, use_json: bool = False):
        self.console = console
        self.use_json = use_json

    def _print_json(self, data: Any):
        self.console.print(
            json.dumps(data, indent=2, default=str), markup=False, highlight=False, soft_wrap=True
        )

    # ===== Repository list =====

    def print_status_list(self, snapshot: EngineSnapshot):
        """Print the rows of the main list."""
        if self.use_json:
            self._print_status_json(snapshot)
        else:
            self._print_status_table(snapshot)

    def _print_status_table(self, snapshot: EngineSnapshot):
        title = f"Repositories: {snapshot.root}"
        if snapshot.current_group:
            title = f"Group: {snapshot.current_group}"
        table = Table(title=title)

        table.add_column("Repository", style="cyan", no_wrap=True)
        table.add_column("Branch")
        table.add_column("Status", justify="center")
        table.add_column("Behind", justify="right")
        table.add_column("Last Pull")

        for item in snapshot.items:
            match item:
                case GroupSummary():
                    table.add_row(
                        f"[bold]▸ {escape(item.name)}[/]",
                        f"[dim]{item.repo_count} repos[/]",
                        f"[yellow]✎ {item.dirty_count}[/]" if item.dirty_count else "",
                        f"[blue]{item.behind_count}[/]" if item.behind_count else "",
                        "",
                    )
                case Repository():
                    name = escape(item.name)
                    if item.is_favorite:
                        name = f"[yellow]★[/] {name}"
                    table.add_row(
                        name,
                        f"[green]{escape(item.branch)}[/]" if item.branch else "[dim]?[/]",
                        self._get_status_display(item),
                        f"[blue]⬇ {item.behind_count}[/]" if item.behind_count else "",
                        self._get_pull_display(item.pull_result),
                    )

        self.console.print(table)
        self.console.print()
        self._print_summary(snapshot)

    def _get_status_display(self, repo: Repository) -> str:
        match repo.status:
            case RepoStatus.CLEAN:
                return "[green]✓ clean[/]"
            case RepoStatus.CLEAN_BEHIND:
                return "[blue]✓ behind[/]"
            case RepoStatus.DIRTY:
                return f"[yellow]✎ {escape(repo.status_text)}[/]"
            case RepoStatus.ERROR:
                return f"[red]✗ {escape(repo.status_text[:20])}[/]"
            case _:
                return "[dim]?[/]"

    def _get_pull_display(self, label: str) -> str:
        if not label:
            return ""
        if label == "error":
            return "[red]error[/]"
        if label == "up to date":
            return "[dim]up to date[/]"
        return f"[green]{escape(label)}[/]"

    def _print_summary(self, snapshot: EngineSnapshot):
        repos = snapshot.repos
        parts = [f"[bold]Total:[/] {len(repos)}"]

        clean = sum(1 for r in repos if r.status == RepoStatus.CLEAN)
        dirty = sum(1 for r in repos if r.is_dirty)
        behind = sum(1 for r in repos if r.is_behind)
        errors = sum(1 for r in repos if r.status == RepoStatus.ERROR)
        unknown = sum(1 for r in repos if r.status == RepoStatus.UNKNOWN)

        if clean > 0:
            parts.append(f"[green]✓ Clean:[/] {clean}")
        if behind > 0:
            parts.append(f"[blue]⬇ Behind:[/] {behind}")
        if dirty > 0:
            parts.append(f"[yellow]✎ Dirty:[/] {dirty}")
        if errors > 0:
            parts.append(f"[red]✗ Errors:[/] {errors}")
        if unknown > 0:
            parts.append(f"[dim]Not fetched:[/] {unknown}")

        self.console.print(" | ".join(parts))

        filters = []
        if snapshot.filter_dirty:
            filters.append("local changes")
        if snapshot.filter_behind:
            filters.append("behind remote")
        if filters:
            self.console.print(f"[dim]Filter: {' + '.join(filters)}[/]")

    def _print_status_json(self, snapshot: EngineSnapshot):
        output = {
            "root": snapshot.root,
            "group": snapshot.current_group,
            "items": [
                {"type": "group", **item.to_dict()}
                if isinstance(item, GroupSummary)
                else {"type": "repository", **item.to_dict()}
                for item in snapshot.items
            ],
            "summary": {
                "total": len(snapshot.repos),
                "dirty": sum(1 for r in snapshot.repos if r.is_dirty),
                "behind": sum(1 for r in snapshot.repos if r.is_behind),
                "errors": sum(1 for r in snapshot.repos if r.status == RepoStatus.ERROR),
            },
        }
        self._print_json(output)

    # ===== Pull results =====

    def print_pull_results(self, snapshot: EngineSnapshot, failures: dict[str, str]):
        """Print a finished pull round: the results tree and any failures.

        `failures` maps repository name to the full git output.
        """
        if self.use_json:
            self._print_pull_results_json(snapshot, failures)
        else:
            self._print_pull_results_tree(snapshot, failures)

    def _print_pull_results_tree(self, snapshot: EngineSnapshot, failures: dict[str, str]):
        if snapshot.results:
            total_commits = sum(len(r.commits) for r in snapshot.results)
            tree = Tree(
                f"[bold]Pulled {total_commits} new commits in {len(snapshot.results)} repos[/]"
            )
            for result in snapshot.results:
                repo_node = tree.add(self._format_result_line(result))
                if result.repo_path not in snapshot.expanded:
                    continue
                for commit in result.commits:
                    commit_node = repo_node.add(self._format_commit_line(commit))
                    files = snapshot.files.get((result.repo_path, commit.hash))
                    for change in files or ():
                        commit_node.add(self._format_file_line(change))
            self.console.print(tree)
        else:
            self.console.print("[dim]No new commits[/]")

        if failures:
            self.console.print()
            table = Table(title="Pull Failures")
            table.add_column("Repository", style="cyan")
            table.add_column("Output")
            for name, output in failures.items():
                table.add_row(escape(name), f"[red]{escape(output)}[/]")
            self.console.print(table)

    def _format_result_line(self, result: PullResultInfo) -> str:
        commits = len(result.commits)
        noun = "commit" if commits == 1 else "commits"
        return (
            f"[cyan]{escape(result.repo_name)}[/] "
            f"[dim]{commits} {noun}, {result.files_changed} files changed[/]"
        )

    def _format_commit_line(self, commit: CommitInfo) -> str:
        return (
            f"[yellow]{commit.hash}[/] {escape(commit.message)} "
            f"[dim]({escape(commit.author)}, {escape(commit.time)})[/]"
        )

    def _format_file_line(self, change: FileChange) -> str:
        return (
            f"{escape(change.path)} [green]+{change.additions}[/] [red]-{change.deletions}[/]"
        )

    def _print_pull_results_json(self, snapshot: EngineSnapshot, failures: dict[str, str]):
        output = {
            "results": [r.to_dict() for r in snapshot.results],
            "failures": [{"repository": name, "output": out} for name, out in failures.items()],
            "summary": {
                "updated": len(snapshot.results),
                "commits": sum(len(r.commits) for r in snapshot.results),
                "failed": len(failures),
            },
        }
        self._print_json(output)

    # ===== Commit files =====

    def print_files(self, repo_name: str, commit_hash: str, files: list[FileChange]):
        if self.use_json:
            self._print_json(
                {
                    "repository": repo_name,
                    "commit": commit_hash,
                    "files": [f.to_dict() for f in files],
                }
            )
            return

        if not files:
            self.console.print(f"[dim]No files changed in {commit_hash}[/]")
            return

        table = Table(title=f"{repo_name} @ {commit_hash}")
        table.add_column("File", style="cyan")
        table.add_column("Added", justify="right", style="green")
        table.add_column("Deleted", justify="right", style="red")
        for change in files:
            table.add_row(escape(change.path), f"+{change.additions}", f"-{change.deletions}")
        self.console.print(table)
        self.console.print(
            f"\n[bold]Total:[/] [green]+{sum(f.additions for f in files)}[/] "
            f"[red]-{sum(f.deletions for f in files)}[/]"
        )

    # ===== Branches =====

    def print_branches(self, repo_name: str, branches: list[BranchInfo]):
        if self.use_json:
            self._print_json(
                {"repository": repo_name, "branches": [b.to_dict() for b in branches]}
            )
            return

        table = Table(title=f"Branches: {repo_name}")
        table.add_column("", width=1)
        table.add_column("Branch", style="cyan", no_wrap=True)
        table.add_column("Local", justify="center")
        table.add_column("Remote", justify="center")
        table.add_column("Tracking")

        for branch in branches:
            table.add_row(
                "[green]*[/]" if branch.is_current else "",
                f"[bold]{escape(branch.name)}[/]" if branch.is_current else escape(branch.name),
                "[green]✓[/]" if branch.is_local else "[dim]-[/]",
                "[green]✓[/]" if branch.is_remote else "[dim]-[/]",
                f"[dim]{escape(branch.remote_name)}[/]",
            )
        self.console.print(table)

    # ===== Detail =====

    def print_detail(self, repo_name: str, content: str):
        if self.use_json:
            self._print_json({"repository": repo_name, "detail": content})
            return
        self.console.print(f"[bold cyan]{escape(repo_name)}[/]\n")
        self.console.print(content, markup=False, highlight=False)

    def print_command_output(self, output: str):
        self.console.print(output, markup=False, highlight=False)

    # ===== Groups & config =====

    def print_groups(self, summaries: list[GroupSummary]):
        if self.use_json:
            self._print_json({"groups": [s.to_dict() for s in summaries]})
            return

        if not summaries:
            self.console.print("[dim]No groups[/]")
            return

        table = Table(title="Groups")
        table.add_column("Group", style="cyan")
        table.add_column("Repos", justify="right")
        table.add_column("Dirty", justify="right")
        table.add_column("Behind", justify="right")
        for summary in summaries:
            table.add_row(
                escape(summary.name),
                str(summary.repo_count),
                f"[yellow]{summary.dirty_count}[/]" if summary.dirty_count else "0",
                f"[blue]{summary.behind_count}[/]" if summary.behind_count else "0",
            )
        self.console.print(table)

    def print_config(self, config: HerdConfig, config_dir: str):
        if self.use_json:
            self._print_json({"config_dir": config_dir, **config.to_dict()})
            return

        self.console.print(f"[bold]Config directory:[/] {config_dir}\n")
        for key, value in config.to_dict().items():
            self.console.print(f"  [dim]{key}:[/] {escape(str(value))}")
