"""Tests for the orchestration engine."""

from pathlib import Path

import pytest

from git_herd.config import ConfigStore, HerdConfig
from git_herd.engine import (
    BranchNotFound,
    CursorLevel,
    Engine,
    GroupError,
    RepositoryNotFound,
    SwitchAction,
    ViewMode,
)
from git_herd.events import (
    BranchCreated,
    BranchDeleted,
    BranchesLoaded,
    BranchSwitched,
    CommandOutput,
    DetailLoaded,
    FilesLoaded,
    PullCompleted,
    ResultsReady,
    ScanCompleted,
    StashCompleted,
    StatusUpdated,
)
from git_herd.models import (
    BranchInfo,
    CommitInfo,
    FetchMode,
    FileChange,
    Group,
    GroupSummary,
    PullResultInfo,
    Repository,
    RepoStatus,
)
from git_herd.tasks import TaskFactory

FIVE = ("r1", "r2", "r3", "r4", "r5")


def repo_path(name: str) -> str:
    return f"/work/{name}"


def pull_result(name: str, *hashes: str) -> PullResultInfo:
    return PullResultInfo(
        repo_path=repo_path(name),
        repo_name=name,
        commits=tuple(CommitInfo(h, f"change {h}", "Ada", "1 hour ago") for h in hashes),
        files_changed=len(hashes),
    )


def pulled(name: str, *hashes: str) -> PullCompleted:
    """Successful pull completion, with new commits when hashes are given."""
    if hashes:
        return PullCompleted(
            path=repo_path(name),
            ok=True,
            output="Updating a..b\nFast-forward",
            short_result="updated",
            result=pull_result(name, *hashes),
        )
    return PullCompleted(
        path=repo_path(name), ok=True, output="Already up to date.", short_result="up to date"
    )


def pull_failed(name: str) -> PullCompleted:
    output = "fatal: Not possible to fast-forward, aborting."
    return PullCompleted(path=repo_path(name), ok=False, output=output, short_result=output)


def status(name: str, state: RepoStatus, behind: int = 0) -> StatusUpdated:
    text = "1 changed" if state == RepoStatus.DIRTY else ""
    return StatusUpdated(
        path=repo_path(name), branch="main", status=state, text=text, behind_count=behind
    )


def item_names(engine: Engine) -> list[str]:
    return [item.name for item in engine.visible_items()]


BRANCHES = [
    BranchInfo("main", is_local=True, is_remote=True, is_current=True, remote_name="origin/main"),
    BranchInfo("feature", is_local=True, is_remote=True, remote_name="origin/feature"),
    BranchInfo("local-only", is_local=True, is_remote=False),
    BranchInfo("remote-only", is_local=False, is_remote=True, remote_name="origin/remote-only"),
]


@pytest.fixture
def detail_engine(make_engine):
    """Engine showing the detail view of alpha with its branches loaded."""
    engine = make_engine()
    engine.open_detail(repo_path("alpha"))
    engine.handle(BranchesLoaded(path=repo_path("alpha"), branches=list(BRANCHES), current="main"))
    return engine


class TestScan:
    """Test scan completion and fetch modes."""

    def test_fetch_all(self, fake_git):
        engine = Engine("/work", tasks=TaskFactory(runner=fake_git), head_reader=str)
        repos = [Repository(path=repo_path(n), name=n) for n in ("alpha", "beta")]
        tasks = engine.handle(ScanCompleted(root="/work", repos=repos))
        assert [t.name for t in tasks] == ["status", "status"]
        assert engine.status_message == "Found 2 repositories"
        assert not engine.scanning

    def test_fetch_on_demand(self, fake_git):
        config = HerdConfig(fetch_mode=FetchMode.ON_DEMAND)
        engine = Engine("/work", config=config, tasks=TaskFactory(runner=fake_git), head_reader=str)
        repos = [Repository(path=repo_path("alpha"), name="alpha")]
        assert engine.handle(ScanCompleted(root="/work", repos=repos)) == []

    def test_fetch_favorites(self, fake_git):
        config = HerdConfig(fetch_mode=FetchMode.FAVORITES)
        engine = Engine(
            "/work",
            config=config,
            favorites=[repo_path("beta")],
            tasks=TaskFactory(runner=fake_git),
            head_reader=str,
        )
        repos = [Repository(path=repo_path(n), name=n) for n in ("alpha", "beta")]
        tasks = engine.handle(ScanCompleted(root="/work", repos=repos))
        assert [t.path for t in tasks] == [repo_path("beta")]

    def test_forced_full_fetch_overrides_mode_once(self, fake_git):
        config = HerdConfig(fetch_mode=FetchMode.ON_DEMAND)
        engine = Engine("/work", config=config, tasks=TaskFactory(runner=fake_git), head_reader=str)
        repos = [Repository(path=repo_path(n), name=n) for n in ("alpha", "beta")]

        tasks = engine.trigger_scan(force_full=True)
        assert [t.name for t in tasks] == ["scan"]
        assert engine.status_message == "Scanning all..."
        assert engine.scanning

        assert len(engine.handle(ScanCompleted(root="/work", repos=repos))) == 2
        assert not engine.force_full_fetch
        assert engine.handle(ScanCompleted(root="/work", repos=repos)) == []

    def test_favorites_marked(self, make_engine):
        engine = make_engine(favorites=[repo_path("beta")])
        assert engine.get_repo("beta").is_favorite
        assert not engine.get_repo("alpha").is_favorite

    def test_rescan_replaces_repositories(self, make_engine):
        engine = make_engine()
        engine.handle(ScanCompleted(root="/work", repos=[Repository(repo_path("delta"), "delta")]))
        assert [r.name for r in engine.repos] == ["delta"]


class TestLookup:
    """Test repository lookup."""

    def test_by_path_and_name(self, make_engine):
        engine = make_engine()
        assert engine.get_repo(repo_path("beta")).name == "beta"
        assert engine.get_repo("beta").path == repo_path("beta")

    def test_not_found(self, make_engine):
        engine = make_engine()
        with pytest.raises(RepositoryNotFound, match="Repository not found: nope"):
            engine.get_repo("nope")

    def test_commands_reject_unknown_repositories(self, make_engine):
        engine = make_engine()
        with pytest.raises(RepositoryNotFound):
            engine.trigger_pull(["nope"])
        with pytest.raises(RepositoryNotFound):
            engine.open_detail("nope")
        assert engine.mode == ViewMode.LIST


class TestStatusUpdates:
    """Test merging of status events."""

    def test_patch_repository(self, make_engine):
        engine = make_engine()
        engine.handle(StatusUpdated(repo_path("alpha"), "dev", RepoStatus.DIRTY, "3 changed", 2))
        repo = engine.get_repo("alpha")
        assert repo.branch == "dev"
        assert repo.status == RepoStatus.DIRTY
        assert repo.status_text == "3 changed"
        assert repo.behind_count == 2

    def test_unknown_path_ignored(self, make_engine):
        engine = make_engine()
        assert engine.handle(status("ghost", RepoStatus.CLEAN)) == []

    def test_subscribers_notified(self, make_engine):
        engine = make_engine()
        seen = []
        engine.subscribe(seen.append)
        event = status("alpha", RepoStatus.CLEAN)
        engine.handle(event)
        assert seen == [event]

    def test_no_render_while_editing_filter(self, make_engine):
        """Background updates land in state but do not redraw under the cursor."""
        engine = make_engine()
        engine.begin_filter_edit()
        seen = []
        engine.subscribe(seen.append)
        engine.handle(status("alpha", RepoStatus.DIRTY))
        assert seen == []
        assert engine.get_repo("alpha").is_dirty

    def test_unsubscribe(self, make_engine):
        engine = make_engine()
        seen = []
        unsubscribe = engine.subscribe(seen.append)
        unsubscribe()
        engine.toggle_dirty_filter()
        assert seen == []

    def test_commands_notify_with_none(self, make_engine):
        engine = make_engine()
        seen = []
        engine.subscribe(seen.append)
        engine.toggle_dirty_filter()
        assert seen == [None]


class TestPullRounds:
    """Test batch pulls and their completion."""

    def test_dispatch_captures_heads(self, make_engine):
        engine = make_engine(FIVE)
        tasks = engine.trigger_pull([repo_path(n) for n in FIVE])
        assert [t.name for t in tasks] == ["pull"] * 5
        assert engine.pulling
        assert engine.status_message == "Pulling 5 repos..."
        assert engine.tracker.pending[repo_path("r3")] == "head-r3"
        assert engine.snapshot().pending_pulls == 5

    def test_same_repository_named_twice_pulls_once(self, make_engine):
        engine = make_engine()
        tasks = engine.trigger_pull([repo_path("alpha"), "alpha", repo_path("beta")])
        assert [t.path for t in tasks] == [repo_path("alpha"), repo_path("beta")]
        assert engine.status_message == "Pulling 2 repos..."
        assert len(engine.tracker) == 2

    def test_round_with_new_commits_shows_results(self, make_engine):
        engine = make_engine(FIVE)
        seen = []
        engine.subscribe(seen.append)
        engine.trigger_pull([repo_path(n) for n in FIVE])

        engine.handle(pulled("r2", "c2"))
        engine.handle(pulled("r1"))
        engine.handle(pulled("r5", "c5a", "c5b"))
        engine.handle(pulled("r4"))
        assert engine.mode == ViewMode.LIST
        assert engine.pulling

        engine.handle(pulled("r3"))
        assert not engine.pulling
        assert engine.mode == ViewMode.PULL_RESULTS
        assert [r.repo_name for r in engine.results] == ["r2", "r5"]
        assert engine.navigator is not None
        ready = [e for e in seen if isinstance(e, ResultsReady)]
        assert len(ready) == 1
        assert [r.repo_name for r in ready[0].results] == ["r2", "r5"]

    def test_every_completion_refreshes_status(self, make_engine):
        engine = make_engine(FIVE)
        engine.trigger_pull([repo_path("r1")])
        tasks = engine.handle(pulled("r1", "c1"))
        assert [(t.name, t.path) for t in tasks] == [("status", repo_path("r1"))]

    def test_list_label_updated(self, make_engine):
        engine = make_engine(FIVE)
        engine.trigger_pull([repo_path("r1"), repo_path("r2")])
        engine.handle(pulled("r1", "c1"))
        engine.handle(pull_failed("r2"))
        assert engine.get_repo("r1").pull_result == "updated"
        assert engine.get_repo("r2").pull_result == "error"

    def test_partial_failure_keeps_results(self, make_engine):
        """A failed repository shows the error; results stay one step away."""
        engine = make_engine(FIVE)
        engine.trigger_pull([repo_path(n) for n in FIVE])

        engine.handle(pulled("r1", "c1"))
        engine.handle(pulled("r2"))
        engine.handle(pull_failed("r3"))
        assert engine.mode == ViewMode.ERROR
        assert "Pull failed for r3" in engine.error_message
        assert "Not possible to fast-forward" in engine.error_message

        engine.handle(pulled("r4", "c4"))
        engine.handle(pulled("r5"))
        assert engine.mode == ViewMode.ERROR
        assert engine.previous_mode == ViewMode.PULL_RESULTS
        assert not engine.pulling
        assert [r.repo_name for r in engine.results] == ["r1", "r4"]

        assert engine.dismiss_error() == []
        assert engine.mode == ViewMode.PULL_RESULTS
        assert engine.error_message == ""

    def test_failure_as_last_completion(self, make_engine):
        engine = make_engine(FIVE)
        engine.trigger_pull([repo_path("r1"), repo_path("r2")])
        engine.handle(pulled("r1", "c1"))
        engine.handle(pull_failed("r2"))
        assert engine.mode == ViewMode.ERROR
        assert engine.previous_mode == ViewMode.PULL_RESULTS
        engine.dismiss_error()
        assert engine.mode == ViewMode.PULL_RESULTS

    def test_failure_without_results_returns_to_list(self, make_engine):
        engine = make_engine(FIVE)
        engine.trigger_pull([repo_path("r1"), repo_path("r2")])
        engine.handle(pulled("r1"))
        engine.handle(pull_failed("r2"))
        engine.dismiss_error()
        assert engine.mode == ViewMode.LIST

    def test_nothing_new(self, make_engine):
        engine = make_engine(FIVE)
        engine.trigger_pull([repo_path("r1"), repo_path("r2")])
        engine.handle(pulled("r1"))
        engine.handle(pulled("r2"))
        assert engine.mode == ViewMode.LIST
        assert engine.status_message == "Pulled r2: up to date"
        assert engine.navigator is None

    def test_results_view_disabled(self, make_engine):
        engine = make_engine(FIVE, config=HerdConfig(show_pull_results=False))
        seen = []
        engine.subscribe(seen.append)
        engine.trigger_pull([repo_path("r1")])
        engine.handle(pulled("r1", "c1"))
        assert engine.mode == ViewMode.LIST
        assert engine.status_message == "Pulled r1: updated"
        assert len(engine.results) == 1
        assert not any(isinstance(e, ResultsReady) for e in seen)

    def test_single_pull_joins_running_round(self, make_engine):
        engine = make_engine(FIVE)
        engine.trigger_pull([repo_path("r1"), repo_path("r2")])
        engine.pull_selected(repo_path("r3"))
        assert len(engine.tracker) == 3
        assert engine.status_message == "Pulling r3..."

    def test_new_round_replaces_pending(self, make_engine):
        engine = make_engine(FIVE)
        engine.trigger_pull([repo_path("r1"), repo_path("r2")])
        engine.trigger_pull([repo_path("r3")])
        assert set(engine.tracker.pending) == {repo_path("r3")}

    def test_untracked_completion_not_aggregated(self, make_engine):
        engine = make_engine(FIVE)
        engine.trigger_pull([repo_path("r1")])
        engine.handle(pulled("r2", "stray"))
        assert engine.results == []
        assert engine.pulling
        engine.handle(pulled("r1"))
        assert engine.results == []
        assert not engine.pulling

    def test_nothing_to_pull(self, make_engine):
        engine = make_engine(FIVE)
        assert engine.trigger_pull([]) == []
        assert engine.status_message == "Nothing to pull"
        assert not engine.pulling

    def test_pull_behind(self, make_engine):
        engine = make_engine(FIVE)
        engine.handle(status("r2", RepoStatus.CLEAN_BEHIND, behind=3))
        engine.handle(status("r4", RepoStatus.DIRTY, behind=1))
        tasks = engine.pull_behind()
        assert sorted(t.path for t in tasks) == [repo_path("r2"), repo_path("r4")]

        engine = make_engine(FIVE)
        assert engine.pull_behind() == []
        assert engine.status_message == "No repos behind remote to pull"

    def test_pull_behind_respects_filters(self, make_engine):
        engine = make_engine(FIVE)
        engine.handle(status("r2", RepoStatus.CLEAN_BEHIND, behind=3))
        engine.handle(status("r4", RepoStatus.DIRTY, behind=1))
        engine.toggle_dirty_filter()
        assert [t.path for t in engine.pull_behind()] == [repo_path("r4")]

    def test_pull_favorites(self, make_engine):
        engine = make_engine(FIVE)
        assert engine.pull_favorites() == []
        assert engine.status_message == "No favorites to pull"
        engine.toggle_favorite("r1")
        assert [t.path for t in engine.pull_favorites()] == [repo_path("r1")]

    def test_pull_group(self, make_engine):
        engine = make_engine(FIVE, groups=[Group("work", [repo_path("r2"), repo_path("r3")])])
        tasks = engine.pull_group("work")
        assert sorted(t.path for t in tasks) == [repo_path("r2"), repo_path("r3")]
        assert engine.status_message == "Pulling 2 repos in work..."
        with pytest.raises(GroupError):
            engine.pull_group()


class TestResultsView:
    """Test browsing the results of a round through the engine."""

    @pytest.fixture
    def engine(self, make_engine):
        engine = make_engine(FIVE)
        engine.trigger_pull([repo_path("r1"), repo_path("r2")])
        engine.handle(pulled("r1", "c1", "c2"))
        engine.handle(pulled("r2", "c3"))
        return engine

    def test_lazy_file_loading(self, engine):
        assert engine.results_descend() == []
        assert engine.navigator.cursor.level == CursorLevel.COMMIT

        tasks = engine.results_descend()
        assert [(t.name, t.path) for t in tasks] == [("files", repo_path("r1"))]

        files = [FileChange("a.py", 3, 1)]
        engine.handle(FilesLoaded(repo_path("r1"), "c1", files))
        assert engine.navigator.files[(repo_path("r1"), "c1")] == files
        assert engine.navigator.selected_file() == files[0]

        engine.results_ascend()
        assert engine.results_descend() == []

    def test_failed_file_load_cached_empty(self, engine):
        engine.results_descend()
        engine.results_descend()
        engine.handle(FilesLoaded(repo_path("r1"), "c1", [], ok=False))
        assert engine.navigator.files[(repo_path("r1"), "c1")] == []

    def test_move_and_toggle(self, engine):
        assert engine.results_move(1)
        assert engine.navigator.selected_repo().repo_name == "r2"
        assert not engine.results_move(5)
        engine.results_toggle_expand_all()
        assert engine.navigator.expanded == {repo_path("r1"), repo_path("r2")}

    def test_snapshot_copies_tree_state(self, engine):
        snapshot = engine.snapshot()
        assert snapshot.mode == ViewMode.PULL_RESULTS
        assert snapshot.expanded == frozenset({repo_path("r1")})
        engine.results_move(1)
        assert snapshot.cursor.repo_idx == 0

    def test_close(self, engine):
        engine.close_results()
        assert engine.mode == ViewMode.LIST
        assert engine.results == []
        assert engine.navigator is None
        assert engine.results_descend() == []

    def test_new_round_clears_previous_results(self, engine):
        engine.trigger_pull([repo_path("r3")])
        assert engine.results == []
        assert engine.navigator is None


class TestFilters:
    """Test dirty/behind filters."""

    @pytest.fixture
    def engine(self, make_engine):
        engine = make_engine(("alpha", "beta", "gamma", "delta"))
        engine.handle(status("alpha", RepoStatus.DIRTY, behind=2))
        engine.handle(status("beta", RepoStatus.DIRTY))
        engine.handle(status("gamma", RepoStatus.CLEAN_BEHIND, behind=1))
        engine.handle(status("delta", RepoStatus.CLEAN))
        return engine

    def test_dirty(self, engine):
        engine.toggle_dirty_filter()
        assert engine.status_message == "Filter: showing repos with local changes"
        assert [r.name for r in engine.filtered_repos()] == ["alpha", "beta"]

    def test_behind(self, engine):
        engine.toggle_behind_filter()
        assert engine.status_message == "Filter: showing repos behind remote"
        assert [r.name for r in engine.filtered_repos()] == ["alpha", "gamma"]

    def test_combined_is_intersection(self, engine):
        engine.toggle_dirty_filter()
        engine.toggle_behind_filter()
        assert [r.name for r in engine.filtered_repos()] == ["alpha"]

    def test_clearing_one_widens(self, engine):
        engine.toggle_dirty_filter()
        engine.toggle_behind_filter()
        narrow = {r.name for r in engine.filtered_repos()}
        engine.toggle_dirty_filter()
        assert engine.status_message == "Filter: showing repos behind remote"
        assert narrow <= {r.name for r in engine.filtered_repos()}

    def test_toggle_off_message(self, engine):
        engine.toggle_dirty_filter()
        engine.toggle_dirty_filter()
        assert engine.status_message == "Filter cleared"

    def test_clear(self, engine):
        engine.toggle_dirty_filter()
        engine.toggle_behind_filter()
        engine.clear_filters()
        assert engine.status_message == "Filters cleared"
        assert len(engine.filtered_repos()) == 4

    def test_list_rows_filtered(self, engine):
        engine.toggle_behind_filter()
        assert item_names(engine) == ["alpha", "gamma"]


class TestTextFilter:
    """Test the name filter."""

    def test_flat_list_favorites_first(self, make_engine):
        engine = make_engine(
            ("alpha", "beta", "gamma", "omega"),
            favorites=[repo_path("gamma")],
            groups=[Group("work", [repo_path("alpha")])],
        )
        engine.begin_filter_edit()
        engine.set_filter_text("A")
        items = engine.visible_items()
        assert all(isinstance(i, Repository) for i in items)
        assert [i.name for i in items] == ["gamma", "alpha", "beta", "omega"]

        engine.set_filter_text("mEg")
        assert item_names(engine) == ["omega"]

    def test_combines_with_status_filters(self, make_engine):
        engine = make_engine(("alpha", "alpine"))
        engine.handle(status("alpine", RepoStatus.DIRTY))
        engine.set_filter_text("alp")
        engine.toggle_dirty_filter()
        assert item_names(engine) == ["alpine"]

    def test_apply_and_clear(self, make_engine):
        engine = make_engine()
        engine.begin_filter_edit()
        engine.set_filter_text("al")
        engine.apply_filter()
        assert not engine.filter_editing
        assert engine.filter_text == "al"
        engine.clear_text_filter()
        assert engine.filter_text == ""

    def test_restored_after_error(self, make_engine):
        engine = make_engine()
        engine.set_filter_text("al")
        engine.trigger_pull([repo_path("alpha")])
        engine.handle(pull_failed("alpha"))
        assert engine.mode == ViewMode.ERROR
        assert engine.filter_text == ""

        engine.dismiss_error()
        assert engine.mode == ViewMode.LIST
        assert engine.filter_text == "al"

    def test_restored_after_results(self, make_engine):
        engine = make_engine()
        engine.set_filter_text("al")
        engine.trigger_pull([repo_path("alpha"), repo_path("beta")])
        engine.handle(pull_failed("alpha"))
        engine.handle(pulled("beta", "c1"))
        engine.dismiss_error()
        assert engine.mode == ViewMode.PULL_RESULTS
        assert engine.filter_text == ""
        engine.close_results()
        assert engine.filter_text == "al"


class TestGroups:
    """Test groups and favorites."""

    def test_homepage_layout(self, make_engine):
        engine = make_engine(
            ("alpha", "beta", "gamma", "delta"),
            favorites=[repo_path("delta")],
            groups=[Group("work", [repo_path("alpha")]), Group("empty")],
        )
        items = engine.visible_items()
        assert [type(i) for i in items[:3]] == [GroupSummary] * 3
        assert [i.name for i in items] == ["Favorites", "empty", "work", "beta", "gamma"]

    def test_empty_favorites_hidden(self, make_engine):
        engine = make_engine()
        assert item_names(engine) == ["alpha", "beta", "gamma"]

    def test_group_summary_counts(self, make_engine):
        engine = make_engine(groups=[Group("work", [repo_path("alpha"), repo_path("beta")])])
        engine.handle(status("alpha", RepoStatus.DIRTY, behind=1))
        summary = engine.group_summary(engine.get_group("work"))
        assert (summary.repo_count, summary.dirty_count, summary.behind_count) == (2, 1, 1)

    def test_enter_and_leave(self, make_engine):
        engine = make_engine(groups=[Group("work", [repo_path("gamma"), repo_path("alpha")])])
        engine.enter_group("work")
        assert engine.status_message == "Entered group: work"
        assert item_names(engine) == ["alpha", "gamma"]
        engine.leave_group()
        assert engine.current_group is None

    def test_create(self, make_engine):
        engine = make_engine()
        engine.create_group(" tools ")
        assert engine.get_group("tools").repos == []
        with pytest.raises(GroupError, match="already exists"):
            engine.create_group("tools")
        with pytest.raises(GroupError, match="cannot be empty"):
            engine.create_group("  ")

    def test_builtin_protected(self, make_engine):
        engine = make_engine()
        with pytest.raises(GroupError, match="Cannot rename built-in group"):
            engine.rename_group("Favorites", "Stars")
        with pytest.raises(GroupError, match="Cannot delete built-in group"):
            engine.delete_group("Favorites")

    def test_rename_follows_current_group(self, make_engine):
        engine = make_engine(groups=[Group("work")])
        engine.enter_group("work")
        engine.rename_group("work", "job")
        assert engine.current_group == "job"
        with pytest.raises(GroupError, match="Unknown group: work"):
            engine.get_group("work")

    def test_delete_ungroups_members(self, make_engine):
        engine = make_engine(groups=[Group("work", [repo_path("alpha")])])
        engine.delete_group("work")
        assert "alpha" in [r.name for r in engine.ungrouped_repos()]

    def test_move_is_exclusive(self, make_engine):
        engine = make_engine(groups=[Group("a"), Group("b")])
        engine.move_to_group("alpha", "a")
        engine.move_to_group("alpha", "b")
        assert engine.get_group("a").repos == []
        assert engine.get_group("b").repos == [repo_path("alpha")]
        engine.move_to_group("alpha", None)
        assert engine.group_of(repo_path("alpha")) is None

    def test_move_to_favorites_syncs_flag(self, make_engine):
        engine = make_engine(groups=[Group("work")])
        engine.move_to_group("alpha", "Favorites")
        assert engine.get_repo("alpha").is_favorite
        assert repo_path("alpha") in engine.favorites
        engine.move_to_group("alpha", "work")
        assert not engine.get_repo("alpha").is_favorite
        assert repo_path("alpha") not in engine.get_group("Favorites").repos

    def test_add_requires_ungrouped(self, make_engine):
        engine = make_engine(groups=[Group("a", [repo_path("alpha")]), Group("b")])
        with pytest.raises(GroupError, match="alpha is already in a"):
            engine.add_to_group("b", "alpha")
        engine.add_to_group("b", "beta")
        assert engine.group_of(repo_path("beta")) == "b"

    def test_remove_from_current_group(self, make_engine):
        engine = make_engine(groups=[Group("work", [repo_path("alpha")])])
        engine.enter_group("work")
        engine.remove_from_group("alpha")
        assert engine.get_group("work").repos == []
        with pytest.raises(GroupError, match="not in work"):
            engine.remove_from_group("alpha")

    def test_toggle_favorite(self, make_engine):
        engine = make_engine()
        assert engine.toggle_favorite("beta")
        assert engine.status_message == "Added to favorites: beta"
        assert engine.get_group("Favorites").repos == [repo_path("beta")]
        assert not engine.toggle_favorite("beta")
        assert engine.status_message == "Removed from favorites: beta"
        assert engine.get_group("Favorites").repos == []

    def test_favorites_first_in_ungrouped(self, make_engine):
        engine = make_engine(groups=[Group("g", [repo_path("alpha")])])
        engine.toggle_favorite("gamma")
        # gamma is now in the Favorites group, leaving beta ungrouped
        assert item_names(engine) == ["Favorites", "g", "beta"]

    def test_persistence(self, make_engine, tmp_path: Path):
        store = ConfigStore(tmp_path)
        engine = make_engine(store=store)
        engine.create_group("work")
        engine.move_to_group("alpha", "work")
        engine.toggle_favorite("beta")

        assert store.load_favorites() == {repo_path("beta")}
        groups = store.load_groups()
        assert [(g.name, g.repos) for g in groups] == [("work", [repo_path("alpha")])]

    def test_groups_from_store_skip_favorites(self, fake_git, tmp_path: Path):
        store = ConfigStore(tmp_path)
        store.save_favorites({repo_path("beta")})
        store.save_groups([Group("work", [repo_path("alpha")])])
        engine = Engine.from_store("/work", store, tasks=TaskFactory(runner=fake_git))
        assert [g.name for g in engine.groups] == ["Favorites", "work"]
        assert engine.get_group("Favorites").is_builtin
        assert engine.get_group("Favorites").repos == [repo_path("beta")]


class TestRefresh:
    """Test fetch-mode aware refresh."""

    def test_all_mode_rescans(self, make_engine):
        engine = make_engine()
        tasks = engine.refresh(engine.get_repo("alpha"))
        assert [t.name for t in tasks] == ["scan"]
        assert engine.status_message == "Scanning..."

    def test_on_demand_refreshes_selected(self, make_engine):
        engine = make_engine(config=HerdConfig(fetch_mode=FetchMode.ON_DEMAND))
        tasks = engine.refresh(engine.get_repo("alpha"))
        assert [t.path for t in tasks] == [repo_path("alpha")]
        assert engine.status_message == "Refreshing alpha (1 repo)..."
        assert engine.refresh(None) == []

    def test_favorites_plus_selected(self, make_engine):
        engine = make_engine(
            config=HerdConfig(fetch_mode=FetchMode.FAVORITES), favorites=[repo_path("beta")]
        )
        tasks = engine.refresh(engine.get_repo("alpha"))
        assert sorted(t.path for t in tasks) == [repo_path("alpha"), repo_path("beta")]
        assert engine.status_message == "Refreshing favorites + selected (2 repos)..."

    def test_favorites_nothing_to_refresh(self, make_engine):
        engine = make_engine(config=HerdConfig(fetch_mode=FetchMode.FAVORITES))
        assert engine.refresh(None) == []
        assert engine.status_message == "No repos to refresh"

    def test_selected_group_row(self, make_engine):
        engine = make_engine(groups=[Group("work", [repo_path("alpha"), repo_path("beta")])])
        tasks = engine.refresh(engine.group_summary(engine.get_group("work")))
        assert len(tasks) == 2
        assert engine.status_message == "Refreshing 2 repos in work..."

    def test_refresh_all(self, make_engine):
        engine = make_engine()
        tasks = engine.refresh_all()
        assert [t.name for t in tasks] == ["scan"]
        assert engine.force_full_fetch
        assert engine.status_message == "Scanning all..."

    def test_refresh_all_in_group(self, make_engine):
        engine = make_engine(groups=[Group("work", [repo_path("alpha")])])
        engine.enter_group("work")
        assert len(engine.refresh_all()) == 1
        assert engine.status_message == "Refreshing all 1 repos in work..."

    def test_trigger_status(self, make_engine):
        engine = make_engine(favorites=[repo_path("gamma")])
        assert len(engine.trigger_status()) == 3
        assert [t.path for t in engine.trigger_status("favorites")] == [repo_path("gamma")]
        assert [t.path for t in engine.trigger_status("beta")] == [repo_path("beta")]

    def test_set_fetch_mode_persists(self, make_engine, tmp_path: Path):
        store = ConfigStore(tmp_path)
        engine = make_engine(store=store)
        engine.set_fetch_mode(FetchMode.FAVORITES)
        assert engine.status_message == "Fetch mode: Favorites only"
        assert store.load_config().fetch_mode == FetchMode.FAVORITES
        engine.set_fetch_mode("on_demand")
        assert engine.fetch_mode == FetchMode.ON_DEMAND
        assert engine.status_message == "Fetch mode: On-demand (visible only)"


class TestDetailView:
    """Test the detail view and branch operations."""

    def test_open(self, make_engine):
        engine = make_engine()
        tasks = engine.open_detail("alpha")
        assert [t.name for t in tasks] == ["detail", "branches"]
        assert engine.mode == ViewMode.DETAIL
        assert engine.detail_content == "Loading..."

    def test_stale_events_ignored(self, detail_engine):
        detail_engine.handle(DetailLoaded(repo_path("beta"), "beta report"))
        detail_engine.handle(BranchesLoaded(repo_path("beta"), [], ""))
        assert detail_engine.detail_content == "Loading..."
        assert len(detail_engine.branches) == 4

    def test_branch_index_on_current(self, detail_engine):
        branches = [BRANCHES[1], BRANCHES[0]]
        detail_engine.handle(BranchesLoaded(repo_path("alpha"), branches, "main"))
        assert detail_engine.branch_index == 1

    def test_close(self, detail_engine):
        detail_engine.close_detail()
        assert detail_engine.mode == ViewMode.LIST
        assert detail_engine.detail_path is None
        assert detail_engine.branches == []

    def test_branch_lookup(self, detail_engine):
        with pytest.raises(BranchNotFound, match="Unknown branch: nope"):
            detail_engine.find_branch("alpha", "nope")
        with pytest.raises(BranchNotFound, match="not loaded"):
            detail_engine.find_branch("beta", "main")

    def test_switch_to_current(self, detail_engine):
        assert detail_engine.switch_branch("alpha", "main") == []
        assert detail_engine.status_message == "Already on main"

    def test_switch_remote_only_checks_out_remote_ref(self, detail_engine, fake_git):
        tasks = detail_engine.switch_branch("alpha", "remote-only")
        assert [t.name for t in tasks] == ["switch"]
        event = tasks[0].run()
        assert event.ok
        assert fake_git.called("checkout", "origin/remote-only", path=repo_path("alpha"))

    def test_switch_success(self, detail_engine):
        detail_engine.switch_branch("alpha", "feature")
        tasks = detail_engine.handle(BranchSwitched(repo_path("alpha"), "feature", ok=True))
        assert detail_engine.status_message == "Switched to feature"
        assert detail_engine.get_repo("alpha").branch == "feature"
        assert [t.name for t in tasks] == ["detail", "branches", "status"]

    def test_blocked_switch_then_stash(self, detail_engine, fake_git):
        fake_git.git("status", "--porcelain", stdout=" M a.py\n")
        tasks = detail_engine.switch_branch("alpha", "feature")
        blocked = tasks[0].run()
        assert blocked.blocked_by_changes
        assert not fake_git.called("checkout", "feature")

        detail_engine.handle(blocked)
        assert detail_engine.mode == ViewMode.ACTION_SELECT

        tasks = detail_engine.resolve_dirty_switch(SwitchAction.STASH)
        assert [t.name for t in tasks] == ["stash"]
        stashed = tasks[0].run()
        assert stashed.ok

        tasks = detail_engine.handle(stashed)
        assert detail_engine.mode == ViewMode.DETAIL
        assert detail_engine.status_message == "Switching to feature..."
        # The retry skips the clean check
        switched = tasks[0].run()
        assert switched.ok
        assert fake_git.called("checkout", "feature")

        detail_engine.handle(switched)
        assert detail_engine.status_message == "Switched to feature"
        assert detail_engine.target_branch == ""

    def test_blocked_switch_discard(self, detail_engine):
        detail_engine.switch_branch("alpha", "feature")
        detail_engine.handle(
            BranchSwitched(repo_path("alpha"), "feature", ok=False, blocked_by_changes=True)
        )
        tasks = detail_engine.resolve_dirty_switch(SwitchAction.DISCARD)
        assert [t.name for t in tasks] == ["discard"]
        assert detail_engine.status_message == "Discarding changes..."

    def test_blocked_switch_cancel(self, detail_engine):
        detail_engine.switch_branch("alpha", "feature")
        detail_engine.handle(
            BranchSwitched(repo_path("alpha"), "feature", ok=False, blocked_by_changes=True)
        )
        assert detail_engine.resolve_dirty_switch(SwitchAction.CANCEL) == []
        assert detail_engine.mode == ViewMode.DETAIL
        assert detail_engine.target_checkout == ""

    def test_stash_failure(self, detail_engine):
        detail_engine.switch_branch("alpha", "feature")
        detail_engine.handle(StashCompleted(repo_path("alpha"), ok=False, error="no local changes"))
        assert detail_engine.mode == ViewMode.ERROR
        assert detail_engine.error_message == "Operation failed:\n\nno local changes"

    def test_switch_failure_returns_to_detail(self, detail_engine):
        detail_engine.switch_branch("alpha", "feature")
        detail_engine.handle(
            BranchSwitched(repo_path("alpha"), "feature", ok=False, error="error: pathspec")
        )
        assert detail_engine.mode == ViewMode.ERROR
        assert "Branch switch failed" in detail_engine.error_message

        tasks = detail_engine.dismiss_error()
        assert detail_engine.mode == ViewMode.DETAIL
        assert [(t.name, t.path) for t in tasks] == [("detail", repo_path("alpha"))]

    @pytest.mark.parametrize(
        ("branch", "force", "message"),
        [
            ("main", False, "Cannot delete current branch"),
            ("remote-only", False, "Branch is remote-only, nothing to delete locally"),
            ("remote-only", True, "Branch is remote-only"),
            ("feature", False, "Branch exists on remote. Use 'X' to force delete."),
        ],
    )
    def test_delete_refused(self, detail_engine, branch, force, message):
        assert detail_engine.delete_branch("alpha", branch, force=force) == []
        assert detail_engine.status_message == message

    def test_delete(self, detail_engine, fake_git):
        tasks = detail_engine.delete_branch("alpha", "local-only")
        tasks[0].run()
        assert fake_git.called("branch", "-d", "local-only")

        tasks = detail_engine.delete_branch("alpha", "feature", force=True)
        tasks[0].run()
        assert fake_git.called("branch", "-D", "feature")

    def test_delete_completion(self, detail_engine):
        tasks = detail_engine.handle(BranchDeleted(repo_path("alpha"), "local-only", ok=True))
        assert detail_engine.status_message == "Deleted branch: local-only"
        assert [t.name for t in tasks] == ["branches"]

        detail_engine.handle(
            BranchDeleted(repo_path("alpha"), "feature", ok=False, error="not fully merged")
        )
        assert detail_engine.error_message == "Delete failed: not fully merged"

    def test_create_refused(self, detail_engine):
        assert detail_engine.create_branch("alpha", "feature") == []
        assert detail_engine.status_message == "Branch already exists locally"

    def test_create_tracking_branch(self, detail_engine, fake_git):
        tasks = detail_engine.create_branch("alpha", "remote-only")
        assert detail_engine.status_message == "Creating local branch remote-only..."
        event = tasks[0].run()
        assert fake_git.called("branch", "--track", "remote-only", "origin/remote-only")

        followups = detail_engine.handle(event)
        assert detail_engine.status_message == "Created local branch: remote-only"
        assert [t.name for t in followups] == ["branches"]

    def test_create_failure(self, detail_engine):
        detail_engine.handle(
            BranchCreated(repo_path("alpha"), "remote-only", ok=False, error="already exists")
        )
        assert detail_engine.error_message == "Create failed: already exists"


class TestCommands:
    """Test running commands from the detail view."""

    def test_run(self, detail_engine):
        tasks = detail_engine.run_command("alpha", "git log -1")
        assert [t.name for t in tasks] == ["command"]
        assert detail_engine.command_output == "Running: git log -1\n\n"
        assert detail_engine.run_command("alpha", "git status") == []

    def test_blank_command(self, detail_engine):
        assert detail_engine.run_command("alpha", "   ") == []
        assert not detail_engine.command_running

    def test_output_appended(self, detail_engine):
        detail_engine.run_command("alpha", "git log -1")
        tasks = detail_engine.handle(
            CommandOutput(repo_path("alpha"), "git log -1", "abc123 msg\n", ok=True)
        )
        assert detail_engine.command_output == "Running: git log -1\n\nabc123 msg\n"
        assert not detail_engine.command_running
        assert [t.name for t in tasks] == ["detail", "branches", "status"]

    def test_no_output(self, detail_engine):
        detail_engine.run_command("alpha", "true")
        detail_engine.handle(CommandOutput(repo_path("alpha"), "true", "", ok=True))
        assert detail_engine.command_output.endswith("(no output)\n")

    def test_failure(self, detail_engine):
        detail_engine.run_command("alpha", "false")
        detail_engine.handle(
            CommandOutput(repo_path("alpha"), "false", "", ok=False, error="exit status 1")
        )
        assert detail_engine.command_output.endswith("Error: exit status 1\n\n")


class TestSnapshot:
    """Test the read-only snapshot."""

    def test_is_a_copy(self, make_engine):
        engine = make_engine()
        snapshot = engine.snapshot()
        snapshot.repos[0].branch = "changed"
        assert engine.get_repo(snapshot.repos[0].path).branch == ""

    def test_reflects_state(self, make_engine):
        engine = make_engine()
        engine.toggle_dirty_filter()
        snapshot = engine.snapshot()
        assert snapshot.mode == ViewMode.LIST
        assert snapshot.filter_dirty
        assert snapshot.items == ()
        assert snapshot.cursor is None
