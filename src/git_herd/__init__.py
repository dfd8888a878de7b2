"""git-herd: keep a herd of Git repositories up to date from one place."""

# Guard against deleted CWD (e.g. directory removed by another process).
# rich crashes on import if os.getcwd() fails, so recover before any imports.
import os

try:
    os.getcwd()
except (OSError, PermissionError):
    os.chdir(os.path.expanduser("~"))

from ._version import __version__
from .cli import app
from .config import ConfigStore, HerdConfig
from .core import (
    BranchReconciler,
    CommandResult,
    GitOperations,
    PullAggregator,
    StatusRefresher,
    parse_stat_output,
    run_command,
)
from .engine import (
    BatchJoinTracker,
    BranchNotFound,
    Engine,
    EngineSnapshot,
    GroupError,
    HerdError,
    RepositoryNotFound,
    ResultTreeNavigator,
    SwitchAction,
    ViewMode,
)
from .formatters import OutputFormatter
from .models import (
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
from .scanner import scan_for_repos
from .tasks import Runtime, Task, TaskFactory

__all__ = [
    # Version
    "__version__",
    # CLI
    "app",
    # Models
    "BranchInfo",
    "CommitInfo",
    "FetchMode",
    "FileChange",
    "Group",
    "GroupSummary",
    "PullResultInfo",
    "Repository",
    "RepoStatus",
    # Git plumbing
    "BranchReconciler",
    "CommandResult",
    "GitOperations",
    "PullAggregator",
    "StatusRefresher",
    "parse_stat_output",
    "run_command",
    "scan_for_repos",
    # Engine
    "BatchJoinTracker",
    "Engine",
    "EngineSnapshot",
    "ResultTreeNavigator",
    "Runtime",
    "SwitchAction",
    "Task",
    "TaskFactory",
    "ViewMode",
    # Errors
    "BranchNotFound",
    "GroupError",
    "HerdError",
    "RepositoryNotFound",
    # Config
    "ConfigStore",
    "HerdConfig",
    # Formatters
    "OutputFormatter",
]
