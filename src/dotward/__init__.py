"""Core package for the dotward project."""

from .adoption import AdoptionEngine, AdoptMode
from .cli import app, run
from .config import Config, DotEntry, HostContext, HostFilter, PackageSpec, Settings, load_config
from .errors import (
    AdoptionConflict,
    ConfigError,
    DotwardError,
    FilesystemError,
    LockError,
    PackageBackendError,
    StateStoreError,
)
from .executor import Executor, execute
from .manager import DotwardManager, RunResult
from .models import (
    Action,
    ActionKind,
    ActionPlan,
    ExecutionReport,
    ExitCode,
    LinkMode,
    Mode,
    OutcomeStatus,
    ResolvedPlan,
)
from .planner import plan
from .resolver import resolve
from .state import StateStore

__all__ = [
    "AdoptionEngine",
    "AdoptMode",
    "Config",
    "DotEntry",
    "HostContext",
    "HostFilter",
    "PackageSpec",
    "Settings",
    "load_config",
    "AdoptionConflict",
    "ConfigError",
    "DotwardError",
    "FilesystemError",
    "LockError",
    "PackageBackendError",
    "StateStoreError",
    "Executor",
    "execute",
    "DotwardManager",
    "RunResult",
    "Action",
    "ActionKind",
    "ActionPlan",
    "ExecutionReport",
    "ExitCode",
    "LinkMode",
    "Mode",
    "OutcomeStatus",
    "ResolvedPlan",
    "plan",
    "resolve",
    "StateStore",
    "app",
    "run",
]
