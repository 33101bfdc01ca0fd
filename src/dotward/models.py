"""Shared models and enums for dotward."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .config import DotEntry


class LinkMode(str, Enum):
    """How a managed entry is materialised at its target."""

    SYMLINK = "symlink"
    COPY = "copy"
    TEMPLATE = "template"


class EntryKind(str, Enum):
    """Kinds of filesystem entries seen at a target."""

    NONE = "none"
    FILE = "file"
    SYMLINK = "symlink"
    DIRECTORY = "directory"
    UNKNOWN = "unknown"


@dataclass(frozen=True, slots=True)
class StateRecord:
    """A fact the engine previously established for a target."""

    target: Path
    content_fingerprint: str
    link_mode: LinkMode
    managed_since: datetime
    source: str | None = None

    def key(self) -> str:
        return self.target.as_posix()


@dataclass(frozen=True, slots=True)
class PackageRecord:
    """A package the engine installed or adopted."""

    backend: str
    name: str
    managed_since: datetime

    def key(self) -> tuple[str, str]:
        return (self.backend, self.name)


@dataclass(frozen=True, slots=True)
class FilesystemObservation:
    """Point-in-time read of a target path."""

    target: Path
    exists: bool
    kind: EntryKind
    resolved_link_target: Path | None = None
    content_fingerprint: str | None = None

    @classmethod
    def missing(cls, target: Path) -> "FilesystemObservation":
        return cls(target=target, exists=False, kind=EntryKind.NONE)


class ActionKind(str, Enum):
    """Kinds of planned file actions."""

    CREATE = "create"
    UPDATE = "update"
    REMOVE = "remove"
    SKIP = "skip"
    CONFLICT = "conflict"


@dataclass(frozen=True, slots=True)
class Action:
    """A single planned operation on one target path.

    ``entry`` is ``None`` for orphan removals, which only know their target.
    """

    kind: ActionKind
    target: Path
    rationale: str
    entry: "DotEntry | None" = None
    desired_fingerprint: str | None = None
    observed_fingerprint: str | None = None
    record_state: bool = False
    modified: bool = False

    @property
    def subject(self) -> str:
        if self.entry is not None:
            return f"{self.entry.source} -> {self.target}"
        return str(self.target)


class PackageActionKind(str, Enum):
    """Kinds of planned package actions."""

    INSTALL = "install"
    SKIP = "skip"
    UNCONFIGURED = "unconfigured"


@dataclass(frozen=True, slots=True)
class PackageAction:
    """A planned package operation."""

    kind: PackageActionKind
    backend: str
    name: str
    rationale: str

    @property
    def subject(self) -> str:
        return f"{self.backend}:{self.name}"


@dataclass(frozen=True, slots=True)
class ActionPlan:
    """Ordered output of the diff planner."""

    actions: tuple[Action, ...] = ()
    packages: tuple[PackageAction, ...] = ()

    def kinds(self) -> list[ActionKind]:
        return [action.kind for action in self.actions]

    def by_kind(self, kind: ActionKind) -> list[Action]:
        return [action for action in self.actions if action.kind is kind]

    @property
    def is_converged(self) -> bool:
        return all(action.kind is ActionKind.SKIP for action in self.actions) and all(
            item.kind is not PackageActionKind.INSTALL for item in self.packages
        )


class Mode(str, Enum):
    """Resolver interaction mode."""

    INTERACTIVE = "interactive"
    NON_INTERACTIVE = "non-interactive"


class Decision(str, Enum):
    """Resolver verdict for a planned action."""

    APPROVED = "approved"
    SKIPPED = "skipped"


@dataclass(frozen=True, slots=True)
class ResolvedAction:
    action: Action
    decision: Decision
    reason: str


@dataclass(frozen=True, slots=True)
class ResolvedPackageAction:
    action: PackageAction
    decision: Decision
    reason: str


@dataclass(frozen=True, slots=True)
class ResolvedPlan:
    """Plan annotated with resolver decisions, in planner order."""

    actions: tuple[ResolvedAction, ...] = ()
    packages: tuple[ResolvedPackageAction, ...] = ()
    mode: Mode = Mode.NON_INTERACTIVE

    def approved(self) -> list[ResolvedAction]:
        return [item for item in self.actions if item.decision is Decision.APPROVED]

    def skipped(self) -> list[ResolvedAction]:
        return [item for item in self.actions if item.decision is Decision.SKIPPED]


class OutcomeStatus(str, Enum):
    """Result of executing (or simulating) one resolved action."""

    APPLIED = "applied"
    SIMULATED = "simulated"
    SKIPPED = "skipped"
    FAILED = "failed"
    NOT_RUN = "not_run"


@dataclass(frozen=True, slots=True)
class ActionOutcome:
    """What happened to one action during execution."""

    subject: str
    kind: str
    status: OutcomeStatus
    message: str = ""
    target: Path | None = None


class ExitCode(int, Enum):
    OK = 0
    NEEDS_ATTENTION = 1
    ERROR = 2


@dataclass(slots=True)
class ExecutionReport:
    """Itemised result of an executor run."""

    simulated: bool
    outcomes: list[ActionOutcome] = field(default_factory=list)
    aborted: bool = False
    cancelled: bool = False

    def add(self, outcome: ActionOutcome) -> None:
        self.outcomes.append(outcome)

    def with_status(self, status: OutcomeStatus) -> list[ActionOutcome]:
        return [outcome for outcome in self.outcomes if outcome.status is status]

    def classifications(self) -> list[tuple[str, str]]:
        """Return ``(subject, kind)`` pairs, independent of dry-run status."""

        return [(outcome.subject, outcome.kind) for outcome in self.outcomes]

    @property
    def failed(self) -> list[ActionOutcome]:
        return self.with_status(OutcomeStatus.FAILED)

    @property
    def skipped(self) -> list[ActionOutcome]:
        return [
            outcome
            for outcome in self.with_status(OutcomeStatus.SKIPPED)
            if outcome.kind in (ActionKind.CONFLICT.value, ActionKind.REMOVE.value)
        ]

    @property
    def exit_code(self) -> ExitCode:
        if self.failed or self.aborted or self.with_status(OutcomeStatus.NOT_RUN):
            return ExitCode.ERROR
        if self.skipped:
            return ExitCode.NEEDS_ATTENTION
        return ExitCode.OK
