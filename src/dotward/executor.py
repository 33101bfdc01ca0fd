"""Executor: applies (or simulates) a resolved plan."""

from __future__ import annotations

import logging
import os
import stat
from collections import defaultdict
from typing import Any, Mapping

from .config import DotEntry
from .errors import DotwardError, FilesystemError, PackageBackendError, StateStoreError
from .filesystem import (
    atomic_copy_file,
    atomic_copy_tree,
    atomic_symlink,
    atomic_write_bytes,
    hash_path,
    remove_path,
    writable_problem,
)
from .models import (
    Action,
    ActionKind,
    ActionOutcome,
    Decision,
    ExecutionReport,
    LinkMode,
    OutcomeStatus,
    PackageActionKind,
    ResolvedAction,
    ResolvedPackageAction,
    ResolvedPlan,
    StateRecord,
)
from .packages import BackendRegistry
from .render import desired_content
from .state import StateStore, utcnow

logger = logging.getLogger(__name__)


class Executor:
    """Applies approved actions in plan order, committing state after each one."""

    def __init__(
        self,
        state: StateStore,
        *,
        variables: Mapping[str, Any] | None = None,
        backends: BackendRegistry | None = None,
    ) -> None:
        self.state = state
        self.variables = dict(variables or {})
        self.backends = backends

    def execute(self, plan: ResolvedPlan, dry_run: bool = False) -> ExecutionReport:
        """Run ``plan``; under ``dry_run`` only validate preconditions.

        Per-action failures are recorded and execution continues. A state
        store write failure aborts the rest of the run.
        """

        report = ExecutionReport(simulated=dry_run)
        pending: list[ResolvedAction | ResolvedPackageAction] = [*plan.actions, *plan.packages]

        index = 0
        in_flight = 1
        try:
            while index < len(pending):
                item = pending[index]
                if isinstance(item, ResolvedAction):
                    in_flight = 1
                    report.add(self._run_action(item, dry_run))
                    index += 1
                else:
                    batch = self._package_batch(pending, index)
                    in_flight = len(batch)
                    for outcome in self._run_packages(batch, dry_run):
                        report.add(outcome)
                    index += len(batch)
        except StateStoreError as exc:
            logger.error("%s; aborting remaining actions", exc)
            report.aborted = True
            for item in pending[index : index + in_flight]:
                report.add(_outcome(item, OutcomeStatus.FAILED, f"applied but state not saved: {exc}"))
            self._mark_not_run(report, pending[index + in_flight :], "aborted after state store failure")
        except KeyboardInterrupt:
            logger.warning("Interrupted; remaining actions were not run")
            report.cancelled = True
            self._mark_not_run(report, pending[index:], "cancelled")

        return report

    # ------------------------------------------------------------------
    # File actions

    def _run_action(self, item: ResolvedAction, dry_run: bool) -> ActionOutcome:
        action = item.action
        if item.decision is Decision.SKIPPED:
            return _outcome(item, OutcomeStatus.SKIPPED, item.reason)

        try:
            if action.kind is ActionKind.SKIP:
                if action.record_state and not dry_run:
                    self._record(action.entry, action)
                    return _outcome(item, OutcomeStatus.SKIPPED, "up to date; state recorded")
                return _outcome(item, OutcomeStatus.SKIPPED, action.rationale)
            if dry_run:
                self._check_preconditions(action)
                return _outcome(item, OutcomeStatus.SIMULATED, f"would {_verb(action)}")
            if action.kind is ActionKind.REMOVE:
                self._remove(action)
            else:
                self._materialise(action)
        except StateStoreError:
            raise
        except (OSError, DotwardError) as exc:
            logger.error("Failed to %s %s: %s", _verb(action), action.target, exc)
            return _outcome(item, OutcomeStatus.FAILED, str(exc))

        return _outcome(item, OutcomeStatus.APPLIED, _verb(action, past=True))

    def _check_preconditions(self, action: Action) -> None:
        target = action.target
        problem = writable_problem(target)
        if problem:
            raise FilesystemError(target, problem)

        if action.kind is ActionKind.REMOVE:
            return

        entry = _require_entry(action)
        source = entry.source_path
        if not source.exists():
            raise FilesystemError(source, "source does not exist")
        if not os.access(source, os.R_OK):
            raise FilesystemError(source, "source is not readable")
        if entry.link_mode is LinkMode.TEMPLATE:
            desired_content(entry, self.variables)
        if target.is_dir() and not target.is_symlink():
            if entry.link_mode is LinkMode.SYMLINK:
                if action.kind is not ActionKind.UPDATE:
                    raise FilesystemError(target, "a directory is in the way")
            elif not source.is_dir():
                raise FilesystemError(target, "a directory is in the way")

    def _materialise(self, action: Action) -> None:
        entry = _require_entry(action)
        target = action.target
        source = entry.source_path

        if entry.link_mode is LinkMode.SYMLINK:
            # An update proves the recorded directory is ours to replace.
            owned = action.kind is ActionKind.UPDATE
            if target.is_dir() and not target.is_symlink() and not owned:
                raise FilesystemError(target, "a directory is in the way")
            atomic_symlink(target, source, replace_directory=owned)
        elif entry.link_mode is LinkMode.TEMPLATE:
            mode = entry.permissions
            if mode is None:
                mode = stat.S_IMODE(source.stat().st_mode)
            atomic_write_bytes(target, desired_content(entry, self.variables), mode=mode)
        elif source.is_dir():
            atomic_copy_tree(source.resolve(), target)
            if entry.permissions is not None:
                os.chmod(target, entry.permissions)
        else:
            atomic_copy_file(source.resolve(), target, mode=entry.permissions)

        logger.info("%s %s", _verb(action, past=True).capitalize(), target)
        self._record(entry, action)

    def _remove(self, action: Action) -> None:
        if action.target.exists() or action.target.is_symlink():
            remove_path(action.target)
            logger.info("Removed %s", action.target)
        self.state.remove(action.target)
        self.state.save()

    def _record(self, entry: DotEntry | None, action: Action) -> None:
        entry = entry or _require_entry(action)
        previous = self.state.get(entry.target)
        self.state.upsert(
            StateRecord(
                target=entry.target,
                content_fingerprint=hash_path(entry.target),
                link_mode=entry.link_mode,
                managed_since=previous.managed_since if previous else utcnow(),
                source=entry.source.as_posix(),
            )
        )
        self.state.save()

    # ------------------------------------------------------------------
    # Package actions

    @staticmethod
    def _package_batch(pending, start: int) -> list[ResolvedPackageAction]:
        backend = pending[start].action.backend
        batch = []
        for item in pending[start:]:
            if not isinstance(item, ResolvedPackageAction) or item.action.backend != backend:
                break
            batch.append(item)
        return batch

    def _run_packages(self, batch: list[ResolvedPackageAction], dry_run: bool) -> list[ActionOutcome]:
        outcomes: dict[int, ActionOutcome] = {}
        installs: dict[str, list[int]] = defaultdict(list)

        for position, item in enumerate(batch):
            action = item.action
            if item.decision is Decision.SKIPPED or action.kind is PackageActionKind.UNCONFIGURED:
                outcomes[position] = _outcome(item, OutcomeStatus.SKIPPED, item.reason)
            elif action.kind is PackageActionKind.SKIP:
                if not dry_run and not self.state.is_package_managed(action.backend, action.name):
                    self.state.add_package(action.backend, action.name)
                    self.state.save()
                outcomes[position] = _outcome(item, OutcomeStatus.SKIPPED, action.rationale)
            else:
                installs[action.backend].append(position)

        for backend_name, positions in installs.items():
            names = [batch[position].action.name for position in positions]
            try:
                if self.backends is None:
                    raise PackageBackendError("no package backends are configured")
                if dry_run:
                    self.backends.get(backend_name)
                    status, message = OutcomeStatus.SIMULATED, "would install"
                else:
                    self.backends.install(backend_name, names)
                    status, message = OutcomeStatus.APPLIED, "installed"
                    logger.info("Installed %s via %s", ", ".join(names), backend_name)
            except PackageBackendError as exc:
                logger.error("Package install via %s failed: %s", backend_name, exc)
                status, message = OutcomeStatus.FAILED, str(exc)

            if status is OutcomeStatus.APPLIED:
                for name in names:
                    self.state.add_package(backend_name, name)
                self.state.save()
            for position in positions:
                outcomes[position] = _outcome(batch[position], status, message)

        return [outcomes[position] for position in range(len(batch))]

    @staticmethod
    def _mark_not_run(report: ExecutionReport, remaining, reason: str) -> None:
        for item in remaining:
            report.add(_outcome(item, OutcomeStatus.NOT_RUN, reason))


def execute(
    plan: ResolvedPlan,
    dry_run: bool,
    *,
    state: StateStore,
    variables: Mapping[str, Any] | None = None,
    backends: BackendRegistry | None = None,
) -> ExecutionReport:
    """Functional wrapper around :class:`Executor`."""

    return Executor(state, variables=variables, backends=backends).execute(plan, dry_run)


def _outcome(item: ResolvedAction | ResolvedPackageAction, status: OutcomeStatus, message: str) -> ActionOutcome:
    action = item.action
    target = action.target if isinstance(item, ResolvedAction) else None
    return ActionOutcome(
        subject=action.subject,
        kind=action.kind.value,
        status=status,
        message=message,
        target=target,
    )


def _require_entry(action: Action) -> DotEntry:
    if action.entry is None:
        raise DotwardError(f"Action on '{action.target}' has no managed entry")
    return action.entry


def _verb(action: Action, *, past: bool = False) -> str:
    verbs = {
        ActionKind.CREATE: ("create", "created"),
        ActionKind.UPDATE: ("update", "updated"),
        ActionKind.CONFLICT: ("overwrite", "overwrote"),
        ActionKind.REMOVE: ("remove", "removed"),
        ActionKind.SKIP: ("skip", "skipped"),
    }
    present, past_tense = verbs[action.kind]
    return past_tense if past else present
