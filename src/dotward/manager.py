"""High level orchestration for dotward operations."""

from __future__ import annotations

import fnmatch
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator, Sequence

from filelock import FileLock, Timeout

from .adoption import AdoptionEngine, AdoptMode, PackageAdoption
from .config import Config, DotEntry, EffectiveConfig, HostContext, append_to_config
from .errors import ConfigError, LockError, PackageBackendError
from .executor import Executor
from .inspector import observe_many
from .models import (
    ActionKind,
    ActionPlan,
    ExecutionReport,
    LinkMode,
    Mode,
    ResolvedPlan,
)
from .packages import BackendRegistry
from .planner import desired_fingerprints, plan
from .resolver import Prompt, resolve
from .state import StateStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RunResult:
    """Everything one reconciliation run produced."""

    plan: ActionPlan
    resolved: ResolvedPlan
    report: ExecutionReport


@dataclass(frozen=True, slots=True)
class DotStatus:
    """Current classification of one managed entry."""

    entry: DotEntry
    kind: ActionKind
    rationale: str


class DotwardManager:
    """Coordinates planning, resolution and execution for one configuration."""

    def __init__(
        self,
        config: Config,
        host: HostContext | None = None,
        *,
        backends: BackendRegistry | None = None,
    ) -> None:
        self.config = config
        self.host = host or HostContext.detect()
        self.backends = backends or BackendRegistry.default(timeout=config.settings.command_timeout)
        self.state = StateStore.load(config.settings.state_path)
        self._effective: EffectiveConfig | None = None

    @property
    def effective(self) -> EffectiveConfig:
        """Host-filtered configuration; raises ``ConfigError`` on duplicate targets."""

        if self._effective is None:
            self._effective = self.config.effective(self.host)
        return self._effective

    @contextmanager
    def lock(self) -> Iterator[None]:
        """Hold the advisory engine lock for the duration of the block."""

        settings = self.config.settings
        settings.lock_path.parent.mkdir(parents=True, exist_ok=True)
        file_lock = FileLock(str(settings.lock_path), timeout=settings.lock_timeout)
        try:
            file_lock.acquire()
        except Timeout as exc:
            raise LockError(
                f"Another dotward run holds '{settings.lock_path}'; gave up after {settings.lock_timeout:g}s"
            ) from exc
        try:
            yield
        finally:
            file_lock.release()

    # ------------------------------------------------------------------
    # Reconciliation

    def plan(self, *, orphans_only: bool = False, packages: bool = True) -> ActionPlan:
        effective = self.effective
        fingerprints = None if orphans_only else desired_fingerprints(effective)
        targets = [record.target for record in self.state.records()]
        if not orphans_only:
            targets.extend(entry.target for entry in effective.dots)
        observations = observe_many(targets, workers=effective.settings.inspect_workers)
        installed = self._installed_packages(effective) if packages and not orphans_only else None
        return plan(
            effective,
            self.state,
            observations,
            fingerprints=fingerprints,
            installed=installed,
            orphans_only=orphans_only,
        )

    def apply(
        self,
        *,
        mode: Mode = Mode.NON_INTERACTIVE,
        dry_run: bool = False,
        force: bool = False,
        prompt: Prompt | None = None,
        packages: bool = True,
    ) -> RunResult:
        """Plan, resolve and execute; ``force`` approves orphan removals."""

        return self._run(mode=mode, dry_run=dry_run, force=force, prompt=prompt, packages=packages)

    def clean(
        self,
        *,
        mode: Mode = Mode.NON_INTERACTIVE,
        dry_run: bool = False,
        force: bool = False,
        prompt: Prompt | None = None,
    ) -> RunResult:
        """Only look for orphaned state records and remove the approved ones."""

        return self._run(mode=mode, dry_run=dry_run, force=force, prompt=prompt, orphans_only=True, packages=False)

    def _run(
        self,
        *,
        mode: Mode,
        dry_run: bool,
        force: bool,
        prompt: Prompt | None,
        orphans_only: bool = False,
        packages: bool = True,
    ) -> RunResult:
        # Configuration errors surface here, before the lock or any mutation.
        effective = self.effective
        if not effective.dots and not effective.packages:
            logger.info("Nothing is configured for host '%s'", effective.host.hostname)

        if dry_run:
            return self._plan_and_execute(mode, True, force, prompt, orphans_only, packages)
        with self.lock():
            # Re-read state under the lock so a run that finished meanwhile is seen.
            self.state = StateStore.load(self.config.settings.state_path)
            return self._plan_and_execute(mode, False, force, prompt, orphans_only, packages)

    def _plan_and_execute(
        self,
        mode: Mode,
        dry_run: bool,
        force: bool,
        prompt: Prompt | None,
        orphans_only: bool,
        packages: bool,
    ) -> RunResult:
        action_plan = self.plan(orphans_only=orphans_only, packages=packages)
        resolved = resolve(action_plan, mode, force=force, prompt=prompt)
        executor = Executor(self.state, variables=self.effective.variables, backends=self.backends)
        report = executor.execute(resolved, dry_run=dry_run)
        return RunResult(plan=action_plan, resolved=resolved, report=report)

    def _installed_packages(self, effective: EffectiveConfig) -> dict[str, set[str]] | None:
        wanted = {package.backend for package in effective.packages}
        wanted.update(record.backend for record in self.state.packages())
        if not wanted:
            return None

        installed: dict[str, set[str]] = {}
        for backend in sorted(wanted):
            try:
                installed[backend] = self.backends.installed(backend)
            except PackageBackendError as exc:
                logger.warning("Cannot query %s packages: %s", backend, exc)
                installed[backend] = set()
        return installed

    # ------------------------------------------------------------------
    # Queries

    def dots(self) -> list[DotStatus]:
        """Managed entries for this host with their current classification."""

        entries = {entry.target: entry for entry in self.effective.dots}
        statuses = []
        for action in self.plan(packages=False).actions:
            entry = entries.get(action.target)
            if entry is not None:
                statuses.append(DotStatus(entry=entry, kind=action.kind, rationale=action.rationale))
        return statuses

    def find(self, pattern: str) -> list[DotEntry]:
        """Configured entries whose source or target matches ``pattern``.

        ``pattern`` is a shell glob; plain text matches as a substring.
        """

        has_magic = any(char in pattern for char in "*?[")
        matches = []
        for entry in self.config.dots:
            haystacks = (entry.source.as_posix(), str(entry.target), entry.target.name)
            if has_magic:
                found = any(fnmatch.fnmatch(text, pattern) for text in haystacks)
            else:
                found = any(pattern.lower() in text.lower() for text in haystacks)
            if found:
                matches.append(entry)
        return sorted(matches, key=lambda item: item.target.parts)

    def check(self) -> list[str]:
        """Validate the configuration for this host without planning.

        Returns non-fatal warnings; raises ``ConfigError`` for fatal problems.
        """

        effective = self.effective
        warnings: list[str] = []
        desired_fingerprints(effective)
        for entry in effective.dots:
            if entry.permissions is not None and entry.link_mode is LinkMode.SYMLINK:
                warnings.append(f"'{entry.source}': permissions are ignored for symlink entries")
        known = set(self.backends.names())
        for package in effective.packages:
            if package.backend not in known:
                raise ConfigError(f"Package '{package.name}' uses unknown backend '{package.backend}'")
        if self.state.degraded:
            warnings.append(f"State file '{self.state.path}' was unreadable and will be rebuilt")
        return warnings

    # ------------------------------------------------------------------
    # Registration

    def add(
        self,
        source: str | Path,
        target: str | Path,
        *,
        link_mode: LinkMode | None = None,
        hosts: Sequence[str] = (),
        profiles: Sequence[str] = (),
        permissions: str | None = None,
    ) -> DotEntry:
        """Register an existing source file as a new managed entry."""

        table = {
            "source": Path(source).as_posix(),
            "target": str(target),
            "mode": link_mode.value if link_mode else None,
            "hosts": list(hosts),
            "profiles": list(profiles),
            "permissions": permissions,
        }
        entry = DotEntry.from_raw(table, settings=self.config.settings, origin=self.config.config_path)
        if not entry.source_path.exists():
            raise ConfigError(f"Source '{entry.source}' does not exist in '{self.config.settings.dotfiles_dir}'")
        for existing in self.config.dots:
            if existing.target == entry.target:
                raise ConfigError(f"Target '{entry.target}' is already configured by source '{existing.source}'")

        append_to_config(self.config.config_path, "dots", table)
        logger.info("Registered %s -> %s", entry.source, entry.target)
        return entry

    def adopt(
        self,
        path: Path,
        target_location: Path | None = None,
        *,
        source_name: str | None = None,
        link_mode: LinkMode | None = None,
        mode: AdoptMode = AdoptMode.MOVE,
    ) -> DotEntry:
        with self.lock():
            self.state = StateStore.load(self.config.settings.state_path)
            engine = AdoptionEngine(self.config, self.state)
            return engine.adopt(path, target_location, source_name=source_name, link_mode=link_mode, mode=mode)

    def package_candidates(self, backend: str | None = None) -> list[str]:
        """Explicitly installed packages on ``backend`` that are neither managed nor ignored."""

        backend = self._package_backend(backend)
        return AdoptionEngine(self.config, self.state).package_candidates(backend, self.backends)

    def adopt_packages(
        self,
        names: Iterable[str],
        backend: str | None = None,
        *,
        ignore: Iterable[str] = (),
    ) -> PackageAdoption:
        """Adopt the named packages and remember the ``ignore`` ones.

        Nothing is adopted implicitly: callers pick from ``package_candidates``.
        """

        names, ignore = list(names), list(ignore)
        if not names and not ignore:
            raise ConfigError("Name the packages to adopt, or run interactively to choose among the candidates")
        backend = self._package_backend(backend)
        with self.lock():
            self.state = StateStore.load(self.config.settings.state_path)
            engine = AdoptionEngine(self.config, self.state)
            return engine.adopt_packages(names, backend, self.backends, ignore=ignore)

    def _package_backend(self, backend: str | None) -> str:
        backend = backend or self.config.settings.default_backend
        if not backend:
            raise ConfigError("No backend given and no default_backend configured")
        return backend
