"""Adoption: fold existing unmanaged files and packages into dotward."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterable

from .config import Config, DotEntry, HostFilter, append_to_config
from .errors import AdoptionConflict, FilesystemError
from .filesystem import (
    atomic_copy_file,
    atomic_copy_tree,
    atomic_symlink,
    detect_kind,
    hash_link_target,
    hash_path,
    remove_path,
)
from .models import EntryKind, LinkMode, StateRecord
from .packages import BackendRegistry
from .state import StateStore, utcnow

logger = logging.getLogger(__name__)


class AdoptMode(str, Enum):
    """What happens to the original file once its content is adopted."""

    MOVE = "move"
    COPY = "copy"


@dataclass(slots=True)
class PackageAdoption:
    """Outcome of adopting packages, itemised per reason."""

    adopted: list[str] = field(default_factory=list)
    marked_managed: list[str] = field(default_factory=list)
    already_managed: list[str] = field(default_factory=list)
    not_installed: list[str] = field(default_factory=list)
    ignored: list[str] = field(default_factory=list)


def _display_target(target: Path) -> str:
    home = Path.home()
    try:
        return "~/" + target.relative_to(home).as_posix()
    except ValueError:
        return target.as_posix()


def _default_source_name(path: Path) -> str:
    return path.name.lstrip(".") or path.name


class AdoptionEngine:
    """Registers untracked files and packages as managed."""

    def __init__(self, config: Config, state: StateStore) -> None:
        self.config = config
        self.state = state

    def adopt(
        self,
        path: Path,
        target_location: Path | None = None,
        *,
        source_name: str | None = None,
        link_mode: LinkMode | None = None,
        mode: AdoptMode = AdoptMode.MOVE,
    ) -> DotEntry:
        """Adopt ``path`` as the managed entry for ``target_location``.

        The content of ``path`` is copied into the dotfiles directory as
        ``source_name``, the entry is appended to the configuration file and a
        state record is written. With ``AdoptMode.MOVE`` and symlink mode the
        original is then replaced by a link to the adopted source.

        Raises:
            AdoptionConflict: the target is already managed or configured, or
                the source name is taken.
            FilesystemError: ``path`` does not exist.
        """

        path = Path(os.path.normpath(Path(path).expanduser().absolute()))
        target = Path(os.path.normpath(Path(target_location).expanduser().absolute())) if target_location else path
        link_mode = link_mode or self.config.settings.default_link_mode

        if target in self.state:
            raise AdoptionConflict(f"'{target}' is already managed")
        for entry in self.config.dots:
            if entry.target == target:
                raise AdoptionConflict(f"'{target}' is already configured by source '{entry.source}'")

        kind = detect_kind(path)
        if kind is EntryKind.NONE:
            raise FilesystemError(path, "nothing to adopt")
        if kind is EntryKind.SYMLINK:
            raise AdoptionConflict(f"'{path}' is a symlink; adopt the file it points to instead")
        if kind is EntryKind.DIRECTORY and link_mode is LinkMode.TEMPLATE:
            raise AdoptionConflict(f"'{path}' is a directory and cannot be adopted as a template")

        relative_source = Path(source_name or _default_source_name(path))
        if relative_source.is_absolute() or ".." in relative_source.parts:
            raise AdoptionConflict(f"Source name '{relative_source}' must stay inside the dotfiles directory")
        source_path = self.config.settings.dotfiles_dir / relative_source
        if source_path.exists() or source_path.is_symlink():
            raise AdoptionConflict(f"Source '{relative_source}' already exists in '{source_path.parent}'")

        fingerprint = hash_path(path)
        logger.info("Adopting %s as %s", path, relative_source)
        if kind is EntryKind.DIRECTORY:
            atomic_copy_tree(path, source_path)
        else:
            atomic_copy_file(path, source_path)
        if hash_path(source_path) != fingerprint:
            remove_path(source_path)
            raise FilesystemError(path, "content changed while it was being adopted")

        if target == path:
            if mode is AdoptMode.MOVE and link_mode is LinkMode.SYMLINK:
                if kind is EntryKind.DIRECTORY:
                    remove_path(target)
                atomic_symlink(target, source_path)
            recorded = hash_path(target)
        else:
            # The target is materialised by the next apply, or reported as a
            # conflict if something unrelated already lives there.
            if mode is AdoptMode.MOVE:
                remove_path(path)
            recorded = hash_link_target(source_path) if link_mode is LinkMode.SYMLINK else fingerprint

        entry = DotEntry(
            source=relative_source,
            source_path=source_path,
            target=target,
            link_mode=link_mode,
            host_filter=HostFilter(),
            origin=self.config.config_path,
        )
        append_to_config(
            self.config.config_path,
            "dots",
            {"source": relative_source.as_posix(), "target": _display_target(target), "mode": link_mode.value},
        )

        self.state.upsert(
            StateRecord(
                target=target,
                content_fingerprint=recorded,
                link_mode=link_mode,
                managed_since=utcnow(),
                source=relative_source.as_posix(),
            )
        )
        self.state.save()
        return entry

    def package_candidates(self, backend: str, backends: BackendRegistry) -> list[str]:
        """Explicitly installed packages that are not configured, managed or ignored."""

        configured = {package.name for package in self.config.packages if package.backend == backend}
        return sorted(
            name
            for name in backends.explicit(backend)
            if name not in configured
            and not self.state.is_package_managed(backend, name)
            and not self.state.is_package_ignored(backend, name)
        )

    def adopt_packages(
        self,
        names: Iterable[str],
        backend: str,
        backends: BackendRegistry,
        *,
        ignore: Iterable[str] = (),
    ) -> PackageAdoption:
        """Add installed packages to the configuration and mark them managed.

        Packages named in ``ignore`` are remembered in the state file and
        never offered by ``package_candidates`` again.
        """

        result = PackageAdoption()
        installed = backends.installed(backend)
        configured = {package.name for package in self.config.packages if package.backend == backend}
        changed = False

        for name in _unique(names):
            if self.state.is_package_managed(backend, name):
                result.already_managed.append(name)
                continue
            if name not in installed:
                result.not_installed.append(name)
                continue
            if name in configured:
                result.marked_managed.append(name)
            else:
                append_to_config(self.config.config_path, "packages", {"name": name, "backend": backend})
                result.adopted.append(name)
            self.state.unignore_package(backend, name)
            self.state.add_package(backend, name)
            changed = True

        for name in _unique(ignore):
            self.state.ignore_package(backend, name)
            result.ignored.append(name)
            changed = True

        if changed:
            self.state.save()
        return result


def _unique(names: Iterable[str]) -> list[str]:
    seen: list[str] = []
    for raw in names:
        name = raw.strip()
        if name and name not in seen:
            seen.append(name)
    return seen
