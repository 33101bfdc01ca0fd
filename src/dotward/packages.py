"""Package backend adapters.

The engine never talks to a package manager directly: it asks a
``BackendRegistry`` for the backend named by each ``PackageSpec`` and calls
``installed``, ``install`` or ``remove`` on it.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from abc import ABC, abstractmethod
from typing import ClassVar, Iterable, Mapping, Sequence

from .errors import PackageBackendError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 300.0


class PackageBackend(ABC):
    """Capability to query, install and remove packages for one manager."""

    name: ClassVar[str] = "abstract"

    @abstractmethod
    def installed(self) -> set[str]:
        """Return the names of installed packages."""

    def explicit(self) -> set[str]:
        """Return packages the user installed on purpose, not as dependencies.

        Backends that cannot tell the two apart report every installed package.
        """

        return self.installed()

    @abstractmethod
    def install(self, names: Sequence[str]) -> None:
        """Install ``names``; raise ``PackageBackendError`` on failure."""

    @abstractmethod
    def remove(self, names: Sequence[str]) -> None:
        """Remove ``names``; raise ``PackageBackendError`` on failure."""


class CommandBackend(PackageBackend):
    """Backend driving a package manager executable through ``subprocess``."""

    executable: ClassVar[str] = ""
    list_args: ClassVar[tuple[str, ...]] = ()
    explicit_args: ClassVar[tuple[str, ...]] = ()
    install_args: ClassVar[tuple[str, ...]] = ()
    remove_args: ClassVar[tuple[str, ...]] = ()

    def __init__(self, *, timeout: float = DEFAULT_TIMEOUT, executable: str | None = None) -> None:
        self.timeout = timeout
        self.command = executable or self.executable

    def installed(self) -> set[str]:
        return self._names(self._run([*self.list_args]))

    def explicit(self) -> set[str]:
        if not self.explicit_args:
            return self.installed()
        return self._names(self._run([*self.explicit_args]))

    def install(self, names: Sequence[str]) -> None:
        if names:
            self._run([*self.install_args, *names])

    def remove(self, names: Sequence[str]) -> None:
        if names:
            self._run([*self.remove_args, *names])

    @staticmethod
    def parse_name(line: str) -> str:
        return line.split()[0].strip()

    def _names(self, output: str) -> set[str]:
        return {self.parse_name(line) for line in output.splitlines() if line.strip()}

    def _run(self, args: list[str], *, command: str | None = None) -> str:
        command = command or self.command
        if shutil.which(command) is None:
            raise PackageBackendError(f"Package manager '{command}' is not available")

        argv = [command, *args]
        logger.debug("Running %s", " ".join(argv))
        try:
            completed = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise PackageBackendError(f"'{' '.join(argv)}' timed out after {self.timeout:g}s") from exc
        except OSError as exc:
            raise PackageBackendError(f"Cannot run '{command}': {exc}") from exc

        if completed.returncode != 0:
            detail = completed.stderr.strip() or completed.stdout.strip()
            raise PackageBackendError(f"'{' '.join(argv)}' failed ({completed.returncode}): {detail}")
        return completed.stdout


class PacmanBackend(CommandBackend):
    name = "pacman"
    executable = "pacman"
    list_args = ("-Qq",)
    explicit_args = ("-Qqe",)
    install_args = ("-S", "--needed", "--noconfirm")
    remove_args = ("-Rns", "--noconfirm")


class ParuBackend(PacmanBackend):
    name = "paru"
    executable = "paru"


class AptBackend(CommandBackend):
    name = "apt"
    executable = "apt-get"
    install_args = ("install", "-y")
    remove_args = ("remove", "-y")

    @staticmethod
    def parse_name(line: str) -> str:
        return line.strip().split(":", 1)[0]

    def installed(self) -> set[str]:
        return self._names(self._run(["-W", "-f=${binary:Package}\\n"], command="dpkg-query"))

    def explicit(self) -> set[str]:
        return self._names(self._run(["showmanual"], command="apt-mark"))


class DnfBackend(CommandBackend):
    name = "dnf"
    executable = "dnf"
    list_args = ("repoquery", "--installed", "--qf", "%{name}")
    explicit_args = ("repoquery", "--userinstalled", "--qf", "%{name}")
    install_args = ("install", "-y")
    remove_args = ("remove", "-y")


class BrewBackend(CommandBackend):
    name = "brew"
    executable = "brew"
    list_args = ("list", "--formula", "-1")
    explicit_args = ("leaves", "--installed-on-request")
    install_args = ("install",)
    remove_args = ("uninstall",)


BUILTIN_BACKENDS: Mapping[str, type[CommandBackend]] = {
    backend.name: backend for backend in (PacmanBackend, ParuBackend, AptBackend, DnfBackend, BrewBackend)
}


class BackendRegistry:
    """Maps backend names to backend instances for one run."""

    def __init__(self, backends: Mapping[str, PackageBackend] | None = None) -> None:
        self._backends: dict[str, PackageBackend] = dict(backends or {})
        self._installed_cache: dict[str, set[str]] = {}

    @classmethod
    def default(cls, *, timeout: float = DEFAULT_TIMEOUT) -> "BackendRegistry":
        return cls({name: factory(timeout=timeout) for name, factory in BUILTIN_BACKENDS.items()})

    def register(self, backend_name: str, backend: PackageBackend) -> None:
        self._backends[backend_name] = backend
        self._installed_cache.pop(backend_name, None)

    def get(self, backend_name: str) -> PackageBackend:
        try:
            return self._backends[backend_name]
        except KeyError as exc:
            raise PackageBackendError(f"Unknown package backend '{backend_name}'") from exc

    def names(self) -> list[str]:
        return sorted(self._backends)

    def installed(self, backend_name: str) -> set[str]:
        if backend_name not in self._installed_cache:
            self._installed_cache[backend_name] = self.get(backend_name).installed()
        return set(self._installed_cache[backend_name])

    def explicit(self, backend_name: str) -> set[str]:
        return self.get(backend_name).explicit()

    def install(self, backend_name: str, names: Iterable[str]) -> None:
        batch = sorted(set(names))
        self.get(backend_name).install(batch)
        self._installed_cache.pop(backend_name, None)

    def remove(self, backend_name: str, names: Iterable[str]) -> None:
        batch = sorted(set(names))
        self.get(backend_name).remove(batch)
        self._installed_cache.pop(backend_name, None)
