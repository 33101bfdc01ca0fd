from __future__ import annotations

from pathlib import Path
from typing import Sequence

import pytest

from dotward.config import DEFAULT_CONFIG_FILENAME, HostContext, load_config
from dotward.errors import PackageBackendError
from dotward.manager import DotwardManager
from dotward.packages import BackendRegistry, PackageBackend


class FakeBackend(PackageBackend):
    name = "fake"

    def __init__(self, installed: Sequence[str] = (), *, fail: bool = False) -> None:
        self.packages = set(installed)
        self.dependencies: set[str] = set()
        self.fail = fail
        self.install_calls: list[list[str]] = []
        self.remove_calls: list[list[str]] = []

    def installed(self) -> set[str]:
        return self.packages | self.dependencies

    def explicit(self) -> set[str]:
        return set(self.packages)

    def install(self, names: Sequence[str]) -> None:
        self.install_calls.append(list(names))
        if self.fail:
            raise PackageBackendError("mocked install failure")
        self.packages.update(names)

    def remove(self, names: Sequence[str]) -> None:
        self.remove_calls.append(list(names))
        self.packages.difference_update(names)


@pytest.fixture
def fake_home(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("USERPROFILE", str(home))
    monkeypatch.delenv("DOTWARD_CONFIG", raising=False)
    monkeypatch.delenv("DOTWARD_HOST", raising=False)
    monkeypatch.delenv("DOTWARD_LOG_LEVEL", raising=False)
    return home


@pytest.fixture
def dotfiles(tmp_path: Path, fake_home: Path) -> Path:
    repo = tmp_path / "dotfiles"
    repo.mkdir()
    return repo


@pytest.fixture
def host() -> HostContext:
    return HostContext(hostname="laptop")


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend(installed=["git"])


@pytest.fixture
def write_config(dotfiles: Path):
    def _write(body: str) -> Path:
        config_path = dotfiles / DEFAULT_CONFIG_FILENAME
        config_path.write_text(body)
        return config_path

    return _write


@pytest.fixture
def make_manager(dotfiles: Path, host: HostContext, fake_backend: FakeBackend):
    def _make(*, hostname: str | None = None, profiles: Sequence[str] = ()) -> DotwardManager:
        context = HostContext(hostname=hostname or host.hostname, profiles=frozenset(profiles))
        config = load_config(dotfiles, host=context)
        return DotwardManager(config, context, backends=BackendRegistry({"fake": fake_backend}))

    return _make
