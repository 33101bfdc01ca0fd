from __future__ import annotations

import subprocess
import tomllib
from pathlib import Path

import pytest
from typer.testing import CliRunner

from dotward.cli import app
from dotward.config import DEFAULT_CONFIG_FILENAME, HostContext, load_config
from dotward.manager import DotwardManager
from dotward.packages import BackendRegistry

runner = CliRunner()


def _write_config(directory: Path, body: str) -> Path:
    config_path = directory / DEFAULT_CONFIG_FILENAME
    config_path.write_text(body)
    return config_path


def _invoke(config_path: Path, *args: str, input: str | None = None):
    return runner.invoke(app, ["--config", str(config_path), "--host", "laptop", *args], input=input)


BASHRC = """
[[dots]]
source = "bashrc"
target = "~/.bashrc"
"""

VIMRC = """
[[dots]]
source = "vimrc"
target = "~/.vimrc"
"""


@pytest.fixture
def project(dotfiles: Path) -> Path:
    (dotfiles / "bashrc").write_text("export EDITOR=vim\n")
    (dotfiles / "vimrc").write_text("set number\n")
    return dotfiles


def test_cli_apply_and_dots_flow(project: Path, fake_home: Path) -> None:
    config_path = _write_config(project, BASHRC)

    apply_result = _invoke(config_path, "-y", "apply")
    assert apply_result.exit_code == 0
    assert "applied" in apply_result.stdout
    assert (fake_home / ".bashrc").is_symlink()

    again = _invoke(config_path, "-y", "apply")
    assert again.exit_code == 0
    assert "Everything is up to date." in again.stdout

    dots_result = _invoke(config_path, "dots")
    assert dots_result.exit_code == 0
    assert "in_sync" in dots_result.stdout


def test_cli_default_command_is_apply(project: Path, fake_home: Path) -> None:
    config_path = _write_config(project, BASHRC)

    result = _invoke(config_path, "-y")

    assert result.exit_code == 0
    assert (fake_home / ".bashrc").is_symlink()


def test_cli_conflict_exits_needing_attention(project: Path, fake_home: Path) -> None:
    config_path = _write_config(project, BASHRC)
    (fake_home / ".bashrc").write_text("# mine\n")

    result = _invoke(config_path, "-y", "apply")

    assert result.exit_code == 1
    assert "conflict skipped" in result.stdout
    assert (fake_home / ".bashrc").read_text() == "# mine\n"


def test_cli_interactive_conflict_prompt(project: Path, fake_home: Path) -> None:
    config_path = _write_config(project, BASHRC)
    (fake_home / ".bashrc").write_text("# mine\n")

    declined = _invoke(config_path, "apply", input="n\n")
    assert declined.exit_code == 1
    assert "Overwrite" in declined.stdout
    assert not (fake_home / ".bashrc").is_symlink()

    accepted = _invoke(config_path, "apply", input="y\n")
    assert accepted.exit_code == 0
    assert (fake_home / ".bashrc").is_symlink()


def test_cli_orphan_and_clean(project: Path, fake_home: Path) -> None:
    config_path = _write_config(project, BASHRC + VIMRC)
    assert _invoke(config_path, "-y", "apply").exit_code == 0
    _write_config(project, BASHRC)

    orphaned = _invoke(config_path, "-y", "apply")
    assert orphaned.exit_code == 1
    assert "orphan left in place" in orphaned.stdout
    assert (fake_home / ".vimrc").exists()

    simulated = _invoke(config_path, "-y", "--dry-run", "clean", "--force")
    assert simulated.exit_code == 0
    assert "Dry run" in simulated.stdout
    assert (fake_home / ".vimrc").exists()

    cleaned = _invoke(config_path, "-y", "clean", "--force")
    assert cleaned.exit_code == 0
    assert not (fake_home / ".vimrc").exists()


def test_cli_dry_run(project: Path, fake_home: Path) -> None:
    config_path = _write_config(project, BASHRC + VIMRC)

    result = _invoke(config_path, "-y", "-n", "apply")

    assert result.exit_code == 0
    assert "simulated" in result.stdout
    assert "Dry run: no changes were made." in result.stdout
    assert list(fake_home.iterdir()) == []


def test_cli_find(project: Path, fake_home: Path) -> None:
    config_path = _write_config(project, BASHRC + VIMRC)

    found = _invoke(config_path, "find", "vim")
    assert found.exit_code == 0
    assert found.stdout.startswith("vimrc")

    missing = _invoke(config_path, "find", "tmux")
    assert missing.exit_code == 1


def test_cli_edit_opens_source(project: Path, fake_home: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = _write_config(project, BASHRC + VIMRC)
    launched: list[list[str]] = []

    def fake_run(argv, check):
        launched.append(list(argv))
        return subprocess.CompletedProcess(argv, 0)

    monkeypatch.delenv("VISUAL", raising=False)
    monkeypatch.setenv("EDITOR", "code --wait")
    monkeypatch.setattr("dotward.cli.subprocess.run", fake_run)

    result = _invoke(config_path, "edit", "bash")

    assert result.exit_code == 0
    assert launched == [["code", "--wait", str(project.resolve() / "bashrc")]]
    assert _invoke(config_path, "edit", "rc").exit_code == 1


def test_cli_edit_reports_a_failing_editor(project: Path, fake_home: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = _write_config(project, BASHRC)

    def missing_editor(argv, check):
        raise FileNotFoundError(2, "No such file or directory", argv[0])

    monkeypatch.setenv("VISUAL", "no-such-editor")
    monkeypatch.setattr("dotward.cli.subprocess.run", missing_editor)

    result = _invoke(config_path, "edit", "bash")

    assert result.exit_code == 2
    assert "Cannot launch editor" in result.stdout


def test_cli_add_and_config_commands(project: Path, fake_home: Path) -> None:
    config_path = _write_config(project, BASHRC)

    added = _invoke(config_path, "add", "vimrc", "~/.vimrc", "--mode", "copy")
    assert added.exit_code == 0
    written = tomllib.loads(config_path.read_text())
    assert written["dots"][-1] == {"source": "vimrc", "target": "~/.vimrc", "mode": "copy"}

    checked = _invoke(config_path, "config-check")
    assert checked.exit_code == 0
    assert "Configuration is valid" in checked.stdout

    host = _invoke(config_path, "config-host")
    assert host.exit_code == 0
    assert "laptop" in host.stdout


def test_cli_invalid_config(project: Path, fake_home: Path) -> None:
    config_path = _write_config(project, '[[dots]]\nsource = "/etc/passwd"\ntarget = "~/.passwd"\n')

    assert _invoke(config_path, "config-check").exit_code == 2
    assert runner.invoke(app, ["--config", str(project / "missing.toml"), "apply"]).exit_code == 2


def test_cli_adopt_file(project: Path, fake_home: Path) -> None:
    config_path = _write_config(project, "")
    (fake_home / ".tmux.conf").write_text("set -g mouse on\n")

    result = _invoke(config_path, "adopt", str(fake_home / ".tmux.conf"))

    assert result.exit_code == 0
    assert (fake_home / ".tmux.conf").is_symlink()
    assert (project / "tmux.conf").read_text() == "set -g mouse on\n"

    again = _invoke(config_path, "adopt", str(fake_home / ".tmux.conf"), "--name", "tmux2")
    assert again.exit_code == 1


@pytest.fixture
def package_project(project: Path, fake_backend, monkeypatch: pytest.MonkeyPatch) -> Path:
    config_path = _write_config(project, "[settings]\ndefault_backend = \"fake\"\n")
    fake_backend.packages.update({"ripgrep", "steam"})
    fake_backend.dependencies.add("zlib")

    def load_manager(options) -> DotwardManager:
        host = HostContext(hostname="laptop")
        return DotwardManager(
            load_config(options.config, host=host), host, backends=BackendRegistry({"fake": fake_backend})
        )

    monkeypatch.setattr("dotward.cli._load_manager", load_manager)
    return config_path


def test_cli_adopt_named_packages(package_project: Path, fake_home: Path) -> None:
    result = _invoke(package_project, "adopt", "--package", "ripgrep", "vlc")

    assert result.exit_code == 0
    assert "ripgrep" in result.stdout
    assert "vlc" in result.stdout
    written = tomllib.loads(package_project.read_text())
    assert written["packages"] == [{"name": "ripgrep", "backend": "fake"}]


def test_cli_adopt_packages_requires_names_when_not_interactive(package_project: Path, fake_home: Path) -> None:
    before = package_project.read_text()

    result = _invoke(package_project, "-y", "adopt", "--package")

    assert result.exit_code == 2
    assert package_project.read_text() == before


def test_cli_adopt_packages_interactively(package_project: Path, fake_home: Path) -> None:
    result = _invoke(package_project, "adopt", "--package", input="a\ns\ni\n")

    assert result.exit_code == 0
    assert "zlib" not in result.stdout
    written = tomllib.loads(package_project.read_text())
    assert written["packages"] == [{"name": "git", "backend": "fake"}]
    assert "Ignored from now on: steam" in result.stdout

    again = _invoke(package_project, "adopt", "--package", input="q\n")
    assert "steam" not in again.stdout
    assert "ripgrep" in again.stdout


def test_cli_ignore_packages(package_project: Path, fake_home: Path) -> None:
    result = _invoke(package_project, "-y", "adopt", "--package", "--ignore", "steam")

    assert result.exit_code == 0
    assert "Ignored from now on: steam" in result.stdout
    assert "packages" not in tomllib.loads(package_project.read_text())
