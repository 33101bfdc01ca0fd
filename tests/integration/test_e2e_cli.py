from __future__ import annotations

import os
from pathlib import Path

from typer.testing import CliRunner

from dotward.cli import app

runner = CliRunner()


def _write_config(config_dir: Path, body: str) -> Path:
    config_path = config_dir / "dotward.toml"
    config_path.write_text(body)
    return config_path


def _tree(root: Path) -> dict[str, object]:
    tree: dict[str, object] = {}
    for current, dirnames, filenames in os.walk(root):
        for name in dirnames + filenames:
            path = Path(current) / name
            rel = path.relative_to(root).as_posix()
            if path.is_symlink():
                tree[rel] = os.readlink(path)
            elif path.is_file():
                tree[rel] = path.read_bytes()
            else:
                tree[rel] = None
    return tree


def test_cli_full_cycle(tmp_path: Path, fake_home: Path) -> None:
    dotfiles = tmp_path / "dotfiles"
    (dotfiles / "nvim").mkdir(parents=True)
    (dotfiles / "nvim" / "init.lua").write_text("vim.o.number = true\n")
    (dotfiles / "gitconfig.j2").write_text("[user]\n    email = {{ email }}\n")
    (dotfiles / "hosts").mkdir()
    (dotfiles / "hosts" / "laptop.toml").write_text('[variables]\nemail = "me@laptop.example.com"\n')
    config_path = _write_config(
        dotfiles,
        """
[variables]
email = "me@example.com"

[[dots]]
source = "nvim"
target = "~/.config/nvim"

[[dots]]
source = "gitconfig.j2"
target = "~/.gitconfig"
mode = "template"
permissions = "0640"
""",
    )
    (fake_home / ".zshrc").write_text("setopt autocd\n")
    base = ["--config", str(config_path), "--host", "laptop", "-y"]

    adopt_result = runner.invoke(app, [*base, "adopt", str(fake_home / ".zshrc")])
    assert adopt_result.exit_code == 0

    home_before = _tree(fake_home)
    dry_result = runner.invoke(app, [*base, "--dry-run", "apply"])
    assert dry_result.exit_code == 0
    assert _tree(fake_home) == home_before

    apply_result = runner.invoke(app, [*base, "apply"])
    assert apply_result.exit_code == 0
    assert (fake_home / ".config" / "nvim" / "init.lua").read_text() == "vim.o.number = true\n"
    assert (fake_home / ".gitconfig").read_text() == "[user]\n    email = me@laptop.example.com\n"
    assert (fake_home / ".gitconfig").stat().st_mode & 0o777 == 0o640
    assert (fake_home / ".zshrc").is_symlink()

    settled = _tree(fake_home)
    second = runner.invoke(app, [*base, "apply"])
    assert second.exit_code == 0
    assert "Everything is up to date." in second.stdout
    assert _tree(fake_home) == settled

    other_host = runner.invoke(app, ["--config", str(config_path), "--host", "server", "-y", "apply"])
    assert other_host.exit_code == 0
    assert (fake_home / ".gitconfig").read_text() == "[user]\n    email = me@example.com\n"


def test_cli_detects_drift_and_recovers(tmp_path: Path, fake_home: Path) -> None:
    dotfiles = tmp_path / "dotfiles"
    dotfiles.mkdir()
    (dotfiles / "bashrc").write_text("export EDITOR=vim\n")
    config_path = _write_config(
        dotfiles,
        """
[[dots]]
source = "bashrc"
target = "~/.bashrc"
mode = "copy"
""",
    )
    base = ["--config", str(config_path), "--host", "laptop", "-y"]
    assert runner.invoke(app, [*base, "apply"]).exit_code == 0

    (dotfiles / "bashrc").write_text("export EDITOR=nvim\n")
    updated = runner.invoke(app, [*base, "apply"])
    assert updated.exit_code == 0
    assert (fake_home / ".bashrc").read_text() == "export EDITOR=nvim\n"

    (fake_home / ".bashrc").write_text("export EDITOR=nano\n")
    (dotfiles / "bashrc").write_text("export EDITOR=hx\n")
    drifted = runner.invoke(app, [*base, "apply"])
    assert drifted.exit_code == 1
    assert (fake_home / ".bashrc").read_text() == "export EDITOR=nano\n"

    (fake_home / ".bashrc").unlink()
    recovered = runner.invoke(app, [*base, "apply"])
    assert recovered.exit_code == 0
    assert (fake_home / ".bashrc").read_text() == "export EDITOR=hx\n"
