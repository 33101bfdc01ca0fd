from __future__ import annotations

from pathlib import Path
from textwrap import dedent

import pytest

from dotward.config import (
    DEFAULT_CONFIG_FILENAME,
    ConfigError,
    HostContext,
    HostFilter,
    append_to_config,
    load_config,
)
from dotward.models import LinkMode


def _write_config(tmp_path: Path, body: str) -> Path:
    config_path = tmp_path / DEFAULT_CONFIG_FILENAME
    config_path.write_text(dedent(body))
    return config_path


LAPTOP = HostContext(hostname="laptop")


def test_load_config_happy_path(tmp_path: Path, fake_home: Path) -> None:
    config_path = _write_config(
        tmp_path,
        """
        [settings]
        dotfiles_dir = "./files"
        default_backend = "pacman"

        [[dots]]
        source = "bashrc"
        target = "~/.bashrc"
        mode = "copy"
        permissions = "0600"

        [[dots]]
        source = "nvim"
        target = ".config/nvim"

        [[packages]]
        name = "ripgrep"
        """,
    )

    config = load_config(config_path, host=LAPTOP)

    assert config.config_path == config_path.resolve(strict=False)
    assert config.settings.dotfiles_dir == (tmp_path / "files").resolve(strict=False)
    assert config.settings.state_path == config.settings.dotfiles_dir / ".dotward-state.toml"

    bashrc, nvim = config.dots
    assert bashrc.target == fake_home / ".bashrc"
    assert bashrc.source_path == config.settings.dotfiles_dir / "bashrc"
    assert bashrc.link_mode is LinkMode.COPY
    assert bashrc.permissions == 0o600
    assert nvim.target == fake_home / ".config" / "nvim"
    assert nvim.link_mode is LinkMode.SYMLINK

    assert config.packages[0].key() == ("pacman", "ripgrep")


def test_target_symlink_is_not_followed(tmp_path: Path, fake_home: Path) -> None:
    elsewhere = tmp_path / "elsewhere"
    elsewhere.write_text("x")
    (fake_home / ".bashrc").symlink_to(elsewhere)
    config_path = _write_config(
        tmp_path,
        """
        [[dots]]
        source = "bashrc"
        target = "~/.bashrc"
        """,
    )

    config = load_config(config_path, host=LAPTOP)

    assert config.dots[0].target == fake_home / ".bashrc"


@pytest.mark.parametrize(
    "entry",
    [
        'source = "/etc/passwd"\ntarget = "~/.passwd"',
        'source = "../outside"\ntarget = "~/.outside"',
        'source = "bashrc"',
        'source = "bashrc"\ntarget = "~/.bashrc"\nmode = "hardlink"',
        'source = "bashrc"\ntarget = "~/.bashrc"\npermissions = "rw-r--r--"',
    ],
)
def test_invalid_dot_entries_rejected(tmp_path: Path, fake_home: Path, entry: str) -> None:
    config_path = tmp_path / DEFAULT_CONFIG_FILENAME
    config_path.write_text(f"[[dots]]\n{entry}\n")

    with pytest.raises(ConfigError):
        load_config(config_path, host=LAPTOP)


def test_package_without_backend_rejected(tmp_path: Path, fake_home: Path) -> None:
    config_path = _write_config(
        tmp_path,
        """
        [[packages]]
        name = "ripgrep"
        """,
    )

    with pytest.raises(ConfigError):
        load_config(config_path, host=LAPTOP)


def test_invalid_toml_is_config_error(tmp_path: Path, fake_home: Path) -> None:
    config_path = tmp_path / DEFAULT_CONFIG_FILENAME
    config_path.write_text("[[dots]\nsource = ")

    with pytest.raises(ConfigError):
        load_config(config_path, host=LAPTOP)


def test_directory_argument_resolves_default_file(tmp_path: Path, fake_home: Path) -> None:
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    _write_config(config_dir, "")

    config = load_config(config_dir, host=LAPTOP)

    assert config.config_path == (config_dir / DEFAULT_CONFIG_FILENAME).resolve(strict=False)


def test_config_env_var(tmp_path: Path, fake_home: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = _write_config(tmp_path, "")
    monkeypatch.setenv("DOTWARD_CONFIG", str(config_path))
    monkeypatch.chdir(fake_home)

    config = load_config(host=LAPTOP)

    assert config.config_path == config_path.resolve(strict=False)


def test_missing_config_raises(tmp_path: Path, fake_home: Path) -> None:
    with pytest.raises(ConfigError):
        load_config(tmp_path / "nope.toml", host=LAPTOP)


def test_host_filter_predicate() -> None:
    work = HostContext(hostname="work", profiles=frozenset({"dev"}))

    assert HostFilter().matches(LAPTOP)
    assert HostFilter(hosts=("laptop",)).matches(LAPTOP)
    assert not HostFilter(hosts=("laptop",)).matches(work)
    assert not HostFilter(exclude_hosts=("laptop",)).matches(LAPTOP)
    assert HostFilter(profiles=("dev", "gui")).matches(work)
    assert not HostFilter(profiles=("dev",)).matches(LAPTOP)


def test_effective_config_filters_by_host(tmp_path: Path, fake_home: Path) -> None:
    config_path = _write_config(
        tmp_path,
        """
        [[dots]]
        source = "bashrc.laptop"
        target = "~/.bashrc"
        hosts = ["laptop"]

        [[dots]]
        source = "bashrc.work"
        target = "~/.bashrc"
        hosts = ["work"]

        [[packages]]
        name = "steam"
        backend = "pacman"
        exclude_hosts = ["work"]
        """,
    )
    config = load_config(config_path, host=LAPTOP)

    laptop = config.effective(LAPTOP)
    work = config.effective(HostContext(hostname="work"))

    assert [entry.source for entry in laptop.dots] == [Path("bashrc.laptop")]
    assert [entry.source for entry in work.dots] == [Path("bashrc.work")]
    assert [package.name for package in laptop.packages] == ["steam"]
    assert work.packages == ()
    assert laptop.variables["hostname"] == "laptop"


def test_duplicate_target_after_filtering_fails_fast(tmp_path: Path, fake_home: Path) -> None:
    config_path = _write_config(
        tmp_path,
        """
        [[dots]]
        source = "bashrc"
        target = "~/.bashrc"

        [[dots]]
        source = "bashrc.laptop"
        target = "~/.bashrc"
        hosts = ["laptop"]
        """,
    )
    config = load_config(config_path, host=LAPTOP)

    with pytest.raises(ConfigError, match="claimed by both"):
        config.effective(LAPTOP)
    assert len(config.effective(HostContext(hostname="other")).dots) == 1


def test_host_overlay_is_merged(tmp_path: Path, fake_home: Path) -> None:
    config_path = _write_config(
        tmp_path,
        """
        [variables]
        email = "me@example.com"

        [[dots]]
        source = "bashrc"
        target = "~/.bashrc"
        """,
    )
    (tmp_path / "hosts").mkdir()
    (tmp_path / "hosts" / "laptop.toml").write_text(
        dedent(
            """
            [variables]
            email = "me@laptop.example.com"

            [[dots]]
            source = "xinitrc"
            target = "~/.xinitrc"
            """
        )
    )

    laptop = load_config(config_path, host=LAPTOP)
    other = load_config(config_path, host=HostContext(hostname="server"))

    assert [entry.source.as_posix() for entry in laptop.dots] == ["bashrc", "xinitrc"]
    assert laptop.variables["email"] == "me@laptop.example.com"
    assert laptop.overlays == ((tmp_path / "hosts" / "laptop.toml").resolve(),)
    assert [entry.source.as_posix() for entry in other.dots] == ["bashrc"]


def test_overlay_cannot_redefine_settings(tmp_path: Path, fake_home: Path) -> None:
    config_path = _write_config(tmp_path, "")
    (tmp_path / "hosts").mkdir()
    (tmp_path / "hosts" / "laptop.toml").write_text('[settings]\ndotfiles_dir = "/"\n')

    with pytest.raises(ConfigError):
        load_config(config_path, host=LAPTOP)


def test_append_to_config_preserves_existing_tables(tmp_path: Path, fake_home: Path) -> None:
    config_path = _write_config(
        tmp_path,
        """
        # my dotfiles, do not lose this
        [settings]
        default_link_mode = "copy"  # keep copies on this machine

        [[dots]]
        source = "bashrc"
        target = "~/.bashrc"
        """,
    )
    before = config_path.read_text()

    append_to_config(config_path, "dots", {"source": "vimrc", "target": "~/.vimrc", "mode": None, "hosts": []})
    append_to_config(config_path, "dots", {"source": "zshrc", "target": "~/.zshrc", "hosts": ["laptop"]})

    text = config_path.read_text()
    assert text.startswith(before)
    assert "# my dotfiles, do not lose this" in text
    assert '[[dots]]\nsource = "vimrc"\ntarget = "~/.vimrc"\n' in text
    config = load_config(config_path, host=LAPTOP)
    assert [entry.source.as_posix() for entry in config.dots] == ["bashrc", "vimrc", "zshrc"]
    assert config.dots[1].link_mode is LinkMode.COPY
    assert config.dots[1].host_filter == HostFilter()
    assert config.dots[2].host_filter.hosts == ("laptop",)


def test_append_to_config_refuses_inline_arrays(tmp_path: Path, fake_home: Path) -> None:
    config_path = _write_config(tmp_path, 'packages = ["git"]\n')

    with pytest.raises(ConfigError, match=r"\[\[packages\]\] tables"):
        append_to_config(config_path, "packages", {"name": "ripgrep", "backend": "pacman"})

    assert config_path.read_text() == 'packages = ["git"]\n'
