"""TOML configuration loading for dotward."""

from __future__ import annotations

import logging
import os
import socket
import tomllib
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping

import tomli_w
from pydantic import BaseModel, ConfigDict, Field

from .errors import ConfigError
from .models import LinkMode

DEFAULT_CONFIG_FILENAME = "dotward.toml"
CONFIG_ENV_VAR = "DOTWARD_CONFIG"
DEFAULT_STATE_FILENAME = ".dotward-state.toml"

logger = logging.getLogger(__name__)

__all__ = [
    "Config",
    "ConfigError",
    "DotEntry",
    "EffectiveConfig",
    "HostContext",
    "HostFilter",
    "PackageSpec",
    "Settings",
    "append_to_config",
    "load_config",
]


def _expand_path(raw: str | os.PathLike[str] | Path, *, base_dir: Path) -> Path:
    """Return an absolute ``Path`` by expanding env vars and user segments."""

    text = str(raw)
    expanded = Path(os.path.expandvars(text)).expanduser()
    if expanded.is_absolute():
        return expanded.resolve(strict=False)
    return (base_dir / expanded).resolve(strict=False)


def _expand_target(raw: str | os.PathLike[str] | Path) -> Path:
    """Expand a target path without following a symlink at the target itself."""

    expanded = Path(os.path.expandvars(str(raw))).expanduser()
    if not expanded.is_absolute():
        expanded = Path.home() / expanded
    return Path(os.path.normpath(expanded))


def _as_tuple(raw: Any, *, field_name: str, owner: str) -> tuple[str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, str):
        return (raw,)
    if not isinstance(raw, (list, tuple)):
        raise ConfigError(f"{owner}: '{field_name}' must be a string or a list of strings")
    return tuple(str(item) for item in raw)


def _parse_permissions(raw: Any, *, owner: str) -> int | None:
    if raw is None:
        return None
    if isinstance(raw, int):
        value = raw
    else:
        try:
            value = int(str(raw), 8)
        except ValueError as exc:
            raise ConfigError(f"{owner}: permissions '{raw}' is not an octal mode") from exc
    if not 0 <= value <= 0o7777:
        raise ConfigError(f"{owner}: permissions '{raw}' is out of range")
    return value


class HostContext(BaseModel):
    """Resolved facts about the machine a run targets."""

    model_config = ConfigDict(frozen=True)

    hostname: str
    profiles: frozenset[str] = frozenset()

    @classmethod
    def detect(cls, hostname: str | None = None, profiles: Iterable[str] = ()) -> "HostContext":
        name = hostname or os.environ.get("DOTWARD_HOST") or socket.gethostname()
        return cls(hostname=name.split(".", 1)[0], profiles=frozenset(profiles))


class HostFilter(BaseModel):
    """Pure predicate restricting an entry to some hosts or profiles."""

    model_config = ConfigDict(frozen=True)

    hosts: tuple[str, ...] = ()
    exclude_hosts: tuple[str, ...] = ()
    profiles: tuple[str, ...] = ()

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any], *, owner: str) -> "HostFilter":
        return cls(
            hosts=_as_tuple(raw.get("hosts"), field_name="hosts", owner=owner),
            exclude_hosts=_as_tuple(raw.get("exclude_hosts"), field_name="exclude_hosts", owner=owner),
            profiles=_as_tuple(raw.get("profiles"), field_name="profiles", owner=owner),
        )

    def matches(self, host: HostContext) -> bool:
        if self.hosts and host.hostname not in self.hosts:
            return False
        if host.hostname in self.exclude_hosts:
            return False
        if self.profiles and not host.profiles.intersection(self.profiles):
            return False
        return True


class Settings(BaseModel):
    """Global configuration options."""

    model_config = ConfigDict(frozen=True)

    dotfiles_dir: Path
    state_path: Path
    default_link_mode: LinkMode = LinkMode.SYMLINK
    default_backend: str | None = None
    command_timeout: float = 300.0
    lock_timeout: float = 10.0
    host_overlay_dir: Path | None = None
    inspect_workers: int = Field(default=8, ge=1)

    @property
    def lock_path(self) -> Path:
        return self.state_path.with_name(self.state_path.name + ".lock")

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any], *, base_dir: Path) -> "Settings":
        dotfiles = _expand_path(raw.get("dotfiles_dir", "."), base_dir=base_dir)
        state_raw = raw.get("state_path")
        state = _expand_path(state_raw, base_dir=base_dir) if state_raw is not None else dotfiles / DEFAULT_STATE_FILENAME
        overlay_raw = raw.get("host_overlay_dir", "hosts")
        overlay = _expand_path(overlay_raw, base_dir=base_dir) if overlay_raw else None

        try:
            link_mode = LinkMode(raw.get("default_link_mode", LinkMode.SYMLINK.value))
        except ValueError as exc:
            raise ConfigError(f"Unknown default_link_mode '{raw.get('default_link_mode')}'") from exc

        try:
            return cls(
                dotfiles_dir=dotfiles,
                state_path=state,
                default_link_mode=link_mode,
                default_backend=raw.get("default_backend"),
                command_timeout=float(raw.get("command_timeout", 300.0)),
                lock_timeout=float(raw.get("lock_timeout", 10.0)),
                host_overlay_dir=overlay,
                inspect_workers=int(raw.get("inspect_workers", 8)),
            )
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid [settings]: {exc}") from exc


class DotEntry(BaseModel):
    """One desired dotfile mapping; identified by ``target``."""

    model_config = ConfigDict(frozen=True)

    source: Path
    source_path: Path
    target: Path
    link_mode: LinkMode = LinkMode.SYMLINK
    host_filter: HostFilter = Field(default_factory=HostFilter)
    permissions: int | None = None
    origin: Path | None = None

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any], *, settings: Settings, origin: Path) -> "DotEntry":
        source_raw = raw.get("source")
        target_raw = raw.get("target")
        if not source_raw:
            raise ConfigError(f"{origin}: every [[dots]] entry needs a 'source'")
        owner = f"{origin}: dot '{source_raw}'"
        if not target_raw:
            raise ConfigError(f"{owner} needs a 'target'")

        source = Path(str(source_raw))
        if source.is_absolute():
            raise ConfigError(f"{owner} source must be relative to the dotfiles directory")
        if ".." in source.parts:
            raise ConfigError(f"{owner} source must not escape the dotfiles directory")

        mode_raw = raw.get("mode", raw.get("link_mode"))
        try:
            link_mode = LinkMode(mode_raw) if mode_raw is not None else settings.default_link_mode
        except ValueError as exc:
            raise ConfigError(f"{owner} has unknown mode '{mode_raw}'") from exc

        return cls(
            source=source,
            source_path=settings.dotfiles_dir / source,
            target=_expand_target(target_raw),
            link_mode=link_mode,
            host_filter=HostFilter.from_raw(raw, owner=owner),
            permissions=_parse_permissions(raw.get("permissions"), owner=owner),
            origin=origin,
        )


class PackageSpec(BaseModel):
    """Desired package; identified by ``(backend, name)``."""

    model_config = ConfigDict(frozen=True)

    name: str
    backend: str
    host_filter: HostFilter = Field(default_factory=HostFilter)

    def key(self) -> tuple[str, str]:
        return (self.backend, self.name)

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any] | str, *, settings: Settings, origin: Path) -> "PackageSpec":
        if isinstance(raw, str):
            raw = {"name": raw}
        name = raw.get("name")
        if not name:
            raise ConfigError(f"{origin}: every [[packages]] entry needs a 'name'")
        backend = raw.get("backend") or settings.default_backend
        if not backend:
            raise ConfigError(f"{origin}: package '{name}' has no backend and no default_backend is set")
        return cls(
            name=str(name),
            backend=str(backend),
            host_filter=HostFilter.from_raw(raw, owner=f"{origin}: package '{name}'"),
        )


class EffectiveConfig(BaseModel):
    """Host-filtered configuration consumed by the planner."""

    model_config = ConfigDict(frozen=True)

    host: HostContext
    settings: Settings
    dots: tuple[DotEntry, ...]
    packages: tuple[PackageSpec, ...]
    variables: Dict[str, Any]


class Config(BaseModel):
    """Fully parsed configuration, including host overlays."""

    model_config = ConfigDict(frozen=True)

    config_path: Path
    settings: Settings
    dots: tuple[DotEntry, ...] = ()
    packages: tuple[PackageSpec, ...] = ()
    variables: Dict[str, Any] = Field(default_factory=dict)
    overlays: tuple[Path, ...] = ()

    def effective(self, host: HostContext) -> EffectiveConfig:
        """Evaluate host filters once and return the effective configuration.

        Raises:
            ConfigError: two entries claim the same target for ``host``.
        """

        claimed: dict[Path, DotEntry] = {}
        for entry in self.dots:
            if not entry.host_filter.matches(host):
                continue
            previous = claimed.get(entry.target)
            if previous is not None:
                raise ConfigError(
                    f"Target '{entry.target}' is claimed by both '{previous.source}' and '{entry.source}'"
                    f" on host '{host.hostname}'"
                )
            claimed[entry.target] = entry

        packages: dict[tuple[str, str], PackageSpec] = {}
        for package in self.packages:
            if package.host_filter.matches(host):
                packages.setdefault(package.key(), package)

        variables = dict(self.variables)
        variables.setdefault("hostname", host.hostname)
        variables.setdefault("profiles", sorted(host.profiles))

        return EffectiveConfig(
            host=host,
            settings=self.settings,
            dots=tuple(sorted(claimed.values(), key=lambda item: item.target.parts)),
            packages=tuple(sorted(packages.values(), key=PackageSpec.key)),
            variables=variables,
        )


def load_config(path: Path | None = None, *, host: HostContext | None = None) -> Config:
    """Load and validate a configuration file.

    Args:
        path: Optional path to the TOML file or its directory. Defaults to
            ``$DOTWARD_CONFIG``, then ``dotward.toml`` in the current working
            directory, then ``~/.config/dotward/dotward.toml``.
        host: Host whose overlay file (``<host_overlay_dir>/<hostname>.toml``)
            should be merged. Defaults to the detected host.
    """

    config_path = _resolve_config_path(path)
    base_dir = config_path.parent
    data = _read_toml(config_path)

    settings = Settings.from_raw(data.get("settings", {}), base_dir=base_dir)
    dots = list(_parse_dots(data, settings=settings, origin=config_path))
    packages = list(_parse_packages(data, settings=settings, origin=config_path))
    variables: dict[str, Any] = dict(data.get("variables") or {})

    host = host or HostContext.detect()
    overlays: list[Path] = []
    if settings.host_overlay_dir is not None:
        overlay_path = settings.host_overlay_dir / f"{host.hostname}.toml"
        if overlay_path.is_file():
            logger.debug("Merging host overlay %s", overlay_path)
            overlay = _read_toml(overlay_path)
            if overlay.get("settings"):
                raise ConfigError(f"{overlay_path}: host overlays may not redefine [settings]")
            dots.extend(_parse_dots(overlay, settings=settings, origin=overlay_path))
            packages.extend(_parse_packages(overlay, settings=settings, origin=overlay_path))
            variables.update(overlay.get("variables") or {})
            overlays.append(overlay_path)

    return Config(
        config_path=config_path,
        settings=settings,
        dots=tuple(dots),
        packages=tuple(packages),
        variables=variables,
        overlays=tuple(overlays),
    )


def append_to_config(config_path: Path, section: str, table: Mapping[str, Any]) -> None:
    """Append ``table`` as a new ``[[section]]`` block at the end of ``config_path``.

    The existing text, comments and layout included, is kept as written.

    Raises:
        ConfigError: the result would not be valid TOML, e.g. because
            ``section`` is written as an inline array.
    """

    existing = config_path.read_text(encoding="utf-8") if config_path.exists() else ""
    values = {key: value for key, value in table.items() if value not in (None, [], ())}
    block = f"[[{section}]]\n" + "".join(tomli_w.dumps({key: value}) for key, value in values.items())

    if existing and not existing.endswith("\n"):
        existing += "\n"
    if existing.strip() and not existing.endswith("\n\n"):
        existing += "\n"
    updated = existing + block

    try:
        tomllib.loads(updated)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(
            f"{config_path}: cannot append a [[{section}]] entry ({exc}); write '{section}' as [[{section}]] tables"
        ) from exc

    tmp_path = config_path.with_name(f".{config_path.name}.dotward-tmp")
    try:
        tmp_path.write_text(updated, encoding="utf-8")
        os.replace(tmp_path, config_path)
    finally:
        tmp_path.unlink(missing_ok=True)


def _parse_dots(data: Mapping[str, Any], *, settings: Settings, origin: Path) -> Iterable[DotEntry]:
    raw_dots = data.get("dots") or []
    if not isinstance(raw_dots, list):
        raise ConfigError(f"{origin}: 'dots' must be an array of tables ([[dots]])")
    for raw in raw_dots:
        yield DotEntry.from_raw(raw, settings=settings, origin=origin)


def _parse_packages(data: Mapping[str, Any], *, settings: Settings, origin: Path) -> Iterable[PackageSpec]:
    raw_packages = data.get("packages") or []
    if not isinstance(raw_packages, list):
        raise ConfigError(f"{origin}: 'packages' must be an array")
    for raw in raw_packages:
        yield PackageSpec.from_raw(raw, settings=settings, origin=origin)


def _read_toml(path: Path) -> dict[str, Any]:
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Configuration file '{path}' is not valid TOML: {exc}") from exc


def _resolve_config_path(path: Path | None) -> Path:
    if path is None:
        env_value = os.environ.get(CONFIG_ENV_VAR)
        if env_value:
            path = Path(env_value).expanduser()
        else:
            path = Path.cwd() / DEFAULT_CONFIG_FILENAME
            if not path.exists():
                fallback = Path.home() / ".config" / "dotward" / DEFAULT_CONFIG_FILENAME
                if fallback.exists():
                    path = fallback
    else:
        path = Path(path)

    if not path.exists():
        raise ConfigError(f"Configuration file '{path}' does not exist")
    if path.is_dir():
        candidate = path / DEFAULT_CONFIG_FILENAME
        if not candidate.exists():
            raise ConfigError(f"Expected to find '{DEFAULT_CONFIG_FILENAME}' inside '{path}', but none was located")
        path = candidate

    return path.resolve(strict=False)
