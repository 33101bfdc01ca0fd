"""Desired content for managed entries, including template rendering."""

from __future__ import annotations

from typing import Any, Mapping

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateError

from .config import DotEntry
from .errors import ConfigError
from .filesystem import hash_bytes, hash_link_target, hash_path
from .models import LinkMode


def render_template(entry: DotEntry, variables: Mapping[str, Any]) -> bytes:
    """Render ``entry``'s source as a Jinja template."""

    environment = Environment(
        loader=FileSystemLoader(str(entry.source_path.parent)),
        undefined=StrictUndefined,
        keep_trailing_newline=True,
        autoescape=False,
    )
    try:
        template = environment.get_template(entry.source_path.name)
        return template.render(**variables).encode()
    except TemplateError as exc:
        raise ConfigError(f"Cannot render template '{entry.source}': {exc}") from exc


def desired_content(entry: DotEntry, variables: Mapping[str, Any]) -> bytes:
    """Return the bytes a ``copy`` or ``template`` entry should leave at its target."""

    if entry.link_mode is LinkMode.TEMPLATE:
        return render_template(entry, variables)
    return entry.source_path.read_bytes()


def desired_fingerprint(entry: DotEntry, variables: Mapping[str, Any]) -> str:
    """Return the fingerprint ``entry.target`` will have once applied.

    Raises:
        ConfigError: the source is missing or the template cannot be rendered.
    """

    source = entry.source_path
    if entry.link_mode is LinkMode.SYMLINK:
        if not source.exists():
            raise ConfigError(f"Source '{entry.source}' does not exist in '{source.parent}'")
        return hash_link_target(source)

    if not source.exists() and not source.is_symlink():
        raise ConfigError(f"Source '{entry.source}' does not exist in '{source.parent}'")
    if entry.link_mode is LinkMode.TEMPLATE:
        if source.is_dir():
            raise ConfigError(f"Template source '{entry.source}' must be a file")
        return hash_bytes(render_template(entry, variables))
    return hash_path(source.resolve())
