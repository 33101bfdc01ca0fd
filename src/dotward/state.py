"""State store persistence for dotward."""

from __future__ import annotations

import logging
import os
import tomllib
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from tomli_w import dump as toml_dump

from .errors import StateStoreError
from .filesystem import TEMP_MARKER
from .models import LinkMode, PackageRecord, StateRecord

logger = logging.getLogger(__name__)

STATE_VERSION = 1


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


class StateStore:
    """Durable record of what the engine previously applied.

    One instance is loaded per run; every component reads the same in-memory
    snapshot and only the executor and the adoption engine mutate it.
    """

    def __init__(
        self,
        path: Path,
        records: dict[str, StateRecord] | None = None,
        packages: dict[tuple[str, str], PackageRecord] | None = None,
        ignored: set[tuple[str, str]] | None = None,
        *,
        degraded: bool = False,
    ) -> None:
        self.path = path
        self._records: dict[str, StateRecord] = records or {}
        self._packages: dict[tuple[str, str], PackageRecord] = packages or {}
        self._ignored: set[tuple[str, str]] = ignored or set()
        self.degraded = degraded

    @classmethod
    def load(cls, path: Path) -> "StateStore":
        """Load ``path``; a missing or corrupt file means "no prior state"."""

        if not path.exists():
            return cls(path)

        try:
            with path.open("rb") as handle:
                data = tomllib.load(handle)
            records = {}
            for item in data.get("records", []):
                record = _record_from_dict(item)
                records[record.key()] = record
            packages = {}
            for item in data.get("packages", []):
                package = PackageRecord(
                    backend=item["backend"],
                    name=item["name"],
                    managed_since=_parse_time(item.get("managed_since")),
                )
                packages[package.key()] = package
            ignored = {(item["backend"], item["name"]) for item in data.get("ignored", [])}
        except (OSError, tomllib.TOMLDecodeError, KeyError, TypeError, ValueError) as exc:
            logger.warning("State file %s is unreadable (%s); treating it as empty", path, exc)
            return cls(path, degraded=True)

        return cls(path, records, packages, ignored)

    def save(self) -> None:
        """Persist the snapshot atomically.

        Raises:
            StateStoreError: the file could not be written.
        """

        payload: dict[str, Any] = {
            "version": STATE_VERSION,
            "records": [_record_to_dict(record) for _, record in sorted(self._records.items())],
            "packages": [
                {
                    "backend": package.backend,
                    "name": package.name,
                    "managed_since": package.managed_since.isoformat(),
                }
                for _, package in sorted(self._packages.items())
            ],
            "ignored": [{"backend": backend, "name": name} for backend, name in sorted(self._ignored)],
        }
        temp_path = self.path.with_name(f".{self.path.name}{TEMP_MARKER}{os.getpid()}")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with temp_path.open("wb") as handle:
                toml_dump(payload, handle)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_path, self.path)
        except OSError as exc:
            temp_path.unlink(missing_ok=True)
            raise StateStoreError(f"Cannot write state file '{self.path}': {exc}") from exc
        self.degraded = False

    def get(self, target: Path | str) -> StateRecord | None:
        return self._records.get(Path(target).as_posix())

    def upsert(self, record: StateRecord) -> None:
        self._records[record.key()] = record

    def remove(self, target: Path | str) -> None:
        self._records.pop(Path(target).as_posix(), None)

    def records(self) -> Iterable[StateRecord]:
        return self._records.values()

    def __contains__(self, target: object) -> bool:
        return isinstance(target, (str, Path)) and Path(target).as_posix() in self._records

    def __len__(self) -> int:
        return len(self._records)

    # packages

    def packages(self) -> Iterable[PackageRecord]:
        return self._packages.values()

    def is_package_managed(self, backend: str, name: str) -> bool:
        return (backend, name) in self._packages

    def add_package(self, backend: str, name: str) -> None:
        self._packages.setdefault((backend, name), PackageRecord(backend, name, utcnow()))

    def remove_package(self, backend: str, name: str) -> None:
        self._packages.pop((backend, name), None)

    def is_package_ignored(self, backend: str, name: str) -> bool:
        return (backend, name) in self._ignored

    def ignore_package(self, backend: str, name: str) -> None:
        """Never offer ``name`` for adoption again; it also stops being managed."""

        self._ignored.add((backend, name))
        self.remove_package(backend, name)

    def unignore_package(self, backend: str, name: str) -> None:
        self._ignored.discard((backend, name))


def _record_from_dict(item: dict[str, Any]) -> StateRecord:
    return StateRecord(
        target=Path(item["target"]),
        content_fingerprint=item["fingerprint"],
        link_mode=LinkMode(item["link_mode"]),
        managed_since=_parse_time(item.get("managed_since")),
        source=item.get("source"),
    )


def _record_to_dict(record: StateRecord) -> dict[str, object]:
    payload: dict[str, object] = {
        "target": record.target.as_posix(),
        "fingerprint": record.content_fingerprint,
        "link_mode": record.link_mode.value,
        "managed_since": record.managed_since.isoformat(),
    }
    if record.source is not None:
        payload["source"] = record.source
    return payload


def _parse_time(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        return raw if raw.tzinfo else raw.replace(tzinfo=timezone.utc)
    if raw is None:
        return utcnow()
    return datetime.fromisoformat(str(raw))
