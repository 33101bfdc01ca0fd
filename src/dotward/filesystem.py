"""Filesystem helpers for dotward."""

from __future__ import annotations

import os
import shutil
import tempfile
import uuid
from hashlib import blake2b
from pathlib import Path

from .models import EntryKind

TEMP_MARKER = ".dotward-tmp-"


def ensure_parent(path: Path) -> None:
    """Ensure the parent directory exists."""

    path.parent.mkdir(parents=True, exist_ok=True)


def detect_kind(path: Path) -> EntryKind:
    """Determine the ``EntryKind`` for ``path`` without following symlinks."""

    if path.is_symlink():
        return EntryKind.SYMLINK
    if not path.exists():
        return EntryKind.NONE
    if path.is_dir():
        return EntryKind.DIRECTORY
    return EntryKind.FILE


def link_destination(path: Path) -> Path:
    """Return the absolute, normalised destination of symlink ``path``."""

    raw = Path(os.readlink(path))
    if not raw.is_absolute():
        raw = path.parent / raw
    return Path(os.path.normpath(raw))


def hash_bytes(data: bytes) -> str:
    """Return the fingerprint a regular file holding ``data`` would have."""

    hasher = blake2b(digest_size=32)
    hasher.update(EntryKind.FILE.value.encode())
    hasher.update(data)
    return hasher.hexdigest()


def hash_link_target(target: Path) -> str:
    """Return the fingerprint of a symlink resolving to ``target``."""

    hasher = blake2b(digest_size=32)
    hasher.update(EntryKind.SYMLINK.value.encode())
    hasher.update(b"\0")
    hasher.update(os.path.normpath(target).encode())
    return hasher.hexdigest()


def hash_path(path: Path) -> str:
    """Return a BLAKE2 hash for ``path`` contents and structure."""

    kind = detect_kind(path)
    if kind == EntryKind.SYMLINK:
        return hash_link_target(link_destination(path))

    hasher = blake2b(digest_size=32)
    hasher.update(kind.value.encode())
    if kind == EntryKind.FILE:
        _update_hash_with_file(hasher, path)
        return hasher.hexdigest()

    for child in _iter_directory(path):
        rel = child.relative_to(path).as_posix().encode()
        child_kind = detect_kind(child)
        hasher.update(child_kind.value.encode())
        hasher.update(b"\0")
        hasher.update(rel)
        hasher.update(b"\0")
        if child_kind == EntryKind.FILE:
            _update_hash_with_file(hasher, child)
        elif child_kind == EntryKind.SYMLINK:
            hasher.update(os.readlink(child).encode())

    return hasher.hexdigest()


def _update_hash_with_file(hasher, path: Path) -> None:
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            hasher.update(chunk)


def _iter_directory(path: Path) -> list[Path]:
    entries: list[Path] = []
    for child in path.iterdir():
        entries.append(child)
        if child.is_dir() and not child.is_symlink():
            entries.extend(_iter_directory(child))
    return sorted(entries)


def nearest_existing_ancestor(path: Path) -> Path:
    ancestor = path.parent
    while not ancestor.exists() and ancestor != ancestor.parent:
        ancestor = ancestor.parent
    return ancestor


def writable_problem(path: Path) -> str | None:
    """Return why ``path`` cannot be created or replaced, or ``None``."""

    ancestor = nearest_existing_ancestor(path)
    if not ancestor.is_dir():
        return f"'{ancestor}' is not a directory"
    if not os.access(ancestor, os.W_OK | os.X_OK):
        return f"cannot write to directory '{ancestor}'"
    return None


def atomic_write_bytes(destination: Path, data: bytes, *, mode: int | None = None) -> None:
    """Write ``data`` to ``destination`` through a temporary sibling and rename."""

    def fill(temp_path: Path) -> None:
        with temp_path.open("wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())

    _replace_via_temp(destination, fill, mode=mode)


def atomic_copy_file(source: Path, destination: Path, *, mode: int | None = None) -> None:
    """Copy ``source`` over ``destination`` so no partial file is ever visible."""

    _replace_via_temp(destination, lambda temp_path: shutil.copy2(source, temp_path), mode=mode)


def _replace_via_temp(destination: Path, fill, *, mode: int | None) -> None:
    if destination.is_dir() and not destination.is_symlink():
        raise IsADirectoryError(f"Refusing to replace directory '{destination}' with a file")

    ensure_parent(destination)
    fd, temp_name = tempfile.mkstemp(prefix=f".{destination.name}{TEMP_MARKER}", dir=destination.parent)
    os.close(fd)
    temp_path = Path(temp_name)
    try:
        fill(temp_path)
        if mode is not None:
            os.chmod(temp_path, mode)
        os.replace(temp_path, destination)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise


def atomic_symlink(destination: Path, link_target: Path, *, replace_directory: bool = False) -> None:
    """Point ``destination`` at ``link_target``, replacing any file atomically.

    A real directory at ``destination`` is only swapped out when
    ``replace_directory`` is set; it is moved aside and put back if the
    final rename fails.
    """

    if destination.is_dir() and not destination.is_symlink() and not replace_directory:
        raise IsADirectoryError(f"Refusing to replace directory '{destination}' with a symlink")

    ensure_parent(destination)
    temp_path = destination.parent / f".{destination.name}{TEMP_MARKER}{uuid.uuid4().hex[:8]}"
    try:
        temp_path.symlink_to(link_target)
        _swap_into_place(temp_path, destination)
    except BaseException:
        if temp_path.is_symlink():
            temp_path.unlink()
        raise


def atomic_copy_tree(source: Path, destination: Path) -> None:
    """Replace directory ``destination`` with a copy of ``source``.

    The copy is staged next to the destination; an existing destination is
    moved aside and put back if the final rename fails.
    """

    if destination.is_symlink() or (destination.exists() and not destination.is_dir()):
        remove_path(destination)

    ensure_parent(destination)
    prefix = f".{destination.name}{TEMP_MARKER}"
    with tempfile.TemporaryDirectory(prefix=prefix, dir=destination.parent) as staging_root_name:
        staged = Path(staging_root_name) / "payload"
        shutil.copytree(source, staged, symlinks=True, copy_function=shutil.copy2)
        _swap_into_place(staged, destination)


def _swap_into_place(staged: Path, destination: Path) -> None:
    backup: Path | None = None
    if destination.is_dir() and not destination.is_symlink():
        backup = destination.parent / f".{destination.name}.dotward-backup"
        counter = 1
        while backup.exists() or backup.is_symlink():
            counter += 1
            backup = destination.parent / f".{destination.name}.dotward-backup{counter}"
        destination.rename(backup)

    try:
        os.replace(staged, destination)
    except BaseException:
        if backup is not None and backup.exists():
            os.rename(backup, destination)
        raise

    if backup is not None:
        shutil.rmtree(backup, ignore_errors=True)


def remove_path(path: Path) -> None:
    """Delete ``path`` whether it is a file, directory, or symlink."""

    if not path.exists() and not path.is_symlink():
        return
    if path.is_symlink() or path.is_file():
        path.unlink()
        return
    shutil.rmtree(path)
