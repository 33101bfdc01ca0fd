"""Read-only inspection of the filesystem state at managed targets."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Iterable

from .filesystem import detect_kind, hash_path, link_destination
from .models import EntryKind, FilesystemObservation

logger = logging.getLogger(__name__)


def observe(target: Path) -> FilesystemObservation:
    """Return what currently lives at ``target``.

    Unreadable entries are reported as existing with no fingerprint, so the
    planner can never mistake them for content it owns.
    """

    try:
        kind = detect_kind(target)
    except OSError as exc:
        logger.warning("Cannot inspect %s: %s", target, exc)
        return FilesystemObservation(target=target, exists=True, kind=EntryKind.UNKNOWN)
    if kind is EntryKind.NONE:
        return FilesystemObservation.missing(target)

    resolved: Path | None = None
    fingerprint: str | None = None
    try:
        if kind is EntryKind.SYMLINK:
            resolved = link_destination(target)
        fingerprint = hash_path(target)
    except OSError as exc:
        logger.warning("Cannot fingerprint %s: %s", target, exc)

    return FilesystemObservation(
        target=target,
        exists=True,
        kind=kind,
        resolved_link_target=resolved,
        content_fingerprint=fingerprint,
    )


def observe_many(targets: Iterable[Path], *, workers: int = 8) -> dict[Path, FilesystemObservation]:
    """Observe every path in ``targets``; reads run in parallel."""

    unique = sorted(set(targets), key=lambda path: path.parts)
    if not unique:
        return {}
    if workers <= 1 or len(unique) == 1:
        return {target: observe(target) for target in unique}

    with ThreadPoolExecutor(max_workers=min(workers, len(unique)), thread_name_prefix="dotward-inspect") as pool:
        return dict(zip(unique, pool.map(observe, unique)))
