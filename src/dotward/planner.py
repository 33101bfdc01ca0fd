"""Diff planner: desired configuration vs. recorded state vs. live filesystem.

``plan`` is a pure function. It compares, per target path, the fingerprint
the configuration wants, the fingerprint the state store last applied and the
fingerprint currently on disk:

========================  =================  ==========
on disk                   state record       action
========================  =================  ==========
absent                    any                Create
== desired                any                Skip
== record, != desired     present            Update
anything else             any                Conflict
========================  =================  ==========

State records with no entry in the effective configuration become Remove
actions; the resolver decides whether they actually run.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Mapping

from .config import DotEntry, EffectiveConfig
from .models import (
    Action,
    ActionKind,
    ActionPlan,
    EntryKind,
    FilesystemObservation,
    PackageAction,
    PackageActionKind,
)
from .render import desired_fingerprint
from .state import StateStore

logger = logging.getLogger(__name__)


def desired_fingerprints(config: EffectiveConfig) -> dict[Path, str]:
    """Compute the fingerprint each effective entry should have at its target."""

    return {entry.target: desired_fingerprint(entry, config.variables) for entry in config.dots}


def plan(
    config: EffectiveConfig,
    state: StateStore,
    observations: Mapping[Path, FilesystemObservation],
    *,
    fingerprints: Mapping[Path, str] | None = None,
    installed: Mapping[str, set[str]] | None = None,
    orphans_only: bool = False,
) -> ActionPlan:
    """Return the ordered action plan that converges the machine to ``config``.

    Args:
        config: Host-filtered configuration.
        state: Snapshot of previously applied records; never mutated here.
        observations: Current filesystem reads keyed by target path.
        fingerprints: Precomputed desired fingerprints; computed when omitted.
        installed: Installed package names per backend. Package reconciliation
            is skipped when ``None``.
        orphans_only: Only look for orphaned state records (``clean``).
    """

    actions: list[Action] = []
    configured_targets = {entry.target for entry in config.dots}

    if not orphans_only:
        wanted = fingerprints if fingerprints is not None else desired_fingerprints(config)
        for entry in config.dots:
            observation = observations.get(entry.target) or FilesystemObservation.missing(entry.target)
            actions.append(_plan_entry(entry, wanted[entry.target], state, observation))

    for record in state.records():
        if record.target in configured_targets:
            continue
        observation = observations.get(record.target) or FilesystemObservation.missing(record.target)
        actions.append(_plan_orphan(record.target, record.content_fingerprint, observation))

    actions.sort(key=lambda action: action.target.parts)
    for action in actions:
        logger.debug("%s %s: %s", action.kind.value, action.subject, action.rationale)

    packages: list[PackageAction] = []
    if installed is not None and not orphans_only:
        packages = _plan_packages(config, state, installed)

    return ActionPlan(actions=tuple(actions), packages=tuple(packages))


def _plan_entry(entry: DotEntry, desired: str, state: StateStore, observation: FilesystemObservation) -> Action:
    record = state.get(entry.target)
    actual = observation.content_fingerprint
    common = dict(
        target=entry.target,
        entry=entry,
        desired_fingerprint=desired,
        observed_fingerprint=actual,
    )

    if not observation.exists:
        rationale = "target missing; re-creating managed entry" if record else "new entry"
        return Action(kind=ActionKind.CREATE, rationale=rationale, **common)

    if actual is not None and actual == desired:
        stale = record is None or record.content_fingerprint != desired or record.link_mode is not entry.link_mode
        rationale = "already up to date; recording state" if stale else "up to date"
        return Action(kind=ActionKind.SKIP, rationale=rationale, record_state=stale, **common)

    if record is not None and actual is not None and actual == record.content_fingerprint:
        if record.link_mode is not entry.link_mode:
            rationale = f"link mode changed from {record.link_mode.value} to {entry.link_mode.value}"
        else:
            rationale = "source changed since last apply"
        return Action(kind=ActionKind.UPDATE, rationale=rationale, **common)

    if observation.kind is EntryKind.UNKNOWN:
        rationale = "target cannot be inspected"
    elif actual is None:
        rationale = f"unreadable {observation.kind.value} at target"
    elif record is not None:
        rationale = "unmanaged modification"
    else:
        rationale = f"unmanaged file: existing {observation.kind.value} is not tracked"
    return Action(kind=ActionKind.CONFLICT, rationale=rationale, **common)


def _plan_orphan(target: Path, recorded: str, observation: FilesystemObservation) -> Action:
    if not observation.exists:
        rationale = "orphan: no longer configured; target already gone"
        modified = False
    elif observation.content_fingerprint == recorded:
        rationale = "orphan: no longer configured"
        modified = False
    else:
        rationale = "orphan: no longer configured and modified since last apply"
        modified = True
    return Action(
        kind=ActionKind.REMOVE,
        target=target,
        rationale=rationale,
        desired_fingerprint=recorded,
        observed_fingerprint=observation.content_fingerprint,
        modified=modified,
    )


def _plan_packages(
    config: EffectiveConfig,
    state: StateStore,
    installed: Mapping[str, set[str]],
) -> list[PackageAction]:
    actions: list[PackageAction] = []
    desired = {package.key() for package in config.packages}

    for backend, name in sorted(desired):
        present = installed.get(backend, set())
        if name in present:
            actions.append(PackageAction(PackageActionKind.SKIP, backend, name, "installed"))
        else:
            actions.append(PackageAction(PackageActionKind.INSTALL, backend, name, "not installed"))

    for record in sorted(state.packages(), key=lambda item: item.key()):
        if record.key() in desired:
            continue
        if record.name in installed.get(record.backend, set()):
            actions.append(
                PackageAction(
                    PackageActionKind.UNCONFIGURED,
                    record.backend,
                    record.name,
                    "installed but no longer configured; left in place",
                )
            )

    return actions
