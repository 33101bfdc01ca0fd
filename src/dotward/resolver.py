"""Conflict resolver: decides which planned actions may run."""

from __future__ import annotations

import logging
from typing import Callable, Optional

from .models import (
    Action,
    ActionKind,
    ActionPlan,
    Decision,
    Mode,
    PackageActionKind,
    ResolvedAction,
    ResolvedPackageAction,
    ResolvedPlan,
)

logger = logging.getLogger(__name__)

Prompt = Callable[[Action], Optional[bool]]
"""Asks the user about one action: ``True`` yes, ``False`` no, ``None`` no answer."""


def resolve(
    plan: ActionPlan,
    mode: Mode,
    *,
    force: bool = False,
    prompt: Prompt | None = None,
) -> ResolvedPlan:
    """Classify each planned action as approved or skipped.

    Creates and updates always run. Conflicts and orphan removals need a
    human: in interactive mode ``prompt`` is asked and anything but an
    explicit yes skips the action; in non-interactive mode conflicts are
    skipped and removals only run with ``force``. A removal whose target was
    modified since it was applied is never approved by ``force`` alone.
    """

    if mode is Mode.INTERACTIVE and prompt is None:
        raise ValueError("interactive resolution requires a prompt")

    resolved = [_resolve_action(action, mode, force=force, prompt=prompt) for action in plan.actions]

    packages = []
    for item in plan.packages:
        if item.kind is PackageActionKind.UNCONFIGURED:
            packages.append(ResolvedPackageAction(item, Decision.SKIPPED, item.rationale))
        else:
            packages.append(ResolvedPackageAction(item, Decision.APPROVED, "auto-approved"))

    return ResolvedPlan(actions=tuple(resolved), packages=tuple(packages), mode=mode)


def _resolve_action(action: Action, mode: Mode, *, force: bool, prompt: Prompt | None) -> ResolvedAction:
    if action.kind in (ActionKind.CREATE, ActionKind.UPDATE, ActionKind.SKIP):
        return ResolvedAction(action, Decision.APPROVED, "auto-approved")

    if action.kind is ActionKind.REMOVE and action.observed_fingerprint is None and not action.modified:
        return ResolvedAction(action, Decision.APPROVED, "target already gone; forgetting record")

    if action.kind is ActionKind.REMOVE and force and not action.modified:
        return ResolvedAction(action, Decision.APPROVED, "approved by --force")

    if mode is Mode.NON_INTERACTIVE:
        if action.kind is ActionKind.CONFLICT:
            logger.warning("Skipping %s: %s", action.subject, action.rationale)
            return ResolvedAction(action, Decision.SKIPPED, f"{action.rationale}; left untouched")
        logger.warning("Leaving orphan %s in place: %s", action.subject, action.rationale)
        return ResolvedAction(action, Decision.SKIPPED, f"{action.rationale}; use 'clean --force' to remove")

    answer = _ask(prompt, action)
    if answer is True:
        return ResolvedAction(action, Decision.APPROVED, "approved by user")
    if answer is False:
        return ResolvedAction(action, Decision.SKIPPED, f"{action.rationale}; declined by user")
    return ResolvedAction(action, Decision.SKIPPED, f"{action.rationale}; no answer, skipped")


def _ask(prompt: Prompt | None, action: Action) -> bool | None:
    if prompt is None:
        raise ValueError(f"no prompt available to decide on {action.subject}")
    try:
        return prompt(action)
    except EOFError:
        return None
