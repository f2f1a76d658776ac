"""Snapshot Merger — folds a parsed directive into the session snapshot.

Scalars follow last-non-null-wins; set fields only ever grow. Both functions
here are pure.
"""
from typing import Any

from willow.models import SCALAR_FIELDS, SET_FIELDS, Directive, IntakeSnapshot


def merge_snapshot(prior: IntakeSnapshot, directive: Directive | None) -> IntakeSnapshot:
    """Return the snapshot that results from applying ``directive`` to ``prior``."""
    if directive is None:
        return prior

    update: dict[str, Any] = {}
    for name in SCALAR_FIELDS:
        value = getattr(directive, name)
        if value is not None:
            update[name] = value

    for name in SET_FIELDS:
        existing = getattr(prior, name)
        added = [item for item in getattr(directive, name) if item not in existing]
        if added:
            # dict.fromkeys dedupes repeats inside the directive itself
            update[name] = list(dict.fromkeys([*existing, *added]))

    if not update:
        return prior
    return prior.model_copy(update=update)


def changed_fields(before: IntakeSnapshot | None, after: IntakeSnapshot) -> dict[str, Any]:
    """Fields of ``after`` whose values differ from ``before`` (all non-empty ones if None)."""
    changed = {}
    for name in (*SCALAR_FIELDS, *SET_FIELDS):
        value = getattr(after, name)
        if before is None:
            if value not in (None, []):
                changed[name] = value
        elif value != getattr(before, name):
            changed[name] = value
    return changed
