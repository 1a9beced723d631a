"""Field-level conflict detection between the lifecycle store and phase files.

A conflict means both sides changed independently since the last point they
agreed. When no baseline is known every divergence counts as a conflict.
"""
from __future__ import annotations

from typing import Mapping

from mission_control.models import FieldConflict

TRACKED_FIELDS = ("status", "agent_id")


def _ordered_union(*mappings: Mapping[str, str]) -> list[str]:
    seen: dict[str, None] = {}
    for mapping in mappings:
        for key in mapping:
            seen.setdefault(key, None)
    return list(seen)


def detect_conflicts(
    db_state: Mapping[str, str],
    file_state: Mapping[str, str],
    last_sync_state: Mapping[str, str] | None = None,
) -> list[FieldConflict]:
    """Compare store values against file values field by field.

    With `last_sync_state`, a field conflicts only when both sides moved away
    from the baseline; if only one side moved, that side wins and nothing is
    reported. Without it, any difference is a conflict. Missing keys compare
    as "".
    """
    conflicts: list[FieldConflict] = []

    for field in _ordered_union(db_state, file_state):
        db_value = db_state.get(field) or ""
        file_value = file_state.get(field) or ""
        if db_value == file_value:
            continue

        if last_sync_state is None:
            conflicts.append(FieldConflict(field=field, dbValue=db_value, fileValue=file_value))
            continue

        last_sync = last_sync_state.get(field) or ""
        if db_value != last_sync and file_value != last_sync:
            conflicts.append(
                FieldConflict(
                    field=field,
                    dbValue=db_value,
                    fileValue=file_value,
                    lastSyncValue=last_sync,
                )
            )

    return conflicts


def winning_side(db_value: str, file_value: str, last_sync_value: str) -> str:
    """Name the side whose value should win a non-conflicting divergence.

    Returns "file", "dashboard", or "" when both sides already agree.
    """
    if db_value == file_value:
        return ""
    if file_value != last_sync_value and db_value == last_sync_value:
        return "file"
    if db_value != last_sync_value and file_value == last_sync_value:
        return "dashboard"
    return ""


def tracked_fields(values: Mapping[str, object]) -> dict[str, str]:
    """Reduce a record or frontmatter mapping to the tracked fields as strings."""
    reduced: dict[str, str] = {}
    for field in TRACKED_FIELDS:
        value = values.get(field)
        reduced[field] = "" if value is None else str(value)
    return reduced
