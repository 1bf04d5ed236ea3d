"""Deterministic state merge policy.

This module intentionally contains *no* payload parsing. The ingestion /
Pydantic boundary is responsible for producing canonical records.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TypeVar

from georelay._constants import NOTIFY_DETECTS

T = TypeVar("T")


def display_geofence_name(hook: str | None) -> str:
    """Derive a human-readable fence name from an event hook.

    Hooks conventionally look like ``geofence_{mac}_{name}``; the first two
    ``_``-separated segments are dropped when at least three exist. Any other
    hook is returned verbatim. This is a compatibility heuristic: a fence
    name containing no prefix but three or more segments is truncated too.
    """
    name = hook or "unknown"
    parts = name.split("_")
    if len(parts) >= 3:
        return "_".join(parts[2:])
    return name


def should_notify(detect: str | None) -> bool:
    return detect in NOTIFY_DETECTS


def notification_message(badge_id: str, geofence_name: str, detect: str) -> str:
    return f'geofence for badge "{badge_id}" on fence "{geofence_name}" had {detect}'


def push_newest_first(items: Sequence[T], item: T, cap: int) -> list[T]:
    """Prepend *item*, evicting the oldest entries beyond *cap*."""
    return [item, *items][:cap]


def append_bounded(items: Sequence[T], item: T, cap: int) -> list[T]:
    """Append *item*, evicting the oldest entries beyond *cap*."""
    return [*items, item][-cap:]
