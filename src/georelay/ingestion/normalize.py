"""Normalization helpers.

Centralizes lenient parsing of broker payload values.
"""

from __future__ import annotations

import math
from datetime import UTC, datetime
from typing import Any


def safe_float(value: Any) -> float | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


def safe_str(value: Any) -> str | None:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text if text else None


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string with millisecond precision."""
    return format_timestamp(datetime.now(UTC))


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def normalize_timestamp(value: Any) -> str | None:
    """Normalize a payload timestamp to an ISO-8601 string.

    - Empty/missing -> None
    - Strings are kept verbatim (devices already send ISO-8601)
    - Epoch numbers (seconds, or milliseconds when > 1e11) -> ISO-8601 UTC
    """

    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, (int, float)):
        ts = float(value)
        if ts <= 0 or math.isnan(ts):
            return None
        if ts > 1e11:
            ts /= 1000.0
        return format_timestamp(datetime.fromtimestamp(ts, tz=UTC))
    return safe_str(value)


def mac_from_topic(topic: str) -> str | None:
    """Return the second-to-last segment of topics like ``old/assets/{mac}/location``.

    Topics with two segments or fewer carry no device identifier.
    """
    parts = topic.split("/")
    if len(parts) <= 2:
        return None
    return parts[-2] or None


def is_meaningful(value: Any) -> bool:
    """Return True if the value should be included in a state patch."""

    if value is None:
        return False
    if value == "":
        return False
    if value == {}:
        return False
    return bool(value != [])


def prune_patch(data: Any) -> Any:
    """Recursively drop non-meaningful values from a patch structure.

    - Dicts: remove keys with non-meaningful values; recurse into nested dicts/lists.
    - Lists: prune elements and drop non-meaningful items.
    - Scalars: returned as-is.

    State merging assumes incoming patches are already pruned.
    """

    if isinstance(data, dict):
        pruned: dict[str, Any] = {}
        for key, value in data.items():
            cleaned = prune_patch(value)
            if is_meaningful(cleaned):
                pruned[key] = cleaned
        return pruned

    if isinstance(data, list):
        items: list[Any] = []
        for item in data:
            cleaned = prune_patch(item)
            if is_meaningful(cleaned):
                items.append(cleaned)
        return items

    return data
