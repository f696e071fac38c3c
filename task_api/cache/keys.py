"""Cache key construction.

Keys look like ``namespace:part1:part2:...``. Every part is reduced to
``[A-Za-z0-9_-]`` so a key can never contain the separator or a glob
metacharacter understood by SCAN MATCH.

Filter mappings collapse into a single part built from their entries sorted
by key, so the same filters always land in the same bucket whatever order the
caller supplied them in. ``None`` values are dropped first, which means ``{}``
and ``{"foo": None}`` share a bucket; so do mappings whose sanitized text
happens to coincide (``{"a": "b c"}`` and ``{"a": "b_c"}``). Both collisions
are accepted.
"""

import re
from collections.abc import Mapping
from typing import Any

SEPARATOR = ":"
WILDCARD = "*"
EMPTY_FILTERS = "default"

_UNSAFE = re.compile(r"[^A-Za-z0-9_-]")


def sanitize(part: Any) -> str:
    return _UNSAFE.sub("_", str(part))


def hash_filters(filters: Mapping[str, Any] | None) -> str:
    """Reduce an unordered filter mapping to one deterministic key part."""
    if not filters:
        return EMPTY_FILTERS
    pairs = [
        f"{name}:{filters[name]}"
        for name in sorted(filters)
        if filters[name] is not None
    ]
    return sanitize("|".join(pairs)) if pairs else EMPTY_FILTERS


def _coerce(part: Any) -> str:
    if isinstance(part, Mapping):
        return hash_filters(part)
    return sanitize(part)


def build_key(namespace: str, *parts: Any) -> str:
    segments = [sanitize(namespace)]
    segments.extend(_coerce(part) for part in parts if part is not None)
    return SEPARATOR.join(segments)


def build_pattern(namespace: str, *parts: Any) -> str:
    """Pattern matching every key that starts with the given parts."""
    return f"{build_key(namespace, *parts)}{SEPARATOR}{WILDCARD}"


# Key families. Everything a user's task listings and stats depend on lives
# under ``user:<id>:tasks:``, so one pattern clears all of it.


def user_tasks_key(user_id: int, filters: Mapping[str, Any] | None) -> str:
    return build_key("user", user_id, "tasks", "list", filters or {})


def user_task_stats_key(user_id: int) -> str:
    return build_key("user", user_id, "tasks", "stats")


def user_tasks_pattern(user_id: int) -> str:
    return build_pattern("user", user_id, "tasks")


def user_task_key(user_id: int, task_id: int) -> str:
    return build_key("user", user_id, "task", task_id)


def user_task_items_pattern(user_id: int) -> str:
    return build_pattern("user", user_id, "task")


def user_categories_key(user_id: int) -> str:
    return build_key("user", user_id, "categories", "list")


def user_category_key(user_id: int, category_id: int) -> str:
    return build_key("user", user_id, "category", category_id)


def user_profile_key(user_id: int) -> str:
    return build_key("user", user_id, "profile")
