"""Per-team capped selection of sprints for sync and reporting."""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Iterable, TypeVar

from .mapper import team_key

T = TypeVar("T")

MIN_PER_TEAM = 1
MAX_PER_TEAM = 50


def clamp_per_team(cap: int | None, default: int = 10) -> int:
    if cap is None:
        cap = default
    return max(MIN_PER_TEAM, min(MAX_PER_TEAM, cap))


def _by_end_date_desc(items: list[T], end_date: Callable[[T], datetime | None]) -> list[T]:
    # sorted() is stable with reverse=True, so equal end dates keep input order.
    # Undated items sort after every dated one.
    def key(item: T) -> tuple[bool, datetime]:
        value = end_date(item)
        return (value is not None, value if value is not None else datetime.min)

    return sorted(items, key=key, reverse=True)


def select_recent_per_team(
    items: Iterable[T],
    cap: int,
    *,
    name: Callable[[T], str | None],
    end_date: Callable[[T], datetime | None],
) -> list[T]:
    """Keep at most ``cap`` of the most recent items per team.

    Items are grouped by the team key derived from their name. The result
    is ordered by end date, newest first, with ties in input order.

    Args:
        items: Sprints or snapshots, any order.
        cap: Items kept per team, clamped to ``[MIN_PER_TEAM, MAX_PER_TEAM]``.
        name: Accessor for the sprint name.
        end_date: Accessor for the end date.
    """
    cap = clamp_per_team(cap)
    indexed = list(enumerate(items))
    ordered = _by_end_date_desc(indexed, lambda pair: end_date(pair[1]))

    buckets: dict[str, list[tuple[int, T]]] = {}
    for pair in ordered:
        bucket = buckets.setdefault(team_key(name(pair[1])), [])
        if len(bucket) < cap:
            bucket.append(pair)

    # Restore input order before the final sort so ties resolve the same
    # way regardless of which bucket an item landed in.
    kept = sorted((pair for bucket in buckets.values() for pair in bucket), key=lambda pair: pair[0])
    return [item for _, item in _by_end_date_desc(kept, lambda pair: end_date(pair[1]))]
