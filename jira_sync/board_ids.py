"""Board identifier parsing for sync overrides and stored settings."""

from __future__ import annotations

import re
from urllib.parse import parse_qs, urlparse

_BOARD_PATH_RE = re.compile(r"/boards?/(\d+)", re.IGNORECASE)
_RAPID_VIEW_RE = re.compile(r"rapidView=(\d+)", re.IGNORECASE)


def _to_int(value: str) -> int | None:
    try:
        return int(value.strip())
    except (TypeError, ValueError):
        return None


def extract_board_id_from_url(value: str | None) -> int | None:
    """Pull a board id out of a Jira board URL.

    ``rapidView`` in the query string wins over a ``/board/<id>`` or
    ``/boards/<id>`` path segment. Text that is not an absolute URL is
    searched for ``rapidView=<digits>`` instead.
    """
    if not value or not value.strip():
        return None
    text = value.strip()

    parsed = urlparse(text)
    if not (parsed.scheme and parsed.netloc):
        match = _RAPID_VIEW_RE.search(text)
        return int(match.group(1)) if match else None

    rapid_view = parse_qs(parsed.query).get("rapidView")
    if rapid_view:
        board_id = _to_int(rapid_view[0])
        if board_id is not None:
            return board_id

    match = _BOARD_PATH_RE.search(parsed.path)
    if match:
        return int(match.group(1))
    return None


def parse_board_id_list(value: str | None) -> list[int] | None:
    """Parse ``"12, 13, x, 14"`` into ``[12, 13, 14]``; ``None`` when empty."""
    if not value:
        return None
    ids = [board_id for board_id in (_to_int(part) for part in value.split(",")) if board_id is not None]
    return ids or None


def parse_board_ids(raw_ids: str | None, board_url: str | None) -> list[int] | None:
    """Resolve a per-call board override.

    A board URL that yields an id always wins over the delimited list.
    """
    extracted = extract_board_id_from_url(board_url) if board_url else None
    if extracted is not None:
        return [extracted]
    return parse_board_id_list(raw_ids)
