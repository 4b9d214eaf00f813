"""Client-side ordering, shuffling and limits for evaluated playlists."""

from __future__ import annotations

import random
import unicodedata
from functools import cmp_to_key
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .compiler import coerce_number, parse_timestamp, tag_values
from .rules import OrderClause
from .stickers import ABSENT, sticker_value

# Tags compared as numbers rather than text.
NUMERIC_FIELDS = frozenset(
    {"track", "disc", "date", "originaldate", "duration", "time", "movementnumber"}
)
TIMESTAMP_FIELDS = frozenset({"last-modified", "added"})


def _normalize_text(value: Any) -> str:
    return unicodedata.normalize("NFKD", str(value)).casefold()


def sort_value(track: Mapping[str, Any], stickers: Optional[Mapping[str, Any]], clause: OrderClause):
    """Return the comparable value for one clause, or ``None`` when missing."""

    sticker_key = clause.sticker_key
    if sticker_key is not None:
        raw = sticker_value(stickers, sticker_key)
        if raw is ABSENT or raw is None:
            return None
        number = coerce_number(raw)
        if number is not None:
            return (0, number, "")
        return (1, 0.0, _normalize_text(raw))

    field = clause.field.strip().lower()
    values = tag_values(track, field)
    if not values:
        return None
    first = values[0]

    if field in TIMESTAMP_FIELDS:
        stamp = parse_timestamp(first)
        return None if stamp is None else (0, stamp, "")

    if field in NUMERIC_FIELDS:
        # "3/12" style track numbers and "1999-04-01" dates sort by their leading number.
        number = coerce_number(first)
        if number is not None:
            return (0, number, _normalize_text(first))

    return (1, 0.0, _normalize_text(first))


def _compare(a, b) -> int:
    if a < b:
        return -1
    if a > b:
        return 1
    return 0


def build_comparator(order: Sequence[OrderClause]):
    """Build a comparator over ``(track, stickers)`` pairs.

    Missing values always sort last, whatever the direction, and a full tie
    returns 0 so the stable sort keeps the catalogue order.
    """

    clauses = list(order)

    def compare(left, right) -> int:
        for index, clause in enumerate(clauses):
            value_left = left[2][index]
            value_right = right[2][index]
            if value_left is None and value_right is None:
                continue
            if value_left is None:
                return 1
            if value_right is None:
                return -1
            result = _compare(value_left, value_right)
            if result:
                return -result if clause.descending else result
        return 0

    return compare


def order_tracks(
    tracks: Sequence[Mapping[str, Any]],
    sticker_table: Optional[Mapping[str, Mapping[str, Any]]],
    order: Sequence[OrderClause],
    shuffle: bool = False,
    limit: Optional[int] = None,
    rng: Optional[random.Random] = None,
) -> List[str]:
    """Order matched tracks and return the first ``limit`` URIs.

    ``tracks`` must already be filtered and in catalogue order. Shuffle draws a
    fresh permutation on every call; the limit is applied only after ordering.
    """

    sticker_table = sticker_table or {}

    if shuffle:
        uris = [track.get("file") for track in tracks]
        (rng or random.Random()).shuffle(uris)
    elif order:
        decorated = []
        for track in tracks:
            stickers = sticker_table.get(track.get("file"))
            values = tuple(sort_value(track, stickers, clause) for clause in order)
            decorated.append((track, stickers, values))
        decorated.sort(key=cmp_to_key(build_comparator(order)))
        uris = [entry[0].get("file") for entry in decorated]
    else:
        uris = [track.get("file") for track in tracks]

    if limit is not None:
        uris = uris[:limit]
    return uris


def dedupe_tracks(tracks: Sequence[Mapping[str, Any]]) -> List[Mapping[str, Any]]:
    """Drop repeated URIs, keeping the first occurrence."""

    seen: Dict[str, bool] = {}
    unique = []
    for track in tracks:
        uri = track.get("file")
        if not uri or uri in seen:
            continue
        seen[uri] = True
        unique.append(track)
    return unique
