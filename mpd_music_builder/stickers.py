"""Resolve sticker conditions against MPD's sticker database."""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Iterable, Mapping, Optional

from .logging_setup import get_active_logger


class _Absent:
    """Marker for a sticker that is not set on a track."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "ABSENT"

    def __bool__(self):
        return False


ABSENT = _Absent()

StickerTable = Dict[str, Dict[str, str]]


def sticker_value(stickers: Optional[Mapping[str, Any]], key: str) -> Any:
    if not stickers:
        return ABSENT
    return stickers.get(key, ABSENT)


def _parse_sticker_entry(entry: Any, key: str):
    """Return ``(uri, value)`` from one ``sticker find`` result entry."""

    if not isinstance(entry, dict):
        return None, None
    uri = entry.get("file")
    raw = entry.get("sticker")
    if isinstance(raw, list):
        raw = raw[0] if raw else None
    if raw is None:
        return uri, None
    raw = str(raw)
    prefix = f"{key}="
    if raw.startswith(prefix):
        raw = raw[len(prefix):]
    return uri, raw


def resolve_stickers(connection, keys: Iterable[str]) -> StickerTable:
    """Fetch every value of each sticker key in a single batched round trip.

    The result maps track URI to ``{key: value}``; tracks missing a key simply
    have no entry for it (read back as ``ABSENT``).
    """

    log = get_active_logger()
    distinct = sorted({key for key in keys if key})
    table: StickerTable = {}
    if not distinct:
        return table

    started = time.perf_counter()
    per_key_results = connection.find_stickers(distinct)

    for key, entries in zip(distinct, per_key_results):
        count = 0
        for entry in entries or []:
            uri, value = _parse_sticker_entry(entry, key)
            if not uri or value is None:
                continue
            table.setdefault(uri, {})[key] = value
            count += 1
        if log.isEnabledFor(logging.DEBUG):
            log.debug("Sticker '%s' is set on %d track(s)", key, count)

    log.debug(
        "Resolved %d sticker key(s) for %d track(s) in %.2fs",
        len(distinct),
        len(table),
        time.perf_counter() - started,
    )
    return table
