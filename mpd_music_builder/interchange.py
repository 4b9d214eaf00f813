"""Export and import dynamic playlist definitions as JSON documents.

Documents carry only the rules (filter tree, ordering, limit, schedule);
runtime state such as the materialized snapshot never leaves the store.
Exported documents are canonical: flags appear only when they differ from
their default, and `schedule`, each order `direction` and the schedule
`anchor` are always written. The importer accepts exactly that form, so
exporting any imported document reproduces it.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from .errors import PlaylistImportError, ValidationError
from .logging_setup import logger
from .rules import (
    MANUAL,
    NAMED_INTERVALS,
    ORDER_DIRECTIONS,
    And,
    DynamicPlaylist,
    Not,
    Or,
    OrderClause,
    PeriodicSchedule,
    StickerCondition,
    TagQuery,
)

INTERCHANGE_SUFFIX = ".edp.json"

DOCUMENT_KEYS = (
    "name",
    "description",
    "rules",
    "order",
    "limit",
    "schedule",
    "target",
    "materialize",
)
OPTIONAL_KEYS = ("description", "rules", "order", "limit", "target", "materialize")

_BRANCH_TYPES = {"and": And, "or": Or, "not": Not}


# ----------------------------
# Export
# ----------------------------


def rules_to_document(node) -> Dict[str, Any]:
    if isinstance(node, TagQuery):
        doc: Dict[str, Any] = {
            "type": "tag",
            "field": node.field,
            "operator": node.operator,
            "value": node.value,
        }
        if node.case_sensitive:
            doc["case_sensitive"] = True
        return doc

    if isinstance(node, StickerCondition):
        doc = {"type": "sticker", "key": node.key, "operator": node.operator}
        if node.value is not None:
            doc["value"] = node.value
        return doc

    for type_name, node_type in _BRANCH_TYPES.items():
        if isinstance(node, node_type):
            return {
                "type": type_name,
                "children": [rules_to_document(child) for child in node.children],
            }

    raise TypeError(f"Unknown filter node {node!r}")


def schedule_to_document(schedule) -> Any:
    if isinstance(schedule, PeriodicSchedule):
        return {"interval": schedule.cadence or schedule.interval, "anchor": schedule.anchor}
    return "manual"


def _order_to_document(clause: OrderClause) -> Dict[str, Any]:
    return {"field": clause.field, "direction": clause.direction}


def export_playlist(playlist: DynamicPlaylist, include_name: bool = True) -> Dict[str, Any]:
    """Return the canonical interchange document for ``playlist``."""

    doc: Dict[str, Any] = {}
    if include_name:
        doc["name"] = playlist.name
    if playlist.description:
        doc["description"] = playlist.description
    if playlist.rules is not None:
        doc["rules"] = rules_to_document(playlist.rules)
    if playlist.shuffle:
        doc["order"] = {"shuffle": True}
    elif playlist.order:
        doc["order"] = [_order_to_document(clause) for clause in playlist.order]
    if playlist.limit is not None:
        doc["limit"] = playlist.limit
    doc["schedule"] = schedule_to_document(playlist.schedule)
    if playlist.target:
        doc["target"] = playlist.target
    if not playlist.materialize:
        doc["materialize"] = False
    return doc


# ----------------------------
# Import
# ----------------------------


class _DocumentReader:
    """Collects every structural problem in a document before failing.

    Only the canonical spelling of each value is accepted: defaults that
    export omits must be omitted, and values export always writes must be
    present.
    """

    def __init__(self):
        self.problems: List[str] = []

    def problem(self, message: str) -> None:
        self.problems.append(message)

    def rules(self, raw: Any, path: str):
        if not isinstance(raw, Mapping):
            self.problem(f"{path}: expected an object, got {type(raw).__name__}")
            return None

        node_type = raw.get("type")

        if node_type == "tag":
            self.unknown_keys(raw, {"type", "field", "operator", "value", "case_sensitive"}, path)
            case_sensitive = raw.get("case_sensitive", False)
            if "case_sensitive" in raw and case_sensitive is not True:
                self.problem(
                    f"{path}.case_sensitive: only true is allowed; "
                    "omit the key for case-insensitive matching"
                )
                case_sensitive = False
            return TagQuery(
                field=raw.get("field"),
                operator=raw.get("operator"),
                value=raw.get("value"),
                case_sensitive=case_sensitive,
            )

        if node_type == "sticker":
            self.unknown_keys(raw, {"type", "key", "operator", "value"}, path)
            if "value" in raw and raw["value"] is None:
                self.problem(f"{path}.value: null is not allowed; omit the key instead")
            return StickerCondition(
                key=raw.get("key"), operator=raw.get("operator"), value=raw.get("value")
            )

        if node_type in _BRANCH_TYPES:
            self.unknown_keys(raw, {"type", "children"}, path)
            children_raw = raw.get("children")
            if not isinstance(children_raw, list):
                self.problem(f"{path}.children: expected a list")
                return None
            children = [
                self.rules(child, f"{path}.children[{index}]")
                for index, child in enumerate(children_raw)
            ]
            if any(child is None for child in children):
                return None
            return _BRANCH_TYPES[node_type](children)

        self.problem(f"{path}.type: unknown filter node type {node_type!r}")
        return None

    def order(self, raw: Any):
        if isinstance(raw, Mapping):
            self.unknown_keys(raw, {"shuffle"}, "order")
            if raw.get("shuffle") is not True:
                self.problem("order.shuffle: only true is allowed; omit 'order' for catalogue order")
                return [], False
            return [], True
        if not isinstance(raw, list):
            self.problem("order: expected a list of clauses or {\"shuffle\": true}")
            return [], False
        if not raw:
            self.problem("order: expected at least one clause; omit 'order' for catalogue order")
            return [], False

        clauses = []
        for index, entry in enumerate(raw):
            if not isinstance(entry, Mapping) or not isinstance(entry.get("field"), str):
                self.problem(f"order[{index}]: expected an object with a 'field'")
                continue
            self.unknown_keys(entry, {"field", "direction"}, f"order[{index}]")
            direction = entry.get("direction")
            if direction not in ORDER_DIRECTIONS:
                self.problem(
                    f"order[{index}].direction: expected one of {', '.join(ORDER_DIRECTIONS)}, "
                    f"got {direction!r}"
                )
                continue
            clauses.append(OrderClause(field=entry["field"], direction=direction))
        return clauses, False

    def schedule(self, raw: Any):
        if raw == "manual":
            return MANUAL
        if not isinstance(raw, Mapping):
            self.problem(
                "schedule: expected \"manual\" or an object with 'interval' and 'anchor', "
                f"got {raw!r}"
            )
            return MANUAL
        self.unknown_keys(raw, {"interval", "anchor"}, "schedule")

        interval = raw.get("interval")
        anchor = raw.get("anchor")
        if isinstance(anchor, bool) or not isinstance(anchor, (int, float)):
            self.problem(f"schedule.anchor: expected a unix timestamp, got {anchor!r}")
            anchor = 0
        if isinstance(interval, str):
            if interval not in NAMED_INTERVALS:
                self.problem(
                    f"schedule.interval: unknown cadence '{interval}' "
                    f"(expected one of {', '.join(NAMED_INTERVALS)} or a number of seconds)"
                )
                return MANUAL
            return PeriodicSchedule.from_cadence(interval, anchor)
        if isinstance(interval, bool) or not isinstance(interval, (int, float)):
            self.problem(f"schedule.interval: expected seconds or a cadence, got {interval!r}")
            return MANUAL
        return PeriodicSchedule(interval=interval, anchor=anchor)

    def unknown_keys(self, raw: Mapping, allowed, path: str) -> None:
        for key in raw:
            if key not in allowed:
                self.problem(f"{path}: unexpected key '{key}'")


def import_playlist(doc: Any, name: Optional[str] = None) -> DynamicPlaylist:
    """Build and validate a playlist from an interchange document.

    ``name`` supplies the playlist name for documents stored keyed by name.
    Any problem rejects the whole document with ``PlaylistImportError``.
    """

    if not isinstance(doc, Mapping):
        raise PlaylistImportError("Playlist document must be a JSON object")

    reader = _DocumentReader()
    reader.unknown_keys(doc, DOCUMENT_KEYS, "document")
    for key in OPTIONAL_KEYS:
        if key in doc and doc[key] is None:
            reader.problem(f"{key}: null is not allowed; omit the key instead")

    playlist_name = doc.get("name", name)
    if not isinstance(playlist_name, str):
        reader.problem("name: expected a string")
        playlist_name = ""

    description = doc.get("description", "")
    if "description" in doc and (not isinstance(description, str) or not description):
        reader.problem("description: expected a non-empty string; omit the key instead")
        description = ""

    rules = None
    if doc.get("rules") is not None:
        rules = reader.rules(doc["rules"], "rules")

    order, shuffle = [], False
    if doc.get("order") is not None:
        order, shuffle = reader.order(doc["order"])

    if "schedule" not in doc:
        reader.problem("schedule: required (\"manual\" or an object with 'interval' and 'anchor')")
        schedule = MANUAL
    else:
        schedule = reader.schedule(doc["schedule"])

    target = doc.get("target")
    if target is not None and (not isinstance(target, str) or not target.strip()):
        reader.problem("target: expected a non-empty string")
        target = None

    materialize = True
    if "materialize" in doc and doc["materialize"] is not None:
        if doc["materialize"] is not False:
            reader.problem("materialize: only false is allowed; omit the key to materialize")
        else:
            materialize = False

    label = playlist_name or name or "<unnamed>"
    if reader.problems:
        raise PlaylistImportError(
            f"Playlist '{label}' could not be imported: {'; '.join(reader.problems)}",
            reader.problems,
        )

    playlist = DynamicPlaylist(
        name=playlist_name,
        rules=rules,
        order=order,
        shuffle=shuffle,
        limit=doc.get("limit"),
        schedule=schedule,
        description=description,
        target=target,
        materialize=materialize,
    )
    try:
        playlist.validate()
    except ValidationError as exc:
        raise PlaylistImportError(
            f"Playlist '{label}' could not be imported: {exc}", [str(exc)]
        ) from exc
    return playlist


# ----------------------------
# Files
# ----------------------------


def interchange_filename(playlist_name: str) -> str:
    return f"{playlist_name}{INTERCHANGE_SUFFIX}"


def export_to_file(playlist: DynamicPlaylist, path) -> Path:
    path = Path(path)
    if path.parent and not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        json.dump(export_playlist(playlist), handle, indent=2, ensure_ascii=False)
        handle.write("\n")
    logger.info(f"Exported playlist '{playlist.name}' to {path}")
    return path


def import_from_file(path) -> DynamicPlaylist:
    path = Path(path)
    try:
        with path.open("r", encoding="utf-8") as handle:
            doc = json.load(handle)
    except OSError as exc:
        raise PlaylistImportError(f"Unable to read '{path}': {exc}") from exc
    except json.JSONDecodeError as exc:
        raise PlaylistImportError(f"'{path}' is not valid JSON: {exc}") from exc
    return import_playlist(doc)
