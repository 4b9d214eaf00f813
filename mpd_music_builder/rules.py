"""In-memory model of a dynamic playlist: filter tree, ordering, limit, schedule."""

from __future__ import annotations

import copy
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Iterator, List, Optional, Set, Tuple, Union

from .errors import ValidationError

# ----------------------------
# Operators
# ----------------------------
TAG_OPERATORS = (
    "equals",
    "does_not_equal",
    "contains",
    "does_not_contain",
    "starts_with",
    "greater_than",
    "less_than",
    "within",
)

STICKER_OPERATORS = (
    "equals",
    "does_not_equal",
    "greater_than",
    "less_than",
    "greater_or_equal",
    "less_or_equal",
    "contains",
    "starts_with",
    "exists",
    "not_exists",
    "within",
)

NUMERIC_OPERATORS = {
    "greater_than",
    "less_than",
    "greater_or_equal",
    "less_or_equal",
    "within",
}

VALUELESS_OPERATORS = {"exists", "not_exists"}

# Tag whose value is a timestamp MPD can filter with ``modified-since``.
LAST_MODIFIED_FIELD = "last-modified"

# Refresh cadences offered by the editor, in seconds.
NAMED_INTERVALS = OrderedDict(
    [
        ("hourly", 3600),
        ("daily", 86400),
        ("weekly", 86400 * 7),
        ("monthly", 86400 * 30),
        ("yearly", 86400 * 365),
    ]
)

ORDER_DIRECTIONS = ("asc", "desc")
STICKER_FIELD_PREFIX = "sticker:"


def _freeze_value(value):
    if isinstance(value, (list, tuple, set)):
        return tuple(value)
    return value


# ----------------------------
# Filter tree
# ----------------------------


@dataclass(frozen=True)
class TagQuery:
    field: str
    operator: str
    value: Any
    case_sensitive: bool = False

    def __post_init__(self):
        object.__setattr__(self, "value", _freeze_value(self.value))

    @property
    def normalized_field(self) -> str:
        return (self.field or "").strip().lower()


@dataclass(frozen=True)
class StickerCondition:
    key: str
    operator: str
    value: Any = None

    def __post_init__(self):
        object.__setattr__(self, "value", _freeze_value(self.value))


@dataclass(frozen=True)
class And:
    children: Tuple["FilterNode", ...]

    def __post_init__(self):
        object.__setattr__(self, "children", tuple(self.children))


@dataclass(frozen=True)
class Or:
    children: Tuple["FilterNode", ...]

    def __post_init__(self):
        object.__setattr__(self, "children", tuple(self.children))


@dataclass(frozen=True)
class Not:
    """Negation. Several children negate their conjunction."""

    children: Tuple["FilterNode", ...]

    def __post_init__(self):
        object.__setattr__(self, "children", tuple(self.children))


FilterNode = Union[TagQuery, StickerCondition, And, Or, Not]
LEAF_TYPES = (TagQuery, StickerCondition)
BRANCH_TYPES = (And, Or, Not)


def iter_leaves(node: Optional[FilterNode]) -> Iterator[Union[TagQuery, StickerCondition]]:
    if node is None:
        return
    if isinstance(node, LEAF_TYPES):
        yield node
        return
    for child in getattr(node, "children", ()):
        yield from iter_leaves(child)


def referenced_sticker_keys(node: Optional[FilterNode]) -> Set[str]:
    return {leaf.key for leaf in iter_leaves(node) if isinstance(leaf, StickerCondition)}


# ----------------------------
# Ordering and schedule
# ----------------------------


@dataclass(frozen=True)
class OrderClause:
    field: str
    direction: str = "asc"

    @property
    def descending(self) -> bool:
        return self.direction == "desc"

    @property
    def sticker_key(self) -> Optional[str]:
        if self.field.startswith(STICKER_FIELD_PREFIX):
            return self.field[len(STICKER_FIELD_PREFIX):]
        return None


@dataclass(frozen=True)
class ManualSchedule:
    pass


@dataclass(frozen=True)
class PeriodicSchedule:
    interval: float
    anchor: float = 0.0
    # Name the interval was given by (``daily``...), kept for lossless export.
    cadence: Optional[str] = None

    @classmethod
    def from_cadence(cls, cadence: str, anchor: float = 0.0) -> "PeriodicSchedule":
        key = str(cadence).strip().lower()
        if key not in NAMED_INTERVALS:
            raise ValidationError(f"Unknown refresh cadence '{cadence}'")
        return cls(interval=NAMED_INTERVALS[key], anchor=anchor, cadence=key)


MANUAL = ManualSchedule()
Schedule = Union[ManualSchedule, PeriodicSchedule]


# ----------------------------
# Playlist
# ----------------------------


@dataclass(frozen=True)
class EvaluationSnapshot:
    """Frozen view of a playlist taken when an evaluation cycle starts."""

    name: str
    target: str
    rules: Optional[FilterNode]
    order: Tuple[OrderClause, ...]
    shuffle: bool
    limit: Optional[int]
    schedule: Schedule
    snapshot: Optional[Tuple[str, ...]]
    needs_rewrite: bool
    materialize: bool = True

    @property
    def sticker_keys(self) -> Set[str]:
        keys = referenced_sticker_keys(self.rules)
        keys.update(clause.sticker_key for clause in self.order if clause.sticker_key)
        return keys


@dataclass
class DynamicPlaylist:
    name: str
    rules: Optional[FilterNode] = None
    order: List[OrderClause] = field(default_factory=list)
    shuffle: bool = False
    limit: Optional[int] = None
    schedule: Schedule = MANUAL
    description: str = ""
    target: Optional[str] = None
    materialize: bool = True
    # Runtime state, never part of the interchange document.
    snapshot: Optional[List[str]] = None
    last_refresh: Optional[float] = None
    needs_rewrite: bool = False

    @property
    def target_playlist(self) -> str:
        return self.target or self.name

    def validate(self) -> None:
        """Raise ``ValidationError`` when the rules are not well formed."""

        if not isinstance(self.name, str) or not self.name.strip():
            raise ValidationError("Playlist name must be a non-empty string")

        if self.rules is not None:
            _validate_node(self.rules, self.name, path="rules")

        if self.limit is not None:
            if isinstance(self.limit, bool) or not isinstance(self.limit, int):
                raise ValidationError(f"limit must be an integer, got {self.limit!r}", self.name)
            if self.limit <= 0:
                raise ValidationError(f"limit must be positive, got {self.limit}", self.name)

        if self.shuffle and self.order:
            raise ValidationError("Shuffle and explicit ordering are mutually exclusive", self.name)
        for clause in self.order:
            if not isinstance(clause, OrderClause):
                raise ValidationError(f"Invalid order clause {clause!r}", self.name)
            if not clause.field or not clause.field.strip():
                raise ValidationError("Order clause field must not be empty", self.name)
            if clause.sticker_key is not None and not clause.sticker_key.strip():
                raise ValidationError("Order clause sticker key must not be empty", self.name)
            if clause.direction not in ORDER_DIRECTIONS:
                raise ValidationError(
                    f"Order direction must be 'asc' or 'desc', got '{clause.direction}'",
                    self.name,
                )

        schedule = self.schedule
        if isinstance(schedule, PeriodicSchedule):
            if not _is_number(schedule.interval) or schedule.interval <= 0:
                raise ValidationError(
                    f"Schedule interval must be positive, got {schedule.interval!r}", self.name
                )
            if not _is_number(schedule.anchor) or schedule.anchor < 0:
                raise ValidationError(
                    f"Schedule anchor must be non-negative, got {schedule.anchor!r}", self.name
                )
        elif not isinstance(schedule, ManualSchedule):
            raise ValidationError(f"Unknown schedule {schedule!r}", self.name)

        if not isinstance(self.materialize, bool):
            raise ValidationError(
                f"materialize must be true or false, got {self.materialize!r}", self.name
            )

    def clone_for_evaluation(self) -> EvaluationSnapshot:
        return EvaluationSnapshot(
            name=self.name,
            target=self.target_playlist,
            rules=copy.deepcopy(self.rules),
            order=tuple(self.order),
            shuffle=bool(self.shuffle),
            limit=self.limit,
            schedule=self.schedule,
            snapshot=tuple(self.snapshot) if self.snapshot is not None else None,
            needs_rewrite=bool(self.needs_rewrite),
            materialize=self.materialize,
        )

    def with_rules_from(self, other: "DynamicPlaylist") -> "DynamicPlaylist":
        """Return ``other``'s rules carrying this playlist's runtime state."""

        updated = copy.deepcopy(other)
        updated.snapshot = list(self.snapshot) if self.snapshot is not None else None
        updated.last_refresh = self.last_refresh
        updated.needs_rewrite = self.needs_rewrite
        if updated.target_playlist != self.target_playlist:
            # The stored playlist changed; nothing has been written there yet.
            updated.snapshot = None
            updated.needs_rewrite = False
        elif updated.materialize and not self.materialize:
            # The cached result was never written to the stored playlist.
            updated.snapshot = None
            updated.needs_rewrite = False
        return updated


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _validate_node(node, playlist_name, path):
    if isinstance(node, TagQuery):
        if not isinstance(node.field, str) or not node.field.strip():
            raise ValidationError(f"{path}: tag field must be a non-empty string", playlist_name)
        if node.operator not in TAG_OPERATORS:
            raise ValidationError(
                f"{path}: unknown tag operator '{node.operator}'", playlist_name
            )
        if node.operator == "within" and node.normalized_field != LAST_MODIFIED_FIELD:
            raise ValidationError(
                f"{path}: 'within' is only valid for the '{LAST_MODIFIED_FIELD}' field",
                playlist_name,
            )
        _validate_value(node.operator, node.value, playlist_name, path)
        return

    if isinstance(node, StickerCondition):
        if not isinstance(node.key, str) or not node.key.strip():
            raise ValidationError(f"{path}: sticker key must be a non-empty string", playlist_name)
        if node.operator not in STICKER_OPERATORS:
            raise ValidationError(
                f"{path}: unknown sticker operator '{node.operator}'", playlist_name
            )
        if node.operator not in VALUELESS_OPERATORS:
            _validate_value(node.operator, node.value, playlist_name, path)
        return

    if isinstance(node, (And, Or)):
        kind = "AND" if isinstance(node, And) else "OR"
        if len(node.children) < 2:
            raise ValidationError(
                f"{path}: {kind} node needs at least two children", playlist_name
            )
    elif isinstance(node, Not):
        if len(node.children) < 1:
            raise ValidationError(f"{path}: NOT node needs a child", playlist_name)
    else:
        raise ValidationError(f"{path}: unknown filter node {node!r}", playlist_name)

    for index, child in enumerate(node.children):
        _validate_node(child, playlist_name, f"{path}.{index}")


def _validate_value(operator, value, playlist_name, path):
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"{path}: operator '{operator}' needs a value", playlist_name)
    if isinstance(value, tuple):
        raise ValidationError(f"{path}: expected a single value, got a list", playlist_name)
    if operator in NUMERIC_OPERATORS:
        try:
            float(value)
        except (TypeError, ValueError):
            raise ValidationError(
                f"{path}: operator '{operator}' needs a numeric value, got {value!r}",
                playlist_name,
            )
