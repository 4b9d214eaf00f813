"""Compile a filter tree into MPD filter expressions plus a residual predicate.

Only tag conditions that are plain conjuncts of the root are sent to the
server. Everything else (negations, mixed disjunctions, sticker conditions)
is left to the residual predicate, which always re-evaluates the *whole*
tree client-side. Remote queries therefore only narrow the candidate set and
never decide membership on their own.
"""

from __future__ import annotations

import datetime
import logging
import re
import time
import unicodedata
from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple

from .errors import UnsupportedFieldError
from .logging_setup import get_active_logger
from .rules import (
    LAST_MODIFIED_FIELD,
    And,
    FilterNode,
    Not,
    Or,
    StickerCondition,
    TagQuery,
    referenced_sticker_keys,
)
from .stickers import ABSENT, sticker_value

# Tag names MPD understands out of the box (``tagtypes`` on a stock server).
DEFAULT_TAG_TYPES = frozenset(
    {
        "artist",
        "artistsort",
        "album",
        "albumsort",
        "albumartist",
        "albumartistsort",
        "title",
        "titlesort",
        "track",
        "name",
        "genre",
        "mood",
        "date",
        "originaldate",
        "composer",
        "composersort",
        "performer",
        "conductor",
        "work",
        "ensemble",
        "movement",
        "movementnumber",
        "location",
        "grouping",
        "comment",
        "disc",
        "label",
        "musicbrainz_artistid",
        "musicbrainz_albumid",
        "musicbrainz_albumartistid",
        "musicbrainz_trackid",
        "musicbrainz_releasetrackid",
        "musicbrainz_workid",
    }
)

# Pseudo tags accepted by MPD filters regardless of ``tagtypes``.
SPECIAL_FIELDS = frozenset({"file", "any", LAST_MODIFIED_FIELD})

# Song keys that are not tags and are skipped when matching ``any``.
_NON_TAG_KEYS = frozenset(
    {"file", "last-modified", "added", "duration", "time", "format", "range", "pos", "id"}
)

BASE_PUSHABLE_OPERATORS = frozenset({"equals", "within"})
EXTENDED_PUSHABLE_OPERATORS = frozenset({"equals", "within", "contains", "starts_with"})

_REMOTE_OPERATOR_SYNTAX = {
    "equals": "==",
    "contains": "contains",
    "starts_with": "starts_with",
}

_LEADING_NUMBER = re.compile(r"^\s*(-?\d+(?:\.\d+)?)")

Predicate = Callable[[Mapping[str, Any], Optional[Mapping[str, Any]]], bool]


def pushable_operators_for_version(version: Optional[Tuple[int, ...]]) -> FrozenSet[str]:
    """Return the tag operators the server can evaluate in a filter expression."""

    # ``contains`` and ``starts_with`` filter operators arrived in MPD 0.24.
    if version and tuple(version[:2]) >= (0, 24):
        return EXTENDED_PUSHABLE_OPERATORS
    return BASE_PUSHABLE_OPERATORS


@dataclass(frozen=True)
class RemoteQuery:
    expression: str
    case_sensitive: bool

    @property
    def command(self) -> str:
        # ``find`` matches exactly; ``search`` ignores case.
        return "find" if self.case_sensitive else "search"


@dataclass(frozen=True)
class CompiledPlan:
    remote_queries: Tuple[RemoteQuery, ...]
    residual: Predicate
    sticker_keys: FrozenSet[str]
    unsupported: Tuple[UnsupportedFieldError, ...]
    matches_nothing: bool
    evaluated_at: float

    @property
    def full_listing(self) -> bool:
        return not self.remote_queries and not self.matches_nothing

    @property
    def needs_stickers(self) -> bool:
        return bool(self.sticker_keys)


# ----------------------------
# Value helpers
# ----------------------------


def _fold(value: Any, case_sensitive: bool) -> str:
    text = unicodedata.normalize("NFC", str(value))
    return text if case_sensitive else text.casefold()


def coerce_number(value: Any) -> Optional[float]:
    if value is None or value is ABSENT:
        return None
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    match = _LEADING_NUMBER.match(str(value))
    if not match:
        return None
    try:
        return float(match.group(1))
    except ValueError:
        return None


def _strict_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        return float(str(value).strip())
    except (TypeError, ValueError):
        return None


def parse_timestamp(value: Any) -> Optional[float]:
    """Parse MPD's ISO-8601 ``last-modified`` or a unix timestamp."""

    if value is None or value is ABSENT:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    text = str(value).strip()
    if not text:
        return None
    try:
        return float(text)
    except ValueError:
        pass
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed.timestamp()


def tag_values(track: Mapping[str, Any], field: str) -> List[Any]:
    """Return every value of ``field`` on a song dict returned by MPD."""

    field = field.strip().lower()
    if field == "any":
        values: List[Any] = []
        for key, raw in track.items():
            if key in _NON_TAG_KEYS:
                continue
            values.extend(raw if isinstance(raw, list) else [raw])
        return values

    raw = track.get(field)
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        return list(raw)
    return [raw]


# ----------------------------
# Leaf evaluation
# ----------------------------


def check_tag_condition(values: Sequence[Any], operator: str, expected: Any, case_sensitive=False, now=None) -> bool:
    """Compare the values of one tag using the given operator."""

    if operator == "within":
        if now is None:
            now = time.time()
        cutoff = now - float(expected)
        for candidate in values:
            stamp = parse_timestamp(candidate)
            if stamp is not None and stamp >= cutoff:
                return True
        return False

    if operator in {"greater_than", "less_than"}:
        expected_number = coerce_number(expected)
        if expected_number is None:
            return False
        for candidate in values:
            number = coerce_number(candidate)
            if number is None:
                continue
            if operator == "greater_than" and number > expected_number:
                return True
            if operator == "less_than" and number < expected_number:
                return True
        return False

    expected_folded = _fold(expected, case_sensitive)
    folded = [_fold(candidate, case_sensitive) for candidate in values]

    if operator == "equals":
        return expected_folded in folded
    if operator == "does_not_equal":
        # Negative operators only succeed when *no* value matches.
        return expected_folded not in folded
    if operator == "contains":
        return any(expected_folded in candidate for candidate in folded)
    if operator == "does_not_contain":
        return all(expected_folded not in candidate for candidate in folded)
    if operator == "starts_with":
        return any(candidate.startswith(expected_folded) for candidate in folded)

    get_active_logger().warning(f"Unknown tag operator: {operator}")
    return False


def check_sticker_condition(stored: Any, operator: str, expected: Any, now=None) -> bool:
    """Compare a sticker value; ``ABSENT`` only satisfies negative operators."""

    if stored is ABSENT or stored is None:
        return operator in {"not_exists", "does_not_equal"}

    if operator == "exists":
        return True
    if operator == "not_exists":
        return False

    if operator == "within":
        stamp = parse_timestamp(stored)
        if stamp is None:
            return False
        if now is None:
            now = time.time()
        return stamp >= now - float(expected)

    if operator in {"equals", "does_not_equal"}:
        stored_number = _strict_number(stored)
        expected_number = _strict_number(expected)
        if stored_number is not None and expected_number is not None:
            equal = stored_number == expected_number
        else:
            equal = str(stored) == str(expected)
        return equal if operator == "equals" else not equal

    if operator in {"greater_than", "less_than", "greater_or_equal", "less_or_equal"}:
        stored_number = coerce_number(stored)
        expected_number = coerce_number(expected)
        if stored_number is None or expected_number is None:
            return False
        if operator == "greater_than":
            return stored_number > expected_number
        if operator == "less_than":
            return stored_number < expected_number
        if operator == "greater_or_equal":
            return stored_number >= expected_number
        return stored_number <= expected_number

    if operator == "contains":
        return str(expected) in str(stored)
    if operator == "starts_with":
        return str(stored).startswith(str(expected))

    get_active_logger().warning(f"Unknown sticker operator: {operator}")
    return False


# ----------------------------
# Compilation
# ----------------------------


class _Compiler:
    def __init__(self, schema: FrozenSet[str], pushable: FrozenSet[str], now: float):
        self.schema = schema
        self.pushable = pushable
        self.now = now
        self.unsupported: Dict[str, UnsupportedFieldError] = {}

    def is_supported(self, leaf: TagQuery) -> bool:
        field = leaf.normalized_field
        if field in SPECIAL_FIELDS or field in self.schema:
            return True
        if field not in self.unsupported:
            self.unsupported[field] = UnsupportedFieldError(leaf.field)
        return False

    def predicate(self, node: FilterNode) -> Predicate:
        now = self.now

        if isinstance(node, TagQuery):
            if not self.is_supported(node):
                return lambda track, stickers: False
            field, operator, expected, case_sensitive = (
                node.normalized_field,
                node.operator,
                node.value,
                node.case_sensitive,
            )
            return lambda track, stickers: check_tag_condition(
                tag_values(track, field), operator, expected, case_sensitive, now
            )

        if isinstance(node, StickerCondition):
            key, operator, expected = node.key, node.operator, node.value
            return lambda track, stickers: check_sticker_condition(
                sticker_value(stickers, key), operator, expected, now
            )

        children = [self.predicate(child) for child in node.children]
        if isinstance(node, And):
            return lambda track, stickers: all(child(track, stickers) for child in children)
        if isinstance(node, Or):
            return lambda track, stickers: any(child(track, stickers) for child in children)
        if isinstance(node, Not):
            return lambda track, stickers: not all(child(track, stickers) for child in children)
        raise TypeError(f"Unknown filter node {node!r}")

    def is_pushable(self, node: FilterNode) -> bool:
        return (
            isinstance(node, TagQuery)
            and node.operator in self.pushable
            and self.is_supported(node)
        )

    def remote_term(self, leaf: TagQuery) -> str:
        if leaf.operator == "within":
            cutoff = int(self.now - float(leaf.value))
            return f'(modified-since "{cutoff}")'
        syntax = _REMOTE_OPERATOR_SYNTAX[leaf.operator]
        return f'({leaf.normalized_field} {syntax} "{escape_filter_value(leaf.value)}")'

    def conjunction_query(self, leaves: Sequence[TagQuery]) -> Optional[RemoteQuery]:
        if not leaves:
            return None
        terms = [self.remote_term(leaf) for leaf in leaves]
        expression = terms[0] if len(terms) == 1 else "(" + " AND ".join(terms) + ")"
        # ``within`` has no case; every other pushed leaf must agree on ``find``.
        case_sensitive = all(
            leaf.case_sensitive for leaf in leaves if leaf.operator != "within"
        )
        return RemoteQuery(expression=expression, case_sensitive=case_sensitive)


def escape_filter_value(value: Any) -> str:
    return str(value).replace("\\", "\\\\").replace('"', '\\"').replace("'", "\\'")


def flatten_conjuncts(node: FilterNode) -> List[FilterNode]:
    if isinstance(node, And):
        flattened: List[FilterNode] = []
        for child in node.children:
            flattened.extend(flatten_conjuncts(child))
        return flattened
    return [node]


def _is_unsupported_leaf(compiler: _Compiler, node: FilterNode) -> bool:
    return isinstance(node, TagQuery) and not compiler.is_supported(node)


def compile_rules(
    rules: Optional[FilterNode],
    tag_types: Optional[Iterable[str]] = None,
    pushable_operators: Optional[Iterable[str]] = None,
    now: Optional[float] = None,
) -> CompiledPlan:
    """Translate a validated filter tree into a ``CompiledPlan``."""

    log = get_active_logger()
    evaluated_at = time.time() if now is None else float(now)
    schema = frozenset(t.strip().lower() for t in tag_types) if tag_types is not None else DEFAULT_TAG_TYPES
    pushable = (
        frozenset(pushable_operators) if pushable_operators is not None else BASE_PUSHABLE_OPERATORS
    )
    compiler = _Compiler(schema, pushable, evaluated_at)

    if rules is None:
        return CompiledPlan(
            remote_queries=(),
            residual=lambda track, stickers: True,
            sticker_keys=frozenset(),
            unsupported=(),
            matches_nothing=False,
            evaluated_at=evaluated_at,
        )

    residual = compiler.predicate(rules)
    queries: List[RemoteQuery] = []
    matches_nothing = False

    if isinstance(rules, Or):
        branch_queries: List[RemoteQuery] = []
        all_branches_pushable = True
        for branch in rules.children:
            conjuncts = flatten_conjuncts(branch)
            if any(_is_unsupported_leaf(compiler, c) for c in conjuncts):
                # This branch can never match; it contributes no query.
                continue
            if not all(compiler.is_pushable(c) for c in conjuncts):
                all_branches_pushable = False
                break
            branch_queries.append(compiler.conjunction_query(conjuncts))
        if all_branches_pushable:
            if branch_queries:
                queries = _dedupe_queries(branch_queries)
            else:
                matches_nothing = True
    else:
        conjuncts = flatten_conjuncts(rules)
        if any(_is_unsupported_leaf(compiler, c) for c in conjuncts):
            matches_nothing = True
        else:
            pushed = [c for c in conjuncts if compiler.is_pushable(c)]
            query = compiler.conjunction_query(pushed)
            if query is not None:
                queries = [query]

    unsupported = tuple(compiler.unsupported.values())
    for error in unsupported:
        log.warning(f"{error}; treating the condition as always false")

    plan = CompiledPlan(
        remote_queries=tuple(queries),
        residual=residual,
        sticker_keys=frozenset(referenced_sticker_keys(rules)),
        unsupported=unsupported,
        matches_nothing=matches_nothing,
        evaluated_at=evaluated_at,
    )

    if log.isEnabledFor(logging.DEBUG):
        if plan.matches_nothing:
            log.debug("Compiled plan matches nothing; no remote query needed")
        elif plan.full_listing:
            log.debug("No server-side filter applies; a full catalogue listing is required")
        for idx, query in enumerate(plan.remote_queries, start=1):
            log.debug(
                "Server-side filter query %d/%d (%s): %s",
                idx,
                len(plan.remote_queries),
                query.command,
                query.expression,
            )
    return plan


def _dedupe_queries(queries: Sequence[RemoteQuery]) -> List[RemoteQuery]:
    seen = set()
    unique: List[RemoteQuery] = []
    for query in queries:
        if query in seen:
            continue
        seen.add(query)
        unique.append(query)
    return unique
