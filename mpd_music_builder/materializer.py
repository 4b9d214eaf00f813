"""Write evaluated playlists to MPD stored playlists as minimal edit batches."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from difflib import SequenceMatcher
from typing import Any, List, Optional, Sequence, Tuple

from .errors import PartialBatchError, PlaylistBuilderError
from .logging_setup import get_active_logger

# ``playlistadd`` with a position argument arrived in MPD 0.23.3.
POSITIONAL_ADD_VERSION = (0, 23, 3)

UNCHANGED = "unchanged"
INCREMENTAL = "incremental"
REWRITE = "rewrite"

Command = Tuple[Any, ...]


def supports_positional_add(version: Optional[Sequence[int]]) -> bool:
    if not version:
        return False
    return tuple(version[:3]) >= POSITIONAL_ADD_VERSION


def compute_edit(
    target: str,
    previous: Sequence[str],
    new: Sequence[str],
    supports_positional: bool = True,
) -> Optional[List[Command]]:
    """Return the ``playlistdelete``/``playlistadd`` commands turning
    ``previous`` into ``new``.

    Opcodes are applied back-to-front so every position refers to the list as
    it was before the edit. Returns ``None`` when an incremental edit is not
    worthwhile (longer than the new list) or not possible (a non-tail insert
    on a server without positional ``playlistadd``).
    """

    previous = list(previous)
    new = list(new)
    matcher = SequenceMatcher(a=previous, b=new, autojunk=False)
    commands: List[Command] = []
    length = len(previous)

    for tag, i1, i2, j1, j2 in reversed(matcher.get_opcodes()):
        if tag == "equal":
            continue
        if tag in ("delete", "replace"):
            for position in range(i2 - 1, i1 - 1, -1):
                commands.append(("playlistdelete", target, position))
                length -= 1
        if tag in ("insert", "replace"):
            for offset, uri in enumerate(new[j1:j2]):
                position = i1 + offset
                if position == length:
                    commands.append(("playlistadd", target, uri))
                elif supports_positional:
                    commands.append(("playlistadd", target, uri, position))
                else:
                    return None
                length += 1

    if len(commands) > len(new):
        return None
    return commands


def build_rewrite(
    target: str,
    new: Sequence[str],
    existing_playlists: Sequence[str],
    staging_suffix: str,
) -> List[Command]:
    """Build a staged full rewrite: fill a staging playlist, then swap it in."""

    existing = set(existing_playlists)
    if not new:
        return [("playlistclear", target)] if target in existing else []

    staging = f"{target}{staging_suffix}"
    commands: List[Command] = []
    if staging in existing:
        # Leftover from an interrupted rewrite.
        commands.append(("rm", staging))
    commands.extend(("playlistadd", staging, uri) for uri in new)
    if target in existing:
        commands.append(("rm", target))
    commands.append(("rename", staging, target))
    return commands


@dataclass
class MaterializeResult:
    target: str
    strategy: str
    uris: Tuple[str, ...]
    commands: List[Command] = field(default_factory=list)
    duration: float = 0.0

    @property
    def changed(self) -> bool:
        return bool(self.commands)


class Materializer:
    def __init__(self, connection, staging_suffix: str = ".mmb-staging") -> None:
        self.connection = connection
        self.staging_suffix = staging_suffix

    def plan(self, snapshot, new_uris: Sequence[str]) -> MaterializeResult:
        """Work out the command batch for ``snapshot`` without sending it."""

        log = get_active_logger()
        target = snapshot.target
        new = tuple(new_uris)

        if snapshot.needs_rewrite:
            log.info(f"Playlist '{target}' is flagged for a full rewrite after a failed update")
            return self._rewrite(target, new)

        previous = snapshot.snapshot
        if previous is None:
            # First materialization: compare against whatever the server holds.
            existing = self.connection.list_playlists()
            if target in existing and tuple(self.connection.list_playlist(target)) == new:
                return MaterializeResult(target=target, strategy=UNCHANGED, uris=new)
            return self._rewrite(target, new, existing)

        if tuple(previous) == new:
            return MaterializeResult(target=target, strategy=UNCHANGED, uris=new)

        positional = supports_positional_add(self.connection.server_version)
        commands = compute_edit(target, previous, new, supports_positional=positional)
        if commands is None:
            log.debug("Incremental edit for '%s' not worthwhile; rewriting", target)
            return self._rewrite(target, new)
        return MaterializeResult(target=target, strategy=INCREMENTAL, uris=new, commands=commands)

    def _rewrite(self, target, new, existing=None) -> MaterializeResult:
        if existing is None:
            existing = self.connection.list_playlists()
        commands = build_rewrite(target, new, existing, self.staging_suffix)
        return MaterializeResult(target=target, strategy=REWRITE, uris=new, commands=commands)

    def _restore(self, snapshot) -> bool:
        """Rewrite the target back to the previous snapshot after a rejected edit."""

        log = get_active_logger()
        target = snapshot.target
        try:
            existing = self.connection.list_playlists()
            commands = build_rewrite(target, snapshot.snapshot, existing, self.staging_suffix)
            self.connection.execute_batch(commands)
        except PlaylistBuilderError as exc:
            log.error(f"Unable to restore '{target}' to its previous contents: {exc}")
            return False
        log.warning(
            f"Restored '{target}' to its previous {len(snapshot.snapshot)} track(s) "
            "after a rejected edit"
        )
        return True

    def materialize(self, snapshot, new_uris: Sequence[str]) -> MaterializeResult:
        """Send the minimal batch making the stored playlist equal ``new_uris``.

        Raises ``PartialBatchError`` if the server rejects part of the batch.
        A rejected incremental edit is undone by restoring the previous
        snapshot through the staging playlist before the error propagates.
        """

        log = get_active_logger()
        started = time.perf_counter()
        result = self.plan(snapshot, new_uris)

        if result.changed:
            try:
                self.connection.execute_batch(result.commands)
            except PartialBatchError as exc:
                if result.strategy == INCREMENTAL:
                    exc.restored = self._restore(snapshot)
                raise
            log.debug(
                "Applied %d command(s) to '%s' (%s)",
                len(result.commands),
                result.target,
                result.strategy,
            )
        else:
            log.debug("Stored playlist '%s' already up to date", result.target)

        result.duration = time.perf_counter() - started
        return result
