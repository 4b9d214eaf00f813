"""Evaluation cycle: compile, fetch, filter, order and materialize one playlist."""

from __future__ import annotations

import random
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from tqdm import tqdm

from .compiler import compile_rules, pushable_operators_for_version
from .errors import PartialBatchError, PlaylistBuilderError, RemoteConnectionError
from .logging_setup import logger, playlist_logging
from .materializer import Materializer
from .ordering import dedupe_tracks, order_tracks
from .remote import MPDConnection
from .stickers import resolve_stickers
from .store import PlaylistStore

# Strategy reported for playlists whose result is only cached locally.
CACHED = "cached"


@dataclass
class CycleResult:
    name: str
    target: str
    track_count: int
    strategy: str
    command_count: int
    timings: Dict[str, float] = field(default_factory=dict)
    unsupported_fields: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "target": self.target,
            "tracks": self.track_count,
            "strategy": self.strategy,
            "commands": self.command_count,
            "timings": {key: round(value, 3) for key, value in self.timings.items()},
            "unsupported_fields": list(self.unsupported_fields),
        }


class PlaylistBuilder:
    """Runs evaluation cycles against one MPD connection and a playlist store."""

    def __init__(
        self,
        connection: MPDConnection,
        store: PlaylistStore,
        staging_suffix: str = ".mmb-staging",
        show_progress: bool = True,
        playlist_log_dir=None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.connection = connection
        self.store = store
        self.materializer = Materializer(connection, staging_suffix=staging_suffix)
        self.show_progress = show_progress
        self.playlist_log_dir = playlist_log_dir
        self.rng = rng
        self.clock = clock

    @classmethod
    def from_settings(cls, settings, connection=None, store=None) -> "PlaylistBuilder":
        return cls(
            connection or MPDConnection.from_settings(settings),
            store or PlaylistStore.from_settings(settings).load(),
            staging_suffix=settings.staging_suffix,
            show_progress=settings.show_progress,
            playlist_log_dir=settings.playlist_log_dir,
        )

    def run_cycle(self, name: str) -> CycleResult:
        try:
            playlist = self.store.get(name)
        except KeyError:
            raise PlaylistBuilderError(f"Unknown playlist '{name}'") from None

        snapshot = playlist.clone_for_evaluation()
        with playlist_logging(name, self.playlist_log_dir) as log:
            return self._evaluate(snapshot, log)

    def queue_playlist(self, name: str, replace: bool = False, play: Optional[bool] = None) -> int:
        """Send the cached result of ``name`` to the MPD play queue.

        ``replace`` clears the queue first; ``play`` (defaulting to ``replace``)
        starts playback at the first queued track. Returns the track count.
        """

        try:
            playlist = self.store.get(name)
        except KeyError:
            raise PlaylistBuilderError(f"Unknown playlist '{name}'") from None
        if playlist.snapshot is None:
            raise PlaylistBuilderError(f"Playlist '{name}' has no cached result yet; refresh it first")

        if play is None:
            play = replace
        count = self.connection.queue_uris(playlist.snapshot, replace=replace, play=play)
        action = "Replaced the queue with" if replace else "Appended"
        logger.info(f"{action} {count} track(s) from '{name}'")
        return count

    def _evaluate(self, snapshot, log) -> CycleResult:
        name = snapshot.name
        overall_start = time.perf_counter()
        log.info(f"Building playlist '{name}' → stored playlist '{snapshot.target}'")

        # Compile
        now = self.clock()
        plan = compile_rules(
            snapshot.rules,
            tag_types=self.connection.tag_types(),
            pushable_operators=pushable_operators_for_version(self.connection.server_version),
            now=now,
        )

        # Fetch
        fetch_start = time.perf_counter()
        if plan.matches_nothing:
            tracks = []
        elif plan.full_listing:
            log.info(f"Listing the full catalogue for '{name}'")
            tracks = self.connection.list_all_songs()
        else:
            tracks = []
            for query in plan.remote_queries:
                tracks.extend(self.connection.search(query))
        tracks = dedupe_tracks(tracks)
        fetch_duration = time.perf_counter() - fetch_start
        log.info(f"Fetched {len(tracks)} candidate track(s) for '{name}' in {fetch_duration:.2f}s")

        # Stickers, for the filter tree and the ordering clauses alike
        sticker_start = time.perf_counter()
        sticker_keys = snapshot.sticker_keys
        sticker_table = resolve_stickers(self.connection, sticker_keys) if sticker_keys and tracks else {}
        sticker_duration = time.perf_counter() - sticker_start

        # Residual filter
        filter_start = time.perf_counter()
        matched = []
        with tqdm(
            total=len(tracks),
            desc=f"Filtering '{name}'",
            unit="track",
            dynamic_ncols=True,
            disable=not self.show_progress,
        ) as pbar:
            for track in tracks:
                if plan.residual(track, sticker_table.get(track.get("file"))):
                    matched.append(track)
                pbar.update(1)
        filter_duration = time.perf_counter() - filter_start

        # Order and limit
        sort_start = time.perf_counter()
        uris = order_tracks(
            matched,
            sticker_table,
            snapshot.order,
            shuffle=snapshot.shuffle,
            limit=snapshot.limit,
            rng=self.rng,
        )
        sort_duration = time.perf_counter() - sort_start

        # Materialize
        if snapshot.materialize:
            try:
                result = self.materializer.materialize(snapshot, uris)
            except PartialBatchError as exc:
                outcome = "its previous contents were restored" if exc.restored else "it may be half-updated"
                log.error(
                    f"Update of '{snapshot.target}' failed after {exc.applied} command(s); "
                    f"{outcome} and a full rewrite will run on the next cycle"
                )
                self.store.mark_needs_rewrite(name)
                raise
            except RemoteConnectionError as exc:
                # The server may have applied some or all of the batch.
                log.error(
                    f"Connection lost while updating '{snapshot.target}': {exc}; "
                    "a full rewrite will run on the next cycle"
                )
                self.store.mark_needs_rewrite(name)
                raise
            strategy, command_count, update_duration = (
                result.strategy,
                len(result.commands),
                result.duration,
            )
        else:
            log.info(f"'{name}' is not materialized; keeping {len(uris)} track(s) in the local cache")
            strategy, command_count, update_duration = CACHED, 0, 0.0
        self.store.record_success(name, uris, now)

        total_duration = time.perf_counter() - overall_start
        filter_rate = len(tracks) / filter_duration if filter_duration > 0 else 0.0
        log.info(
            "Performance summary for '%s': fetch=%.2fs, stickers=%.2fs, filter=%.2fs (%.1f track/s), sort=%.2fs, update=%.2fs, total=%.2fs",
            name,
            fetch_duration,
            sticker_duration,
            filter_duration,
            filter_rate,
            sort_duration,
            update_duration,
            total_duration,
        )
        log.info(f"✅ Finished building '{name}' ({len(uris)} tracks)")

        return CycleResult(
            name=name,
            target=snapshot.target,
            track_count=len(uris),
            strategy=strategy,
            command_count=command_count,
            timings={
                "fetch": fetch_duration,
                "stickers": sticker_duration,
                "filter": filter_duration,
                "sort": sort_duration,
                "update": update_duration,
                "total": total_duration,
            },
            unsupported_fields=[error.field for error in plan.unsupported],
        )

    def run_playlists(
        self,
        names: Optional[Iterable[str]] = None,
        max_workers: int = 3,
        completion_message: str = "",
    ) -> Dict[str, CycleResult]:
        """Build several playlists concurrently, once each.

        Raises ``PlaylistBuilderError`` after all of them ran if any failed.
        """

        if names is None:
            selected = self.store.names()
        else:
            selected = list(names)
            missing = [name for name in selected if name not in self.store]
            if missing:
                raise PlaylistBuilderError(f"Unknown playlist(s): {', '.join(missing)}")

        if not selected:
            logger.warning("No playlists defined. Nothing to process.")
            return {}

        logger.info("Processing %d playlist(s): %s", len(selected), ", ".join(selected))

        if not isinstance(max_workers, int) or max_workers < 1:
            logger.warning(
                "Invalid runtime.max_workers value '%s'; defaulting to 1 worker.", max_workers
            )
            max_workers = 1
        worker_count = max(1, min(max_workers, len(selected)))

        results: Dict[str, CycleResult] = {}
        failed: List[str] = []
        with ThreadPoolExecutor(max_workers=worker_count) as executor:
            futures = {executor.submit(self.run_cycle, name): name for name in selected}
            for future in as_completed(futures):
                playlist_name = futures[future]
                try:
                    results[playlist_name] = future.result()
                except Exception as exc:
                    failed.append(playlist_name)
                    logger.exception(f"Playlist '{playlist_name}' failed: {exc}")

        if failed:
            raise PlaylistBuilderError(f"{len(failed)} playlist(s) failed to build: {', '.join(sorted(failed))}")

        if completion_message:
            logger.info(completion_message)
        return results
