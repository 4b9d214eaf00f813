"""Per-playlist refresh scheduling.

Each registered playlist moves through ``idle -> due -> running -> idle``.
``due`` means a cycle has been handed to the worker pool but has not started
yet; while a playlist is due or running, further triggers are ignored and
edits are held back until the cycle finishes.
"""

from __future__ import annotations

import math
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_for_futures
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from .logging_setup import logger
from .rules import DynamicPlaylist, PeriodicSchedule, Schedule

IDLE = "idle"
DUE = "due"
RUNNING = "running"


def next_fire_time(schedule: Schedule, now: float) -> Optional[float]:
    """Return the first tick ``anchor + k * interval`` strictly after ``now``."""

    if not isinstance(schedule, PeriodicSchedule):
        return None
    if now < schedule.anchor:
        return float(schedule.anchor)
    elapsed = math.floor((now - schedule.anchor) / schedule.interval) + 1
    return schedule.anchor + elapsed * schedule.interval


def last_tick(schedule: Schedule, now: float) -> Optional[float]:
    """Return the most recent tick at or before ``now``, if one has passed."""

    if not isinstance(schedule, PeriodicSchedule) or now < schedule.anchor:
        return None
    elapsed = math.floor((now - schedule.anchor) / schedule.interval)
    return schedule.anchor + elapsed * schedule.interval


def catch_up_due(schedule: Schedule, last_run: Optional[float], now: float) -> bool:
    """True when a tick has passed since ``last_run`` (or it never ran).

    However many ticks were missed, this only ever asks for one run.
    """

    tick = last_tick(schedule, now)
    if tick is None:
        return False
    return last_run is None or last_run < tick


@dataclass
class PlaylistEntry:
    name: str
    schedule: Schedule
    state: str = IDLE
    last_run: Optional[float] = None
    last_success: Optional[float] = None
    last_error: Optional[str] = None
    pending_edit: Optional[DynamicPlaylist] = None
    pending_removal: bool = False
    future: Optional[Future] = None

    @property
    def busy(self) -> bool:
        return self.state in (DUE, RUNNING)


class Scheduler:
    """Registry of playlists and their refresh timers.

    ``runner`` is called with a playlist name from a worker thread and performs
    one evaluation cycle. ``apply_edit`` and ``apply_removal`` persist queued
    changes once the playlist is idle.
    """

    def __init__(
        self,
        runner: Callable[[str], Any],
        max_workers: int = 3,
        clock: Callable[[], float] = time.time,
        apply_edit: Optional[Callable[[DynamicPlaylist], Any]] = None,
        apply_removal: Optional[Callable[[str], Any]] = None,
    ) -> None:
        self._runner = runner
        self._clock = clock
        self._apply_edit = apply_edit
        self._apply_removal = apply_removal
        self._entries: Dict[str, PlaylistEntry] = {}
        self._lock = threading.RLock()
        self._executor = ThreadPoolExecutor(
            max_workers=max(int(max_workers), 1), thread_name_prefix="playlist-cycle"
        )

    # ----------------------------
    # Registry
    # ----------------------------

    def register(self, name: str, schedule: Schedule, last_run: Optional[float] = None) -> None:
        with self._lock:
            entry = self._entries.get(name)
            if entry is None:
                self._entries[name] = PlaylistEntry(
                    name=name, schedule=schedule, last_run=last_run, last_success=last_run
                )
            else:
                entry.schedule = schedule

    def unregister(self, name: str) -> bool:
        """Remove a playlist; returns False when removal waits for a running cycle."""

        with self._lock:
            entry = self._entries.get(name)
            if entry is None:
                return True
            if entry.busy:
                entry.pending_removal = True
                return False
            self._remove(entry)
            return True

    def _remove(self, entry: PlaylistEntry) -> None:
        if self._apply_removal is not None:
            self._apply_removal(entry.name)
        self._entries.pop(entry.name, None)
        logger.info(f"Unregistered playlist '{entry.name}'")

    def queue_edit(self, playlist: DynamicPlaylist) -> bool:
        """Apply an edit now, or hold it until the running cycle ends.

        Returns True when the edit was applied immediately.
        """

        with self._lock:
            entry = self._entries.get(playlist.name)
            if entry is not None and entry.busy:
                entry.pending_edit = playlist
                logger.info(
                    f"Playlist '{playlist.name}' is refreshing; edit queued until it finishes"
                )
                return False
            self._edit(playlist)
            return True

    def _edit(self, playlist: DynamicPlaylist) -> None:
        if self._apply_edit is not None:
            self._apply_edit(playlist)
        self.register(playlist.name, playlist.schedule)

    def names(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def __contains__(self, name) -> bool:
        with self._lock:
            return name in self._entries

    # ----------------------------
    # Running cycles
    # ----------------------------

    def trigger(self, name: str) -> Optional[Future]:
        """Start a cycle now; a no-op returning None if one is pending."""

        with self._lock:
            entry = self._entries.get(name)
            if entry is None:
                raise KeyError(name)
            if entry.busy:
                logger.debug("Playlist '%s' is already %s; ignoring trigger", name, entry.state)
                return None
            return self._start(entry, self._clock())

    def tick(self, now: Optional[float] = None) -> List[str]:
        """Start every idle playlist whose tick has passed; return their names."""

        if now is None:
            now = self._clock()
        started = []
        with self._lock:
            for entry in list(self._entries.values()):
                if entry.busy or entry.pending_removal:
                    continue
                if catch_up_due(entry.schedule, entry.last_run, now):
                    self._start(entry, now)
                    started.append(entry.name)
        return started

    def _start(self, entry: PlaylistEntry, now: float) -> Future:
        entry.state = DUE
        entry.last_run = now
        entry.future = self._executor.submit(self._execute, entry.name)
        return entry.future

    def _execute(self, name: str):
        with self._lock:
            entry = self._entries[name]
            entry.state = RUNNING

        try:
            result = self._runner(name)
        except Exception as exc:
            logger.exception(f"Refresh of playlist '{name}' failed: {exc}")
            with self._lock:
                entry.last_error = str(exc)
            result = None
        else:
            with self._lock:
                entry.last_success = self._clock()
                entry.last_error = None
        finally:
            self._finish(entry)
        return result

    def _finish(self, entry: PlaylistEntry) -> None:
        with self._lock:
            entry.state = IDLE
            entry.future = None
            if entry.pending_removal:
                self._remove(entry)
                return
            edit, entry.pending_edit = entry.pending_edit, None
            if edit is not None:
                logger.info(f"Applying queued edit for playlist '{entry.name}'")
                self._edit(edit)

    def wait_idle(self, timeout: Optional[float] = None) -> None:
        with self._lock:
            futures = [entry.future for entry in self._entries.values() if entry.future]
        if futures:
            wait_for_futures(futures, timeout=timeout)

    # ----------------------------
    # Loop
    # ----------------------------

    def seconds_until_next(self, now: float, poll_interval: float) -> float:
        with self._lock:
            upcoming = [
                next_fire_time(entry.schedule, now)
                for entry in self._entries.values()
                if isinstance(entry.schedule, PeriodicSchedule)
            ]
        upcoming = [fire for fire in upcoming if fire is not None]
        if not upcoming:
            return poll_interval
        return max(0.0, min(min(upcoming) - now, poll_interval))

    def run_forever(self, stop_event: threading.Event, poll_interval: float = 60.0) -> None:
        logger.info(
            f"Scheduler started for {len(self.names())} playlist(s); polling every {poll_interval:g}s"
        )
        while not stop_event.is_set():
            now = self._clock()
            started = self.tick(now)
            if started:
                logger.info(f"Refreshing due playlist(s): {', '.join(started)}")
            stop_event.wait(self.seconds_until_next(now, poll_interval))
        logger.info("Scheduler stopped")

    def status(self, name: Optional[str] = None):
        now = self._clock()
        with self._lock:
            if name is not None:
                entry = self._entries.get(name)
                return None if entry is None else self._describe(entry, now)
            return [self._describe(entry, now) for entry in self._entries.values()]

    @staticmethod
    def _describe(entry: PlaylistEntry, now: float) -> Dict[str, Any]:
        if isinstance(entry.schedule, PeriodicSchedule):
            if catch_up_due(entry.schedule, entry.last_run, now):
                next_fire: Optional[float] = now
            else:
                next_fire = next_fire_time(entry.schedule, now)
        else:
            next_fire = None
        return {
            "name": entry.name,
            "state": entry.state,
            "last_run": entry.last_run,
            "last_success": entry.last_success,
            "last_error": entry.last_error,
            "next_fire": next_fire,
            "edit_pending": entry.pending_edit is not None,
            "removal_pending": entry.pending_removal,
        }

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
