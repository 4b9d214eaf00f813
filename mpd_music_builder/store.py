"""Local persistence: playlist rules in YAML, runtime state in JSON."""

from __future__ import annotations

import copy
import json
import os
import threading
from collections import OrderedDict
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import yaml

from .errors import PlaylistConflictError, PlaylistImportError
from .interchange import export_playlist, import_playlist
from .logging_setup import logger
from .rules import DynamicPlaylist

STATE_VERSION = 1


def _represent_ordered_dict(dumper: yaml.Dumper, data: OrderedDict) -> Any:
    """Ensure OrderedDict values can be serialized by ``yaml.safe_dump``."""

    return dumper.represent_mapping("tag:yaml.org,2002:map", data.items())


yaml.SafeDumper.add_representer(OrderedDict, _represent_ordered_dict)


def _alphabetize(playlists: Iterable[Tuple[str, Any]]) -> "OrderedDict[str, Any]":
    return OrderedDict(sorted(playlists, key=lambda item: (item[0].casefold(), item[0])))


class PlaylistStore:
    """Thread-safe registry of playlist definitions and their runtime state.

    Rules live in ``playlists.yml`` (hand-editable); snapshots, refresh times
    and the rewrite flag live in a JSON state file next to the logs.
    """

    def __init__(self, playlists_file, state_file) -> None:
        self.playlists_file = Path(playlists_file)
        self.state_file = Path(state_file)
        self._lock = threading.Lock()
        self._playlists: "OrderedDict[str, DynamicPlaylist]" = OrderedDict()

    @classmethod
    def from_settings(cls, settings) -> "PlaylistStore":
        return cls(settings.playlists_file, settings.state_file)

    # ----------------------------
    # Loading
    # ----------------------------

    def load(self) -> "PlaylistStore":
        playlists_data = self._read_playlists_file()
        state = self._read_state_file()

        loaded: "OrderedDict[str, DynamicPlaylist]" = OrderedDict()
        for name, doc in playlists_data.items():
            try:
                playlist = import_playlist(doc or {}, name=str(name))
            except PlaylistImportError as exc:
                logger.error(f"Skipping playlist '{name}' from {self.playlists_file}: {exc}")
                continue
            self._apply_state(playlist, state.get(playlist.name))
            loaded[playlist.name] = playlist

        with self._lock:
            self._playlists = loaded
        logger.info(f"Loaded {len(loaded)} playlist definition(s) from {self.playlists_file}")
        return self

    def _read_playlists_file(self) -> Dict[str, Any]:
        if not self.playlists_file.exists():
            return {}
        with self.playlists_file.open("r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}
        playlists = raw.get("playlists", {}) if isinstance(raw, dict) else {}
        if not isinstance(playlists, dict):
            logger.error(f"'playlists' in {self.playlists_file} must be a mapping; ignoring it")
            return {}
        return playlists

    def _read_state_file(self) -> Dict[str, Any]:
        if not self.state_file.exists():
            return {}
        try:
            with self.state_file.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning(f"Unable to load playlist state from '{self.state_file}': {exc}")
            return {}
        if not isinstance(payload, dict) or payload.get("version") != STATE_VERSION:
            logger.debug("Ignoring playlist state with mismatched version")
            return {}
        playlists = payload.get("playlists")
        return playlists if isinstance(playlists, dict) else {}

    @staticmethod
    def _apply_state(playlist: DynamicPlaylist, state: Optional[Dict[str, Any]]) -> None:
        if not isinstance(state, dict):
            return
        if state.get("target", playlist.target_playlist) != playlist.target_playlist:
            return
        snapshot = state.get("snapshot")
        if isinstance(snapshot, list) and (
            state.get("materialized", True) or not playlist.materialize
        ):
            playlist.snapshot = [str(uri) for uri in snapshot]
        last_refresh = state.get("last_refresh")
        if isinstance(last_refresh, (int, float)):
            playlist.last_refresh = float(last_refresh)
        playlist.needs_rewrite = bool(state.get("needs_rewrite", False))

    # ----------------------------
    # Writing
    # ----------------------------

    def _write_playlists_locked(self) -> None:
        directory = self.playlists_file.parent
        if not directory.exists():
            directory.mkdir(parents=True, exist_ok=True)
        structure = {
            "playlists": _alphabetize(
                (name, export_playlist(playlist, include_name=False))
                for name, playlist in self._playlists.items()
            )
        }
        with self.playlists_file.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(structure, handle, sort_keys=False, allow_unicode=True)

    def _write_state_locked(self) -> None:
        directory = self.state_file.parent
        if not directory.exists():
            directory.mkdir(parents=True, exist_ok=True)
        payload = {
            "version": STATE_VERSION,
            "playlists": {
                name: {
                    "target": playlist.target_playlist,
                    "snapshot": playlist.snapshot,
                    "last_refresh": playlist.last_refresh,
                    "needs_rewrite": playlist.needs_rewrite,
                    "materialized": playlist.materialize,
                }
                for name, playlist in self._playlists.items()
                if playlist.snapshot is not None or playlist.needs_rewrite
            },
        }
        tmp_path = f"{self.state_file}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, ensure_ascii=False, indent=2)
        os.replace(tmp_path, self.state_file)

    # ----------------------------
    # Access
    # ----------------------------

    def names(self) -> List[str]:
        with self._lock:
            return list(self._playlists)

    def __contains__(self, name) -> bool:
        with self._lock:
            return name in self._playlists

    def get(self, name: str) -> DynamicPlaylist:
        """Return a copy of the stored playlist; raises ``KeyError`` if unknown."""

        with self._lock:
            return copy.deepcopy(self._playlists[name])

    def all(self) -> List[DynamicPlaylist]:
        with self._lock:
            return [copy.deepcopy(playlist) for playlist in self._playlists.values()]

    def save_playlist(self, playlist: DynamicPlaylist, replace: bool = True) -> DynamicPlaylist:
        """Validate and persist ``playlist``'s rules, keeping its runtime state."""

        playlist.validate()
        with self._lock:
            existing = self._playlists.get(playlist.name)
            if existing is not None and not replace:
                raise PlaylistConflictError(
                    f"Playlist '{playlist.name}' already exists. Please choose a different name."
                )
            if existing is not None:
                stored = existing.with_rules_from(playlist)
            else:
                stored = copy.deepcopy(playlist)
                stored.snapshot = None
                stored.last_refresh = None
                stored.needs_rewrite = False
            self._playlists[playlist.name] = stored
            self._write_playlists_locked()
            self._write_state_locked()
            return copy.deepcopy(stored)

    def delete_playlist(self, name: str) -> bool:
        with self._lock:
            if self._playlists.pop(name, None) is None:
                return False
            self._write_playlists_locked()
            self._write_state_locked()
        logger.info(f"Deleted playlist definition '{name}'")
        return True

    def record_success(self, name: str, uris: Sequence[str], refreshed_at: float) -> None:
        """Overwrite the snapshot after a confirmed write or a cache-only cycle."""

        with self._lock:
            playlist = self._playlists.get(name)
            if playlist is None:
                return
            playlist.snapshot = list(uris)
            playlist.last_refresh = refreshed_at
            playlist.needs_rewrite = False
            self._write_state_locked()

    def mark_needs_rewrite(self, name: str) -> None:
        with self._lock:
            playlist = self._playlists.get(name)
            if playlist is None:
                return
            playlist.needs_rewrite = True
            self._write_state_locked()
