"""Control API used by playlist editors: list, inspect, edit, refresh, queue, export."""

from __future__ import annotations

import json
from typing import Any, Dict, Optional

from flask import Flask, jsonify, request
from werkzeug.utils import secure_filename

from .errors import (
    PartialBatchError,
    PlaylistBuilderError,
    PlaylistImportError,
    RemoteConnectionError,
)
from .interchange import export_playlist, import_playlist, interchange_filename
from .rules import DynamicPlaylist
from .scheduler import Scheduler
from .store import PlaylistStore


def _playlist_summary(playlist: DynamicPlaylist, status: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "name": playlist.name,
        "target": playlist.target_playlist,
        "track_count": len(playlist.snapshot) if playlist.snapshot is not None else None,
        "last_refresh": playlist.last_refresh,
        "needs_rewrite": playlist.needs_rewrite,
        "status": status,
    }


def _truthy(value: Optional[str]) -> bool:
    return str(value or "").strip().lower() in {"1", "true", "yes", "on"}


def _flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return _truthy(value)


def create_app(store: PlaylistStore, scheduler: Scheduler, builder=None) -> Flask:
    app = Flask(__name__)

    @app.route("/api/playlists", methods=["GET"])
    def list_playlists() -> Any:
        response = {
            "playlists": [
                _playlist_summary(playlist, scheduler.status(playlist.name))
                for playlist in store.all()
            ]
        }
        return jsonify(response)

    @app.route("/api/playlists/<name>", methods=["GET"])
    def get_playlist(name: str) -> Any:
        try:
            playlist = store.get(name)
        except KeyError:
            return jsonify({"error": f"Unknown playlist '{name}'."}), 404

        payload = _playlist_summary(playlist, scheduler.status(name))
        payload["definition"] = export_playlist(playlist)
        payload["snapshot"] = playlist.snapshot
        return jsonify(payload)

    @app.route("/api/playlists/<name>/refresh", methods=["POST"])
    def refresh_playlist(name: str) -> Any:
        try:
            future = scheduler.trigger(name)
        except KeyError:
            return jsonify({"error": f"Unknown playlist '{name}'."}), 404

        if future is None:
            return (
                jsonify(
                    {
                        "status": scheduler.status(name),
                        "message": "Playlist is already refreshing.",
                    }
                ),
                409,
            )
        return jsonify({"status": "started", "name": name}), 202

    @app.route("/api/playlists/<name>", methods=["PUT"])
    def update_playlist(name: str) -> Any:
        payload = request.get_json(force=True, silent=True)
        if not isinstance(payload, dict):
            return jsonify({"error": "Invalid JSON payload."}), 400

        if payload.get("name", name) != name:
            return jsonify({"error": "Playlist name does not match the URL."}), 400

        try:
            playlist = import_playlist(payload, name=name)
        except PlaylistImportError as exc:
            return jsonify({"error": str(exc), "problems": exc.problems}), 400

        if scheduler.queue_edit(playlist):
            return jsonify({"status": "saved", "name": name})
        return jsonify({"status": "queued", "name": name}), 202

    @app.route("/api/playlists/<name>", methods=["DELETE"])
    def delete_playlist(name: str) -> Any:
        if name not in store:
            return jsonify({"error": f"Unknown playlist '{name}'."}), 404

        if name not in scheduler:
            store.delete_playlist(name)
            return jsonify({"status": "deleted", "name": name})
        if scheduler.unregister(name):
            return jsonify({"status": "deleted", "name": name})
        return jsonify({"status": "pending", "name": name}), 202

    @app.route("/api/playlists/<name>/queue", methods=["POST"])
    def queue_playlist(name: str) -> Any:
        if name not in store:
            return jsonify({"error": f"Unknown playlist '{name}'."}), 404
        if builder is None:
            return jsonify({"error": "Queueing is not available without an MPD connection."}), 503

        payload = request.get_json(force=True, silent=True) or {}
        if not isinstance(payload, dict):
            return jsonify({"error": "Invalid JSON payload."}), 400
        replace = _flag(payload.get("replace"))
        play = _flag(payload["play"]) if "play" in payload else replace

        try:
            count = builder.queue_playlist(name, replace=replace, play=play)
        except (RemoteConnectionError, PartialBatchError) as exc:
            return jsonify({"error": f"MPD rejected the queue update: {exc}"}), 502
        except PlaylistBuilderError as exc:
            return jsonify({"error": str(exc)}), 409
        return jsonify({"status": "queued", "name": name, "tracks": count, "replaced": replace})

    @app.route("/api/playlists/<name>/export", methods=["GET"])
    def export_playlist_route(name: str) -> Any:
        try:
            playlist = store.get(name)
        except KeyError:
            return jsonify({"error": f"Unknown playlist '{name}'."}), 404

        response = jsonify(export_playlist(playlist))
        filename = secure_filename(interchange_filename(name)) or "playlist.edp.json"
        response.headers["Content-Disposition"] = f'attachment; filename="{filename}"'
        return response

    @app.route("/api/playlists/import", methods=["POST"])
    def import_playlist_route() -> Any:
        upload = request.files.get("file")
        if upload is not None:
            try:
                payload = json.loads(upload.read().decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError) as exc:
                return jsonify({"error": f"Uploaded file is not valid JSON: {exc}"}), 400
        else:
            payload = request.get_json(force=True, silent=True)
        if not isinstance(payload, dict):
            return jsonify({"error": "Invalid JSON payload."}), 400

        try:
            playlist = import_playlist(payload)
        except PlaylistImportError as exc:
            return jsonify({"error": str(exc), "problems": exc.problems}), 400

        if playlist.name in store and not _truthy(request.args.get("replace")):
            return (
                jsonify(
                    {
                        "error": f"Playlist '{playlist.name}' already exists. "
                        "Please choose a different name."
                    }
                ),
                409,
            )

        if scheduler.queue_edit(playlist):
            return jsonify({"status": "imported", "name": playlist.name}), 201
        return jsonify({"status": "queued", "name": playlist.name}), 202

    return app
