"""Command line entry point for the MPD dynamic playlist builder."""

from __future__ import annotations

import argparse
import sys
import threading

from .api import create_app
from .builder import PlaylistBuilder
from .config import load_settings
from .errors import PlaylistBuilderError
from .interchange import export_to_file, import_from_file
from .logging_setup import logger, setup_logging
from .remote import MPDConnection
from .scheduler import Scheduler
from .store import PlaylistStore


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="MPD dynamic playlist builder")
    parser.add_argument(
        "--config",
        dest="config",
        help="Path to config.yml (defaults to MMB_CONFIG_PATH, /app/config.yml or the repository copy).",
    )
    parser.add_argument(
        "--playlist",
        dest="playlists",
        action="append",
        help="Name of a playlist to build. Can be provided multiple times.",
    )
    parser.add_argument("--export", dest="export_name", help="Export the named playlist definition.")
    parser.add_argument("--output", dest="output", help="Destination file for --export.")
    parser.add_argument(
        "--import", dest="import_file", help="Import a playlist definition from a .edp.json file."
    )
    parser.add_argument(
        "--replace",
        action="store_true",
        help=(
            "Allow --import to overwrite an existing playlist of the same name. "
            "With --queue, replace the play queue and start playback."
        ),
    )
    parser.add_argument(
        "--queue",
        dest="queue_name",
        help="Append the cached result of the named playlist to the MPD play queue.",
    )
    parser.add_argument(
        "--play",
        action="store_true",
        help="With --queue, start playback at the first queued track.",
    )
    parser.add_argument(
        "--serve",
        action="store_true",
        help="Run the scheduler loop together with the control API.",
    )
    return parser


def create_scheduler(settings, store: PlaylistStore, builder: PlaylistBuilder) -> Scheduler:
    scheduler = Scheduler(
        builder.run_cycle,
        max_workers=settings.max_workers,
        apply_edit=store.save_playlist,
        apply_removal=store.delete_playlist,
    )
    for playlist in store.all():
        scheduler.register(playlist.name, playlist.schedule, last_run=playlist.last_refresh)
    return scheduler


def run_service(settings, store: PlaylistStore, builder: PlaylistBuilder, serve_api: bool = False) -> None:
    scheduler = create_scheduler(settings, store, builder)
    stop_event = threading.Event()

    try:
        if serve_api:
            loop = threading.Thread(
                target=scheduler.run_forever,
                args=(stop_event, settings.poll_interval),
                name="scheduler",
                daemon=True,
            )
            loop.start()
            logger.info(f"Control API listening on {settings.api_host}:{settings.api_port}")
            try:
                create_app(store, scheduler, builder).run(host=settings.api_host, port=settings.api_port)
            finally:
                stop_event.set()
                loop.join()
        else:
            logger.info("Running in loop mode.")
            try:
                scheduler.run_forever(stop_event, settings.poll_interval)
            except KeyboardInterrupt:
                logger.info("Loop interrupted by user. Exiting.")
                stop_event.set()
    finally:
        scheduler.shutdown(wait=True)


def _import_playlist(store: PlaylistStore, path, replace: bool) -> int:
    try:
        playlist = import_from_file(path)
        store.save_playlist(playlist, replace=replace)
    except PlaylistBuilderError as exc:
        logger.error(str(exc))
        return 1
    logger.info(f"Imported playlist '{playlist.name}' from {path}")
    return 0


def _export_playlist(store: PlaylistStore, name: str, output) -> int:
    try:
        playlist = store.get(name)
    except KeyError:
        logger.error(f"Unknown playlist '{name}'")
        return 1
    try:
        export_to_file(playlist, output)
    except OSError as exc:
        logger.error(f"Unable to write '{output}': {exc}")
        return 1
    return 0


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.export_name and not args.output:
        parser.error("--export requires --output")

    settings = load_settings(args.config)
    setup_logging(settings.log_level, settings.log_file)
    if settings.config_path is None:
        logger.warning("No config.yml found; using default settings")

    store = PlaylistStore.from_settings(settings).load()

    if args.import_file:
        return _import_playlist(store, args.import_file, args.replace)
    if args.export_name:
        return _export_playlist(store, args.export_name, args.output)

    connection = MPDConnection.from_settings(settings)
    builder = PlaylistBuilder.from_settings(settings, connection=connection, store=store)
    try:
        if args.queue_name:
            builder.queue_playlist(
                args.queue_name, replace=args.replace, play=args.replace or args.play
            )
        elif args.playlists:
            builder.run_playlists(
                args.playlists,
                max_workers=settings.max_workers,
                completion_message="✅ Selected playlists processed successfully.",
            )
        elif settings.run_forever or args.serve:
            run_service(settings, store, builder, serve_api=args.serve)
        else:
            builder.run_playlists(
                max_workers=settings.max_workers,
                completion_message="✅ All playlists processed successfully.",
            )
    except PlaylistBuilderError as exc:
        logger.error(str(exc))
        return 1
    finally:
        connection.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
