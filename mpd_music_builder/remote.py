"""Serialized access to a single MPD connection.

MPD speaks a request/response protocol over one socket, so every call from
every playlist cycle is funnelled through a one-worker executor that owns the
client. Cycles for different playlists can run concurrently; their remote
calls simply queue up here.
"""

from __future__ import annotations

import re
import socket
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from mpd import CommandError, MPDClient
from mpd import ConnectionError as MPDConnectionError

from .compiler import RemoteQuery
from .errors import PartialBatchError, RemoteConnectionError
from .logging_setup import get_active_logger, logger

# Matches every song; used when no server-side filter applies.
FULL_LISTING_EXPRESSION = '(modified-since "0")'
DEFAULT_PAGE_SIZE = 1000

_ACK_PATTERN = re.compile(r"\[(?P<code>\d+)@(?P<index>\d+)\]")

Command = Tuple[Any, ...]


def parse_version(raw: Optional[str]) -> Tuple[int, ...]:
    if not raw:
        return ()
    parts = []
    for piece in str(raw).split("."):
        try:
            parts.append(int(piece))
        except ValueError:
            break
    return tuple(parts)


def _failed_command_index(exc: CommandError) -> Optional[int]:
    match = _ACK_PATTERN.search(str(exc))
    if not match:
        return None
    return int(match.group("index"))


class MPDConnection:
    def __init__(
        self,
        host: str = "localhost",
        port: int = 6600,
        password: Optional[str] = None,
        timeout: Optional[float] = 10.0,
        page_size: int = DEFAULT_PAGE_SIZE,
        client_factory: Callable[[], Any] = MPDClient,
    ) -> None:
        self.host = host
        self.port = port
        self.password = password
        self.timeout = timeout
        self.page_size = max(int(page_size), 1)
        self._client_factory = client_factory
        self._client: Optional[Any] = None
        self._tag_types: Optional[List[str]] = None
        self._closed = False
        self._notes: Optional[List[Tuple[str, str]]] = None
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="mpd-connection")

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "MPDConnection":
        return cls(
            host=settings.mpd_host,
            port=settings.mpd_port,
            password=settings.mpd_password,
            timeout=settings.mpd_timeout,
            **kwargs,
        )

    # ----------------------------
    # Serialization
    # ----------------------------

    def _submit(self, fn, *args, retry: bool = True):
        # Log lines raised on the worker are replayed on the calling thread so
        # they reach that cycle's per-playlist log.
        notes: List[Tuple[str, str]] = []
        try:
            return self._executor.submit(self._run, fn, args, retry, notes).result()
        finally:
            log = get_active_logger()
            for level, message in notes:
                getattr(log, level)(message)

    def _note(self, level: str, message: str) -> None:
        if self._notes is None:
            getattr(logger, level)(message)
        else:
            self._notes.append((level, message))

    def _run(self, fn, args, retry, notes):
        self._notes = notes
        try:
            return self._call(fn, args, retry)
        finally:
            self._notes = None

    def _call(self, fn, args, retry):
        reused = self._client is not None
        client = self._ensure_connected()
        try:
            return fn(client, *args)
        except (MPDConnectionError, OSError, socket.timeout) as exc:
            self._drop_client()
            if retry and reused:
                # MPD drops idle clients; reconnect once for read-only calls.
                self._note("info", f"MPD connection lost ({exc}); reconnecting")
                client = self._ensure_connected()
                try:
                    return fn(client, *args)
                except (MPDConnectionError, OSError, socket.timeout) as retry_exc:
                    self._drop_client()
                    raise RemoteConnectionError(
                        f"MPD request failed after reconnect: {retry_exc}"
                    ) from retry_exc
            raise RemoteConnectionError(f"MPD request failed: {exc}") from exc

    def _ensure_connected(self):
        if self._client is not None:
            return self._client

        client = self._client_factory()
        client.timeout = self.timeout
        try:
            client.connect(self.host, self.port)
        except (MPDConnectionError, OSError, socket.timeout) as exc:
            raise RemoteConnectionError(
                f"Unable to connect to MPD at {self.host}:{self.port}: {exc}"
            ) from exc

        if self.password:
            try:
                client.password(self.password)
            except CommandError as exc:
                self._disconnect_quietly(client)
                raise RemoteConnectionError(f"MPD rejected the password: {exc}") from exc

        self._note(
            "debug",
            f"Connected to MPD {self.host}:{self.port} "
            f"(protocol {getattr(client, 'mpd_version', '?')})",
        )
        self._client = client
        return client

    def _drop_client(self):
        client, self._client = self._client, None
        self._tag_types = None
        if client is not None:
            self._disconnect_quietly(client)

    @staticmethod
    def _disconnect_quietly(client):
        try:
            client.disconnect()
        except (MPDConnectionError, OSError):
            pass

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._executor.submit(self._drop_client).result()
        self._executor.shutdown(wait=True)

    # ----------------------------
    # Catalogue
    # ----------------------------

    @property
    def server_version(self) -> Tuple[int, ...]:
        return self._submit(lambda client: parse_version(getattr(client, "mpd_version", None)))

    def tag_types(self) -> List[str]:
        """Return the tag names the server indexes (cached per connection)."""

        def fetch(client):
            if self._tag_types is None:
                self._tag_types = [str(tag).lower() for tag in client.tagtypes()]
            return list(self._tag_types)

        return self._submit(fetch)

    def _fetch_paged(self, client, command: str, expression: str) -> List[Dict[str, Any]]:
        method = getattr(client, command)
        songs: List[Dict[str, Any]] = []
        start = 0
        while True:
            window = f"{start}:{start + self.page_size}"
            try:
                batch = method(expression, "window", window)
            except CommandError as exc:
                raise RemoteConnectionError(f"MPD rejected {command} {expression}: {exc}") from exc
            batch = [entry for entry in batch or [] if isinstance(entry, dict) and "file" in entry]
            songs.extend(batch)
            if len(batch) < self.page_size:
                return songs
            start += self.page_size

    def search(self, query: RemoteQuery) -> List[Dict[str, Any]]:
        """Run one compiled filter expression and return matching songs."""

        return self._submit(self._fetch_paged, query.command, query.expression)

    def list_all_songs(self) -> List[Dict[str, Any]]:
        return self._submit(self._fetch_paged, "find", FULL_LISTING_EXPRESSION)

    def find_stickers(self, keys: Sequence[str]) -> List[List[Dict[str, Any]]]:
        """Run ``sticker find`` for every key inside one command list."""

        keys = list(keys)

        def fetch(client):
            client.command_list_ok_begin()
            for key in keys:
                client.sticker_find("song", "", key)
            try:
                return client.command_list_end()
            except CommandError as exc:
                # A key nobody has set makes MPD abort the list; look the
                # keys up one by one so the rest still resolve.
                self._note("debug", f"Batched sticker lookup failed ({exc}); retrying per key")
                return [self._find_single_sticker(client, key) for key in keys]

        return self._submit(fetch)

    @staticmethod
    def _find_single_sticker(client, key):
        try:
            return client.sticker_find("song", "", key)
        except CommandError as exc:
            if "no such sticker" in str(exc).lower():
                return []
            raise RemoteConnectionError(f"Sticker lookup for '{key}' failed: {exc}") from exc

    # ----------------------------
    # Stored playlists
    # ----------------------------

    def list_playlists(self) -> List[str]:
        def fetch(client):
            names = []
            for entry in client.listplaylists():
                if isinstance(entry, dict) and entry.get("playlist"):
                    names.append(entry["playlist"])
                elif isinstance(entry, str):
                    names.append(entry)
            return names

        return self._submit(fetch)

    def list_playlist(self, name: str) -> List[str]:
        def fetch(client):
            try:
                entries = client.listplaylist(name)
            except CommandError as exc:
                if "no such playlist" in str(exc).lower():
                    return []
                raise RemoteConnectionError(f"Unable to read playlist '{name}': {exc}") from exc
            uris = []
            for entry in entries or []:
                if isinstance(entry, dict):
                    entry = entry.get("file")
                if entry:
                    uris.append(entry)
            return uris

        return self._submit(fetch)

    def execute_batch(self, commands: Sequence[Command]) -> List[Any]:
        """Send ``commands`` as one command list.

        Raises ``PartialBatchError`` when the server rejects one of them; the
        commands before the rejected one have already been applied.
        """

        commands = [tuple(command) for command in commands]
        if not commands:
            return []

        def run(client):
            client.command_list_ok_begin()
            for command in commands:
                getattr(client, command[0])(*command[1:])
            try:
                return client.command_list_end()
            except CommandError as exc:
                index = _failed_command_index(exc)
                failed = commands[index] if index is not None and index < len(commands) else None
                raise PartialBatchError(
                    f"MPD rejected a playlist edit: {exc}",
                    applied=index or 0,
                    failed_command=failed,
                ) from exc

        return self._submit(run, retry=False)

    # ----------------------------
    # Play queue
    # ----------------------------

    def queue_uris(self, uris: Sequence[str], replace: bool = False, play: bool = False) -> int:
        """Add ``uris`` to the play queue in one command list.

        ``replace`` clears the queue first. ``play`` starts playback at the
        first of the added tracks.
        """

        uris = list(uris)
        start = 0
        if play and not replace:
            status = self._submit(lambda client: client.status())
            start = int(status.get("playlistlength", 0) or 0)

        commands: List[Command] = []
        if replace:
            commands.append(("clear",))
        commands.extend(("add", uri) for uri in uris)
        if play and uris:
            commands.append(("play", start))
        self.execute_batch(commands)
        return len(uris)
