import re

import pytest
from mpd import CommandError
from mpd import ConnectionError as MPDConnectionError

from mpd_music_builder.compiler import parse_timestamp
from mpd_music_builder.remote import MPDConnection

_TERM = re.compile(r'\((?P<field>[\w-]+) (?P<op>==|contains|starts_with) "(?P<value>(?:[^"\\]|\\.)*)"\)')
_MODIFIED_SINCE = re.compile(r'\(modified-since "(?P<stamp>-?\d+)"\)')


def _unescape(value):
    return re.sub(r"\\(.)", r"\1", value)


def _song_values(song, field):
    if field == "any":
        values = []
        for key, raw in song.items():
            if key in {"file", "last-modified"}:
                continue
            values.extend(raw if isinstance(raw, list) else [raw])
        return [str(v) for v in values]
    raw = song.get(field)
    if raw is None:
        return []
    return [str(v) for v in (raw if isinstance(raw, list) else [raw])]


class FakeMPDClient:
    """In-memory stand-in for ``mpd.MPDClient`` covering the commands we use."""

    def __init__(self, songs=(), stickers=None, playlists=None, version="0.23.5", tag_types=None):
        self.songs = [dict(song) for song in songs]
        self.stickers = {uri: dict(values) for uri, values in (stickers or {}).items()}
        self.playlists = {name: list(uris) for name, uris in (playlists or {}).items()}
        self.queue = []
        self.playing = None
        self.mpd_version = version
        self.tag_types = list(
            tag_types or ["Artist", "Album", "AlbumArtist", "Title", "Track", "Genre", "Date", "Disc"]
        )
        self.timeout = None
        self.connected = False
        self.connect_count = 0
        self.passwords = []
        self.calls = []
        self.batches = []
        self.fail_when = None
        self.drop_next_call = False
        self._command_list = None

    # Connection -------------------------------------------------------

    def connect(self, host, port):
        self.connected = True
        self.connect_count += 1

    def disconnect(self):
        self.connected = False

    def password(self, value):
        self.passwords.append(value)

    def _record(self, name, args):
        if self.drop_next_call:
            self.drop_next_call = False
            raise MPDConnectionError("Connection lost while reading line")
        self.calls.append((name,) + tuple(args))

    def _dispatch(self, name, args, handler):
        if self._command_list is not None:
            self._command_list.append((name, args, handler))
            return None
        self._record(name, args)
        return handler(*args)

    # Command lists ----------------------------------------------------

    def command_list_ok_begin(self):
        self._command_list = []

    def command_list_end(self):
        pending, self._command_list = self._command_list, None
        self.batches.append([(name,) + tuple(args) for name, args, _ in pending])
        results = []
        for index, (name, args, handler) in enumerate(pending):
            self._record(name, args)
            try:
                if self.fail_when is not None and self.fail_when(name, args):
                    raise CommandError(f"[50@0] {{{name}}} Injected failure")
                results.append(handler(*args))
            except CommandError as exc:
                message = re.sub(r"^\[(\d+)@\d+\]", rf"[\1@{index}]", str(exc))
                raise CommandError(message)
        return results

    # Catalogue --------------------------------------------------------

    def tagtypes(self):
        return self._dispatch("tagtypes", (), lambda: list(self.tag_types))

    def _matches(self, song, expression, case_sensitive):
        for match in _TERM.finditer(expression):
            field, op, expected = match.group("field"), match.group("op"), _unescape(match.group("value"))
            values = _song_values(song, field)
            if not case_sensitive:
                expected = expected.casefold()
                values = [v.casefold() for v in values]
            if op == "==" and expected not in values:
                return False
            if op == "contains" and not any(expected in v for v in values):
                return False
            if op == "starts_with" and not any(v.startswith(expected) for v in values):
                return False
        for match in _MODIFIED_SINCE.finditer(expression):
            stamp = parse_timestamp(song.get("last-modified")) or 0
            if stamp < int(match.group("stamp")):
                return False
        return True

    def _query(self, case_sensitive, expression, *window):
        matched = [dict(s) for s in self.songs if self._matches(s, expression, case_sensitive)]
        if len(window) == 2 and window[0] == "window":
            start, end = (int(part) for part in window[1].split(":"))
            matched = matched[start:end]
        return matched

    def find(self, expression, *window):
        return self._dispatch("find", (expression,) + window, lambda *a: self._query(True, *a))

    def search(self, expression, *window):
        return self._dispatch("search", (expression,) + window, lambda *a: self._query(False, *a))

    def sticker_find(self, kind, base, key):
        def run(kind, base, key):
            return [
                {"file": uri, "sticker": f"{key}={values[key]}"}
                for uri, values in self.stickers.items()
                if key in values
            ]

        return self._dispatch("sticker_find", (kind, base, key), run)

    # Stored playlists -------------------------------------------------

    def listplaylists(self):
        return self._dispatch(
            "listplaylists",
            (),
            lambda: [{"playlist": name, "last-modified": "2024-01-01T00:00:00Z"} for name in self.playlists],
        )

    def _require(self, name):
        if name not in self.playlists:
            raise CommandError("[50@0] {playlist} No such playlist")
        return self.playlists[name]

    def listplaylist(self, name):
        return self._dispatch("listplaylist", (name,), lambda n: list(self._require(n)))

    def playlistadd(self, name, uri, *position):
        def run(name, uri, *position):
            if not any(song["file"] == uri for song in self.songs):
                raise CommandError("[50@0] {playlistadd} No such song")
            entries = self.playlists.setdefault(name, [])
            if position:
                pos = int(position[0])
                if pos > len(entries):
                    raise CommandError("[2@0] {playlistadd} Bad song index")
                entries.insert(pos, uri)
            else:
                entries.append(uri)

        return self._dispatch("playlistadd", (name, uri) + position, run)

    def playlistdelete(self, name, pos):
        def run(name, pos):
            entries = self._require(name)
            if int(pos) >= len(entries):
                raise CommandError("[2@0] {playlistdelete} Bad song index")
            del entries[int(pos)]

        return self._dispatch("playlistdelete", (name, pos), run)

    def playlistclear(self, name):
        return self._dispatch("playlistclear", (name,), lambda n: self._require(n).clear())

    def rm(self, name):
        def run(name):
            self._require(name)
            del self.playlists[name]

        return self._dispatch("rm", (name,), run)

    def rename(self, old, new):
        def run(old, new):
            entries = self._require(old)
            if new in self.playlists:
                raise CommandError("[56@0] {rename} Playlist already exists")
            self.playlists[new] = entries
            del self.playlists[old]

        return self._dispatch("rename", (old, new), run)


    # Play queue -------------------------------------------------------

    def status(self):
        return self._dispatch(
            "status", (), lambda: {"playlistlength": str(len(self.queue)), "state": "stop"}
        )

    def clear(self):
        return self._dispatch("clear", (), lambda: self.queue.clear())

    def add(self, uri):
        def run(uri):
            if not any(song["file"] == uri for song in self.songs):
                raise CommandError("[50@0] {add} No such directory")
            self.queue.append(uri)

        return self._dispatch("add", (uri,), run)

    def play(self, pos=0):
        def run(pos):
            if int(pos) >= len(self.queue):
                raise CommandError("[2@0] {play} Bad song index")
            self.playing = int(pos)

        return self._dispatch("play", (pos,), run)


def make_song(uri, **tags):
    song = {"file": uri}
    song.update(tags)
    return song


@pytest.fixture
def fake_client():
    return FakeMPDClient()


@pytest.fixture
def connect_fake():
    """Return a factory wrapping a ``FakeMPDClient`` in a real ``MPDConnection``."""

    connections = []

    def factory(client, **kwargs):
        connection = MPDConnection(client_factory=lambda: client, **kwargs)
        connections.append(connection)
        return connection

    yield factory
    for connection in connections:
        connection.close()
