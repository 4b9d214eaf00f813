import logging

import pytest
from mpd import CommandError

from conftest import FakeMPDClient, make_song
from mpd_music_builder.compiler import RemoteQuery
from mpd_music_builder.errors import PartialBatchError, RemoteConnectionError
from mpd_music_builder.logging_setup import playlist_logging
from mpd_music_builder.remote import FULL_LISTING_EXPRESSION, MPDConnection, parse_version


def test_parse_version():
    assert parse_version("0.23.5") == (0, 23, 5)
    assert parse_version("0.24") == (0, 24)
    assert parse_version(None) == ()


def test_connect_sends_password_and_timeout(connect_fake):
    client = FakeMPDClient()
    connection = connect_fake(client, password="secret", timeout=3.5)

    assert connection.server_version == (0, 23, 5)
    assert client.passwords == ["secret"]
    assert client.timeout == 3.5
    assert client.connect_count == 1


def test_search_pages_through_results_with_windows(connect_fake):
    client = FakeMPDClient(songs=[make_song(f"{i}.flac", genre="Jazz") for i in range(5)])
    connection = connect_fake(client, page_size=2)

    songs = connection.search(RemoteQuery('(genre == "jazz")', case_sensitive=False))

    assert [song["file"] for song in songs] == [f"{i}.flac" for i in range(5)]
    assert [call[-1] for call in client.calls] == ["0:2", "2:4", "4:6"]
    assert all(call[0] == "search" for call in client.calls)


def test_list_all_songs_uses_find_with_match_all_expression(connect_fake):
    client = FakeMPDClient(songs=[make_song("a.flac"), make_song("b.flac")])
    connection = connect_fake(client)

    assert [song["file"] for song in connection.list_all_songs()] == ["a.flac", "b.flac"]
    assert client.calls[0][:2] == ("find", FULL_LISTING_EXPRESSION)


def test_tag_types_are_lowercased_and_cached(connect_fake):
    client = FakeMPDClient(tag_types=["Artist", "MUSICBRAINZ_TRACKID"])
    connection = connect_fake(client)

    assert connection.tag_types() == ["artist", "musicbrainz_trackid"]
    assert connection.tag_types() == ["artist", "musicbrainz_trackid"]
    assert [call[0] for call in client.calls] == ["tagtypes"]


def test_list_playlist_of_missing_playlist_is_empty(connect_fake):
    client = FakeMPDClient(playlists={"Jazz": ["a.flac"]})
    connection = connect_fake(client)

    assert connection.list_playlists() == ["Jazz"]
    assert connection.list_playlist("Jazz") == ["a.flac"]
    assert connection.list_playlist("Nope") == []


def test_execute_batch_reports_the_rejected_command(connect_fake):
    client = FakeMPDClient(songs=[make_song("a.flac")])
    connection = connect_fake(client)

    with pytest.raises(PartialBatchError) as excinfo:
        connection.execute_batch(
            [("playlistadd", "P", "a.flac"), ("playlistdelete", "P", 5), ("playlistadd", "P", "a.flac")]
        )

    assert excinfo.value.applied == 1
    assert excinfo.value.failed_command == ("playlistdelete", "P", 5)
    assert client.playlists == {"P": ["a.flac"]}


def test_empty_batch_is_not_sent(connect_fake):
    client = FakeMPDClient()
    connection = connect_fake(client)

    assert connection.execute_batch([]) == []
    assert client.connect_count == 0


def test_reads_reconnect_once_after_a_dropped_connection(connect_fake):
    client = FakeMPDClient(playlists={"Jazz": []})
    connection = connect_fake(client)
    assert connection.list_playlists() == ["Jazz"]

    client.drop_next_call = True

    assert connection.list_playlists() == ["Jazz"]
    assert client.connect_count == 2


def test_connection_failure_raises_remote_connection_error():
    class _Unreachable(FakeMPDClient):
        def connect(self, host, port):
            raise ConnectionRefusedError("refused")

    connection = MPDConnection(client_factory=_Unreachable)
    try:
        with pytest.raises(RemoteConnectionError):
            connection.list_playlists()
    finally:
        connection.close()


def test_rejected_password_raises_remote_connection_error():
    class _Locked(FakeMPDClient):
        def password(self, value):
            raise CommandError("[3@0] {password} incorrect password")

    connection = MPDConnection(password="wrong", client_factory=_Locked)
    try:
        with pytest.raises(RemoteConnectionError):
            connection.list_playlists()
    finally:
        connection.close()


class StrictStickerClient(FakeMPDClient):
    """Rejects lookups of a sticker key no song carries, like MPD does."""

    def sticker_find(self, kind, base, key):
        def run(kind, base, key):
            if key == "never_set":
                raise CommandError("[50@0] {sticker} no such sticker")
            return [{"file": "a.flac", "sticker": f"{key}=1"}]

        return self._dispatch("sticker_find", (kind, base, key), run)


def test_sticker_lookup_falls_back_to_per_key_queries(connect_fake):
    client = StrictStickerClient(songs=[make_song("a.flac")])
    connection = connect_fake(client)

    results = connection.find_stickers(["never_set", "rating"])

    assert results == [[], [{"file": "a.flac", "sticker": "rating=1"}]]


def test_worker_log_lines_reach_the_calling_playlist_log(connect_fake, tmp_path, caplog):
    caplog.set_level(logging.INFO, logger="mpd_music_builder")
    client = StrictStickerClient(songs=[make_song("a.flac")], playlists={"Jazz": []})
    connection = connect_fake(client)
    assert connection.list_playlists() == ["Jazz"]

    with playlist_logging("Jazz", tmp_path):
        client.drop_next_call = True
        connection.list_playlists()
        connection.find_stickers(["never_set", "rating"])

    text = (tmp_path / "Jazz.debug.log").read_text(encoding="utf-8")
    assert "MPD connection lost" in text
    assert "reconnecting" in text
    assert "Batched sticker lookup failed" in text


def test_worker_log_lines_outside_a_playlist_use_the_shared_logger(connect_fake, caplog):
    caplog.set_level(logging.INFO, logger="mpd_music_builder")
    client = FakeMPDClient(playlists={"Jazz": []})
    connection = connect_fake(client)
    connection.list_playlists()

    client.drop_next_call = True
    connection.list_playlists()

    assert "reconnecting" in caplog.text


def test_queue_uris_sends_one_command_list(connect_fake):
    client = FakeMPDClient(songs=[make_song("a.flac"), make_song("b.flac")])
    client.queue = ["old.flac"]
    connection = connect_fake(client)

    assert connection.queue_uris(["a.flac", "b.flac"], play=True) == 2
    assert client.batches[-1] == [("add", "a.flac"), ("add", "b.flac"), ("play", 1)]
    assert client.queue == ["old.flac", "a.flac", "b.flac"]
    assert client.playing == 1

    connection.queue_uris(["b.flac"], replace=True)
    assert client.batches[-1] == [("clear",), ("add", "b.flac")]
    assert client.queue == ["b.flac"]
