import io
import threading

import pytest

from conftest import FakeMPDClient, make_song
from mpd_music_builder.api import create_app
from mpd_music_builder.builder import PlaylistBuilder
from mpd_music_builder.rules import DynamicPlaylist, TagQuery
from mpd_music_builder.scheduler import Scheduler
from mpd_music_builder.store import PlaylistStore


class BlockingRunner:
    """Cycle runner that holds every cycle until ``release`` is called."""

    def __init__(self):
        self.started = threading.Event()
        self.gate = threading.Event()
        self.calls = []

    def __call__(self, name):
        self.calls.append(name)
        self.started.set()
        assert self.gate.wait(timeout=5)
        return name

    def release(self):
        self.gate.set()


@pytest.fixture
def store(tmp_path):
    store = PlaylistStore(tmp_path / "playlists.yml", tmp_path / "state.json").load()
    store.save_playlist(
        DynamicPlaylist(name="Fresh Jazz", rules=TagQuery("genre", "equals", "Jazz"), limit=10)
    )
    return store


@pytest.fixture
def runner():
    runner = BlockingRunner()
    yield runner
    runner.release()


@pytest.fixture
def scheduler(store, runner):
    scheduler = Scheduler(
        runner,
        max_workers=1,
        apply_edit=store.save_playlist,
        apply_removal=store.delete_playlist,
    )
    for playlist in store.all():
        scheduler.register(playlist.name, playlist.schedule)
    yield scheduler
    runner.release()
    scheduler.shutdown(wait=True)


@pytest.fixture
def client(store, scheduler):
    app = create_app(store, scheduler)
    app.testing = True
    return app.test_client()


def test_list_playlists(client):
    response = client.get("/api/playlists")

    assert response.status_code == 200
    playlists = response.get_json()["playlists"]
    assert [entry["name"] for entry in playlists] == ["Fresh Jazz"]
    assert playlists[0]["status"]["state"] == "idle"
    assert playlists[0]["track_count"] is None


def test_get_playlist_returns_definition(client):
    response = client.get("/api/playlists/Fresh%20Jazz")

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["definition"] == {
        "name": "Fresh Jazz",
        "rules": {"type": "tag", "field": "genre", "operator": "equals", "value": "Jazz"},
        "limit": 10,
        "schedule": "manual",
    }
    assert payload["snapshot"] is None


def test_unknown_playlist_is_404(client):
    assert client.get("/api/playlists/Nope").status_code == 404
    assert client.post("/api/playlists/Nope/refresh").status_code == 404
    assert client.delete("/api/playlists/Nope").status_code == 404
    assert client.get("/api/playlists/Nope/export").status_code == 404


def test_refresh_while_refreshing_is_rejected(client, runner, scheduler):
    first = client.post("/api/playlists/Fresh%20Jazz/refresh")
    second = client.post("/api/playlists/Fresh%20Jazz/refresh")

    assert first.status_code == 202
    assert second.status_code == 409

    runner.release()
    scheduler.wait_idle(timeout=5)
    assert runner.calls == ["Fresh Jazz"]


def test_put_saves_immediately_when_idle(client, store):
    response = client.put(
        "/api/playlists/Fresh%20Jazz",
        json={
            "rules": {"type": "tag", "field": "genre", "operator": "equals", "value": "Bebop"},
            "schedule": "manual",
        },
    )

    assert response.status_code == 200
    assert response.get_json()["status"] == "saved"
    assert store.get("Fresh Jazz").rules == TagQuery("genre", "equals", "Bebop")
    assert store.get("Fresh Jazz").limit is None


def test_put_during_refresh_is_applied_after_the_cycle(client, store, runner, scheduler):
    client.post("/api/playlists/Fresh%20Jazz/refresh")
    assert runner.started.wait(timeout=5)

    response = client.put("/api/playlists/Fresh%20Jazz", json={"name": "Fresh Jazz", "limit": 3, "schedule": "manual"})

    assert response.status_code == 202
    assert store.get("Fresh Jazz").limit == 10

    runner.release()
    scheduler.wait_idle(timeout=5)
    assert store.get("Fresh Jazz").limit == 3


def test_put_rejects_bad_documents(client):
    mismatch = client.put("/api/playlists/Fresh%20Jazz", json={"name": "Other", "schedule": "manual"})
    invalid = client.put("/api/playlists/Fresh%20Jazz", json={"limit": 0, "schedule": "manual"})

    assert mismatch.status_code == 400
    assert invalid.status_code == 400
    assert invalid.get_json()["problems"]


def test_delete_when_idle(client, store, scheduler):
    response = client.delete("/api/playlists/Fresh%20Jazz")

    assert response.status_code == 200
    assert "Fresh Jazz" not in store
    assert "Fresh Jazz" not in scheduler


def test_delete_during_refresh_waits_for_the_cycle(client, store, runner, scheduler):
    client.post("/api/playlists/Fresh%20Jazz/refresh")
    assert runner.started.wait(timeout=5)

    response = client.delete("/api/playlists/Fresh%20Jazz")

    assert response.status_code == 202
    assert "Fresh Jazz" in store

    runner.release()
    scheduler.wait_idle(timeout=5)
    assert "Fresh Jazz" not in store


def test_export_sets_a_safe_attachment_name(client):
    response = client.get("/api/playlists/Fresh%20Jazz/export")

    assert response.status_code == 200
    assert 'filename="Fresh_Jazz.edp.json"' in response.headers["Content-Disposition"]
    assert response.get_json()["name"] == "Fresh Jazz"


def test_import_json_body_and_conflicts(client, store):
    created = client.post("/api/playlists/import", json={"name": "Imported", "limit": 5, "schedule": "manual"})
    conflict = client.post("/api/playlists/import", json={"name": "Imported", "limit": 7, "schedule": "manual"})
    replaced = client.post("/api/playlists/import?replace=1", json={"name": "Imported", "limit": 7, "schedule": "manual"})

    assert created.status_code == 201
    assert conflict.status_code == 409
    assert replaced.status_code == 201
    assert store.get("Imported").limit == 7


def test_import_file_upload(client, store):
    data = {"file": (io.BytesIO(b'{"name": "Uploaded", "order": {"shuffle": true}, "schedule": "manual"}'), "Uploaded.edp.json")}

    response = client.post("/api/playlists/import", data=data, content_type="multipart/form-data")

    assert response.status_code == 201
    assert store.get("Uploaded").shuffle is True


def test_import_rejects_invalid_uploads(client):
    data = {"file": (io.BytesIO(b"{oops"), "broken.edp.json")}

    assert client.post("/api/playlists/import", data=data, content_type="multipart/form-data").status_code == 400
    assert client.post("/api/playlists/import", json={"name": "", "schedule": "manual"}).status_code == 400


@pytest.fixture
def mpd():
    mpd = FakeMPDClient(songs=[make_song("a.flac"), make_song("b.flac")])
    mpd.queue = ["old.flac"]
    return mpd


@pytest.fixture
def queue_client(store, scheduler, mpd, connect_fake):
    builder = PlaylistBuilder(connect_fake(mpd), store, show_progress=False)
    app = create_app(store, scheduler, builder)
    app.testing = True
    return app.test_client()


def test_queue_needs_a_cached_result(queue_client, mpd):
    response = queue_client.post("/api/playlists/Fresh%20Jazz/queue")

    assert response.status_code == 409
    assert mpd.queue == ["old.flac"]


def test_queue_appends_without_playing_by_default(queue_client, store, mpd):
    store.record_success("Fresh Jazz", ["a.flac", "b.flac"], 1.0)

    response = queue_client.post("/api/playlists/Fresh%20Jazz/queue")

    assert response.status_code == 200
    assert response.get_json()["tracks"] == 2
    assert mpd.queue == ["old.flac", "a.flac", "b.flac"]
    assert mpd.playing is None
    assert mpd.batches[-1] == [("add", "a.flac"), ("add", "b.flac")]


def test_queue_append_can_start_at_the_first_added_track(queue_client, store, mpd):
    store.record_success("Fresh Jazz", ["a.flac", "b.flac"], 1.0)

    response = queue_client.post("/api/playlists/Fresh%20Jazz/queue", json={"play": True})

    assert response.status_code == 200
    assert mpd.playing == 1


def test_queue_replace_clears_and_plays(queue_client, store, mpd):
    store.record_success("Fresh Jazz", ["b.flac", "a.flac"], 1.0)

    response = queue_client.post("/api/playlists/Fresh%20Jazz/queue", json={"replace": True})

    assert response.status_code == 200
    assert mpd.queue == ["b.flac", "a.flac"]
    assert mpd.playing == 0
    assert mpd.batches[-1] == [("clear",), ("add", "b.flac"), ("add", "a.flac"), ("play", 0)]


def test_queue_reports_server_rejections(queue_client, store, mpd):
    store.record_success("Fresh Jazz", ["a.flac", "gone.flac"], 1.0)

    response = queue_client.post("/api/playlists/Fresh%20Jazz/queue")

    assert response.status_code == 502


def test_queue_unknown_or_unavailable(queue_client, client):
    assert queue_client.post("/api/playlists/Nope/queue").status_code == 404
    assert client.post("/api/playlists/Fresh%20Jazz/queue").status_code == 503
