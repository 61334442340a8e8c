"""Tests for services/firestore_service.py: song-stack row mapping and client setup."""
from services.firestore_service import song_from_stack_entry


def test_spotify_track_payload_is_mapped():
    row = {
        "user_id": "bob",
        "room_id": "room-1",
        "spotify_track_id": "4u7EnebtmKWzUH433cf5Qv",
        "is_active": True,
        "track_data": {
            "id": "4u7EnebtmKWzUH433cf5Qv",
            "name": "Bohemian Rhapsody",
            "artists": [{"name": "Queen"}, {"name": ""}],
            "preview_url": "https://p.scdn.co/mp3-preview/abc",
            "album": {"images": [{"url": "https://i.scdn.co/image/big"}, {"url": "https://i.scdn.co/image/small"}]},
        },
    }
    ref = song_from_stack_entry("row-1", row)
    assert ref.id == "4u7EnebtmKWzUH433cf5Qv"
    assert ref.title == "Bohemian Rhapsody"
    assert ref.artist == "Queen"
    assert ref.album_art_url == "https://i.scdn.co/image/big"
    assert ref.added_by == "bob"


def test_sparse_row_falls_back_to_row_id():
    ref = song_from_stack_entry("row-7", {"user_id": "cara"})
    assert ref.id == "row-7"
    assert ref.preview_url is None
    assert ref.album_art_url is None


def test_service_account_file_is_used_when_configured(monkeypatch):
    from google.cloud import firestore
    from services import firestore_service

    opened = []

    def from_service_account_json(cls, path, project=None):
        opened.append((path, project))
        return object()

    monkeypatch.setattr(firestore.Client, "from_service_account_json", classmethod(from_service_account_json))
    monkeypatch.setattr(firestore_service.settings, "google_application_credentials", "/secrets/sa.json")
    monkeypatch.setattr(firestore_service.settings, "google_cloud_project", "shotobump")
    monkeypatch.setattr(firestore_service.settings, "firestore_emulator_host", None)

    firestore_service.FirestoreService()
    assert opened == [("/secrets/sa.json", "shotobump")]
