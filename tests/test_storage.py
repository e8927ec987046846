# tests/test_storage.py

import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from errors import StorageError


def test_same_bytes_same_key(store):
    first = store.upload(b"video", prefix="videos")
    second = store.upload(b"video", prefix="videos")

    assert first == second
    assert first.key.startswith("videos/") and first.key.endswith(".mp4")
    assert first.public_url == f"http://testserver/media/{first.key}"
    assert store.read(first.key) == b"video"


def test_public_url_maps_back_to_key(store):
    stored = store.upload(b"clip", prefix="merged")

    assert store.key_from_url(stored.public_url) == stored.key
    assert store.key_from_url("https://elsewhere/video.mp4") is None


def test_empty_upload_is_refused(store):
    with pytest.raises(StorageError):
        store.upload(b"", prefix="videos")


def test_keys_cannot_escape_the_bucket(store):
    with pytest.raises(StorageError) as excinfo:
        store.path_for("../../etc/passwd")
    assert excinfo.value.status_code == 403


def test_missing_object(store):
    assert not store.exists("videos/nothing.mp4")
    with pytest.raises(StorageError) as excinfo:
        store.read("videos/nothing.mp4")
    assert excinfo.value.status_code == 404


def test_write_failure_is_a_storage_error(store, monkeypatch):
    def refuse(*args, **kwargs):
        raise PermissionError("read-only bucket")

    monkeypatch.setattr(os, "makedirs", refuse)

    with pytest.raises(StorageError, match="Upload failed"):
        store.upload(b"video", prefix="videos")
