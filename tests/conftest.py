# tests/conftest.py

import os
import sys
import tempfile

import pytest

# Add the parent directory to the Python path so we can import from it
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# config reads the environment at import time, so point it at throwaway resources first
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["MEDIA_DIR"] = tempfile.mkdtemp(prefix="talking-figures-media-")
os.environ["PUBLIC_BASE_URL"] = "http://testserver"

from database import Base, SessionLocal, engine  # noqa: E402
import models  # noqa: E402,F401


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def store(tmp_path):
    from storage import ObjectStorage
    return ObjectStorage(root_dir=str(tmp_path / "bucket"), public_base_url="http://testserver")


class FakeResponse:
    """Just enough of requests.Response for the code under test."""

    def __init__(self, status_code=200, json_data=None, content=b"", headers=None, chunks=None):
        self.status_code = status_code
        self._json = json_data
        self.content = content
        self.headers = headers or {}
        self._chunks = chunks
        self.text = content.decode("utf-8", "replace") if content else ""

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self._json is None:
            raise ValueError("No JSON body")
        return self._json

    def iter_content(self, chunk_size=1):
        return iter(self._chunks if self._chunks is not None else [self.content])


@pytest.fixture
def fake_response():
    return FakeResponse
