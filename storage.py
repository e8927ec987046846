"""
Content-addressed object storage for generated media.
Objects live under MEDIA_DIR and are served back through GET /media/{key}.
"""

import hashlib
import logging
import os
import tempfile
from dataclasses import dataclass

from config import MEDIA_DIR, PUBLIC_BASE_URL
from errors import StorageError


@dataclass(frozen=True)
class StoredObject:
    key: str
    public_url: str
    size: int


class ObjectStorage:
    """A bucket directory; writing the same bytes twice yields the same key."""

    def __init__(self, root_dir: str = MEDIA_DIR, public_base_url: str = PUBLIC_BASE_URL):
        self.root_dir = os.path.abspath(root_dir)
        self.public_base_url = public_base_url.rstrip("/")

    @staticmethod
    def content_key(data: bytes, prefix: str, extension: str) -> str:
        digest = hashlib.sha256(data).hexdigest()
        return f"{prefix.strip('/')}/{digest}{extension}"

    def path_for(self, key: str) -> str:
        """Resolve a key inside the bucket, refusing anything that escapes it."""
        path = os.path.abspath(os.path.join(self.root_dir, key))
        if os.path.commonpath([path, self.root_dir]) != self.root_dir:
            raise StorageError(f"Key escapes the media bucket: {key}", status_code=403)
        return path

    def public_url(self, key: str) -> str:
        return f"{self.public_base_url}/media/{key}"

    def key_from_url(self, url: str):
        """Return the bucket key for one of our public URLs, or None for foreign URLs."""
        prefix = f"{self.public_base_url}/media/"
        if url.startswith(prefix):
            return url[len(prefix):]
        return None

    def exists(self, key: str) -> bool:
        return os.path.isfile(self.path_for(key))

    def read(self, key: str) -> bytes:
        try:
            with open(self.path_for(key), "rb") as f:
                return f.read()
        except FileNotFoundError:
            raise StorageError(f"Object not found: {key}", status_code=404)

    def upload(self, data: bytes, prefix: str, extension: str = ".mp4") -> StoredObject:
        if not data:
            raise StorageError("Refusing to store an empty object")

        key = self.content_key(data, prefix, extension)
        path = self.path_for(key)
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            # write then rename so readers never see a partial file
            fd, tmp_path = tempfile.mkstemp(dir=os.path.dirname(path), suffix=".part")
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_path, path)
        except OSError as e:
            logging.error(f"❌ Upload error for {key}: {e}")
            raise StorageError(f"Upload failed: {e}")

        logging.info(f"💾 Stored {len(data)} bytes at {key}")
        return StoredObject(key=key, public_url=self.public_url(key), size=len(data))


storage = ObjectStorage()
