"""Blob storage for uploaded issue photos.

Uploading only produces an ImageRef (a URL). Attaching it to an issue is a
separate step, so a failed attach is retried with the same URL rather than a
second upload.
"""

import logging
import os
import secrets
from pathlib import Path

import errors

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
}
MAX_UPLOAD_BYTES = 5 * 1024 * 1024


class LocalBlobStorage:
    def __init__(self, root: str, base_url: str):
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")

    def upload(self, data: bytes, path: str) -> str:
        target = (self.root / path).resolve()
        if self.root.resolve() not in target.parents:
            raise errors.InvalidInput("Upload path escapes the storage root")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        logger.info("Stored %d bytes at %s", len(data), path)
        return f"{self.base_url}/{path}"


def image_path(user_id: int, content_type: str) -> str:
    ext = IMAGE_EXTENSIONS.get(content_type)
    if ext is None:
        raise errors.InvalidInput(f"Unsupported image type: {content_type}")
    return os.path.join(str(user_id), f"{secrets.token_hex(8)}.{ext}").replace(os.sep, "/")


def upload_image(storage: LocalBlobStorage, user_id: int, content_type: str, data: bytes) -> str:
    if not data:
        raise errors.InvalidInput("Uploaded image is empty")
    if len(data) > MAX_UPLOAD_BYTES:
        raise errors.InvalidInput(f"Images must be at most {MAX_UPLOAD_BYTES // (1024 * 1024)} MB")
    return storage.upload(data, image_path(user_id, content_type))
