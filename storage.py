"""Local file store for product and category images."""
import os
import secrets
import time
from typing import Any, Dict

import structlog
from fastapi import UploadFile

from errors import NotFound, ValidationFailed

logger = structlog.get_logger(__name__)

UPLOAD_DIR = os.getenv("UPLOAD_DIR", "uploads")
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", 5 * 1024 * 1024))
MAX_UPLOAD_FILES = 10
UPLOAD_URL_PREFIX = "/uploads"
CHUNK_SIZE = 64 * 1024


class LocalImageStore:
    def __init__(self, root: str = UPLOAD_DIR, max_bytes: int = MAX_UPLOAD_BYTES):
        self.root = root
        self.max_bytes = max_bytes

    def save(self, upload: UploadFile, field_name: str = "image") -> Dict[str, Any]:
        if upload is None or not upload.filename:
            raise ValidationFailed("No file uploaded")
        if not (upload.content_type or "").startswith("image/"):
            raise ValidationFailed("Only image files are allowed")

        os.makedirs(self.root, exist_ok=True)
        _, ext = os.path.splitext(upload.filename)
        filename = f"{field_name}-{int(time.time() * 1000)}-{secrets.randbelow(10 ** 9)}{ext.lower()}"
        path = os.path.join(self.root, filename)

        size = 0
        with open(path, "wb") as out:
            while True:
                chunk = upload.file.read(CHUNK_SIZE)
                if not chunk:
                    break
                size += len(chunk)
                if size > self.max_bytes:
                    out.close()
                    os.remove(path)
                    raise ValidationFailed(f"File too large, limit is {self.max_bytes // (1024 * 1024)}MB")
                out.write(chunk)

        logger.info("image_uploaded", filename=filename, size=size)
        return {"filename": filename, "url": f"{UPLOAD_URL_PREFIX}/{filename}", "size": size}

    def delete(self, filename: str) -> None:
        # Only bare names inside the upload root.
        name = os.path.basename(filename)
        if not name or name != filename:
            raise ValidationFailed("Invalid file name")
        path = os.path.join(self.root, name)
        if not os.path.isfile(path):
            raise NotFound("File not found")
        os.remove(path)
        logger.info("image_deleted", filename=name)
