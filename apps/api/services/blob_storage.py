"""Filesystem-backed blob storage for originals and results."""

from __future__ import annotations

import asyncio
from pathlib import Path
import uuid

from config import settings

UPLOADS_URL_PREFIX = "/uploads"


class LocalBlobStorage:
    """Stores blobs under a root directory; refs are root-relative paths."""

    def __init__(self, root: str) -> None:
        self.root = Path(root).resolve()

    def _path_for(self, ref: str) -> Path:
        path = (self.root / ref).resolve()
        if path == self.root or self.root not in path.parents:
            raise ValueError(f"Blob ref escapes storage root: {ref}")
        return path

    def _write(self, ref: str, data: bytes) -> None:
        path = self._path_for(ref)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    async def put(self, data: bytes, suffix: str = ".png", prefix: str = "images") -> str:
        ref = f"{prefix}/{uuid.uuid4().hex}{suffix}"
        await asyncio.to_thread(self._write, ref, data)
        return ref

    async def get(self, ref: str) -> bytes:
        path = self._path_for(ref)
        return await asyncio.to_thread(path.read_bytes)

    async def delete(self, ref: str) -> None:
        path = self._path_for(ref)
        await asyncio.to_thread(path.unlink, True)

    def url_for(self, ref: str) -> str:
        base = (settings.PUBLIC_BASE_URL or "").rstrip("/")
        return f"{base}{UPLOADS_URL_PREFIX}/{ref}"


def get_blob_storage() -> LocalBlobStorage:
    return LocalBlobStorage(settings.UPLOAD_DIR)
