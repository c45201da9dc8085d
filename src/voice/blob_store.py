"""
Local archival store for call recordings.

Files are written under BLOB_STORE_DIR and served by the API's /blobs mount,
so the returned URL is BLOB_PUBLIC_BASE_URL joined with the relative path.
"""

import asyncio
import os
from typing import Optional

from ..evolver import config
from ..evolver.errors import ProviderError, ValidationError


class LocalBlobStore:
    def __init__(self, root_dir: Optional[str] = None, public_base_url: Optional[str] = None):
        self.root_dir = os.path.abspath(root_dir or config.BLOB_STORE_DIR)
        self.public_base_url = (public_base_url or config.BLOB_PUBLIC_BASE_URL).rstrip("/")

    def _resolve(self, path: str) -> str:
        full = os.path.abspath(os.path.join(self.root_dir, path))
        if os.path.commonpath([full, self.root_dir]) != self.root_dir:
            raise ValidationError(f"Blob path escapes store root: {path}")
        return full

    @staticmethod
    def _write(full_path: str, data: bytes) -> None:
        os.makedirs(os.path.dirname(full_path), exist_ok=True)
        with open(full_path, "wb") as f:
            f.write(data)

    async def put(self, path: str, data: bytes) -> str:
        """Write data at path (relative to the store root) and return its public URL."""
        full_path = self._resolve(path)
        try:
            await asyncio.to_thread(self._write, full_path, data)
        except OSError as e:
            raise ProviderError("blob_store", f"write failed for {path}: {e}", cause=e) from e
        return f"{self.public_base_url}/{path.lstrip('/')}"
