import os
import time
import uuid
from pathlib import Path
from typing import Optional, Union

from fastapi.concurrency import run_in_threadpool

from config import UPLOADS_DIR, MAX_FILE_SIZE, UPLOAD_CHUNK_SIZE
from db import info_logger, error_logger
from errors import ValidationError, NotFoundError


def generate_key(original_name: Optional[str]) -> str:
    """Build a collision-resistant blob key that keeps the original extension.

    >>> generate_key("voice note.MP3")  # doctest: +SKIP
    '1718123456789-3f9c0a1b2d4e4f60a7b8c9d0e1f2a3b4.mp3'
    """
    ext = Path(original_name or "").suffix.lower()
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex}{ext}"


def is_safe_key(key: str) -> bool:
    return bool(key) and ".." not in key and "/" not in key and "\\" not in key


class BlobStore:
    """Filesystem blob store keyed by generated filename.

    Objects are write-once: `save` never overwrites an existing key.
    Disk I/O runs in the threadpool so request handlers never block the loop.
    """

    def __init__(self, root: Union[str, Path] = UPLOADS_DIR,
                 max_file_size: int = MAX_FILE_SIZE,
                 chunk_size: int = UPLOAD_CHUNK_SIZE):
        self.root = Path(root)
        self.max_file_size = max_file_size
        self.chunk_size = chunk_size
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, key: str) -> Path:
        if not is_safe_key(key):
            raise ValidationError("Invalid filename")
        return self.root / key

    async def save(self, source, original_name: Optional[str]) -> str:
        """Stream `source` (anything with an async ``read(size)``) into a new blob.

        Returns the generated key. Raises ValidationError if the content
        exceeds the per-file ceiling; the partial blob is removed first.
        """
        key = generate_key(original_name)
        dest = self.path_for(key)
        written = 0

        handle = await run_in_threadpool(open, dest, "xb")
        try:
            while True:
                chunk = await source.read(self.chunk_size)
                if not chunk:
                    break
                written += len(chunk)
                if written > self.max_file_size:
                    raise ValidationError(
                        f"File too large. Maximum size: {self.max_file_size // 1024 // 1024}MB"
                    )
                await run_in_threadpool(handle.write, chunk)
        except Exception:
            await run_in_threadpool(handle.close)
            await run_in_threadpool(self._unlink_quietly, dest)
            raise
        await run_in_threadpool(handle.close)

        info_logger.info(f"SYSTEM_INFO: Blob stored - Key: {key}, Size: {written} bytes")
        return key

    async def exists(self, key: str) -> bool:
        return await run_in_threadpool(self.path_for(key).is_file)

    async def read(self, key: str) -> bytes:
        path = self.path_for(key)
        try:
            return await run_in_threadpool(path.read_bytes)
        except FileNotFoundError:
            raise NotFoundError("File not found")

    async def open(self, key: str):
        """Open a blob for reading; the handle stays valid if the blob is deleted meanwhile."""
        path = self.path_for(key)
        try:
            return await run_in_threadpool(open, path, "rb")
        except FileNotFoundError:
            raise NotFoundError("File not found")

    def iter_chunks(self, handle):
        with handle:
            while True:
                chunk = handle.read(self.chunk_size)
                if not chunk:
                    break
                yield chunk

    async def delete(self, key: str):
        """Remove a blob; OSError (including a missing key) propagates."""
        await run_in_threadpool(os.unlink, self.path_for(key))
        info_logger.info(f"SYSTEM_INFO: Blob deleted - Key: {key}")

    @staticmethod
    def _unlink_quietly(path: Path):
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            error_logger.error(f"SYSTEM_ERROR: Failed to remove partial blob - Path: {path}, Error: {str(e)}")
