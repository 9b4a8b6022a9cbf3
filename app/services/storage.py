"""Blob storage for raw supplier files and checkpoint batches."""
import logging
import shutil
from abc import ABC, abstractmethod
from functools import lru_cache
from pathlib import Path
from typing import BinaryIO, Iterator, List, Optional, Union

import httpx

from app.config import get_settings
from app.services.errors import StorageError

logger = logging.getLogger(__name__)

Content = Union[bytes, BinaryIO]

STREAM_CHUNK_SIZE = 64 * 1024
SIGNED_URL_TTL_SECONDS = 600


class BlobStorage(ABC):
    """upload / download / list primitives over a flat namespace of paths."""

    @abstractmethod
    def upload(self, path: str, content: Content, content_type: str = "application/octet-stream") -> None:
        ...

    @abstractmethod
    def download(self, path: str) -> bytes:
        ...

    @abstractmethod
    def list(self, prefix: str) -> List[str]:
        """Full paths of blobs whose path starts with `prefix`."""
        ...

    def iter_chunks(self, path: str, chunk_size: int = STREAM_CHUNK_SIZE) -> Iterator[bytes]:
        """Stream a blob; backends without ranged reads fall back to one download."""
        data = self.download(path)
        for start in range(0, len(data), chunk_size):
            yield data[start:start + chunk_size]


class LocalBlobStorage(BlobStorage):
    """Blobs stored as files under a root directory."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, path: str) -> Path:
        resolved = (self.root / path).resolve()
        if self.root.resolve() not in resolved.parents:
            raise StorageError(f"Path escapes storage root: {path}")
        return resolved

    def upload(self, path: str, content: Content, content_type: str = "application/octet-stream") -> None:
        target = self._resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(target, "wb") as buffer:
                if isinstance(content, (bytes, bytearray)):
                    buffer.write(content)
                else:
                    shutil.copyfileobj(content, buffer, STREAM_CHUNK_SIZE)
        except OSError as e:
            raise StorageError(f"Failed to upload {path}: {e}") from e

    def download(self, path: str) -> bytes:
        try:
            return self._resolve(path).read_bytes()
        except OSError as e:
            raise StorageError(f"Failed to download {path}: {e}") from e

    def iter_chunks(self, path: str, chunk_size: int = STREAM_CHUNK_SIZE) -> Iterator[bytes]:
        try:
            with open(self._resolve(path), "rb") as f:
                while True:
                    chunk = f.read(chunk_size)
                    if not chunk:
                        break
                    yield chunk
        except OSError as e:
            raise StorageError(f"Failed to read {path}: {e}") from e

    def list(self, prefix: str) -> List[str]:
        directory, _, name_prefix = prefix.rpartition("/")
        folder = self._resolve(directory) if directory else self.root
        if not folder.is_dir():
            return []
        return sorted(
            f"{directory}/{entry.name}" if directory else entry.name
            for entry in folder.iterdir()
            if entry.is_file() and entry.name.startswith(name_prefix)
        )


class SupabaseBlobStorage(BlobStorage):
    """
    Blobs stored in a Supabase storage bucket.

    Small byte payloads (checkpoints) go through the SDK. File objects and
    streamed reads go through short-lived signed URLs with httpx, so a
    supplier file is never held in memory as a whole.
    """

    def __init__(
        self,
        client,
        bucket: str,
        transport: Optional[httpx.BaseTransport] = None,
        timeout: float = 60.0,
        signed_url_ttl: int = SIGNED_URL_TTL_SECONDS,
    ):
        self.client = client
        self.bucket = bucket
        self.transport = transport
        self.timeout = timeout
        self.signed_url_ttl = signed_url_ttl

    def _bucket(self):
        return self.client.storage.from_(self.bucket)

    def _http(self) -> httpx.Client:
        return httpx.Client(timeout=self.timeout, transport=self.transport)

    def upload(self, path: str, content: Content, content_type: str = "application/octet-stream") -> None:
        if isinstance(content, (bytes, bytearray)):
            try:
                self._bucket().upload(path, bytes(content), {"content-type": content_type, "upsert": "true"})
            except Exception as e:
                raise StorageError(f"Failed to upload {path}: {e}") from e
            return

        try:
            signed = self._bucket().create_signed_upload_url(path)
            url = signed.get("signed_url") or signed.get("signedUrl")
            size = _remaining_size(content)
            headers = {"content-type": content_type, "x-upsert": "true"}
            if size is not None:
                headers["content-length"] = str(size)
            with self._http() as client:
                response = client.put(url, content=_read_chunks(content), headers=headers)
                response.raise_for_status()
        except Exception as e:
            raise StorageError(f"Failed to upload {path}: {e}") from e
        logger.info(f"✅ Streamed {path} to bucket '{self.bucket}'")

    def download(self, path: str) -> bytes:
        try:
            return self._bucket().download(path)
        except Exception as e:
            raise StorageError(f"Failed to download {path}: {e}") from e

    def iter_chunks(self, path: str, chunk_size: int = STREAM_CHUNK_SIZE) -> Iterator[bytes]:
        try:
            signed = self._bucket().create_signed_url(path, self.signed_url_ttl)
            url = signed.get("signedURL") or signed.get("signedUrl")
            with self._http() as client:
                with client.stream("GET", url) as response:
                    response.raise_for_status()
                    yield from response.iter_bytes(chunk_size)
        except Exception as e:
            raise StorageError(f"Failed to read {path}: {e}") from e

    def list(self, prefix: str) -> List[str]:
        directory, _, name_prefix = prefix.rpartition("/")
        try:
            entries = self._bucket().list(directory, {"limit": 10000, "search": name_prefix})
        except Exception as e:
            raise StorageError(f"Failed to list {prefix}: {e}") from e
        return sorted(
            f"{directory}/{entry['name']}" if directory else entry["name"]
            for entry in entries
            if entry.get("name", "").startswith(name_prefix)
        )


def _read_chunks(content: BinaryIO, chunk_size: int = STREAM_CHUNK_SIZE) -> Iterator[bytes]:
    while True:
        chunk = content.read(chunk_size)
        if not chunk:
            break
        yield chunk


def _remaining_size(content: BinaryIO) -> Optional[int]:
    """Bytes left in a seekable file object, None when it cannot seek."""
    try:
        position = content.tell()
        end = content.seek(0, 2)
        content.seek(position)
    except (AttributeError, OSError, ValueError):
        return None
    return end - position


@lru_cache
def get_storage() -> BlobStorage:
    """Storage backend selected by settings (also a FastAPI dependency)."""
    settings = get_settings()
    if settings.storage_backend == "supabase":
        from supabase import create_client

        if not settings.supabase_url or not settings.supabase_service_role_key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        client = create_client(settings.supabase_url, settings.supabase_service_role_key)
        logger.info(f"🗄️ Using Supabase storage bucket '{settings.storage_bucket}'")
        return SupabaseBlobStorage(client, settings.storage_bucket)

    logger.info(f"🗄️ Using local storage at {settings.storage_dir}")
    return LocalBlobStorage(settings.storage_dir)
