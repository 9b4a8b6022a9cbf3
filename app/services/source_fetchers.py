"""Pull supplier files from FTP or HTTP(S) into blob storage."""
import ftplib
import logging
import posixpath
import tempfile
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

import httpx

from app.services.storage import STREAM_CHUNK_SIZE, BlobStorage

SPOOL_MAX_MEMORY = 8 * 1024 * 1024

logger = logging.getLogger(__name__)


@dataclass
class RemoteSource:
    """Where a supplier file lives; `kind` is ftp or http."""

    kind: str
    url: Optional[str] = None
    host: Optional[str] = None
    port: int = 21
    username: str = "anonymous"
    password: str = ""
    remote_path: Optional[str] = None
    use_tls: bool = False
    timeout: float = 60.0

    @property
    def filename(self) -> str:
        if self.kind == "ftp":
            return posixpath.basename(self.remote_path or "") or "supplier.csv"
        return posixpath.basename(urlparse(self.url or "").path) or "supplier.csv"


def source_path(user_id: str, job_id: str, filename: str) -> str:
    return f"{user_id}/sources/{job_id}_{filename}"


def fetch_ftp(source: RemoteSource, storage: BlobStorage, path: str) -> int:
    """Download over (optionally TLS) FTP, spooling to disk past a few MB."""
    ftp_class = ftplib.FTP_TLS if source.use_tls else ftplib.FTP
    size = 0
    with tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_MEMORY) as spool:
        ftp = ftp_class()
        try:
            ftp.connect(source.host, source.port, timeout=source.timeout)
            ftp.login(source.username, source.password)
            if source.use_tls:
                ftp.prot_p()
            logger.info(f"📡 Downloading ftp://{source.host}{source.remote_path}")
            ftp.retrbinary(f"RETR {source.remote_path}", spool.write, blocksize=STREAM_CHUNK_SIZE)
        finally:
            try:
                ftp.quit()
            except (ftplib.Error, OSError):
                ftp.close()
        size = spool.tell()
        spool.seek(0)
        storage.upload(path, spool, "text/csv")
    logger.info(f"✅ Stored {size} bytes at {path}")
    return size


def fetch_http(
    source: RemoteSource, storage: BlobStorage, path: str, transport: Optional[httpx.BaseTransport] = None
) -> int:
    """Stream an HTTP(S) download into storage."""
    size = 0
    with tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_MEMORY) as spool:
        with httpx.Client(timeout=source.timeout, follow_redirects=True, transport=transport) as client:
            logger.info(f"📡 Downloading {source.url}")
            with client.stream("GET", source.url) as response:
                response.raise_for_status()
                for chunk in response.iter_bytes(STREAM_CHUNK_SIZE):
                    spool.write(chunk)
                    size += len(chunk)
        spool.seek(0)
        storage.upload(path, spool, response.headers.get("content-type", "text/csv"))
    logger.info(f"✅ Stored {size} bytes at {path}")
    return size


def fetch_to_storage(source: RemoteSource, storage: BlobStorage, path: str, **kwargs) -> int:
    if source.kind == "ftp":
        return fetch_ftp(source, storage, path)
    if source.kind == "http":
        return fetch_http(source, storage, path, **kwargs)
    raise ValueError(f"Unsupported source kind: {source.kind}")
