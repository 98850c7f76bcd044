"""Cloud object store: folder creation and resumable stream upload.

Only Google Drive is implemented.  Credentials are opaque to the rest of the
package: a token provider returns a bearer token and the store does the rest.
"""

from __future__ import annotations

import functools
import json
import logging
import os
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import BinaryIO, Callable

import requests

logger = logging.getLogger(__name__)

DRIVE_FILES_URL = "https://www.googleapis.com/drive/v3/files"
DRIVE_UPLOAD_URL = "https://www.googleapis.com/upload/drive/v3/files"
FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"

UPLOAD_GRANULARITY = 256 * 1024     # Drive requires non-final chunks in multiples of this
DEFAULT_CHUNK_SIZE = UPLOAD_GRANULARITY
DEFAULT_UPLOAD_TIMEOUT = 15 * 60.0
DEFAULT_MAX_RETRIES = 5
MAX_BACKOFF = 60.0

TRANSIENT_STATUSES = frozenset({408, 429, 500, 502, 503, 504})


class CloudUploadError(Exception):
    """Raised when a cloud API call fails for good."""


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------


class CloudStore(ABC):
    """What the upload strategies need from a cloud object store."""

    @abstractmethod
    def create_folder(self, name: str, parent_id: str | None = None) -> str:
        """Return the id of folder *name* under *parent_id*, creating it if needed."""

    @abstractmethod
    def upload_stream(
        self,
        stream: BinaryIO,
        name: str,
        mime_type: str,
        folder_id: str | None,
        *,
        size: int,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        timeout: float = DEFAULT_UPLOAD_TIMEOUT,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> str:
        """Upload *size* bytes read from *stream*; return the new object id."""

    def upload_file(self, path: str, name: str, mime_type: str, folder_id: str | None, **kwargs) -> str:
        with open(path, "rb") as fh:
            return self.upload_stream(fh, name, mime_type, folder_id, size=os.path.getsize(path), **kwargs)


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


class FileTokenProvider:
    """Reads a bearer token from a JSON credentials file on every call.

    The file is expected to contain ``access_token`` (or ``token``); an
    external process keeps it fresh.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()

    def __call__(self) -> str:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise CloudUploadError(f"Cannot read cloud credentials from {self.path}: {exc}") from exc
        token = None
        if isinstance(data, dict):
            token = data.get("access_token") or data.get("token")
        if not token:
            raise CloudUploadError(f"No access token in {self.path}")
        return token


# ---------------------------------------------------------------------------
# Google Drive
# ---------------------------------------------------------------------------

# One lock per (parent, name) so concurrent jobs for the same server and day
# do not each create a folder.
_folder_locks: dict[tuple[str | None, str], threading.Lock] = {}
_folder_locks_guard = threading.Lock()


def _folder_lock(parent_id: str | None, name: str) -> threading.Lock:
    with _folder_locks_guard:
        return _folder_locks.setdefault((parent_id, name), threading.Lock())


def _escape_query(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


def _committed_bytes(range_header: str | None) -> int:
    """``bytes=0-524287`` → 524288; a missing header means nothing is stored."""
    if not range_header or "-" not in range_header:
        return 0
    return int(range_header.rsplit("-", 1)[1]) + 1


def _read_exact(stream: BinaryIO, n: int) -> bytes:
    """Read up to *n* bytes, looping over short reads until EOF."""
    parts = []
    remaining = n
    while remaining > 0:
        data = stream.read(remaining)
        if not data:
            break
        parts.append(data)
        remaining -= len(data)
    return b"".join(parts)


class GoogleDriveStore(CloudStore):
    """Google Drive v3 over plain REST with resumable uploads."""

    def __init__(
        self,
        token_provider: Callable[[], str],
        session: requests.Session | None = None,
        request_timeout: float = 60.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._token_provider = token_provider
        self._session = session or requests.Session()
        self.request_timeout = request_timeout
        self._sleep = sleep
        self._clock = clock

    def _headers(self, extra: dict | None = None) -> dict:
        headers = {"Authorization": f"Bearer {self._token_provider()}"}
        if extra:
            headers.update(extra)
        return headers

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        try:
            response = self._session.request(
                method, url, headers=self._headers(kwargs.pop("headers", None)),
                timeout=self.request_timeout, **kwargs,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise CloudUploadError(f"Drive {method} {url} failed: {exc}") from exc
        return response

    # ------------------------------------------------------------------
    # Folders
    # ------------------------------------------------------------------

    def find_folder(self, name: str, parent_id: str | None = None) -> str | None:
        """Return the oldest non-trashed folder called *name* under *parent_id*."""
        query = f"name = '{_escape_query(name)}' and mimeType = '{FOLDER_MIME_TYPE}' and trashed = false"
        if parent_id:
            query += f" and '{_escape_query(parent_id)}' in parents"
        response = self._request("GET", DRIVE_FILES_URL, params={
            "q": query,
            "fields": "files(id, name, createdTime)",
            "orderBy": "createdTime",
            "spaces": "drive",
            "supportsAllDrives": "true",
            "includeItemsFromAllDrives": "true",
        })
        files = response.json().get("files", [])
        return files[0]["id"] if files else None

    def create_folder(self, name: str, parent_id: str | None = None) -> str:
        with _folder_lock(parent_id, name):
            existing = self.find_folder(name, parent_id)
            if existing:
                logger.info("Reusing existing folder '%s' (%s)", name, existing)
                return existing

            body: dict = {"name": name, "mimeType": FOLDER_MIME_TYPE}
            if parent_id:
                body["parents"] = [parent_id]
            response = self._request(
                "POST", DRIVE_FILES_URL, json=body,
                params={"fields": "id", "supportsAllDrives": "true"},
            )
            created = response.json()["id"]
            logger.info("Created folder '%s' (%s)", name, created)

            # Another process may have created the same folder meanwhile;
            # everybody settles on the oldest one.
            return self.find_folder(name, parent_id) or created

    # ------------------------------------------------------------------
    # Uploads
    # ------------------------------------------------------------------

    def upload_stream(
        self,
        stream: BinaryIO,
        name: str,
        mime_type: str,
        folder_id: str | None,
        *,
        size: int,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        timeout: float = DEFAULT_UPLOAD_TIMEOUT,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> str:
        """Resumable upload: one session, sequential chunks, per-chunk retry.

        Raises:
            CloudUploadError: Non-transient HTTP status, retries exhausted,
                the stream ended early, or *timeout* elapsed.
        """
        if chunk_size % UPLOAD_GRANULARITY:
            raise ValueError(f"chunk_size must be a multiple of {UPLOAD_GRANULARITY}")

        deadline = self._clock() + timeout
        session_url = self._start_resumable(name, mime_type, folder_id, size)
        logger.info("Resumable upload started for %s (%d bytes, chunk %d)", name, size, chunk_size)

        if size == 0:
            _, file_id = self._put_chunk(session_url, b"", 0, size, deadline, max_retries)
            if file_id:
                return file_id

        offset = 0
        while offset < size:
            data = _read_exact(stream, min(chunk_size, size - offset))
            if not data:
                raise CloudUploadError(f"Source stream ended at {offset} of {size} bytes")
            offset, file_id = self._put_chunk(session_url, data, offset, size, deadline, max_retries)
            if file_id:
                logger.info("Upload of %s completed: %s", name, file_id)
                return file_id
        raise CloudUploadError(f"Upload of {name} finished without a file id")

    def _start_resumable(self, name: str, mime_type: str, folder_id: str | None, size: int) -> str:
        metadata: dict = {"name": name}
        if folder_id:
            metadata["parents"] = [folder_id]
        response = self._request(
            "POST", DRIVE_UPLOAD_URL,
            params={"uploadType": "resumable", "supportsAllDrives": "true", "fields": "id"},
            json=metadata,
            headers={"X-Upload-Content-Type": mime_type, "X-Upload-Content-Length": str(size)},
        )
        location = response.headers.get("Location")
        if not location:
            raise CloudUploadError("Drive did not return a resumable session URL")
        return location

    def _put_chunk(
        self,
        session_url: str,
        data: bytes,
        offset: int,
        size: int,
        deadline: float,
        max_retries: int,
    ) -> tuple[int, str | None]:
        """Send *data* at *offset*; return ``(next_offset, file_id_or_None)``."""
        failures = 0
        while True:
            if self._clock() > deadline:
                raise CloudUploadError(f"Upload deadline exceeded at offset {offset}")

            content_range = f"bytes {offset}-{offset + len(data) - 1}/{size}" if data else f"bytes */{size}"
            try:
                response = self._session.put(
                    session_url,
                    data=data,
                    headers=self._headers({"Content-Length": str(len(data)), "Content-Range": content_range}),
                    timeout=self.request_timeout,
                )
            except requests.RequestException as exc:
                reason = str(exc)
            else:
                status = response.status_code
                if status in (200, 201):
                    return size, response.json()["id"]
                if status == 308:
                    committed = _committed_bytes(response.headers.get("Range"))
                    if committed >= offset + len(data):
                        return committed, None
                    if committed > offset:
                        # Partially stored: resend only the tail
                        data = data[committed - offset:]
                        offset = committed
                        continue
                    reason = f"server kept no bytes from offset {offset}"
                elif status in TRANSIENT_STATUSES:
                    reason = f"HTTP {status}"
                else:
                    raise CloudUploadError(f"Upload chunk rejected with HTTP {status}: {response.text[:200]}")

            failures += 1
            if failures > max_retries:
                raise CloudUploadError(f"Chunk at offset {offset} failed after {max_retries} retries: {reason}")
            delay = min(2.0 ** failures, MAX_BACKOFF)
            logger.warning("Chunk at offset %d failed (%s); retry %d/%d in %.0fs",
                           offset, reason, failures, max_retries, delay)
            self._sleep(delay)


@functools.lru_cache(maxsize=None)
def drive_store(credentials_path: str) -> GoogleDriveStore:
    """One store (and HTTP session) per credentials file for the process lifetime."""
    return GoogleDriveStore(FileTokenProvider(credentials_path))
