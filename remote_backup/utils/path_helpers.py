"""Path, naming and shell-quoting helpers shared across the backup pipeline."""

from __future__ import annotations

import logging
import posixpath
import re
from datetime import date
from pathlib import PurePosixPath

logger = logging.getLogger(__name__)

_TIMESTAMP_SUFFIX = re.compile(r"_(\d{13}|\d{8}(_\d{6})?)$")
_NOISE_SUFFIX = re.compile(r"_(backup|new|old|tmp|temp)$", re.IGNORECASE)
_DEFAULT_BASENAME = "uploads"

_MIME_TYPES = {
    ".zip": "application/zip",
    ".tar.gz": "application/gzip",
    ".tgz": "application/gzip",
    ".gz": "application/gzip",
    ".tar": "application/x-tar",
}


def remote_basename(path: str) -> str:
    """Return the last component of a remote POSIX path."""
    return posixpath.basename(path.rstrip("/"))


def human_readable_size(size_bytes: int | float) -> str:
    """Convert a byte count to a human-readable string (e.g. "4.2 MB").

    Uses 1024-based units but labels them KB/MB/GB.
    """
    if size_bytes < 0:
        return "0 B"
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if size_bytes < 1024.0:
            if unit == "B":
                return f"{int(size_bytes)} B"
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024.0
    return f"{size_bytes:.1f} PB"


def shell_quote(value: str) -> str:
    """Wrap *value* in single quotes, escaping embedded single quotes."""
    return "'" + value.replace("'", "'\\''") + "'"


def validate_remote_path(path: str) -> bool:
    """Return True if *path* is safe to hand to a remote shell or SFTP.

    Rejects empty paths, null bytes and path-traversal sequences (``..``).
    """
    if not path:
        return False
    if "\x00" in path:
        logger.warning("Remote path rejected, contains null byte: %r", path)
        return False
    parts = str(PurePosixPath(path)).split("/")
    if ".." in parts:
        logger.warning("Remote path rejected, contains '..': %r", path)
        return False
    return True


def date_folder_name(server_name: str, day: date) -> str:
    """Folder name used both locally and in the cloud store.

    >>> date_folder_name("db1", date(2025, 10, 21))
    '2025_10_21-Database_db1'
    """
    return f"{day.strftime('%Y_%m_%d')}-Database_{server_name}"


def split_archive_name(filename: str) -> tuple[str, str]:
    """Split *filename* into ``(base, extension)`` treating ``.tar.gz`` as one."""
    if filename.endswith(".tar.gz"):
        return filename[: -len(".tar.gz")], ".tar.gz"
    base, dot, ext = filename.rpartition(".")
    if not dot or not base:
        return filename, ""
    return base, f".{ext}"


def clean_archive_name(filename: str) -> str:
    """Strip timestamps and noise suffixes from an archive name.

    ``uploads_1729500000000.zip`` and ``uploads_20251017_235959.zip`` both
    become ``uploads.zip``.  Applying it to an already clean name is a no-op.
    """
    base, extension = split_archive_name(filename)
    # Suffixes can be stacked (``media_20251017_backup``); strip until stable.
    previous = None
    while base != previous:
        previous = base
        base = _NOISE_SUFFIX.sub("", _TIMESTAMP_SUFFIX.sub("", base))
    if not base.strip():
        base = _DEFAULT_BASENAME
    lowered = base.lower()
    if "upload" in lowered or "database" in lowered:
        base = _DEFAULT_BASENAME
    return f"{base}{extension}"


def mime_type_for(filename: str) -> str:
    """Return the MIME type for an archive file name."""
    _, extension = split_archive_name(filename.lower())
    return _MIME_TYPES.get(extension, "application/octet-stream")
