"""Remote archive creation and removal.

Compression always runs under ``nice -n 19`` so a backup never competes with
the production workload on the host being backed up.
"""

from __future__ import annotations

import logging
import posixpath
import time
from typing import Callable

from remote_backup.connection import RemoteExecutor
from remote_backup.models import CompressionKind, ConnectionTarget
from remote_backup.utils.path_helpers import shell_quote, validate_remote_path
from remote_backup.utils.policy import best_effort

logger = logging.getLogger(__name__)

NICE_LEVEL = 19


def _epoch_millis() -> int:
    return int(time.time() * 1000)


def archive_name(folder_name: str, kind: CompressionKind, millis: int) -> str:
    """``uploads`` + zip + 1729500000000 → ``uploads_1729500000000.zip``."""
    return f"{folder_name}_{millis}{kind.extension}"


def build_compress_command(parent_dir: str, folder_name: str, archive: str, kind: CompressionKind) -> str:
    """Shell command that archives *folder_name* inside *parent_dir*."""
    cd = f"cd {shell_quote(parent_dir or '/')}"
    if kind is CompressionKind.ZIP:
        archiver = f"zip -rq {shell_quote(archive)} {shell_quote(folder_name)}"
    else:
        archiver = f"tar -czf {shell_quote(archive)} {shell_quote(folder_name)}"
    return f"{cd} && nice -n {NICE_LEVEL} {archiver}"


class Compressor:
    """Creates archives next to the source folder and deletes them afterwards."""

    def __init__(self, executor: RemoteExecutor, clock: Callable[[], int] = _epoch_millis) -> None:
        self._executor = executor
        self._clock = clock

    def compress_folder(self, target: ConnectionTarget, folder_path: str, kind: CompressionKind) -> str:
        """Archive *folder_path* on the remote host and return the archive path.

        Raises:
            ValueError: *folder_path* is not a safe remote path.
            ConnectionError / RemoteCommandError: from the executor.
        """
        if not validate_remote_path(folder_path):
            raise ValueError(f"Invalid remote folder path: {folder_path!r}")

        normalized = folder_path.rstrip("/")
        parent_dir, folder_name = posixpath.split(normalized)
        archive = archive_name(folder_name, kind, self._clock())
        command = build_compress_command(parent_dir, folder_name, archive, kind)

        logger.info("Compressing %s on %s as %s (low priority)", folder_path, target.host, kind.value)
        logger.debug("Command: %s", command)
        self._executor.run(target, command)

        archive_path = posixpath.join(parent_dir or "/", archive)
        logger.info("Compression completed: %s", archive_path)
        return archive_path

    def delete_remote_file(self, target: ConnectionTarget, path: str) -> bool:
        """Remove *path* from the remote host; failures are logged, not raised."""
        removed = best_effort(
            f"Deleting remote file {path} on {target.host}",
            self._executor.run,
            target,
            f"rm -f {shell_quote(path)}",
        )
        if removed:
            logger.info("Deleted remote file: %s", path)
        return removed
