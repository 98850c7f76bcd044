"""Upload strategy resolver: get a remote archive into the cloud store.

Strategies are tried in a fixed order by one driver loop; the first to
succeed wins.  Which list is used depends on the archive size and the
requested upload method:

    size > threshold      rclone (large-file tuning) → optimized-streaming → chunked-streaming
    direct, small         rclone → streaming → local
    local,  small         local

The local relay never appears in the large-file list: a multi-gigabyte
archive must not be staged on the orchestrating machine's disk.
"""

from __future__ import annotations

import json
import logging
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Callable

from remote_backup.cloud import UPLOAD_GRANULARITY, CloudStore
from remote_backup.connection import RemoteExecutor
from remote_backup.models import CloudUploadConfig, ConnectionTarget, UploadMethod, UploadOutcome
from remote_backup.probe import RemoteProbe
from remote_backup.transfer import GB, MB, TransferEngine, TransferError
from remote_backup.utils.path_helpers import date_folder_name, mime_type_for, remote_basename, shell_quote
from remote_backup.utils.policy import best_effort

logger = logging.getLogger(__name__)

DEFAULT_LARGE_FILE_THRESHOLD = 1 * GB
DEFAULT_RCLONE_REMOTE = "gdrive"

RCLONE_LARGE_FILE_FLAGS = (
    "--transfers", "1",
    "--checkers", "2",
    "--buffer-size", "16M",
    "--use-mmap",
    "--fast-list",
    "--retries", "3",
    "--low-level-retries", "10",
)

StoreFactory = Callable[[CloudUploadConfig], CloudStore]


class UploadChainExhaustedError(Exception):
    """Every applicable upload strategy failed (or none was available)."""

    def __init__(self, last_error: BaseException | None, attempted: list[str]) -> None:
        if attempted:
            message = f"All upload strategies failed (tried: {', '.join(attempted)}): {last_error}"
        else:
            message = "No upload strategy was available"
        super().__init__(message)
        self.last_error = last_error
        self.attempted = attempted


# ---------------------------------------------------------------------------
# Context / parameters
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UploadContext:
    """Everything a strategy needs for one archive."""

    server_name: str
    target: ConnectionTarget
    remote_path: str
    cloud: CloudUploadConfig
    folder_name: str
    size_bytes: int

    @property
    def file_name(self) -> str:
        return remote_basename(self.remote_path)


@dataclass(frozen=True)
class StreamUploadParams:
    chunk_size: int
    timeout: float
    max_retries: int


def stream_upload_params(size_bytes: int) -> StreamUploadParams:
    """Resumable-upload tuning for an archive of *size_bytes*."""
    if size_bytes < 1 * GB:
        chunk = 256 * 1024
    elif size_bytes < 10 * GB:
        chunk = 1 * MB
    elif size_bytes < 50 * GB:
        chunk = 2 * MB
    else:
        chunk = 4 * MB
    huge = size_bytes >= 10 * GB
    return StreamUploadParams(
        chunk_size=chunk,
        timeout=(30 if huge else 15) * 60.0,
        max_retries=10 if huge else 5,
    )


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


class UploadStrategy(ABC):
    """One way of moving the archive into the cloud store."""

    name: str = ""

    def is_available(self, ctx: UploadContext) -> bool:
        return True

    @abstractmethod
    def attempt(self, ctx: UploadContext) -> UploadOutcome:
        """Upload or raise; any exception means "try the next strategy"."""


class RemoteCliStrategy(UploadStrategy):
    """``rclone copy`` run on the remote host; bytes never pass through us."""

    name = "rclone"

    def __init__(
        self,
        executor: RemoteExecutor,
        probe: RemoteProbe,
        remote_name: str = DEFAULT_RCLONE_REMOTE,
        large_file: bool = False,
    ) -> None:
        self._executor = executor
        self._probe = probe
        self.remote_name = remote_name
        self.large_file = large_file

    def is_available(self, ctx: UploadContext) -> bool:
        return self._probe.is_tool_available(ctx.target, "rclone")

    def _scope_flags(self, ctx: UploadContext) -> list[str]:
        parent = ctx.cloud.destination_folder_id
        return ["--drive-root-folder-id", shell_quote(parent)] if parent else []

    def build_copy_command(self, ctx: UploadContext) -> str:
        dest = f"{self.remote_name}:{ctx.folder_name}"
        parts = ["rclone", "copy", shell_quote(ctx.remote_path), shell_quote(dest)]
        parts += self._scope_flags(ctx)
        if self.large_file:
            parts += RCLONE_LARGE_FILE_FLAGS
        return " ".join(parts)

    def attempt(self, ctx: UploadContext) -> UploadOutcome:
        start = time.monotonic()
        logger.info("[%s] rclone copy of %s to %s:%s",
                    ctx.server_name, ctx.remote_path, self.remote_name, ctx.folder_name)
        self._executor.run(ctx.target, self.build_copy_command(ctx))
        return UploadOutcome(
            cloud_object_id=self._lookup_object_id(ctx),
            destination_folder_name=ctx.folder_name,
            strategy_used=self.name,
            upload_duration_seconds=time.monotonic() - start,
            byte_size=ctx.size_bytes,
        )

    def _lookup_object_id(self, ctx: UploadContext) -> str:
        path = f"{self.remote_name}:{ctx.folder_name}/{ctx.file_name}"
        command = " ".join(["rclone", "lsjson", shell_quote(path)] + self._scope_flags(ctx))
        output = self._executor.run(ctx.target, command)
        try:
            entries = json.loads(output)
            return entries[0]["ID"]
        except (ValueError, LookupError, TypeError):
            logger.warning("[%s] rclone did not report an object id for %s", ctx.server_name, path)
            return path


class StreamThroughStrategy(UploadStrategy):
    """Pipe an SFTP read stream straight into a resumable cloud upload."""

    def __init__(self, engine: TransferEngine, store_factory: StoreFactory, name: str = "streaming") -> None:
        self._engine = engine
        self._store_factory = store_factory
        self.name = name

    def _params(self, ctx: UploadContext) -> StreamUploadParams:
        return stream_upload_params(ctx.size_bytes)

    def attempt(self, ctx: UploadContext) -> UploadOutcome:
        params = self._params(ctx)
        store = self._store_factory(ctx.cloud)
        folder_id = store.create_folder(ctx.folder_name, ctx.cloud.destination_folder_id)

        start = time.monotonic()
        logger.info("[%s] Streaming %s to cloud folder %s (chunk %d KB)",
                    ctx.server_name, ctx.remote_path, ctx.folder_name, params.chunk_size // 1024)
        with self._engine.open_read_stream(ctx.target, ctx.remote_path) as stream:
            object_id = store.upload_stream(
                stream,
                ctx.file_name,
                mime_type_for(ctx.file_name),
                folder_id,
                size=stream.size,
                chunk_size=params.chunk_size,
                timeout=params.timeout,
                max_retries=params.max_retries,
            )
            size = stream.size
        return UploadOutcome(
            cloud_object_id=object_id,
            destination_folder_name=ctx.folder_name,
            strategy_used=self.name,
            upload_duration_seconds=time.monotonic() - start,
            byte_size=size,
            chunks_processed=max(1, math.ceil(size / params.chunk_size)),
        )


class ChunkedStreamStrategy(StreamThroughStrategy):
    """Last resort: the same stream upload in the smallest chunks Drive accepts."""

    def __init__(self, engine: TransferEngine, store_factory: StoreFactory) -> None:
        super().__init__(engine, store_factory, name="chunked-streaming")

    def _params(self, ctx: UploadContext) -> StreamUploadParams:
        base = stream_upload_params(ctx.size_bytes)
        return StreamUploadParams(UPLOAD_GRANULARITY, base.timeout, base.max_retries)


class LocalRelayStrategy(UploadStrategy):
    """Download to local staging, upload the copy, always delete the copy."""

    name = "local"

    def __init__(self, engine: TransferEngine, store_factory: StoreFactory, staging_dir: str | Path) -> None:
        self._engine = engine
        self._store_factory = store_factory
        self.staging_dir = Path(staging_dir)

    def attempt(self, ctx: UploadContext) -> UploadOutcome:
        local_path = self.staging_dir / ctx.server_name / ".staging" / ctx.file_name
        start = time.monotonic()
        try:
            result = self._engine.download(ctx.target, ctx.remote_path, str(local_path))
            if not result.success:
                raise TransferError(result.error_detail or "download failed", attempts=result.attempts)

            store = self._store_factory(ctx.cloud)
            folder_id = store.create_folder(ctx.folder_name, ctx.cloud.destination_folder_id)
            params = stream_upload_params(result.byte_size)
            object_id = store.upload_file(
                str(local_path),
                ctx.file_name,
                mime_type_for(ctx.file_name),
                folder_id,
                chunk_size=params.chunk_size,
                timeout=params.timeout,
                max_retries=params.max_retries,
            )
        finally:
            best_effort(f"Removing local copy {local_path}", local_path.unlink, missing_ok=True)

        return UploadOutcome(
            cloud_object_id=object_id,
            destination_folder_name=ctx.folder_name,
            strategy_used=self.name,
            upload_duration_seconds=time.monotonic() - start,
            byte_size=result.byte_size,
        )


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


class UploadStrategyResolver:
    """Chooses the strategy list for an archive and drives it to the first success."""

    def __init__(
        self,
        engine: TransferEngine,
        executor: RemoteExecutor,
        store_factory: StoreFactory,
        *,
        large_file_threshold: int = DEFAULT_LARGE_FILE_THRESHOLD,
        rclone_remote: str = DEFAULT_RCLONE_REMOTE,
        staging_dir: str | Path = "backups",
        today: Callable[[], date] = date.today,
    ) -> None:
        self._engine = engine
        self.large_file_threshold = large_file_threshold
        self._today = today

        probe = RemoteProbe(executor)
        local = LocalRelayStrategy(engine, store_factory, staging_dir)
        self.large_file_chain: list[UploadStrategy] = [
            RemoteCliStrategy(executor, probe, rclone_remote, large_file=True),
            StreamThroughStrategy(engine, store_factory, name="optimized-streaming"),
            ChunkedStreamStrategy(engine, store_factory),
        ]
        self.direct_chain: list[UploadStrategy] = [
            RemoteCliStrategy(executor, probe, rclone_remote),
            StreamThroughStrategy(engine, store_factory),
            local,
        ]
        self.local_chain: list[UploadStrategy] = [local]

    def plan(self, size_bytes: int, method: UploadMethod) -> list[UploadStrategy]:
        """Strategy order for an archive of *size_bytes* uploaded with *method*."""
        if size_bytes > self.large_file_threshold:
            return list(self.large_file_chain)
        if method is UploadMethod.DIRECT:
            return list(self.direct_chain)
        return list(self.local_chain)

    def resolve(
        self,
        server_name: str,
        target: ConnectionTarget,
        remote_path: str,
        cloud: CloudUploadConfig,
    ) -> UploadOutcome:
        """Upload *remote_path* and report which strategy won.

        Raises:
            ConnectionError / TransferError: The archive could not be stat'ed.
            UploadChainExhaustedError: Every applicable strategy failed.
        """
        size = self._engine.stat_remote(target, remote_path)
        ctx = UploadContext(
            server_name=server_name,
            target=target,
            remote_path=remote_path,
            cloud=cloud,
            folder_name=date_folder_name(server_name, self._today()),
            size_bytes=size,
        )
        chain = self.plan(size, cloud.upload_method)
        logger.info("[%s] Upload plan for %d bytes: %s",
                    server_name, size, " → ".join(s.name for s in chain))

        attempted: list[str] = []
        last_error: BaseException | None = None
        for strategy in chain:
            try:
                if not strategy.is_available(ctx):
                    logger.info("[%s] Strategy '%s' not available, skipping", server_name, strategy.name)
                    continue
                attempted.append(strategy.name)
                outcome = strategy.attempt(ctx)
            except Exception as exc:
                last_error = exc
                logger.warning("[%s] Strategy '%s' failed: %s", server_name, strategy.name, exc)
                continue
            logger.info("[%s] Upload succeeded via '%s'", server_name, outcome.strategy_used)
            return outcome

        raise UploadChainExhaustedError(last_error, attempted)
