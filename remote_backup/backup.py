"""Per-server backup state machine.

A job walks ``JobState`` strictly in order:

    INIT → SSH_VERIFIED → TOOLS_VERIFIED → DIRECTORY_VERIFIED → COMPRESSED
         → TRANSFERRED → CLEANED_UP → SUCCEEDED | FAILED

Any exception before CLEANED_UP skips the remaining work states, but the
remote archive (if one was created) is always deleted before the terminal
state is entered.  Every job returns a :class:`BackupResult`; nothing raises
out of :meth:`BackupJob.run`.
"""

from __future__ import annotations

import dataclasses
import logging
import time
from datetime import date
from pathlib import Path
from typing import Callable

from remote_backup.cloud import CloudStore, CloudUploadError, drive_store
from remote_backup.compression import Compressor
from remote_backup.connection import RemoteExecutor
from remote_backup.models import (
    BackupJobConfig,
    BackupResult,
    CloudUploadConfig,
    JobState,
    StepStatus,
)
from remote_backup.notify import Notifier, NullNotifier, notifier_from_settings
from remote_backup.probe import RemoteProbe
from remote_backup.transfer import MB, TransferEngine, TransferError
from remote_backup.upload import StoreFactory, UploadStrategyResolver
from remote_backup.utils.path_helpers import clean_archive_name, date_folder_name, remote_basename
from remote_backup.utils.policy import best_effort

logger = logging.getLogger(__name__)


class MissingToolsError(RuntimeError):
    """The remote host lacks a binary the chosen compression needs."""

    def __init__(self, host: str, missing: tuple[str, ...]) -> None:
        names = " ".join(missing)
        super().__init__(
            f"Missing required tools on {host}: {', '.join(missing)}. "
            f"Install with: sudo apt-get install {names}"
        )
        self.missing = missing


class RemoteDirectoryNotFoundError(FileNotFoundError):
    """The folder to back up does not exist on the remote host."""


class BackupJob:
    """Runs one :class:`BackupJobConfig` to a terminal state.

    Instances are single use; create a new one per run.
    """

    def __init__(
        self,
        config: BackupJobConfig,
        *,
        probe: RemoteProbe,
        compressor: Compressor,
        engine: TransferEngine,
        resolver: UploadStrategyResolver | None,
        notifier: Notifier,
        clock: Callable[[], float] = time.monotonic,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.config = config
        self._probe = probe
        self._compressor = compressor
        self._engine = engine
        self._resolver = resolver
        self._notifier = notifier
        self._clock = clock
        self._today = today

        self.state = JobState.INIT
        self.steps = StepStatus()
        self.archive_path: str | None = None

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    def run(self) -> BackupResult:
        name = self.config.server_name
        start = self._clock()
        logger.info("[%s] Starting backup of %s on %s",
                    name, self.config.target_path, self.config.target.host)

        result: BackupResult | None = None
        error: Exception | None = None
        try:
            result = self._execute()
        except Exception as exc:
            error = exc

        self._cleanup()
        duration = self._clock() - start

        if error is None and result is not None:
            self._enter(JobState.SUCCEEDED)
            logger.info("[%s] Backup completed in %.1fs", name, duration)
            best_effort(
                f"[{name}] Success notification",
                self._notifier.notify_success,
                name,
                result.byte_size_mb or 0.0,
                duration,
                local_path=result.local_file_path,
                cloud_uploaded=self.steps.cloud_upload,
                strategy_used=result.strategy_used,
                folder_name=result.folder_name,
            )
            return result

        message = str(error) or type(error).__name__
        self._enter(JobState.FAILED)
        logger.error("[%s] Backup failed after %.1fs: %s", name, duration, message)
        best_effort(f"[{name}] Failure notification", self._notifier.notify_failure, name, message, duration)
        return BackupResult(
            success=False,
            server_name=name,
            steps=dataclasses.replace(self.steps),
            error_message=message,
        )

    # ------------------------------------------------------------------
    # States
    # ------------------------------------------------------------------

    def _execute(self) -> BackupResult:
        cfg = self.config
        target = cfg.target

        self._probe.test_connection(target)
        self._enter(JobState.SSH_VERIFIED, "ssh_connection")

        tools = self._probe.check_required_tools(target, cfg.compression)
        if not tools.available:
            raise MissingToolsError(target.host, tools.missing_tools)
        self._enter(JobState.TOOLS_VERIFIED)

        if not self._probe.directory_exists(target, cfg.target_path):
            raise RemoteDirectoryNotFoundError(f"Remote directory not found: {cfg.target_path}")
        self._enter(JobState.DIRECTORY_VERIFIED, "directory_check")

        self.archive_path = self._compressor.compress_folder(target, cfg.target_path, cfg.compression)
        self._enter(JobState.COMPRESSED, "compression")

        if cfg.cloud.enabled:
            return self._upload_to_cloud()
        return self._download_locally()

    def _upload_to_cloud(self) -> BackupResult:
        cfg = self.config
        if self._resolver is None:
            raise CloudUploadError("Cloud upload requested but no cloud store is configured")

        outcome = self._resolver.resolve(cfg.server_name, cfg.target, self.archive_path, cfg.cloud)
        self.steps.mark("cloud_upload")
        self._enter(JobState.TRANSFERRED, "transfer")
        return BackupResult(
            success=True,
            server_name=cfg.server_name,
            steps=dataclasses.replace(self.steps),
            cloud_object_id=outcome.cloud_object_id,
            byte_size_mb=round(outcome.byte_size / MB, 2),
            strategy_used=outcome.strategy_used,
            folder_name=outcome.destination_folder_name,
        )

    def _download_locally(self) -> BackupResult:
        cfg = self.config
        folder = date_folder_name(cfg.server_name, self._today())
        local_path = (
            Path(cfg.local_root) / cfg.server_name / folder
            / clean_archive_name(remote_basename(self.archive_path))
        )

        transfer = self._engine.download(cfg.target, self.archive_path, str(local_path))
        if not transfer.success:
            raise TransferError(transfer.error_detail or "download failed", attempts=transfer.attempts)
        self._enter(JobState.TRANSFERRED, "transfer")
        return BackupResult(
            success=True,
            server_name=cfg.server_name,
            steps=dataclasses.replace(self.steps),
            local_file_path=str(local_path),
            byte_size_mb=round(transfer.byte_size / MB, 2),
            folder_name=folder,
        )

    def _cleanup(self) -> None:
        if self.archive_path:
            self._compressor.delete_remote_file(self.config.target, self.archive_path)
        self._enter(JobState.CLEANED_UP)

    def _enter(self, state: JobState, step: str | None = None) -> None:
        self.state = state
        if step:
            self.steps.mark(step)
        logger.debug("[%s] → %s", self.config.server_name, state.name)


def make_store_factory(default_credentials_path: str | None) -> StoreFactory:
    """Map a job's cloud settings to a (cached) Google Drive store."""

    def _factory(cloud: CloudUploadConfig) -> CloudStore:
        path = cloud.credentials_ref or default_credentials_path
        if not path:
            raise CloudUploadError("No cloud credentials configured")
        return drive_store(str(Path(path).expanduser()))

    return _factory


class BackupRunner:
    """Shares collaborators across jobs and creates a fresh :class:`BackupJob` per run."""

    def __init__(
        self,
        probe: RemoteProbe,
        compressor: Compressor,
        engine: TransferEngine,
        resolver: UploadStrategyResolver | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self.probe = probe
        self.compressor = compressor
        self.engine = engine
        self.resolver = resolver
        self.notifier = notifier or NullNotifier()

    @classmethod
    def from_settings(cls, settings, notifier: Notifier | None = None) -> "BackupRunner":
        """Wire the production collaborators from a ``config.Settings`` snapshot."""
        executor = RemoteExecutor(timeout=settings.ssh_timeout, strict_host_keys=settings.strict_host_keys)
        engine = TransferEngine(connect_timeout=settings.ssh_timeout, strict_host_keys=settings.strict_host_keys)
        resolver = UploadStrategyResolver(
            engine,
            executor,
            make_store_factory(settings.google_drive.get("credentials_path")),
            large_file_threshold=settings.large_file_threshold_bytes,
            rclone_remote=settings.rclone_remote,
            staging_dir=settings.local_backup_path,
        )
        return cls(
            RemoteProbe(executor),
            Compressor(executor),
            engine,
            resolver,
            notifier or notifier_from_settings(settings.discord),
        )

    def run(self, config: BackupJobConfig) -> BackupResult:
        job = BackupJob(
            config,
            probe=self.probe,
            compressor=self.compressor,
            engine=self.engine,
            resolver=self.resolver,
            notifier=self.notifier,
        )
        return job.run()
