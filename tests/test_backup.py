"""Tests for remote_backup/backup.py: the per-server state machine."""

from __future__ import annotations

from datetime import date
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from remote_backup.backup import BackupJob, BackupRunner, make_store_factory
from remote_backup.cloud import CloudUploadError
from remote_backup.compression import Compressor
from remote_backup.connection import ConnectionError, RemoteCommandError
from remote_backup.models import (
    BackupJobConfig,
    CloudUploadConfig,
    CompressionKind,
    ConnectionTarget,
    JobState,
    ToolCheckResult,
    TransferResult,
    UploadMethod,
    UploadOutcome,
)
from remote_backup.upload import UploadChainExhaustedError

ARCHIVE = "/var/www/uploads_1729500000000.zip"
MB = 1024 * 1024


def _config(tmp_path: Path, cloud: bool = False, compression=CompressionKind.ZIP) -> BackupJobConfig:
    return BackupJobConfig(
        server_name="db1",
        target=ConnectionTarget(host="db.example.com", username="root", password="pw"),
        remote_directory="/var/www",
        compression=compression,
        local_root=str(tmp_path),
        cloud=CloudUploadConfig(enabled=cloud, upload_method=UploadMethod.DIRECT),
    )


@pytest.fixture()
def probe() -> MagicMock:
    probe = MagicMock()
    probe.check_required_tools.return_value = ToolCheckResult(available=True)
    probe.directory_exists.return_value = True
    return probe


@pytest.fixture()
def compressor() -> MagicMock:
    compressor = MagicMock()
    compressor.compress_folder.return_value = ARCHIVE
    compressor.delete_remote_file.return_value = True
    return compressor


@pytest.fixture()
def engine() -> MagicMock:
    engine = MagicMock()
    engine.download.side_effect = lambda target, remote, local: TransferResult(local, 5 * MB, 2.0, 2.5, True)
    return engine


@pytest.fixture()
def resolver() -> MagicMock:
    resolver = MagicMock()
    resolver.resolve.return_value = UploadOutcome(
        cloud_object_id="OBJ",
        destination_folder_name="2025_10_21-Database_db1",
        strategy_used="rclone",
        upload_duration_seconds=3.0,
        byte_size=3 * MB,
    )
    return resolver


@pytest.fixture()
def notifier() -> MagicMock:
    return MagicMock()


def _job(config, probe, compressor, engine, resolver, notifier) -> BackupJob:
    job = BackupJob(
        config,
        probe=probe,
        compressor=compressor,
        engine=engine,
        resolver=resolver,
        notifier=notifier,
        today=lambda: date(2025, 10, 21),
    )
    job.visited = []
    original = job._enter

    def spy(state, step=None):
        job.visited.append(state)
        original(state, step)

    job._enter = spy
    return job


class TestSuccessPaths:
    def test_local_download(self, tmp_path, probe, compressor, engine, resolver, notifier) -> None:
        job = _job(_config(tmp_path), probe, compressor, engine, resolver, notifier)
        result = job.run()

        expected = tmp_path / "db1" / "2025_10_21-Database_db1" / "uploads.zip"
        assert result.success is True
        assert result.local_file_path == str(expected)
        assert result.byte_size_mb == 5.0
        assert result.folder_name == "2025_10_21-Database_db1"
        assert result.steps.as_dict() == {
            "ssh_connection": True,
            "directory_check": True,
            "compression": True,
            "transfer": True,
            "cloud_upload": False,
        }
        engine.download.assert_called_once_with(job.config.target, ARCHIVE, str(expected))
        resolver.resolve.assert_not_called()
        compressor.delete_remote_file.assert_called_once_with(job.config.target, ARCHIVE)
        notifier.notify_success.assert_called_once()

    def test_states_visited_in_order(self, tmp_path, probe, compressor, engine, resolver, notifier) -> None:
        job = _job(_config(tmp_path), probe, compressor, engine, resolver, notifier)
        job.run()
        assert job.visited == [
            JobState.SSH_VERIFIED,
            JobState.TOOLS_VERIFIED,
            JobState.DIRECTORY_VERIFIED,
            JobState.COMPRESSED,
            JobState.TRANSFERRED,
            JobState.CLEANED_UP,
            JobState.SUCCEEDED,
        ]
        assert job.state is JobState.SUCCEEDED

    def test_cloud_upload(self, tmp_path, probe, compressor, engine, resolver, notifier) -> None:
        config = _config(tmp_path, cloud=True)
        result = _job(config, probe, compressor, engine, resolver, notifier).run()

        assert result.success is True
        assert result.cloud_object_id == "OBJ"
        assert result.strategy_used == "rclone"
        assert result.byte_size_mb == 3.0
        assert result.steps.cloud_upload is True
        assert result.steps.transfer is True
        resolver.resolve.assert_called_once_with("db1", config.target, ARCHIVE, config.cloud)
        engine.download.assert_not_called()
        assert notifier.notify_success.call_args.kwargs["cloud_uploaded"] is True

    def test_directory_checked_on_target_subfolder(self, tmp_path, probe, compressor, engine, resolver, notifier) -> None:
        config = _config(tmp_path)
        _job(config, probe, compressor, engine, resolver, notifier).run()
        probe.directory_exists.assert_called_once_with(config.target, "/var/www/uploads")
        compressor.compress_folder.assert_called_once_with(config.target, "/var/www/uploads", CompressionKind.ZIP)


class TestFailurePaths:
    def test_ssh_failure(self, tmp_path, probe, compressor, engine, resolver, notifier) -> None:
        probe.test_connection.side_effect = ConnectionError("Cannot reach db.example.com:22")
        job = _job(_config(tmp_path), probe, compressor, engine, resolver, notifier)
        result = job.run()

        assert result.success is False
        assert "Cannot reach" in result.error_message
        assert not any(result.steps.as_dict().values())
        compressor.delete_remote_file.assert_not_called()
        assert job.visited == [JobState.CLEANED_UP, JobState.FAILED]
        notifier.notify_failure.assert_called_once()

    def test_missing_tools_names_install_command(self, tmp_path, probe, compressor, engine, resolver, notifier) -> None:
        probe.check_required_tools.return_value = ToolCheckResult(False, ("tar", "gzip"))
        result = _job(_config(tmp_path, compression=CompressionKind.TAR_GZ),
                      probe, compressor, engine, resolver, notifier).run()

        assert result.success is False
        assert "sudo apt-get install tar gzip" in result.error_message
        assert result.steps.ssh_connection is True
        assert result.steps.directory_check is False
        compressor.compress_folder.assert_not_called()

    def test_missing_directory(self, tmp_path, probe, compressor, engine, resolver, notifier) -> None:
        probe.directory_exists.return_value = False
        result = _job(_config(tmp_path), probe, compressor, engine, resolver, notifier).run()
        assert result.success is False
        assert "/var/www/uploads" in result.error_message
        compressor.compress_folder.assert_not_called()

    def test_failure_after_compression_still_cleans_up(self, tmp_path, probe, compressor, engine, resolver, notifier) -> None:
        engine.download.side_effect = None
        engine.download.return_value = TransferResult("", 0, 9.0, 0.0, False, attempts=3, error_detail="reset by peer")
        result = _job(_config(tmp_path), probe, compressor, engine, resolver, notifier).run()

        assert result.success is False
        assert result.steps.compression is True
        assert result.steps.transfer is False
        assert "reset by peer" in result.error_message
        compressor.delete_remote_file.assert_called_once_with(_config(tmp_path).target, ARCHIVE)

    def test_upload_chain_exhausted(self, tmp_path, probe, compressor, engine, resolver, notifier) -> None:
        resolver.resolve.side_effect = UploadChainExhaustedError(CloudUploadError("quota"), ["rclone", "streaming"])
        result = _job(_config(tmp_path, cloud=True), probe, compressor, engine, resolver, notifier).run()
        assert result.success is False
        assert "quota" in result.error_message
        assert result.steps.cloud_upload is False
        compressor.delete_remote_file.assert_called_once()

    def test_cloud_requested_without_resolver(self, tmp_path, probe, compressor, engine, notifier) -> None:
        result = _job(_config(tmp_path, cloud=True), probe, compressor, engine, None, notifier).run()
        assert result.success is False
        assert "no cloud store" in result.error_message


class TestBestEffortSideEffects:
    def test_cleanup_failure_does_not_change_verdict(self, tmp_path, probe, engine, resolver, notifier) -> None:
        executor = MagicMock()

        def run(target, command):
            if command.startswith("rm -f"):
                raise RemoteCommandError(command, 1, "read-only file system")
            return ""

        executor.run.side_effect = run
        compressor = Compressor(executor, clock=lambda: 1729500000000)
        result = _job(_config(tmp_path), probe, compressor, engine, resolver, notifier).run()

        assert result.success is True
        assert any(c.args[1].startswith("rm -f") for c in executor.run.call_args_list)

    def test_notification_failure_does_not_change_verdict(self, tmp_path, probe, compressor, engine, resolver, notifier) -> None:
        notifier.notify_success.side_effect = RuntimeError("webhook down")
        result = _job(_config(tmp_path), probe, compressor, engine, resolver, notifier).run()
        assert result.success is True

    def test_failure_notification_failure_still_reports(self, tmp_path, probe, compressor, engine, resolver, notifier) -> None:
        probe.test_connection.side_effect = ConnectionError("down")
        notifier.notify_failure.side_effect = RuntimeError("webhook down")
        result = _job(_config(tmp_path), probe, compressor, engine, resolver, notifier).run()
        assert result.success is False
        assert result.error_message == "down"


class TestRunner:
    def test_fresh_job_per_run(self, tmp_path, probe, compressor, engine, resolver, notifier) -> None:
        runner = BackupRunner(probe, compressor, engine, resolver, notifier)
        first = runner.run(_config(tmp_path))
        second = runner.run(_config(tmp_path))
        assert first.success and second.success
        assert first.steps is not second.steps

    def test_store_factory_requires_credentials(self) -> None:
        factory = make_store_factory(None)
        with pytest.raises(CloudUploadError):
            factory(CloudUploadConfig(enabled=True))
