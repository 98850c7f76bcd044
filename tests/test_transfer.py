"""Tests for remote_backup/transfer.py: tiers, ranged copies, retries, streams.

An in-memory SFTP stand-in replaces paramiko so every path runs offline.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from remote_backup.connection import LARGE_FILE_KEEPALIVE, TRANSFER_KEEPALIVE, ConnectionError
from remote_backup.models import ConnectionTarget
from remote_backup.transfer import (
    GB,
    KB,
    MB,
    TransferDirection,
    TransferEngine,
    TransferError,
    TransferOptions,
    TransferProgress,
    TransferStatus,
    channel_count,
    select_tier,
    split_ranges,
)

TARGET = ConnectionTarget(host="db.example.com", username="root", password="pw")


# ---------------------------------------------------------------------------
# In-memory SFTP
# ---------------------------------------------------------------------------


class FakeFS:
    """Remote files keyed by path, shared by every fake session."""

    def __init__(self) -> None:
        self.files: dict[str, bytearray] = {}
        self.lock = threading.Lock()
        self.fail_opens = 0          # next N data opens raise OSError
        self.kill_session_on_fail = False


class FakeRemoteFile:
    def __init__(self, fs: FakeFS, path: str, mode: str) -> None:
        self.fs = fs
        self.path = path
        self.pos = 0
        if "w" in mode:
            with fs.lock:
                fs.files[path] = bytearray()
        elif path not in fs.files:
            raise FileNotFoundError(path)

    def __enter__(self) -> "FakeRemoteFile":
        return self

    def __exit__(self, *exc) -> bool:
        return False

    def seek(self, offset: int) -> None:
        self.pos = offset

    def read(self, n: int = -1) -> bytes:
        buf = self.fs.files[self.path]
        end = len(buf) if n is None or n < 0 else self.pos + n
        data = bytes(buf[self.pos:end])
        self.pos += len(data)
        return data

    def readv(self, chunks, max_concurrent_prefetch_requests=None):
        buf = self.fs.files[self.path]
        for offset, length in chunks:
            yield bytes(buf[offset:offset + length])

    def write(self, data: bytes) -> None:
        with self.fs.lock:
            buf = self.fs.files[self.path]
            end = self.pos + len(data)
            if len(buf) < end:
                buf.extend(b"\0" * (end - len(buf)))
            buf[self.pos:end] = data
        self.pos = end

    def set_pipelined(self, pipelined: bool = True) -> None:
        pass

    def prefetch(self, file_size=None, max_concurrent_requests=None) -> None:
        pass

    def close(self) -> None:
        pass


class FakeSFTP:
    def __init__(self, fs: FakeFS, session: "FakeSession") -> None:
        self.fs = fs
        self.session = session

    def stat(self, path: str):
        if path not in self.fs.files:
            raise FileNotFoundError(path)
        return SimpleNamespace(st_size=len(self.fs.files[path]))

    def open(self, path: str, mode: str = "r") -> FakeRemoteFile:
        if "w" not in mode:
            with self.fs.lock:
                failing = self.fs.fail_opens > 0
                if failing:
                    self.fs.fail_opens -= 1
            if failing:
                if self.fs.kill_session_on_fail:
                    self.session.active = False
                raise OSError("simulated channel failure")
        return FakeRemoteFile(self.fs, path, mode)

    def posix_rename(self, old: str, new: str) -> None:
        with self.fs.lock:
            self.fs.files[new] = self.fs.files.pop(old)

    def rename(self, old: str, new: str) -> None:
        self.posix_rename(old, new)

    def remove(self, path: str) -> None:
        with self.fs.lock:
            if path not in self.fs.files:
                raise FileNotFoundError(path)
            del self.fs.files[path]

    def close(self) -> None:
        pass


class FakeSession:
    def __init__(self, fs: FakeFS, keepalive) -> None:
        self.fs = fs
        self.active = True
        self.closed = False
        self.keepalive = keepalive

    def open_sftp(self) -> FakeSFTP:
        return FakeSFTP(self.fs, self)

    def set_keepalive(self, policy) -> None:
        self.keepalive = policy

    def close(self) -> None:
        self.closed = True
        self.active = False


@pytest.fixture()
def fs() -> FakeFS:
    return FakeFS()


@pytest.fixture()
def sessions() -> list[FakeSession]:
    return []


@pytest.fixture()
def engine(fs: FakeFS, sessions: list[FakeSession]) -> TransferEngine:
    def connect(target, *, timeout, keepalive, strict_host_keys):
        session = FakeSession(fs, keepalive)
        sessions.append(session)
        return session

    return TransferEngine(connect=connect, sleep=MagicMock())


def _payload(size: int) -> bytes:
    return bytes(i % 251 for i in range(size))


# ---------------------------------------------------------------------------
# Pure functions
# ---------------------------------------------------------------------------


class TestSelectTier:
    @pytest.mark.parametrize(
        "size, concurrency, chunk",
        [
            (0, 32, 64 * KB),
            (50 * MB, 32, 64 * KB),
            (100 * MB, 64, 128 * KB),
            (500 * MB, 64, 128 * KB),
            (1 * GB, 96, 256 * KB),
            (2 * GB, 96, 256 * KB),
            (5 * GB, 128, 512 * KB),
            (10 * GB - 1, 128, 512 * KB),
            (10 * GB, 160, 1 * MB),
            (200 * GB, 160, 1 * MB),
        ],
    )
    def test_table(self, size: int, concurrency: int, chunk: int) -> None:
        tier = select_tier(size)
        assert (tier.concurrency, tier.chunk_size) == (concurrency, chunk)

    def test_retries_grow_for_large_tiers(self) -> None:
        assert select_tier(10 * MB).retry_attempts == 3
        assert select_tier(2 * GB).retry_attempts == 5
        assert select_tier(20 * GB).retry_attempts == 10

    def test_large_tiers_use_large_file_keepalive(self) -> None:
        assert select_tier(10 * MB).keepalive == TRANSFER_KEEPALIVE
        assert select_tier(2 * GB).keepalive == LARGE_FILE_KEEPALIVE


class TestRanges:
    def test_split_covers_every_byte_once(self) -> None:
        ranges = split_ranges(1000, 3)
        assert ranges == [(0, 334), (334, 334), (668, 332)]
        assert sum(length for _, length in ranges) == 1000

    def test_empty_file_single_range(self) -> None:
        assert split_ranges(0, 4) == [(0, 0)]

    def test_more_streams_than_bytes(self) -> None:
        assert split_ranges(2, 5) == [(0, 1), (1, 1)]

    def test_small_files_use_one_channel(self) -> None:
        assert channel_count(160, 1 * MB) == 1

    def test_channels_scale_with_concurrency(self) -> None:
        assert channel_count(64, 20 * MB) == 2
        assert channel_count(160, 20 * GB) == 5


class TestTransferProgress:
    def test_fraction(self) -> None:
        p = TransferProgress("/r", "/l", TransferDirection.DOWNLOAD, file_size=200)
        p.bytes_transferred = 50
        assert p.progress_fraction == pytest.approx(0.25)
        assert p.status is TransferStatus.PENDING

    def test_zero_size_is_complete(self) -> None:
        p = TransferProgress("/r", "/l", TransferDirection.DOWNLOAD, file_size=0)
        assert p.progress_fraction == 1.0
        assert p.eta_seconds is None


# ---------------------------------------------------------------------------
# Download
# ---------------------------------------------------------------------------


class TestDownload:
    def test_small_file_roundtrip(self, engine, fs, sessions, tmp_path: Path) -> None:
        data = _payload(300 * KB)
        fs.files["/var/www/a.zip"] = bytearray(data)
        dest = tmp_path / "out" / "a.zip"

        result = engine.download(TARGET, "/var/www/a.zip", str(dest))

        assert result.success is True
        assert result.byte_size == len(data)
        assert result.attempts == 1
        assert dest.read_bytes() == data
        assert not (tmp_path / "out" / "a.zip.tmp").exists()
        assert all(s.closed for s in sessions)

    def test_parallel_ranges_reassemble(self, engine, fs, tmp_path: Path) -> None:
        data = _payload(12 * MB)
        fs.files["/big.tar.gz"] = bytearray(data)
        dest = tmp_path / "big.tar.gz"

        result = engine.download(TARGET, "/big.tar.gz", str(dest), TransferOptions(concurrency=96))

        assert result.success is True
        assert dest.read_bytes() == data

    def test_progress_callback_sees_every_byte(self, engine, fs, tmp_path: Path) -> None:
        fs.files["/a.zip"] = bytearray(_payload(200 * KB))
        seen: list[int] = []
        engine.download(
            TARGET, "/a.zip", str(tmp_path / "a.zip"),
            TransferOptions(on_progress=lambda p: seen.append(p.bytes_transferred)),
        )
        assert seen[-1] == 200 * KB
        assert seen == sorted(seen)

    def test_callback_exception_does_not_fail_transfer(self, engine, fs, tmp_path: Path) -> None:
        fs.files["/a.zip"] = bytearray(b"x" * 10)
        result = engine.download(
            TARGET, "/a.zip", str(tmp_path / "a.zip"),
            TransferOptions(on_progress=MagicMock(side_effect=RuntimeError("ui gone"))),
        )
        assert result.success is True

    def test_transient_failures_then_success(self, engine, fs, tmp_path: Path) -> None:
        fs.files["/a.zip"] = bytearray(b"payload")
        fs.fail_opens = 2

        result = engine.download(TARGET, "/a.zip", str(tmp_path / "a.zip"))

        assert result.success is True
        assert result.attempts == 3
        assert engine._sleep.call_count == 2
        engine._sleep.assert_called_with(2.0)

    def test_exhausted_retries_return_failure(self, engine, fs, tmp_path: Path) -> None:
        fs.files["/a.zip"] = bytearray(b"payload")
        fs.fail_opens = 99

        result = engine.download(TARGET, "/a.zip", str(tmp_path / "a.zip"), TransferOptions(retry_attempts=4))

        assert result.success is False
        assert result.attempts == 4
        assert "simulated channel failure" in result.error_detail
        assert not (tmp_path / "a.zip").exists()
        assert not (tmp_path / "a.zip.tmp").exists()

    def test_dead_session_is_replaced(self, engine, fs, sessions, tmp_path: Path) -> None:
        fs.files["/a.zip"] = bytearray(b"payload")
        fs.fail_opens = 1
        fs.kill_session_on_fail = True

        result = engine.download(TARGET, "/a.zip", str(tmp_path / "a.zip"))

        assert result.success is True
        assert len(sessions) == 2
        assert all(s.closed for s in sessions)

    def test_missing_remote_file_is_failure_not_exception(self, engine, tmp_path: Path) -> None:
        result = engine.download(TARGET, "/nope.zip", str(tmp_path / "x.zip"))
        assert result.success is False
        assert result.attempts == 0

    def test_connect_failure_raises(self, tmp_path: Path) -> None:
        engine = TransferEngine(connect=MagicMock(side_effect=ConnectionError("refused")))
        with pytest.raises(ConnectionError):
            engine.download(TARGET, "/a.zip", str(tmp_path / "a.zip"))

    def test_progress_log_is_throttled(self, fs, tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
        fs.files["/a.zip"] = bytearray(_payload(640 * KB))
        engine = TransferEngine(
            connect=lambda target, **kw: FakeSession(fs, kw["keepalive"]),
            sleep=MagicMock(),
            clock=lambda: 100.0,
        )
        with caplog.at_level(logging.INFO, logger="remote_backup.transfer"):
            engine.download(TARGET, "/a.zip", str(tmp_path / "a.zip"))
        progress_lines = [r for r in caplog.records if r.getMessage().startswith("Progress:")]
        assert len(progress_lines) == 1


# ---------------------------------------------------------------------------
# Upload
# ---------------------------------------------------------------------------


class TestUpload:
    def test_upload_lands_atomically(self, engine, fs, tmp_path: Path) -> None:
        src = tmp_path / "a.zip"
        src.write_bytes(_payload(100 * KB))

        result = engine.upload(str(src), "/srv/a.zip", TARGET)

        assert result.success is True
        assert bytes(fs.files["/srv/a.zip"]) == src.read_bytes()
        assert "/srv/a.zip.tmp" not in fs.files

    def test_parallel_upload(self, engine, fs, tmp_path: Path) -> None:
        src = tmp_path / "big.zip"
        src.write_bytes(_payload(11 * MB))

        result = engine.upload(str(src), "/srv/big.zip", TARGET, TransferOptions(concurrency=128))

        assert result.success is True
        assert bytes(fs.files["/srv/big.zip"]) == src.read_bytes()

    def test_replaces_existing_remote_file(self, engine, fs, tmp_path: Path) -> None:
        fs.files["/srv/a.zip"] = bytearray(b"old")
        src = tmp_path / "a.zip"
        src.write_bytes(b"new contents")
        assert engine.upload(str(src), "/srv/a.zip", TARGET).success is True
        assert bytes(fs.files["/srv/a.zip"]) == b"new contents"

    def test_missing_local_file(self, engine, tmp_path: Path) -> None:
        result = engine.upload(str(tmp_path / "nope"), "/srv/x", TARGET)
        assert result.success is False


# ---------------------------------------------------------------------------
# Streams / stat
# ---------------------------------------------------------------------------


class TestReadStream:
    def test_stream_reads_whole_file(self, engine, fs, sessions) -> None:
        fs.files["/a.zip"] = bytearray(b"abcdef")
        with engine.open_read_stream(TARGET, "/a.zip") as stream:
            assert stream.size == 6
            assert stream.read(4) == b"abcd"
            assert stream.read() == b"ef"
        assert sessions[0].closed is True

    def test_missing_file_raises_and_closes(self, engine, sessions) -> None:
        with pytest.raises(TransferError):
            engine.open_read_stream(TARGET, "/nope")
        assert sessions[0].closed is True

    def test_stat_remote(self, engine, fs) -> None:
        fs.files["/a.zip"] = bytearray(b"1234")
        assert engine.stat_remote(TARGET, "/a.zip") == 4

    def test_stat_remote_missing(self, engine) -> None:
        with pytest.raises(TransferError):
            engine.stat_remote(TARGET, "/nope")
