"""Adaptive SFTP transfer engine.

Handles download and upload of single archives with:
- Concurrency and chunk size chosen from the file's size tier
- Multi-channel ranged copies (several SFTP channels over one transport)
- Whole-transfer retry with a fixed delay between attempts
- Atomic finalisation (temp file + rename)
- A polled progress struct plus an optional per-step callback
"""

from __future__ import annotations

import logging
import math
import os
import threading
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path
from typing import Callable, Iterator

import paramiko

from remote_backup.connection import (
    DEFAULT_CONNECT_TIMEOUT,
    LARGE_FILE_KEEPALIVE,
    TRANSFER_KEEPALIVE,
    ConnectionError,
    KeepalivePolicy,
    SessionFactory,
    SSHSession,
    open_session,
)
from remote_backup.models import ConnectionTarget, TransferResult
from remote_backup.utils.path_helpers import human_readable_size

logger = logging.getLogger(__name__)

KB = 1024
MB = 1024 * KB
GB = 1024 * MB

PARALLEL_THRESHOLD = 10 * MB        # Single channel below this size
REQUESTS_PER_CHANNEL = 32           # In-flight requests one SFTP channel handles well
MAX_CHANNELS = 5
PROGRESS_LOG_INTERVAL = 5.0         # seconds between progress log lines

# Errors that mean "this attempt failed", as opposed to programming errors.
_TRANSIENT_ERRORS = (OSError, EOFError, paramiko.SSHException, ConnectionError)

ProgressCallback = Callable[["TransferProgress"], None]


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class TransferError(Exception):
    """Raised when a transfer fails on every attempt or a stream cannot be opened."""

    def __init__(self, message: str, attempts: int = 0) -> None:
        super().__init__(message)
        self.attempts = attempts


# ---------------------------------------------------------------------------
# Size tiers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TransferTier:
    """Transfer parameters for one byte-size bracket."""

    name: str
    concurrency: int
    chunk_size: int
    retry_attempts: int
    retry_delay: float
    keepalive: KeepalivePolicy


_TIERS: tuple[tuple[int | None, TransferTier], ...] = (
    (100 * MB, TransferTier("small", 32, 64 * KB, 3, 2.0, TRANSFER_KEEPALIVE)),
    (1 * GB, TransferTier("medium", 64, 128 * KB, 3, 3.0, TRANSFER_KEEPALIVE)),
    (5 * GB, TransferTier("large", 96, 256 * KB, 5, 5.0, LARGE_FILE_KEEPALIVE)),
    (10 * GB, TransferTier("x-large", 128, 512 * KB, 8, 10.0, LARGE_FILE_KEEPALIVE)),
    (None, TransferTier("huge", 160, 1 * MB, 10, 15.0, LARGE_FILE_KEEPALIVE)),
)


def select_tier(size_bytes: int) -> TransferTier:
    """Return the tier for a file of *size_bytes* (pure function of size)."""
    for upper_bound, tier in _TIERS:
        if upper_bound is None or size_bytes < upper_bound:
            return tier
    raise AssertionError("unreachable: last tier is unbounded")


def channel_count(concurrency: int, size_bytes: int) -> int:
    """Number of parallel SFTP channels used for a ranged copy."""
    if size_bytes < PARALLEL_THRESHOLD:
        return 1
    return max(1, min(MAX_CHANNELS, concurrency // REQUESTS_PER_CHANNEL))


def split_ranges(size_bytes: int, streams: int) -> list[tuple[int, int]]:
    """Split *size_bytes* into ``(offset, length)`` pairs for *streams* workers."""
    if size_bytes <= 0:
        return [(0, 0)]
    n = max(1, streams)
    chunk = math.ceil(size_bytes / n)
    return [
        (i * chunk, min(chunk, size_bytes - i * chunk))
        for i in range(n)
        if i * chunk < size_bytes
    ]


def iter_chunks(offset: int, length: int, chunk_size: int) -> Iterator[tuple[int, int]]:
    """Yield ``(offset, length)`` read requests covering one range."""
    end = offset + length
    while offset < end:
        step = min(chunk_size, end - offset)
        yield offset, step
        offset += step


# ---------------------------------------------------------------------------
# Progress / options
# ---------------------------------------------------------------------------


class TransferDirection(Enum):
    UPLOAD = auto()
    DOWNLOAD = auto()


class TransferStatus(Enum):
    PENDING = auto()
    IN_PROGRESS = auto()
    COMPLETE = auto()
    FAILED = auto()


@dataclass
class TransferProgress:
    """Live, thread-safe view of one transfer; poll it or receive it via callback."""

    source_path: str
    dest_path: str
    direction: TransferDirection
    file_size: int
    bytes_transferred: int = 0
    attempt: int = 0
    status: TransferStatus = TransferStatus.PENDING
    error: str | None = None
    start_time: float | None = None
    end_time: float | None = None
    last_logged_at: float = 0.0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def progress_fraction(self) -> float:
        """Fraction of the file transferred (0.0 – 1.0)."""
        if self.file_size <= 0:
            return 1.0
        return min(1.0, self.bytes_transferred / self.file_size)

    @property
    def speed_mbps(self) -> float:
        """Current transfer speed in MB/s, or 0 if not yet started."""
        if self.start_time is None or self.bytes_transferred == 0:
            return 0.0
        elapsed = (self.end_time or time.monotonic()) - self.start_time
        if elapsed <= 0:
            return 0.0
        return (self.bytes_transferred / elapsed) / MB

    @property
    def eta_seconds(self) -> float | None:
        """Estimated seconds remaining, or None if speed is unknown."""
        speed = self.speed_mbps
        if speed <= 0 or self.file_size <= 0:
            return None
        return (self.file_size - self.bytes_transferred) / (speed * MB)


@dataclass(frozen=True)
class TransferOptions:
    """Caller overrides; ``None`` means "use the size tier's value"."""

    concurrency: int | None = None
    chunk_size: int | None = None
    retry_attempts: int | None = None
    retry_delay: float | None = None
    on_progress: ProgressCallback | None = None


@dataclass(frozen=True)
class _Plan:
    concurrency: int
    chunk_size: int
    retry_attempts: int
    retry_delay: float
    keepalive: KeepalivePolicy


def _plan(size_bytes: int, options: TransferOptions) -> _Plan:
    tier = select_tier(size_bytes)
    return _Plan(
        concurrency=options.concurrency or tier.concurrency,
        chunk_size=options.chunk_size or tier.chunk_size,
        retry_attempts=max(1, options.retry_attempts or tier.retry_attempts),
        retry_delay=tier.retry_delay if options.retry_delay is None else options.retry_delay,
        keepalive=tier.keepalive,
    )


# ---------------------------------------------------------------------------
# Read stream
# ---------------------------------------------------------------------------


class RemoteReadStream:
    """A readable remote file plus everything that must be closed with it."""

    def __init__(self, stream, size: int, sftp: paramiko.SFTPClient, session: SSHSession) -> None:
        self.stream = stream
        self.size = size
        self._sftp = sftp
        self._session = session
        self._closed = False

    def __enter__(self) -> "RemoteReadStream":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def read(self, n: int = -1) -> bytes:
        return self.stream.read(n)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for closer in (self.stream.close, self._sftp.close, self._session.close):
            try:
                closer()
            except Exception as exc:
                logger.debug("Ignoring error while closing read stream: %s", exc)


# ---------------------------------------------------------------------------
# TransferEngine
# ---------------------------------------------------------------------------


class TransferEngine:
    """Moves single files between this machine and a remote host over SFTP.

    :meth:`download` and :meth:`upload` never raise for a failed copy; they
    return ``TransferResult(success=False)``.  Only a failure to establish
    the initial connection raises ``ConnectionError``.
    """

    def __init__(
        self,
        connect: SessionFactory = open_session,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        strict_host_keys: bool = False,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._connect = connect
        self.connect_timeout = connect_timeout
        self.strict_host_keys = strict_host_keys
        self._sleep = sleep
        self._clock = clock

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def download(
        self,
        target: ConnectionTarget,
        remote_path: str,
        local_path: str,
        options: TransferOptions | None = None,
    ) -> TransferResult:
        """Copy *remote_path* on *target* to *local_path*."""
        options = options or TransferOptions()
        start = self._clock()
        session = self._open(target, TRANSFER_KEEPALIVE)
        try:
            try:
                size = self._remote_size(session, remote_path)
            except _TRANSIENT_ERRORS as exc:
                logger.error("Cannot stat %s on %s: %s", remote_path, target.host, exc)
                return self._failed(local_path, start, 0, f"Cannot stat remote file: {exc}")

            plan = _plan(size, options)
            session.set_keepalive(plan.keepalive)
            progress = TransferProgress(remote_path, local_path, TransferDirection.DOWNLOAD, size)
            logger.info(
                "Downloading %s from %s (%s, concurrency %d, chunk %s)",
                remote_path, target.host, human_readable_size(size),
                plan.concurrency, human_readable_size(plan.chunk_size),
            )

            def attempt(active: SSHSession) -> None:
                self._fetch(active, remote_path, local_path, size, plan, progress, options.on_progress)

            return self._execute(target, session, plan, progress, attempt, local_path, start)
        finally:
            session.close()

    def upload(
        self,
        local_path: str,
        remote_path: str,
        target: ConnectionTarget,
        options: TransferOptions | None = None,
    ) -> TransferResult:
        """Copy *local_path* to *remote_path* on *target*."""
        options = options or TransferOptions()
        start = self._clock()
        try:
            size = os.path.getsize(local_path)
        except OSError as exc:
            return self._failed(remote_path, start, 0, f"Cannot stat local file: {exc}")

        plan = _plan(size, options)
        session = self._open(target, plan.keepalive)
        try:
            progress = TransferProgress(local_path, remote_path, TransferDirection.UPLOAD, size)
            logger.info(
                "Uploading %s to %s:%s (%s, concurrency %d, chunk %s)",
                local_path, target.host, remote_path, human_readable_size(size),
                plan.concurrency, human_readable_size(plan.chunk_size),
            )

            def attempt(active: SSHSession) -> None:
                self._send(active, local_path, remote_path, size, plan, progress, options.on_progress)

            return self._execute(target, session, plan, progress, attempt, remote_path, start)
        finally:
            session.close()

    def stat_remote(self, target: ConnectionTarget, remote_path: str) -> int:
        """Return the exact byte size of *remote_path*.

        Raises:
            ConnectionError: The session could not be opened.
            TransferError: The file could not be stat'ed.
        """
        session = self._open(target, TRANSFER_KEEPALIVE)
        try:
            return self._remote_size(session, remote_path)
        except _TRANSIENT_ERRORS as exc:
            raise TransferError(f"Cannot stat {remote_path} on {target.host}: {exc}") from exc
        finally:
            session.close()

    def open_read_stream(self, target: ConnectionTarget, remote_path: str) -> RemoteReadStream:
        """Open *remote_path* for sequential reading with read-ahead.

        The caller owns the returned stream and must close it.

        Raises:
            ConnectionError: The session could not be opened.
            TransferError: The file could not be opened.
        """
        session = self._open(target, TRANSFER_KEEPALIVE)
        sftp = None
        try:
            sftp = session.open_sftp()
            size = sftp.stat(remote_path).st_size or 0
            tier = select_tier(size)
            session.set_keepalive(tier.keepalive)
            handle = sftp.open(remote_path, "rb")
            if size > 0:
                handle.prefetch(size, max_concurrent_requests=tier.concurrency)
        except _TRANSIENT_ERRORS as exc:
            if sftp is not None:
                sftp.close()
            session.close()
            raise TransferError(f"Cannot open {remote_path} on {target.host}: {exc}") from exc

        logger.info("Opened read stream for %s (%s)", remote_path, human_readable_size(size))
        return RemoteReadStream(handle, size, sftp, session)

    # ------------------------------------------------------------------
    # Retry driver
    # ------------------------------------------------------------------

    def _execute(
        self,
        target: ConnectionTarget,
        session: SSHSession,
        plan: _Plan,
        progress: TransferProgress,
        attempt: Callable[[SSHSession], None],
        result_path: str,
        start: float,
    ) -> TransferResult:
        progress.status = TransferStatus.IN_PROGRESS
        progress.start_time = self._clock()
        try:
            attempts = self._with_retries(target, session, plan, progress, attempt)
        except TransferError as exc:
            progress.status = TransferStatus.FAILED
            progress.error = str(exc)
            progress.end_time = self._clock()
            logger.error("Transfer of %s failed: %s", progress.source_path, exc)
            return self._failed(result_path, start, exc.attempts, str(exc))

        progress.status = TransferStatus.COMPLETE
        progress.end_time = self._clock()
        duration = max(self._clock() - start, 0.0)
        throughput = (progress.file_size / MB) / duration if duration > 0 else 0.0
        logger.info(
            "Transfer completed: %s in %.1fs (%.2f MB/s, %d attempt(s))",
            human_readable_size(progress.file_size), duration, throughput, attempts,
        )
        return TransferResult(
            path=result_path,
            byte_size=progress.file_size,
            duration_seconds=duration,
            average_throughput_mbps=throughput,
            success=True,
            attempts=attempts,
        )

    def _with_retries(
        self,
        target: ConnectionTarget,
        session: SSHSession,
        plan: _Plan,
        progress: TransferProgress,
        attempt: Callable[[SSHSession], None],
    ) -> int:
        """Run *attempt* until it succeeds; return the attempt number that did."""
        last_error: BaseException | None = None
        active = session
        try:
            for number in range(1, plan.retry_attempts + 1):
                progress.attempt = number
                with progress._lock:
                    progress.bytes_transferred = 0
                try:
                    if not active.active:
                        if active is not session:
                            active.close()
                        logger.info("Session to %s is down, reconnecting", target.host)
                        active = self._open(target, plan.keepalive)
                    attempt(active)
                    return number
                except _TRANSIENT_ERRORS as exc:
                    last_error = exc
                    if number < plan.retry_attempts:
                        logger.warning(
                            "Attempt %d/%d failed: %s. Retrying in %.0fs...",
                            number, plan.retry_attempts, exc, plan.retry_delay,
                        )
                        self._sleep(plan.retry_delay)
        finally:
            # The caller owns *session*; replacements are ours to close.
            if active is not session:
                active.close()
        raise TransferError(
            f"Transfer failed after {plan.retry_attempts} attempts: {last_error}",
            attempts=plan.retry_attempts,
        ) from last_error

    # ------------------------------------------------------------------
    # Copy implementations
    # ------------------------------------------------------------------

    def _fetch(
        self,
        session: SSHSession,
        remote_path: str,
        local_path: str,
        size: int,
        plan: _Plan,
        progress: TransferProgress,
        on_progress: ProgressCallback | None,
    ) -> None:
        """Ranged, multi-channel download into ``<local>.tmp`` then rename."""
        dest = Path(local_path)
        dest.parent.mkdir(parents=True, exist_ok=True)
        tmp_local = str(dest) + ".tmp"
        with open(tmp_local, "wb") as fh:
            fh.truncate(size)

        ranges = split_ranges(size, channel_count(plan.concurrency, size))
        per_channel = max(1, plan.concurrency // len(ranges))

        def _worker(offset: int, length: int) -> None:
            sftp = session.open_sftp()
            try:
                with sftp.open(remote_path, "rb") as rf, open(tmp_local, "r+b") as lf:
                    lf.seek(offset)
                    requests = list(iter_chunks(offset, length, plan.chunk_size))
                    for (_, expected), data in zip(
                        requests, rf.readv(requests, max_concurrent_prefetch_requests=per_channel)
                    ):
                        if len(data) != expected:
                            raise EOFError(f"Short read from {remote_path}: {len(data)} of {expected} bytes")
                        lf.write(data)
                        self._advance(progress, len(data), on_progress)
            finally:
                sftp.close()

        try:
            self._run_channels(_worker, ranges)
            if os.path.getsize(tmp_local) != size:
                raise OSError(f"Downloaded size mismatch for {remote_path}")
        except BaseException:
            _remove_quietly(tmp_local)
            raise
        os.replace(tmp_local, local_path)

    def _send(
        self,
        session: SSHSession,
        local_path: str,
        remote_path: str,
        size: int,
        plan: _Plan,
        progress: TransferProgress,
        on_progress: ProgressCallback | None,
    ) -> None:
        """Ranged, multi-channel upload into ``<remote>.tmp`` then rename.

        Writes are pipelined per channel, so in-flight requests scale with the
        number of channels the tier's concurrency buys.
        """
        tmp_remote = remote_path + ".tmp"
        sftp = session.open_sftp()
        try:
            with sftp.open(tmp_remote, "wb"):
                pass  # create / truncate

            ranges = split_ranges(size, channel_count(plan.concurrency, size))

            def _worker(offset: int, length: int) -> None:
                ch = session.open_sftp()
                try:
                    with open(local_path, "rb") as lf, ch.open(tmp_remote, "r+") as rf:
                        rf.set_pipelined(True)
                        lf.seek(offset)
                        rf.seek(offset)
                        remaining = length
                        while remaining > 0:
                            data = lf.read(min(plan.chunk_size, remaining))
                            if not data:
                                raise EOFError(f"{local_path} shrank during upload")
                            rf.write(data)
                            remaining -= len(data)
                            self._advance(progress, len(data), on_progress)
                finally:
                    ch.close()

            self._run_channels(_worker, ranges)

            try:
                sftp.posix_rename(tmp_remote, remote_path)
            except (OSError, paramiko.SSHException):
                # Server without the posix-rename extension: remove then rename
                try:
                    sftp.remove(remote_path)
                except OSError:
                    pass
                sftp.rename(tmp_remote, remote_path)
        finally:
            sftp.close()

    @staticmethod
    def _run_channels(worker: Callable[[int, int], None], ranges: list[tuple[int, int]]) -> None:
        """Run *worker* once per range on its own thread; re-raise the first error."""
        if len(ranges) == 1:
            worker(*ranges[0])
            return

        errors: list[BaseException] = []
        lock = threading.Lock()

        def _guarded(offset: int, length: int) -> None:
            try:
                worker(offset, length)
            except BaseException as exc:
                with lock:
                    errors.append(exc)

        threads = [
            threading.Thread(target=_guarded, args=(offset, length), name=f"sftp-range-{i}", daemon=True)
            for i, (offset, length) in enumerate(ranges)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        if errors:
            raise errors[0]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _open(self, target: ConnectionTarget, keepalive: KeepalivePolicy) -> SSHSession:
        return self._connect(
            target,
            timeout=self.connect_timeout,
            keepalive=keepalive,
            strict_host_keys=self.strict_host_keys,
        )

    @staticmethod
    def _remote_size(session: SSHSession, remote_path: str) -> int:
        sftp = session.open_sftp()
        try:
            return sftp.stat(remote_path).st_size or 0
        finally:
            sftp.close()

    def _advance(self, progress: TransferProgress, n: int, on_progress: ProgressCallback | None) -> None:
        """Account *n* bytes, emit the callback and a throttled log line."""
        now = self._clock()
        with progress._lock:
            progress.bytes_transferred += n
            should_log = now - progress.last_logged_at >= PROGRESS_LOG_INTERVAL
            if should_log:
                progress.last_logged_at = now
            transferred = progress.bytes_transferred

        if should_log:
            logger.info(
                "Progress: %.1f%% (%s of %s)",
                progress.progress_fraction * 100,
                human_readable_size(transferred),
                human_readable_size(progress.file_size),
            )
        if on_progress:
            try:
                on_progress(progress)
            except Exception:
                logger.exception("Exception in on_progress callback")

    def _failed(self, path: str, start: float, attempts: int, detail: str) -> TransferResult:
        return TransferResult(
            path=path,
            byte_size=0,
            duration_seconds=max(self._clock() - start, 0.0),
            average_throughput_mbps=0.0,
            success=False,
            attempts=attempts,
            error_detail=detail,
        )


def _remove_quietly(path: str) -> None:
    try:
        os.remove(path)
    except OSError:
        pass
