"""Data model shared by every stage of a backup run.

Configuration types are frozen: they are resolved once per request and never
mutated while a job executes.  ``StepStatus`` is the single mutable record and
belongs to exactly one job instance.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, auto

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class CompressionKind(Enum):
    """Archive format produced on the remote host."""

    ZIP = "zip"
    TAR_GZ = "tar.gz"

    @property
    def extension(self) -> str:
        return f".{self.value}"

    @classmethod
    def parse(cls, value: str | "CompressionKind") -> "CompressionKind":
        """Accept ``zip``, ``tar.gz``, ``tarGz`` or ``tar_gz``."""
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower().replace("_", ".")
        if key in ("targz", "tgz"):
            key = "tar.gz"
        for kind in cls:
            if kind.value == key:
                return kind
        raise ValueError(f"Unsupported compression kind: {value!r}")


class UploadMethod(Enum):
    """How the archive should reach the cloud store."""

    DIRECT = "direct"
    LOCAL = "local"

    @classmethod
    def parse(cls, value: str | "UploadMethod") -> "UploadMethod":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unsupported upload method: {value!r}") from None


class JobState(Enum):
    """States of the per-server backup state machine, in order."""

    INIT = auto()
    SSH_VERIFIED = auto()
    TOOLS_VERIFIED = auto()
    DIRECTORY_VERIFIED = auto()
    COMPRESSED = auto()
    TRANSFERRED = auto()
    CLEANED_UP = auto()
    SUCCEEDED = auto()
    FAILED = auto()


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConnectionTarget:
    """Where and how to reach one remote host.

    Exactly one of *password* / *key_path* is normally set.  When neither is
    given the connection layer falls back to the OS keyring.
    """

    host: str
    username: str
    port: int = 22
    password: str | None = field(default=None, repr=False)
    key_path: str | None = None
    key_passphrase: str | None = field(default=None, repr=False)

    @property
    def account(self) -> str:
        """``user@host`` label used for logging and keyring lookups."""
        return f"{self.username}@{self.host}"


@dataclass(frozen=True)
class CloudUploadConfig:
    """Cloud destination settings for one job."""

    enabled: bool = False
    upload_method: UploadMethod = UploadMethod.LOCAL
    destination_folder_id: str | None = None
    credentials_ref: str | None = None


@dataclass(frozen=True)
class BackupJobConfig:
    """Everything one job needs; built once by ``config.build_job_config``."""

    server_name: str
    target: ConnectionTarget
    remote_directory: str
    target_subfolder: str = "uploads"
    compression: CompressionKind = CompressionKind.ZIP
    local_root: str = "backups"
    cloud: CloudUploadConfig = field(default_factory=CloudUploadConfig)

    @property
    def target_path(self) -> str:
        """Absolute remote path of the folder being backed up."""
        return f"{self.remote_directory.rstrip('/')}/{self.target_subfolder.strip('/')}"


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class StepStatus:
    """Per-step progress of one job.  Flags only ever move False → True."""

    ssh_connection: bool = False
    directory_check: bool = False
    compression: bool = False
    transfer: bool = False
    cloud_upload: bool = False

    def mark(self, step: str) -> None:
        """Set *step* to True.  Unknown step names raise ``AttributeError``."""
        if not hasattr(self, step):
            raise AttributeError(f"Unknown backup step: {step!r}")
        setattr(self, step, True)

    def as_dict(self) -> dict[str, bool]:
        return {
            "ssh_connection": self.ssh_connection,
            "directory_check": self.directory_check,
            "compression": self.compression,
            "transfer": self.transfer,
            "cloud_upload": self.cloud_upload,
        }


@dataclass(frozen=True)
class ToolCheckResult:
    """Outcome of probing the remote host for required binaries."""

    available: bool
    missing_tools: tuple[str, ...] = ()


@dataclass(frozen=True)
class TransferResult:
    """Metrics for one download or upload call."""

    path: str
    byte_size: int
    duration_seconds: float
    average_throughput_mbps: float
    success: bool
    attempts: int = 1
    error_detail: str | None = None


@dataclass(frozen=True)
class UploadOutcome:
    """What the winning upload strategy produced."""

    cloud_object_id: str
    destination_folder_name: str
    strategy_used: str
    upload_duration_seconds: float
    byte_size: int
    chunks_processed: int = 1


@dataclass(frozen=True)
class BackupResult:
    """Terminal outcome of one job."""

    success: bool
    server_name: str
    steps: StepStatus
    local_file_path: str | None = None
    cloud_object_id: str | None = None
    byte_size_mb: float | None = None
    strategy_used: str | None = None
    folder_name: str | None = None
    error_message: str | None = None

    def as_dict(self) -> dict:
        return {
            "success": self.success,
            "server_name": self.server_name,
            "local_file_path": self.local_file_path,
            "cloud_object_id": self.cloud_object_id,
            "byte_size_mb": self.byte_size_mb,
            "strategy_used": self.strategy_used,
            "folder_name": self.folder_name,
            "error_message": self.error_message,
            "steps": self.steps.as_dict(),
        }


@dataclass(frozen=True)
class JobReport:
    """One row of a batch report: the job's result plus its wall time."""

    result: BackupResult
    duration_seconds: float


@dataclass(frozen=True)
class BulkResult:
    """Aggregate of a whole batch, ordered like the input configs."""

    total_servers: int
    success_count: int
    failure_count: int
    total_wall_seconds: float
    results: tuple[JobReport, ...] = ()

    def as_dict(self) -> dict:
        return {
            "total_servers": self.total_servers,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "total_wall_seconds": round(self.total_wall_seconds, 1),
            "results": [
                {**report.result.as_dict(), "duration_seconds": round(report.duration_seconds, 1)}
                for report in self.results
            ],
        }
