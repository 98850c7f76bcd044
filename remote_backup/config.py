"""Configuration and server-profile management.

All settings are stored as JSON files under ``~/.remote_backup/``.
Passwords are never written to disk; they are delegated to ``keyring``.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from remote_backup.models import (
    BackupJobConfig,
    CloudUploadConfig,
    CompressionKind,
    ConnectionTarget,
    UploadMethod,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_CONFIG: dict[str, Any] = {
    "ssh_timeout": 30,
    "local_backup_path": str(Path.home() / "backups"),
    "default_compression": "zip",
    "max_concurrent_backups": 5,
    "large_file_threshold_bytes": 1024 * 1024 * 1024,
    "strict_host_keys": False,
    "rclone_remote": "gdrive",
    "google_drive": {
        "enabled": False,
        "credentials_path": "",
        "folder_id": "",
    },
    "discord": {
        "enabled": False,
        "webhook_url": "",
        "username": "Backup Bot",
        "avatar_url": "",
    },
}

_SECRET_KEYS = ("password", "key_passphrase")


@dataclass(frozen=True)
class Settings:
    """Immutable snapshot of the effective configuration."""

    ssh_timeout: float = 30.0
    local_backup_path: str = "backups"
    default_compression: CompressionKind = CompressionKind.ZIP
    max_concurrent_backups: int = 5
    large_file_threshold_bytes: int = 1024 * 1024 * 1024
    strict_host_keys: bool = False
    rclone_remote: str = "gdrive"
    google_drive: dict = field(default_factory=dict)
    discord: dict = field(default_factory=dict)


def _merge_defaults(loaded: Mapping[str, Any]) -> dict[str, Any]:
    """Overlay *loaded* on the defaults; nested sections merge one level deep."""
    merged: dict[str, Any] = json.loads(json.dumps(DEFAULT_CONFIG))
    for key, value in loaded.items():
        if isinstance(merged.get(key), dict) and isinstance(value, dict):
            merged[key].update(value)
        else:
            merged[key] = value
    return merged


# ---------------------------------------------------------------------------
# ConfigManager
# ---------------------------------------------------------------------------


class ConfigManager:
    """Manages application settings and saved server profiles.

    Writes files atomically (write-to-temp, then rename) to prevent
    corruption on unexpected exit.  A corrupt config triggers a warning and
    a safe reset; it never crashes the application.
    """

    def __init__(self, base_dir: Path | None = None) -> None:
        """Initialise, creating ``~/.remote_backup/`` if necessary."""
        self._base = Path(base_dir) if base_dir else Path.home() / ".remote_backup"
        self._config_path = self._base / "config.json"
        self._servers_path = self._base / "servers.json"

        self._base.mkdir(parents=True, exist_ok=True)
        self._config: dict[str, Any] = self._load_config()
        self._servers: list[dict[str, Any]] = self._load_servers()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _atomic_write(self, path: Path, data: Any) -> None:
        """Serialise *data* as JSON and write atomically to *path*."""
        tmp = path.with_suffix(".tmp")
        try:
            tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
            tmp.replace(path)
        except OSError as exc:
            logger.error("Failed to write %s: %s", path, exc)
            raise

    def _load_config(self) -> dict[str, Any]:
        """Load ``config.json``, resetting to defaults on corruption."""
        if not self._config_path.exists():
            logger.debug("No config file, creating defaults")
            config = _merge_defaults({})
            self._atomic_write(self._config_path, config)
            return config

        try:
            loaded = json.loads(self._config_path.read_text(encoding="utf-8"))
            if not isinstance(loaded, dict):
                raise ValueError("Config root must be a JSON object")
            return _merge_defaults(loaded)
        except (json.JSONDecodeError, ValueError, OSError) as exc:
            logger.warning("Corrupt config.json (%s), resetting to defaults", exc)
            config = _merge_defaults({})
            self._atomic_write(self._config_path, config)
            return config

    def _load_servers(self) -> list[dict[str, Any]]:
        """Load ``servers.json``, returning an empty list on corruption."""
        if not self._servers_path.exists():
            return []
        try:
            loaded = json.loads(self._servers_path.read_text(encoding="utf-8"))
            if not isinstance(loaded, list):
                raise ValueError("Servers root must be a JSON array")
            return loaded
        except (json.JSONDecodeError, ValueError, OSError) as exc:
            logger.warning("Corrupt servers.json (%s), resetting to empty list", exc)
            self._atomic_write(self._servers_path, [])
            return []

    # ------------------------------------------------------------------
    # Config access
    # ------------------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        """Return the value for *key*, or *default* if missing."""
        return self._config.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Set *key* to *value* and persist the config file."""
        self._config[key] = value
        self._atomic_write(self._config_path, self._config)
        logger.debug("Config updated: %s = %r", key, value)

    def get_all(self) -> dict[str, Any]:
        """Return a shallow copy of the full config dict."""
        return dict(self._config)

    def settings(self) -> Settings:
        """Resolve the current config into an immutable :class:`Settings`."""
        cfg = self._config
        return Settings(
            ssh_timeout=float(cfg["ssh_timeout"]),
            local_backup_path=str(Path(cfg["local_backup_path"]).expanduser()),
            default_compression=CompressionKind.parse(cfg["default_compression"]),
            max_concurrent_backups=max(1, int(cfg["max_concurrent_backups"])),
            large_file_threshold_bytes=int(cfg["large_file_threshold_bytes"]),
            strict_host_keys=bool(cfg["strict_host_keys"]),
            rclone_remote=str(cfg["rclone_remote"]),
            google_drive=dict(cfg["google_drive"]),
            discord=dict(cfg["discord"]),
        )

    # ------------------------------------------------------------------
    # Server profiles
    # ------------------------------------------------------------------

    def get_servers(self) -> list[dict[str, Any]]:
        """Return a copy of all saved server profiles."""
        return list(self._servers)

    def save_server(self, profile: dict[str, Any]) -> None:
        """Upsert a server profile by its ``server_name`` field.

        Secrets are stripped before writing; store them via ``keyring``.
        """
        name = profile.get("server_name")
        if not name:
            raise ValueError("Server profile must have a non-empty 'server_name' field")

        profile = {k: v for k, v in profile.items() if k not in _SECRET_KEYS}

        for i, existing in enumerate(self._servers):
            if existing.get("server_name") == name:
                self._servers[i] = profile
                break
        else:
            self._servers.append(profile)

        self._atomic_write(self._servers_path, self._servers)
        logger.info("Server profile saved: %s", name)

    def delete_server(self, name: str) -> bool:
        """Delete the profile identified by *name*.

        Returns ``True`` if a profile was deleted, ``False`` if not found.
        """
        original_len = len(self._servers)
        self._servers = [p for p in self._servers if p.get("server_name") != name]
        if len(self._servers) < original_len:
            self._atomic_write(self._servers_path, self._servers)
            logger.info("Server profile deleted: %s", name)
            return True
        logger.warning("delete_server: profile not found: %s", name)
        return False

    def get_server(self, name: str) -> dict[str, Any] | None:
        """Return the profile dict for *name*, or ``None`` if not found."""
        for profile in self._servers:
            if profile.get("server_name") == name:
                return dict(profile)
        return None


# ---------------------------------------------------------------------------
# Request resolution
# ---------------------------------------------------------------------------

_ALIASES = {
    "server_name": ("server_name", "serverName"),
    "host": ("host",),
    "port": ("port",),
    "username": ("username", "user"),
    "password": ("password",),
    "private_key_path": ("private_key_path", "privateKeyPath", "key_path"),
    "key_passphrase": ("key_passphrase", "passphrase"),
    "remote_directory": ("remote_directory", "remoteDirectory"),
    "target_folder": ("target_folder", "targetFolder"),
    "compression": ("compression", "compressionKind"),
    "local_path": ("local_path", "localPath"),
    "cloud": ("cloud", "google_drive", "googleDrive"),
    "enabled": ("enabled",),
    "upload_method": ("upload_method", "uploadMethod"),
    "folder_id": ("folder_id", "folderId", "destination_folder_id"),
    "credentials_path": ("credentials_path", "credentialsPath", "credentials_ref"),
}

_REQUIRED = ("server_name", "host", "username", "remote_directory")


def _pick(data: Mapping[str, Any], key: str, default: Any = None) -> Any:
    for alias in _ALIASES[key]:
        value = data.get(alias)
        if value not in (None, ""):
            return value
    return default


def build_job_config(request: Mapping[str, Any], settings: Settings) -> BackupJobConfig:
    """Resolve a job request (or saved profile) plus *settings* into a frozen config.

    Both ``snake_case`` and ``camelCase`` keys are accepted.

    Raises:
        ValueError: A required field is missing or a value is invalid.
    """
    missing = [key for key in _REQUIRED if not _pick(request, key)]
    if missing:
        raise ValueError(f"Missing required field(s): {', '.join(missing)}")

    target = ConnectionTarget(
        host=str(_pick(request, "host")),
        username=str(_pick(request, "username")),
        port=int(_pick(request, "port", 22)),
        password=_pick(request, "password"),
        key_path=_pick(request, "private_key_path"),
        key_passphrase=_pick(request, "key_passphrase"),
    )

    drive = settings.google_drive
    cloud_request = _pick(request, "cloud") or {}
    if not isinstance(cloud_request, Mapping):
        raise ValueError("'cloud' must be an object")
    enabled = _pick(cloud_request, "enabled")
    cloud = CloudUploadConfig(
        enabled=bool(drive.get("enabled", False) if enabled is None else enabled),
        upload_method=UploadMethod.parse(_pick(cloud_request, "upload_method", "local")),
        destination_folder_id=_pick(cloud_request, "folder_id") or drive.get("folder_id") or None,
        credentials_ref=_pick(cloud_request, "credentials_path") or drive.get("credentials_path") or None,
    )

    return BackupJobConfig(
        server_name=str(_pick(request, "server_name")),
        target=target,
        remote_directory=str(_pick(request, "remote_directory")),
        target_subfolder=str(_pick(request, "target_folder", "uploads")),
        compression=CompressionKind.parse(_pick(request, "compression", settings.default_compression)),
        local_root=str(_pick(request, "local_path", settings.local_backup_path)),
        cloud=cloud,
    )
