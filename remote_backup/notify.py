"""Backup outcome notifications."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

import requests

from remote_backup.models import BulkResult

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = 10.0

COLOR_SUCCESS = 3066993     # green
COLOR_FAILURE = 15158332    # red
COLOR_PARTIAL = 15844367    # orange


class NotificationError(RuntimeError):
    """Raised when a notification cannot be delivered."""


class Notifier(ABC):
    """Sink for job and batch outcomes.  Callers wrap every call in ``best_effort``."""

    @abstractmethod
    def notify_success(
        self,
        server_name: str,
        size_mb: float,
        duration_seconds: float,
        local_path: str | None = None,
        cloud_uploaded: bool = False,
        strategy_used: str | None = None,
        folder_name: str | None = None,
    ) -> None:
        """Report a successful backup."""

    @abstractmethod
    def notify_failure(self, server_name: str, error_message: str, duration_seconds: float) -> None:
        """Report a failed backup."""

    @abstractmethod
    def notify_bulk_summary(self, bulk: BulkResult) -> None:
        """Report the aggregate of a batch."""


class NullNotifier(Notifier):
    """Used when no notification channel is configured."""

    def notify_success(self, server_name, size_mb, duration_seconds, local_path=None,
                       cloud_uploaded=False, strategy_used=None, folder_name=None) -> None:
        logger.debug("Notifications disabled; success of %s not sent", server_name)

    def notify_failure(self, server_name, error_message, duration_seconds) -> None:
        logger.debug("Notifications disabled; failure of %s not sent", server_name)

    def notify_bulk_summary(self, bulk) -> None:
        logger.debug("Notifications disabled; bulk summary not sent")


def _field(name: str, value: Any, inline: bool = True) -> dict:
    return {"name": name, "value": str(value), "inline": inline}


class DiscordWebhookNotifier(Notifier):
    """Posts one embed per event to a Discord webhook."""

    def __init__(
        self,
        webhook_url: str,
        username: str = "Backup Bot",
        avatar_url: str | None = None,
        session: requests.Session | None = None,
        timeout: float = _DEFAULT_TIMEOUT,
    ) -> None:
        if not webhook_url:
            raise ValueError("Discord webhook URL is not configured")
        self.webhook_url = webhook_url
        self.username = username
        self.avatar_url = avatar_url
        self._session = session or requests.Session()
        self.timeout = timeout

    def _send(self, embed: dict) -> None:
        embed.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
        payload: dict[str, Any] = {"username": self.username, "embeds": [embed]}
        if self.avatar_url:
            payload["avatar_url"] = self.avatar_url
        try:
            response = self._session.post(self.webhook_url, json=payload, timeout=self.timeout)
            response.raise_for_status()
        except requests.HTTPError as exc:
            raise NotificationError(
                f"Discord webhook responded with status {exc.response.status_code}"
            ) from exc
        except requests.RequestException as exc:
            raise NotificationError(f"Failed to send Discord notification: {exc}") from exc

    def notify_success(self, server_name, size_mb, duration_seconds, local_path=None,
                       cloud_uploaded=False, strategy_used=None, folder_name=None) -> None:
        fields = [
            _field("Server", server_name),
            _field("Size", f"{size_mb:.2f} MB"),
            _field("Duration", f"{duration_seconds:.1f}s"),
        ]
        if local_path:
            fields.append(_field("Local path", local_path, inline=False))
        if cloud_uploaded:
            fields.append(_field("Cloud", f"Uploaded via {strategy_used or 'unknown'}"))
        if folder_name:
            fields.append(_field("Folder", folder_name))
        self._send({
            "title": "✅ Backup succeeded",
            "description": f"Backup of **{server_name}** completed.",
            "color": COLOR_SUCCESS,
            "fields": fields,
        })

    def notify_failure(self, server_name, error_message, duration_seconds) -> None:
        self._send({
            "title": "❌ Backup failed",
            "description": f"Backup of **{server_name}** failed.",
            "color": COLOR_FAILURE,
            "fields": [
                _field("Server", server_name),
                _field("Duration", f"{duration_seconds:.1f}s"),
                _field("Error", (error_message or "unknown error")[:1000], inline=False),
            ],
        })

    def notify_bulk_summary(self, bulk: BulkResult) -> None:
        fields = [
            _field("Servers", bulk.total_servers),
            _field("Succeeded", bulk.success_count),
            _field("Failed", bulk.failure_count),
            _field("Wall time", f"{bulk.total_wall_seconds:.1f}s"),
        ]
        succeeded = [r.result.server_name for r in bulk.results if r.result.success]
        failed = [r.result.server_name for r in bulk.results if not r.result.success]
        if succeeded:
            fields.append(_field("✅ Succeeded", ", ".join(succeeded), inline=False))
        if failed:
            fields.append(_field("❌ Failed", ", ".join(failed), inline=False))
        self._send({
            "title": "📊 Bulk backup report",
            "color": COLOR_SUCCESS if bulk.failure_count == 0 else COLOR_PARTIAL,
            "fields": fields,
        })


def notifier_from_settings(discord: dict) -> Notifier:
    """Build the configured notifier, or a :class:`NullNotifier`."""
    if discord.get("enabled") and discord.get("webhook_url"):
        return DiscordWebhookNotifier(
            discord["webhook_url"],
            username=discord.get("username") or "Backup Bot",
            avatar_url=discord.get("avatar_url") or None,
        )
    return NullNotifier()
