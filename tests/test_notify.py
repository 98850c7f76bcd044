"""Tests for remote_backup/notify.py."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
import requests

from remote_backup.models import BackupResult, BulkResult, JobReport, StepStatus
from remote_backup.notify import (
    COLOR_FAILURE,
    COLOR_PARTIAL,
    COLOR_SUCCESS,
    DiscordWebhookNotifier,
    NotificationError,
    NullNotifier,
    notifier_from_settings,
)

WEBHOOK = "https://discord.com/api/webhooks/1/abc"


@pytest.fixture()
def session() -> MagicMock:
    return MagicMock()


@pytest.fixture()
def notifier(session: MagicMock) -> DiscordWebhookNotifier:
    return DiscordWebhookNotifier(WEBHOOK, avatar_url="https://img/bot.png", session=session)


def _embed(session: MagicMock) -> dict:
    payload = session.post.call_args.kwargs["json"]
    assert payload["username"] == "Backup Bot"
    return payload["embeds"][0]


class TestDiscordWebhookNotifier:
    def test_success_embed(self, notifier, session) -> None:
        notifier.notify_success("db1", 12.5, 30.0, cloud_uploaded=True, strategy_used="rclone",
                                folder_name="2025_10_21-Database_db1")
        assert session.post.call_args.args[0] == WEBHOOK
        embed = _embed(session)
        assert embed["color"] == COLOR_SUCCESS
        values = {f["name"]: f["value"] for f in embed["fields"]}
        assert values["Size"] == "12.50 MB"
        assert values["Cloud"] == "Uploaded via rclone"
        assert values["Folder"] == "2025_10_21-Database_db1"
        assert "timestamp" in embed
        assert session.post.call_args.kwargs["json"]["avatar_url"] == "https://img/bot.png"

    def test_failure_embed(self, notifier, session) -> None:
        notifier.notify_failure("db1", "Cannot reach host", 4.2)
        embed = _embed(session)
        assert embed["color"] == COLOR_FAILURE
        assert any(f["value"] == "Cannot reach host" for f in embed["fields"])

    def test_bulk_summary_colour(self, notifier, session) -> None:
        ok = JobReport(BackupResult(True, "a", StepStatus()), 1.0)
        bad = JobReport(BackupResult(False, "b", StepStatus(), error_message="x"), 1.0)
        notifier.notify_bulk_summary(BulkResult(2, 1, 1, 2.0, (ok, bad)))
        embed = _embed(session)
        assert embed["color"] == COLOR_PARTIAL
        values = {f["name"]: f["value"] for f in embed["fields"]}
        assert values["❌ Failed"] == "b"

        notifier.notify_bulk_summary(BulkResult(1, 1, 0, 1.0, (ok,)))
        assert _embed(session)["color"] == COLOR_SUCCESS

    def test_http_error_wrapped(self, notifier, session) -> None:
        response = MagicMock(status_code=404)
        session.post.return_value.raise_for_status.side_effect = requests.HTTPError(response=response)
        with pytest.raises(NotificationError, match="404"):
            notifier.notify_failure("db1", "x", 1.0)

    def test_network_error_wrapped(self, notifier, session) -> None:
        session.post.side_effect = requests.ConnectionError("dns")
        with pytest.raises(NotificationError):
            notifier.notify_success("db1", 1.0, 1.0)

    def test_requires_url(self) -> None:
        with pytest.raises(ValueError):
            DiscordWebhookNotifier("")


class TestNotifierFromSettings:
    def test_disabled_gives_null(self) -> None:
        assert isinstance(notifier_from_settings({"enabled": False, "webhook_url": WEBHOOK}), NullNotifier)

    def test_enabled_without_url_gives_null(self) -> None:
        assert isinstance(notifier_from_settings({"enabled": True, "webhook_url": ""}), NullNotifier)

    def test_enabled(self) -> None:
        notifier = notifier_from_settings({"enabled": True, "webhook_url": WEBHOOK, "username": "Ops"})
        assert isinstance(notifier, DiscordWebhookNotifier)
        assert notifier.username == "Ops"
