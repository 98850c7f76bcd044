"""Read-only checks against the remote host before a backup starts."""

from __future__ import annotations

import logging

from remote_backup.connection import RemoteCommandError, RemoteExecutor
from remote_backup.models import CompressionKind, ConnectionTarget, ToolCheckResult
from remote_backup.utils.path_helpers import shell_quote

logger = logging.getLogger(__name__)

REQUIRED_TOOLS: dict[CompressionKind, tuple[str, ...]] = {
    CompressionKind.ZIP: ("zip",),
    CompressionKind.TAR_GZ: ("tar", "gzip"),
}


class RemoteProbe:
    """Connectivity, directory and tool checks built on :class:`RemoteExecutor`.

    Transport and authentication failures always propagate as
    ``ConnectionError``; "not found" answers are returned, not raised.
    """

    def __init__(self, executor: RemoteExecutor) -> None:
        self._executor = executor

    def test_connection(self, target: ConnectionTarget) -> None:
        """Open a session and run a trivial command.

        Raises:
            ConnectionError: The host is unreachable or rejects the credentials.
            RemoteCommandError: The shell itself is broken.
        """
        self._executor.run(target, 'echo "connected"')
        logger.info("SSH connection to %s verified", target.account)

    def directory_exists(self, target: ConnectionTarget, path: str) -> bool:
        quoted = shell_quote(path)
        output = self._executor.run(target, f"[ -d {quoted} ] && echo exists || echo not_exists")
        exists = output.strip() == "exists"
        logger.info("Directory %s on %s: %s", path, target.host, "EXISTS" if exists else "NOT FOUND")
        return exists

    def is_tool_available(self, target: ConnectionTarget, tool: str) -> bool:
        """Return True if *tool* resolves on the remote ``PATH``."""
        try:
            output = self._executor.run(target, f"command -v {shell_quote(tool)}")
        except RemoteCommandError:
            return False
        return bool(output.strip())

    def check_required_tools(self, target: ConnectionTarget, kind: CompressionKind) -> ToolCheckResult:
        """Probe every binary *kind* needs; report all missing ones at once."""
        missing = []
        for tool in REQUIRED_TOOLS[kind]:
            if self.is_tool_available(target, tool):
                logger.debug("Tool '%s' is available on %s", tool, target.host)
            else:
                logger.warning("Tool '%s' is NOT available on %s", tool, target.host)
                missing.append(tool)

        if missing:
            logger.error(
                "Missing tools on %s: %s. Install with: sudo apt-get install %s",
                target.host, ", ".join(missing), " ".join(missing),
            )
        return ToolCheckResult(available=not missing, missing_tools=tuple(missing))
