"""SSH transport setup and remote command execution.

Every caller gets its own short-lived :class:`SSHSession`; nothing is pooled.
Sessions negotiate from an explicit algorithm preference list, never compress
(archives are already compressed) and run a keepalive watchdog that tears the
transport down after too many failed liveness probes, so blocked transfers
fail fast instead of hanging.
"""

from __future__ import annotations

import logging
import socket
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

import keyring
import keyring.errors
import paramiko

from remote_backup.models import ConnectionTarget
from remote_backup.utils.path_helpers import shell_quote

logger = logging.getLogger(__name__)

KEYRING_SERVICE = "remote-backup"
DEFAULT_CONNECT_TIMEOUT = 30.0

# Fastest first.  Entries the installed paramiko does not support are dropped.
PREFERRED_CIPHERS = (
    "aes128-gcm@openssh.com",
    "aes128-ctr",
    "aes192-ctr",
    "aes256-ctr",
)
PREFERRED_KEY_TYPES = (
    "ssh-ed25519",
    "ecdsa-sha2-nistp256",
    "ecdsa-sha2-nistp384",
    "ecdsa-sha2-nistp521",
    "rsa-sha2-512",
    "rsa-sha2-256",
)
PREFERRED_MACS = (
    "hmac-sha2-256-etm@openssh.com",
    "hmac-sha2-512-etm@openssh.com",
    "hmac-sha2-256",
    "hmac-sha2-512",
)

_WINDOW_SIZE = 64 * 1024 * 1024  # 64 MB


# ---------------------------------------------------------------------------
# Custom exceptions
# ---------------------------------------------------------------------------


class ConnectionError(Exception):  # noqa: A001  (shadows built-in intentionally)
    """Raised when the SSH transport cannot be opened, negotiated or authenticated."""


class UnknownHostError(ConnectionError):
    """Raised when the host key mismatches known_hosts, or is unknown in strict mode."""

    def __init__(self, message: str, hostname: str = "", fingerprint: str = "") -> None:
        super().__init__(message)
        self.hostname = hostname
        self.fingerprint = fingerprint


class RemoteCommandError(Exception):
    """Raised when a remote command exits with a non-zero status."""

    def __init__(self, command: str, exit_code: int, stderr: str) -> None:
        super().__init__(f"Command failed with code {exit_code}: {stderr.strip()}")
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class KeepalivePolicy:
    """Keepalive probe interval (seconds) and misses tolerated before giving up."""

    interval: int
    max_missed: int


COMMAND_KEEPALIVE = KeepalivePolicy(interval=10, max_missed=3)
TRANSFER_KEEPALIVE = KeepalivePolicy(interval=10, max_missed=10)
# Large files see long silent stretches (remote disk, cloud back-pressure).
LARGE_FILE_KEEPALIVE = KeepalivePolicy(interval=5, max_missed=30)


@dataclass(frozen=True)
class CommandOutput:
    stdout: str
    stderr: str
    exit_code: int


SessionFactory = Callable[..., "SSHSession"]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _close_transport_safely(transport: paramiko.Transport) -> None:
    """Close *transport* without raising."""
    try:
        transport.close()
    except Exception:
        pass  # Socket already gone


def _fingerprint(key: paramiko.PKey) -> str:
    return ":".join(f"{b:02x}" for b in key.get_fingerprint())


def _restrict(preferred: tuple[str, ...], supported: tuple[str, ...]) -> tuple[str, ...]:
    """Return *preferred* entries paramiko supports, falling back to *supported*."""
    chosen = tuple(name for name in preferred if name in supported)
    return chosen or tuple(supported)


def _apply_algorithm_preferences(transport: paramiko.Transport) -> None:
    opts = transport.get_security_options()
    opts.ciphers = _restrict(PREFERRED_CIPHERS, tuple(opts.ciphers))
    opts.key_types = _restrict(PREFERRED_KEY_TYPES, tuple(opts.key_types))
    opts.digests = _restrict(PREFERRED_MACS, tuple(opts.digests))
    opts.compression = ("none",)
    transport.use_compression(False)


def _verify_host_key(transport: paramiko.Transport, target: ConnectionTarget, strict: bool) -> None:
    """Check the server key against ``~/.ssh/known_hosts``."""
    server_key = transport.get_remote_server_key()
    known_hosts_path = Path.home() / ".ssh" / "known_hosts"
    host_keys = paramiko.HostKeys()
    if known_hosts_path.exists():
        try:
            host_keys.load(str(known_hosts_path))
        except OSError as exc:
            logger.warning("Could not read %s: %s", known_hosts_path, exc)

    lookup_name = target.host if target.port == 22 else f"[{target.host}]:{target.port}"
    entry = host_keys.lookup(lookup_name)
    fingerprint = _fingerprint(server_key)
    key_type = server_key.get_name()

    if entry is not None and key_type in entry:
        if entry[key_type] != server_key:
            raise UnknownHostError(
                f"Host key mismatch for {target.host}; check ~/.ssh/known_hosts",
                hostname=target.host,
                fingerprint=fingerprint,
            )
        return

    if strict:
        raise UnknownHostError(
            f"Host '{target.host}' is not in known_hosts.\n"
            f"Key type: {key_type}\n"
            f"Fingerprint (MD5): {fingerprint}",
            hostname=target.host,
            fingerprint=fingerprint,
        )
    logger.warning("Accepting unknown %s host key for %s (%s)", key_type, target.host, fingerprint)


def resolve_password(target: ConnectionTarget) -> str | None:
    """Return the password for *target*: explicit first, then the OS keyring."""
    if target.password:
        return target.password
    try:
        return keyring.get_password(KEYRING_SERVICE, target.account)
    except keyring.errors.KeyringError as exc:
        logger.warning("Keyring lookup failed for %s: %s", target.account, exc)
        return None


def store_password(target: ConnectionTarget, password: str) -> None:
    """Store *password* in the OS keyring for *target*."""
    keyring.set_password(KEYRING_SERVICE, target.account, password)
    logger.debug("Password stored in keyring for %s", target.account)


def delete_password(target: ConnectionTarget) -> None:
    """Remove the stored password for *target* from the OS keyring."""
    try:
        keyring.delete_password(KEYRING_SERVICE, target.account)
    except keyring.errors.PasswordDeleteError:
        pass
    logger.debug("Password deleted from keyring for %s", target.account)


def _load_private_key(target: ConnectionTarget) -> paramiko.PKey:
    # The passphrase keyword was renamed across paramiko releases; pass it positionally.
    try:
        return paramiko.PKey.from_path(target.key_path, target.key_passphrase)
    except (paramiko.SSHException, paramiko.UnknownKeyType, OSError, ValueError, TypeError) as exc:
        raise ConnectionError(f"Cannot load private key {target.key_path}: {exc}") from exc


def _authenticate(transport: paramiko.Transport, target: ConnectionTarget) -> None:
    if target.key_path:
        transport.auth_publickey(target.username, _load_private_key(target))
    else:
        password = resolve_password(target)
        if password is None:
            raise ConnectionError(
                f"No credential for {target.account}: give a password, a key path, "
                "or store a password in the keyring"
            )
        transport.auth_password(target.username, password)

    if not transport.is_authenticated():
        raise ConnectionError(f"Authentication failed for {target.account}")


# ---------------------------------------------------------------------------
# SSHSession
# ---------------------------------------------------------------------------


class SSHSession:
    """An authenticated transport to one host plus its keepalive watchdog.

    Usable as a context manager; :meth:`close` is idempotent.
    """

    def __init__(
        self,
        transport: paramiko.Transport,
        label: str,
        keepalive: KeepalivePolicy = COMMAND_KEEPALIVE,
    ) -> None:
        self._transport = transport
        self.label = label
        self.keepalive = keepalive
        self._stop_event = threading.Event()
        self._watchdog = threading.Thread(
            target=self._watchdog_loop,
            name=f"keepalive-{label}",
            daemon=True,
        )
        self._watchdog.start()

    def __enter__(self) -> "SSHSession":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def active(self) -> bool:
        return self._transport.is_active()

    def set_keepalive(self, policy: KeepalivePolicy) -> None:
        """Switch to *policy*; the watchdog picks it up on its next wake-up."""
        if policy == self.keepalive:
            return
        self.keepalive = policy
        self._transport.set_keepalive(policy.interval)
        logger.debug("Keepalive for %s set to %ds x %d", self.label, policy.interval, policy.max_missed)

    def exec(self, command: str) -> CommandOutput:
        """Run *command* on a fresh channel and wait for it to exit."""
        channel = self._transport.open_session()
        try:
            channel.exec_command(command)
            stdout = channel.makefile("rb", -1).read()
            stderr = channel.makefile_stderr("rb", -1).read()
            exit_code = channel.recv_exit_status()
        finally:
            channel.close()
        return CommandOutput(
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            exit_code=exit_code,
        )

    def open_sftp(self) -> paramiko.SFTPClient:
        """Open a new SFTP channel over this transport."""
        sftp = paramiko.SFTPClient.from_transport(self._transport)
        if sftp is None:
            raise ConnectionError(f"Could not open SFTP channel to {self.label}")
        return sftp

    def close(self) -> None:
        self._stop_event.set()
        _close_transport_safely(self._transport)
        if self._watchdog.is_alive() and self._watchdog is not threading.current_thread():
            self._watchdog.join(timeout=1)

    def _watchdog_loop(self) -> None:
        """Probe the transport every interval; close it after too many misses."""
        missed = 0
        while not self._stop_event.wait(timeout=self.keepalive.interval):
            try:
                if not self._transport.is_active():
                    raise EOFError("transport inactive")
                self._transport.send_ignore()
                missed = 0
            except Exception as exc:
                missed += 1
                logger.debug("Keepalive probe %d/%d to %s missed: %s",
                             missed, self.keepalive.max_missed, self.label, exc)
                if missed >= self.keepalive.max_missed:
                    logger.warning("Transport to %s declared dead after %d missed keepalives",
                                   self.label, missed)
                    _close_transport_safely(self._transport)
                    return


def open_session(
    target: ConnectionTarget,
    *,
    timeout: float = DEFAULT_CONNECT_TIMEOUT,
    keepalive: KeepalivePolicy = COMMAND_KEEPALIVE,
    strict_host_keys: bool = False,
) -> SSHSession:
    """Connect, negotiate and authenticate a transport to *target*.

    Raises:
        UnknownHostError: Host key mismatch (or unknown host in strict mode).
        ConnectionError: Network, negotiation or authentication failure.
    """
    logger.debug("Connecting to %s:%d", target.account, target.port)
    try:
        sock = socket.create_connection((target.host, target.port), timeout=timeout)
    except OSError as exc:
        raise ConnectionError(f"Cannot reach {target.host}:{target.port}: {exc}") from exc

    transport = paramiko.Transport(sock, default_window_size=_WINDOW_SIZE)
    try:
        _apply_algorithm_preferences(transport)
        transport.banner_timeout = timeout
        transport.auth_timeout = timeout
        transport.start_client(timeout=timeout)
        _verify_host_key(transport, target, strict_host_keys)
        _authenticate(transport, target)
    except ConnectionError:
        _close_transport_safely(transport)
        raise
    except paramiko.AuthenticationException as exc:
        _close_transport_safely(transport)
        raise ConnectionError(f"Authentication failed for {target.account}: {exc}") from exc
    except (paramiko.SSHException, OSError) as exc:
        _close_transport_safely(transport)
        raise ConnectionError(f"SSH connection to {target.host} failed: {exc}") from exc

    # Large archives: do not pause mid-transfer to rekey.
    transport.packetizer.REKEY_BYTES = pow(2, 40)
    transport.packetizer.REKEY_TIME = pow(2, 40)
    transport.set_keepalive(keepalive.interval)
    logger.debug("Connected to %s", target.account)
    return SSHSession(transport, label=target.host, keepalive=keepalive)


# ---------------------------------------------------------------------------
# RemoteExecutor
# ---------------------------------------------------------------------------


class RemoteExecutor:
    """Runs one shell command per session on a remote host."""

    def __init__(
        self,
        connect: SessionFactory = open_session,
        timeout: float = DEFAULT_CONNECT_TIMEOUT,
        strict_host_keys: bool = False,
    ) -> None:
        self._connect = connect
        self.timeout = timeout
        self.strict_host_keys = strict_host_keys

    def run(self, target: ConnectionTarget, command: str) -> str:
        """Execute *command* via ``/bin/bash -c`` and return its stdout.

        Raises:
            ConnectionError: The session could not be opened or dropped mid-command.
            RemoteCommandError: The command exited non-zero.
        """
        wrapped = f"/bin/bash -c {shell_quote(command)}"
        session = self._connect(
            target,
            timeout=self.timeout,
            keepalive=COMMAND_KEEPALIVE,
            strict_host_keys=self.strict_host_keys,
        )
        try:
            logger.debug("[%s] $ %s", target.host, command)
            output = session.exec(wrapped)
        except (paramiko.SSHException, EOFError, OSError) as exc:
            raise ConnectionError(f"Lost connection to {target.host} while running command: {exc}") from exc
        finally:
            session.close()

        if output.exit_code != 0:
            logger.error("[%s] Command failed with code %d: %s",
                         target.host, output.exit_code, output.stderr.strip())
            raise RemoteCommandError(command, output.exit_code, output.stderr)
        return output.stdout
