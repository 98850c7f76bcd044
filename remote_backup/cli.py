"""Command-line interface for remote-backup."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

import click

from remote_backup.backup import BackupRunner
from remote_backup.batch import BatchOrchestrator
from remote_backup.config import DEFAULT_CONFIG, ConfigManager, Settings, build_job_config
from remote_backup.connection import (
    ConnectionError,
    RemoteCommandError,
    RemoteExecutor,
    delete_password,
    store_password,
)
from remote_backup.models import BulkResult, CompressionKind, ConnectionTarget
from remote_backup.probe import RemoteProbe

_LOG_FORMAT = "%(asctime)s  %(levelname)-8s  %(name)s - %(message)s"
_DATE_FORMAT = "%H:%M:%S"

_COMPRESSION_CHOICES = [kind.value for kind in CompressionKind]


def _configure_logging(verbose: bool) -> None:
    """Set up root logging to stderr."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=_LOG_FORMAT,
        datefmt=_DATE_FORMAT,
        stream=sys.stderr,
    )
    # Quieten noisy third-party loggers
    logging.getLogger("paramiko").setLevel(logging.WARNING)


def _fail(message: str) -> None:
    click.echo(f"✗ {message}", err=True)
    sys.exit(1)


def _print_summary(bulk: BulkResult) -> None:
    for report in bulk.results:
        result = report.result
        if result.success:
            where = result.cloud_object_id or result.local_file_path
            via = f" via {result.strategy_used}" if result.strategy_used else ""
            click.echo(f"✓ {result.server_name}: {result.byte_size_mb} MB{via} → {where} "
                       f"({report.duration_seconds:.1f}s)")
        else:
            click.echo(f"✗ {result.server_name}: {result.error_message} ({report.duration_seconds:.1f}s)")
    click.echo(
        f"\n{bulk.success_count}/{bulk.total_servers} succeeded, "
        f"{bulk.failure_count} failed in {bulk.total_wall_seconds:.1f}s"
    )


def _run_requests(requests: list, settings: Settings, as_json: bool) -> None:
    try:
        configs = [build_job_config(request, settings) for request in requests]
    except (ValueError, TypeError, AttributeError) as exc:
        _fail(f"Invalid job definition: {exc}")

    runner = BackupRunner.from_settings(settings)
    orchestrator = BatchOrchestrator(runner.run, settings.max_concurrent_backups, runner.notifier)
    bulk = orchestrator.run_batch(configs)

    if as_json:
        click.echo(json.dumps(bulk.as_dict(), indent=2))
    else:
        _print_summary(bulk)
    if bulk.failure_count:
        sys.exit(1)


@click.group()
@click.option("--config-dir", type=click.Path(file_okay=False, path_type=Path), default=None,
              help="Directory holding config.json and servers.json (default ~/.remote_backup)")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, config_dir: Path | None, verbose: bool):
    """remote-backup - compress remote folders and ship them home or to the cloud"""
    _configure_logging(verbose)
    ctx.obj = ConfigManager(config_dir)


@cli.command()
@click.argument("jobs_file", type=click.File("r"))
@click.option("--json", "as_json", is_flag=True, help="Print the batch report as JSON")
@click.pass_obj
def run(manager: ConfigManager, jobs_file, as_json: bool):
    """Run every job in JOBS_FILE concurrently.

    JOBS_FILE is a JSON list of job objects, or {"servers": [...]}.

    Example:
        remote-backup run jobs.json
    """
    try:
        data = json.load(jobs_file)
    except json.JSONDecodeError as e:
        _fail(f"Invalid JSON: {e}")
    requests = data.get("servers") if isinstance(data, dict) else data
    if not isinstance(requests, list) or not requests:
        _fail("JOBS_FILE must contain a non-empty list of jobs")
    _run_requests(requests, manager.settings(), as_json)


@cli.command("run-saved")
@click.option("--server", "names", multiple=True, help="Saved server to back up (repeatable; default all)")
@click.option("--json", "as_json", is_flag=True, help="Print the batch report as JSON")
@click.pass_obj
def run_saved(manager: ConfigManager, names: tuple[str, ...], as_json: bool):
    """Back up saved server profiles."""
    if names:
        profiles = []
        for name in names:
            profile = manager.get_server(name)
            if profile is None:
                _fail(f"No saved server named '{name}'")
            profiles.append(profile)
    else:
        profiles = manager.get_servers()
    if not profiles:
        _fail("No saved servers; add one with 'remote-backup servers add'")
    _run_requests(profiles, manager.settings(), as_json)


@cli.command("test-connection")
@click.option("--host", required=True)
@click.option("--user", "username", required=True)
@click.option("--port", default=22, show_default=True)
@click.option("--key", "key_path", type=click.Path(exists=True, dir_okay=False), default=None,
              help="Private key file")
@click.option("--ask-password", is_flag=True, help="Prompt for a password instead of using the keyring")
@click.pass_obj
def test_connection(manager: ConfigManager, host: str, username: str, port: int,
                    key_path: str | None, ask_password: bool):
    """Check that HOST accepts an SSH session and runs commands."""
    password = click.prompt("Password", hide_input=True) if ask_password else None
    target = ConnectionTarget(host=host, username=username, port=port, password=password, key_path=key_path)
    settings = manager.settings()
    probe = RemoteProbe(RemoteExecutor(timeout=settings.ssh_timeout, strict_host_keys=settings.strict_host_keys))
    try:
        probe.test_connection(target)
    except (ConnectionError, RemoteCommandError) as e:
        _fail(f"Connection to {target.account} failed: {e}")
    click.echo(f"✓ Connected to {target.account}:{port}")


@cli.group()
def servers():
    """Manage saved server profiles"""
    pass


@servers.command("list")
@click.pass_obj
def servers_list(manager: ConfigManager):
    """List saved servers."""
    profiles = manager.get_servers()
    if not profiles:
        click.echo("No saved servers")
        return
    click.echo(f"{'Name':<20} {'Target':<32} {'Directory':<30} {'Format':<7}")
    click.echo("-" * 92)
    for p in profiles:
        target = f"{p.get('username')}@{p.get('host')}:{p.get('port', 22)}"
        directory = f"{p.get('remote_directory', '')}/{p.get('target_folder', 'uploads')}"
        click.echo(f"{p.get('server_name', ''):<20} {target:<32} {directory:<30} "
                   f"{p.get('compression', 'zip'):<7}")


@servers.command("add")
@click.option("--name", "server_name", required=True, help="Unique server label")
@click.option("--host", required=True)
@click.option("--user", "username", required=True)
@click.option("--port", default=22, show_default=True)
@click.option("--remote-dir", "remote_directory", required=True, help="Parent directory on the host")
@click.option("--target-folder", default="uploads", show_default=True, help="Folder to back up")
@click.option("--compression", type=click.Choice(_COMPRESSION_CHOICES), default="zip", show_default=True)
@click.option("--key", "private_key_path", default=None, help="Private key file")
@click.option("--cloud/--no-cloud", default=False, help="Upload to the cloud store instead of downloading")
@click.option("--upload-method", type=click.Choice(["direct", "local"]), default="local", show_default=True)
@click.option("--ask-password", is_flag=True, help="Prompt for a password and store it in the keyring")
@click.pass_obj
def servers_add(manager: ConfigManager, ask_password: bool, cloud: bool, upload_method: str, **fields):
    """Save (or replace) a server profile."""
    profile = {k: v for k, v in fields.items() if v is not None}
    profile["cloud"] = {"enabled": cloud, "upload_method": upload_method}
    try:
        manager.save_server(profile)
    except ValueError as e:
        _fail(str(e))

    if ask_password:
        password = click.prompt("Password", hide_input=True)
        store_password(ConnectionTarget(host=fields["host"], username=fields["username"]), password)
    click.echo(f"✓ Saved server '{fields['server_name']}'")


@servers.command("remove")
@click.argument("name")
@click.pass_obj
def servers_remove(manager: ConfigManager, name: str):
    """Delete a saved server and its stored password."""
    profile = manager.get_server(name)
    if profile is None or not manager.delete_server(name):
        _fail(f"No saved server named '{name}'")
    delete_password(ConnectionTarget(host=profile["host"], username=profile["username"]))
    click.echo(f"✓ Removed server '{name}'")


@cli.group("config")
def config_group():
    """Manage settings in config.json"""
    pass


def _parse_value(raw: str):
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


@config_group.command("show")
@click.pass_obj
def config_show(manager: ConfigManager):
    """Show the current configuration."""
    click.echo(json.dumps(manager.get_all(), indent=2))


@config_group.command("get")
@click.argument("key")
@click.pass_obj
def config_get(manager: ConfigManager, key: str):
    """Print one setting; ``section.name`` reaches nested settings."""
    section, _, name = key.partition(".")
    value = manager.get(section)
    if name:
        value = value.get(name) if isinstance(value, dict) else None
    if value is None:
        _fail(f"Unknown config key: {key}")
    click.echo(json.dumps(value))


@config_group.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_obj
def config_set(manager: ConfigManager, key: str, value: str):
    """Set one setting.  VALUE is read as JSON when it parses, else as text.

    Example:
        remote-backup config set max_concurrent_backups 3
        remote-backup config set discord.webhook_url https://discord.com/api/webhooks/...
    """
    section, _, name = key.partition(".")
    if section not in DEFAULT_CONFIG:
        _fail(f"Unknown config key: {key}")
    parsed = _parse_value(value)
    if name:
        current = manager.get(section)
        if not isinstance(current, dict):
            _fail(f"'{section}' has no nested settings")
        parsed = {**current, name: parsed}
    manager.set(section, parsed)
    click.echo(f"✓ Configuration updated: {key} = {value}")


if __name__ == "__main__":
    cli()
