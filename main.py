"""remote-backup entry point."""

from remote_backup.cli import cli

if __name__ == "__main__":
    cli()
