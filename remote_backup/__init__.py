"""remote-backup: compress folders on remote servers over SSH and ship the archives
to local storage or a cloud object store."""

__version__ = "1.0.0"
