"""Backup and restore for distributed key-value clusters: storage, ranges, checksums and the kvbackup command."""

__version__ = "0.1.0"