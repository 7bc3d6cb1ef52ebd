"""Hash-partitioned SFTP file reorganization service."""

__version__ = "0.1.0"
