"""
Backup module for dbkeep.

This module handles the core backup functionality including:
- Engine adapters (Postgres, MySQL, MariaDB) and SSH tunnels
- Streaming pipeline (compression, encryption, checksum)
- Storage (S3 multipart and local)
- Catalog of verified backups
- Execution orchestration
- Retention policy enforcement

Submodules are imported directly (e.g. ``from dbkeep.backup.executor import
BackupExecutor``); importing them here would create an import cycle with
dbkeep.utils.crypto.
"""
