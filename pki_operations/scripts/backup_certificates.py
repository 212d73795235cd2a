#!/usr/bin/env python3
"""Back up, verify, list or restore the PKI store and public certificates."""

import argparse
import sys
from pathlib import Path

from pki_operations.lib.backup import BackupManager
from pki_operations.lib.config import PKIConfig
from pki_operations.lib.errors import PKIOperationError
from pki_operations.lib.logging_config import LOGGER


def main() -> int:
    """Run one backup command.

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    parser = argparse.ArgumentParser(description="Certificate backup and restore")
    subparsers = parser.add_subparsers(dest="command", required=True)

    create = subparsers.add_parser("create", help="Create a new backup")
    create.add_argument("--archive", action="store_true", help="Also write a .tar.gz archive")
    create.add_argument(
        "--upload",
        action="store_true",
        help="Upload the archive to $PKI_BACKUP_BUCKET (implies --archive)",
    )

    subparsers.add_parser("list", help="List existing backups")

    verify = subparsers.add_parser("verify", help="Verify backup checksums")
    verify.add_argument("backup", type=Path, help="Backup directory")

    restore = subparsers.add_parser("restore", help="Restore from a verified backup")
    restore.add_argument("backup", type=Path, help="Backup directory")

    parser.add_argument("--backup-dir", type=Path, help="Backup directory root")
    args = parser.parse_args()

    try:
        config = PKIConfig.from_env()
        if args.backup_dir:
            config.backup_dir = args.backup_dir
        manager = BackupManager(config)

        if args.command == "create":
            result = manager.create_backup(archive=args.archive, upload=args.upload)
            LOGGER.info("Backup created: %s (%d files)", result.backup_path, result.files)
            if result.archive_path:
                LOGGER.info("  Archive: %s", result.archive_path)
            if result.s3_key:
                LOGGER.info("  S3 key: %s", result.s3_key)
        elif args.command == "list":
            for summary in manager.list_backups():
                LOGGER.info(
                    "%s  %s  %d files  %d bytes",
                    summary.timestamp,
                    summary.path,
                    summary.files,
                    summary.size_bytes,
                )
        elif args.command == "verify":
            if not manager.verify_backup_integrity(args.backup):
                LOGGER.error("Backup %s failed verification", args.backup)
                return 1
            LOGGER.info("Backup %s verified", args.backup)
        else:
            result = manager.restore_backup(args.backup)
            LOGGER.info("Restored %d files from %s", result.files, args.backup)
            LOGGER.info("  Previous state saved to %s", result.snapshot_path)
        return 0

    except PKIOperationError as e:
        LOGGER.error("Backup command failed: %s", e)
        return 1
    except OSError as e:
        LOGGER.error("Backup file error: %s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
