"""Snapshot, verification and restore of the PKI store and public directory."""

import hashlib
import json
import shutil
import tarfile
from datetime import UTC, datetime
from pathlib import Path

from .config import PKIConfig
from .errors import BackupIntegrityError, PKIOperationError
from .events import SYSTEM_ACTOR, Actor, EventEmitter, EventKind, EventPhase
from .gate import ConcurrencyGate
from .logging_config import LOGGER
from .models import BackupResult, BackupSummary
from .s3_client import S3Client

MANIFEST_FILE = "manifest.json"
CHECKSUMS_FILE = "checksums.json"
BACKUP_PREFIX = "backup"
SNAPSHOT_PREFIX = "pre-restore"
S3_KEY_PREFIX = "pki-backups"


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _timestamp() -> str:
    return datetime.now(UTC).strftime("%Y%m%dT%H%M%S%fZ")


def _swap_in_copy(source: Path, target: Path) -> None:
    """Replace ``target`` with a copy of ``source`` using directory renames.

    The copy is staged beside the target, so readers see either the old
    tree or the complete new one, never a half-copied directory.
    """
    stamp = _timestamp()
    staged = target.with_name(f".{target.name}.restore-{stamp}")
    retired = target.with_name(f".{target.name}.old-{stamp}")
    target.parent.mkdir(parents=True, exist_ok=True)
    shutil.copytree(source, staged)
    try:
        if target.exists():
            target.rename(retired)
        staged.rename(target)
    except OSError:
        if retired.exists() and not target.exists():
            retired.rename(target)
        shutil.rmtree(staged, ignore_errors=True)
        raise
    shutil.rmtree(retired, ignore_errors=True)


class BackupManager:
    """Copies the PKI directory and public certificates into timestamped backups.

    Backups are plain directories holding ``pki/`` and ``public/`` trees plus
    a manifest and SHA-256 checksums; they contain the CA private key and are
    created owner-only. Create and restore run inside the store's gate.
    """

    def __init__(
        self,
        config: PKIConfig,
        gate: ConcurrencyGate | None = None,
        events: EventEmitter | None = None,
        s3_client: S3Client | None = None,
    ) -> None:
        self.config = config
        self.gate = gate or ConcurrencyGate.for_store(config.pki_root, config.gate_wait_seconds)
        self.events = events or EventEmitter()
        self._s3_client = s3_client

    @property
    def s3_client(self) -> S3Client:
        if self._s3_client is None:
            self._s3_client = S3Client(self.config.aws_region)
        return self._s3_client

    def _sources(self) -> dict[str, Path]:
        return {"pki": self.config.pki_dir, "public": self.config.public_dir}

    def _write_backup(self, prefix: str) -> tuple[Path, int]:
        stamp = _timestamp()
        dest = self.config.backup_dir / f"{prefix}-{stamp}"
        dest.mkdir(parents=True)
        dest.chmod(0o700)

        for label, source in self._sources().items():
            if source.is_dir():
                shutil.copytree(source, dest / label)
            else:
                LOGGER.warning("Skipping missing %s directory %s", label, source)

        checksums = {
            path.relative_to(dest).as_posix(): sha256_file(path)
            for path in sorted(dest.rglob("*"))
            if path.is_file()
        }
        manifest = {
            "timestamp": stamp,
            "pkiDir": str(self.config.pki_dir),
            "publicDir": str(self.config.public_dir),
            "serverName": self.config.server_name,
            "files": len(checksums),
        }
        (dest / CHECKSUMS_FILE).write_text(json.dumps(checksums, indent=2))
        (dest / MANIFEST_FILE).write_text(json.dumps(manifest, indent=2))
        LOGGER.info("Backed up %d files to %s", len(checksums), dest)
        return dest, len(checksums)

    def _archive(self, backup_path: Path) -> Path:
        archive_path = backup_path.with_name(f"{backup_path.name}.tar.gz")
        with tarfile.open(archive_path, "w:gz") as archive:
            archive.add(backup_path, arcname=backup_path.name)
        archive_path.chmod(0o600)
        LOGGER.info("Created archive %s", archive_path)
        return archive_path

    def _upload(self, archive_path: Path) -> str:
        bucket = self.config.backup_bucket
        if not bucket:
            raise PKIOperationError("upload requested but PKI_BACKUP_BUCKET is not set")
        key = f"{S3_KEY_PREFIX}/{archive_path.name}"
        version = self.s3_client.upload_backup(bucket, archive_path.read_bytes(), key)
        LOGGER.info("Uploaded s3://%s/%s (version %s)", bucket, key, version or "unversioned")
        return key

    def create_backup(
        self, archive: bool = False, upload: bool = False, actor: Actor = SYSTEM_ACTOR
    ) -> BackupResult:
        """Back up the PKI store and public directory.

        Args:
            archive: Also write ``<backup>.tar.gz`` next to the backup directory
            upload: Upload the archive to the configured bucket (implies archive)
            actor: Requesting identity (for events)

        Returns:
            BackupResult with the backup directory and optional archive/S3 key
        """
        self.events.emit(EventKind.BACKUP, EventPhase.ATTEMPT, "backup", actor)
        try:
            with self.gate.hold("backup"):
                backup_path, files = self._write_backup(BACKUP_PREFIX)
            result = BackupResult(backup_path=backup_path, files=files)
            if archive or upload:
                result.archive_path = self._archive(backup_path)
            if upload and result.archive_path is not None:
                result.s3_key = self._upload(result.archive_path)
        except (PKIOperationError, OSError) as e:
            self.events.emit(EventKind.BACKUP, EventPhase.FAILURE, "backup", actor, error=str(e))
            raise

        self.events.emit(
            EventKind.BACKUP,
            EventPhase.SUCCESS,
            "backup",
            actor,
            backupPath=str(result.backup_path),
            files=result.files,
        )
        return result

    def verify_backup_integrity(self, backup_path: Path) -> bool:
        """Check every recorded checksum against the files on disk."""
        checksums_path = backup_path / CHECKSUMS_FILE
        if not (backup_path / MANIFEST_FILE).is_file() or not checksums_path.is_file():
            LOGGER.warning("Backup %s has no manifest or checksums", backup_path)
            return False

        try:
            checksums = json.loads(checksums_path.read_text())
        except json.JSONDecodeError as e:
            LOGGER.warning("Unreadable checksums in %s: %s", backup_path, e)
            return False

        for relative, expected in checksums.items():
            path = backup_path / relative
            if not path.is_file():
                LOGGER.warning("Backup file missing: %s", path)
                return False
            if sha256_file(path) != expected:
                LOGGER.warning("Checksum mismatch: %s", path)
                return False
        return True

    def list_backups(self) -> list[BackupSummary]:
        """Backups in ``backup_dir``, newest first."""
        if not self.config.backup_dir.is_dir():
            return []

        summaries: list[BackupSummary] = []
        for path in self.config.backup_dir.iterdir():
            manifest_path = path / MANIFEST_FILE
            if not path.is_dir() or not manifest_path.is_file():
                continue
            try:
                manifest = json.loads(manifest_path.read_text())
                timestamp, files = manifest["timestamp"], manifest["files"]
            except (OSError, ValueError, KeyError, TypeError) as e:
                LOGGER.warning("Skipping backup %s: unreadable manifest (%s)", path, e)
                continue
            size = sum(f.stat().st_size for f in path.rglob("*") if f.is_file())
            summaries.append(
                BackupSummary(path=path, timestamp=timestamp, files=files, size_bytes=size)
            )

        summaries.sort(key=lambda summary: summary.timestamp, reverse=True)
        return summaries

    def restore_backup(self, backup_path: Path, actor: Actor = SYSTEM_ACTOR) -> BackupResult:
        """Replace the PKI store and public directory with a verified backup.

        The current state is saved as a ``pre-restore`` backup first.

        Raises:
            BackupIntegrityError: If the backup fails verification
        """
        self.events.emit(
            EventKind.BACKUP, EventPhase.ATTEMPT, "restore", actor, backupPath=str(backup_path)
        )
        try:
            if not self.verify_backup_integrity(backup_path):
                raise BackupIntegrityError(f"backup {backup_path} failed integrity check")

            with self.gate.hold("restore"):
                snapshot_path, _ = self._write_backup(SNAPSHOT_PREFIX)
                files = 0
                for label, target in self._sources().items():
                    source = backup_path / label
                    if source.is_dir():
                        _swap_in_copy(source, target)
                        files += sum(1 for f in target.rglob("*") if f.is_file())
                    elif target.exists():
                        shutil.rmtree(target)
        except (PKIOperationError, OSError) as e:
            self.events.emit(EventKind.BACKUP, EventPhase.FAILURE, "restore", actor, error=str(e))
            raise

        LOGGER.info("Restored %d files from %s", files, backup_path)
        self.events.emit(
            EventKind.BACKUP,
            EventPhase.SUCCESS,
            "restore",
            actor,
            backupPath=str(backup_path),
            snapshotPath=str(snapshot_path),
        )
        return BackupResult(backup_path=backup_path, files=files, snapshot_path=snapshot_path)
