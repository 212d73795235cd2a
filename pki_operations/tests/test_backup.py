"""Tests for certificate backup and restore."""

import json
import shutil
import tarfile
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from pki_operations.lib.backup import BackupManager
from pki_operations.lib.config import PKIConfig
from pki_operations.lib.errors import BackupIntegrityError, PKIOperationError
from pki_operations.lib.models import BootstrapState
from pki_operations.lib.orchestrator import CertificateOrchestrator
from pki_operations.tests.fakes import FakeToolkit, RecordingEventSink


@pytest.fixture
def with_client(bootstrapped: CertificateOrchestrator) -> CertificateOrchestrator:
    """Return bootstrapped orchestrator with one issued client."""
    bootstrapped.issue_client_certificate("alice")
    return bootstrapped


class TestCreateBackup:
    """Tests for BackupManager.create_backup."""

    def test_copies_store_and_public_dir(
        self, with_client: CertificateOrchestrator, pki_config: PKIConfig
    ) -> None:
        """Should copy both trees and write manifest and checksums."""
        result = with_client.backups.create_backup()

        backup = result.backup_path
        assert backup.parent == pki_config.backup_dir
        assert backup.name.startswith("backup-")
        assert (backup / "pki" / "ca.crt").is_file()
        assert (backup / "pki" / "private" / "ca.key").is_file()
        assert (backup / "public" / "alice.ovpn").is_file()

        checksums = json.loads((backup / "checksums.json").read_text())
        manifest = json.loads((backup / "manifest.json").read_text())
        assert "public/alice.ovpn" in checksums
        assert manifest["files"] == len(checksums) == result.files
        assert manifest["serverName"] == "server"

    def test_archive(self, with_client: CertificateOrchestrator) -> None:
        """Should write a tar.gz next to the backup directory."""
        result = with_client.backups.create_backup(archive=True)

        assert result.archive_path is not None
        with tarfile.open(result.archive_path, "r:gz") as archive:
            names = archive.getnames()
        assert f"{result.backup_path.name}/manifest.json" in names

    def test_upload(
        self,
        with_client: CertificateOrchestrator,
        pki_config: PKIConfig,
        event_sink: RecordingEventSink,
    ) -> None:
        """Should upload the archive to the configured bucket."""
        pki_config.backup_bucket = "pki-backups-bucket"
        mock_s3 = MagicMock()
        mock_s3.upload_backup.return_value = "v1"
        manager = BackupManager(pki_config, with_client.gate, with_client.events, mock_s3)

        result = manager.create_backup(upload=True)

        assert result.archive_path is not None
        assert result.s3_key == f"pki-backups/{result.archive_path.name}"
        bucket, content, key = mock_s3.upload_backup.call_args.args
        assert bucket == "pki-backups-bucket"
        assert content == result.archive_path.read_bytes()
        assert key == result.s3_key
        assert event_sink.names()[-1] == "BACKUP_SUCCESS"

    def test_upload_without_bucket(
        self, with_client: CertificateOrchestrator, event_sink: RecordingEventSink
    ) -> None:
        """Should refuse to upload when no bucket is configured."""
        with pytest.raises(PKIOperationError, match="PKI_BACKUP_BUCKET"):
            with_client.backups.create_backup(upload=True)

        assert event_sink.names()[-1] == "BACKUP_FAILURE"


class TestVerifyAndList:
    """Tests for integrity checks and listing."""

    def test_fresh_backup_verifies(self, with_client: CertificateOrchestrator) -> None:
        """Should accept an untouched backup."""
        result = with_client.backups.create_backup()

        assert with_client.backups.verify_backup_integrity(result.backup_path) is True

    def test_tampered_backup_fails(self, with_client: CertificateOrchestrator) -> None:
        """Should detect modified files."""
        result = with_client.backups.create_backup()
        (result.backup_path / "pki" / "ca.crt").write_text("tampered")

        assert with_client.backups.verify_backup_integrity(result.backup_path) is False

    def test_missing_file_fails(self, with_client: CertificateOrchestrator) -> None:
        """Should detect deleted files."""
        result = with_client.backups.create_backup()
        (result.backup_path / "public" / "alice.key").unlink()

        assert with_client.backups.verify_backup_integrity(result.backup_path) is False

    def test_directory_without_manifest_fails(
        self, with_client: CertificateOrchestrator, pki_config: PKIConfig
    ) -> None:
        """Should reject directories that are not backups."""
        assert with_client.backups.verify_backup_integrity(pki_config.public_dir) is False

    def test_list_newest_first(self, with_client: CertificateOrchestrator) -> None:
        """Should list backups by timestamp, newest first."""
        first = with_client.backups.create_backup()
        second = with_client.backups.create_backup()

        summaries = with_client.backups.list_backups()

        assert [s.path for s in summaries] == [second.backup_path, first.backup_path]
        assert summaries[0].files == second.files
        assert summaries[0].size_bytes > 0

    def test_list_without_backup_dir(self, pki_config: PKIConfig) -> None:
        """Should return an empty list before any backup exists."""
        assert BackupManager(pki_config).list_backups() == []

    @pytest.mark.parametrize("manifest", ["{not json", '{"files": 3}'])
    def test_list_skips_unreadable_manifest(
        self, with_client: CertificateOrchestrator, pki_config: PKIConfig, manifest: str
    ) -> None:
        """Should skip a backup with a broken manifest and list the rest."""
        good = with_client.backups.create_backup()
        broken = pki_config.backup_dir / "backup-broken"
        broken.mkdir()
        (broken / "manifest.json").write_text(manifest)

        summaries = with_client.backups.list_backups()

        assert [s.path for s in summaries] == [good.backup_path]


class TestRestoreBackup:
    """Tests for BackupManager.restore_backup."""

    def test_live_public_dir_stays_complete_during_copy(
        self,
        with_client: CertificateOrchestrator,
        pki_config: PKIConfig,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Should stage the copy beside the live tree and swap it in whole."""
        backup = with_client.backups.create_backup()
        copytree = shutil.copytree
        seen: list[bool] = []

        def checking_copytree(src: Path, dst: Path, *args, **kwargs) -> Path:
            seen.append((pki_config.public_dir / "server.crt").is_file())
            return copytree(src, dst, *args, **kwargs)

        monkeypatch.setattr("pki_operations.lib.backup.shutil.copytree", checking_copytree)

        with_client.backups.restore_backup(backup.backup_path)

        assert seen and all(seen)
        assert (pki_config.public_dir / "alice.ovpn").is_file()
        for parent in (pki_config.public_dir.parent, pki_config.pki_dir.parent):
            assert [p.name for p in parent.iterdir() if p.name.startswith(".")] == []

    def test_restores_revoked_client(
        self, with_client: CertificateOrchestrator, pki_config: PKIConfig
    ) -> None:
        """Should bring back the store and public files as they were."""
        backup = with_client.backups.create_backup()
        with_client.revoke_client_certificate("alice")
        assert with_client.store.is_revoked("alice")

        result = with_client.backups.restore_backup(backup.backup_path)

        assert (pki_config.public_dir / "alice.ovpn").is_file()
        assert not with_client.store.is_revoked("alice")
        assert with_client.bootstrapper.state() is BootstrapState.SERVER_CERT_READY
        assert result.snapshot_path is not None
        assert result.snapshot_path.name.startswith("pre-restore-")
        assert not (result.snapshot_path / "public" / "alice.ovpn").exists()

    def test_restore_after_store_loss(
        self,
        with_client: CertificateOrchestrator,
        pki_config: PKIConfig,
        fake_toolkit: FakeToolkit,
    ) -> None:
        """Should let bootstrap see a ready store after restoring a lost one."""
        backup = with_client.backups.create_backup()
        for child in pki_config.pki_dir.iterdir():
            if child.is_file():
                child.unlink()

        with_client.backups.restore_backup(backup.backup_path)
        fake_toolkit.calls.clear()
        result = with_client.ensure_bootstrapped()

        assert result.steps_run == []
        assert fake_toolkit.calls == []

    def test_tampered_backup_is_refused(
        self, with_client: CertificateOrchestrator, pki_config: PKIConfig
    ) -> None:
        """Should raise BackupIntegrityError and leave current state alone."""
        backup = with_client.backups.create_backup()
        (backup.backup_path / "public" / "alice.ovpn").write_text("tampered")
        with_client.revoke_client_certificate("alice")

        with pytest.raises(BackupIntegrityError):
            with_client.backups.restore_backup(backup.backup_path)

        assert not (pki_config.public_dir / "alice.ovpn").exists()
        assert with_client.store.is_revoked("alice")
