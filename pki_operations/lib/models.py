"""Result models for PKI operations."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from pathlib import Path


class BootstrapState(IntEnum):
    """Bootstrap progress, ordered so later states compare greater."""

    NOT_INITIALIZED = 0
    PKI_INITIALIZED = 1
    CA_READY = 2
    DH_READY = 3
    SERVER_CERT_READY = 4


class CertificateStatus(str, Enum):
    VALID = "valid"
    EXPIRED = "expired"
    MALFORMED = "malformed"


@dataclass(frozen=True)
class ToolkitOutcome:
    """Captured result of one toolkit invocation.

    stdout/stderr are kept for diagnostics only; success is decided by the
    exit code and by the files the toolkit leaves behind.
    """

    subcommand: str
    args: tuple[str, ...]
    exit_code: int | None
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def succeeded(self) -> bool:
        return not self.timed_out and self.exit_code == 0


@dataclass(frozen=True)
class StoreProbe:
    """Presence flags read from the PKI store in a single pass."""

    pki_dir_exists: bool
    config_file_exists: bool
    ca_cert_exists: bool
    dh_params_exist: bool
    server_request_exists: bool
    server_cert_exists: bool

    @property
    def needs_repair(self) -> bool:
        """PKI directory left behind without its toolkit configuration file."""
        return self.pki_dir_exists and not self.config_file_exists

    @property
    def state(self) -> BootstrapState:
        if not self.pki_dir_exists or not self.config_file_exists:
            return BootstrapState.NOT_INITIALIZED
        if not self.ca_cert_exists:
            return BootstrapState.PKI_INITIALIZED
        if not self.dh_params_exist:
            return BootstrapState.CA_READY
        if not self.server_cert_exists:
            return BootstrapState.DH_READY
        return BootstrapState.SERVER_CERT_READY


@dataclass(frozen=True)
class Artifact:
    """One file to export from the PKI store into the public directory."""

    kind: str
    source: Path
    dest_name: str
    private: bool = False


@dataclass(frozen=True)
class ArtifactFailure:
    artifact: Artifact
    error: str


@dataclass
class MaterializationResult:
    """Outcome of copying a batch of artifacts.

    Each artifact is copied independently; ``failed`` lists the ones that
    did not reach the public directory.
    """

    copied: list[Path] = field(default_factory=list)
    failed: list[ArtifactFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    def merge(self, other: "MaterializationResult") -> "MaterializationResult":
        return MaterializationResult(
            copied=[*self.copied, *other.copied],
            failed=[*self.failed, *other.failed],
        )


@dataclass
class BootstrapResult:
    """Result from ensure_bootstrapped.

    ``steps_run`` lists the toolkit steps executed by this call; it is empty
    when the store was already server-ready.
    """

    state: BootstrapState
    steps_run: list[str]
    materialization: MaterializationResult
    repaired: bool = False
    quarantine_path: Path | None = None


@dataclass
class ClientCertResult:
    """Result from client certificate issuance."""

    name: str
    profile_path: Path
    cert_path: Path
    key_path: Path
    serial_number: str
    expires_at: datetime
    newly_issued: bool
    warnings: list[str] = field(default_factory=list)


@dataclass
class RevocationResult:
    name: str
    crl_path: Path
    removed: list[Path]
    already_revoked: bool = False


@dataclass(frozen=True)
class ValidationResult:
    path: Path
    status: CertificateStatus
    reason: str = ""
    not_after: datetime | None = None
    serial_number: str | None = None


@dataclass
class ClientRecord:
    """Materialized client as reported to listing callers."""

    name: str
    status: str
    created_at: datetime
    expires_at: datetime | None
    serial_number: str | None


@dataclass(frozen=True)
class IndexEntry:
    """One line of the toolkit's certificate database (index.txt)."""

    status: str
    serial: str
    common_name: str

    @property
    def revoked(self) -> bool:
        return self.status == "R"

    @property
    def valid(self) -> bool:
        return self.status == "V"


@dataclass
class BackupResult:
    """Result from backup creation or restore."""

    backup_path: Path
    files: int
    archive_path: Path | None = None
    s3_key: str | None = None
    snapshot_path: Path | None = None


@dataclass(frozen=True)
class BackupSummary:
    path: Path
    timestamp: str
    files: int
    size_bytes: int
