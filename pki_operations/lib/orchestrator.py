"""Certificate lifecycle orchestrator: the entry point used by scripts and the HTTP layer."""

from pathlib import Path

from .backup import BackupManager
from .bootstrap import BootstrapStateMachine
from .config import PKIConfig
from .events import SYSTEM_ACTOR, Actor, EventEmitter, EventSink
from .gate import ConcurrencyGate
from .issuance import IssuanceEngine, validate_identifier
from .logging_config import LOGGER
from .materialize import Materializer
from .models import (
    BootstrapResult,
    ClientCertResult,
    ClientRecord,
    RevocationResult,
    ValidationResult,
)
from .pki_store import PKIStore, PublicStore
from .s3_client import S3Client
from .toolkit import KeyGenerator, LazyToolkit, Toolkit, ToolkitLocator


class CertificateOrchestrator:
    """Bootstraps the PKI and manages client certificates for one store.

    Every mutating call goes through the store's ConcurrencyGate. Bootstrap
    and the client operation that follows it take separate acquisitions.
    Listing and validation only read and never wait on the gate.
    """

    def __init__(
        self,
        config: PKIConfig,
        toolkit: Toolkit | None = None,
        sink: EventSink | None = None,
        key_generator: KeyGenerator | None = None,
        s3_client: S3Client | None = None,
    ) -> None:
        """Initialize orchestrator.

        Args:
            config: Store locations, timeouts and profile settings
            toolkit: Toolkit to drive (default: Easy-RSA, located on first use)
            sink: Audit collaborator for lifecycle events (default: JSON logger)
            key_generator: tls-auth key generator (default: openvpn binary)
            s3_client: S3 client for backup uploads (default: created on demand)
        """
        self.config = config
        self.store = PKIStore(config.pki_root)
        self.public = PublicStore(config.public_dir)
        self.events = EventEmitter(sink)
        self.gate = ConcurrencyGate.for_store(config.pki_root, config.gate_wait_seconds)
        self.toolkit: Toolkit = toolkit or LazyToolkit(
            ToolkitLocator.from_config(config),
            config.pki_dir,
            config.command_timeout_seconds,
        )
        self.materializer = Materializer(config.public_dir, self.events)
        self.bootstrapper = BootstrapStateMachine(
            config, self.store, self.toolkit, self.materializer, self.events
        )
        self.issuance = IssuanceEngine(
            config,
            self.store,
            self.public,
            self.toolkit,
            self.materializer,
            self.events,
            key_generator,
        )
        self.backups = BackupManager(config, self.gate, self.events, s3_client)

    def ensure_bootstrapped(self) -> BootstrapResult:
        """Bring the PKI to SERVER_CERT_READY; a no-op on a ready store."""
        with self.gate.hold("bootstrap"):
            return self.bootstrapper.advance()

    def issue_client_certificate(
        self, name: str, actor: Actor = SYSTEM_ACTOR
    ) -> ClientCertResult:
        """Issue a client certificate and profile, bootstrapping first if needed.

        Args:
            name: Client identifier
            actor: Requesting identity

        Returns:
            ClientCertResult; repeated calls for the same name return the
            same certificate
        """
        validate_identifier(name, reserved={self.config.server_name})
        self.ensure_bootstrapped()
        with self.gate.hold(f"issue:{name}"):
            result = self.issuance.issue_client(name, actor)
        LOGGER.info("Client %s ready at %s", name, result.profile_path)
        return result

    def revoke_client_certificate(
        self, name: str, actor: Actor = SYSTEM_ACTOR
    ) -> RevocationResult:
        validate_identifier(name, reserved={self.config.server_name})
        with self.gate.hold(f"revoke:{name}"):
            return self.issuance.revoke_client(name, actor)

    def generate_or_refresh_crl(self, actor: Actor = SYSTEM_ACTOR) -> Path:
        self.ensure_bootstrapped()
        with self.gate.hold("gen-crl"):
            return self.issuance.generate_crl(actor)

    def ensure_tls_auth_key(self, actor: Actor = SYSTEM_ACTOR) -> Path:
        with self.gate.hold("tls-auth-key"):
            return self.issuance.ensure_tls_auth_key(actor)

    def list_materialized_clients(self) -> list[ClientRecord]:
        return self.issuance.list_clients()

    def validate_certificate(
        self, path: Path, actor: Actor = SYSTEM_ACTOR
    ) -> ValidationResult:
        return self.issuance.validate_certificate(path, actor)
