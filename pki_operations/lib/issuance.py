"""Client certificate issuance, revocation, CRL and tls-auth key management."""

import os
import re
from datetime import UTC, datetime
from pathlib import Path

from .bootstrap import require_success
from .cert_utils import get_certificate_serial_hex, load_certificate, validate_certificate_file
from .config import PKIConfig
from .errors import (
    IdentifierAlreadyUsed,
    InvalidIdentifier,
    PartialMaterializationFailure,
    PKIOperationError,
    StepExecutionFailure,
    UnknownIdentifier,
)
from .events import SYSTEM_ACTOR, Actor, EventEmitter, EventKind, EventPhase
from .logging_config import LOGGER
from .materialize import PRIVATE_MODE, Materializer, render_client_profile
from .models import (
    Artifact,
    CertificateStatus,
    ClientCertResult,
    ClientRecord,
    RevocationResult,
    ValidationResult,
)
from .pki_store import PKIStore, PublicStore
from .toolkit import KeyGenerator, OpenVPNKeyGenerator, Toolkit

CLIENT_NAME_RE = re.compile(r"^[A-Za-z0-9_-]{3,50}$")


def validate_identifier(name: str, reserved: set[str] | frozenset[str] = frozenset()) -> str:
    """Check an entity name before it reaches the toolkit or the filesystem.

    Raises:
        InvalidIdentifier: If the name is not 3-50 letters, digits, hyphens or
            underscores, or is reserved
    """
    if not isinstance(name, str) or not CLIENT_NAME_RE.fullmatch(name):
        raise InvalidIdentifier(
            str(name), "use 3-50 letters, digits, hyphens or underscores"
        )
    if name in reserved:
        raise InvalidIdentifier(name, "name is reserved")
    return name


class IssuanceEngine:
    """Per-client operations against a bootstrapped PKI store.

    Callers hold the concurrency gate around every method except
    ``list_clients`` and ``validate_certificate``, which only read.
    """

    def __init__(
        self,
        config: PKIConfig,
        store: PKIStore,
        public: PublicStore,
        toolkit: Toolkit,
        materializer: Materializer,
        events: EventEmitter | None = None,
        key_generator: KeyGenerator | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.public = public
        self.toolkit = toolkit
        self.materializer = materializer
        self.events = events or EventEmitter()
        self.key_generator = key_generator or OpenVPNKeyGenerator()

    def _run(self, step: str, subcommand: str, *args: str) -> None:
        outcome = self.toolkit.run(
            subcommand, args, batch=True, timeout=self.config.command_timeout_seconds
        )
        require_success(outcome, step)

    def _client_artifacts(self, name: str) -> list[Artifact]:
        return [
            Artifact("ca", self.store.ca_cert, "ca.crt"),
            Artifact("cert", self.store.issued_cert(name), f"{name}.crt"),
            Artifact("key", self.store.private_key(name), f"{name}.key", private=True),
        ]

    def _ensure_issued(self, name: str) -> bool:
        """Get a signed certificate for ``name`` into the store.

        Returns:
            True if the toolkit issued it during this call
        """
        if self.store.is_revoked(name):
            raise IdentifierAlreadyUsed(name)

        if self.store.issued_cert(name).is_file():
            LOGGER.info("Client certificate already exists for %s", name)
            return False

        if self.store.request(name).is_file():
            LOGGER.info("Request exists but certificate does not, signing %s", name)
            self._run("sign-req", "sign-req", "client", name)
        else:
            LOGGER.info("Generating client certificate for %s", name)
            outcome = self.toolkit.run(
                "build-client-full",
                (name, "nopass"),
                batch=True,
                timeout=self.config.command_timeout_seconds,
            )
            if not outcome.succeeded and self.store.is_revoked(name):
                raise IdentifierAlreadyUsed(name)
            require_success(outcome, "build-client-full")

        if not self.store.issued_cert(name).is_file():
            raise StepExecutionFailure("build-client-full", 0, "no certificate produced")
        return True

    def _render_profile(self, name: str) -> Path:
        tls_auth = None
        if self.public.tls_auth_key.is_file():
            tls_auth = self.public.tls_auth_key.read_text()
        else:
            LOGGER.info("TLS auth key not found, generating client config without it")

        text = render_client_profile(
            self.config.profile,
            ca_pem=self.public.ca_cert.read_text(),
            cert_pem=self.public.cert(name).read_text(),
            key_pem=self.public.key(name).read_text(),
            tls_auth_key=tls_auth,
        )
        return self.materializer.write_profile(name, text)

    def issue_client(self, name: str, actor: Actor = SYSTEM_ACTOR) -> ClientCertResult:
        """Issue (or reuse) a client certificate and render its profile.

        Args:
            name: Client identifier, also the certificate CN
            actor: Requesting identity

        Returns:
            ClientCertResult pointing at the rendered profile

        Raises:
            InvalidIdentifier: Before any toolkit call, for bad names
            IdentifierAlreadyUsed: If the name was revoked
            StepExecutionFailure: If a toolkit step fails
            PartialMaterializationFailure: If an artifact could not be exported
        """
        validate_identifier(name, reserved={self.config.server_name})
        self.events.emit(EventKind.CLIENT_CERTIFICATE, EventPhase.ATTEMPT, name, actor)

        try:
            newly_issued = self._ensure_issued(name)

            warnings: list[str] = []
            if self.config.tls_auth_enabled:
                try:
                    self.ensure_tls_auth_key(actor)
                except StepExecutionFailure as e:
                    LOGGER.warning("Issuing %s without tls-auth: %s", name, e)
                    warnings.append(f"tls-auth key unavailable: {e}")

            materialization = self.materializer.materialize(
                name, self._client_artifacts(name), actor
            )
            if not materialization.ok:
                raise PartialMaterializationFailure(name, materialization)

            profile_path = self._render_profile(name)
            cert = load_certificate(self.public.cert(name))
        except PKIOperationError as e:
            LOGGER.error("Client certificate for %s failed: %s", name, e)
            self.events.emit(
                EventKind.CLIENT_CERTIFICATE, EventPhase.FAILURE, name, actor, error=str(e)
            )
            raise

        serial = get_certificate_serial_hex(cert)
        self.events.emit(
            EventKind.CLIENT_CERTIFICATE,
            EventPhase.SUCCESS,
            name,
            actor,
            serialNumber=serial,
            newlyIssued=newly_issued,
            warnings=warnings,
        )
        return ClientCertResult(
            name=name,
            profile_path=profile_path,
            cert_path=self.public.cert(name),
            key_path=self.public.key(name),
            serial_number=serial,
            expires_at=cert.not_valid_after_utc,
            newly_issued=newly_issued,
            warnings=warnings,
        )

    def revoke_client(self, name: str, actor: Actor = SYSTEM_ACTOR) -> RevocationResult:
        """Revoke a client, withdraw its public files and refresh the CRL.

        Revoking an already revoked name skips the toolkit revoke and still
        refreshes the CRL and removes leftover files.

        Raises:
            InvalidIdentifier: For bad names
            UnknownIdentifier: If nothing was ever issued under the name
            StepExecutionFailure: If revoke or gen-crl fails
        """
        validate_identifier(name, reserved={self.config.server_name})
        self.events.emit(EventKind.CLIENT_REVOCATION, EventPhase.ATTEMPT, name, actor)

        try:
            already_revoked = self.store.is_revoked(name)
            if not already_revoked:
                if not self.store.issued_cert(name).is_file():
                    raise UnknownIdentifier(name)
                LOGGER.info("Revoking certificate %s", name)
                self._run("revoke", "revoke", name)

            # Downloads disappear even if the CRL refresh below fails
            removed = self.materializer.remove(self.public.client_files(name))
            crl_path = self.generate_crl(actor)
        except PKIOperationError as e:
            LOGGER.error("Revocation of %s failed: %s", name, e)
            self.events.emit(
                EventKind.CLIENT_REVOCATION, EventPhase.FAILURE, name, actor, error=str(e)
            )
            raise

        self.events.emit(
            EventKind.CLIENT_REVOCATION,
            EventPhase.SUCCESS,
            name,
            actor,
            removed=[str(path) for path in removed],
            alreadyRevoked=already_revoked,
        )
        return RevocationResult(
            name=name, crl_path=crl_path, removed=removed, already_revoked=already_revoked
        )

    def generate_crl(self, actor: Actor = SYSTEM_ACTOR) -> Path:
        """Regenerate the CRL and replace the public copy.

        Returns:
            Path of the public crl.pem
        """
        self.events.emit(EventKind.CRL_GENERATION, EventPhase.ATTEMPT, "crl", actor)
        try:
            LOGGER.info("Generating Certificate Revocation List")
            self._run("gen-crl", "gen-crl")
            result = self.materializer.materialize(
                "crl", [Artifact("crl", self.store.crl, "crl.pem")], actor
            )
            if not result.ok:
                raise PartialMaterializationFailure("crl", result)
        except PKIOperationError as e:
            self.events.emit(
                EventKind.CRL_GENERATION, EventPhase.FAILURE, "crl", actor, error=str(e)
            )
            raise

        self.events.emit(
            EventKind.CRL_GENERATION, EventPhase.SUCCESS, "crl", actor, crlPath=str(self.public.crl)
        )
        return self.public.crl

    def ensure_tls_auth_key(self, actor: Actor = SYSTEM_ACTOR) -> Path:
        """Generate ta.key once; an existing key is never replaced.

        Every issued profile embeds this key, so regenerating it would
        invalidate all of them.
        """
        dest = self.public.tls_auth_key
        if dest.is_file():
            return dest

        self.events.emit(EventKind.TLS_AUTH_KEY, EventPhase.ATTEMPT, "system", actor)
        dest.parent.mkdir(parents=True, exist_ok=True)
        tmp = dest.with_name(f".{dest.name}.{os.getpid()}.tmp")
        try:
            LOGGER.info("Generating TLS authentication key")
            require_success(self.key_generator.generate(tmp), "genkey")
            os.chmod(tmp, PRIVATE_MODE)
            os.replace(tmp, dest)
        except (PKIOperationError, OSError) as e:
            tmp.unlink(missing_ok=True)
            self.events.emit(
                EventKind.TLS_AUTH_KEY, EventPhase.FAILURE, "system", actor, error=str(e)
            )
            if isinstance(e, OSError):
                raise StepExecutionFailure("genkey", None, str(e)) from e
            raise

        self.events.emit(
            EventKind.TLS_AUTH_KEY, EventPhase.SUCCESS, "system", actor, keyPath=str(dest)
        )
        return dest

    def validate_certificate(self, path: Path, actor: Actor = SYSTEM_ACTOR) -> ValidationResult:
        result = validate_certificate_file(path)
        phase = EventPhase.SUCCESS if result.status is CertificateStatus.VALID else EventPhase.FAILURE
        self.events.emit(
            EventKind.VALIDATION,
            phase,
            path.stem,
            actor,
            certPath=str(path),
            status=result.status.value,
            reason=result.reason,
        )
        return result

    def list_clients(self) -> list[ClientRecord]:
        """Describe every materialized client profile, newest first.

        Profiles withdrawn by a concurrent revocation while the listing runs
        are skipped.
        """
        records: list[ClientRecord] = []
        for profile in self.public.profiles():
            name = profile.stem
            if name == self.config.server_name:
                continue

            try:
                created_at = datetime.fromtimestamp(profile.stat().st_mtime, UTC)
            except FileNotFoundError:
                LOGGER.info("Profile %s removed during listing, skipping", profile)
                continue

            cert_path = self.public.cert(name)
            if not cert_path.is_file():
                cert_path = self.store.issued_cert(name)

            validation = validate_certificate_file(cert_path)
            if validation.reason == "file not found" and not profile.exists():
                LOGGER.info("Client %s removed during listing, skipping", name)
                continue

            if self.store.is_revoked(name):
                status = "revoked"
            elif validation.status is CertificateStatus.VALID:
                status = "active"
            elif validation.status is CertificateStatus.EXPIRED:
                status = "expired"
            else:
                status = "unknown"

            records.append(
                ClientRecord(
                    name=name,
                    status=status,
                    created_at=created_at,
                    expires_at=validation.not_after,
                    serial_number=validation.serial_number,
                )
            )

        records.sort(key=lambda record: record.created_at, reverse=True)
        return records
