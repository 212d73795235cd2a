"""In-process fakes for the toolkit, key generator and event sink."""

import shutil
import threading
import time
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from pki_operations.lib.events import LifecycleEvent
from pki_operations.lib.models import ToolkitOutcome
from pki_operations.lib.pki_store import TOOLKIT_CONFIG_FILE

# Easy-RSA prefixes issued certificates with an openssl text dump
TEXT_DUMP = "Certificate:\n    Data:\n        Version: 3 (0x2)\n"


def _name(common_name: str) -> x509.Name:
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])


def _key_pem(key: ec.EllipticCurvePrivateKey) -> bytes:
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )


def build_certificate(
    common_name: str,
    not_before: datetime,
    not_after: datetime,
    serial: int | None = None,
) -> tuple[x509.Certificate, ec.EllipticCurvePrivateKey]:
    """Self-signed certificate with an explicit validity window."""
    key = ec.generate_private_key(ec.SECP256R1())
    cert = (
        x509.CertificateBuilder()
        .subject_name(_name(common_name))
        .issuer_name(_name(common_name))
        .public_key(key.public_key())
        .serial_number(serial or x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .sign(key, hashes.SHA256())
    )
    return cert, key


class FakeToolkit:
    """In-process stand-in for Easy-RSA writing the same PKI layout.

    Certificates, keys and CRLs are real (EC keys for speed); serial and
    index.txt are maintained with the toolkit's formats. The serial counter
    is read and written without locking, with ``delay`` in between, so
    overlapping calls lose updates just as concurrent CLI runs would.
    """

    def __init__(self, pki_dir: Path, delay: float = 0.0) -> None:
        self.pki_dir = pki_dir
        self.delay = delay
        self.calls: list[tuple[str, tuple[str, ...]]] = []
        self.failures: dict[str, int] = {}
        self.timeouts: set[str] = set()
        self.silent: set[str] = set()
        self.active = 0
        self.max_active = 0
        self._counter_lock = threading.Lock()

    def commands(self) -> list[str]:
        return [subcommand for subcommand, _ in self.calls]

    def run(
        self,
        subcommand: str,
        args: Sequence[str] = (),
        batch: bool = True,
        timeout: float | None = None,
    ) -> ToolkitOutcome:
        args = tuple(args)
        with self._counter_lock:
            self.calls.append((subcommand, args))
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if subcommand in self.timeouts:
                return ToolkitOutcome(subcommand, args, None, "", "", timed_out=True)
            if subcommand in self.failures:
                return ToolkitOutcome(
                    subcommand, args, self.failures[subcommand], "", "simulated failure"
                )
            if subcommand in self.silent:
                return ToolkitOutcome(subcommand, args, 0)
            handler = getattr(self, "_" + subcommand.replace("-", "_"))
            error = handler(*args)
            if error:
                return ToolkitOutcome(subcommand, args, 1, "", error)
            return ToolkitOutcome(subcommand, args, 0, "ok", "")
        finally:
            with self._counter_lock:
                self.active -= 1

    # Store helpers

    def _path(self, *parts: str) -> Path:
        return self.pki_dir.joinpath(*parts)

    def _next_serial(self) -> int:
        serial = int(self._path("serial").read_text().strip(), 16)
        if self.delay:
            time.sleep(self.delay)
        self._path("serial").write_text(f"{serial + 1:02X}\n")
        return serial

    def _ca(self) -> tuple[x509.Certificate, ec.EllipticCurvePrivateKey]:
        cert = x509.load_pem_x509_certificate(self._path("ca.crt").read_bytes())
        key = serialization.load_pem_private_key(
            self._path("private", "ca.key").read_bytes(), password=None
        )
        return cert, key

    def _sign(self, kind: str, name: str) -> str | None:
        if not self._path("ca.crt").is_file():
            return "CA not found"
        csr = x509.load_pem_x509_csr(self._path("reqs", f"{name}.req").read_bytes())
        ca_cert, ca_key = self._ca()
        serial = self._next_serial()
        now = datetime.now(UTC)
        usage = ExtendedKeyUsageOID.SERVER_AUTH if kind == "server" else ExtendedKeyUsageOID.CLIENT_AUTH
        not_after = now + timedelta(days=825)
        cert = (
            x509.CertificateBuilder()
            .subject_name(csr.subject)
            .issuer_name(ca_cert.subject)
            .public_key(csr.public_key())
            .serial_number(serial)
            .not_valid_before(now - timedelta(minutes=1))
            .not_valid_after(not_after)
            .add_extension(x509.ExtendedKeyUsage([usage]), critical=False)
            .sign(ca_key, hashes.SHA256())
        )
        pem = cert.public_bytes(serialization.Encoding.PEM).decode()
        self._path("issued", f"{name}.crt").write_text(TEXT_DUMP + pem)
        with self._path("index.txt").open("a") as index:
            index.write(
                f"V\t{not_after:%y%m%d%H%M%SZ}\t\t{serial:02X}\tunknown\t/CN={name}\n"
            )
        return None

    def _gen_req(self, name: str) -> str | None:
        if self._path("reqs", f"{name}.req").exists():
            return f"Request file already exists: {name}.req"
        key = ec.generate_private_key(ec.SECP256R1())
        csr = x509.CertificateSigningRequestBuilder().subject_name(_name(name)).sign(
            key, hashes.SHA256()
        )
        self._path("private", f"{name}.key").write_bytes(_key_pem(key))
        self._path("reqs", f"{name}.req").write_bytes(csr.public_bytes(serialization.Encoding.PEM))
        return None

    # Subcommands

    def _init_pki(self) -> str | None:
        if self.pki_dir.exists():
            shutil.rmtree(self.pki_dir)
        for sub in ("private", "reqs", "issued", "revoked/certs_by_serial"):
            self._path(sub).mkdir(parents=True)
        self._path(TOOLKIT_CONFIG_FILE).write_text("# openssl config\n")
        self._path("index.txt").write_text("")
        self._path("serial").write_text("01\n")
        return None

    def _build_ca(self, *_: str) -> str | None:
        if not self._path(TOOLKIT_CONFIG_FILE).is_file():
            return "PKI not initialized"
        now = datetime.now(UTC)
        key = ec.generate_private_key(ec.SECP256R1())
        cert = (
            x509.CertificateBuilder()
            .subject_name(_name("Easy-RSA CA"))
            .issuer_name(_name("Easy-RSA CA"))
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(minutes=1))
            .not_valid_after(now + timedelta(days=3650))
            .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
            .sign(key, hashes.SHA256())
        )
        self._path("private", "ca.key").write_bytes(_key_pem(key))
        self._path("ca.crt").write_bytes(cert.public_bytes(serialization.Encoding.PEM))
        return None

    def _gen_dh(self) -> str | None:
        self._path("dh.pem").write_text(
            "-----BEGIN DH PARAMETERS-----\nMIIBCAKCAQEA\n-----END DH PARAMETERS-----\n"
        )
        return None

    def _build_server_full(self, name: str, *_: str) -> str | None:
        return self._gen_req(name) or self._sign("server", name)

    def _build_client_full(self, name: str, *_: str) -> str | None:
        if any(
            line.endswith(f"/CN={name}")
            for line in self._path("index.txt").read_text().splitlines()
        ):
            return f"Request file already exists: {name}.req"
        return self._gen_req(name) or self._sign("client", name)

    def _sign_req(self, kind: str, name: str) -> str | None:
        if not self._path("reqs", f"{name}.req").is_file():
            return f"No request found for {name}"
        if self._path("issued", f"{name}.crt").exists():
            return f"Certificate already exists: {name}.crt"
        return self._sign(kind, name)

    def _revoke(self, name: str) -> str | None:
        cert_path = self._path("issued", f"{name}.crt")
        if not cert_path.is_file():
            return f"Unable to revoke as no certificate was found: {name}"
        cert = x509.load_pem_x509_certificate(
            cert_path.read_text().split(TEXT_DUMP)[-1].encode()
        )
        serial_hex = f"{cert.serial_number:02X}"
        revoked_at = datetime.now(UTC)
        lines = []
        for line in self._path("index.txt").read_text().splitlines():
            fields = line.split("\t")
            if fields[3] == serial_hex and fields[0] == "V":
                fields[0] = "R"
                fields[2] = f"{revoked_at:%y%m%d%H%M%SZ}"
            lines.append("\t".join(fields))
        self._path("index.txt").write_text("\n".join(lines) + "\n")
        cert_path.rename(self._path("revoked", "certs_by_serial", f"{serial_hex}.crt"))
        self._path("reqs", f"{name}.req").unlink(missing_ok=True)
        self._path("private", f"{name}.key").unlink(missing_ok=True)
        return None

    def _gen_crl(self) -> str | None:
        if not self._path("ca.crt").is_file():
            return "CA not found"
        ca_cert, ca_key = self._ca()
        now = datetime.now(UTC)
        builder = (
            x509.CertificateRevocationListBuilder()
            .issuer_name(ca_cert.subject)
            .last_update(now)
            .next_update(now + timedelta(days=180))
        )
        for line in self._path("index.txt").read_text().splitlines():
            fields = line.split("\t")
            if fields[0] == "R":
                builder = builder.add_revoked_certificate(
                    x509.RevokedCertificateBuilder()
                    .serial_number(int(fields[3], 16))
                    .revocation_date(now)
                    .build()
                )
        crl = builder.sign(ca_key, hashes.SHA256())
        self._path("crl.pem").write_bytes(crl.public_bytes(serialization.Encoding.PEM))
        return None


class FakeKeyGenerator:
    """Writes an OpenVPN-style static key instead of calling the openvpn binary."""

    def __init__(self, exit_code: int = 0) -> None:
        self.exit_code = exit_code
        self.calls: list[Path] = []

    def generate(self, path: Path) -> ToolkitOutcome:
        self.calls.append(path)
        args = ("--genkey", "secret", str(path))
        if self.exit_code != 0:
            return ToolkitOutcome("genkey", args, self.exit_code, "", "openvpn failed")
        path.write_text(
            "-----BEGIN OpenVPN Static key V1-----\n"
            + "0123456789abcdef" * 2
            + "\n-----END OpenVPN Static key V1-----\n"
        )
        return ToolkitOutcome("genkey", args, 0)


class RecordingEventSink:
    """Collects lifecycle events for assertions."""

    def __init__(self) -> None:
        self.events: list[LifecycleEvent] = []

    def emit(self, event: LifecycleEvent) -> None:
        self.events.append(event)

    def names(self) -> list[str]:
        return [event.name for event in self.events]


