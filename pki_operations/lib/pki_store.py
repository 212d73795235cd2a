"""On-disk layout of the toolkit PKI store and the public certificate directory."""

from pathlib import Path

from .logging_config import LOGGER
from .models import IndexEntry, StoreProbe

# Written by init-pki; its absence in an existing pki/ marks a half-built store
TOOLKIT_CONFIG_FILE = "openssl-easyrsa.cnf"


def _common_name(subject: str) -> str:
    """Extract CN from an OpenSSL one-line subject such as /C=GB/CN=alice."""
    for part in subject.split("/"):
        if part.startswith("CN="):
            return part[3:]
    return ""


class PKIStore:
    """Paths and existence predicates for the toolkit-owned PKI directory.

    Nothing here writes to the store; it is read back after toolkit
    invocations to decide what happened.
    """

    def __init__(self, root: Path) -> None:
        self.root = root

    @property
    def pki_dir(self) -> Path:
        return self.root / "pki"

    @property
    def config_file(self) -> Path:
        return self.pki_dir / TOOLKIT_CONFIG_FILE

    @property
    def ca_cert(self) -> Path:
        return self.pki_dir / "ca.crt"

    @property
    def ca_key(self) -> Path:
        return self.pki_dir / "private" / "ca.key"

    @property
    def dh_params(self) -> Path:
        return self.pki_dir / "dh.pem"

    @property
    def crl(self) -> Path:
        return self.pki_dir / "crl.pem"

    @property
    def serial_file(self) -> Path:
        return self.pki_dir / "serial"

    @property
    def index_file(self) -> Path:
        return self.pki_dir / "index.txt"

    def request(self, name: str) -> Path:
        return self.pki_dir / "reqs" / f"{name}.req"

    def issued_cert(self, name: str) -> Path:
        return self.pki_dir / "issued" / f"{name}.crt"

    def private_key(self, name: str) -> Path:
        return self.pki_dir / "private" / f"{name}.key"

    def probe(self, server_name: str) -> StoreProbe:
        """Read bootstrap-relevant presence flags fresh from disk."""
        return StoreProbe(
            pki_dir_exists=self.pki_dir.is_dir(),
            config_file_exists=self.config_file.is_file(),
            ca_cert_exists=self.ca_cert.is_file(),
            dh_params_exist=self.dh_params.is_file(),
            server_request_exists=self.request(server_name).is_file(),
            server_cert_exists=self.issued_cert(server_name).is_file(),
        )

    def read_serial(self) -> int | None:
        """Next serial the toolkit will hand out, or None when unset.

        Easy-RSA 3.1 uses random serials and may leave this file absent.
        """
        try:
            raw = self.serial_file.read_text().strip()
        except FileNotFoundError:
            return None
        return int(raw, 16) if raw else None

    def index_entries(self) -> list[IndexEntry]:
        """Parse the certificate database.

        Lines are tab-separated: status, expiry, revocation date, serial,
        filename, subject.
        """
        try:
            lines = self.index_file.read_text().splitlines()
        except FileNotFoundError:
            return []

        entries: list[IndexEntry] = []
        for line in lines:
            fields = line.split("\t")
            if len(fields) < 6:
                if line.strip():
                    LOGGER.warning("Skipping malformed index.txt line: %r", line)
                continue
            entries.append(
                IndexEntry(
                    status=fields[0],
                    serial=fields[3].upper(),
                    common_name=_common_name(fields[5]),
                )
            )
        return entries

    def is_revoked(self, name: str) -> bool:
        """True when the database revoked ``name`` and holds no valid entry for it."""
        entries = [entry for entry in self.index_entries() if entry.common_name == name]
        return any(e.revoked for e in entries) and not any(e.valid for e in entries)

    def revoked_serials(self) -> set[str]:
        return {entry.serial for entry in self.index_entries() if entry.revoked}


class PublicStore:
    """Layout of the materialized certificate set."""

    def __init__(self, root: Path) -> None:
        self.root = root

    @property
    def ca_cert(self) -> Path:
        return self.root / "ca.crt"

    @property
    def dh_params(self) -> Path:
        return self.root / "dh.pem"

    @property
    def crl(self) -> Path:
        return self.root / "crl.pem"

    @property
    def tls_auth_key(self) -> Path:
        return self.root / "ta.key"

    def cert(self, name: str) -> Path:
        return self.root / f"{name}.crt"

    def key(self, name: str) -> Path:
        return self.root / f"{name}.key"

    def profile(self, name: str) -> Path:
        return self.root / f"{name}.ovpn"

    def client_files(self, name: str) -> list[Path]:
        return [self.profile(name), self.cert(name), self.key(name)]

    def profiles(self) -> list[Path]:
        if not self.root.is_dir():
            return []
        return sorted(self.root.glob("*.ovpn"))
