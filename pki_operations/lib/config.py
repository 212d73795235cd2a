"""PKI orchestrator configuration dataclasses."""

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path

EASYRSA_VERSION = "3.1.0"
EASYRSA_RELEASE_URL = (
    f"https://github.com/OpenVPN/easy-rsa/releases/download/v{EASYRSA_VERSION}/"
    f"EasyRSA-{EASYRSA_VERSION}.tgz"
)


def _default_line_ending() -> str:
    return "\r\n" if sys.platform == "win32" else "\n"


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class ProfileConfig:
    """Connection settings rendered into every client profile."""

    host: str = "localhost"
    port: int = 1194
    protocol: str = "udp"
    line_ending: str = field(default_factory=_default_line_ending)


@dataclass
class PKIConfig:
    """Orchestrator configuration with no host-specific paths baked in.

    ``pki_root`` is the PKI store root (the toolkit keeps its state in
    ``pki_root / "pki"``). ``public_dir`` receives the materialized
    certificate set consumed by the VPN daemon and by clients.
    """

    pki_root: Path = Path("easy-rsa")
    public_dir: Path = Path("certificates")
    server_name: str = "server"
    toolkit_fallback_dir: Path = Path("easy-rsa")
    toolkit_release_url: str = EASYRSA_RELEASE_URL
    command_timeout_seconds: float = 120.0
    dh_timeout_seconds: float = 1800.0
    gate_wait_seconds: float = 5.0
    tls_auth_enabled: bool = True
    self_heal_quarantine: bool = True
    backup_dir: Path = Path("certificate-backups")
    backup_bucket: str | None = None
    aws_region: str = "eu-west-2"
    profile: ProfileConfig = field(default_factory=ProfileConfig)

    @property
    def pki_dir(self) -> Path:
        """Toolkit-owned PKI directory inside the store root."""
        return self.pki_root / "pki"

    @classmethod
    def from_env(cls) -> "PKIConfig":
        """Build configuration from environment variables, falling back to defaults."""
        defaults = cls()
        profile = ProfileConfig(
            host=os.environ.get("VPN_HOST", defaults.profile.host),
            port=int(os.environ.get("VPN_PORT", defaults.profile.port)),
            protocol=os.environ.get("VPN_PROTOCOL", defaults.profile.protocol),
        )
        pki_root = Path(os.environ.get("VPN_PKI_DIR", str(defaults.pki_root)))
        return cls(
            pki_root=pki_root,
            public_dir=Path(os.environ.get("VPN_CERT_DIR", str(defaults.public_dir))),
            server_name=os.environ.get("VPN_SERVER_NAME", defaults.server_name),
            toolkit_fallback_dir=Path(
                os.environ.get("EASYRSA_FALLBACK_DIR", str(defaults.toolkit_fallback_dir))
            ),
            command_timeout_seconds=float(
                os.environ.get("PKI_COMMAND_TIMEOUT_SECONDS", defaults.command_timeout_seconds)
            ),
            dh_timeout_seconds=float(
                os.environ.get("PKI_DH_TIMEOUT_SECONDS", defaults.dh_timeout_seconds)
            ),
            gate_wait_seconds=float(
                os.environ.get("PKI_GATE_WAIT_SECONDS", defaults.gate_wait_seconds)
            ),
            tls_auth_enabled=_env_bool("PKI_TLS_AUTH", defaults.tls_auth_enabled),
            backup_dir=Path(os.environ.get("PKI_BACKUP_DIR", str(defaults.backup_dir))),
            backup_bucket=os.environ.get("PKI_BACKUP_BUCKET") or None,
            aws_region=os.environ.get("AWS_REGION", defaults.aws_region),
            profile=profile,
        )
