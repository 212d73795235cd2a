"""Certificate inspection helpers for toolkit-produced PEM files."""

import re
from datetime import UTC, datetime
from pathlib import Path

from cryptography import x509

from pki_operations.lib.models import CertificateStatus, ValidationResult

_PEM_CERT_RE = re.compile(
    r"-----BEGIN CERTIFICATE-----.+?-----END CERTIFICATE-----", re.DOTALL
)


def extract_pem_certificates(text: str) -> str:
    """Strip Easy-RSA's text dump and bag attributes, keeping only PEM blocks."""
    blocks = _PEM_CERT_RE.findall(text)
    return "\n".join(blocks).strip() if blocks else text.strip()


def deserialize_certificate(pem_data: bytes) -> x509.Certificate:
    """Deserialize the first certificate found in PEM bytes."""
    match = _PEM_CERT_RE.search(pem_data.decode("utf-8", errors="replace"))
    if match is None:
        raise ValueError("no PEM certificate block found")
    return x509.load_pem_x509_certificate(match.group(0).encode("ascii"))


def load_certificate(path: Path) -> x509.Certificate:
    """Read and parse a certificate file (Easy-RSA text dump tolerated)."""
    return deserialize_certificate(path.read_bytes())


def get_certificate_serial_hex(cert: x509.Certificate) -> str:
    """Return certificate serial number as upper-case hex with colons (e.g., 3A:F2:B1)."""
    serial_hex = f"{cert.serial_number:X}"
    if len(serial_hex) % 2 != 0:
        serial_hex = "0" + serial_hex
    return ":".join(serial_hex[i : i + 2] for i in range(0, len(serial_hex), 2))


def get_common_name(cert: x509.Certificate) -> str:
    cn = cert.subject.get_attributes_for_oid(x509.NameOID.COMMON_NAME)[0].value
    if not isinstance(cn, str):
        raise ValueError("CN must be string")
    return cn


def check_validity_window(cert: x509.Certificate, now: datetime | None = None) -> CertificateStatus:
    """Compare the certificate's validity window with the current time.

    A not-yet-valid certificate is reported as EXPIRED: either way it is
    outside its window and unusable right now.
    """
    now = now or datetime.now(UTC)
    if now < cert.not_valid_before_utc or now > cert.not_valid_after_utc:
        return CertificateStatus.EXPIRED
    return CertificateStatus.VALID


def validate_certificate_file(path: Path, now: datetime | None = None) -> ValidationResult:
    """Parse a certificate and classify it as valid, expired or malformed.

    Args:
        path: Certificate file
        now: Reference time (default: current UTC time)

    Returns:
        ValidationResult; unreadable or unparsable files are MALFORMED
    """
    try:
        cert = load_certificate(path)
    except FileNotFoundError:
        return ValidationResult(path, CertificateStatus.MALFORMED, "file not found")
    except (OSError, ValueError) as e:
        return ValidationResult(path, CertificateStatus.MALFORMED, str(e))

    status = check_validity_window(cert, now)
    reason = "" if status is CertificateStatus.VALID else "outside validity window"
    return ValidationResult(
        path, status, reason, cert.not_valid_after_utc, get_certificate_serial_hex(cert)
    )


def load_crl_serials(path: Path) -> set[int]:
    """Serial numbers listed in a PEM CRL."""
    crl = x509.load_pem_x509_crl(path.read_bytes())
    return {revoked.serial_number for revoked in crl}
