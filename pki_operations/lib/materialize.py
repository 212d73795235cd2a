"""Export of PKI artifacts into the public directory with least-privilege modes."""

import os
import shutil
import tempfile
from collections.abc import Iterable
from pathlib import Path

from .cert_utils import extract_pem_certificates
from .config import ProfileConfig
from .events import SYSTEM_ACTOR, Actor, EventEmitter, EventKind, EventPhase
from .logging_config import LOGGER
from .models import Artifact, ArtifactFailure, MaterializationResult

PRIVATE_MODE = 0o600
PUBLIC_MODE = 0o644


def _atomic_replace(dest: Path, fill, mode: int) -> None:
    """Write via a sibling temp file, set mode, then rename over ``dest``.

    Readers see either the previous file or the complete new one.
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{dest.name}.", suffix=".tmp", dir=dest.parent)
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as handle:
            fill(handle)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, dest)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def copy_atomic(source: Path, dest: Path, mode: int) -> None:
    with source.open("rb") as src:
        _atomic_replace(dest, lambda handle: shutil.copyfileobj(src, handle), mode)


def write_atomic(dest: Path, data: bytes, mode: int) -> None:
    _atomic_replace(dest, lambda handle: handle.write(data), mode)


def render_client_profile(
    profile: ProfileConfig,
    ca_pem: str,
    cert_pem: str,
    key_pem: str,
    tls_auth_key: str | None = None,
) -> str:
    """Render an inline OpenVPN client profile.

    Args:
        profile: Remote host/port/protocol and line ending
        ca_pem: CA certificate text (extra text around PEM blocks is dropped)
        cert_pem: Client certificate text
        key_pem: Client private key PEM
        tls_auth_key: Optional static key embedded as tls-auth direction 1

    Returns:
        Profile text using ``profile.line_ending``
    """
    lines = [
        "client",
        "dev tun",
        f"proto {profile.protocol}",
        f"remote {profile.host} {profile.port}",
        "resolv-retry infinite",
        "nobind",
        "persist-key",
        "persist-tun",
        "remote-cert-tls server",
        "verb 3",
    ]
    if tls_auth_key:
        lines += ["key-direction 1", "<tls-auth>", tls_auth_key.strip(), "</tls-auth>"]
    lines += [
        "<ca>",
        extract_pem_certificates(ca_pem),
        "</ca>",
        "<cert>",
        extract_pem_certificates(cert_pem),
        "</cert>",
        "<key>",
        key_pem.strip(),
        "</key>",
    ]
    text = "\n".join(lines) + "\n"
    return text.replace("\n", profile.line_ending)


class Materializer:
    """Copies artifacts one by one; a failure never stops the rest."""

    def __init__(self, public_dir: Path, events: EventEmitter | None = None) -> None:
        self.public_dir = public_dir
        self.events = events or EventEmitter()

    def materialize(
        self,
        entity: str,
        artifacts: Iterable[Artifact],
        actor: Actor = SYSTEM_ACTOR,
    ) -> MaterializationResult:
        """Copy each artifact into the public directory.

        Args:
            entity: Entity name the artifacts belong to (for events)
            artifacts: Files to export
            actor: Requesting identity (for events)

        Returns:
            MaterializationResult listing copied paths and failures
        """
        result = MaterializationResult()
        self.public_dir.mkdir(parents=True, exist_ok=True)

        for artifact in artifacts:
            dest = self.public_dir / artifact.dest_name
            mode = PRIVATE_MODE if artifact.private else PUBLIC_MODE
            try:
                copy_atomic(artifact.source, dest, mode)
            except OSError as e:
                LOGGER.warning("Could not copy %s for %s: %s", artifact.kind, entity, e)
                result.failed.append(ArtifactFailure(artifact, str(e)))
                self.events.emit(
                    EventKind.CERTIFICATE_COPY,
                    EventPhase.FAILURE,
                    entity,
                    actor,
                    type=artifact.kind,
                    srcPath=str(artifact.source),
                    error=str(e),
                )
                continue

            LOGGER.info("Copied %s to %s", artifact.kind, dest)
            result.copied.append(dest)
            self.events.emit(
                EventKind.CERTIFICATE_COPY,
                EventPhase.SUCCESS,
                entity,
                actor,
                type=artifact.kind,
                srcPath=str(artifact.source),
                destPath=str(dest),
            )

        return result

    def write_profile(self, name: str, text: str) -> Path:
        """Write a rendered profile owner-only; it embeds the private key."""
        dest = self.public_dir / f"{name}.ovpn"
        write_atomic(dest, text.encode("utf-8"), PRIVATE_MODE)
        LOGGER.info("Generated inline client config at %s", dest)
        return dest

    def remove(self, paths: Iterable[Path]) -> list[Path]:
        """Delete public files, returning the ones that existed."""
        removed: list[Path] = []
        for path in paths:
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            removed.append(path)
            LOGGER.info("Removed %s", path)
        return removed
