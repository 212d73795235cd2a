"""Test fixtures for pki_operations tests."""

from collections.abc import Callable
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import ec

from pki_operations.lib.config import PKIConfig, ProfileConfig
from pki_operations.lib.orchestrator import CertificateOrchestrator
from pki_operations.tests.fakes import (
    FakeKeyGenerator,
    FakeToolkit,
    RecordingEventSink,
    build_certificate,
)


@pytest.fixture
def pki_config(tmp_path: Path) -> PKIConfig:
    """Return configuration rooted in a temporary directory."""
    return PKIConfig(
        pki_root=tmp_path / "easy-rsa",
        public_dir=tmp_path / "certificates",
        toolkit_fallback_dir=tmp_path / "toolkit",
        backup_dir=tmp_path / "backups",
        gate_wait_seconds=5.0,
        profile=ProfileConfig(host="vpn.example.com", port=1194, protocol="udp", line_ending="\n"),
    )


@pytest.fixture
def fake_toolkit(pki_config: PKIConfig) -> FakeToolkit:
    """Return fake toolkit operating on the configured PKI directory."""
    return FakeToolkit(pki_config.pki_dir)


@pytest.fixture
def key_generator() -> FakeKeyGenerator:
    return FakeKeyGenerator()


@pytest.fixture
def event_sink() -> RecordingEventSink:
    return RecordingEventSink()


@pytest.fixture
def orchestrator(
    pki_config: PKIConfig,
    fake_toolkit: FakeToolkit,
    event_sink: RecordingEventSink,
    key_generator: FakeKeyGenerator,
) -> CertificateOrchestrator:
    """Return orchestrator wired to the fake toolkit and recording sink."""
    return CertificateOrchestrator(
        pki_config, toolkit=fake_toolkit, sink=event_sink, key_generator=key_generator
    )


@pytest.fixture
def bootstrapped(orchestrator: CertificateOrchestrator, fake_toolkit: FakeToolkit) -> CertificateOrchestrator:
    """Return orchestrator whose store is already SERVER_CERT_READY."""
    orchestrator.ensure_bootstrapped()
    fake_toolkit.calls.clear()
    return orchestrator


@pytest.fixture
def make_certificate() -> Callable[..., tuple[x509.Certificate, ec.EllipticCurvePrivateKey]]:
    """Return factory for self-signed certificates with explicit validity."""
    return build_certificate
