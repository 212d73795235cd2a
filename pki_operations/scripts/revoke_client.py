#!/usr/bin/env python3
"""Revoke a VPN client certificate and refresh the CRL."""

import argparse
import sys
from pathlib import Path

from pki_operations.lib.config import PKIConfig
from pki_operations.lib.errors import PKIOperationError
from pki_operations.lib.events import Actor
from pki_operations.lib.logging_config import LOGGER
from pki_operations.lib.orchestrator import CertificateOrchestrator


def main() -> int:
    """Revoke a client certificate.

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    parser = argparse.ArgumentParser(description="Revoke client certificate")
    parser.add_argument("--name", required=True, help="Client identifier to revoke")
    parser.add_argument(
        "--actor",
        default="system",
        help="Username recorded in lifecycle events (default: system)",
    )
    parser.add_argument("--pki-dir", type=Path, help="PKI store root")
    parser.add_argument("--cert-dir", type=Path, help="Public certificate directory")
    args = parser.parse_args()

    try:
        config = PKIConfig.from_env()
        if args.pki_dir:
            config.pki_root = args.pki_dir
        if args.cert_dir:
            config.public_dir = args.cert_dir
        orchestrator = CertificateOrchestrator(config)

        LOGGER.info("Revoking certificate for: %s", args.name)
        result = orchestrator.revoke_client_certificate(args.name, Actor(username=args.actor))

        if result.already_revoked:
            LOGGER.info("Certificate was already revoked")
        for path in result.removed:
            LOGGER.info("  Removed: %s", path)
        LOGGER.info("  CRL: %s", result.crl_path)
        LOGGER.info("Revocation complete. Reload the VPN server to pick up the CRL")
        return 0

    except PKIOperationError as e:
        LOGGER.error("Revocation failed: %s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
