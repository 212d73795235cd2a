#!/usr/bin/env python3
"""Issue a VPN client certificate and inline connection profile."""

import argparse
import sys
from pathlib import Path

from pki_operations.lib.config import PKIConfig
from pki_operations.lib.errors import PKIOperationError
from pki_operations.lib.events import Actor
from pki_operations.lib.logging_config import LOGGER
from pki_operations.lib.orchestrator import CertificateOrchestrator


def main() -> int:
    """Issue (or re-export) a client certificate.

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    parser = argparse.ArgumentParser(description="Issue client certificate")
    parser.add_argument(
        "--name",
        required=True,
        help="Client identifier (used as CN in certificate)",
    )
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

        LOGGER.info("Issuing certificate for: %s", args.name)
        result = orchestrator.issue_client_certificate(args.name, Actor(username=args.actor))

        LOGGER.info("Client certificate %s:", "created" if result.newly_issued else "reused")
        LOGGER.info("  Profile: %s", result.profile_path)
        LOGGER.info("  Cert: %s", result.cert_path)
        LOGGER.info("  Serial: %s", result.serial_number)
        LOGGER.info("  Expires: %s", result.expires_at.isoformat())
        for warning in result.warnings:
            LOGGER.warning("  Warning: %s", warning)
        return 0

    except PKIOperationError as e:
        LOGGER.error("Client certificate issuance failed: %s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
