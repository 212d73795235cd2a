#!/usr/bin/env python3
"""Bootstrap the VPN PKI: init, CA, DH parameters and server certificate."""

import argparse
import sys
from pathlib import Path

from pki_operations.lib.config import PKIConfig
from pki_operations.lib.errors import PKIOperationError
from pki_operations.lib.logging_config import LOGGER
from pki_operations.lib.orchestrator import CertificateOrchestrator


def main() -> int:
    """Bootstrap the PKI store and materialize the server certificate set.

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    parser = argparse.ArgumentParser(description="Bootstrap VPN PKI (idempotent)")
    parser.add_argument(
        "--pki-dir",
        type=Path,
        help="PKI store root (default: $VPN_PKI_DIR or easy-rsa)",
    )
    parser.add_argument(
        "--cert-dir",
        type=Path,
        help="Public certificate directory (default: $VPN_CERT_DIR or certificates)",
    )
    parser.add_argument(
        "--crl",
        action="store_true",
        help="Also generate the initial CRL",
    )
    args = parser.parse_args()

    try:
        config = PKIConfig.from_env()
        if args.pki_dir:
            config.pki_root = args.pki_dir
        if args.cert_dir:
            config.public_dir = args.cert_dir
        orchestrator = CertificateOrchestrator(config)

        LOGGER.info("Bootstrapping PKI at %s...", config.pki_root)
        result = orchestrator.ensure_bootstrapped()

        LOGGER.info("PKI state: %s", result.state.name)
        LOGGER.info("  Steps run: %s", ", ".join(result.steps_run) or "none")
        if result.repaired:
            LOGGER.info("  Repaired incomplete store (old contents: %s)", result.quarantine_path)
        for path in result.materialization.copied:
            LOGGER.info("  Copied: %s", path)

        if args.crl:
            crl_path = orchestrator.generate_or_refresh_crl()
            LOGGER.info("  CRL: %s", crl_path)

        LOGGER.info("Bootstrap complete. Next: run issue_client.py")
        return 0

    except PKIOperationError as e:
        LOGGER.error("Bootstrap failed: %s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
