#!/usr/bin/env python3
"""List materialized VPN client profiles with their certificate status."""

import argparse
import json
import sys
from pathlib import Path

from pki_operations.lib.config import PKIConfig
from pki_operations.lib.logging_config import LOGGER
from pki_operations.lib.orchestrator import CertificateOrchestrator


def main() -> int:
    """Print one JSON object per client.

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    parser = argparse.ArgumentParser(description="List client certificates")
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

        records = orchestrator.list_materialized_clients()
        for record in records:
            print(
                json.dumps(
                    {
                        "name": record.name,
                        "status": record.status,
                        "created_at": record.created_at.isoformat(),
                        "expires_at": record.expires_at.isoformat() if record.expires_at else None,
                        "serial_number": record.serial_number,
                    }
                )
            )
        LOGGER.info("Found %d client(s)", len(records))
        return 0

    except OSError as e:
        LOGGER.error("Listing clients failed: %s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
