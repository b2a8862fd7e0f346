#!/usr/bin/env python3
"""UniFi Controller Certificate Rotation Script (headless)

Requests the node's certificate from tailscaled and, if it changed since the
last run, imports it into the UniFi keystore and restarts the controller.
Safe to run from cron as often as you like; an unchanged certificate is a
no-op that never touches the keystore or the service.

Usage (database config, added via the uc-certsync TUI):
    python rotate.py --controller <name>

Usage (environment variables):
    UNIFI_HOSTNAME=unifi.tailnet-1234.ts.net UNIFI_KEYSTORE_PASSWORD=... python rotate.py

Example crontab (root):
    55 23 * * * /usr/local/bin/uc-certsync-rotate --controller home

Environment variables (env mode):
    UNIFI_HOSTNAME            — required, MagicDNS name to issue the cert for
    UNIFI_KEYSTORE_PASSWORD   — required
    UNIFI_SERVICE             — optional, defaults to unifi
    UNIFI_KEYSTORE            — optional, defaults to /var/lib/unifi/keystore
    UNIFI_CERT_DIR            — optional, defaults to /etc/ssl/private
    UNIFI_ALIAS               — optional, defaults to unifi
    UNIFI_VERIFY_URL          — optional, controller /status URL to poll after restart
    CERTSYNC_STRICT           — optional, 1/true to abort and roll back on tool failures

Exit codes:
    0  success, partial success, or certificate unchanged
    1  certificate/key missing after issuance, or configuration error
    2  strict mode aborted the rotation
"""

import argparse
import os
import sys

# Ensure repo root is importable regardless of working directory
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from rich.console import Console

from cli.narration import console_progress, print_summary
from db.database import init_db
from services.config_service import ConfigError, load_rotation_config, rotation_config_from_env
from services.rotation_service import RotationService

console = Console()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="UniFi Controller Certificate Rotation")
    parser.add_argument("--controller", help="Controller name from database (alternative to env vars)")
    parser.add_argument("--force", action="store_true", help="Install even if the certificate is unchanged")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--strict", dest="strict", action="store_true", default=None,
                      help="Abort and roll back the keystore on tool failures")
    mode.add_argument("--lenient", dest="strict", action="store_false",
                      help="Record tool failures as warnings and carry on")
    parser.add_argument("--quiet", "-q", action="store_true", help="Only print the summary")
    parser.set_defaults(strict=None)
    args = parser.parse_args(argv)

    init_db()
    try:
        if args.controller:
            config = load_rotation_config(args.controller, strict=args.strict)
        else:
            config = rotation_config_from_env(strict=args.strict)
    except ConfigError as e:
        console.print(f"[red]✗ ERROR: {e}[/red]")
        return 1

    console.print(f"=== UniFi Certificate Rotation: {config.hostname} ===")
    progress = None if args.quiet else console_progress(console)
    result = RotationService(config).run(force=args.force, progress_callback=progress)
    print_summary(console, result)
    console.print("=== Complete ===")
    return result.exit_code


if __name__ == "__main__":
    sys.exit(main())
