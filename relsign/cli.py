#!/usr/bin/env python3
"""
relsign command-line interface.

Usage:
    relsign SOURCE DEST [options]

Copies the release tree SOURCE to DEST, signing the files named in the
sign plan, then writes and signs DEST/SHA256SUMS.

Exit status:
    0   release signed and verified
    1   signing, verification or an invariant check failed
    2   usage error
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from relsign import __version__
from relsign.config import LOG_FORMATS, LOG_LEVELS, RelsignConfig, load_config
from relsign.errors import CLIError, RelsignError
from relsign.observability import configure_logging
from relsign.pipeline import build_release_signer

logger = logging.getLogger(__name__)

# flag dest -> config path
_OVERRIDES = {
    "plan": "release.plan_path",
    "codesign_identity": "signing.codesign_identity",
    "gpg_identity": "signing.gpg_identity",
    "pkcs12": "signing.pkcs12_path",
    "certificate": "signing.certificate_path",
    "gpg_public_key": "signing.gpg_public_key_path",
    "timestamp_url": "signing.timestamp_url",
    "source_tarball": "release.source_tarball",
    "manifest_name": "release.manifest_name",
    "log_level": "observability.log_level",
    "log_format": "observability.log_format",
}


class RelsignCLI:
    """Main CLI application."""

    def __init__(self):
        self.parser = argparse.ArgumentParser(
            prog="relsign",
            description="Sign a release tree, descending into tar.gz and zip archives.",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self.parser.add_argument(
            "--version", "-V",
            action="version",
            version=f"relsign {__version__}",
        )
        self.parser.add_argument("source", help="Unsigned release directory")
        self.parser.add_argument("destination", help="Directory to write the signed release to")
        self.parser.add_argument("--config", "-c", help="YAML config file (default: ./relsign.yaml if present)")
        self.parser.add_argument("--plan", "-p", help="YAML sign plan")

        signing = self.parser.add_argument_group("signing")
        signing.add_argument("--codesign-identity", help="codesign identity")
        signing.add_argument("--gpg-identity", help="GPG key used for detached signatures")
        signing.add_argument("--pkcs12", help="PKCS#12 private key for osslsigncode")
        signing.add_argument("--certificate", help="Signing certificate (DER or PEM)")
        signing.add_argument("--gpg-public-key", help="GPG public key used to verify signatures")
        signing.add_argument("--timestamp-url", help="Timestamp authority for osslsigncode")

        release = self.parser.add_argument_group("release")
        release.add_argument("--source-tarball", help="Destination-relative source tarball to detach-sign")
        release.add_argument("--manifest-name", help="Digest manifest file name (default: SHA256SUMS)")

        output = self.parser.add_argument_group("output")
        output.add_argument("--log-level", choices=LOG_LEVELS, help="Log level (default: info)")
        output.add_argument("--log-format", choices=LOG_FORMATS, help="Log format (default: text)")
        output.add_argument(
            "--summary",
            action="store_true",
            help="Print a JSON run summary to stdout on success",
        )
        output.add_argument(
            "--quiet", "-q",
            action="store_true",
            help="Suppress the error message on failure",
        )

    def overrides(self, parsed: argparse.Namespace) -> Dict[str, Any]:
        return {path: getattr(parsed, dest) for dest, path in _OVERRIDES.items()}

    def run(self, args: Optional[List[str]] = None) -> int:
        """Run the CLI."""
        parsed = self.parser.parse_args(args)

        try:
            self._check_paths(parsed)
            config = load_config(parsed.config, self.overrides(parsed))
            self._configure_logging(config)
            summary = build_release_signer(config).run(parsed.source, parsed.destination)
            if parsed.summary:
                print(json.dumps(summary.to_dict(), indent=2))
            return 0

        except CLIError as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return e.exit_code

        except (RelsignError, OSError) as e:
            logger.debug("run failed", exc_info=True)
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return 1

    def _check_paths(self, parsed: argparse.Namespace) -> None:
        source = Path(parsed.source).resolve()
        destination = Path(parsed.destination).resolve()
        if destination == source or source in destination.parents:
            raise CLIError("DEST must not be SOURCE or a directory inside it", exit_code=2)

    def _configure_logging(self, config: RelsignConfig) -> None:
        run_id = configure_logging(
            config.get("observability.log_level"),
            config.get("observability.log_format"),
        )
        logger.debug("run %s with configuration:\n%s", run_id, config.to_yaml())


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    cli = RelsignCLI()
    return cli.run(argv)


if __name__ == "__main__":
    sys.exit(main())
