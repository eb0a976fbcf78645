from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging
from pathlib import Path
import sys

from backupwarden.core.config import ValidationConfig, load_settings
from backupwarden.core.errors import ConfigurationError
from backupwarden.core.logging import configure_logging
from backupwarden.services.runner import run_validated_backup


logger = logging.getLogger("backupwarden.scripts.backup_validate")


def main() -> None:
    # Cron entry point: create, validate and keep one backup set, or alert.
    parser = argparse.ArgumentParser(description="Create and validate a database backup set")
    parser.add_argument("--max-attempts", type=int, default=None)
    parser.add_argument("--retry-base-s", type=int, default=None)
    parser.add_argument("--backup-dir", default=None)
    parser.add_argument("--log-file", default=None)
    args = parser.parse_args()

    try:
        settings = load_settings()
    except ConfigurationError as exc:
        print(f"error={exc}", file=sys.stderr)
        sys.exit(2)
    configure_logging(settings, log_file=args.log_file)
    try:
        config = ValidationConfig.from_settings(settings)
        overrides = {}
        if args.max_attempts is not None:
            overrides["max_attempts"] = args.max_attempts
        if args.retry_base_s is not None:
            overrides["retry_base_s"] = args.retry_base_s
        if args.backup_dir:
            overrides["backup_dir"] = Path(args.backup_dir)
        if args.log_file:
            overrides["log_file"] = args.log_file
        if overrides:
            config = dataclasses.replace(config, **overrides)
    except ConfigurationError as exc:
        logger.error("backup_config_invalid error=%s", exc)
        sys.exit(2)

    try:
        outcome = asyncio.run(run_validated_backup(config))
    except ConfigurationError as exc:
        logger.error("backup_config_invalid error=%s", exc)
        sys.exit(2)
    print(f"status={outcome.status}")
    if outcome.token:
        print(f"token={outcome.token}")
    sys.exit(outcome.exit_code)


if __name__ == "__main__":
    main()
