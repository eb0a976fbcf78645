from __future__ import annotations

import argparse
import asyncio
import json
import sys

from backupwarden.core.config import ValidationConfig, load_settings
from backupwarden.core.errors import ConfigurationError
from backupwarden.core.logging import configure_logging
from backupwarden.services.runner import verify_existing_backup


def main() -> None:
    # Re-validate a kept backup set by token; never deletes anything.
    parser = argparse.ArgumentParser(description="Verify an existing backup set")
    parser.add_argument("--token", required=True, help="backup token, e.g. 2025-11-04_1541")
    args = parser.parse_args()

    try:
        settings = load_settings()
    except ConfigurationError as exc:
        print(f"error={exc}", file=sys.stderr)
        sys.exit(2)
    configure_logging(settings)
    try:
        config = ValidationConfig.from_settings(settings)
        record = asyncio.run(verify_existing_backup(config, args.token))
    except (ConfigurationError, ValueError) as exc:
        print(f"error={exc}", file=sys.stderr)
        sys.exit(2)

    if record is None:
        print("status=skipped")
        sys.exit(0)
    print(json.dumps(record.to_dict(), indent=2, default=str))
    if not record.kept:
        sys.exit(1)


if __name__ == "__main__":
    main()
