from __future__ import annotations

import logging
from pathlib import Path
import sys

from backupwarden.core.config import Settings, get_settings


LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S %Z"

_HANDLER_MARKER = "_backupwarden_handler"


def configure_logging(settings: Settings | None = None, *, log_file: str | None = None) -> None:
    # Mirror every record to the run log and stderr; stdout stays free for script output.
    settings = settings or get_settings()
    root = logging.getLogger()
    root.setLevel(settings.log_level.upper())
    for handler in list(root.handlers):
        if getattr(handler, _HANDLER_MARKER, False):
            root.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    target = log_file or settings.log_file
    if target:
        try:
            Path(target).parent.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(target, mode="a", encoding="utf-8"))
        except OSError as exc:
            # Keep stderr logging when the log file is not writable (e.g. non-root dev runs).
            print(f"log file unavailable: {target}: {exc}", file=sys.stderr)
    for handler in handlers:
        handler.setFormatter(formatter)
        setattr(handler, _HANDLER_MARKER, True)
        root.addHandler(handler)
