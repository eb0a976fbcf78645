from __future__ import annotations

from datetime import datetime
import logging
import os
from pathlib import Path
import shutil
from typing import Callable, Sequence

from backupwarden.core.config import ValidationConfig
from backupwarden.core.errors import DumpFailedError
from backupwarden.domain.models import ArchiveResult, BackupSet
from backupwarden.services.executor import CommandExecutor


logger = logging.getLogger(__name__)

# Reparsed by the drift estimator; keep it reversible to a date-time value.
TOKEN_FORMAT = "%Y-%m-%d_%H%M"
DUMP_FILE_MODE = 0o640


def format_token(moment: datetime) -> str:
    return moment.strftime(TOKEN_FORMAT)


def parse_token(token: str) -> datetime:
    # Raise ValueError for anything that is not a minute-resolution token.
    return datetime.strptime(token, TOKEN_FORMAT)


def dump_path_for(backup_dir: Path, prefix: str, token: str) -> Path:
    return backup_dir / f"{prefix}_db_{token}.dump"


def archive_path_for(backup_dir: Path, prefix: str, name: str, token: str) -> Path:
    return backup_dir / f"{prefix}_{name}_{token}.tar.gz"


def _first_existing(candidates: Sequence[str], *, want_dir: bool) -> Path | None:
    for raw in candidates:
        path = Path(raw)
        if want_dir and path.is_dir():
            return path
        if not want_dir and path.is_file():
            return path
    return None


class SnapshotProducer:
    """Create one timestamp-identified backup set: a mandatory dump plus optional archives."""

    def __init__(
        self,
        config: ValidationConfig,
        executor: CommandExecutor,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config
        self._executor = executor
        self._clock = clock or datetime.now

    def next_token(self) -> str:
        # Local wall-clock time at minute resolution, e.g. 2025-11-04_1541.
        return format_token(self._clock())

    def produce(self, token: str) -> BackupSet:
        config = self._config
        logger.info("snapshot_started token=%s", token)
        config.backup_dir.mkdir(parents=True, exist_ok=True)

        dump_path = dump_path_for(config.backup_dir, config.backup_prefix, token)
        outcome = self._executor.dump_database(config.database_url, dump_path)
        if not outcome.ok:
            logger.error(
                "snapshot_dump_failed token=%s status=%s returncode=%s detail=%s",
                token,
                outcome.status,
                outcome.returncode,
                outcome.detail,
            )
            raise DumpFailedError(f"dump missing/empty: {dump_path} ({outcome.status})", token=token)
        if not dump_path.exists() or dump_path.stat().st_size == 0:
            logger.error("snapshot_dump_empty token=%s path=%s", token, dump_path)
            raise DumpFailedError(f"dump missing/empty: {dump_path}", token=token)
        self._apply_permissions(dump_path)

        archives = [
            self._capture("conf", config.archive_conf_dirs, token, want_dir=True),
            self._capture("data", config.archive_data_dirs, token, want_dir=True),
            self._capture("license", config.archive_license_files, token, want_dir=False),
            self._capture("ui_branding", config.archive_ui_dirs, token, want_dir=True),
        ]
        backup_set = BackupSet(
            token=token,
            backup_dir=config.backup_dir,
            prefix=config.backup_prefix,
            dump_path=dump_path,
            archives=archives,
        )
        captured = [path.name for path in backup_set.captured_archives()]
        logger.info("snapshot_created token=%s dump=%s archives=%s", token, dump_path.name, ",".join(captured) or "-")
        return backup_set

    def _capture(self, name: str, candidates: Sequence[str], token: str, *, want_dir: bool) -> ArchiveResult:
        # Best-effort: absence is normal, failure is a warning, neither fails the attempt.
        source = _first_existing(candidates, want_dir=want_dir)
        if source is None:
            logger.info("snapshot_archive_skipped name=%s reason=source_absent", name)
            return ArchiveResult(name=name, status="source_absent")
        output = archive_path_for(self._config.backup_dir, self._config.backup_prefix, name, token)
        outcome = self._executor.archive([source], output)
        if not outcome.ok:
            logger.warning(
                "snapshot_archive_failed name=%s source=%s status=%s detail=%s",
                name,
                source,
                outcome.status,
                outcome.detail,
            )
            return ArchiveResult(name=name, status="failed", path=output, detail=outcome.detail or outcome.status)
        return ArchiveResult(name=name, status="captured", path=output)

    def _apply_permissions(self, path: Path) -> None:
        # Let the database service group read the dump; environment errors are not attempt failures.
        try:
            os.chmod(path, DUMP_FILE_MODE)
            if self._config.backup_group:
                shutil.chown(path, group=self._config.backup_group)
        except (OSError, LookupError) as exc:
            logger.warning("snapshot_permissions_failed path=%s error=%s", path, exc)


def delete_backup_set(backup_dir: Path, prefix: str, token: str) -> list[Path]:
    """Remove every artifact of ``token``; safe to call repeatedly."""
    removed: list[Path] = []
    for pattern in (f"{prefix}_*_{token}.dump", f"{prefix}_*_{token}.tar.gz"):
        for path in sorted(backup_dir.glob(pattern)):
            path.unlink(missing_ok=True)
            removed.append(path)
    logger.info("backup_set_deleted token=%s files=%s", token, len(removed))
    return removed
