from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
import subprocess
from typing import Literal, Protocol, Sequence

from backupwarden.core.config import ValidationConfig
from backupwarden.persistence.db import libpq_url, with_database


logger = logging.getLogger(__name__)


OutcomeStatus = Literal["ok", "empty_output", "process_error"]


@dataclass(frozen=True)
class CommandOutcome:
    # Structured result of one external tool invocation.
    status: OutcomeStatus
    returncode: int | None = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.status == "ok"


class CommandExecutor(Protocol):
    # Dump/restore/archive capability; swapped for a fake in tests.
    def dump_database(self, database_url: str, output_path: Path) -> CommandOutcome:
        ...

    def drop_database(self, name: str) -> CommandOutcome:
        ...

    def create_database(self, name: str) -> CommandOutcome:
        ...

    def restore_dump(self, dump_path: Path, database_name: str) -> CommandOutcome:
        ...

    def archive(self, sources: Sequence[Path], output_path: Path) -> CommandOutcome:
        ...


def _artifact_outcome(output_path: Path, outcome: CommandOutcome) -> CommandOutcome:
    # A zero exit is not enough; the artifact must exist and be non-empty.
    if not outcome.ok:
        return outcome
    if not output_path.exists() or output_path.stat().st_size == 0:
        return CommandOutcome(
            status="empty_output",
            returncode=outcome.returncode,
            detail=f"artifact missing or empty: {output_path}",
        )
    return outcome


class SubprocessExecutor:
    """Run pg_dump/pg_restore/psql/tar as child processes.

    Database tools run as ``db_os_user`` through ``sudo -u`` when configured,
    so peer authentication and file ownership match the database service.
    """

    def __init__(self, config: ValidationConfig) -> None:
        self._config = config

    def _db_prefix(self) -> list[str]:
        if self._config.db_os_user:
            return ["sudo", "-u", self._config.db_os_user]
        return []

    def _run(self, args: list[str]) -> CommandOutcome:
        logger.debug("executor_run args=%s", _redact(args))
        try:
            completed = subprocess.run(args, capture_output=True, check=False)
        except OSError as exc:
            return CommandOutcome(status="process_error", returncode=None, detail=str(exc))
        if completed.returncode != 0:
            stderr = completed.stderr.decode("utf-8", errors="ignore").strip()
            return CommandOutcome(status="process_error", returncode=completed.returncode, detail=stderr)
        return CommandOutcome(status="ok", returncode=0)

    def _maintenance_url(self) -> str:
        return libpq_url(with_database(self._config.database_url, self._config.maintenance_db_name))

    def dump_database(self, database_url: str, output_path: Path) -> CommandOutcome:
        args = [
            *self._db_prefix(),
            self._config.pg_dump_bin,
            "-Fc",
            f"--dbname={libpq_url(database_url)}",
            "-f",
            str(output_path),
        ]
        return _artifact_outcome(output_path, self._run(args))

    def drop_database(self, name: str) -> CommandOutcome:
        return self._run(
            [
                *self._db_prefix(),
                self._config.psql_bin,
                f"--dbname={self._maintenance_url()}",
                "-v",
                "ON_ERROR_STOP=1",
                "-c",
                f"DROP DATABASE IF EXISTS {name};",
            ]
        )

    def create_database(self, name: str) -> CommandOutcome:
        return self._run(
            [
                *self._db_prefix(),
                self._config.psql_bin,
                f"--dbname={self._maintenance_url()}",
                "-v",
                "ON_ERROR_STOP=1",
                "-c",
                f"CREATE DATABASE {name};",
            ]
        )

    def restore_dump(self, dump_path: Path, database_name: str) -> CommandOutcome:
        target_url = libpq_url(with_database(self._config.database_url, database_name))
        return self._run(
            [
                *self._db_prefix(),
                self._config.pg_restore_bin,
                "--clean",
                "--if-exists",
                "--no-owner",
                "--no-privileges",
                f"--dbname={target_url}",
                str(dump_path),
            ]
        )

    def archive(self, sources: Sequence[Path], output_path: Path) -> CommandOutcome:
        args = [self._config.tar_bin, "-czf", str(output_path), *(str(source) for source in sources)]
        return _artifact_outcome(output_path, self._run(args))


def _redact(args: list[str]) -> list[str]:
    # Never log connection strings; they may carry passwords.
    return ["--dbname=***" if arg.startswith("--dbname=") else arg for arg in args]
