from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta, timezone
from functools import lru_cache
from pathlib import Path
import re

from pydantic import ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from backupwarden.core.errors import ConfigurationError


_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_TZ_OFFSET = re.compile(r"^([+-])(\d{2}):?(\d{2})$")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    app_name: str = "backupwarden"
    log_level: str = "INFO"
    # Append-only audit trail for every attempt and decision.
    log_file: str = "/var/log/backupwarden.log"

    database_url: str = "postgresql+asyncpg://postgres@localhost:5432/thingsboard"
    # Disposable database rebuilt from each dump; must differ from the live database.
    validation_db_name: str = "tbv"
    # Database psql connects to when dropping/creating the validation database.
    maintenance_db_name: str = "postgres"
    # Run dump/restore tools as this OS user (sudo -u); empty runs them directly.
    db_os_user: str = "postgres"

    backup_dir: str = "/var/backups/thingsboard"
    backup_prefix: str = "tb"
    # Group granted read access to dumps so the database service account can restore them.
    backup_group: str = "postgres"
    lock_path: str = "/var/lock/backupwarden.lock"

    # Attempts per run before alerting.
    backup_max_attempts: int = 5
    # Linear backoff base between attempts (base * attempt).
    backup_retry_base_s: int = 180

    # Fixed offset applied when turning a backup token back into a cutoff instant.
    drift_tz_offset: str = "+0500"
    drift_accept_multiplier: int = 5
    drift_warn_multiplier: int = 15
    # Trailing window used to measure live write throughput.
    throughput_window_s: int = 60
    # Comma-delimited tables whose row counts must match exactly after restore.
    structural_tables: str = "device,dashboard,tenant,rule_chain"
    timeseries_table: str = "ts_kv"
    timeseries_ts_column: str = "ts"

    pg_dump_bin: str = "pg_dump"
    pg_restore_bin: str = "pg_restore"
    psql_bin: str = "psql"
    tar_bin: str = "tar"

    # Optional archive sources; comma-delimited values are tried in order.
    archive_conf_dir: str = "/etc/thingsboard"
    archive_data_dirs: str = "/usr/share/thingsboard/data,/var/lib/thingsboard"
    archive_license_file: str = "/etc/thingsboard/conf/thingsboard-license.conf"
    archive_ui_dirs: str = "/usr/share/thingsboard/static,/usr/share/thingsboard/ui"

    # Alert delivery on exhaustion; every configured channel is tried.
    alert_email_to: str = ""
    alert_email_from: str = "backupwarden@localhost"
    smtp_host: str = "localhost"
    smtp_port: int = 25
    smtp_timeout_s: int = 10
    alert_webhook_url: str | None = None
    alert_webhook_timeout_ms: int = 5000

    # Write a JSON summary of each run here when set.
    run_report_path: str | None = None


@lru_cache
def get_settings() -> Settings:
    return Settings()


def load_settings() -> Settings:
    # Malformed environment values are configuration errors, not crashes.
    try:
        return get_settings()
    except ValidationError as exc:
        raise ConfigurationError(f"invalid settings: {exc}") from exc


def _split_csv(raw: str) -> tuple[str, ...]:
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def parse_tz_offset(raw: str) -> timezone:
    # Accept +HHMM / -HH:MM offsets as used by `date -d "... +0500"`.
    match = _TZ_OFFSET.match(raw.strip())
    if match is None:
        raise ConfigurationError(f"invalid timezone offset: {raw!r}")
    sign, hours, minutes = match.groups()
    delta = timedelta(hours=int(hours), minutes=int(minutes))
    if delta >= timedelta(hours=24):
        raise ConfigurationError(f"timezone offset out of range: {raw!r}")
    return timezone(-delta if sign == "-" else delta)


def _require_identifier(name: str, value: str) -> str:
    # Table/column/database names are interpolated into SQL, so keep them plain identifiers.
    if not _IDENTIFIER.match(value):
        raise ConfigurationError(f"{name} must be a plain SQL identifier, got {value!r}")
    return value


@dataclass(frozen=True)
class ValidationConfig:
    """Explicit, validated configuration for one orchestration run.

    Built from :class:`Settings` at the process boundary and passed into every
    component so tests can inject fast retry parameters and temp directories.
    """

    database_url: str
    validation_db_name: str
    maintenance_db_name: str
    db_os_user: str | None
    backup_dir: Path
    backup_prefix: str
    backup_group: str | None
    lock_path: Path
    max_attempts: int
    retry_base_s: int
    tz_offset: timezone
    accept_multiplier: int
    warn_multiplier: int
    throughput_window_s: int
    structural_tables: tuple[str, ...]
    timeseries_table: str
    timeseries_ts_column: str
    pg_dump_bin: str
    pg_restore_bin: str
    psql_bin: str
    tar_bin: str
    archive_conf_dirs: tuple[str, ...]
    archive_data_dirs: tuple[str, ...]
    archive_license_files: tuple[str, ...]
    archive_ui_dirs: tuple[str, ...]
    alert_email_to: tuple[str, ...]
    alert_email_from: str
    smtp_host: str
    smtp_port: int
    smtp_timeout_s: int
    alert_webhook_url: str | None
    alert_webhook_timeout_ms: int
    log_file: str
    run_report_path: Path | None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be at least 1")
        if self.retry_base_s < 0:
            raise ConfigurationError("retry_base_s must not be negative")
        if self.throughput_window_s < 1:
            raise ConfigurationError("throughput_window_s must be at least 1")
        if not 0 <= self.accept_multiplier <= self.warn_multiplier:
            raise ConfigurationError("drift multipliers must satisfy 0 <= accept <= warn")
        if not self.structural_tables:
            raise ConfigurationError("at least one structural table is required")
        for table in self.structural_tables:
            _require_identifier("structural_tables", table)
        _require_identifier("timeseries_table", self.timeseries_table)
        _require_identifier("timeseries_ts_column", self.timeseries_ts_column)
        _require_identifier("validation_db_name", self.validation_db_name)
        _require_identifier("maintenance_db_name", self.maintenance_db_name)
        if not _IDENTIFIER.match(self.backup_prefix):
            raise ConfigurationError(f"backup_prefix must be alphanumeric, got {self.backup_prefix!r}")

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> ValidationConfig:
        settings = settings or get_settings()
        return cls(
            database_url=settings.database_url,
            validation_db_name=settings.validation_db_name,
            maintenance_db_name=settings.maintenance_db_name,
            db_os_user=settings.db_os_user or None,
            backup_dir=Path(settings.backup_dir),
            backup_prefix=settings.backup_prefix,
            backup_group=settings.backup_group or None,
            lock_path=Path(settings.lock_path),
            max_attempts=settings.backup_max_attempts,
            retry_base_s=settings.backup_retry_base_s,
            tz_offset=parse_tz_offset(settings.drift_tz_offset),
            accept_multiplier=settings.drift_accept_multiplier,
            warn_multiplier=settings.drift_warn_multiplier,
            throughput_window_s=settings.throughput_window_s,
            structural_tables=_split_csv(settings.structural_tables),
            timeseries_table=settings.timeseries_table,
            timeseries_ts_column=settings.timeseries_ts_column,
            pg_dump_bin=settings.pg_dump_bin,
            pg_restore_bin=settings.pg_restore_bin,
            psql_bin=settings.psql_bin,
            tar_bin=settings.tar_bin,
            archive_conf_dirs=_split_csv(settings.archive_conf_dir),
            archive_data_dirs=_split_csv(settings.archive_data_dirs),
            archive_license_files=_split_csv(settings.archive_license_file),
            archive_ui_dirs=_split_csv(settings.archive_ui_dirs),
            alert_email_to=_split_csv(settings.alert_email_to),
            alert_email_from=settings.alert_email_from,
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_timeout_s=settings.smtp_timeout_s,
            alert_webhook_url=settings.alert_webhook_url or None,
            alert_webhook_timeout_ms=settings.alert_webhook_timeout_ms,
            log_file=settings.log_file,
            run_report_path=Path(settings.run_report_path) if settings.run_report_path else None,
        )
