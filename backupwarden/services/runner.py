from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Sequence

from backupwarden.core.config import ValidationConfig
from backupwarden.domain.models import AttemptRecord, BackupSet, RunOutcome
from backupwarden.persistence.db import CountSource, SqlCountSource, with_database
from backupwarden.services.consistency import ConsistencyChecker
from backupwarden.services.drift import DriftEstimator
from backupwarden.services.executor import CommandExecutor, SubprocessExecutor
from backupwarden.services.notifications import AlertSink, build_alert_sinks
from backupwarden.services.orchestrator import BackupOrchestrator, Sleeper
from backupwarden.services.restore import ValidationRestorer
from backupwarden.services.run_lock import RunLock
from backupwarden.services.snapshot import SnapshotProducer, dump_path_for, parse_token
from backupwarden.services.telemetry import counters_snapshot, gauges_snapshot, increment_counter
from backupwarden.services.thresholds import ThresholdEngine


logger = logging.getLogger(__name__)


def ensure_backup_dir(config: ValidationConfig) -> None:
    # Ownership and permissions of the backup root are provisioned externally.
    config.backup_dir.mkdir(parents=True, exist_ok=True)


def build_orchestrator(
    config: ValidationConfig,
    *,
    executor: CommandExecutor,
    counts: CountSource,
    alert_sinks: Sequence[AlertSink],
    sleep: Sleeper | None = None,
) -> BackupOrchestrator:
    return BackupOrchestrator(
        config,
        producer=SnapshotProducer(config, executor),
        restorer=ValidationRestorer(config, executor),
        checker=ConsistencyChecker(config, counts),
        drift=DriftEstimator(config, counts),
        thresholds=ThresholdEngine(config, counts),
        alert_sinks=alert_sinks,
        sleep=sleep,
    )


def _default_counts(config: ValidationConfig) -> SqlCountSource:
    return SqlCountSource(
        live_url=config.database_url,
        validation_url=with_database(config.database_url, config.validation_db_name),
    )


def write_run_report(path: Path, outcome: RunOutcome) -> None:
    payload: dict[str, Any] = outcome.to_dict()
    payload["counters"] = counters_snapshot()
    payload["gauges"] = gauges_snapshot()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2, sort_keys=True, default=str), encoding="utf-8")


async def run_validated_backup(
    config: ValidationConfig,
    *,
    executor: CommandExecutor | None = None,
    counts: CountSource | None = None,
    alert_sinks: Sequence[AlertSink] | None = None,
    sleep: Sleeper | None = None,
    lock: RunLock | None = None,
) -> RunOutcome:
    """Run one orchestration under the run lock; a held lock yields a skipped outcome."""
    lock = lock or RunLock(config.lock_path)
    if not lock.acquire():
        logger.warning("backup_run_skipped reason=lock_held path=%s", config.lock_path)
        increment_counter("backup_runs_skipped")
        return RunOutcome(status="skipped")

    owned_counts: SqlCountSource | None = None
    try:
        ensure_backup_dir(config)
        if counts is None:
            owned_counts = _default_counts(config)
            counts = owned_counts
        orchestrator = build_orchestrator(
            config,
            executor=executor or SubprocessExecutor(config),
            counts=counts,
            alert_sinks=alert_sinks if alert_sinks is not None else build_alert_sinks(config),
            sleep=sleep,
        )
        outcome = await orchestrator.run()
        increment_counter(f"backup_runs_{outcome.status}")
        if config.run_report_path is not None:
            write_run_report(config.run_report_path, outcome)
        return outcome
    finally:
        if owned_counts is not None:
            await owned_counts.dispose()
        lock.release()


async def verify_existing_backup(
    config: ValidationConfig,
    token: str,
    *,
    executor: CommandExecutor | None = None,
    counts: CountSource | None = None,
    lock: RunLock | None = None,
) -> AttemptRecord | None:
    """Re-validate a kept set by token; returns None when another run holds the lock."""
    parse_token(token)
    lock = lock or RunLock(config.lock_path)
    if not lock.acquire():
        logger.warning("backup_verify_skipped reason=lock_held path=%s", config.lock_path)
        return None

    owned_counts: SqlCountSource | None = None
    try:
        if counts is None:
            owned_counts = _default_counts(config)
            counts = owned_counts
        orchestrator = build_orchestrator(
            config,
            executor=executor or SubprocessExecutor(config),
            counts=counts,
            alert_sinks=[],
        )
        backup_set = BackupSet(
            token=token,
            backup_dir=config.backup_dir,
            prefix=config.backup_prefix,
            dump_path=dump_path_for(config.backup_dir, config.backup_prefix, token),
        )
        return await orchestrator.verify(backup_set)
    finally:
        if owned_counts is not None:
            await owned_counts.dispose()
        lock.release()
