from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging
import socket
import time
from typing import Awaitable, Callable, Sequence

from backupwarden.core.config import ValidationConfig
from backupwarden.core.errors import AttemptFailedError, StructuralMismatchError
from backupwarden.domain.models import (
    FAILURE_EXCESS_DRIFT,
    FAILURE_UNEXPECTED,
    VERDICT_ACCEPTABLE,
    VERDICT_REJECTED,
    AttemptRecord,
    BackupSet,
    RunOutcome,
)
from backupwarden.services.classifier import classify
from backupwarden.services.consistency import ConsistencyChecker
from backupwarden.services.drift import DriftEstimator
from backupwarden.services.notifications import AlertSink, dispatch_alert
from backupwarden.services.restore import ValidationRestorer
from backupwarden.services.snapshot import SnapshotProducer, delete_backup_set
from backupwarden.services.telemetry import increment_counter, set_gauge
from backupwarden.services.thresholds import ThresholdEngine


logger = logging.getLogger(__name__)

RUN_STATE_IDLE = "idle"
RUN_STATE_ATTEMPTING = "attempting"
RUN_STATE_RETRYING = "retrying"
RUN_STATE_KEPT = "kept"
RUN_STATE_EXHAUSTED = "exhausted"

Sleeper = Callable[[float], Awaitable[None]]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _state_transition_allowed(current: str, target: str) -> bool:
    # Enforce the run state machine; kept and exhausted are terminal.
    allowed: dict[str, set[str]] = {
        RUN_STATE_IDLE: {RUN_STATE_ATTEMPTING},
        RUN_STATE_ATTEMPTING: {RUN_STATE_KEPT, RUN_STATE_RETRYING, RUN_STATE_EXHAUSTED},
        RUN_STATE_RETRYING: {RUN_STATE_ATTEMPTING},
    }
    return target in allowed.get(current, set())


def backoff_seconds(base_s: int, attempt: int) -> int:
    # Linear backoff: base * attempt (3m, 6m, 9m, ... with the default base).
    return base_s * attempt


class BackupOrchestrator:
    """Produce, validate, keep-or-delete, and retry until kept or exhausted.

    The only component that deletes backup sets or decides between retrying
    and giving up. It assumes the caller already holds the run lock.
    """

    def __init__(
        self,
        config: ValidationConfig,
        *,
        producer: SnapshotProducer,
        restorer: ValidationRestorer,
        checker: ConsistencyChecker,
        drift: DriftEstimator,
        thresholds: ThresholdEngine,
        alert_sinks: Sequence[AlertSink],
        sleep: Sleeper | None = None,
        monotonic: Callable[[], float] | None = None,
    ) -> None:
        self._config = config
        self._producer = producer
        self._restorer = restorer
        self._checker = checker
        self._drift = drift
        self._thresholds = thresholds
        self._alert_sinks = list(alert_sinks)
        self._sleep = sleep or asyncio.sleep
        self._monotonic = monotonic or time.monotonic
        self._state = RUN_STATE_IDLE

    @property
    def state(self) -> str:
        return self._state

    def _transition(self, target: str) -> None:
        if not _state_transition_allowed(self._state, target):
            raise RuntimeError(f"invalid run state transition {self._state} -> {target}")
        logger.debug("run_state_transition from=%s to=%s", self._state, target)
        self._state = target

    async def run(self) -> RunOutcome:
        config = self._config
        records: list[AttemptRecord] = []
        for attempt in range(1, config.max_attempts + 1):
            self._transition(RUN_STATE_ATTEMPTING)
            logger.info("backup_attempt_started attempt=%s max=%s", attempt, config.max_attempts)
            record = await self._attempt(attempt)
            records.append(record)

            if record.kept:
                self._transition(RUN_STATE_KEPT)
                logger.info("backup_kept token=%s verdict=%s attempt=%s", record.token, record.verdict, attempt)
                return RunOutcome(status="kept", token=record.token, attempts=records)

            if attempt < config.max_attempts:
                self._transition(RUN_STATE_RETRYING)
                wait_s = backoff_seconds(config.retry_base_s, attempt)
                logger.info("backup_retry_scheduled attempt=%s wait_s=%s", attempt, wait_s)
                await self._sleep(wait_s)

        self._transition(RUN_STATE_EXHAUSTED)
        logger.error("backup_attempts_exhausted attempts=%s", len(records))
        self._send_exhaustion_alert(records)
        return RunOutcome(status="exhausted", token=None, attempts=records)

    async def _attempt(self, attempt: int) -> AttemptRecord:
        record = AttemptRecord(attempt=attempt, started_at=_utc_now())
        started = self._monotonic()
        token = self._producer.next_token()
        record.token = token
        increment_counter("backup_attempts_total")
        try:
            backup_set = self._producer.produce(token)
            await self._validate(backup_set, record, started)
        except AttemptFailedError as exc:
            record.failure_code = exc.code
            record.failure_detail = str(exc)
        except Exception as exc:  # noqa: BLE001
            logger.exception("backup_attempt_unexpected_error attempt=%s token=%s", attempt, token)
            record.verdict = None
            record.failure_code = FAILURE_UNEXPECTED
            record.failure_detail = f"{type(exc).__name__}: {exc}"
        except BaseException:
            # Cancelled or interrupted mid-attempt: never leave an unvalidated set behind.
            delete_backup_set(self._config.backup_dir, self._config.backup_prefix, token)
            raise

        record.ended_at = _utc_now()
        if record.duration_s is None:
            record.duration_s = int(self._monotonic() - started)
        set_gauge("backup_last_duration_s", record.duration_s)

        if record.kept:
            return record
        increment_counter(f"backup_attempts_failed_total.{record.failure_code}")
        logger.warning(
            "backup_attempt_failed attempt=%s token=%s reason=%s duration_s=%s detail=%s",
            attempt,
            token,
            record.failure_code,
            record.duration_s,
            record.failure_detail,
        )
        delete_backup_set(self._config.backup_dir, self._config.backup_prefix, token)
        return record

    async def _validate(self, backup_set: BackupSet, record: AttemptRecord, started: float) -> None:
        # Fills `record`; raises AttemptFailedError for fatal and structural failures.
        token = backup_set.token
        self._restorer.restore(backup_set)

        report = await self._checker.check()
        if not report.ok:
            raise StructuralMismatchError(
                "structural mismatch: " + ", ".join(
                    f"{item.table} live={item.live} backup={item.restored}"
                    for item in report.counts
                    if not item.matches
                ),
                token=token,
                mismatches=report.mismatches,
            )

        drift = await self._drift.estimate(token)
        record.live_rows = drift.live_rows
        record.restored_rows = drift.restored_rows
        record.drift = drift.drift
        set_gauge("backup_last_drift", drift.drift)

        record.duration_s = int(self._monotonic() - started)
        band = await self._thresholds.compute(record.duration_s)
        record.band = band
        record.verdict = classify(drift.drift, band)

        if record.verdict == VERDICT_REJECTED:
            record.failure_code = FAILURE_EXCESS_DRIFT
            record.failure_detail = f"drift={drift.drift} exceeds warn ceiling {band.warn_ceiling}"
            logger.warning("backup_verdict_rejected token=%s drift=%s warn<=%s", token, drift.drift, band.warn_ceiling)
        elif record.verdict == VERDICT_ACCEPTABLE:
            logger.warning(
                "backup_verdict_acceptable token=%s drift=%s accept<=%s degraded=true",
                token,
                drift.drift,
                band.accept_ceiling,
            )
        else:
            logger.info("backup_verdict_stable token=%s drift=%s accept<=%s", token, drift.drift, band.accept_ceiling)

    async def verify(self, backup_set: BackupSet) -> AttemptRecord:
        """Re-validate an existing set without producing, deleting or retrying."""
        record = AttemptRecord(attempt=1, started_at=_utc_now(), token=backup_set.token)
        started = self._monotonic()
        try:
            await self._validate(backup_set, record, started)
        except AttemptFailedError as exc:
            record.failure_code = exc.code
            record.failure_detail = str(exc)
        except Exception as exc:  # noqa: BLE001
            logger.exception("backup_verify_unexpected_error token=%s", backup_set.token)
            record.verdict = None
            record.failure_code = FAILURE_UNEXPECTED
            record.failure_detail = f"{type(exc).__name__}: {exc}"
        record.ended_at = _utc_now()
        if record.duration_s is None:
            record.duration_s = int(self._monotonic() - started)
        logger.info("backup_verify_finished token=%s kept=%s reason=%s", backup_set.token, record.kept, record.failure_code)
        return record

    def _send_exhaustion_alert(self, records: Sequence[AttemptRecord]) -> None:
        hostname = socket.gethostname()
        subject = f"[ALERT] Backup validation failed on {hostname}"
        lines = [f"All {len(records)} attempts failed."]
        lines.extend(record.summary() for record in records)
        lines.append(f"See {self._config.log_file} and {self._config.backup_dir} for details.")
        delivered = dispatch_alert(self._alert_sinks, subject, "\n".join(lines))
        increment_counter("backup_alerts_sent_total" if delivered else "backup_alerts_undelivered_total")
