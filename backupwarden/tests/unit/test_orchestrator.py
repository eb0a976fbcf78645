from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping

import pytest

from backupwarden.core.config import ValidationConfig
from backupwarden.core.errors import ValidationQueryError
from backupwarden.domain.models import BackupSet
from backupwarden.services import orchestrator as orchestrator_module
from backupwarden.services.telemetry import counters_snapshot
from backupwarden.tests.utils.fakes import (
    STRUCTURAL,
    FakeCounts,
    FakeExecutor,
    RecordingSink,
    RecordingSleep,
    make_orchestrator,
)


def _files(config: ValidationConfig) -> list[str]:
    if not config.backup_dir.exists():
        return []
    return sorted(path.name for path in config.backup_dir.iterdir())


def test_state_transition_rules() -> None:
    allowed = orchestrator_module._state_transition_allowed
    assert allowed("idle", "attempting")
    assert allowed("attempting", "retrying")
    assert allowed("retrying", "attempting")
    assert allowed("attempting", "kept")
    assert allowed("attempting", "exhausted")
    assert not allowed("idle", "kept")
    assert not allowed("kept", "attempting")
    assert not allowed("exhausted", "retrying")


def test_backoff_is_linear_and_strictly_increasing() -> None:
    waits = [orchestrator_module.backoff_seconds(180, attempt) for attempt in range(1, 6)]
    assert waits == [180, 360, 540, 720, 900]
    assert all(later > earlier for earlier, later in zip(waits, waits[1:]))


@pytest.mark.asyncio
async def test_zero_drift_is_stable_and_kept(config: ValidationConfig, executor: FakeExecutor) -> None:
    sink = RecordingSink()
    sleep = RecordingSleep()
    orchestrator = make_orchestrator(config, executor, FakeCounts(), sinks=[sink], sleep=sleep)

    outcome = await orchestrator.run()

    assert outcome.status == "kept"
    assert outcome.exit_code == 0
    assert outcome.token == "2025-11-04_1541"
    assert outcome.attempts[0].verdict == "stable"
    assert outcome.attempts[0].drift == 0
    assert orchestrator.state == "kept"
    assert _files(config) == [
        "tb_conf_2025-11-04_1541.tar.gz",
        "tb_data_2025-11-04_1541.tar.gz",
        "tb_db_2025-11-04_1541.dump",
    ]
    assert sink.sent == []
    assert sleep.waits == []


@pytest.mark.asyncio
async def test_structural_mismatch_deletes_set_regardless_of_drift(
    config: ValidationConfig,
    executor: FakeExecutor,
) -> None:
    counts = FakeCounts(restored_structural=dict(STRUCTURAL, device=99))
    outcome = await make_orchestrator(config, executor, counts, max_attempts=1).run()

    record = outcome.attempts[0]
    assert outcome.status == "exhausted"
    assert record.failure_code == "structural_mismatch"
    assert "device live=100 backup=99" in record.failure_detail
    assert record.drift is None
    assert not any(":cutoff" in statement for _, statement, _ in counts.calls)
    assert _files(config) == []


@pytest.mark.asyncio
async def test_moderate_drift_is_acceptable_and_kept(
    config: ValidationConfig,
    executor: FakeExecutor,
    caplog,
) -> None:
    # Expected rows = 10 rows/s * 10 s = 100; drift 700 is 7x: above 5x, within 15x.
    counts = FakeCounts(live_ts=50_000, restored_ts=49_300)
    with caplog.at_level(logging.WARNING):
        outcome = await make_orchestrator(config, executor, counts).run()

    record = outcome.attempts[0]
    assert outcome.status == "kept"
    assert record.verdict == "acceptable"
    assert record.band is not None and record.band.expected_rows == 100
    assert "backup_verdict_acceptable" in caplog.text
    assert "degraded=true" in caplog.text
    assert "tb_db_2025-11-04_1541.dump" in _files(config)


@pytest.mark.asyncio
async def test_excess_drift_on_every_attempt_exhausts_and_alerts(
    config: ValidationConfig,
    executor: FakeExecutor,
) -> None:
    # Drift 2000 is 20x expected on every attempt.
    sink = RecordingSink()
    sleep = RecordingSleep()
    counts = FakeCounts(live_ts=50_000, restored_ts=48_000)
    orchestrator = make_orchestrator(config, executor, counts, sinks=[sink], sleep=sleep)

    outcome = await orchestrator.run()

    assert outcome.status == "exhausted"
    assert outcome.exit_code == 1
    assert orchestrator.state == "exhausted"
    assert [record.verdict for record in outcome.attempts] == ["rejected"] * 3
    assert {record.failure_code for record in outcome.attempts} == {"excess_drift"}
    assert sleep.waits == [180, 360]
    assert _files(config) == []
    assert len(sink.sent) == 1
    subject, body = sink.sent[0]
    assert subject.startswith("[ALERT] Backup validation failed on ")
    assert "All 3 attempts failed." in body
    assert "reason=excess_drift" in body
    counters = counters_snapshot()
    assert counters["backup_attempts_total"] == 3
    assert counters["backup_attempts_failed_total.excess_drift"] == 3
    assert counters["backup_alerts_sent_total"] == 1


@pytest.mark.asyncio
async def test_empty_dump_fails_attempt_without_restore_then_retries(
    config: ValidationConfig,
    executor: FakeExecutor,
) -> None:
    executor.dump_modes = ["empty"]
    sleep = RecordingSleep()
    outcome = await make_orchestrator(config, executor, FakeCounts(), sleep=sleep).run()

    assert outcome.status == "kept"
    assert outcome.token == "2025-11-04_1542"
    assert outcome.attempts[0].failure_code == "fatal_artifact"
    assert executor.steps() == ["dump", "dump", "archive", "archive", "drop", "create", "restore"]
    assert sleep.waits == [180]
    assert not any("2025-11-04_1541" in name for name in _files(config))


@pytest.mark.asyncio
async def test_rejected_set_is_removed_and_next_attempt_kept(
    config: ValidationConfig,
    executor: FakeExecutor,
) -> None:
    counts = FakeCounts(live_ts=50_000, restored_ts=[48_000, 50_000])
    outcome = await make_orchestrator(config, executor, counts).run()

    assert [record.verdict for record in outcome.attempts] == ["rejected", "stable"]
    files = _files(config)
    assert not any("2025-11-04_1541" in name for name in files)
    assert "tb_db_2025-11-04_1542.dump" in files


@pytest.mark.asyncio
async def test_restore_failure_is_retried_like_rejection(config: ValidationConfig, executor: FakeExecutor) -> None:
    executor.failing_steps.add("restore")
    sink = RecordingSink(result=False)
    outcome = await make_orchestrator(config, executor, FakeCounts(), sinks=[sink]).run()

    assert outcome.status == "exhausted"
    assert {record.failure_code for record in outcome.attempts} == {"fatal_restore"}
    assert _files(config) == []
    assert counters_snapshot()["backup_alerts_undelivered_total"] == 1


class _BrokenValidationCounts(FakeCounts):
    async def count(self, target: str, statement: str, params: Mapping[str, Any] | None = None) -> int:
        if target == "validation":
            raise ValidationQueryError("count query failed on validation database: connection refused")
        return await super().count(target, statement, params)


@pytest.mark.asyncio
async def test_query_failure_counts_as_failed_attempt(config: ValidationConfig, executor: FakeExecutor) -> None:
    outcome = await make_orchestrator(config, executor, _BrokenValidationCounts(), max_attempts=2).run()
    assert [record.failure_code for record in outcome.attempts] == ["validation_query"] * 2
    assert _files(config) == []


@pytest.mark.asyncio
async def test_orchestrator_runs_once(config: ValidationConfig, executor: FakeExecutor) -> None:
    orchestrator = make_orchestrator(config, executor, FakeCounts())
    await orchestrator.run()
    with pytest.raises(RuntimeError):
        await orchestrator.run()


@pytest.mark.asyncio
async def test_failing_alert_sink_does_not_crash(config: ValidationConfig, executor: FakeExecutor) -> None:
    class ExplodingSink:
        def send(self, subject: str, body: str) -> bool:
            raise RuntimeError("mail transport down")

    backup = RecordingSink()
    counts = FakeCounts(restored_ts=40_000)
    outcome = await make_orchestrator(
        config, executor, counts, sinks=[ExplodingSink(), backup], max_attempts=1
    ).run()
    assert outcome.status == "exhausted"
    assert len(backup.sent) == 1


@pytest.mark.asyncio
async def test_verify_reports_without_deleting(config: ValidationConfig, executor: FakeExecutor) -> None:
    config.backup_dir.mkdir(parents=True)
    dump = config.backup_dir / "tb_db_2025-11-04_1200.dump"
    dump.write_bytes(b"PGDMP")
    backup_set = BackupSet(token="2025-11-04_1200", backup_dir=config.backup_dir, prefix="tb", dump_path=dump)
    counts = FakeCounts(restored_ts=40_000)

    record = await make_orchestrator(config, executor, counts).verify(backup_set)

    assert record.verdict == "rejected"
    assert not record.kept
    assert dump.exists()
    assert "dump" not in executor.steps()


class _RefusingCounts(FakeCounts):
    # Raises the raw socket error a driver surfaces when the server is down.
    def __init__(self, *, failures: int, exc: BaseException | None = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.failures = failures
        self.exc = exc

    async def count(self, target: str, statement: str, params: Mapping[str, Any] | None = None) -> int:
        if target == "validation" and self.failures > 0:
            self.failures -= 1
            raise self.exc or ConnectionRefusedError(111, "Connection refused")
        return await super().count(target, statement, params)


@pytest.mark.asyncio
async def test_unexpected_error_deletes_set_retries_and_alerts(
    config: ValidationConfig,
    executor: FakeExecutor,
) -> None:
    sink = RecordingSink()
    sleep = RecordingSleep()
    counts = _RefusingCounts(failures=10)
    orchestrator = make_orchestrator(config, executor, counts, sinks=[sink], sleep=sleep, max_attempts=2)

    outcome = await orchestrator.run()

    assert outcome.status == "exhausted"
    assert orchestrator.state == "exhausted"
    assert [record.failure_code for record in outcome.attempts] == ["unexpected_error"] * 2
    assert "ConnectionRefusedError" in (outcome.attempts[0].failure_detail or "")
    assert executor.steps().count("dump") == 2
    assert sleep.waits == [180]
    assert _files(config) == []
    assert len(sink.sent) == 1
    assert "reason=unexpected_error" in sink.sent[0][1]


@pytest.mark.asyncio
async def test_unexpected_error_then_clean_attempt_is_kept(config: ValidationConfig, executor: FakeExecutor) -> None:
    outcome = await make_orchestrator(config, executor, _RefusingCounts(failures=1)).run()

    assert outcome.status == "kept"
    assert outcome.token == "2025-11-04_1542"
    assert not any("2025-11-04_1541" in name for name in _files(config))


@pytest.mark.asyncio
async def test_cancelled_attempt_removes_set_before_propagating(
    config: ValidationConfig,
    executor: FakeExecutor,
) -> None:
    counts = _RefusingCounts(failures=1, exc=asyncio.CancelledError())
    with pytest.raises(asyncio.CancelledError):
        await make_orchestrator(config, executor, counts).run()
    assert _files(config) == []
