from __future__ import annotations

import dataclasses
import json
from pathlib import Path

import pytest

from backupwarden.core.config import ValidationConfig
from backupwarden.services.run_lock import RunLock
from backupwarden.services.runner import run_validated_backup, verify_existing_backup
from backupwarden.tests.utils.fakes import STRUCTURAL, FakeCounts, FakeExecutor, RecordingSink, RecordingSleep


@pytest.mark.asyncio
async def test_run_keeps_backup_and_writes_report(
    config: ValidationConfig,
    executor: FakeExecutor,
    tmp_path: Path,
) -> None:
    report_path = tmp_path / "reports" / "last_run.json"
    config = dataclasses.replace(config, run_report_path=report_path)

    outcome = await run_validated_backup(config, executor=executor, counts=FakeCounts(), alert_sinks=[])

    assert outcome.status == "kept"
    assert outcome.exit_code == 0
    payload = json.loads(report_path.read_text(encoding="utf-8"))
    assert payload["status"] == "kept"
    assert payload["token"] == outcome.token
    assert payload["counters"]["backup_runs_kept"] == 1
    assert payload["attempts"][0]["verdict"] == "stable"
    # The lock is released once the run finishes.
    with RunLock(config.lock_path) as lock:
        assert lock.acquired


@pytest.mark.asyncio
async def test_held_lock_skips_without_touching_backups(config: ValidationConfig, executor: FakeExecutor) -> None:
    holder = RunLock(config.lock_path)
    assert holder.acquire()
    try:
        outcome = await run_validated_backup(config, executor=executor, counts=FakeCounts(), alert_sinks=[])
    finally:
        holder.release()

    assert outcome.status == "skipped"
    assert outcome.exit_code == 0
    assert outcome.attempts == []
    assert executor.calls == []
    assert not config.backup_dir.exists()


@pytest.mark.asyncio
async def test_exhausted_run_exits_non_zero(config: ValidationConfig, executor: FakeExecutor) -> None:
    sink = RecordingSink()
    sleep = RecordingSleep()
    counts = FakeCounts(restored_structural=dict(STRUCTURAL, dashboard=11))

    outcome = await run_validated_backup(config, executor=executor, counts=counts, alert_sinks=[sink], sleep=sleep)

    assert outcome.status == "exhausted"
    assert outcome.exit_code == 1
    assert len(outcome.attempts) == config.max_attempts
    assert sleep.waits == [180, 360]
    assert len(sink.sent) == 1
    assert list(config.backup_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_verify_existing_backup(config: ValidationConfig, executor: FakeExecutor) -> None:
    config.backup_dir.mkdir(parents=True)
    (config.backup_dir / "tb_db_2025-11-04_0300.dump").write_bytes(b"PGDMP")

    record = await verify_existing_backup(config, "2025-11-04_0300", executor=executor, counts=FakeCounts())

    assert record is not None
    assert record.kept
    assert executor.steps() == ["drop", "create", "restore"]


@pytest.mark.asyncio
async def test_verify_skips_when_locked(config: ValidationConfig, executor: FakeExecutor) -> None:
    with RunLock(config.lock_path) as holder:
        assert holder.acquired
        record = await verify_existing_backup(config, "2025-11-04_0300", executor=executor, counts=FakeCounts())
    assert record is None
    assert executor.calls == []


@pytest.mark.asyncio
async def test_verify_rejects_malformed_token(config: ValidationConfig, executor: FakeExecutor) -> None:
    with pytest.raises(ValueError):
        await verify_existing_backup(config, "latest", executor=executor, counts=FakeCounts())
