from __future__ import annotations

import dataclasses
from pathlib import Path

import pytest

from backupwarden.core.config import ValidationConfig
from backupwarden.core.errors import ConfigurationError, RestoreFailedError
from backupwarden.domain.models import BackupSet
from backupwarden.services.restore import ValidationRestorer
from backupwarden.tests.utils.fakes import FakeExecutor


def _backup_set(config: ValidationConfig, token: str = "2025-11-04_1541") -> BackupSet:
    config.backup_dir.mkdir(parents=True, exist_ok=True)
    dump = config.backup_dir / f"tb_db_{token}.dump"
    dump.write_bytes(b"PGDMP")
    return BackupSet(token=token, backup_dir=config.backup_dir, prefix="tb", dump_path=dump)


def test_restore_drops_creates_then_restores(config: ValidationConfig, executor: FakeExecutor) -> None:
    ValidationRestorer(config, executor).restore(_backup_set(config))
    assert executor.calls == [
        ("drop", "tbv"),
        ("create", "tbv"),
        ("restore", "tb_db_2025-11-04_1541.dump"),
    ]


def test_repeated_restore_rebuilds_from_scratch(config: ValidationConfig, executor: FakeExecutor) -> None:
    # Every restore starts with drop+create, so results never accumulate.
    restorer = ValidationRestorer(config, executor)
    backup_set = _backup_set(config)
    restorer.restore(backup_set)
    restorer.restore(backup_set)
    assert executor.steps() == ["drop", "create", "restore", "drop", "create", "restore"]


@pytest.mark.parametrize("step", ["drop", "create", "restore"])
def test_any_failing_step_is_a_restore_failure(config: ValidationConfig, executor: FakeExecutor, step: str) -> None:
    executor.failing_steps.add(step)
    with pytest.raises(RestoreFailedError) as exc_info:
        ValidationRestorer(config, executor).restore(_backup_set(config))
    assert exc_info.value.code == "fatal_restore"
    assert step in str(exc_info.value)
    assert executor.steps()[-1] == step


def test_missing_dump_fails_before_touching_database(config: ValidationConfig, executor: FakeExecutor) -> None:
    backup_set = BackupSet(
        token="2025-11-04_1541",
        backup_dir=config.backup_dir,
        prefix="tb",
        dump_path=Path(config.backup_dir / "tb_db_2025-11-04_1541.dump"),
    )
    with pytest.raises(RestoreFailedError):
        ValidationRestorer(config, executor).restore(backup_set)
    assert executor.calls == []


def test_validation_database_must_not_be_live(config: ValidationConfig, executor: FakeExecutor) -> None:
    same = dataclasses.replace(config, validation_db_name="thingsboard")
    with pytest.raises(ConfigurationError):
        ValidationRestorer(same, executor)
