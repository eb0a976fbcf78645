from __future__ import annotations

from pathlib import Path
from typing import Iterator

import pytest

from backupwarden.core.config import Settings, ValidationConfig
from backupwarden.services import telemetry
from backupwarden.tests.utils.fakes import FakeExecutor


@pytest.fixture
def source_tree(tmp_path: Path) -> dict[str, Path]:
    # Config dir and fallback data dir exist; primary data, license and UI sources are absent.
    conf = tmp_path / "etc" / "thingsboard"
    conf.mkdir(parents=True)
    (conf / "thingsboard.yml").write_text("server: {}\n", encoding="utf-8")
    data = tmp_path / "var" / "lib" / "thingsboard"
    data.mkdir(parents=True)
    return {"conf": conf, "data_primary": tmp_path / "usr" / "data", "data_fallback": data}


@pytest.fixture
def settings(tmp_path: Path, source_tree: dict[str, Path]) -> Settings:
    return Settings(
        _env_file=None,
        log_file=str(tmp_path / "backupwarden.log"),
        database_url="postgresql+asyncpg://postgres@localhost:5432/thingsboard",
        db_os_user="",
        backup_dir=str(tmp_path / "backups"),
        backup_group="",
        lock_path=str(tmp_path / "backupwarden.lock"),
        backup_max_attempts=3,
        backup_retry_base_s=180,
        archive_conf_dir=str(source_tree["conf"]),
        archive_data_dirs=f"{source_tree['data_primary']},{source_tree['data_fallback']}",
        archive_license_file=str(tmp_path / "missing" / "license.conf"),
        archive_ui_dirs=str(tmp_path / "missing" / "static"),
    )


@pytest.fixture
def config(settings: Settings) -> ValidationConfig:
    return ValidationConfig.from_settings(settings)


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture(autouse=True)
def reset_telemetry() -> Iterator[None]:
    # Counters are process-global; keep them isolated per test.
    telemetry.reset()
    yield
    telemetry.reset()
