from __future__ import annotations

import logging

from sqlalchemy.engine import make_url

from backupwarden.core.config import ValidationConfig
from backupwarden.core.errors import ConfigurationError, RestoreFailedError
from backupwarden.domain.models import BackupSet
from backupwarden.services.executor import CommandExecutor


logger = logging.getLogger(__name__)


class ValidationRestorer:
    """Rebuild the disposable validation database from a backup set's dump."""

    def __init__(self, config: ValidationConfig, executor: CommandExecutor) -> None:
        live_name = make_url(config.database_url).database
        if live_name == config.validation_db_name:
            raise ConfigurationError("validation database must differ from the live database")
        self._config = config
        self._executor = executor

    def restore(self, backup_set: BackupSet) -> None:
        name = self._config.validation_db_name
        dump_path = backup_set.dump_path
        logger.info("restore_started token=%s dump=%s target=%s", backup_set.token, dump_path.name, name)
        if not dump_path.exists():
            raise RestoreFailedError(f"dump not found: {dump_path}", token=backup_set.token)

        # Always start from an empty database so repeated restores give identical counts.
        steps = (
            ("drop", lambda: self._executor.drop_database(name)),
            ("create", lambda: self._executor.create_database(name)),
            ("restore", lambda: self._executor.restore_dump(dump_path, name)),
        )
        for step, run in steps:
            outcome = run()
            if not outcome.ok:
                logger.error(
                    "restore_failed token=%s step=%s returncode=%s detail=%s",
                    backup_set.token,
                    step,
                    outcome.returncode,
                    outcome.detail,
                )
                raise RestoreFailedError(
                    f"validation restore failed at {step}: {outcome.detail or outcome.status}",
                    token=backup_set.token,
                )
        logger.info("restore_completed token=%s target=%s", backup_set.token, name)
