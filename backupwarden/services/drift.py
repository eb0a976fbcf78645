from __future__ import annotations

from dataclasses import dataclass
from datetime import timezone
import logging

from backupwarden.core.config import ValidationConfig
from backupwarden.persistence.db import CountSource
from backupwarden.services.snapshot import parse_token


logger = logging.getLogger(__name__)


def cutoff_ms(token: str, tz_offset: timezone) -> int:
    """Return the epoch-millisecond cutoff a backup token stands for.

    The token carries local wall-clock time without a zone, so the configured
    fixed offset is attached before converting. Seconds are always zero.
    """
    moment = parse_token(token).replace(second=0, microsecond=0, tzinfo=tz_offset)
    return int(moment.timestamp()) * 1000


@dataclass(frozen=True)
class DriftReport:
    token: str
    cutoff_ms: int
    live_rows: int
    restored_rows: int

    @property
    def drift(self) -> int:
        return self.live_rows - self.restored_rows


class DriftEstimator:
    """Count time-series rows up to the token's cutoff in live and restored state."""

    def __init__(self, config: ValidationConfig, counts: CountSource) -> None:
        self._config = config
        self._counts = counts

    async def estimate(self, token: str) -> DriftReport:
        cutoff = cutoff_ms(token, self._config.tz_offset)
        statement = (
            f"SELECT COUNT(*) FROM {self._config.timeseries_table} "
            f"WHERE {self._config.timeseries_ts_column} <= :cutoff"
        )
        live = await self._counts.count("live", statement, {"cutoff": cutoff})
        restored = await self._counts.count("validation", statement, {"cutoff": cutoff})
        report = DriftReport(token=token, cutoff_ms=cutoff, live_rows=live, restored_rows=restored)
        logger.info(
            "drift_measured token=%s cutoff_ms=%s live=%s backup=%s drift=%s",
            token,
            cutoff,
            live,
            restored,
            report.drift,
        )
        if report.drift < 0:
            # Restored state should never exceed live for a <= cutoff filter; classified as-is.
            logger.warning("drift_negative token=%s drift=%s", token, report.drift)
        return report
