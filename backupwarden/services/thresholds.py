from __future__ import annotations

import logging
import time
from typing import Callable

from backupwarden.core.config import ValidationConfig
from backupwarden.domain.models import ThresholdBand
from backupwarden.persistence.db import CountSource


logger = logging.getLogger(__name__)


def compute_band(
    *,
    rows_in_window: int,
    window_s: int,
    duration_s: int,
    accept_multiplier: int,
    warn_multiplier: int,
) -> ThresholdBand:
    # Scale tolerance with observed write rate and how long the attempt took.
    throughput = max(rows_in_window, 0) // window_s
    expected = throughput * max(duration_s, 0)
    return ThresholdBand(
        rows_in_window=rows_in_window,
        window_s=window_s,
        throughput_rps=throughput,
        duration_s=duration_s,
        expected_rows=expected,
        accept_ceiling=expected * accept_multiplier,
        warn_ceiling=expected * warn_multiplier,
    )


class ThresholdEngine:
    def __init__(
        self,
        config: ValidationConfig,
        counts: CountSource,
        *,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._config = config
        self._counts = counts
        self._time = time_source or time.time

    async def compute(self, duration_s: int) -> ThresholdBand:
        config = self._config
        since_ms = int(self._time() * 1000) - config.throughput_window_s * 1000
        statement = (
            f"SELECT COUNT(*) FROM {config.timeseries_table} "
            f"WHERE {config.timeseries_ts_column} > :since"
        )
        rows = await self._counts.count("live", statement, {"since": since_ms})
        band = compute_band(
            rows_in_window=rows,
            window_s=config.throughput_window_s,
            duration_s=duration_s,
            accept_multiplier=config.accept_multiplier,
            warn_multiplier=config.warn_multiplier,
        )
        logger.info(
            "thresholds_computed rows_in_window=%s throughput_rps=%s duration_s=%s expected=%s accept<=%s warn<=%s",
            band.rows_in_window,
            band.throughput_rps,
            band.duration_s,
            band.expected_rows,
            band.accept_ceiling,
            band.warn_ceiling,
        )
        return band
