from __future__ import annotations

from dataclasses import dataclass
import logging

from backupwarden.core.config import ValidationConfig
from backupwarden.persistence.db import CountSource


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TableCount:
    table: str
    live: int
    restored: int

    @property
    def matches(self) -> bool:
        return self.live == self.restored


@dataclass(frozen=True)
class ConsistencyReport:
    counts: list[TableCount]

    @property
    def mismatches(self) -> list[str]:
        return [item.table for item in self.counts if not item.matches]

    @property
    def ok(self) -> bool:
        return not self.mismatches


class ConsistencyChecker:
    """Exact row-count parity for structural tables; any difference fails."""

    def __init__(self, config: ValidationConfig, counts: CountSource) -> None:
        self._tables = config.structural_tables
        self._counts = counts

    async def check(self) -> ConsistencyReport:
        logger.info("consistency_check_started tables=%s", ",".join(self._tables))
        results: list[TableCount] = []
        for table in self._tables:
            statement = f"SELECT COUNT(*) FROM {table}"
            live = await self._counts.count("live", statement)
            restored = await self._counts.count("validation", statement)
            logger.info("consistency_count table=%s live=%s backup=%s", table, live, restored)
            results.append(TableCount(table=table, live=live, restored=restored))
        report = ConsistencyReport(counts=results)
        if report.ok:
            logger.info("consistency_check_passed")
        else:
            logger.warning("consistency_check_failed mismatches=%s", ",".join(report.mismatches))
        return report
