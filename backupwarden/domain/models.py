from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Literal


Verdict = Literal["stable", "acceptable", "rejected"]
ArchiveStatus = Literal["captured", "source_absent", "failed"]
RunStatus = Literal["kept", "exhausted", "skipped"]

VERDICT_STABLE: Verdict = "stable"
VERDICT_ACCEPTABLE: Verdict = "acceptable"
VERDICT_REJECTED: Verdict = "rejected"

KEPT_VERDICTS = frozenset({VERDICT_STABLE, VERDICT_ACCEPTABLE})

FAILURE_EXCESS_DRIFT = "excess_drift"
# Any error outside the typed attempt failures; the set is still deleted and retried.
FAILURE_UNEXPECTED = "unexpected_error"


@dataclass(frozen=True)
class ArchiveResult:
    # Distinguish an absent optional source from a capture that was attempted and failed.
    name: str
    status: ArchiveStatus
    path: Path | None = None
    detail: str | None = None


@dataclass(frozen=True)
class BackupSet:
    # One timestamp-identified set of artifacts produced by a single attempt.
    token: str
    backup_dir: Path
    prefix: str
    dump_path: Path
    archives: list[ArchiveResult] = field(default_factory=list)

    def captured_archives(self) -> list[Path]:
        return [item.path for item in self.archives if item.status == "captured" and item.path is not None]

    def artifact_paths(self) -> list[Path]:
        # Enumerate everything on disk for this token, including files not tracked in `archives`.
        patterns = (f"{self.prefix}_*_{self.token}.dump", f"{self.prefix}_*_{self.token}.tar.gz")
        found: set[Path] = set()
        for pattern in patterns:
            found.update(self.backup_dir.glob(pattern))
        return sorted(found)


@dataclass(frozen=True)
class ThresholdBand:
    # Drift tolerance derived from current load and the attempt's duration.
    rows_in_window: int
    window_s: int
    throughput_rps: int
    duration_s: int
    expected_rows: int
    accept_ceiling: int
    warn_ceiling: int


@dataclass
class AttemptRecord:
    # Per-attempt audit data for logs, alerts and run reports.
    attempt: int
    started_at: datetime
    token: str | None = None
    ended_at: datetime | None = None
    duration_s: int | None = None
    live_rows: int | None = None
    restored_rows: int | None = None
    drift: int | None = None
    band: ThresholdBand | None = None
    verdict: Verdict | None = None
    failure_code: str | None = None
    failure_detail: str | None = None

    @property
    def kept(self) -> bool:
        return self.verdict in KEPT_VERDICTS and self.failure_code is None

    def summary(self) -> str:
        if self.kept:
            return f"attempt {self.attempt}: kept token={self.token} verdict={self.verdict} drift={self.drift}"
        detail = f" ({self.failure_detail})" if self.failure_detail else ""
        return f"attempt {self.attempt}: failed token={self.token} reason={self.failure_code}{detail}"

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["started_at"] = self.started_at.isoformat()
        payload["ended_at"] = self.ended_at.isoformat() if self.ended_at else None
        return payload


@dataclass(frozen=True)
class RunOutcome:
    # Final result of one orchestration invocation.
    status: RunStatus
    token: str | None = None
    attempts: list[AttemptRecord] = field(default_factory=list)

    @property
    def exit_code(self) -> int:
        return 1 if self.status == "exhausted" else 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "token": self.token,
            "exit_code": self.exit_code,
            "attempts": [attempt.to_dict() for attempt in self.attempts],
        }
