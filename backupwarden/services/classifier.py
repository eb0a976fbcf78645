from __future__ import annotations

from backupwarden.domain.models import (
    VERDICT_ACCEPTABLE,
    VERDICT_REJECTED,
    VERDICT_STABLE,
    ThresholdBand,
    Verdict,
)


def classify(drift: int, band: ThresholdBand) -> Verdict:
    # Negative drift falls under the accept ceiling and is treated as stable.
    if drift <= band.accept_ceiling:
        return VERDICT_STABLE
    if drift <= band.warn_ceiling:
        return VERDICT_ACCEPTABLE
    return VERDICT_REJECTED
