from __future__ import annotations


class BackupWardenError(Exception):
    """Base error for backupwarden."""


class ConfigurationError(BackupWardenError):
    """Missing or invalid configuration."""


class AttemptFailedError(BackupWardenError):
    """A backup attempt failed; the set is deleted and the attempt retried."""

    code = "attempt_failed"

    def __init__(self, message: str, *, token: str | None = None) -> None:
        super().__init__(message)
        self.token = token


class DumpFailedError(AttemptFailedError):
    """Database dump missing, empty, or the dump tool failed."""

    code = "fatal_artifact"


class RestoreFailedError(AttemptFailedError):
    """Validation database could not be rebuilt from the dump."""

    code = "fatal_restore"


class StructuralMismatchError(AttemptFailedError):
    """Structural table counts differ between live and restored databases."""

    code = "structural_mismatch"

    def __init__(self, message: str, *, token: str | None = None, mismatches: list[str] | None = None) -> None:
        super().__init__(message, token=token)
        self.mismatches = mismatches or []


class ValidationQueryError(AttemptFailedError):
    """A count query against the live or validation database failed."""

    code = "validation_query"


class LockHeldError(BackupWardenError):
    """Another process holds the run lock."""
