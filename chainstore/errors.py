from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from chainstore.ingestion.options.pipeline import IngestionReport

# deadlock_detected, lock_not_available (lock_timeout), serialization_failure
LOCK_CONTENTION_SQLSTATES = frozenset({"40P01", "55P03", "40001"})


class ChainStoreError(RuntimeError):
    pass


class LockContention(ChainStoreError):
    def __init__(self, message: str, *, pgcode: str | None = None) -> None:
        super().__init__(message)
        self.pgcode = pgcode


class BatchUpsertFailure(ChainStoreError):
    def __init__(self, message: str, *, batch_index: int, offset: int, size: int) -> None:
        super().__init__(message)
        self.batch_index = batch_index
        self.offset = offset
        self.size = size


class RetriesExhausted(ChainStoreError):
    def __init__(self, message: str, *, attempts: int, last_error: BaseException) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


class IngestionFailed(ChainStoreError):
    def __init__(self, message: str, *, symbol: str, report: "IngestionReport") -> None:
        super().__init__(message)
        self.symbol = symbol
        self.report = report


class LifecycleFailure(ChainStoreError):
    def __init__(self, message: str, *, job: str) -> None:
        super().__init__(message)
        self.job = job


def is_lock_contention(exc: BaseException) -> bool:
    if isinstance(exc, LockContention):
        return True
    pgcode: Any = getattr(exc, "pgcode", None)
    return isinstance(pgcode, str) and pgcode in LOCK_CONTENTION_SQLSTATES


def classify_db_error(exc: BaseException) -> BaseException:
    """Map a driver error onto LockContention when the storage engine reports lock contention."""
    if isinstance(exc, LockContention):
        return exc
    if is_lock_contention(exc):
        pgcode = getattr(exc, "pgcode", None)
        return LockContention(f"{type(exc).__name__}: {exc}".strip(), pgcode=pgcode)
    return exc
