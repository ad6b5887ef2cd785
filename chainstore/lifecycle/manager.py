from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from chainstore.config import Settings, settings as default_settings
from chainstore.db.locks import GLOBAL_CLEANUP_LOCK, locked_transaction
from chainstore.errors import LifecycleFailure

from . import db as lifecycle_db

logger = logging.getLogger(__name__)

JOB_ARCHIVE_AND_CLEANUP = "archive_expired_and_cleanup"


@dataclass(frozen=True)
class LifecycleResult:
    as_of: date
    expired_cutoff: date
    stale_cutoff: datetime
    archived: int
    purged: int
    remaining_rows: int
    distinct_symbols: int
    elapsed_s: float


class LifecycleManager:
    """Moves expired contracts to history and purges stale live rows.

    Everything happens in one transaction under the global cleanup lock, so a
    failed run leaves both tables exactly as they were.
    """

    def __init__(self, db_url: str | None = None, *, settings: Settings | None = None) -> None:
        self._settings = settings or default_settings
        self._db_url = db_url

    @property
    def db_url(self) -> str:
        return self._db_url or self._settings.require_database_url()

    def cutoffs(self, now: datetime) -> tuple[date, date, datetime]:
        today = now.date()
        expired_cutoff = today - timedelta(days=self._settings.archive_after_days)
        stale_cutoff = now - timedelta(days=self._settings.stale_after_days)
        return today, expired_cutoff, stale_cutoff

    def archive_expired_and_cleanup_sync(self, *, now: datetime | None = None) -> LifecycleResult:
        started = time.perf_counter()
        now = now or self._settings.now()
        today, expired_cutoff, stale_cutoff = self.cutoffs(now)

        try:
            conn = lifecycle_db.connect(self.db_url)
        except Exception as exc:
            raise LifecycleFailure(
                f"Lifecycle run could not connect: {type(exc).__name__}: {exc}",
                job=JOB_ARCHIVE_AND_CLEANUP,
            ) from exc

        try:
            with locked_transaction(
                conn,
                GLOBAL_CLEANUP_LOCK,
                lock_timeout_ms=self._settings.lock_timeout_ms,
            ) as cur:
                counts = lifecycle_db.archive_expired(cur, expired_cutoff=expired_cutoff, archived_at=now)
                if counts.archived != counts.moved:
                    # A live row was deleted but its history insert hit an existing original_id.
                    raise LifecycleFailure(
                        f"Archive would drop {counts.moved - counts.archived} contracts already present in history",
                        job=JOB_ARCHIVE_AND_CLEANUP,
                    )
                purged = lifecycle_db.purge_stale(cur, today=today, stale_cutoff=stale_cutoff)
                remaining_rows, distinct_symbols = lifecycle_db.fetch_live_stats(cur)
        except Exception as exc:
            logger.error(
                "Lifecycle run rolled back",
                extra={
                    "stage": "lifecycle",
                    "expired_cutoff": expired_cutoff.isoformat(),
                    "stale_cutoff": stale_cutoff.isoformat(),
                    "root_cause": type(exc).__name__,
                    "error": f"{type(exc).__name__}: {exc}",
                },
            )
            if isinstance(exc, LifecycleFailure):
                raise
            raise LifecycleFailure(
                f"Lifecycle run failed: {type(exc).__name__}: {exc}",
                job=JOB_ARCHIVE_AND_CLEANUP,
            ) from exc
        finally:
            conn.close()

        elapsed = time.perf_counter() - started
        result = LifecycleResult(
            as_of=today,
            expired_cutoff=expired_cutoff,
            stale_cutoff=stale_cutoff,
            archived=counts.archived,
            purged=purged,
            remaining_rows=remaining_rows,
            distinct_symbols=distinct_symbols,
            elapsed_s=elapsed,
        )
        logger.info(
            "Lifecycle run committed",
            extra={
                "stage": "lifecycle",
                "expired_cutoff": expired_cutoff.isoformat(),
                "stale_cutoff": stale_cutoff.isoformat(),
                "archived": result.archived,
                "purged": result.purged,
                "remaining_rows": result.remaining_rows,
                "distinct_symbols": result.distinct_symbols,
                "duration_ms": int(round(elapsed * 1000)),
            },
        )
        return result

    async def archive_expired_and_cleanup(self, *, now: datetime | None = None) -> LifecycleResult:
        return await asyncio.to_thread(self.archive_expired_and_cleanup_sync, now=now)
