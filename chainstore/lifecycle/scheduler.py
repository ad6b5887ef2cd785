from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable

from chainstore.config import Settings, settings as default_settings
from chainstore.db.locks import SATURDAY_ARCHIVAL_LOCK, STALE_CLEANUP_RUN_LOCK, locked_transaction

from . import db as lifecycle_db
from .manager import LifecycleManager

logger = logging.getLogger(__name__)

DAILY_JOB = "stale_cleanup"
WEEKLY_JOB = "saturday_archival"

STALE_CLEANUP_INTERVAL = timedelta(hours=24)
ARCHIVAL_WEEKDAY = 5  # Saturday
ARCHIVAL_HOUR = 8


def week_key(dt: datetime) -> str:
    iso = dt.isocalendar()
    return f"{iso[0]}-W{iso[1]:02d}-{dt.month:02d}"


def is_archival_window(dt: datetime) -> bool:
    return dt.weekday() == ARCHIVAL_WEEKDAY and dt.hour == ARCHIVAL_HOUR


def _daily_due(now: datetime, last_run_at: datetime | None) -> bool:
    return last_run_at is None or now - last_run_at >= STALE_CLEANUP_INTERVAL


class LifecycleScheduler:
    """Idempotent-per-period triggers for the lifecycle job.

    ``last_stale_cleanup_at`` and ``last_archival_week_key`` live in this process.
    With ``persist_state`` the same guards are also kept in ``lifecycle_runs``,
    read and written under the job's advisory lock, so restarts and other
    instances see them. Neither trigger ever raises a maintenance failure.
    """

    def __init__(
        self,
        manager: LifecycleManager,
        *,
        db_url: str | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
        persist_state: bool | None = None,
    ) -> None:
        self._manager = manager
        self._settings = settings or default_settings
        self._db_url = db_url
        self._clock = clock or self._settings.now
        self._persist = self._settings.persist_scheduler_state if persist_state is None else persist_state
        self.last_stale_cleanup_at: datetime | None = None
        self.last_archival_week_key: str | None = None

    @property
    def db_url(self) -> str:
        return self._db_url or self._settings.require_database_url()

    def _run_locked_sync(
        self,
        *,
        lock_name: str,
        job_name: str,
        now: datetime,
        run_key: str | None,
        is_due: Callable[[lifecycle_db.LifecycleRun], bool],
    ) -> tuple[bool, lifecycle_db.LifecycleRun | None]:
        conn = lifecycle_db.connect(self.db_url)
        try:
            with locked_transaction(conn, lock_name, lock_timeout_ms=self._settings.lock_timeout_ms) as cur:
                if self._persist:
                    last = lifecycle_db.fetch_last_run(cur, job_name=job_name)
                    if last is not None and not is_due(last):
                        return False, last
                self._manager.archive_expired_and_cleanup_sync(now=now)
                if self._persist:
                    lifecycle_db.record_run(cur, job_name=job_name, ran_at=now, run_key=run_key)
                return True, None
        finally:
            conn.close()

    def _read_clock(self, job_name: str) -> datetime | None:
        try:
            return self._clock()
        except Exception:
            logger.exception(
                "Scheduler clock failed; skipping this tick",
                extra={"stage": "scheduler", "job": job_name},
            )
            return None

    async def run_daily_cleanup_if_due(self) -> bool:
        now = self._read_clock(DAILY_JOB)
        if now is None:
            return False
        if not _daily_due(now, self.last_stale_cleanup_at):
            logger.debug(
                "Stale cleanup not due",
                extra={
                    "stage": "scheduler",
                    "job": DAILY_JOB,
                    "last_run_at": self.last_stale_cleanup_at.isoformat() if self.last_stale_cleanup_at else None,
                },
            )
            return False

        try:
            if self._persist:
                ran, last = await asyncio.to_thread(
                    self._run_locked_sync,
                    lock_name=STALE_CLEANUP_RUN_LOCK,
                    job_name=DAILY_JOB,
                    now=now,
                    run_key=None,
                    is_due=lambda run: _daily_due(now, run.last_run_at),
                )
            else:
                await self._manager.archive_expired_and_cleanup(now=now)
                ran, last = True, None
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(
                "Stale cleanup failed; will retry on a later tick",
                extra={"stage": "scheduler", "job": DAILY_JOB},
            )
            return False

        if not ran:
            if last is not None:
                self.last_stale_cleanup_at = last.last_run_at
            logger.info(
                "Stale cleanup already ran in this window",
                extra={"stage": "scheduler", "job": DAILY_JOB, "source": "persisted"},
            )
            return False

        self.last_stale_cleanup_at = now
        logger.info("Stale cleanup ran", extra={"stage": "scheduler", "job": DAILY_JOB, "ran_at": now.isoformat()})
        return True

    async def run_weekly_archival_if_due(self) -> bool:
        now = self._read_clock(WEEKLY_JOB)
        if now is None:
            return False
        if not is_archival_window(now):
            return False

        key = week_key(now)
        if self.last_archival_week_key == key:
            logger.debug(
                "Weekly archival already ran this week",
                extra={"stage": "scheduler", "job": WEEKLY_JOB, "week_key": key},
            )
            return False

        try:
            ran, _last = await asyncio.to_thread(
                self._run_locked_sync,
                lock_name=SATURDAY_ARCHIVAL_LOCK,
                job_name=WEEKLY_JOB,
                now=now,
                run_key=key,
                is_due=lambda run: run.run_key != key,
            )
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(
                "Weekly archival failed; will retry on a later tick",
                extra={"stage": "scheduler", "job": WEEKLY_JOB, "week_key": key},
            )
            return False

        self.last_archival_week_key = key
        if not ran:
            logger.info(
                "Weekly archival already ran this week",
                extra={"stage": "scheduler", "job": WEEKLY_JOB, "week_key": key, "source": "persisted"},
            )
            return False

        logger.info("Weekly archival ran", extra={"stage": "scheduler", "job": WEEKLY_JOB, "week_key": key})
        return True
