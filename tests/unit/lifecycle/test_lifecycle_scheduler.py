from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from chainstore.config import Settings
from chainstore.db.locks import SATURDAY_ARCHIVAL_LOCK, STALE_CLEANUP_RUN_LOCK, derive_lock_id
from chainstore.errors import LifecycleFailure
from chainstore.lifecycle import db as lifecycle_db
from chainstore.lifecycle.scheduler import LifecycleScheduler, is_archival_window, week_key
from chainstore.service import OptionsChainStore

SATURDAY_0815 = datetime(2026, 3, 14, 8, 15, tzinfo=timezone.utc)


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class _FakeManager:
    def __init__(self) -> None:
        self.runs: list[datetime] = []
        self.fail = False

    def archive_expired_and_cleanup_sync(self, *, now=None):
        if self.fail:
            raise LifecycleFailure("Lifecycle run failed: boom", job="archive_expired_and_cleanup")
        self.runs.append(now)

    async def archive_expired_and_cleanup(self, *, now=None):
        return self.archive_expired_and_cleanup_sync(now=now)


class _RunsTable:
    """In-memory lifecycle_runs shared by every connection, like the real table."""

    def __init__(self) -> None:
        self.rows: dict[str, tuple] = {}
        self.locks: list[int] = []
        self.commits = 0
        self.rollbacks = 0


class _FakeCursor:
    def __init__(self, table: _RunsTable) -> None:
        self._table = table
        self._row = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        self._row = None
        if "pg_advisory_xact_lock" in sql:
            self._table.locks.append(params[0])
        elif sql.lstrip().startswith("SELECT job_name"):
            self._row = self._table.rows.get(params[0])
        elif "INSERT INTO lifecycle_runs" in sql:
            self._table.rows[params[0]] = params

    def fetchone(self):
        return self._row


class _FakeConn:
    def __init__(self, table: _RunsTable) -> None:
        self._table = table

    def cursor(self):
        return _FakeCursor(self._table)

    def commit(self) -> None:
        self._table.commits += 1

    def rollback(self) -> None:
        self._table.rollbacks += 1

    def close(self) -> None:
        pass


@pytest.fixture
def runs_table(monkeypatch) -> _RunsTable:
    table = _RunsTable()
    monkeypatch.setattr(lifecycle_db, "connect", lambda db_url: _FakeConn(table))
    return table


def _scheduler(manager, clock, *, persist: bool = False) -> LifecycleScheduler:
    return LifecycleScheduler(
        manager,
        db_url="postgresql://unused",
        settings=Settings(database_url="postgresql://unused"),
        clock=clock,
        persist_state=persist,
    )


@pytest.mark.unit
def test_week_key_uses_iso_week_and_calendar_month() -> None:
    assert week_key(SATURDAY_0815) == "2026-W11-03"
    assert week_key(datetime(2026, 1, 3, 8, 0)) == "2026-W01-01"
    assert week_key(datetime(2027, 1, 2, 8, 0)) == "2026-W53-01"


@pytest.mark.unit
@pytest.mark.parametrize(
    "dt,expected",
    [
        (datetime(2026, 3, 14, 8, 0), True),
        (datetime(2026, 3, 14, 8, 59), True),
        (datetime(2026, 3, 14, 7, 59), False),
        (datetime(2026, 3, 14, 9, 30), False),
        (datetime(2026, 3, 13, 8, 15), False),
        (datetime(2026, 3, 15, 8, 15), False),
    ],
)
def test_archival_window_is_saturday_eight_oclock_hour(dt, expected) -> None:
    assert is_archival_window(dt) is expected


@pytest.mark.unit
@pytest.mark.asyncio
async def test_daily_cleanup_runs_once_per_24_hours(runs_table) -> None:
    manager = _FakeManager()
    clock = _Clock(SATURDAY_0815)
    scheduler = _scheduler(manager, clock)

    assert await scheduler.run_daily_cleanup_if_due() is True
    assert await scheduler.run_daily_cleanup_if_due() is False

    clock.now += timedelta(hours=23, minutes=59)
    assert await scheduler.run_daily_cleanup_if_due() is False

    clock.now = SATURDAY_0815 + timedelta(hours=24)
    assert await scheduler.run_daily_cleanup_if_due() is True
    assert manager.runs == [SATURDAY_0815, SATURDAY_0815 + timedelta(hours=24)]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_daily_cleanup_failure_is_swallowed_and_not_recorded(runs_table) -> None:
    manager = _FakeManager()
    manager.fail = True
    scheduler = _scheduler(manager, _Clock(SATURDAY_0815))

    assert await scheduler.run_daily_cleanup_if_due() is False
    assert scheduler.last_stale_cleanup_at is None

    manager.fail = False
    assert await scheduler.run_daily_cleanup_if_due() is True
    assert scheduler.last_stale_cleanup_at == SATURDAY_0815


@pytest.mark.unit
@pytest.mark.asyncio
async def test_weekly_archival_outside_window_does_nothing(runs_table) -> None:
    manager = _FakeManager()
    scheduler = _scheduler(manager, _Clock(datetime(2026, 3, 14, 9, 30, tzinfo=timezone.utc)))

    assert await scheduler.run_weekly_archival_if_due() is False
    assert manager.runs == []
    assert runs_table.locks == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_weekly_archival_runs_once_per_week_key(runs_table) -> None:
    manager = _FakeManager()
    clock = _Clock(SATURDAY_0815)
    scheduler = _scheduler(manager, clock)

    assert await scheduler.run_weekly_archival_if_due() is True
    clock.now += timedelta(minutes=30)
    assert await scheduler.run_weekly_archival_if_due() is False

    assert manager.runs == [SATURDAY_0815]
    assert scheduler.last_archival_week_key == "2026-W11-03"
    assert runs_table.locks == [derive_lock_id(SATURDAY_ARCHIVAL_LOCK)]
    assert runs_table.commits == 1

    clock.now = SATURDAY_0815 + timedelta(days=7)
    assert await scheduler.run_weekly_archival_if_due() is True
    assert len(manager.runs) == 2


@pytest.mark.unit
@pytest.mark.asyncio
async def test_weekly_archival_failure_leaves_week_key_unset(runs_table) -> None:
    manager = _FakeManager()
    manager.fail = True
    scheduler = _scheduler(manager, _Clock(SATURDAY_0815))

    assert await scheduler.run_weekly_archival_if_due() is False
    assert scheduler.last_archival_week_key is None
    assert runs_table.rollbacks == 1

    manager.fail = False
    assert await scheduler.run_weekly_archival_if_due() is True


@pytest.mark.unit
@pytest.mark.asyncio
async def test_persisted_weekly_state_survives_restart(runs_table) -> None:
    manager = _FakeManager()
    clock = _Clock(SATURDAY_0815)

    assert await _scheduler(manager, clock, persist=True).run_weekly_archival_if_due() is True
    assert runs_table.rows["saturday_archival"] == ("saturday_archival", SATURDAY_0815, "2026-W11-03")

    restarted = _scheduler(manager, clock, persist=True)
    assert await restarted.run_weekly_archival_if_due() is False
    assert restarted.last_archival_week_key == "2026-W11-03"
    assert manager.runs == [SATURDAY_0815]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_persisted_daily_state_is_checked_under_run_lock(runs_table) -> None:
    manager = _FakeManager()
    clock = _Clock(SATURDAY_0815)

    assert await _scheduler(manager, clock, persist=True).run_daily_cleanup_if_due() is True
    assert runs_table.locks == [derive_lock_id(STALE_CLEANUP_RUN_LOCK)]

    clock.now += timedelta(hours=2)
    restarted = _scheduler(manager, clock, persist=True)
    assert await restarted.run_daily_cleanup_if_due() is False
    assert restarted.last_stale_cleanup_at == SATURDAY_0815
    assert manager.runs == [SATURDAY_0815]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_unknown_timezone_never_escapes_the_triggers(runs_table) -> None:
    manager = _FakeManager()
    scheduler = LifecycleScheduler(
        manager,
        settings=Settings(database_url="postgresql://unused", timezone="Not/AZone"),
    )

    assert await scheduler.run_weekly_archival_if_due() is False
    assert await scheduler.run_daily_cleanup_if_due() is False
    assert manager.runs == []
    assert scheduler.last_stale_cleanup_at is None
    assert scheduler.last_archival_week_key is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_refresh_still_runs_when_scheduler_clock_fails(runs_table) -> None:
    def broken_clock():
        raise RuntimeError("clock unavailable")

    coordinator = MagicMock()
    coordinator.refresh_symbols = AsyncMock(return_value="refresh-report")
    scheduler = _scheduler(_FakeManager(), broken_clock)
    store = OptionsChainStore(
        "postgresql://unused",
        settings=Settings(database_url="postgresql://unused"),
        coordinator=coordinator,
        manager=MagicMock(),
        scheduler=scheduler,
    )

    assert await store.refresh_symbols(["AAPL"], source=object()) == "refresh-report"
