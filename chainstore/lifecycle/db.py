from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime

from chainstore.db.client import connect  # noqa: F401

_MOVED_COLUMNS = """
    id, symbol, expiration_date, strike, option_type,
    bid, ask, last, volume, open_interest,
    implied_volatility, delta, gamma, theta, vega, updated_at
"""

# Copy and delete happen in one statement: the DELETE predicate is re-evaluated
# against the row version it removes, and only removed rows reach the history table.
ARCHIVE_EXPIRED_SQL = f"""
    WITH moved AS (
        DELETE FROM option_contracts
        WHERE expiration_date < %(expired_cutoff)s
        RETURNING {_MOVED_COLUMNS}
    ),
    archived AS (
        INSERT INTO option_contracts_history (
            original_id, symbol, expiration_date, strike, option_type,
            bid, ask, last, volume, open_interest,
            implied_volatility, delta, gamma, theta, vega, updated_at,
            archived_at
        )
        SELECT
            id, symbol, expiration_date, strike, option_type,
            bid, ask, last, volume, open_interest,
            implied_volatility, delta, gamma, theta, vega, updated_at,
            %(archived_at)s
        FROM moved
        ON CONFLICT (original_id) DO NOTHING
        RETURNING original_id
    )
    SELECT
        (SELECT COUNT(*) FROM moved) AS moved_rows,
        (SELECT COUNT(*) FROM archived) AS archived_rows
"""

PURGE_STALE_SQL = """
    DELETE FROM option_contracts
    WHERE expiration_date >= %(today)s
      AND updated_at < %(stale_cutoff)s
"""


@dataclass(frozen=True)
class ArchiveCounts:
    moved: int
    archived: int


@dataclass(frozen=True)
class LifecycleRun:
    job_name: str
    last_run_at: datetime
    run_key: str | None


def archive_expired(cur, *, expired_cutoff: date, archived_at: datetime) -> ArchiveCounts:
    cur.execute(ARCHIVE_EXPIRED_SQL, {"expired_cutoff": expired_cutoff, "archived_at": archived_at})
    row = cur.fetchone()
    if not row:
        return ArchiveCounts(moved=0, archived=0)
    return ArchiveCounts(moved=int(row[0] or 0), archived=int(row[1] or 0))


def purge_stale(cur, *, today: date, stale_cutoff: datetime) -> int:
    cur.execute(PURGE_STALE_SQL, {"today": today, "stale_cutoff": stale_cutoff})
    return int(cur.rowcount or 0)


def fetch_live_stats(cur) -> tuple[int, int]:
    cur.execute("SELECT COUNT(*), COUNT(DISTINCT symbol) FROM option_contracts")
    row = cur.fetchone()
    if not row:
        return 0, 0
    return int(row[0] or 0), int(row[1] or 0)


def fetch_last_run(cur, *, job_name: str) -> LifecycleRun | None:
    cur.execute(
        "SELECT job_name, last_run_at, run_key FROM lifecycle_runs WHERE job_name = %s",
        (job_name,),
    )
    row = cur.fetchone()
    if not row:
        return None
    return LifecycleRun(job_name=row[0], last_run_at=row[1], run_key=row[2])


def record_run(cur, *, job_name: str, ran_at: datetime, run_key: str | None) -> None:
    cur.execute(
        """
        INSERT INTO lifecycle_runs (job_name, last_run_at, run_key)
        VALUES (%s, %s, %s)
        ON CONFLICT (job_name) DO UPDATE SET
            last_run_at = EXCLUDED.last_run_at,
            run_key = EXCLUDED.run_key
        """,
        (job_name, ran_at, run_key),
    )


def fetch_archived_contracts(conn, *, symbol: str) -> list[dict]:
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT original_id, symbol, expiration_date, strike, option_type,
                   bid, ask, last, volume, open_interest,
                   implied_volatility, delta, gamma, theta, vega,
                   updated_at, archived_at
            FROM option_contracts_history
            WHERE symbol = %s
            ORDER BY expiration_date, option_type, strike
            """,
            (symbol,),
        )
        columns = [d[0] for d in cur.description]
        rows = cur.fetchall()
    return [dict(zip(columns, r)) for r in rows]
