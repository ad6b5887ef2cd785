from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Sequence

import psycopg2
from psycopg2.extras import execute_values

from chainstore.db.client import connect  # noqa: F401
from chainstore.errors import BatchUpsertFailure, LockContention, classify_db_error

from .normalizer import ContractRecord

logger = logging.getLogger(__name__)

LARGE_BATCH_THRESHOLD = 10_000
SMALL_BATCH_THRESHOLD = 1_000
LARGE_BATCH_SIZE = 1_000
SMALL_BATCH_SIZE = 100
DEFAULT_BATCH_SIZE = 500

_CONTRACT_COLUMNS = (
    "id",
    "symbol",
    "expiration_date",
    "strike",
    "option_type",
    "bid",
    "ask",
    "last",
    "volume",
    "open_interest",
    "implied_volatility",
    "delta",
    "gamma",
    "theta",
    "vega",
    "updated_at",
)

UPSERT_SQL = """
    INSERT INTO option_contracts (
        symbol,
        expiration_date,
        strike,
        option_type,
        bid,
        ask,
        last,
        volume,
        open_interest,
        implied_volatility,
        delta,
        gamma,
        theta,
        vega,
        updated_at
    )
    VALUES %s
    ON CONFLICT (symbol, expiration_date, strike, option_type)
    DO UPDATE SET
        bid = EXCLUDED.bid,
        ask = EXCLUDED.ask,
        last = EXCLUDED.last,
        volume = EXCLUDED.volume,
        open_interest = EXCLUDED.open_interest,
        implied_volatility = EXCLUDED.implied_volatility,
        delta = EXCLUDED.delta,
        gamma = EXCLUDED.gamma,
        theta = EXCLUDED.theta,
        vega = EXCLUDED.vega,
        updated_at = NOW()
"""

_UPSERT_TEMPLATE = "(%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, NOW())"


def batch_size_for(record_count: int) -> int:
    if record_count > LARGE_BATCH_THRESHOLD:
        return LARGE_BATCH_SIZE
    if record_count < SMALL_BATCH_THRESHOLD:
        return SMALL_BATCH_SIZE
    return DEFAULT_BATCH_SIZE


def _values(record: ContractRecord) -> tuple:
    return (
        record.symbol,
        record.expiration_date,
        record.db_strike(),
        record.option_type,
        record.bid,
        record.ask,
        record.last,
        record.volume,
        record.open_interest,
        record.implied_volatility,
        record.delta,
        record.gamma,
        record.theta,
        record.vega,
    )


@dataclass(frozen=True)
class BatchWriteResult:
    rows_written: int
    batches: int
    batch_size: int


def write_batches(conn, records: Sequence[ContractRecord]) -> BatchWriteResult:
    """Upsert ``records`` in size-bounded batches on the caller's open transaction.

    Commit and rollback belong to the caller; any failure leaves the transaction
    aborted and is raised as LockContention or BatchUpsertFailure.
    """
    if not records:
        return BatchWriteResult(rows_written=0, batches=0, batch_size=0)

    batch_size = batch_size_for(len(records))
    values = [_values(r) for r in records]

    total = 0
    batches = 0
    with conn.cursor() as cur:
        for i in range(0, len(values), batch_size):
            batch = values[i : i + batch_size]
            try:
                execute_values(cur, UPSERT_SQL, batch, template=_UPSERT_TEMPLATE, page_size=len(batch))
            except psycopg2.Error as exc:
                classified = classify_db_error(exc)
                if isinstance(classified, LockContention):
                    raise classified from exc
                raise BatchUpsertFailure(
                    f"Upsert batch {batches} failed: {type(exc).__name__}: {exc}".strip(),
                    batch_index=batches,
                    offset=i,
                    size=len(batch),
                ) from exc
            batches += 1
            total += len(batch)
            logger.debug(
                "Upsert batch applied",
                extra={"stage": "batch", "batch_index": batches - 1, "batch_rows": len(batch), "offset": i},
            )
    return BatchWriteResult(rows_written=total, batches=batches, batch_size=batch_size)


def _row_to_record(row: Sequence) -> ContractRecord:
    data = dict(zip(_CONTRACT_COLUMNS, row))
    return ContractRecord(
        id=data["id"],
        symbol=data["symbol"],
        expiration_date=data["expiration_date"],
        strike=data["strike"],
        option_type=data["option_type"],
        bid=data["bid"],
        ask=data["ask"],
        last=data["last"],
        volume=int(data["volume"]),
        open_interest=int(data["open_interest"]),
        implied_volatility=data["implied_volatility"],
        delta=data["delta"],
        gamma=data["gamma"],
        theta=data["theta"],
        vega=data["vega"],
        updated_at=data["updated_at"],
    )


def fetch_live_contracts(
    conn,
    *,
    symbol: str,
    expiration_date: date | None = None,
) -> list[ContractRecord]:
    columns = ", ".join(_CONTRACT_COLUMNS)
    with conn.cursor() as cur:
        if expiration_date is None:
            cur.execute(
                f"""
                SELECT {columns}
                FROM option_contracts
                WHERE symbol = %s
                ORDER BY expiration_date, option_type, strike
                """,
                (symbol,),
            )
        else:
            cur.execute(
                f"""
                SELECT {columns}
                FROM option_contracts
                WHERE symbol = %s AND expiration_date = %s
                ORDER BY expiration_date, option_type, strike
                """,
                (symbol, expiration_date),
            )
        rows = cur.fetchall()
    return [_row_to_record(r) for r in rows]


def fetch_expiration_dates(conn, *, symbol: str) -> list[date]:
    with conn.cursor() as cur:
        cur.execute(
            "SELECT DISTINCT expiration_date FROM option_contracts WHERE symbol = %s ORDER BY expiration_date",
            (symbol,),
        )
        rows = cur.fetchall()
    return [r[0] for r in rows]


def delete_live_contracts(conn, *, symbol: str) -> int:
    with conn.cursor() as cur:
        cur.execute("DELETE FROM option_contracts WHERE symbol = %s", (symbol,))
        return int(cur.rowcount or 0)
