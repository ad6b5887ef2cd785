"""Transaction-scoped advisory locks keyed by derived 31-bit tokens.

Tokens come from a simple multiplicative string hash. Two different keys may map to
the same token; that only makes unrelated work serialize, it can never let two
holders of the same key run concurrently.
"""

from __future__ import annotations

import contextlib
import logging
from datetime import date
from typing import Iterator

from chainstore.errors import classify_db_error

logger = logging.getLogger(__name__)

GLOBAL_CLEANUP_LOCK = "global_cleanup_lock"
SATURDAY_ARCHIVAL_LOCK = "saturday_archival_lock"
STALE_CLEANUP_RUN_LOCK = "stale_cleanup_run_lock"

_MASK_32 = 0xFFFFFFFF
_MASK_31 = 0x7FFFFFFF


def derive_lock_id(key: str) -> int:
    h = 0
    for ch in key:
        h = (h * 31 + ord(ch)) & _MASK_32
    return h & _MASK_31


def ingest_lock_key(symbol: str, expiration_date: date) -> str:
    return f"{symbol}_{expiration_date.isoformat()}"


def set_lock_timeout(cur, timeout_ms: int) -> None:
    # SET does not accept bind parameters; set_config(..., is_local=true) is the SET LOCAL equivalent.
    cur.execute("SELECT set_config('lock_timeout', %s, true)", (f"{int(timeout_ms)}ms",))


def acquire_xact_lock(cur, lock_id: int) -> None:
    cur.execute("SELECT pg_advisory_xact_lock(%s)", (int(lock_id),))


@contextlib.contextmanager
def locked_transaction(conn, key: str, *, lock_timeout_ms: int) -> Iterator[object]:
    """Run the body in one transaction holding the advisory lock for ``key``.

    The lock is released by the commit or rollback that ends the transaction.
    """
    lock_id = derive_lock_id(key)
    try:
        with conn.cursor() as cur:
            if lock_timeout_ms and lock_timeout_ms > 0:
                set_lock_timeout(cur, lock_timeout_ms)
            acquire_xact_lock(cur, lock_id)
            logger.debug(
                "Advisory lock acquired",
                extra={"stage": "lock", "lock_key": key, "lock_id": lock_id},
            )
            yield cur
        conn.commit()
    except BaseException as exc:
        conn.rollback()
        classified = classify_db_error(exc)
        if classified is not exc:
            raise classified from exc
        raise
