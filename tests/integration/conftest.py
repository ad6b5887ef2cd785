from __future__ import annotations

import os

import psycopg2
import pytest

from chainstore.config import Settings


def _test_db_url() -> str | None:
    return os.getenv("CHAINSTORE_TEST_DATABASE_URL")


@pytest.fixture
def db_url() -> str:
    url = _test_db_url()
    if not url:
        pytest.skip("CHAINSTORE_TEST_DATABASE_URL is not set")
    with psycopg2.connect(url) as conn:
        with conn.cursor() as cur:
            cur.execute("TRUNCATE option_contracts, option_contracts_history, lifecycle_runs RESTART IDENTITY")
    return url


@pytest.fixture
def db_settings(db_url: str) -> Settings:
    return Settings(database_url=db_url, lock_timeout_ms=5_000)

