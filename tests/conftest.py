import sys
from pathlib import Path

# Add the project root to the Python path
project_root = str(Path(__file__).parent.parent)
if project_root not in sys.path:
    sys.path.insert(0, project_root)

import os

import pytest

_SCHEMA_BOOTSTRAPPED = False


def _bootstrap_schema_once() -> None:
    global _SCHEMA_BOOTSTRAPPED
    if _SCHEMA_BOOTSTRAPPED:
        return

    test_db_url = os.getenv("CHAINSTORE_TEST_DATABASE_URL")
    if not test_db_url:
        return

    from chainstore.db.migrations import reset_and_migrate

    reset_and_migrate(test_db_url)
    _SCHEMA_BOOTSTRAPPED = True


def pytest_sessionstart(session: pytest.Session) -> None:
    _bootstrap_schema_once()
