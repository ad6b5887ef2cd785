from __future__ import annotations

import logging
from pathlib import Path
from urllib.parse import urlparse

import psycopg2
from psycopg2 import sql

from chainstore.db.client import _normalize_psycopg2_url

logger = logging.getLogger(__name__)

REQUIRED_RELATIONS = ("option_contracts", "option_contracts_history", "lifecycle_runs")
_MAINTENANCE_DATABASES = ("postgres", "template1")


def default_migrations_dir() -> Path:
    return Path(__file__).resolve().parents[2] / "db" / "migrations"


def _database_name(db_url: str) -> str:
    return urlparse(_normalize_psycopg2_url(db_url)).path.lstrip("/")


def _with_database(db_url: str, dbname: str) -> str:
    return urlparse(_normalize_psycopg2_url(db_url))._replace(path=f"/{dbname}").geturl()


def _connect_maintenance(db_url: str):
    last_error: psycopg2.OperationalError | None = None
    for dbname in _MAINTENANCE_DATABASES:
        try:
            return psycopg2.connect(_with_database(db_url, dbname))
        except psycopg2.OperationalError as e:
            last_error = e
    assert last_error is not None
    raise last_error


def list_sql_migrations(migrations_dir: str | Path) -> list[Path]:
    """Return the ``.sql`` files in ``migrations_dir``; the numeric filename prefix sets the order."""
    migrations_dir = Path(migrations_dir)
    if not migrations_dir.is_dir():
        return []
    return sorted(p for p in migrations_dir.iterdir() if p.is_file() and p.suffix == ".sql")


def apply_sql_migrations(db_url: str, migrations_dir: str | Path) -> list[Path]:
    """Run every migration file in one transaction. Files use IF NOT EXISTS, so re-running is safe."""
    migration_files = list_sql_migrations(migrations_dir)
    if not migration_files:
        raise RuntimeError(f"No SQL migrations found in {Path(migrations_dir)}")

    with psycopg2.connect(_normalize_psycopg2_url(db_url)) as conn:
        with conn.cursor() as cur:
            for path in migration_files:
                cur.execute(path.read_text(encoding="utf-8"))
                logger.info("Applied migration", extra={"stage": "migrate", "file": path.name})
    return migration_files


def missing_relations(db_url: str, relations: tuple[str, ...] = REQUIRED_RELATIONS) -> list[str]:
    with psycopg2.connect(_normalize_psycopg2_url(db_url)) as conn:
        with conn.cursor() as cur:
            missing = []
            for name in relations:
                cur.execute("SELECT to_regclass(%s)", (f"public.{name}",))
                if cur.fetchone()[0] is None:
                    missing.append(name)
    return missing


def reset_database(db_url: str) -> None:
    """Drop and recreate the target database, disconnecting any other sessions first."""
    target_db = _database_name(db_url)
    if not target_db:
        raise ValueError("DATABASE_URL is missing database name")

    conn = _connect_maintenance(db_url)
    try:
        conn.autocommit = True
        with conn.cursor() as cur:
            cur.execute(
                "SELECT pg_terminate_backend(pid) FROM pg_stat_activity "
                "WHERE datname = %s AND pid <> pg_backend_pid()",
                (target_db,),
            )
            cur.execute(sql.SQL("DROP DATABASE IF EXISTS {}").format(sql.Identifier(target_db)))
            cur.execute(sql.SQL("CREATE DATABASE {}").format(sql.Identifier(target_db)))
    finally:
        conn.close()
    logger.warning("Database recreated", extra={"stage": "migrate", "database": target_db})


def reset_and_migrate(db_url: str, migrations_dir: str | Path | None = None) -> list[Path]:
    reset_database(db_url)
    applied = apply_sql_migrations(db_url, migrations_dir or default_migrations_dir())
    missing = missing_relations(db_url)
    if missing:
        raise RuntimeError(f"Missing required relations after migration: {', '.join(missing)}")
    return applied
