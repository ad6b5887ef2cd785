from __future__ import annotations

import pytest

from chainstore.db import migrations


@pytest.mark.unit
def test_bundled_migrations_are_ordered_and_cover_required_tables() -> None:
    files = migrations.list_sql_migrations(migrations.default_migrations_dir())

    assert [p.name for p in files] == [
        "0001_option_contracts.sql",
        "0002_option_contracts_history.sql",
        "0003_lifecycle_runs.sql",
    ]
    combined = "\n".join(p.read_text(encoding="utf-8") for p in files)
    for relation in migrations.REQUIRED_RELATIONS:
        assert f"CREATE TABLE IF NOT EXISTS {relation}" in combined
    assert "UNIQUE (symbol, expiration_date, strike, option_type)" in combined


@pytest.mark.unit
def test_missing_directory_lists_nothing_and_apply_refuses(tmp_path) -> None:
    assert migrations.list_sql_migrations(tmp_path / "absent") == []
    with pytest.raises(RuntimeError, match="No SQL migrations found"):
        migrations.apply_sql_migrations("postgresql://unused/db", tmp_path)


@pytest.mark.unit
def test_maintenance_url_swaps_only_the_database() -> None:
    url = "postgresql+psycopg2://u:p@db:5432/chains?sslmode=disable"

    assert migrations._database_name(url) == "chains"
    assert migrations._with_database(url, "postgres") == "postgresql://u:p@db:5432/postgres?sslmode=disable"


@pytest.mark.unit
def test_reset_requires_a_database_name() -> None:
    with pytest.raises(ValueError, match="missing database name"):
        migrations.reset_database("postgresql://u:p@db:5432")
