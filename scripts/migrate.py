#!/usr/bin/env python3
from __future__ import annotations

import sys
from argparse import ArgumentParser

from dotenv import load_dotenv

from chainstore.db.client import default_db_url
from chainstore.db.migrations import (
    apply_sql_migrations,
    default_migrations_dir,
    missing_relations,
    reset_and_migrate,
)


def main(argv: list[str]) -> int:
    load_dotenv()
    p = ArgumentParser(description="Apply the SQL migrations in db/migrations.")
    p.add_argument("--db-url", default=None, help="Overrides DATABASE_URL (default: env DATABASE_URL)")
    p.add_argument("--reset", action="store_true", help="Drop and recreate the database first")
    args = p.parse_args(argv)

    db_url = args.db_url or default_db_url()
    if args.reset:
        reset_and_migrate(db_url, default_migrations_dir())
        print("✅ database reset and migrated")
        return 0
    applied = apply_sql_migrations(db_url, default_migrations_dir())
    missing = missing_relations(db_url)
    if missing:
        print(f"❌ missing relations after migration: {', '.join(missing)}", file=sys.stderr)
        return 1
    print(f"✅ applied {len(applied)} migrations")
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
