#!/usr/bin/env python3
"""
Database Migration — Create the messaging tables from the SQLAlchemy models.

Usage:
    python scripts/migrate_db.py            # create missing tables
    python scripts/migrate_db.py --check    # report status only
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def _existing_tables(engine) -> list[str]:
    from sqlalchemy import inspect

    async with engine.connect() as conn:
        return await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())


async def run_migration(check_only: bool = False) -> int:
    from config.settings import load_settings
    load_settings()

    from database.models import Base
    from database.session import close_db, get_engine, init_db

    engine = get_engine()
    url = str(engine.url)
    defined = set(Base.metadata.tables.keys())
    print(f"Database: {engine.dialect.name}")
    print(f"URL: {url.split('@')[-1] if '@' in url else url}")

    try:
        if check_only:
            existing = await _existing_tables(engine)
            print(f"Tables defined: {', '.join(sorted(defined))}")
            print(f"Tables existing: {', '.join(sorted(existing)) or '(none)'}")
            missing = defined - set(existing)
            if missing:
                print(f"Tables MISSING: {', '.join(sorted(missing))}")
                print("Run without --check to create them.")
                return 1
            print("All tables exist.")
            return 0

        print("Running database migration...")
        await init_db(engine)
        existing = await _existing_tables(engine)
        print(f"Tables created/verified: {', '.join(sorted(defined & set(existing)))}")
        print("Migration complete.")
        return 0
    finally:
        await close_db()


def main():
    parser = argparse.ArgumentParser(description="Messaging database migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    args = parser.parse_args()

    sys.exit(asyncio.run(run_migration(check_only=args.check)))


if __name__ == "__main__":
    main()
