#!/usr/bin/env python3
"""
Database Migration — Create the flow engine tables from the SQLAlchemy models.

Tables: workflows, flow_sessions, flow_timers, outbound_actions

Usage:
    python -m scripts.migrate_db                # create missing tables
    python -m scripts.migrate_db --check        # report status only (no changes)
    python -m scripts.migrate_db --url sqlite:///./flow_engine.db
"""
import argparse
import asyncio

from sqlalchemy import inspect


def _existing_tables(sync_conn) -> list[str]:
    return inspect(sync_conn).get_table_names()


async def run_migration(check_only: bool = False, db_url: str = None) -> set[str]:
    """Create (or just inspect) the tables. Returns the tables still missing."""
    from config.settings import load_settings
    settings = load_settings()

    from database.session import close_db, get_engine
    from database.models import Base

    engine = get_engine(db_url or settings.database.url)
    defined = set(Base.metadata.tables.keys())
    url = str(engine.url)

    print(f"Database: {engine.dialect.name}")
    print(f"URL: {url.split('@')[-1] if '@' in url else url}")
    print(f"Tables defined: {', '.join(sorted(defined))}")

    try:
        if not check_only:
            print("Running database migration...")
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

        async with engine.connect() as conn:
            existing = await conn.run_sync(_existing_tables)
    finally:
        await close_db()

    print(f"Tables existing: {', '.join(sorted(existing)) or '(none)'}")
    missing = defined - set(existing)
    if missing:
        print(f"Tables MISSING: {', '.join(sorted(missing))}")
        print("Run without --check to create them.")
    else:
        print("All tables exist. ✓")
    return missing


def main():
    parser = argparse.ArgumentParser(description="Flow engine database migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    parser.add_argument("--url", default=None, help="Database URL (defaults to settings)")
    args = parser.parse_args()

    missing = asyncio.run(run_migration(check_only=args.check, db_url=args.url))
    raise SystemExit(1 if missing else 0)


if __name__ == "__main__":
    main()
