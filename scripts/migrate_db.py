#!/usr/bin/env python3
"""
Database Migration — Create the agents / test_conversations tables.

Only needed for the "sql" store backend.

Usage:
    python scripts/migrate_db.py
    python scripts/migrate_db.py --check       # Status only, no changes
    python scripts/migrate_db.py --seed        # Also upsert agents from settings.yaml
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

_TABLE_LISTING = {
    "postgresql": "SELECT tablename FROM pg_tables WHERE schemaname = 'public'",
    "mysql": "SHOW TABLES",
    "sqlite": "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'",
}


async def _existing_tables(engine) -> list[str]:
    from sqlalchemy import text

    async with engine.connect() as conn:
        result = await conn.execute(text(_TABLE_LISTING.get(engine.dialect.name, _TABLE_LISTING["sqlite"])))
        return [row[0] for row in result.fetchall()]


async def run_migration(check_only: bool = False, seed: bool = False):
    from config.settings import load_settings
    settings = load_settings()

    from database.session import get_engine, init_db, close_db
    from database.models import Base

    engine = get_engine(settings.database.url)

    if check_only:
        print(f"Database: {engine.dialect.name}")
        print(f"URL: {str(engine.url).split('@')[-1]}")
        print(f"Tables defined: {', '.join(Base.metadata.tables.keys())}")

        existing = await _existing_tables(engine)
        print(f"Tables existing: {', '.join(existing) or '(none)'}")

        missing = set(Base.metadata.tables.keys()) - set(existing)
        if missing:
            print(f"Tables MISSING: {', '.join(sorted(missing))}")
            print("Run without --check to create them.")
        else:
            print("All tables exist. ✓")
        await close_db()
        return

    print("Running database migration...")
    await init_db(settings.database.url)
    print(f"Tables created/verified: {', '.join(await _existing_tables(engine))}")

    if seed:
        from agents.loader import AgentConfigLoader
        from database.store import SqlAgentStore

        count = await AgentConfigLoader(SqlAgentStore()).seed(settings.agents)
        print(f"Agents seeded: {count}")

    await close_db()
    print("Migration complete. ✓")


def main():
    parser = argparse.ArgumentParser(description="Database migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    parser.add_argument("--seed", action="store_true", help="Upsert agents from settings.yaml")
    args = parser.parse_args()

    asyncio.run(run_migration(check_only=args.check, seed=args.seed))


if __name__ == "__main__":
    main()
