#!/usr/bin/env python3
"""
Database Migration — Create/update tables from SQLAlchemy models.

Usage:
    # Local:
    python scripts/migrate_db.py

    # Check status only (no changes):
    python scripts/migrate_db.py --check
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def list_tables(db) -> list[str]:
    from sqlalchemy import text

    dialect = db.dialect
    async with db.engine.connect() as conn:
        # Database-specific table listing
        if dialect == "postgresql":
            result = await conn.execute(text(
                "SELECT tablename FROM pg_tables WHERE schemaname = 'public'"
            ))
        elif dialect == "mysql":
            result = await conn.execute(text("SHOW TABLES"))
        else:  # sqlite
            result = await conn.execute(text(
                "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'"
            ))
        return [row[0] for row in result.fetchall()]


async def run_migration(check_only: bool = False, config_path: str = None) -> int:
    from config.settings import load_settings
    from database.models import Base
    from database.session import Database

    settings = load_settings(config_path)
    defined = list(Base.metadata.tables.keys())

    async with Database(settings.database.url) as db:
        print(f"Database: {db.dialect}")
        url = str(db.engine.url)
        print(f"URL: {url.split('@')[-1] if '@' in url else url}")
        print(f"Tables defined: {', '.join(defined)}")

        if check_only:
            existing = await list_tables(db)
            print(f"Tables existing: {', '.join(existing) or '(none)'}")

            missing = set(defined) - set(existing)
            if missing:
                print(f"Tables MISSING: {', '.join(sorted(missing))}")
                print("Run without --check to create them.")
                return 1
            print("All tables exist. ✓")
            return 0

        print("Running database migration...")
        await db.create_all()

        tables = await list_tables(db)
        print(f"Tables created/verified: {', '.join(t for t in tables if t in defined)}")

    print("Migration complete. ✓")
    return 0


def main():
    parser = argparse.ArgumentParser(description="Database migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    parser.add_argument("--config", default=None, help="Path to settings YAML")
    args = parser.parse_args()

    sys.exit(asyncio.run(run_migration(check_only=args.check, config_path=args.config)))


if __name__ == "__main__":
    main()
