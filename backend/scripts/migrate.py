#!/usr/bin/env python3
"""
Database migration script for the coordinator.

Usage (from backend/):
    python -m scripts.migrate                  # Upgrade to head
    python -m scripts.migrate --check          # Report migration status only
    python -m scripts.migrate --rollback       # Downgrade one revision
    python -m scripts.migrate --rollback base  # Downgrade everything
"""

import asyncio
import sys
import os

# Add backend to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from alembic import command
from alembic.config import Config
from alembic.script import ScriptDirectory
from alembic.runtime.migration import MigrationContext
from sqlalchemy import create_engine, inspect, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine

from coordinator.config import settings

REQUIRED_TABLES = {
    "workspaces",
    "agents",
    "beads",
    "agent_messages",
    "progress_entries",
    "merge_requests",
}


def sync_database_url() -> str:
    return settings.database_url.replace("+asyncpg", "").replace("+aiosqlite", "")


def alembic_config() -> Config:
    return Config("alembic.ini")


async def check_database_connection() -> bool:
    """Verify database is accessible."""
    engine = create_async_engine(settings.database_url)
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        print("✓ Database connection successful")
        return True
    except (SQLAlchemyError, OSError) as e:
        print(f"✗ Database connection failed: {e}")
        return False
    finally:
        await engine.dispose()


def get_current_revision() -> str | None:
    engine = create_engine(sync_database_url())
    try:
        with engine.connect() as conn:
            return MigrationContext.configure(conn).get_current_revision()
    finally:
        engine.dispose()


def get_head_revision() -> str | None:
    return ScriptDirectory.from_config(alembic_config()).get_current_head()


def missing_tables() -> set[str]:
    engine = create_engine(sync_database_url())
    try:
        return REQUIRED_TABLES - set(inspect(engine).get_table_names())
    finally:
        engine.dispose()


def rollback(target: str) -> None:
    if settings.is_production:
        response = input(f"\n⚠ Rolling back in {settings.effective_env}! Are you sure? (yes/no): ")
        if response.lower() != "yes":
            print("Rollback aborted by user")
            sys.exit(1)

    if target.isdigit():
        target = f"-{target}"
    command.downgrade(alembic_config(), target)
    print(f"✓ Rolled back to {get_current_revision() or 'base'}")


async def main():
    print("=" * 60)
    print("DATABASE MIGRATION")
    print("=" * 60)

    # Hide credentials in output
    url = settings.database_url
    print(f"Environment: {settings.effective_env}")
    print(f"Database: {url.split('@')[-1] if '@' in url else url}")
    print()

    if not await check_database_connection():
        print("\nMigration aborted: Cannot connect to database")
        sys.exit(1)

    current, head = get_current_revision(), get_head_revision()
    print(f"Current revision: {current}")
    print(f"Head revision: {head}")

    if "--check" in sys.argv:
        sys.exit(0 if current == head else 1)

    if "--rollback" in sys.argv:
        index = sys.argv.index("--rollback")
        rollback(sys.argv[index + 1] if len(sys.argv) > index + 1 else "1")
        return

    if current == head:
        print("\n✓ Database is already up to date")
        return

    print("\nRunning migrations...")
    command.upgrade(alembic_config(), "head")

    missing = missing_tables()
    if missing:
        print(f"✗ Missing expected tables after upgrade: {sorted(missing)}")
        sys.exit(1)

    print("\n" + "=" * 60)
    print("MIGRATION COMPLETED SUCCESSFULLY")
    print("=" * 60)


if __name__ == "__main__":
    asyncio.run(main())
