"""
Startup migrations.

Creates missing tables, adds columns that models gained since the database
was created, and normalizes stored user permissions once so request
handling can trust them.
"""

import asyncio
import logging
import sys
from pathlib import Path

# Add parent directory to path for imports when running standalone
if __name__ == "__main__":
    sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import text, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from database import Base
from models import User
from permissions import is_malformed, repair_permissions

logger = logging.getLogger(__name__)


async def get_table_columns(engine: AsyncEngine, table_name: str) -> set:
    """Get all column names for a table from the database."""
    async with engine.connect() as conn:
        if engine.dialect.name == "sqlite":
            result = await conn.execute(text(f"PRAGMA table_info({table_name})"))
            return {row[1] for row in result}
        result = await conn.execute(
            text("SELECT column_name FROM information_schema.columns WHERE table_name = :table"),
            {"table": table_name},
        )
        return {row[0] for row in result}


def _default_clause(column) -> str:
    default = getattr(column.default, "arg", None)
    if default is None or callable(default):
        return ""
    if isinstance(default, bool):
        return f"DEFAULT {str(default).upper()}"
    if isinstance(default, (int, float)):
        return f"DEFAULT {default}"
    if isinstance(default, str):
        return f"DEFAULT '{default}'"
    return ""


async def add_missing_columns(engine: AsyncEngine) -> int:
    """
    Add columns defined on the models but missing from existing tables.
    Safe to run multiple times. Returns the number of columns added.
    """
    added = 0
    for table_name, table in Base.metadata.tables.items():
        existing = await get_table_columns(engine, table_name)
        if not existing:
            continue  # Fresh table from create_all

        missing = [column for column in table.columns if column.name not in existing]
        for column in missing:
            column_type = column.type.compile(engine.dialect)
            default_clause = _default_clause(column)
            # New columns must be nullable unless they carry a default
            nullable = "NULL" if column.nullable or not default_clause else "NOT NULL"
            async with engine.begin() as conn:
                await conn.execute(text(
                    f"ALTER TABLE {table_name} ADD COLUMN {column.name} {column_type} {nullable} {default_clause}"
                ))
            logger.info(f"Added column {table_name}.{column.name}")
            added += 1

    if added:
        logger.info(f"Schema migration added {added} column(s)")
    else:
        logger.info("Schema is up to date - no changes needed")
    return added


async def repair_all_permissions(session: AsyncSession) -> int:
    """
    Rewrite malformed users.permissions values to the canonical flag map.
    The caller commits. Returns the number of users repaired.
    """
    result = await session.execute(select(User))
    repaired = 0
    for user in result.scalars().all():
        if not is_malformed(user.permissions):
            continue
        user.permissions = repair_permissions(user.permissions).to_storage()
        repaired += 1
        logger.info(f"Repaired permissions for user {user.username}")

    if repaired:
        await session.flush()
    return repaired


async def run_migrations(engine: AsyncEngine):
    """
    Main migration entry point.
    1. Creates missing tables (via create_all)
    2. Adds missing columns to existing tables
    3. Repairs stored user permissions
    """
    logger.info("=" * 60)
    logger.info("Starting database schema migration...")
    logger.info("=" * 60)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("All tables exist")

    await add_missing_columns(engine)

    async with AsyncSession(engine, expire_on_commit=False) as session:
        repaired = await repair_all_permissions(session)
        await session.commit()
    logger.info(f"Permission repair finished ({repaired} user(s) updated)")

    logger.info("=" * 60)
    logger.info("Database schema migration completed!")
    logger.info("=" * 60)


if __name__ == "__main__":
    # Allow running migrations standalone
    from database import engine

    logging.basicConfig(level=logging.INFO)
    asyncio.run(run_migrations(engine))
