"""
Database Migration Script: Create Bank Sync Tables

Creates the bank sync schema from the SQLAlchemy models:
- bank_connections, linked_accounts, external_transactions, sync_runs
- accounts, categories, ledger_transactions

Also seeds the shared "Uncategorized" category used when a bank
transaction carries no provider category.

Run this script directly:
    cd backend && python migrations/create_bank_sync_tables.py
"""

import asyncio
import sys
import os

# Add backend to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine

from database.connection import Base, engine, build_session_factory
from database.sync_models import CategoryDB
from sync.services.categorizer import UNCATEGORIZED_NAME, DEFAULT_CATEGORY_COLOR


async def create_tables(bind: AsyncEngine = engine):
    """Create all bank sync tables (existing tables are left alone)."""
    print("Creating bank sync tables...")

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    for name in sorted(Base.metadata.tables):
        print(f"  ✓ {name}")


async def seed_uncategorized(bind: AsyncEngine = engine) -> str:
    """Create the shared Uncategorized category if missing. Returns its id."""
    session_factory = build_session_factory(bind)

    async with session_factory() as db:
        result = await db.execute(
            select(CategoryDB).where(
                CategoryDB.name == UNCATEGORIZED_NAME,
                CategoryDB.user_id.is_(None)
            )
        )
        category = result.scalars().first()
        if category:
            print(f"  ✓ {UNCATEGORIZED_NAME} category (already exists)")
            return category.id

        category = CategoryDB(name=UNCATEGORIZED_NAME, color=DEFAULT_CATEGORY_COLOR, user_id=None)
        db.add(category)
        await db.commit()
        print(f"  ✓ {UNCATEGORIZED_NAME} category created")
        return category.id


async def main():
    await create_tables()
    await seed_uncategorized()
    await engine.dispose()
    print("\n✅ Bank sync tables created successfully!")


if __name__ == "__main__":
    asyncio.run(main())
