#!/usr/bin/env python3
"""
Initialize the agenda database schema using SQLAlchemy models.

Creates every table and, on PostgreSQL, the btree_gist extension plus the
exclusion constraint that forbids overlapping live appointments per barber.
Safe to run multiple times (idempotent). Pass --seed to add the demo unit.

Usage:
    export DATABASE_URL="postgresql+asyncpg://localhost:5432/barbersoft"
    python3 Backend/scripts/init_db.py [--seed]
"""
import asyncio
import os
import sys
from pathlib import Path

# Add Backend to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from agenda.models import Base
from agenda.seed import seed_initial_data

DATABASE_URL = os.getenv("DATABASE_URL")

if not DATABASE_URL:
    print("❌ ERROR: DATABASE_URL environment variable not set")
    print("   Use: export DATABASE_URL='postgresql+asyncpg://localhost:5432/barbersoft'")
    sys.exit(1)


async def init_db(seed: bool = False):
    """Create all tables, optionally seeding demo data."""
    print("🔧 Initializing agenda database...")
    print(f"   Database: {DATABASE_URL}")

    engine = create_async_engine(DATABASE_URL, echo=False)

    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        print("✅ Schema initialized successfully!")
        print("\n📋 Tables:")
        for table in Base.metadata.sorted_tables:
            print(f"   - {table.name}")

        if seed:
            session_factory = async_sessionmaker(engine, expire_on_commit=False)
            async with session_factory() as session:
                unit = await seed_initial_data(session)
            print(f"\n🌱 Demo unit ready: {unit.name} ({unit.id})")

    except SQLAlchemyError as e:
        print(f"❌ Error initializing database: {e}")
        sys.exit(1)
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(init_db(seed="--seed" in sys.argv[1:]))
