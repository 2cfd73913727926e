"""Initialize the database schema for PayVAT.

Creates every table (users, VAT returns, documents, payments, audit logs).
Run this before starting the API server; ``--drop`` recreates from scratch.
"""

import argparse
import asyncio
import sys
import traceback

from payvat.config import settings
from payvat.db import engine
from payvat.models import Base


async def init_database(drop: bool = False) -> None:
    """Create all database tables."""
    print(f"Initializing database: {settings.db.url.split('@')[-1]}")

    async with engine.begin() as conn:
        if drop:
            await conn.run_sync(Base.metadata.drop_all)
            print("✓ Dropped existing tables")

        await conn.run_sync(Base.metadata.create_all)
        print("✓ Created all tables")

    await engine.dispose()
    print("\n✅ Database initialization complete!")
    print(f"Tables: {', '.join(Base.metadata.tables.keys())}")


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--drop", action="store_true", help="drop existing tables first")
    args = parser.parse_args()
    try:
        asyncio.run(init_database(drop=args.drop))
    except Exception as e:
        print(f"\n❌ Error initializing database: {e}")
        traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
