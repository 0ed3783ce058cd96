"""Script to create the schema directly from the table metadata.

Intended for local development and throwaway databases; production
databases are managed with Alembic (``scripts/migrate.py``).
"""

import asyncio

from sqlalchemy import text

from clinicflow.config import get_settings
from clinicflow.database import create_engine
from clinicflow.models import metadata


async def init_db() -> None:
    """Initialize the database by creating all tables."""
    settings = get_settings()
    engine = create_engine(settings)

    async with engine.begin() as conn:
        if conn.dialect.name == "postgresql":
            await conn.execute(text('CREATE EXTENSION IF NOT EXISTS "pgcrypto"'))

        await conn.run_sync(metadata.create_all)

    await engine.dispose()
    print(f"✓ Database initialized ({', '.join(sorted(metadata.tables))})")


if __name__ == "__main__":
    asyncio.run(init_db())
