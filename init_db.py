"""Initialize database - Run this once to create all tables"""
import asyncio
import sys
from foldly.db.base import Base
from foldly.db.session import build_engine
from foldly.models import user, workspace, folder, link, permission, file  # noqa: F401

async def init_db(drop: bool = False):
    print("Creating database tables...")
    engine = build_engine()

    async with engine.begin() as conn:
        if drop:
            await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    await engine.dispose()
    print("Database initialized successfully!")

if __name__ == "__main__":
    asyncio.run(init_db(drop="--drop" in sys.argv))
