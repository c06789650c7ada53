"""
Script to create all database tables.

Creates the invitation, template, event and guest tables.
Run this after starting PostgreSQL with Docker.
"""
import asyncio
from invite_dispatch.database import engine
from invite_dispatch.models.base import Base

# Import all models to register them with Base
from invite_dispatch.models.guest import Event, Guest  # noqa: F401
from invite_dispatch.models.invitation import Invitation  # noqa: F401
from invite_dispatch.models.template import MessageTemplate  # noqa: F401


async def create_all_tables():
    """Create all tables in the database."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    print("All tables created successfully!")


async def drop_all_tables():
    """Drop all tables in the database (for testing)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    print("All tables dropped!")


async def main():
    """Main entry point."""
    print("Creating database tables...")
    await create_all_tables()
    print("Done!")


if __name__ == "__main__":
    asyncio.run(main())
