"""
Script to create all database tables.

Creates the webhook tables directly from the models. Run this after
starting PostgreSQL with Docker, or use the Alembic migration instead.
"""
import asyncio

from readiness_webhooks.database import create_all_tables, engine
from readiness_webhooks.logging_config import logger


async def main():
    """Main entry point."""
    logger.info("creating_tables", url=engine.url.render_as_string(hide_password=True))
    await create_all_tables()
    await engine.dispose()
    logger.info("tables_created")


if __name__ == "__main__":
    asyncio.run(main())
