import asyncio
import logging
import os
import subprocess
import sys

from tortoise import Tortoise

from .config import DB_URL, TORTOISE_ORM
from .tiers import initialize_tier_structure

logger = logging.getLogger(__name__)


async def run_migrations():
    """Run database migrations using aerich"""
    try:
        logger.info("Running database migrations...")

        if not os.path.exists("migrations/models"):
            logger.info("Creating initial migration...")
            result = subprocess.run([
                sys.executable, "-m", "aerich", "init-db"
            ], capture_output=True, text=True)
            if result.returncode != 0:
                logger.error(f"Failed to create initial migration: {result.stderr}")
                return False

        logger.info("Applying migrations...")
        result = subprocess.run([
            sys.executable, "-m", "aerich", "upgrade"
        ], capture_output=True, text=True)

        if result.returncode == 0:
            logger.info("Migrations completed successfully")
            return True
        else:
            logger.error(f"Migration failed: {result.stderr}")
            return False

    except OSError as e:
        logger.error(f"Error running migrations: {e}")
        return False


async def init_db_with_retry(max_retries=5, retry_delay=5):
    """Initialize database connection with retry logic"""
    for attempt in range(max_retries):
        try:
            logger.info(f"Initializing database (attempt {attempt + 1}/{max_retries})")

            await Tortoise.init(config=TORTOISE_ORM)

            if "sqlite" in DB_URL:  # For SQLite in-memory testing
                await Tortoise.generate_schemas()

            logger.info("Database connection initialized successfully.")
            return True

        except Exception as e:
            logger.warning(f"Database connection attempt {attempt + 1} failed: {e}")
            if attempt < max_retries - 1:
                logger.info(f"Retrying in {retry_delay} seconds...")
                await asyncio.sleep(retry_delay)
            else:
                logger.error("All database connection attempts failed")
                raise


async def init_db():
    """Initialize database connection, run migrations and seed the tier table."""
    await init_db_with_retry()

    # Migrations are only used outside of testing
    if "sqlite" not in DB_URL:
        migration_success = await run_migrations()
        if not migration_success:
            logger.warning("Migrations failed, but continuing with startup")

    await initialize_tier_structure()


async def close_db():
    """Close database connection."""
    await Tortoise.close_connections()
    logger.info("Database connection closed.")
