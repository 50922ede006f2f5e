import asyncio
import logging
import sys
import os

# Add the project root to the Python path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from tortoise import Tortoise
from tortoise.exceptions import OperationalError
from tutorpay.config import DB_URL, TORTOISE_ORM
from tutorpay.tiers import initialize_tier_structure

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

EXPECTED_TABLES = [
    "teacher_tiers",
    "teacher_profiles",
    "lessons",
    "teacher_tier_history",
    "teacher_tier_applications",
    "payout_batches",
    "teacher_earnings",
    "teacher_bonus_payments",
    "notification_outbox",
    "metrics",
]


async def init_db():
    try:
        logger.info(f"Initializing database connection to {DB_URL}")
        await Tortoise.init(config=TORTOISE_ORM)

        logger.info("Creating database schema")
        await Tortoise.generate_schemas(safe=True)

        conn = Tortoise.get_connection("default")
        for table in EXPECTED_TABLES:
            try:
                await conn.execute_query(f"SELECT COUNT(*) FROM {table}")
                logger.info(f"Table '{table}' exists and is accessible")
            except OperationalError as e:
                logger.error(f"Table '{table}' check failed: {e}")
                raise

        await initialize_tier_structure()
        logger.info("Database initialization completed successfully")
    finally:
        await Tortoise.close_connections()


if __name__ == "__main__":
    try:
        asyncio.run(init_db())
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        sys.exit(1)
