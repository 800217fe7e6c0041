import asyncio
import logging
import sys
import os

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import get_settings
from core.database import create_session_factory
from core.logging import setup_logging
from models.base import Base
# Import all models to ensure they are registered
from models.facility import Facility  # noqa: F401
from models.sync_status import SyncStatusRecord  # noqa: F401

logger = logging.getLogger(__name__)


async def init_database():
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL)
    logger.info("Connecting to database...")
    engine, _ = create_session_factory(settings.DATABASE_URL)

    async with engine.begin() as conn:
        logger.info("Creating tables...")
        await conn.run_sync(Base.metadata.create_all)
        logger.info("Tables created successfully.")

    await engine.dispose()

if __name__ == "__main__":
    asyncio.run(init_database())
