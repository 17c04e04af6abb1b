#!/usr/bin/env python3
"""Setup script for the vehicle reservation engine."""

import asyncio
import logging
import sys
from pathlib import Path

# Add the server directory to the Python path
server_dir = Path(__file__).parent.parent / "server"
sys.path.insert(0, str(server_dir))

from alembic import command
from alembic.config import Config
from sqlalchemy import func, select

from reservation_engine.core.database import async_session_factory, close_db
from reservation_engine.models import Vehicle

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def setup_database():
    """Apply Alembic migrations up to head."""
    logger.info("Running database migrations...")
    alembic_cfg = Config(str(server_dir / "db" / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(server_dir / "db" / "alembic"))
    command.upgrade(alembic_cfg, "head")
    logger.info("Database migrations completed")


async def create_sample_data():
    """Create sample vehicles for local development."""
    logger.info("Creating sample data...")

    async with async_session_factory() as db:
        try:
            existing = await db.scalar(select(func.count()).select_from(Vehicle))
            if existing:
                logger.info("Sample data already exists, skipping...")
                return

            db.add_all([
                Vehicle(
                    owner_id="host_demo_1",
                    nightly_rate_amount=10000,  # $100.00
                    currency="USD",
                    location="Portland, OR",
                    timezone="America/Los_Angeles",
                ),
                Vehicle(
                    owner_id="host_demo_2",
                    nightly_rate_amount=7500,  # 75.00 EUR
                    currency="EUR",
                    location="Berlin",
                    timezone="Europe/Berlin",
                ),
            ])
            await db.commit()
            logger.info("Sample data created successfully!")

        except Exception as e:
            await db.rollback()
            logger.error(f"Failed to create sample data: {e}")
            raise
    await close_db()


def main():
    """Main setup function."""
    logger.info("Starting vehicle reservation engine setup...")

    setup_database()
    asyncio.run(create_sample_data())

    logger.info("Setup completed successfully!")
    logger.info("You can now start the API server with: cd server && uvicorn reservation_engine.main:app --reload")


if __name__ == "__main__":
    main()
