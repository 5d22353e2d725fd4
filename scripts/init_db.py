#!/usr/bin/env python3
"""
Initialize the Game Leadership Map database.

Creates all tables. Works against PostgreSQL or a local SQLite file, whatever
DATABASE_URL (or the POSTGRES_* settings) point at.

Usage:
    python scripts/init_db.py [--drop]

Options:
    --drop  Drop existing tables before creating (USE WITH CAUTION!)
    --yes   Do not ask before dropping
"""

import sys
import argparse
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from loguru import logger
from sqlalchemy import inspect, text
from sqlalchemy.exc import SQLAlchemyError

from pipeline.database import engine, create_all_tables, drop_all_tables


def verify_connection() -> bool:
    """Check the database answers before touching the schema."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        logger.info(f"Connected to {engine.url.render_as_string(hide_password=True)}")
        return True
    except SQLAlchemyError as e:
        logger.error(f"Database not reachable: {e}")
        return False


def main():
    parser = argparse.ArgumentParser(description="Initialize the Game Leadership Map database")
    parser.add_argument(
        "--drop",
        action="store_true",
        help="Drop existing tables before creating (USE WITH CAUTION!)",
    )
    parser.add_argument("--yes", action="store_true", help="Skip the drop confirmation")
    args = parser.parse_args()

    logger.info("=" * 60)
    logger.info("Game Leadership Map - Database Initialization")
    logger.info("=" * 60)

    if not verify_connection():
        sys.exit(1)

    if args.drop:
        logger.warning("Dropping all existing tables...")
        confirm = "yes" if args.yes else input("Are you sure you want to drop all tables? (yes/no): ")
        if confirm.lower() == "yes":
            drop_all_tables()
            logger.info("Tables dropped.")
        else:
            logger.info("Drop cancelled.")
            sys.exit(0)

    logger.info("Creating database tables...")
    create_all_tables()
    tables = inspect(engine).get_table_names()
    logger.info(f"Tables in database: {tables}")

    logger.info("=" * 60)
    logger.info("Database initialization complete!")
    logger.info("=" * 60)


if __name__ == "__main__":
    main()
