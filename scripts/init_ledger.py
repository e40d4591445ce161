"""Database initialization script.

Run this to initialize the checkout ledger database. With ``--demo`` a few
products with stock are added so sales can be confirmed end to end.
"""

import argparse
import asyncio
import sys

from src.config import config
from src.database import db
from src.logging_utils import get_logger, setup_logging

setup_logging(config.log_level, config.log_format)
logger = get_logger(__name__)

DEMO_PRODUCTS = [
    (1, "Espresso", 50),
    (2, "Croissant", 30),
    (3, "Coffee beans 250g", 12),
]


async def main(demo: bool):
    """Initialize the database."""
    logger.info("Initializing checkout database...")
    logger.info(f"Database path: {db.db_path}")

    await db.initialize()

    if demo:
        for product_id, name, stock in DEMO_PRODUCTS:
            await db.upsert_product(product_id, name, stock)
        for product_id, name, _ in DEMO_PRODUCTS:
            stock = await db.get_stock(product_id)
            if stock is None:
                logger.error(f"Product {product_id} ({name}) was not stored")
                sys.exit(1)
            logger.info(f"- {product_id}: {name} (stock {stock})")

    logger.info("Database initialization complete!")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--demo", action="store_true", help="Insert demo products")
    args = parser.parse_args()
    asyncio.run(main(args.demo))
