#!/usr/bin/env python3
"""
Seed the shared system categories.

Safe to run repeatedly; existing categories are left alone.

Usage:
    DATABASE_URL=postgresql://... python scripts/seed_categories.py
"""
import sys
import os
import asyncio

# Add parent directory to path so we can import modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from packages.common.config import get_settings
from packages.common.database import ensure_initialized, sessionmanager
from packages.common.logging import configure_logging
from packages.domain.categorization.system_categories import seed_system_categories


async def main():
    configure_logging(get_settings().log_level)
    await ensure_initialized()
    try:
        async with sessionmanager.session() as db:
            inserted = await seed_system_categories(db)
        print(f"Inserted {inserted} system categories")
    finally:
        await sessionmanager.close()


if __name__ == '__main__':
    asyncio.run(main())
