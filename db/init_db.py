#!/usr/bin/env python3
"""Initialize the database schema.

Creates every table declared in db/models against the database pointed to by
DATABASE_URL (default: sqlite:///./data/custody.db). Existing tables are left
untouched.

Usage:
  python -m db.init_db
"""

from __future__ import annotations

import logging

from dotenv import load_dotenv

from core.config import AppConfig
from core.storage.sql import SqlConfig, SqlStores

logger = logging.getLogger(__name__)


def main() -> int:
    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    config = AppConfig.from_env()
    stores = SqlStores(config=SqlConfig(database_url=config.database_url))
    try:
        stores.create_schema()
    finally:
        stores.dispose()

    logger.info("Database schema applied")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
