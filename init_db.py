#!/usr/bin/env python3
"""
Create the Aqua Forum tables before the API or rq workers start.

Tortoise's generate_schemas(safe=True) skips existing tables, so this can run
on every container start.
"""

import asyncio
import logging
import sys

from tortoise.exceptions import BaseORMException

from aquaforum.db import build_tortoise_config, close_db, init_db

log = logging.getLogger("aquaforum.init_db")


async def create_tables() -> bool:
    target = build_tortoise_config()["connections"]["default"].split("://", 1)[0]
    log.info("Creating Aqua Forum tables on %s", target)
    try:
        await init_db(max_retries=5, delay_seconds=2.0)
    except (BaseORMException, OSError, ValueError) as exc:
        log.error("Table creation failed: %s", exc)
        return False
    finally:
        await close_db()
    log.info("Tables ready")
    return True


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    if not asyncio.run(create_tables()):
        sys.exit(1)
