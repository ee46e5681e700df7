import os
import asyncio
import logging
from tortoise import Tortoise
from tortoise.exceptions import DBConnectionError
from aquaforum.config import settings

_logger = logging.getLogger("aquaforum.db")

MODELS = [
    "aquaforum.models.photo",
    "aquaforum.models.tag",
]

TEST_DB_URL = "sqlite://./.test_db.sqlite3"


def _tortoise_url_from_env() -> str:
    """Normalize database URL for Tortoise ORM and force SQLite for tests."""
    # During pytest, prefer a file-based SQLite DB to avoid per-connection
    # in-memory isolation issues that can hide writes across queries
    if "PYTEST_CURRENT_TEST" in os.environ:
        return TEST_DB_URL

    url = settings.DATABASE_URL.strip().strip('"').strip("'")
    # Normalize to tortoise "postgres://" style
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgres://", 1)
    app_env = (settings.APP_ENV or "").strip().lower()
    if app_env == "production" and url.startswith("sqlite://"):
        raise ValueError("PostgreSQL required in production. Set DATABASE_URL to postgres://...")
    return url


def build_tortoise_config(db_url: str | None = None) -> dict:
    return {
        "connections": {"default": db_url or _tortoise_url_from_env()},
        "apps": {
            "models": {
                "models": MODELS,
                "default_connection": "default",
            }
        },
        "use_tz": True,
        "timezone": "UTC",
    }


async def init_db(max_retries: int = 3, delay_seconds: float = 0.5, db_url: str | None = None) -> None:
    """Initialize database with retry logic in the current event loop.

    Raises the last error once every attempt has failed; the API and the
    tagging worker cannot do anything useful without the photo store.
    """
    config = build_tortoise_config(db_url)
    for attempt in range(1, max_retries + 1):
        try:
            await Tortoise.init(config=config)
            await Tortoise.generate_schemas(safe=True)
            _logger.info("Database initialized successfully")
            return
        except (DBConnectionError, OSError) as exc:
            if attempt == max_retries:
                _logger.error("Database unavailable after %s attempts: %s", attempt, exc)
                raise
            _logger.info(
                "DB init failed (attempt %s/%s): %s; retrying in %.1fs",
                attempt,
                max_retries,
                exc,
                delay_seconds,
            )
            await asyncio.sleep(delay_seconds)


async def close_db() -> None:
    """Close database connections in the current event loop."""
    await Tortoise.close_connections()
