"""
Safety engine process entry point.
"""
import asyncio
import logging
import signal
import sys
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import httpx
from pydantic import ValidationError

from fleet_safety import __version__
from fleet_safety.core.cache import create_redis
from fleet_safety.core.config import Settings, get_settings
from fleet_safety.core.database import close_db, create_engine, init_db
from fleet_safety.core.exceptions import ConfigurationError
from fleet_safety.engine import SafetyEngine

logger = logging.getLogger(__name__)


def load_settings() -> Settings:
    try:
        return get_settings()
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e


@asynccontextmanager
async def lifespan(settings: Settings) -> AsyncIterator[SafetyEngine]:
    """Initialize dependencies, run the engine, and tear everything down."""
    logger.info(f"Starting fleet safety engine v{__version__}")

    db_engine = create_engine(settings)
    await init_db(db_engine)

    redis_client = create_redis(settings.redis_url)
    try:
        await redis_client.ping()
        logger.info(f"Connected to Redis at {settings.redis_url}")
    except Exception as e:
        # Keep running; the health check reports the outage
        logger.error(f"Redis unavailable at startup: {e}")

    http = httpx.AsyncClient(timeout=settings.http_timeout)
    engine = SafetyEngine(settings, db_engine, redis_client, http)

    await engine.start()
    try:
        yield engine
    finally:
        logger.info("Shutting down fleet safety engine")
        await engine.stop()
        await http.aclose()
        await redis_client.aclose()
        await close_db(db_engine)


async def run(settings: Settings, stop_event: Optional[asyncio.Event] = None):
    stop_event = stop_event or asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    async with lifespan(settings):
        await stop_event.wait()


def main():
    try:
        settings = load_settings()
    except ConfigurationError as e:
        logging.basicConfig(level=logging.INFO)
        logger.critical(str(e))
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    asyncio.run(run(settings))


if __name__ == "__main__":
    main()
