"""FastAPI main application entry point."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import cast

from fastapi import FastAPI

from .broker import broker
from .config import settings
from .consumer import consumer
from .database import db
from .poller import poller
from .routes import router

# Configure logging
log_level: int = cast(int, getattr(logging, settings.log_level.upper()))
logging.basicConfig(
    level=log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger: logging.Logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup and shutdown."""
    # Startup
    logger.info("Starting visit-relay service...")
    await db.connect()
    # Consumer registers itself before connect so it subscribes on every (re)connect
    await consumer.start()
    await broker.connect()
    await poller.start()
    logger.info("Visit-relay service started")

    yield

    # Shutdown
    logger.info("Shutting down visit-relay service...")
    await poller.stop()
    await broker.close()
    await db.disconnect()
    logger.info("Visit-relay service stopped")


app: FastAPI = FastAPI(
    title="Visit Relay",
    description="Matomo visit ingestion with filtered RabbitMQ delivery",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8080)
