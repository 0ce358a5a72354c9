"""FastAPI server for Brain Bits (provider webhooks and health checks)"""

from __future__ import annotations

import sqlite3

from dotenv import load_dotenv
from fastapi import FastAPI

from brainbits.api.routes.health import router as health_router
from brainbits.api.routes.webhooks import router as webhooks_router
from brainbits.config import API_HOST, API_PORT, APP_VERSION
from brainbits.infrastructure.database import init_database
from brainbits.observability.logging import get_logger

# Load environment variables from .env file
load_dotenv()

logger = get_logger(__name__)

app = FastAPI(title="Brain Bits API", version=APP_VERSION)

# Initialize database schema (idempotent - safe to run on every startup)
try:
    init_database()
    logger.info("Database initialization complete")
except sqlite3.OperationalError as e:
    logger.critical("Database schema error: %s", e)
    raise RuntimeError(f"Database initialization failed: {e}") from e

app.include_router(health_router)
app.include_router(webhooks_router)


def main() -> None:
    import uvicorn

    uvicorn.run("brainbits.api.app:app", host=API_HOST, port=API_PORT)
