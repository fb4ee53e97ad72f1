"""Entry point for the phone-call relay service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from api.dependencies import shutdown_coordinator
from api.routes import router as api_router
from config.settings import get_settings
from db.base import dispose_db, init_db


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    yield
    await shutdown_coordinator()
    await dispose_db()


settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

app = FastAPI(
    title="AI Call Relay",
    description="Relays Twilio phone calls to the OpenAI Realtime API.",
    lifespan=lifespan,
)
app.include_router(api_router, prefix="/api")
