"""Entry point for the appointment calling service.

Run with ``uvicorn main:app`` from ``src/`` (or after ``pip install -e .``).
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from api.routes import router as api_router
from config.settings import get_settings
from db.base import init_db
from telephony.preflight import can_stream, detect_capabilities

LOGGER = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    capabilities = detect_capabilities(settings)
    LOGGER.info(
        "Appointment caller ready (environment=%s, media streams %s)",
        settings.environment,
        "available" if settings.twilio_enable_media_streams and can_stream(capabilities) else "off",
    )
    yield


settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

app = FastAPI(
    title="Appointment Caller",
    description="Places phone calls that book appointments through a spoken dialog.",
    lifespan=lifespan,
)
app.include_router(api_router, prefix="/api")
