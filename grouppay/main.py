"""
Group Payment Engine: Tourism Bank batch transfer API.

Registers batch payment orders with the bank, reconciles them through the
readiness, execution and detailed-inquiry phases, and keeps an immutable
audit trail of every bank interaction.

Start the server:
    uvicorn grouppay.main:app --reload
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from grouppay.api.health import router as health_router
from grouppay.api.orders import get_coordinator
from grouppay.api.orders import router as orders_router
from grouppay.config import settings
from grouppay.database import close_db, init_db

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup, release connections on shutdown."""
    await init_db()
    yield
    await get_coordinator().workflow.aclose()
    await close_db()


app = FastAPI(
    title="Group Payment Engine",
    description=(
        "Batch transfer orchestration for the Tourism Bank group-payment API. "
        "Register once, poll readiness, execute at most once, reconcile per line."
    ),
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health_router)
app.include_router(orders_router, prefix="/api")
