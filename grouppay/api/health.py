"""Liveness endpoint."""

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from grouppay.api.orders import get_coordinator
from grouppay.config import settings
from grouppay.database import get_session
from grouppay.engine.orchestrator import PaymentCoordinator

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(
    session: AsyncSession = Depends(get_session),
    coordinator: PaymentCoordinator = Depends(get_coordinator),
):
    database = "ok"
    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError:
        database = "unavailable"

    return {
        "status": "ok" if database == "ok" else "degraded",
        "database": database,
        "gateway": coordinator.workflow.gateway_name,
        "api_version": settings.api_version,
    }
