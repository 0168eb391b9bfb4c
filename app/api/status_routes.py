"""
Status routes - Liveness and database health.
"""

import asyncio
from datetime import UTC, datetime

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text

from app.db.session import Database, get_database
from app.models.api import HealthResponse
from app.observability.logging import get_logger

logger = get_logger(__name__)
router = APIRouter(tags=["status"])

CHECK_TIMEOUT = 5.0  # seconds


async def check_database(database: Database) -> bool:
    """Run SELECT 1 with a timeout."""
    try:
        async with database.session() as session:
            await asyncio.wait_for(session.execute(text("SELECT 1")), timeout=CHECK_TIMEOUT)
        return True
    except Exception as e:
        logger.warning("health_check_database_failed", error=str(e))
        return False


@router.get("/health", response_model=HealthResponse)
async def health(database: Database = Depends(get_database)) -> JSONResponse:
    """503 when the database is unreachable, so load balancers drain the instance."""
    healthy = await check_database(database)
    body = HealthResponse(
        status="healthy" if healthy else "unhealthy",
        database="connected" if healthy else "unreachable",
        timestamp=datetime.now(UTC),
    )
    return JSONResponse(
        status_code=200 if healthy else 503,
        content=body.model_dump(mode="json"),
    )
