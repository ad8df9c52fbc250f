"""
Bookflow Backend — Health Check Route
=======================================

What:  Health check endpoint for monitoring and load balancer probes.
Why:   Production systems need health checks to determine if the service can handle
       traffic. Load balancers use this to route away from unhealthy instances.
How:   Runs `SELECT 1` against the database and reports the aggregate status.
Who:   Called by Docker health checks, load balancers, and monitoring systems.

Status levels:
    - healthy:   Database reachable
    - unhealthy: Database unreachable (the API cannot serve any shelf or
                 catalog request without it)

OpenLibrary and Supabase Auth are not probed: a slow upstream should not
take the instance out of rotation, and their failures already surface as
502 responses on the endpoints that need them.
"""

import logging
import time

from fastapi import APIRouter
from sqlalchemy import text

from bookflow import __version__
from bookflow.database import engine
from bookflow.schemas.common import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

# Module-level: set once when the module loads
_start_time = time.time()


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Service health check",
)
async def health_check() -> HealthResponse:
    db_status = "connected"
    overall = "healthy"

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        db_status = "disconnected"
        overall = "unhealthy"
        logger.warning("Health check: database unreachable: %s", str(e))

    return HealthResponse(
        status=overall,
        version=__version__,
        database=db_status,
        uptime_seconds=round(time.time() - _start_time, 2),
    )
