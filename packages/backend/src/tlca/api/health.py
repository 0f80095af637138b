"""Health check endpoint.

Learn: Simple GET endpoint that verifies the server is running
and dependencies (Postgres, Redis) are reachable. Redis being down
only degrades the service; auth keeps working without it.
"""

from fastapi import APIRouter
from sqlalchemy import text

from tlca import __version__
from tlca.db import engine as db_engine

router = APIRouter()


@router.get("/health")
async def health_check():
    """Check server health and dependency connectivity."""
    checks = {"server": "ok", "version": __version__}

    # Check the database
    try:
        async with db_engine.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as e:
        checks["database"] = f"error: {e}"

    # Check Redis
    try:
        from tlca.cache import get_redis

        await get_redis().ping()
        checks["redis"] = "ok"
    except Exception as e:
        checks["redis"] = f"error: {e}"

    status = "healthy" if all(
        v == "ok" for k, v in checks.items() if k != "version"
    ) else "degraded"

    return {"status": status, **checks}
