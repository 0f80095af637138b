"""FastAPI application factory.

Learn: App factory pattern: create_app() returns a configured FastAPI
instance. Lifespan manages startup/shutdown (database, Redis).
Middleware, CORS, and routers all registered here.
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tlca import __version__
from tlca.api import api_router
from tlca.config import settings
from tlca.logging_config import configure_logging

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle.

    Anything before `yield` runs at startup, after `yield` runs at shutdown.
    """
    logger.info(
        "tlca.starting",
        version=__version__,
        environment=settings.environment,
        port=settings.port,
    )

    from tlca.cache import close_redis, init_redis
    try:
        await init_redis()
        logger.info("tlca.redis_connected", url=settings.redis_url)
    except Exception as e:
        # Redis is optional; only rate limiting depends on it
        logger.warning("tlca.redis_unavailable", error=str(e))

    yield

    logger.info("tlca.shutdown")
    await close_redis()

    from tlca.db.engine import engine
    await engine.dispose()


def create_app() -> FastAPI:
    """Build and return the FastAPI application."""
    configure_logging(settings.log_level, json_logs=settings.environment != "development")

    app = FastAPI(
        title="TLCA API",
        description="Accounts and sessions for the TLCA learning platform",
        version=__version__,
        lifespan=lifespan,
    )

    # ── Middleware stack ──────────────────────────────────────
    # Note: Starlette middleware executes in reverse order of registration.
    # Request flow: CORS → RateLimit → Security → RequestId → handler

    from tlca.middleware.rate_limit import RateLimitMiddleware
    from tlca.middleware.request_id import RequestIdMiddleware
    from tlca.middleware.security import SecurityHeadersMiddleware

    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        RateLimitMiddleware,
        default_rpm=settings.rate_limit_rpm,
        auth_rpm=settings.rate_limit_auth_rpm,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router)

    return app


# Default app instance (used by uvicorn: tlca.main:app)
app = create_app()
