"""FastAPI application entry point.

Creates the app, configures middleware, and wires up routers.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from gateway.api.health import router as health_router
from gateway.api.keys import router as keys_router
from gateway.api.proxy import router as proxy_router
from gateway.api.usage import router as usage_router
from gateway.config import settings
from gateway.db.pool import close_pool, init_pool
from gateway.middleware.rate_limit import RateLimitMiddleware
from gateway.middleware.usage import UsageMiddleware
from gateway.services import credentials, upstream
from gateway.services.usage import start_usage_recorder, stop_usage_recorder

_DEFAULT_JWT_SECRET = "CHANGE-ME-IN-PRODUCTION"

logger = logging.getLogger(__name__)


def _validate_jwt_secret() -> None:
    """Validate the session-token verification secret at startup.

    Raises RuntimeError in production (DEBUG=False) if the secret is still the
    default value, empty, or shorter than 16 characters.
    """
    secret = settings.JWT_SECRET_KEY
    is_default = secret == _DEFAULT_JWT_SECRET

    if is_default and settings.DEBUG:
        logger.warning("JWT_SECRET_KEY is set to the default value; acceptable for development only")
        return

    if is_default:
        raise RuntimeError(
            "JWT_SECRET_KEY is still the default value. "
            "Set a strong, unique secret before running in production."
        )

    if not secret or len(secret) < 16:
        raise RuntimeError("JWT_SECRET_KEY must be at least 16 characters long.")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application startup and shutdown lifecycle."""
    logging.basicConfig(
        level=logging.DEBUG if settings.DEBUG else logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    logging.getLogger("aiomysql").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    _validate_jwt_secret()
    credentials.check_random_source()

    await init_pool(settings)
    await upstream.init_client(settings)
    await start_usage_recorder(settings)
    yield
    # Flush pending usage writes while the pool is still open.
    await stop_usage_recorder()
    await upstream.close_client()
    await close_pool()


app = FastAPI(
    title=settings.APP_NAME,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware (order matters: the last one added is outermost)
# ---------------------------------------------------------------------------
app.add_middleware(RateLimitMiddleware)
app.add_middleware(UsageMiddleware)

# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------
app.include_router(health_router, tags=["health"])
app.include_router(keys_router, prefix="/api/keys", tags=["api-keys"])
app.include_router(usage_router, prefix="/api/usage", tags=["usage"])
app.include_router(proxy_router, prefix="/api", tags=["proxy"])
