from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from bucketguard.app.core.config import settings
from bucketguard.app.core.logging import get_logger, setup_logging
from bucketguard.app.exceptions import OperationFailure, RateLimiterError
from bucketguard.app.middleware.rate_limit import RateLimitMiddleware, default_key_func
from bucketguard.app.services.token_bucket import (
    TokenBucketRateLimiter,
    get_rate_limiter,
    reset_rate_limiter,
)

HEALTH_PATH = "/health"


def create_app(redis_client: Optional[Any] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        redis_client: Pre-built ``redis.asyncio`` client; when omitted one is
            created from ``settings.redis_url`` on startup and closed on shutdown.

    Returns:
        Configured FastAPI application instance
    """
    setup_logging()
    logger = get_logger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Connect the shared limiter on startup and release Redis on shutdown."""
        owns_client = redis_client is None
        client = redis_client
        if owns_client:
            import redis.asyncio as aioredis
            client = aioredis.from_url(settings.redis_url)

        reset_rate_limiter()
        limiter = get_rate_limiter(client)
        app.state.rate_limiter = limiter
        logger.info(
            "Rate limiter ready",
            extra={"limiter_config": limiter.get_config().to_dict()},
        )

        yield

        reset_rate_limiter()
        if owns_client:
            try:
                await client.aclose()
            except Exception as e:
                logger.warning(f"Error closing Redis connection: {e}")
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="bucketguard",
        description="Distributed token bucket rate limiting backed by Redis",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        RateLimitMiddleware,
        skip=lambda request: request.url.path == HEALTH_PATH,
    )

    @app.exception_handler(RateLimiterError)
    async def rate_limiter_error_handler(request: Request, exc: RateLimiterError) -> JSONResponse:
        if isinstance(exc, OperationFailure):
            content = exc.to_response()
        else:
            content = {"error": "invalid_request", "message": exc.message}
        return JSONResponse(status_code=exc.status_code, content=content)

    def _limiter(request: Request) -> TokenBucketRateLimiter:
        return request.app.state.rate_limiter

    @app.get(HEALTH_PATH)
    async def health() -> dict:
        return {"status": "ok"}

    @app.get("/rate-limit/status")
    async def rate_limit_status(request: Request) -> dict:
        status = await _limiter(request).get_status(default_key_func(request))
        return status.to_dict()

    @app.delete("/rate-limit/{client_id}")
    async def reset_bucket(client_id: str, request: Request) -> dict:
        return {"reset": await _limiter(request).reset(client_id)}

    return app
