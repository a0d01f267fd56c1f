"""Rate limiting middleware.

Thin HTTP adapter around TokenBucketRateLimiter: picks a client key for each
request, consumes (or inspects) that client's bucket and turns the result
into X-RateLimit-* headers or a 429 response.
"""

import hashlib
import inspect
from typing import Awaitable, Callable, Mapping, Optional, Union

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from bucketguard.app.core.config import settings
from bucketguard.app.core.logging import get_log_context, get_logger
from bucketguard.app.exceptions import OperationFailure
from bucketguard.app.services.token_bucket import (
    ConsumeResult,
    TokenBucketRateLimiter,
)
from bucketguard.app.services.token_bucket.protocol import format_number

logger = get_logger(__name__)

DEFAULT_HEADERS = {
    "limit": "X-RateLimit-Limit",
    "remaining": "X-RateLimit-Remaining",
    "reset": "X-RateLimit-Reset",
    "retry_after": "Retry-After",
}

KeyFunc = Callable[[Request], str]
SkipFunc = Callable[[Request], bool]
LimitReachedHandler = Callable[
    [Request, ConsumeResult], Union[Response, Awaitable[Response]]
]


def default_key_func(request: Request) -> str:
    """Get the rate limit client id for the request.

    Uses the bearer API key if available, otherwise the client IP address.
    Both are hashed with SHA-256 so raw keys and addresses never reach Redis.

    Args:
        request: Incoming request

    Returns:
        Client id string (hashed, no sensitive data exposed)
    """
    auth = request.headers.get("Authorization", "")
    if auth.startswith("Bearer "):
        api_key = auth[7:].strip()
        # 32 hex chars (128 bits) for collision resistance
        key_hash = hashlib.sha256(api_key.encode()).hexdigest()[:32]
        return f"apikey:{key_hash}"

    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        client_ip = forwarded.split(",")[0].strip()
    else:
        client_ip = request.client.host if request.client else "unknown"

    ip_hash = hashlib.sha256(client_ip.encode()).hexdigest()[:32]
    return f"ip:{ip_hash}"


class _BaseRateLimitMiddleware(BaseHTTPMiddleware):
    """Shared key selection, skipping and header naming."""

    def __init__(
        self,
        app,
        limiter: Optional[TokenBucketRateLimiter] = None,
        key_func: Optional[KeyFunc] = None,
        skip: Optional[SkipFunc] = None,
        include_headers: Optional[bool] = None,
        headers: Optional[Mapping[str, str]] = None,
    ):
        """Initialize the middleware.

        Args:
            app: ASGI application
            limiter: Limiter to use; None = ``request.app.state.rate_limiter``
            key_func: Maps a request to a client id (default: API key or IP hash)
            skip: Returns True for requests that bypass rate limiting
            include_headers: Emit X-RateLimit-* headers (default from settings)
            headers: Overrides for header names (keys: limit, remaining, reset, retry_after)
        """
        super().__init__(app)
        self._limiter = limiter
        self.key_func = key_func or default_key_func
        self.skip = skip
        self.include_headers = (
            settings.rate_limit_include_headers if include_headers is None else include_headers
        )
        self.headers = {**DEFAULT_HEADERS, **(headers or {})}

    def get_limiter(self, request: Request) -> TokenBucketRateLimiter:
        if self._limiter is not None:
            return self._limiter
        return request.app.state.rate_limiter


class RateLimitMiddleware(_BaseRateLimitMiddleware):
    """Middleware to enforce the token bucket limit on requests.

    Every request that is not skipped consumes one token from its client's
    bucket. When Redis is unavailable the request is let through (fail-open)
    unless ``fail_closed`` is set, in which case it is answered with 503.
    """

    def __init__(
        self,
        app,
        limiter: Optional[TokenBucketRateLimiter] = None,
        key_func: Optional[KeyFunc] = None,
        skip: Optional[SkipFunc] = None,
        on_limit_reached: Optional[LimitReachedHandler] = None,
        include_headers: Optional[bool] = None,
        headers: Optional[Mapping[str, str]] = None,
        fail_closed: Optional[bool] = None,
    ):
        super().__init__(
            app,
            limiter=limiter,
            key_func=key_func,
            skip=skip,
            include_headers=include_headers,
            headers=headers,
        )
        self.on_limit_reached = on_limit_reached
        self.fail_closed = settings.rate_limit_fail_closed if fail_closed is None else fail_closed

    def _set_headers(self, response: Response, capacity, result: ConsumeResult) -> None:
        if not self.include_headers:
            return
        response.headers[self.headers["limit"]] = format_number(capacity)
        response.headers[self.headers["remaining"]] = str(int(result.remaining_tokens))
        if result.retry_after:
            response.headers[self.headers["retry_after"]] = str(result.retry_after)

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        """Process request with rate limiting."""
        if self.skip is not None and self.skip(request):
            return await call_next(request)

        limiter = self.get_limiter(request)
        client_id = self.key_func(request)

        try:
            result = await limiter.consume(client_id)
        except OperationFailure as e:
            context = get_log_context(
                client_id=client_id,
                path=request.url.path,
                method=request.method,
            )
            if self.fail_closed:
                logger.warning(
                    f"Rate limiting fail-closed triggered: {e.message}. Request denied.",
                    extra=context,
                )
                return JSONResponse(status_code=e.status_code, content=e.to_response())
            logger.warning(
                f"Rate limiting fail-open triggered: {e.message}. "
                "Request allowed without rate limit check.",
                extra=context,
            )
            return await call_next(request)

        capacity = limiter.get_config().capacity

        if not result.allowed:
            if self.on_limit_reached is not None:
                response = self.on_limit_reached(request, result)
                if inspect.isawaitable(response):
                    response = await response
            else:
                response = JSONResponse(
                    status_code=429,
                    content={
                        "error": "Too Many Requests",
                        "message": f"Rate limit exceeded. Try again in {result.retry_after} seconds.",
                        "retry_after": result.retry_after,
                    },
                )
            self._set_headers(response, capacity, result)
            return response

        response = await call_next(request)
        self._set_headers(response, capacity, result)
        return response


class RateLimitStatusMiddleware(_BaseRateLimitMiddleware):
    """Middleware that reports bucket status without consuming tokens.

    The status is stored on ``request.state.rate_limit_status`` for
    downstream handlers. Redis failures never block the request.
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        if self.skip is not None and self.skip(request):
            return await call_next(request)

        client_id = self.key_func(request)
        status = None
        try:
            status = await self.get_limiter(request).get_status(client_id)
        except OperationFailure as e:
            logger.warning(
                f"Rate limit status unavailable: {e.message}",
                extra=get_log_context(client_id=client_id, path=request.url.path),
            )

        request.state.rate_limit_status = status
        response = await call_next(request)

        if status is not None and self.include_headers:
            response.headers[self.headers["limit"]] = format_number(status.capacity)
            response.headers[self.headers["remaining"]] = str(status.remaining_tokens)
            if status.reset_epoch is not None:
                response.headers[self.headers["reset"]] = str(status.reset_epoch)
        return response
