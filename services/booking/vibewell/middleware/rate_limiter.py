"""
HTTP enforcement of the distributed rate limiter.

Routes declare a category with ``Depends(enforce_rate_limit("payments"))``.
Allowed calls get X-RateLimit-* headers; denied calls raise RateLimited,
rendered as an RFC-7807 429 with Retry-After.
"""
from fastapi import Depends, Request, Response

from vibewell.core.identity import subject_for
from vibewell.deps.services import get_rate_limiter
from vibewell.obs.errors import RateLimited
from vibewell.obs.logging import get_logger
from vibewell.services.rate_limiter import RateLimitDecision, RateLimiter

logger = get_logger(__name__)


def _is_exempt_route(request: Request) -> bool:
    """Check if route is exempt from rate limiting."""
    exempt_paths = [
        "/health",
        "/ready",
        "/metrics",
        "/docs",
        "/redoc",
        "/openapi.json",
    ]
    return any(request.url.path.startswith(path) for path in exempt_paths)


def enforce_rate_limit(category: str):
    """Build a dependency that consumes one point of ``category`` for the caller."""

    async def dependency(
        request: Request,
        response: Response,
        limiter: RateLimiter = Depends(get_rate_limiter),
    ) -> RateLimitDecision:
        subject = subject_for(request)
        request.state.subject = subject

        if not limiter.enabled or _is_exempt_route(request):
            policy = limiter.policy_for(category)
            request.state.rate_limit = RateLimitDecision(True, policy.limit, policy.limit, 0, action=policy.action)
            return request.state.rate_limit

        decision = limiter.check_and_consume(
            subject,
            category,
            path=request.url.path,
            method=request.method,
        )
        request.state.rate_limit = decision

        if not decision.allowed:
            logger.warning(
                f"Rate limit hit: {category}",
                extra={
                    'subject': subject,
                    'action': category,
                    'route': request.url.path,
                    'method': request.method,
                    'retry_after': decision.retry_after,
                    'trace_id': getattr(request.state, 'trace_id', None),
                },
            )
            raise RateLimited(
                retry_after=decision.retry_after,
                reset_at=decision.reset_at,
                limit=decision.limit,
                action=decision.action,
                blocked=decision.blocked,
            )

        for name, value in decision.headers().items():
            response.headers[name] = value
        return decision

    dependency.__name__ = f"enforce_rate_limit_{category}"
    return dependency
