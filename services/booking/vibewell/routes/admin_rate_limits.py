"""
Admin remediation for rate limits (support escalations).

Every route requires X-Admin-Token and is itself rate limited under "admin".
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from vibewell.deps.admin_auth import require_admin
from vibewell.deps.services import get_rate_limiter
from vibewell.middleware.rate_limiter import enforce_rate_limit
from vibewell.obs.logging import get_logger
from vibewell.schemas.rate_limits import (
    BlockedSubjectOut,
    BlockRequest,
    BlockResult,
    RateLimitEventOut,
    RateLimitEvents,
    ResetResult,
)
from vibewell.schemas.responses import APIResponse, meta_for
from vibewell.services.rate_limiter import RateLimiter

logger = get_logger(__name__)

router = APIRouter(
    prefix="/admin/rate-limits",
    tags=["admin"],
    dependencies=[Depends(require_admin), Depends(enforce_rate_limit("admin"))],
)


def _require_store(limiter: RateLimiter):
    if limiter.store is None:
        raise HTTPException(status_code=503, detail="Rate limiting store is not configured")


def _require_known_action(limiter: RateLimiter, action: Optional[str]):
    if action is not None and action not in limiter.policies:
        raise HTTPException(status_code=404, detail=f"Unknown rate limit action: {action}")


@router.get("/blocked", response_model=APIResponse[List[BlockedSubjectOut]])
async def list_blocked(request: Request, limiter: RateLimiter = Depends(get_rate_limiter)):
    _require_store(limiter)
    blocked = [
        BlockedSubjectOut(subject=b.subject, action=b.action, retry_after=b.retry_after)
        for b in limiter.blocked_subjects()
    ]
    return APIResponse(data=blocked, meta=meta_for(request))


@router.get("/events", response_model=APIResponse[RateLimitEvents])
async def list_events(
    request: Request,
    limit: int = Query(100, ge=1, le=1000),
    limiter: RateLimiter = Depends(get_rate_limiter),
):
    _require_store(limiter)
    events = [RateLimitEventOut(**event) for event in limiter.recent_events(limit)]
    return APIResponse(data=RateLimitEvents(events=events), meta=meta_for(request))


@router.delete("/{subject}", response_model=APIResponse[ResetResult])
async def reset_subject(
    subject: str,
    request: Request,
    action: Optional[str] = Query(None),
    limiter: RateLimiter = Depends(get_rate_limiter),
):
    """Clear counters and blocks for a subject, for one action or all of them."""
    _require_store(limiter)
    _require_known_action(limiter, action)
    deleted = limiter.reset(subject, action)
    logger.info(
        "Admin reset rate limit state",
        extra={'subject': subject, 'action': action or "*", 'trace_id': getattr(request.state, 'trace_id', None)},
    )
    return APIResponse(data=ResetResult(subject=subject, action=action, keys_deleted=deleted), meta=meta_for(request))


@router.post("/{subject}/block", response_model=APIResponse[BlockResult])
async def block_subject(
    subject: str,
    payload: BlockRequest,
    request: Request,
    limiter: RateLimiter = Depends(get_rate_limiter),
):
    _require_store(limiter)
    _require_known_action(limiter, payload.action)
    decision = limiter.block(subject, payload.action, payload.seconds)
    return APIResponse(
        data=BlockResult(
            subject=subject,
            action=decision.action,
            retry_after=decision.retry_after,
            reset_at=decision.reset_at,
        ),
        meta=meta_for(request),
    )
