from typing import List, Optional

from pydantic import BaseModel, Field


class BlockRequest(BaseModel):
    action: str = Field(..., description="Rate limit category to block")
    seconds: Optional[int] = Field(None, gt=0, description="Block duration; defaults to the category penalty")


class ResetResult(BaseModel):
    subject: str
    action: Optional[str] = None
    keys_deleted: int


class BlockedSubjectOut(BaseModel):
    subject: str
    action: str
    retry_after: int


class BlockResult(BaseModel):
    subject: str
    action: str
    retry_after: int
    reset_at: int


class RateLimitEventOut(BaseModel):
    id: str
    subject: str
    action: str
    kind: str
    path: Optional[str] = None
    method: Optional[str] = None
    remaining: Optional[int] = None
    reset_at: Optional[int] = None
    timestamp: int


class RateLimitEvents(BaseModel):
    events: List[RateLimitEventOut]
