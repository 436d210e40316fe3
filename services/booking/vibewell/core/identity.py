"""
Caller identity used as the rate-limit subject.
"""
import hashlib

from fastapi import Request


def client_ip(request: Request) -> str:
    """First hop of X-Forwarded-For when behind a proxy, else the socket peer."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "unknown"


def subject_for(request: Request) -> str:
    """
    Rate-limit subject in order of preference: user id, API key digest, client IP.

    API keys are never stored raw in Redis keys or logs.
    """
    user_id = request.headers.get("X-User-Id")
    if user_id:
        return f"user:{user_id.strip()}"

    api_key = request.headers.get("X-API-Key")
    if api_key:
        return f"key:{hashlib.sha256(api_key.encode()).hexdigest()[:16]}"

    return f"ip:{client_ip(request)}"
