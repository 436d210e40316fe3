"""
Pydantic schemas for request/response validation.
"""
from .responses import (
    APIResponse,
    APIMetadata,
    HealthCheckResponse
)

__all__ = [
    'APIResponse',
    'APIMetadata',
    'HealthCheckResponse'
]
