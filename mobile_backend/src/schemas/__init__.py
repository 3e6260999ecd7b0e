"""
Pydantic schemas for API request/response validation.

This module exports all schema classes for use in API endpoints.
"""

from mobile_backend.src.schemas.query import (
    FilterDto,
    QueryScope,
    QueryDto,
    EntityDto,
    EntityListDto,
)

__all__ = [
    "FilterDto",
    "QueryScope",
    "QueryDto",
    "EntityDto",
    "EntityListDto",
]
