"""
Pydantic schemas for entity query and write requests.

Provides data validation and serialization for:
- Query filters (FilterDto), converted to FilterExpression trees
- List queries with PAST / FUTURE / FUTURE_AND_PAST scopes (QueryDto)
- Entity records and result lists (EntityDto, EntityListDto)

Design:
- Field names on the wire are camelCase, as mobile clients send them
- Filter trees are validated on input so malformed operand counts
  surface as 422 instead of reaching the compiler
- FUTURE scopes require both regId and queryId
"""

import enum
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from mobile_backend.src.utils.filter_expression import FilterExpression, FilterOperator


# ============================================================================
# Filter Schemas
# ============================================================================


class FilterDto(BaseModel):
    """
    Filter tree node as sent by clients.

    Leaf operators (EQ, LT, LE, GT, GE, NE, IN) carry ``values``: the
    property name followed by the operand(s). AND / OR carry ``subfilters``.

    Example:
        >>> FilterDto(operator="GE", values=["priority", 3])
    """

    operator: FilterOperator = Field(..., description="Filter operator")
    values: List[Any] = Field(
        default_factory=list,
        description="Property name followed by operand value(s)",
    )
    subfilters: List["FilterDto"] = Field(
        default_factory=list,
        description="Sub-expressions of AND / OR",
    )

    @model_validator(mode="after")
    def validate_expression(self):
        """Reject trees that do not form a valid filter expression."""
        self.to_expression()
        return self

    def to_expression(self) -> FilterExpression:
        return FilterExpression(
            self.operator,
            tuple(self.values),
            tuple(sub.to_expression() for sub in self.subfilters),
        )

    model_config = {
        "json_schema_extra": {
            "example": {
                "operator": "AND",
                "subfilters": [
                    {"operator": "EQ", "values": ["status", "open"]},
                    {"operator": "GE", "values": ["priority", 3]},
                ],
            }
        }
    }


# ============================================================================
# Query Schemas
# ============================================================================


class QueryScope(str, enum.Enum):
    """Which records a list query covers."""
    PAST = "PAST"
    FUTURE = "FUTURE"
    FUTURE_AND_PAST = "FUTURE_AND_PAST"

    @property
    def includes_past(self) -> bool:
        return self in (QueryScope.PAST, QueryScope.FUTURE_AND_PAST)

    @property
    def includes_future(self) -> bool:
        return self in (QueryScope.FUTURE, QueryScope.FUTURE_AND_PAST)


class QueryDto(BaseModel):
    """
    List query over one kind.

    Required:
        kindName: Kind to query

    Optional:
        filterDto: Filter tree
        sortedPropertyName / sortAscending: Sort on one property
        limit: Maximum number of past results (ignored unless positive)
        scope: PAST (default), FUTURE or FUTURE_AND_PAST
        regId / queryId: Device registration and client query id,
            required when the scope includes FUTURE
        subscriptionDurationSec: Lifetime of the continuous query
            (0 or absent = no expiry)
    """

    kind_name: str = Field(..., alias="kindName", min_length=1, max_length=255)
    filter_dto: Optional[FilterDto] = Field(default=None, alias="filterDto")
    sorted_property_name: Optional[str] = Field(default=None, alias="sortedPropertyName")
    sort_ascending: bool = Field(default=False, alias="sortAscending")
    limit: Optional[int] = Field(default=None)
    scope: QueryScope = Field(default=QueryScope.PAST)
    reg_id: Optional[str] = Field(default=None, alias="regId", max_length=512)
    query_id: Optional[str] = Field(default=None, alias="queryId", max_length=255)
    subscription_duration_sec: Optional[int] = Field(
        default=None,
        alias="subscriptionDurationSec",
        ge=0,
    )

    @field_validator("kind_name")
    @classmethod
    def validate_kind_name_not_whitespace(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("kindName cannot be empty or whitespace")
        return v

    @model_validator(mode="after")
    def validate_subscription_ids(self):
        """FUTURE scopes need a device registration and a query id."""
        if self.scope.includes_future:
            if not self.reg_id:
                raise ValueError("regId is required when scope includes FUTURE")
            if not self.query_id:
                raise ValueError("queryId is required when scope includes FUTURE")
        return self

    def filter_expression(self) -> Optional[FilterExpression]:
        return self.filter_dto.to_expression() if self.filter_dto else None

    model_config = {
        "populate_by_name": True,
        "json_schema_extra": {
            "example": {
                "kindName": "Message",
                "filterDto": {"operator": "GE", "values": ["priority", 3]},
                "scope": "FUTURE_AND_PAST",
                "regId": "ios_3f2a9c",
                "queryId": "q1",
            }
        },
    }


# ============================================================================
# Entity Schemas
# ============================================================================


class EntityDto(BaseModel):
    """
    A record of some kind, as exchanged with clients.

    Metadata fields are set by the server on write; values sent by the
    client for them are ignored.
    """

    id: str = Field(..., min_length=1, max_length=255)
    kind_name: Optional[str] = Field(default=None, alias="kindName", max_length=255)
    properties: Dict[str, Any] = Field(default_factory=dict)
    owner: Optional[str] = Field(default=None)
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")
    created_by: Optional[str] = Field(default=None, alias="createdBy")
    updated_by: Optional[str] = Field(default=None, alias="updatedBy")

    @field_validator("properties")
    @classmethod
    def validate_property_names(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        """Property names starting with "_" are reserved for metadata."""
        for name in v:
            if not name or name.startswith("_"):
                raise ValueError(f"Invalid property name: {name!r}")
        return v

    @classmethod
    def from_entity(cls, entity) -> "EntityDto":
        return cls(
            id=entity.entity_id,
            kind_name=entity.kind_name,
            properties=dict(entity.properties or {}),
            owner=entity.owner,
            created_at=entity.created_at,
            updated_at=entity.updated_at,
            created_by=entity.created_by,
            updated_by=entity.updated_by,
        )

    model_config = {
        "populate_by_name": True,
        "json_schema_extra": {
            "example": {
                "id": "m-1",
                "kindName": "Message",
                "properties": {"text": "hello", "priority": 5},
            }
        },
    }


class EntityListDto(BaseModel):
    """List of records returned by a query."""

    entries: List[EntityDto] = Field(default_factory=list)

    def id_list(self) -> List[str]:
        return [entry.id for entry in self.entries]

    model_config = {"populate_by_name": True}
