"""
Entities API endpoints.

Provides the query surface over CloudEntities plus the minimal write path
that feeds continuous queries:
- List records of a kind (past scope), subscribe to future matches
  (future scope), or both
- Save a record (matching it against live continuous queries)
- Get one record

Design:
- Uses dependency injection for services
- Caller identity comes from the X-User-Id header
- Service errors map to 400 (validation), 401 (anonymous not allowed)
  and 404 (unknown record)
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Path, status

from mobile_backend.src.api.dependencies import (
    get_entity_service,
    get_query_service,
    get_user_id,
)
from mobile_backend.src.schemas.query import EntityDto, EntityListDto, QueryDto
from mobile_backend.src.services.entity_service import EntityService
from mobile_backend.src.services.exceptions import (
    AuthorizationError,
    NotFoundError,
    ValidationError,
)
from mobile_backend.src.services.query_service import QueryService
from mobile_backend.src.utils.logging_config import get_logger


logger = get_logger("api")

router = APIRouter(
    prefix="/v1/entities",
    tags=["Entities"],
)


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, AuthorizationError):
        return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=e.message)
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


# ============================================================================
# API Endpoints
# ============================================================================


@router.post(
    "/list",
    response_model=EntityListDto,
    summary="Query records",
    description="Run a query over past records, subscribe to future matches, or both",
)
async def list_entities(
    query: QueryDto,
    user_id: Optional[str] = Depends(get_user_id),
    query_service: QueryService = Depends(get_query_service),
) -> EntityListDto:
    """
    Run a query.

    The ``scope`` decides what happens:
    - PAST: matching records are returned
    - FUTURE: a continuous query is registered for the device in ``regId``
      and an empty list is returned
    - FUTURE_AND_PAST: both, past results first

    Example:
        POST /api/v1/entities/list
        {
          "kindName": "Message",
          "filterDto": {"operator": "GE", "values": ["priority", 3]},
          "scope": "FUTURE",
          "regId": "ios_3f2a9c...",
          "queryId": "q1"
        }
    """
    try:
        result = query_service.list(query, user_id)
    except (AuthorizationError, ValidationError) as e:
        logger.warning(
            "Query rejected",
            extra={"kind_name": query.kind_name, "error": str(e)}
        )
        raise _http_error(e)

    logger.info(
        "Query executed",
        extra={
            "kind_name": query.kind_name,
            "scope": query.scope.value,
            "results": len(result.entries),
        }
    )
    return result


@router.post(
    "/{kind}",
    response_model=EntityDto,
    summary="Save a record",
    description="Insert or replace a record of a kind and match it against continuous queries",
)
async def save_entity(
    entity: EntityDto,
    kind: str = Path(..., min_length=1, max_length=255),
    user_id: Optional[str] = Depends(get_user_id),
    entity_service: EntityService = Depends(get_entity_service),
) -> EntityDto:
    """
    Save one record.

    The kind in the path wins over any ``kindName`` in the body.
    """
    entity.kind_name = kind
    try:
        saved = entity_service.save_all([entity], user_id)
    except (AuthorizationError, ValidationError) as e:
        logger.warning(
            "Save rejected",
            extra={"kind_name": kind, "error": str(e)}
        )
        raise _http_error(e)

    return EntityDto.from_entity(saved[0])


@router.get(
    "/{kind}/{entity_id}",
    response_model=EntityDto,
    summary="Get a record",
)
async def get_entity(
    kind: str,
    entity_id: str,
    user_id: Optional[str] = Depends(get_user_id),
    entity_service: EntityService = Depends(get_entity_service),
) -> EntityDto:
    try:
        entity = entity_service.get(kind, entity_id, user_id)
    except (AuthorizationError, NotFoundError, ValidationError) as e:
        raise _http_error(e)

    return EntityDto.from_entity(entity)
