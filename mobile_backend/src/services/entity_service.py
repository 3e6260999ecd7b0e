"""
Entity write path.

Stores client records and hands each written record to the
continuous-match service, which is what triggers push notifications for
subscribed queries. Reading back a single record is supported; the rest
of the CRUD surface lives elsewhere.

Every scalar property value is projected into ``EntityProperty`` rows so
list queries can filter on it:
- str  -> str_value (date-like strings also fill num_value with epoch millis)
- int / float -> num_value
- bool -> bool_value
- list -> one row per scalar element
- dict / None -> not indexed
"""

import math
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from mobile_backend.src.models import CloudEntity, EntityProperty
from mobile_backend.src.schemas.query import EntityDto
from mobile_backend.src.services.exceptions import NotFoundError, ValidationError
from mobile_backend.src.utils.filter_expression import KIND_NAME_PROPERTY
from mobile_backend.src.services.prospective_search_service import ProspectiveSearchService
from mobile_backend.src.services.security_service import SecurityService
from mobile_backend.src.utils.logging_config import get_logger
from mobile_backend.src.utils.query_language import parse_date_millis


logger = get_logger("services")


def _index_value(name: str, value: Any) -> Optional[EntityProperty]:
    if isinstance(value, bool):
        return EntityProperty(name=name, bool_value=value)
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return None
        return EntityProperty(name=name, num_value=float(value))
    if isinstance(value, str):
        millis = parse_date_millis(value)
        return EntityProperty(
            name=name,
            str_value=value,
            num_value=float(millis) if millis is not None else None,
        )
    return None


def build_property_index(document: Dict[str, Any]) -> List[EntityProperty]:
    """
    Project a record document into indexed property rows.

    The ``_kindName`` field is not indexed; kinds are a column.
    """
    rows = []
    for name, value in document.items():
        if name == KIND_NAME_PROPERTY:
            continue
        values = value if isinstance(value, list) else [value]
        for element in values:
            row = _index_value(name, element)
            if row is not None:
                rows.append(row)
    return rows


class EntityService:
    """
    Service for writing records and reading them back.

    Usage:
        >>> service = EntityService(db, security, prospective_search)
        >>> service.save_all([EntityDto(id="m-1", kindName="Message",
        ...                             properties={"priority": 5})], user_id=None)
    """

    def __init__(
        self,
        db: Session,
        security: SecurityService,
        prospective_search: ProspectiveSearchService,
    ):
        self.db = db
        self.security = security
        self.prospective_search = prospective_search

    def save_all(
        self,
        entities: Iterable[EntityDto],
        user_id: Optional[str],
    ) -> List[CloudEntity]:
        """
        Insert or update records, then match each against continuous queries.

        Args:
            entities: Records to write; each must carry its kind name
            user_id: Caller (None when anonymous)

        Returns:
            The stored records, in input order

        Raises:
            ValidationError: If a kind is missing or not accessible
            AuthorizationError: If anonymous writes are not allowed
        """
        self.security.check_user_available(user_id)

        saved = []
        # records written earlier in this batch (session is not autoflushed)
        pending: Dict[tuple, CloudEntity] = {}
        now = datetime.utcnow()
        for dto in entities:
            if not dto.kind_name:
                raise ValidationError("kindName is required", field="kindName")
            self.security.check_kind_accessible(dto.kind_name)
            namespace = self.security.namespace_for(dto.kind_name, user_id)

            key = (namespace, dto.kind_name, dto.id)
            entity = pending.get(key) or self._find(*key)
            if entity is None:
                entity = CloudEntity(
                    kind_name=dto.kind_name,
                    entity_id=dto.id,
                    namespace=namespace,
                    owner=user_id,
                    created_at=now,
                    created_by=user_id,
                )
                self.db.add(entity)

            entity.properties = dict(dto.properties)
            entity.updated_at = now
            entity.updated_by = user_id
            entity.indexed_properties = build_property_index(entity.to_document())
            pending[key] = entity
            if entity not in saved:
                saved.append(entity)

        self.db.commit()

        logger.info(
            "Saved entities",
            extra={"count": len(saved), "user_id": user_id}
        )

        for entity in saved:
            self.prospective_search.match(entity.to_document())
        return saved

    def get(self, kind_name: str, entity_id: str, user_id: Optional[str]) -> CloudEntity:
        """
        Get one record.

        Raises:
            NotFoundError: If no such record exists in the caller's namespace
            ValidationError: If the kind is not accessible
        """
        self.security.check_user_available(user_id)
        self.security.check_kind_accessible(kind_name)
        namespace = self.security.namespace_for(kind_name, user_id)

        entity = self._find(namespace, kind_name, entity_id)
        if entity is None:
            raise NotFoundError("CloudEntity", f"{kind_name}/{entity_id}")
        return entity

    def _find(self, namespace: str, kind_name: str, entity_id: str) -> Optional[CloudEntity]:
        return self.db.query(CloudEntity).filter(
            CloudEntity.namespace == namespace,
            CloudEntity.kind_name == kind_name,
            CloudEntity.entity_id == entity_id,
        ).first()
