"""
List queries over client records, past and future.

A query's scope decides what runs:
- PAST: the filter runs against stored records and the results are returned
- FUTURE: the filter is registered as a continuous query for the caller's
  device and an empty result is returned
- FUTURE_AND_PAST: both, past first

Future queries are recorded in the device's subscription record so the
subscription can be found and removed again when the device goes away.
"""

from typing import Optional

from sqlalchemy import Integer, cast, func, select
from sqlalchemy.orm import Session

from mobile_backend.src.models import CloudEntity, EntityProperty
from mobile_backend.src.schemas.query import EntityDto, EntityListDto, QueryDto
from mobile_backend.src.services.device_subscription_service import DeviceSubscriptionService
from mobile_backend.src.services.exceptions import ValidationError
from mobile_backend.src.utils.filter_expression import compile_kind_query
from mobile_backend.src.services.prospective_search_service import ProspectiveSearchService
from mobile_backend.src.services.security_service import SecurityService
from mobile_backend.src.services.subscription_ids import (
    DEFAULT_TOPIC,
    construct_sub_id,
    get_mobile_type,
)
from mobile_backend.src.utils.logging_config import get_logger


logger = get_logger("services")

# Continuous queries never expire unless the client asks for a lifetime
DEFAULT_SUBSCRIPTION_DURATION_SEC = 0


class QueryService:
    """
    Service executing list queries.

    Usage:
        >>> service = QueryService(db, prospective_search, device_subscriptions, security)
        >>> result = service.list(QueryDto(kindName="Message", scope="PAST"), user_id=None)
    """

    def __init__(
        self,
        db: Session,
        prospective_search: ProspectiveSearchService,
        device_subscriptions: DeviceSubscriptionService,
        security: SecurityService,
    ):
        self.db = db
        self.prospective_search = prospective_search
        self.device_subscriptions = device_subscriptions
        self.security = security

    def list(self, query: QueryDto, user_id: Optional[str]) -> EntityListDto:
        """
        Run a list query.

        Raises:
            ValidationError: If the kind is not accessible, a FUTURE scope
                lacks regId / queryId, or the filter cannot be expressed
                as a continuous query
            AuthorizationError: If anonymous calls are not allowed
        """
        self.security.check_user_available(user_id)
        self.security.check_kind_accessible(query.kind_name)

        if query.scope.includes_past:
            result = self._execute_query(query, user_id)
        else:
            result = EntityListDto()

        if query.scope.includes_future:
            self._add_query_subscriber(query)
        return result

    def _execute_query(self, query: QueryDto, user_id: Optional[str]) -> EntityListDto:
        namespace = self.security.namespace_for(query.kind_name, user_id)

        statement = select(CloudEntity).where(
            CloudEntity.namespace == namespace,
            CloudEntity.kind_name == query.kind_name,
        )

        expression = query.filter_expression()
        if expression is not None:
            statement = statement.where(expression.compile_to_store_filter())

        if query.sorted_property_name:
            statement = self._apply_sort(
                statement, query.sorted_property_name, query.sort_ascending
            )
        else:
            statement = statement.order_by(CloudEntity.id.asc())

        if query.limit is not None and query.limit > 0:
            statement = statement.limit(query.limit)

        entities = self.db.execute(statement).scalars().all()
        return EntityListDto(entries=[EntityDto.from_entity(entity) for entity in entities])

    @staticmethod
    def _apply_sort(statement, property_name: str, ascending: bool):
        """
        Order by an indexed property. Records without the property are
        excluded; list properties sort by their smallest (ascending) or
        largest (descending) value.
        """
        aggregate = func.min if ascending else func.max
        sort_values = (
            select(
                EntityProperty.entity_pk.label("entity_pk"),
                aggregate(cast(EntityProperty.bool_value, Integer)).label("bool_key"),
                aggregate(EntityProperty.num_value).label("num_key"),
                aggregate(EntityProperty.str_value).label("str_key"),
            )
            .where(EntityProperty.name == property_name)
            .group_by(EntityProperty.entity_pk)
            .subquery()
        )

        statement = statement.join(sort_values, sort_values.c.entity_pk == CloudEntity.id)
        keys = (sort_values.c.bool_key, sort_values.c.num_key, sort_values.c.str_key)
        if ascending:
            ordering = [key.asc().nulls_last() for key in keys]
        else:
            ordering = [key.desc().nulls_last() for key in keys]
        return statement.order_by(*ordering, CloudEntity.id.asc())

    def _add_query_subscriber(self, query: QueryDto) -> str:
        if not query.reg_id or not query.query_id:
            raise ValidationError(
                "regId and queryId are required for FUTURE queries",
                field="regId",
            )

        sub_id = construct_sub_id(query.reg_id, query.query_id)
        try:
            cq_query, schema = compile_kind_query(query.kind_name, query.filter_expression())
        except ValueError as e:
            raise ValidationError(str(e), field="filterDto")

        duration = query.subscription_duration_sec
        if duration is None:
            duration = DEFAULT_SUBSCRIPTION_DURATION_SEC

        self.prospective_search.subscribe(DEFAULT_TOPIC, sub_id, duration, cq_query, schema)
        self.device_subscriptions.create(get_mobile_type(query.reg_id), query.reg_id, sub_id)

        logger.info(
            "Added query subscriber",
            extra={
                "subscription_id": sub_id,
                "query": cq_query,
                "duration_sec": duration,
            }
        )
        return sub_id
