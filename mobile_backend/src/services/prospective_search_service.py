"""
Continuous-match (prospective search) service.

Stores standing queries and evaluates newly written records against
them. Each match is reported as the list of matched subscription ids to
the ``on_match`` callback, which the application wires to the
notification pipeline.

Subscriptions are scoped to a topic; the backend uses one topic for
every client query (``DEFAULT_TOPIC``).
"""

from datetime import datetime, timedelta
from functools import lru_cache
from typing import Any, Callable, List, Mapping, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from mobile_backend.src.models import ProspectiveSubscription
from mobile_backend.src.services.subscription_ids import DEFAULT_TOPIC
from mobile_backend.src.utils.logging_config import get_logger
from mobile_backend.src.utils.query_language import (
    QueryPredicate,
    QuerySyntaxError,
    normalize_schema,
    parse_query,
    validate_query,
)


logger = get_logger("services")

MatchCallback = Callable[[List[str]], None]


@lru_cache(maxsize=4096)
def _compiled(query: str) -> QueryPredicate:
    return parse_query(query)


class ProspectiveSearchService:
    """
    Standing-query registry and matcher.

    Usage:
        >>> psi = ProspectiveSearchService(db, on_match=dispatch)
        >>> psi.subscribe(DEFAULT_TOPIC, "dev1:query:q1", 0, query, schema)
        >>> psi.match({"_kindName": "Message", "priority": 5})
        ['dev1:query:q1']
    """

    def __init__(self, db: Session, on_match: Optional[MatchCallback] = None):
        self.db = db
        self.on_match = on_match

    def subscribe(
        self,
        topic: str,
        sub_id: str,
        duration_sec: int,
        query: str,
        schema: Mapping[str, Any],
    ) -> ProspectiveSubscription:
        """
        Register (or replace) a standing query.

        Args:
            topic: Topic the query listens on
            sub_id: Subscription id
            duration_sec: Lifetime in seconds; 0 or less never expires
            query: Continuous-query string
            schema: Field name to FieldType

        Raises:
            QuerySyntaxError: If the query is malformed or uses fields
                missing from the schema
        """
        validate_query(query, schema)

        now = datetime.utcnow()
        expires_at = now + timedelta(seconds=duration_sec) if duration_sec and duration_sec > 0 else None

        subscription = self.db.get(ProspectiveSubscription, (topic, sub_id))
        if subscription is None:
            subscription = ProspectiveSubscription(topic=topic, subscription_id=sub_id)
            self.db.add(subscription)

        subscription.query = query
        subscription.schema = normalize_schema(schema)
        subscription.expires_at = expires_at
        subscription.created_at = now
        self.db.commit()

        logger.info(
            "Continuous query subscribed",
            extra={
                "topic": topic,
                "subscription_id": sub_id,
                "query": query,
                "duration_sec": duration_sec,
            }
        )
        return subscription

    def unsubscribe(self, topic: str, sub_id: str) -> None:
        """
        Remove a standing query.

        Raises:
            ValueError: If no such subscription exists
        """
        subscription = self.db.get(ProspectiveSubscription, (topic, sub_id))
        if subscription is None:
            raise ValueError(f"Unknown subscription {sub_id} on topic {topic}")

        self.db.delete(subscription)
        self.db.commit()
        logger.debug("Continuous query unsubscribed", extra={"subscription_id": sub_id})

    def match(self, document: Mapping[str, Any], topic: str = DEFAULT_TOPIC) -> List[str]:
        """
        Evaluate a record against every live subscription of a topic.

        Returns:
            Matched subscription ids (also passed to ``on_match`` when
            there is at least one)
        """
        now = datetime.utcnow()
        subscriptions = self.db.query(ProspectiveSubscription).filter(
            ProspectiveSubscription.topic == topic,
            or_(
                ProspectiveSubscription.expires_at.is_(None),
                ProspectiveSubscription.expires_at > now,
            ),
        ).order_by(ProspectiveSubscription.subscription_id.asc()).all()

        matched = []
        for subscription in subscriptions:
            try:
                predicate = _compiled(subscription.query)
            except QuerySyntaxError as e:
                logger.warning(
                    "Stored continuous query does not parse",
                    extra={"subscription_id": subscription.subscription_id, "error": str(e)}
                )
                continue
            if predicate.matches(document):
                matched.append(subscription.subscription_id)

        if matched:
            logger.info(
                "Record matched continuous queries",
                extra={"topic": topic, "matched": len(matched)}
            )
            if self.on_match is not None:
                self.on_match(matched)
        return matched

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete expired subscriptions. Returns the number removed."""
        now = now or datetime.utcnow()
        removed = self.db.query(ProspectiveSubscription).filter(
            ProspectiveSubscription.expires_at.isnot(None),
            ProspectiveSubscription.expires_at <= now,
        ).delete()
        self.db.commit()
        if removed:
            logger.info("Purged expired continuous queries", extra={"count": removed})
        return removed

    def list_subscriptions(self, topic: str = DEFAULT_TOPIC) -> List[ProspectiveSubscription]:
        return self.db.query(ProspectiveSubscription).filter(
            ProspectiveSubscription.topic == topic
        ).order_by(ProspectiveSubscription.subscription_id.asc()).all()

    def get_subscription(self, topic: str, sub_id: str) -> Optional[ProspectiveSubscription]:
        return self.db.get(ProspectiveSubscription, (topic, sub_id))

