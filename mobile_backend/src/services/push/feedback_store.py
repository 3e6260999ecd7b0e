"""
Durable feedback channel for APNS.

Every ``ApnsSender`` records the tokens the gateway rejected as invalid
into the ``apns_feedback_tokens`` table; ``ApnsSender.feedback()`` drains
it. Delivery workers and feedback polling usually run in different
processes, so the channel lives in the database rather than on a sender.
"""

from datetime import datetime
from typing import Callable, Iterable, List, Optional

from sqlalchemy.orm import Session

from mobile_backend.src.models import ApnsFeedbackToken
from mobile_backend.src.utils.logging_config import get_logger


logger = get_logger("services")


class ApnsFeedbackStore:
    """
    Records and drains device tokens reported invalid.

    Usage:
        >>> store = ApnsFeedbackStore(SessionLocal)
        >>> store.record(["a1b2..."])
        >>> store.drain()
        ['a1b2...']
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def record(self, device_tokens: Iterable[str], reported_at: Optional[datetime] = None) -> int:
        """
        Remember tokens the gateway rejected. Re-reported tokens only get
        a newer timestamp.

        Returns:
            Number of distinct tokens recorded
        """
        tokens = list(dict.fromkeys(token for token in device_tokens if token))
        if not tokens:
            return 0

        reported_at = reported_at or datetime.utcnow()
        db = self.session_factory()
        try:
            for token in tokens:
                db.merge(ApnsFeedbackToken(device_token=token, reported_at=reported_at))
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        return len(tokens)

    def drain(self) -> List[str]:
        """
        Return and forget every token reported so far, oldest first.

        A token re-reported while draining keeps its newer row and is
        returned by the next drain.
        """
        db = self.session_factory()
        try:
            rows = db.query(ApnsFeedbackToken).order_by(
                ApnsFeedbackToken.reported_at.asc(),
                ApnsFeedbackToken.device_token.asc(),
            ).all()
            if not rows:
                return []

            tokens = [row.device_token for row in rows]
            drained_up_to = max(row.reported_at for row in rows)
            db.query(ApnsFeedbackToken).filter(
                ApnsFeedbackToken.device_token.in_(tokens),
                ApnsFeedbackToken.reported_at <= drained_up_to,
            ).delete(synchronize_session=False)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        logger.info("Drained APNS feedback", extra={"count": len(tokens)})
        return tokens
