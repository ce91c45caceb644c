from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from chatcommerce.database import insert_if_absent
from chatcommerce.logging_config import get_logger
from chatcommerce.models import EventClaim

logger = get_logger("idempotency")

SCOPE_WEBHOOK = "webhook"


class ClaimUnavailableError(Exception):
    """The claim store could not be reached; the event must be redelivered."""


def build_event_key(
    event_id: str | None,
    customer_id: str | None,
    timestamp: int | None,
    text: str | None,
) -> str | None:
    """Stable idempotency key, derived when the provider omits a message id."""
    if event_id and event_id.strip():
        return event_id.strip()
    if customer_id and timestamp is not None:
        return f"{customer_id}:{timestamp}"
    if customer_id and text:
        digest = hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]
        return f"{customer_id}:{digest}"
    return None


class IdempotencyGate:
    """Permanent, atomic claims on inbound event ids."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def claim(self, event_id: str, *, customer_id: str | None = None, scope: str = SCOPE_WEBHOOK) -> bool:
        """True exactly once per event id. Raises ClaimUnavailableError if the store fails."""
        if not event_id:
            raise ValueError("event_id is required")

        db = self._session_factory()
        try:
            inserted = insert_if_absent(
                db,
                EventClaim,
                {
                    "event_id": event_id,
                    "scope": scope,
                    "customer_id": customer_id,
                    "claimed_at": datetime.now(timezone.utc),
                },
                index_elements=["event_id"],
            )
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error(
                "Claim store unavailable",
                extra={"context": {"event_id": event_id, "error": str(exc)}},
            )
            raise ClaimUnavailableError(str(exc)) from exc
        finally:
            db.close()

        if not inserted:
            logger.info(
                "Duplicate event",
                extra={"context": {"event_id": event_id, "customer_id": customer_id, "scope": scope}},
            )
        return inserted

    def is_claimed(self, event_id: str) -> bool:
        db = self._session_factory()
        try:
            return db.get(EventClaim, event_id) is not None
        finally:
            db.close()
