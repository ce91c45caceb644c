import re
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy.orm import Session

from chatcommerce.database import ensure_utc, insert_if_absent
from chatcommerce.logging_config import get_logger
from chatcommerce.models import Conversation
from chatcommerce.services.state_machine import ConversationState

logger = get_logger("conversation_service")

HISTORY_LIMIT = 10

# Context keys that survive a session timeout reset.
PERSISTENT_CONTEXT_KEYS = {"last_order_id", "cart_updated_at"}


class InvalidCustomerId(ValueError):
    pass


class ConcurrentUpdateError(Exception):
    """Conversation row changed since it was read (version mismatch)."""

    def __init__(self, customer_id: str, expected_version: int):
        super().__init__(f"Conversation {customer_id} changed (expected version {expected_version})")
        self.customer_id = customer_id
        self.expected_version = expected_version


def normalize_customer_id(raw: Optional[str]) -> str:
    """Canonical ``+<digits>`` form of a phone-number-like customer id."""
    if raw is None:
        raise InvalidCustomerId("customer id is missing")
    value = str(raw).strip()
    if "@" in value:
        value = value.split("@", 1)[0]
    digits = re.sub(r"\D", "", value)
    if value.startswith("00"):
        digits = digits[2:]
    if not 6 <= len(digits) <= 15:
        raise InvalidCustomerId(f"invalid customer id: {raw!r}")
    return f"+{digits}"


def get_or_create_conversation(db: Session, customer_id: str, now: Optional[datetime] = None) -> Conversation:
    """Load the conversation, inserting a fresh IDLE row on first contact."""
    now = now or datetime.now(timezone.utc)
    created = insert_if_absent(
        db,
        Conversation,
        {
            "customer_id": customer_id,
            "state": ConversationState.IDLE.value,
            "context": {},
            "history": [],
            "version": 0,
            "last_activity_at": now,
            "created_at": now,
        },
        index_elements=["customer_id"],
    )
    if created:
        logger.info("Conversation created", extra={"context": {"customer_id": customer_id}})
    conversation = db.get(Conversation, customer_id, populate_existing=True)
    return conversation


def is_expired(conversation: Conversation, timeout_seconds: int, now: Optional[datetime] = None) -> bool:
    if conversation.state == ConversationState.IDLE.value:
        return False
    last_activity = ensure_utc(conversation.last_activity_at)
    if last_activity is None:
        return False
    now = now or datetime.now(timezone.utc)
    return now - last_activity > timedelta(seconds=timeout_seconds)


def reset_context(context: dict[str, Any]) -> dict[str, Any]:
    """Drop per-flow slots. The cart itself lives in the shop backend and is untouched."""
    return {key: value for key, value in (context or {}).items() if key in PERSISTENT_CONTEXT_KEYS}


def append_history(history: list, entry: dict[str, Any]) -> list:
    entries = list(history or [])
    entries.append(entry)
    return entries[-HISTORY_LIMIT:]


def save_conversation(
    db: Session,
    conversation: Conversation,
    *,
    expected_version: int,
    state: str,
    context: dict[str, Any],
    history: list,
    now: Optional[datetime] = None,
) -> int:
    """Compare-and-set write. Raises ConcurrentUpdateError on a version mismatch.

    Does not commit; the caller owns the transaction so that enqueued jobs and
    the conversation write land together.
    """
    now = now or datetime.now(timezone.utc)
    new_version = expected_version + 1
    updated = (
        db.query(Conversation)
        .filter(
            Conversation.customer_id == conversation.customer_id,
            Conversation.version == expected_version,
        )
        .update(
            {
                Conversation.state: state,
                Conversation.context: context,
                Conversation.history: history,
                Conversation.version: new_version,
                Conversation.last_activity_at: now,
            },
            synchronize_session=False,
        )
    )
    if updated != 1:
        raise ConcurrentUpdateError(conversation.customer_id, expected_version)
    return new_version


def get_conversation(db: Session, customer_id: str) -> Optional[Conversation]:
    return db.get(Conversation, customer_id)


def expire_conversations(db: Session, timeout_seconds: int, now: Optional[datetime] = None, limit: int = 500) -> int:
    """Reset timed-out non-IDLE conversations to IDLE. Returns how many were reset."""
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(seconds=timeout_seconds)
    candidates = (
        db.query(Conversation)
        .filter(Conversation.state != ConversationState.IDLE.value, Conversation.last_activity_at < cutoff)
        .limit(limit)
        .populate_existing()
        .all()
    )
    reset = 0
    for conversation in candidates:
        history = append_history(
            conversation.history,
            {
                "event_id": None,
                "intent": "timeout",
                "from": conversation.state,
                "to": ConversationState.IDLE.value,
                "at": now.isoformat(),
            },
        )
        try:
            save_conversation(
                db,
                conversation,
                expected_version=conversation.version,
                state=ConversationState.IDLE.value,
                context=reset_context(conversation.context),
                history=history,
                now=ensure_utc(conversation.last_activity_at),
            )
        except ConcurrentUpdateError:
            # Customer wrote in meanwhile; their turn handles the reset.
            continue
        reset += 1
    db.commit()
    if reset:
        logger.info("Conversations expired", extra={"context": {"count": reset}})
    return reset
