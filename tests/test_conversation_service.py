from datetime import timedelta

import pytest

from chatcommerce.database import ensure_utc
from chatcommerce.models import Conversation
from chatcommerce.services import conversation_service
from chatcommerce.services.conversation_service import (
    HISTORY_LIMIT,
    ConcurrentUpdateError,
    InvalidCustomerId,
    append_history,
    normalize_customer_id,
    reset_context,
)

CUSTOMER = "+15551234567"


class TestNormalizeCustomerId:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("15551234567", "+15551234567"),
            ("+1 (555) 123-4567", "+15551234567"),
            ("0015551234567", "+15551234567"),
            ("15551234567@s.whatsapp.net", "+15551234567"),
        ],
    )
    def test_valid(self, raw, expected):
        assert normalize_customer_id(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "12345", "1" * 16, "not-a-number"])
    def test_invalid(self, raw):
        with pytest.raises(InvalidCustomerId):
            normalize_customer_id(raw)


class TestGetOrCreate:
    def test_first_contact_creates_idle_row(self, db_session, clock):
        conversation = conversation_service.get_or_create_conversation(db_session, CUSTOMER, now=clock())
        db_session.commit()

        assert conversation.state == "IDLE"
        assert conversation.context == {}
        assert conversation.history == []
        assert conversation.version == 0

    def test_second_call_returns_same_row(self, db_session, clock):
        conversation_service.get_or_create_conversation(db_session, CUSTOMER, now=clock())
        db_session.commit()
        conversation_service.get_or_create_conversation(db_session, CUSTOMER, now=clock())
        db_session.commit()

        assert db_session.query(Conversation).count() == 1


class TestSaveConversation:
    def test_compare_and_set_bumps_version(self, db_session, clock):
        conversation = conversation_service.get_or_create_conversation(db_session, CUSTOMER, now=clock())
        new_version = conversation_service.save_conversation(
            db_session,
            conversation,
            expected_version=0,
            state="CART_REVIEW",
            context={"product_id": 5},
            history=[{"intent": "view_cart"}],
            now=clock(),
        )
        db_session.commit()

        stored = conversation_service.get_or_create_conversation(db_session, CUSTOMER)
        assert new_version == 1
        assert stored.version == 1
        assert stored.state == "CART_REVIEW"
        assert stored.context == {"product_id": 5}

    def test_stale_version_rejected(self, db_session, session_factory, clock):
        conversation = conversation_service.get_or_create_conversation(db_session, CUSTOMER, now=clock())
        db_session.commit()

        other = session_factory()
        try:
            theirs = conversation_service.get_or_create_conversation(other, CUSTOMER)
            conversation_service.save_conversation(
                other, theirs, expected_version=0, state="IDLE", context={}, history=[], now=clock()
            )
            other.commit()
        finally:
            other.close()

        with pytest.raises(ConcurrentUpdateError) as exc_info:
            conversation_service.save_conversation(
                db_session, conversation, expected_version=0, state="CART_REVIEW", context={}, history=[]
            )
        assert exc_info.value.expected_version == 0


class TestExpiry:
    def test_idle_never_expires(self, db_session, clock):
        conversation = conversation_service.get_or_create_conversation(db_session, CUSTOMER, now=clock())
        assert conversation_service.is_expired(conversation, 60, now=clock() + timedelta(days=1)) is False

    def test_active_state_expires_after_timeout(self, db_session, clock):
        conversation = conversation_service.get_or_create_conversation(db_session, CUSTOMER, now=clock())
        conversation.state = "CART_REVIEW"
        assert conversation_service.is_expired(conversation, 1800, now=clock() + timedelta(seconds=1800)) is False
        assert conversation_service.is_expired(conversation, 1800, now=clock() + timedelta(seconds=1801)) is True

    def test_reset_context_keeps_persistent_keys(self):
        context = {"product_id": 5, "address": "x", "last_order_id": "1000", "cart_updated_at": "2026-03-02"}
        assert reset_context(context) == {"last_order_id": "1000", "cart_updated_at": "2026-03-02"}

    def test_expire_conversations(self, db_session, clock):
        conversation = conversation_service.get_or_create_conversation(db_session, CUSTOMER, now=clock())
        conversation_service.save_conversation(
            db_session,
            conversation,
            expected_version=0,
            state="AWAITING_ADDRESS",
            context={"checkout_id": "abc", "cart_updated_at": "2026-03-02T12:00:00+00:00"},
            history=[],
            now=clock(),
        )
        db_session.commit()
        last_activity = clock()

        assert conversation_service.expire_conversations(db_session, 1800, now=clock() + timedelta(minutes=10)) == 0
        assert conversation_service.expire_conversations(db_session, 1800, now=clock() + timedelta(hours=1)) == 1

        stored = db_session.get(Conversation, CUSTOMER, populate_existing=True)
        assert stored.state == "IDLE"
        assert stored.context == {"cart_updated_at": "2026-03-02T12:00:00+00:00"}
        assert stored.version == 2
        assert stored.history[-1]["intent"] == "timeout"
        assert ensure_utc(stored.last_activity_at) == last_activity


class TestHistory:
    def test_history_is_bounded(self):
        history = []
        for n in range(HISTORY_LIMIT + 5):
            history = append_history(history, {"n": n})
        assert len(history) == HISTORY_LIMIT
        assert history[0] == {"n": 5}
        assert history[-1] == {"n": HISTORY_LIMIT + 4}
