import threading
from unittest.mock import Mock

import pytest
from sqlalchemy.exc import OperationalError

from chatcommerce.models import EventClaim
from chatcommerce.services.idempotency_service import ClaimUnavailableError, IdempotencyGate, build_event_key


class TestBuildEventKey:
    def test_provider_id_wins(self):
        assert build_event_key(" wamid.abc ", "+15551234567", 1700000000, "hi") == "wamid.abc"

    def test_falls_back_to_customer_and_timestamp(self):
        assert build_event_key(None, "+15551234567", 1700000000, "hi") == "+15551234567:1700000000"

    def test_falls_back_to_text_digest(self):
        key = build_event_key("", "+15551234567", None, "hi")
        assert key.startswith("+15551234567:")
        assert key == build_event_key(None, "+15551234567", None, "hi")
        assert key != build_event_key(None, "+15551234567", None, "hello")

    def test_nothing_to_key_on(self):
        assert build_event_key(None, None, None, None) is None


class TestIdempotencyGate:
    def test_first_claim_wins_second_is_duplicate(self, session_factory):
        gate = IdempotencyGate(session_factory)

        assert gate.claim("abc", customer_id="+15551234567") is True
        assert gate.claim("abc", customer_id="+15551234567") is False
        assert gate.is_claimed("abc") is True
        assert gate.is_claimed("xyz") is False

    def test_claim_is_persisted_with_scope(self, session_factory, db_session):
        IdempotencyGate(session_factory).claim("evt-1", customer_id="+15551234567")

        claim = db_session.get(EventClaim, "evt-1")
        assert claim.scope == "webhook"
        assert claim.customer_id == "+15551234567"

    def test_empty_event_id_rejected(self, session_factory):
        with pytest.raises(ValueError):
            IdempotencyGate(session_factory).claim("")

    def test_concurrent_claims_have_exactly_one_winner(self, session_factory):
        gate = IdempotencyGate(session_factory)
        results = []
        lock = threading.Lock()
        start = threading.Barrier(8)

        def worker():
            start.wait()
            try:
                claimed = gate.claim("same-event")
            except ClaimUnavailableError:
                # SQLite may report "database is locked" under contention.
                claimed = None
            with lock:
                results.append(claimed)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count(True) == 1
        assert gate.is_claimed("same-event") is True

    def test_store_failure_raises_claim_unavailable(self):
        db = Mock()
        db.get_bind.return_value.dialect.name = "sqlite"
        db.execute.side_effect = OperationalError("INSERT", {}, Exception("connection refused"))
        gate = IdempotencyGate(lambda: db)

        with pytest.raises(ClaimUnavailableError):
            gate.claim("evt-2")
        db.rollback.assert_called_once()
        db.close.assert_called_once()
