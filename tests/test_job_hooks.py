from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import Mock

import pytest

from chatcommerce.models import Job
from chatcommerce.schemas.webhook import InboundEvent
from chatcommerce.services.job_hooks import (
    EXPIRE_CONVERSATIONS,
    SEND_CART_REMINDER,
    SEND_MESSAGE,
    SWEEP_STALE_CARTS,
    SYNC_STOCK,
    BuiltinHooks,
)
from chatcommerce.services.job_queue import JobQueue, JobStatus
from chatcommerce.services.messaging_client import MessagingError
from chatcommerce.services.pipeline import ConversationPipeline
from chatcommerce.services.store_gateway import StoreError

CUSTOMER = "+15551234567"


@pytest.fixture
def env(container, session_factory, clock, messaging, store, alert):
    queue = JobQueue(session_factory, alert=alert, clock=clock)
    hooks = BuiltinHooks(
        queue,
        session_factory,
        messaging,
        store,
        container.registry,
        conversation_timeout_seconds=1800,
        stale_cart_after_minutes=120,
    )
    hooks.register()
    pipeline = ConversationPipeline(
        session_factory,
        container.classifier,
        container.registry,
        queue,
        conversation_timeout_seconds=1800,
        clock=clock,
    )
    counter = iter(range(1, 1000))

    def reply(reply_id):
        event = InboundEvent(
            event_id=f"evt-{next(counter)}",
            customer_id=CUSTOMER,
            payload={},
            received_at=datetime.now(timezone.utc),
            reply_id=reply_id,
        )
        return pipeline.process(event)

    return SimpleNamespace(queue=queue, hooks=hooks, pipeline=pipeline, reply=reply)


def jobs_for(session_factory, hook):
    db = session_factory()
    try:
        return db.query(Job).filter(Job.hook == hook).all()
    finally:
        db.close()


def drain(queue, rounds=3):
    for _ in range(rounds):
        queue.run_due_jobs(50)


class TestSendMessage:
    def test_delivers_through_messaging_client(self, env, messaging):
        env.queue.dispatch(SEND_MESSAGE, {"customer_id": CUSTOMER, "message": {"type": "text", "text": {"body": "hi"}}})

        assert env.queue.run_due_jobs() == {"succeeded": 1}
        assert messaging.sent == [(CUSTOMER, {"type": "text", "text": {"body": "hi"}})]

    def test_provider_error_is_retried(self, env, messaging, session_factory):
        messaging.fail_with = MessagingError("provider returned 503", status_code=503)
        env.queue.dispatch(SEND_MESSAGE, {"customer_id": CUSTOMER, "message": {"type": "text", "text": {"body": "hi"}}})

        assert env.queue.run_due_jobs() == {"failed": 1}
        job = jobs_for(session_factory, SEND_MESSAGE)[0]
        assert "provider returned 503" in job.last_error


class TestSyncStock:
    def test_fans_out_into_batches(self, env, store, session_factory):
        env.queue.dispatch(SYNC_STOCK, {"product_ids": [5, 6, 7], "batch_size": 2})

        assert env.queue.run_due_jobs() == {"succeeded": 1}
        assert env.queue.run_due_jobs() == {"succeeded": 2}

        batch_jobs = [job for job in jobs_for(session_factory, SYNC_STOCK) if "batch" in job.args]
        assert sorted(job.args["batch_num"] for job in batch_jobs) == [1, 2]
        results = [job.result["value"] for job in batch_jobs]
        assert sum(result["checked"] for result in results) == 3
        assert [6] in [result["out_of_stock"] for result in results]
        assert ("stock", (5, 6)) in store.calls

    def test_missing_product_ids_fails(self, env):
        env.queue.dispatch(SYNC_STOCK, {})
        assert env.queue.run_due_jobs() == {"failed": 1}

    def test_store_outage_abandons_after_three_attempts(self, env, store, clock, alert, session_factory):
        store.get_stock_levels = Mock(side_effect=StoreError("store API unavailable"))
        env.queue.dispatch(SYNC_STOCK, {"batch": [5, 6], "batch_num": 1, "batch_total": 1})

        assert env.queue.run_due_jobs() == {"failed": 1}
        clock.advance(60)
        assert env.queue.run_due_jobs() == {"failed": 1}
        clock.advance(300)
        assert env.queue.run_due_jobs() == {"abandoned": 1}
        clock.advance(3600)
        assert env.queue.run_due_jobs() == {}

        assert store.get_stock_levels.call_count == 3
        job = jobs_for(session_factory, SYNC_STOCK)[0]
        assert job.status == JobStatus.ABANDONED.value
        alert.assert_called_once()


class TestCartReminders:
    def _abandon_cart(self, env, clock):
        env.reply("product_5")
        env.reply("add_5")
        drain(env.queue)
        clock.advance(121 * 60)

    def test_idle_cart_gets_one_reminder(self, env, clock, messaging, session_factory):
        self._abandon_cart(env, clock)
        sent_before = len(messaging.sent)

        assert env.hooks.sweep_stale_carts({}) == {"candidates": 1, "dispatched": 1}
        drain(env.queue)

        reminders = messaging.sent[sent_before:]
        assert len(reminders) == 1
        assert reminders[0][0] == CUSTOMER
        assert "1 item waiting in your cart" in reminders[0][1]["interactive"]["body"]["text"]

    def test_checkout_button_works_after_conversation_expired(self, env, clock, messaging):
        self._abandon_cart(env, clock)
        assert env.hooks.expire_conversations({}) == {"reset": 1}
        env.hooks.sweep_stale_carts({})
        drain(env.queue)
        buttons = messaging.sent[-1][1]["interactive"]["action"]["buttons"]
        assert buttons[0]["reply"]["id"] == "checkout"

        outcome = env.reply("checkout")

        assert outcome.from_state == "IDLE"
        assert outcome.to_state == "AWAITING_ADDRESS"
        assert outcome.actions == ["request_address"]

    def test_frequency_cap_suppresses_second_reminder(self, env, clock, messaging):
        self._abandon_cart(env, clock)
        env.hooks.sweep_stale_carts({})
        drain(env.queue)
        sent_after_first = len(messaging.sent)

        env.hooks.sweep_stale_carts({})
        drain(env.queue)

        assert len(messaging.sent) == sent_after_first

    def test_reminder_skipped_when_customer_moved_on(self, env, clock, session_factory):
        self._abandon_cart(env, clock)
        env.hooks.sweep_stale_carts({})
        env.reply("menu")

        reminder = jobs_for(session_factory, SEND_CART_REMINDER)[0]
        result = env.hooks.send_cart_reminder(reminder.args)

        assert result == {"sent": 0, "skipped": "stale"}

    def test_empty_cart_sends_nothing(self, env, clock, store, session_factory):
        self._abandon_cart(env, clock)
        store.clear_cart(CUSTOMER)
        env.hooks.sweep_stale_carts({})
        reminder = jobs_for(session_factory, SEND_CART_REMINDER)[0]

        assert env.hooks.send_cart_reminder(reminder.args) == {"sent": 0}

    def test_fresh_conversation_not_swept(self, env, clock):
        env.reply("product_5")
        env.reply("add_5")
        clock.advance(30 * 60)

        assert env.hooks.sweep_stale_carts({})["dispatched"] == 0

    def test_conversation_without_cart_not_swept(self, env, clock):
        env.reply("category_12")
        clock.advance(121 * 60)

        assert env.hooks.sweep_stale_carts({}) == {"candidates": 1, "dispatched": 0}

    def test_week_old_cart_left_alone(self, env, clock):
        self._abandon_cart(env, clock)
        clock.advance(timedelta(days=8).total_seconds())

        assert env.hooks.sweep_stale_carts({})["dispatched"] == 0


class TestExpireConversations:
    def test_resets_timed_out_conversations(self, env, clock):
        env.reply("cart")
        clock.advance(1801)

        assert env.hooks.expire_conversations({}) == {"reset": 1}
        assert env.hooks.expire_conversations({}) == {"reset": 0}


class TestRecurring:
    def test_register_recurring_schedules_maintenance(self, env, session_factory):
        env.hooks.register_recurring()

        fired = env.queue.fire_recurring()

        assert len(fired) == 2
        hooks = {job.hook for job in env.queue.list_jobs()}
        assert hooks == {EXPIRE_CONVERSATIONS, SWEEP_STALE_CARTS}
