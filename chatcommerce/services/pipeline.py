"""Inbound event processing: classify, transition, act, persist.

One event is handled under a per-customer lock. The conversation write and
the outbound ``send_message`` jobs are committed in one transaction guarded
by a compare-and-set on ``Conversation.version``; a lost race re-runs the
whole turn against the fresh row.
"""

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterator, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from chatcommerce.logging_config import get_logger
from chatcommerce.schemas.webhook import InboundEvent
from chatcommerce.services import conversation_service
from chatcommerce.services.action_registry import ActionRegistry, fallback_message
from chatcommerce.services.conversation_service import ConcurrentUpdateError
from chatcommerce.services.intent_service import Intent, IntentClassifier
from chatcommerce.services.job_hooks import SEND_MESSAGE
from chatcommerce.services.job_queue import JobQueue
from chatcommerce.services.state_machine import ConversationState, expects_free_text, transition

logger = get_logger("pipeline")

MAX_CONFLICT_RETRIES = 3


class KeyedLocks:
    """In-process mutex per key, dropped once nobody holds or waits on it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, list] = {}  # key -> [lock, users]

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


@dataclass
class TurnOutcome:
    event_id: str
    customer_id: str
    status: str  # processed, failed
    from_state: Optional[str] = None
    to_state: Optional[str] = None
    intent: Optional[str] = None
    actions: list[str] = field(default_factory=list)
    messages_enqueued: int = 0
    attempts: int = 0


def apply_context_updates(context: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    """Merge updates into context; a None value deletes the key."""
    merged = dict(context)
    for key, value in updates.items():
        if value is None:
            merged.pop(key, None)
        else:
            merged[key] = value
    return merged


class ConversationPipeline:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        classifier: IntentClassifier,
        registry: ActionRegistry,
        queue: JobQueue,
        *,
        conversation_timeout_seconds: int = 1800,
        max_conflict_retries: int = MAX_CONFLICT_RETRIES,
        locks: Optional[KeyedLocks] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.session_factory = session_factory
        self.classifier = classifier
        self.registry = registry
        self.queue = queue
        self.conversation_timeout_seconds = conversation_timeout_seconds
        self.max_conflict_retries = max_conflict_retries
        self.locks = locks or KeyedLocks()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def process(self, event: InboundEvent) -> TurnOutcome:
        """Run one claimed event to completion. Never raises."""
        start = time.monotonic()
        with self.locks.hold(event.customer_id):
            for attempt in range(1, self.max_conflict_retries + 2):
                try:
                    outcome = self._process_once(event)
                except ConcurrentUpdateError:
                    logger.info(
                        "Conversation changed concurrently, retrying turn",
                        extra={"context": {"event_id": event.event_id, "customer_id": event.customer_id, "attempt": attempt}},
                    )
                    continue
                except Exception as exc:
                    logger.error(
                        "Event processing failed",
                        exc_info=True,
                        extra={"context": {"event_id": event.event_id, "customer_id": event.customer_id, "error": str(exc)}},
                    )
                    return self._fail(event, attempt)

                outcome.attempts = attempt
                logger.info(
                    "Event processed",
                    extra={
                        "context": {
                            "event_id": event.event_id,
                            "customer_id": event.customer_id,
                            "intent": outcome.intent,
                            "from_state": outcome.from_state,
                            "to_state": outcome.to_state,
                            "actions": outcome.actions,
                            "messages": outcome.messages_enqueued,
                            "elapsed_ms": round((time.monotonic() - start) * 1000, 2),
                        }
                    },
                )
                return outcome

            logger.error(
                "Conversation conflict retries exhausted",
                extra={"context": {"event_id": event.event_id, "customer_id": event.customer_id}},
            )
            return self._fail(event, self.max_conflict_retries + 1)

    def _process_once(self, event: InboundEvent) -> TurnOutcome:
        now = self._clock()
        db = self.session_factory()
        try:
            conversation = conversation_service.get_or_create_conversation(db, event.customer_id, now=now)
            db.commit()

            expected_version = conversation.version
            from_state = self._current_state(conversation)
            state = from_state
            context = dict(conversation.context or {})
            if conversation_service.is_expired(conversation, self.conversation_timeout_seconds, now=now):
                logger.info(
                    "Conversation timed out, resetting",
                    extra={"context": {"customer_id": event.customer_id, "state": state.value}},
                )
                state = ConversationState.IDLE
                context = conversation_service.reset_context(context)

            intent = self.classifier.classify(
                event.text,
                event.reply_id,
                state=state.value,
                expecting_free_text=expects_free_text(state),
            )
            new_state, invocations = transition(state, intent, context)

            messages: list[dict[str, Any]] = []
            working_context = context
            for invocation in invocations:
                result = self.registry.execute(invocation.action, event.customer_id, invocation.args, working_context)
                if not result.success:
                    # The turn is all-or-nothing: keep the pre-turn state and slots.
                    new_state = state
                    working_context = context
                    messages = list(result.messages)
                    break
                messages.extend(result.messages)
                working_context = apply_context_updates(working_context, result.context_updates)

            history = conversation_service.append_history(
                conversation.history,
                self._history_entry(event, intent, from_state, new_state, now),
            )
            conversation_service.save_conversation(
                db,
                conversation,
                expected_version=expected_version,
                state=new_state.value,
                context=working_context,
                history=history,
                now=now,
            )
            for message in messages:
                self.queue.enqueue(
                    db,
                    SEND_MESSAGE,
                    {"customer_id": event.customer_id, "message": message, "event_id": event.event_id},
                )
            db.commit()
        except BaseException:
            db.rollback()
            raise
        finally:
            db.close()

        return TurnOutcome(
            event_id=event.event_id,
            customer_id=event.customer_id,
            status="processed",
            from_state=from_state.value,
            to_state=new_state.value,
            intent=intent.type.value,
            actions=[invocation.action.value for invocation in invocations],
            messages_enqueued=len(messages),
        )

    def _current_state(self, conversation) -> ConversationState:
        try:
            return ConversationState(conversation.state)
        except ValueError:
            logger.warning(
                "Unknown conversation state, treating as IDLE",
                extra={"context": {"customer_id": conversation.customer_id, "state": conversation.state}},
            )
            return ConversationState.IDLE

    def _history_entry(
        self,
        event: InboundEvent,
        intent: Intent,
        from_state: ConversationState,
        to_state: ConversationState,
        now: datetime,
    ) -> dict[str, Any]:
        return {
            "event_id": event.event_id,
            "intent": intent.type.value,
            "confidence": intent.confidence,
            "source": intent.source,
            "from": from_state.value,
            "to": to_state.value,
            "at": now.isoformat(),
        }

    def _fail(self, event: InboundEvent, attempts: int) -> TurnOutcome:
        """Best effort: tell the customer something went wrong."""
        enqueued = 0
        db = self.session_factory()
        try:
            self.queue.enqueue(
                db,
                SEND_MESSAGE,
                {"customer_id": event.customer_id, "message": fallback_message(), "event_id": event.event_id},
            )
            db.commit()
            enqueued = 1
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error(
                "Could not enqueue fallback message",
                extra={"context": {"event_id": event.event_id, "customer_id": event.customer_id, "error": str(exc)}},
            )
        finally:
            db.close()
        return TurnOutcome(
            event_id=event.event_id,
            customer_id=event.customer_id,
            status="failed",
            messages_enqueued=enqueued,
            attempts=attempts,
        )
