from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Iterable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from chatcommerce.logging_config import get_logger
from chatcommerce.models import SentMessageLog

logger = get_logger("action_registry")

FALLBACK_MESSAGE = "Sorry, something went wrong. Please try again."


class ActionName(str, Enum):
    SHOW_MAIN_MENU = "show_main_menu"
    SHOW_CATEGORY = "show_category"
    SEARCH_PRODUCTS = "search_products"
    SHOW_PRODUCT = "show_product"
    SELECT_VARIANT = "select_variant"
    ADD_TO_CART = "add_to_cart"
    REMOVE_FROM_CART = "remove_from_cart"
    SHOW_CART = "show_cart"
    REQUEST_ADDRESS = "request_address"
    SAVE_ADDRESS = "save_address"
    REQUEST_PAYMENT_METHOD = "request_payment_method"
    SAVE_PAYMENT_METHOD = "save_payment_method"
    CONFIRM_ORDER = "confirm_order"
    CLEAR_CHECKOUT = "clear_checkout"
    REQUEST_HUMAN = "request_human"
    SHOW_HANDOFF_STATUS = "show_handoff_status"
    SEND_CART_REMINDER = "send_cart_reminder"


@dataclass
class ActionResult:
    success: bool = True
    messages: list[dict[str, Any]] = field(default_factory=list)
    context_updates: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @staticmethod
    def ok(messages: Iterable[dict] = (), context_updates: Optional[dict] = None) -> "ActionResult":
        return ActionResult(success=True, messages=list(messages), context_updates=dict(context_updates or {}))

    @staticmethod
    def failed(error: str, messages: Iterable[dict] = ()) -> "ActionResult":
        return ActionResult(success=False, messages=list(messages), error=error)


# customer_id, args, conversation context (read-only copy)
ActionHandler = Callable[[str, dict[str, Any], dict[str, Any]], ActionResult]


class UnknownActionError(Exception):
    """Executing an action that was never registered. A programming error."""


class RegistryFrozenError(Exception):
    pass


@dataclass(frozen=True)
class FrequencyCap:
    """At most ``max_count`` sends per customer within ``window``."""

    max_count: int
    window: timedelta


class FrequencyCapPolicy:
    """Shared cap check for actions that message customers unprompted."""

    def __init__(self, session_factory: Callable[[], Session], clock: Callable[[], datetime] | None = None):
        self._session_factory = session_factory
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def allows(self, customer_id: str, policy_key: str, caps: Iterable[FrequencyCap]) -> bool:
        now = self._clock()
        db = self._session_factory()
        try:
            for cap in caps:
                count = (
                    db.query(func.count(SentMessageLog.id))
                    .filter(
                        SentMessageLog.customer_id == customer_id,
                        SentMessageLog.policy_key == policy_key,
                        SentMessageLog.sent_at > now - cap.window,
                    )
                    .scalar()
                )
                if count >= cap.max_count:
                    return False
            return True
        finally:
            db.close()

    def record(self, customer_id: str, policy_key: str) -> None:
        db = self._session_factory()
        try:
            db.add(SentMessageLog(customer_id=customer_id, policy_key=policy_key, sent_at=self._clock()))
            db.commit()
        finally:
            db.close()


@dataclass
class _Registration:
    handler: ActionHandler
    caps: tuple[FrequencyCap, ...] = ()


class ActionRegistry:
    """Maps ActionName to handlers. Populated at startup, then frozen."""

    def __init__(self, frequency_policy: Optional[FrequencyCapPolicy] = None):
        self._registrations: dict[ActionName, _Registration] = {}
        self._frozen = False
        self._frequency_policy = frequency_policy

    def register(self, name: ActionName, handler: ActionHandler, *, caps: Iterable[FrequencyCap] = ()) -> "ActionRegistry":
        if self._frozen:
            raise RegistryFrozenError(f"Cannot register {name.value}: registry is frozen")
        if not isinstance(name, ActionName):
            raise TypeError(f"Action name must be an ActionName, got {name!r}")
        caps = tuple(caps)
        if caps and self._frequency_policy is None:
            raise ValueError(f"{name.value} declares frequency caps but no policy is configured")
        self._registrations[name] = _Registration(handler=handler, caps=caps)
        return self

    def freeze(self) -> "ActionRegistry":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def has(self, name: ActionName) -> bool:
        return name in self._registrations

    def registered_actions(self) -> list[ActionName]:
        return list(self._registrations)

    def execute(
        self,
        name: ActionName,
        customer_id: str,
        args: dict[str, Any],
        conversation_context: dict[str, Any],
    ) -> ActionResult:
        registration = self._registrations.get(name)
        if registration is None:
            raise UnknownActionError(f"No handler registered for action {name!r}")

        if registration.caps and not self._frequency_policy.allows(customer_id, name.value, registration.caps):
            logger.info(
                "Action skipped by frequency cap",
                extra={"context": {"action": name.value, "customer_id": customer_id}},
            )
            return ActionResult.ok()

        try:
            result = registration.handler(customer_id, dict(args), dict(conversation_context))
        except Exception as exc:
            logger.error(
                "Action handler failed",
                exc_info=True,
                extra={"context": {"action": name.value, "customer_id": customer_id, "error": str(exc)}},
            )
            return ActionResult.failed(str(exc), messages=[fallback_message()])

        if not result.success:
            logger.warning(
                "Action returned failure",
                extra={"context": {"action": name.value, "customer_id": customer_id, "error": result.error}},
            )
            if not result.messages:
                result.messages = [fallback_message()]
        elif registration.caps and result.messages:
            self._frequency_policy.record(customer_id, name.value)

        return result


def fallback_message() -> dict[str, Any]:
    return {"type": "text", "text": {"body": FALLBACK_MESSAGE}}
