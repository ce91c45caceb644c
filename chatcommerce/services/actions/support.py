from datetime import datetime, timezone
from typing import Any, Callable, Optional

from chatcommerce.logging_config import get_logger
from chatcommerce.services.action_registry import ActionResult
from chatcommerce.services.message_builder import button_message, text_message
from chatcommerce.services.store_gateway import CartGateway

logger = get_logger("actions.support")

HANDOFF_TEXT = "A member of our team will reply here shortly."
HANDOFF_STATUS_TEXT = "You're waiting for a team member. Send 'menu' any time to go back to the shop."


class SupportActions:
    def __init__(self, notify: Optional[Callable[[str, str, dict], bool]] = None):
        self.notify = notify

    def request_human(self, customer_id: str, args: dict[str, Any], context: dict[str, Any]) -> ActionResult:
        logger.info("Human handoff requested", extra={"context": {"customer_id": customer_id}})
        if self.notify is not None:
            self.notify("INFO", "Customer asked for a human", {"customer_id": customer_id})
        return ActionResult.ok(
            [button_message(HANDOFF_TEXT, [("menu", "Back to shop")])],
            context_updates={"handoff_requested_at": datetime.now(timezone.utc).isoformat()},
        )

    def show_handoff_status(self, customer_id: str, args: dict[str, Any], context: dict[str, Any]) -> ActionResult:
        return ActionResult.ok([text_message(HANDOFF_STATUS_TEXT)])


class ReminderActions:
    def __init__(self, carts: CartGateway):
        self.carts = carts

    def send_cart_reminder(self, customer_id: str, args: dict[str, Any], context: dict[str, Any]) -> ActionResult:
        cart = self.carts.get_cart(customer_id)
        if cart.is_empty:
            return ActionResult.ok()
        count = sum(item.quantity for item in cart.items)
        noun = "item" if count == 1 else "items"
        return ActionResult.ok(
            [
                button_message(
                    f"You still have {count} {noun} waiting in your cart.",
                    [("checkout", "Checkout"), ("cart", "View cart")],
                )
            ]
        )
