import uuid
from typing import Any, Iterable

from chatcommerce.logging_config import get_logger
from chatcommerce.services.action_registry import ActionResult
from chatcommerce.services.actions.cart import cart_summary
from chatcommerce.services.message_builder import button_message, format_price, text_message
from chatcommerce.services.store_gateway import CartGateway, OrderGateway

logger = get_logger("actions.checkout")

DEFAULT_PAYMENT_METHODS = (("card", "Card"), ("cod", "Cash on delivery"))
MIN_ADDRESS_LENGTH = 10
MAX_ADDRESS_LENGTH = 500

CHECKOUT_KEYS = ("checkout_id", "address", "payment_method")

ADDRESS_PROMPT = "Please type your delivery address (street, number, city and postcode)."


class CheckoutActions:
    def __init__(
        self,
        carts: CartGateway,
        orders: OrderGateway,
        payment_methods: Iterable[tuple[str, str]] = DEFAULT_PAYMENT_METHODS,
    ):
        self.carts = carts
        self.orders = orders
        self.payment_methods = tuple(payment_methods)

    def request_address(self, customer_id: str, args: dict[str, Any], context: dict[str, Any]) -> ActionResult:
        cart = self.carts.get_cart(customer_id)
        if cart.is_empty:
            return ActionResult.failed(
                "empty_cart",
                [button_message("Your cart is empty, add something first.", [("menu", "Start shopping")])],
            )
        checkout_id = context.get("checkout_id") or uuid.uuid4().hex
        return ActionResult.ok([text_message(ADDRESS_PROMPT)], context_updates={"checkout_id": checkout_id})

    def save_address(self, customer_id: str, args: dict[str, Any], context: dict[str, Any]) -> ActionResult:
        address = " ".join((args.get("text") or "").split())
        if not MIN_ADDRESS_LENGTH <= len(address) <= MAX_ADDRESS_LENGTH or not any(ch.isdigit() for ch in address):
            return ActionResult.failed(
                "invalid_address",
                [text_message("That doesn't look like a full address. " + ADDRESS_PROMPT)],
            )
        return ActionResult.ok(
            [text_message(f"Delivering to: {address}")],
            context_updates={"address": address},
        )

    def request_payment_method(self, customer_id: str, args: dict[str, Any], context: dict[str, Any]) -> ActionResult:
        buttons = [(f"pay_{method}", label) for method, label in self.payment_methods]
        return ActionResult.ok([button_message("How would you like to pay?", buttons)])

    def save_payment_method(self, customer_id: str, args: dict[str, Any], context: dict[str, Any]) -> ActionResult:
        method = args.get("payment_method")
        labels = dict(self.payment_methods)
        if method not in labels:
            return ActionResult.failed(
                "unsupported_payment_method",
                [text_message("That payment method is not available.")]
                + self.request_payment_method(customer_id, args, context).messages,
            )

        cart = self.carts.get_cart(customer_id)
        summary = "\n".join(
            [
                cart_summary(cart),
                f"Deliver to: {context.get('address', '-')}",
                f"Payment: {labels[method]}",
            ]
        )
        return ActionResult.ok(
            [text_message(summary), button_message("Confirm your order?", [("confirm", "Confirm"), ("cancel", "Cancel")])],
            context_updates={"payment_method": method},
        )

    def confirm_order(self, customer_id: str, args: dict[str, Any], context: dict[str, Any]) -> ActionResult:
        address = context.get("address")
        payment_method = context.get("payment_method")
        if not address:
            return ActionResult.failed("missing_address", [text_message(ADDRESS_PROMPT)])
        if not payment_method:
            return ActionResult.failed(
                "missing_payment_method", self.request_payment_method(customer_id, args, context).messages
            )

        cart = self.carts.get_cart(customer_id)
        if cart.is_empty:
            return ActionResult.failed(
                "empty_cart",
                [button_message("Your cart is empty, add something first.", [("menu", "Start shopping")])],
            )

        # The checkout id makes a replayed confirmation land on the same order.
        idempotency_key = f"{customer_id}:{context.get('checkout_id') or 'default'}"
        order = self.orders.place_order(customer_id, cart, address, payment_method, idempotency_key)
        self.carts.clear_cart(customer_id)
        logger.info(
            "Order placed",
            extra={"context": {"customer_id": customer_id, "order_id": order.order_id, "total": order.total}},
        )

        updates: dict[str, Any] = {key: None for key in CHECKOUT_KEYS}
        updates["last_order_id"] = order.order_id
        updates["cart_updated_at"] = None
        text = f"Order #{order.order_id} confirmed! Total {format_price(order.total, order.currency)}. Thank you!"
        return ActionResult.ok([button_message(text, [("menu", "Main menu")])], context_updates=updates)

    def clear_checkout(self, customer_id: str, args: dict[str, Any], context: dict[str, Any]) -> ActionResult:
        return ActionResult.ok(context_updates={key: None for key in CHECKOUT_KEYS})
