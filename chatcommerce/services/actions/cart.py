from datetime import datetime, timezone
from typing import Any

from chatcommerce.logging_config import get_logger
from chatcommerce.services.action_registry import ActionResult
from chatcommerce.services.message_builder import button_message, format_price, list_message, text_message
from chatcommerce.services.store_gateway import Cart, CartGateway, CatalogGateway

logger = get_logger("actions.cart")


def cart_summary(cart: Cart) -> str:
    lines = ["*Your cart*"]
    for item in cart.items:
        lines.append(f"{item.quantity} x {item.name or item.product_id}: {format_price(item.line_total, cart.currency)}")
    lines.append(f"Total: {format_price(cart.total, cart.currency)}")
    return "\n".join(lines)


class CartActions:
    """Cart handlers. Every write sets an absolute quantity, so replays are harmless."""

    def __init__(self, catalog: CatalogGateway, carts: CartGateway):
        self.catalog = catalog
        self.carts = carts

    def add_to_cart(self, customer_id: str, args: dict[str, Any], context: dict[str, Any]) -> ActionResult:
        product_id = args.get("product_id")
        quantity = int(args.get("quantity") or 1)
        if not product_id:
            return ActionResult.failed(
                "missing_product",
                [button_message("Which product would you like? Pick one from the menu.", [("menu", "Main menu")])],
            )

        product = self.catalog.get_product(int(product_id))
        if product is None:
            return ActionResult.failed(
                "product_unavailable",
                [button_message("Sorry, that product is no longer available.", [("menu", "Main menu")])],
            )

        variation_id = args.get("variation_id")
        unit_price = product.price
        stock = product.stock
        label = product.name
        if product.variations:
            variation = product.variation(int(variation_id)) if variation_id else None
            if variation is None:
                rows = [(f"variant_{v.id}", v.name, format_price(v.price, product.currency)) for v in product.variations]
                return ActionResult.failed(
                    "variation_required",
                    [list_message(f"Choose an option for {product.name} first:", "Options", rows)],
                )
            unit_price = variation.price
            stock = variation.stock
            label = f"{product.name} ({variation.name})"
        else:
            variation_id = None

        if stock is not None and quantity > stock:
            message = "Sorry, this product is out of stock." if stock <= 0 else f"Sorry, only {stock} left in stock."
            return ActionResult.failed("insufficient_stock", [text_message(message)])

        self.carts.set_quantity(customer_id, product.id, variation_id, quantity, unit_price)
        logger.info(
            "Cart quantity set",
            extra={
                "context": {
                    "customer_id": customer_id,
                    "product_id": product.id,
                    "variation_id": variation_id,
                    "quantity": quantity,
                }
            },
        )
        return ActionResult.ok(
            [text_message(f"Added {quantity} x {label} to your cart.")],
            context_updates={
                "product_id": product.id,
                "variation_id": None,
                "cart_updated_at": datetime.now(timezone.utc).isoformat(),
            },
        )

    def remove_from_cart(self, customer_id: str, args: dict[str, Any], context: dict[str, Any]) -> ActionResult:
        product_id = args.get("product_id")
        cart = self.carts.get_cart(customer_id)
        lines = [item for item in cart.items if item.product_id == product_id]
        if not lines:
            return ActionResult.ok([text_message("That item is not in your cart.")])

        for item in lines:
            self.carts.set_quantity(customer_id, item.product_id, item.variation_id, 0, item.unit_price)
        name = lines[0].name or str(product_id)
        return ActionResult.ok(
            [text_message(f"Removed {name} from your cart.")],
            context_updates={"cart_updated_at": datetime.now(timezone.utc).isoformat()},
        )

    def show_cart(self, customer_id: str, args: dict[str, Any], context: dict[str, Any]) -> ActionResult:
        cart = self.carts.get_cart(customer_id)
        if cart.is_empty:
            return ActionResult.ok([button_message("Your cart is empty.", [("menu", "Start shopping")])])

        messages = [text_message(cart_summary(cart))]
        messages.append(button_message("Ready to order?", [("checkout", "Checkout"), ("menu", "Keep shopping")]))
        removable = [(f"remove_{item.product_id}", item.name or str(item.product_id), "Remove") for item in cart.items]
        messages.append(list_message("Want to remove something?", "Remove item", removable))
        return ActionResult.ok(messages)
