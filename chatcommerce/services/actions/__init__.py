from datetime import timedelta
from typing import Callable, Iterable, Optional

from chatcommerce.services.action_registry import ActionName, ActionRegistry, FrequencyCap, FrequencyCapPolicy
from chatcommerce.services.actions.cart import CartActions
from chatcommerce.services.actions.catalog import CatalogActions
from chatcommerce.services.actions.checkout import DEFAULT_PAYMENT_METHODS, CheckoutActions
from chatcommerce.services.actions.support import ReminderActions, SupportActions
from chatcommerce.services.store_gateway import CartGateway, CatalogGateway, OrderGateway

CART_REMINDER_CAPS = (
    FrequencyCap(max_count=1, window=timedelta(days=7)),
    FrequencyCap(max_count=4, window=timedelta(days=30)),
)


def build_registry(
    catalog: CatalogGateway,
    carts: CartGateway,
    orders: OrderGateway,
    frequency_policy: FrequencyCapPolicy,
    *,
    payment_methods: Iterable[tuple[str, str]] = DEFAULT_PAYMENT_METHODS,
    notify: Optional[Callable[[str, str, dict], bool]] = None,
) -> ActionRegistry:
    """Register every ActionName and freeze the registry."""
    catalog_actions = CatalogActions(catalog)
    cart_actions = CartActions(catalog, carts)
    checkout_actions = CheckoutActions(carts, orders, payment_methods)
    support_actions = SupportActions(notify)
    reminder_actions = ReminderActions(carts)

    registry = ActionRegistry(frequency_policy)
    registry.register(ActionName.SHOW_MAIN_MENU, catalog_actions.show_main_menu)
    registry.register(ActionName.SHOW_CATEGORY, catalog_actions.show_category)
    registry.register(ActionName.SEARCH_PRODUCTS, catalog_actions.search_products)
    registry.register(ActionName.SHOW_PRODUCT, catalog_actions.show_product)
    registry.register(ActionName.SELECT_VARIANT, catalog_actions.select_variant)
    registry.register(ActionName.ADD_TO_CART, cart_actions.add_to_cart)
    registry.register(ActionName.REMOVE_FROM_CART, cart_actions.remove_from_cart)
    registry.register(ActionName.SHOW_CART, cart_actions.show_cart)
    registry.register(ActionName.REQUEST_ADDRESS, checkout_actions.request_address)
    registry.register(ActionName.SAVE_ADDRESS, checkout_actions.save_address)
    registry.register(ActionName.REQUEST_PAYMENT_METHOD, checkout_actions.request_payment_method)
    registry.register(ActionName.SAVE_PAYMENT_METHOD, checkout_actions.save_payment_method)
    registry.register(ActionName.CONFIRM_ORDER, checkout_actions.confirm_order)
    registry.register(ActionName.CLEAR_CHECKOUT, checkout_actions.clear_checkout)
    registry.register(ActionName.REQUEST_HUMAN, support_actions.request_human)
    registry.register(ActionName.SHOW_HANDOFF_STATUS, support_actions.show_handoff_status)
    registry.register(ActionName.SEND_CART_REMINDER, reminder_actions.send_cart_reminder, caps=CART_REMINDER_CAPS)

    missing = [name for name in ActionName if not registry.has(name)]
    if missing:
        raise RuntimeError(f"Actions without handlers: {', '.join(name.value for name in missing)}")
    return registry.freeze()


__all__ = ["CART_REMINDER_CAPS", "build_registry"]
