from typing import Any, Optional

from chatcommerce.logging_config import get_logger
from chatcommerce.services.action_registry import ActionResult
from chatcommerce.services.message_builder import (
    MAX_LIST_ROWS,
    button_message,
    format_price,
    list_message,
    text_message,
)
from chatcommerce.services.store_gateway import CatalogGateway, Product

logger = get_logger("actions.catalog")

WELCOME_TEXT = "Welcome! What would you like to do today?"
MENU_BUTTON = ("menu", "Main menu")
CART_BUTTON = ("cart", "View cart")


def _product_rows(products: list[Product]) -> list[tuple[str, str, Optional[str]]]:
    return [
        (f"product_{product.id}", product.name, format_price(product.price, product.currency))
        for product in products
    ]


class CatalogActions:
    """Browsing handlers: menu, categories, search, product detail, variants."""

    def __init__(self, catalog: CatalogGateway):
        self.catalog = catalog

    def show_main_menu(self, customer_id: str, args: dict[str, Any], context: dict[str, Any]) -> ActionResult:
        categories = self.catalog.list_categories()
        rows = [(f"category_{category.id}", category.name, None) for category in categories[: MAX_LIST_ROWS - 2]]
        rows.append(("cart", "My cart", "Review items and checkout"))
        rows.append(("human", "Talk to us", "Chat with a person"))
        menu = list_message(WELCOME_TEXT, "Open menu", rows, section_title="Shop")
        return ActionResult.ok(
            [menu],
            context_updates={"category_id": None, "product_id": None, "variation_id": None},
        )

    def show_category(self, customer_id: str, args: dict[str, Any], context: dict[str, Any]) -> ActionResult:
        category_id = args.get("category_id") or context.get("category_id")
        if not category_id:
            return self.show_main_menu(customer_id, args, context)

        products = self.catalog.list_products(int(category_id), limit=MAX_LIST_ROWS)
        if not products:
            return ActionResult.ok(
                [button_message("There are no products in this category right now.", [MENU_BUTTON, CART_BUTTON])],
                context_updates={"category_id": category_id},
            )

        message = list_message("Pick a product to see the details.", "See products", _product_rows(products))
        return ActionResult.ok([message], context_updates={"category_id": category_id, "product_id": None})

    def search_products(self, customer_id: str, args: dict[str, Any], context: dict[str, Any]) -> ActionResult:
        query = (args.get("query") or "").strip()
        if not query:
            return ActionResult.ok([button_message("What are you looking for?", [MENU_BUTTON])])

        products = self.catalog.search_products(query, limit=MAX_LIST_ROWS)
        logger.info(
            "Catalog search",
            extra={"context": {"customer_id": customer_id, "query": query, "results": len(products)}},
        )
        if not products:
            return ActionResult.ok(
                [button_message(f'Nothing matched "{query}". Try another word or browse the menu.', [MENU_BUTTON])],
                context_updates={"last_query": query},
            )
        message = list_message(f'Results for "{query}":', "See results", _product_rows(products))
        return ActionResult.ok([message], context_updates={"last_query": query, "product_id": None})

    def show_product(self, customer_id: str, args: dict[str, Any], context: dict[str, Any]) -> ActionResult:
        product_id = args.get("product_id") or context.get("product_id")
        if not product_id:
            return self.show_category(customer_id, args, context)

        product = self.catalog.get_product(int(product_id))
        if product is None:
            return ActionResult.ok(
                [button_message("Sorry, that product is no longer available.", [MENU_BUTTON])],
                context_updates={"product_id": None},
            )

        details = [f"*{product.name}*", format_price(product.price, product.currency)]
        if product.description:
            details.append(product.description)
        if not product.in_stock:
            details.append("Currently out of stock.")

        messages = [text_message("\n".join(details))]
        if product.variations:
            messages.append(self._variation_list(product))
        elif product.in_stock:
            messages.append(
                button_message("Add it to your cart?", [(f"add_{product.id}", "Add to cart"), CART_BUTTON, MENU_BUTTON])
            )
        else:
            messages.append(button_message("Anything else?", [MENU_BUTTON, CART_BUTTON]))

        return ActionResult.ok(messages, context_updates={"product_id": product.id, "variation_id": None})

    def select_variant(self, customer_id: str, args: dict[str, Any], context: dict[str, Any]) -> ActionResult:
        product_id = args.get("product_id") or context.get("product_id")
        if not product_id:
            return self.show_main_menu(customer_id, args, context)
        product = self.catalog.get_product(int(product_id))
        if product is None:
            return ActionResult.failed(
                "product_unavailable",
                [button_message("Sorry, that product is no longer available.", [MENU_BUTTON])],
            )

        variation_id = args.get("variation_id")
        if not variation_id:
            return ActionResult.ok([self._variation_list(product)])

        variation = product.variation(int(variation_id))
        if variation is None:
            return ActionResult.failed(
                "unknown_variation",
                [text_message("That option is not available for this product."), self._variation_list(product)],
            )
        if variation.stock is not None and variation.stock <= 0:
            return ActionResult.failed(
                "variation_out_of_stock",
                [text_message(f"{variation.name} is out of stock."), self._variation_list(product)],
            )

        prompt = button_message(
            f"{product.name} ({variation.name}), {format_price(variation.price, product.currency)}. How many?",
            [("qty_1", "1"), ("qty_2", "2"), ("qty_3", "3")],
            footer="Or type a number, e.g. 'add 5 to cart'",
        )
        return ActionResult.ok([prompt], context_updates={"product_id": product.id, "variation_id": variation.id})

    def _variation_list(self, product: Product) -> dict[str, Any]:
        rows = [
            (f"variant_{variation.id}", variation.name, format_price(variation.price, product.currency))
            for variation in product.variations
        ]
        return list_message(f"Choose an option for {product.name}:", "Options", rows)
