"""Narrow interfaces to the shop backend that owns catalog, carts and orders.

The conversation core never persists or caches this data beyond a single
action execution.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional
from urllib.parse import quote

import httpx

from chatcommerce.logging_config import get_logger

logger = get_logger("store_gateway")


class StoreError(Exception):
    """Shop backend failed or returned an unexpected response."""


@dataclass
class Variation:
    id: int
    name: str
    price: float
    stock: Optional[int] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Variation":
        return cls(
            id=int(data["id"]),
            name=str(data.get("name") or data["id"]),
            price=float(data.get("price") or 0),
            stock=data.get("stock"),
        )


@dataclass
class Product:
    id: int
    name: str
    price: float
    currency: str = ""
    description: str = ""
    stock: Optional[int] = None
    category_id: Optional[int] = None
    variations: list[Variation] = field(default_factory=list)

    @property
    def in_stock(self) -> bool:
        return self.stock is None or self.stock > 0

    def variation(self, variation_id: Optional[int]) -> Optional[Variation]:
        for variation in self.variations:
            if variation.id == variation_id:
                return variation
        return None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Product":
        return cls(
            id=int(data["id"]),
            name=str(data.get("name") or ""),
            price=float(data.get("price") or 0),
            currency=str(data.get("currency") or ""),
            description=str(data.get("description") or ""),
            stock=data.get("stock"),
            category_id=data.get("category_id"),
            variations=[Variation.from_dict(item) for item in data.get("variations") or []],
        )


@dataclass
class Category:
    id: int
    name: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Category":
        return cls(id=int(data["id"]), name=str(data.get("name") or data["id"]))


@dataclass
class CartItem:
    product_id: int
    quantity: int
    unit_price: float
    name: str = ""
    variation_id: Optional[int] = None

    @property
    def line_total(self) -> float:
        return self.unit_price * self.quantity

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CartItem":
        variation_id = data.get("variation_id")
        return cls(
            product_id=int(data["product_id"]),
            quantity=int(data["quantity"]),
            unit_price=float(data.get("unit_price") or 0),
            name=str(data.get("name") or ""),
            variation_id=int(variation_id) if variation_id else None,
        )


@dataclass
class Cart:
    customer_id: str
    items: list[CartItem] = field(default_factory=list)
    currency: str = ""

    @property
    def is_empty(self) -> bool:
        return not self.items

    @property
    def total(self) -> float:
        return sum(item.line_total for item in self.items)

    @classmethod
    def from_dict(cls, customer_id: str, data: dict[str, Any]) -> "Cart":
        # Zero-quantity lines are never part of a cart.
        items = [CartItem.from_dict(item) for item in data.get("items") or []]
        return cls(
            customer_id=customer_id,
            items=[item for item in items if item.quantity > 0],
            currency=str(data.get("currency") or ""),
        )


@dataclass
class Order:
    order_id: str
    total: float
    currency: str = ""
    status: str = "pending"


class CatalogGateway(ABC):
    @abstractmethod
    def list_categories(self) -> list[Category]: ...

    @abstractmethod
    def list_products(self, category_id: int, limit: int = 10) -> list[Product]: ...

    @abstractmethod
    def search_products(self, query: str, limit: int = 10) -> list[Product]: ...

    @abstractmethod
    def get_product(self, product_id: int) -> Optional[Product]: ...

    @abstractmethod
    def get_stock_levels(self, product_ids: list[int]) -> dict[int, Optional[int]]: ...


class CartGateway(ABC):
    @abstractmethod
    def get_cart(self, customer_id: str) -> Cart: ...

    @abstractmethod
    def set_quantity(
        self, customer_id: str, product_id: int, variation_id: Optional[int], quantity: int, unit_price: float
    ) -> Cart:
        """Set the line to exactly ``quantity``; zero removes the line."""

    @abstractmethod
    def clear_cart(self, customer_id: str) -> None: ...


class OrderGateway(ABC):
    @abstractmethod
    def place_order(
        self,
        customer_id: str,
        cart: Cart,
        address: str,
        payment_method: str,
        idempotency_key: str,
    ) -> Order: ...


class StoreApiClient(CatalogGateway, CartGateway, OrderGateway):
    """httpx client for the shop backend REST API."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout_seconds: float = 8.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict] = None,
        json: Optional[dict] = None,
        headers: Optional[dict] = None,
        allow_404: bool = False,
    ) -> Any:
        request_headers = {"Accept": "application/json"}
        if self.token:
            request_headers["Authorization"] = f"Bearer {self.token}"
        if headers:
            request_headers.update(headers)

        with httpx.Client(
            base_url=self.base_url, timeout=self.timeout_seconds, transport=self._transport
        ) as client:
            response = client.request(method, path, params=params, json=json, headers=request_headers)

        if allow_404 and response.status_code == 404:
            return None
        if response.status_code >= 300:
            logger.warning(
                "Store API error",
                extra={
                    "context": {
                        "method": method,
                        "path": path,
                        "status_code": response.status_code,
                        "body": response.text[:300],
                    }
                },
            )
            raise StoreError(f"Store API {method} {path} failed: {response.status_code}")
        if not response.content:
            return {}
        return response.json()

    # --- catalog ---

    def list_categories(self) -> list[Category]:
        data = self._request("GET", "/categories")
        return [Category.from_dict(item) for item in data.get("categories") or []]

    def list_products(self, category_id: int, limit: int = 10) -> list[Product]:
        data = self._request("GET", f"/categories/{category_id}/products", params={"limit": limit})
        return [Product.from_dict(item) for item in data.get("products") or []]

    def search_products(self, query: str, limit: int = 10) -> list[Product]:
        data = self._request("GET", "/products", params={"search": query, "limit": limit})
        return [Product.from_dict(item) for item in data.get("products") or []]

    def get_product(self, product_id: int) -> Optional[Product]:
        data = self._request("GET", f"/products/{product_id}", allow_404=True)
        if not data:
            return None
        return Product.from_dict(data)

    def get_stock_levels(self, product_ids: list[int]) -> dict[int, Optional[int]]:
        data = self._request("POST", "/stock/check", json={"product_ids": list(product_ids)})
        levels = data.get("stock") or {}
        return {int(product_id): levels.get(str(product_id)) for product_id in product_ids}

    # --- cart ---

    def _cart_path(self, customer_id: str) -> str:
        return f"/carts/{quote(customer_id, safe='')}"

    def get_cart(self, customer_id: str) -> Cart:
        data = self._request("GET", self._cart_path(customer_id), allow_404=True)
        return Cart.from_dict(customer_id, data or {})

    def set_quantity(
        self, customer_id: str, product_id: int, variation_id: Optional[int], quantity: int, unit_price: float
    ) -> Cart:
        data = self._request(
            "PUT",
            f"{self._cart_path(customer_id)}/items",
            json={
                "product_id": product_id,
                "variation_id": variation_id,
                "quantity": max(quantity, 0),
                "unit_price": unit_price,
            },
        )
        return Cart.from_dict(customer_id, data)

    def clear_cart(self, customer_id: str) -> None:
        self._request("DELETE", self._cart_path(customer_id), allow_404=True)

    # --- orders ---

    def place_order(
        self,
        customer_id: str,
        cart: Cart,
        address: str,
        payment_method: str,
        idempotency_key: str,
    ) -> Order:
        data = self._request(
            "POST",
            "/orders",
            json={
                "customer_id": customer_id,
                "items": [
                    {
                        "product_id": item.product_id,
                        "variation_id": item.variation_id,
                        "quantity": item.quantity,
                        "unit_price": item.unit_price,
                    }
                    for item in cart.items
                ],
                "shipping_address": address,
                "payment_method": payment_method,
            },
            headers={"Idempotency-Key": idempotency_key},
        )
        return Order(
            order_id=str(data["order_id"]),
            total=float(data.get("total") or cart.total),
            currency=str(data.get("currency") or cart.currency),
            status=str(data.get("status") or "pending"),
        )
