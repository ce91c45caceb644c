import json

import httpx
import pytest

from chatcommerce.services.message_builder import text_message
from chatcommerce.services.messaging_client import MessagingError, WhatsAppCloudClient
from chatcommerce.services.store_gateway import Cart, CartItem, StoreApiClient, StoreError

CUSTOMER = "+15551234567"


def recording_transport(handler):
    requests = []

    def wrapped(request):
        requests.append(request)
        return handler(request)

    return httpx.MockTransport(wrapped), requests


class TestWhatsAppCloudClient:
    def test_send_posts_to_phone_number_endpoint(self):
        transport, requests = recording_transport(
            lambda request: httpx.Response(200, json={"messages": [{"id": "wamid.HBgL"}]})
        )
        client = WhatsAppCloudClient("https://graph.test/v19.0/", "1065", "token", transport=transport)

        message_id = client.send(CUSTOMER, text_message("hello"))

        assert message_id == "wamid.HBgL"
        request = requests[0]
        assert str(request.url) == "https://graph.test/v19.0/1065/messages"
        assert request.headers["Authorization"] == "Bearer token"
        body = json.loads(request.content)
        assert body["to"] == "15551234567"
        assert body["messaging_product"] == "whatsapp"
        assert body["text"] == {"body": "hello"}

    @pytest.mark.parametrize("status_code,retryable", [(400, False), (429, True), (503, True)])
    def test_provider_error(self, status_code, retryable):
        transport, _ = recording_transport(lambda request: httpx.Response(status_code, json={"error": {}}))
        client = WhatsAppCloudClient("https://graph.test", "1065", "token", transport=transport)

        with pytest.raises(MessagingError) as exc_info:
            client.send(CUSTOMER, text_message("hello"))
        assert exc_info.value.status_code == status_code
        assert exc_info.value.retryable is retryable

    def test_missing_credentials(self):
        client = WhatsAppCloudClient("https://graph.test", None, None)
        with pytest.raises(MessagingError):
            client.send(CUSTOMER, text_message("hello"))


def store_handler(request):
    path = request.url.path
    if path == "/api/categories":
        return httpx.Response(200, json={"categories": [{"id": 12, "name": "Shoes"}]})
    if path == "/api/categories/12/products":
        return httpx.Response(200, json={"products": [{"id": 5, "name": "Runner", "price": "49.90", "stock": 3}]})
    if path == "/api/products/5":
        return httpx.Response(
            200,
            json={
                "id": 5,
                "name": "Runner",
                "price": 49.9,
                "currency": "USD",
                "variations": [{"id": 51, "name": "42", "price": 49.9, "stock": 0}],
            },
        )
    if path == "/api/products/404":
        return httpx.Response(404)
    if path == "/api/stock/check":
        return httpx.Response(200, json={"stock": {"5": 3, "6": 0}})
    if path == f"/api/carts/{CUSTOMER}" and request.method == "GET":
        return httpx.Response(
            200,
            json={
                "currency": "USD",
                "items": [
                    {"product_id": 5, "quantity": 2, "unit_price": 10, "name": "Runner"},
                    {"product_id": 6, "quantity": 0, "unit_price": 10},
                ],
            },
        )
    if path == f"/api/carts/{CUSTOMER}/items":
        return httpx.Response(200, json={"items": []})
    if path == "/api/orders":
        return httpx.Response(201, json={"order_id": 1001, "status": "pending"})
    return httpx.Response(500, text="unexpected")


@pytest.fixture
def store_api():
    transport, requests = recording_transport(store_handler)
    return StoreApiClient("http://store.test/api", token="store-token", transport=transport), requests


class TestStoreApiClient:
    def test_catalog_reads(self, store_api):
        client, requests = store_api

        assert [c.name for c in client.list_categories()] == ["Shoes"]
        products = client.list_products(12, limit=5)
        assert products[0].price == 49.9
        assert products[0].in_stock is True
        assert requests[-1].url.params["limit"] == "5"
        assert requests[-1].headers["Authorization"] == "Bearer store-token"

    def test_product_with_variations(self, store_api):
        client, _ = store_api
        product = client.get_product(5)
        assert product.variation(51).stock == 0
        assert product.variation(99) is None

    def test_missing_product_is_none(self, store_api):
        client, _ = store_api
        assert client.get_product(404) is None

    def test_stock_levels(self, store_api):
        client, _ = store_api
        assert client.get_stock_levels([5, 6, 7]) == {5: 3, 6: 0, 7: None}

    def test_cart_drops_zero_quantity_lines(self, store_api):
        client, _ = store_api
        cart = client.get_cart(CUSTOMER)
        assert [item.product_id for item in cart.items] == [5]
        assert cart.total == 20

    def test_set_quantity_sends_absolute_quantity(self, store_api):
        client, requests = store_api
        client.set_quantity(CUSTOMER, 5, None, -3, 10.0)

        body = json.loads(requests[-1].content)
        assert requests[-1].method == "PUT"
        assert body["quantity"] == 0

    def test_place_order_sends_idempotency_key(self, store_api):
        client, requests = store_api
        cart = Cart(CUSTOMER, [CartItem(5, 2, 10.0, "Runner")], "USD")

        order = client.place_order(CUSTOMER, cart, "12 Main Street", "card", "key-1")

        assert order.order_id == "1001"
        assert order.total == 20.0
        assert order.currency == "USD"
        assert requests[-1].headers["Idempotency-Key"] == "key-1"
        assert json.loads(requests[-1].content)["shipping_address"] == "12 Main Street"

    def test_server_error_raises(self, store_api):
        client, _ = store_api
        with pytest.raises(StoreError):
            client.search_products("anything")
