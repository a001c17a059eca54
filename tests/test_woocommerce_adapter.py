"""
WooCommerce adapter: request mapping and error classification.
"""
from datetime import datetime
from unittest.mock import MagicMock

import pytest
import requests

from commerce_sync.adapters.woocommerce import (
    WooCommerceAdapter,
    order_to_woocommerce,
    product_to_woocommerce,
    woocommerce_to_product,
)
from commerce_sync.constants.sync import ChannelType
from commerce_sync.core.exceptions import (
    AdapterError,
    AuthenticationError,
    DuplicateEntityError,
    TransientAdapterError,
)
from commerce_sync.models import SyncChannel


def response(status_code=200, body=None, text=""):
    resp = MagicMock()
    resp.status_code = status_code
    resp.ok = status_code < 400
    resp.json.return_value = body if body is not None else {}
    resp.text = text
    return resp


@pytest.fixture
def api():
    return MagicMock()


@pytest.fixture
def adapter(api):
    return WooCommerceAdapter(api, channel_id=1)


def test_create_product_posts_and_returns_id(adapter, api):
    api.post.return_value = response(201, {"id": 321})

    external_id = adapter.upsert_entity({
        "entity_type": "product",
        "external_id": None,
        "fields": {"name": "Mug", "sku": "MUG-1", "net_sales_price": 9.5},
    })

    assert external_id == "321"
    path, body = api.post.call_args[0]
    assert path == "products"
    assert body == {"name": "Mug", "sku": "MUG-1", "regular_price": "9.5"}


def test_update_product_puts_to_existing_id(adapter, api):
    api.put.return_value = response(200, {"id": 321})

    adapter.upsert_entity({"entity_type": "product", "external_id": "321", "fields": {"name": "Cup"}})

    assert api.put.call_args[0] == ("products/321", {"name": "Cup"})


@pytest.mark.parametrize("status,error", [
    (401, AuthenticationError),
    (403, AuthenticationError),
    (429, TransientAdapterError),
    (503, TransientAdapterError),
    (400, AdapterError),
])
def test_http_errors_are_classified(adapter, api, status, error):
    api.put.return_value = response(status, {"code": "some_error"}, text="nope")

    with pytest.raises(error) as exc_info:
        adapter.upsert_entity({"entity_type": "product", "external_id": "1", "fields": {"name": "X"}})

    assert exc_info.value.status_code == status


def test_bad_request_is_not_retryable(adapter, api):
    api.put.return_value = response(400, {"code": "rest_invalid_param"})

    with pytest.raises(AdapterError) as exc_info:
        adapter.upsert_entity({"entity_type": "product", "external_id": "1", "fields": {"name": "X"}})

    assert exc_info.value.retryable is False


def test_duplicate_sku_reports_existing_id(adapter, api):
    api.post.return_value = response(400, {
        "code": "product_invalid_sku",
        "message": "Invalid or duplicated SKU.",
        "data": {"status": 400, "resource_id": 77},
    })

    with pytest.raises(DuplicateEntityError) as exc_info:
        adapter.upsert_entity({"entity_type": "product", "external_id": None, "fields": {"sku": "MUG-1"}})

    assert exc_info.value.existing_external_id == "77"


def test_timeout_is_transient(adapter, api):
    api.get.side_effect = requests.exceptions.Timeout("read timed out")

    with pytest.raises(TransientAdapterError):
        adapter.get_inventory_level("5")


def test_connection_error_is_transient(adapter, api):
    api.put.side_effect = requests.exceptions.ConnectionError("refused")

    with pytest.raises(TransientAdapterError):
        adapter.set_inventory_level("5", 3)


def test_inventory_round_trip_calls(adapter, api):
    api.put.return_value = response(200, {"id": 5})
    api.get.return_value = response(200, {"id": 5, "stock_quantity": 3})

    adapter.set_inventory_level("5", 3)
    level = adapter.get_inventory_level("5")

    assert api.put.call_args[0] == ("products/5", {"manage_stock": True, "stock_quantity": 3})
    assert level == 3


def test_fetch_pages_until_short_page(adapter, api):
    full_page = [{"id": i, "name": f"P{i}", "status": "publish"} for i in range(100)]
    last_page = [{"id": 100, "name": "P100", "status": "draft", "manage_stock": True, "stock_quantity": 4}]
    api.get.side_effect = [response(200, full_page), response(200, last_page)]

    entities = adapter.fetch_entities_since(datetime(2024, 5, 1, 12, 0, 0, 123))

    assert len(entities) == 101
    assert entities[-1] == {
        "external_id": "100",
        "fields": {"name": "P100", "sku": None, "description": None, "is_active": False, "available": 4},
    }
    params = api.get.call_args_list[1][1]["params"]
    assert params["page"] == 2
    assert params["modified_after"] == "2024-05-01T12:00:00"


def test_order_push_requires_external_id(adapter):
    with pytest.raises(AdapterError):
        adapter.upsert_entity({"entity_type": "order", "external_id": None, "fields": {}})


def test_order_status_mapping(adapter, api):
    api.put.return_value = response(200, {"id": 9})

    adapter.upsert_entity({
        "entity_type": "order",
        "external_id": "9",
        "fields": {"fulfillment_state": "shipped", "tracking_number": "TRK1"},
    })

    assert api.put.call_args[0] == ("orders/9", {
        "status": "completed",
        "meta_data": [{"key": "_tracking_number", "value": "TRK1"}],
    })


def test_from_channel_requires_credentials():
    channel = SyncChannel(
        id=3,
        tenant_id="tenant-1",
        channel_type=ChannelType.WOOCOMMERCE.value,
        name="store",
        api_url="https://shop.example.com",
        config={"consumer_key": "ck_x"},
    )

    with pytest.raises(AuthenticationError):
        WooCommerceAdapter.from_channel(channel)


def test_product_mapping():
    body = product_to_woocommerce({
        "name": "Mug",
        "is_active": False,
        "weight_in_kg": 0.4,
        "length_in_cm": 10,
        "tags": ["kitchen"],
    })

    assert body == {
        "name": "Mug",
        "weight": "0.4",
        "dimensions": {"length": "10"},
        "status": "draft",
        "tags": [{"name": "kitchen"}],
    }
    assert woocommerce_to_product({"name": "Mug", "sku": "", "status": "publish", "regular_price": "9.50"}) == {
        "name": "Mug", "sku": None, "description": None, "is_active": True, "net_sales_price": 9.5,
    }


def test_cancelled_order_maps_to_cancelled():
    assert order_to_woocommerce({"fulfillment_state": "processing", "is_cancelled": True}) == {"status": "cancelled"}
