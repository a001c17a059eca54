"""WooCommerce adapter over the ``woocommerce`` REST client."""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import requests
from woocommerce import API

from commerce_sync.adapters.base import SyncAdapter
from commerce_sync.constants.sync import EntityType
from commerce_sync.core.config import settings
from commerce_sync.core.exceptions import (
    AdapterError,
    AuthenticationError,
    DuplicateEntityError,
    TransientAdapterError,
)
from commerce_sync.models import SyncChannel

logger = logging.getLogger(__name__)

# Error codes WooCommerce returns when a product with the same SKU exists
DUPLICATE_SKU_CODES = ("product_invalid_sku", "woocommerce_rest_product_not_created")

# Local fulfillment state -> WooCommerce order status
ORDER_STATUS_MAP = {
    "processing": "processing",
    "on_hold": "on-hold",
    "shipped": "completed",
    "delivered": "completed",
    "cancelled": "cancelled",
}


def build_api(url: str, consumer_key: str, consumer_secret: str) -> API:
    return API(
        url=url,
        consumer_key=consumer_key,
        consumer_secret=consumer_secret,
        wp_api=True,
        version=settings.wc_api_version,
        timeout=settings.adapter_request_timeout,
        verify_ssl=settings.wc_verify_ssl
    )


def product_to_woocommerce(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Convert local product fields to a WooCommerce product body."""
    body: Dict[str, Any] = {}
    if "name" in fields:
        body["name"] = fields["name"]
    if "sku" in fields:
        body["sku"] = fields["sku"] or ""
    if "description" in fields:
        body["description"] = fields["description"] or ""
    if "net_sales_price" in fields and fields["net_sales_price"] is not None:
        body["regular_price"] = str(fields["net_sales_price"])
    if "compare_at_price" in fields and fields["compare_at_price"] is not None:
        body["sale_price"] = str(fields["net_sales_price"] or "")
        body["regular_price"] = str(fields["compare_at_price"])
    if "weight_in_kg" in fields and fields["weight_in_kg"] is not None:
        body["weight"] = str(fields["weight_in_kg"])

    dimensions = {}
    for local, remote in (("length_in_cm", "length"), ("width_in_cm", "width"), ("height_in_cm", "height")):
        if fields.get(local) is not None:
            dimensions[remote] = str(fields[local])
    if dimensions:
        body["dimensions"] = dimensions

    if "is_active" in fields:
        body["status"] = "publish" if fields["is_active"] else "draft"
    if fields.get("image_url"):
        body["images"] = [{"src": fields["image_url"]}]
    if "tags" in fields and fields["tags"] is not None:
        body["tags"] = [{"name": t} for t in fields["tags"]]
    return body


def woocommerce_to_product(product: Dict[str, Any]) -> Dict[str, Any]:
    """Convert a WooCommerce product body to local product fields."""
    fields = {
        "name": product.get("name"),
        "sku": product.get("sku") or None,
        "description": product.get("description"),
        "is_active": product.get("status") == "publish",
    }
    if product.get("regular_price"):
        fields["net_sales_price"] = float(product["regular_price"])
    if product.get("manage_stock") and product.get("stock_quantity") is not None:
        fields["available"] = int(product["stock_quantity"])
    images = product.get("images") or []
    if images:
        fields["image_url"] = images[0].get("src")
    return fields


def order_to_woocommerce(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Convert operational order fields to a WooCommerce order update."""
    body: Dict[str, Any] = {}
    state = fields.get("fulfillment_state")
    if fields.get("is_cancelled"):
        state = "cancelled"
    elif fields.get("is_on_hold"):
        state = "on_hold"
    if state in ORDER_STATUS_MAP:
        body["status"] = ORDER_STATUS_MAP[state]

    meta = []
    for key in ("tracking_number", "carrier_selection", "shipped_at"):
        if fields.get(key) is not None:
            meta.append({"key": f"_{key}", "value": str(fields[key])})
    if meta:
        body["meta_data"] = meta
    return body


class WooCommerceAdapter(SyncAdapter):
    """Adapter for one WooCommerce store."""

    def __init__(self, api: API, channel_id: Optional[int] = None):
        self.api = api
        self.channel_id = channel_id

    @classmethod
    def from_channel(cls, channel: SyncChannel) -> "WooCommerceAdapter":
        config = channel.config or {}
        missing = [k for k in ("consumer_key", "consumer_secret") if not config.get(k)]
        if missing or not (channel.api_url or config.get("url")):
            raise AuthenticationError(
                f"Channel {channel.id} is missing WooCommerce credentials: {', '.join(missing) or 'url'}"
            )
        api = build_api(
            url=channel.api_url or config["url"],
            consumer_key=config["consumer_key"],
            consumer_secret=config["consumer_secret"]
        )
        return cls(api, channel_id=channel.id)

    def _call(self, method: str, path: str, data: Optional[dict] = None, params: Optional[dict] = None) -> Any:
        """
        Execute a request and map failures onto the adapter error taxonomy.

        Args:
            method: get, post or put
            path: Endpoint path relative to the API root
            data: JSON body for post/put
            params: Query parameters for get

        Returns:
            Decoded JSON response
        """
        try:
            if method == "get":
                response = self.api.get(path, params=params or {})
            elif method == "post":
                response = self.api.post(path, data or {})
            elif method == "put":
                response = self.api.put(path, data or {})
            else:
                raise ValueError(f"Unsupported method {method}")
        except requests.exceptions.Timeout as e:
            raise TransientAdapterError(f"WooCommerce {method.upper()} {path} timed out: {e}")
        except requests.exceptions.RequestException as e:
            raise TransientAdapterError(f"WooCommerce {method.upper()} {path} failed: {e}")

        if response.ok:
            return response.json()

        status = response.status_code
        try:
            body = response.json()
        except ValueError:
            body = {}
        message = f"WooCommerce {method.upper()} {path} error ({status}): {response.text}"
        logger.error(message)

        if status in (401, 403):
            raise AuthenticationError(message, status_code=status)
        if status == 429 or status >= 500:
            raise TransientAdapterError(message, status_code=status)
        if isinstance(body, dict) and body.get("code") in DUPLICATE_SKU_CODES:
            resource_id = (body.get("data") or {}).get("resource_id")
            if resource_id:
                raise DuplicateEntityError(str(resource_id), message=message, status_code=status)
        raise AdapterError(message, status_code=status)

    def upsert_entity(self, payload: Dict[str, Any]) -> str:
        entity_type = payload.get("entity_type", EntityType.PRODUCT.value)
        external_id = payload.get("external_id")
        fields = payload.get("fields") or {}

        if entity_type == EntityType.ORDER.value:
            if not external_id:
                raise AdapterError("WooCommerce orders are created in the storefront, not pushed")
            result = self._call("put", f"orders/{external_id}", order_to_woocommerce(fields))
            return str(result["id"])

        if entity_type != EntityType.PRODUCT.value:
            raise AdapterError(f"WooCommerce adapter does not handle '{entity_type}' entities")

        body = product_to_woocommerce(fields)
        if external_id:
            result = self._call("put", f"products/{external_id}", body)
        else:
            result = self._call("post", "products", body)
        return str(result["id"])

    def fetch_entities_since(self, since: datetime) -> List[Dict[str, Any]]:
        entities = []
        page = 1
        while True:
            products = self._call("get", "products", params={
                "modified_after": since.replace(microsecond=0).isoformat(),
                "per_page": 100,
                "page": page,
            })
            for product in products:
                entities.append({
                    "external_id": str(product["id"]),
                    "fields": woocommerce_to_product(product),
                })
            if len(products) < 100:
                break
            page += 1
        return entities

    def set_inventory_level(self, external_id: str, quantity: int) -> None:
        self._call("put", f"products/{external_id}", {
            "manage_stock": True,
            "stock_quantity": int(quantity),
        })

    def get_inventory_level(self, external_id: str) -> int:
        product = self._call("get", f"products/{external_id}")
        return int(product.get("stock_quantity") or 0)
