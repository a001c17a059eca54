"""
Field ownership registry.

Every synchronizable field belongs to exactly one ownership class. The class
decides which writers may author it:

- commerce: storefront systems (prices, SEO, customer-facing order data)
- operations: the operations platform and the fulfillment system
- shared: any writer, last write wins
- stock: the warehouse only

Fields that are not listed are shared.
"""
from enum import Enum
from typing import Dict, FrozenSet

from commerce_sync.constants.sync import EntityType, OriginClass


class FieldOwner(str, Enum):
    COMMERCE = "commerce"
    OPERATIONS = "operations"
    SHARED = "shared"
    STOCK = "stock"


PRODUCT_FIELDS: Dict[FieldOwner, FrozenSet[str]] = {
    FieldOwner.COMMERCE: frozenset({
        "net_sales_price", "compare_at_price", "taxable", "seo_title",
        "seo_description", "tags", "collections", "product_type", "vendor",
    }),
    FieldOwner.OPERATIONS: frozenset({
        "sku", "gtin", "han", "weight_in_kg", "height_in_cm", "length_in_cm",
        "width_in_cm", "packaging_unit", "packaging_qty", "hazmat",
        "hazmat_class", "warehouse_notes", "storage_location",
        "min_stock_level", "reorder_point", "customs_code",
        "country_of_origin", "manufacturer",
    }),
    FieldOwner.SHARED: frozenset({"name", "description", "image_url", "is_active"}),
    FieldOwner.STOCK: frozenset({"available", "reserved", "announced"}),
}

ORDER_FIELDS: Dict[FieldOwner, FrozenSet[str]] = {
    FieldOwner.COMMERCE: frozenset({
        "subtotal", "shipping_cost", "tax", "total", "currency",
        "discount_code", "discount_amount", "payment_status",
        "payment_method", "customer_email", "customer_name",
        "customer_phone", "shipping_first_name", "shipping_last_name",
        "shipping_company", "shipping_address1", "shipping_address2",
        "shipping_city", "shipping_zip", "shipping_country",
        "billing_first_name", "billing_last_name", "billing_address1",
        "billing_city", "billing_zip", "billing_country", "notes",
        "order_date", "items",
    }),
    FieldOwner.OPERATIONS: frozenset({
        "fulfillment_state", "warehouse_notes", "carrier_selection",
        "carrier_service_level", "priority_level", "picking_instructions",
        "packing_instructions", "tracking_number", "tracking_url",
        "shipped_at", "delivered_at", "is_on_hold", "hold_reason",
        "is_cancelled", "cancelled_at", "cancelled_by",
        "cancellation_reason", "address_corrected",
    }),
    FieldOwner.SHARED: frozenset({"status", "tags"}),
    FieldOwner.STOCK: frozenset(),
}

RETURN_FIELDS: Dict[FieldOwner, FrozenSet[str]] = {
    FieldOwner.COMMERCE: frozenset({
        "refund_amount", "refund_currency", "refund_status", "reason",
        "customer_email", "customer_name", "customer_notes",
    }),
    FieldOwner.OPERATIONS: frozenset({
        "status", "inspection_result", "inspected_at", "restock_eligible",
        "restock_quantity", "damage_description", "is_damaged",
        "is_defective", "warehouse_notes", "received_at",
    }),
    FieldOwner.SHARED: frozenset({"items", "notes"}),
    FieldOwner.STOCK: frozenset(),
}

_REGISTRY = {
    EntityType.PRODUCT: PRODUCT_FIELDS,
    EntityType.ORDER: ORDER_FIELDS,
    EntityType.RETURN: RETURN_FIELDS,
}

# Writer classes allowed to author each ownership class
AUTHORIZED_WRITERS: Dict[FieldOwner, FrozenSet[OriginClass]] = {
    FieldOwner.COMMERCE: frozenset({OriginClass.COMMERCE}),
    FieldOwner.OPERATIONS: frozenset({OriginClass.OPERATIONS}),
    FieldOwner.SHARED: frozenset({OriginClass.COMMERCE, OriginClass.OPERATIONS, OriginClass.INTERNAL}),
    FieldOwner.STOCK: frozenset({OriginClass.OPERATIONS}),
}


def owner_of(field: str, entity_type: EntityType = EntityType.PRODUCT) -> FieldOwner:
    """Ownership class of a field; unknown fields are shared."""
    for owner, fields in _REGISTRY[EntityType(entity_type)].items():
        if field in fields:
            return owner
    return FieldOwner.SHARED


def is_authorized(owner: FieldOwner, writer: OriginClass) -> bool:
    return writer in AUTHORIZED_WRITERS[owner]


def stock_fields(entity_type: EntityType = EntityType.PRODUCT) -> FrozenSet[str]:
    return _REGISTRY[EntityType(entity_type)][FieldOwner.STOCK]
