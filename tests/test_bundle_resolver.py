"""
Bundle composition: deferred links, order independence, replacement
semantics and validation.
"""
import pytest

from commerce_sync.constants.sync import ChannelType, PendingLinkStatus
from commerce_sync.core.exceptions import SyncValidationError
from commerce_sync.models import BundleItem, PendingBundleLink, SyncEntity
from commerce_sync.services.bundle_resolver import BundleResolver, parse_components
from commerce_sync.services.sync_service import SyncService

from tests.conftest import TENANT


def create(db, adapters, fields, now, tenant_id=TENANT):
    return SyncService(db, adapters=adapters).create_entity(tenant_id, fields, now=now)


def bundle_edges(db):
    return sorted(
        (item.parent_id, item.child_id, item.quantity) for item in db.query(BundleItem).all()
    )


def test_child_created_after_parent_resolves_pending_link(db, adapters, now):
    """Parent declares SKU X-1 x2 before X-1 exists."""
    parent = create(db, adapters, {
        "name": "Gift Set", "sku": "SET-1",
        "bundle_components": [{"sku": "X-1", "quantity": 2}],
    }, now)

    pending = db.query(PendingBundleLink).all()
    assert len(pending) == 1
    assert pending[0].status == PendingLinkStatus.PENDING
    assert bundle_edges(db) == []

    child = create(db, adapters, {"name": "Candle", "sku": "X-1"}, now)

    assert bundle_edges(db) == [(parent.id, child.id, 2)]
    db.refresh(pending[0])
    assert pending[0].status == PendingLinkStatus.RESOLVED
    assert pending[0].resolved_child_id == child.id


def test_child_created_before_parent_links_immediately(db, adapters, now):
    child = create(db, adapters, {"name": "Candle", "sku": "X-1"}, now)
    parent = create(db, adapters, {
        "name": "Gift Set", "sku": "SET-1",
        "bundle_components": [{"sku": "X-1", "quantity": 2}],
    }, now)

    assert bundle_edges(db) == [(parent.id, child.id, 2)]
    assert db.query(PendingBundleLink).count() == 0


def test_arrival_order_converges(db, adapters, now):
    """Components arriving before and after the bundle end up linked alike."""
    declaration = {
        "name": "Gift Set", "sku": "SET-1",
        "bundle_components": [{"sku": "X-1", "quantity": 2}, {"sku": "X-2", "quantity": 1}],
    }
    create(db, adapters, {"name": "Candle", "sku": "X-1"}, now)
    create(db, adapters, dict(declaration), now)
    create(db, adapters, {"name": "Matches", "sku": "X-2"}, now)
    composition = sorted(
        (db.get(SyncEntity, item.child_id).sku, item.quantity) for item in db.query(BundleItem).all()
    )

    assert composition == [("X-1", 2), ("X-2", 1)]
    assert db.query(PendingBundleLink).filter(
        PendingBundleLink.status == PendingLinkStatus.PENDING
    ).count() == 0


def test_resolution_by_external_id(db, adapters, make_channel, now):
    shop = make_channel(ChannelType.SHOPIFY)
    service = SyncService(db, adapters=adapters)
    parent = service.process_incoming_change(
        "shopify", TENANT, shop.id, "P-1",
        {"name": "Set", "bundle_components": [{"external_id": "C-9", "quantity": 3}]},
        now=now
    )
    child = service.process_incoming_change("shopify", TENANT, shop.id, "C-9", {"name": "Part"}, now=now)

    assert bundle_edges(db) == [(parent.entity_id, child.entity_id, 3)]


def test_composition_is_replaced(db, adapters, now):
    a = create(db, adapters, {"name": "A", "sku": "A-1"}, now)
    b = create(db, adapters, {"name": "B", "sku": "B-1"}, now)
    parent = create(db, adapters, {
        "name": "Set", "sku": "SET-1",
        "bundle_components": [{"sku": "A-1", "quantity": 1}, {"sku": "B-1", "quantity": 1}],
    }, now)
    assert len(bundle_edges(db)) == 2

    result = BundleResolver(db).apply_composition(parent, [{"external_id": None, "sku": "A-1", "quantity": 4}], now=now)
    db.commit()

    assert bundle_edges(db) == [(parent.id, a.id, 4)]
    assert result.removed == [b.id]


def test_stale_pending_links_are_dropped_on_replacement(db, adapters, now):
    parent = create(db, adapters, {
        "name": "Set", "sku": "SET-1",
        "bundle_components": [{"sku": "GONE-1", "quantity": 1}],
    }, now)

    BundleResolver(db).apply_composition(parent, [{"external_id": None, "sku": "NEW-1", "quantity": 1}], now=now)
    db.commit()

    assert [p.child_sku for p in db.query(PendingBundleLink).all()] == ["NEW-1"]


def test_self_reference_is_rejected(db, adapters, now):
    parent = create(db, adapters, {"name": "Set", "sku": "SET-1"}, now)

    with pytest.raises(SyncValidationError):
        BundleResolver(db).apply_composition(parent, [{"external_id": None, "sku": "SET-1", "quantity": 1}], now=now)


def test_nested_bundles_are_rejected(db, adapters, now):
    leaf = create(db, adapters, {"name": "Leaf", "sku": "LEAF-1"}, now)
    create(db, adapters, {
        "name": "Inner", "sku": "INNER-1",
        "bundle_components": [{"sku": "LEAF-1", "quantity": 1}],
    }, now)
    outer = create(db, adapters, {"name": "Outer", "sku": "OUTER-1"}, now)
    resolver = BundleResolver(db)

    # A bundle cannot be a component
    with pytest.raises(SyncValidationError):
        resolver.apply_composition(outer, [{"external_id": None, "sku": "INNER-1", "quantity": 1}], now=now)
    db.rollback()

    # A component cannot become a bundle
    with pytest.raises(SyncValidationError):
        resolver.apply_composition(leaf, [{"external_id": None, "sku": "OUTER-1", "quantity": 1}], now=now)


def test_bundle_with_unresolved_components_cannot_be_a_component(db, adapters, now):
    inner = create(db, adapters, {
        "name": "Inner", "sku": "INNER-1",
        "bundle_components": [{"sku": "LEAF-1", "quantity": 1}],
    }, now)

    with pytest.raises(SyncValidationError):
        create(db, adapters, {
            "name": "Outer", "sku": "OUTER-1",
            "bundle_components": [{"sku": "INNER-1", "quantity": 1}],
        }, now)

    leaf = create(db, adapters, {"name": "Leaf", "sku": "LEAF-1"}, now)

    assert bundle_edges(db) == [(inner.id, leaf.id, 1)]


def test_pending_parent_link_does_not_nest_bundles(db, adapters, now):
    outer = create(db, adapters, {
        "name": "Outer", "sku": "OUTER-1",
        "bundle_components": [{"sku": "INNER-1", "quantity": 1}],
    }, now)
    inner = create(db, adapters, {
        "name": "Inner", "sku": "INNER-1",
        "bundle_components": [{"sku": "LEAF-1", "quantity": 1}],
    }, now)
    leaf = create(db, adapters, {"name": "Leaf", "sku": "LEAF-1"}, now)

    assert bundle_edges(db) == [(inner.id, leaf.id, 1)]
    outer_link = db.query(PendingBundleLink).filter(PendingBundleLink.parent_id == outer.id).one()
    assert outer_link.status == PendingLinkStatus.PENDING
    assert "nesting is not supported" in outer_link.last_error


def test_other_tenant_child_is_not_linked(db, adapters, now):
    create(db, adapters, {"name": "Candle", "sku": "X-1"}, now, tenant_id="tenant-2")
    create(db, adapters, {
        "name": "Set", "sku": "SET-1",
        "bundle_components": [{"sku": "X-1", "quantity": 1}],
    }, now)

    assert bundle_edges(db) == []
    assert db.query(PendingBundleLink).count() == 1


@pytest.mark.parametrize("components", [
    "not-a-list",
    [{"quantity": 1}],
    [{"sku": "A", "quantity": 0}],
    [{"sku": "A", "quantity": 1.5}],
    [{"sku": "A", "quantity": True}],
])
def test_invalid_components(components):
    with pytest.raises(SyncValidationError):
        parse_components(components)


def test_invalid_components_reject_whole_change(db, adapters, now):
    with pytest.raises(SyncValidationError):
        create(db, adapters, {"name": "Set", "bundle_components": [{"sku": "A", "quantity": -1}]}, now)

    assert db.query(SyncEntity).count() == 0


def test_two_pending_links_resolve_to_one_item(db, adapters, make_channel, make_entity, now):
    shop = make_channel(ChannelType.SHOPIFY)
    parent = make_entity({"name": "Set", "sku": "SET-1"})
    resolver = BundleResolver(db)
    resolver.apply_composition(parent, [
        {"external_id": "C-1", "sku": None, "quantity": 2},
        {"external_id": None, "sku": "X-1", "quantity": 2},
    ], channel_id=shop.id, now=now)
    db.commit()

    child = make_entity({"name": "Candle", "sku": "X-1"})
    resolver.resolve_pending_for(child, external_id="C-1", channel_id=shop.id, now=now)
    db.commit()

    assert bundle_edges(db) == [(parent.id, child.id, 2)]


def test_possible_quantity(db, make_entity, now):
    parent = make_entity({"name": "Set", "sku": "SET-1"})
    make_entity({"name": "A", "sku": "A-1", "available": 10})
    make_entity({"name": "B", "sku": "B-1", "available": 7})
    resolver = BundleResolver(db)
    resolver.apply_composition(parent, [
        {"external_id": None, "sku": "A-1", "quantity": 2},
        {"external_id": None, "sku": "B-1", "quantity": 1},
    ], now=now)
    db.commit()

    assert resolver.possible_quantity(parent.id) == 5
    assert resolver.possible_quantity(9999) is None
