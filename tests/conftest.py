"""
Shared fixtures: in-memory SQLite session, fake channel adapters, fixed clock.
"""
from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from commerce_sync.adapters.base import SyncAdapter
from commerce_sync.adapters.factory import AdapterRegistry
from commerce_sync.constants.sync import ChannelType, SyncOrigin, SyncStatus
from commerce_sync.db.base import Base
from commerce_sync.models import ExternalLink, SyncChannel, SyncEntity, TenantSyncConfig

NOW = datetime(2024, 5, 1, 12, 0, 0)
TENANT = "tenant-1"


class FakeAdapter(SyncAdapter):
    """In-memory channel. Queue exceptions in `errors` to fail the next upserts."""

    def __init__(self):
        self.remote = {}
        self.stock = {}
        self.upserts = []
        self.inventory_writes = []
        self.errors = []
        self.stock_errors = []
        self.readback = None
        self.fetch_result = []
        self.fetch_error = None
        self._next_id = 1000

    def upsert_entity(self, payload):
        self.upserts.append(payload)
        if self.errors:
            raise self.errors.pop(0)
        external_id = payload.get("external_id")
        if not external_id:
            external_id = str(self._next_id)
            self._next_id += 1
        self.remote.setdefault(external_id, {}).update(payload["fields"])
        return external_id

    def fetch_entities_since(self, since):
        if self.fetch_error is not None:
            raise self.fetch_error
        return list(self.fetch_result)

    def set_inventory_level(self, external_id, quantity):
        if self.stock_errors:
            raise self.stock_errors.pop(0)
        self.inventory_writes.append((external_id, quantity))
        self.stock[external_id] = quantity

    def get_inventory_level(self, external_id):
        if self.readback is not None:
            return self.readback
        return self.stock.get(external_id, 0)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def adapters():
    """Registry handing out one FakeAdapter per channel, exposed as `adapters.fakes`."""
    registry = AdapterRegistry()
    registry.fakes = {}

    def build(channel):
        return registry.fakes.setdefault(channel.id, FakeAdapter())

    for channel_type in ChannelType:
        registry.register(channel_type, build)
    return registry


@pytest.fixture
def make_channel(db):
    def _make(channel_type=ChannelType.SHOPIFY, tenant_id=TENANT, **kwargs):
        channel = SyncChannel(
            tenant_id=tenant_id,
            channel_type=channel_type.value,
            name=f"{channel_type.value} store",
            config={},
            **kwargs
        )
        db.add(channel)
        db.commit()
        return channel
    return _make


@pytest.fixture
def make_entity(db):
    def _make(data=None, tenant_id=TENANT, entity_type="product",
              last_updated_by=SyncOrigin.PLATFORM.value, updated_at=None,
              sync_status=SyncStatus.SYNCED):
        data = dict(data or {})
        entity = SyncEntity(
            tenant_id=tenant_id,
            entity_type=entity_type,
            data=data,
            sku=data.get("sku"),
            last_updated_by=last_updated_by,
            sync_status=sync_status,
            updated_at=updated_at or NOW - timedelta(hours=1),
            created_at=NOW - timedelta(days=1),
        )
        db.add(entity)
        db.commit()
        return entity
    return _make


@pytest.fixture
def make_link(db):
    def _make(entity, channel, external_id=None, sync_status=SyncStatus.PENDING):
        link = ExternalLink(
            entity_id=entity.id,
            channel_id=channel.id,
            external_id=external_id,
            sync_status=sync_status,
        )
        db.add(link)
        db.commit()
        return link
    return _make


@pytest.fixture
def tenant_config(db):
    config = TenantSyncConfig(
        tenant_id=TENANT,
        max_retries=3,
        retry_base_delay_seconds=60,
        retry_backoff_multiplier=2.0,
    )
    db.add(config)
    db.commit()
    return config
