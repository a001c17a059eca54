"""
Operator actions: retries, queue inspection, conflict resolution, reporting.
"""
from datetime import timedelta

import pytest

from commerce_sync.constants.sync import (
    ChannelType,
    ConflictStrategy,
    JobOperation,
    JobStatus,
    SyncAction,
    SyncStatus,
)
from commerce_sync.core.exceptions import EntityNotFoundError, SyncValidationError
from commerce_sync.models import SyncJob, SyncLogEntry
from commerce_sync.services.conflict_resolver import ConflictResolver
from commerce_sync.services.job_queue import JobQueue
from commerce_sync.services.propagator import OutboundPropagator
from commerce_sync.services.sync_admin import SyncAdmin
from commerce_sync.services.sync_service import SyncService

from tests.conftest import TENANT


@pytest.fixture
def admin(db, adapters):
    return SyncAdmin(db, propagator=OutboundPropagator(db, adapters=adapters))


@pytest.fixture
def conflicted(db, adapters, make_channel, make_entity, make_link, now):
    """Entity held in CONFLICT after a storefront rename of a reviewed field."""
    shop = make_channel(ChannelType.SHOPIFY)
    entity = make_entity({"name": "Mug"}, updated_at=now - timedelta(seconds=60))
    make_link(entity, shop, external_id="S-1", sync_status=SyncStatus.SYNCED)
    service = SyncService(db, adapters=adapters, resolver=ConflictResolver(manual_review_fields={"name"}))
    service.process_incoming_change("shopify", TENANT, shop.id, "S-1", {"name": "Cup"}, now=now)
    db.refresh(entity)
    assert entity.sync_status == SyncStatus.CONFLICT
    return entity, shop


def failed_job(db, entity, channel, now):
    job = JobQueue(db).enqueue(
        entity_id=entity.id,
        tenant_id=entity.tenant_id,
        operation=JobOperation.PUSH_TO_CHANNEL,
        trigger_origin="platform",
        channel_id=channel.id,
        now=now
    )
    job.status = JobStatus.FAILED
    job.attempts = 3
    job.last_error = "gateway timeout"
    job.completed_at = now
    db.commit()
    return job


def test_retry_failed_for_entity(db, admin, make_channel, make_entity, now):
    shop = make_channel(ChannelType.SHOPIFY)
    entity = make_entity({"name": "Mug"})
    job = failed_job(db, entity, shop, now)

    later = now + timedelta(hours=1)
    assert admin.retry_failed_for_entity(entity.id, now=later) == 1

    db.refresh(job)
    assert job.status == JobStatus.PENDING
    assert job.attempts == 0
    assert job.scheduled_for == later


def test_retry_for_unknown_entity(admin):
    with pytest.raises(EntityNotFoundError):
        admin.retry_failed_for_entity(404)


def test_queue_status_for_entity(db, admin, make_channel, make_entity, now):
    shop = make_channel(ChannelType.SHOPIFY)
    warehouse = make_channel(ChannelType.FULFILLMENT)
    entity = make_entity({"name": "Mug"})
    failed_job(db, entity, shop, now)
    JobQueue(db).enqueue(
        entity_id=entity.id,
        tenant_id=entity.tenant_id,
        operation=JobOperation.PUSH_TO_FULFILLMENT,
        trigger_origin="platform",
        channel_id=warehouse.id,
        now=now
    )
    db.commit()

    status = admin.get_queue_status_for_entity(entity.id)

    assert status.counts == {JobStatus.FAILED: 1, JobStatus.PENDING: 1}
    assert status.next_scheduled_for == now
    assert status.last_error == "gateway timeout"
    assert len(status.jobs) == 2


def test_accept_remote_applies_refused_values(db, admin, conflicted, now):
    entity, shop = conflicted

    admin.resolve_conflict(entity.id, ConflictStrategy.ACCEPT_REMOTE, now=now + timedelta(minutes=5))

    db.refresh(entity)
    assert entity.get("name") == "Cup"
    assert entity.sync_status == SyncStatus.PENDING
    operations = {job.operation for job in db.query(SyncJob).filter(SyncJob.channel_id == shop.id)}
    assert JobOperation.PUSH_TO_CHANNEL in operations
    assert db.query(SyncLogEntry).filter(SyncLogEntry.action == SyncAction.RESOLVE_CONFLICT).count() == 1


def test_accept_local_keeps_values(db, admin, conflicted, now):
    entity, _ = conflicted

    admin.resolve_conflict(entity.id, "accept_local", now=now)

    db.refresh(entity)
    assert entity.get("name") == "Mug"
    assert entity.sync_status == SyncStatus.PENDING


def test_merge_applies_operator_values(db, admin, conflicted, now):
    entity, _ = conflicted

    admin.resolve_conflict(entity.id, ConflictStrategy.MERGE, merge_data={"name": "Mug / Cup"}, now=now)

    db.refresh(entity)
    assert entity.get("name") == "Mug / Cup"


def test_merge_requires_data(admin, conflicted, now):
    entity, _ = conflicted

    with pytest.raises(SyncValidationError):
        admin.resolve_conflict(entity.id, ConflictStrategy.MERGE, now=now)


def test_resolve_requires_conflict_state(admin, make_entity, now):
    entity = make_entity({"name": "Mug"})

    with pytest.raises(SyncValidationError):
        admin.resolve_conflict(entity.id, ConflictStrategy.ACCEPT_LOCAL, now=now)


@pytest.fixture
def linked_conflicts(db, adapters, conflicted, now):
    """Adds a rejected stock write next to the manual conflict."""
    entity, shop = conflicted
    SyncService(db, adapters=adapters).process_incoming_change(
        "shopify", TENANT, shop.id, "S-1", {"available": 1}, now=now + timedelta(seconds=45)
    )
    return entity


def test_conflict_reporting(db, admin, linked_conflicts):
    stats = admin.conflict_stats(TENANT)

    assert stats["total"] == 2
    assert stats["rejected"] == 1
    assert stats["manual"] == 1
    assert stats["by_field"] == {"available": 1, "name": 1}
    assert stats["by_origin"] == {"shopify": 2}

    conflicts = admin.list_conflicts(TENANT)
    assert {c["field"] for c in conflicts} == {"available", "name"}


def test_status_summary(db, admin, conflicted):
    summary = admin.status_summary(TENANT)

    assert summary["entities"] == {SyncStatus.CONFLICT: 1}
    assert summary["log_actions"][SyncAction.CONFLICT] == 1
    assert summary["channels"][0]["type"] == "shopify"
