"""
Job queue: backoff schedule, atomic claims, per-target exclusion,
coalescing, cleanup and stale sweep.
"""
from datetime import timedelta

from commerce_sync.constants.sync import JobOperation, JobStatus, SyncAction
from commerce_sync.models import SyncJob, SyncLogEntry
from commerce_sync.repositories import SyncJobRepository
from commerce_sync.services.job_queue import JobQueue, RetryPolicy, make_target_key

from tests.conftest import TENANT


def enqueue(queue, entity, now, channel_id=1, operation=JobOperation.PUSH_TO_CHANNEL, **kwargs):
    job = queue.enqueue(
        entity_id=entity.id,
        tenant_id=TENANT,
        operation=operation,
        trigger_origin="platform",
        channel_id=channel_id,
        now=now,
        **kwargs
    )
    queue.db.commit()
    return job


def test_backoff_schedule_then_dead_letter(db, make_entity, tenant_config, now):
    """maxRetries=3, baseDelay=60s, multiplier=2: reschedules at +60s, +120s, then failed."""
    queue = JobQueue(db)
    entity = make_entity({"name": "A"})
    job = enqueue(queue, entity, now)
    assert job.max_retries == 3

    deltas = []
    clock = now
    for _ in range(3):
        claimed = queue.claim_batch(now=clock)
        assert [j.id for j in claimed] == [job.id]
        job = claimed[0]
        queue.retry_or_fail(job, "timeout", now=clock)
        if job.status == JobStatus.PENDING:
            deltas.append(job.scheduled_for - clock)
            clock = job.scheduled_for

    assert deltas == [timedelta(seconds=60), timedelta(seconds=120)]
    assert job.status == JobStatus.FAILED
    assert job.attempts == 3
    assert job.last_error == "timeout"

    # Never picked up again
    assert queue.claim_batch(now=clock + timedelta(days=1)) == []

    failures = db.query(SyncLogEntry).filter(SyncLogEntry.action == SyncAction.FAILED).all()
    assert len(failures) == 1
    assert failures[0].entity_id == entity.id
    assert failures[0].success is False


def test_delay_for_attempt():
    policy = RetryPolicy(max_retries=5, base_delay_seconds=60, backoff_multiplier=2)
    assert policy.delay_for(1) == timedelta(seconds=60)
    assert policy.delay_for(2) == timedelta(seconds=120)
    assert policy.delay_for(3) == timedelta(seconds=240)


def test_retry_policy_defaults_without_tenant_config(db):
    policy = JobQueue(db).retry_policy("unknown-tenant")
    assert policy.max_retries == 3
    assert policy.base_delay_seconds == 60
    assert policy.backoff_multiplier == 2.0


def test_claim_is_conditional(db, make_entity, now):
    """A second claim of the same row loses."""
    queue = JobQueue(db)
    repo = SyncJobRepository(db)
    job = enqueue(queue, make_entity(), now)

    first = repo.claim(job, now)
    second = repo.claim(job, now)

    assert first is not None
    assert first.status == JobStatus.PROCESSING
    assert first.attempts == 1
    assert first.claim_token
    assert second is None
    assert repo.get(job.id).attempts == 1


def test_claim_skips_future_and_exhausted_jobs(db, make_entity, now):
    queue = JobQueue(db)
    entity = make_entity()
    later = enqueue(queue, entity, now, channel_id=1, delay_seconds=30)
    exhausted = enqueue(queue, entity, now, channel_id=2)
    exhausted.attempts = exhausted.max_retries
    db.commit()

    assert queue.claim_batch(now=now) == []
    assert [j.id for j in queue.claim_batch(now=now + timedelta(seconds=30))] == [later.id]


def test_claim_order_priority_then_schedule(db, make_entity, now):
    queue = JobQueue(db)
    entity = make_entity()
    low_old = enqueue(queue, entity, now - timedelta(minutes=5), channel_id=1, priority=0)
    high_new = enqueue(queue, entity, now, channel_id=2, priority=5)
    low_new = enqueue(queue, entity, now - timedelta(minutes=1), channel_id=3, priority=0)

    claimed = queue.claim_batch(now=now, batch_size=10)
    assert [j.id for j in claimed] == [high_new.id, low_old.id, low_new.id]


def test_batch_size_limits_claims(db, make_entity, now):
    queue = JobQueue(db)
    entity = make_entity()
    for channel_id in range(1, 6):
        enqueue(queue, entity, now, channel_id=channel_id)

    assert len(queue.claim_batch(now=now, batch_size=2)) == 2


def test_same_target_is_not_claimed_while_processing(db, make_entity, now):
    queue = JobQueue(db)
    repo = SyncJobRepository(db)
    entity = make_entity()
    first = enqueue(queue, entity, now)
    # A second pending row for the same key, as left behind by a requeue
    second = repo.create(
        entity_id=entity.id,
        tenant_id=TENANT,
        operation=first.operation,
        channel_id=first.channel_id,
        target_key=first.target_key,
        trigger_origin="platform",
        status=JobStatus.PENDING,
        attempts=0,
        max_retries=3,
        priority=0,
        scheduled_for=now + timedelta(seconds=1),
    )
    db.commit()

    claimed = queue.claim_batch(now=now + timedelta(seconds=1))
    assert [j.id for j in claimed] == [first.id]
    assert queue.claim_batch(now=now + timedelta(seconds=1)) == []

    queue.complete(claimed[0], now=now + timedelta(seconds=2))
    assert [j.id for j in queue.claim_batch(now=now + timedelta(seconds=2))] == [second.id]


def test_other_targets_of_same_entity_run_concurrently(db, make_entity, now):
    queue = JobQueue(db)
    entity = make_entity()
    enqueue(queue, entity, now, channel_id=1)
    enqueue(queue, entity, now, channel_id=2)

    assert len(queue.claim_batch(now=now)) == 2


def test_operations_on_same_channel_do_not_overlap(db, make_entity, now):
    queue = JobQueue(db)
    entity = make_entity()
    upsert = enqueue(queue, entity, now, channel_id=1)
    assert [j.id for j in queue.claim_batch(now=now)] == [upsert.id]

    stock = enqueue(queue, entity, now, channel_id=1, operation=JobOperation.PUSH_STOCK)
    assert queue.claim_batch(now=now) == []

    queue.complete(upsert, now=now)
    assert [j.id for j in queue.claim_batch(now=now)] == [stock.id]


def test_sync_all_excludes_channel_jobs_of_entity(db, make_entity, now):
    queue = JobQueue(db)
    entity = make_entity()
    other = make_entity()
    sync_all = enqueue(queue, entity, now, channel_id=None, operation=JobOperation.SYNC_ALL)
    assert [j.id for j in queue.claim_batch(now=now)] == [sync_all.id]

    blocked = enqueue(queue, entity, now, channel_id=3)
    unrelated = enqueue(queue, other, now, channel_id=3)
    assert [j.id for j in queue.claim_batch(now=now)] == [unrelated.id]

    queue.complete(sync_all, now=now)
    assert [j.id for j in queue.claim_batch(now=now)] == [blocked.id]

    second_sync = enqueue(queue, entity, now, channel_id=None, operation=JobOperation.SYNC_ALL)
    assert queue.claim_batch(now=now) == []
    queue.complete(blocked, now=now)
    assert [j.id for j in queue.claim_batch(now=now)] == [second_sync.id]


def test_enqueue_coalesces_pending_job(db, make_entity, now):
    queue = JobQueue(db)
    entity = make_entity()
    first = enqueue(queue, entity, now, fields_to_sync=["name"], priority=1)
    second = enqueue(queue, entity, now - timedelta(seconds=10), fields_to_sync=["description"], priority=3)

    assert second.id == first.id
    assert second.fields_to_sync == ["description", "name"]
    assert second.priority == 3
    assert second.scheduled_for == now - timedelta(seconds=10)
    assert db.query(SyncJob).count() == 1


def test_coalescing_with_full_push_widens_fields(db, make_entity, now):
    queue = JobQueue(db)
    entity = make_entity()
    enqueue(queue, entity, now, fields_to_sync=["name"])
    job = enqueue(queue, entity, now, fields_to_sync=None)

    assert job.fields_to_sync is None


def test_target_key():
    assert make_target_key(JobOperation.PUSH_STOCK, 4) == "push_stock:4"
    assert make_target_key(JobOperation.SYNC_ALL, None) == "sync_all:all"


def test_cleanup_purges_old_finished_jobs(db, make_entity, now):
    queue = JobQueue(db)
    entity = make_entity()
    old_done = enqueue(queue, entity, now, channel_id=1)
    recent_done = enqueue(queue, entity, now, channel_id=2)
    old_skipped = enqueue(queue, entity, now, channel_id=3)
    old_failed = enqueue(queue, entity, now, channel_id=4)
    for job, status, age in (
        (old_done, JobStatus.COMPLETED, 8),
        (recent_done, JobStatus.COMPLETED, 6),
        (old_skipped, JobStatus.SKIPPED, 10),
        (old_failed, JobStatus.FAILED, 30),
    ):
        job.status = status
        job.completed_at = now - timedelta(days=age)
    db.commit()

    assert queue.cleanup(now=now) == 2
    remaining = {job.id for job in db.query(SyncJob).all()}
    assert remaining == {recent_done.id, old_failed.id}


def test_stale_processing_jobs_are_requeued(db, make_entity, now):
    queue = JobQueue(db)
    entity = make_entity()
    enqueue(queue, entity, now - timedelta(minutes=30), channel_id=1)
    enqueue(queue, entity, now - timedelta(minutes=30), channel_id=2)
    stale, fresh = queue.claim_batch(now=now - timedelta(minutes=30))
    fresh.started_at = now - timedelta(minutes=5)
    db.commit()

    assert queue.requeue_stale(now=now, stale_minutes=15) == 1
    db.refresh(stale)
    db.refresh(fresh)
    assert stale.status == JobStatus.PENDING
    assert stale.attempts == 0
    assert stale.claim_token is None
    assert fresh.status == JobStatus.PROCESSING


def test_reset_failed_for_entity(db, make_entity, now):
    queue = JobQueue(db)
    entity = make_entity()
    job = enqueue(queue, entity, now)
    job.status = JobStatus.FAILED
    job.attempts = 3
    db.commit()

    assert queue.reset_failed_for_entity(entity.id, now=now) == 1
    assert job.status == JobStatus.PENDING
    assert job.attempts == 0
    assert [j.id for j in queue.claim_batch(now=now)] == [job.id]
