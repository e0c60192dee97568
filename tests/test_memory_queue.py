from datetime import datetime, timedelta, timezone

import pytest

from splai.observability.metrics import Registry
from splai.state.memory_queue import MemoryQueue
from splai.state.types import TaskRef


@pytest.fixture
def registry():
    return Registry()


@pytest.fixture
def queue(registry):
    return MemoryQueue(registry)


def test_claim_ack_nack_and_requeue_expired(queue):
    queue.enqueue(TaskRef("j1", "t1"))
    queue.enqueue(TaskRef("j1", "t2"))

    claims = queue.claim(2, "w1", timedelta(milliseconds=20))
    assert len(claims) == 2

    queue.ack([claims[0]])
    queue.nack([claims[1]], "not_ready")

    claims2 = queue.claim(1, "w1", timedelta(seconds=1))
    assert len(claims2) == 1 and claims2[0].ref.task_id == "t2"

    queue.requeue_expired(datetime.now(timezone.utc) + timedelta(seconds=2), 10)
    claims3 = queue.claim(1, "w1", timedelta(seconds=1))
    assert len(claims3) == 1 and claims3[0].ref.task_id == "t2"


def test_dead_letter_and_requeue(queue):
    ref = TaskRef("j2", "t-dead")
    queue.enqueue(ref)

    for _ in range(5):
        claims = queue.claim(1, "w1", timedelta(seconds=1))
        assert len(claims) == 1
        queue.nack(claims, "error")

    dead = queue.list_dead_letters(10)
    assert dead == [ref]

    assert queue.requeue_dead_letters([ref]) == 1

    claims = queue.claim(1, "w2", timedelta(seconds=1))
    assert len(claims) == 1 and claims[0].ref == ref


def test_metrics_move(queue, registry):
    queue.enqueue(TaskRef("j3", "t1"))
    claims = queue.claim(1, "worker-a", timedelta(milliseconds=50))
    assert len(claims) == 1
    queue.ack(claims)

    snap = registry.snapshot()
    assert snap.counters
    names = {c.name for c in snap.counters if c.value >= 1}
    assert "queue_claimed_total" in names
    assert "queue_acked_total" in names


def test_claim_on_empty_queue_returns_nothing(queue, registry):
    assert queue.claim(3, "w1", timedelta(seconds=1)) == []
    assert registry.snapshot().counters == []


def test_claim_is_fifo_and_receipts_are_unique(queue):
    queue.enqueue_many([TaskRef("j", f"t{i}") for i in range(4)])
    claims = queue.claim(10, "w1", timedelta(seconds=1))
    assert [c.ref.task_id for c in claims] == ["t0", "t1", "t2", "t3"]
    assert len({c.receipt for c in claims}) == 4
    assert all(c.claimed_by == "w1" for c in claims)
    assert all(c.visible_at - c.claimed_at == timedelta(seconds=1) for c in claims)


def test_non_positive_max_claims_one(queue):
    queue.enqueue_many([TaskRef("j", "a"), TaskRef("j", "b")])
    assert len(queue.claim(0, "w1", timedelta(seconds=1))) == 1


def test_not_ready_nacks_never_dead_letter(queue):
    queue.enqueue(TaskRef("j", "t"))
    for _ in range(7):
        queue.nack(queue.claim(1, "w1", timedelta(seconds=1)), "not_ready")
    assert queue.list_dead_letters() == []
    assert len(queue.claim(1, "w1", timedelta(seconds=1))) == 1


def test_ack_resets_error_count(queue):
    ref = TaskRef("j", "t")
    queue.enqueue(ref)
    for _ in range(4):
        queue.nack(queue.claim(1, "w1", timedelta(seconds=1)), "error")
    queue.ack(queue.claim(1, "w1", timedelta(seconds=1)))
    queue.enqueue(ref)
    queue.nack(queue.claim(1, "w1", timedelta(seconds=1)), "error")
    assert queue.list_dead_letters() == []


def test_requeue_expired_respects_visibility_and_max(queue):
    queue.enqueue_many([TaskRef("j", f"t{i}") for i in range(3)])
    queue.claim(3, "w1", timedelta(seconds=30))
    assert queue.requeue_expired(datetime.now(timezone.utc), 0) == 0
    later = datetime.now(timezone.utc) + timedelta(minutes=1)
    assert queue.requeue_expired(later, 2) == 2
    assert queue.requeue_expired(later, 0) == 1


def test_dead_letter_listing_limit_and_unknown_requeue(queue, registry):
    refs = [TaskRef("j", "a"), TaskRef("j", "b")]
    queue.enqueue_many(refs)
    for _ in range(5):
        queue.nack(queue.claim(2, "w1", timedelta(seconds=1)), "error")
    assert queue.list_dead_letters(1) == [refs[0]]
    assert queue.list_dead_letters(0) == refs
    assert queue.requeue_dead_letters([TaskRef("j", "zzz")]) == 0
    assert queue.requeue_dead_letters([]) == 0
    gauges = {g.name: g.value for g in registry.snapshot().gauges}
    assert gauges["dead_letter_count"] == 2