"""In-memory task queue with visibility timeouts and dead letters."""

from __future__ import annotations

import itertools
import threading
from collections import Counter, deque
from datetime import datetime, timedelta, timezone

from splai.observability.metrics import DEFAULT_REGISTRY, Registry
from splai.state.types import QueueClaim, TaskRef, encode_task_ref

__all__ = ["MemoryQueue"]

_DEAD_LETTER_AFTER = 5
_DEFAULT_VISIBILITY = timedelta(seconds=15)


class MemoryQueue:
    """A FIFO queue held in process memory."""

    def __init__(self, registry: Registry | None = None):
        self._registry = registry if registry is not None else DEFAULT_REGISTRY
        self._lock = threading.Lock()
        self._items: deque[TaskRef] = deque()
        self._inflight: dict[str, QueueClaim] = {}
        self._nacks: dict[str, int] = {}
        self._dead: list[TaskRef] = []
        self._counter = itertools.count(1)

    def _labels(self, **extra: str) -> dict[str, str]:
        return {"queue_backend": "memory", **extra}

    def enqueue(self, ref: TaskRef) -> None:
        with self._lock:
            self._items.append(ref)

    def enqueue_many(self, refs) -> None:
        with self._lock:
            self._items.extend(refs)

    def claim(
        self,
        max_items: int = 1,
        consumer: str = "",
        visibility_timeout: timedelta | None = None,
    ) -> list[QueueClaim]:
        """Take up to ``max_items`` references from the head of the queue."""
        if max_items <= 0:
            max_items = 1
        if visibility_timeout is None or visibility_timeout <= timedelta(0):
            visibility_timeout = _DEFAULT_VISIBILITY
        with self._lock:
            if not self._items:
                return []
            now = datetime.now(timezone.utc)
            out = []
            for _ in range(min(max_items, len(self._items))):
                ref = self._items.popleft()
                receipt = f"mem:{consumer}:{next(self._counter)}"
                claim = QueueClaim(
                    ref=ref,
                    receipt=receipt,
                    claimed_by=consumer,
                    claimed_at=now,
                    visible_at=now + visibility_timeout,
                )
                self._inflight[receipt] = claim
                out.append(claim)
            self._registry.inc_counter(
                "queue_claimed_total", self._labels(worker_id=consumer), float(len(out))
            )
            return out

    def ack(self, claims) -> None:
        """Forget claims and their failure counts."""
        with self._lock:
            for c in claims:
                self._inflight.pop(c.receipt, None)
                self._nacks.pop(encode_task_ref(c.ref), None)
            for c in claims:
                self._registry.inc_counter(
                    "queue_acked_total", self._labels(worker_id=c.claimed_by), 1
                )

    def nack(self, claims, reason: str) -> None:
        """Put claims back; after repeated ``error`` nacks, dead-letter them."""
        with self._lock:
            for c in claims:
                claim = self._inflight.pop(c.receipt, None)
                if claim is None:
                    continue
                ref = claim.ref
                key = encode_task_ref(ref)
                if reason == "error":
                    self._nacks[key] = self._nacks.get(key, 0) + 1
                    if self._nacks[key] >= _DEAD_LETTER_AFTER:
                        self._dead.append(ref)
                        del self._nacks[key]
                        continue
                self._items.append(ref)
            for c in claims:
                self._registry.inc_counter(
                    "queue_nacked_total",
                    self._labels(worker_id=c.claimed_by, reason=reason),
                    1,
                )
            self._registry.set_gauge(
                "dead_letter_count", self._labels(), float(len(self._dead))
            )

    def requeue_expired(self, now: datetime | None = None, max_items: int = 0) -> int:
        """Return claims whose visibility time has passed; ``max_items`` <= 0 means all."""
        if now is None:
            now = datetime.now(timezone.utc)
        with self._lock:
            moved = 0
            for receipt, claim in list(self._inflight.items()):
                if max_items > 0 and moved >= max_items:
                    break
                if claim.visible_at > now:
                    continue
                self._items.append(claim.ref)
                del self._inflight[receipt]
                moved += 1
            if moved:
                self._registry.inc_counter(
                    "queue_expired_requeued_total", self._labels(), float(moved)
                )
            return moved

    def list_dead_letters(self, limit: int = 0) -> list[TaskRef]:
        """Return the oldest dead letters; ``limit`` <= 0 means all."""
        with self._lock:
            if limit <= 0 or limit > len(self._dead):
                limit = len(self._dead)
            return self._dead[:limit]

    def requeue_dead_letters(self, refs) -> int:
        """Move matching dead letters back to the queue, once per given ref."""
        refs = list(refs)
        if not refs:
            return 0
        with self._lock:
            wanted = Counter(encode_task_ref(r) for r in refs)
            kept = []
            requeued = 0
            for ref in self._dead:
                key = encode_task_ref(ref)
                if wanted[key] > 0:
                    self._items.append(ref)
                    wanted[key] -= 1
                    requeued += 1
                else:
                    kept.append(ref)
            self._dead = kept
            if requeued:
                self._registry.inc_counter(
                    "dead_letter_requeued_total", self._labels(), float(requeued)
                )
            self._registry.set_gauge(
                "dead_letter_count", self._labels(), float(len(self._dead))
            )
            return requeued