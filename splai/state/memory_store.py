"""In-memory implementation of the scheduler's state store."""

from __future__ import annotations

import copy
import hashlib
import itertools
import json
import threading
from datetime import datetime, timedelta, timezone

from splai.state.types import (
    AuditEventRecord,
    AuditQuery,
    JobRecord,
    Status,
    TaskRecord,
    WorkerRecord,
)

__all__ = ["MemoryStore", "compute_audit_hash"]

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_DEFAULT_AUDIT_LIMIT = 50
_LEASED_STATUSES = (Status.RUNNING, Status.ASSIGNED)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class MemoryStore:
    """Keeps jobs, tasks, workers and the audit log in process memory.

    Records are copied on the way in and out, so callers never share
    mutable state with the store.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._jobs: dict[str, JobRecord] = {}
        self._tasks: dict[str, dict[str, TaskRecord]] = {}
        self._workers: dict[str, WorkerRecord] = {}
        self._audits: list[AuditEventRecord] = []
        self._ids = itertools.count(1)

    def create_job_with_tasks(self, job: JobRecord, tasks) -> None:
        """Store a job and its tasks, replacing any earlier tasks of that job."""
        job = copy.deepcopy(job)
        now = _now()
        if job.created_at is None:
            job.created_at = now
        job.updated_at = now
        by_id: dict[str, TaskRecord] = {}
        for task in tasks:
            t = copy.deepcopy(task)
            if t.created_at is None:
                t.created_at = now
            t.updated_at = now
            by_id[t.task_id] = t
        with self._lock:
            self._jobs[job.id] = job
            self._tasks[job.id] = by_id

    def get_job(self, job_id: str) -> JobRecord | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job is not None else None

    def update_job(self, job: JobRecord) -> None:
        job = copy.deepcopy(job)
        job.updated_at = _now()
        with self._lock:
            self._jobs[job.id] = job

    def count_jobs_by_tenant_status(self, tenant: str, status: str) -> int:
        """Count jobs; an empty tenant or status matches any."""
        with self._lock:
            return sum(
                1
                for j in self._jobs.values()
                if (not tenant or j.tenant == tenant) and (not status or j.status == status)
            )

    def list_tasks_by_job(self, job_id: str) -> list[TaskRecord]:
        with self._lock:
            return [copy.deepcopy(t) for t in self._tasks.get(job_id, {}).values()]

    def get_task(self, job_id: str, task_id: str) -> TaskRecord | None:
        with self._lock:
            task = self._tasks.get(job_id, {}).get(task_id)
            return copy.deepcopy(task) if task is not None else None

    def update_task(self, task: TaskRecord) -> None:
        task = copy.deepcopy(task)
        task.updated_at = _now()
        with self._lock:
            self._tasks.setdefault(task.job_id, {})[task.task_id] = task

    def count_tasks_by_tenant_status(self, tenant: str, status: str) -> int:
        """Count tasks of a tenant's known jobs; empty filters match any."""
        with self._lock:
            count = 0
            for job_id, by_id in self._tasks.items():
                job = self._jobs.get(job_id)
                if job is None:
                    continue
                if tenant and job.tenant != tenant:
                    continue
                count += sum(1 for t in by_id.values() if not status or t.status == status)
            return count

    def list_expired_leased_tasks(self, now: datetime) -> list[TaskRecord]:
        """Return assigned or running tasks whose lease expired before ``now``."""
        with self._lock:
            return [
                copy.deepcopy(task)
                for by_id in self._tasks.values()
                for task in by_id.values()
                if task.status in _LEASED_STATUSES
                and task.lease_id
                and task.lease_expires is not None
                and task.lease_expires < now
            ]

    def upsert_worker(self, worker: WorkerRecord) -> None:
        worker = copy.deepcopy(worker)
        if worker.last_heartbeat is None:
            worker.last_heartbeat = _now()
        with self._lock:
            self._workers[worker.id] = worker

    def get_worker(self, worker_id: str) -> WorkerRecord | None:
        with self._lock:
            worker = self._workers.get(worker_id)
            return copy.deepcopy(worker) if worker is not None else None

    def list_workers(self) -> list[WorkerRecord]:
        with self._lock:
            return [copy.deepcopy(w) for w in self._workers.values()]

    def update_worker_heartbeat(
        self,
        worker_id: str,
        queue_depth: int,
        running_tasks: int,
        cpu_util: float,
        memory_util: float,
        health: str,
    ) -> None:
        """Record load figures; an empty health means ``healthy``."""
        with self._lock:
            worker = self._workers.get(worker_id) or WorkerRecord()
            worker.queue_depth = queue_depth
            worker.running_tasks = running_tasks
            worker.cpu_util = cpu_util
            worker.memory_util = memory_util
            worker.health = health or "healthy"
            worker.last_heartbeat = _now()
            self._workers[worker_id] = worker

    def extend_worker_leases(
        self, worker_id: str, now: datetime, lease_duration: timedelta
    ) -> None:
        """Move the lease expiry of the worker's running, leased tasks."""
        with self._lock:
            for by_id in self._tasks.values():
                for task in by_id.values():
                    if (
                        task.status != Status.RUNNING
                        or task.worker_id != worker_id
                        or not task.lease_id
                    ):
                        continue
                    task.lease_expires = now + lease_duration
                    task.updated_at = now

    def _tasks_by_worker_status(self, worker_id: str, status: str):
        for by_id in self._tasks.values():
            for task in by_id.values():
                if worker_id and task.worker_id != worker_id:
                    continue
                if status and task.status != status:
                    continue
                yield task

    def list_tasks_by_worker_status(self, worker_id: str, status: str) -> list[TaskRecord]:
        with self._lock:
            return [copy.deepcopy(t) for t in self._tasks_by_worker_status(worker_id, status)]

    def count_tasks_by_worker_status(self, worker_id: str, status: str) -> int:
        with self._lock:
            return sum(1 for _ in self._tasks_by_worker_status(worker_id, status))

    def append_audit_event(self, event: AuditEventRecord) -> None:
        """Append an event, chaining its hash to the previous one."""
        event = copy.deepcopy(event)
        if event.created_at is None:
            event.created_at = _now()
        with self._lock:
            if self._audits:
                event.prev_hash = self._audits[-1].event_hash
            event.event_hash = compute_audit_hash(event)
            event.id = next(self._ids)
            self._audits.append(event)

    def list_audit_events(self, query: AuditQuery) -> list[AuditEventRecord]:
        """Filter, page in append order, then return the page newest first."""
        limit = query.limit if query.limit > 0 else _DEFAULT_AUDIT_LIMIT
        offset = max(query.offset, 0)
        with self._lock:
            filtered = [a for a in self._audits if _audit_matches(query, a)]
            page = filtered[offset : offset + limit]
            return [copy.deepcopy(a) for a in reversed(page)]


def _audit_matches(query: AuditQuery, event: AuditEventRecord) -> bool:
    if query.action and event.action != query.action:
        return False
    if query.actor and event.actor != query.actor:
        return False
    if query.tenant and event.tenant != query.tenant:
        return False
    if query.result and event.result != query.result:
        return False
    if query.from_time is not None and event.created_at < query.from_time:
        return False
    if query.to_time is not None and event.created_at > query.to_time:
        return False
    return True


def _unix_nanos(moment: datetime | None) -> int:
    if moment is None:
        return 0
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    delta = moment - _EPOCH
    return (delta.days * 86400 + delta.seconds) * 1_000_000_000 + delta.microseconds * 1000


_JSON_SAFE = {
    "<": "\\u003c",
    ">": "\\u003e",
    "&": "\\u0026",
    "\u2028": "\\u2028",
    "\u2029": "\\u2029",
}


def compute_audit_hash(event: AuditEventRecord) -> str:
    """Return the hex SHA-256 of the event's canonical JSON form."""
    payload = {
        "action": event.action,
        "actor": event.actor,
        "tenant": event.tenant,
        "remote_addr": event.remote_addr,
        "resource": event.resource,
        "payload_hash": event.payload_hash,
        "prev_hash": event.prev_hash,
        "requested": event.requested,
        "result": event.result,
        "details": event.details,
        "created_at": _unix_nanos(event.created_at),
    }
    text = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    for raw, escaped in _JSON_SAFE.items():
        text = text.replace(raw, escaped)
    return hashlib.sha256(text.encode("utf-8")).hexdigest()