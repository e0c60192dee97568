"""Records and storage interfaces shared by the scheduler and its backends."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Protocol

__all__ = [
    "AuditEventRecord",
    "AuditQuery",
    "JobRecord",
    "Queue",
    "QueueClaim",
    "Status",
    "Store",
    "TaskRecord",
    "TaskRef",
    "WorkerRecord",
    "decode_task_ref",
    "encode_task_ref",
]


class Status(str, Enum):
    """Lifecycle states of jobs and tasks."""

    QUEUED = "Queued"
    ASSIGNED = "Assigned"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELED = "Canceled"
    ARCHIVED = "Archived"


@dataclass
class JobRecord:
    id: str = ""
    tenant: str = ""
    type: str = ""
    input: str = ""
    policy: str = ""
    priority: str = ""
    status: str = ""
    message: str = ""
    result_artifact_uri: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class TaskRecord:
    job_id: str = ""
    task_id: str = ""
    type: str = ""
    inputs: dict[str, str] = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    status: str = ""
    worker_id: str = ""
    lease_id: str = ""
    lease_expires: datetime | None = None
    attempt: int = 0
    max_retries: int = 0
    timeout_sec: int = 0
    output_uri: str = ""
    error: str = ""
    last_report_key: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class WorkerRecord:
    id: str = ""
    cpu: int = 0
    memory: str = ""
    gpu: bool = False
    models: list[str] = field(default_factory=list)
    tools: list[str] = field(default_factory=list)
    backends: list[str] = field(default_factory=list)
    locality: str = ""
    health: str = ""
    queue_depth: int = 0
    running_tasks: int = 0
    cpu_util: float = 0.0
    memory_util: float = 0.0
    last_heartbeat: datetime | None = None


@dataclass(frozen=True)
class TaskRef:
    """Identifies one task of one job."""

    job_id: str
    task_id: str


@dataclass
class QueueClaim:
    """A task reference handed out by a queue, pending ack or nack."""

    ref: TaskRef
    receipt: str
    claimed_by: str
    claimed_at: datetime
    visible_at: datetime


@dataclass
class AuditEventRecord:
    id: int = 0
    action: str = ""
    actor: str = ""
    tenant: str = ""
    remote_addr: str = ""
    resource: str = ""
    payload_hash: str = ""
    prev_hash: str = ""
    event_hash: str = ""
    requested: int = 0
    result: str = ""
    details: str = ""
    created_at: datetime | None = None


@dataclass
class AuditQuery:
    limit: int = 0
    offset: int = 0
    action: str = ""
    actor: str = ""
    tenant: str = ""
    result: str = ""
    from_time: datetime | None = None
    to_time: datetime | None = None


def encode_task_ref(ref: TaskRef) -> str:
    """Encode a task reference as ``job|task``."""
    return f"{ref.job_id}|{ref.task_id}"


def decode_task_ref(raw: str) -> TaskRef:
    """Decode ``job|task``; raise ValueError when either part is missing."""
    job_id, sep, task_id = raw.partition("|")
    if not sep or not job_id or not task_id:
        raise ValueError(f"malformed task reference: {raw!r}")
    return TaskRef(job_id=job_id, task_id=task_id)


class Store(Protocol):
    """Persistent state of jobs, tasks, workers and audit events."""

    def create_job_with_tasks(self, job: JobRecord, tasks: list[TaskRecord]) -> None:
        """Store a job together with its tasks."""

    def get_job(self, job_id: str) -> JobRecord | None:
        """Return the job, or None when unknown."""

    def update_job(self, job: JobRecord) -> None:
        """Replace a stored job."""

    def count_jobs_by_tenant_status(self, tenant: str, status: str) -> int:
        """Count a tenant's jobs in a status."""

    def list_tasks_by_job(self, job_id: str) -> list[TaskRecord]:
        """Return all tasks of a job."""

    def get_task(self, job_id: str, task_id: str) -> TaskRecord | None:
        """Return the task, or None when unknown."""

    def update_task(self, task: TaskRecord) -> None:
        """Replace a stored task."""

    def count_tasks_by_tenant_status(self, tenant: str, status: str) -> int:
        """Count a tenant's tasks in a status."""

    def list_expired_leased_tasks(self, now: datetime) -> list[TaskRecord]:
        """Return leased tasks whose lease ran out before ``now``."""

    def upsert_worker(self, worker: WorkerRecord) -> None:
        """Insert or replace a worker."""

    def get_worker(self, worker_id: str) -> WorkerRecord | None:
        """Return the worker, or None when unknown."""

    def list_workers(self) -> list[WorkerRecord]:
        """Return all workers."""

    def update_worker_heartbeat(
        self,
        worker_id: str,
        queue_depth: int,
        running_tasks: int,
        cpu_util: float,
        memory_util: float,
        health: str,
    ) -> None:
        """Record a worker's latest load report."""

    def extend_worker_leases(
        self, worker_id: str, now: datetime, lease_duration: timedelta
    ) -> None:
        """Push out the leases of a worker's running tasks."""

    def list_tasks_by_worker_status(self, worker_id: str, status: str) -> list[TaskRecord]:
        """Return a worker's tasks in a status."""

    def count_tasks_by_worker_status(self, worker_id: str, status: str) -> int:
        """Count a worker's tasks in a status."""

    def append_audit_event(self, event: AuditEventRecord) -> None:
        """Append an event to the hash-chained audit log."""

    def list_audit_events(self, query: AuditQuery) -> list[AuditEventRecord]:
        """Return audit events matching a query, newest first."""


class Queue(Protocol):
    """Work queue of ready task references with claim, ack and nack."""

    def enqueue(self, ref: TaskRef) -> None:
        """Add one reference."""

    def enqueue_many(self, refs: list[TaskRef]) -> None:
        """Add several references."""

    def claim(
        self, max_items: int, consumer: str, visibility_timeout: timedelta
    ) -> list[QueueClaim]:
        """Take up to ``max_items`` references for a consumer."""

    def ack(self, claims: list[QueueClaim]) -> None:
        """Mark claims as done."""

    def nack(self, claims: list[QueueClaim], reason: str) -> None:
        """Return claims to the queue or dead-letter them."""

    def requeue_expired(self, now: datetime, max_items: int) -> int:
        """Return claims whose visibility ran out; give the number moved."""

    def list_dead_letters(self, limit: int) -> list[TaskRef]:
        """Return dead-lettered references."""

    def requeue_dead_letters(self, refs: list[TaskRef]) -> int:
        """Move dead-lettered references back; give the number moved."""