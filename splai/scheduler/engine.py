"""Job scheduler: admits jobs, places tasks on workers and tracks their progress."""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from splai.observability.metrics import DEFAULT_REGISTRY, Registry
from splai.planner.dag import DAG
from splai.policy import AssignmentInput, Decision, PolicyEngine, SubmitInput, allow_all
from splai.scheduler.scoring import (
    ScoreWeights,
    compute_worker_score,
    contains_fold,
    new_lease_id,
    normalize_backend,
    normalize_backends,
    parse_bool,
    priority_rank,
    retry_backoff,
    task_attempt_deadline,
    lease_start_from_id,
    tie_hash,
    worker_capacity,
    worker_has_backend_inventory,
    worker_supports_backend,
)
from splai.state.memory_queue import MemoryQueue
from splai.state.memory_store import MemoryStore
from splai.state.types import (
    AuditEventRecord,
    AuditQuery,
    JobRecord,
    Status,
    TaskRecord,
    TaskRef,
    WorkerRecord,
)

__all__ = [
    "JOB_ARCHIVED",
    "JOB_ASSIGNED",
    "JOB_CANCELED",
    "JOB_COMPLETED",
    "JOB_FAILED",
    "JOB_QUEUED",
    "JOB_RUNNING",
    "Assignment",
    "Engine",
    "EngineOptions",
    "HeartbeatRequest",
    "Job",
    "RegisterWorkerRequest",
    "ReportTaskResultRequest",
    "SchedulerError",
    "TaskStatus",
    "new_in_memory_engine",
]

log = logging.getLogger(__name__)

JOB_QUEUED = "Queued"
JOB_ASSIGNED = Status.ASSIGNED
JOB_RUNNING = Status.RUNNING
JOB_COMPLETED = "Completed"
JOB_FAILED = "Failed"
JOB_CANCELED = "Canceled"
JOB_ARCHIVED = "Archived"

_TERMINAL = (JOB_COMPLETED, JOB_FAILED, JOB_CANCELED, JOB_ARCHIVED)
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_DEFAULT_LEASE = timedelta(seconds=15)


class SchedulerError(Exception):
    """A scheduling request was refused or referred to something unknown."""


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class EngineOptions:
    """Engine settings; zero values take defaults."""

    lease_duration: timedelta = timedelta(0)
    queue_backend: str = ""
    policy_engine: PolicyEngine | None = None
    score_weights: ScoreWeights = field(default_factory=ScoreWeights)
    preempt: bool = True
    registry: Registry | None = None
    clock: Callable[[], datetime] | None = None


@dataclass
class Job:
    """A job as reported to callers."""

    id: str
    tenant: str
    type: str
    input: str
    policy: str
    priority: str
    status: str
    message: str
    result_artifact_uri: str
    created_at: datetime | None
    updated_at: datetime | None


@dataclass
class TaskStatus:
    """A task's progress as reported to callers."""

    task_id: str
    type: str
    status: str
    attempt: int
    worker_id: str
    lease_id: str
    lease_expires: datetime | None
    output_uri: str
    error: str
    created_at: datetime | None
    updated_at: datetime | None


@dataclass
class RegisterWorkerRequest:
    """What a worker advertises when it joins."""

    worker_id: str
    cpu: int = 0
    memory: str = ""
    gpu: bool = False
    models: list[str] = field(default_factory=list)
    tools: list[str] = field(default_factory=list)
    backends: list[str] = field(default_factory=list)
    locality: str = ""


@dataclass
class HeartbeatRequest:
    """A worker's periodic load report."""

    queue_depth: int = 0
    running_tasks: int = 0
    cpu_util: float = 0.0
    memory_util: float = 0.0
    health: str = ""


@dataclass
class Assignment:
    """A task handed to a worker under a lease."""

    job_id: str
    task_id: str
    type: str
    inputs: dict[str, str]
    attempt: int
    lease_id: str


@dataclass
class ReportTaskResultRequest:
    """A worker's report on a task it holds."""

    worker_id: str
    job_id: str
    task_id: str
    status: str
    lease_id: str = ""
    idempotency_key: str = ""
    output_artifact_uri: str = ""
    error: str = ""
    duration_millis: int = 0


def _tally(tasks: Iterable[TaskRecord]) -> tuple[int, int, str]:
    completed = failed = 0
    last_output = ""
    for t in tasks:
        if t.status == JOB_COMPLETED:
            completed += 1
            if t.output_uri:
                last_output = t.output_uri
        elif t.status == JOB_FAILED:
            failed += 1
    return completed, failed, last_output


class Engine:
    """Schedules task graphs onto registered workers through a store and a queue."""

    def __init__(self, store, queue, options: EngineOptions | None = None):
        options = options if options is not None else EngineOptions()
        self._store = store
        self._queue = queue
        self._lease_duration = (
            options.lease_duration if options.lease_duration > timedelta(0) else _DEFAULT_LEASE
        )
        self._queue_backend = options.queue_backend or "unknown"
        self._policy = options.policy_engine if options.policy_engine is not None else allow_all()
        self._weights = options.score_weights.with_defaults()
        self._preempt = options.preempt
        self._registry = options.registry if options.registry is not None else DEFAULT_REGISTRY
        self._clock = options.clock if options.clock is not None else _utc_now

    # -- jobs -------------------------------------------------------------

    def add_job(
        self,
        job_id: str,
        tenant: str,
        req_type: str,
        input_text: str,
        policy_name: str,
        priority: str,
        data_classification: str,
        model: str,
        network_isolation: str,
        dag: DAG,
    ) -> None:
        """Store a job and its tasks and queue the tasks without dependencies."""
        now = self._clock()
        if not self._policy.is_noop():
            running_jobs = self._store.count_jobs_by_tenant_status(tenant, JOB_RUNNING)
            decision = self._policy.evaluate_submit(
                SubmitInput(
                    tenant=tenant,
                    job_type=req_type,
                    priority=priority,
                    model=model,
                    data_classification=data_classification,
                    running_jobs=running_jobs,
                )
            )
            self._policy_audit(
                tenant, "policy_check_submit", decision, f"job_id={job_id} job_type={req_type}"
            )
            if not decision.allowed:
                raise SchedulerError(f"policy denied submit: {decision.reason_code}")

        job = JobRecord(
            id=job_id,
            tenant=tenant,
            type=req_type,
            input=input_text,
            policy=policy_name,
            priority=priority,
            status=JOB_RUNNING if dag.tasks else JOB_QUEUED,
            created_at=now,
            updated_at=now,
        )
        tasks: list[TaskRecord] = []
        ready: list[TaskRef] = []
        for t in dag.tasks:
            inputs = dict(t.inputs or {})
            inputs["_priority"] = priority
            if data_classification:
                inputs["_data_classification"] = data_classification
            if model:
                inputs["model"] = model
            if network_isolation:
                inputs["_network_isolation"] = network_isolation
            if t.resources is not None:
                if t.resources.cpu > 0:
                    inputs["_resource_cpu"] = str(t.resources.cpu)
                if t.resources.memory.strip():
                    inputs["_resource_memory"] = t.resources.memory.strip()
                if t.resources.gpu:
                    inputs["_requires_gpu"] = "true"
            if t.constraints is not None and t.constraints.data_locality.strip():
                inputs["_data_locality"] = t.constraints.data_locality.strip()
            tasks.append(
                TaskRecord(
                    job_id=job_id,
                    task_id=t.task_id,
                    type=t.type,
                    inputs=inputs,
                    dependencies=list(t.dependencies),
                    status=JOB_QUEUED,
                    max_retries=t.max_retries,
                    timeout_sec=t.timeout_sec,
                    created_at=now,
                    updated_at=now,
                )
            )
            if not t.dependencies:
                ready.append(TaskRef(job_id=job_id, task_id=t.task_id))

        self._store.create_job_with_tasks(job, tasks)
        if ready:
            self._queue.enqueue_many(ready)

    def get_job(self, job_id: str) -> Job | None:
        rec = self._store.get_job(job_id)
        if rec is None:
            return None
        return Job(
            id=rec.id,
            tenant=rec.tenant,
            type=rec.type,
            input=rec.input,
            policy=rec.policy,
            priority=rec.priority,
            status=rec.status,
            message=rec.message,
            result_artifact_uri=rec.result_artifact_uri,
            created_at=rec.created_at,
            updated_at=rec.updated_at,
        )

    def get_job_tasks(self, job_id: str) -> list[TaskStatus] | None:
        """Return the job's tasks sorted by id, or None when the job is unknown."""
        if self._store.get_job(job_id) is None:
            return None
        out = [
            TaskStatus(
                task_id=t.task_id,
                type=t.type,
                status=t.status,
                attempt=t.attempt,
                worker_id=t.worker_id,
                lease_id=t.lease_id,
                lease_expires=t.lease_expires,
                output_uri=t.output_uri,
                error=t.error,
                created_at=t.created_at,
                updated_at=t.updated_at,
            )
            for t in self._store.list_tasks_by_job(job_id)
        ]
        out.sort(key=lambda s: s.task_id)
        return out

    def list_workers(self) -> list[WorkerRecord]:
        return self._store.list_workers()

    def cancel_job(self, job_id: str) -> bool:
        """Cancel a job and its pending tasks; False when the job is unknown."""
        job = self._store.get_job(job_id)
        if job is None:
            return False
        if job.status in _TERMINAL:
            return True
        job.status = JOB_CANCELED
        job.message = "canceled by user"
        job.updated_at = self._clock()
        self._store.update_job(job)
        for t in self._store.list_tasks_by_job(job_id):
            if t.status in (JOB_QUEUED, JOB_RUNNING):
                t.status = JOB_CANCELED
                t.worker_id = ""
                t.lease_id = ""
                t.lease_expires = None
                self._store.update_task(t)
        return True

    def archive_job(self, job_id: str) -> bool:
        """Archive a finished job; False when unknown, SchedulerError when not finished."""
        job = self._store.get_job(job_id)
        if job is None:
            return False
        if job.status not in _TERMINAL:
            raise SchedulerError(f"job {job_id} is not in terminal state")
        job.status = JOB_ARCHIVED
        job.updated_at = self._clock()
        self._store.update_job(job)
        return True

    # -- workers ----------------------------------------------------------

    def register_worker(self, request: RegisterWorkerRequest) -> None:
        self._store.upsert_worker(
            WorkerRecord(
                id=request.worker_id,
                cpu=request.cpu,
                memory=request.memory,
                gpu=request.gpu,
                models=list(request.models or []),
                tools=list(request.tools or []),
                backends=normalize_backends(request.backends),
                locality=request.locality,
                health="healthy",
                last_heartbeat=self._clock(),
            )
        )

    def heartbeat(self, worker_id: str, request: HeartbeatRequest) -> None:
        """Record a worker's load and extend the leases it holds."""
        if self._store.get_worker(worker_id) is None:
            raise SchedulerError("worker not registered")
        self._store.update_worker_heartbeat(
            worker_id,
            request.queue_depth,
            request.running_tasks,
            request.cpu_util,
            request.memory_util,
            request.health,
        )
        self._extend_worker_leases(worker_id, self._clock())

    # -- assignment -------------------------------------------------------

    def poll_assignments(self, worker_id: str, max_items: int = 1) -> list[Assignment]:
        """Hand up to ``max_items`` ready tasks to the worker."""
        if self._store.get_worker(worker_id) is None:
            raise SchedulerError("worker not registered")
        max_items = max(max_items, 1)
        self._queue.requeue_expired(self._clock(), max_items * 8)
        self._requeue_expired_leases(self._clock())

        claims = self._queue.claim(max(max_items * 32, max_items), worker_id, self._lease_duration)
        if not claims:
            return []
        claims = sorted(claims, key=self._claim_sort_key)

        ready: list[Assignment] = []
        acked, not_ready, errored = [], [], []
        for claim in claims:
            if len(ready) >= max_items:
                not_ready.append(claim)
                continue
            try:
                assignment = self._try_assign(worker_id, claim.ref)
            except Exception as err:  # any failure sends the claim back as an error nack
                log.warning("assignment of %s failed: %s", claim.ref, err)
                self._registry.inc_counter(
                    "scheduler_assignment_errors_total",
                    {"queue_backend": self._queue_backend, "worker_id": worker_id},
                    1,
                )
                errored.append(claim)
                continue
            if assignment is None:
                not_ready.append(claim)
                continue
            ready.append(assignment)
            acked.append(claim)
        self._queue.ack(acked)
        self._queue.nack(not_ready, "not_ready")
        self._queue.nack(errored, "error")
        return ready

    def _claim_sort_key(self, claim):
        task = self._store.get_task(claim.ref.job_id, claim.ref.task_id)
        if task is None:
            priority, created = 0, _EPOCH
        else:
            priority = priority_rank(task.inputs.get("_priority", ""))
            created = task.created_at or _EPOCH
        ref_key = f"{claim.ref.job_id}/{claim.ref.task_id}"
        return (-priority, created, -tie_hash(ref_key, claim.claimed_by))

    def _try_assign(self, worker_id: str, ref: TaskRef) -> Assignment | None:
        job = self._store.get_job(ref.job_id)
        if job is None or job.status != JOB_RUNNING:
            return None
        task = self._store.get_task(ref.job_id, ref.task_id)
        if task is None or task.status != JOB_QUEUED:
            return None
        if task.lease_expires is not None and task.lease_expires > self._clock():
            return None
        if not self._dependencies_completed(ref.job_id, task.dependencies):
            return None
        best_id, _ = self.best_worker_for_task(job, task)
        if best_id and best_id != worker_id:
            return None
        worker = self._store.get_worker(worker_id)
        if worker is None:
            return None
        if self._preempt and self._worker_at_capacity(worker):
            if not self._try_preempt_lower_priority(worker, task):
                return None
        if not self._policy.is_noop():
            running_tasks = self._store.count_tasks_by_tenant_status(job.tenant, JOB_RUNNING)
            decision = self._policy.evaluate_assignment(
                AssignmentInput(
                    tenant=job.tenant,
                    task_type=task.type,
                    model=task.inputs.get("model", ""),
                    data_classification=task.inputs.get("_data_classification", ""),
                    network_isolation=task.inputs.get("_network_isolation", ""),
                    worker_locality=worker.locality,
                    worker_gpu=worker.gpu,
                    running_tasks=running_tasks,
                )
            )
            self._policy_audit(
                job.tenant,
                "policy_check_assignment",
                decision,
                f"job_id={task.job_id} task_id={task.task_id} worker_id={worker_id}",
            )
            if not decision.allowed:
                denial = "policy denied assignment: " + decision.reason_code
                task.status = JOB_FAILED
                task.error = denial
                task.updated_at = self._clock()
                self._store.update_task(task)
                job.status = JOB_FAILED
                job.message = denial
                job.updated_at = self._clock()
                self._store.update_job(job)
                return None

        now = self._clock()
        inputs = dict(task.inputs)
        for dep in task.dependencies:
            dep_task = self._store.get_task(task.job_id, dep)
            if dep_task is None:
                raise SchedulerError(f"dependency {dep} not found")
            inputs[f"dep:{dep}:output_uri"] = dep_task.output_uri
        task.status = JOB_ASSIGNED
        task.worker_id = worker_id
        task.attempt += 1
        task.lease_id = new_lease_id(worker_id, task.task_id, task.attempt, now)
        expiry = now + self._lease_duration
        deadline = task_attempt_deadline(task, now)
        if deadline is not None and deadline < expiry:
            expiry = deadline
        task.lease_expires = expiry
        task.updated_at = now
        self._store.update_task(task)
        job.updated_at = now
        self._store.update_job(job)
        return Assignment(
            job_id=task.job_id,
            task_id=task.task_id,
            type=task.type,
            inputs=inputs,
            attempt=task.attempt,
            lease_id=task.lease_id,
        )

    def best_worker_for_task(self, job: JobRecord, task: TaskRecord) -> tuple[str, float]:
        """Return the id and score of the best eligible worker ("" and -inf if none)."""
        workers = self._store.list_workers()
        target = task.inputs.get("_target_worker", "").strip()
        required_backend = normalize_backend(task.inputs.get("backend", ""))
        required_model = task.inputs.get("model", "").strip()
        llm_task = task.type == "llm_inference"
        has_backend_inventory = llm_task and any(
            worker_has_backend_inventory(w) for w in workers
        )
        has_model_inventory = llm_task and any(w.models for w in workers)
        try:
            tenant_running = self._store.count_tasks_by_tenant_status(job.tenant, JOB_RUNNING)
        except Exception:  # a failed count only weakens the fairness term
            tenant_running = 0
        requires_gpu = parse_bool(task.inputs.get("_requires_gpu", ""))
        now = self._clock()
        task_key = f"{task.job_id}|{task.task_id}"

        best_id = ""
        best_score = -math.inf
        best_tie = 0
        for w in workers:
            if target and w.id != target:
                continue
            if w.health.lower() == "unhealthy":
                continue
            if requires_gpu and not w.gpu:
                continue
            if (
                llm_task
                and required_backend
                and has_backend_inventory
                and not worker_supports_backend(w, required_backend)
            ):
                continue
            if (
                llm_task
                and required_model
                and has_model_inventory
                and not contains_fold(w.models, required_model)
            ):
                continue
            score = compute_worker_score(
                self._weights, task, w, tenant_running, w.running_tasks, now
            )
            tie = tie_hash(task_key, w.id)
            if score > best_score or (abs(score - best_score) < 0.0001 and tie > best_tie):
                best_score, best_id, best_tie = score, w.id, tie
        return best_id, best_score

    def _worker_at_capacity(self, worker: WorkerRecord) -> bool:
        capacity = worker_capacity(worker)
        return capacity > 0 and worker.running_tasks >= capacity

    def _try_preempt_lower_priority(self, worker: WorkerRecord, incoming: TaskRecord) -> bool:
        incoming_rank = priority_rank(incoming.inputs.get("_priority", ""))
        if incoming_rank <= 0:
            return False
        held = self._store.list_tasks_by_worker_status(
            worker.id, JOB_RUNNING
        ) + self._store.list_tasks_by_worker_status(worker.id, JOB_ASSIGNED)
        held.sort(key=lambda t: t.updated_at or _EPOCH)
        for t in held:
            if priority_rank(t.inputs.get("_priority", "")) >= incoming_rank:
                continue
            t.status = JOB_QUEUED
            t.worker_id = ""
            t.lease_id = ""
            t.lease_expires = None
            t.error = "preempted for higher-priority task"
            t.updated_at = self._clock()
            self._store.update_task(t)
            self._queue.enqueue(TaskRef(job_id=t.job_id, task_id=t.task_id))
            self._audit(
                AuditEventRecord(
                    action="task_preempted",
                    actor="system/scheduler",
                    resource="tasks",
                    requested=1,
                    result="ok",
                    details=(
                        f"preempted_job={t.job_id} preempted_task={t.task_id} "
                        f"worker={worker.id}"
                    ),
                    created_at=self._clock(),
                )
            )
            return True
        return False

    # -- results ----------------------------------------------------------

    def report_task_result(self, request: ReportTaskResultRequest) -> None:
        """Apply a worker's report and update the task, its dependents and its job."""
        job = self._store.get_job(request.job_id)
        if job is None:
            raise SchedulerError(f"job {request.job_id} not found")
        task = self._store.get_task(request.job_id, request.task_id)
        if task is None:
            raise SchedulerError(f"task {request.task_id} not found")
        if job.status in (JOB_CANCELED, JOB_ARCHIVED):
            return
        if request.idempotency_key and task.last_report_key == request.idempotency_key:
            return
        if request.lease_id and task.lease_id and request.lease_id != task.lease_id:
            raise SchedulerError(f"stale lease for task {request.task_id}")

        task.output_uri = request.output_artifact_uri
        task.error = request.error
        task.last_report_key = request.idempotency_key
        task.updated_at = self._clock()
        task.lease_id = ""
        task.lease_expires = None

        if request.status == JOB_RUNNING:
            task.status = JOB_RUNNING
            task.worker_id = request.worker_id
            self._store.update_task(task)
            return
        if request.status == JOB_COMPLETED:
            task.status = JOB_COMPLETED
        elif task.attempt <= task.max_retries:
            task.status = JOB_QUEUED
            task.worker_id = ""
            task.lease_expires = self._clock() + retry_backoff(task.attempt)
            self._queue.enqueue(TaskRef(job_id=task.job_id, task_id=task.task_id))
            job.message = f"retrying task {task.task_id}"
        else:
            task.status = JOB_FAILED
        self._store.update_task(task)

        if (
            task.status == JOB_COMPLETED
            and task.type.lower() == "model_download"
            and request.worker_id.strip()
        ):
            model = task.inputs.get("model", "").strip()
            if model:
                worker = self._store.get_worker(request.worker_id)
                if worker is not None and not contains_fold(worker.models, model):
                    worker.models.append(model)
                    self._store.upsert_worker(worker)

        all_tasks = self._store.list_tasks_by_job(request.job_id)
        if task.status == JOB_COMPLETED:
            refs = [
                TaskRef(job_id=t.job_id, task_id=t.task_id)
                for t in all_tasks
                if t.status == JOB_QUEUED
                and self._dependencies_completed(t.job_id, t.dependencies)
            ]
            if refs:
                self._queue.enqueue_many(refs)

        completed, failed, last_output = _tally(all_tasks)
        if failed > 0:
            job.status = JOB_FAILED
            if not job.message:
                job.message = "one or more tasks failed"
        elif all_tasks and completed == len(all_tasks):
            job.status = JOB_COMPLETED
            job.message = "all tasks completed"
            job.result_artifact_uri = last_output
        else:
            job.status = JOB_RUNNING
            if task.status == JOB_COMPLETED and job.message.startswith("retrying task "):
                job.message = "in progress"
            if not job.message.strip():
                job.message = "in progress"
        job.updated_at = self._clock()
        self._store.update_job(job)

    # -- leases -----------------------------------------------------------

    def _requeue_expired_leases(self, now: datetime) -> None:
        refs: list[TaskRef] = []
        affected: dict[str, None] = {}
        for t in self._store.list_expired_leased_tasks(now):
            affected[t.job_id] = None
            timed_out = False
            start = lease_start_from_id(t.lease_id)
            if start is not None and t.timeout_sec > 0:
                timed_out = not start + timedelta(seconds=t.timeout_sec) > now
            if timed_out and t.attempt > t.max_retries:
                t.status = JOB_FAILED
                t.error = f"task timed out after {t.attempt} attempt(s)"
            else:
                t.status = JOB_QUEUED
                if timed_out:
                    t.error = f"task timed out, retrying attempt {t.attempt + 1}"
                    t.lease_expires = now + retry_backoff(t.attempt)
                else:
                    t.lease_expires = None
                refs.append(TaskRef(job_id=t.job_id, task_id=t.task_id))
            t.worker_id = ""
            t.lease_id = ""
            t.updated_at = now
            self._store.update_task(t)
        if refs:
            self._queue.enqueue_many(refs)
        for job_id in affected:
            self._reconcile_job_status(job_id)

    def _extend_worker_leases(self, worker_id: str, now: datetime) -> None:
        held = self._store.list_tasks_by_worker_status(
            worker_id, JOB_RUNNING
        ) + self._store.list_tasks_by_worker_status(worker_id, JOB_ASSIGNED)
        for t in held:
            if not t.lease_id:
                continue
            if t.lease_expires is not None and t.lease_expires <= now:
                continue
            expiry = now + self._lease_duration
            deadline = task_attempt_deadline(t, now)
            if deadline is not None and deadline < expiry:
                expiry = deadline
            t.lease_expires = expiry
            self._store.update_task(t)

    def _reconcile_job_status(self, job_id: str) -> None:
        job = self._store.get_job(job_id)
        if job is None or job.status in (JOB_CANCELED, JOB_ARCHIVED):
            return
        tasks = self._store.list_tasks_by_job(job_id)
        completed, failed, last_output = _tally(tasks)
        if failed > 0:
            job.status = JOB_FAILED
            if not job.message:
                job.message = "one or more tasks failed"
        elif tasks and completed == len(tasks):
            job.status = JOB_COMPLETED
            job.message = "all tasks completed"
            job.result_artifact_uri = last_output
        else:
            job.status = JOB_RUNNING
        job.updated_at = self._clock()
        self._store.update_job(job)

    def _dependencies_completed(self, job_id: str, deps: Iterable[str]) -> bool:
        for dep in deps:
            t = self._store.get_task(job_id, dep)
            if t is None or t.status != JOB_COMPLETED:
                return False
        return True

    # -- dead letters and audit -------------------------------------------

    def list_dead_letters(self, limit: int = 0) -> list[TaskRef]:
        return self._queue.list_dead_letters(limit)

    def requeue_dead_letters(self, refs) -> int:
        return self._queue.requeue_dead_letters(refs)

    def append_audit_event(self, event: AuditEventRecord) -> None:
        self._store.append_audit_event(event)

    def list_audit_events(self, query: AuditQuery) -> list[AuditEventRecord]:
        return self._store.list_audit_events(query)

    def _audit(self, event: AuditEventRecord) -> None:
        try:
            self._store.append_audit_event(event)
        except Exception as err:  # auditing never blocks scheduling
            log.warning("could not record audit event %s: %s", event.action, err)

    def _policy_audit(self, tenant: str, action: str, decision: Decision, details: str) -> None:
        message = f"reason={decision.reason_code} rule={decision.rule} details={details}"
        if decision.message:
            message = f"{decision.message} ({message})"
        self._audit(
            AuditEventRecord(
                action=action,
                actor="system/policy",
                tenant=tenant,
                resource="policy",
                result="allow" if decision.allowed else "deny",
                details=message,
                created_at=self._clock(),
            )
        )


def new_in_memory_engine() -> Engine:
    """An engine backed by an in-memory store and queue."""
    return Engine(
        MemoryStore(),
        MemoryQueue(DEFAULT_REGISTRY),
        EngineOptions(queue_backend="memory"),
    )