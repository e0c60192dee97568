# splai

`splai` is the scheduling core of a system that runs AI workloads across a pool of
workers. A job is turned into a DAG of tasks, checked against tenant policy, and its
ready tasks are placed on a work queue. Workers poll for assignments, hold short
leases on what they take, send heartbeats to keep those leases alive, and report
results back. Failed or timed-out tasks are retried with exponential backoff
(1, 2, 4 … seconds, capped at 32); queue entries that keep failing with errors end
up in a dead-letter list that can be listed and requeued.

It is a library: everything is driven by calling Python objects in-process.

## What is inside

- `splai.planner.dag` — `DAG`, `Task`, `TaskResources` and `TaskConstraints`, with
  `to_dict()` for their JSON form and `task_from_dict()` to read a task back.
- `splai.planner.compiler` — `Compiler.compile_with_mode()` supports `template`,
  `llm` (also `llm_planner`) and `hybrid` (the default, also used by `compile()`).
  Template plans for analysis requests (input containing "analyze", or type
  `batch_analysis`) have split/embed/summarize steps; hybrid mode adds an
  aggregation step to multi-step templates. LLM mode asks the compiler's provider
  for a plan and falls back to a static decomposition if it fails or returns
  nothing. `new_compiler()` sets up an `HTTPProvider` when
  `SPLAI_LLM_PLANNER_ENDPOINT` is set, using `SPLAI_LLM_PLANNER_API_KEY` as a
  bearer token if present.
- `splai.planner.provider` — `HTTPProvider.plan()` POSTs
  `{"job_id", "type", "input"}` as JSON and reads back `{"dag_id", "tasks"}`;
  any transport, status or format problem, or an empty task list, raises
  `PlannerError`. `LLMProvider` is the protocol a custom planner implements.
- `splai.policy` — `PolicyEngine` checks per-tenant quotas on running jobs and
  tasks, then allow/deny rules matched on tenant, job or task type, model, data
  classification, priority, network isolation, worker locality and GPU.
  `config_from_mapping()` builds a `PolicyConfig` from parsed YAML, `allow_all()`
  gives an engine that checks nothing, and `load_from_env()` reads the YAML file
  named by `SPLAI_POLICY_FILE` (raising `PolicyError` if it cannot be read or
  parsed).
- `splai.state.types` — the records (`JobRecord`, `TaskRecord`, `WorkerRecord`,
  `TaskRef`, `QueueClaim`, `AuditEventRecord`, `AuditQuery`), the `Status` enum,
  and the `Store` and `Queue` protocols.
- `splai.state.memory_store` — `MemoryStore`, an in-memory `Store` whose audit log
  chains each event's SHA-256 hash (`compute_audit_hash`) to the previous one.
- `splai.state.memory_queue` — `MemoryQueue`, an in-memory FIFO `Queue` with
  visibility timeouts; an entry nacked with reason `error` five times is
  dead-lettered.
- `splai.state.redis_queue` — `RedisQueue`, a `Queue` kept in Redis under keys
  prefixed by `RedisQueueConfig.key` (default `splai:tasks`). It talks to Redis
  directly over a socket; `encode_resp()` and `read_resp()` are the protocol
  helpers. Errors are raised as `RedisError`.
- `splai.scheduler.engine` — `Engine`, which ties store, queue and policy together,
  and `new_in_memory_engine()`.
- `splai.scheduler.scoring` — the rules used to pick a worker for a task:
  capability, warm model cache, data locality, queue depth, CPU and memory load,
  tenant fairness and wait age, weighted by `ScoreWeights`; plus worker capacity,
  priority ranks, lease ids and retry backoff.
- `splai.observability.metrics` — a thread-safe counter/gauge `Registry`
  (`DEFAULT_REGISTRY` is shared by default) that renders the Prometheus text format.

## Using the scheduler

```python
from splai.planner.compiler import new_compiler
from splai.scheduler.engine import (
    RegisterWorkerRequest,
    ReportTaskResultRequest,
    new_in_memory_engine,
)

engine = new_in_memory_engine()
engine.register_worker(
    RegisterWorkerRequest(worker_id="w1", cpu=8, memory="16Gi", models=["m-a"])
)

dag = new_compiler().compile_with_mode("job-1", "chat", "hello", "template")
engine.add_job(
    "job-1", "tenant-a", "chat", "hello",
    "enterprise-default", "interactive", "internal", "m-a", "", dag,
)

for assignment in engine.poll_assignments("w1", 1):
    engine.report_task_result(
        ReportTaskResultRequest(
            worker_id="w1",
            job_id=assignment.job_id,
            task_id=assignment.task_id,
            lease_id=assignment.lease_id,
            idempotency_key="report-1",
            status="Completed",
            output_artifact_uri="artifact://job-1/t1/output.json",
        )
    )

print(engine.get_job("job-1").status)  # Completed
```

A job with tasks starts `Running` and ends `Completed`, `Failed` or `Canceled`
(`cancel_job`); `archive_job` moves a finished job to `Archived` and raises
`SchedulerError` for one that is still in progress. `get_job` and `get_job_tasks`
return `None` for an unknown job.

`poll_assignments` only hands a task to the worker that scores best for it, skips
unhealthy workers, respects `_requires_gpu`, `_target_worker`, and for
`llm_inference` tasks the requested backend and model when workers advertise them.
When a worker is at capacity, a higher-priority task may preempt one of its
lower-priority tasks, which goes back on the queue. `EngineOptions` sets the lease
duration (default 15 seconds), the policy engine, score weights, preemption, the
metrics registry and a clock.

## Policy files

```yaml
default_action: allow
tenant_quotas:
  tenant-a:
    max_running_jobs: 5
    max_running_tasks: 20
rules:
  - name: deny-confidential-external
    effect: deny
    reason: confidential_external_forbidden
    match:
      data_classification: confidential
      model: external_api
```

Rules are checked in order and the first match decides; if none matches,
`default_action` (default `allow`) decides. A rule without a valid `effect`
denies. Unless the policy checks nothing, each submit and assignment decision is
written to the store's audit log with the actor `system/policy`; a denied
assignment fails the task and its job.

## Metrics

Queues record `queue_claimed_total`, `queue_acked_total`, `queue_nacked_total`,
`queue_expired_requeued_total`, `dead_letter_requeued_total` and the
`dead_letter_count` gauge; the engine records
`scheduler_assignment_errors_total`. `Registry.render_prometheus()` returns all
samples sorted, one per line.

## What it does not do

There is no network API, command-line tool or worker process here: jobs are
submitted and workers poll by calling `Engine` methods directly. State is kept
only in memory (`MemoryStore`); there is no database-backed store, so jobs,
tasks, workers and the audit log are lost when the process ends. The Redis queue
holds only queue entries. Tracing is not provided.

## Running the tests

Install the package with its `test` extra and run `pytest` from the project root.