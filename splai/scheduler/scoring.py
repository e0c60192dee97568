"""Worker scoring, capacity, priority and lease helpers used by the scheduler."""

from __future__ import annotations

import dataclasses
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from splai.state.types import TaskRecord, WorkerRecord

__all__ = [
    "ScoreWeights",
    "compute_worker_score",
    "contains_fold",
    "lease_start_from_id",
    "new_lease_id",
    "normalize_backend",
    "normalize_backends",
    "parse_bool",
    "priority_rank",
    "retry_backoff",
    "task_attempt_deadline",
    "tie_hash",
    "worker_capacity",
    "worker_has_backend_inventory",
    "worker_supports_backend",
]

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_INT64_MAX = 2**63 - 1
_SIGNED_DIGITS = re.compile(r"[+-]?[0-9]+")
_LLM_BACKENDS = frozenset({"ollama", "vllm", "llama.cpp", "remote_api"})

_DEFAULT_WEIGHTS = {
    "capability_match": 1.0,
    "model_warm_cache": 1.5,
    "locality_score": 1.0,
    "queue_penalty": 0.15,
    "latency_prediction": 1.0,
    "fairness_penalty": 0.05,
    "wait_age_bonus": 0.05,
}


@dataclass(frozen=True)
class ScoreWeights:
    """Weights of the placement score terms; zero means use the default."""

    capability_match: float = 0.0
    model_warm_cache: float = 0.0
    locality_score: float = 0.0
    queue_penalty: float = 0.0
    latency_prediction: float = 0.0
    fairness_penalty: float = 0.0
    wait_age_bonus: float = 0.0

    def with_defaults(self) -> ScoreWeights:
        """Return a copy with every zero weight replaced by its default."""
        return dataclasses.replace(
            self,
            **{
                name: default
                for name, default in _DEFAULT_WEIGHTS.items()
                if getattr(self, name) == 0
            },
        )


def normalize_backend(value: str) -> str:
    """Lower-case a backend name and map its aliases."""
    name = (value or "").strip().lower()
    if name == "remote-api":
        return "remote_api"
    if name == "llamacpp":
        return "llama.cpp"
    return name


def normalize_backends(values) -> list[str]:
    """Normalise, drop empties and duplicates, and sort."""
    return sorted({b for b in (normalize_backend(v) for v in values or ()) if b})


def worker_has_backend_inventory(worker: WorkerRecord) -> bool:
    """True when the worker advertises backends or an inference tool."""
    if worker.backends:
        return True
    return any(normalize_backend(t) in _LLM_BACKENDS for t in worker.tools)


def worker_supports_backend(worker: WorkerRecord, backend: str) -> bool:
    """True when the backend is empty or listed among backends or tools."""
    backend = normalize_backend(backend)
    if not backend:
        return True
    return any(normalize_backend(b) == backend for b in (*worker.backends, *worker.tools))


def contains_fold(items, value: str) -> bool:
    """Case-insensitive membership after trimming whitespace."""
    wanted = value.strip().lower()
    return any(item.strip().lower() == wanted for item in items or ())


def compute_worker_score(
    weights: ScoreWeights,
    task: TaskRecord,
    worker: WorkerRecord,
    tenant_running: int,
    live_running: int,
    now: datetime | None = None,
) -> float:
    """Score how well a worker suits a task; higher is better."""
    if now is None:
        now = datetime.now(timezone.utc)
    capability = 0.0
    if task.type == "llm_inference":
        capability += weights.capability_match
    if task.type == "tool_execution" and contains_fold(worker.tools, "bash"):
        capability += weights.capability_match
    if task.type == "embedding":
        capability += weights.capability_match * 0.8

    warm_cache = 0.0
    model = task.inputs.get("model", "").strip()
    if model and contains_fold(worker.models, model):
        warm_cache = weights.model_warm_cache

    locality = 0.0
    want = task.inputs.get("_data_locality", "").strip()
    if want and want == worker.locality.strip():
        locality = weights.locality_score

    queue_penalty = (worker.queue_depth + live_running) * weights.queue_penalty
    latency = ((worker.cpu_util + worker.memory_util) / 100.0) * weights.latency_prediction
    fairness = tenant_running * weights.fairness_penalty
    wait_bonus = 0.0
    if task.created_at is not None:
        waited = (now - task.created_at).total_seconds()
        wait_bonus = waited / 60.0 * weights.wait_age_bonus
    return capability + warm_cache + locality - queue_penalty - latency - fairness + wait_bonus


def worker_capacity(worker: WorkerRecord) -> int:
    """Concurrent task slots: a quarter of the CPUs, at least 1 (2 with a GPU), at most 16."""
    if worker.cpu <= 0:
        return 1
    slots = max(worker.cpu // 4, 1)
    if worker.gpu and slots < 2:
        slots = 2
    return min(slots, 16)


def priority_rank(priority: str) -> int:
    """Rank a priority name; unknown names rank as standard."""
    name = (priority or "").strip().lower()
    if name in ("interactive", "high"):
        return 3
    if name in ("batch", "low"):
        return 1
    return 2


def tie_hash(task_key: str, worker_id: str) -> int:
    """32-bit FNV-1a of ``task_key|worker_id``, used to break score ties."""
    h = 0x811C9DC5
    for byte in f"{task_key}|{worker_id}".encode():
        h ^= byte
        h = (h * 0x01000193) & 0xFFFFFFFF
    return h


def _unix_nanos(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    delta = moment - _EPOCH
    return (delta.days * 86400 + delta.seconds) * 1_000_000_000 + delta.microseconds * 1000


def new_lease_id(worker_id: str, task_id: str, attempt: int, now: datetime) -> str:
    """Build ``worker:task:attempt:unixnanos``."""
    return f"{worker_id}:{task_id}:{attempt}:{_unix_nanos(now)}"


def lease_start_from_id(lease_id: str) -> datetime | None:
    """Recover the start time from a lease id, or None when it has none."""
    parts = lease_id.split(":")
    if len(parts) < 4:
        return None
    last = parts[-1]
    if not _SIGNED_DIGITS.fullmatch(last):
        return None
    nanos = int(last)
    if nanos <= 0 or nanos > _INT64_MAX:
        return None
    return _EPOCH + timedelta(microseconds=nanos // 1000)


def task_attempt_deadline(task: TaskRecord, fallback: datetime) -> datetime | None:
    """When the current attempt times out, or None if the task has no timeout."""
    if task.timeout_sec <= 0:
        return None
    start = lease_start_from_id(task.lease_id) or fallback
    return start + timedelta(seconds=task.timeout_sec)


def retry_backoff(attempt: int) -> timedelta:
    """Exponential delay of 1, 2, 4 ... seconds, capped at 32."""
    if attempt <= 0:
        attempt = 1
    return timedelta(seconds=1 << min(attempt - 1, 5))


def parse_bool(value: str) -> bool:
    """True for ``1``, ``true`` or ``yes`` in any case."""
    return (value or "").strip().lower() in ("1", "true", "yes")