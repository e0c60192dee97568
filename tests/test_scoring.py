from datetime import datetime, timedelta, timezone

import pytest

from splai.scheduler.scoring import (
    ScoreWeights,
    compute_worker_score,
    contains_fold,
    lease_start_from_id,
    new_lease_id,
    normalize_backend,
    normalize_backends,
    parse_bool,
    priority_rank,
    retry_backoff,
    task_attempt_deadline,
    tie_hash,
    worker_capacity,
    worker_has_backend_inventory,
    worker_supports_backend,
)
from splai.state.types import TaskRecord, WorkerRecord

NOW = datetime(2024, 1, 2, 3, 4, 5, 123456, tzinfo=timezone.utc)
WEIGHTS = ScoreWeights().with_defaults()


def test_normalize_backend_aliases():
    assert normalize_backend(" Remote-API ") == "remote_api"
    assert normalize_backend("LlamaCPP") == "llama.cpp"
    assert normalize_backend(" VLLM ") == "vllm"


def test_normalize_backends_dedupes_and_sorts():
    result = normalize_backends(["vllm", "Ollama", "ollama", "", "llamacpp"])
    assert result == ["llama.cpp", "ollama", "vllm"]
    assert normalize_backends(None) == []


def test_backend_inventory():
    assert worker_has_backend_inventory(WorkerRecord(backends=["anything"])) is True
    assert worker_has_backend_inventory(WorkerRecord(tools=["bash"])) is False
    assert worker_has_backend_inventory(WorkerRecord(tools=["LlamaCPP"])) is True


def test_worker_supports_backend():
    worker = WorkerRecord(backends=["ollama"], tools=["remote_api"])
    assert worker_supports_backend(worker, "") is True
    assert worker_supports_backend(worker, "OLLAMA") is True
    assert worker_supports_backend(worker, "remote-api") is True
    assert worker_supports_backend(worker, "vllm") is False


def test_contains_fold():
    assert contains_fold([" Bash "], "bash") is True
    assert contains_fold(["python"], "bash") is False
    assert contains_fold([], "bash") is False


def test_priority_rank_ordering():
    assert priority_rank("interactive") == priority_rank(" HIGH ")
    assert priority_rank("standard") == priority_rank("medium") == priority_rank("unknown")
    assert priority_rank("batch") == priority_rank("low")
    assert priority_rank("high") > priority_rank("medium") > priority_rank("low")


def test_worker_capacity_bounds():
    assert worker_capacity(WorkerRecord(cpu=0)) == worker_capacity(WorkerRecord(cpu=3))
    assert worker_capacity(WorkerRecord(cpu=64)) == worker_capacity(WorkerRecord(cpu=1000))
    assert worker_capacity(WorkerRecord(cpu=4, gpu=True)) > worker_capacity(WorkerRecord(cpu=4))
    assert worker_capacity(WorkerRecord(cpu=16)) > worker_capacity(WorkerRecord(cpu=8))


def test_tie_hash_is_deterministic_and_joins_with_bar():
    assert tie_hash("a|b", "c") == tie_hash("a", "b|c")
    assert tie_hash("job|t1", "w1") == tie_hash("job|t1", "w1")
    assert 0 <= tie_hash("job|t1", "w2") < 2**32


def test_lease_id_round_trip():
    lease = new_lease_id("w1", "t1", 2, NOW)
    assert lease.startswith("w1:t1:2:")
    assert lease_start_from_id(lease) == NOW


def test_lease_id_round_trip_with_colons_in_worker():
    lease = new_lease_id("host:8080", "t1", 1, NOW)
    assert lease_start_from_id(lease) == NOW


@pytest.mark.parametrize("lease", ["", "a:b", "w:t:1:abc", "w:t:1:0", "w:t:1:-5", "w:t:1: 5"])
def test_lease_start_rejects_bad_ids(lease):
    assert lease_start_from_id(lease) is None


def test_task_attempt_deadline():
    fallback = NOW + timedelta(hours=1)
    no_timeout = TaskRecord(timeout_sec=0, lease_id=new_lease_id("w", "t", 1, NOW))
    assert task_attempt_deadline(no_timeout, fallback) is None

    leased = TaskRecord(timeout_sec=30, lease_id=new_lease_id("w", "t", 1, NOW))
    assert task_attempt_deadline(leased, fallback) == NOW + timedelta(seconds=30)

    unleased = TaskRecord(timeout_sec=30)
    assert task_attempt_deadline(unleased, fallback) == fallback + timedelta(seconds=30)


def test_retry_backoff_doubles_and_caps():
    assert retry_backoff(0) == retry_backoff(1)
    assert retry_backoff(1) == timedelta(seconds=1)
    assert retry_backoff(3) == 2 * retry_backoff(2)
    assert retry_backoff(6) == retry_backoff(20)
    assert retry_backoff(6) == 2 * retry_backoff(5)


@pytest.mark.parametrize("text", ["1", " TRUE ", "yes"])
def test_parse_bool_true(text):
    assert parse_bool(text) is True


@pytest.mark.parametrize("text", ["0", "no", "", "2", "on"])
def test_parse_bool_false(text):
    assert parse_bool(text) is False


def test_with_defaults_keeps_given_weights_and_fills_the_rest():
    weights = ScoreWeights(queue_penalty=0.5).with_defaults()
    assert weights.queue_penalty == 0.5
    assert weights.capability_match == 1.0
    assert weights.model_warm_cache == 1.5
    assert weights.with_defaults() == weights


def test_score_of_plain_task_on_idle_worker_is_zero():
    task = TaskRecord(type="other")
    assert compute_worker_score(WEIGHTS, task, WorkerRecord(), 0, 0, NOW) == 0.0


def test_score_terms_add_their_weights():
    worker = WorkerRecord(models=["M-A"], locality="zone-a")
    base_task = TaskRecord(type="other")
    base = compute_worker_score(WEIGHTS, base_task, worker, 0, 0, NOW)

    warm = TaskRecord(type="other", inputs={"model": "m-a"})
    assert compute_worker_score(WEIGHTS, warm, worker, 0, 0, NOW) == pytest.approx(
        base + WEIGHTS.model_warm_cache
    )

    local = TaskRecord(type="other", inputs={"_data_locality": " zone-a "})
    assert compute_worker_score(WEIGHTS, local, worker, 0, 0, NOW) == pytest.approx(
        base + WEIGHTS.locality_score
    )

    llm = TaskRecord(type="llm_inference")
    assert compute_worker_score(WEIGHTS, llm, worker, 0, 0, NOW) == pytest.approx(
        base + WEIGHTS.capability_match
    )


def test_tool_execution_needs_bash():
    task = TaskRecord(type="tool_execution")
    with_bash = compute_worker_score(WEIGHTS, task, WorkerRecord(tools=["bash"]), 0, 0, NOW)
    without = compute_worker_score(WEIGHTS, task, WorkerRecord(), 0, 0, NOW)
    assert with_bash - without == pytest.approx(WEIGHTS.capability_match)


def test_load_and_fairness_lower_the_score():
    task = TaskRecord(type="llm_inference")
    idle = compute_worker_score(WEIGHTS, task, WorkerRecord(), 0, 0, NOW)
    busy = compute_worker_score(WEIGHTS, task, WorkerRecord(queue_depth=2), 0, 1, NOW)
    loaded = compute_worker_score(WEIGHTS, task, WorkerRecord(cpu_util=50, memory_util=50), 0, 0, NOW)
    unfair = compute_worker_score(WEIGHTS, task, WorkerRecord(), 4, 0, NOW)
    assert idle - busy == pytest.approx(3 * WEIGHTS.queue_penalty)
    assert idle - loaded == pytest.approx(WEIGHTS.latency_prediction)
    assert idle - unfair == pytest.approx(4 * WEIGHTS.fairness_penalty)


def test_waiting_raises_the_score():
    task = TaskRecord(type="other", created_at=NOW - timedelta(seconds=60))
    score = compute_worker_score(WEIGHTS, task, WorkerRecord(), 0, 0, NOW)
    assert score == pytest.approx(WEIGHTS.wait_age_bonus)