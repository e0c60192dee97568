import pytest

from splai.planner.dag import DAG, Task, TaskConstraints, TaskResources, task_from_dict


def test_minimal_task_omits_empty_fields():
    task = Task(task_id="t1", type="llm_inference")
    assert task.to_dict() == {"task_id": "t1", "type": "llm_inference", "inputs": {}}


def test_full_task_round_trip():
    task = Task(
        task_id="t2-embed",
        type="embedding",
        inputs={"op": "embed"},
        dependencies=["t1-split"],
        timeout_sec=60,
        max_retries=2,
        resources=TaskResources(cpu=2, memory="2Gi", gpu=True),
        constraints=TaskConstraints(data_locality="cluster-a"),
    )
    data = task.to_dict()
    assert data["resources"] == {"cpu": 2, "memory": "2Gi", "gpu": True}
    assert data["dependencies"] == ["t1-split"]
    assert task_from_dict(data) == task


def test_empty_resources_round_trip_as_object():
    task = Task(task_id="t", type="x", resources=TaskResources(), constraints=TaskConstraints())
    data = task.to_dict()
    assert data["resources"] == {}
    assert data["constraints"] == {}
    assert task_from_dict(data) == task


def test_dag_to_dict():
    dag = DAG(dag_id="job-dag", tasks=[Task(task_id="t1", type="llm_inference", inputs={"prompt": "p"})])
    out = dag.to_dict()
    assert out["dag_id"] == "job-dag"
    assert [t["task_id"] for t in out["tasks"]] == ["t1"]


def test_from_dict_ignores_unknown_and_null_fields():
    task = task_from_dict({"task_id": "p1", "type": "llm_inference", "inputs": None, "extra": 1})
    assert task == Task(task_id="p1", type="llm_inference")


@pytest.mark.parametrize(
    "data",
    [
        {"task_id": 5},
        {"task_id": "t", "inputs": {"a": 1}},
        {"task_id": "t", "dependencies": "t0"},
        {"task_id": "t", "timeout_sec": 1.5},
        {"task_id": "t", "max_retries": True},
        {"task_id": "t", "resources": []},
        [],
    ],
)
def test_from_dict_rejects_wrong_types(data):
    with pytest.raises(ValueError):
        task_from_dict(data)