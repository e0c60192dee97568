"""Task graphs produced by the planner."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

__all__ = ["DAG", "Task", "TaskConstraints", "TaskResources", "task_from_dict"]


@dataclass
class TaskResources:
    """Resources a task asks for."""

    cpu: int = 0
    memory: str = ""
    gpu: bool = False


@dataclass
class TaskConstraints:
    """Placement constraints of a task."""

    data_locality: str = ""


@dataclass
class Task:
    """One node of a task graph."""

    task_id: str
    type: str
    inputs: dict[str, str] = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    timeout_sec: int = 0
    max_retries: int = 0
    resources: TaskResources | None = None
    constraints: TaskConstraints | None = None

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON form, leaving out empty optional fields."""
        out: dict[str, Any] = {
            "task_id": self.task_id,
            "type": self.type,
            "inputs": dict(self.inputs),
        }
        if self.dependencies:
            out["dependencies"] = list(self.dependencies)
        if self.timeout_sec:
            out["timeout_sec"] = self.timeout_sec
        if self.max_retries:
            out["max_retries"] = self.max_retries
        if self.resources is not None:
            res: dict[str, Any] = {}
            if self.resources.cpu:
                res["cpu"] = self.resources.cpu
            if self.resources.memory:
                res["memory"] = self.resources.memory
            if self.resources.gpu:
                res["gpu"] = True
            out["resources"] = res
        if self.constraints is not None:
            cons: dict[str, Any] = {}
            if self.constraints.data_locality:
                cons["data_locality"] = self.constraints.data_locality
            out["constraints"] = cons
        return out


@dataclass
class DAG:
    """A job's task graph."""

    dag_id: str
    tasks: list[Task] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"dag_id": self.dag_id, "tasks": [t.to_dict() for t in self.tasks]}


def _get(data: Mapping, key: str, kind: type, label: str):
    value = data.get(key)
    if value is None:
        return None
    if kind is int:
        ok = isinstance(value, int) and not isinstance(value, bool)
    else:
        ok = isinstance(value, kind)
    if not ok:
        raise ValueError(f"{label}{key}: expected {kind.__name__}, got {type(value).__name__}")
    return value


def _mapping(value: Any, label: str) -> Mapping:
    if not isinstance(value, Mapping):
        raise ValueError(f"{label}: expected an object, got {type(value).__name__}")
    return value


def task_from_dict(data: Mapping) -> Task:
    """Build a task from its JSON form; raise ValueError on wrong types."""
    data = _mapping(data, "task")
    inputs_raw = _get(data, "inputs", Mapping, "task.") or {}
    inputs: dict[str, str] = {}
    for key, value in inputs_raw.items():
        if not isinstance(value, str):
            raise ValueError(f"task.inputs.{key}: expected str")
        inputs[str(key)] = value
    deps_raw = _get(data, "dependencies", list, "task.") or []
    if not all(isinstance(d, str) for d in deps_raw):
        raise ValueError("task.dependencies: expected a list of strings")

    resources = None
    if data.get("resources") is not None:
        res = _mapping(data["resources"], "task.resources")
        resources = TaskResources(
            cpu=_get(res, "cpu", int, "task.resources.") or 0,
            memory=_get(res, "memory", str, "task.resources.") or "",
            gpu=_get(res, "gpu", bool, "task.resources.") or False,
        )
    constraints = None
    if data.get("constraints") is not None:
        cons = _mapping(data["constraints"], "task.constraints")
        constraints = TaskConstraints(
            data_locality=_get(cons, "data_locality", str, "task.constraints.") or ""
        )
    return Task(
        task_id=_get(data, "task_id", str, "task.") or "",
        type=_get(data, "type", str, "task.") or "",
        inputs=inputs,
        dependencies=list(deps_raw),
        timeout_sec=_get(data, "timeout_sec", int, "task.") or 0,
        max_retries=_get(data, "max_retries", int, "task.") or 0,
        resources=resources,
        constraints=constraints,
    )