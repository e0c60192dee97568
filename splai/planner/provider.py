"""Planner backends that ask a remote service for a task graph."""

from __future__ import annotations

import json
import urllib.error
import urllib.request
from typing import Protocol

from splai.planner.dag import DAG, task_from_dict

__all__ = ["HTTPProvider", "LLMProvider", "PlannerError"]

_TIMEOUT_SECONDS = 8.0


class PlannerError(Exception):
    """A planner backend could not produce a plan."""


class LLMProvider(Protocol):
    """Something that turns a request into a task graph."""

    def plan(self, job_id: str, req_type: str, input_text: str) -> DAG:
        """Return a plan or raise."""


class HTTPProvider:
    """Posts the request as JSON to an endpoint and reads back a DAG."""

    def __init__(self, endpoint: str, api_key: str = ""):
        self.endpoint = endpoint.strip()
        self.api_key = api_key.strip()
        self.timeout = _TIMEOUT_SECONDS

    def plan(self, job_id: str, req_type: str, input_text: str) -> DAG:
        """Request a plan; raise PlannerError on transport, status or format errors."""
        body = json.dumps({"job_id": job_id, "type": req_type, "input": input_text}).encode()
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = "Bearer " + self.api_key
        try:
            request = urllib.request.Request(
                self.endpoint, data=body, headers=headers, method="POST"
            )
            with urllib.request.urlopen(request, timeout=self.timeout) as response:
                if response.status >= 300:
                    raise PlannerError(
                        f"llm planner endpoint returned {response.status} {response.reason}"
                    )
                raw = response.read()
        except urllib.error.HTTPError as err:
            raise PlannerError(f"llm planner endpoint returned {err.code} {err.reason}") from err
        except (urllib.error.URLError, OSError, ValueError) as err:
            raise PlannerError(f"llm planner request failed: {err}") from err

        try:
            decoded = json.loads(raw)
            if not isinstance(decoded, dict):
                raise ValueError("response is not a JSON object")
            dag_id = decoded.get("dag_id") or ""
            if not isinstance(dag_id, str):
                raise ValueError("dag_id must be a string")
            tasks_raw = decoded.get("tasks") or []
            if not isinstance(tasks_raw, list):
                raise ValueError("tasks must be a list")
            tasks = [task_from_dict(t) for t in tasks_raw]
        except ValueError as err:
            raise PlannerError(f"invalid llm planner response: {err}") from err

        if not tasks:
            raise PlannerError("llm planner returned empty task list")
        return DAG(dag_id=dag_id or f"{job_id}-dag", tasks=tasks)