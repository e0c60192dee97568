"""Turns a job request into a task graph."""

from __future__ import annotations

import logging
import os

from splai.planner.dag import DAG, Task, TaskResources
from splai.planner.provider import HTTPProvider, LLMProvider

__all__ = ["Compiler", "new_compiler"]

log = logging.getLogger(__name__)


def _wants_analysis(req_type: str, input_text: str) -> bool:
    return "analyze" in input_text.lower() or req_type == "batch_analysis"


class Compiler:
    """Builds task graphs from templates, an optional LLM planner, or both."""

    def __init__(self, llm: LLMProvider | None = None):
        self.llm = llm

    def compile(self, job_id: str, req_type: str, input_text: str) -> DAG:
        """Compile in hybrid mode."""
        return self.compile_with_mode(job_id, req_type, input_text, "hybrid")

    def compile_with_mode(self, job_id: str, req_type: str, input_text: str, mode: str) -> DAG:
        """Compile with ``template``, ``llm``/``llm_planner`` or ``hybrid`` (the default)."""
        mode = mode.strip().lower()
        if mode == "template":
            return self._compile_template(job_id, req_type, input_text)
        if mode in ("llm", "llm_planner"):
            return self._compile_llm(job_id, req_type, input_text)
        return self._compile_hybrid(job_id, req_type, input_text)

    def _compile_template(self, job_id: str, req_type: str, input_text: str) -> DAG:
        dag_id = f"{job_id}-dag"
        if _wants_analysis(req_type, input_text):
            return DAG(
                dag_id=dag_id,
                tasks=[
                    Task(
                        task_id="t1-split",
                        type="tool_execution",
                        inputs={"op": "split", "text": input_text},
                        timeout_sec=30,
                        max_retries=2,
                        resources=TaskResources(cpu=1, memory="1Gi"),
                    ),
                    Task(
                        task_id="t2-embed",
                        type="embedding",
                        inputs={"op": "embed"},
                        dependencies=["t1-split"],
                        timeout_sec=60,
                        max_retries=2,
                        resources=TaskResources(cpu=2, memory="2Gi"),
                    ),
                    Task(
                        task_id="t3-summarize",
                        type="llm_inference",
                        inputs={"op": "summarize"},
                        dependencies=["t2-embed"],
                        timeout_sec=60,
                        max_retries=2,
                        resources=TaskResources(cpu=2, memory="4Gi"),
                    ),
                ],
            )
        return DAG(
            dag_id=dag_id,
            tasks=[
                Task(
                    task_id="t1",
                    type="llm_inference",
                    inputs={"prompt": input_text},
                    timeout_sec=60,
                    max_retries=2,
                    resources=TaskResources(cpu=2, memory="4Gi"),
                )
            ],
        )

    def _compile_llm(self, job_id: str, req_type: str, input_text: str) -> DAG:
        if self.llm is not None:
            try:
                dag = self.llm.plan(job_id, req_type, input_text)
            except Exception as err:  # any provider failure falls back to static plans
                log.warning(
                    "llm planner provider failed, falling back to static decomposition: %s", err
                )
            else:
                if dag.tasks:
                    return dag

        dag_id = f"{job_id}-dag"
        decompose = Task(
            task_id="t1-decompose",
            type="llm_inference",
            inputs={"op": "decompose", "prompt": input_text},
            timeout_sec=45,
            max_retries=2,
            resources=TaskResources(cpu=2, memory="4Gi"),
        )
        if _wants_analysis(req_type, input_text):
            return DAG(
                dag_id=dag_id,
                tasks=[
                    decompose,
                    Task(
                        task_id="t2-retrieve",
                        type="retrieval",
                        inputs={"op": "retrieve"},
                        dependencies=["t1-decompose"],
                        timeout_sec=45,
                        max_retries=2,
                        resources=TaskResources(cpu=2, memory="2Gi"),
                    ),
                    Task(
                        task_id="t3-reason",
                        type="llm_inference",
                        inputs={"op": "reason"},
                        dependencies=["t2-retrieve"],
                        timeout_sec=90,
                        max_retries=2,
                        resources=TaskResources(cpu=2, memory="4Gi"),
                    ),
                    Task(
                        task_id="t4-report",
                        type="aggregation",
                        inputs={"op": "report"},
                        dependencies=["t3-reason"],
                        timeout_sec=45,
                        max_retries=2,
                        resources=TaskResources(cpu=1, memory="1Gi"),
                    ),
                ],
            )
        return DAG(
            dag_id=dag_id,
            tasks=[
                decompose,
                Task(
                    task_id="t2-respond",
                    type="llm_inference",
                    inputs={"op": "respond"},
                    dependencies=["t1-decompose"],
                    timeout_sec=60,
                    max_retries=2,
                    resources=TaskResources(cpu=2, memory="4Gi"),
                ),
            ],
        )

    def _compile_hybrid(self, job_id: str, req_type: str, input_text: str) -> DAG:
        base = self._compile_template(job_id, req_type, input_text)
        if len(base.tasks) <= 1:
            return base
        # Multi-step templates get an explicit aggregation tail.
        base.tasks.append(
            Task(
                task_id="t4-aggregate",
                type="aggregation",
                inputs={"op": "aggregate"},
                dependencies=[base.tasks[-1].task_id],
                timeout_sec=30,
                max_retries=2,
                resources=TaskResources(cpu=1, memory="1Gi"),
            )
        )
        return base


def new_compiler() -> Compiler:
    """Build a compiler, with an HTTP planner if SPLAI_LLM_PLANNER_ENDPOINT is set."""
    endpoint = os.environ.get("SPLAI_LLM_PLANNER_ENDPOINT", "").strip()
    llm = None
    if endpoint:
        llm = HTTPProvider(endpoint, os.environ.get("SPLAI_LLM_PLANNER_API_KEY", "").strip())
    return Compiler(llm)