"""Admission and placement policy: quota checks and first-match rules."""

from __future__ import annotations

import dataclasses
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import yaml

__all__ = [
    "AssignmentInput",
    "Decision",
    "PolicyConfig",
    "PolicyEngine",
    "PolicyError",
    "Rule",
    "RuleMatch",
    "SubmitInput",
    "TenantQuota",
    "allow_all",
    "config_from_mapping",
    "load_from_env",
    "normalize_action",
]

_ALLOW = "allow"
_DENY = "deny"


class PolicyError(Exception):
    """A policy file could not be read or understood."""


@dataclass
class TenantQuota:
    """Per-tenant limits; zero means unlimited."""

    max_running_jobs: int = 0
    max_running_tasks: int = 0


@dataclass
class RuleMatch:
    """Conditions of a rule; empty fields and a None GPU flag match anything."""

    tenant: str = ""
    job_type: str = ""
    task_type: str = ""
    model: str = ""
    data_classification: str = ""
    priority: str = ""
    network_isolation: str = ""
    worker_locality: str = ""
    requires_gpu: bool | None = None


@dataclass
class Rule:
    """A named allow or deny rule."""

    name: str = ""
    effect: str = ""
    reason: str = ""
    match: RuleMatch = field(default_factory=RuleMatch)


@dataclass
class PolicyConfig:
    """The whole policy as read from a file."""

    default_action: str = ""
    rules: list[Rule] = field(default_factory=list)
    tenant_quotas: dict[str, TenantQuota] = field(default_factory=dict)


@dataclass(frozen=True)
class Decision:
    """Outcome of a policy evaluation."""

    allowed: bool
    reason_code: str
    rule: str
    message: str


@dataclass
class SubmitInput:
    """Facts about a job being submitted."""

    tenant: str = ""
    job_type: str = ""
    priority: str = ""
    model: str = ""
    data_classification: str = ""
    running_jobs: int = 0


@dataclass
class AssignmentInput:
    """Facts about a task about to be handed to a worker."""

    tenant: str = ""
    task_type: str = ""
    model: str = ""
    data_classification: str = ""
    network_isolation: str = ""
    worker_locality: str = ""
    worker_gpu: bool = False
    running_tasks: int = 0


def normalize_action(value: str) -> str:
    """Return ``allow`` or ``deny``, or an empty string for anything else."""
    action = (value or "").strip().lower()
    return action if action in (_ALLOW, _DENY) else ""


class PolicyEngine:
    """Evaluates tenant quotas first, then rules in order, then the default."""

    def __init__(self, config: PolicyConfig | None = None):
        config = config if config is not None else PolicyConfig()
        self._default_action = normalize_action(config.default_action) or _ALLOW
        self._rules = [
            dataclasses.replace(r, effect=normalize_action(r.effect) or _DENY)
            for r in config.rules
        ]
        self._quotas = {k.strip(): v for k, v in config.tenant_quotas.items()}
        self._noop = (
            self._default_action == _ALLOW and not self._rules and not self._quotas
        )

    def is_noop(self) -> bool:
        """True when the policy allows everything and checks nothing."""
        return self._noop

    def evaluate_submit(self, request: SubmitInput) -> Decision:
        tenant = request.tenant.strip() or "default"
        quota = self._quotas.get(tenant)
        if (
            quota is not None
            and quota.max_running_jobs > 0
            and request.running_jobs >= quota.max_running_jobs
        ):
            return Decision(
                allowed=False,
                reason_code="quota_running_jobs_exceeded",
                rule="tenant_quotas." + tenant,
                message=(
                    f"running jobs {request.running_jobs} reached "
                    f"max_running_jobs {quota.max_running_jobs}"
                ),
            )
        return self._evaluate_rules(
            RuleMatch(
                tenant=tenant,
                job_type=request.job_type,
                model=request.model,
                data_classification=request.data_classification,
                priority=request.priority,
            )
        )

    def evaluate_assignment(self, request: AssignmentInput) -> Decision:
        tenant = request.tenant.strip() or "default"
        quota = self._quotas.get(tenant)
        if (
            quota is not None
            and quota.max_running_tasks > 0
            and request.running_tasks >= quota.max_running_tasks
        ):
            return Decision(
                allowed=False,
                reason_code="quota_running_tasks_exceeded",
                rule="tenant_quotas." + tenant,
                message=(
                    f"running tasks {request.running_tasks} reached "
                    f"max_running_tasks {quota.max_running_tasks}"
                ),
            )
        return self._evaluate_rules(
            RuleMatch(
                tenant=tenant,
                task_type=request.task_type,
                model=request.model,
                data_classification=request.data_classification,
                network_isolation=request.network_isolation,
                worker_locality=request.worker_locality,
                requires_gpu=request.worker_gpu,
            )
        )

    def _evaluate_rules(self, facts: RuleMatch) -> Decision:
        for rule in self._rules:
            if not _matches(rule.match, facts):
                continue
            reason = "policy_rule_" + rule.effect
            if rule.reason:
                reason = rule.reason.strip()
            message = f"{rule.name}: {reason}" if rule.name else reason
            return Decision(
                allowed=rule.effect == _ALLOW,
                reason_code=reason,
                rule=rule.name,
                message=message,
            )
        if self._default_action == _DENY:
            return Decision(
                allowed=False,
                reason_code="default_deny",
                rule="default_action",
                message="request denied by default_action=deny",
            )
        return Decision(
            allowed=True,
            reason_code="default_allow",
            rule="default_action",
            message="request allowed by default_action=allow",
        )


_STRING_CONDITIONS = (
    "tenant",
    "job_type",
    "task_type",
    "model",
    "data_classification",
    "priority",
    "network_isolation",
    "worker_locality",
)


def _matches(rule: RuleMatch, facts: RuleMatch) -> bool:
    for name in _STRING_CONDITIONS:
        wanted = getattr(rule, name)
        if wanted and wanted != getattr(facts, name):
            return False
    if rule.requires_gpu is not None and rule.requires_gpu != bool(facts.requires_gpu):
        return False
    return True


def allow_all() -> PolicyEngine:
    """An engine that allows every request without checks."""
    return PolicyEngine(PolicyConfig())


def _as_str(value: Any, where: str) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    raise PolicyError(f"{where}: expected a string, got {type(value).__name__}")


def _as_int(value: Any, where: str) -> int:
    if value is None:
        return 0
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    raise PolicyError(f"{where}: expected an integer, got {type(value).__name__}")


def _as_optional_bool(value: Any, where: str) -> bool | None:
    if value is None or isinstance(value, bool):
        return value
    raise PolicyError(f"{where}: expected a boolean, got {type(value).__name__}")


def _as_mapping(value: Any, where: str) -> Mapping:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise PolicyError(f"{where}: expected a mapping, got {type(value).__name__}")
    return value


def _rule_from_mapping(data: Any, where: str) -> Rule:
    data = _as_mapping(data, where)
    match = _as_mapping(data.get("match"), where + ".match")
    return Rule(
        name=_as_str(data.get("name"), where + ".name"),
        effect=_as_str(data.get("effect"), where + ".effect"),
        reason=_as_str(data.get("reason"), where + ".reason"),
        match=RuleMatch(
            **{
                name: _as_str(match.get(name), f"{where}.match.{name}")
                for name in _STRING_CONDITIONS
            },
            requires_gpu=_as_optional_bool(
                match.get("requires_gpu"), where + ".match.requires_gpu"
            ),
        ),
    )


def config_from_mapping(data: Any) -> PolicyConfig:
    """Build a policy config from parsed YAML; unknown keys are ignored."""
    data = _as_mapping(data, "policy")
    rules_raw = data.get("rules")
    if rules_raw is None:
        rules_raw = []
    if not isinstance(rules_raw, list):
        raise PolicyError("rules: expected a list")
    rules = [_rule_from_mapping(r, f"rules[{i}]") for i, r in enumerate(rules_raw)]
    quotas: dict[str, TenantQuota] = {}
    for tenant, raw in _as_mapping(data.get("tenant_quotas"), "tenant_quotas").items():
        where = f"tenant_quotas.{tenant}"
        quota = _as_mapping(raw, where)
        quotas[str(tenant)] = TenantQuota(
            max_running_jobs=_as_int(quota.get("max_running_jobs"), where + ".max_running_jobs"),
            max_running_tasks=_as_int(
                quota.get("max_running_tasks"), where + ".max_running_tasks"
            ),
        )
    return PolicyConfig(
        default_action=_as_str(data.get("default_action"), "default_action"),
        rules=rules,
        tenant_quotas=quotas,
    )


def load_from_env() -> PolicyEngine:
    """Load the YAML file named by SPLAI_POLICY_FILE, or allow all when unset."""
    path = os.environ.get("SPLAI_POLICY_FILE", "").strip()
    if not path:
        return allow_all()
    try:
        with open(path, encoding="utf-8") as handle:
            text = handle.read()
    except OSError as err:
        raise PolicyError(f"read policy file: {err}") from err
    try:
        parsed = yaml.safe_load(text)
        config = config_from_mapping(parsed)
    except (yaml.YAMLError, PolicyError) as err:
        raise PolicyError(f"parse policy file: {err}") from err
    return PolicyEngine(config)