import pytest

from splai.policy import (
    AssignmentInput,
    PolicyConfig,
    PolicyEngine,
    PolicyError,
    Rule,
    RuleMatch,
    SubmitInput,
    TenantQuota,
    allow_all,
    config_from_mapping,
    load_from_env,
    normalize_action,
)


def test_evaluate_submit_quota_and_deny_rule():
    engine = PolicyEngine(
        PolicyConfig(
            default_action="allow",
            tenant_quotas={"tenant-a": TenantQuota(max_running_jobs=1)},
            rules=[
                Rule(
                    name="deny-confidential-external",
                    effect="deny",
                    reason="confidential_external_forbidden",
                    match=RuleMatch(data_classification="confidential", model="external_api"),
                )
            ],
        )
    )
    d = engine.evaluate_submit(
        SubmitInput(
            tenant="tenant-a",
            job_type="chat",
            model="external_api",
            data_classification="confidential",
            running_jobs=0,
        )
    )
    assert d.allowed is False
    assert d.reason_code == "confidential_external_forbidden"
    assert d.rule == "deny-confidential-external"
    assert d.message == "deny-confidential-external: confidential_external_forbidden"

    d = engine.evaluate_submit(SubmitInput(tenant="tenant-a", job_type="chat", running_jobs=1))
    assert d.allowed is False
    assert d.reason_code == "quota_running_jobs_exceeded"
    assert d.rule == "tenant_quotas.tenant-a"


def test_evaluate_assignment_quota():
    engine = PolicyEngine(
        PolicyConfig(
            default_action="allow",
            tenant_quotas={"tenant-a": TenantQuota(max_running_tasks=2)},
        )
    )
    d = engine.evaluate_assignment(
        AssignmentInput(tenant="tenant-a", task_type="llm_inference", running_tasks=2)
    )
    assert d.allowed is False
    assert d.reason_code == "quota_running_tasks_exceeded"


def test_assignment_under_quota_falls_to_default_allow():
    engine = PolicyEngine(
        PolicyConfig(tenant_quotas={"tenant-a": TenantQuota(max_running_tasks=2)})
    )
    d = engine.evaluate_assignment(AssignmentInput(tenant="tenant-a", running_tasks=1))
    assert d.allowed is True
    assert d.reason_code == "default_allow"
    assert d.rule == "default_action"


def test_allow_all_is_noop_and_allows():
    engine = allow_all()
    assert engine.is_noop() is True
    assert engine.evaluate_submit(SubmitInput()).allowed is True


def test_non_empty_config_is_not_noop():
    engine = PolicyEngine(PolicyConfig(rules=[Rule(name="r")]))
    assert engine.is_noop() is False


def test_default_deny():
    engine = PolicyEngine(PolicyConfig(default_action=" DENY "))
    assert engine.is_noop() is False
    d = engine.evaluate_submit(SubmitInput(tenant="t"))
    assert d.allowed is False
    assert d.reason_code == "default_deny"
    assert d.message == "request denied by default_action=deny"


def test_rule_with_unknown_effect_denies_with_generated_reason():
    engine = PolicyEngine(PolicyConfig(rules=[Rule(effect="maybe")]))
    d = engine.evaluate_submit(SubmitInput())
    assert d.allowed is False
    assert d.reason_code == "policy_rule_deny"
    assert d.message == "policy_rule_deny"
    assert d.rule == ""


def test_allow_rule_before_default_deny():
    engine = PolicyEngine(
        PolicyConfig(
            default_action="deny",
            rules=[Rule(name="ok-tenant", effect="allow", match=RuleMatch(tenant="default"))],
        )
    )
    d = engine.evaluate_submit(SubmitInput(tenant="  "))
    assert d.allowed is True
    assert d.reason_code == "policy_rule_allow"
    assert d.rule == "ok-tenant"


def test_gpu_condition_matches_only_assignments_with_gpu_flag():
    engine = PolicyEngine(
        PolicyConfig(rules=[Rule(name="no-gpu", effect="deny", match=RuleMatch(requires_gpu=True))])
    )
    assert engine.evaluate_assignment(AssignmentInput(worker_gpu=True)).allowed is False
    assert engine.evaluate_assignment(AssignmentInput(worker_gpu=False)).allowed is True
    # Submissions carry no GPU fact, which counts as false.
    assert engine.evaluate_submit(SubmitInput()).allowed is True


def test_first_matching_rule_wins():
    engine = PolicyEngine(
        PolicyConfig(
            rules=[
                Rule(name="a", effect="allow", match=RuleMatch(model="m")),
                Rule(name="b", effect="deny"),
            ]
        )
    )
    assert engine.evaluate_submit(SubmitInput(model="m")).rule == "a"
    assert engine.evaluate_submit(SubmitInput(model="x")).rule == "b"


def test_normalize_action():
    assert normalize_action(" Allow ") == "allow"
    assert normalize_action("DENY") == "deny"
    assert normalize_action("block") == ""


def test_config_from_mapping():
    cfg = config_from_mapping(
        {
            "default_action": "deny",
            "rules": [
                {
                    "name": "gpu-only",
                    "effect": "allow",
                    "match": {"task_type": "llm_inference", "requires_gpu": True},
                }
            ],
            "tenant_quotas": {"tenant-a": {"max_running_jobs": 3}},
            "unknown": 1,
        }
    )
    assert cfg.default_action == "deny"
    assert cfg.rules[0].match.task_type == "llm_inference"
    assert cfg.rules[0].match.requires_gpu is True
    assert cfg.tenant_quotas["tenant-a"].max_running_jobs == 3
    assert cfg.tenant_quotas["tenant-a"].max_running_tasks == 0


def test_config_from_mapping_rejects_bad_types():
    with pytest.raises(PolicyError):
        config_from_mapping({"rules": "nope"})
    with pytest.raises(PolicyError):
        config_from_mapping({"tenant_quotas": {"t": {"max_running_jobs": "many"}}})
    with pytest.raises(PolicyError):
        config_from_mapping(["not", "a", "mapping"])


def test_load_from_env_unset(monkeypatch):
    monkeypatch.delenv("SPLAI_POLICY_FILE", raising=False)
    assert load_from_env().is_noop() is True


def test_load_from_env_reads_yaml(monkeypatch, tmp_path):
    path = tmp_path / "policy.yaml"
    path.write_text(
        "default_action: allow\n"
        "tenant_quotas:\n"
        "  ' tenant-a ':\n"
        "    max_running_jobs: 1\n"
        "rules:\n"
        "  - name: deny-local\n"
        "    effect: deny\n"
        "    reason: locality_forbidden\n"
        "    match:\n"
        "      worker_locality: local\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("SPLAI_POLICY_FILE", str(path))
    engine = load_from_env()
    assert engine.is_noop() is False
    d = engine.evaluate_assignment(AssignmentInput(tenant="x", worker_locality="local"))
    assert d.reason_code == "locality_forbidden"
    quota = engine.evaluate_submit(SubmitInput(tenant="tenant-a", running_jobs=1))
    assert quota.reason_code == "quota_running_jobs_exceeded"


def test_load_from_env_missing_file(monkeypatch, tmp_path):
    monkeypatch.setenv("SPLAI_POLICY_FILE", str(tmp_path / "absent.yaml"))
    with pytest.raises(PolicyError, match="read policy file"):
        load_from_env()


def test_load_from_env_bad_yaml(monkeypatch, tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("rules: [unclosed\n", encoding="utf-8")
    monkeypatch.setenv("SPLAI_POLICY_FILE", str(path))
    with pytest.raises(PolicyError, match="parse policy file"):
        load_from_env()