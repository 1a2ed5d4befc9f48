import json
import logging

import pytest

from conftest import make_event
from dissonance.circuit_breaker import CircuitBreaker
from dissonance.decision import Outcome
from dissonance.errors import BlockCounterError
from dissonance.oracle import Oracle
from dissonance.rules import OracleInput, Rule, default_rules, evaluate_rules
from dissonance.stores import BlockCounterStore

STRICT_NO_AUTHOR = {"mode": "pull_request", "strict": True, "context": {"repository_name": "acme/api"}}
AGENT_BRANCH = {"mode": "pull_request", "context": {"repository_name": "acme/api", "branch": "agent-x"}}


class CountingRule(Rule):
    rule_id = "T-001"

    def __init__(self):
        self.calls = 0

    def evaluate(self, data):
        self.calls += 1
        return []


class UnreadableCounter(BlockCounterStore):
    def increment(self, bucket_key, ttl_seconds):
        raise ConnectionError("down")

    def get(self, bucket_key):
        raise ConnectionError("down")


@pytest.fixture
def oracle(calibration, breaker, trust, clock):
    return Oracle(calibration=calibration, breaker=breaker, trust=trust, clock=clock)


def run(oracle, data):
    return oracle.evaluate(OracleInput.from_dict(data))


# ============================================================
# L0 gate
# ============================================================

def test_l0_failure_blocks_before_rules(calibration, breaker, clock):
    rule = CountingRule()
    oracle = Oracle(rules=[rule], calibration=calibration, breaker=breaker, clock=clock)
    out = run(oracle, {
        "mode": "pull_request",
        "l0": {"schema": {"content": "abc", "expected_hash": "00" * 32}},
    })
    assert out.decision.outcome == Outcome.BLOCK
    assert out.decision.metadata["l0_gate"] == "failed"
    assert out.decision.reasons[0].startswith("L0 invariant failed: L0-001 (schema_hash): Schema hash mismatch")
    assert rule.calls == 0
    assert out.report.rules_checked == 0
    assert [r.passed for r in out.l0_results] == [False]


def test_passing_l0_continues_to_rules(oracle):
    out = run(oracle, {
        "mode": "drift",
        "l0": {"drift": {"current": {"name": "fpr", "value": 0.11}, "baseline": {"name": "fpr", "value": 0.1}}},
    })
    assert out.decision.outcome == Outcome.ALLOW
    assert out.report.rules_checked == 5
    assert out.l0_results[0].passed


def test_bound_nonce_checked_through_trust(oracle, trust, verified_org):
    binding = trust.generate_and_bind_nonce("acme", "ab" * 32).binding
    out = run(oracle, {"mode": "drift", "l0": {"nonce": {"org_id": "acme", "nonce": binding.nonce}}})
    assert out.decision.outcome == Outcome.ALLOW
    assert out.l0_results[0].evidence["org_id"] == "acme"


def test_rotated_nonce_blocks(oracle, trust, verified_org):
    old = trust.generate_and_bind_nonce("acme", "ab" * 32).binding
    trust.rotate_nonce("acme")
    out = run(oracle, {"mode": "drift", "l0": {"nonce": {"org_id": "acme", "nonce": old.nonce}}})
    assert out.decision.outcome == Outcome.BLOCK
    assert "Nonce binding invalid: Nonce binding revoked" in out.decision.reasons[0]


def test_audit_log_redacts_bound_nonce(oracle, trust, verified_org, clock, caplog):
    binding = trust.generate_and_bind_nonce("acme", "ab" * 32).binding
    clock.advance(hours=2)
    with caplog.at_level(logging.WARNING, logger="dissonance.audit"):
        out = run(oracle, {"mode": "drift", "l0": {"nonce": {"org_id": "acme", "nonce": binding.nonce}}})
    assert out.decision.outcome == Outcome.BLOCK
    [record] = [r for r in caplog.records
                if getattr(r, "extra_fields", {}).get("event_type") == "L0_INVARIANT_FAILED"]
    assert record.extra_fields["evidence"]["nonce"] == binding.nonce[:8] + "..."
    assert binding.nonce not in json.dumps(record.extra_fields)


def test_bound_nonce_without_trust_blocks(clock):
    oracle = Oracle(clock=clock)
    out = run(oracle, {"mode": "drift", "l0": {"nonce": {"org_id": "acme", "nonce": "ab" * 32}}})
    assert out.decision.outcome == Outcome.BLOCK
    assert "Nonce binding verification unavailable" in out.decision.reasons[0]


def test_dry_run_does_not_soften_l0(oracle):
    out = run(oracle, {
        "mode": "pull_request",
        "dry_run": True,
        "l0": {"workflows": [{"path": "ci.yml", "content": "permissions: write-all"}]},
    })
    assert out.decision.outcome == Outcome.BLOCK


# ============================================================
# False-positive filter
# ============================================================

def finding_of(data):
    return evaluate_rules(default_rules(), OracleInput.from_dict(data)).violations[0].finding_id


def test_marked_false_positive_is_filtered(oracle, calibration):
    calibration.record_event(make_event("e1", finding_id=finding_of(AGENT_BRANCH)))
    assert run(oracle, AGENT_BRANCH).decision.outcome == Outcome.WARN

    calibration.mark_false_positive(finding_of(AGENT_BRANCH), "alice")
    out = run(oracle, AGENT_BRANCH)
    assert out.decision.outcome == Outcome.ALLOW
    assert out.report.false_positives_filtered == 1
    assert out.violations == []


def test_confirmed_finding_is_kept(oracle, calibration):
    calibration.record_event(make_event("e1", finding_id=finding_of(AGENT_BRANCH)))
    calibration.confirm_finding(finding_of(AGENT_BRANCH), "bob")
    assert run(oracle, AGENT_BRANCH).decision.outcome == Outcome.WARN


# ============================================================
# Circuit breaker
# ============================================================

def test_block_increments_counter_once_per_rule(oracle, breaker):
    out = run(oracle, STRICT_NO_AUTHOR)
    assert out.decision.outcome == Outcome.BLOCK
    assert breaker.status("MD-004", "acme/api").count == 1
    assert breaker.status("MD-002", "acme/api").count == 0


def test_tripped_breaker_degrades_to_warn(oracle, breaker):
    for _ in range(3):
        assert run(oracle, STRICT_NO_AUTHOR).decision.outcome == Outcome.BLOCK
    out = run(oracle, STRICT_NO_AUTHOR)
    assert out.decision.outcome == Outcome.WARN
    assert out.decision.degraded_mode
    assert out.decision.degraded_evidence[0].count == 3
    assert "Degraded mode: yes" in out.summary
    # warn does not count as a block
    assert breaker.status("MD-004", "acme/api").count == 3


def test_degraded_mode_as_failure(calibration, breaker, clock):
    oracle = Oracle(calibration=calibration, breaker=breaker, degraded_mode_is_failure=True, clock=clock)
    for _ in range(4):
        out = run(oracle, STRICT_NO_AUTHOR)
    assert out.decision.outcome == Outcome.BLOCK
    assert out.decision.degraded_mode


def test_new_hour_resets_degradation(oracle, clock):
    for _ in range(3):
        run(oracle, STRICT_NO_AUTHOR)
    clock.advance(hours=1)
    assert run(oracle, STRICT_NO_AUTHOR).decision.outcome == Outcome.BLOCK


def test_unreadable_counter_fails_closed(clock):
    oracle = Oracle(breaker=CircuitBreaker(UnreadableCounter(), threshold=3, clock=clock), clock=clock)
    with pytest.raises(BlockCounterError):
        run(oracle, STRICT_NO_AUTHOR)


def test_dry_run_warns_and_does_not_count(oracle, breaker):
    out = run(oracle, dict(STRICT_NO_AUTHOR, dry_run=True))
    assert out.decision.outcome == Outcome.WARN
    assert breaker.status("MD-004", "acme/api").count == 0


# ============================================================
# Report and summary
# ============================================================

def test_report_counts(oracle):
    out = run(oracle, {
        "mode": "merge_group",
        "strict": True,
        "context": {"repository_name": "acme/api", "branch": "model-refresh"},
    })
    report = out.report
    assert report.rules_checked == 5
    assert report.violations_found == 2
    assert report.real_violations == 2
    assert report.synthetic_violations == 0
    assert report.critical_issues == 1
    assert out.decision.outcome == Outcome.BLOCK


class CrashingRule(Rule):
    rule_id = "T-900"

    def evaluate(self, data):
        raise RuntimeError("rule crashed")


def test_crashing_rule_blocks_alongside_clean_rules(calibration, breaker, clock):
    oracle = Oracle(rules=[CrashingRule()] + default_rules(), calibration=calibration, breaker=breaker, clock=clock)
    out = run(oracle, AGENT_BRANCH)
    assert out.decision.outcome == Outcome.BLOCK
    synthetic = [v for v in out.violations if v.is_evaluation_error]
    assert [v.rule_id for v in synthetic] == ["T-900"]
    assert any(v.rule_id == "MD-002" and not v.is_evaluation_error for v in out.violations)
    assert out.report.synthetic_violations == 1
    assert out.report.real_violations == 1
    assert out.report.rules_errored == ["T-900"]
    assert breaker.status("T-900", "acme/api").count == 1


def test_summary_framing(oracle):
    out = run(oracle, AGENT_BRANCH)
    lines = out.summary.splitlines()
    assert lines[0] == "=" * 60
    assert lines[1] == "Dissonance Oracle Decision"
    assert lines[-1] == "=" * 60
    assert "Decision: WARN" in lines
    assert any(line.startswith("  [MEDIUM] MD-002:") for line in lines)


def test_output_serializes(oracle):
    data = run(oracle, AGENT_BRANCH).to_dict()
    assert data["decision"]["outcome"] == "warn"
    assert data["report"]["rules_checked"] == 5
    assert data["l0_results"] == []
