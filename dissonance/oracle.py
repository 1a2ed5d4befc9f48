"""
Oracle - governance decision engine.

Evaluation order for one request:

    1. L0 gate (when the request carries an l0 section). Any failure
       blocks; no policy rule runs.
    2. Policy rules. A rule that raises becomes a critical synthetic
       violation.
    3. False-positive filter over real violations.
    4. Circuit breaker lookup per remaining (rule, org).
    5. Fold into allow/warn/block; increment block counters on block.

Every adapter failure propagates. The Oracle never turns an unreadable
store into a permissive decision.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .calibration import CalibrationStore
from .circuit_breaker import CircuitBreaker
from .decision import (
    BreakerEvidence,
    Decision,
    Severity,
    Violation,
    is_blocking,
    l0_block,
    make_decision,
)
from .l0 import L0Result, L0Validator, all_passed
from .logging_config import audit_log
from .rules import OracleInput, Rule, default_rules, evaluate_rules
from .stores import Clock
from .util import utc_now

logger = logging.getLogger(__name__)


@dataclass
class OracleReport:
    rules_checked: int = 0
    rules_errored: List[str] = field(default_factory=list)
    violations_found: int = 0
    real_violations: int = 0
    synthetic_violations: int = 0
    critical_issues: int = 0
    false_positives_filtered: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rules_checked": self.rules_checked,
            "rules_errored": self.rules_errored,
            "violations_found": self.violations_found,
            "real_violations": self.real_violations,
            "synthetic_violations": self.synthetic_violations,
            "critical_issues": self.critical_issues,
            "false_positives_filtered": self.false_positives_filtered,
        }


@dataclass
class OracleOutput:
    decision: Decision
    violations: List[Violation]
    summary: str
    report: OracleReport
    l0_results: List[L0Result] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "decision": self.decision.to_dict(),
            "violations": [v.to_dict() for v in self.violations],
            "summary": self.summary,
            "report": self.report.to_dict(),
            "l0_results": [r.to_dict() for r in self.l0_results],
        }


def format_summary(decision: Decision, violations: List[Violation]) -> str:
    """Plain-text summary for CI logs."""
    lines = [
        "=" * 60,
        "Dissonance Oracle Decision",
        "=" * 60,
        f"Decision: {decision.outcome.value.upper()}",
        f"Timestamp: {decision.metadata.get('timestamp')}",
        f"Mode: {decision.metadata.get('mode')}",
    ]
    if decision.degraded_mode:
        lines.append("Degraded mode: yes")
    lines.append("")
    lines.append("Reasons:")
    for reason in decision.reasons:
        lines.append(f"  - {reason}")
    if violations:
        lines.append("")
        lines.append("Violations:")
        for v in violations:
            marker = " (evaluation error)" if v.is_evaluation_error else ""
            lines.append(f"  [{v.severity.value.upper()}] {v.rule_id}: {v.message}{marker}")
    lines.append("=" * 60)
    return "\n".join(lines)


class Oracle:
    """
    Runs the L0 gate, the rule set, the FP filter and the circuit breaker.

    `calibration` and `trust` are optional: without a calibration store no
    finding is filtered, and without a trust service a bound nonce in the
    L0 section fails its check.
    """

    def __init__(
        self,
        rules: Optional[List[Rule]] = None,
        validator: Optional[L0Validator] = None,
        calibration: Optional[CalibrationStore] = None,
        breaker: Optional[CircuitBreaker] = None,
        trust=None,
        degraded_mode_is_failure: bool = False,
        clock: Clock = utc_now,
    ):
        self.rules = default_rules() if rules is None else list(rules)
        self.validator = validator or L0Validator(clock=clock)
        self.calibration = calibration
        self.breaker = breaker
        self.trust = trust
        self.degraded_mode_is_failure = degraded_mode_is_failure
        self._clock = clock

    def run_l0(self, data: OracleInput) -> List[L0Result]:
        if data.l0 is None:
            return []
        verify = self.trust.verify_binding if self.trust is not None else None
        results = self.validator.validate_all(data.l0, verify_binding=verify)
        for r in results:
            if not r.passed:
                audit_log.l0_failed(r.invariant_id.value, r.invariant_name, r.evidence)
        return results

    def _filter_false_positives(self, violations: List[Violation]) -> List[Violation]:
        if self.calibration is None:
            return list(violations)
        kept = []
        for v in violations:
            if v.is_evaluation_error or not v.finding_id:
                kept.append(v)
            elif self.calibration.is_false_positive(v.finding_id):
                logger.info("Filtered false positive %s for %s", v.finding_id, v.rule_id)
            else:
                kept.append(v)
        return kept

    def _breaker_state(self, violations: List[Violation], org_id: str) -> Dict[str, BreakerEvidence]:
        if self.breaker is None:
            return {}
        tripped = {}
        for rule_id in sorted({v.rule_id for v in violations}):
            status = self.breaker.status(rule_id, org_id)
            if status.broken:
                tripped[rule_id] = BreakerEvidence(rule_id, org_id, status.count, status.threshold)
        return tripped

    def evaluate(self, data: OracleInput) -> OracleOutput:
        now = self._clock()
        mode = data.mode.value
        org_id = data.org_id

        l0_results = self.run_l0(data)
        if not all_passed(l0_results):
            failures = [r for r in l0_results if not r.passed]
            decision = l0_block(failures, mode, now)
            audit_log.decision_rendered(decision.outcome.value, mode, org_id, 0, [])
            return OracleOutput(
                decision=decision,
                violations=[],
                summary=format_summary(decision, []),
                report=OracleReport(),
                l0_results=l0_results,
            )

        result = evaluate_rules(self.rules, data)
        remaining = self._filter_false_positives(result.violations)
        breaker = self._breaker_state(remaining, org_id)

        decision = make_decision(
            remaining,
            mode,
            strict=data.strict,
            dry_run=data.dry_run,
            rules_evaluated=result.rules_evaluated,
            rules_errored=result.rules_errored,
            breaker=breaker,
            degraded_mode_is_failure=self.degraded_mode_is_failure,
            now=now,
        )

        if decision.blocked() and self.breaker is not None:
            for rule_id in sorted({v.rule_id for v in remaining if is_blocking(v, data.strict)}):
                self.breaker.increment(rule_id, org_id)

        report = OracleReport(
            rules_checked=len(result.rules_evaluated),
            rules_errored=result.rules_errored,
            violations_found=len(remaining),
            real_violations=sum(1 for v in remaining if not v.is_evaluation_error),
            synthetic_violations=sum(1 for v in remaining if v.is_evaluation_error),
            critical_issues=sum(1 for v in remaining if v.severity == Severity.CRITICAL),
            false_positives_filtered=len(result.violations) - len(remaining),
        )
        audit_log.decision_rendered(
            decision.outcome.value,
            mode,
            org_id,
            report.rules_checked,
            report.rules_errored,
            degraded_mode=decision.degraded_mode,
        )
        return OracleOutput(
            decision=decision,
            violations=remaining,
            summary=format_summary(decision, remaining),
            report=report,
            l0_results=l0_results,
        )
