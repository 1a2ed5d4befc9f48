"""
Decision folding.

Turns a set of violations plus gate and breaker state into one ternary
decision. Folding is order-independent: violations are counted, never
scanned for "the first" one.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .util import canonicalize, to_iso, utc_now


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Outcome(str, Enum):
    ALLOW = "allow"
    WARN = "warn"
    BLOCK = "block"


@dataclass(frozen=True)
class Violation:
    """A rule finding. Synthetic violations carry is_evaluation_error=True."""
    rule_id: str
    severity: Severity
    message: str
    context: Dict[str, Any] = field(default_factory=dict)
    is_evaluation_error: bool = False
    finding_id: Optional[str] = None

    def sort_key(self) -> Tuple:
        return (self.rule_id, self.severity.value, self.message, self.finding_id or "")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "severity": self.severity.value,
            "message": self.message,
            "context": self.context,
            "is_evaluation_error": self.is_evaluation_error,
            "finding_id": self.finding_id,
        }


@dataclass(frozen=True)
class BreakerEvidence:
    """Counter state for one tripped (rule, org) pair."""
    rule_id: str
    org_id: str
    count: int
    threshold: int

    def reason(self) -> str:
        return (f"Circuit breaker triggered for {self.rule_id}: {self.count} blocks "
                f"in current hour (threshold: {self.threshold})")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ruleId": self.rule_id,
            "orgId": self.org_id,
            "count": self.count,
            "threshold": self.threshold,
        }


@dataclass(frozen=True)
class Decision:
    """Terminal value of one evaluation."""
    outcome: Outcome
    reasons: Tuple[str, ...]
    degraded_mode: bool = False
    degraded_evidence: Tuple[BreakerEvidence, ...] = ()
    metadata: Dict[str, Any] = field(default_factory=dict)

    def blocked(self) -> bool:
        return self.outcome == Outcome.BLOCK

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "reasons": list(self.reasons),
            "degraded_mode": self.degraded_mode,
            "degraded_evidence": [e.to_dict() for e in self.degraded_evidence],
            "metadata": self.metadata,
        }


def count_by_severity(violations: Iterable[Violation]) -> Dict[Severity, int]:
    counts = {s: 0 for s in Severity}
    for v in violations:
        counts[v.severity] += 1
    return counts


def is_blocking(violation: Violation, strict: bool) -> bool:
    """Critical always blocks; high blocks in strict mode."""
    if violation.severity == Severity.CRITICAL:
        return True
    return strict and violation.severity == Severity.HIGH


def severity_reason(counts: Mapping[Severity, int]) -> str:
    return (f"Critical violations: {counts[Severity.CRITICAL]}, High: {counts[Severity.HIGH]}, "
            f"Medium: {counts[Severity.MEDIUM]}, Low: {counts[Severity.LOW]}")


def l0_block(failures: List[Any], mode: str, now: Optional[datetime] = None) -> Decision:
    """
    Decision for a request that failed the L0 gate.

    Each failure's message and evidence is carried verbatim into the reasons.
    """
    reasons = []
    for result in failures:
        evidence = canonicalize(result.evidence).decode("utf-8")
        reasons.append(
            f"L0 invariant failed: {result.invariant_id.value} ({result.invariant_name}): "
            f"{result.message}; evidence={evidence}"
        )
    return Decision(
        outcome=Outcome.BLOCK,
        reasons=tuple(reasons),
        metadata={
            "timestamp": to_iso(now or utc_now()),
            "mode": mode,
            "rules_evaluated": [],
            "l0_gate": "failed",
        },
    )


def make_decision(
    violations: List[Violation],
    mode: str,
    strict: bool = False,
    dry_run: bool = False,
    rules_evaluated: Optional[List[str]] = None,
    rules_errored: Optional[List[str]] = None,
    breaker: Optional[Mapping[str, BreakerEvidence]] = None,
    degraded_mode_is_failure: bool = False,
    now: Optional[datetime] = None,
) -> Decision:
    """
    Fold violations into allow/warn/block.

    - block if any critical violation exists, or strict mode is on and any
      high violation exists
    - warn if any other violation exists
    - allow otherwise

    `breaker` maps rule ids to tripped-breaker evidence. A block is
    downgraded to warn only when every blocking violation belongs to a
    tripped rule and none is an evaluation error; with
    `degraded_mode_is_failure` the block stands. Only those two cases flag
    the decision degraded and attach the counter evidence.
    """
    breaker = breaker or {}
    rules_errored = sorted(set(rules_errored or []))
    counts = count_by_severity(violations)
    blocking = [v for v in violations if is_blocking(v, strict)]

    reasons: List[str] = []
    if violations:
        reasons.append(severity_reason(counts))
    if rules_errored:
        reasons.append(f"Rule evaluation errors: {', '.join(rules_errored)}")

    if blocking:
        outcome = Outcome.BLOCK
    elif violations:
        outcome = Outcome.WARN
    else:
        outcome = Outcome.ALLOW

    tripped: List[BreakerEvidence] = []
    degraded = outcome == Outcome.BLOCK and all(
        v.rule_id in breaker and not v.is_evaluation_error for v in blocking
    )
    if degraded:
        tripped = sorted({breaker[v.rule_id] for v in blocking}, key=lambda e: (e.rule_id, e.org_id))
        for evidence in tripped:
            reasons.append(evidence.reason())
        if degraded_mode_is_failure:
            reasons.append("Degraded mode treated as failure: block retained")
        else:
            outcome = Outcome.WARN
            reasons.append("Degraded mode: block downgraded to warn")

    if dry_run and outcome == Outcome.BLOCK:
        reasons.append("Dry-run mode: would block but allowing with warning")
        outcome = Outcome.WARN

    if not violations:
        reasons.append("No violations detected")

    return Decision(
        outcome=outcome,
        reasons=tuple(reasons),
        degraded_mode=degraded,
        degraded_evidence=tuple(tripped),
        metadata={
            "timestamp": to_iso(now or utc_now()),
            "mode": mode,
            "rules_evaluated": sorted(rules_evaluated or []),
        },
    )
