"""
Policy rules and fail-closed rule evaluation.

A rule that raises is never dropped: evaluate_rules() converts the failure
into a synthetic critical violation with is_evaluation_error=True, naming
the rule, the lifecycle phase that failed and the underlying error.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional

from .decision import Severity, Violation
from .errors import DissonanceError
from .l0 import L0ValidationInput
from .logging_config import audit_log
from .security import ValidationError
from .util import canonicalize, sha256_hex

logger = logging.getLogger(__name__)


class RulePhase(str, Enum):
    """Lifecycle phase in which a rule failed."""
    INIT = "init"
    EVALUATE = "evaluate"
    EVIDENCE = "evidence"
    POST = "post"


class RuleEvaluationError(DissonanceError):
    """A rule could not complete; becomes a synthetic critical violation."""

    def __init__(
        self,
        rule_id: str,
        message: str,
        phase: RulePhase = RulePhase.EVALUATE,
        rule_version: str = "unknown",
        cause: Optional[BaseException] = None
    ):
        self.rule_id = rule_id
        self.phase = RulePhase(phase)
        self.rule_version = rule_version
        self.cause = cause
        self.original_message = message
        super().__init__(f"Rule {rule_id} failed during {self.phase.value}: {message}")

    @property
    def error_type(self) -> str:
        return type(self.cause).__name__ if self.cause is not None else type(self).__name__

    def to_violation(self) -> Violation:
        return Violation(
            rule_id=self.rule_id,
            severity=Severity.CRITICAL,
            message=str(self),
            context={
                "ruleVersion": self.rule_version,
                "phase": self.phase.value,
                "errorType": self.error_type,
                "originalMessage": self.original_message,
                "isEvaluationError": True,
            },
            is_evaluation_error=True,
        )


# ============================================================
# Oracle input
# ============================================================

class OracleMode(str, Enum):
    PULL_REQUEST = "pull_request"
    MERGE_GROUP = "merge_group"
    DRIFT = "drift"
    CALIBRATION = "calibration"


@dataclass
class RepositoryContext:
    repository_name: Optional[str] = None
    pr_number: Optional[int] = None
    commit_sha: Optional[str] = None
    branch: Optional[str] = None
    author: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "repository_name": self.repository_name,
            "pr_number": self.pr_number,
            "commit_sha": self.commit_sha,
            "branch": self.branch,
            "author": self.author,
        }


@dataclass
class OracleInput:
    """One evaluation request."""
    mode: OracleMode
    context: RepositoryContext = field(default_factory=RepositoryContext)
    strict: bool = False
    dry_run: bool = False
    baseline_file: Optional[str] = None
    l0: Optional[L0ValidationInput] = None

    @property
    def org_id(self) -> str:
        return self.context.repository_name or "unknown"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OracleInput":
        if not isinstance(data, dict):
            raise ValidationError("input", "must be an object")
        try:
            mode = OracleMode(data.get("mode"))
        except ValueError:
            raise ValidationError("mode", f"must be one of {', '.join(m.value for m in OracleMode)}")
        ctx = data.get("context") or {}
        if not isinstance(ctx, dict):
            raise ValidationError("context", "must be an object")
        pr_number = ctx.get("pr_number")
        if pr_number is not None:
            try:
                pr_number = int(pr_number)
            except (TypeError, ValueError):
                raise ValidationError("context.pr_number", "must be an integer")
        l0 = data.get("l0")
        return cls(
            mode=mode,
            context=RepositoryContext(
                repository_name=ctx.get("repository_name"),
                pr_number=pr_number,
                commit_sha=ctx.get("commit_sha"),
                branch=ctx.get("branch"),
                author=ctx.get("author"),
            ),
            strict=bool(data.get("strict", False)),
            dry_run=bool(data.get("dry_run", False)),
            baseline_file=data.get("baseline_file"),
            l0=L0ValidationInput.from_dict(l0) if l0 is not None else None,
        )


# ============================================================
# Rules
# ============================================================

class Rule(ABC):
    """
    Base class for policy rules.

    prepare() runs in the init phase, evaluate() in the evaluate phase.
    Both may raise; evaluate_rules() turns that into a synthetic violation.
    """
    rule_id: str = ""
    version: str = "1.0.0"
    description: str = ""

    def prepare(self, data: OracleInput) -> None:
        pass

    @abstractmethod
    def evaluate(self, data: OracleInput) -> List[Violation]:
        pass

    def _violation(self, severity: Severity, message: str, **context) -> Violation:
        return Violation(rule_id=self.rule_id, severity=severity, message=message, context=context)


def _branch_has(data: OracleInput, *needles: str) -> bool:
    branch = (data.context.branch or "").lower()
    return any(n in branch for n in needles)


class BranchProtectionRule(Rule):
    rule_id = "MD-001"
    description = "Merge queues must run in strict mode"

    def evaluate(self, data: OracleInput) -> List[Violation]:
        if data.mode == OracleMode.MERGE_GROUP and not data.strict:
            return [self._violation(
                Severity.HIGH,
                "Branch protection should be enabled with strict mode for merge queue",
                mode=data.mode.value,
                strict=data.strict,
            )]
        return []


class AutonomyComplianceRule(Rule):
    rule_id = "MD-002"
    description = "Autonomous-agent branches need a compliance review"

    def evaluate(self, data: OracleInput) -> List[Violation]:
        if data.mode == OracleMode.PULL_REQUEST and _branch_has(data, "auto", "agent"):
            return [self._violation(
                Severity.MEDIUM,
                "Autonomous operations detected - ensure compliance review process is followed",
                branch=data.context.branch,
            )]
        return []


class ProbabilisticOutputRule(Rule):
    rule_id = "MD-003"
    description = "ML/AI changes need confidence thresholds and fallbacks"

    def evaluate(self, data: OracleInput) -> List[Violation]:
        if data.mode in (OracleMode.PULL_REQUEST, OracleMode.MERGE_GROUP) and \
                _branch_has(data, "ml", "ai", "model"):
            return [self._violation(
                Severity.HIGH,
                "Probabilistic outputs detected - ensure confidence thresholds and fallback mechanisms are in place",
                branch=data.context.branch,
            )]
        return []


class AccountabilityRule(Rule):
    rule_id = "MD-004"
    description = "Strict mode requires author and commit for the audit trail"

    def evaluate(self, data: OracleInput) -> List[Violation]:
        if not data.strict:
            return []
        has_author = bool(data.context.author)
        has_commit = bool(data.context.commit_sha)
        if has_author and has_commit:
            return []
        return [self._violation(
            Severity.CRITICAL,
            "Missing audit trail metadata - author and commit SHA required in strict mode",
            hasAuthor=has_author,
            hasCommitSha=has_commit,
        )]


class DriftBaselineRule(Rule):
    rule_id = "MD-005"
    description = "Drift runs compare against a baseline"

    def evaluate(self, data: OracleInput) -> List[Violation]:
        if data.mode == OracleMode.DRIFT and data.baseline_file:
            return [self._violation(
                Severity.LOW,
                "Drift detection enabled - baseline comparison in progress",
                baselineFile=data.baseline_file,
            )]
        return []


def default_rules() -> List[Rule]:
    return [
        BranchProtectionRule(),
        AutonomyComplianceRule(),
        ProbabilisticOutputRule(),
        AccountabilityRule(),
        DriftBaselineRule(),
    ]


# ============================================================
# Evaluation
# ============================================================

@dataclass
class RuleSetResult:
    """Violations plus bookkeeping for the audit trail and circuit breaker."""
    violations: List[Violation]
    errors: List[RuleEvaluationError]
    rules_evaluated: List[str]
    rules_errored: List[str]

    @property
    def real_violations(self) -> List[Violation]:
        return [v for v in self.violations if not v.is_evaluation_error]

    @property
    def synthetic_violations(self) -> List[Violation]:
        return [v for v in self.violations if v.is_evaluation_error]


def finding_id_for(violation: Violation, data: OracleInput) -> str:
    """Deterministic identifier for one finding in one repository."""
    return sha256_hex(canonicalize({
        "ruleId": violation.rule_id,
        "repository": data.org_id,
        "context": violation.context,
    }))


def _run_rule(rule: Rule, data: OracleInput) -> List[Violation]:
    phase = RulePhase.INIT
    try:
        rule.prepare(data)
        phase = RulePhase.EVALUATE
        produced = rule.evaluate(data)
        phase = RulePhase.EVIDENCE
        if not isinstance(produced, list):
            raise TypeError(f"evaluate() returned {type(produced).__name__}, expected list")
        checked = []
        for v in produced:
            if not isinstance(v, Violation):
                raise TypeError(f"evaluate() produced {type(v).__name__}, expected Violation")
            finding = v.finding_id or finding_id_for(v, data)
            checked.append(replace(v, rule_id=v.rule_id or rule.rule_id, finding_id=finding))
        return checked
    except RuleEvaluationError:
        raise
    except Exception as e:
        raise RuleEvaluationError(
            rule.rule_id or type(rule).__name__,
            str(e) or type(e).__name__,
            phase=phase,
            rule_version=rule.version,
            cause=e,
        ) from e


def evaluate_rules(rules: List[Rule], data: OracleInput) -> RuleSetResult:
    """
    Run every rule and collect violations.

    The result's violation list is sorted so that folding does not depend
    on rule order.
    """
    violations: List[Violation] = []
    errors: List[RuleEvaluationError] = []
    evaluated: List[str] = []
    for rule in rules:
        evaluated.append(rule.rule_id)
        try:
            violations.extend(_run_rule(rule, data))
        except RuleEvaluationError as e:
            logger.error("Rule %s failed during %s: %s", e.rule_id, e.phase.value, e.original_message,
                         exc_info=e.cause is not None)
            audit_log.rule_errored(e.rule_id, e.phase.value, e.error_type)
            errors.append(e)
            violations.append(e.to_violation())
    violations.sort(key=Violation.sort_key)
    return RuleSetResult(
        violations=violations,
        errors=errors,
        rules_evaluated=evaluated,
        rules_errored=sorted({e.rule_id for e in errors}),
    )
