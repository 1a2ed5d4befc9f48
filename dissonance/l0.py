"""
L0 Invariant Validator

Five cheap, deterministic safety checks that gate every evaluation:

    L0-001 schema_hash          content digest matches the expected digest
    L0-002 permission_bits      no over-broad workflow permission grants
    L0-003 drift_magnitude      relative drift within threshold
    L0-004 nonce_freshness      nonce issued within the max age, not in the future
    L0-005 contraction_witness  a falling FP rate is backed by reviewed witnesses

Every check is a pure function of its inputs (plus the injected clock for
L0-004) and returns an L0Result. Nothing here retries: if a check cannot be
evaluated the input is rejected with a ValidationError.
"""

import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .security import ValidationError, validate_hex, validate_probability, validate_timestamp
from .stores import Clock
from .util import constant_time_compare, sha256_hex, to_iso, utc_now

DEFAULT_DRIFT_THRESHOLD = 0.5
DEFAULT_NONCE_MAX_AGE_SECONDS = 3600
DEFAULT_CONTRACTION_MIN_EVENTS = 10

# An FP-rate drop larger than this (one percentage point) needs witnesses
CONTRACTION_TOLERANCE = 0.01

# Shortest accepted expected digest prefix
MIN_DIGEST_LENGTH = 8

PERMISSION_PATTERNS = [
    re.compile(r"permissions:\s*write-all", re.IGNORECASE),
    re.compile(r"permissions:\s*\{\s*\w+:\s*write-all", re.IGNORECASE),
    re.compile(r"contents:\s*write(?!-)", re.IGNORECASE),
]


class InvariantId(str, Enum):
    SCHEMA_HASH = "L0-001"
    PERMISSION_BITS = "L0-002"
    DRIFT_MAGNITUDE = "L0-003"
    NONCE_FRESHNESS = "L0-004"
    CONTRACTION_WITNESS = "L0-005"


INVARIANT_NAMES = {
    InvariantId.SCHEMA_HASH: "schema_hash",
    InvariantId.PERMISSION_BITS: "permission_bits",
    InvariantId.DRIFT_MAGNITUDE: "drift_magnitude",
    InvariantId.NONCE_FRESHNESS: "nonce_freshness",
    InvariantId.CONTRACTION_WITNESS: "contraction_witness",
}


@dataclass
class L0Result:
    """Outcome of one invariant check."""
    invariant_id: InvariantId
    passed: bool
    message: str
    evidence: Dict[str, Any] = field(default_factory=dict)
    latency_ns: int = 0

    @property
    def invariant_name(self) -> str:
        return INVARIANT_NAMES[self.invariant_id]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "invariant_id": self.invariant_id.value,
            "invariant_name": self.invariant_name,
            "passed": self.passed,
            "message": self.message,
            "evidence": self.evidence,
            "latency_ns": self.latency_ns,
        }


# ============================================================
# Inputs
# ============================================================

@dataclass
class WorkflowFile:
    path: str
    content: str


@dataclass
class DriftMetric:
    name: str
    value: float


@dataclass
class WitnessEvent:
    """A human review backing a change in false-positive rate."""
    event_id: str
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None

    def is_reviewed(self) -> bool:
        return bool(self.reviewed_by and self.reviewed_by.strip())


@dataclass
class L0ValidationInput:
    """
    Inputs for validate_all(). Each section is optional; only the
    invariants whose section is present are evaluated.
    """
    schema_content: Optional[str] = None
    expected_schema_hash: Optional[str] = None
    workflows: Optional[List[WorkflowFile]] = None
    drift_current: Optional[DriftMetric] = None
    drift_baseline: Optional[DriftMetric] = None
    nonce_issued_at: Optional[datetime] = None
    nonce_org_id: Optional[str] = None
    nonce_value: Optional[str] = None
    previous_fpr: Optional[float] = None
    current_fpr: Optional[float] = None
    witnesses: Optional[List[WitnessEvent]] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "L0ValidationInput":
        """
        Parse the JSON form:

            {"schema": {"content", "expected_hash"},
             "workflows": [{"path", "content"}],
             "drift": {"current": {"name", "value"}, "baseline": {"name", "value"}},
             "nonce": {"issued_at"} or {"org_id", "nonce"},
             "contraction": {"previous_fpr", "current_fpr",
                             "witnesses": [{"event_id", "reviewed_by", "reviewed_at"}]}}
        """
        if not isinstance(data, dict):
            raise ValidationError("l0", "must be an object")
        result = cls()

        schema = _section(data, "schema")
        if schema is not None:
            if "content" not in schema or "expected_hash" not in schema:
                raise ValidationError("l0.schema", "content and expected_hash are required")
            result.schema_content = str(schema["content"])
            result.expected_schema_hash = schema["expected_hash"]

        workflows = data.get("workflows")
        if workflows is not None:
            if not isinstance(workflows, list):
                raise ValidationError("l0.workflows", "must be an array")
            result.workflows = []
            for i, wf in enumerate(workflows):
                if not isinstance(wf, dict) or "path" not in wf or "content" not in wf:
                    raise ValidationError(f"l0.workflows[{i}]", "path and content are required")
                result.workflows.append(WorkflowFile(path=str(wf["path"]), content=str(wf["content"])))

        drift = _section(data, "drift")
        if drift is not None:
            result.drift_current = _metric(drift.get("current"), "l0.drift.current")
            result.drift_baseline = _metric(drift.get("baseline"), "l0.drift.baseline")

        nonce = _section(data, "nonce")
        if nonce is not None:
            if nonce.get("nonce") is not None:
                if not nonce.get("org_id"):
                    raise ValidationError("l0.nonce.org_id", "is required with a bound nonce")
                result.nonce_org_id = str(nonce["org_id"])
                result.nonce_value = validate_hex(nonce["nonce"], "l0.nonce.nonce", expected_length=64)
            else:
                result.nonce_issued_at = validate_timestamp(nonce.get("issued_at"), "l0.nonce.issued_at")

        contraction = _section(data, "contraction")
        if contraction is not None:
            result.previous_fpr = validate_probability(contraction.get("previous_fpr"), "l0.contraction.previous_fpr")
            result.current_fpr = validate_probability(contraction.get("current_fpr"), "l0.contraction.current_fpr")
            witnesses = contraction.get("witnesses")
            if witnesses is not None and not isinstance(witnesses, list):
                raise ValidationError("l0.contraction.witnesses", "must be an array")
            result.witnesses = []
            for i, w in enumerate(witnesses or []):
                if not isinstance(w, dict) or "event_id" not in w:
                    raise ValidationError(f"l0.contraction.witnesses[{i}]", "event_id is required")
                reviewed_by = w.get("reviewed_by")
                if reviewed_by is not None and not isinstance(reviewed_by, str):
                    raise ValidationError(f"l0.contraction.witnesses[{i}].reviewed_by", "must be a string")
                reviewed_at = w.get("reviewed_at")
                result.witnesses.append(WitnessEvent(
                    event_id=str(w["event_id"]),
                    reviewed_by=reviewed_by,
                    reviewed_at=validate_timestamp(reviewed_at, f"l0.contraction.witnesses[{i}].reviewed_at")
                    if reviewed_at else None,
                ))
        return result


def _section(data: Dict[str, Any], name: str) -> Optional[Dict[str, Any]]:
    value = data.get(name)
    if value is not None and not isinstance(value, dict):
        raise ValidationError(f"l0.{name}", "must be an object")
    return value


def _metric(value: Any, field_name: str) -> DriftMetric:
    if not isinstance(value, dict) or "value" not in value:
        raise ValidationError(field_name, "must be an object with name and value")
    try:
        number = float(value["value"])
    except (TypeError, ValueError):
        raise ValidationError(f"{field_name}.value", "must be a number")
    return DriftMetric(name=str(value.get("name", "")), value=number)


# ============================================================
# Validator
# ============================================================

class L0Validator:
    """
    Evaluates the L0 invariants.

    Thresholds are fixed at construction; the validator holds no other
    state and is safe to share between concurrent callers.
    """

    def __init__(
        self,
        drift_threshold: float = DEFAULT_DRIFT_THRESHOLD,
        nonce_max_age_seconds: int = DEFAULT_NONCE_MAX_AGE_SECONDS,
        contraction_min_events: int = DEFAULT_CONTRACTION_MIN_EVENTS,
        clock: Clock = utc_now,
    ):
        self.drift_threshold = drift_threshold
        self.nonce_max_age_seconds = nonce_max_age_seconds
        self.contraction_min_events = contraction_min_events
        self._clock = clock

    @staticmethod
    def _result(invariant_id: InvariantId, started: int, passed: bool, message: str,
                evidence: Dict[str, Any]) -> L0Result:
        return L0Result(
            invariant_id=invariant_id,
            passed=passed,
            message=message,
            evidence=evidence,
            latency_ns=time.perf_counter_ns() - started,
        )

    def check_schema_hash(self, content: str, expected_hash: str) -> L0Result:
        """
        L0-001: recompute the SHA-256 of `content` and compare.

        `expected_hash` may be the full 64-character digest or a prefix of at
        least MIN_DIGEST_LENGTH characters.
        """
        started = time.perf_counter_ns()
        expected = validate_hex(expected_hash, "expected_hash")
        if len(expected) < MIN_DIGEST_LENGTH or len(expected) > 64:
            raise ValidationError("expected_hash", f"must be {MIN_DIGEST_LENGTH} to 64 hex characters")
        actual = sha256_hex(content)[:len(expected)]
        passed = constant_time_compare(actual, expected)
        evidence = {"expected": expected, "actual": actual, "schema_length": len(content)}
        message = "Schema hash matches" if passed else "Schema hash mismatch"
        return self._result(InvariantId.SCHEMA_HASH, started, passed, message, evidence)

    def check_permission_bits(self, workflows: List[WorkflowFile]) -> L0Result:
        """L0-002: flag write-all grants and broad `contents: write`."""
        started = time.perf_counter_ns()
        violations = []
        for wf in workflows:
            for pattern in PERMISSION_PATTERNS:
                for match in pattern.finditer(wf.content):
                    violations.append({
                        "workflow": wf.path,
                        "pattern": pattern.pattern,
                        "match": match.group(0),
                    })
        passed = not violations
        if passed:
            message = f"No over-broad permissions in {len(workflows)} workflow(s)"
        else:
            files = sorted({v["workflow"] for v in violations})
            message = f"Over-broad permissions in {', '.join(files)}"
        evidence = {"workflows_scanned": len(workflows), "violations": violations}
        return self._result(InvariantId.PERMISSION_BITS, started, passed, message, evidence)

    def check_drift_magnitude(
        self,
        current: DriftMetric,
        baseline: DriftMetric,
        threshold: Optional[float] = None
    ) -> L0Result:
        """
        L0-003: relative drift |current - baseline| / |baseline|.

        A zero baseline gives drift 1 for any non-zero current value and 0
        otherwise. Drift equal to the threshold passes.
        """
        started = time.perf_counter_ns()
        threshold = self.drift_threshold if threshold is None else threshold
        if baseline.value == 0:
            drift = 0.0 if current.value == 0 else 1.0
        else:
            drift = abs(current.value - baseline.value) / abs(baseline.value)
        passed = drift <= threshold
        evidence = {
            "drift": drift,
            "threshold": threshold,
            "current": {"name": current.name, "value": current.value},
            "baseline": {"name": baseline.name, "value": baseline.value},
        }
        if passed:
            message = f"Drift {drift:.4f} within threshold {threshold}"
        else:
            message = f"Drift {drift:.4f} exceeds threshold {threshold}"
        return self._result(InvariantId.DRIFT_MAGNITUDE, started, passed, message, evidence)

    def check_nonce_freshness(
        self,
        issued_at: datetime,
        now: Optional[datetime] = None,
        max_age_seconds: Optional[int] = None
    ) -> L0Result:
        """
        L0-004: a nonce is fresh when 0 <= age <= max age.

        Future timestamps fail regardless of size.
        """
        started = time.perf_counter_ns()
        now = now or self._clock()
        max_age = self.nonce_max_age_seconds if max_age_seconds is None else max_age_seconds
        age = (now - issued_at).total_seconds()
        evidence = {
            "issued_at": to_iso(issued_at),
            "now": to_iso(now),
            "age_seconds": age,
            "max_age_seconds": max_age,
        }
        if age < 0:
            return self._result(InvariantId.NONCE_FRESHNESS, started, False,
                                "Nonce timestamp is in the future", evidence)
        if age > max_age:
            return self._result(InvariantId.NONCE_FRESHNESS, started, False,
                                f"Nonce expired (age {age:.0f}s, max {max_age}s)", evidence)
        return self._result(InvariantId.NONCE_FRESHNESS, started, True,
                            f"Nonce fresh (age {age:.0f}s)", evidence)

    def check_nonce_binding_freshness(self, verification, now: Optional[datetime] = None) -> L0Result:
        """
        L0-004 over a nonce binding verification.

        `verification` is the BindingVerification returned by
        NonceBindingService.verify_binding(); an invalid binding fails
        before its age is considered.
        """
        if not verification.valid or verification.binding is None:
            started = time.perf_counter_ns()
            return self._result(
                InvariantId.NONCE_FRESHNESS, started, False,
                f"Nonce binding invalid: {verification.reason}",
                {"reason": verification.reason},
            )
        result = self.check_nonce_freshness(verification.binding.issued_at, now=now)
        result.evidence["org_id"] = verification.binding.org_id
        result.evidence["nonce"] = verification.binding.nonce
        return result

    def check_contraction_witness(
        self,
        previous_fpr: float,
        current_fpr: float,
        witnesses: List[WitnessEvent],
        min_events: Optional[int] = None
    ) -> L0Result:
        """
        L0-005: an FP-rate drop of more than one percentage point must be
        backed by at least `min_events` witnesses, every one reviewed.
        """
        started = time.perf_counter_ns()
        min_events = self.contraction_min_events if min_events is None else min_events
        decrease = round(previous_fpr - current_fpr, 10)
        reviewed = [w for w in witnesses if w.is_reviewed()]
        evidence = {
            "previous_fpr": previous_fpr,
            "current_fpr": current_fpr,
            "decrease": decrease,
            "witness_count": len(witnesses),
            "reviewed_count": len(reviewed),
            "min_events": min_events,
        }
        if decrease <= CONTRACTION_TOLERANCE:
            return self._result(InvariantId.CONTRACTION_WITNESS, started, True,
                                "No significant FPR decrease to validate", evidence)
        if len(witnesses) < min_events:
            return self._result(
                InvariantId.CONTRACTION_WITNESS, started, False,
                f"FPR decrease of {decrease:.4f} has {len(witnesses)} witness events (need {min_events})",
                evidence,
            )
        if len(reviewed) != len(witnesses):
            evidence["unreviewed"] = [w.event_id for w in witnesses if not w.is_reviewed()]
            return self._result(
                InvariantId.CONTRACTION_WITNESS, started, False,
                f"FPR decrease of {decrease:.4f} has {len(witnesses) - len(reviewed)} unreviewed witness events",
                evidence,
            )
        return self._result(InvariantId.CONTRACTION_WITNESS, started, True,
                            f"FPR decrease of {decrease:.4f} backed by {len(reviewed)} reviewed witnesses",
                            evidence)

    def validate_all(
        self,
        data: L0ValidationInput,
        verify_binding: Optional[Callable[[str, str], Any]] = None,
    ) -> List[L0Result]:
        """
        Run every invariant whose input section is present, in L0 order.

        A bound nonce (org_id plus nonce) is checked through `verify_binding`,
        normally NonceBindingService.verify_binding. Without a verifier the
        check fails.
        """
        results = []
        if data.schema_content is not None:
            results.append(self.check_schema_hash(data.schema_content, data.expected_schema_hash))
        if data.workflows is not None:
            results.append(self.check_permission_bits(data.workflows))
        if data.drift_current is not None and data.drift_baseline is not None:
            results.append(self.check_drift_magnitude(data.drift_current, data.drift_baseline))
        if data.nonce_value is not None:
            if verify_binding is None:
                results.append(self._result(
                    InvariantId.NONCE_FRESHNESS, time.perf_counter_ns(), False,
                    "Nonce binding verification unavailable",
                    {"org_id": data.nonce_org_id},
                ))
            else:
                verification = verify_binding(data.nonce_value, data.nonce_org_id)
                results.append(self.check_nonce_binding_freshness(verification))
        elif data.nonce_issued_at is not None:
            results.append(self.check_nonce_freshness(data.nonce_issued_at))
        if data.previous_fpr is not None and data.current_fpr is not None:
            results.append(self.check_contraction_witness(
                data.previous_fpr, data.current_fpr, data.witnesses or []
            ))
        return results


def all_passed(results: List[L0Result]) -> bool:
    return all(r.passed for r in results)
