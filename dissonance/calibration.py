"""
False-Positive Calibration Store

Records rule outcomes, lets reviewers mark findings as false positives, and
computes windowed false-positive statistics per rule:

    observed_fpr = false_positives / (total - pending)

(0 when no event in the window has been reviewed). Windows are recomputed
from the exact adapter result set on every call; nothing is cached.

CalibrationIngestor is the path for organization-submitted feedback:
consent check, optional nonce binding verification, anonymization,
timestamp randomization, then storage. Each step fails closed.
"""

import logging
import random
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from .anonymizer import Anonymizer
from .consent import ConsentService
from .errors import (
    BindingNotFoundError,
    DissonanceError,
    FPStoreError,
    IdentityStoreError,
    NonceValidationCode,
    NonceValidationError,
    TrustError,
)
from .logging_config import audit_log
from .records import ConsentResource, FPEvent
from .security import (
    ValidationError,
    validate_hex,
    validate_identifier,
    validate_positive_int,
    validate_rule_id,
    validate_timestamp,
)
from .stores import Clock, FPEventStore
from .util import generate_id, to_iso, utc_now

logger = logging.getLogger(__name__)

DEFAULT_TTL_DAYS = 90
INGEST_REVIEWER = "calibration-service"


@dataclass
class FPStatistics:
    total: int
    false_positives: int
    true_positives: int
    pending: int
    observed_fpr: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "false_positives": self.false_positives,
            "true_positives": self.true_positives,
            "pending": self.pending,
            "observed_fpr": self.observed_fpr,
        }


@dataclass
class FPWindow:
    rule_id: str
    rule_version: str
    window_size: int
    statistics: FPStatistics
    since: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "rule_version": self.rule_version,
            "window_size": self.window_size,
            "since": to_iso(self.since),
            "statistics": self.statistics.to_dict(),
        }


def compute_window(rule_id: str, events: List[FPEvent], since: Optional[datetime] = None) -> FPWindow:
    """Statistics over exactly the given events."""
    total = len(events)
    false_positives = sum(1 for e in events if e.is_false_positive)
    pending = sum(1 for e in events if e.is_pending())
    reviewed = total - pending
    observed = false_positives / reviewed if reviewed > 0 else 0.0

    versions = Counter(e.rule_version for e in events)
    if versions:
        rule_version = sorted(versions.items(), key=lambda kv: (-kv[1], kv[0]))[0][0]
    else:
        rule_version = "unknown"

    return FPWindow(
        rule_id=rule_id,
        rule_version=rule_version,
        window_size=total,
        statistics=FPStatistics(
            total=total,
            false_positives=false_positives,
            true_positives=total - false_positives - pending,
            pending=pending,
            observed_fpr=observed,
        ),
        since=since,
    )


class CalibrationStore:

    def __init__(self, events: FPEventStore, ttl_days: int = DEFAULT_TTL_DAYS, clock: Clock = utc_now):
        self.events = events
        self.ttl_days = ttl_days
        self._clock = clock

    def record_event(self, event: FPEvent) -> FPEvent:
        """
        Persist one outcome. Duplicate (rule_id, timestamp, event_id) keys
        are rejected by the store with FPStoreError(DUPLICATE_EVENT).
        """
        validate_rule_id(event.rule_id)
        validate_identifier(event.event_id, "event_id")
        validate_identifier(event.finding_id, "finding_id")
        if event.expires_at is None:
            event = replace(event, expires_at=event.timestamp + timedelta(days=self.ttl_days))
        self.events.put_event(event)
        audit_log.fp_event_recorded(event.event_id, event.rule_id, event.finding_id)
        return event

    def _find(self, finding_id: str, operation: str) -> FPEvent:
        event = self.events.find_by_finding(finding_id)
        if event is None:
            raise FPStoreError(
                f"Finding {finding_id} not found in FP store",
                FPStoreError.NOT_FOUND,
                operation=operation,
                finding_id=finding_id,
            )
        return event

    def mark_false_positive(self, finding_id: str, reviewed_by: str, ticket: Optional[str] = None) -> FPEvent:
        """
        Mark the finding's event as a false positive and stamp the reviewer.

        Raises FPStoreError(NOT_FOUND) if the finding is unknown.
        """
        if not isinstance(reviewed_by, str) or not reviewed_by.strip():
            raise ValidationError("reviewed_by", "cannot be empty")
        event = self._find(finding_id, "mark_false_positive")
        if event.is_false_positive:
            raise FPStoreError(
                f"Finding {finding_id} is already marked as a false positive",
                FPStoreError.ALREADY_REVIEWED,
                operation="mark_false_positive",
                rule_id=event.rule_id,
                event_id=event.event_id,
                finding_id=finding_id,
            )
        updated = replace(
            event,
            is_false_positive=True,
            reviewed_by=reviewed_by,
            reviewed_at=self._clock(),
            suppression_ticket=ticket,
        )
        self.events.update_event(updated, unless_set="is_false_positive")
        audit_log.false_positive_marked(finding_id, reviewed_by, ticket)
        return updated

    def confirm_finding(self, finding_id: str, reviewed_by: str) -> FPEvent:
        """Record a review that upheld the finding (a true positive)."""
        if not isinstance(reviewed_by, str) or not reviewed_by.strip():
            raise ValidationError("reviewed_by", "cannot be empty")
        event = self._find(finding_id, "confirm_finding")
        if event.reviewed_by:
            raise FPStoreError(
                f"Finding {finding_id} has already been reviewed",
                FPStoreError.ALREADY_REVIEWED,
                operation="confirm_finding",
                rule_id=event.rule_id,
                event_id=event.event_id,
                finding_id=finding_id,
            )
        updated = replace(event, reviewed_by=reviewed_by, reviewed_at=self._clock())
        self.events.update_event(updated, unless_set="reviewed_by")
        return updated

    def is_false_positive(self, finding_id: str) -> bool:
        event = self.events.find_by_finding(finding_id)
        return bool(event and event.is_false_positive)

    def get_window_by_count(self, rule_id: str, n: int) -> FPWindow:
        """Statistics over the n most recent events for the rule."""
        validate_rule_id(rule_id)
        n = validate_positive_int(n, "n")
        return compute_window(rule_id, self.events.query_by_rule(rule_id, limit=n))

    def get_window_by_since(self, rule_id: str, since: datetime) -> FPWindow:
        """Statistics over every event for the rule at or after `since`."""
        validate_rule_id(rule_id)
        return compute_window(rule_id, self.events.query_by_rule(rule_id, since=since), since=since)


# ============================================================
# Ingestion
# ============================================================

@dataclass
class CalibrationSubmission:
    """Feedback from an organization about one finding."""
    org_id: str
    rule_id: str
    is_false_positive: bool
    timestamp: datetime
    rule_version: str = "unknown"
    outcome: str = "block"
    finding_id: Optional[str] = None
    event_id: Optional[str] = None
    nonce: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CalibrationSubmission":
        if not isinstance(data, dict):
            raise ValidationError("submission", "must be an object")
        if "is_false_positive" not in data:
            raise ValidationError("is_false_positive", "is required")
        context = data.get("context")
        if context is not None and not isinstance(context, dict):
            raise ValidationError("context", "must be an object")
        nonce = data.get("nonce")
        if nonce is not None:
            nonce = validate_hex(nonce, "nonce", expected_length=64)
        finding_id = data.get("finding_id")
        if finding_id is not None:
            finding_id = validate_identifier(finding_id, "finding_id")
        event_id = data.get("event_id")
        if event_id is not None:
            event_id = validate_identifier(event_id, "event_id")
        return cls(
            org_id=validate_identifier(data.get("org_id"), "org_id"),
            rule_id=validate_rule_id(data.get("rule_id")),
            is_false_positive=bool(data["is_false_positive"]),
            timestamp=validate_timestamp(data.get("timestamp"), "timestamp"),
            rule_version=str(data.get("rule_version") or "unknown"),
            outcome=str(data.get("outcome") or "block"),
            finding_id=finding_id,
            event_id=event_id,
            nonce=nonce,
            context=dict(context or {}),
        )


@dataclass
class IngestResult:
    success: bool
    reason: Optional[str] = None
    processed_at: Optional[datetime] = None
    event_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "reason": self.reason,
            "processed_at": to_iso(self.processed_at),
            "event_id": self.event_id,
        }


_NONCE_CODES = {
    "No nonce binding found": NonceValidationCode.NONCE_BINDING_NOT_FOUND,
}


def _nonce_rejected(submission, cause: Exception, code: NonceValidationCode) -> NonceValidationError:
    return NonceValidationError(
        f"Nonce validation failed: {cause}",
        code,
        {"orgId": submission.org_id, "reason": str(cause)},
    )


class CalibrationIngestor:
    """
    Accepts organization feedback into the calibration store.

    Order: consent -> nonce binding and usage count (when the submission
    carries one) -> anonymization -> timestamp randomization -> store. The
    usage count is claimed before the write, so a failed write still counts
    as a use of the nonce.
    """

    def __init__(
        self,
        store: CalibrationStore,
        consent: ConsentService,
        anonymizer: Anonymizer,
        trust=None,
        resource: ConsentResource = ConsentResource.RULE_CALIBRATION,
        batch_delay_seconds: int = 3600,
        rng: Optional[random.Random] = None,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.consent = consent
        self.anonymizer = anonymizer
        self.trust = trust
        self.resource = ConsentResource(resource)
        self.batch_delay_seconds = batch_delay_seconds
        self._rng = rng or random.SystemRandom()
        self._clock = clock

    def _check_nonce(self, submission: CalibrationSubmission) -> None:
        if self.trust is None:
            raise NonceValidationError(
                "Nonce binding verification is not configured",
                NonceValidationCode.NONCE_VALIDATION_FAILED,
                {"orgId": submission.org_id},
            )
        verification = self.trust.verify_binding(submission.nonce, submission.org_id)
        if verification.valid:
            return
        reason = verification.reason or "unknown"
        if reason.startswith("Nonce binding revoked"):
            code = NonceValidationCode.NONCE_REVOKED
        else:
            code = _NONCE_CODES.get(reason, NonceValidationCode.NONCE_VALIDATION_FAILED)
        raise NonceValidationError(
            f"Nonce validation failed: {reason}",
            code,
            {"orgId": submission.org_id, "reason": reason},
        )

    def _claim_nonce(self, submission: CalibrationSubmission) -> None:
        """Count one use against the binding; a binding rotated since verification is rejected."""
        try:
            self.trust.increment_usage_count(submission.nonce, submission.org_id)
        except BindingNotFoundError as e:
            raise _nonce_rejected(submission, e, NonceValidationCode.NONCE_BINDING_NOT_FOUND) from e
        except TrustError as e:
            raise _nonce_rejected(submission, e, NonceValidationCode.NONCE_REVOKED) from e
        except IdentityStoreError as e:
            if e.code != IdentityStoreError.CONFLICT:
                raise
            raise _nonce_rejected(submission, e, NonceValidationCode.NONCE_REVOKED) from e

    def randomize_timestamp(self, timestamp: datetime) -> datetime:
        """Shift a timestamp forward by a uniform delay within the batch window."""
        if self.batch_delay_seconds <= 0:
            return timestamp
        delay = self._rng.uniform(0, self.batch_delay_seconds)
        return timestamp + timedelta(seconds=delay)

    def ingest(self, submission: CalibrationSubmission) -> IngestResult:
        """
        Store one submission.

        Raises:
            ConsentRequiredError: no valid consent for the resource
            NonceValidationError: the submission's nonce is not the org's active binding
            AdapterError: any store failure
        """
        try:
            consent = self.consent.require_consent(submission.org_id, self.resource)
            if submission.nonce is not None:
                self._check_nonce(submission)
                self._claim_nonce(submission)
        except DissonanceError as e:
            audit_log.ingest_rejected(submission.org_id, str(e))
            raise

        anonymized = self.anonymizer.anonymize(submission.org_id)
        processed_at = self._clock()
        finding_id = submission.finding_id or (
            f"finding-{submission.rule_id}-{anonymized.org_id_hash[:8]}-{generate_id(4)}"
        )
        event = FPEvent(
            event_id=submission.event_id or f"fp-{generate_id(8)}",
            rule_id=submission.rule_id,
            rule_version=submission.rule_version,
            finding_id=finding_id,
            outcome=submission.outcome,
            timestamp=self.randomize_timestamp(submission.timestamp),
            is_false_positive=submission.is_false_positive,
            reviewed_by=INGEST_REVIEWER,
            reviewed_at=processed_at,
            context=dict(submission.context, saltVersion=anonymized.salt_version),
            org_id_hash=anonymized.org_id_hash,
            consent=consent.state.value,
        )
        stored = self.store.record_event(event)
        return IngestResult(success=True, processed_at=processed_at, event_id=stored.event_id)

    def ingest_batch(self, submissions: List[CalibrationSubmission]) -> List[IngestResult]:
        """One result per submission; a failed submission never aborts the batch."""
        results = []
        for submission in submissions:
            try:
                results.append(self.ingest(submission))
            except DissonanceError as e:
                results.append(IngestResult(success=False, reason=str(e)))
        return results
