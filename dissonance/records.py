"""
Persisted record types.

Every record round-trips through to_dict()/from_dict() using JSON-compatible
shapes only: ISO-8601 UTC strings for timestamps and lowercase hex for
nonces and signatures.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .util import canonicalize, from_iso, to_iso, utc_now


class ConsentResource(str, Enum):
    """Data categories an organization can consent to share."""
    FP_PATTERNS = "fp_patterns"
    FP_METRICS = "fp_metrics"
    CROSS_ORG_BENCHMARKS = "cross_org_benchmarks"
    RULE_CALIBRATION = "rule_calibration"
    AUDIT_LOGS = "audit_logs"
    DRIFT_BASELINES = "drift_baselines"


class ConsentState(str, Enum):
    GRANTED = "granted"
    EXPIRED = "expired"
    REVOKED = "revoked"
    PENDING = "pending"
    NOT_REQUESTED = "not_requested"


class VerificationMethod(str, Enum):
    GITHUB_ORG = "github_org"
    STRIPE_CUSTOMER = "stripe_customer"
    MANUAL = "manual"


@dataclass
class FPEvent:
    """
    One recorded rule outcome.

    Mutated exactly once, when a reviewer marks it as a false positive.
    An event with reviewed_by set counts as reviewed in window statistics.
    """
    event_id: str
    rule_id: str
    rule_version: str
    finding_id: str
    outcome: str
    timestamp: datetime
    is_false_positive: bool = False
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    suppression_ticket: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    org_id_hash: Optional[str] = None
    consent: Optional[str] = None
    expires_at: Optional[datetime] = None

    def is_pending(self) -> bool:
        return not self.reviewed_by and not self.is_false_positive

    def key(self) -> tuple:
        """Primary key: duplicates of this triple are rejected by the store."""
        return (self.rule_id, to_iso(self.timestamp), self.event_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "rule_id": self.rule_id,
            "rule_version": self.rule_version,
            "finding_id": self.finding_id,
            "outcome": self.outcome,
            "timestamp": to_iso(self.timestamp),
            "is_false_positive": self.is_false_positive,
            "reviewed_by": self.reviewed_by,
            "reviewed_at": to_iso(self.reviewed_at),
            "suppression_ticket": self.suppression_ticket,
            "context": self.context,
            "org_id_hash": self.org_id_hash,
            "consent": self.consent,
            "expires_at": to_iso(self.expires_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FPEvent":
        return cls(
            event_id=data["event_id"],
            rule_id=data["rule_id"],
            rule_version=data.get("rule_version", "unknown"),
            finding_id=data["finding_id"],
            outcome=data.get("outcome", "block"),
            timestamp=from_iso(data["timestamp"]),
            is_false_positive=bool(data.get("is_false_positive", False)),
            reviewed_by=data.get("reviewed_by"),
            reviewed_at=from_iso(data.get("reviewed_at")),
            suppression_ticket=data.get("suppression_ticket"),
            context=dict(data.get("context") or {}),
            org_id_hash=data.get("org_id_hash"),
            consent=data.get("consent"),
            expires_at=from_iso(data.get("expires_at")),
        )


@dataclass
class OrganizationIdentity:
    """A verified organization, resolved by an external identity provider."""
    org_id: str
    public_key: str
    verification_method: VerificationMethod
    verified_at: datetime
    unique_nonce: str = ""
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    revocation_reason: Optional[str] = None

    def is_verified(self) -> bool:
        return self.verified_at is not None and not self.revoked

    def to_dict(self) -> Dict[str, Any]:
        return {
            "org_id": self.org_id,
            "public_key": self.public_key,
            "verification_method": self.verification_method.value,
            "verified_at": to_iso(self.verified_at),
            "unique_nonce": self.unique_nonce,
            "revoked": self.revoked,
            "revoked_at": to_iso(self.revoked_at),
            "revocation_reason": self.revocation_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrganizationIdentity":
        return cls(
            org_id=data["org_id"],
            public_key=data["public_key"],
            verification_method=VerificationMethod(data["verification_method"]),
            verified_at=from_iso(data.get("verified_at")),
            unique_nonce=data.get("unique_nonce", ""),
            revoked=bool(data.get("revoked", False)),
            revoked_at=from_iso(data.get("revoked_at")),
            revocation_reason=data.get("revocation_reason"),
        )


@dataclass
class NonceBinding:
    """Signed association between one organization and one nonce."""
    org_id: str
    nonce: str
    public_key: str
    signature: str
    issued_at: datetime
    usage_count: int = 0
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    revocation_reason: Optional[str] = None
    previous_nonce: Optional[str] = None

    def is_active(self) -> bool:
        return not self.revoked

    def signed_payload(self) -> bytes:
        """The exact bytes covered by the binding signature."""
        return signing_payload(self.org_id, self.nonce, self.public_key, self.issued_at)

    def revoke(self, reason: str, at: Optional[datetime] = None) -> "NonceBinding":
        """Return a revoked copy of this binding."""
        return replace(
            self,
            revoked=True,
            revoked_at=at or utc_now(),
            revocation_reason=reason,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "org_id": self.org_id,
            "nonce": self.nonce,
            "public_key": self.public_key,
            "signature": self.signature,
            "issued_at": to_iso(self.issued_at),
            "usage_count": self.usage_count,
            "revoked": self.revoked,
            "revoked_at": to_iso(self.revoked_at),
            "revocation_reason": self.revocation_reason,
            "previous_nonce": self.previous_nonce,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NonceBinding":
        return cls(
            org_id=data["org_id"],
            nonce=data["nonce"],
            public_key=data["public_key"],
            signature=data["signature"],
            issued_at=from_iso(data["issued_at"]),
            usage_count=int(data.get("usage_count", 0)),
            revoked=bool(data.get("revoked", False)),
            revoked_at=from_iso(data.get("revoked_at")),
            revocation_reason=data.get("revocation_reason"),
            previous_nonce=data.get("previous_nonce"),
        )


def signing_payload(org_id: str, nonce: str, public_key: str, issued_at: datetime) -> bytes:
    return canonicalize({
        "orgId": org_id,
        "nonce": nonce,
        "publicKey": public_key,
        "issuedAt": to_iso(issued_at),
    })


@dataclass
class ConsentRecord:
    """Per-organization, per-resource consent grant."""
    org_id: str
    resource: ConsentResource
    granted_by: str
    granted_at: datetime
    expires_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    scope: List[str] = field(default_factory=list)
    pending: bool = False

    def state(self, now: Optional[datetime] = None) -> ConsentState:
        now = now or utc_now()
        if self.revoked_at is not None:
            return ConsentState.REVOKED
        if self.pending:
            return ConsentState.PENDING
        if self.expires_at is not None and self.expires_at <= now:
            return ConsentState.EXPIRED
        return ConsentState.GRANTED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "org_id": self.org_id,
            "resource": self.resource.value,
            "granted_by": self.granted_by,
            "granted_at": to_iso(self.granted_at),
            "expires_at": to_iso(self.expires_at),
            "revoked_at": to_iso(self.revoked_at),
            "scope": list(self.scope),
            "pending": self.pending,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConsentRecord":
        return cls(
            org_id=data["org_id"],
            resource=ConsentResource(data["resource"]),
            granted_by=data["granted_by"],
            granted_at=from_iso(data["granted_at"]),
            expires_at=from_iso(data.get("expires_at")),
            revoked_at=from_iso(data.get("revoked_at")),
            scope=list(data.get("scope") or []),
            pending=bool(data.get("pending", False)),
        )


@dataclass
class SecretVersion:
    """One version of a rotating secret (for example an anonymization salt)."""
    name: str
    version: int
    value: str
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "created_at": to_iso(self.created_at),
        }
