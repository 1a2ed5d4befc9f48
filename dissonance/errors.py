"""
Typed failures raised by dissonance.

Adapter errors wrap whatever the storage driver raised (including timeouts)
so callers can fail closed on a single family of exceptions. Trust and
ingestion errors are raised by the nonce binding protocol and the
calibration ingestion path; none of them is ever converted into a
"granted" or "not broken" result.
"""

from enum import Enum
from typing import Any, Dict, Optional


class DissonanceError(Exception):
    """Root of every error raised by this package."""


# ============================================================
# Adapter / infrastructure errors
# ============================================================

class AdapterError(DissonanceError):
    """A persistence adapter could not complete an operation."""

    def __init__(self, message: str, code: str, context: Optional[Dict[str, Any]] = None):
        self.code = code
        self.context = context or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "code": self.code,
            "message": str(self),
            "context": self.context,
        }


class SecretStoreError(AdapterError):
    NONCE_NOT_FOUND = "NONCE_NOT_FOUND"
    READ_FAILED = "READ_FAILED"
    MALFORMED_SECRET = "MALFORMED_SECRET"
    ROTATION_FAILED = "ROTATION_FAILED"
    VERSIONS_FAILED = "VERSIONS_FAILED"


class BlockCounterError(AdapterError):
    INCREMENT_FAILED = "INCREMENT_FAILED"
    READ_FAILED = "READ_FAILED"
    CIRCUIT_CHECK_FAILED = "CIRCUIT_CHECK_FAILED"


class FPStoreError(AdapterError):
    DUPLICATE_EVENT = "DUPLICATE_EVENT"
    NOT_FOUND = "NOT_FOUND"
    READ_FAILED = "READ_FAILED"
    WRITE_FAILED = "WRITE_FAILED"
    ALREADY_REVIEWED = "ALREADY_REVIEWED"

    def __init__(
        self,
        message: str,
        code: str,
        operation: str,
        rule_id: Optional[str] = None,
        event_id: Optional[str] = None,
        finding_id: Optional[str] = None,
    ):
        self.operation = operation
        self.rule_id = rule_id
        self.event_id = event_id
        self.finding_id = finding_id
        context = {"operation": operation}
        if rule_id:
            context["ruleId"] = rule_id
        if event_id:
            context["eventId"] = event_id
        if finding_id:
            context["findingId"] = finding_id
        super().__init__(message, code, context)


class ConsentStoreError(AdapterError):
    READ_FAILED = "READ_FAILED"
    WRITE_FAILED = "WRITE_FAILED"


class IdentityStoreError(AdapterError):
    BINDING_EXISTS = "BINDING_EXISTS"
    READ_FAILED = "READ_FAILED"
    WRITE_FAILED = "WRITE_FAILED"
    CONFLICT = "CONFLICT"


# ============================================================
# Trust protocol errors
# ============================================================

class TrustError(DissonanceError):
    """The nonce binding protocol refused an operation."""


class IdentityNotVerifiedError(TrustError):
    pass


class BindingExistsError(TrustError):
    pass


class BindingNotFoundError(TrustError):
    pass


class BindingRevokedError(TrustError):
    pass


class NonceMismatchError(TrustError):
    pass


# ============================================================
# Calibration ingestion errors
# ============================================================

class ConsentRequiredError(DissonanceError):
    """No valid consent exists for the organization and resource."""

    def __init__(self, org_id: str, resource: str, state: str):
        self.org_id = org_id
        self.resource = resource
        self.state = state
        super().__init__(f"No valid consent for {resource} (state: {state})")


class NonceValidationCode(str, Enum):
    NONCE_VALIDATION_FAILED = "NONCE_VALIDATION_FAILED"
    NONCE_BINDING_NOT_FOUND = "NONCE_BINDING_NOT_FOUND"
    NONCE_REVOKED = "NONCE_REVOKED"


class NonceValidationError(DissonanceError):
    """A calibration submission failed nonce binding verification."""

    def __init__(self, message: str, code: NonceValidationCode, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.details = details or {}
        super().__init__(message)
