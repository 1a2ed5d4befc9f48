"""
Nonce Binding Trust Protocol

Binds one rotating nonce to one verified organization identity:

    unbound -> active -> (rotated: new active, old revoked) | revoked

Invariants:
- At most one active binding per organization. The existence check and
  the insert are a single conditional write at the identity store.
- A rotated-out nonce fails verify_binding() as soon as rotation returns.
  There is no grace window at this layer.
- Binding history is append-only; nothing here deletes a binding.

Bindings are signed with Ed25519 (PyNaCl) over the canonical JSON of
{orgId, nonce, publicKey, issuedAt}. Nonces and signatures are lowercase hex.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from .errors import (
    BindingExistsError,
    BindingNotFoundError,
    BindingRevokedError,
    IdentityNotVerifiedError,
    IdentityStoreError,
    NonceMismatchError,
)
from .logging_config import audit_log
from .records import NonceBinding, OrganizationIdentity, VerificationMethod
from .stores import Clock, IdentityStore
from .util import constant_time_compare, generate_nonce, utc_now

logger = logging.getLogger(__name__)

NONCE_BYTES = 32


class BindingSigner:
    """Protocol-held Ed25519 key used to sign nonce bindings."""

    def __init__(self, signing_key: SigningKey):
        self._signing_key = signing_key
        self.verify_key: VerifyKey = signing_key.verify_key

    @classmethod
    def generate(cls) -> "BindingSigner":
        return cls(SigningKey.generate())

    @classmethod
    def from_seed_hex(cls, seed_hex: str) -> "BindingSigner":
        seed = bytes.fromhex(seed_hex)
        if len(seed) != 32:
            raise ValueError("Ed25519 seed must be 32 bytes (64 hex characters)")
        return cls(SigningKey(seed))

    @property
    def verify_key_hex(self) -> str:
        return bytes(self.verify_key).hex()

    def sign(self, payload: bytes) -> str:
        return self._signing_key.sign(payload).signature.hex()

    def verify(self, payload: bytes, signature_hex: str) -> bool:
        """
        Verify a hex signature over payload.

        Returns:
            True if signature is valid, False otherwise
        """
        try:
            signature = bytes.fromhex(signature_hex)
            self.verify_key.verify(payload, signature)
            return True
        except (BadSignatureError, ValueError, TypeError):
            return False


@dataclass
class BindingVerification:
    valid: bool
    reason: Optional[str] = None
    binding: Optional[NonceBinding] = None

    @classmethod
    def ok(cls, binding: NonceBinding) -> "BindingVerification":
        return cls(valid=True, binding=binding)

    @classmethod
    def invalid(cls, reason: str, binding: Optional[NonceBinding] = None) -> "BindingVerification":
        return cls(valid=False, reason=reason, binding=binding)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "reason": self.reason,
            "binding": self.binding.to_dict() if self.binding else None,
        }


@dataclass
class GenerateResult:
    binding: NonceBinding
    is_new: bool
    previous_binding: Optional[NonceBinding] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "binding": self.binding.to_dict(),
            "is_new": self.is_new,
            "previous_binding": self.previous_binding.to_dict() if self.previous_binding else None,
        }


class NonceBindingService:
    """
    Issues, verifies, rotates and revokes nonce bindings.

    All state lives in the identity store; the service itself only holds
    the signer and the clock.
    """

    def __init__(self, identities: IdentityStore, signer: BindingSigner, clock: Clock = utc_now):
        self.identities = identities
        self.signer = signer
        self._clock = clock

    def _issue(self, org_id: str, public_key: str, previous_nonce: Optional[str] = None) -> NonceBinding:
        binding = NonceBinding(
            org_id=org_id,
            nonce=generate_nonce(NONCE_BYTES),
            public_key=public_key,
            signature="",
            issued_at=self._clock(),
            previous_nonce=previous_nonce,
        )
        binding.signature = self.signer.sign(binding.signed_payload())
        return binding

    def _verified_identity(self, org_id: str) -> OrganizationIdentity:
        identity = self.identities.get_identity(org_id)
        if identity is None or not identity.is_verified():
            raise IdentityNotVerifiedError(f"Organization {org_id} not found or not verified")
        return identity

    def generate_and_bind_nonce(self, org_id: str, public_key: str) -> GenerateResult:
        """
        Issue the first active binding for a verified organization.

        Raises:
            IdentityNotVerifiedError: no verified, non-revoked identity
            BindingExistsError: an active binding already exists
        """
        if not public_key:
            raise ValueError("public_key is required")
        identity = self._verified_identity(org_id)
        binding = self._issue(org_id, public_key)
        try:
            self.identities.create_nonce_binding(binding)
        except IdentityStoreError as e:
            if e.code == IdentityStoreError.BINDING_EXISTS:
                audit_log.security_event("duplicate_binding_attempt", "high", org_id=org_id)
                raise BindingExistsError(
                    f"Organization {org_id} already has an active nonce binding"
                ) from e
            raise
        identity.unique_nonce = binding.nonce
        self.identities.store_identity(identity)
        audit_log.binding_issued(org_id, is_new=True)
        return GenerateResult(binding=binding, is_new=True)

    def verify_binding(self, nonce: str, org_id: str) -> BindingVerification:
        """The single authoritative check that `nonce` is org_id's active nonce."""
        result = self._verify(nonce, org_id)
        if not result.valid:
            audit_log.binding_verification_failed(org_id, result.reason)
        return result

    def _verify(self, nonce: str, org_id: str) -> BindingVerification:
        current = self.identities.get_nonce_binding(org_id)
        if current is None:
            return BindingVerification.invalid("No nonce binding found")
        if not constant_time_compare(current.nonce, nonce or ""):
            previous = self.identities.get_nonce_binding_by_nonce(nonce) if nonce else None
            if previous is not None and previous.org_id == org_id and previous.revoked:
                return BindingVerification.invalid(
                    f"Nonce binding revoked: {previous.revocation_reason}", previous
                )
            return BindingVerification.invalid("Nonce mismatch")
        if current.revoked:
            return BindingVerification.invalid(f"Nonce binding revoked: {current.revocation_reason}", current)
        if not self.signer.verify(current.signed_payload(), current.signature):
            audit_log.security_event("binding_signature_invalid", "critical", org_id=org_id)
            return BindingVerification.invalid("Invalid signature", current)
        return BindingVerification.ok(current)

    def rotate_nonce(self, org_id: str, public_key: Optional[str] = None, reason: str = "Scheduled rotation") -> GenerateResult:
        """
        Revoke the active binding and issue its successor in one store operation.

        `public_key` defaults to the key on the current binding.
        """
        current = self.identities.get_nonce_binding(org_id)
        if current is None:
            raise BindingNotFoundError(f"No nonce binding found for organization {org_id}")
        if current.revoked:
            raise BindingRevokedError(f"Cannot rotate revoked nonce for organization {org_id}")
        identity = self._verified_identity(org_id)
        public_key = public_key or current.public_key

        revoked = current.revoke(f"Rotated: {reason}", self._clock())
        successor = self._issue(org_id, public_key, previous_nonce=current.nonce)
        self.identities.replace_nonce_binding(revoked, successor)

        identity.public_key = public_key
        identity.unique_nonce = successor.nonce
        self.identities.store_identity(identity)
        audit_log.binding_rotated(org_id, reason)
        return GenerateResult(binding=successor, is_new=False, previous_binding=revoked)

    def revoke_binding(self, org_id: str, reason: str) -> NonceBinding:
        """
        Revoke the active binding without a replacement.

        The identity is revoked as well, so a new binding needs the
        organization to be verified again first.
        """
        current = self.identities.get_nonce_binding(org_id)
        if current is None:
            raise BindingNotFoundError(f"No nonce binding found for organization {org_id}")
        if current.revoked:
            raise BindingRevokedError(f"Nonce binding for organization {org_id} is already revoked")
        now = self._clock()
        revoked = self.identities.revoke_nonce_binding(org_id, current.nonce, reason, now)
        self.identities.revoke_identity(org_id, f"Nonce binding revoked: {reason}", now)
        audit_log.binding_revoked(org_id, reason)
        return revoked

    def increment_usage_count(self, nonce: str, org_id: str) -> int:
        current = self.identities.get_nonce_binding(org_id)
        if current is None:
            raise BindingNotFoundError(f"No nonce binding found for organization {org_id}")
        if not constant_time_compare(current.nonce, nonce or ""):
            raise NonceMismatchError(f"Nonce is not bound to organization {org_id}")
        if current.revoked:
            raise BindingRevokedError(f"Nonce binding for organization {org_id} is revoked")
        return self.identities.increment_usage_count(org_id, nonce)

    def get_rotation_history(self, org_id: str) -> List[NonceBinding]:
        """Every binding issued to the organization, oldest first."""
        return self.identities.list_nonce_bindings(org_id)

    def register_identity(
        self,
        org_id: str,
        public_key: str,
        verification_method,
        verified_at: Optional[datetime] = None,
    ) -> OrganizationIdentity:
        """
        Record an identity already verified by an external provider.

        Re-registering a revoked organization is how re-verification is
        completed.
        """
        identity = OrganizationIdentity(
            org_id=org_id,
            public_key=public_key,
            verification_method=VerificationMethod(verification_method),
            verified_at=verified_at or self._clock(),
        )
        self.identities.store_identity(identity)
        return identity
