"""
Persistence adapter contracts and their in-memory variants.

The core never talks to a database directly. It consumes the five contracts
below; production backends live in db.py (SQLite) and backends.py (Redis,
AWS SSM), and create_adapters() picks one variant per contract at startup.

Implementations must:
- Make conditional writes and counter increments atomic at the store
- Raise the AdapterError subclass for their contract on any failure,
  including timeouts, instead of returning an empty or negative result

The in-memory variants are for tests and local runs. They are not
persistent and not shared between processes.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from .errors import (
    FPStoreError,
    IdentityStoreError,
    SecretStoreError,
)
from .records import (
    ConsentRecord,
    ConsentResource,
    FPEvent,
    NonceBinding,
    OrganizationIdentity,
    SecretVersion,
)
from .util import expires_after, utc_now


Clock = Callable[[], datetime]


class BlockCounterStore(ABC):
    """Time-bucketed counters with TTL expiry."""

    @abstractmethod
    def increment(self, bucket_key: str, ttl_seconds: int) -> int:
        """
        Atomically add one to the bucket and return the new count.

        The first increment creates the bucket with the given TTL.
        """
        pass

    @abstractmethod
    def get(self, bucket_key: str) -> int:
        """Current count for the bucket; 0 only when the bucket does not exist."""
        pass


class FPEventStore(ABC):
    """Append-style event store with a secondary index on finding id."""

    @abstractmethod
    def put_event(self, event: FPEvent) -> None:
        """Insert an event. Raises FPStoreError(DUPLICATE_EVENT) if its key exists."""
        pass

    @abstractmethod
    def get_event(self, rule_id: str, timestamp: datetime, event_id: str) -> Optional[FPEvent]:
        pass

    @abstractmethod
    def find_by_finding(self, finding_id: str) -> Optional[FPEvent]:
        """Most recent event recorded for a finding."""
        pass

    @abstractmethod
    def update_event(self, event: FPEvent, unless_set: Optional[str] = None) -> None:
        """
        Replace a stored event. Raises FPStoreError(NOT_FOUND) if absent.

        With `unless_set` ("is_false_positive" or "reviewed_by") the write is
        applied only while that field is still unset on the stored event,
        checked atomically with the write; otherwise
        FPStoreError(ALREADY_REVIEWED) is raised.
        """
        pass

    @abstractmethod
    def query_by_rule(
        self,
        rule_id: str,
        limit: Optional[int] = None,
        since: Optional[datetime] = None
    ) -> List[FPEvent]:
        """Events for a rule, newest first, optionally bounded by count or start time."""
        pass


class IdentityStore(ABC):
    """Verified identities and their nonce bindings."""

    @abstractmethod
    def get_identity(self, org_id: str) -> Optional[OrganizationIdentity]:
        pass

    @abstractmethod
    def store_identity(self, identity: OrganizationIdentity) -> None:
        pass

    @abstractmethod
    def revoke_identity(self, org_id: str, reason: str, revoked_at: datetime) -> None:
        pass

    @abstractmethod
    def get_nonce_binding(self, org_id: str) -> Optional[NonceBinding]:
        """The current (most recently issued) binding for an organization."""
        pass

    @abstractmethod
    def get_nonce_binding_by_nonce(self, nonce: str) -> Optional[NonceBinding]:
        pass

    @abstractmethod
    def create_nonce_binding(self, binding: NonceBinding) -> None:
        """
        Insert a binding only if the organization has no active binding.

        The check and the insert are one atomic operation. Raises
        IdentityStoreError(BINDING_EXISTS) when an active binding exists.
        """
        pass

    @abstractmethod
    def replace_nonce_binding(self, revoked: NonceBinding, new: NonceBinding) -> None:
        """
        Atomically revoke the active binding and insert its successor.

        Raises IdentityStoreError(CONFLICT) if the active binding is no
        longer the one being revoked.
        """
        pass

    @abstractmethod
    def revoke_nonce_binding(self, org_id: str, nonce: str, reason: str, revoked_at: datetime) -> NonceBinding:
        """Revoke the active binding with this nonce. CONFLICT if it is not active."""
        pass

    @abstractmethod
    def increment_usage_count(self, org_id: str, nonce: str) -> int:
        """Atomically bump usage on the active binding; CONFLICT if it is not active."""
        pass

    @abstractmethod
    def list_nonce_bindings(self, org_id: str) -> List[NonceBinding]:
        """Every binding ever issued to the organization, oldest first."""
        pass


class ConsentStore(ABC):
    """Per-organization, per-resource consent grants."""

    @abstractmethod
    def grant_consent(self, record: ConsentRecord) -> None:
        pass

    @abstractmethod
    def revoke_consent(self, org_id: str, resource: ConsentResource, revoked_at: datetime) -> bool:
        """Mark consent revoked. Returns False if no record existed."""
        pass

    @abstractmethod
    def get_consent(self, org_id: str, resource: ConsentResource) -> Optional[ConsentRecord]:
        pass


class SecretStore(ABC):
    """Versioned secrets; several versions may be valid at once."""

    @abstractmethod
    def get_latest_secret(self, name: str) -> SecretVersion:
        """Newest enabled version. Raises SecretStoreError(NONCE_NOT_FOUND) if none."""
        pass

    @abstractmethod
    def get_valid_secrets(self, name: str) -> List[SecretVersion]:
        """All enabled versions, newest first."""
        pass

    @abstractmethod
    def create_secret_version(self, name: str, value: str) -> SecretVersion:
        pass

    @abstractmethod
    def disable_secret_version(self, name: str, version: int) -> None:
        pass


# ============================================================
# In-memory variants
# ============================================================

class InMemoryBlockCounterStore(BlockCounterStore):
    """
    In-memory block counter for development/testing.

    Expired buckets restart at zero on the next increment.
    """

    def __init__(self, clock: Clock = utc_now):
        self._entries: Dict[str, Tuple[int, datetime]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def increment(self, bucket_key: str, ttl_seconds: int) -> int:
        now = self._clock()
        with self._lock:
            count, expires_at = self._entries.get(bucket_key, (0, now))
            if expires_at <= now:
                count, expires_at = 0, expires_after(now, ttl_seconds)
            count += 1
            self._entries[bucket_key] = (count, expires_at)
            return count

    def get(self, bucket_key: str) -> int:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(bucket_key)
            if entry is None or entry[1] <= now:
                return 0
            return entry[0]


class InMemoryFPEventStore(FPEventStore):
    """In-memory event store for development/testing."""

    def __init__(self):
        self._events: Dict[tuple, FPEvent] = {}
        self._lock = threading.Lock()

    def put_event(self, event: FPEvent) -> None:
        with self._lock:
            if event.key() in self._events:
                raise FPStoreError(
                    f"Event {event.event_id} already recorded",
                    FPStoreError.DUPLICATE_EVENT,
                    operation="put_event",
                    rule_id=event.rule_id,
                    event_id=event.event_id,
                )
            self._events[event.key()] = replace(event, context=dict(event.context))

    def get_event(self, rule_id: str, timestamp: datetime, event_id: str) -> Optional[FPEvent]:
        lookup = FPEvent(event_id=event_id, rule_id=rule_id, rule_version="", finding_id="",
                         outcome="", timestamp=timestamp)
        with self._lock:
            event = self._events.get(lookup.key())
            return replace(event) if event else None

    def find_by_finding(self, finding_id: str) -> Optional[FPEvent]:
        with self._lock:
            matches = [e for e in self._events.values() if e.finding_id == finding_id]
        if not matches:
            return None
        return replace(max(matches, key=lambda e: e.timestamp))

    def update_event(self, event: FPEvent, unless_set: Optional[str] = None) -> None:
        with self._lock:
            current = self._events.get(event.key())
            if current is None:
                raise FPStoreError(
                    f"Event {event.event_id} not found",
                    FPStoreError.NOT_FOUND,
                    operation="update_event",
                    rule_id=event.rule_id,
                    event_id=event.event_id,
                )
            if unless_set and getattr(current, unless_set):
                raise FPStoreError(
                    f"Event {event.event_id} has already been reviewed",
                    FPStoreError.ALREADY_REVIEWED,
                    operation="update_event",
                    rule_id=event.rule_id,
                    event_id=event.event_id,
                    finding_id=event.finding_id,
                )
            self._events[event.key()] = replace(event)

    def query_by_rule(
        self,
        rule_id: str,
        limit: Optional[int] = None,
        since: Optional[datetime] = None
    ) -> List[FPEvent]:
        with self._lock:
            events = [replace(e) for e in self._events.values() if e.rule_id == rule_id]
        if since is not None:
            events = [e for e in events if e.timestamp >= since]
        events.sort(key=lambda e: (e.timestamp, e.event_id), reverse=True)
        if limit is not None:
            events = events[:limit]
        return events


class InMemoryIdentityStore(IdentityStore):
    """In-memory identity and binding store for development/testing."""

    def __init__(self):
        self._identities: Dict[str, OrganizationIdentity] = {}
        self._bindings: Dict[str, List[NonceBinding]] = {}
        self._lock = threading.Lock()

    def get_identity(self, org_id: str) -> Optional[OrganizationIdentity]:
        with self._lock:
            identity = self._identities.get(org_id)
            return replace(identity) if identity else None

    def store_identity(self, identity: OrganizationIdentity) -> None:
        with self._lock:
            self._identities[identity.org_id] = replace(identity)

    def revoke_identity(self, org_id: str, reason: str, revoked_at: datetime) -> None:
        with self._lock:
            identity = self._identities.get(org_id)
            if identity is not None:
                self._identities[org_id] = replace(
                    identity, revoked=True, revoked_at=revoked_at, revocation_reason=reason
                )

    def get_nonce_binding(self, org_id: str) -> Optional[NonceBinding]:
        with self._lock:
            history = self._bindings.get(org_id)
            return replace(history[-1]) if history else None

    def get_nonce_binding_by_nonce(self, nonce: str) -> Optional[NonceBinding]:
        with self._lock:
            for history in self._bindings.values():
                for binding in history:
                    if binding.nonce == nonce:
                        return replace(binding)
        return None

    def _active(self, org_id: str) -> Optional[NonceBinding]:
        history = self._bindings.get(org_id) or []
        if history and history[-1].is_active():
            return history[-1]
        return None

    def create_nonce_binding(self, binding: NonceBinding) -> None:
        with self._lock:
            if self._active(binding.org_id) is not None:
                raise IdentityStoreError(
                    f"Organization {binding.org_id} already has an active nonce binding",
                    IdentityStoreError.BINDING_EXISTS,
                    {"orgId": binding.org_id},
                )
            self._bindings.setdefault(binding.org_id, []).append(replace(binding))

    def replace_nonce_binding(self, revoked: NonceBinding, new: NonceBinding) -> None:
        with self._lock:
            active = self._active(revoked.org_id)
            if active is None or active.nonce != revoked.nonce:
                raise IdentityStoreError(
                    f"Active binding for {revoked.org_id} changed during rotation",
                    IdentityStoreError.CONFLICT,
                    {"orgId": revoked.org_id},
                )
            history = self._bindings[revoked.org_id]
            history[-1] = replace(revoked)
            history.append(replace(new))

    def revoke_nonce_binding(self, org_id: str, nonce: str, reason: str, revoked_at: datetime) -> NonceBinding:
        with self._lock:
            active = self._active(org_id)
            if active is None or active.nonce != nonce:
                raise IdentityStoreError(
                    f"No active binding {nonce[:8]} for {org_id}",
                    IdentityStoreError.CONFLICT,
                    {"orgId": org_id},
                )
            revoked = active.revoke(reason, revoked_at)
            self._bindings[org_id][-1] = revoked
            return replace(revoked)

    def increment_usage_count(self, org_id: str, nonce: str) -> int:
        with self._lock:
            active = self._active(org_id)
            if active is None or active.nonce != nonce:
                raise IdentityStoreError(
                    f"No active binding {nonce[:8]} for {org_id}",
                    IdentityStoreError.CONFLICT,
                    {"orgId": org_id},
                )
            active.usage_count += 1
            return active.usage_count

    def list_nonce_bindings(self, org_id: str) -> List[NonceBinding]:
        with self._lock:
            return [replace(b) for b in self._bindings.get(org_id, [])]


class InMemoryConsentStore(ConsentStore):
    """In-memory consent store for development/testing."""

    def __init__(self):
        self._records: Dict[Tuple[str, str], ConsentRecord] = {}
        self._lock = threading.Lock()

    def grant_consent(self, record: ConsentRecord) -> None:
        with self._lock:
            self._records[(record.org_id, record.resource.value)] = replace(record, scope=list(record.scope))

    def revoke_consent(self, org_id: str, resource: ConsentResource, revoked_at: datetime) -> bool:
        key = (org_id, ConsentResource(resource).value)
        with self._lock:
            record = self._records.get(key)
            if record is None:
                return False
            self._records[key] = replace(record, revoked_at=revoked_at)
            return True

    def get_consent(self, org_id: str, resource: ConsentResource) -> Optional[ConsentRecord]:
        with self._lock:
            record = self._records.get((org_id, ConsentResource(resource).value))
            return replace(record) if record else None


class InMemorySecretStore(SecretStore):
    """In-memory versioned secret store for development/testing."""

    def __init__(self, clock: Clock = utc_now):
        self._versions: Dict[str, List[Tuple[SecretVersion, bool]]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def get_latest_secret(self, name: str) -> SecretVersion:
        valid = self.get_valid_secrets(name)
        if not valid:
            raise SecretStoreError(
                f"Secret {name} not found",
                SecretStoreError.NONCE_NOT_FOUND,
                {"name": name},
            )
        return valid[0]

    def get_valid_secrets(self, name: str) -> List[SecretVersion]:
        with self._lock:
            enabled = [v for v, on in self._versions.get(name, []) if on]
        return sorted(enabled, key=lambda v: v.version, reverse=True)

    def create_secret_version(self, name: str, value: str) -> SecretVersion:
        with self._lock:
            versions = self._versions.setdefault(name, [])
            number = max((v.version for v, _ in versions), default=0) + 1
            secret = SecretVersion(name=name, version=number, value=value, created_at=self._clock())
            versions.append((secret, True))
            return secret

    def disable_secret_version(self, name: str, version: int) -> None:
        with self._lock:
            versions = self._versions.get(name, [])
            for i, (secret, _) in enumerate(versions):
                if secret.version == version:
                    versions[i] = (secret, False)
                    return
        raise SecretStoreError(
            f"Secret {name} version {version} not found",
            SecretStoreError.VERSIONS_FAILED,
            {"name": name, "version": version},
        )
