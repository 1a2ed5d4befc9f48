"""
Consent checks for calibration data.

Absence of consent is a hard rejection. A consent store that cannot be read
raises ConsentStoreError, which callers must treat as a denial.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Union

from .errors import ConsentRequiredError
from .records import ConsentRecord, ConsentResource, ConsentState
from .stores import Clock, ConsentStore
from .util import to_iso, utc_now

Scope = Union[str, Iterable[str], None]


def _scopes(scope: Scope) -> List[str]:
    if scope is None:
        return []
    if isinstance(scope, str):
        return [scope]
    return list(scope)


@dataclass
class ConsentCheckResult:
    org_id: str
    resource: ConsentResource
    state: ConsentState
    record: Optional[ConsentRecord] = None
    missing_scope: List[str] = field(default_factory=list)

    @property
    def granted(self) -> bool:
        return self.state == ConsentState.GRANTED and not self.missing_scope

    def to_dict(self) -> Dict[str, Any]:
        return {
            "org_id": self.org_id,
            "resource": self.resource.value,
            "state": self.state.value,
            "granted": self.granted,
            "expires_at": to_iso(self.record.expires_at) if self.record else None,
            "missing_scope": self.missing_scope,
        }


class ConsentService:
    """Grants, revokes and checks per-resource consent."""

    def __init__(self, store: ConsentStore, clock: Clock = utc_now):
        self.store = store
        self._clock = clock

    def grant_consent(
        self,
        org_id: str,
        resource: ConsentResource,
        granted_by: str,
        expires_at: Optional[datetime] = None,
        scope: Scope = None,
    ) -> ConsentRecord:
        record = ConsentRecord(
            org_id=org_id,
            resource=ConsentResource(resource),
            granted_by=granted_by,
            granted_at=self._clock(),
            expires_at=expires_at,
            scope=_scopes(scope),
        )
        self.store.grant_consent(record)
        return record

    def revoke_consent(self, org_id: str, resource: ConsentResource) -> bool:
        return self.store.revoke_consent(org_id, ConsentResource(resource), self._clock())

    def check_consent(self, org_id: str, resource: ConsentResource, scope: Scope = None) -> ConsentCheckResult:
        """
        Resolve the consent state for one organization and resource.

        Every requested scope must appear in the grant's scope list.
        """
        resource = ConsentResource(resource)
        record = self.store.get_consent(org_id, resource)
        if record is None:
            return ConsentCheckResult(org_id, resource, ConsentState.NOT_REQUESTED)
        state = record.state(self._clock())
        missing = [s for s in _scopes(scope) if s not in record.scope]
        return ConsentCheckResult(org_id, resource, state, record, missing)

    def has_valid_consent(self, org_id: str, resource: ConsentResource, scope: Scope = None) -> bool:
        return self.check_consent(org_id, resource, scope).granted

    def require_consent(self, org_id: str, resource: ConsentResource, scope: Scope = None) -> ConsentCheckResult:
        """Return the granted check result or raise ConsentRequiredError."""
        result = self.check_consent(org_id, resource, scope)
        if not result.granted:
            state = result.state.value
            if result.state == ConsentState.GRANTED:
                state = f"missing scope {', '.join(result.missing_scope)}"
            raise ConsentRequiredError(org_id, result.resource.value, state)
        return result
