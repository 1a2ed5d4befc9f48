from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .records import VerificationMethod


class RepositoryContextModel(BaseModel):
    repository_name: Optional[str] = None
    pr_number: Optional[int] = None
    commit_sha: Optional[str] = None
    branch: Optional[str] = None
    author: Optional[str] = None


class EvaluateRequest(BaseModel):
    mode: str
    context: RepositoryContextModel = Field(default_factory=RepositoryContextModel)
    strict: bool = False
    dry_run: bool = False
    baseline_file: Optional[str] = None
    l0: Optional[Dict[str, Any]] = None


class FPEventRequest(BaseModel):
    rule_id: str
    finding_id: str
    rule_version: str = "unknown"
    outcome: str = "block"
    event_id: Optional[str] = None
    timestamp: Optional[datetime] = None
    context: Dict[str, Any] = Field(default_factory=dict)


class MarkFalsePositiveRequest(BaseModel):
    finding_id: str
    reviewed_by: str
    ticket: Optional[str] = None


class IngestRequest(BaseModel):
    submissions: List[Dict[str, Any]]


class GenerateNonceRequest(BaseModel):
    org_id: str
    public_key: str


class RegisterIdentityRequest(BaseModel):
    org_id: str
    public_key: str
    verification_method: VerificationMethod


class VerifyNonceRequest(BaseModel):
    org_id: str
    nonce: str


class RotateNonceRequest(BaseModel):
    org_id: str
    public_key: Optional[str] = None
    reason: str = "Scheduled rotation"


class RevokeNonceRequest(BaseModel):
    org_id: str
    reason: str


class GrantConsentRequest(BaseModel):
    org_id: str
    resource: str
    granted_by: str
    expires_at: Optional[datetime] = None
    scope: List[str] = Field(default_factory=list)
