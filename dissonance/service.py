"""
HTTP surface for the decision engine.

create_app(engine) returns a FastAPI app whose handlers delegate to the
engine's components. Typed failures map to status codes in one place,
error_status(); an adapter failure is always 503 and never a decision.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from .calibration import CalibrationSubmission
from .engine import Engine
from .errors import (
    AdapterError,
    BindingExistsError,
    BindingNotFoundError,
    BindingRevokedError,
    ConsentRequiredError,
    DissonanceError,
    FPStoreError,
    IdentityNotVerifiedError,
    NonceMismatchError,
    NonceValidationError,
)
from .l0 import L0ValidationInput, all_passed
from .logging_config import set_request_id
from .models import (
    EvaluateRequest,
    FPEventRequest,
    GenerateNonceRequest,
    GrantConsentRequest,
    IngestRequest,
    MarkFalsePositiveRequest,
    RegisterIdentityRequest,
    RevokeNonceRequest,
    RotateNonceRequest,
    VerifyNonceRequest,
)
from .records import ConsentResource, FPEvent
from .rules import OracleInput
from .security import ValidationError
from .util import generate_id

logger = logging.getLogger(__name__)


def error_status(exc: DissonanceError) -> int:
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, FPStoreError):
        if exc.code == FPStoreError.NOT_FOUND:
            return 404
        if exc.code in (FPStoreError.DUPLICATE_EVENT, FPStoreError.ALREADY_REVIEWED):
            return 409
        return 503
    if isinstance(exc, AdapterError):
        return 503
    if isinstance(exc, BindingNotFoundError):
        return 404
    if isinstance(exc, (BindingExistsError, BindingRevokedError)):
        return 409
    if isinstance(exc, (ConsentRequiredError, NonceValidationError, IdentityNotVerifiedError, NonceMismatchError)):
        return 403
    return 500


def error_body(exc: DissonanceError) -> dict:
    body = {"error": type(exc).__name__, "message": str(exc)}
    if isinstance(exc, AdapterError):
        body["code"] = exc.code
    elif isinstance(exc, NonceValidationError):
        body["code"] = exc.code.value
    elif isinstance(exc, ValidationError):
        body["field"] = exc.field
    return body


def create_app(engine: Engine) -> FastAPI:
    app = FastAPI(title="Dissonance Decision Engine")
    app.state.engine = engine

    @app.middleware("http")
    async def _request_id(request: Request, call_next):
        request_id = set_request_id(request.headers.get("x-request-id"))
        response = await call_next(request)
        response.headers["x-request-id"] = request_id
        return response

    @app.exception_handler(DissonanceError)
    async def _dissonance_error(request: Request, exc: DissonanceError):
        status = error_status(exc)
        if status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=status, content=error_body(exc))

    @app.get("/health")
    def health():
        return {"status": "ok", "env": engine.config.env, "backend": engine.config.backend}

    @app.post("/evaluate")
    def evaluate(req: EvaluateRequest):
        data = OracleInput.from_dict(req.model_dump())
        return engine.oracle.evaluate(data).to_dict()

    @app.post("/l0/validate")
    def l0_validate(body: dict):
        data = L0ValidationInput.from_dict(body)
        results = engine.validator.validate_all(data, verify_binding=engine.trust.verify_binding)
        return {"passed": all_passed(results), "results": [r.to_dict() for r in results]}

    @app.post("/fp/events")
    def record_event(req: FPEventRequest):
        event = FPEvent(
            event_id=req.event_id or f"fp-{generate_id(8)}",
            rule_id=req.rule_id,
            rule_version=req.rule_version,
            finding_id=req.finding_id,
            outcome=req.outcome,
            timestamp=req.timestamp or engine.clock(),
            context=req.context,
        )
        return engine.calibration.record_event(event).to_dict()

    @app.post("/fp/mark")
    def mark_false_positive(req: MarkFalsePositiveRequest):
        return engine.calibration.mark_false_positive(req.finding_id, req.reviewed_by, req.ticket).to_dict()

    @app.get("/fp/window/{rule_id}")
    def fp_window(rule_id: str, n: Optional[int] = None, since: Optional[datetime] = None):
        if (n is None) == (since is None):
            raise HTTPException(400, "Exactly one of n or since is required")
        if n is not None:
            return engine.calibration.get_window_by_count(rule_id, n).to_dict()
        if since.tzinfo is None:
            since = since.replace(tzinfo=timezone.utc)
        return engine.calibration.get_window_by_since(rule_id, since).to_dict()

    @app.post("/fp/ingest")
    def ingest(req: IngestRequest):
        submissions = [CalibrationSubmission.from_dict(s) for s in req.submissions]
        if len(submissions) == 1:
            return {"results": [engine.ingestor.ingest(submissions[0]).to_dict()]}
        return {"results": [r.to_dict() for r in engine.ingestor.ingest_batch(submissions)]}

    @app.post("/consent/grant")
    def grant_consent(req: GrantConsentRequest):
        try:
            resource = ConsentResource(req.resource)
        except ValueError:
            raise HTTPException(400, f"Unknown consent resource: {req.resource}")
        record = engine.consent.grant_consent(
            req.org_id, resource, req.granted_by, expires_at=req.expires_at, scope=req.scope
        )
        return record.to_dict()

    @app.post("/identities")
    def register_identity(req: RegisterIdentityRequest):
        identity = engine.trust.register_identity(req.org_id, req.public_key, req.verification_method)
        return identity.to_dict()

    @app.post("/nonce/generate")
    def generate_nonce(req: GenerateNonceRequest):
        return engine.trust.generate_and_bind_nonce(req.org_id, req.public_key).to_dict()

    @app.post("/nonce/verify")
    def verify_nonce(req: VerifyNonceRequest):
        return engine.trust.verify_binding(req.nonce, req.org_id).to_dict()

    @app.post("/nonce/rotate")
    def rotate_nonce(req: RotateNonceRequest):
        return engine.trust.rotate_nonce(req.org_id, req.public_key, req.reason).to_dict()

    @app.post("/nonce/revoke")
    def revoke_nonce(req: RevokeNonceRequest):
        return engine.trust.revoke_binding(req.org_id, req.reason).to_dict()

    @app.get("/nonce/history/{org_id}")
    def nonce_history(org_id: str):
        return {"bindings": [b.to_dict() for b in engine.trust.get_rotation_history(org_id)]}

    return app
