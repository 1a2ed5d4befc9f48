import logging

import pytest
from fastapi.testclient import TestClient

from conftest import ORG_PUBLIC_KEY
from dissonance.backends import Adapters
from dissonance.config import DissonanceConfig
from dissonance.engine import Engine
from dissonance.service import create_app
from dissonance.stores import (
    BlockCounterStore,
    InMemoryConsentStore,
    InMemoryFPEventStore,
    InMemoryIdentityStore,
    InMemorySecretStore,
)

AGENT_PR = {"mode": "pull_request", "context": {"repository_name": "acme/api", "branch": "agent-x"}}


class DownCounter(BlockCounterStore):
    def increment(self, bucket_key, ttl_seconds):
        raise TimeoutError("counter timed out")

    def get(self, bucket_key):
        raise TimeoutError("counter timed out")


@pytest.fixture
def engine(clock, signer):
    return Engine.from_config(DissonanceConfig(circuit_breaker_threshold=3), clock=clock, signer=signer)


@pytest.fixture
def client(engine):
    return TestClient(create_app(engine))


def register(client, org_id="acme"):
    resp = client.post("/identities", json={
        "org_id": org_id, "public_key": ORG_PUBLIC_KEY, "verification_method": "github_org",
    })
    assert resp.status_code == 200
    return resp.json()


def submission(org_id="acme", **extra):
    return dict({
        "org_id": org_id,
        "rule_id": "MD-002",
        "is_false_positive": True,
        "timestamp": "2026-03-01T12:00:00Z",
    }, **extra)


def test_health_echoes_request_id(client):
    resp = client.get("/health", headers={"x-request-id": "req-123"})
    assert resp.status_code == 200
    assert resp.json()["backend"] == "memory"
    assert resp.headers["x-request-id"] == "req-123"


def test_engine_logs_configuration_without_signing_key(clock, signer, caplog):
    with caplog.at_level(logging.INFO, logger="dissonance.engine"):
        Engine.from_config(DissonanceConfig(signing_key_hex="07" * 32), clock=clock, signer=signer)
    assert "Engine configuration" in caplog.text
    assert "[REDACTED]" in caplog.text
    assert "07" * 32 not in caplog.text


# ============================================================
# Evaluation
# ============================================================

def test_evaluate_warns(client):
    resp = client.post("/evaluate", json=AGENT_PR)
    assert resp.status_code == 200
    body = resp.json()
    assert body["decision"]["outcome"] == "warn"
    assert body["violations"][0]["rule_id"] == "MD-002"


def test_evaluate_unknown_mode_is_400(client):
    resp = client.post("/evaluate", json={"mode": "nightly"})
    assert resp.status_code == 400
    assert resp.json()["field"] == "mode"


def test_evaluate_l0_failure_blocks(client):
    resp = client.post("/evaluate", json={
        "mode": "pull_request",
        "l0": {"workflows": [{"path": "ci.yml", "content": "permissions: write-all"}]},
    })
    assert resp.json()["decision"]["outcome"] == "block"


def test_l0_validate(client):
    resp = client.post("/l0/validate", json={"schema": {"content": "abc", "expected_hash": "ba7816bf"}})
    assert resp.status_code == 200
    assert resp.json()["passed"] is True


def test_l0_validate_malformed_witnesses_is_400(client):
    contraction = {"previous_fpr": 0.2, "current_fpr": 0.1}
    resp = client.post("/l0/validate", json={"contraction": dict(contraction, witnesses=5)})
    assert resp.status_code == 400
    assert resp.json()["field"] == "l0.contraction.witnesses"
    resp = client.post("/l0/validate", json={
        "contraction": dict(contraction, witnesses=[{"event_id": "w1", "reviewed_by": 7}]),
    })
    assert resp.status_code == 400


def test_unavailable_counter_is_503_not_a_decision(clock, signer):
    adapters = Adapters(
        block_counter=DownCounter(),
        fp_events=InMemoryFPEventStore(),
        identities=InMemoryIdentityStore(),
        consents=InMemoryConsentStore(),
        secrets=InMemorySecretStore(clock=clock),
    )
    engine = Engine.from_config(DissonanceConfig(), clock=clock, adapters=adapters, signer=signer)
    resp = TestClient(create_app(engine)).post("/evaluate", json=AGENT_PR)
    assert resp.status_code == 503
    assert resp.json()["code"] == "CIRCUIT_CHECK_FAILED"


# ============================================================
# FP store
# ============================================================

def test_record_and_mark(client):
    event = {"rule_id": "MD-002", "finding_id": "f-1", "event_id": "e1", "timestamp": "2026-03-01T12:00:00Z"}
    assert client.post("/fp/events", json=event).status_code == 200
    assert client.post("/fp/events", json=event).status_code == 409

    marked = client.post("/fp/mark", json={"finding_id": "f-1", "reviewed_by": "alice"})
    assert marked.status_code == 200
    assert marked.json()["is_false_positive"] is True
    again = client.post("/fp/mark", json={"finding_id": "f-1", "reviewed_by": "bob"})
    assert again.status_code == 409
    assert again.json()["code"] == "ALREADY_REVIEWED"


def test_mark_unknown_finding_is_404(client):
    resp = client.post("/fp/mark", json={"finding_id": "nope", "reviewed_by": "alice"})
    assert resp.status_code == 404
    assert resp.json()["code"] == "NOT_FOUND"


def test_window_requires_exactly_one_selector(client):
    assert client.get("/fp/window/MD-002").status_code == 400
    assert client.get("/fp/window/MD-002", params={"n": 5, "since": "2026-03-01T00:00:00Z"}).status_code == 400
    assert client.get("/fp/window/MD-002", params={"n": 0}).status_code == 400


def test_window_by_count_and_since(client):
    client.post("/fp/events", json={"rule_id": "MD-002", "finding_id": "f-1", "timestamp": "2026-03-01T12:00:00Z"})
    client.post("/fp/mark", json={"finding_id": "f-1", "reviewed_by": "alice"})
    by_count = client.get("/fp/window/MD-002", params={"n": 10}).json()
    assert by_count["statistics"]["observed_fpr"] == 1.0
    by_since = client.get("/fp/window/MD-002", params={"since": "2026-03-01T12:00:01"}).json()
    assert by_since["window_size"] == 0
    assert by_since["since"] == "2026-03-01T12:00:01Z"


# ============================================================
# Consent and ingestion
# ============================================================

def test_ingest_without_consent_is_403(client):
    resp = client.post("/fp/ingest", json={"submissions": [submission()]})
    assert resp.status_code == 403
    assert resp.json()["error"] == "ConsentRequiredError"


@pytest.mark.parametrize("field, value", [("context", "oops"), ("nonce", 12345)])
def test_ingest_malformed_submission_is_400(client, field, value):
    resp = client.post("/fp/ingest", json={"submissions": [submission(**{field: value})]})
    assert resp.status_code == 400
    assert resp.json()["field"] == field


def test_ingest_with_consent(client):
    grant = client.post("/consent/grant", json={
        "org_id": "acme", "resource": "rule_calibration", "granted_by": "admin@acme",
    })
    assert grant.status_code == 200
    resp = client.post("/fp/ingest", json={"submissions": [submission(), submission("globex")]})
    assert resp.status_code == 200
    assert [r["success"] for r in resp.json()["results"]] == [True, False]


def test_unknown_consent_resource_is_400(client):
    resp = client.post("/consent/grant", json={"org_id": "acme", "resource": "everything", "granted_by": "x"})
    assert resp.status_code == 400


def test_ingest_with_stale_nonce_is_403(client):
    register(client)
    client.post("/consent/grant", json={"org_id": "acme", "resource": "rule_calibration", "granted_by": "a"})
    old = client.post("/nonce/generate", json={"org_id": "acme", "public_key": ORG_PUBLIC_KEY}).json()
    client.post("/nonce/rotate", json={"org_id": "acme"})
    resp = client.post("/fp/ingest", json={"submissions": [submission(nonce=old["binding"]["nonce"])]})
    assert resp.status_code == 403
    assert resp.json()["code"] == "NONCE_REVOKED"


# ============================================================
# Nonce bindings
# ============================================================

def test_nonce_lifecycle(client):
    register(client)
    first = client.post("/nonce/generate", json={"org_id": "acme", "public_key": ORG_PUBLIC_KEY})
    assert first.status_code == 200
    nonce = first.json()["binding"]["nonce"]
    assert client.post("/nonce/generate", json={"org_id": "acme", "public_key": ORG_PUBLIC_KEY}).status_code == 409

    assert client.post("/nonce/verify", json={"org_id": "acme", "nonce": nonce}).json()["valid"] is True

    rotated = client.post("/nonce/rotate", json={"org_id": "acme", "reason": "hygiene"}).json()
    assert rotated["previous_binding"]["revocation_reason"] == "Rotated: hygiene"
    stale = client.post("/nonce/verify", json={"org_id": "acme", "nonce": nonce}).json()
    assert stale["valid"] is False

    assert len(client.get("/nonce/history/acme").json()["bindings"]) == 2
    assert client.post("/nonce/revoke", json={"org_id": "acme", "reason": "compromised"}).status_code == 200
    assert client.post("/nonce/revoke", json={"org_id": "acme", "reason": "again"}).status_code == 409


def test_generate_for_unverified_org_is_403(client):
    resp = client.post("/nonce/generate", json={"org_id": "globex", "public_key": ORG_PUBLIC_KEY})
    assert resp.status_code == 403


def test_rotate_without_binding_is_404(client):
    assert client.post("/nonce/rotate", json={"org_id": "globex"}).status_code == 404


def test_bad_verification_method_is_422(client):
    resp = client.post("/identities", json={"org_id": "acme", "public_key": ORG_PUBLIC_KEY,
                                            "verification_method": "email"})
    assert resp.status_code == 422
