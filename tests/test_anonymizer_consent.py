import hashlib
import hmac
from datetime import timedelta

import pytest

from conftest import SALT_NAME, SALT_V1
from dissonance.anonymizer import Anonymizer, SaltRing
from dissonance.consent import ConsentService
from dissonance.errors import ConsentRequiredError, ConsentStoreError, SecretStoreError
from dissonance.records import ConsentResource, ConsentState
from dissonance.stores import ConsentStore, InMemorySecretStore

SALT_V2 = "22" * 32


# ============================================================
# Anonymizer
# ============================================================

def test_hash_is_hmac_sha256_keyed_by_salt_bytes(anonymizer):
    expected = hmac.new(bytes.fromhex(SALT_V1), b"acme", hashlib.sha256).hexdigest()
    result = anonymizer.anonymize("acme")
    assert result.org_id_hash == expected
    assert result.salt_version == 1


def test_hash_is_deterministic_per_version(anonymizer):
    assert anonymizer.anonymize_org_id("acme") == anonymizer.anonymize_org_id("acme")
    assert anonymizer.anonymize_org_id("acme") != anonymizer.anonymize_org_id("globex")


def test_rotation_changes_hash_and_keeps_old_version_valid(anonymizer):
    before = anonymizer.anonymize("acme")
    anonymizer.salts.rotate(SALT_V2)
    after = anonymizer.anonymize("acme")
    assert after.salt_version == 2
    assert after.org_id_hash != before.org_id_hash
    assert anonymizer.matches("acme", before.org_id_hash) == 1
    assert anonymizer.matches("acme", after.org_id_hash) == 2
    assert anonymizer.anonymize("acme", version=1) == before


def test_retired_version_no_longer_matches(anonymizer):
    before = anonymizer.anonymize("acme")
    anonymizer.salts.rotate(SALT_V2)
    anonymizer.salts.retire(1)
    assert anonymizer.matches("acme", before.org_id_hash) is None
    assert [v.version for v in anonymizer.salts.all_valid] == [2]


def test_latest_version_cannot_be_retired(anonymizer):
    with pytest.raises(SecretStoreError):
        anonymizer.salts.retire(1)


def test_rotate_generates_salt_when_none_given(anonymizer):
    created = anonymizer.salts.rotate()
    assert len(created.value) == 64
    assert anonymizer.salts.latest.version == 2


def test_missing_salt_fails_closed():
    with pytest.raises(SecretStoreError) as exc:
        SaltRing(InMemorySecretStore(), SALT_NAME)
    assert exc.value.code == SecretStoreError.NONCE_NOT_FOUND


def test_malformed_salt_fails_closed():
    store = InMemorySecretStore()
    store.create_secret_version(SALT_NAME, "not-hex")
    with pytest.raises(SecretStoreError) as exc:
        SaltRing(store, SALT_NAME)
    assert exc.value.code == SecretStoreError.MALFORMED_SECRET


def test_unknown_version_rejected(anonymizer):
    with pytest.raises(SecretStoreError):
        anonymizer.anonymize("acme", version=9)


def test_secret_version_dict_hides_value(secrets):
    assert "value" not in secrets.get_latest_secret(SALT_NAME).to_dict()


# ============================================================
# Consent
# ============================================================

class UnreadableConsentStore(ConsentStore):
    def grant_consent(self, record):
        raise ConsentStoreError("down", ConsentStoreError.WRITE_FAILED)

    def revoke_consent(self, org_id, resource, revoked_at):
        raise ConsentStoreError("down", ConsentStoreError.WRITE_FAILED)

    def get_consent(self, org_id, resource):
        raise ConsentStoreError("down", ConsentStoreError.READ_FAILED)


def test_no_record_is_not_requested(consent):
    result = consent.check_consent("acme", ConsentResource.FP_METRICS)
    assert result.state == ConsentState.NOT_REQUESTED
    assert not result.granted


def test_grant_then_check(consent):
    consent.grant_consent("acme", ConsentResource.FP_METRICS, "admin@acme", scope=["aggregate"])
    assert consent.has_valid_consent("acme", ConsentResource.FP_METRICS)
    assert consent.has_valid_consent("acme", "fp_metrics", scope="aggregate")
    assert not consent.has_valid_consent("acme", ConsentResource.FP_PATTERNS)


def test_missing_scope_denies(consent):
    consent.grant_consent("acme", ConsentResource.FP_METRICS, "admin@acme", scope=["aggregate"])
    result = consent.check_consent("acme", ConsentResource.FP_METRICS, scope=["aggregate", "raw"])
    assert result.state == ConsentState.GRANTED
    assert result.missing_scope == ["raw"]
    assert not result.granted


def test_expired_consent(consent, clock):
    consent.grant_consent("acme", ConsentResource.FP_METRICS, "admin@acme",
                          expires_at=clock.now + timedelta(days=1))
    assert consent.has_valid_consent("acme", ConsentResource.FP_METRICS)
    clock.advance(days=1)
    assert consent.check_consent("acme", ConsentResource.FP_METRICS).state == ConsentState.EXPIRED


def test_revoked_consent(consent):
    consent.grant_consent("acme", ConsentResource.AUDIT_LOGS, "admin@acme")
    assert consent.revoke_consent("acme", ConsentResource.AUDIT_LOGS)
    assert consent.check_consent("acme", ConsentResource.AUDIT_LOGS).state == ConsentState.REVOKED
    assert not consent.revoke_consent("acme", ConsentResource.DRIFT_BASELINES)


def test_require_consent_raises_with_state(consent):
    with pytest.raises(ConsentRequiredError) as exc:
        consent.require_consent("acme", ConsentResource.CROSS_ORG_BENCHMARKS)
    assert exc.value.resource == "cross_org_benchmarks"
    assert exc.value.state == "not_requested"


def test_store_failure_propagates(clock):
    service = ConsentService(UnreadableConsentStore(), clock=clock)
    with pytest.raises(ConsentStoreError):
        service.has_valid_consent("acme", ConsentResource.FP_METRICS)
