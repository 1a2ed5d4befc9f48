import random

import pytest
from datetime import datetime, timedelta, timezone

from dissonance.anonymizer import Anonymizer, SaltRing
from dissonance.calibration import CalibrationIngestor, CalibrationStore
from dissonance.circuit_breaker import CircuitBreaker
from dissonance.consent import ConsentService
from dissonance.records import FPEvent, VerificationMethod
from dissonance.stores import (
    InMemoryBlockCounterStore,
    InMemoryConsentStore,
    InMemoryFPEventStore,
    InMemoryIdentityStore,
    InMemorySecretStore,
)
from dissonance.trust import BindingSigner, NonceBindingService

SALT_NAME = "/dissonance/test/salt"
SALT_V1 = "11" * 32
ORG_PUBLIC_KEY = "ab" * 32


class FixedClock:
    """Injectable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_event(event_id, rule_id="MD-002", finding_id=None, ts=None, **kwargs) -> FPEvent:
    return FPEvent(
        event_id=event_id,
        rule_id=rule_id,
        rule_version=kwargs.pop("rule_version", "1.0.0"),
        finding_id=finding_id or f"finding-{event_id}",
        outcome=kwargs.pop("outcome", "block"),
        timestamp=ts or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc),
        **kwargs,
    )


@pytest.fixture
def clock():
    return FixedClock(datetime(2026, 3, 1, 12, 30, tzinfo=timezone.utc))


@pytest.fixture
def counter_store(clock):
    return InMemoryBlockCounterStore(clock=clock)


@pytest.fixture
def breaker(counter_store, clock):
    return CircuitBreaker(counter_store, threshold=3, retention_seconds=86400, clock=clock)


@pytest.fixture
def fp_store():
    return InMemoryFPEventStore()


@pytest.fixture
def calibration(fp_store, clock):
    return CalibrationStore(fp_store, ttl_days=90, clock=clock)


@pytest.fixture
def consent(clock):
    return ConsentService(InMemoryConsentStore(), clock=clock)


@pytest.fixture
def secrets(clock):
    store = InMemorySecretStore(clock=clock)
    store.create_secret_version(SALT_NAME, SALT_V1)
    return store


@pytest.fixture
def anonymizer(secrets):
    return Anonymizer(SaltRing(secrets, SALT_NAME))


@pytest.fixture
def identities():
    return InMemoryIdentityStore()


@pytest.fixture
def signer():
    return BindingSigner.from_seed_hex("07" * 32)


@pytest.fixture
def trust(identities, signer, clock):
    return NonceBindingService(identities, signer, clock=clock)


@pytest.fixture
def verified_org(trust):
    trust.register_identity("acme", ORG_PUBLIC_KEY, VerificationMethod.GITHUB_ORG)
    return "acme"


@pytest.fixture
def ingestor(calibration, consent, anonymizer, trust, clock):
    return CalibrationIngestor(
        calibration,
        consent,
        anonymizer,
        trust=trust,
        batch_delay_seconds=3600,
        rng=random.Random(42),
        clock=clock,
    )
