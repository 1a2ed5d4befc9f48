"""
Engine - every component wired from one configuration snapshot.

The service and the CLI both build an Engine; nothing else reads the
configuration.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from .anonymizer import Anonymizer, SaltRing
from .backends import Adapters, create_adapters
from .calibration import CalibrationIngestor, CalibrationStore
from .circuit_breaker import CircuitBreaker
from .config import DissonanceConfig
from .consent import ConsentService
from .l0 import L0Validator
from .oracle import Oracle
from .stores import Clock
from .trust import BindingSigner, NonceBindingService
from .util import generate_nonce, utc_now

logger = logging.getLogger(__name__)


def _signer(config: DissonanceConfig) -> BindingSigner:
    if config.signing_key_hex:
        return BindingSigner.from_seed_hex(config.signing_key_hex)
    if config.is_production():
        raise ValueError("DISSONANCE_SIGNING_KEY must be set in production")
    logger.warning("No signing key configured; using an ephemeral key (bindings will not survive restart)")
    return BindingSigner.generate()


def _salts(config: DissonanceConfig, adapters: Adapters) -> SaltRing:
    name = config.nonce_parameter
    if config.secret_backend == "memory" and not adapters.secrets.get_valid_secrets(name):
        adapters.secrets.create_secret_version(name, generate_nonce(32))
        logger.info("Created initial salt version for %s", name)
    return SaltRing(adapters.secrets, name)


@dataclass
class Engine:
    config: DissonanceConfig
    adapters: Adapters
    validator: L0Validator
    breaker: CircuitBreaker
    calibration: CalibrationStore
    consent: ConsentService
    anonymizer: Anonymizer
    trust: NonceBindingService
    ingestor: CalibrationIngestor
    oracle: Oracle
    clock: Clock = utc_now

    @classmethod
    def from_config(
        cls,
        config: Optional[DissonanceConfig] = None,
        clock: Clock = utc_now,
        adapters: Optional[Adapters] = None,
        signer: Optional[BindingSigner] = None,
        redis_client: Any = None,
        ssm_client: Any = None,
    ) -> "Engine":
        config = config or DissonanceConfig.from_env()
        logger.info("Engine configuration: %s", config.to_dict())
        adapters = adapters or create_adapters(config, clock, redis_client=redis_client, ssm_client=ssm_client)

        validator = L0Validator(
            drift_threshold=config.drift_threshold,
            nonce_max_age_seconds=config.nonce_max_age,
            contraction_min_events=config.contraction_min_events,
            clock=clock,
        )
        breaker = CircuitBreaker(
            adapters.block_counter,
            threshold=config.circuit_breaker_threshold,
            retention_seconds=config.circuit_breaker_retention,
            clock=clock,
        )
        calibration = CalibrationStore(adapters.fp_events, ttl_days=config.fp_event_ttl_days, clock=clock)
        consent = ConsentService(adapters.consents, clock=clock)
        anonymizer = Anonymizer(_salts(config, adapters))
        trust = NonceBindingService(adapters.identities, signer or _signer(config), clock=clock)
        ingestor = CalibrationIngestor(
            calibration,
            consent,
            anonymizer,
            trust=trust,
            batch_delay_seconds=config.ingest_batch_delay_seconds,
            clock=clock,
        )
        oracle = Oracle(
            validator=validator,
            calibration=calibration,
            breaker=breaker,
            trust=trust,
            degraded_mode_is_failure=config.degraded_mode_is_failure,
            clock=clock,
        )
        return cls(
            config=config,
            adapters=adapters,
            validator=validator,
            breaker=breaker,
            calibration=calibration,
            consent=consent,
            anonymizer=anonymizer,
            trust=trust,
            ingestor=ingestor,
            oracle=oracle,
            clock=clock,
        )
