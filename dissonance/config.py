"""
Configuration module for dissonance.

Centralizes all configuration with environment variable support. The
module-level constants are read once at import; components receive a
DissonanceConfig snapshot through their constructors and never consult the
environment afterwards.
"""

import os
from dataclasses import asdict, dataclass
from typing import Any, Dict


def _flag(name: str, default: str = "") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


# ============================================================
# Environment Configuration
# ============================================================

ENV = os.getenv("DISSONANCE_ENV", "dev")  # dev|stage|prod

# Adapter selection
BACKEND = os.getenv("DISSONANCE_BACKEND", "memory")  # memory|sqlite|redis
DB_PATH = os.getenv("DISSONANCE_DB_PATH", "data/dissonance.db")
REDIS_URL = os.getenv("DISSONANCE_REDIS_URL", "redis://localhost:6379/0")
SECRET_BACKEND = os.getenv("DISSONANCE_SECRET_BACKEND", "memory")  # memory|ssm
NONCE_PARAMETER = os.getenv("DISSONANCE_NONCE_PARAMETER", "/dissonance/calibration/salt")
AWS_REGION = os.getenv("AWS_REGION", "")
STORE_TIMEOUT = float(os.getenv("DISSONANCE_STORE_TIMEOUT", "5"))

# Trust protocol signing key (hex-encoded Ed25519 seed)
SIGNING_KEY_HEX = os.getenv("DISSONANCE_SIGNING_KEY", "")


# ============================================================
# Invariant and Policy Thresholds
# ============================================================

L0_DRIFT_THRESHOLD = float(os.getenv("L0_DRIFT_THRESHOLD", "0.5"))
L0_NONCE_MAX_AGE = int(os.getenv("L0_NONCE_MAX_AGE", "3600"))
L0_CONTRACTION_MIN_EVENTS = int(os.getenv("L0_CONTRACTION_MIN_EVENTS", "10"))

CIRCUIT_BREAKER_THRESHOLD = int(os.getenv("CIRCUIT_BREAKER_THRESHOLD", "10"))
CIRCUIT_BREAKER_RETENTION = int(os.getenv("CIRCUIT_BREAKER_RETENTION", "86400"))

# When true a tripped breaker keeps the block instead of downgrading to warn
DEGRADED_MODE_IS_FAILURE = _flag("DEGRADED_MODE_IS_FAILURE")


# ============================================================
# Calibration
# ============================================================

FP_EVENT_TTL_DAYS = int(os.getenv("FP_EVENT_TTL_DAYS", "90"))
INGEST_BATCH_DELAY_SECONDS = int(os.getenv("INGEST_BATCH_DELAY_SECONDS", "3600"))


# ============================================================
# Logging
# ============================================================

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON = _flag("LOG_JSON", "true")


@dataclass(frozen=True)
class DissonanceConfig:
    """Immutable configuration snapshot handed to components at construction."""
    env: str = "dev"
    backend: str = "memory"
    db_path: str = "data/dissonance.db"
    redis_url: str = "redis://localhost:6379/0"
    secret_backend: str = "memory"
    nonce_parameter: str = "/dissonance/calibration/salt"
    aws_region: str = ""
    store_timeout: float = 5.0
    signing_key_hex: str = ""
    drift_threshold: float = 0.5
    nonce_max_age: int = 3600
    contraction_min_events: int = 10
    circuit_breaker_threshold: int = 10
    circuit_breaker_retention: int = 86400
    degraded_mode_is_failure: bool = False
    fp_event_ttl_days: int = 90
    ingest_batch_delay_seconds: int = 3600
    log_level: str = "INFO"
    log_json: bool = True

    @classmethod
    def from_env(cls) -> "DissonanceConfig":
        """Build a snapshot from the module-level environment constants."""
        return cls(
            env=ENV,
            backend=BACKEND,
            db_path=DB_PATH,
            redis_url=REDIS_URL,
            secret_backend=SECRET_BACKEND,
            nonce_parameter=NONCE_PARAMETER,
            aws_region=AWS_REGION,
            store_timeout=STORE_TIMEOUT,
            signing_key_hex=SIGNING_KEY_HEX,
            drift_threshold=L0_DRIFT_THRESHOLD,
            nonce_max_age=L0_NONCE_MAX_AGE,
            contraction_min_events=L0_CONTRACTION_MIN_EVENTS,
            circuit_breaker_threshold=CIRCUIT_BREAKER_THRESHOLD,
            circuit_breaker_retention=CIRCUIT_BREAKER_RETENTION,
            degraded_mode_is_failure=DEGRADED_MODE_IS_FAILURE,
            fp_event_ttl_days=FP_EVENT_TTL_DAYS,
            ingest_batch_delay_seconds=INGEST_BATCH_DELAY_SECONDS,
            log_level=LOG_LEVEL,
            log_json=LOG_JSON,
        )

    def is_production(self) -> bool:
        return self.env == "prod"

    def to_dict(self) -> Dict[str, Any]:
        """Configuration with the signing key masked, for logging."""
        data = asdict(self)
        data["signing_key_hex"] = "[REDACTED]" if self.signing_key_hex else ""
        return data
