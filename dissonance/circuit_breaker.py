"""
Circuit breaker / block counter.

Counts blocks per (rule, org) in hourly buckets. Each bucket is keyed
`ruleId:orgId:hourStart` (hourStart in epoch seconds) and expires after the
retention period. Increments are atomic at the store.

A counter that cannot be read raises BlockCounterError. It never reports
"not broken" on failure.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from .errors import BlockCounterError
from .logging_config import audit_log
from .stores import BlockCounterStore, Clock
from .util import hour_start, utc_now

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 10
DEFAULT_RETENTION_SECONDS = 24 * 3600


@dataclass
class BreakerStatus:
    rule_id: str
    org_id: str
    bucket_key: str
    count: int
    threshold: int

    @property
    def broken(self) -> bool:
        return self.count >= self.threshold

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "org_id": self.org_id,
            "bucket_key": self.bucket_key,
            "count": self.count,
            "threshold": self.threshold,
            "broken": self.broken,
        }


class CircuitBreaker:

    def __init__(
        self,
        store: BlockCounterStore,
        threshold: int = DEFAULT_THRESHOLD,
        retention_seconds: int = DEFAULT_RETENTION_SECONDS,
        clock: Clock = utc_now,
    ):
        if threshold <= 0:
            raise ValueError("threshold must be positive")
        if retention_seconds <= 0:
            raise ValueError("retention_seconds must be positive")
        self.store = store
        self.threshold = threshold
        self.retention_seconds = retention_seconds
        self._clock = clock

    @staticmethod
    def bucket_key(rule_id: str, org_id: str, at: datetime) -> str:
        return f"{rule_id}:{org_id}:{int(hour_start(at).timestamp())}"

    def increment(self, rule_id: str, org_id: str) -> int:
        """Record one block for the pair in the current hour; returns the new count."""
        key = self.bucket_key(rule_id, org_id, self._clock())
        try:
            count = self.store.increment(key, self.retention_seconds)
        except BlockCounterError:
            raise
        except Exception as e:
            raise BlockCounterError(
                f"Block counter increment failed: {e}",
                BlockCounterError.INCREMENT_FAILED,
                {"ruleId": rule_id, "orgId": org_id, "bucketKey": key},
            ) from e
        logger.debug("Block counter %s -> %d", key, count)
        return count

    def status(self, rule_id: str, org_id: str, threshold: Optional[int] = None) -> BreakerStatus:
        key = self.bucket_key(rule_id, org_id, self._clock())
        try:
            count = self.store.get(key)
        except Exception as e:
            raise BlockCounterError(
                f"Circuit breaker check failed: {e}",
                BlockCounterError.CIRCUIT_CHECK_FAILED,
                {"ruleId": rule_id, "orgId": org_id, "bucketKey": key},
            ) from e
        status = BreakerStatus(
            rule_id=rule_id,
            org_id=org_id,
            bucket_key=key,
            count=count,
            threshold=self.threshold if threshold is None else threshold,
        )
        if status.broken:
            audit_log.circuit_breaker_tripped(rule_id, org_id, status.count, status.threshold)
        return status

    def is_circuit_broken(self, rule_id: str, org_id: str, threshold: Optional[int] = None) -> bool:
        return self.status(rule_id, org_id, threshold).broken
