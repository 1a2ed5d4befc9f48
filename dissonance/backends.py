"""
Remote storage backends and the adapter factory.

RedisBlockCounterStore and SsmSecretStore accept an injected client so they
can be exercised without a live service; when no client is given they build
one from configuration with a lazy import, so redis and boto3 are only
needed when their backend is selected.

create_adapters() resolves every contract once at process start. It never
falls back to another variant when a backend cannot be built.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, List, Optional

from .config import DissonanceConfig
from .db import (
    SqliteBlockCounterStore,
    SqliteConsentStore,
    SqliteDatabase,
    SqliteFPEventStore,
    SqliteIdentityStore,
)
from .errors import BlockCounterError, SecretStoreError
from .records import SecretVersion
from .stores import (
    BlockCounterStore,
    Clock,
    ConsentStore,
    FPEventStore,
    IdentityStore,
    InMemoryBlockCounterStore,
    InMemoryConsentStore,
    InMemoryFPEventStore,
    InMemoryIdentityStore,
    InMemorySecretStore,
    SecretStore,
)
from .util import utc_now

logger = logging.getLogger(__name__)

VERSION_SUFFIX = re.compile(r"_v(\d+)$")


class RedisBlockCounterStore(BlockCounterStore):
    """
    Redis-backed block counter for production.

    Features:
    - Shared across processes and hosts
    - Atomic via MULTI: SET NX EX creates the bucket with its TTL, INCR adds one
    - Automatic TTL expiration

    Requires: redis-py
    """

    def __init__(self, redis_client, key_prefix: str = "dissonance:blocks:"):
        self.redis = redis_client
        self.key_prefix = key_prefix

    @classmethod
    def from_url(cls, url: str, timeout: float) -> "RedisBlockCounterStore":
        import redis
        client = redis.Redis.from_url(url, socket_timeout=timeout, socket_connect_timeout=timeout)
        return cls(client)

    def increment(self, bucket_key: str, ttl_seconds: int) -> int:
        key = f"{self.key_prefix}{bucket_key}"
        try:
            pipe = self.redis.pipeline(transaction=True)
            pipe.set(key, 0, nx=True, ex=ttl_seconds)
            pipe.incr(key)
            _, count = pipe.execute()
        except Exception as e:
            raise BlockCounterError(
                f"Block counter increment failed: {e}",
                BlockCounterError.INCREMENT_FAILED,
                {"bucketKey": bucket_key, "cause": type(e).__name__},
            ) from e
        return int(count)

    def get(self, bucket_key: str) -> int:
        key = f"{self.key_prefix}{bucket_key}"
        try:
            value = self.redis.get(key)
        except Exception as e:
            raise BlockCounterError(
                f"Block counter read failed: {e}",
                BlockCounterError.READ_FAILED,
                {"bucketKey": bucket_key, "cause": type(e).__name__},
            ) from e
        return int(value) if value is not None else 0


class SsmSecretStore(SecretStore):
    """
    AWS SSM Parameter Store secrets.

    Each version is its own SecureString parameter named `<name>_v<N>`, so
    several versions can be valid at once during a rotation. Disabling a
    version deletes its parameter.

    Requires: boto3
    """

    def __init__(self, ssm_client=None, region: Optional[str] = None, timeout: float = 5.0, clock: Clock = utc_now):
        if ssm_client is None:
            import boto3
            from botocore.config import Config
            ssm_client = boto3.client(
                "ssm",
                region_name=region or None,
                config=Config(
                    connect_timeout=timeout,
                    read_timeout=timeout,
                    retries={"max_attempts": 3, "mode": "standard"},
                ),
            )
        self.ssm = ssm_client
        self._clock = clock

    @staticmethod
    def _parent(name: str) -> str:
        parent = name.rsplit("/", 1)[0]
        return parent or "/"

    def _list(self, name: str) -> List[SecretVersion]:
        versions = []
        kwargs = {"Path": self._parent(name), "WithDecryption": True, "Recursive": False}
        while True:
            page = self.ssm.get_parameters_by_path(**kwargs)
            for param in page.get("Parameters", []):
                param_name = param["Name"]
                match = VERSION_SUFFIX.search(param_name)
                if not match or param_name[:match.start()] != name:
                    continue
                versions.append(SecretVersion(
                    name=name,
                    version=int(match.group(1)),
                    value=param["Value"],
                    created_at=param.get("LastModifiedDate"),
                ))
            token = page.get("NextToken")
            if not token:
                break
            kwargs["NextToken"] = token
        return sorted(versions, key=lambda v: v.version, reverse=True)

    def get_valid_secrets(self, name: str) -> List[SecretVersion]:
        try:
            return self._list(name)
        except Exception as e:
            raise SecretStoreError(
                f"Failed to list versions of {name}: {e}",
                SecretStoreError.VERSIONS_FAILED,
                {"name": name, "cause": type(e).__name__},
            ) from e

    def get_latest_secret(self, name: str) -> SecretVersion:
        try:
            versions = self._list(name)
        except Exception as e:
            raise SecretStoreError(
                f"Failed to read {name}: {e}",
                SecretStoreError.READ_FAILED,
                {"name": name, "cause": type(e).__name__},
            ) from e
        if not versions:
            raise SecretStoreError(
                f"Secret {name} not found",
                SecretStoreError.NONCE_NOT_FOUND,
                {"name": name},
            )
        return versions[0]

    def create_secret_version(self, name: str, value: str) -> SecretVersion:
        current = self.get_valid_secrets(name)
        number = (current[0].version if current else 0) + 1
        try:
            self.ssm.put_parameter(
                Name=f"{name}_v{number}",
                Value=value,
                Type="SecureString",
                Overwrite=False,
            )
        except Exception as e:
            raise SecretStoreError(
                f"Failed to create version {number} of {name}: {e}",
                SecretStoreError.ROTATION_FAILED,
                {"name": name, "version": number, "cause": type(e).__name__},
            ) from e
        return SecretVersion(name=name, version=number, value=value, created_at=self._clock())

    def disable_secret_version(self, name: str, version: int) -> None:
        try:
            self.ssm.delete_parameter(Name=f"{name}_v{version}")
        except Exception as e:
            raise SecretStoreError(
                f"Failed to disable version {version} of {name}: {e}",
                SecretStoreError.VERSIONS_FAILED,
                {"name": name, "version": version, "cause": type(e).__name__},
            ) from e


@dataclass
class Adapters:
    """One implementation of each adapter contract."""
    block_counter: BlockCounterStore
    fp_events: FPEventStore
    identities: IdentityStore
    consents: ConsentStore
    secrets: SecretStore


def create_adapters(config: DissonanceConfig, clock: Clock = utc_now, redis_client: Any = None,
                    ssm_client: Any = None) -> Adapters:
    """
    Build the adapter set selected by configuration.

    backend:
        memory  - in-memory stores (tests, local runs)
        sqlite  - every store on the SQLite file at config.db_path
        redis   - block counter on Redis, everything else on SQLite
    secret_backend:
        memory  - in-memory versioned secrets
        ssm     - AWS SSM Parameter Store
    """
    if config.backend == "memory":
        block_counter: BlockCounterStore = InMemoryBlockCounterStore(clock=clock)
        fp_events: FPEventStore = InMemoryFPEventStore()
        identities: IdentityStore = InMemoryIdentityStore()
        consents: ConsentStore = InMemoryConsentStore()
    elif config.backend in ("sqlite", "redis"):
        db = SqliteDatabase(config.db_path, timeout=config.store_timeout)
        db.init_schema()
        fp_events = SqliteFPEventStore(db)
        identities = SqliteIdentityStore(db)
        consents = SqliteConsentStore(db)
        if config.backend == "redis":
            if redis_client is not None:
                block_counter = RedisBlockCounterStore(redis_client)
            else:
                block_counter = RedisBlockCounterStore.from_url(config.redis_url, config.store_timeout)
        else:
            block_counter = SqliteBlockCounterStore(db, clock=clock)
    else:
        raise ValueError(f"Unknown storage backend: {config.backend}")

    if config.secret_backend == "memory":
        secrets: SecretStore = InMemorySecretStore(clock=clock)
    elif config.secret_backend == "ssm":
        secrets = SsmSecretStore(ssm_client, region=config.aws_region, timeout=config.store_timeout, clock=clock)
    else:
        raise ValueError(f"Unknown secret backend: {config.secret_backend}")

    logger.info("Adapters initialized: backend=%s secrets=%s", config.backend, config.secret_backend)
    return Adapters(
        block_counter=block_counter,
        fp_events=fp_events,
        identities=identities,
        consents=consents,
        secrets=secrets,
    )
