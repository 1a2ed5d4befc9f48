from datetime import datetime, timezone

import pytest

from conftest import SALT_NAME, SALT_V1
from dissonance.anonymizer import SaltRing
from dissonance.backends import RedisBlockCounterStore, SsmSecretStore, create_adapters
from dissonance.config import DissonanceConfig
from dissonance.db import SqliteBlockCounterStore, SqliteFPEventStore
from dissonance.errors import BlockCounterError, SecretStoreError
from dissonance.stores import InMemoryBlockCounterStore, InMemorySecretStore


class FakePipeline:
    def __init__(self, redis):
        self.redis = redis
        self.ops = []

    def set(self, key, value, nx=False, ex=None):
        self.ops.append(("set", key, value, nx, ex))

    def incr(self, key):
        self.ops.append(("incr", key))

    def execute(self):
        results = []
        for op in self.ops:
            if op[0] == "set":
                _, key, value, nx, ex = op
                if nx and key in self.redis.data:
                    results.append(None)
                else:
                    self.redis.data[key] = int(value)
                    self.redis.ttls[key] = ex
                    results.append(True)
            else:
                self.redis.data[op[1]] += 1
                results.append(self.redis.data[op[1]])
        return results


class FakeRedis:
    def __init__(self, fail=False):
        self.data = {}
        self.ttls = {}
        self.fail = fail

    def pipeline(self, transaction=True):
        if self.fail:
            raise ConnectionError("redis unreachable")
        return FakePipeline(self)

    def get(self, key):
        if self.fail:
            raise ConnectionError("redis unreachable")
        value = self.data.get(key)
        return str(value).encode() if value is not None else None


class ParameterAlreadyExists(Exception):
    pass


class FakeSsm:
    """Pages results one parameter at a time to exercise NextToken."""

    def __init__(self):
        self.params = {}
        self.calls = []

    def get_parameters_by_path(self, Path, WithDecryption, Recursive, NextToken=None):
        self.calls.append({"Path": Path, "WithDecryption": WithDecryption, "NextToken": NextToken})
        names = sorted(n for n in self.params if n.rsplit("/", 1)[0] == Path)
        start = int(NextToken or 0)
        page = {"Parameters": [
            {"Name": n, "Value": self.params[n], "LastModifiedDate": datetime(2026, 1, 1, tzinfo=timezone.utc)}
            for n in names[start:start + 1]
        ]}
        if start + 1 < len(names):
            page["NextToken"] = str(start + 1)
        return page

    def put_parameter(self, Name, Value, Type, Overwrite):
        assert Type == "SecureString"
        if Name in self.params and not Overwrite:
            raise ParameterAlreadyExists(Name)
        self.params[Name] = Value

    def delete_parameter(self, Name):
        del self.params[Name]


# ============================================================
# Redis block counter
# ============================================================

def test_redis_increment_sets_ttl_once():
    redis = FakeRedis()
    store = RedisBlockCounterStore(redis)
    assert store.increment("MD-004:acme:0", 86400) == 1
    assert store.increment("MD-004:acme:0", 86400) == 2
    assert redis.ttls == {"dissonance:blocks:MD-004:acme:0": 86400}
    assert store.get("MD-004:acme:0") == 2
    assert store.get("MD-004:acme:3600") == 0


def test_redis_failures_raise():
    store = RedisBlockCounterStore(FakeRedis(fail=True))
    with pytest.raises(BlockCounterError) as exc:
        store.increment("k", 60)
    assert exc.value.code == BlockCounterError.INCREMENT_FAILED
    with pytest.raises(BlockCounterError) as exc:
        store.get("k")
    assert exc.value.code == BlockCounterError.READ_FAILED
    assert exc.value.context["cause"] == "ConnectionError"


# ============================================================
# SSM secrets
# ============================================================

def test_ssm_versions_are_numbered_parameters(clock):
    ssm = FakeSsm()
    ssm.params["/dissonance/test/other_v1"] = "ignored"
    store = SsmSecretStore(ssm, clock=clock)
    assert store.create_secret_version(SALT_NAME, SALT_V1).version == 1
    assert store.create_secret_version(SALT_NAME, "22" * 32).version == 2
    assert sorted(ssm.params) == [
        "/dissonance/test/other_v1",
        "/dissonance/test/salt_v1",
        "/dissonance/test/salt_v2",
    ]
    assert [v.version for v in store.get_valid_secrets(SALT_NAME)] == [2, 1]
    assert store.get_latest_secret(SALT_NAME).value == "22" * 32
    assert all(call["WithDecryption"] for call in ssm.calls)
    assert any(call["NextToken"] for call in ssm.calls)


def test_ssm_disable_deletes_version(clock):
    ssm = FakeSsm()
    store = SsmSecretStore(ssm, clock=clock)
    store.create_secret_version(SALT_NAME, SALT_V1)
    store.create_secret_version(SALT_NAME, "22" * 32)
    store.disable_secret_version(SALT_NAME, 1)
    assert [v.version for v in store.get_valid_secrets(SALT_NAME)] == [2]


def test_ssm_missing_secret(clock):
    with pytest.raises(SecretStoreError) as exc:
        SsmSecretStore(FakeSsm(), clock=clock).get_latest_secret(SALT_NAME)
    assert exc.value.code == SecretStoreError.NONCE_NOT_FOUND


def test_ssm_write_conflict_is_rotation_failure(clock):
    ssm = FakeSsm()
    store = SsmSecretStore(ssm, clock=clock)
    ssm.put_parameter(Name=f"{SALT_NAME}_v1", Value=SALT_V1, Type="SecureString", Overwrite=False)
    ssm.get_parameters_by_path = lambda **kwargs: {"Parameters": []}
    with pytest.raises(SecretStoreError) as exc:
        store.create_secret_version(SALT_NAME, "22" * 32)
    assert exc.value.code == SecretStoreError.ROTATION_FAILED


def test_salt_ring_over_ssm(clock):
    store = SsmSecretStore(FakeSsm(), clock=clock)
    store.create_secret_version(SALT_NAME, SALT_V1)
    ring = SaltRing(store, SALT_NAME)
    assert ring.latest.version == 1
    assert ring.rotate("22" * 32).version == 2


# ============================================================
# Adapter factory
# ============================================================

def test_memory_adapters(clock):
    adapters = create_adapters(DissonanceConfig(), clock)
    assert isinstance(adapters.block_counter, InMemoryBlockCounterStore)
    assert isinstance(adapters.secrets, InMemorySecretStore)


def test_sqlite_adapters(tmp_path, clock):
    adapters = create_adapters(DissonanceConfig(backend="sqlite", db_path=str(tmp_path / "d.db")), clock)
    assert isinstance(adapters.block_counter, SqliteBlockCounterStore)
    assert isinstance(adapters.fp_events, SqliteFPEventStore)


def test_redis_adapters_use_injected_client(tmp_path, clock):
    config = DissonanceConfig(backend="redis", db_path=str(tmp_path / "d.db"))
    adapters = create_adapters(config, clock, redis_client=FakeRedis())
    assert isinstance(adapters.block_counter, RedisBlockCounterStore)
    assert isinstance(adapters.fp_events, SqliteFPEventStore)


def test_ssm_adapter_uses_injected_client(clock):
    adapters = create_adapters(DissonanceConfig(secret_backend="ssm"), clock, ssm_client=FakeSsm())
    assert isinstance(adapters.secrets, SsmSecretStore)


@pytest.mark.parametrize("field", ["backend", "secret_backend"])
def test_unknown_backend_rejected(field, clock):
    with pytest.raises(ValueError):
        create_adapters(DissonanceConfig(**{field: "etcd"}), clock)
