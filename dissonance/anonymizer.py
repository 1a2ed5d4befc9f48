"""
Organization id anonymization over versioned salts.

The hash is HMAC-SHA256(salt, org_id). It is deterministic for a fixed salt
version and changes when the salt rotates. During a rotation every enabled
salt version stays valid, so hashes produced under the old version can
still be matched until that version is retired.

SaltRing is an explicit state object: it loads the valid versions when
constructed and reloads after every rotation or retirement.
"""

import logging
import re
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .errors import SecretStoreError
from .records import SecretVersion
from .stores import SecretStore
from .util import constant_time_compare, generate_nonce, hmac_sha256_hex

logger = logging.getLogger(__name__)

SALT_PATTERN = re.compile(r"^[0-9a-f]{64}$")


@dataclass(frozen=True)
class AnonymizedId:
    org_id_hash: str
    salt_version: int

    def to_dict(self) -> Dict[str, Any]:
        return {"org_id_hash": self.org_id_hash, "salt_version": self.salt_version}


class SaltRing:
    """All currently valid versions of one salt secret, newest first."""

    def __init__(self, secrets: SecretStore, name: str):
        self.secrets = secrets
        self.name = name
        self._lock = threading.RLock()
        self._versions: List[SecretVersion] = []
        self.reload()

    def reload(self) -> None:
        """Load every enabled version. Fails closed if none is usable."""
        versions = self.secrets.get_valid_secrets(self.name)
        if not versions:
            raise SecretStoreError(
                f"No valid versions of {self.name}",
                SecretStoreError.NONCE_NOT_FOUND,
                {"name": self.name},
            )
        for v in versions:
            if not SALT_PATTERN.match(v.value or ""):
                raise SecretStoreError(
                    f"Salt {self.name} version {v.version} must be 64 lowercase hex characters",
                    SecretStoreError.MALFORMED_SECRET,
                    {"name": self.name, "version": v.version},
                )
        with self._lock:
            self._versions = sorted(versions, key=lambda v: v.version, reverse=True)
        logger.info("Loaded %d salt version(s) for %s", len(versions), self.name)

    @property
    def latest(self) -> SecretVersion:
        with self._lock:
            return self._versions[0]

    @property
    def all_valid(self) -> List[SecretVersion]:
        with self._lock:
            return list(self._versions)

    def get(self, version: int) -> SecretVersion:
        with self._lock:
            for v in self._versions:
                if v.version == version:
                    return v
        raise SecretStoreError(
            f"Salt {self.name} version {version} is not valid",
            SecretStoreError.NONCE_NOT_FOUND,
            {"name": self.name, "version": version},
        )

    def rotate(self, new_value: Optional[str] = None) -> SecretVersion:
        """Create a new salt version; older versions stay valid until retired."""
        value = new_value if new_value is not None else generate_nonce(32)
        if not SALT_PATTERN.match(value):
            raise SecretStoreError(
                "New salt must be 64 lowercase hex characters",
                SecretStoreError.MALFORMED_SECRET,
                {"name": self.name},
            )
        created = self.secrets.create_secret_version(self.name, value)
        self.reload()
        return created

    def retire(self, version: int) -> None:
        """Disable an old version. The newest version cannot be retired."""
        if version == self.latest.version:
            raise SecretStoreError(
                f"Cannot retire the current version of {self.name}",
                SecretStoreError.ROTATION_FAILED,
                {"name": self.name, "version": version},
            )
        self.get(version)
        self.secrets.disable_secret_version(self.name, version)
        self.reload()


class Anonymizer:

    def __init__(self, salts: SaltRing):
        self.salts = salts

    @staticmethod
    def _hash(salt: SecretVersion, org_id: str) -> str:
        return hmac_sha256_hex(bytes.fromhex(salt.value), org_id)

    def anonymize(self, org_id: str, version: Optional[int] = None) -> AnonymizedId:
        salt = self.salts.latest if version is None else self.salts.get(version)
        return AnonymizedId(org_id_hash=self._hash(salt, org_id), salt_version=salt.version)

    def anonymize_org_id(self, org_id: str) -> str:
        return self.anonymize(org_id).org_id_hash

    def matches(self, org_id: str, org_id_hash: str) -> Optional[int]:
        """Salt version under which `org_id` hashes to `org_id_hash`, or None."""
        for salt in self.salts.all_valid:
            if constant_time_compare(self._hash(salt, org_id), org_id_hash):
                return salt.version
        return None
