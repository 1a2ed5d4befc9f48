"""
SQLite storage backends for dissonance.

Implements every adapter contract except the secret store on one SQLite
database. Connections are thread-local per SqliteDatabase instance and all
conditional writes rely on SQLite constraints or `rowcount` checks inside a
single transaction, never on a read followed by a separate write.
"""

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Optional, Type

from .errors import (
    AdapterError,
    BlockCounterError,
    ConsentStoreError,
    FPStoreError,
    IdentityStoreError,
)
from .records import (
    ConsentRecord,
    ConsentResource,
    FPEvent,
    NonceBinding,
    OrganizationIdentity,
)
from .stores import (
    BlockCounterStore,
    Clock,
    ConsentStore,
    FPEventStore,
    IdentityStore,
)
from .util import to_iso, utc_now


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS block_counters (
        bucket_key TEXT PRIMARY KEY,
        count INTEGER NOT NULL,
        expires_at REAL NOT NULL
    );""",
    """
    CREATE INDEX IF NOT EXISTS idx_block_counters_expires
    ON block_counters(expires_at);""",
    """
    CREATE TABLE IF NOT EXISTS fp_events (
        rule_id TEXT NOT NULL,
        ts TEXT NOT NULL,
        event_id TEXT NOT NULL,
        ts_epoch REAL NOT NULL,
        finding_id TEXT NOT NULL,
        doc TEXT NOT NULL,
        PRIMARY KEY (rule_id, ts, event_id)
    );""",
    """
    CREATE INDEX IF NOT EXISTS idx_fp_events_finding
    ON fp_events(finding_id, ts_epoch);""",
    """
    CREATE INDEX IF NOT EXISTS idx_fp_events_rule_time
    ON fp_events(rule_id, ts_epoch);""",
    """
    CREATE TABLE IF NOT EXISTS identities (
        org_id TEXT PRIMARY KEY,
        doc TEXT NOT NULL
    );""",
    """
    CREATE TABLE IF NOT EXISTS nonce_bindings (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        org_id TEXT NOT NULL,
        nonce TEXT NOT NULL UNIQUE,
        revoked INTEGER NOT NULL DEFAULT 0,
        usage_count INTEGER NOT NULL DEFAULT 0,
        doc TEXT NOT NULL
    );""",
    # At most one active binding per organization
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_nonce_bindings_active
    ON nonce_bindings(org_id) WHERE revoked = 0;""",
    """
    CREATE TABLE IF NOT EXISTS consents (
        org_id TEXT NOT NULL,
        resource TEXT NOT NULL,
        doc TEXT NOT NULL,
        PRIMARY KEY (org_id, resource)
    );""",
]


class SqliteDatabase:
    """
    Thread-local SQLite connections for one database file.

    `timeout` is the busy timeout in seconds; a lock held longer than that
    surfaces as sqlite3.OperationalError, which the stores convert into
    their adapter error.
    """

    def __init__(self, path: str, timeout: float = 5.0):
        self.path = Path(path)
        self.timeout = timeout
        self._local = threading.local()

    def connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self.path), timeout=self.timeout, check_same_thread=False)
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Context manager for database transactions.
        Automatically commits on success, rolls back on failure.
        """
        conn = self.connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    def init_schema(self) -> None:
        """Create tables and indexes. Safe to call multiple times."""
        with self.transaction() as conn:
            for statement in SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None


@contextmanager
def _wrap(error_cls: Type[AdapterError], code: str, message: str, **context) -> Iterator[None]:
    """Translate driver failures into the contract's adapter error."""
    try:
        yield
    except AdapterError:
        raise
    except sqlite3.Error as e:
        raise error_cls(f"{message}: {e}", code, dict(context, cause=type(e).__name__)) from e


class SqliteBlockCounterStore(BlockCounterStore):
    """Block counter on SQLite using a single UPSERT per increment."""

    def __init__(self, db: SqliteDatabase, clock: Clock = utc_now):
        self.db = db
        self._clock = clock

    def increment(self, bucket_key: str, ttl_seconds: int) -> int:
        now = self._clock().timestamp()
        expires_at = now + ttl_seconds
        with _wrap(BlockCounterError, BlockCounterError.INCREMENT_FAILED,
                   "Block counter increment failed", bucketKey=bucket_key):
            with self.db.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO block_counters(bucket_key, count, expires_at) VALUES(?, 1, ?)
                    ON CONFLICT(bucket_key) DO UPDATE SET
                        count = CASE WHEN block_counters.expires_at <= ? THEN 1
                                     ELSE block_counters.count + 1 END,
                        expires_at = CASE WHEN block_counters.expires_at <= ? THEN excluded.expires_at
                                          ELSE block_counters.expires_at END
                    """,
                    (bucket_key, expires_at, now, now),
                )
                row = conn.execute(
                    "SELECT count FROM block_counters WHERE bucket_key = ?", (bucket_key,)
                ).fetchone()
                return int(row["count"])

    def get(self, bucket_key: str) -> int:
        now = self._clock().timestamp()
        with _wrap(BlockCounterError, BlockCounterError.READ_FAILED,
                   "Block counter read failed", bucketKey=bucket_key):
            row = self.db.connection().execute(
                "SELECT count FROM block_counters WHERE bucket_key = ? AND expires_at > ?",
                (bucket_key, now),
            ).fetchone()
            return int(row["count"]) if row else 0

    def cleanup_expired(self) -> int:
        """Remove expired buckets. Returns count removed."""
        now = self._clock().timestamp()
        with _wrap(BlockCounterError, BlockCounterError.INCREMENT_FAILED, "Block counter cleanup failed"):
            with self.db.transaction() as conn:
                cur = conn.execute("DELETE FROM block_counters WHERE expires_at <= ?", (now,))
                return cur.rowcount


class SqliteFPEventStore(FPEventStore):

    def __init__(self, db: SqliteDatabase):
        self.db = db

    def put_event(self, event: FPEvent) -> None:
        try:
            with self.db.transaction() as conn:
                conn.execute(
                    "INSERT INTO fp_events(rule_id, ts, event_id, ts_epoch, finding_id, doc) VALUES(?,?,?,?,?,?)",
                    (event.rule_id, to_iso(event.timestamp), event.event_id,
                     event.timestamp.timestamp(), event.finding_id, json.dumps(event.to_dict())),
                )
        except sqlite3.IntegrityError as e:
            raise FPStoreError(
                f"Event {event.event_id} already recorded",
                FPStoreError.DUPLICATE_EVENT,
                operation="put_event",
                rule_id=event.rule_id,
                event_id=event.event_id,
            ) from e
        except sqlite3.Error as e:
            raise FPStoreError(
                f"Failed to record event: {e}",
                FPStoreError.WRITE_FAILED,
                operation="put_event",
                rule_id=event.rule_id,
                event_id=event.event_id,
            ) from e

    def _read(self, operation: str, sql: str, params: tuple, **ids) -> List[FPEvent]:
        try:
            rows = self.db.connection().execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise FPStoreError(f"FP store read failed: {e}", FPStoreError.READ_FAILED,
                               operation=operation, **ids) from e
        return [FPEvent.from_dict(json.loads(row["doc"])) for row in rows]

    def get_event(self, rule_id: str, timestamp: datetime, event_id: str) -> Optional[FPEvent]:
        events = self._read(
            "get_event",
            "SELECT doc FROM fp_events WHERE rule_id = ? AND ts = ? AND event_id = ?",
            (rule_id, to_iso(timestamp), event_id),
            rule_id=rule_id, event_id=event_id,
        )
        return events[0] if events else None

    def find_by_finding(self, finding_id: str) -> Optional[FPEvent]:
        events = self._read(
            "find_by_finding",
            "SELECT doc FROM fp_events WHERE finding_id = ? ORDER BY ts_epoch DESC LIMIT 1",
            (finding_id,),
            finding_id=finding_id,
        )
        return events[0] if events else None

    def update_event(self, event: FPEvent, unless_set: Optional[str] = None) -> None:
        key = (event.rule_id, to_iso(event.timestamp), event.event_id)
        sql = "UPDATE fp_events SET doc = ? WHERE rule_id = ? AND ts = ? AND event_id = ?"
        params: list = [json.dumps(event.to_dict()), *key]
        if unless_set:
            sql += " AND COALESCE(json_extract(doc, ?), 0) IN (0, '')"
            params.append(f"$.{unless_set}")
        try:
            with self.db.transaction() as conn:
                cur = conn.execute(sql, params)
                if cur.rowcount == 1:
                    return
                exists = conn.execute(
                    "SELECT 1 FROM fp_events WHERE rule_id = ? AND ts = ? AND event_id = ?", key,
                ).fetchone()
                if exists:
                    raise FPStoreError(
                        f"Event {event.event_id} has already been reviewed",
                        FPStoreError.ALREADY_REVIEWED,
                        operation="update_event",
                        rule_id=event.rule_id,
                        event_id=event.event_id,
                        finding_id=event.finding_id,
                    )
                raise FPStoreError(
                    f"Event {event.event_id} not found",
                    FPStoreError.NOT_FOUND,
                    operation="update_event",
                    rule_id=event.rule_id,
                    event_id=event.event_id,
                )
        except sqlite3.Error as e:
            raise FPStoreError(f"Failed to update event: {e}", FPStoreError.WRITE_FAILED,
                               operation="update_event", rule_id=event.rule_id,
                               event_id=event.event_id) from e

    def query_by_rule(
        self,
        rule_id: str,
        limit: Optional[int] = None,
        since: Optional[datetime] = None
    ) -> List[FPEvent]:
        sql = "SELECT doc FROM fp_events WHERE rule_id = ?"
        params: list = [rule_id]
        if since is not None:
            sql += " AND ts_epoch >= ?"
            params.append(since.timestamp())
        sql += " ORDER BY ts_epoch DESC, event_id DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        return self._read("query_by_rule", sql, tuple(params), rule_id=rule_id)


class SqliteIdentityStore(IdentityStore):

    def __init__(self, db: SqliteDatabase):
        self.db = db

    @staticmethod
    def _binding(row: sqlite3.Row) -> NonceBinding:
        binding = NonceBinding.from_dict(json.loads(row["doc"]))
        binding.usage_count = int(row["usage_count"])
        return binding

    def _conflict(self, org_id: str, message: str) -> IdentityStoreError:
        return IdentityStoreError(message, IdentityStoreError.CONFLICT, {"orgId": org_id})

    def get_identity(self, org_id: str) -> Optional[OrganizationIdentity]:
        with _wrap(IdentityStoreError, IdentityStoreError.READ_FAILED, "Identity read failed", orgId=org_id):
            row = self.db.connection().execute(
                "SELECT doc FROM identities WHERE org_id = ?", (org_id,)
            ).fetchone()
        return OrganizationIdentity.from_dict(json.loads(row["doc"])) if row else None

    def store_identity(self, identity: OrganizationIdentity) -> None:
        with _wrap(IdentityStoreError, IdentityStoreError.WRITE_FAILED, "Identity write failed",
                   orgId=identity.org_id):
            with self.db.transaction() as conn:
                conn.execute(
                    "INSERT OR REPLACE INTO identities(org_id, doc) VALUES(?, ?)",
                    (identity.org_id, json.dumps(identity.to_dict())),
                )

    def revoke_identity(self, org_id: str, reason: str, revoked_at: datetime) -> None:
        identity = self.get_identity(org_id)
        if identity is None:
            return
        identity.revoked = True
        identity.revoked_at = revoked_at
        identity.revocation_reason = reason
        self.store_identity(identity)

    def get_nonce_binding(self, org_id: str) -> Optional[NonceBinding]:
        with _wrap(IdentityStoreError, IdentityStoreError.READ_FAILED, "Binding read failed", orgId=org_id):
            row = self.db.connection().execute(
                "SELECT doc, usage_count FROM nonce_bindings WHERE org_id = ? ORDER BY seq DESC LIMIT 1",
                (org_id,),
            ).fetchone()
        return self._binding(row) if row else None

    def get_nonce_binding_by_nonce(self, nonce: str) -> Optional[NonceBinding]:
        with _wrap(IdentityStoreError, IdentityStoreError.READ_FAILED, "Binding read failed"):
            row = self.db.connection().execute(
                "SELECT doc, usage_count FROM nonce_bindings WHERE nonce = ?", (nonce,)
            ).fetchone()
        return self._binding(row) if row else None

    def create_nonce_binding(self, binding: NonceBinding) -> None:
        try:
            with self.db.transaction() as conn:
                conn.execute(
                    "INSERT INTO nonce_bindings(org_id, nonce, revoked, usage_count, doc) VALUES(?,?,?,?,?)",
                    (binding.org_id, binding.nonce, int(binding.revoked), binding.usage_count,
                     json.dumps(binding.to_dict())),
                )
        except sqlite3.IntegrityError as e:
            raise IdentityStoreError(
                f"Organization {binding.org_id} already has an active nonce binding",
                IdentityStoreError.BINDING_EXISTS,
                {"orgId": binding.org_id},
            ) from e
        except sqlite3.Error as e:
            raise IdentityStoreError(f"Binding write failed: {e}", IdentityStoreError.WRITE_FAILED,
                                     {"orgId": binding.org_id}) from e

    def replace_nonce_binding(self, revoked: NonceBinding, new: NonceBinding) -> None:
        with _wrap(IdentityStoreError, IdentityStoreError.WRITE_FAILED, "Binding rotation failed",
                   orgId=revoked.org_id):
            with self.db.transaction() as conn:
                cur = conn.execute(
                    "UPDATE nonce_bindings SET revoked = 1, doc = ? WHERE org_id = ? AND nonce = ? AND revoked = 0",
                    (json.dumps(revoked.to_dict()), revoked.org_id, revoked.nonce),
                )
                if cur.rowcount != 1:
                    raise self._conflict(revoked.org_id,
                                         f"Active binding for {revoked.org_id} changed during rotation")
                conn.execute(
                    "INSERT INTO nonce_bindings(org_id, nonce, revoked, usage_count, doc) VALUES(?,?,0,?,?)",
                    (new.org_id, new.nonce, new.usage_count, json.dumps(new.to_dict())),
                )

    def revoke_nonce_binding(self, org_id: str, nonce: str, reason: str, revoked_at: datetime) -> NonceBinding:
        current = self.get_nonce_binding_by_nonce(nonce)
        if current is None or current.org_id != org_id:
            raise self._conflict(org_id, f"No active binding {nonce[:8]} for {org_id}")
        revoked = current.revoke(reason, revoked_at)
        with _wrap(IdentityStoreError, IdentityStoreError.WRITE_FAILED, "Binding revocation failed", orgId=org_id):
            with self.db.transaction() as conn:
                cur = conn.execute(
                    "UPDATE nonce_bindings SET revoked = 1, doc = ? WHERE org_id = ? AND nonce = ? AND revoked = 0",
                    (json.dumps(revoked.to_dict()), org_id, nonce),
                )
                if cur.rowcount != 1:
                    raise self._conflict(org_id, f"No active binding {nonce[:8]} for {org_id}")
                row = conn.execute(
                    "SELECT usage_count FROM nonce_bindings WHERE nonce = ?", (nonce,)
                ).fetchone()
        revoked.usage_count = int(row["usage_count"])
        return revoked

    def increment_usage_count(self, org_id: str, nonce: str) -> int:
        with _wrap(IdentityStoreError, IdentityStoreError.WRITE_FAILED, "Usage count update failed", orgId=org_id):
            with self.db.transaction() as conn:
                cur = conn.execute(
                    "UPDATE nonce_bindings SET usage_count = usage_count + 1 "
                    "WHERE org_id = ? AND nonce = ? AND revoked = 0",
                    (org_id, nonce),
                )
                if cur.rowcount != 1:
                    raise self._conflict(org_id, f"No active binding {nonce[:8]} for {org_id}")
                row = conn.execute(
                    "SELECT usage_count FROM nonce_bindings WHERE nonce = ?", (nonce,)
                ).fetchone()
                return int(row["usage_count"])

    def list_nonce_bindings(self, org_id: str) -> List[NonceBinding]:
        with _wrap(IdentityStoreError, IdentityStoreError.READ_FAILED, "Binding history read failed",
                   orgId=org_id):
            rows = self.db.connection().execute(
                "SELECT doc, usage_count FROM nonce_bindings WHERE org_id = ? ORDER BY seq ASC",
                (org_id,),
            ).fetchall()
        return [self._binding(row) for row in rows]


class SqliteConsentStore(ConsentStore):

    def __init__(self, db: SqliteDatabase):
        self.db = db

    def grant_consent(self, record: ConsentRecord) -> None:
        with _wrap(ConsentStoreError, ConsentStoreError.WRITE_FAILED, "Consent write failed",
                   orgId=record.org_id):
            with self.db.transaction() as conn:
                conn.execute(
                    "INSERT OR REPLACE INTO consents(org_id, resource, doc) VALUES(?,?,?)",
                    (record.org_id, record.resource.value, json.dumps(record.to_dict())),
                )

    def revoke_consent(self, org_id: str, resource: ConsentResource, revoked_at: datetime) -> bool:
        record = self.get_consent(org_id, resource)
        if record is None:
            return False
        record.revoked_at = revoked_at
        self.grant_consent(record)
        return True

    def get_consent(self, org_id: str, resource: ConsentResource) -> Optional[ConsentRecord]:
        resource = ConsentResource(resource)
        with _wrap(ConsentStoreError, ConsentStoreError.READ_FAILED, "Consent read failed", orgId=org_id):
            row = self.db.connection().execute(
                "SELECT doc FROM consents WHERE org_id = ? AND resource = ?",
                (org_id, resource.value),
            ).fetchone()
        return ConsentRecord.from_dict(json.loads(row["doc"])) if row else None
