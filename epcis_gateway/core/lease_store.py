import hashlib
import os
import sqlite3
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple


DB_PATH = Path(__file__).resolve().parents[2] / "data" / "lease_store.sqlite3"

Clock = Callable[[], float]


class StoreUnavailable(Exception):
    """
    Raised by any LeaseStore operation when the backend cannot be reached or
    answers with an error. Callers treat it as "unknown state".
    """


class LeaseStore:
    """
    Shared TTL-capable key/value store.

    All mutual exclusion in the gateway reduces to set_if_absent_with_ttl being
    atomic under concurrent callers, including callers on other machines.
    Expired values must read as absent on every backend, whether or not the
    backend has physically removed them yet.
    """

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set_with_ttl(self, key: str, value: str, ttl_seconds: float) -> None:
        raise NotImplementedError

    def set_if_absent_with_ttl(self, key: str, value: str, ttl_seconds: float) -> bool:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        return self.get(key) is not None

    def refresh(self, key: str, ttl_seconds: float) -> bool:
        """
        Extend the TTL of a live key without touching its value.
        Returns False if the key is absent or already expired.
        """
        raise NotImplementedError

    def purge_expired(self) -> int:
        """Physically remove expired entries. Returns how many were removed."""
        raise NotImplementedError


class InMemoryLeaseStore(LeaseStore):
    """
    Process-local store.
    - Suitable for tests and a single-process deployment only.
    - Mutual exclusion holds across threads of one process, never across servers.
    """

    def __init__(self, clock: Clock = time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self._data: Dict[str, Tuple[str, float]] = {}

    def _live(self, key: str, now: float) -> Optional[Tuple[str, float]]:
        # Caller holds self._lock
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry[1] <= now:
            del self._data[key]
            return None
        return entry

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key, self._clock())
        return entry[0] if entry else None

    def set_with_ttl(self, key: str, value: str, ttl_seconds: float) -> None:
        with self._lock:
            self._data[key] = (value, self._clock() + ttl_seconds)

    def set_if_absent_with_ttl(self, key: str, value: str, ttl_seconds: float) -> bool:
        with self._lock:
            now = self._clock()
            if self._live(key, now) is not None:
                return False
            self._data[key] = (value, now + ttl_seconds)
            return True

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def refresh(self, key: str, ttl_seconds: float) -> bool:
        with self._lock:
            now = self._clock()
            entry = self._live(key, now)
            if entry is None:
                return False
            self._data[key] = (entry[0], now + ttl_seconds)
            return True

    def purge_expired(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [k for k, (_, exp) in self._data.items() if exp <= now]
            for k in expired:
                del self._data[k]
        return len(expired)


class SQLiteLeaseStore(LeaseStore):
    """
    SQLite-backed lease store.

    NOTE:
    - Suitable for local dev / single instance (multiple worker processes on one host are fine).
    - NOT a shared multi-server store unless the DB file is on shared storage (not recommended).
    - Expiry is enforced on read; purge_expired() reclaims space.
    """

    def __init__(self, db_path: Path = DB_PATH, clock: Clock = time.time):
        self.db_path = db_path
        self._clock = clock
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._run(self._init_db)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=10.0)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        return conn

    def _run(self, op, *args):
        try:
            return op(*args)
        except sqlite3.Error as e:
            raise StoreUnavailable(f"sqlite lease store error: {e}") from e

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS lease_store (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    expires_at REAL NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_lease_store_expires_at ON lease_store (expires_at)"
            )

    def get(self, key: str) -> Optional[str]:
        def _get() -> Optional[str]:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT value FROM lease_store WHERE key = ? AND expires_at > ?",
                    (key, self._clock()),
                ).fetchone()
            return row[0] if row else None

        return self._run(_get)

    def set_with_ttl(self, key: str, value: str, ttl_seconds: float) -> None:
        def _set() -> None:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO lease_store (key, value, expires_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value=excluded.value,
                        expires_at=excluded.expires_at
                    """,
                    (key, value, self._clock() + ttl_seconds),
                )

        self._run(_set)

    def set_if_absent_with_ttl(self, key: str, value: str, ttl_seconds: float) -> bool:
        def _set_if_absent() -> bool:
            now = self._clock()
            with self._connect() as conn:
                conn.execute("BEGIN IMMEDIATE;")  # write lock for atomic check-and-set

                row = conn.execute(
                    "SELECT expires_at FROM lease_store WHERE key = ?",
                    (key,),
                ).fetchone()

                if row is not None and row[0] > now:
                    # Live value held by someone else
                    conn.execute("COMMIT;")
                    return False

                # Absent, or present but expired -> take over
                conn.execute(
                    """
                    INSERT INTO lease_store (key, value, expires_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value=excluded.value,
                        expires_at=excluded.expires_at
                    """,
                    (key, value, now + ttl_seconds),
                )
                conn.execute("COMMIT;")
                return True

        return self._run(_set_if_absent)

    def delete(self, key: str) -> None:
        def _delete() -> None:
            with self._connect() as conn:
                conn.execute("DELETE FROM lease_store WHERE key = ?", (key,))

        self._run(_delete)

    def refresh(self, key: str, ttl_seconds: float) -> bool:
        def _refresh() -> bool:
            now = self._clock()
            with self._connect() as conn:
                cur = conn.execute(
                    "UPDATE lease_store SET expires_at = ? WHERE key = ? AND expires_at > ?",
                    (now + ttl_seconds, key, now),
                )
            return cur.rowcount == 1

        return self._run(_refresh)

    def purge_expired(self) -> int:
        def _purge() -> int:
            with self._connect() as conn:
                cur = conn.execute(
                    "DELETE FROM lease_store WHERE expires_at <= ?",
                    (self._clock(),),
                )
            return cur.rowcount

        return self._run(_purge)


class FirestoreLeaseStore(LeaseStore):
    """
    Firestore-backed shared lease store (multi-server safe).

    set_if_absent_with_ttl runs in a Firestore transaction: create the document,
    or take it over if its expires_at has passed. Documents are keyed by the
    SHA-256 of the store key because Firestore ids may not contain "/".

    Requirements:
      - google-cloud-firestore installed
      - service account / ADC configured in environment

    Environment:
      - FIRESTORE_PROJECT_ID (optional if ADC provides)
      - LEASE_COLLECTION (default: "capture_leases")

    A Firestore TTL policy on expires_at can be enabled for physical cleanup;
    reads never rely on it.
    """

    def __init__(self, project_id: Optional[str] = None, collection: Optional[str] = None):
        try:
            from google.api_core import exceptions as gexc  # type: ignore
            from google.cloud import firestore  # type: ignore
        except Exception as e:
            raise RuntimeError(
                "google-cloud-firestore is required for FirestoreLeaseStore. "
                "Install with: pip install google-cloud-firestore"
            ) from e

        self._firestore = firestore
        self._api_error = gexc.GoogleAPIError
        self.project_id = project_id or os.getenv("FIRESTORE_PROJECT_ID")
        self.collection = collection or os.getenv("LEASE_COLLECTION", "capture_leases")

        if self.project_id:
            self.client = firestore.Client(project=self.project_id)
        else:
            self.client = firestore.Client()

    def _doc_ref(self, key: str):
        doc_id = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return self.client.collection(self.collection).document(doc_id)

    def _run(self, op, *args):
        try:
            return op(*args)
        except self._api_error as e:
            raise StoreUnavailable(f"firestore lease store error: {e}") from e

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    @staticmethod
    def _is_live(data: Dict, now: datetime) -> bool:
        expires_at = data.get("expires_at")
        return expires_at is not None and expires_at > now

    def get(self, key: str) -> Optional[str]:
        def _get() -> Optional[str]:
            snap = self._doc_ref(key).get()
            if not snap.exists:
                return None
            data = snap.to_dict() or {}
            if not self._is_live(data, self._now()):
                return None
            return data.get("value")

        return self._run(_get)

    def set_with_ttl(self, key: str, value: str, ttl_seconds: float) -> None:
        def _set() -> None:
            expires_at = self._now() + timedelta(seconds=ttl_seconds)
            self._doc_ref(key).set({"key": key, "value": value, "expires_at": expires_at})

        self._run(_set)

    def set_if_absent_with_ttl(self, key: str, value: str, ttl_seconds: float) -> bool:
        firestore = self._firestore
        doc_ref = self._doc_ref(key)

        @firestore.transactional
        def _txn_set_if_absent(txn) -> bool:
            now = self._now()
            payload = {"key": key, "value": value, "expires_at": now + timedelta(seconds=ttl_seconds)}

            snap = doc_ref.get(transaction=txn)
            if not snap.exists:
                txn.create(doc_ref, payload)
                return True

            if self._is_live(snap.to_dict() or {}, now):
                return False

            # Expired document -> takeover
            txn.set(doc_ref, payload)
            return True

        return self._run(lambda: _txn_set_if_absent(self.client.transaction()))

    def delete(self, key: str) -> None:
        self._run(lambda: self._doc_ref(key).delete())

    def refresh(self, key: str, ttl_seconds: float) -> bool:
        firestore = self._firestore
        doc_ref = self._doc_ref(key)

        @firestore.transactional
        def _txn_refresh(txn) -> bool:
            now = self._now()
            snap = doc_ref.get(transaction=txn)
            if not snap.exists or not self._is_live(snap.to_dict() or {}, now):
                return False
            txn.update(doc_ref, {"expires_at": now + timedelta(seconds=ttl_seconds)})
            return True

        return self._run(lambda: _txn_refresh(self.client.transaction()))

    def purge_expired(self) -> int:
        def _purge() -> int:
            query = self.client.collection(self.collection).where(
                filter=self._firestore.FieldFilter("expires_at", "<=", self._now())
            )
            removed = 0
            for snap in query.stream():
                snap.reference.delete()
                removed += 1
            return removed

        return self._run(_purge)


def get_lease_store(backend: Optional[str] = None) -> LeaseStore:
    """
    Factory for selecting the lease store backend.

    LEASE_STORE_BACKEND (or the explicit `backend` argument):
      - "sqlite" (default) : local dev / single host
      - "firestore"        : shared multi-server safe
      - "memory"           : single process (tests)
    """
    backend = (backend or os.getenv("LEASE_STORE_BACKEND", "sqlite")).lower().strip()
    if backend == "firestore":
        return FirestoreLeaseStore()
    if backend == "memory":
        return InMemoryLeaseStore()
    return SQLiteLeaseStore()
