import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from pydantic import ValidationError

from epcis_gateway.core.lease_store import LeaseStore, StoreUnavailable
from epcis_gateway.core.logging import get_logger, log_event
from epcis_gateway.domain.schemas import CaptureResult

DEFAULT_RESULT_TTL_SECONDS = 24 * 60 * 60
DEFAULT_LEASE_TTL_SECONDS = 5 * 60


@dataclass(frozen=True)
class IdempotencyKey:
    """
    Caller-supplied key scoped to the organization that sent it.
    Two organizations may use the same client key without colliding.
    """

    org_id: str
    client_key: str

    def result_key(self) -> str:
        return f"idempotency:{self.org_id}:{self.client_key}"

    def lease_key(self) -> str:
        return f"processing:{self.org_id}:{self.client_key}"


@dataclass(frozen=True)
class Lease:
    key: IdempotencyKey
    token: str
    ttl_seconds: int


class IdempotencyCoordinator:
    """
    Idempotency-key state machine on top of a LeaseStore.

    UNSEEN --acquire--> PROCESSING --store_result + release--> DONE (cached)
    PROCESSING --lease TTL expiry--> UNSEEN  (crash recovery)
    DONE --result TTL expiry--> UNSEEN

    Store failures on reads and writes of the result cache are logged and
    absorbed: the worst case is a duplicate attempt, never a false "already
    done". Lease acquisition is the exception and lets StoreUnavailable
    propagate, since proceeding without a lease would drop mutual exclusion.

    Known gap: a crash after the persister ran but before store_result lets a
    retry reprocess once the lease expires. Persisted events are not deduped here.
    """

    def __init__(
        self,
        store: LeaseStore,
        result_ttl_seconds: int = DEFAULT_RESULT_TTL_SECONDS,
        lease_ttl_seconds: int = DEFAULT_LEASE_TTL_SECONDS,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.result_ttl_seconds = result_ttl_seconds
        self.lease_ttl_seconds = lease_ttl_seconds
        self.logger = logger or get_logger()

    def _store_error(self, operation: str, key: IdempotencyKey, error: Exception) -> None:
        log_event(
            self.logger,
            event_name="idempotency_store_error",
            fields={
                "operation": operation,
                "org_id": key.org_id,
                "idempotency_key": key.client_key,
                "error": str(error),
            },
            level=logging.WARNING,
        )

    def get_cached_result(self, key: IdempotencyKey) -> Optional[CaptureResult]:
        try:
            raw = self.store.get(key.result_key())
        except StoreUnavailable as e:
            self._store_error("get_cached_result", key, e)
            return None

        if raw is None:
            return None

        try:
            return CaptureResult.model_validate_json(raw)
        except ValidationError as e:
            # Treat a corrupt entry as a miss rather than replaying garbage
            self._store_error("decode_cached_result", key, e)
            return None

    def try_acquire_lease(self, key: IdempotencyKey) -> Optional[Lease]:
        """
        Returns a Lease if this worker now owns processing for the key, None if
        another worker holds it. Raises StoreUnavailable if the store cannot answer.
        """
        token = f"worker-{uuid.uuid4()}"
        acquired = self.store.set_if_absent_with_ttl(key.lease_key(), token, self.lease_ttl_seconds)
        if not acquired:
            return None
        return Lease(key=key, token=token, ttl_seconds=self.lease_ttl_seconds)

    def refresh_lease(self, lease: Lease) -> bool:
        try:
            return self.store.refresh(lease.key.lease_key(), lease.ttl_seconds)
        except StoreUnavailable as e:
            self._store_error("refresh_lease", lease.key, e)
            return False

    def release_lease(self, key: IdempotencyKey) -> None:
        """
        Unconditional delete. A failed delete is logged; TTL expiry releases the key later.

        The lease token is not compared. A worker that outran its lease TTL will
        delete a lease another worker has since taken over, reopening the key to a
        third caller. The request deadline is kept below the lease TTL so a healthy
        worker finishes first.
        """
        try:
            self.store.delete(key.lease_key())
        except StoreUnavailable as e:
            self._store_error("release_lease", key, e)

    def is_processing(self, key: IdempotencyKey) -> bool:
        try:
            return self.store.exists(key.lease_key())
        except StoreUnavailable as e:
            self._store_error("is_processing", key, e)
            return False

    def store_result(self, key: IdempotencyKey, result: CaptureResult) -> bool:
        """
        Cache the terminal result. Must run before release_lease on the normal path.
        Returns False if the store rejected the write.
        """
        try:
            self.store.set_with_ttl(key.result_key(), result.model_dump_json(), self.result_ttl_seconds)
        except StoreUnavailable as e:
            self._store_error("store_result", key, e)
            return False
        return True
