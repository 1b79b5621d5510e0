import logging
import time
from typing import Any, Dict, List, Mapping, Optional

from pydantic import ValidationError

from epcis_gateway.core.errors import (
    AlreadyProcessingError,
    BadRequestError,
    CaptureError,
    InternalError,
    TransientError,
)
from epcis_gateway.core.failure_sink import FailureSink, make_failure
from epcis_gateway.core.idempotency import IdempotencyCoordinator, IdempotencyKey, Lease
from epcis_gateway.core.lease_store import StoreUnavailable
from epcis_gateway.core.logging import get_logger, log_event
from epcis_gateway.core.signature import SignatureVerifier
from epcis_gateway.domain.schemas import CaptureRequest, CaptureResult
from epcis_gateway.services.persister import EventPersister
from epcis_gateway.services.validator import EventValidator

HEADER_IDEMPOTENCY_KEY = "x-idempotency-key"
HEADER_SIGNATURE = "x-signature"
HEADER_DATE = "date"


class CaptureOrchestrator:
    """
    Request-level capture pipeline:
      - parse body, require X-Idempotency-Key
      - verify signature + clock skew (no store access before this passes)
      - cached result short-circuit (checked before any lease attempt)
      - acquire processing lease or report ALREADY_PROCESSING
      - validate -> persist -> cache result
      - release the lease on every exit path

    Validation failures are results (accepted=False) and are cached like
    successes. Transient and internal failures are never cached.
    """

    def __init__(
        self,
        verifier: SignatureVerifier,
        coordinator: IdempotencyCoordinator,
        validator: EventValidator,
        persister: EventPersister,
        failure_sink: FailureSink,
        logger: Optional[logging.Logger] = None,
    ):
        self.verifier = verifier
        self.coordinator = coordinator
        self.validator = validator
        self.persister = persister
        self.failure_sink = failure_sink
        self.logger = logger or get_logger()

    def capture(self, raw_body: bytes, headers: Mapping[str, str], org_id: str) -> CaptureResult:
        h = {k.lower(): v for k, v in headers.items()}
        client_key = (h.get(HEADER_IDEMPOTENCY_KEY) or "").strip()

        try:
            request = self._parse(raw_body)
            if not client_key:
                raise BadRequestError("Missing X-Idempotency-Key header")
            self.verifier.verify(raw_body, h.get(HEADER_SIGNATURE), h.get(HEADER_DATE), org_id)
        except CaptureError as e:
            log_event(
                self.logger,
                event_name="capture_rejected",
                fields={
                    "reason": e.error_code,
                    "detail": e.message,
                    "org_id": org_id,
                    "idempotency_key": client_key or None,
                    **e.context,
                },
                level=logging.WARNING,
            )
            raise

        key = IdempotencyKey(org_id=org_id, client_key=client_key)

        # Idempotent short-circuit: a completed submission never re-enters processing
        cached = self.coordinator.get_cached_result(key)
        if cached is not None:
            log_event(
                self.logger,
                event_name="capture_cache_hit",
                fields={
                    "org_id": org_id,
                    "idempotency_key": client_key,
                    "accepted": cached.accepted,
                    "ingested_count": cached.ingested_count,
                },
            )
            return cached

        try:
            lease = self.coordinator.try_acquire_lease(key)
        except StoreUnavailable as e:
            self._notify("idempotency", "LEASE_STORE_UNAVAILABLE", str(e), key)
            raise TransientError("Lease store unavailable; retry later") from e

        if lease is None:
            log_event(
                self.logger,
                event_name="capture_conflict",
                fields={"org_id": org_id, "idempotency_key": client_key},
            )
            raise AlreadyProcessingError("Idempotency key is currently being processed")

        log_event(
            self.logger,
            event_name="capture_lease_acquired",
            fields={
                "org_id": org_id,
                "idempotency_key": client_key,
                "lease_token": lease.token,
                "lease_ttl_seconds": lease.ttl_seconds,
                "event_count": len(request.events),
            },
        )

        try:
            # A competing worker may have finished and released between our first
            # cache read and the lease acquisition
            cached = self.coordinator.get_cached_result(key)
            if cached is not None:
                log_event(
                    self.logger,
                    event_name="capture_cache_hit",
                    fields={
                        "org_id": org_id,
                        "idempotency_key": client_key,
                        "accepted": cached.accepted,
                        "ingested_count": cached.ingested_count,
                        "after_lease": True,
                    },
                )
                return cached
            return self._process(key, lease, request.events)
        finally:
            self.coordinator.release_lease(key)
            log_event(
                self.logger,
                event_name="lease_released",
                fields={"org_id": org_id, "idempotency_key": client_key, "lease_token": lease.token},
            )

    def _parse(self, raw_body: bytes) -> CaptureRequest:
        try:
            return CaptureRequest.model_validate_json(raw_body)
        except ValidationError as e:
            raise BadRequestError(
                "Request must be a JSON object with a non-empty events array of objects",
                context={"validation_errors": e.error_count()},
            ) from e

    def _process(self, key: IdempotencyKey, lease: Lease, events: List[Dict[str, Any]]) -> CaptureResult:
        started = time.monotonic()

        try:
            errors = self.validator.validate(events)
        except TransientError as e:
            self._transient("validate", key, e)
            raise
        except Exception as e:
            raise self._internal("validate", key, e) from e

        if errors:
            result = CaptureResult.rejected(errors)
            self._store(key, result)
            log_event(
                self.logger,
                event_name="capture_validation_failed",
                fields={
                    "org_id": key.org_id,
                    "idempotency_key": key.client_key,
                    "errors": errors,
                    "duration_ms": int((time.monotonic() - started) * 1000),
                },
            )
            return result

        # Validation may have eaten into the lease; extend it before the side effect
        if not self.coordinator.refresh_lease(lease):
            log_event(
                self.logger,
                event_name="lease_refresh_failed",
                fields={"org_id": key.org_id, "idempotency_key": key.client_key, "lease_token": lease.token},
                level=logging.WARNING,
            )

        try:
            event_ids = self.persister.persist(key.org_id, events)
        except TransientError as e:
            self._transient("persist", key, e)
            raise
        except Exception as e:
            raise self._internal("persist", key, e) from e

        result = CaptureResult.ingested(event_ids)
        self._store(key, result)
        log_event(
            self.logger,
            event_name="capture_accepted",
            fields={
                "org_id": key.org_id,
                "idempotency_key": key.client_key,
                "ingested_count": result.ingested_count,
                "duration_ms": int((time.monotonic() - started) * 1000),
            },
        )
        return result

    def _store(self, key: IdempotencyKey, result: CaptureResult) -> None:
        if not self.coordinator.store_result(key, result):
            # Caller still gets the result; a retry may reprocess
            self._notify(
                "idempotency",
                "RESULT_NOT_CACHED",
                "Capture result could not be cached",
                key,
                {"accepted": result.accepted},
            )

    def _transient(self, stage: str, key: IdempotencyKey, error: TransientError) -> None:
        log_event(
            self.logger,
            event_name="capture_transient_failure",
            fields={
                "stage": stage,
                "org_id": key.org_id,
                "idempotency_key": key.client_key,
                "error": error.message,
            },
            level=logging.WARNING,
        )
        self._notify(stage, error.error_code, error.message, key)

    def _internal(self, stage: str, key: IdempotencyKey, error: Exception) -> InternalError:
        log_event(
            self.logger,
            event_name="capture_failed",
            fields={
                "stage": stage,
                "org_id": key.org_id,
                "idempotency_key": key.client_key,
                "error_type": type(error).__name__,
                "error": str(error),
            },
            level=logging.ERROR,
        )
        self._notify(stage, InternalError.error_code, str(error), key, {"error_type": type(error).__name__})
        return InternalError("Capture processing failed")

    def _notify(
        self,
        stage: str,
        error_code: str,
        message: str,
        key: IdempotencyKey,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        context = {"org_id": key.org_id, "idempotency_key": key.client_key, **(extra or {})}
        self.failure_sink.notify(make_failure(stage=stage, error_code=error_code, message=message, context=context))
