import asyncio
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from epcis_gateway.core.auth import require_ops_api_key, require_org_id
from epcis_gateway.core.config import GatewaySettings, load_settings
from epcis_gateway.core.config_loader import default_org_secrets_path, load_org_secrets
from epcis_gateway.core.errors import CaptureError, DeadlineExceededError
from epcis_gateway.core.failure_sink import FailureSink, get_failure_sink
from epcis_gateway.core.idempotency import IdempotencyCoordinator
from epcis_gateway.core.lease_store import LeaseStore, get_lease_store
from epcis_gateway.core.logging import get_logger, log_event
from epcis_gateway.core.signature import SignatureVerifier, StaticSecretResolver
from epcis_gateway.domain.schemas import CaptureResult, ErrorResponse
from epcis_gateway.services.capture import CaptureOrchestrator
from epcis_gateway.services.persister import JsonlEventPersister
from epcis_gateway.services.validator import EpcisEventValidator

logger = get_logger()


def _startup_validate_configs() -> None:
    """
    Fail fast on bad settings or a missing/invalid org secrets file.
    """
    load_settings()
    cfg = load_org_secrets()
    log_event(
        logger,
        event_name="startup_configs_validated",
        fields={"org_secrets_version": cfg.version, "organizations": len(cfg.organizations)},
    )


@asynccontextmanager
async def lifespan(_: FastAPI):
    _startup_validate_configs()
    yield


def _load_secret_resolver() -> StaticSecretResolver:
    path = default_org_secrets_path()
    if not path.exists():
        # Startup validation rejects this; tolerated at import so tooling can load the app
        log_event(logger, event_name="org_secrets_missing", fields={"path": str(path)})
        return StaticSecretResolver({})
    return StaticSecretResolver(load_org_secrets(path).as_mapping())


def build_orchestrator(
    settings: GatewaySettings,
    store: LeaseStore,
    resolver: StaticSecretResolver,
    sink: FailureSink,
) -> CaptureOrchestrator:
    return CaptureOrchestrator(
        verifier=SignatureVerifier(resolver, max_skew_seconds=settings.clock_skew_seconds),
        coordinator=IdempotencyCoordinator(
            store,
            result_ttl_seconds=settings.result_ttl_seconds,
            lease_ttl_seconds=settings.lease_ttl_seconds,
        ),
        validator=EpcisEventValidator(),
        persister=JsonlEventPersister(),
        failure_sink=sink,
    )


app = FastAPI(title="EPCIS Capture Gateway", lifespan=lifespan)

settings = load_settings()

# Lease store backend is selectable (sqlite for local, firestore for shared, memory for tests)
lease_store = get_lease_store(settings.lease_store_backend)

failure_sink = get_failure_sink()

orchestrator = build_orchestrator(settings, lease_store, _load_secret_resolver(), failure_sink)


@app.exception_handler(CaptureError)
async def capture_error_handler(_: Request, exc: CaptureError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.get("/ops/ping")
def ops_ping(_: None = Depends(require_ops_api_key)):
    """
    Minimal protected ops endpoint.
    Requires header: X-API-Key: <OPS_API_KEY>
    """
    return {"status": "ok"}


@app.post("/ops/purge-expired")
def ops_purge_expired(_: None = Depends(require_ops_api_key)):
    """
    Reclaim expired leases and cached results on backends that expire lazily.
    """
    removed = lease_store.purge_expired()
    log_event(logger, event_name="lease_store_purged", fields={"removed": removed})
    return {"removed": removed}


@app.post(
    "/capture",
    response_model=CaptureResult,
    status_code=202,
    responses={
        200: {"model": CaptureResult, "description": "Batch rejected by validation (cached)"},
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
        504: {"model": ErrorResponse},
    },
)
@app.post("/api/epcis/capture", response_model=CaptureResult, status_code=202, include_in_schema=False)
async def capture_events(
    request: Request,
    response: Response,
    org_id: str = Depends(require_org_id),
) -> CaptureResult:
    """
    Capture a signed batch of EPCIS events.

    Required headers: X-Org-Id, X-Idempotency-Key, X-Signature, Date.
    The raw body is read before JSON parsing because the signature covers the exact bytes.
    """
    raw_body = await request.body()

    try:
        result = await asyncio.wait_for(
            run_in_threadpool(orchestrator.capture, raw_body, request.headers, org_id),
            timeout=settings.request_timeout_seconds,
        )
    except asyncio.TimeoutError:
        # The worker thread keeps running and releases its lease when done
        log_event(
            logger,
            event_name="capture_deadline_exceeded",
            fields={
                "org_id": org_id,
                "idempotency_key": request.headers.get("x-idempotency-key"),
                "timeout_seconds": settings.request_timeout_seconds,
            },
        )
        raise DeadlineExceededError("Capture deadline exceeded; retry with the same key")

    if not result.accepted:
        response.status_code = 200
    return result
