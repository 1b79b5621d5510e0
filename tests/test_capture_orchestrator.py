import json
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import pytest

from epcis_gateway.core.errors import (
    AlreadyProcessingError,
    BadRequestError,
    BadSignatureError,
    ClockSkewError,
    InternalError,
    TransientError,
)
from epcis_gateway.core.idempotency import IdempotencyCoordinator, IdempotencyKey
from epcis_gateway.core.lease_store import InMemoryLeaseStore, StoreUnavailable
from epcis_gateway.core.signature import SignatureVerifier, StaticSecretResolver, sign_request
from epcis_gateway.services.capture import CaptureOrchestrator

ORG = "org-1"
SECRET = "org-1-shared-secret-value"
NOW = datetime(2026, 10, 19, 12, 0, 0, tzinfo=timezone.utc)
BODY = b'{"events":[{"type":"ObjectEvent"}]}'


class FakeClock:
    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeValidator:
    def __init__(self, errors=None, exc=None):
        self.errors = errors or []
        self.exc = exc
        self.calls = []

    def validate(self, events):
        self.calls.append(events)
        if self.exc:
            raise self.exc
        return list(self.errors)


class FakePersister:
    def __init__(self, failures=None, gate=None):
        # failures: exceptions raised on successive calls before succeeding
        self.failures = list(failures or [])
        self.gate = gate
        self.calls = []

    def persist(self, org_id, events):
        self.calls.append({"org_id": org_id, "events": events})
        if self.gate is not None:
            self.gate.wait(timeout=10)
        if self.failures:
            raise self.failures.pop(0)
        return [f"urn:uuid:evt-{len(self.calls)}-{i}" for i in range(len(events))]


class FakeSink:
    def __init__(self):
        self.calls = []

    def notify(self, record):
        self.calls.append(record)


class CountingStore(InMemoryLeaseStore):
    def __init__(self, clock=time.time):
        super().__init__(clock=clock)
        self.ops = []

    def get(self, key):
        self.ops.append("get")
        return super().get(key)

    def set_with_ttl(self, key, value, ttl_seconds):
        self.ops.append("set_with_ttl")
        return super().set_with_ttl(key, value, ttl_seconds)

    def set_if_absent_with_ttl(self, key, value, ttl_seconds):
        self.ops.append("set_if_absent_with_ttl")
        return super().set_if_absent_with_ttl(key, value, ttl_seconds)


class ResultWriteFailsStore(InMemoryLeaseStore):
    def set_with_ttl(self, key, value, ttl_seconds):
        raise StoreUnavailable("result cache down")


def _make(store=None, validator=None, persister=None, sink=None):
    store = store if store is not None else InMemoryLeaseStore()
    validator = validator or FakeValidator()
    persister = persister or FakePersister()
    sink = sink or FakeSink()
    orchestrator = CaptureOrchestrator(
        verifier=SignatureVerifier(StaticSecretResolver({ORG: SECRET}), clock=lambda: NOW),
        coordinator=IdempotencyCoordinator(store, lease_ttl_seconds=300),
        validator=validator,
        persister=persister,
        failure_sink=sink,
    )
    return orchestrator, store, validator, persister, sink


def _headers(body: bytes = BODY, key: str = "abc123", secret: str = SECRET):
    headers = sign_request(secret, body, date=NOW)
    headers["X-Idempotency-Key"] = key
    return headers


def test_first_capture_accepts_and_second_replays_cached_result():
    orchestrator, _, _, persister, _ = _make()

    first = orchestrator.capture(BODY, _headers(), ORG)
    second = orchestrator.capture(BODY, _headers(), ORG)

    assert first.accepted is True
    assert first.ingested_count == 1
    assert second.model_dump_json() == first.model_dump_json()
    assert len(persister.calls) == 1


def test_lease_is_released_after_success():
    orchestrator, store, _, _, _ = _make()

    orchestrator.capture(BODY, _headers(), ORG)

    assert store.exists(IdempotencyKey(ORG, "abc123").lease_key()) is False


def test_headers_are_case_insensitive():
    orchestrator, _, _, _, _ = _make()
    headers = {k.lower(): v for k, v in _headers().items()}

    assert orchestrator.capture(BODY, headers, ORG).accepted is True


def test_same_client_key_is_independent_per_org():
    orchestrator, _, _, persister, _ = _make()
    orchestrator.verifier.resolver = StaticSecretResolver({ORG: SECRET, "org-2": "org-2-shared-secret-value"})

    orchestrator.capture(BODY, _headers(), ORG)
    orchestrator.capture(BODY, _headers(secret="org-2-shared-secret-value"), "org-2")

    assert [c["org_id"] for c in persister.calls] == [ORG, "org-2"]


def test_validation_failure_is_cached_and_not_persisted():
    validator = FakeValidator(errors=["events[0]: unsupported event type 'Nope'"])
    orchestrator, _, validator, persister, _ = _make(validator=validator)

    first = orchestrator.capture(BODY, _headers(), ORG)
    second = orchestrator.capture(BODY, _headers(), ORG)

    assert first.accepted is False
    assert first.ingested_count == 0
    assert first.errors == ["events[0]: unsupported event type 'Nope'"]
    assert second == first
    assert len(validator.calls) == 1
    assert persister.calls == []


@pytest.mark.parametrize(
    "body",
    [b"", b"not json", b"[]", b"{}", b'{"events":[]}', b'{"events":"x"}', b'{"events":[1,2]}'],
)
def test_malformed_body_is_bad_request_without_store_access(body):
    store = CountingStore()
    orchestrator, _, _, _, _ = _make(store=store)

    with pytest.raises(BadRequestError):
        orchestrator.capture(body, _headers(body=body), ORG)

    assert store.ops == []


def test_missing_idempotency_key_is_bad_request():
    store = CountingStore()
    orchestrator, _, _, _, _ = _make(store=store)
    headers = _headers()
    del headers["X-Idempotency-Key"]

    with pytest.raises(BadRequestError):
        orchestrator.capture(BODY, headers, ORG)

    assert store.ops == []


def test_tampered_body_is_rejected_without_store_access():
    store = CountingStore()
    orchestrator, _, _, persister, _ = _make(store=store)
    tampered = b'{"events":[{"type":"ObjectEvenT"}]}'

    with pytest.raises(BadSignatureError):
        orchestrator.capture(tampered, _headers(body=BODY), ORG)

    assert store.ops == []
    assert persister.calls == []


def test_stale_date_is_rejected():
    orchestrator, _, _, _, _ = _make()
    headers = sign_request(SECRET, BODY, date=datetime(2026, 10, 19, 11, 0, 0, tzinfo=timezone.utc))
    headers["X-Idempotency-Key"] = "abc123"

    with pytest.raises(ClockSkewError):
        orchestrator.capture(BODY, headers, ORG)


def test_cache_checked_before_lease():
    store = CountingStore()
    orchestrator, _, _, _, _ = _make(store=store)
    orchestrator.capture(BODY, _headers(), ORG)
    store.ops.clear()

    orchestrator.capture(BODY, _headers(), ORG)

    assert store.ops == ["get"]


def test_concurrent_same_key_only_one_reaches_persister():
    gate = threading.Event()
    persister = FakePersister(gate=gate)
    orchestrator, _, validator, persister, _ = _make(persister=persister)

    n = 8
    barrier = threading.Barrier(n)
    conflicts = []
    lock = threading.Lock()

    def attempt():
        barrier.wait()
        try:
            return orchestrator.capture(BODY, _headers(), ORG)
        except AlreadyProcessingError:
            with lock:
                conflicts.append(1)
            return None

    with ThreadPoolExecutor(max_workers=n) as pool:
        futures = [pool.submit(attempt) for _ in range(n)]
        deadline = time.monotonic() + 10
        while len(conflicts) < n - 1 and time.monotonic() < deadline:
            time.sleep(0.01)
        gate.set()
        outcomes = [f.result(timeout=10) for f in futures]

    accepted = [o for o in outcomes if o is not None]
    assert len(accepted) == 1
    assert accepted[0].accepted is True
    assert len(conflicts) == n - 1
    assert len(validator.calls) == 1
    assert len(persister.calls) == 1


def test_abandoned_lease_blocks_until_ttl_then_recovers():
    clock = FakeClock()
    store = InMemoryLeaseStore(clock=clock)
    orchestrator, _, _, persister, _ = _make(store=store)

    # Simulated crash: lease acquired, never released
    orchestrator.coordinator.try_acquire_lease(IdempotencyKey(ORG, "abc123"))

    with pytest.raises(AlreadyProcessingError):
        orchestrator.capture(BODY, _headers(), ORG)
    assert persister.calls == []

    clock.advance(301)
    result = orchestrator.capture(BODY, _headers(), ORG)

    assert result.accepted is True
    assert len(persister.calls) == 1


def test_transient_persist_failure_is_not_cached_and_retry_succeeds():
    persister = FakePersister(failures=[TransientError("queue unavailable")])
    orchestrator, store, _, persister, sink = _make(persister=persister)
    key = IdempotencyKey(ORG, "abc123")

    with pytest.raises(TransientError):
        orchestrator.capture(BODY, _headers(), ORG)

    assert store.get(key.result_key()) is None
    assert store.exists(key.lease_key()) is False
    assert sink.calls[-1].stage == "persist"

    result = orchestrator.capture(BODY, _headers(), ORG)
    assert result.accepted is True
    assert len(persister.calls) == 2


def test_transient_validator_failure_is_not_cached():
    validator = FakeValidator(exc=TransientError("validator down"))
    orchestrator, store, _, persister, _ = _make(validator=validator)

    with pytest.raises(TransientError):
        orchestrator.capture(BODY, _headers(), ORG)

    assert store.get(IdempotencyKey(ORG, "abc123").result_key()) is None
    assert persister.calls == []


def test_unexpected_error_releases_lease_and_is_not_cached():
    persister = FakePersister(failures=[RuntimeError("disk on fire")])
    orchestrator, store, _, _, sink = _make(persister=persister)
    key = IdempotencyKey(ORG, "abc123")

    with pytest.raises(InternalError):
        orchestrator.capture(BODY, _headers(), ORG)

    assert store.exists(key.lease_key()) is False
    assert store.get(key.result_key()) is None
    assert sink.calls[-1].error_code == "INTERNAL"
    assert sink.calls[-1].context["error_type"] == "RuntimeError"


def test_lease_store_outage_is_transient():
    class DownOnAcquire(InMemoryLeaseStore):
        def set_if_absent_with_ttl(self, key, value, ttl_seconds):
            raise StoreUnavailable("down")

    orchestrator, _, _, persister, sink = _make(store=DownOnAcquire())

    with pytest.raises(TransientError):
        orchestrator.capture(BODY, _headers(), ORG)

    assert persister.calls == []
    assert sink.calls[-1].error_code == "LEASE_STORE_UNAVAILABLE"


def test_result_write_failure_still_returns_result_and_releases_lease():
    store = ResultWriteFailsStore()
    orchestrator, _, _, _, sink = _make(store=store)

    result = orchestrator.capture(BODY, _headers(), ORG)

    assert result.accepted is True
    assert store.exists(IdempotencyKey(ORG, "abc123").lease_key()) is False
    assert sink.calls[-1].error_code == "RESULT_NOT_CACHED"


def test_multi_event_batch_ids_in_order():
    body = json.dumps({"events": [{"type": "ObjectEvent"}, {"type": "AggregationEvent"}]}).encode()
    orchestrator, _, _, _, _ = _make()

    result = orchestrator.capture(body, _headers(body=body, key="batch-2"), ORG)

    assert result.ingested_count == 2
    assert result.event_ids == ["urn:uuid:evt-1-0", "urn:uuid:evt-1-1"]


class InterleavingCoordinator(IdempotencyCoordinator):
    """
    The first cache read misses, then a competing capture for the same key runs
    to completion (lease, persist, store, release) before the caller continues.
    """

    def __init__(self, store):
        super().__init__(store, lease_ttl_seconds=300)
        self.competing_capture = None
        self.reads = 0

    def get_cached_result(self, key):
        self.reads += 1
        if self.reads == 1:
            self.competing_capture()
            return None
        return super().get_cached_result(key)


def test_capture_finishing_between_cache_miss_and_lease_is_not_repeated():
    coordinator = InterleavingCoordinator(InMemoryLeaseStore())
    persister = FakePersister()
    orchestrator = CaptureOrchestrator(
        verifier=SignatureVerifier(StaticSecretResolver({ORG: SECRET}), clock=lambda: NOW),
        coordinator=coordinator,
        validator=FakeValidator(),
        persister=persister,
        failure_sink=FakeSink(),
    )
    competing = []
    coordinator.competing_capture = lambda: competing.append(orchestrator.capture(BODY, _headers(), ORG))

    result = orchestrator.capture(BODY, _headers(), ORG)

    assert len(competing) == 1
    assert len(persister.calls) == 1
    assert result == competing[0]
    assert coordinator.is_processing(IdempotencyKey(ORG, "abc123")) is False
