import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from epcis_gateway.core.logging import get_logger, log_event


DEFAULT_FAILURE_PATH = Path(__file__).resolve().parents[2] / "data" / "failures.jsonl"


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class FailureRecord:
    """
    Canonical failure record for operator-visible sinks.
    Keep this stable; alerting and ops reports map to these fields.
    """

    timestamp: str
    stage: str  # capture | validate | persist | idempotency
    error_code: str
    message: str
    context: Dict[str, Any]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "stage": self.stage,
            "error_code": self.error_code,
            "message": self.message,
            "context": self.context,
        }


class FailureSink:
    """
    Failure sink interface.

    Anything the gateway does not cache (transient and internal failures) and
    any lost result write must reach a sink, so no failure is silent.
    """

    def notify(self, record: FailureRecord) -> None:
        raise NotImplementedError


class JsonlFileFailureSink(FailureSink):
    """
    Operator-visible local failure sink.

    Writes one JSON object per line into data/failures.jsonl (or FAILURE_SINK_PATH).
    """

    def __init__(self, path: Optional[Path] = None):
        override = os.getenv("FAILURE_SINK_PATH")
        self.path = path or (Path(override) if override else DEFAULT_FAILURE_PATH)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def notify(self, record: FailureRecord) -> None:
        with self.path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(record.as_dict(), default=str) + "\n")


class LoggingFailureSink(FailureSink):
    """
    Sink that only emits a structured `failure_recorded` log line.
    Useful for unit tests or environments that collect logs centrally.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or get_logger()

    def notify(self, record: FailureRecord) -> None:
        log_event(self.logger, event_name="failure_recorded", fields=record.as_dict(), level=logging.ERROR)


def get_failure_sink() -> FailureSink:
    """
    Factory for selecting failure sink backend.

    FAILURE_SINK_BACKEND:
      - "file" (default) -> JsonlFileFailureSink
      - "log"            -> LoggingFailureSink
    """
    backend = os.getenv("FAILURE_SINK_BACKEND", "file").strip().lower()
    if backend == "log":
        return LoggingFailureSink()
    return JsonlFileFailureSink()


def make_failure(
    stage: str,
    error_code: str,
    message: str,
    context: Optional[Dict[str, Any]] = None,
) -> FailureRecord:
    return FailureRecord(
        timestamp=_utc_now_iso(),
        stage=stage,
        error_code=error_code,
        message=message,
        context=context or {},
    )
