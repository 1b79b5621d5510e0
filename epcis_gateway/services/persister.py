import json
import re
import threading
import uuid
from pathlib import Path
from typing import Any, Dict, List, Protocol

from epcis_gateway.core.errors import TransientError

# Where captured events land locally: <repo_root>/data/events/<org_id>.jsonl
EVENTS_DIR = Path(__file__).resolve().parents[2] / "data" / "events"


class EventPersister(Protocol):
    def persist(self, org_id: str, events: List[Dict[str, Any]]) -> List[str]:
        """
        Durably hand events downstream and return their ids in submission order.
        Raise TransientError when the store/queue is temporarily unavailable.
        """
        ...


def _event_id(event: Dict[str, Any]) -> str:
    existing = event.get("eventID")
    if isinstance(existing, str) and existing:
        return existing
    return f"urn:uuid:{uuid.uuid4()}"


class JsonlEventPersister:
    """
    Local persister: one JSONL file per organization.

    Events that already carry an eventID keep it; others get a urn:uuid id.
    Not idempotent by content: a reprocessed batch is appended again.
    """

    def __init__(self, base_dir: Path = EVENTS_DIR):
        self.base_dir = base_dir
        self._lock = threading.Lock()

    def persist(self, org_id: str, events: List[Dict[str, Any]]) -> List[str]:
        ids: List[str] = []
        lines: List[str] = []
        for event in events:
            event_id = _event_id(event)
            ids.append(event_id)
            lines.append(json.dumps({**event, "eventID": event_id}, default=str))

        # org_id becomes a file name
        safe_org = re.sub(r"[^A-Za-z0-9_.-]", "_", org_id)
        path = self.base_dir / f"{safe_org}.jsonl"
        try:
            with self._lock:
                path.parent.mkdir(parents=True, exist_ok=True)
                with path.open("a", encoding="utf-8") as f:
                    f.write("\n".join(lines) + "\n")
        except OSError as e:
            raise TransientError(f"Event store unavailable: {e}") from e

        return ids
