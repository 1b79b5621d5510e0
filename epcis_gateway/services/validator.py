from datetime import datetime
from typing import Any, Dict, List, Protocol

EPCIS_EVENT_TYPES = {
    "ObjectEvent",
    "AggregationEvent",
    "TransactionEvent",
    "TransformationEvent",
    "AssociationEvent",
}


class EventValidator(Protocol):
    def validate(self, events: List[Dict[str, Any]]) -> List[str]:
        """
        Return human-readable errors; an empty list means the batch is valid.
        Raise TransientError if the validator backend is unavailable.
        """
        ...


def _valid_iso(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    try:
        datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return False
    return True


class EpcisEventValidator:
    """
    Structural EPCIS checks only: a known event type per event and a parsable
    eventTime when one is supplied. Full EPCIS schema / SHACL validation lives
    in a separate service and plugs in through the EventValidator protocol.
    """

    def validate(self, events: List[Dict[str, Any]]) -> List[str]:
        errors: List[str] = []
        for i, event in enumerate(events):
            event_type = event.get("type")
            if event_type not in EPCIS_EVENT_TYPES:
                errors.append(f"events[{i}]: unsupported event type {event_type!r}")
            if "eventTime" in event and not _valid_iso(event["eventTime"]):
                errors.append(f"events[{i}]: eventTime is not an ISO-8601 timestamp")
        return errors
