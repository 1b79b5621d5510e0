from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field, field_validator


class CaptureRequest(BaseModel):
    """
    Inbound capture envelope.
    Events are opaque at this layer; semantic checks belong to the validator.
    """

    events: List[Dict[str, Any]] = Field(
        ...,
        description="Non-empty batch of EPCIS event objects",
    )

    @field_validator("events")
    def events_not_empty(cls, v: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        if not v:
            raise ValueError("events must be a non-empty array")
        return v


class CaptureResult(BaseModel):
    """
    Outcome of processing one capture request.

    Immutable once produced. The same shape is returned for fresh, cached,
    accepted and rejected submissions; only `accepted` and `errors` differ.
    """

    model_config = ConfigDict(frozen=True)

    accepted: bool = Field(..., description="True if the batch was validated and persisted")
    ingested_count: int = Field(0, description="Number of events handed to the persister")
    event_ids: List[str] = Field(
        default_factory=list,
        description="Identifiers assigned by the persister, in submission order",
    )
    errors: List[str] = Field(
        default_factory=list,
        description="Validation errors when accepted is false",
    )

    @classmethod
    def rejected(cls, errors: List[str]) -> "CaptureResult":
        return cls(accepted=False, ingested_count=0, event_ids=[], errors=list(errors))

    @classmethod
    def ingested(cls, event_ids: List[str]) -> "CaptureResult":
        return cls(accepted=True, ingested_count=len(event_ids), event_ids=list(event_ids), errors=[])


class ErrorResponse(BaseModel):
    detail: str = Field(..., description="Human-readable error message")
    error_code: str = Field(..., description="Machine-readable error code, e.g. BAD_SIGNATURE")
