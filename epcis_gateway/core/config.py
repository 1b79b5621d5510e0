import os
from typing import Mapping, Optional

from pydantic import BaseModel, Field, ValidationError, model_validator


class GatewaySettings(BaseModel):
    result_ttl_seconds: int = Field(24 * 60 * 60, gt=0, description="How long a CaptureResult stays cached")
    lease_ttl_seconds: int = Field(5 * 60, gt=0, description="Processing lease lifetime (crash recovery bound)")
    clock_skew_seconds: int = Field(5 * 60, ge=0, description="Allowed |now - Date| for signed requests")
    request_timeout_seconds: float = Field(30.0, gt=0, description="Server-side deadline for one capture")
    lease_store_backend: str = Field("sqlite", description="sqlite | firestore | memory")

    @model_validator(mode="after")
    def deadline_shorter_than_lease(self) -> "GatewaySettings":
        # A request must never outlive the lease it created
        if self.request_timeout_seconds >= self.lease_ttl_seconds:
            raise ValueError(
                "REQUEST_TIMEOUT_SECONDS must be shorter than LEASE_TTL_SECONDS"
            )
        if self.lease_store_backend not in {"sqlite", "firestore", "memory"}:
            raise ValueError(f"Unknown LEASE_STORE_BACKEND '{self.lease_store_backend}'")
        return self


_ENV_FIELDS = {
    "RESULT_TTL_SECONDS": "result_ttl_seconds",
    "LEASE_TTL_SECONDS": "lease_ttl_seconds",
    "CLOCK_SKEW_SECONDS": "clock_skew_seconds",
    "REQUEST_TIMEOUT_SECONDS": "request_timeout_seconds",
    "LEASE_STORE_BACKEND": "lease_store_backend",
}


def load_settings(environ: Optional[Mapping[str, str]] = None) -> GatewaySettings:
    """
    Build settings from environment variables. Unset variables keep their defaults.
    Raises RuntimeError on invalid values.
    """
    env = os.environ if environ is None else environ
    raw = {}
    for env_name, field_name in _ENV_FIELDS.items():
        value = env.get(env_name)
        if value is not None and value.strip() != "":
            raw[field_name] = value.strip().lower() if field_name == "lease_store_backend" else value.strip()

    try:
        return GatewaySettings.model_validate(raw)
    except ValidationError as e:
        raise RuntimeError(f"Gateway settings validation failed: {e}") from e
