import os
from fastapi import Header, HTTPException

from epcis_gateway.core.errors import MissingOrganizationError


def require_ops_api_key(x_api_key: str | None = Header(default=None, alias="X-API-Key")) -> None:
    expected = os.getenv("OPS_API_KEY")
    if not expected:
        raise HTTPException(status_code=500, detail="OPS_API_KEY not configured")
    if x_api_key != expected:
        raise HTTPException(status_code=403, detail="Forbidden")


def require_org_id(x_org_id: str | None = Header(default=None, alias="X-Org-Id")) -> str:
    """
    Organization id as resolved by the upstream auth layer (gateway/JWT proxy).
    The capture service trusts this header; it only proves possession of the
    org secret through the request signature.
    """
    org_id = (x_org_id or "").strip()
    if not org_id:
        raise MissingOrganizationError("Missing X-Org-Id header")
    return org_id
