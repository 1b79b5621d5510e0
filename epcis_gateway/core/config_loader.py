import json
import os
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError


CONFIG_DIR = Path(__file__).resolve().parents[2] / "configs"

MIN_SECRET_LENGTH = 16


class OrganizationSecret(BaseModel):
    org_id: str = Field(..., min_length=1, description="Organization identifier resolved by upstream auth")
    secret: str = Field(..., description="Shared HMAC secret for this organization")


class OrgSecretsConfig(BaseModel):
    """
    Per-organization HMAC secrets.

    Provisioning happens outside the gateway; this file is the hand-off point.
    """

    version: str = Field(..., description="Config version string")
    organizations: List[OrganizationSecret] = Field(..., description="Organizations allowed to capture")

    def validate_internal_consistency(self) -> None:
        if not self.organizations:
            raise ValueError("Org secrets config must list at least one organization")

        seen = set()
        for org in self.organizations:
            if org.org_id in seen:
                raise ValueError(f"Duplicate org_id '{org.org_id}' in org secrets config")
            seen.add(org.org_id)
            if len(org.secret) < MIN_SECRET_LENGTH:
                raise ValueError(
                    f"Secret for org '{org.org_id}' must be at least {MIN_SECRET_LENGTH} characters"
                )

    def as_mapping(self) -> Dict[str, str]:
        return {org.org_id: org.secret for org in self.organizations}


def default_org_secrets_path() -> Path:
    override = os.getenv("ORG_SECRETS_PATH")
    return Path(override) if override else CONFIG_DIR / "org_secrets.json"


def load_org_secrets(path: Optional[Path] = None) -> OrgSecretsConfig:
    """
    Load and validate organization secrets.
    Raises on missing file, invalid structure or internal inconsistency.
    """
    config_path = path or default_org_secrets_path()

    if not config_path.exists():
        raise FileNotFoundError(f"Org secrets config not found: {config_path}")

    raw = json.loads(config_path.read_text(encoding="utf-8"))

    try:
        cfg = OrgSecretsConfig.model_validate(raw)
    except ValidationError as e:
        raise RuntimeError(f"Org secrets config validation failed: {e}") from e

    cfg.validate_internal_consistency()
    return cfg
