"""
HMAC-SHA256 request signing and verification for capture producers.

Canonical string: "{date_header}." + raw_body
Signature header: X-Signature: sha256=<hex>

The Date header is part of the signed material, so a captured request cannot be
replayed with a fresh Date once it falls outside the clock-skew window.

SECURITY: never log secrets or signature values.
"""

import hashlib
import hmac
import re
import secrets
from datetime import datetime, timezone
from email.utils import format_datetime, parsedate_to_datetime
from typing import Callable, Dict, Optional, Protocol

from epcis_gateway.core.errors import (
    BadRequestError,
    BadSignatureError,
    ClockSkewError,
    UnknownOrganizationError,
)

HEADER_SIGNATURE = "X-Signature"
HEADER_DATE = "Date"
SIGNATURE_PREFIX = "sha256="
DEFAULT_MAX_SKEW_SECONDS = 300

_SIGNATURE_RE = re.compile(r"^(?:sha256=)?([a-fA-F0-9]{64})$")


class SecretResolver(Protocol):
    def resolve(self, org_id: str) -> Optional[str]:
        """Return the organization's shared secret, or None if unknown."""
        ...


class StaticSecretResolver:
    """Secrets held in memory, typically loaded from the org secrets config file."""

    def __init__(self, secrets_by_org: Dict[str, str]):
        self._secrets = dict(secrets_by_org)

    def resolve(self, org_id: str) -> Optional[str]:
        return self._secrets.get(org_id)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_date_header(value: Optional[str]) -> datetime:
    """
    Parse an HTTP-date (RFC 7231) or, failing that, an ISO-8601 timestamp.
    Naive timestamps are taken as UTC.
    """
    if value is None or not value.strip():
        raise BadRequestError("Missing Date header")

    raw = value.strip()
    parsed: Optional[datetime] = None
    try:
        parsed = parsedate_to_datetime(raw)
    except (TypeError, ValueError, IndexError):
        parsed = None

    if parsed is None:
        try:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            raise BadRequestError("Unparsable Date header") from None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def compute_signature(secret: str, date_header: str, body: bytes) -> str:
    """Hex digest of HMAC-SHA256(secret, "{date_header}." + body)."""
    canonical = f"{date_header}.".encode("utf-8") + body
    return hmac.new(
        key=secret.encode("utf-8"),
        msg=canonical,
        digestmod=hashlib.sha256,
    ).hexdigest()


def sign_request(secret: str, body: bytes, date: Optional[datetime] = None) -> Dict[str, str]:
    """
    Produce the headers a producer must send with `body`.

    Example:
        >>> headers = sign_request("org-secret-value-123", b'{"events":[]}')
        >>> sorted(headers)
        ['Date', 'X-Signature']
    """
    date_header = format_datetime(date or _utc_now(), usegmt=True)
    signature = compute_signature(secret, date_header, body)
    return {
        HEADER_DATE: date_header,
        HEADER_SIGNATURE: f"{SIGNATURE_PREFIX}{signature}",
    }


def generate_secret(length: int = 32) -> str:
    """Random URL-safe secret suitable for provisioning a new organization."""
    return secrets.token_urlsafe(length)


class SignatureVerifier:
    """
    Pure verification of a signed capture request.

    Order of checks: Date present and parsable, clock skew, organization known,
    signature well-formed and matching. The first failing check raises.
    """

    def __init__(
        self,
        resolver: SecretResolver,
        max_skew_seconds: int = DEFAULT_MAX_SKEW_SECONDS,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.resolver = resolver
        self.max_skew_seconds = max_skew_seconds
        self._clock = clock

    def verify(
        self,
        body: bytes,
        signature_header: Optional[str],
        date_header: Optional[str],
        org_id: str,
    ) -> None:
        request_time = parse_date_header(date_header)

        skew = abs((self._clock() - request_time).total_seconds())
        if skew > self.max_skew_seconds:
            raise ClockSkewError(
                f"Date header outside allowed clock skew of {self.max_skew_seconds}s",
                context={"skew_seconds": round(skew, 3)},
            )

        secret = self.resolver.resolve(org_id)
        if not secret:
            raise UnknownOrganizationError("Unknown organization", context={"org_id": org_id})

        match = _SIGNATURE_RE.match((signature_header or "").strip())
        if not match:
            raise BadSignatureError("Missing or malformed X-Signature header")

        expected = compute_signature(secret, date_header.strip(), body)
        if not hmac.compare_digest(expected, match.group(1).lower()):
            raise BadSignatureError("Signature mismatch")
