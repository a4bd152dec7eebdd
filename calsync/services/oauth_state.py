"""
Signed OAuth state tokens.

The state travels through the provider's consent screen and back to our
callback. It is authenticated with HMAC-SHA256 but not encrypted, so it must
never carry secrets.

Token format: ``<base64url(payload json)>.<base64url(hmac(secret, payload segment))>``
"""

import base64
import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog
from pydantic import ValidationError

from calsync.models.calendar_sync import OAuthStatePayload
from calsync.services.exceptions import InvalidStateError, ProviderConfigurationError

logger = structlog.get_logger()

STATE_VERSION = 1
STATE_TTL = timedelta(minutes=20)


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(value: str) -> bytes:
    padded = value + "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


class OAuthStateCodec:
    """Creates and verifies tamper-proof OAuth state tokens."""

    def __init__(self, secret: Optional[str]):
        self._secret = secret

    def _sign(self, payload_segment: str) -> str:
        if not self._secret:
            raise ProviderConfigurationError("Missing CALENDAR_OAUTH_STATE_SECRET.")
        digest = hmac.new(
            self._secret.encode("utf-8"),
            payload_segment.encode("utf-8"),
            hashlib.sha256
        ).digest()
        return _b64url_encode(digest)

    def create(self, payload: OAuthStatePayload) -> str:
        """Serialize and sign a state payload."""
        payload_json = json.dumps(payload.model_dump(by_alias=True), separators=(",", ":"))
        payload_segment = _b64url_encode(payload_json.encode("utf-8"))
        return f"{payload_segment}.{self._sign(payload_segment)}"

    def parse(self, token: str) -> OAuthStatePayload:
        """
        Verify a state token and return its payload.

        Only authenticity is checked here; callers enforce freshness
        with is_fresh().

        Raises:
            InvalidStateError: If the token is malformed or the signature does not match
        """
        payload_segment, _, signature = (token or "").partition(".")
        if not payload_segment or not signature:
            raise InvalidStateError("Invalid OAuth state.")

        expected = self._sign(payload_segment)
        if not hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8")):
            logger.warning("oauth_state_signature_mismatch")
            raise InvalidStateError("OAuth state signature mismatch.")

        try:
            data = json.loads(_b64url_decode(payload_segment).decode("utf-8"))
            return OAuthStatePayload.model_validate(data)
        except (ValueError, ValidationError) as e:
            raise InvalidStateError("OAuth state payload is unreadable.") from e


def now_ms(now: Optional[datetime] = None) -> int:
    """Milliseconds since the epoch."""
    moment = now or datetime.now(timezone.utc)
    return int(moment.timestamp() * 1000)


def is_fresh(payload: OAuthStatePayload, now: Optional[datetime] = None, ttl: timedelta = STATE_TTL) -> bool:
    """True when the state was issued no more than ``ttl`` ago."""
    age_ms = now_ms(now) - payload.issued_at_ms
    return age_ms <= ttl.total_seconds() * 1000
