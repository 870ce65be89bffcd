from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from warden.logging import get_logger

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


class TokenInvalid(Exception):
    """Signed token rejected. Deliberately carries no reason."""


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _json_segment(obj: dict[str, Any]) -> str:
    return _encode_segment(json.dumps(obj, separators=(",", ":")).encode())


class TokenSigner:
    """HS256 JWT minting and verification for one signing domain.

    Access and refresh tokens each get their own signer with an independent
    secret; the ``typ`` claim pins a token to its domain so one can never be
    replayed as the other even if the secrets were shared.
    """

    def __init__(
        self,
        secret: str,
        ttl: timedelta,
        *,
        token_type: str,
        issuer: str,
        audience: str,
        leeway: timedelta = timedelta(0),
    ) -> None:
        if not secret:
            raise ValueError("signing secret must not be empty")
        self._key = secret.encode()
        self.ttl = ttl
        self.token_type = token_type
        self.issuer = issuer
        self.audience = audience
        self.leeway = leeway

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        return _encode_segment(digest)

    def mint(self, subject: str, now: Optional[datetime] = None) -> str:
        issued = now or datetime.now(timezone.utc)
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": subject,
            "typ": self.token_type,
            "iat": int(issued.timestamp()),
            "exp": int((issued + self.ttl).timestamp()),
            "jti": str(uuid.uuid4()),
        }
        signing_input = f"{_json_segment({'alg': 'HS256', 'typ': 'JWT'})}.{_json_segment(payload)}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(self, token: str, now: Optional[datetime] = None) -> str:
        """Return the subject of a valid token or raise :class:`TokenInvalid`."""
        if not token:
            raise TokenInvalid()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalid() from None

        try:
            header = json.loads(_decode_segment(header_b64))
        except (binascii.Error, ValueError):
            raise TokenInvalid() from None
        # Reject alg=none and friends before touching the signature
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", token_type=self.token_type)
            raise TokenInvalid()

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise TokenInvalid()

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (binascii.Error, ValueError):
            raise TokenInvalid() from None
        if not isinstance(payload, dict):
            raise TokenInvalid()
        if payload.get("iss") != self.issuer or payload.get("typ") != self.token_type:
            raise TokenInvalid()
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise TokenInvalid()

        exp = payload.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            raise TokenInvalid()
        current = (now or datetime.now(timezone.utc)).timestamp()
        if exp <= current - self.leeway.total_seconds():
            raise TokenInvalid()

        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            raise TokenInvalid()
        return subject


@dataclass(frozen=True)
class OneTimeToken:
    token: str
    token_hash: str
    expires_at: datetime


def hash_one_time_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def issue_one_time_token(ttl: timedelta, now: Optional[datetime] = None) -> OneTimeToken:
    """Generate a 256-bit single-use secret; only its hash is meant to be stored."""
    token = secrets.token_hex(32)
    issued = now or datetime.now(timezone.utc)
    return OneTimeToken(
        token=token, token_hash=hash_one_time_token(token), expires_at=issued + ttl
    )


__all__ = [
    "ACCESS",
    "REFRESH",
    "OneTimeToken",
    "TokenInvalid",
    "TokenSigner",
    "hash_one_time_token",
    "issue_one_time_token",
]
