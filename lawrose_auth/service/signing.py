from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, List, Mapping, Optional, Union

from lawrose_auth.logging import get_logger
from lawrose_auth.service.errors import (
    ClaimMismatchError,
    ExpiredTokenError,
    InvalidSignatureError,
    MalformedTokenError,
    SigningError,
)

logger = get_logger(__name__)

_ALGORITHM = "HS256"
_HEADER = {"alg": _ALGORITHM, "typ": "JWT"}


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


def _from_timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MalformedTokenError("timestamp claim is not numeric")
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as exc:
        raise MalformedTokenError("timestamp claim is out of range") from exc


@dataclass(frozen=True)
class Claims:
    """Decoded payload of a signed token."""

    subject: str
    email: Optional[str]
    email_verified: bool
    token_kind: Optional[TokenKind]
    issued_at: Optional[datetime]
    expires_at: datetime
    issuer: Optional[str] = None
    audience: Union[str, List[str], None] = None
    token_id: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Claims":
        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            raise MalformedTokenError("token has no subject")
        expires_at = _from_timestamp(payload.get("exp"))
        if expires_at is None:
            raise MalformedTokenError("token has no expiry")
        raw_kind = payload.get("type")
        try:
            token_kind = TokenKind(raw_kind) if raw_kind is not None else None
        except ValueError as exc:
            raise MalformedTokenError(f"unknown token type {raw_kind!r}") from exc
        return cls(
            subject=subject,
            email=payload.get("email"),
            email_verified=bool(payload.get("email_verified", False)),
            token_kind=token_kind,
            issued_at=_from_timestamp(payload.get("iat")),
            expires_at=expires_at,
            issuer=payload.get("iss"),
            audience=payload.get("aud"),
            token_id=payload.get("jti"),
        )


class SigningEngine:
    """Creates and verifies compact HS256 tokens with issuer, audience and expiry."""

    def __init__(
        self,
        *,
        clock_skew_leeway: timedelta = timedelta(seconds=60),
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self._leeway = clock_skew_leeway
        self._clock = clock or time.time

    def accepted_until(self, claims: Claims) -> float:
        """Epoch seconds from which ``verify`` rejects the token as expired."""
        return claims.expires_at.timestamp() + self._leeway.total_seconds()

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _signature(self, secret: str, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                secret.encode("utf-8"), signing_input.encode("utf-8"), hashlib.sha256
            ).digest()
        )

    def sign(
        self,
        claims: Mapping[str, Any],
        secret: str,
        ttl: timedelta,
        issuer: str,
        audience: str,
    ) -> str:
        if not secret:
            raise SigningError("signing secret is empty")
        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject:
            raise SigningError("claims are missing a subject")
        lifetime = int(ttl.total_seconds())
        if lifetime <= 0:
            raise SigningError("token lifetime must be positive")

        issued_at = int(self._clock())
        payload = {
            **claims,
            "iss": issuer,
            "aud": audience,
            "iat": issued_at,
            "exp": issued_at + lifetime,
            "jti": claims.get("jti") or uuid.uuid4().hex,
        }
        try:
            header_enc = self._encode_segment(
                json.dumps(_HEADER, separators=(",", ":")).encode("utf-8")
            )
            payload_enc = self._encode_segment(
                json.dumps(payload, separators=(",", ":")).encode("utf-8")
            )
        except (TypeError, ValueError) as exc:
            raise SigningError(f"claims are not serializable: {exc}") from exc
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._signature(secret, signing_input)}"

    def _split(self, token: str) -> tuple[str, str, str]:
        if not isinstance(token, str):
            raise MalformedTokenError("token is not a string")
        if not token.isascii():
            raise MalformedTokenError("token contains non-ASCII characters")
        parts = token.split(".")
        if len(parts) != 3 or not all(parts):
            raise MalformedTokenError("token must have three segments")
        return parts[0], parts[1], parts[2]

    def _load_segment(self, segment: str) -> dict:
        try:
            decoded = json.loads(self._decode_segment(segment))
        except ValueError as exc:
            raise MalformedTokenError("token segment is not valid JSON") from exc
        if not isinstance(decoded, dict):
            raise MalformedTokenError("token segment is not an object")
        return decoded

    def verify(self, token: str, secret: str, issuer: str, audience: str) -> Claims:
        header_b64, payload_b64, sig_b64 = self._split(token)

        # Reject anything but HS256 to prevent algorithm confusion
        header = self._load_segment(header_b64)
        if header.get("alg") != _ALGORITHM:
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise InvalidSignatureError("unsupported signing algorithm")

        if not secret:
            raise InvalidSignatureError("no verification secret configured")
        expected_sig = self._signature(secret, f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode("utf-8"), sig_b64.encode("utf-8")):
            raise InvalidSignatureError("signature mismatch")

        payload = self._load_segment(payload_b64)
        claims = Claims.from_payload(payload)

        if self.accepted_until(claims) <= self._clock():
            raise ExpiredTokenError("token has expired")
        if claims.issuer != issuer:
            raise ClaimMismatchError("issuer mismatch")
        aud = claims.audience
        if isinstance(aud, str):
            valid_aud = aud == audience
        elif isinstance(aud, list):
            valid_aud = audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            raise ClaimMismatchError("audience mismatch")
        return claims

    def decode(self, token: str) -> Optional[Claims]:
        """Decode claims without verifying the signature.

        For inspection only; the result must never be used for trust decisions.
        """
        try:
            _, payload_b64, _ = self._split(token)
            return Claims.from_payload(self._load_segment(payload_b64))
        except (MalformedTokenError, ValueError, TypeError):
            return None


__all__ = ["Claims", "SigningEngine", "TokenKind"]
