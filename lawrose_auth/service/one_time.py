from __future__ import annotations

import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Mapping, Optional, Tuple

from lawrose_auth.logging import get_logger
from lawrose_auth.service.errors import (
    EmailMismatchError,
    NotFoundOrExpiredError,
    OneTimeTokenExpiredError,
    SigningError,
)
from lawrose_auth.storage.common import (
    EMAIL_VERIFICATION_PREFIX,
    MAGIC_LINK_PREFIX,
    PASSWORD_RESET_PREFIX,
    KeyValueStore,
)
from lawrose_auth.storage.errors import StoreUnavailableError

logger = get_logger(__name__)

# 32 bytes of entropy, URL-safe base64 (43 characters)
TOKEN_ENTROPY_BYTES = 32


class OneTimePurpose(str, Enum):
    MAGIC_LINK = "magic_link"
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"


_KEY_PREFIXES = {
    OneTimePurpose.MAGIC_LINK: MAGIC_LINK_PREFIX,
    OneTimePurpose.EMAIL_VERIFICATION: EMAIL_VERIFICATION_PREFIX,
    OneTimePurpose.PASSWORD_RESET: PASSWORD_RESET_PREFIX,
}


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_at: datetime


@dataclass(frozen=True)
class OneTimeTokenRecord:
    subject: str
    email: str
    expires_at: datetime
    purpose: OneTimePurpose

    def to_json(self) -> str:
        return json.dumps(
            {
                "subject": self.subject,
                "email": self.email,
                "expires_at": int(self.expires_at.timestamp() * 1000),
                "purpose": self.purpose.value,
            },
            separators=(",", ":"),
        )

    @classmethod
    def from_json(cls, raw: str) -> "OneTimeTokenRecord":
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("record is not an object")
        expires_ms = data["expires_at"]
        if isinstance(expires_ms, bool) or not isinstance(expires_ms, (int, float)):
            raise ValueError("expires_at is not numeric")
        subject = data["subject"]
        email = data["email"]
        if not isinstance(subject, str) or not isinstance(email, str):
            raise ValueError("subject and email must be strings")
        return cls(
            subject=subject,
            email=email,
            expires_at=datetime.fromtimestamp(expires_ms / 1000.0, tz=timezone.utc),
            purpose=OneTimePurpose(data["purpose"]),
        )


def record_expiry(raw: str) -> Optional[float]:
    """Return the embedded expiry (epoch seconds) of a stored record, or None if undecodable."""
    try:
        return OneTimeTokenRecord.from_json(raw).expires_at.timestamp()
    except (ValueError, KeyError, TypeError, OverflowError):
        return None


class OneTimeTokenManager:
    """Issues, validates and consumes single-use tokens held in the key-value store.

    Records are keyed by purpose, case-folded email and an HMAC of the raw
    token, so the raw token never reaches the store and lookups are bound to
    the claimed identity.
    """

    def __init__(
        self,
        store: KeyValueStore,
        purpose_secrets: Mapping[OneTimePurpose, str],
        *,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        missing = [p.value for p in OneTimePurpose if not purpose_secrets.get(p)]
        if missing:
            raise SigningError(f"missing one-time token secrets: {', '.join(missing)}")
        self.store = store
        self._secrets = dict(purpose_secrets)
        self._clock = clock or time.time

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def _key(self, purpose: OneTimePurpose, token: str, email: str) -> str:
        digest = hmac.new(
            self._secrets[purpose].encode("utf-8"), token.encode("utf-8"), hashlib.sha256
        ).hexdigest()
        return f"{_KEY_PREFIXES[purpose]}:{email.casefold()}:{digest}"

    async def issue(
        self, purpose: OneTimePurpose, subject: str, email: str, ttl: timedelta
    ) -> IssuedToken:
        if not subject or not email:
            raise SigningError("one-time tokens require a subject and an email")
        ttl_ms = int(ttl.total_seconds() * 1000)
        if ttl_ms <= 0:
            raise SigningError("one-time token lifetime must be positive")

        token = secrets.token_urlsafe(TOKEN_ENTROPY_BYTES)
        expires_at = self._now() + timedelta(milliseconds=ttl_ms)
        record = OneTimeTokenRecord(
            subject=subject, email=email, expires_at=expires_at, purpose=purpose
        )
        stored = await self.store.set(
            self._key(purpose, token, email), record.to_json(), ttl_ms, only_if_absent=True
        )
        if not stored:
            raise SigningError("one-time token collided with a live record")
        logger.info("one_time_token_issued", purpose=purpose.value, subject=subject)
        return IssuedToken(token=token, expires_at=expires_at)

    async def _load(
        self, purpose: OneTimePurpose, token: str, email: str
    ) -> Tuple[str, str, OneTimeTokenRecord]:
        if not token or not email:
            raise NotFoundOrExpiredError("token and email are required")
        key = self._key(purpose, token, email)
        raw = await self.store.get(key)
        if raw is None:
            raise NotFoundOrExpiredError("no live record for token")
        try:
            record = OneTimeTokenRecord.from_json(raw)
        except (ValueError, KeyError, TypeError, OverflowError) as exc:
            logger.warning("one_time_token_record_corrupt", purpose=purpose.value)
            raise NotFoundOrExpiredError("stored record is unreadable") from exc

        if record.expires_at <= self._now():
            try:
                await self.store.delete(key)
            except StoreUnavailableError as exc:
                logger.warning(
                    "one_time_token_expired_delete_failed",
                    purpose=purpose.value,
                    error=str(exc),
                )
            raise OneTimeTokenExpiredError("one-time token has expired")

        if not hmac.compare_digest(record.email.encode("utf-8"), email.encode("utf-8")):
            raise EmailMismatchError("one-time token was issued for a different email")
        return key, raw, record

    async def validate(
        self, purpose: OneTimePurpose, token: str, email: str
    ) -> OneTimeTokenRecord:
        _, _, record = await self._load(purpose, token, email)
        return record

    async def consume(
        self, purpose: OneTimePurpose, token: str, email: str
    ) -> OneTimeTokenRecord:
        """Validate and remove the record; at most one concurrent caller succeeds."""
        key, raw, record = await self._load(purpose, token, email)
        if not await self.store.delete_if_equals(key, raw):
            raise NotFoundOrExpiredError("one-time token was already consumed")
        logger.info(
            "one_time_token_consumed", purpose=purpose.value, subject=record.subject
        )
        return record


__all__ = [
    "IssuedToken",
    "OneTimePurpose",
    "OneTimeTokenManager",
    "OneTimeTokenRecord",
    "TOKEN_ENTROPY_BYTES",
    "record_expiry",
]
