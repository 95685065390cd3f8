from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from lawrose_auth.config import Settings
from lawrose_auth.logging import get_logger
from lawrose_auth.service.errors import (
    AuthenticationError,
    MalformedTokenError,
    OneTimeTokenError,
    RevokedTokenError,
    ServiceUnavailableError,
    SigningError,
    TokenError,
    ValidationError,
    WrongTokenKindError,
)
from lawrose_auth.service.one_time import (
    IssuedToken,
    OneTimePurpose,
    OneTimeTokenManager,
    record_expiry,
)
from lawrose_auth.service.revocation import RevocationRegistry
from lawrose_auth.service.signing import Claims, SigningEngine, TokenKind
from lawrose_auth.storage.common import (
    BLACKLIST_PREFIX,
    DEFAULT_SCAN_BATCH_SIZE,
    SWEEP_PATTERNS,
    KeyValueStore,
)
from lawrose_auth.storage.errors import StoreUnavailableError

logger = get_logger(__name__)

INVALID_CREDENTIAL_MESSAGE = "invalid or expired credential"
SERVICE_UNAVAILABLE_MESSAGE = "token service temporarily unavailable"


class TokenStatus(str, Enum):
    SUCCESS = "success"
    INVALID_OR_EXPIRED = "invalid_or_expired"
    SERVICE_UNAVAILABLE = "service_unavailable"


@dataclass(frozen=True)
class TokenResult:
    """Caller-facing outcome of a validation.

    ``reason`` names the internal failure for logs and must not be shown to
    end users.
    """

    status: TokenStatus
    claims: Optional[Claims] = None
    subject: Optional[str] = None
    reason: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        return self.status == TokenStatus.SUCCESS

    def raise_for_status(self, message: str = INVALID_CREDENTIAL_MESSAGE) -> "TokenResult":
        if self.status == TokenStatus.SERVICE_UNAVAILABLE:
            raise ServiceUnavailableError(SERVICE_UNAVAILABLE_MESSAGE)
        if self.status != TokenStatus.SUCCESS:
            raise AuthenticationError(message)
        return self


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"


@dataclass(frozen=True)
class HealthStatus:
    status: str
    latency_ms: Optional[float] = None


@dataclass(frozen=True)
class CleanupReport:
    removed_count: int
    scanned_count: int = 0


def _invalid(reason: type[Exception] | str) -> TokenResult:
    name = reason if isinstance(reason, str) else reason.__name__
    return TokenResult(status=TokenStatus.INVALID_OR_EXPIRED, reason=name)


class TokenService:
    """Token lifecycle operations for the login, registration and logout flows.

    Combines the signing engine, one-time token manager and revocation
    registry. Every internal failure is recovered here into a ``TokenResult``
    or one of two caller-facing errors; the distinctions are only logged.
    """

    def __init__(
        self,
        store: KeyValueStore,
        settings: Settings,
        *,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock or time.time
        self._secrets = settings.token_secrets()
        self.signing = SigningEngine(
            clock_skew_leeway=settings.clock_skew_leeway, clock=self._clock
        )
        self.one_time = OneTimeTokenManager(
            store,
            {
                OneTimePurpose.MAGIC_LINK: self._secrets.magic_link,
                OneTimePurpose.EMAIL_VERIFICATION: self._secrets.email_verification,
                OneTimePurpose.PASSWORD_RESET: self._secrets.password_reset,
            },
            clock=self._clock,
        )
        self.revocation = RevocationRegistry(store, self.signing, clock=self._clock)
        self._one_time_ttls = {
            OneTimePurpose.MAGIC_LINK: timedelta(minutes=settings.magic_link_ttl_minutes),
            OneTimePurpose.EMAIL_VERIFICATION: timedelta(
                minutes=settings.email_verification_ttl_minutes
            ),
            OneTimePurpose.PASSWORD_RESET: timedelta(
                minutes=settings.password_reset_ttl_minutes
            ),
        }

    def _secret_for(self, kind: TokenKind) -> str:
        if kind == TokenKind.REFRESH:
            return self._secrets.refresh
        return self._secrets.access

    def _ttl_for(self, kind: TokenKind) -> timedelta:
        if kind == TokenKind.REFRESH:
            return self.settings.refresh_token_ttl
        return self.settings.access_token_ttl

    # ------------------------------------------------------------------
    # Signed tokens
    # ------------------------------------------------------------------

    def _sign(self, kind: TokenKind, subject: str, email: str, email_verified: bool) -> str:
        return self.signing.sign(
            {
                "sub": subject,
                "email": email,
                "email_verified": email_verified,
                "type": kind.value,
            },
            self._secret_for(kind),
            self._ttl_for(kind),
            self.settings.jwt_issuer,
            self.settings.jwt_audience,
        )

    def generate_token_pair(
        self, subject: str, email: str, email_verified: bool = False
    ) -> TokenPair:
        """Issue an access and a refresh token; either both or neither."""
        start = time.perf_counter()
        try:
            access_token = self._sign(TokenKind.ACCESS, subject, email, email_verified)
            refresh_token = self._sign(TokenKind.REFRESH, subject, email, email_verified)
        except SigningError as exc:
            logger.error("token_pair_generation_failed", subject=subject, error=str(exc))
            raise AuthenticationError(INVALID_CREDENTIAL_MESSAGE) from exc
        logger.debug(
            "token_pair_generated",
            subject=subject,
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=int(self.settings.access_token_ttl.total_seconds()),
        )

    async def validate_token(
        self, token: str, expected_kind: TokenKind = TokenKind.ACCESS
    ) -> TokenResult:
        if not token:
            return _invalid(MalformedTokenError)
        # Cheap revocation check first avoids verifying known-revoked tokens
        if await self.revocation.is_blacklisted(token):
            logger.info("token_validation_failed", reason=RevokedTokenError.__name__)
            return _invalid(RevokedTokenError)
        try:
            claims = self.signing.verify(
                token,
                self._secret_for(expected_kind),
                self.settings.jwt_issuer,
                self.settings.jwt_audience,
            )
        except TokenError as exc:
            logger.warning(
                "token_validation_failed",
                reason=type(exc).__name__,
                expected_kind=expected_kind.value,
                error=str(exc),
            )
            return _invalid(type(exc))
        if claims.token_kind != expected_kind:
            logger.warning(
                "token_validation_failed",
                reason=WrongTokenKindError.__name__,
                expected_kind=expected_kind.value,
            )
            return _invalid(WrongTokenKindError)
        return TokenResult(
            status=TokenStatus.SUCCESS, claims=claims, subject=claims.subject
        )

    async def blacklist_token(self, token: str) -> bool:
        """Revoke a signed token until it would have expired anyway (logout)."""
        try:
            return await self.revocation.blacklist(token)
        except MalformedTokenError as exc:
            logger.warning("blacklist_token_malformed")
            raise AuthenticationError(INVALID_CREDENTIAL_MESSAGE) from exc
        except StoreUnavailableError as exc:
            logger.error("blacklist_token_failed", error=str(exc))
            raise ServiceUnavailableError(SERVICE_UNAVAILABLE_MESSAGE) from exc

    async def refresh_token_pair(self, refresh_token: str) -> TokenPair:
        """Rotate a refresh token: revoke it and issue a fresh pair.

        The revocation is set-if-absent, so a refresh token replayed
        concurrently only yields one new pair.
        """
        result = await self.validate_token(refresh_token, TokenKind.REFRESH)
        result.raise_for_status()
        claims = result.claims
        try:
            newly_revoked = await self.revocation.blacklist(refresh_token)
        except StoreUnavailableError as exc:
            logger.error("refresh_rotation_failed", error=str(exc))
            raise ServiceUnavailableError(SERVICE_UNAVAILABLE_MESSAGE) from exc
        if not newly_revoked:
            logger.warning("refresh_token_reused", subject=claims.subject)
            raise AuthenticationError(INVALID_CREDENTIAL_MESSAGE)
        return self.generate_token_pair(
            claims.subject, claims.email or "", claims.email_verified
        )

    def get_token_expiration(self, token: str) -> Optional[datetime]:
        """Expiry of a token, read without verification."""
        claims = self.signing.decode(token)
        return claims.expires_at if claims else None

    def extract_subject(self, token: str) -> Optional[str]:
        """Subject of a token, read without verification."""
        claims = self.signing.decode(token)
        return claims.subject if claims else None

    @staticmethod
    def extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header or not isinstance(header, str):
            return None
        parts = header.split(" ")
        if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1]:
            return None
        return parts[1]

    # ------------------------------------------------------------------
    # One-time tokens
    # ------------------------------------------------------------------

    async def _issue_one_time(
        self, purpose: OneTimePurpose, email: str, subject: str
    ) -> IssuedToken:
        try:
            return await self.one_time.issue(
                purpose, subject, email, self._one_time_ttls[purpose]
            )
        except SigningError as exc:
            raise ValidationError(str(exc)) from exc
        except StoreUnavailableError as exc:
            logger.error(
                "one_time_token_issue_failed", purpose=purpose.value, error=str(exc)
            )
            raise ServiceUnavailableError(SERVICE_UNAVAILABLE_MESSAGE) from exc

    async def _check_one_time(
        self, purpose: OneTimePurpose, token: str, email: str, *, consume: bool
    ) -> TokenResult:
        check = self.one_time.consume if consume else self.one_time.validate
        try:
            record = await check(purpose, token, email)
        except OneTimeTokenError as exc:
            logger.warning(
                "one_time_token_rejected",
                purpose=purpose.value,
                reason=type(exc).__name__,
            )
            return _invalid(type(exc))
        except StoreUnavailableError as exc:
            # Fail closed: an unverifiable one-time token is never accepted
            logger.error(
                "one_time_token_check_failed", purpose=purpose.value, error=str(exc)
            )
            return TokenResult(
                status=TokenStatus.SERVICE_UNAVAILABLE,
                reason=StoreUnavailableError.__name__,
            )
        return TokenResult(status=TokenStatus.SUCCESS, subject=record.subject)

    async def issue_magic_link(self, email: str, subject: str) -> IssuedToken:
        return await self._issue_one_time(OneTimePurpose.MAGIC_LINK, email, subject)

    async def validate_magic_link(self, token: str, email: str) -> TokenResult:
        return await self._check_one_time(
            OneTimePurpose.MAGIC_LINK, token, email, consume=False
        )

    async def consume_magic_link(self, token: str, email: str) -> TokenResult:
        return await self._check_one_time(
            OneTimePurpose.MAGIC_LINK, token, email, consume=True
        )

    async def issue_email_verification(self, email: str, subject: str) -> IssuedToken:
        return await self._issue_one_time(
            OneTimePurpose.EMAIL_VERIFICATION, email, subject
        )

    async def validate_email_verification(self, token: str, email: str) -> TokenResult:
        return await self._check_one_time(
            OneTimePurpose.EMAIL_VERIFICATION, token, email, consume=False
        )

    async def consume_email_verification(self, token: str, email: str) -> TokenResult:
        return await self._check_one_time(
            OneTimePurpose.EMAIL_VERIFICATION, token, email, consume=True
        )

    async def issue_password_reset(self, email: str, subject: str) -> IssuedToken:
        return await self._issue_one_time(OneTimePurpose.PASSWORD_RESET, email, subject)

    async def validate_password_reset(self, token: str, email: str) -> TokenResult:
        return await self._check_one_time(
            OneTimePurpose.PASSWORD_RESET, token, email, consume=False
        )

    async def consume_password_reset(self, token: str, email: str) -> TokenResult:
        return await self._check_one_time(
            OneTimePurpose.PASSWORD_RESET, token, email, consume=True
        )

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def _is_stale(self, key: str, value: str, now: float) -> bool:
        if key.startswith(f"{BLACKLIST_PREFIX}:"):
            # Revocations must outlast the leeway verification still grants
            try:
                expires_ts: Optional[float] = (
                    float(value) + self.settings.clock_skew_leeway.total_seconds()
                )
            except ValueError:
                expires_ts = None
        else:
            expires_ts = record_expiry(value)
        return expires_ts is None or expires_ts <= now

    async def cleanup_expired(
        self, batch_size: Optional[int] = None, *, purge_all: bool = False
    ) -> CleanupReport:
        """Remove token records whose embedded expiry has passed.

        Store TTLs already evict entries; this sweep reclaims keys that ended
        up without a TTL and is safe to run against live data because
        unexpired records are never touched. ``purge_all`` is a manual
        housekeeping switch that drops every token key, revocations included.
        """
        size = batch_size or self.settings.cleanup_batch_size or DEFAULT_SCAN_BATCH_SIZE
        removed = 0
        scanned = 0
        try:
            for pattern in SWEEP_PATTERNS:
                async for batch in self.store.scan(pattern, batch_size=size):
                    scanned += len(batch)
                    if purge_all:
                        removed += await self.store.delete(*batch)
                        continue
                    values = await self.store.get_many(batch)
                    now = self._clock()
                    stale = [
                        key
                        for key, value in zip(batch, values)
                        if value is not None and self._is_stale(key, value, now)
                    ]
                    if stale:
                        removed += await self.store.delete(*stale)
        except StoreUnavailableError as exc:
            logger.error("token_cleanup_failed", removed=removed, error=str(exc))
            raise ServiceUnavailableError(SERVICE_UNAVAILABLE_MESSAGE) from exc
        logger.info(
            "token_cleanup_complete",
            removed_count=removed,
            scanned=scanned,
            purge_all=purge_all,
        )
        return CleanupReport(removed_count=removed, scanned_count=scanned)

    async def health_check(self) -> HealthStatus:
        start = time.perf_counter()
        try:
            await self.store.ping()
        except StoreUnavailableError as exc:
            logger.error("token_store_health_check_failed", error=str(exc))
            return HealthStatus(status="unhealthy")
        latency = (time.perf_counter() - start) * 1000
        return HealthStatus(status="healthy", latency_ms=round(latency, 2))


__all__ = [
    "CleanupReport",
    "HealthStatus",
    "INVALID_CREDENTIAL_MESSAGE",
    "TokenPair",
    "TokenResult",
    "TokenService",
    "TokenStatus",
]
