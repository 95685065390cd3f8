from __future__ import annotations

import hashlib
import math
import time
from typing import Callable, Optional

from lawrose_auth.logging import get_logger
from lawrose_auth.service.errors import MalformedTokenError
from lawrose_auth.service.signing import SigningEngine
from lawrose_auth.storage.common import BLACKLIST_PREFIX, KeyValueStore
from lawrose_auth.storage.errors import StoreUnavailableError

logger = get_logger(__name__)


def token_fingerprint(token: str) -> str:
    """One-way digest of a signed token; the store never holds raw bearer tokens."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def blacklist_key(token: str) -> str:
    return f"{BLACKLIST_PREFIX}:{token_fingerprint(token)}"


class RevocationRegistry:
    """Blacklist of signed tokens, each entry living only as long as its token."""

    def __init__(
        self,
        store: KeyValueStore,
        signing: SigningEngine,
        *,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.store = store
        self.signing = signing
        self._clock = clock or time.time

    async def blacklist(self, token: str) -> bool:
        """Revoke ``token`` until verification would reject it anyway.

        The entry outlives ``exp`` by the clock-skew leeway, since the
        signing engine keeps accepting the token for that long. Returns True
        only when this call created the entry; False when the token is past
        its leeway or was already revoked.
        """
        claims = self.signing.decode(token)
        if claims is None:
            raise MalformedTokenError("cannot revoke an undecodable token")
        expires_ts = claims.expires_at.timestamp()
        ttl_ms = math.ceil((self.signing.accepted_until(claims) - self._clock()) * 1000)
        if ttl_ms <= 0:
            logger.debug("blacklist_skipped_expired", subject=claims.subject)
            return False
        stored = await self.store.set(
            blacklist_key(token), str(int(expires_ts)), ttl_ms, only_if_absent=True
        )
        if not stored:
            logger.debug("blacklist_already_present", subject=claims.subject)
            return False
        logger.info(
            "token_blacklisted",
            subject=claims.subject,
            token_id=claims.token_id,
            fingerprint=token_fingerprint(token),
            kind=claims.token_kind.value if claims.token_kind else None,
            ttl_ms=ttl_ms,
        )
        return True

    async def is_blacklisted(self, token: str) -> bool:
        try:
            return await self.store.get(blacklist_key(token)) is not None
        except StoreUnavailableError as exc:
            # Fail open: a store outage must not become a global logout.
            logger.warning("blacklist_check_failed_open", error=str(exc))
            return False


__all__ = ["RevocationRegistry", "blacklist_key", "token_fingerprint"]
