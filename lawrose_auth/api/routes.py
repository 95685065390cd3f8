from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header

from lawrose_auth.api.schemas import (
    Envelope,
    LogoutRequest,
    LogoutResponse,
    TokenPairResponse,
    TokenRefreshRequest,
)
from lawrose_auth.logging import get_logger
from lawrose_auth.service.errors import AuthenticationError
from lawrose_auth.service.runtime import get_runtime
from lawrose_auth.service.signing import Claims, TokenKind
from lawrose_auth.service.tokens import INVALID_CREDENTIAL_MESSAGE

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


async def require_access_claims(
    authorization: Optional[str] = Header(None),
) -> Claims:
    """Resolve the verified claims of the bearer access token on the request."""
    runtime = get_runtime()
    token = runtime.tokens.extract_bearer(authorization)
    if not token:
        raise AuthenticationError(INVALID_CREDENTIAL_MESSAGE)
    result = await runtime.tokens.validate_token(token, TokenKind.ACCESS)
    result.raise_for_status()
    return result.claims


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest):
    runtime = get_runtime()
    pair = await runtime.tokens.refresh_token_pair(body.refresh_token)
    return Envelope(
        status="ok",
        data=TokenPairResponse(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            expires_in=pair.expires_in,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    authorization: Optional[str] = Header(None),
    principal: Claims = Depends(require_access_claims),
):
    runtime = get_runtime()
    tokens = runtime.tokens
    revoked = 0
    if await tokens.blacklist_token(tokens.extract_bearer(authorization)):
        revoked += 1

    refresh_token = body.refresh_token if body else None
    if refresh_token:
        result = await tokens.validate_token(refresh_token, TokenKind.REFRESH)
        if result.is_valid:
            # Only the caller's own refresh token may be revoked
            if result.subject != principal.subject:
                raise AuthenticationError(INVALID_CREDENTIAL_MESSAGE)
            if await tokens.blacklist_token(refresh_token):
                revoked += 1
    logger.info("logout_complete", subject=principal.subject, revoked=revoked)
    return Envelope(status="ok", data=LogoutResponse(revoked=revoked))
