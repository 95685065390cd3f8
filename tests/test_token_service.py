"""Tests for the TokenService facade.

Covers the token lifecycle as the login, registration and logout flows use it:
- access/refresh pair issuance and validation
- revocation, rotation and reuse detection
- magic link, email verification and password reset flows
- failure collapsing (invalid_or_expired / service_unavailable)
- cleanup of stale records and health reporting
"""

import json

import pytest

from lawrose_auth.service.errors import (
    AuthenticationError,
    ServiceUnavailableError,
    ValidationError,
)
from lawrose_auth.service.revocation import blacklist_key
from lawrose_auth.service.signing import TokenKind
from lawrose_auth.service.tokens import TokenService, TokenStatus
from lawrose_auth.storage.errors import StoreUnavailableError
from lawrose_auth.storage.memory import MemoryKeyValueStore


class UnavailableStore(MemoryKeyValueStore):
    async def get(self, key):
        raise StoreUnavailableError("store down", operation="get")

    async def set(self, key, value, ttl_ms=None, *, only_if_absent=False):
        raise StoreUnavailableError("store down", operation="set")

    async def ping(self):
        raise StoreUnavailableError("store down", operation="ping")

    async def scan(self, pattern, *, batch_size=100):
        raise StoreUnavailableError("store down", operation="scan")
        yield []


@pytest.fixture
def down_service(settings, clock):
    return TokenService(UnavailableStore(clock=clock), settings, clock=clock)


class TestTokenPair:
    async def test_generated_pair_validates(self, token_service):
        pair = token_service.generate_token_pair("user-1", "user@example.com", True)

        assert pair.token_type == "bearer"
        assert pair.expires_in == 15 * 60

        access = await token_service.validate_token(pair.access_token)
        assert access.status == TokenStatus.SUCCESS
        assert access.subject == "user-1"
        assert access.claims.email == "user@example.com"
        assert access.claims.email_verified is True

        refresh = await token_service.validate_token(pair.refresh_token, TokenKind.REFRESH)
        assert refresh.is_valid
        assert refresh.claims.token_kind == TokenKind.REFRESH

    async def test_refresh_token_not_accepted_as_access(self, token_service):
        pair = token_service.generate_token_pair("user-1", "user@example.com")
        result = await token_service.validate_token(pair.refresh_token, TokenKind.ACCESS)
        assert result.status == TokenStatus.INVALID_OR_EXPIRED

    async def test_access_token_not_accepted_as_refresh(self, token_service):
        pair = token_service.generate_token_pair("user-1", "user@example.com")
        result = await token_service.validate_token(pair.access_token, TokenKind.REFRESH)
        assert result.status == TokenStatus.INVALID_OR_EXPIRED

    async def test_kinds_use_distinct_secrets(self, token_service):
        secrets = token_service.settings.token_secrets()
        assert secrets.access != secrets.refresh
        assert len({secrets.magic_link, secrets.email_verification, secrets.password_reset}) == 3

    async def test_access_token_expires(self, token_service, clock):
        pair = token_service.generate_token_pair("user-1", "user@example.com")
        clock.advance(15 * 60 + 61)
        result = await token_service.validate_token(pair.access_token)
        assert result.status == TokenStatus.INVALID_OR_EXPIRED
        assert result.reason == "ExpiredTokenError"

    async def test_garbage_token_is_invalid(self, token_service):
        for token in ("", "garbage", "a.b.c"):
            result = await token_service.validate_token(token)
            assert result.status == TokenStatus.INVALID_OR_EXPIRED

    def test_empty_subject_rejected(self, token_service):
        with pytest.raises(AuthenticationError):
            token_service.generate_token_pair("", "user@example.com")

    async def test_raise_for_status_collapses_reason(self, token_service):
        result = await token_service.validate_token("garbage")
        with pytest.raises(AuthenticationError) as exc_info:
            result.raise_for_status()
        assert exc_info.value.message == "invalid or expired credential"


class TestRevocation:
    async def test_blacklisted_token_rejected(self, token_service):
        pair = token_service.generate_token_pair("user-1", "user@example.com")
        assert await token_service.blacklist_token(pair.access_token) is True

        result = await token_service.validate_token(pair.access_token)
        assert result.status == TokenStatus.INVALID_OR_EXPIRED
        assert result.reason == "RevokedTokenError"

    async def test_blacklisting_one_token_leaves_pair_partner_valid(self, token_service):
        pair = token_service.generate_token_pair("user-1", "user@example.com")
        await token_service.blacklist_token(pair.access_token)
        refresh = await token_service.validate_token(pair.refresh_token, TokenKind.REFRESH)
        assert refresh.is_valid

    async def test_blacklist_entry_lives_until_leeway_ends(self, token_service, store, clock):
        pair = token_service.generate_token_pair("user-1", "user@example.com")
        await token_service.blacklist_token(pair.access_token)
        clock.advance(15 * 60 + 60 - 1)
        assert await store.get(blacklist_key(pair.access_token)) is not None
        clock.advance(2)
        assert await store.get(blacklist_key(pair.access_token)) is None

    async def test_blacklisting_malformed_token_is_unauthorized(self, token_service):
        with pytest.raises(AuthenticationError):
            await token_service.blacklist_token("garbage")

    async def test_revoked_token_stays_rejected_inside_leeway(self, token_service, clock):
        pair = token_service.generate_token_pair("user-1", "user@example.com")
        await token_service.blacklist_token(pair.access_token)
        clock.advance(15 * 60 + 10)

        result = await token_service.validate_token(pair.access_token)
        assert result.status == TokenStatus.INVALID_OR_EXPIRED
        assert result.reason == "RevokedTokenError"

    async def test_logout_inside_leeway_revokes(self, token_service, clock):
        pair = token_service.generate_token_pair("user-1", "user@example.com")
        clock.advance(15 * 60 + 10)
        assert (await token_service.validate_token(pair.access_token)).is_valid

        assert await token_service.blacklist_token(pair.access_token) is True
        result = await token_service.validate_token(pair.access_token)
        assert result.status == TokenStatus.INVALID_OR_EXPIRED

    async def test_refresh_inside_leeway_rotates_once(self, token_service, clock):
        pair = token_service.generate_token_pair("user-1", "user@example.com")
        clock.advance(7 * 24 * 60 * 60 + 10)

        rotated = await token_service.refresh_token_pair(pair.refresh_token)
        assert rotated.refresh_token != pair.refresh_token
        with pytest.raises(AuthenticationError):
            await token_service.refresh_token_pair(pair.refresh_token)

    async def test_blacklist_fails_with_unavailable_store(self, down_service):
        pair = down_service.generate_token_pair("user-1", "user@example.com")
        with pytest.raises(ServiceUnavailableError):
            await down_service.blacklist_token(pair.access_token)

    async def test_validation_fails_open_when_store_unavailable(self, down_service):
        pair = down_service.generate_token_pair("user-1", "user@example.com")
        result = await down_service.validate_token(pair.access_token)
        assert result.is_valid


class TestRefreshRotation:
    async def test_refresh_issues_new_pair_and_revokes_old(self, token_service, clock):
        pair = token_service.generate_token_pair("user-1", "user@example.com", True)
        clock.advance(5)

        rotated = await token_service.refresh_token_pair(pair.refresh_token)

        assert rotated.refresh_token != pair.refresh_token
        access = await token_service.validate_token(rotated.access_token)
        assert access.subject == "user-1"
        assert access.claims.email_verified is True
        old = await token_service.validate_token(pair.refresh_token, TokenKind.REFRESH)
        assert old.status == TokenStatus.INVALID_OR_EXPIRED

    async def test_refresh_token_reuse_rejected(self, token_service):
        pair = token_service.generate_token_pair("user-1", "user@example.com")
        await token_service.refresh_token_pair(pair.refresh_token)
        with pytest.raises(AuthenticationError):
            await token_service.refresh_token_pair(pair.refresh_token)

    async def test_access_token_cannot_refresh(self, token_service):
        pair = token_service.generate_token_pair("user-1", "user@example.com")
        with pytest.raises(AuthenticationError):
            await token_service.refresh_token_pair(pair.access_token)


class TestOneTimeFlows:
    async def test_magic_link_scenario(self, token_service, clock):
        issued = await token_service.issue_magic_link("user@example.com", "user-1")

        checked = await token_service.validate_magic_link(issued.token, "user@example.com")
        assert checked.is_valid

        clock.advance(11 * 60)
        expired = await token_service.consume_magic_link(issued.token, "user@example.com")
        assert expired.status == TokenStatus.INVALID_OR_EXPIRED

    async def test_magic_link_consumed_once(self, token_service):
        issued = await token_service.issue_magic_link("user@example.com", "user-1")

        first = await token_service.consume_magic_link(issued.token, "user@example.com")
        second = await token_service.consume_magic_link(issued.token, "user@example.com")

        assert first.status == TokenStatus.SUCCESS
        assert first.subject == "user-1"
        assert second.status == TokenStatus.INVALID_OR_EXPIRED

    async def test_magic_link_email_mismatch(self, token_service):
        issued = await token_service.issue_magic_link("user@example.com", "user-1")
        result = await token_service.consume_magic_link(issued.token, "USER@example.com")
        assert result.status == TokenStatus.INVALID_OR_EXPIRED
        assert result.reason == "EmailMismatchError"

    async def test_email_verification_flow(self, token_service, clock):
        issued = await token_service.issue_email_verification("new@example.com", "user-2")
        clock.advance(23 * 60 * 60)

        assert (await token_service.validate_email_verification(issued.token, "new@example.com")).is_valid
        consumed = await token_service.consume_email_verification(issued.token, "new@example.com")
        assert consumed.subject == "user-2"
        again = await token_service.consume_email_verification(issued.token, "new@example.com")
        assert again.status == TokenStatus.INVALID_OR_EXPIRED

    async def test_verification_token_is_not_a_magic_link(self, token_service):
        issued = await token_service.issue_email_verification("new@example.com", "user-2")
        result = await token_service.consume_magic_link(issued.token, "new@example.com")
        assert result.status == TokenStatus.INVALID_OR_EXPIRED

    async def test_password_reset_expires_after_an_hour(self, token_service, clock):
        issued = await token_service.issue_password_reset("user@example.com", "user-1")
        assert issued.expires_at.timestamp() == pytest.approx(clock.now + 3600)
        clock.advance(3601)
        result = await token_service.consume_password_reset(issued.token, "user@example.com")
        assert result.status == TokenStatus.INVALID_OR_EXPIRED

    async def test_password_reset_validate_does_not_consume(self, token_service):
        issued = await token_service.issue_password_reset("user@example.com", "user-1")
        checked = await token_service.validate_password_reset(issued.token, "user@example.com")
        assert checked.is_valid
        assert checked.subject == "user-1"

        consumed = await token_service.consume_password_reset(issued.token, "user@example.com")
        assert consumed.is_valid
        after = await token_service.validate_password_reset(issued.token, "user@example.com")
        assert after.status == TokenStatus.INVALID_OR_EXPIRED

    async def test_password_reset_consumed_once(self, token_service):
        issued = await token_service.issue_password_reset("user@example.com", "user-1")
        first = await token_service.consume_password_reset(issued.token, "user@example.com")
        second = await token_service.consume_password_reset(issued.token, "user@example.com")
        assert first.is_valid
        assert not second.is_valid

    async def test_issue_without_email_is_validation_error(self, token_service):
        with pytest.raises(ValidationError):
            await token_service.issue_magic_link("", "user-1")

    async def test_one_time_operations_fail_closed(self, down_service):
        with pytest.raises(ServiceUnavailableError):
            await down_service.issue_magic_link("user@example.com", "user-1")

        result = await down_service.consume_magic_link("some-token", "user@example.com")
        assert result.status == TokenStatus.SERVICE_UNAVAILABLE
        with pytest.raises(ServiceUnavailableError):
            result.raise_for_status()


class TestInspectionHelpers:
    def test_expiration_and_subject(self, token_service, clock):
        pair = token_service.generate_token_pair("user-1", "user@example.com")
        expires = token_service.get_token_expiration(pair.access_token)
        assert int(expires.timestamp()) == int(clock.now) + 15 * 60
        assert token_service.extract_subject(pair.refresh_token) == "user-1"

    def test_helpers_return_none_for_garbage(self, token_service):
        assert token_service.get_token_expiration("garbage") is None
        assert token_service.extract_subject("garbage") is None

    @pytest.mark.parametrize(
        "header,expected",
        [
            ("Bearer abc.def.ghi", "abc.def.ghi"),
            ("bearer abc", "abc"),
            (None, None),
            ("", None),
            ("Basic abc", None),
            ("Bearer", None),
            ("Bearer a b", None),
        ],
    )
    def test_extract_bearer(self, header, expected):
        assert TokenService.extract_bearer(header) == expected


class TestHousekeeping:
    async def test_health_check(self, token_service, down_service):
        healthy = await token_service.health_check()
        assert healthy.status == "healthy"
        assert healthy.latency_ms is not None

        unhealthy = await down_service.health_check()
        assert unhealthy.status == "unhealthy"

    async def test_cleanup_removes_only_stale_records(self, token_service, store, clock):
        now_ms = int(clock.now * 1000)
        stale_record = json.dumps(
            {"subject": "s", "email": "e@x.io", "expires_at": now_ms - 1000, "purpose": "magic_link"}
        )
        live_record = json.dumps(
            {"subject": "s", "email": "e@x.io", "expires_at": now_ms + 60_000, "purpose": "magic_link"}
        )
        # Entries written without a TTL only leave the store through the sweep
        await store.set("magic_link:e@x.io:stale", stale_record)
        await store.set("magic_link:e@x.io:live", live_record)
        await store.set("verification:e@x.io:corrupt", "{broken")
        await store.set("blacklist:old", str(int(clock.now) - 120))
        # Expired, but verification still grants leeway
        await store.set("blacklist:in_leeway", str(int(clock.now) - 10))
        await store.set("blacklist:current", str(int(clock.now) + 600))
        await store.set("unrelated:key", "keep")

        report = await token_service.cleanup_expired(batch_size=2)

        assert report.removed_count == 3
        assert report.scanned_count == 6
        assert await store.get("magic_link:e@x.io:live") == live_record
        assert await store.get("blacklist:current") is not None
        assert await store.get("blacklist:in_leeway") is not None
        assert await store.get("unrelated:key") == "keep"
        assert await store.get("magic_link:e@x.io:stale") is None
        assert await store.get("blacklist:old") is None

    async def test_cleanup_keeps_live_tokens_usable(self, token_service):
        pair = token_service.generate_token_pair("user-1", "user@example.com")
        await token_service.blacklist_token(pair.access_token)
        issued = await token_service.issue_magic_link("user@example.com", "user-1")

        report = await token_service.cleanup_expired()

        assert report.removed_count == 0
        assert not (await token_service.validate_token(pair.access_token)).is_valid
        assert (await token_service.consume_magic_link(issued.token, "user@example.com")).is_valid

    async def test_cleanup_with_unavailable_store(self, down_service):
        with pytest.raises(ServiceUnavailableError):
            await down_service.cleanup_expired()

    async def test_purge_all_drops_every_token_key(self, token_service, store):
        pair = token_service.generate_token_pair("user-1", "user@example.com")
        await token_service.blacklist_token(pair.access_token)
        await token_service.issue_email_verification("user@example.com", "user-1")
        await store.set("unrelated:key", "keep")

        report = await token_service.cleanup_expired(purge_all=True)

        assert report.removed_count == 2
        assert await store.get("unrelated:key") == "keep"
        assert (await token_service.validate_token(pair.access_token)).is_valid
