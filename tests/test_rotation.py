import asyncio
from datetime import timedelta

import pytest

from sessionkeeper.service.codec import CredentialCodec
from sessionkeeper.service.errors import (
    AuthenticationError,
    InvalidTokenError,
    ReuseDetectedError,
    StoreUnavailableError,
    TokenExpiredError,
    TokenNotFoundError,
)
from sessionkeeper.service.issuer import SessionContext
from sessionkeeper.storage.errors import StoreUnavailable
from sessionkeeper.storage.models import RevokeReason, TokenKind


class TestLegitimateRotation:
    async def test_rotation_consumes_and_chains(self, service, store, clock):
        first = await service.issue_session("user-1")
        clock.advance(minutes=5)
        second = await service.rotate(first.refresh.token)

        old = store.find_token(first.refresh.token, TokenKind.REFRESH)
        new = store.find_token(second.refresh.token, TokenKind.REFRESH)
        assert old.revoked
        assert old.use_count == 1
        assert old.revoked_reason == RevokeReason.ROTATED
        assert old.last_used_at == clock.now
        assert new.family == old.family == second.family
        assert new.replaces == old.id
        assert new.use_count == 0
        assert not new.revoked
        assert second.access.token != first.access.token

    async def test_remember_me_and_metadata_inherited(self, service, store, clock):
        first = await service.issue_session(
            "user-1",
            SessionContext(
                remember_me=True,
                device_id="dev-1",
                device_name="Safari on iOS",
                ip_address="10.0.0.1",
                metadata={"auth_provider": "apple"},
            ),
        )
        clock.advance(days=1)
        second = await service.rotate(first.refresh.token, SessionContext(ip_address="10.0.0.2"))

        new = store.find_token(second.refresh.token, TokenKind.REFRESH)
        assert new.remember_me
        assert second.refresh.expires_at == clock.now + timedelta(days=30)
        assert new.device_id == "dev-1"
        assert new.device_name == "Safari on iOS"
        assert new.ip_address == "10.0.0.2"
        assert new.metadata == {"auth_provider": "apple"}

    async def test_chain_of_rotations_stays_in_family(self, service, store):
        pair = await service.issue_session("user-1")
        family = pair.family
        for _ in range(3):
            pair = await service.rotate(pair.refresh.token)
        members = store.family_tokens(family)
        assert len(members) == 4
        assert sum(1 for m in members if not m.revoked) == 1


class TestReuseDetection:
    async def test_second_presentation_revokes_family(self, service, store):
        first = await service.issue_session("user-1")
        second = await service.rotate(first.refresh.token)
        third = await service.rotate(second.refresh.token)

        with pytest.raises(ReuseDetectedError):
            await service.rotate(first.refresh.token)

        members = store.family_tokens(first.family)
        assert all(m.revoked for m in members)
        latest = store.find_token(third.refresh.token, TokenKind.REFRESH)
        assert latest.revoked_reason == RevokeReason.REUSE_DETECTED
        # descendants issued in between are dead as well
        with pytest.raises(AuthenticationError):
            await service.rotate(third.refresh.token)

    async def test_reuse_before_new_token_used(self, service, store):
        first = await service.issue_session("user-1")
        second = await service.rotate(first.refresh.token)
        with pytest.raises(ReuseDetectedError):
            await service.rotate(first.refresh.token)
        assert store.find_token(second.refresh.token, TokenKind.REFRESH).revoked

    async def test_other_families_untouched(self, service, store):
        victim = await service.issue_session("user-1")
        other_device = await service.issue_session("user-1")
        await service.rotate(victim.refresh.token)
        with pytest.raises(ReuseDetectedError):
            await service.rotate(victim.refresh.token)
        assert not store.find_token(other_device.refresh.token, TokenKind.REFRESH).revoked


class TestFailures:
    async def test_expired_row_is_deleted(self, service, store, clock):
        pair = await service.issue_session("user-1")
        record = store.find_token(pair.refresh.token, TokenKind.REFRESH)
        clock.advance(days=7)
        with pytest.raises(TokenExpiredError):
            await service.rotate(pair.refresh.token)
        assert store.get_token(record.id) is None

    async def test_expired_signed_claim(self, service, store, clock):
        pair = await service.issue_session("user-1", SessionContext(remember_me=True))
        clock.advance(days=31)
        with pytest.raises(TokenExpiredError):
            await service.rotate(pair.refresh.token)

    async def test_unknown_token(self, service, settings, clock):
        codec = CredentialCodec(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            now_fn=clock,
        )
        stray, _ = codec.issue({"sub": "user-1", "type": "refresh"}, timedelta(days=1))
        with pytest.raises(TokenNotFoundError):
            await service.rotate(stray)

    async def test_access_token_rejected(self, service):
        pair = await service.issue_session("user-1")
        with pytest.raises(InvalidTokenError):
            await service.rotate(pair.access.token)

    async def test_garbage_rejected(self, service):
        with pytest.raises(InvalidTokenError):
            await service.rotate("not.a.token")

    async def test_logged_out_token_is_not_reuse(self, service, store):
        pair = await service.issue_session("user-1")
        sibling = await service.issue_session("user-1")
        assert await service.revoke_one(pair.refresh.token) is True
        with pytest.raises(TokenNotFoundError):
            await service.rotate(pair.refresh.token)
        assert not store.find_token(sibling.refresh.token, TokenKind.REFRESH).revoked

    async def test_revoke_all_blocks_rotation(self, service):
        first = await service.issue_session("user-1")
        second = await service.issue_session("user-1")
        assert await service.revoke_all_sessions("user-1") == 2
        for pair in (first, second):
            with pytest.raises(TokenNotFoundError):
                await service.rotate(pair.refresh.token)

    async def test_store_outage_is_retryable_service_error(self, service, store, monkeypatch):
        pair = await service.issue_session("user-1")

        def broken(*args, **kwargs):
            raise StoreUnavailable("connection refused")

        monkeypatch.setattr(store, "find_token", broken)
        with pytest.raises(StoreUnavailableError) as excinfo:
            await service.rotate(pair.refresh.token)
        assert excinfo.value.retryable
        assert excinfo.value.status_code == 503


class TestConcurrency:
    async def test_parallel_rotations_have_single_winner(self, service, store):
        pair = await service.issue_session("user-1")

        results = await asyncio.gather(
            *(service.rotate(pair.refresh.token) for _ in range(5)),
            return_exceptions=True,
        )
        successes = [r for r in results if not isinstance(r, BaseException)]
        failures = [r for r in results if isinstance(r, BaseException)]
        assert len(successes) == 1
        assert len(failures) == 4
        assert all(isinstance(f, (TokenNotFoundError, ReuseDetectedError)) for f in failures)
        consumed = store.find_token(pair.refresh.token, TokenKind.REFRESH)
        assert consumed.use_count == 1

    async def test_consume_race_reports_not_found(self, service, store):
        pair = await service.issue_session("user-1")
        record = store.find_token(pair.refresh.token, TokenKind.REFRESH)
        original_find = store.find_token

        def find_then_lose_race(value, kind):
            found = original_find(value, kind)
            # another request wins the swap right after our read
            store.consume_token(record.id, used_at=record.issued_at)
            return found

        store.find_token = find_then_lose_race
        with pytest.raises(TokenNotFoundError):
            await service.rotate(pair.refresh.token)
        # the family is not punished for a benign race
        assert store.revoke_family(pair.family, "check", revoked_at=record.issued_at) == 0
        assert store.get_token(record.id).revoked_reason == RevokeReason.ROTATED
