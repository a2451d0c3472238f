from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional

from sessionkeeper.logging import get_logger
from sessionkeeper.service.codec import CodecError, CodecFailure, CredentialCodec
from sessionkeeper.service.errors import (
    InvalidTokenError,
    ReuseDetectedError,
    TokenExpiredError,
    TokenNotFoundError,
)
from sessionkeeper.service.issuer import SessionContext, TokenIssuer, TokenPair
from sessionkeeper.service.store_ops import call_store
from sessionkeeper.storage.base import TokenStore
from sessionkeeper.storage.models import RevokeReason, TokenKind, utcnow

logger = get_logger(__name__)


class RotationEngine:
    """Exchanges a refresh token for a new pair, at most once per token.

    A record moves from fresh to consumed (``use_count=1``, reason
    ``rotated``) through the store's compare-and-swap, never through a
    read-then-write here. Presenting a consumed token again revokes the whole
    family. Every failure is terminal for the attempt; nothing is retried.
    """

    def __init__(
        self,
        store: TokenStore,
        codec: CredentialCodec,
        issuer: TokenIssuer,
        *,
        now_fn: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.codec = codec
        self.issuer = issuer
        self._now = now_fn

    async def rotate(
        self, refresh_token: str, context: Optional[SessionContext] = None
    ) -> TokenPair:
        context = context or SessionContext()
        try:
            claims = self.codec.verify(refresh_token, expected_kind=TokenKind.REFRESH)
        except CodecError as exc:
            logger.info("refresh_token_rejected", reason=exc.reason.value)
            if exc.reason == CodecFailure.EXPIRED:
                raise TokenExpiredError("refresh token expired") from exc
            raise InvalidTokenError("invalid refresh token") from exc

        record = await call_store(self.store.find_token, refresh_token, TokenKind.REFRESH)
        if record is None or record.principal_id != claims.subject:
            logger.info("refresh_token_unknown", jti=claims.token_id)
            raise TokenNotFoundError("refresh token not found")

        if record.use_count > 0:
            revoked = await call_store(
                self.store.revoke_family,
                record.family,
                RevokeReason.REUSE_DETECTED,
                revoked_at=self._now(),
            )
            logger.error(
                "refresh_reuse_detected",
                principal_id=record.principal_id,
                family=record.family,
                token_id=record.id,
                revoked_count=revoked,
                ip_address=context.ip_address,
            )
            raise ReuseDetectedError("refresh token reuse detected")

        if record.revoked:
            logger.warning(
                "refresh_revoked_token_presented",
                principal_id=record.principal_id,
                family=record.family,
                token_id=record.id,
                revoked_reason=record.revoked_reason,
            )
            raise TokenNotFoundError("refresh token not found")

        now = self._now()
        if record.is_expired(now):
            await call_store(self.store.delete_token, record.id)
            logger.info(
                "refresh_expired_deleted",
                principal_id=record.principal_id,
                token_id=record.id,
            )
            raise TokenExpiredError("refresh token expired")

        consumed = await call_store(self.store.consume_token, record.id, used_at=now)
        if not consumed:
            # Another request consumed or revoked it between the read and the swap
            logger.warning(
                "refresh_rotation_conflict",
                principal_id=record.principal_id,
                token_id=record.id,
            )
            raise TokenNotFoundError("refresh token not found")

        pair = await self.issuer.mint(
            record.principal_id,
            family=record.family,
            replaces=record.id,
            remember_me=record.remember_me,
            device_id=context.device_id or record.device_id,
            device_name=context.device_name or record.device_name,
            user_agent=context.user_agent or record.user_agent,
            ip_address=context.ip_address or record.ip_address,
            metadata={**record.metadata, **context.metadata},
        )
        logger.info(
            "refresh_rotated",
            principal_id=record.principal_id,
            family=record.family,
            replaces=record.id,
            token_id=pair.session_id,
        )
        return pair
