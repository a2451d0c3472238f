from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sessionkeeper.config import Settings
from sessionkeeper.logging import get_logger
from sessionkeeper.service.codec import CredentialCodec
from sessionkeeper.service.store_ops import call_store
from sessionkeeper.storage.base import TokenStore
from sessionkeeper.storage.models import TokenKind, TokenRecord, new_family, utcnow

logger = get_logger(__name__)


@dataclass
class SessionContext:
    """Request-side descriptors attached to a refresh record."""

    device_id: Optional[str] = None
    device_name: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    remember_me: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_at: datetime


@dataclass(frozen=True)
class TokenPair:
    access: IssuedToken
    refresh: IssuedToken
    session_id: str
    family: str


class TokenIssuer:
    """Mints access/refresh pairs and persists the refresh side.

    Access tokens are never stored. The refresh row's ``expires_at`` follows
    the remember-me policy and is the source of truth for refresh expiry; the
    signed claim carries its own, independent ``exp``.
    """

    def __init__(
        self,
        store: TokenStore,
        codec: CredentialCodec,
        settings: Settings,
        *,
        now_fn: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.codec = codec
        self.settings = settings
        self._now = now_fn

    async def issue(self, principal_id: str, context: Optional[SessionContext] = None) -> TokenPair:
        """Start a new session with a fresh rotation family."""

        context = context or SessionContext()
        pair = await self.mint(
            principal_id,
            family=new_family(),
            replaces=None,
            remember_me=context.remember_me,
            device_id=context.device_id,
            device_name=context.device_name,
            user_agent=context.user_agent,
            ip_address=context.ip_address,
            metadata=context.metadata,
        )
        logger.info(
            "session_issued",
            principal_id=principal_id,
            session_id=pair.session_id,
            family=pair.family,
            remember_me=context.remember_me,
        )
        return pair

    async def mint(
        self,
        principal_id: str,
        *,
        family: str,
        replaces: Optional[str],
        remember_me: bool,
        device_id: Optional[str] = None,
        device_name: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> TokenPair:
        """Sign a pair and store the refresh record inside ``family``."""

        access_token, access_claims = self.codec.issue(
            {"sub": principal_id, "type": TokenKind.ACCESS.value},
            self.settings.access_token_ttl,
        )
        refresh_token, refresh_claims = self.codec.issue(
            {"sub": principal_id, "type": TokenKind.REFRESH.value},
            self.settings.refresh_token_ttl,
        )
        now = self._now()
        record = TokenRecord.new(
            principal_id,
            refresh_token,
            family=family,
            issued_at=now,
            expires_at=now + self.settings.refresh_ttl_for(remember_me),
            replaces=replaces,
            remember_me=remember_me,
            device_id=device_id,
            device_name=device_name,
            user_agent=user_agent,
            ip_address=ip_address,
            metadata=metadata,
        )
        stored = await call_store(self.store.create_token, record)
        logger.debug(
            "refresh_token_stored",
            token_id=stored.id,
            jti=refresh_claims.token_id,
            family=family,
        )
        return TokenPair(
            access=IssuedToken(access_token, access_claims.expires_at),
            refresh=IssuedToken(refresh_token, stored.expires_at),
            session_id=stored.id,
            family=family,
        )
