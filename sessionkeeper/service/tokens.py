from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Optional

from sessionkeeper.config import Settings
from sessionkeeper.service.access import AccessValidator
from sessionkeeper.service.cleanup import CleanupSweeper
from sessionkeeper.service.codec import CredentialCodec
from sessionkeeper.service.issuer import SessionContext, TokenIssuer, TokenPair
from sessionkeeper.service.rotation import RotationEngine
from sessionkeeper.service.sessions import SessionPage, SessionRegistry
from sessionkeeper.storage.base import TokenStore
from sessionkeeper.storage.models import RevokeReason, TokenKind, utcnow


@dataclass(frozen=True)
class OAuthIdentity:
    """Identity already verified by a provider-specific collaborator."""

    provider: str
    provider_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    avatar: Optional[str] = None


class TokenService:
    """Session operations exposed to the HTTP layer.

    Wires codec, issuer, rotation engine, registry, validator and sweeper
    around one store. Each collaborator is built here from the injected
    store, settings and clock, so tests can swap any of them.
    """

    def __init__(
        self,
        store: TokenStore,
        settings: Settings,
        *,
        now_fn: Callable[[], datetime] = utcnow,
        codec: Optional[CredentialCodec] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.codec = codec or CredentialCodec(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            now_fn=now_fn,
        )
        self.issuer = TokenIssuer(store, self.codec, settings, now_fn=now_fn)
        self.rotation = RotationEngine(store, self.codec, self.issuer, now_fn=now_fn)
        self.registry = SessionRegistry(store, settings, now_fn=now_fn)
        self.validator = AccessValidator(self.codec)
        self.sweeper = CleanupSweeper(store, settings.revoked_retention, now_fn=now_fn)

    async def issue_session(
        self, principal_id: str, context: Optional[SessionContext] = None
    ) -> TokenPair:
        return await self.issuer.issue(principal_id, context)

    async def issue_oauth_session(
        self,
        principal_id: str,
        identity: OAuthIdentity,
        context: Optional[SessionContext] = None,
    ) -> TokenPair:
        """Start a session for a principal resolved from an external identity."""

        context = context or SessionContext()
        metadata = {**context.metadata, "auth_provider": identity.provider}
        return await self.issuer.issue(principal_id, replace(context, metadata=metadata))

    async def rotate(
        self, refresh_token: str, context: Optional[SessionContext] = None
    ) -> TokenPair:
        return await self.rotation.rotate(refresh_token, context)

    async def revoke_one(
        self, refresh_token: str, reason: str = RevokeReason.USER_LOGOUT
    ) -> bool:
        return await self.registry.revoke_token(refresh_token, reason)

    async def list_sessions(
        self,
        principal_id: str,
        *,
        kind: Optional[TokenKind] = None,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> SessionPage:
        return await self.registry.list(
            principal_id, kind=kind or TokenKind.REFRESH, limit=limit, cursor=cursor
        )

    async def revoke_session(self, principal_id: str, session_id: str) -> bool:
        return await self.registry.revoke_one(principal_id, session_id)

    async def revoke_all_sessions(
        self, principal_id: str, reason: str = RevokeReason.LOGOUT_ALL
    ) -> int:
        return await self.registry.revoke_all(principal_id, reason)

    def validate_access(self, token: str) -> str:
        return self.validator.validate(token)

    async def cleanup(self) -> int:
        return await self.sweeper.sweep()
