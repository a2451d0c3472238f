from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sessionkeeper.config import Settings
from sessionkeeper.logging import get_logger
from sessionkeeper.service.errors import NotFoundError, ValidationError
from sessionkeeper.service.store_ops import call_store
from sessionkeeper.storage.base import TokenStore
from sessionkeeper.storage.models import (
    RevokeReason,
    TokenFilter,
    TokenKind,
    TokenRecord,
    utcnow,
)

logger = get_logger(__name__)


@dataclass
class SessionSummary:
    """Descriptive view of a refresh record; the token value is never included."""

    id: str
    principal_id: str
    kind: TokenKind
    issued_at: datetime
    expires_at: datetime
    last_used_at: Optional[datetime] = None
    remember_me: bool = False
    device_id: Optional[str] = None
    device_name: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_record(cls, record: TokenRecord) -> "SessionSummary":
        return cls(
            id=record.id,
            principal_id=record.principal_id,
            kind=record.kind,
            issued_at=record.issued_at,
            expires_at=record.expires_at,
            last_used_at=record.last_used_at,
            remember_me=record.remember_me,
            device_id=record.device_id,
            device_name=record.device_name,
            user_agent=record.user_agent,
            ip_address=record.ip_address,
            metadata=dict(record.metadata),
        )


@dataclass
class SessionPage:
    items: List[SessionSummary]
    next_cursor: Optional[str] = None


class SessionRegistry:
    """Lists and revokes a principal's sessions."""

    def __init__(
        self,
        store: TokenStore,
        settings: Settings,
        *,
        now_fn: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self._now = now_fn

    async def list(
        self,
        principal_id: str,
        *,
        kind: Optional[TokenKind] = TokenKind.REFRESH,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> SessionPage:
        """Live sessions, newest first, one keyset page at a time."""

        if not principal_id:
            raise ValidationError("principal_id is required")
        page_size = limit or self.settings.default_page_size
        if page_size < 1 or page_size > self.settings.max_page_size:
            raise ValidationError(
                "limit out of range",
                detail={"max": self.settings.max_page_size},
            )
        token_filter = TokenFilter(
            principal_id=principal_id, kind=kind, live_only=True, now=self._now()
        )
        try:
            records, next_cursor = await call_store(
                self.store.list_tokens, token_filter, limit=page_size, cursor=cursor
            )
        except ValueError as exc:
            raise ValidationError("invalid cursor", detail={"cursor": cursor}) from exc
        return SessionPage(
            items=[SessionSummary.from_record(rec) for rec in records],
            next_cursor=next_cursor,
        )

    async def revoke_one(
        self,
        principal_id: str,
        session_id: str,
        reason: str = RevokeReason.REVOKED_BY_USER,
    ) -> bool:
        """Revoke one session owned by ``principal_id``.

        Ownership is checked inside the store's update, so an id belonging to
        someone else is indistinguishable from an unknown id.
        """

        revoked = await call_store(
            self.store.revoke_token,
            session_id,
            reason,
            revoked_at=self._now(),
            principal_id=principal_id,
        )
        if not revoked:
            raise NotFoundError("session not found", detail={"session_id": session_id})
        logger.info(
            "session_revoked",
            principal_id=principal_id,
            session_id=session_id,
            reason=reason,
        )
        return True

    async def revoke_all(
        self, principal_id: str, reason: str = RevokeReason.LOGOUT_ALL
    ) -> int:
        count = await call_store(
            self.store.revoke_principal_tokens,
            principal_id,
            reason,
            revoked_at=self._now(),
        )
        logger.info(
            "sessions_revoked_all", principal_id=principal_id, count=count, reason=reason
        )
        return count

    async def revoke_token(
        self, refresh_token: str, reason: str = RevokeReason.USER_LOGOUT
    ) -> bool:
        """Revoke by presented value; unknown or already-revoked values return False."""

        revoked = await call_store(
            self.store.revoke_token_value,
            refresh_token,
            TokenKind.REFRESH,
            reason,
            revoked_at=self._now(),
        )
        if revoked:
            logger.info("session_revoked", reason=reason)
        return revoked
