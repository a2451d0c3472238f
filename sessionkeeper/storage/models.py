from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional


def utcnow() -> datetime:
    """Timezone-aware UTC helper; naive datetimes never enter the store."""

    return datetime.now(timezone.utc)


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


class RevokeReason:
    """Stable reason strings written next to ``revoked_at``."""

    ROTATED = "rotated"
    REUSE_DETECTED = "reuse detected"
    USER_LOGOUT = "user_logout"
    REVOKED_BY_USER = "revoked by user"
    LOGOUT_ALL = "logged out from all devices"


def new_token_id() -> str:
    return str(uuid.uuid4())


def new_family() -> str:
    return secrets.token_hex(16)


@dataclass
class TokenRecord:
    """Persisted credential row. Only refresh tokens are stored."""

    id: str
    principal_id: str
    token_value: str
    family: str
    issued_at: datetime
    expires_at: datetime
    kind: TokenKind = TokenKind.REFRESH
    replaces: Optional[str] = None
    use_count: int = 0
    last_used_at: Optional[datetime] = None
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None
    remember_me: bool = False
    device_id: Optional[str] = None
    device_name: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    metadata: Dict = field(default_factory=dict)

    @classmethod
    def new(
        cls,
        principal_id: str,
        token_value: str,
        *,
        family: str,
        expires_at: datetime,
        issued_at: Optional[datetime] = None,
        replaces: Optional[str] = None,
        remember_me: bool = False,
        device_id: Optional[str] = None,
        device_name: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
        metadata: Optional[Dict] = None,
    ) -> "TokenRecord":
        return cls(
            id=new_token_id(),
            principal_id=principal_id,
            token_value=token_value,
            family=family,
            issued_at=issued_at or utcnow(),
            expires_at=expires_at,
            replaces=replaces,
            remember_me=remember_me,
            device_id=device_id,
            device_name=device_name,
            user_agent=user_agent,
            ip_address=ip_address,
            metadata=dict(metadata or {}),
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def is_live(self, now: datetime) -> bool:
        return not self.revoked and not self.is_expired(now)

    def copy(self) -> "TokenRecord":
        return replace(self, metadata=dict(self.metadata))


@dataclass
class TokenFilter:
    """Selection for session listings; ``principal_id`` is mandatory."""

    principal_id: str
    kind: Optional[TokenKind] = TokenKind.REFRESH
    live_only: bool = True
    now: Optional[datetime] = None

    def matches(self, record: TokenRecord) -> bool:
        if record.principal_id != self.principal_id:
            return False
        if self.kind is not None and record.kind != self.kind:
            return False
        if self.live_only:
            return record.is_live(self.now or utcnow())
        return True


@dataclass
class Principal:
    """Minimal view of an account as returned by the user directory."""

    id: str
    role: str = "user"
    is_active: bool = True
    email: Optional[str] = None
