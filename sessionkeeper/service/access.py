from __future__ import annotations

from typing import FrozenSet, Iterable, Mapping, Optional, Protocol

from sessionkeeper.logging import get_logger
from sessionkeeper.service.codec import CodecError, CredentialCodec
from sessionkeeper.service.errors import InvalidTokenError
from sessionkeeper.storage.models import TokenKind

logger = get_logger(__name__)


class AccessValidator:
    """Stateless access-token check: signature and claims only, no store lookup.

    Revoking a session therefore does not invalidate access tokens already
    handed out; they lapse at their own ``exp``.
    """

    def __init__(self, codec: CredentialCodec) -> None:
        self.codec = codec

    def validate(self, token: str) -> str:
        try:
            claims = self.codec.verify(token, expected_kind=TokenKind.ACCESS)
        except CodecError as exc:
            logger.debug("access_token_rejected", reason=exc.reason.value)
            raise InvalidTokenError("invalid access token") from exc
        return claims.subject


MANAGE_SESSIONS = "manage_sessions"


class RightsLookup(Protocol):
    """Role to rights mapping owned by the surrounding system."""

    def rights_for(self, role: str) -> FrozenSet[str]: ...


class StaticRightsLookup:
    def __init__(self, mapping: Optional[Mapping[str, Iterable[str]]] = None) -> None:
        mapping = mapping if mapping is not None else {"admin": [MANAGE_SESSIONS]}
        self._mapping = {role: frozenset(rights) for role, rights in mapping.items()}

    def rights_for(self, role: str) -> FrozenSet[str]:
        return self._mapping.get(role, frozenset())
