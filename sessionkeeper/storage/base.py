from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol, Tuple

from sessionkeeper.storage.models import Principal, TokenFilter, TokenKind, TokenRecord


class TokenStore(Protocol):
    """Persistence contract for token records.

    Every method is a single atomic unit against the backing store. Bulk
    revocations are idempotent: rows that are already revoked keep their
    original ``revoked_at``/``revoked_reason``. Implementations raise
    ``StoreUnavailable`` or ``ConstraintViolation`` and nothing else.
    """

    def create_token(self, record: TokenRecord) -> TokenRecord: ...

    def get_token(self, token_id: str) -> Optional[TokenRecord]: ...

    def find_token(self, token_value: str, kind: TokenKind) -> Optional[TokenRecord]: ...

    def consume_token(self, token_id: str, *, used_at: datetime) -> bool: ...

    def revoke_family(self, family: str, reason: str, *, revoked_at: datetime) -> int: ...

    def revoke_token(
        self,
        token_id: str,
        reason: str,
        *,
        revoked_at: datetime,
        principal_id: Optional[str] = None,
    ) -> bool: ...

    def revoke_token_value(
        self, token_value: str, kind: TokenKind, reason: str, *, revoked_at: datetime
    ) -> bool: ...

    def revoke_principal_tokens(
        self,
        principal_id: str,
        reason: str,
        *,
        revoked_at: datetime,
        kind: TokenKind = TokenKind.REFRESH,
    ) -> int: ...

    def list_tokens(
        self, token_filter: TokenFilter, *, limit: int, cursor: Optional[str] = None
    ) -> Tuple[List[TokenRecord], Optional[str]]: ...

    def delete_token(self, token_id: str) -> bool: ...

    def count_stale_tokens(self, *, now: datetime, revoked_before: datetime) -> int: ...

    def delete_stale_tokens(self, *, now: datetime, revoked_before: datetime) -> int: ...

    def family_tokens(self, family: str) -> List[TokenRecord]: ...


class UserDirectory(Protocol):
    """Lookup used by request authorization after the access token verifies."""

    def get_user(self, user_id: str) -> Optional[Principal]: ...
