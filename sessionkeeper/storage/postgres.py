from __future__ import annotations

import contextlib
import json
import uuid
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from sessionkeeper.logging import get_logger
from sessionkeeper.storage.cursors import SessionCursor
from sessionkeeper.storage.errors import ConstraintViolation, StoreUnavailable
from sessionkeeper.storage.models import (
    Principal,
    RevokeReason,
    TokenFilter,
    TokenKind,
    TokenRecord,
    utcnow,
)

_TOKEN_COLUMNS = (
    "id, principal_id, token_value, kind, family, replaces, use_count, issued_at, "
    "expires_at, last_used_at, revoked, revoked_at, revoked_reason, remember_me, "
    "device_id, device_name, user_agent, ip_address, metadata"
)

# Same expiry boundary as TokenRecord.is_expired
_STALE_PREDICATE = "expires_at <= %s OR (revoked = TRUE AND revoked_at < %s)"

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS auth_token (
        id UUID PRIMARY KEY,
        principal_id TEXT NOT NULL,
        token_value TEXT NOT NULL,
        kind TEXT NOT NULL CHECK (kind IN ('access', 'refresh')),
        family TEXT NOT NULL,
        replaces UUID REFERENCES auth_token (id) ON DELETE SET NULL,
        use_count INTEGER NOT NULL DEFAULT 0 CHECK (use_count BETWEEN 0 AND 1),
        issued_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        last_used_at TIMESTAMPTZ,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_at TIMESTAMPTZ,
        revoked_reason TEXT,
        remember_me BOOLEAN NOT NULL DEFAULT FALSE,
        device_id TEXT,
        device_name TEXT,
        user_agent TEXT,
        ip_address TEXT,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        CONSTRAINT auth_token_value_kind_key UNIQUE (token_value, kind),
        CONSTRAINT auth_token_revocation_complete CHECK (
            revoked = (revoked_at IS NOT NULL) AND revoked = (revoked_reason IS NOT NULL)
        )
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_token_principal_idx ON auth_token (principal_id, issued_at DESC, id DESC)",
    "CREATE INDEX IF NOT EXISTS auth_token_family_idx ON auth_token (family)",
    "CREATE INDEX IF NOT EXISTS auth_token_expires_idx ON auth_token (expires_at)",
)


def _as_uuid(value: str) -> Optional[uuid.UUID]:
    """Parse a token id; ids that are not UUIDs cannot match any row."""
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


class PostgresTokenStore:
    """Postgres-backed token store.

    Each public method runs as one statement or one transaction on a pooled
    connection. Driver exceptions never leave this class: integrity errors
    become ``ConstraintViolation``, everything else ``StoreUnavailable``.
    """

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 2,
        max_size: int = 10,
        pool: Any = None,
        ensure_schema: bool = True,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        if pool is None:
            try:
                pool = ConnectionPool(
                    self.dsn,
                    min_size=min_size,
                    max_size=max_size,
                    kwargs={"row_factory": dict_row, "autocommit": False},
                )
            except psycopg.Error as exc:
                raise StoreUnavailable("unable to open connection pool") from exc
        self.pool = pool
        if ensure_schema:
            self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    @contextlib.contextmanager
    def _transaction(self, operation: str) -> Iterator[Any]:
        """Yield a pooled connection and decode driver errors for ``operation``."""

        try:
            with self._connect() as conn:
                yield conn
        except (errors.UniqueViolation, errors.ForeignKeyViolation, errors.CheckViolation) as exc:
            raise ConstraintViolation(
                f"{operation} violated a constraint",
                {"constraint": getattr(getattr(exc, "diag", None), "constraint_name", None)},
            ) from exc
        except PoolTimeout as exc:
            self.logger.error("token_store_pool_timeout", operation=operation)
            raise StoreUnavailable(f"{operation}: connection pool exhausted") from exc
        except psycopg.Error as exc:
            self.logger.error(
                "token_store_statement_failed",
                operation=operation,
                error_type=type(exc).__name__,
            )
            raise StoreUnavailable(f"{operation} failed") from exc

    def _ensure_schema(self) -> None:
        """Create the ``auth_token`` table and its indexes if missing."""

        with self._transaction("ensure_schema") as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._transaction("verify_connection") as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        try:
            self.pool.close()
        except Exception as exc:
            self.logger.warning("token_store_close_failed", error=str(exc))

    # writes
    def create_token(self, record: TokenRecord) -> TokenRecord:
        with self._transaction("create_token") as conn:
            if record.replaces is not None:
                parent = conn.execute(
                    "SELECT family FROM auth_token WHERE id = %s FOR SHARE",
                    (record.replaces,),
                ).fetchone()
                if not parent:
                    raise ConstraintViolation(
                        "replaced token missing", {"replaces": record.replaces}
                    )
                if parent["family"] != record.family:
                    raise ConstraintViolation(
                        "replaced token belongs to another family",
                        {"replaces": record.replaces},
                    )
            conn.execute(
                f"""
                INSERT INTO auth_token ({_TOKEN_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    record.id,
                    record.principal_id,
                    record.token_value,
                    record.kind.value,
                    record.family,
                    record.replaces,
                    record.use_count,
                    record.issued_at,
                    record.expires_at,
                    record.last_used_at,
                    record.revoked,
                    record.revoked_at,
                    record.revoked_reason,
                    record.remember_me,
                    record.device_id,
                    record.device_name,
                    record.user_agent,
                    record.ip_address,
                    json.dumps(record.metadata or {}),
                ),
            )
        return record.copy()

    def consume_token(self, token_id: str, *, used_at: datetime) -> bool:
        if _as_uuid(token_id) is None:
            return False
        with self._transaction("consume_token") as conn:
            cur = conn.execute(
                """
                UPDATE auth_token
                SET use_count = 1, last_used_at = %s,
                    revoked = TRUE, revoked_at = %s, revoked_reason = %s
                WHERE id = %s AND use_count = 0 AND revoked = FALSE
                """,
                (used_at, used_at, RevokeReason.ROTATED, token_id),
            )
            return cur.rowcount == 1

    def revoke_family(self, family: str, reason: str, *, revoked_at: datetime) -> int:
        with self._transaction("revoke_family") as conn:
            cur = conn.execute(
                """
                UPDATE auth_token
                SET revoked = TRUE, revoked_at = %s, revoked_reason = %s
                WHERE family = %s AND revoked = FALSE
                """,
                (revoked_at, reason, family),
            )
            return max(cur.rowcount, 0)

    def revoke_token(
        self,
        token_id: str,
        reason: str,
        *,
        revoked_at: datetime,
        principal_id: Optional[str] = None,
    ) -> bool:
        if _as_uuid(token_id) is None:
            return False
        query = (
            "UPDATE auth_token SET revoked = TRUE, revoked_at = %s, revoked_reason = %s "
            "WHERE id = %s AND revoked = FALSE"
        )
        params: List[Any] = [revoked_at, reason, token_id]
        if principal_id is not None:
            query += " AND principal_id = %s"
            params.append(principal_id)
        with self._transaction("revoke_token") as conn:
            cur = conn.execute(query, tuple(params))
            return cur.rowcount == 1

    def revoke_token_value(
        self, token_value: str, kind: TokenKind, reason: str, *, revoked_at: datetime
    ) -> bool:
        with self._transaction("revoke_token_value") as conn:
            cur = conn.execute(
                """
                UPDATE auth_token
                SET revoked = TRUE, revoked_at = %s, revoked_reason = %s
                WHERE token_value = %s AND kind = %s AND revoked = FALSE
                """,
                (revoked_at, reason, token_value, kind.value),
            )
            return cur.rowcount == 1

    def revoke_principal_tokens(
        self,
        principal_id: str,
        reason: str,
        *,
        revoked_at: datetime,
        kind: TokenKind = TokenKind.REFRESH,
    ) -> int:
        with self._transaction("revoke_principal_tokens") as conn:
            cur = conn.execute(
                """
                UPDATE auth_token
                SET revoked = TRUE, revoked_at = %s, revoked_reason = %s
                WHERE principal_id = %s AND kind = %s AND revoked = FALSE
                """,
                (revoked_at, reason, principal_id, kind.value),
            )
            return max(cur.rowcount, 0)

    def delete_token(self, token_id: str) -> bool:
        if _as_uuid(token_id) is None:
            return False
        with self._transaction("delete_token") as conn:
            cur = conn.execute("DELETE FROM auth_token WHERE id = %s", (token_id,))
            return cur.rowcount == 1

    def delete_stale_tokens(self, *, now: datetime, revoked_before: datetime) -> int:
        with self._transaction("delete_stale_tokens") as conn:
            cur = conn.execute(
                f"DELETE FROM auth_token WHERE {_STALE_PREDICATE}",
                (now, revoked_before),
            )
            return max(cur.rowcount, 0)

    def count_stale_tokens(self, *, now: datetime, revoked_before: datetime) -> int:
        with self._transaction("count_stale_tokens") as conn:
            row = conn.execute(
                f"SELECT count(*) AS n FROM auth_token WHERE {_STALE_PREDICATE}",
                (now, revoked_before),
            ).fetchone()
            return int(row["n"]) if row else 0

    # reads
    def get_token(self, token_id: str) -> Optional[TokenRecord]:
        if _as_uuid(token_id) is None:
            return None
        with self._transaction("get_token") as conn:
            row = conn.execute(
                f"SELECT {_TOKEN_COLUMNS} FROM auth_token WHERE id = %s", (token_id,)
            ).fetchone()
        return self._row_to_token(row) if row else None

    def find_token(self, token_value: str, kind: TokenKind) -> Optional[TokenRecord]:
        with self._transaction("find_token") as conn:
            row = conn.execute(
                f"SELECT {_TOKEN_COLUMNS} FROM auth_token WHERE token_value = %s AND kind = %s",
                (token_value, kind.value),
            ).fetchone()
        return self._row_to_token(row) if row else None

    def list_tokens(
        self, token_filter: TokenFilter, *, limit: int, cursor: Optional[str] = None
    ) -> Tuple[List[TokenRecord], Optional[str]]:
        clauses = ["principal_id = %s"]
        params: List[Any] = [token_filter.principal_id]
        if token_filter.kind is not None:
            clauses.append("kind = %s")
            params.append(token_filter.kind.value)
        if token_filter.live_only:
            clauses.append("revoked = FALSE AND expires_at > %s")
            params.append(token_filter.now or utcnow())
        if cursor:
            position = SessionCursor.decode(cursor)
            if _as_uuid(position.token_id) is None:
                raise ValueError("invalid session cursor")
            clauses.append("(issued_at, id) < (%s, %s::uuid)")
            params.extend([position.issued_at, position.token_id])
        params.append(limit + 1)
        query = (
            f"SELECT {_TOKEN_COLUMNS} FROM auth_token WHERE {' AND '.join(clauses)} "
            "ORDER BY issued_at DESC, id DESC LIMIT %s"
        )
        with self._transaction("list_tokens") as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        records = [self._row_to_token(row) for row in rows]
        page = records[:limit]
        next_cursor = None
        if len(records) > limit and page:
            next_cursor = SessionCursor(page[-1].issued_at, page[-1].id).encode()
        return page, next_cursor

    def family_tokens(self, family: str) -> List[TokenRecord]:
        with self._transaction("family_tokens") as conn:
            rows = conn.execute(
                f"SELECT {_TOKEN_COLUMNS} FROM auth_token WHERE family = %s ORDER BY issued_at, id",
                (family,),
            ).fetchall()
        return [self._row_to_token(row) for row in rows]

    @staticmethod
    def _row_to_token(row: Dict[str, Any]) -> TokenRecord:
        metadata = row.get("metadata")
        if isinstance(metadata, str):
            try:
                metadata = json.loads(metadata)
            except ValueError:
                metadata = {}
        replaces = row.get("replaces")
        return TokenRecord(
            id=str(row["id"]),
            principal_id=str(row["principal_id"]),
            token_value=row["token_value"],
            kind=TokenKind(row.get("kind", TokenKind.REFRESH.value)),
            family=row["family"],
            replaces=str(replaces) if replaces is not None else None,
            use_count=int(row.get("use_count") or 0),
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
            last_used_at=row.get("last_used_at"),
            revoked=bool(row.get("revoked")),
            revoked_at=row.get("revoked_at"),
            revoked_reason=row.get("revoked_reason"),
            remember_me=bool(row.get("remember_me")),
            device_id=row.get("device_id"),
            device_name=row.get("device_name"),
            user_agent=row.get("user_agent"),
            ip_address=row.get("ip_address"),
            metadata=metadata or {},
        )


class PostgresUserDirectory:
    """Reads principals from the application's ``app_user`` table."""

    def __init__(self, pool: Any) -> None:
        self.pool = pool
        self.logger = get_logger(__name__)

    def get_user(self, user_id: str) -> Optional[Principal]:
        try:
            with self.pool.connection() as conn:
                row = conn.execute(
                    "SELECT id, role, is_active, email FROM app_user WHERE id::text = %s",
                    (user_id,),
                ).fetchone()
        except (PoolTimeout, psycopg.Error) as exc:
            raise StoreUnavailable("user lookup failed") from exc
        if not row:
            return None
        return Principal(
            id=str(row["id"]),
            role=row.get("role") or "user",
            is_active=bool(row.get("is_active", True)),
            email=row.get("email"),
        )
