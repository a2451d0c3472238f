from __future__ import annotations

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from sessionkeeper.logging import get_logger
from sessionkeeper.storage.cursors import SessionCursor
from sessionkeeper.storage.errors import ConstraintViolation, StoreUnavailable
from sessionkeeper.storage.models import (
    Principal,
    RevokeReason,
    TokenFilter,
    TokenKind,
    TokenRecord,
)


class MemoryTokenStore:
    """In-memory token store for tests and single-process development.

    All reads and writes take ``_data_lock`` so each method is one atomic
    step, which is what gives ``consume_token`` its compare-and-swap
    guarantee when several threads rotate the same token. Records are copied
    on the way in and out; callers never hold references into the store.
    When ``fs_root`` is given the state is mirrored to a JSON file after
    every write and reloaded on construction.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.tokens: Dict[str, TokenRecord] = {}
        self._by_value: Dict[Tuple[str, str], str] = {}
        # RLock so helpers can re-enter from public methods
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # writes
    def create_token(self, record: TokenRecord) -> TokenRecord:
        with self._data_lock:
            if record.id in self.tokens:
                raise ConstraintViolation("token id already exists", {"token_id": record.id})
            value_key = (record.token_value, record.kind.value)
            if value_key in self._by_value:
                raise ConstraintViolation("token value already stored", {"kind": record.kind.value})
            if record.replaces is not None:
                parent = self.tokens.get(record.replaces)
                if parent is None:
                    raise ConstraintViolation(
                        "replaced token missing", {"replaces": record.replaces}
                    )
                if parent.family != record.family:
                    raise ConstraintViolation(
                        "replaced token belongs to another family",
                        {"replaces": record.replaces},
                    )
            stored = record.copy()
            self.tokens[stored.id] = stored
            self._by_value[value_key] = stored.id
            self._persist_state()
            return stored.copy()

    def consume_token(self, token_id: str, *, used_at: datetime) -> bool:
        with self._data_lock:
            rec = self.tokens.get(token_id)
            if rec is None or rec.revoked or rec.use_count != 0:
                return False
            rec.use_count = 1
            rec.last_used_at = used_at
            self._mark_revoked(rec, RevokeReason.ROTATED, used_at)
            self._persist_state()
            return True

    def revoke_family(self, family: str, reason: str, *, revoked_at: datetime) -> int:
        with self._data_lock:
            count = 0
            for rec in self.tokens.values():
                if rec.family == family and not rec.revoked:
                    self._mark_revoked(rec, reason, revoked_at)
                    count += 1
            if count:
                self._persist_state()
            return count

    def revoke_token(
        self,
        token_id: str,
        reason: str,
        *,
        revoked_at: datetime,
        principal_id: Optional[str] = None,
    ) -> bool:
        with self._data_lock:
            rec = self.tokens.get(token_id)
            if rec is None or rec.revoked:
                return False
            if principal_id is not None and rec.principal_id != principal_id:
                return False
            self._mark_revoked(rec, reason, revoked_at)
            self._persist_state()
            return True

    def revoke_token_value(
        self, token_value: str, kind: TokenKind, reason: str, *, revoked_at: datetime
    ) -> bool:
        with self._data_lock:
            token_id = self._by_value.get((token_value, kind.value))
            if token_id is None:
                return False
            return self.revoke_token(token_id, reason, revoked_at=revoked_at)

    def revoke_principal_tokens(
        self,
        principal_id: str,
        reason: str,
        *,
        revoked_at: datetime,
        kind: TokenKind = TokenKind.REFRESH,
    ) -> int:
        with self._data_lock:
            count = 0
            for rec in self.tokens.values():
                if rec.principal_id == principal_id and rec.kind == kind and not rec.revoked:
                    self._mark_revoked(rec, reason, revoked_at)
                    count += 1
            if count:
                self._persist_state()
            return count

    def delete_token(self, token_id: str) -> bool:
        with self._data_lock:
            rec = self.tokens.pop(token_id, None)
            if rec is None:
                return False
            self._by_value.pop((rec.token_value, rec.kind.value), None)
            self._persist_state()
            return True

    @staticmethod
    def _is_stale(rec: TokenRecord, now: datetime, revoked_before: datetime) -> bool:
        if rec.is_expired(now):
            return True
        return rec.revoked and rec.revoked_at is not None and rec.revoked_at < revoked_before

    def count_stale_tokens(self, *, now: datetime, revoked_before: datetime) -> int:
        with self._data_lock:
            return sum(1 for rec in self.tokens.values() if self._is_stale(rec, now, revoked_before))

    def delete_stale_tokens(self, *, now: datetime, revoked_before: datetime) -> int:
        with self._data_lock:
            stale = [
                rec.id for rec in self.tokens.values() if self._is_stale(rec, now, revoked_before)
            ]
            for token_id in stale:
                rec = self.tokens.pop(token_id)
                self._by_value.pop((rec.token_value, rec.kind.value), None)
            if stale:
                self._persist_state()
            return len(stale)

    # reads
    def get_token(self, token_id: str) -> Optional[TokenRecord]:
        with self._data_lock:
            rec = self.tokens.get(token_id)
            return rec.copy() if rec else None

    def find_token(self, token_value: str, kind: TokenKind) -> Optional[TokenRecord]:
        with self._data_lock:
            token_id = self._by_value.get((token_value, kind.value))
            if token_id is None:
                return None
            return self.tokens[token_id].copy()

    def list_tokens(
        self, token_filter: TokenFilter, *, limit: int, cursor: Optional[str] = None
    ) -> Tuple[List[TokenRecord], Optional[str]]:
        position = SessionCursor.decode(cursor) if cursor else None
        with self._data_lock:
            matched = [rec for rec in self.tokens.values() if token_filter.matches(rec)]
        matched.sort(key=lambda rec: (rec.issued_at, rec.id), reverse=True)
        if position is not None:
            matched = [
                rec for rec in matched if position.precedes(rec.issued_at, rec.id)
            ]
        page = [rec.copy() for rec in matched[:limit]]
        next_cursor = None
        if len(matched) > limit and page:
            last = page[-1]
            next_cursor = SessionCursor(last.issued_at, last.id).encode()
        return page, next_cursor

    def family_tokens(self, family: str) -> List[TokenRecord]:
        with self._data_lock:
            members = [rec.copy() for rec in self.tokens.values() if rec.family == family]
        members.sort(key=lambda rec: (rec.issued_at, rec.id))
        return members

    # helpers
    @staticmethod
    def _mark_revoked(rec: TokenRecord, reason: str, revoked_at: datetime) -> None:
        rec.revoked = True
        rec.revoked_at = revoked_at
        rec.revoked_reason = reason

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "token_store.json"

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {"tokens": [self._serialize_token(rec) for rec in self.tokens.values()]}
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise StoreUnavailable(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except (OSError, ValueError) as exc:
            raise StoreUnavailable(f"failed to load in-memory state: {exc}") from exc
        self.tokens = {
            entry["id"]: self._deserialize_token(entry) for entry in data.get("tokens", [])
        }
        self._by_value = {
            (rec.token_value, rec.kind.value): rec.id for rec in self.tokens.values()
        }
        self.logger.info("memory_token_state_loaded", tokens=len(self.tokens))
        return True

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_token(self, rec: TokenRecord) -> dict:
        return {
            "id": rec.id,
            "principal_id": rec.principal_id,
            "token_value": rec.token_value,
            "kind": rec.kind.value,
            "family": rec.family,
            "replaces": rec.replaces,
            "use_count": rec.use_count,
            "issued_at": self._serialize_datetime(rec.issued_at),
            "expires_at": self._serialize_datetime(rec.expires_at),
            "last_used_at": self._serialize_datetime(rec.last_used_at),
            "revoked": rec.revoked,
            "revoked_at": self._serialize_datetime(rec.revoked_at),
            "revoked_reason": rec.revoked_reason,
            "remember_me": rec.remember_me,
            "device_id": rec.device_id,
            "device_name": rec.device_name,
            "user_agent": rec.user_agent,
            "ip_address": rec.ip_address,
            "metadata": rec.metadata,
        }

    def _deserialize_token(self, data: dict) -> TokenRecord:
        return TokenRecord(
            id=data["id"],
            principal_id=data["principal_id"],
            token_value=data["token_value"],
            kind=TokenKind(data.get("kind", TokenKind.REFRESH.value)),
            family=data["family"],
            replaces=data.get("replaces"),
            use_count=int(data.get("use_count", 0)),
            issued_at=self._deserialize_datetime(data["issued_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            last_used_at=self._deserialize_datetime(data.get("last_used_at")),
            revoked=bool(data.get("revoked", False)),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
            revoked_reason=data.get("revoked_reason"),
            remember_me=bool(data.get("remember_me", False)),
            device_id=data.get("device_id"),
            device_name=data.get("device_name"),
            user_agent=data.get("user_agent"),
            ip_address=data.get("ip_address"),
            metadata=data.get("metadata") or {},
        )


class MemoryUserDirectory:
    """Dictionary-backed user lookup for tests and development."""

    def __init__(self) -> None:
        self.users: Dict[str, Principal] = {}
        self._lock = threading.Lock()

    def add_user(
        self,
        user_id: str,
        *,
        role: str = "user",
        is_active: bool = True,
        email: Optional[str] = None,
    ) -> Principal:
        principal = Principal(id=user_id, role=role, is_active=is_active, email=email)
        with self._lock:
            self.users[user_id] = principal
        return principal

    def get_user(self, user_id: str) -> Optional[Principal]:
        with self._lock:
            return self.users.get(user_id)
