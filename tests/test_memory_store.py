import threading
from datetime import datetime, timedelta, timezone

import pytest

from sessionkeeper.storage.cursors import SessionCursor
from sessionkeeper.storage.errors import ConstraintViolation
from sessionkeeper.storage.memory import MemoryTokenStore, MemoryUserDirectory
from sessionkeeper.storage.models import RevokeReason, TokenFilter, TokenKind, TokenRecord

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _record(principal="user-1", family="fam-1", value=None, **kwargs):
    kwargs.setdefault("issued_at", NOW)
    kwargs.setdefault("expires_at", NOW + timedelta(days=7))
    value = value or f"value-{family}-{kwargs['issued_at'].isoformat()}"
    return TokenRecord.new(principal, value, family=family, **kwargs)


class TestCreateAndFind:
    def test_records_are_copied(self):
        store = MemoryTokenStore()
        record = _record(metadata={"a": 1})
        stored = store.create_token(record)
        stored.metadata["a"] = 2
        assert store.get_token(record.id).metadata == {"a": 1}

    def test_duplicate_value_rejected(self):
        store = MemoryTokenStore()
        store.create_token(_record(value="same"))
        with pytest.raises(ConstraintViolation):
            store.create_token(_record(value="same", family="fam-2"))

    def test_replaces_must_exist_and_share_family(self):
        store = MemoryTokenStore()
        parent = store.create_token(_record(value="parent"))
        with pytest.raises(ConstraintViolation):
            store.create_token(_record(value="orphan", replaces="missing-id"))
        with pytest.raises(ConstraintViolation):
            store.create_token(_record(value="cross", family="fam-2", replaces=parent.id))
        child = store.create_token(_record(value="child", replaces=parent.id))
        assert child.replaces == parent.id

    def test_find_includes_revoked_rows(self):
        store = MemoryTokenStore()
        record = store.create_token(_record(value="v"))
        store.revoke_token(record.id, RevokeReason.USER_LOGOUT, revoked_at=NOW)
        found = store.find_token("v", TokenKind.REFRESH)
        assert found is not None and found.revoked
        assert found.revoked_reason == RevokeReason.USER_LOGOUT
        assert store.find_token("v", TokenKind.ACCESS) is None


class TestConsume:
    def test_consume_once(self):
        store = MemoryTokenStore()
        record = store.create_token(_record())
        assert store.consume_token(record.id, used_at=NOW) is True
        assert store.consume_token(record.id, used_at=NOW) is False
        consumed = store.get_token(record.id)
        assert consumed.use_count == 1
        assert consumed.revoked
        assert consumed.revoked_reason == RevokeReason.ROTATED
        assert consumed.last_used_at == NOW

    def test_consume_refuses_revoked(self):
        store = MemoryTokenStore()
        record = store.create_token(_record())
        store.revoke_token(record.id, "x", revoked_at=NOW)
        assert store.consume_token(record.id, used_at=NOW) is False
        assert store.get_token(record.id).use_count == 0

    def test_concurrent_consume_has_one_winner(self):
        store = MemoryTokenStore()
        record = store.create_token(_record())
        results = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            results.append(store.consume_token(record.id, used_at=NOW))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert results.count(True) == 1


class TestRevocation:
    def test_family_revocation_is_idempotent(self):
        store = MemoryTokenStore()
        first = store.create_token(_record(value="a"))
        store.create_token(
            _record(value="b", replaces=first.id, issued_at=NOW + timedelta(seconds=1))
        )
        store.create_token(_record(value="other", family="fam-2"))
        store.consume_token(first.id, used_at=NOW)

        later = NOW + timedelta(minutes=1)
        assert store.revoke_family("fam-1", RevokeReason.REUSE_DETECTED, revoked_at=later) == 1
        assert store.revoke_family("fam-1", RevokeReason.REUSE_DETECTED, revoked_at=later) == 0
        members = store.family_tokens("fam-1")
        assert all(m.revoked for m in members)
        # the already-rotated row keeps its original reason and timestamp
        assert members[0].revoked_reason == RevokeReason.ROTATED
        assert members[0].revoked_at == NOW
        assert not store.find_token("other", TokenKind.REFRESH).revoked

    def test_scoped_revoke_checks_owner(self):
        store = MemoryTokenStore()
        record = store.create_token(_record(principal="alice"))
        assert store.revoke_token(record.id, "x", revoked_at=NOW, principal_id="mallory") is False
        assert not store.get_token(record.id).revoked
        assert store.revoke_token(record.id, "x", revoked_at=NOW, principal_id="alice") is True

    def test_revoke_principal_tokens(self):
        store = MemoryTokenStore()
        store.create_token(_record(principal="alice", family="f1", value="1"))
        store.create_token(_record(principal="alice", family="f2", value="2"))
        store.create_token(_record(principal="bob", family="f3", value="3"))
        assert store.revoke_principal_tokens("alice", RevokeReason.LOGOUT_ALL, revoked_at=NOW) == 2
        assert store.revoke_principal_tokens("alice", RevokeReason.LOGOUT_ALL, revoked_at=NOW) == 0
        assert not store.find_token("3", TokenKind.REFRESH).revoked

    def test_revoke_by_value(self):
        store = MemoryTokenStore()
        store.create_token(_record(value="v"))
        assert store.revoke_token_value("v", TokenKind.REFRESH, "bye", revoked_at=NOW) is True
        assert store.revoke_token_value("v", TokenKind.REFRESH, "bye", revoked_at=NOW) is False
        assert store.revoke_token_value("nope", TokenKind.REFRESH, "bye", revoked_at=NOW) is False


class TestListing:
    def test_pages_newest_first_and_skips_dead_rows(self):
        store = MemoryTokenStore()
        ids = []
        for minute in range(5):
            rec = store.create_token(
                _record(family=f"f{minute}", issued_at=NOW + timedelta(minutes=minute))
            )
            ids.append(rec.id)
        revoked = store.create_token(_record(family="dead", value="dead"))
        store.revoke_token(revoked.id, "x", revoked_at=NOW)
        store.create_token(_record(principal="bob", family="bob", value="bob"))

        token_filter = TokenFilter(principal_id="user-1", now=NOW + timedelta(hours=1))
        first, cursor = store.list_tokens(token_filter, limit=2)
        assert [r.id for r in first] == [ids[4], ids[3]]
        assert cursor is not None
        second, cursor = store.list_tokens(token_filter, limit=2, cursor=cursor)
        assert [r.id for r in second] == [ids[2], ids[1]]
        third, cursor = store.list_tokens(token_filter, limit=2, cursor=cursor)
        assert [r.id for r in third] == [ids[0]]
        assert cursor is None

    def test_expired_rows_hidden(self):
        store = MemoryTokenStore()
        store.create_token(_record(expires_at=NOW + timedelta(minutes=1)))
        page, _ = store.list_tokens(
            TokenFilter(principal_id="user-1", now=NOW + timedelta(minutes=2)), limit=10
        )
        assert page == []

    def test_bad_cursor(self):
        with pytest.raises(ValueError):
            MemoryTokenStore().list_tokens(TokenFilter(principal_id="u"), limit=5, cursor="junk")

    def test_cursor_is_opaque(self):
        cursor = SessionCursor(NOW, "abc").encode()
        assert "|" not in cursor
        assert SessionCursor.decode(cursor) == SessionCursor(NOW, "abc")
        with pytest.raises(ValueError):
            SessionCursor.decode(SessionCursor(NOW, "").encode())


class TestStaleDeletion:
    def test_deletes_expired_and_old_revoked_only(self):
        store = MemoryTokenStore()
        expired = store.create_token(_record(value="expired", expires_at=NOW - timedelta(seconds=1)))
        old = store.create_token(_record(value="old", family="f2"))
        recent = store.create_token(_record(value="recent", family="f3"))
        live = store.create_token(_record(value="live", family="f4"))
        store.revoke_token(old.id, "x", revoked_at=NOW - timedelta(days=31))
        store.revoke_token(recent.id, "x", revoked_at=NOW - timedelta(days=1))

        deleted = store.delete_stale_tokens(now=NOW, revoked_before=NOW - timedelta(days=30))
        assert deleted == 2
        assert store.get_token(expired.id) is None
        assert store.get_token(old.id) is None
        assert store.get_token(recent.id) is not None
        assert store.get_token(live.id) is not None
        assert store.find_token("expired", TokenKind.REFRESH) is None

    def test_row_expiring_exactly_now_is_stale(self):
        store = MemoryTokenStore()
        record = store.create_token(_record(value="edge", expires_at=NOW))
        assert record.is_expired(NOW)
        cutoff = NOW - timedelta(days=30)
        assert store.count_stale_tokens(now=NOW, revoked_before=cutoff) == 1
        assert store.delete_stale_tokens(now=NOW, revoked_before=cutoff) == 1
        assert store.get_token(record.id) is None

    def test_count_matches_delete_without_removing(self):
        store = MemoryTokenStore()
        store.create_token(_record(value="expired", expires_at=NOW - timedelta(seconds=1)))
        old = store.create_token(_record(value="old", family="f2"))
        store.create_token(_record(value="live", family="f3"))
        store.revoke_token(old.id, "x", revoked_at=NOW - timedelta(days=31))

        cutoff = NOW - timedelta(days=30)
        assert store.count_stale_tokens(now=NOW, revoked_before=cutoff) == 2
        assert len(store.tokens) == 3
        assert store.delete_stale_tokens(now=NOW, revoked_before=cutoff) == 2
        assert store.count_stale_tokens(now=NOW, revoked_before=cutoff) == 0


class TestPersistence:
    def test_state_round_trips_through_fs_root(self, tmp_path):
        store = MemoryTokenStore(fs_root=str(tmp_path))
        record = store.create_token(_record(metadata={"auth_provider": "google"}))
        store.consume_token(record.id, used_at=NOW)

        reloaded = MemoryTokenStore(fs_root=str(tmp_path))
        restored = reloaded.find_token(record.token_value, TokenKind.REFRESH)
        assert restored.id == record.id
        assert restored.use_count == 1
        assert restored.revoked_reason == RevokeReason.ROTATED
        assert restored.issued_at == NOW
        assert restored.metadata == {"auth_provider": "google"}
        assert (tmp_path / "state" / "token_store.json").exists()


def test_user_directory_lookup():
    users = MemoryUserDirectory()
    users.add_user("u1", role="admin")
    assert users.get_user("u1").role == "admin"
    assert users.get_user("missing") is None
