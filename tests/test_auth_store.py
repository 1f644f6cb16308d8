"""Unit tests for auth/store.py -- UserStore and RefreshTokenStore.

Covers:
- user create / find by id or email / duplicate email / upsert partial update
- refresh token upsert replaces the prior token for the same agent only
- consume() returns the record once, then None
- consume() under concurrent callers hands the record to exactly one of them
- expired tokens are never returned and purge_expired() removes them
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from auth.models import User
from auth.store import RefreshTokenStore, UserStore, open_engine


@pytest.fixture
def users(engine):
    return UserStore(engine)


@pytest.fixture
def tokens(engine):
    return RefreshTokenStore(engine)


def _future(days: int = 30) -> datetime:
    return datetime.now(timezone.utc) + timedelta(days=days)


def _past(seconds: int = 60) -> datetime:
    return datetime.now(timezone.utc) - timedelta(seconds=seconds)


# ---------------------------------------------------------------------------
# UserStore
# ---------------------------------------------------------------------------


class TestUserStore:
    def test_create_assigns_id_and_default_role(self, users):
        user = users.create_user(User(email="a@x.com", hashed_password="h"))
        assert user.id
        assert user.roles == ["USER"]
        assert user.created_at == user.updated_at

    def test_find_by_id_and_email_return_same_user(self, users):
        created = users.create_user(User(email="a@x.com"))
        assert users.find_user(created.id).email == "a@x.com"
        assert users.find_user("a@x.com").id == created.id

    def test_find_unknown_returns_none(self, users):
        assert users.find_user("nobody@x.com") is None

    def test_duplicate_email_raises_integrity_error(self, users):
        users.create_user(User(email="a@x.com"))
        with pytest.raises(IntegrityError):
            users.create_user(User(email="a@x.com"))

    def test_upsert_creates_when_absent(self, users):
        user = users.upsert_by_email("new@x.com", provider="yandex")
        assert user.provider == "yandex"
        assert user.hashed_password is None
        assert user.roles == ["USER"]

    def test_upsert_updates_only_given_fields(self, users):
        original = users.create_user(User(email="a@x.com", hashed_password="h1"))
        updated = users.upsert_by_email("a@x.com", roles=["USER", "ADMIN"])
        assert updated.id == original.id
        assert updated.hashed_password == "h1"
        assert updated.roles == ["USER", "ADMIN"]

    def test_list_users_sorted_by_email(self, users):
        users.create_user(User(email="b@x.com"))
        users.create_user(User(email="a@x.com"))
        assert [u.email for u in users.list_users()] == ["a@x.com", "b@x.com"]

    def test_delete_user(self, users):
        user = users.create_user(User(email="a@x.com"))
        assert users.delete_user(user.id) is True
        assert users.find_user(user.id) is None
        assert users.delete_user(user.id) is False


# ---------------------------------------------------------------------------
# RefreshTokenStore
# ---------------------------------------------------------------------------


class TestRefreshTokenStore:
    def test_upsert_then_find(self, tokens):
        tokens.upsert("u1", "agent-a", "tok-1", _future())
        record = tokens.find_by_token("tok-1")
        assert record is not None
        assert (record.user_id, record.user_agent) == ("u1", "agent-a")

    def test_upsert_replaces_token_for_same_agent(self, tokens):
        tokens.upsert("u1", "agent-a", "tok-1", _future())
        tokens.upsert("u1", "agent-a", "tok-2", _future())
        assert tokens.find_by_token("tok-1") is None
        assert tokens.find_by_token("tok-2") is not None

    def test_upsert_keeps_other_agents(self, tokens):
        tokens.upsert("u1", "agent-a", "tok-a", _future())
        tokens.upsert("u1", "agent-b", "tok-b", _future())
        assert tokens.find_by_token("tok-a") is not None
        assert tokens.find_by_token("tok-b") is not None

    def test_consume_returns_record_once(self, tokens):
        tokens.upsert("u1", "agent-a", "tok-1", _future())
        first = tokens.consume("tok-1")
        assert first is not None and first.user_id == "u1"
        assert tokens.consume("tok-1") is None
        assert tokens.find_by_token("tok-1") is None

    def test_consume_unknown_returns_none(self, tokens):
        assert tokens.consume("never-issued") is None

    def test_expired_token_is_rejected_and_removed(self, tokens):
        tokens.upsert("u1", "agent-a", "tok-old", _past())
        assert tokens.find_by_token("tok-old") is None
        assert tokens.consume("tok-old") is None
        assert tokens.purge_expired() == 0

    def test_expires_at_round_trips_as_aware_utc(self, tokens):
        expiry = _future(days=7).replace(microsecond=0)
        tokens.upsert("u1", "agent-a", "tok-1", expiry)
        record = tokens.find_by_token("tok-1")
        assert record.expires_at.tzinfo is not None
        assert abs((record.expires_at - expiry).total_seconds()) < 1

    def test_delete_by_token_is_idempotent(self, tokens):
        tokens.upsert("u1", "agent-a", "tok-1", _future())
        assert tokens.delete_by_token("tok-1") is True
        assert tokens.delete_by_token("tok-1") is False

    def test_delete_all_for_user(self, tokens):
        tokens.upsert("u1", "agent-a", "tok-a", _future())
        tokens.upsert("u1", "agent-b", "tok-b", _future())
        tokens.upsert("u2", "agent-a", "tok-c", _future())
        assert tokens.delete_all_for_user("u1") == 2
        assert tokens.find_by_token("tok-c") is not None

    def test_purge_expired_only_removes_expired(self, tokens):
        tokens.upsert("u1", "agent-a", "tok-old", _past())
        tokens.upsert("u1", "agent-b", "tok-live", _future())
        assert tokens.purge_expired() == 1
        assert tokens.find_by_token("tok-live") is not None


def test_concurrent_consume_has_single_winner(tmp_path):
    """Many threads present the same token; exactly one gets the record back."""
    engine = open_engine(f"sqlite:///{tmp_path / 'race.db'}")
    store = RefreshTokenStore(engine)
    store.upsert("u1", "agent-a", "tok-race", _future())

    barrier = threading.Barrier(8)
    results: list = []
    lock = threading.Lock()

    def attempt() -> None:
        barrier.wait()
        record = store.consume("tok-race")
        with lock:
            results.append(record)

    threads = [threading.Thread(target=attempt) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    engine.dispose()

    winners = [r for r in results if r is not None]
    assert len(results) == 8
    assert len(winners) == 1
    assert winners[0].user_id == "u1"


def test_concurrent_upserts_for_same_agent_keep_last_write(tmp_path):
    """Parallel logins from one agent all succeed and leave exactly one live token."""
    engine = open_engine(f"sqlite:///{tmp_path / 'upsert.db'}")
    store = RefreshTokenStore(engine)

    barrier = threading.Barrier(8)
    errors: list[Exception] = []
    lock = threading.Lock()

    def attempt(n: int) -> None:
        barrier.wait()
        try:
            store.upsert("u1", "agent-a", f"tok-{n}", _future())
        except Exception as exc:  # noqa: BLE001 -- surfaced by the assert below
            with lock:
                errors.append(exc)

    threads = [threading.Thread(target=attempt, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    with engine.connect() as conn:
        rows = conn.execute(
            text("SELECT token FROM refresh_tokens WHERE user_id = 'u1' AND user_agent = 'agent-a'")
        ).fetchall()
    engine.dispose()

    assert errors == []
    assert len(rows) == 1
    assert rows[0].token in {f"tok-{n}" for n in range(8)}
