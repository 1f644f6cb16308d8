"""Unit tests for identity/issuer.py -- token pair minting."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from auth.tokens import decode_access_token
from core.config import get_settings


@pytest.fixture
def user(state):
    return state.directory.create("pair@shop.test", password="secret1")


def test_access_token_claims(state, user):
    payload = decode_access_token(state.issuer.issue_access_token(user))
    assert payload["sub"] == user.id
    assert payload["email"] == "pair@shop.test"
    assert payload["roles"] == ["USER"]


def test_refresh_token_expiry_uses_configured_days(state, user):
    record = state.issuer.issue_refresh_token(user.id, "agent")
    expected = datetime.now(timezone.utc) + timedelta(days=get_settings().refresh_token_expire_days)
    assert abs((record.expires_at - expected).total_seconds()) < 5
    assert state.refresh_tokens.find_by_token(record.token) is not None


def test_pair_persists_refresh_token(state, user):
    pair = state.issuer.issue_token_pair(user, "agent")
    stored = state.refresh_tokens.find_by_token(pair.refresh_token.token)
    assert stored.user_id == user.id
    assert decode_access_token(pair.access_token)["sub"] == user.id


def test_store_failure_yields_no_access_token(state, user):
    failure = OperationalError("INSERT", {}, Exception("disk I/O error"))
    with patch.object(state.refresh_tokens, "upsert", side_effect=failure):
        with patch("identity.issuer.create_access_token") as sign:
            with pytest.raises(OperationalError):
                state.issuer.issue_token_pair(user, "agent")
    sign.assert_not_called()
