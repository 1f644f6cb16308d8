"""Unit tests for auth/oauth.py -- provider identity adapters.

The requests.Session is a MagicMock, so no network traffic happens. Each test
configures session.get to return a canned response or raise.
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
import requests

from auth.oauth import (
    GitHubIdentityProvider,
    GoogleIdentityProvider,
    YandexIdentityProvider,
    build_identity_providers,
    get_enabled_providers,
    get_identity_provider,
)
from core.config import Settings
from core.errors import AdapterError, NotFound


def _response(payload=None, status: int = 200, json_error: bool = False) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    if status >= 400:
        resp.raise_for_status.side_effect = requests.HTTPError(f"{status} error")
    if json_error:
        resp.json.side_effect = ValueError("not json")
    else:
        resp.json.return_value = payload
    return resp


def _session(*results) -> MagicMock:
    session = MagicMock()
    session.get.side_effect = list(results)
    return session


# ---------------------------------------------------------------------------
# Yandex
# ---------------------------------------------------------------------------


class TestYandex:
    def test_returns_lowercased_default_email(self):
        session = _session(_response({"default_email": "Shopper@Yandex.RU", "login": "shopper"}))
        provider = YandexIdentityProvider(session=session)
        assert provider.resolve_identity("tok") == "shopper@yandex.ru"

    def test_sends_token_in_oauth_header_with_timeout(self):
        session = _session(_response({"default_email": "a@yandex.ru"}))
        YandexIdentityProvider(session=session, timeout=5.0).resolve_identity("tok-123")
        _, kwargs = session.get.call_args
        assert kwargs["headers"]["Authorization"] == "OAuth tok-123"
        assert kwargs["timeout"] == 5.0
        assert "tok-123" not in session.get.call_args.args[0]

    def test_missing_email_raises(self):
        session = _session(_response({"login": "shopper"}))
        with pytest.raises(AdapterError):
            YandexIdentityProvider(session=session).resolve_identity("tok")

    def test_provider_401_raises(self):
        session = _session(_response(status=401))
        with pytest.raises(AdapterError) as exc_info:
            YandexIdentityProvider(session=session).resolve_identity("bad")
        assert exc_info.value.provider == "yandex"
        assert exc_info.value.status_code == 401

    def test_non_json_body_raises(self):
        session = _session(_response(json_error=True))
        with pytest.raises(AdapterError):
            YandexIdentityProvider(session=session).resolve_identity("tok")

    def test_empty_token_never_calls_provider(self):
        session = _session()
        with pytest.raises(AdapterError):
            YandexIdentityProvider(session=session).resolve_identity("")
        session.get.assert_not_called()


# ---------------------------------------------------------------------------
# Timeout policy
# ---------------------------------------------------------------------------


class TestTimeouts:
    def test_single_timeout_is_retried(self):
        session = _session(requests.Timeout("slow"), _response({"default_email": "a@yandex.ru"}))
        assert YandexIdentityProvider(session=session).resolve_identity("tok") == "a@yandex.ru"
        assert session.get.call_count == 2

    def test_second_timeout_raises(self):
        session = _session(requests.Timeout("slow"), requests.Timeout("still slow"))
        with pytest.raises(AdapterError):
            YandexIdentityProvider(session=session).resolve_identity("tok")
        assert session.get.call_count == 2

    def test_connection_error_is_not_retried(self):
        session = _session(requests.ConnectionError("refused"))
        with pytest.raises(AdapterError):
            YandexIdentityProvider(session=session).resolve_identity("tok")
        assert session.get.call_count == 1


# ---------------------------------------------------------------------------
# Google / GitHub
# ---------------------------------------------------------------------------


class TestGoogle:
    def test_verified_email_accepted(self):
        session = _session(_response({"email": "a@gmail.com", "email_verified": True}))
        provider = GoogleIdentityProvider(session=session)
        assert provider.resolve_identity("tok") == "a@gmail.com"
        assert session.get.call_args.kwargs["headers"]["Authorization"] == "Bearer tok"

    def test_unverified_email_rejected(self):
        session = _session(_response({"email": "a@gmail.com", "email_verified": False}))
        with pytest.raises(AdapterError):
            GoogleIdentityProvider(session=session).resolve_identity("tok")


class TestGitHub:
    def test_primary_verified_email_selected(self):
        emails = [
            {"email": "old@x.com", "primary": False, "verified": True},
            {"email": "Main@X.com", "primary": True, "verified": True},
        ]
        session = _session(_response(emails))
        assert GitHubIdentityProvider(session=session).resolve_identity("tok") == "main@x.com"

    def test_unverified_primary_rejected(self):
        session = _session(_response([{"email": "a@x.com", "primary": True, "verified": False}]))
        with pytest.raises(AdapterError):
            GitHubIdentityProvider(session=session).resolve_identity("tok")


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


def test_build_only_configured_providers():
    settings = Settings(
        debug=True,
        yandex_client_id="id",
        yandex_client_secret="secret",
        google_client_id="only-id",
        provider_timeout_seconds=2.5,
    )
    providers = build_identity_providers(settings)
    assert list(providers) == ["yandex"]
    assert providers["yandex"].timeout == 2.5


def test_enabled_provider_metadata():
    providers = {"yandex": YandexIdentityProvider(session=MagicMock())}
    assert get_enabled_providers(providers) == [{"name": "yandex", "label": "Yandex"}]


def test_get_identity_provider_unknown_is_not_found():
    providers = {"yandex": YandexIdentityProvider(session=MagicMock())}
    assert get_identity_provider(providers, "yandex") is providers["yandex"]
    with pytest.raises(NotFound):
        get_identity_provider(providers, "github")
