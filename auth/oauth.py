"""
auth/oauth.py -- OAuth provider registry and identity adapters.

Two concerns live here:

  1. Authlib registry (authorization-code redirect flow). Only providers with
     both client ID and secret configured get registered. The API layer uses
     oauth.create_client(name) for the redirect and the code exchange.

  2. Identity adapters. Given a provider-issued OAuth access token,
     IdentityProvider.resolve_identity() calls the provider's identity
     endpoint and returns a verified email. The session service only ever
     sees that email, so adding a provider never touches the service.

Security notes:
  [H1] Email verification is mandatory where the provider reports it. An
       unverified email could be a victim's address added by an attacker.
       Yandex only returns addresses owned by the Yandex account, so its
       default_email is accepted as-is.

  The provider token is sent in the Authorization header, never in the query
  string, so it does not end up in proxy or access logs.

Timeout policy:
  Every identity call has an explicit timeout (PROVIDER_TIMEOUT_SECONDS,
  default 5s). A requests.Timeout is retried once; a second timeout, any other
  transport error, a non-2xx status, a non-JSON body, or a missing/unverified
  email raises AdapterError. No lock is held while waiting on the provider.

Layer rule: no imports from api/, identity/, or cache/. Import from core/
is allowed -- core/ is the kernel layer.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import requests
from authlib.integrations.starlette_client import OAuth

from core.config import Settings, get_settings
from core.errors import AdapterError, NotFound

logger = logging.getLogger("storefront.auth.oauth")

# ---------------------------------------------------------------------------
# Authlib OAuth registry
# ---------------------------------------------------------------------------

oauth = OAuth()

_cfg = get_settings()

# Yandex -- static endpoints
if _cfg.yandex_client_id and _cfg.yandex_client_secret:
    oauth.register(
        name="yandex",
        client_id=_cfg.yandex_client_id,
        client_secret=_cfg.yandex_client_secret,
        access_token_url="https://oauth.yandex.ru/token",  # noqa: S106 -- URL, not a password
        authorize_url="https://oauth.yandex.ru/authorize",
        client_kwargs={"scope": "login:email"},
    )
    logger.info("Yandex OAuth provider registered")

# Google -- OIDC discovery
if _cfg.google_client_id and _cfg.google_client_secret:
    oauth.register(
        name="google",
        client_id=_cfg.google_client_id,
        client_secret=_cfg.google_client_secret,
        server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
        client_kwargs={"scope": "openid email profile"},
    )
    logger.info("Google OAuth provider registered")

# GitHub -- static endpoints (no OIDC discovery document)
if _cfg.github_client_id and _cfg.github_client_secret:
    oauth.register(
        name="github",
        client_id=_cfg.github_client_id,
        client_secret=_cfg.github_client_secret,
        access_token_url="https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
        authorize_url="https://github.com/login/oauth/authorize",
        api_base_url="https://api.github.com/",
        client_kwargs={"scope": "read:user user:email"},
    )
    logger.info("GitHub OAuth provider registered")


# ---------------------------------------------------------------------------
# Identity adapters
# ---------------------------------------------------------------------------


class IdentityProvider:
    """Resolve a provider OAuth token into the provider-verified email.

    Subclasses set name/label/identity_url and implement _extract_email().
    """

    name: str = ""
    label: str = ""
    identity_url: str = ""
    auth_scheme: str = "Bearer"

    def __init__(self, session: Optional[requests.Session] = None, timeout: float = 5.0) -> None:
        self.timeout = timeout
        self._session = session or requests.Session()
        # Identity endpoints are fixed, well-known URLs; a long redirect chain
        # is never legitimate.
        self._session.max_redirects = 3

    def resolve_identity(self, oauth_token: str) -> str:
        """Return the verified email for oauth_token or raise AdapterError."""
        if not oauth_token:
            raise AdapterError(f"{self.name}: empty provider token", provider=self.name)
        data = self._get_json(self.identity_url, oauth_token)
        email = self._extract_email(data)
        if not email or "@" not in email:
            raise AdapterError(f"{self.name}: no usable email in identity response", provider=self.name)
        return email.strip().lower()

    def _extract_email(self, data: Any) -> Optional[str]:
        raise NotImplementedError

    def _get_json(self, url: str, oauth_token: str) -> Any:
        headers = {"Authorization": f"{self.auth_scheme} {oauth_token}", "Accept": "application/json"}
        resp = None
        for attempt in (1, 2):
            try:
                resp = self._session.get(url, headers=headers, timeout=self.timeout)
                break
            except requests.Timeout as e:
                if attempt == 2:
                    raise AdapterError(f"{self.name}: identity call timed out twice", provider=self.name) from e
                logger.warning("%s identity call timed out, retrying once", self.name)
            except requests.RequestException as e:
                raise AdapterError(f"{self.name}: identity call failed: {e}", provider=self.name) from e
        try:
            resp.raise_for_status()
        except requests.HTTPError as e:
            raise AdapterError(
                f"{self.name}: identity endpoint returned {resp.status_code}", provider=self.name
            ) from e
        try:
            return resp.json()
        except ValueError as e:
            raise AdapterError(f"{self.name}: identity response is not JSON", provider=self.name) from e


class YandexIdentityProvider(IdentityProvider):
    name = "yandex"
    label = "Yandex"
    identity_url = "https://login.yandex.ru/info?format=json"
    auth_scheme = "OAuth"

    def _extract_email(self, data: Any) -> Optional[str]:
        if not isinstance(data, dict):
            return None
        return data.get("default_email")


class GoogleIdentityProvider(IdentityProvider):
    name = "google"
    label = "Google"
    identity_url = "https://openidconnect.googleapis.com/v1/userinfo"

    def _extract_email(self, data: Any) -> Optional[str]:
        """[H1] Accept the email claim only when email_verified is true."""
        if not isinstance(data, dict):
            return None
        if not data.get("email_verified", False):
            raise AdapterError("google: email is not verified", provider=self.name)
        return data.get("email")


class GitHubIdentityProvider(IdentityProvider):
    name = "github"
    label = "GitHub"
    identity_url = "https://api.github.com/user/emails"

    def _extract_email(self, data: Any) -> Optional[str]:
        """[H1] Only the entry where both primary and verified are true is accepted."""
        if not isinstance(data, list):
            return None
        for entry in data:
            if isinstance(entry, dict) and entry.get("primary") and entry.get("verified"):
                return entry.get("email")
        raise AdapterError("github: no primary verified email", provider=self.name)


_ADAPTERS: dict[str, type[IdentityProvider]] = {
    "yandex": YandexIdentityProvider,
    "google": GoogleIdentityProvider,
    "github": GitHubIdentityProvider,
}


def _is_configured(settings: Settings, name: str) -> bool:
    return bool(getattr(settings, f"{name}_client_id") and getattr(settings, f"{name}_client_secret"))


def build_identity_providers(settings: Settings | None = None) -> dict[str, IdentityProvider]:
    """Instantiate an adapter for every configured provider.

    Called once in the application lifespan; the result is injected through
    app.state.identity_providers. One requests.Session is shared for
    connection pooling.
    """
    cfg = settings or get_settings()
    session = requests.Session()
    return {
        name: adapter_cls(session=session, timeout=cfg.provider_timeout_seconds)
        for name, adapter_cls in _ADAPTERS.items()
        if _is_configured(cfg, name)
    }


def get_identity_provider(providers: dict[str, IdentityProvider], name: str) -> IdentityProvider:
    """Return the adapter for name. Raises NotFound if the provider is not enabled."""
    adapter = providers.get(name)
    if adapter is None:
        raise NotFound(f"OAuth provider {name!r} is not enabled.")
    return adapter


def get_enabled_providers(providers: dict[str, IdentityProvider]) -> list[dict]:
    """Return {"name", "label"} metadata for each active provider, for the login page."""
    return [{"name": p.name, "label": p.label} for p in providers.values()]
