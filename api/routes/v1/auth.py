"""
api/routes/v1/auth.py -- Registration, login, token rotation, and provider login endpoints.

Routes:
  POST /api/v1/auth/register                    -- create a password account; 201, no tokens
  POST /api/v1/auth/login                       -- password login; access token in body, refresh cookie
  GET  /api/v1/auth/refresh-tokens              -- rotate the refresh cookie into a new pair
  POST /api/v1/auth/logout                      -- revoke the refresh token, clear the cookie
  GET  /api/v1/auth/me                          -- current user (requires bearer token)
  GET  /api/v1/auth/providers                   -- list enabled OAuth providers (public)
  GET  /api/v1/auth/oauth/{provider}            -- redirect to the provider's consent page
  GET  /api/v1/auth/oauth/{provider}/callback   -- code exchange; redirect to the frontend with ?token=
  GET  /api/v1/auth/oauth/{provider}/success    -- exchange a provider token for a token pair

Only /auth/me requires a bearer token (Depends(get_current_user)); every
other route here is public.

Security:
  [H2] POST /login is rate-limited per IP (LOGIN_RATE_LIMIT).
  [C1] SessionService.login() equalizes timing -- never inline lookup + verify here.
  [M5] Cache-Control: no-store on every response that carries tokens.
"""

from __future__ import annotations

import logging
from urllib.parse import urlencode

from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.concurrency import run_in_threadpool

from api.limiter import limiter
from api.models import LoginRequest, MessageResponse, OAuthProviderInfo, RegisterRequest, TokenResponse, UserResponse
from auth.dependencies import get_current_user
from auth.models import TokenPair, User
from auth.oauth import IdentityProvider, get_enabled_providers, get_identity_provider
from auth.tokens import REFRESH_COOKIE, clear_refresh_cookie, set_refresh_cookie
from core.config import get_settings
from core.errors import NotFound, Unauthorized
from identity.session import SessionService

logger = logging.getLogger("storefront.api.auth")

_settings = get_settings()

router = APIRouter()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _session(request: Request) -> SessionService:
    return request.app.state.session_service


def _user_agent(request: Request) -> str | None:
    return request.headers.get("User-Agent")


def _token_response(pair: TokenPair) -> JSONResponse:
    """Access token in the body, refresh token in the cookie [M5]."""
    resp = JSONResponse(
        status_code=201,
        content=TokenResponse(
            access_token=pair.access_token,
            expires_in=_settings.access_token_expire_seconds,
        ).model_dump(),
    )
    set_refresh_cookie(resp, pair.refresh_token)
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _identity_provider(request: Request, provider: str) -> IdentityProvider:
    return get_identity_provider(request.app.state.identity_providers, provider)


# ---------------------------------------------------------------------------
# Password flow
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=UserResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> UserResponse:
    """Create a password account. Registration does not log the user in."""
    user = _session(request).register(body.email, body.password)
    return UserResponse.from_user(user)


@limiter.limit(_settings.login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=TokenResponse, status_code=201)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; return the access token and set the refresh cookie.

    Unknown email and wrong password produce the same 401.
    """
    pair = _session(request).login(body.email, body.password, _user_agent(request))
    return _token_response(pair)


@router.get("/auth/refresh-tokens", response_model=TokenResponse, status_code=201)
def refresh_tokens(request: Request) -> JSONResponse:
    """Rotate the refresh cookie. The presented token is invalid afterwards."""
    token = request.cookies.get(REFRESH_COOKIE)
    if not token:
        raise Unauthorized()
    pair = _session(request).refresh_tokens(token, _user_agent(request))
    return _token_response(pair)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request) -> JSONResponse:
    """Revoke the refresh token (if any) and expire the cookie. Always 200."""
    _session(request).logout(request.cookies.get(REFRESH_COOKIE))
    resp = JSONResponse(content=MessageResponse(message="Logged out.").model_dump())
    clear_refresh_cookie(resp)
    return resp


@router.get("/auth/me", response_model=UserResponse)
def me(current_user: User = Depends(get_current_user)) -> UserResponse:
    """Return the account behind the bearer token."""
    return UserResponse.from_user(current_user)


# ---------------------------------------------------------------------------
# Provider flow
# ---------------------------------------------------------------------------


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
def list_providers(request: Request) -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers. Empty list if none are set up."""
    return [OAuthProviderInfo(**p) for p in get_enabled_providers(request.app.state.identity_providers)]


@router.get("/auth/oauth/{provider}")
async def oauth_login(request: Request, provider: str):
    """Redirect the browser to the provider's authorization page.

    authlib stores the OAuth state in the Starlette session (CSRF protection)
    and checks it again in the callback.
    """
    _identity_provider(request, provider)
    client = request.app.state.oauth.create_client(provider)
    if client is None:
        raise NotFound(f"OAuth provider {provider!r} is not enabled.")
    redirect_uri = request.url_for("oauth_callback", provider=provider)
    return await client.authorize_redirect(request, str(redirect_uri))


@router.get("/auth/oauth/{provider}/callback", name="oauth_callback")
async def oauth_callback(request: Request, provider: str) -> RedirectResponse:
    """Finish the code exchange, log the user in, and hand the access token to the frontend.

    The identity call and the session write are blocking, so both run in the
    threadpool; nothing is persisted unless identity resolution succeeds.
    """
    adapter = _identity_provider(request, provider)
    client = request.app.state.oauth.create_client(provider)
    if client is None:
        raise NotFound(f"OAuth provider {provider!r} is not enabled.")
    try:
        token = await client.authorize_access_token(request)
    except OAuthError as exc:
        logger.warning("%s OAuth code exchange failed: %s", provider, exc)
        raise Unauthorized("Provider authentication failed.") from exc

    email = await run_in_threadpool(adapter.resolve_identity, token.get("access_token", ""))
    pair = await run_in_threadpool(_session(request).provider_auth, email, _user_agent(request), provider)

    target = f"{_settings.client_url}/auth/success-{provider}?{urlencode({'token': pair.access_token})}"
    resp = RedirectResponse(target, status_code=302)
    set_refresh_cookie(resp, pair.refresh_token)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.get("/auth/oauth/{provider}/success", response_model=TokenResponse, status_code=201)
def oauth_success(
    request: Request,
    provider: str,
    token: str = Query(min_length=1, max_length=4096),
) -> JSONResponse:
    """Exchange a provider-issued OAuth token for a storefront token pair.

    Same response shape as password login.
    """
    email = _identity_provider(request, provider).resolve_identity(token)
    pair = _session(request).provider_auth(email, _user_agent(request), provider)
    return _token_response(pair)
