"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Requests authenticate with an "Authorization: Bearer <jwt>" header carrying
an access token minted by identity.issuer.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises Unauthorized if unauthenticated.
require_admin() wraps get_current_user() and raises Forbidden if the user
lacks the ADMIN role.

Protected routes opt in with Depends(get_current_user) or, for a whole
router, APIRouter(dependencies=[Depends(require_admin)]). Routes without
either are public: register, login, refresh-tokens, logout, providers, the
OAuth redirect/callback/success routes, and health.

The user is resolved through the directory (cache first), so a deleted user's
still-unexpired access token stops working once the cache entry is gone.

Layer rule: no imports from api/ or cache/. This module may import from
fastapi because it is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Depends, Request

from auth.models import User
from auth.tokens import decode_access_token
from core.errors import Forbidden, Unauthorized


def try_get_current_user(request: Request) -> User | None:
    """Authenticate the request from its Bearer header. Returns None on any failure."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    payload = decode_access_token(auth_header[7:])
    if payload is None:
        return None
    directory = request.app.state.directory
    return directory.find_by_id(payload["sub"])


def get_current_user(request: Request) -> User:
    """Require authentication. Raises Unauthorized if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: User = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise Unauthorized()
    request.state.user = user
    return user


def require_admin(user: User = Depends(get_current_user)) -> User:
    """Require the ADMIN role. Unauthorized if unauthenticated, Forbidden otherwise."""
    if not user.is_admin:
        raise Forbidden("Admin access required.")
    return user
