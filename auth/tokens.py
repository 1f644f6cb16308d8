"""
auth/tokens.py -- Password hashing, JWT, refresh token, and cookie utilities.

Security design decisions:
  JWT: python-jose with HS256. Access tokens are signed with SECRET_KEY and
       carry sub (user id), email, roles, iat, and exp. They are never
       persisted. Verification returns None on any failure -- the bearer guard
       turns that into a 401.

  Passwords: bcrypt with a random salt per call and a fixed cost factor
       (BCRYPT_ROUNDS, default 10). The _DUMMY_HASH constant enables timing
       equalization in the session service so response time does not reveal
       whether an email is registered [C1].

  Refresh tokens: secrets.token_urlsafe(32) gives 256 bits of entropy. The
       raw value is the store's primary key; it is only ever sent to the
       client in an HttpOnly cookie.

  Cookie: refresh token cookie is HttpOnly and Secure in every mode. SameSite
       is Lax in production and None otherwise (cross-site frontend in dev).

Layer rule: no imports from api/, identity/, or cache/. Import from core/
is allowed -- core/ is the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Iterable

import bcrypt
from jose import JWTError, jwt

from auth.models import RefreshToken
from core.config import get_settings
from core.errors import ValidationError

logger = logging.getLogger("storefront.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton [M6]
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"

REFRESH_COOKIE = "refreshtoken"

# bcrypt input limit
MAX_PASSWORD_BYTES = 72

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only accepts MAX_PASSWORD_BYTES of input (UTF-8 encoded), so longer
    passwords raise ValidationError instead of being silently cut short. The
    API models reject them earlier with a 422.
    """
    encoded = plain.encode("utf-8")
    if len(encoded) > MAX_PASSWORD_BYTES:
        raise ValidationError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes when UTF-8 encoded.")
    salt = bcrypt.gensalt(rounds=_settings.bcrypt_rounds)
    return bcrypt.hashpw(encoded, salt).decode("utf-8")


def verify_password(plain: str, hashed: str | None) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    A missing or malformed digest is a mismatch, never an exception.
    """
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except (ValueError, TypeError):
        return False


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("storefront_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Run a bcrypt comparison whose result is discarded.

    Called when the email is unknown or the account has no password, so the
    failing path costs the same as a real mismatch [C1].
    """
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def create_access_token(user_id: str, email: str, roles: Iterable[str], expire_seconds: int = 0) -> str:
    """Encode a signed access token.

    Args:
        user_id:        User id, stored as the JWT subject claim.
        email:          Informational claim for clients.
        roles:          Role names the guard checks for admin routes.
        expire_seconds: Lifetime in seconds. If 0 (default), uses
                        Settings.access_token_expire_seconds.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.access_token_expire_seconds
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "email": email,
        "roles": list(roles),
        "iat": now,
        "exp": now + timedelta(seconds=duration),
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> dict | None:
    """Decode and verify a JWT. Returns the payload dict or None on any failure."""
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if not payload.get("sub") or not isinstance(payload.get("roles"), list):
        return None
    return payload


# ---------------------------------------------------------------------------
# Refresh token generation
# ---------------------------------------------------------------------------


def generate_refresh_token() -> str:
    """Return a URL-safe opaque token with 256 bits of entropy."""
    return secrets.token_urlsafe(32)


def refresh_token_expiry(now: datetime | None = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    return now + timedelta(days=_settings.refresh_token_expire_days)


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def _same_site() -> str:
    return "lax" if _settings.is_production else "none"


def set_refresh_cookie(response, refresh_token: RefreshToken) -> None:
    """Write the refresh token as an HttpOnly, Secure cookie on the response.

    expires matches the stored expiry so the browser drops the cookie when the
    server would reject the token anyway. path="/" scopes it to the whole API.
    """
    response.set_cookie(
        REFRESH_COOKIE,
        value=refresh_token.token,
        httponly=True,
        secure=True,
        samesite=_same_site(),
        path="/",
        expires=refresh_token.expires_at,
    )


def clear_refresh_cookie(response) -> None:
    """Reset the refresh cookie with an already-elapsed expiry.

    Attributes mirror set_refresh_cookie() so the browser matches and replaces
    the existing cookie.
    """
    response.set_cookie(
        REFRESH_COOKIE,
        value="",
        httponly=True,
        secure=True,
        samesite=_same_site(),
        path="/",
        expires=datetime.now(timezone.utc) - timedelta(seconds=1),
    )
