"""
API request and response models for Storefront Identity REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

UserResponse never carries hashed_password -- the only way a User reaches a
response body is through UserResponse.from_user().
"""

import re
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import Role, User
from auth.tokens import MAX_PASSWORD_BYTES

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Loose on purpose: one "@", something on both sides, a dot in the domain.
# Deliverability is the provider's / mail server's problem, not ours.
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _normalize_email(value: str) -> str:
    value = str(value).strip().lower()
    if not _EMAIL_RE.match(value):
        raise ValueError("must be a valid email address")
    return value


def _check_password_bytes(value: str | None) -> str | None:
    if value is not None and len(value.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValueError(f"must be at most {MAX_PASSWORD_BYTES} bytes when UTF-8 encoded")
    return value


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class CredentialsRequest(BaseModel):
    """Shared {email, password} shape for login and registration."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255)
    # Character cap here; the byte cap for bcrypt is checked below.
    password: str = Field(min_length=6, max_length=MAX_PASSWORD_BYTES)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return _normalize_email(value)

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value):
        return _check_password_bytes(value)


class RegisterRequest(CredentialsRequest):
    """Request body for POST /api/v1/auth/register."""


class LoginRequest(CredentialsRequest):
    """Request body for POST /api/v1/auth/login."""


class UserUpsert(BaseModel):
    """Request body for PUT /api/v1/user (admin). Omitted fields are left unchanged."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255)
    password: Optional[str] = Field(default=None, min_length=6, max_length=MAX_PASSWORD_BYTES)
    provider: Optional[str] = Field(default=None, max_length=30)
    roles: Optional[list[Role]] = Field(default=None, min_length=1)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return _normalize_email(value)

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value):
        return _check_password_bytes(value)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class TokenResponse(BaseModel):
    """Body of login / refresh / provider success responses.

    The refresh token is never in the body; it travels in the HttpOnly cookie.
    """

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int


class UserResponse(BaseModel):
    """Public view of a user account."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    roles: list[str]
    provider: Optional[str] = None
    created_at: str
    updated_at: str

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            roles=list(user.roles),
            provider=user.provider,
            created_at=user.created_at or "",
            updated_at=user.updated_at or "",
        )


class DeletedResponse(BaseModel):
    """Response for DELETE /api/v1/user/{id}."""

    model_config = ConfigDict(frozen=True)

    id: str


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class OAuthProviderInfo(BaseModel):
    """One entry in GET /api/v1/auth/providers."""

    model_config = ConfigDict(frozen=True)

    name: str
    label: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
