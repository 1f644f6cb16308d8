"""
auth/models.py -- Domain dataclasses for identity entities.

Pattern: Data class (pure data container, zero logic beyond small helpers).
Dataclasses own domain shape; stores and services do the work.

Layer rule: no imports from api/, identity/, or cache/.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"


DEFAULT_ROLES: tuple[str, ...] = (Role.USER.value,)


@dataclass
class User:
    """A storefront account.

    hashed_password is None for provider-only accounts (created by a first
    OAuth login). Such accounts can never log in with a password: the session
    service checks for None before verifying and never hands None to bcrypt.

    provider is None for accounts created by registration. It is set once, at
    creation, for provider-only accounts and is never used to overwrite the
    credentials of an existing password account.
    """

    email: str
    id: str | None = None
    hashed_password: str | None = None
    roles: list[str] = field(default_factory=lambda: list(DEFAULT_ROLES))
    provider: str | None = None  # "yandex", "google", "github"
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def is_admin(self) -> bool:
        return Role.ADMIN.value in self.roles

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> User:
        return cls(**data)


@dataclass
class RefreshToken:
    """A persisted, rotatable refresh credential.

    token is the opaque value delivered in the refresh cookie. It is the
    primary key of the store. (user_id, user_agent) is UNIQUE -- issuing a new
    token for the same agent replaces the old one.
    """

    token: str
    user_id: str
    user_agent: str
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class TokenPair:
    """Result of every successful login, provider login, or refresh."""

    access_token: str
    refresh_token: RefreshToken
