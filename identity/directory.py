"""
identity/directory.py -- Read-through cached user lookup and writes.

The cache is keyed under both the user id and the email ("user:<key>"), so
either identifier hits. Writes go to the store first and only then to the
cache, which bounds the stale window to the time between the store commit and
the cache write. Deletes invalidate the cache before touching the store.

Cache TTL is the access-token lifetime: a role change or deletion is picked up
no later than the access tokens minted against the stale snapshot expire.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from auth.models import User
from auth.store import UserStore
from auth.tokens import hash_password
from cache.store import TTLCache
from core.errors import Conflict, NotFound, ValidationError

logger = logging.getLogger("storefront.identity.directory")


def _cache_key(id_or_email: str) -> str:
    return f"user:{id_or_email}"


def normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


class UserDirectory:
    def __init__(self, store: UserStore, cache: TTLCache, ttl: int) -> None:
        self.store = store
        self.cache = cache
        self.ttl = ttl

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def find_one(self, id_or_email: str, reset: bool = False) -> User | None:
        """Return the user for an id or email, consulting the cache first.

        reset=True drops the cached entry first, forcing a store read.
        """
        if not id_or_email:
            raise ValidationError("User id or email is required.")
        key = id_or_email.strip()
        if "@" in key:
            key = normalize_email(key)
        if reset:
            self.cache.delete(_cache_key(key))

        cached = self.cache.get(_cache_key(key))
        if cached is not None:
            return User.from_dict(cached)

        user = self.store.find_user(key)
        if user is None:
            return None
        self._write_cache(user)
        return user

    def find_by_id(self, user_id: str) -> User | None:
        return self.find_one(user_id)

    def find_by_email(self, email: str) -> User | None:
        return self.find_one(normalize_email(email))

    def force_refresh(self, id_or_email: str) -> User | None:
        """Bypass the cache; used after a write the caller knows made it stale."""
        return self.find_one(id_or_email, reset=True)

    def list_users(self) -> list[User]:
        return self.store.list_users()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(
        self,
        email: str,
        password: str | None = None,
        provider: str | None = None,
        roles: list[str] | None = None,
    ) -> User:
        """Insert a new user. Raises Conflict if the email is taken."""
        email = normalize_email(email)
        if not email:
            raise ValidationError("Email is required to create a user.")
        candidate = User(
            email=email,
            hashed_password=hash_password(password) if password else None,
            provider=provider,
        )
        if roles:
            candidate.roles = list(roles)
        try:
            user = self.store.create_user(candidate)
        except IntegrityError as exc:
            raise Conflict("A user with that email already exists.") from exc
        self._write_cache(user)
        logger.info("User %s created (provider=%s)", user.id, user.provider or "password")
        return user

    def upsert_by_email(
        self,
        email: str | None,
        password: str | None = None,
        provider: str | None = None,
        roles: list[str] | None = None,
    ) -> User:
        """Create or update the user identified by email and return the persisted record.

        Only the fields given are changed on an existing user. A new user gets
        the default role set when roles is omitted.
        """
        email = normalize_email(email)
        if not email:
            raise ValidationError("Email is required to save the user.")
        hashed = hash_password(password) if password else None
        user = self.store.upsert_by_email(email, hashed_password=hashed, provider=provider, roles=roles)
        self._write_cache(user)
        logger.info("User %s saved", user.id)
        return user

    def delete(self, user_id: str) -> str:
        """Delete a user by id and return the deleted id. Raises NotFound if unknown."""
        if not user_id:
            raise ValidationError("User id is required for deletion.")
        user = self.find_one(user_id)
        if user is None or user.id != user_id:
            raise NotFound(f'User with id "{user_id}" not found.')

        self.cache.delete(_cache_key(user.id))
        self.cache.delete(_cache_key(user.email))
        if not self.store.delete_user(user.id):
            raise NotFound(f'User with id "{user_id}" not found.')
        logger.info("User %s deleted", user.id)
        return user.id

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _write_cache(self, user: User) -> None:
        snapshot = user.to_dict()
        self.cache.set(_cache_key(user.id), snapshot, ttl=self.ttl)
        self.cache.set(_cache_key(user.email), snapshot, ttl=self.ttl)
