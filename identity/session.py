"""
identity/session.py -- Session lifecycle orchestration.

    Anonymous --register--> (account exists, still Anonymous)
    Anonymous --login / provider_auth--> Active (TokenPair issued)
    Active --refresh_tokens--> Active (old refresh token consumed, new pair)
    Active --logout--> LoggedOut (refresh token revoked)

Password login and provider login converge on TokenIssuer.issue_token_pair(),
so both paths return the same TokenPair shape.

Failures are raised as core.errors exceptions. Every refresh failure raises
the same Unauthorized, whether the token was unknown, expired, already
rotated, or belonged to a deleted user.

Agent binding: a refresh token is stored under the user agent that obtained
it. With bind_user_agent=False (default) a refresh from another agent is
accepted and the new token is stored under the new agent. With
bind_user_agent=True a mismatched agent is rejected; the presented token is
already consumed at that point, so it is revoked as well.
"""

from __future__ import annotations

import logging

from auth.models import TokenPair, User
from auth.store import RefreshTokenStore
from auth.tokens import burn_password_check, verify_password
from core.errors import Conflict, Unauthorized, ValidationError
from identity.directory import UserDirectory, normalize_email
from identity.issuer import TokenIssuer

logger = logging.getLogger("storefront.identity.session")

_MAX_AGENT_LENGTH = 512


def agent_fingerprint(user_agent: str | None) -> str:
    """Reduce a User-Agent header to the key refresh tokens are stored under."""
    value = (user_agent or "").strip()
    return value[:_MAX_AGENT_LENGTH] or "unknown"


class SessionService:
    def __init__(
        self,
        directory: UserDirectory,
        issuer: TokenIssuer,
        token_store: RefreshTokenStore,
        bind_user_agent: bool = False,
    ) -> None:
        self.directory = directory
        self.issuer = issuer
        self.token_store = token_store
        self.bind_user_agent = bind_user_agent

    def register(self, email: str, password: str) -> User:
        """Create a password account. Does not log the user in."""
        email = normalize_email(email)
        if not email or not password:
            raise ValidationError("Email and password are required.")
        if self.directory.find_by_email(email) is not None:
            raise Conflict("A user with that email already exists.")
        return self.directory.create(email, password=password)

    def login(self, email: str, password: str, user_agent: str | None) -> TokenPair:
        """Verify a password and issue a TokenPair.

        Unknown email, provider-only account, and wrong password all raise the
        same Unauthorized, and all three pay for one bcrypt comparison [C1].
        """
        user = self.directory.find_by_email(email)
        if user is None or user.hashed_password is None:
            burn_password_check(password)
            raise Unauthorized("Invalid email or password.")
        if not verify_password(password, user.hashed_password):
            raise Unauthorized("Invalid email or password.")
        logger.info("Password login for user %s", user.id)
        return self.issuer.issue_token_pair(user, agent_fingerprint(user_agent))

    def provider_auth(self, email: str, user_agent: str | None, provider: str) -> TokenPair:
        """Log in with a provider-verified email, creating the account on first use.

        An existing account is used as-is: its password hash and provider are
        never overwritten by a provider login.
        """
        email = normalize_email(email)
        if not email:
            raise ValidationError("Provider did not supply an email.")
        user = self.directory.find_by_email(email)
        if user is None:
            user = self.directory.upsert_by_email(email, provider=provider)
            logger.info("Created %s account %s on first provider login", provider, user.id)
        else:
            logger.info("Provider login (%s) for existing user %s", provider, user.id)
        return self.issuer.issue_token_pair(user, agent_fingerprint(user_agent))

    def refresh_tokens(self, refresh_token: str | None, user_agent: str | None) -> TokenPair:
        """Rotate refresh_token into a brand-new TokenPair.

        consume() deletes the presented token atomically, so a token can mint
        at most one pair even under concurrent reuse.
        """
        if not refresh_token:
            raise Unauthorized()
        record = self.token_store.consume(refresh_token)
        if record is None:
            raise Unauthorized()

        agent = agent_fingerprint(user_agent)
        if self.bind_user_agent and record.user_agent != agent:
            logger.warning("Refresh token for user %s presented by a different user agent", record.user_id)
            raise Unauthorized()

        user = self.directory.find_by_id(record.user_id)
        if user is None:
            raise Unauthorized()
        return self.issuer.issue_token_pair(user, agent)

    def delete_refresh_token(self, refresh_token: str) -> bool:
        """Revoke a single refresh token. Idempotent."""
        return self.token_store.delete_by_token(refresh_token)

    def logout(self, refresh_token: str | None) -> None:
        if not refresh_token:
            return
        self.delete_refresh_token(refresh_token)

    def delete_account(self, user_id: str) -> str:
        """Delete a user and revoke every refresh token issued to them."""
        deleted_id = self.directory.delete(user_id)
        revoked = self.token_store.delete_all_for_user(deleted_id)
        logger.info("Revoked %d refresh token(s) for deleted user %s", revoked, deleted_id)
        return deleted_id
