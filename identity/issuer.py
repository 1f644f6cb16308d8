"""
identity/issuer.py -- Access/refresh token minting.

issue_token_pair() persists the refresh token before it signs the access
token. If the store write raises, the exception propagates and the caller
gets nothing -- an access token is never handed out without its refresh
token already committed.
"""

from __future__ import annotations

import logging

from auth.models import RefreshToken, TokenPair, User
from auth.store import RefreshTokenStore
from auth.tokens import create_access_token, generate_refresh_token, refresh_token_expiry

logger = logging.getLogger("storefront.identity.issuer")


class TokenIssuer:
    def __init__(self, refresh_tokens: RefreshTokenStore) -> None:
        self.refresh_tokens = refresh_tokens

    def issue_access_token(self, user: User) -> str:
        """Sign a short-lived access token for user. No store interaction."""
        return create_access_token(user.id, user.email, user.roles)

    def issue_refresh_token(self, user_id: str, user_agent: str) -> RefreshToken:
        """Mint a refresh token and upsert it for (user_id, user_agent).

        Any earlier token for the same agent is replaced and stops working.
        """
        return self.refresh_tokens.upsert(
            user_id=user_id,
            user_agent=user_agent,
            token=generate_refresh_token(),
            expires_at=refresh_token_expiry(),
        )

    def issue_token_pair(self, user: User, user_agent: str) -> TokenPair:
        refresh_token = self.issue_refresh_token(user.id, user_agent)
        access_token = self.issue_access_token(user)
        logger.debug("Issued token pair for user %s", user.id)
        return TokenPair(access_token=access_token, refresh_token=refresh_token)
