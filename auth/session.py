"""
auth/session.py -- Session issuance and refresh rotation.

SessionIssuer is called after any successful login event (password, API key,
OAuth callback) and by POST /auth/refresh. It is the only place that decides
token lifetimes; routes never pass their own TTLs.

Refresh re-reads the principal and its memberships from the store: a refresh
token only proves identity, never authorization. Rotation issues a new pair
but does not revoke the presented refresh token, which stays valid until its
own expiry (tokens are stateless and no denylist is kept).
"""

from __future__ import annotations

import logging

from auth.models import Principal, SessionTokens
from auth.store import PrincipalStore
from auth.tokens import create_access_token, create_refresh_token, decode_refresh_token, roles_for
from core.config import get_settings
from core.errors import InvalidTokenError, UserNotFoundError

logger = logging.getLogger("licensegate.auth.session")


class SessionIssuer:
    def __init__(self, store: PrincipalStore) -> None:
        self._store = store

    def issue_session(self, principal: Principal) -> SessionTokens:
        """Mint an access/refresh pair for an already-authenticated principal."""
        settings = get_settings()
        tenants = self._store.list_tenants_for_principal(principal.id)
        access = create_access_token(
            principal,
            [t.id for t in tenants],
            expire_seconds=settings.access_token_expire_seconds,
        )
        refresh = create_refresh_token(principal, expire_seconds=settings.refresh_token_expire_seconds)
        return SessionTokens(
            access_token=access,
            refresh_token=refresh,
            access_expires_in=settings.access_token_expire_seconds,
            refresh_expires_in=settings.refresh_token_expire_seconds,
            principal_id=principal.id,
            email=principal.email,
            roles=roles_for(principal),
            tenants=tenants,
        )

    def refresh(self, refresh_token: str | None) -> SessionTokens:
        """Verify a refresh token and mint a fresh pair from current store state.

        Raises:
            InvalidTokenError: token missing, tampered, expired or not a refresh token.
            UserNotFoundError: the principal was deleted or is no longer active.
        """
        if not refresh_token:
            raise InvalidTokenError("Refresh token missing.")
        claims = decode_refresh_token(refresh_token)
        if claims is None:
            raise InvalidTokenError()

        principal = self._store.get_by_id(claims.principal_id)
        if principal is None or not principal.is_active:
            logger.info("Refresh rejected for principal %s: account unavailable", claims.subject)
            raise UserNotFoundError()
        return self.issue_session(principal)
