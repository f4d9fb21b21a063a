"""
auth/tokens.py -- JWT codec, password hashing, API key and cookie utilities.

Security design decisions:
  JWT: python-jose with HS256. Two token types share the signing key and are
       told apart by the "type" claim:
         access  -- sub, email, roles, tenants, exp. Short-lived.
         refresh -- sub, email, jti, exp only. Long-lived, rotated on refresh.
       Roles and tenants are deliberately absent from refresh tokens: the
       refresh flow re-reads them from the store instead of trusting a
       30-day-old snapshot. Decoding returns None on any failure (bad
       signature, expired, malformed, wrong type) -- the route layer turns
       that into a uniform INVALID_TOKEN 401.

  Passwords: bcrypt directly. _DUMMY_HASH enables timing equalization in
       authenticate_principal() so response time does not reveal whether an
       email is registered [C1].

  API keys: secrets.token_hex(32) gives 256 bits of entropy. We store
       HMAC-SHA256(SECRET_KEY, raw_key) so lookup is O(1).

  Refresh cookie: httpOnly, samesite=lax, path restricted to the auth routes,
       optionally scoped to a shared parent domain.

Layer rule: no imports from api/ or licensing/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from auth.models import Principal, RefreshClaims, Role, TokenClaims
from core.config import get_settings

if TYPE_CHECKING:
    from auth.store import PrincipalStore

logger = logging.getLogger("licensegate.auth")

_settings = get_settings()

_ALGORITHM = "HS256"
_ACCESS = "access"
_REFRESH = "refresh"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt truncates at 72 bytes; the API layer caps passwords at 255 chars.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Timing equalization dummy hash [C1].
_DUMMY_HASH: str = hash_password("licensegate_timing_dummy")


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------


def roles_for(principal: Principal) -> list[str]:
    """Return the role list placed in the access token.

    A principal is super when its stored role is SUPER or its email matches
    SUPER_ADMIN_EMAIL. Super principals carry ["admin", "super"] so that
    admin-level checks keep working alongside the cross-tenant bypass.
    """
    is_super = principal.role is Role.SUPER or (
        bool(_settings.super_admin_email) and principal.email.lower() == _settings.super_admin_email
    )
    if is_super:
        return [Role.ADMIN.value, Role.SUPER.value]
    return [principal.role.value.lower()]


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def create_access_token(
    principal: Principal,
    tenant_ids: list[int] | list[str],
    expire_seconds: int | None = None,
) -> str:
    """Encode a signed access token for a principal and its tenant snapshot.

    Args:
        principal:      Authenticated principal (id must be set).
        tenant_ids:     Tenants the principal belongs to right now.
        expire_seconds: Token lifetime. None uses ACCESS_TOKEN_EXPIRE_SECONDS.
    """
    duration = _settings.access_token_expire_seconds if expire_seconds is None else expire_seconds
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(principal.id),
        "email": principal.email,
        "roles": roles_for(principal),
        "tenants": [str(t) for t in tenant_ids],
        "type": _ACCESS,
        "iat": now,
        "exp": now + timedelta(seconds=duration),
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def create_refresh_token(principal: Principal, expire_seconds: int | None = None) -> str:
    """Encode a minimal refresh token (subject + email + unique id)."""
    duration = _settings.refresh_token_expire_seconds if expire_seconds is None else expire_seconds
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(principal.id),
        "email": principal.email,
        "type": _REFRESH,
        "jti": uuid.uuid4().hex,
        "iat": now,
        "exp": now + timedelta(seconds=duration),
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def _decode(token: str, expected_type: str) -> dict | None:
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if payload.get("type") != expected_type:
        return None
    if not payload.get("sub") or "email" not in payload:
        return None
    return payload


def decode_access_token(token: str) -> TokenClaims | None:
    """Decode and verify an access token. Returns claims or None on any failure."""
    payload = _decode(token, _ACCESS)
    if payload is None:
        return None
    roles = payload.get("roles")
    tenants = payload.get("tenants")
    if not isinstance(roles, list) or not isinstance(tenants, list):
        return None
    return TokenClaims(
        subject=payload["sub"],
        email=payload["email"],
        roles=[str(r) for r in roles],
        tenants=[str(t) for t in tenants],
        expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
    )


def decode_refresh_token(token: str) -> RefreshClaims | None:
    """Decode and verify a refresh token. Returns claims or None on any failure."""
    payload = _decode(token, _REFRESH)
    if payload is None or not payload.get("jti"):
        return None
    return RefreshClaims(
        subject=payload["sub"],
        email=payload["email"],
        token_id=payload["jti"],
        expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
    )


# ---------------------------------------------------------------------------
# Principal authentication (constant-time) [C1]
# ---------------------------------------------------------------------------


def authenticate_principal(store: PrincipalStore, email: str, password: str) -> Principal | None:
    """Authenticate an email/password login with timing equalization.

    Always runs bcrypt whether or not the principal exists:
    - Unknown email: bcrypt runs against _DUMMY_HASH (same cost as real check)
    - Wrong password: bcrypt runs against the real hash (same cost)

    Returns the Principal on success, None on any failure (including
    non-active accounts).
    """
    principal = store.get_by_email(email)
    if principal is None or principal.hashed_password is None:
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, principal.hashed_password):
        return None
    if not principal.is_active:
        return None
    return principal


def authenticate_api_key(store: PrincipalStore, raw_key: str) -> Principal | None:
    """Resolve an API key to its active owner. Stamps last_used on success."""
    key = store.get_api_key_by_hash(hash_api_key(raw_key))
    if key is None or not key.is_active:
        return None
    principal = store.get_by_id(key.principal_id)
    if principal is None or not principal.is_active:
        return None
    store.update_api_key_last_used(key.id)
    return principal


# ---------------------------------------------------------------------------
# API key generation and hashing
# ---------------------------------------------------------------------------


def generate_api_key() -> str:
    """Generate a new API key in the format: lg_<64 hex chars>."""
    return f"lg_{secrets.token_hex(32)}"


def hash_api_key(raw_key: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw_key) as a hex string."""
    return hmac.new(
        _settings.secret_key.encode(),
        raw_key.encode(),
        hashlib.sha256,
    ).hexdigest()


# ---------------------------------------------------------------------------
# Refresh cookie
# ---------------------------------------------------------------------------


def set_refresh_cookie(response, token: str, expire_seconds: int | None = None) -> None:
    """Write the refresh token as an httpOnly cookie scoped to the auth routes.

    Only the token value and lifetime are decided here; max_age matches the
    JWT expiry so both lapse together.
    """
    duration = _settings.refresh_token_expire_seconds if expire_seconds is None else expire_seconds
    response.set_cookie(
        _settings.refresh_cookie_name,
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=duration,
        path=_settings.refresh_cookie_path,
        domain=_settings.cookie_domain or None,
    )


def clear_refresh_cookie(response) -> None:
    response.delete_cookie(
        _settings.refresh_cookie_name,
        path=_settings.refresh_cookie_path,
        domain=_settings.cookie_domain or None,
    )
