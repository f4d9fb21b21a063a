"""
api/routes/v1/auth.py -- Authentication, session and API key endpoints.

Routes:
  POST   /api/v1/auth/register                  -- create a principal (X-Setup-Token)
  POST   /api/v1/auth/login                     -- password or API key login; sets refresh cookie
  POST   /api/v1/auth/refresh                   -- rotate the token pair
  POST   /api/v1/auth/logout                    -- clears the refresh cookie
  GET    /api/v1/auth/me                        -- verified token claims
  GET    /api/v1/auth/providers                 -- enabled OAuth providers (public)
  GET    /api/v1/auth/oauth/{provider}          -- redirect to the provider
  GET    /api/v1/auth/oauth/{provider}/callback -- complete OAuth login
  POST   /api/v1/auth/api-keys                  -- create API key
  GET    /api/v1/auth/api-keys                  -- list own API keys
  DELETE /api/v1/auth/api-keys/{id}             -- revoke key (ownership checked)

Security:
  [H2] POST /login is rate-limited per IP (LOGIN_RATE_LIMIT).
  [C1] authenticate_principal() provides timing equalization -- use it, never inline.
  [M5] Cache-Control: no-store on every response that carries tokens.
  IDOR guard: DELETE /api-keys/{id} passes principal_id to the store; the store checks ownership.
"""

from __future__ import annotations

import hmac
import logging
from typing import Optional
from urllib.parse import quote

from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse

from api.limiter import limiter, login_rate_limit
from api.models import (
    ApiKeyCreate,
    ApiKeyCreatedResponse,
    ApiKeyResponse,
    LoginRequest,
    LoginResponse,
    MeResponse,
    OAuthProviderInfo,
    PrincipalResponse,
    RefreshRequest,
    RegisterRequest,
    TenantSummary,
)
from auth.dependencies import get_current_claims
from auth.models import ApiKey, Principal, PrincipalStatus, SessionTokens, TokenClaims
from auth.oauth import get_enabled_providers, get_oauth_user_info
from auth.session import SessionIssuer
from auth.store import PrincipalStore
from auth.tokens import (
    authenticate_api_key,
    authenticate_principal,
    clear_refresh_cookie,
    generate_api_key,
    hash_api_key,
    hash_password,
    set_refresh_cookie,
)
from core.config import get_settings
from core.errors import ConflictError, ForbiddenError, NotFoundError, UnauthorizedError

logger = logging.getLogger("licensegate.api.auth")

_MAX_API_KEYS = 10

# Auth policy:
# - POST   /auth/register:          X-Setup-Token must match SETUP_TOKEN
# - POST   /auth/login:             public -- login endpoint must be unauthenticated
# - POST   /auth/refresh:           refresh token (cookie or body)
# - POST   /auth/logout:            public -- clearing a cookie needs no prior auth
# - GET    /auth/providers:         public
# - GET    /auth/oauth/...:         public -- provider flow
# - GET    /auth/me:                requires auth (get_current_claims)
# - *      /auth/api-keys:          requires auth (get_current_claims)
router = APIRouter()


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=PrincipalResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> PrincipalResponse:
    """Create a password account. Gated by the X-Setup-Token header.

    With no SETUP_TOKEN configured, registration is disabled entirely.
    """
    setup_token = get_settings().setup_token
    presented = request.headers.get("X-Setup-Token", "")
    if not setup_token or not hmac.compare_digest(presented.encode(), setup_token.encode()):
        raise ForbiddenError("Invalid or missing setup token.")

    store: PrincipalStore = request.app.state.principal_store
    principal_id = store.create_principal(
        Principal(
            email=body.email,
            display_name=body.display_name or body.email.split("@")[0],
            role=body.role,
            hashed_password=hash_password(body.password),
        )
    )
    logger.info("Principal registered: id=%s", principal_id)
    return _principal_to_response(store.get_by_id(principal_id))


@limiter.limit(login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email+password or an API key; issue a session.

    The same generic error is returned for unknown email, wrong password and
    inactive accounts to avoid leaking account existence.
    """
    store: PrincipalStore = request.app.state.principal_store
    if body.api_key:
        principal = authenticate_api_key(store, body.api_key)
    else:
        principal = authenticate_principal(store, body.email, body.password)
    if principal is None:
        raise UnauthorizedError("Invalid credentials.")

    store.update_last_login(principal.id)
    issuer: SessionIssuer = request.app.state.session_issuer
    return _session_response(issuer.issue_session(principal))


@router.post("/auth/refresh", response_model=LoginResponse)
def refresh(request: Request, body: Optional[RefreshRequest] = None) -> JSONResponse:
    """Rotate the token pair. The cookie wins over a token in the body.

    Roles and tenant memberships are re-read from the store, so a membership
    granted after login becomes visible here.
    """
    token = request.cookies.get(get_settings().refresh_cookie_name) or (body.refresh_token if body else None)
    issuer: SessionIssuer = request.app.state.session_issuer
    return _session_response(issuer.refresh(token))


@router.post("/auth/logout")
async def logout() -> JSONResponse:
    """Clear the refresh cookie. Outstanding access tokens expire on their own."""
    resp = JSONResponse(content={"message": "Logged out."})
    clear_refresh_cookie(resp)
    return resp


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers() -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers. Empty when none are set up."""
    return [OAuthProviderInfo(**p) for p in get_enabled_providers()]


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


@router.get("/auth/oauth/{provider}")
async def oauth_redirect(request: Request, provider: str) -> Response:
    """Redirect the browser to the provider's authorization page.

    The provider name is checked against the enabled list first so a spoofed
    name cannot reach the registry.
    """
    enabled = {p["name"] for p in get_enabled_providers()}
    if provider not in enabled:
        raise NotFoundError("Unknown OAuth provider.", provider=provider)

    client = request.app.state.oauth.create_client(provider)
    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    return await client.authorize_redirect(request, redirect_uri)


@router.get("/auth/oauth/{provider}/callback", name="oauth_callback")
async def oauth_callback(request: Request, provider: str) -> RedirectResponse:
    """Complete the provider flow and hand the access token to the frontend.

    Flow:
      1. Exchange authorization code for token (authlib checks state via session).
      2. Extract (email, subject, name) -- raises ValueError if unverified [H1].
      3. Resolve the principal: linked identity, then email match (link), then
         auto-provision when allowed.
      4. Redirect to FRONTEND_URL/auth/callback#token=..., refresh cookie set.
    Failures redirect with #error=<slug> instead.
    """
    enabled = {p["name"] for p in get_enabled_providers()}
    if provider not in enabled:
        return _oauth_error_redirect("oauth_failed")

    client = request.app.state.oauth.create_client(provider)
    try:
        token = await client.authorize_access_token(request)
    except OAuthError:
        logger.exception("OAuth token exchange failed for provider %r", provider)
        return _oauth_error_redirect("oauth_failed")

    try:
        email, subject, display_name = await get_oauth_user_info(client, provider, token)
    except ValueError:
        logger.warning("OAuth login rejected: unverified or missing email from %r", provider)
        return _oauth_error_redirect("oauth_failed")

    store: PrincipalStore = request.app.state.principal_store
    principal, error = _resolve_oauth_principal(store, provider, email, subject, display_name)
    if principal is None:
        logger.info("OAuth login refused (%s) for provider %r", error, provider)
        return _oauth_error_redirect(error)

    store.update_last_login(principal.id)
    issuer: SessionIssuer = request.app.state.session_issuer
    session = issuer.issue_session(principal)
    resp = RedirectResponse(
        f"{get_settings().frontend_url.rstrip('/')}/auth/callback#token={quote(session.access_token)}",
        status_code=302,
    )
    set_refresh_cookie(resp, session.refresh_token, session.refresh_expires_in)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _resolve_oauth_principal(
    store: PrincipalStore,
    provider: str,
    email: str,
    subject: str,
    display_name: str,
) -> tuple[Principal | None, str]:
    """Return (principal, "") or (None, error_slug)."""
    settings = get_settings()
    principal = store.get_by_oauth(provider, subject)

    if principal is None:
        principal = store.get_by_email(email)
        if principal is not None:
            if principal.oauth_subject is not None and principal.oauth_provider != provider:
                # Already linked to a different provider identity.
                return None, "account_linked_elsewhere"
            store.link_oauth(principal.id, provider, subject)
            principal = store.get_by_id(principal.id)

    if principal is None:
        email_l = email.lower()
        domain_ok = (
            not settings.allowed_email_domain
            or email_l.endswith("@" + settings.allowed_email_domain)
            or email_l == settings.super_admin_email
        )
        if not domain_ok:
            return None, "domain_not_allowed"
        if not settings.oauth_auto_provision:
            return None, "not_provisioned"
        principal_id = store.create_principal(
            Principal(
                email=email,
                display_name=display_name or email.split("@")[0],
                oauth_provider=provider,
                oauth_subject=subject,
                status=PrincipalStatus.ACTIVE,
            )
        )
        logger.info("Principal auto-provisioned via %s: id=%s", provider, principal_id)
        principal = store.get_by_id(principal_id)

    if principal is None or not principal.is_active:
        return None, "account_disabled"
    return principal, ""


def _oauth_error_redirect(slug: str) -> RedirectResponse:
    return RedirectResponse(
        f"{get_settings().frontend_url.rstrip('/')}/auth/callback#error={quote(slug)}",
        status_code=302,
    )


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
async def me(claims: TokenClaims = Depends(get_current_claims)) -> MeResponse:
    """Return the verified claims. tenants is the issuance-time snapshot."""
    return MeResponse(
        principal_id=claims.principal_id,
        email=claims.email,
        roles=claims.roles,
        tenants=claims.tenant_ids,
        is_super=claims.is_super,
        expires_at=claims.expires_at,
    )


# ---------------------------------------------------------------------------
# API key management (authenticated)
# ---------------------------------------------------------------------------


@router.post("/auth/api-keys", response_model=ApiKeyCreatedResponse, status_code=201)
def create_api_key(
    request: Request,
    body: ApiKeyCreate,
    claims: TokenClaims = Depends(get_current_claims),
) -> ApiKeyCreatedResponse:
    """Generate a new API key. The raw key is shown ONCE and never stored.

    [H3] Capped at 10 active keys per principal.
    """
    store: PrincipalStore = request.app.state.principal_store

    if len(store.get_api_keys(claims.principal_id)) >= _MAX_API_KEYS:  # [H3]
        raise ConflictError(
            f"Maximum of {_MAX_API_KEYS} API keys per principal. Revoke an existing key first.",
        )

    raw_key = generate_api_key()
    key_prefix = raw_key[:12]
    key_id = store.create_api_key(
        ApiKey(
            principal_id=claims.principal_id,
            name=body.name,
            key_hash=hash_api_key(raw_key),
            key_prefix=key_prefix,
        )
    )
    created = next((k for k in store.get_api_keys(claims.principal_id) if k.id == key_id), None)
    return ApiKeyCreatedResponse(
        id=key_id,
        name=body.name,
        key_prefix=key_prefix,
        created_at=created.created_at if created else None,
        last_used=None,
        key=raw_key,
    )


@router.get("/auth/api-keys", response_model=list[ApiKeyResponse])
def list_api_keys(
    request: Request,
    claims: TokenClaims = Depends(get_current_claims),
) -> list[ApiKeyResponse]:
    """List active API keys for the caller. Raw key values are never returned."""
    store: PrincipalStore = request.app.state.principal_store
    return [
        ApiKeyResponse(
            id=k.id,
            name=k.name,
            key_prefix=k.key_prefix,
            created_at=k.created_at,
            last_used=k.last_used,
        )
        for k in store.get_api_keys(claims.principal_id)
    ]


@router.delete("/auth/api-keys/{key_id}", status_code=204)
def revoke_api_key(
    request: Request,
    key_id: int,
    claims: TokenClaims = Depends(get_current_claims),
) -> Response:
    """Revoke an API key. Ownership is verified server-side [IDOR guard]."""
    store: PrincipalStore = request.app.state.principal_store
    if not store.revoke_api_key(key_id, claims.principal_id):
        raise NotFoundError("API key not found.")
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _session_response(session: SessionTokens) -> JSONResponse:
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=session.access_token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=session.access_expires_in,
            refresh_token=session.refresh_token,
            principal_id=session.principal_id,
            email=session.email,
            roles=session.roles,
            tenants=[TenantSummary(id=t.id, name=t.name) for t in session.tenants],
        ).model_dump(),
    )
    set_refresh_cookie(resp, session.refresh_token, session.refresh_expires_in)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _principal_to_response(principal: Principal | None) -> PrincipalResponse:
    if principal is None:
        raise NotFoundError("Principal not found after write.")
    return PrincipalResponse(
        id=principal.id,
        email=principal.email,
        display_name=principal.display_name,
        role=principal.role.value,
        status=principal.status.value,
        created_at=principal.created_at,
    )
