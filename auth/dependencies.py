"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and gating.

Two credential types are accepted, checked in priority order:
  1. Authorization: Bearer <access token> -- browsers and API clients.
  2. X-API-Key header -- CI/CD and scripts using long-lived API keys.

Both converge on a TokenClaims object. For API keys the claims are derived
from the store on every request, so they are never stale.

A Bearer header that fails verification is INVALID_TOKEN (401); no
credential at all is UNAUTHORIZED (401). Authorization failures are
FORBIDDEN (403). All of these are raised as core.errors.GatewayError
subclasses and rendered by the handler in api/main.py.

Tenant scoping:
  The tenant id comes from the {tenant_id} path parameter, falling back to
  the X-Tenant-ID header. Neither present means TENANT_REQUIRED (400).
  Membership is checked against the store, not the token snapshot, so a
  removed member loses access immediately. Super principals bypass
  membership and ownership checks.

Gating factories (require_license, require_plan, check_quota) return
dependencies to be listed in order on a route:
    @router.post("/tickets", dependencies=[
        Depends(require_license("tickets")),
        Depends(check_quota("max_tickets")),
    ])
check_quota reads the grant that require_license placed on request.state;
used on its own it fails with PRECONDITION_FAILED.

Layer rule: auth/ may import licensing/ types but never api/.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass

from fastapi import Depends, Request

from auth.models import TenantRole, TokenClaims
from auth.store import PrincipalStore
from auth.tokens import authenticate_api_key, decode_access_token, roles_for
from core.errors import ForbiddenError, InvalidTokenError, TenantRequiredError, UnauthorizedError
from licensing.models import EffectiveGrant, Plan, QuotaDecision


@dataclass(frozen=True)
class TenantAccess:
    """Outcome of a tenant access check. role is None for super principals
    that are not members of the tenant."""

    tenant_id: int
    claims: TokenClaims
    role: TenantRole | None

    @property
    def principal_id(self) -> int:
        return self.claims.principal_id

    @property
    def is_owner(self) -> bool:
        return self.role is TenantRole.OWNER


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


def try_get_claims(request: Request) -> TokenClaims | None:
    """Return verified claims, or None when no credential was presented.

    Raises InvalidTokenError for a Bearer token that fails verification and
    UnauthorizedError for an unknown or revoked API key.
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        claims = decode_access_token(auth_header[7:])
        if claims is None:
            raise InvalidTokenError()
        return claims

    raw_key = request.headers.get("X-API-Key", "")
    if raw_key:
        store: PrincipalStore = request.app.state.principal_store
        principal = authenticate_api_key(store, raw_key)
        if principal is None:
            raise UnauthorizedError("Invalid API key.")
        return TokenClaims(
            subject=str(principal.id),
            email=principal.email,
            roles=roles_for(principal),
            tenants=[str(t.id) for t in store.list_tenants_for_principal(principal.id)],
        )

    return None


def get_current_claims(request: Request) -> TokenClaims:
    """Require authentication.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(claims: TokenClaims = Depends(get_current_claims)): ...
    """
    claims = try_get_claims(request)
    if claims is None:
        raise UnauthorizedError()
    request.state.claims = claims
    return claims


def require_super(claims: TokenClaims = Depends(get_current_claims)) -> TokenClaims:
    """Require the cross-tenant super role."""
    if not claims.is_super:
        raise ForbiddenError("Super admin access required.")
    return claims


# ---------------------------------------------------------------------------
# Tenant scoping
# ---------------------------------------------------------------------------


def tenant_id_from_request(request: Request) -> int:
    raw = request.path_params.get("tenant_id") or request.headers.get("X-Tenant-ID")
    if raw is None or str(raw).strip() == "":
        raise TenantRequiredError()
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise TenantRequiredError("Tenant id must be an integer.") from None


def require_tenant_access(
    request: Request,
    claims: TokenClaims = Depends(get_current_claims),
) -> TenantAccess:
    """Require membership in the request's tenant (super bypasses)."""
    tenant_id = tenant_id_from_request(request)
    store: PrincipalStore = request.app.state.principal_store
    role = store.get_member_role(tenant_id, claims.principal_id)
    if role is None and not claims.is_super:
        raise ForbiddenError("No access to this tenant.", tenantId=tenant_id)
    return TenantAccess(tenant_id=tenant_id, claims=claims, role=role)


def require_owner(access: TenantAccess = Depends(require_tenant_access)) -> TenantAccess:
    """Require the owner role in the tenant (super bypasses)."""
    if not access.claims.is_super and not access.is_owner:
        raise ForbiddenError("Tenant owner access required.", tenantId=access.tenant_id)
    return access


def require_tenant_admin(access: TenantAccess = Depends(require_tenant_access)) -> TenantAccess:
    """Require owner or admin role in the tenant (super bypasses)."""
    if not access.claims.is_super and access.role not in (TenantRole.OWNER, TenantRole.ADMIN):
        raise ForbiddenError("Tenant admin access required.", tenantId=access.tenant_id)
    return access


# ---------------------------------------------------------------------------
# License / plan / quota gating
# ---------------------------------------------------------------------------


def _product_key(request: Request, product_key: str | None) -> str:
    return product_key or request.path_params["product_key"]


def require_license(product_key: str | None = None) -> Callable[..., EffectiveGrant]:
    """Dependency factory: the caller must hold an effective grant for the product.

    product_key None reads the {product_key} path parameter.
    """

    def dependency(request: Request, access: TenantAccess = Depends(require_tenant_access)) -> EffectiveGrant:
        effective = request.app.state.resolver.require(
            access.tenant_id,
            access.principal_id,
            _product_key(request, product_key),
        )
        request.state.license = effective
        return effective

    return dependency


def require_plan(
    product_key: str | None = None,
    plans: Iterable[Plan | str] | None = None,
    minimum: Plan | str | None = None,
) -> Callable[..., EffectiveGrant]:
    """Dependency factory: effective grant whose plan is in `plans` and/or ranks at least `minimum`."""
    allowed = list(plans) if plans is not None else None

    def dependency(request: Request, access: TenantAccess = Depends(require_tenant_access)) -> EffectiveGrant:
        effective = request.app.state.resolver.require_plan(
            access.tenant_id,
            access.principal_id,
            _product_key(request, product_key),
            allowed_plans=allowed,
            minimum_plan=minimum,
        )
        request.state.license = effective
        return effective

    return dependency


def check_quota(feature: str, requested: int = 1) -> Callable[..., QuotaDecision]:
    """Dependency factory: soft quota check against the grant resolved earlier in the request.

    Does not increment usage. Routes that meter an operation call
    QuotaAccountant.increment_usage() (or consume()) themselves.
    """

    def dependency(request: Request) -> QuotaDecision:
        effective = getattr(request.state, "license", None)
        decision = request.app.state.quota.enforce(effective, feature, requested)
        request.state.quota = decision
        return decision

    return dependency
