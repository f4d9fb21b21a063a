"""
api/routes/v1/licenses.py -- Product entitlement (license) endpoints.

Routes:
  GET    /api/v1/licenses/products                                      -- public
  GET    /api/v1/licenses/plans                                         -- public
  GET    /api/v1/licenses/tenants/{tenant_id}                           -- all grants of a tenant
  GET    /api/v1/licenses/tenants/{tenant_id}/products/{product_key}    -- active org grant
  POST   /api/v1/licenses/tenants/{tenant_id}/products/{product_key}    -- upsert org grant
  DELETE /api/v1/licenses/tenants/{tenant_id}/products/{product_key}    -- revoke (super only)
  POST   /api/v1/licenses/tenants/{tenant_id}/products/{product_key}/upgrade
  GET    /api/v1/licenses/tenants/{tenant_id}/products/{product_key}/access  -- resolver check
  POST   /api/v1/licenses/tenants/{tenant_id}/products/{product_key}/usage   -- metered consume
  GET    /api/v1/licenses/tenants/{tenant_id}/members/{principal_id}    -- member grants
  POST   /api/v1/licenses/tenants/{tenant_id}/members/{principal_id}    -- upsert member grant
  DELETE /api/v1/licenses/tenants/{tenant_id}/members/{principal_id}?product_key=...

/access and /usage are the reference consumers of the gating dependencies:
they answer 403 LICENSE_REQUIRED when nothing is effective for the caller and
403 QUOTA_EXCEEDED (with feature/limit/current) when a metered call would
overshoot the grant's limit.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query, Request, Response

from api.models import (
    AccessResponse,
    GrantResponse,
    GrantUpgrade,
    GrantUpsert,
    MemberGrantUpsert,
    PlanResponse,
    ProductResponse,
    QuotaResponse,
    UsageRequest,
)
from auth.dependencies import TenantAccess, require_license, require_owner, require_super, require_tenant_access
from auth.models import TenantRole, TokenClaims
from auth.store import PrincipalStore
from core.errors import ForbiddenError, NotFoundError
from licensing.lifecycle import LicenseManager, get_plan_rank
from licensing.models import PLAN_CATALOG, EffectiveGrant
from licensing.quota import QuotaAccountant
from licensing.store import EntitlementStore

logger = logging.getLogger("licensegate.api.licenses")

# Auth policy:
# - GET    /licenses/products, /licenses/plans:    public
# - GET    /licenses/tenants/{id}[/...]:            tenant member or super
# - POST   .../products/{key}, .../upgrade:         tenant owner or super
# - DELETE .../products/{key}:                      super only
# - GET    .../members/{pid}:                       self, tenant owner/admin, or super
# - POST   .../members/{pid}, DELETE same:          tenant owner or super
# - GET    .../access, POST .../usage:              effective grant for the caller
router = APIRouter()


# ---------------------------------------------------------------------------
# Catalogue (public)
# ---------------------------------------------------------------------------


@router.get("/licenses/products", response_model=list[ProductResponse])
def list_products(request: Request) -> list[ProductResponse]:
    store: EntitlementStore = request.app.state.entitlement_store
    return [ProductResponse.from_product(p) for p in store.list_products()]


@router.get("/licenses/plans", response_model=list[PlanResponse])
async def list_plans() -> list[PlanResponse]:
    """Plan catalogue in rank order, with default feature limits."""
    return [PlanResponse.from_info(info, get_plan_rank(info.plan)) for info in PLAN_CATALOG]


# ---------------------------------------------------------------------------
# Org-scope grants
# ---------------------------------------------------------------------------


@router.get("/licenses/tenants/{tenant_id}", response_model=list[GrantResponse])
def list_tenant_licenses(
    request: Request,
    tenant_id: int,
    access: TenantAccess = Depends(require_tenant_access),
) -> list[GrantResponse]:
    """Every grant of the tenant, any scope and status, newest first."""
    manager: LicenseManager = request.app.state.license_manager
    return [GrantResponse.from_grant(g) for g in manager.list(tenant_id)]


@router.get("/licenses/tenants/{tenant_id}/products/{product_key}", response_model=GrantResponse)
def get_license(
    request: Request,
    tenant_id: int,
    product_key: str,
    access: TenantAccess = Depends(require_tenant_access),
) -> GrantResponse:
    manager: LicenseManager = request.app.state.license_manager
    grant = manager.get(tenant_id, product_key)
    if grant is None:
        raise NotFoundError("License not found.", tenantId=tenant_id, productKey=product_key)
    return GrantResponse.from_grant(grant)


@router.post("/licenses/tenants/{tenant_id}/products/{product_key}", response_model=GrantResponse)
def upsert_license(
    request: Request,
    tenant_id: int,
    product_key: str,
    body: GrantUpsert,
    access: TenantAccess = Depends(require_owner),
) -> GrantResponse:
    """Create or overwrite the org grant (last writer wins)."""
    _require_product(request, product_key)
    manager: LicenseManager = request.app.state.license_manager
    grant = manager.create_or_update(
        tenant_id,
        product_key,
        body.plan,
        status=body.status,
        valid_until=body.valid_until,
        meta=body.meta,
    )
    return GrantResponse.from_grant(grant)


@router.delete("/licenses/tenants/{tenant_id}/products/{product_key}", status_code=204)
def revoke_license(
    request: Request,
    tenant_id: int,
    product_key: str,
    claims: TokenClaims = Depends(require_super),
) -> Response:
    """Set the org grant inactive. The row is kept."""
    manager: LicenseManager = request.app.state.license_manager
    if not manager.revoke(tenant_id, product_key):
        raise NotFoundError("License not found.", tenantId=tenant_id, productKey=product_key)
    return Response(status_code=204)


@router.post("/licenses/tenants/{tenant_id}/products/{product_key}/upgrade", response_model=GrantResponse)
def upgrade_license(
    request: Request,
    tenant_id: int,
    product_key: str,
    body: GrantUpgrade,
    access: TenantAccess = Depends(require_owner),
) -> GrantResponse:
    """Move the org grant to another plan, extending its validity.

    Plan ranks are not compared, so a lower plan is accepted too.
    """
    _require_product(request, product_key)
    manager: LicenseManager = request.app.state.license_manager
    grant = manager.upgrade(
        tenant_id,
        product_key,
        body.plan,
        extension_months=body.extension_months,
        valid_until=body.valid_until,
        meta=body.meta,
    )
    return GrantResponse.from_grant(grant)


# ---------------------------------------------------------------------------
# Gated endpoints
# ---------------------------------------------------------------------------


@router.get("/licenses/tenants/{tenant_id}/products/{product_key}/access", response_model=AccessResponse)
def check_access(effective: EffectiveGrant = Depends(require_license())) -> AccessResponse:
    """Report the caller's effective grant for the product, or 403 LICENSE_REQUIRED."""
    return AccessResponse(
        scope=effective.scope.value,
        plan=effective.plan,
        grant=GrantResponse.from_grant(effective.grant),
    )


@router.post("/licenses/tenants/{tenant_id}/products/{product_key}/usage", response_model=QuotaResponse)
def record_usage(
    request: Request,
    body: UsageRequest,
    effective: EffectiveGrant = Depends(require_license()),
) -> QuotaResponse:
    """Consume `amount` units of a feature on the effective grant, atomically.

    Usage is charged to the grant that resolved (org or member), never both.
    """
    quota: QuotaAccountant = request.app.state.quota
    decision = quota.consume(effective, body.feature, body.amount)
    return QuotaResponse.from_decision(decision)


# ---------------------------------------------------------------------------
# Member-scope grants
# ---------------------------------------------------------------------------


@router.get("/licenses/tenants/{tenant_id}/members/{principal_id}", response_model=list[GrantResponse])
def list_member_licenses(
    request: Request,
    tenant_id: int,
    principal_id: int,
    product_key: str | None = Query(default=None, max_length=64),
    access: TenantAccess = Depends(require_tenant_access),
) -> list[GrantResponse]:
    """Member grants of one principal. Plain users may only read their own."""
    is_admin = access.claims.is_super or access.role in (TenantRole.OWNER, TenantRole.ADMIN)
    if not is_admin and principal_id != access.principal_id:
        raise ForbiddenError("Cannot read another member's licenses.", tenantId=tenant_id)
    manager: LicenseManager = request.app.state.license_manager
    return [GrantResponse.from_grant(g) for g in manager.list_member(tenant_id, principal_id, product_key)]


@router.post("/licenses/tenants/{tenant_id}/members/{principal_id}", response_model=GrantResponse)
def assign_member_license(
    request: Request,
    tenant_id: int,
    principal_id: int,
    body: MemberGrantUpsert,
    access: TenantAccess = Depends(require_owner),
) -> GrantResponse:
    """Create or overwrite a member grant. The principal must belong to the tenant."""
    _require_product(request, body.product_key)
    principals: PrincipalStore = request.app.state.principal_store
    if principals.get_member_role(tenant_id, principal_id) is None:
        raise NotFoundError("Principal is not a member of this tenant.", tenantId=tenant_id, principalId=principal_id)
    manager: LicenseManager = request.app.state.license_manager
    grant = manager.assign_member(
        tenant_id,
        principal_id,
        body.product_key,
        plan=body.plan,
        status=body.status,
        valid_until=body.valid_until,
        meta=body.meta,
    )
    return GrantResponse.from_grant(grant)


@router.delete("/licenses/tenants/{tenant_id}/members/{principal_id}", status_code=204)
def remove_member_license(
    request: Request,
    tenant_id: int,
    principal_id: int,
    product_key: str = Query(min_length=1, max_length=64),
    access: TenantAccess = Depends(require_owner),
) -> Response:
    """Deactivate a member grant."""
    manager: LicenseManager = request.app.state.license_manager
    if not manager.remove_member(tenant_id, principal_id, product_key):
        raise NotFoundError("License not found.", tenantId=tenant_id, productKey=product_key)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _require_product(request: Request, product_key: str) -> None:
    store: EntitlementStore = request.app.state.entitlement_store
    if product_key not in {p.key for p in store.list_products()}:
        raise NotFoundError("Unknown product.", productKey=product_key)
