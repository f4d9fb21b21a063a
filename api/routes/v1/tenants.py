"""
api/routes/v1/tenants.py -- Tenant and membership endpoints.

Routes:
  GET    /api/v1/tenants                                  -- super: all tenants; others: own
  POST   /api/v1/tenants                                  -- create; caller becomes owner
  DELETE /api/v1/tenants/{tenant_id}                      -- owner or super; cascades grants
  GET    /api/v1/tenants/{tenant_id}/members              -- any member
  POST   /api/v1/tenants/{tenant_id}/members              -- owner/admin; by id or email
  DELETE /api/v1/tenants/{tenant_id}/members/{principal}  -- owner/admin; last owner kept

Membership changes take effect for authorization immediately (the gating
dependencies read the store), but the "tenants" claim of already-issued
access tokens only changes after the next login or refresh.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request, Response

from api.models import MemberAdd, MemberResponse, TenantCreate, TenantResponse
from auth.dependencies import TenantAccess, get_current_claims, require_owner, require_tenant_access, require_tenant_admin
from auth.models import Membership, Principal, PrincipalStatus, Role, Tenant, TenantRole, TokenClaims
from auth.store import PrincipalStore
from core.errors import ForbiddenError, NotFoundError
from licensing.store import EntitlementStore

logger = logging.getLogger("licensegate.api.tenants")

# Auth policy:
# - GET    /tenants:                       requires auth
# - POST   /tenants:                       requires auth
# - DELETE /tenants/{id}:                  tenant owner or super (require_owner)
# - GET    /tenants/{id}/members:          tenant member or super (require_tenant_access)
# - POST   /tenants/{id}/members:          tenant owner/admin or super (require_tenant_admin)
# - DELETE /tenants/{id}/members/{pid}:    tenant owner/admin or super (require_tenant_admin)
router = APIRouter()


@router.get("/tenants", response_model=list[TenantResponse])
def list_tenants(request: Request, claims: TokenClaims = Depends(get_current_claims)) -> list[TenantResponse]:
    """List tenants visible to the caller, with the caller's role in each."""
    store: PrincipalStore = request.app.state.principal_store
    tenants = store.list_tenants() if claims.is_super else store.list_tenants_for_principal(claims.principal_id)
    return [_tenant_to_response(t, store.get_member_role(t.id, claims.principal_id)) for t in tenants]


@router.post("/tenants", response_model=TenantResponse, status_code=201)
def create_tenant(
    request: Request,
    body: TenantCreate,
    claims: TokenClaims = Depends(get_current_claims),
) -> TenantResponse:
    """Create a tenant owned by the caller. Duplicate names (any case) are 409."""
    store: PrincipalStore = request.app.state.principal_store
    tenant = store.create_tenant(body.name, owner_id=claims.principal_id)
    return _tenant_to_response(tenant, TenantRole.OWNER)


@router.delete("/tenants/{tenant_id}", status_code=204)
def delete_tenant(
    request: Request,
    tenant_id: int,
    access: TenantAccess = Depends(require_owner),
) -> Response:
    """Delete a tenant, its memberships and every grant it holds."""
    store: PrincipalStore = request.app.state.principal_store
    entitlements: EntitlementStore = request.app.state.entitlement_store
    _require_tenant(store, tenant_id)

    removed = entitlements.delete_for_tenant(tenant_id)
    store.delete_tenant(tenant_id)
    logger.info(
        "Tenant %d deleted by principal %d (%d grant(s) removed)",
        tenant_id,
        access.principal_id,
        removed,
    )
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Members
# ---------------------------------------------------------------------------


@router.get("/tenants/{tenant_id}/members", response_model=list[MemberResponse])
def list_members(
    request: Request,
    tenant_id: int,
    access: TenantAccess = Depends(require_tenant_access),
) -> list[MemberResponse]:
    store: PrincipalStore = request.app.state.principal_store
    _require_tenant(store, tenant_id)
    return [_member_to_response(m) for m in store.list_members(tenant_id)]


@router.post("/tenants/{tenant_id}/members", response_model=MemberResponse, status_code=201)
def add_member(
    request: Request,
    tenant_id: int,
    body: MemberAdd,
    access: TenantAccess = Depends(require_tenant_admin),
) -> MemberResponse:
    """Add a member by principal id, or by email (creating a pending account).

    Only owners (or super) may appoint another owner. Already a member is 409.
    """
    store: PrincipalStore = request.app.state.principal_store
    _require_tenant(store, tenant_id)
    if body.role is TenantRole.OWNER and not (access.is_owner or access.claims.is_super):
        raise ForbiddenError("Only owners can add owners.", tenantId=tenant_id)

    if body.principal_id is not None:
        principal = store.get_by_id(body.principal_id)
        if principal is None:
            raise NotFoundError("Principal not found.", principalId=body.principal_id)
    else:
        principal = store.get_by_email(body.email)
        if principal is None:
            principal_id = store.create_principal(
                Principal(
                    email=body.email,
                    display_name=body.email.split("@")[0],
                    role=Role.ADMIN,
                    status=PrincipalStatus.PENDING,
                )
            )
            logger.info("Pending principal %d created for tenant %d invitation", principal_id, tenant_id)
            principal = store.get_by_id(principal_id)

    membership = store.add_member(tenant_id, principal.id, body.role)
    membership.email = principal.email
    membership.display_name = principal.display_name
    return _member_to_response(membership)


@router.delete("/tenants/{tenant_id}/members/{principal_id}", status_code=204)
def remove_member(
    request: Request,
    tenant_id: int,
    principal_id: int,
    access: TenantAccess = Depends(require_tenant_admin),
) -> Response:
    """Remove a member. Removing the last owner is 409."""
    store: PrincipalStore = request.app.state.principal_store
    if store.get_member_role(tenant_id, principal_id) is TenantRole.OWNER and not (
        access.is_owner or access.claims.is_super
    ):
        raise ForbiddenError("Only owners can remove owners.", tenantId=tenant_id)
    if not store.remove_member(tenant_id, principal_id):
        raise NotFoundError("Membership not found.", tenantId=tenant_id, principalId=principal_id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _require_tenant(store: PrincipalStore, tenant_id: int) -> Tenant:
    tenant = store.get_tenant(tenant_id)
    if tenant is None:
        raise NotFoundError("Tenant not found.", tenantId=tenant_id)
    return tenant


def _tenant_to_response(tenant: Tenant, role: TenantRole | None) -> TenantResponse:
    return TenantResponse(id=tenant.id, name=tenant.name, created_at=tenant.created_at, role=role)


def _member_to_response(m: Membership) -> MemberResponse:
    return MemberResponse(
        tenant_id=m.tenant_id,
        principal_id=m.principal_id,
        role=m.role,
        email=m.email,
        display_name=m.display_name,
        created_at=m.created_at,
    )
