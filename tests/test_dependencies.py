"""
tests/test_dependencies.py -- Gating dependencies mounted on a minimal app.

Covers:
  - require_license() with a fixed product key and X-Tenant-ID header scoping
  - TENANT_REQUIRED when neither path nor header names a tenant
  - require_plan() allow-list and minimum rank
  - check_quota() after require_license(), and PRECONDITION_FAILED without it
"""

from __future__ import annotations

import uuid

import pytest
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.testclient import TestClient

from api.main import wire_services
from auth.dependencies import check_quota, require_license, require_plan
from auth.models import Principal, TenantRole
from auth.tokens import create_access_token
from core.errors import GatewayError
from licensing.models import GrantStatus, Plan
from tests.conftest import _make_test_stores


def _build_app() -> FastAPI:
    app = FastAPI()

    @app.exception_handler(GatewayError)
    async def _gateway_error(request: Request, exc: GatewayError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"error": exc.to_detail()})

    @app.get("/scoped", dependencies=[Depends(require_license("tickets"))])
    def scoped(request: Request):
        return {"plan": request.state.license.plan.value}

    @app.get("/t/{tenant_id}/reports", dependencies=[Depends(require_plan("tickets", minimum="pro"))])
    def reports():
        return {"ok": True}

    @app.get("/t/{tenant_id}/branding", dependencies=[Depends(require_plan("tickets", plans=["enterprise"]))])
    def branding():
        return {"ok": True}

    @app.post(
        "/t/{tenant_id}/tickets",
        dependencies=[Depends(require_license("tickets")), Depends(check_quota("max_tickets", 2))],
    )
    def create_ticket(request: Request):
        return {"remaining": request.state.quota.remaining}

    @app.get("/quota-only", dependencies=[Depends(check_quota("max_tickets"))])
    def quota_only():
        return {"ok": True}

    return app


@pytest.fixture(scope="module")
def gated():
    principals, entitlements = _make_test_stores(f"deps_{uuid.uuid4().hex[:8]}")
    app = _build_app()
    wire_services(app, principals, entitlements)

    owner_id = principals.create_principal(Principal(email="gate-owner@example.com"))
    member_id = principals.create_principal(Principal(email="gate-member@example.com"))
    tenant = principals.create_tenant("Gated", owner_id=owner_id)
    principals.add_member(tenant.id, member_id, TenantRole.USER)

    token = create_access_token(principals.get_by_id(member_id), [tenant.id])
    yield TestClient(app), entitlements, tenant.id, {"Authorization": f"Bearer {token}"}

    principals.close()
    entitlements.close()


def test_header_scoped_license(gated):
    client, entitlements, tenant_id, auth = gated
    entitlements.upsert_org_grant(tenant_id, "tickets", Plan.STARTER)
    resp = client.get("/scoped", headers={**auth, "X-Tenant-ID": str(tenant_id)})
    assert resp.status_code == 200
    assert resp.json() == {"plan": "starter"}


def test_missing_tenant(gated):
    client, _, _, auth = gated
    resp = client.get("/scoped", headers=auth)
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "TENANT_REQUIRED"


def test_non_numeric_tenant(gated):
    client, _, _, auth = gated
    resp = client.get("/scoped", headers={**auth, "X-Tenant-ID": "acme"})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "TENANT_REQUIRED"


def test_minimum_plan(gated):
    client, entitlements, tenant_id, auth = gated
    entitlements.upsert_org_grant(tenant_id, "tickets", Plan.STARTER)
    resp = client.get(f"/t/{tenant_id}/reports", headers=auth)
    assert resp.status_code == 403
    error = resp.json()["error"]
    assert error["code"] == "PLAN_UPGRADE_REQUIRED"
    assert error["currentPlan"] == "starter"
    assert error["requiredPlans"] == ["pro"]

    entitlements.upsert_org_grant(tenant_id, "tickets", Plan.ENTERPRISE)
    assert client.get(f"/t/{tenant_id}/reports", headers=auth).status_code == 200


def test_plan_allow_list(gated):
    client, entitlements, tenant_id, auth = gated
    entitlements.upsert_org_grant(tenant_id, "tickets", Plan.PRO)
    assert client.get(f"/t/{tenant_id}/branding", headers=auth).json()["error"]["requiredPlans"] == ["enterprise"]


def test_quota_gate(gated):
    client, entitlements, tenant_id, auth = gated
    entitlements.upsert_org_grant(
        tenant_id, "tickets", Plan.PRO, meta={"limits": {"max_tickets": 5}, "usage": {"max_tickets": 3}}
    )
    resp = client.post(f"/t/{tenant_id}/tickets", headers=auth)
    assert resp.status_code == 200
    assert resp.json() == {"remaining": 0}

    entitlements.upsert_org_grant(
        tenant_id, "tickets", Plan.PRO, meta={"limits": {"max_tickets": 5}, "usage": {"max_tickets": 4}}
    )
    resp = client.post(f"/t/{tenant_id}/tickets", headers=auth)
    assert resp.status_code == 403
    error = resp.json()["error"]
    assert (error["code"], error["current"], error["limit"], error["requested"]) == ("QUOTA_EXCEEDED", 4, 5, 2)


def test_quota_gate_does_not_increment(gated):
    client, entitlements, tenant_id, auth = gated
    entitlements.upsert_org_grant(tenant_id, "tickets", Plan.PRO, meta={"limits": {"max_tickets": 5}})
    client.post(f"/t/{tenant_id}/tickets", headers=auth)
    assert entitlements.get_org_grant(tenant_id, "tickets").usage == {}


def test_license_missing_before_quota(gated):
    client, entitlements, tenant_id, auth = gated
    entitlements.upsert_org_grant(tenant_id, "tickets", Plan.PRO, status=GrantStatus.INACTIVE)
    resp = client.post(f"/t/{tenant_id}/tickets", headers=auth)
    assert resp.json()["error"]["code"] == "LICENSE_REQUIRED"


def test_quota_without_license_is_precondition_failure(gated):
    client, _, _, _ = gated
    resp = client.get("/quota-only")
    assert resp.status_code == 500
    assert resp.json()["error"]["code"] == "PRECONDITION_FAILED"
