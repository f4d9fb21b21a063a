"""
tests/test_api_tenants.py -- Integration tests for /api/v1/tenants/*.

Covers:
  - tenant listing per caller (own tenants vs. super sees all)
  - tenant creation makes the caller owner; duplicate names are 409
  - member listing requires membership; removal takes effect immediately
  - member add by id or email, owner-only owner appointment
  - last-owner protection and tenant deletion cascading to grants
"""

from __future__ import annotations

from auth.models import Principal, PrincipalStatus, TenantRole
from licensing.models import Plan


def _members_url(api_ctx, tenant_id=None) -> str:
    return f"/api/v1/tenants/{tenant_id or api_ctx.tenant.id}/members"


class TestTenants:
    def test_owner_sees_own_tenant_with_role(self, api_ctx):
        resp = api_ctx.client.get("/api/v1/tenants", headers=api_ctx.headers(api_ctx.owner_id))
        assert resp.status_code == 200
        acme = next(t for t in resp.json() if t["id"] == api_ctx.tenant.id)
        assert acme["name"] == "Acme"
        assert acme["role"] == "owner"

    def test_member_role_is_reported(self, api_ctx):
        data = api_ctx.client.get("/api/v1/tenants", headers=api_ctx.headers(api_ctx.member_id)).json()
        assert [(t["name"], t["role"]) for t in data] == [("Acme", "user")]

    def test_super_sees_every_tenant(self, api_ctx):
        data = api_ctx.client.get("/api/v1/tenants", headers=api_ctx.headers(api_ctx.root_id)).json()
        acme = next(t for t in data if t["id"] == api_ctx.tenant.id)
        assert acme["role"] is None

    def test_requires_auth(self, api_ctx):
        resp = api_ctx.client.get("/api/v1/tenants")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "UNAUTHORIZED"

    def test_create_tenant(self, api_ctx):
        pid = api_ctx.principals.create_principal(Principal(email="founder@example.com"))
        headers = api_ctx.headers(pid)
        resp = api_ctx.client.post("/api/v1/tenants", json={"name": "Initech"}, headers=headers)
        assert resp.status_code == 201
        data = resp.json()
        assert data["name"] == "Initech"
        assert data["role"] == "owner"
        assert api_ctx.principals.get_member_role(data["id"], pid) is TenantRole.OWNER

        dup = api_ctx.client.post("/api/v1/tenants", json={"name": "INITECH"}, headers=headers)
        assert dup.status_code == 409
        assert dup.json()["error"]["code"] == "CONFLICT"

    def test_blank_name_rejected(self, api_ctx):
        resp = api_ctx.client.post("/api/v1/tenants", json={"name": "   "}, headers=api_ctx.headers(api_ctx.owner_id))
        assert resp.status_code == 422


class TestDeleteTenant:
    def test_owner_deletes_tenant_and_grants(self, api_ctx):
        pid = api_ctx.principals.create_principal(Principal(email="shortlived@example.com"))
        tenant = api_ctx.principals.create_tenant("Shortlived", owner_id=pid)
        api_ctx.entitlements.upsert_org_grant(tenant.id, "tickets", Plan.PRO)
        api_ctx.entitlements.upsert_member_grant(tenant.id, pid, "impulse", Plan.PRO)

        resp = api_ctx.client.delete(f"/api/v1/tenants/{tenant.id}", headers=api_ctx.headers(pid))
        assert resp.status_code == 204
        assert api_ctx.principals.get_tenant(tenant.id) is None
        assert api_ctx.entitlements.list_for_tenant(tenant.id) == []

    def test_member_cannot_delete(self, api_ctx):
        resp = api_ctx.client.delete(f"/api/v1/tenants/{api_ctx.tenant.id}", headers=api_ctx.headers(api_ctx.member_id))
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "FORBIDDEN"
        assert api_ctx.principals.get_tenant(api_ctx.tenant.id) is not None

    def test_super_delete_missing_tenant_is_404(self, api_ctx):
        resp = api_ctx.client.delete("/api/v1/tenants/999999", headers=api_ctx.headers(api_ctx.root_id))
        assert resp.status_code == 404


class TestMembers:
    def test_member_can_list_members(self, api_ctx):
        resp = api_ctx.client.get(_members_url(api_ctx), headers=api_ctx.headers(api_ctx.member_id))
        assert resp.status_code == 200
        roles = {m["email"]: m["role"] for m in resp.json()}
        assert roles["owner@example.com"] == "owner"
        assert roles["member@example.com"] == "user"

    def test_outsider_cannot_list_members(self, api_ctx):
        resp = api_ctx.client.get(_members_url(api_ctx), headers=api_ctx.headers(api_ctx.outsider_id))
        assert resp.status_code == 403
        assert resp.json()["error"]["tenantId"] == api_ctx.tenant.id

    def test_super_can_list_members_without_membership(self, api_ctx):
        resp = api_ctx.client.get(_members_url(api_ctx), headers=api_ctx.headers(api_ctx.root_id))
        assert resp.status_code == 200

    def test_add_member_by_id(self, api_ctx):
        pid = api_ctx.principals.create_principal(Principal(email="by-id@example.com"))
        resp = api_ctx.client.post(
            _members_url(api_ctx),
            json={"principal_id": pid, "role": "admin"},
            headers=api_ctx.headers(api_ctx.owner_id),
        )
        assert resp.status_code == 201
        data = resp.json()
        assert data["principal_id"] == pid
        assert data["role"] == "admin"
        assert data["email"] == "by-id@example.com"

        again = api_ctx.client.post(
            _members_url(api_ctx), json={"principal_id": pid}, headers=api_ctx.headers(api_ctx.owner_id)
        )
        assert again.status_code == 409

    def test_add_unknown_principal_id(self, api_ctx):
        resp = api_ctx.client.post(
            _members_url(api_ctx), json={"principal_id": 999999}, headers=api_ctx.headers(api_ctx.owner_id)
        )
        assert resp.status_code == 404

    def test_add_by_email_creates_pending_principal(self, api_ctx):
        resp = api_ctx.client.post(
            _members_url(api_ctx), json={"email": "invitee@example.com"}, headers=api_ctx.headers(api_ctx.owner_id)
        )
        assert resp.status_code == 201
        assert resp.json()["role"] == "user"
        invitee = api_ctx.principals.get_by_email("invitee@example.com")
        assert invitee.status is PrincipalStatus.PENDING

    def test_add_requires_identifier(self, api_ctx):
        resp = api_ctx.client.post(_members_url(api_ctx), json={"role": "user"}, headers=api_ctx.headers(api_ctx.owner_id))
        assert resp.status_code == 422

    def test_plain_user_cannot_add(self, api_ctx):
        resp = api_ctx.client.post(
            _members_url(api_ctx), json={"email": "nope@example.com"}, headers=api_ctx.headers(api_ctx.member_id)
        )
        assert resp.status_code == 403

    def test_admin_cannot_appoint_owner(self, api_ctx):
        admin = api_ctx.principals.create_principal(Principal(email="tenant-admin@example.com"))
        api_ctx.principals.add_member(api_ctx.tenant.id, admin, TenantRole.ADMIN)
        resp = api_ctx.client.post(
            _members_url(api_ctx),
            json={"email": "wannabe@example.com", "role": "owner"},
            headers=api_ctx.headers(admin),
        )
        assert resp.status_code == 403

        ok = api_ctx.client.post(
            _members_url(api_ctx), json={"email": "helper@example.com"}, headers=api_ctx.headers(admin)
        )
        assert ok.status_code == 201

    def test_removed_member_loses_access_immediately(self, api_ctx):
        pid = api_ctx.principals.create_principal(Principal(email="temp@example.com"))
        api_ctx.principals.add_member(api_ctx.tenant.id, pid, TenantRole.USER)
        headers = api_ctx.headers(pid)
        assert api_ctx.client.get(_members_url(api_ctx), headers=headers).status_code == 200

        resp = api_ctx.client.delete(f"{_members_url(api_ctx)}/{pid}", headers=api_ctx.headers(api_ctx.owner_id))
        assert resp.status_code == 204
        # Same token, tenant still in its snapshot, but the live check fails.
        assert api_ctx.client.get(_members_url(api_ctx), headers=headers).status_code == 403

    def test_remove_unknown_member(self, api_ctx):
        resp = api_ctx.client.delete(f"{_members_url(api_ctx)}/999999", headers=api_ctx.headers(api_ctx.owner_id))
        assert resp.status_code == 404

    def test_last_owner_cannot_be_removed(self, api_ctx):
        resp = api_ctx.client.delete(
            f"{_members_url(api_ctx)}/{api_ctx.owner_id}", headers=api_ctx.headers(api_ctx.owner_id)
        )
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "CONFLICT"

    def test_admin_cannot_remove_owner(self, api_ctx):
        admin = api_ctx.principals.create_principal(Principal(email="admin2@example.com"))
        api_ctx.principals.add_member(api_ctx.tenant.id, admin, TenantRole.ADMIN)
        resp = api_ctx.client.delete(f"{_members_url(api_ctx)}/{api_ctx.owner_id}", headers=api_ctx.headers(admin))
        assert resp.status_code == 403
