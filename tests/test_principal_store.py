"""Unit tests for auth/store.py -- principals, API keys, tenants, memberships.

Covers:
- emails are unique and case-insensitive
- OAuth linking activates pending principals
- tenant creation makes the creator owner, names are unique ignoring case
- membership add/remove, including the last-owner guard
- API keys are scoped to their owner on revocation
"""

import pytest

from auth.models import ApiKey, Principal, PrincipalStatus, Role, TenantRole
from auth.store import PrincipalStore
from core.errors import ConflictError, NotFoundError


def _pid(store: PrincipalStore, email: str, **kwargs) -> int:
    return store.create_principal(Principal(email=email, **kwargs))


class TestPrincipals:
    def test_create_and_fetch(self, principal_store):
        pid = _pid(principal_store, "  Ada@Example.COM ", display_name="Ada", role=Role.MANAGER)
        principal = principal_store.get_by_id(pid)
        assert principal.email == "ada@example.com"
        assert principal.display_name == "Ada"
        assert principal.role is Role.MANAGER
        assert principal.status is PrincipalStatus.ACTIVE
        assert principal.created_at is not None
        assert principal_store.get_by_email("ADA@example.com").id == pid

    def test_duplicate_email_conflicts(self, principal_store):
        _pid(principal_store, "ada@example.com")
        with pytest.raises(ConflictError):
            _pid(principal_store, "ADA@example.com")

    def test_missing_principal(self, principal_store):
        assert principal_store.get_by_id(999) is None
        assert principal_store.get_by_email("nobody@example.com") is None

    def test_link_oauth_activates_pending(self, principal_store):
        pid = _pid(principal_store, "invitee@example.com", status=PrincipalStatus.PENDING)
        principal_store.link_oauth(pid, "github", "12345")
        principal = principal_store.get_by_oauth("github", "12345")
        assert principal.id == pid
        assert principal.status is PrincipalStatus.ACTIVE

    def test_link_oauth_leaves_blocked_alone(self, principal_store):
        pid = _pid(principal_store, "blocked@example.com", status=PrincipalStatus.BLOCKED)
        principal_store.link_oauth(pid, "google", "abc")
        assert principal_store.get_by_id(pid).status is PrincipalStatus.BLOCKED

    def test_oauth_lookup_is_per_provider(self, principal_store):
        pid = _pid(principal_store, "ada@example.com")
        principal_store.link_oauth(pid, "github", "1")
        assert principal_store.get_by_oauth("google", "1") is None

    def test_update_principal_accepts_enums(self, principal_store):
        pid = _pid(principal_store, "ada@example.com")
        assert principal_store.update_principal(pid, role=Role.EXPERT, status=PrincipalStatus.INACTIVE)
        principal = principal_store.get_by_id(pid)
        assert principal.role is Role.EXPERT
        assert not principal.is_active

    def test_update_last_login(self, principal_store):
        pid = _pid(principal_store, "ada@example.com")
        assert principal_store.get_by_id(pid).last_login is None
        principal_store.update_last_login(pid)
        assert principal_store.get_by_id(pid).last_login is not None


class TestTenants:
    def test_creator_becomes_owner(self, principal_store):
        pid = _pid(principal_store, "owner@example.com")
        tenant = principal_store.create_tenant(" Acme ", owner_id=pid)
        assert tenant.name == "Acme"
        assert principal_store.get_member_role(tenant.id, pid) is TenantRole.OWNER
        assert [t.id for t in principal_store.list_tenants_for_principal(pid)] == [tenant.id]

    def test_name_unique_ignoring_case(self, principal_store):
        pid = _pid(principal_store, "owner@example.com")
        principal_store.create_tenant("Acme", owner_id=pid)
        with pytest.raises(ConflictError):
            principal_store.create_tenant("ACME", owner_id=pid)

    def test_list_tenants(self, principal_store):
        pid = _pid(principal_store, "owner@example.com")
        other = _pid(principal_store, "other@example.com")
        principal_store.create_tenant("Acme", owner_id=pid)
        principal_store.create_tenant("Globex", owner_id=other)
        assert [t.name for t in principal_store.list_tenants()] == ["Acme", "Globex"]
        assert [t.name for t in principal_store.list_tenants_for_principal(other)] == ["Globex"]

    def test_delete_tenant_removes_memberships(self, principal_store):
        pid = _pid(principal_store, "owner@example.com")
        tenant = principal_store.create_tenant("Acme", owner_id=pid)
        assert principal_store.delete_tenant(tenant.id) is True
        assert principal_store.get_tenant(tenant.id) is None
        assert principal_store.list_tenants_for_principal(pid) == []
        assert principal_store.delete_tenant(tenant.id) is False


class TestMemberships:
    @pytest.fixture
    def tenant_with_owner(self, principal_store):
        owner = _pid(principal_store, "owner@example.com")
        return principal_store.create_tenant("Acme", owner_id=owner), owner

    def test_add_and_list(self, principal_store, tenant_with_owner):
        tenant, owner = tenant_with_owner
        user = _pid(principal_store, "user@example.com", display_name="User")
        membership = principal_store.add_member(tenant.id, user, TenantRole.USER)
        assert membership.role is TenantRole.USER
        members = principal_store.list_members(tenant.id)
        assert [(m.email, m.role) for m in members] == [
            ("owner@example.com", TenantRole.OWNER),
            ("user@example.com", TenantRole.USER),
        ]
        assert members[1].display_name == "User"

    def test_add_twice_conflicts(self, principal_store, tenant_with_owner):
        tenant, owner = tenant_with_owner
        with pytest.raises(ConflictError):
            principal_store.add_member(tenant.id, owner, TenantRole.ADMIN)

    def test_add_to_missing_tenant(self, principal_store):
        pid = _pid(principal_store, "user@example.com")
        with pytest.raises(NotFoundError):
            principal_store.add_member(999, pid)

    def test_remove_member(self, principal_store, tenant_with_owner):
        tenant, _owner = tenant_with_owner
        user = _pid(principal_store, "user@example.com")
        principal_store.add_member(tenant.id, user, TenantRole.USER)
        assert principal_store.remove_member(tenant.id, user) is True
        assert principal_store.get_member_role(tenant.id, user) is None
        assert principal_store.remove_member(tenant.id, user) is False

    def test_last_owner_cannot_be_removed(self, principal_store, tenant_with_owner):
        tenant, owner = tenant_with_owner
        with pytest.raises(ConflictError):
            principal_store.remove_member(tenant.id, owner)
        assert principal_store.count_owners(tenant.id) == 1

    def test_one_of_two_owners_can_be_removed(self, principal_store, tenant_with_owner):
        tenant, owner = tenant_with_owner
        second = _pid(principal_store, "second@example.com")
        principal_store.add_member(tenant.id, second, TenantRole.OWNER)
        assert principal_store.count_owners(tenant.id) == 2
        assert principal_store.remove_member(tenant.id, owner) is True
        assert principal_store.count_owners(tenant.id) == 1


class TestApiKeys:
    def test_revoke_is_scoped_to_owner(self, principal_store):
        alice = _pid(principal_store, "alice@example.com")
        bob = _pid(principal_store, "bob@example.com")
        key_id = principal_store.create_api_key(ApiKey(principal_id=alice, name="ci", key_hash="h1", key_prefix="lg_1"))

        assert principal_store.revoke_api_key(key_id, bob) is False
        assert len(principal_store.get_api_keys(alice)) == 1
        assert principal_store.revoke_api_key(key_id, alice) is True
        assert principal_store.get_api_keys(alice) == []
        assert principal_store.get_api_key_by_hash("h1") is None

    def test_ping(self, principal_store):
        assert principal_store.ping() is True
