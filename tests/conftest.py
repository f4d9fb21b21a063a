"""
tests/conftest.py -- Shared test fixtures for LicenseGate.

This module provides:
  - principal_store / entitlement_store: fresh in-memory stores per test
  - _make_test_stores(): named shared-memory DBs for the API client
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - api_ctx: TestClient plus a super principal, a tenant owner, a plain
    member, an outsider and helpers to mint their access tokens

Design: Named shared-memory SQLite URIs (not plain :memory:) are required for
the API client because TestClient runs sync route handlers in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to
each worker thread. Unit tests stay on one thread, so :memory: is enough.

DEBUG, SUPER_ADMIN_EMAIL and SETUP_TOKEN must be set before any auth/core
import: get_settings() is cached on first use.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from unittest.mock import MagicMock

# CRITICAL: set before any auth/core import so get_settings() sees them.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("SUPER_ADMIN_EMAIL", "root@example.com")
os.environ.setdefault("SETUP_TOKEN", "test-setup-token-123")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, wire_services
from auth.models import Principal, Role, Tenant, TenantRole
from auth.session import SessionIssuer
from auth.store import PrincipalStore
from auth.tokens import create_access_token, hash_password
from licensing.store import EntitlementStore

SUPER_EMAIL = "root@example.com"
SETUP_TOKEN = "test-setup-token-123"
PASSWORD = "correct-horse-battery"


# ---------------------------------------------------------------------------
# Unit-test stores
# ---------------------------------------------------------------------------


@pytest.fixture
def principal_store() -> Generator[PrincipalStore, None, None]:
    store = PrincipalStore("sqlite:///:memory:")
    yield store
    store.close()


@pytest.fixture
def entitlement_store() -> Generator[EntitlementStore, None, None]:
    store = EntitlementStore("sqlite:///:memory:")
    yield store
    store.close()


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


def _make_test_stores(db_suffix: str) -> tuple[PrincipalStore, EntitlementStore]:
    """Create isolated named shared-memory SQLite stores.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   never share state.
    """
    auth_url = f"sqlite:///file:test_auth_{db_suffix}?mode=memory&cache=shared&uri=true"
    lic_url = f"sqlite:///file:test_lic_{db_suffix}?mode=memory&cache=shared&uri=true"
    return PrincipalStore(db_url=auth_url), EntitlementStore(db_url=lic_url)


def _patch_lifespan(principal_store: PrincipalStore, entitlement_store: EntitlementStore):
    """Return a lifespan that wires the test stores into app.state.

    The OAuth registry is mocked to prevent real network calls. The sweep task
    is a long-sleeping coroutine (a real Task is required for .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        wire_services(app, principal_store, entitlement_store)
        app.state.oauth = MagicMock()
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()

    return test_lifespan


@dataclass
class ApiContext:
    """Everything an API test needs: the client, the stores and four principals.

    owner owns `tenant`; member is a plain user of it; outsider belongs to no
    tenant; root is the super principal (member of nothing).
    """

    client: TestClient
    principals: PrincipalStore
    entitlements: EntitlementStore
    tenant: Tenant
    root_id: int
    owner_id: int
    member_id: int
    outsider_id: int

    def token_for(self, principal_id: int) -> str:
        principal = self.principals.get_by_id(principal_id)
        tenant_ids = [t.id for t in self.principals.list_tenants_for_principal(principal_id)]
        return create_access_token(principal, tenant_ids, expire_seconds=3600)

    def headers(self, principal_id: int) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token_for(principal_id)}"}

    def url(self, path: str = "") -> str:
        return f"/api/v1/licenses/tenants/{self.tenant.id}{path}"


def _new_principal(store: PrincipalStore, email: str, role: Role = Role.ADMIN) -> int:
    return store.create_principal(Principal(email=email, role=role, hashed_password=hash_password(PASSWORD)))


@pytest.fixture(scope="module")
def api_ctx(request) -> Generator[ApiContext, None, None]:
    """Yield an ApiContext backed by module-private in-memory stores.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real route handlers, dependencies and exception handlers.
    """
    suffix = f"{request.module.__name__.rsplit('.', 1)[-1]}_{uuid.uuid4().hex[:8]}"
    principals, entitlements = _make_test_stores(suffix)

    root_id = _new_principal(principals, SUPER_EMAIL)
    owner_id = _new_principal(principals, "owner@example.com")
    member_id = _new_principal(principals, "member@example.com", Role.CLIENT)
    outsider_id = _new_principal(principals, "outsider@example.org")
    tenant = principals.create_tenant("Acme", owner_id=owner_id)
    principals.add_member(tenant.id, member_id, TenantRole.USER)

    app.router.lifespan_context = _patch_lifespan(principals, entitlements)
    limiter.reset()

    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiContext(
            client=client,
            principals=principals,
            entitlements=entitlements,
            tenant=tenant,
            root_id=root_id,
            owner_id=owner_id,
            member_id=member_id,
            outsider_id=outsider_id,
        )

    principals.close()
    entitlements.close()


@pytest.fixture
def issuer(principal_store: PrincipalStore) -> SessionIssuer:
    return SessionIssuer(principal_store)
