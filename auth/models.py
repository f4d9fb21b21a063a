"""
auth/models.py -- Domain dataclasses and enums for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Stores and routes
do the work; these types only own the domain shape.

Roles, statuses and tenant roles are closed enumerations. Callers compare
against enum members rather than raw strings; the string values are what is
persisted and what appears in token claims.

Layer rule: no imports from api/ or licensing/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    """Coarse account role. SUPER is reserved for internal operators."""

    ADMIN = "admin"
    MANAGER = "manager"
    EXPERT = "expert"
    CLIENT = "client"
    SUPER = "super"


class PrincipalStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    PENDING = "pending"
    BLOCKED = "blocked"


class TenantRole(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    USER = "user"


@dataclass
class Principal:
    """A human account.

    hashed_password is None for OAuth-only or invited accounts.
    oauth_provider / oauth_subject are None until the first OAuth login links
    an identity. Principals are never hard-deleted; status transitions instead.
    """

    email: str
    role: Role = Role.ADMIN
    id: int | None = None
    display_name: str = ""
    hashed_password: str | None = None
    oauth_provider: str | None = None  # "github", "google", "microsoft"
    oauth_subject: str | None = None  # provider's stable user ID
    status: PrincipalStatus = PrincipalStatus.ACTIVE
    created_at: datetime | None = None
    last_login: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status is PrincipalStatus.ACTIVE


@dataclass
class Tenant:
    name: str
    id: int | None = None
    created_at: datetime | None = None


@dataclass
class Membership:
    """Ternary relation (tenant, principal, role)."""

    tenant_id: int
    principal_id: int
    role: TenantRole
    email: str = ""
    display_name: str = ""
    created_at: datetime | None = None


@dataclass
class ApiKey:
    """A long-lived credential for non-browser clients.

    key_hash is HMAC-SHA256(SECRET_KEY, raw_key). The raw key is returned once
    at creation and never persisted; key_prefix is kept for display only.
    """

    principal_id: int
    name: str
    key_hash: str
    key_prefix: str
    id: int | None = None
    created_at: datetime | None = None
    last_used: datetime | None = None
    is_active: bool = True


@dataclass(frozen=True)
class TokenClaims:
    """Verified access token payload.

    tenants is a snapshot taken at issuance; a membership added later is only
    visible after re-authentication or refresh.
    """

    subject: str
    email: str
    roles: list[str] = field(default_factory=list)
    tenants: list[str] = field(default_factory=list)
    expires_at: datetime | None = None

    @property
    def principal_id(self) -> int:
        return int(self.subject)

    @property
    def is_super(self) -> bool:
        return Role.SUPER.value in self.roles

    @property
    def tenant_ids(self) -> list[int]:
        return [int(t) for t in self.tenants]


@dataclass(frozen=True)
class RefreshClaims:
    """Verified refresh token payload. Roles and tenants are re-derived on refresh."""

    subject: str
    email: str
    token_id: str
    expires_at: datetime | None = None

    @property
    def principal_id(self) -> int:
        return int(self.subject)


@dataclass(frozen=True)
class SessionTokens:
    """Access/refresh pair produced after authentication or refresh."""

    access_token: str
    refresh_token: str
    access_expires_in: int
    refresh_expires_in: int
    principal_id: int
    email: str
    roles: list[str]
    tenants: list[Tenant]
