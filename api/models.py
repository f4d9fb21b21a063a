"""
API request and response models for LicenseGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
licensing/models.py, which own the internal domain representation. Route
handlers map between the two.

Separation of concerns: domain models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator

from auth.models import Role, TenantRole
from licensing.models import Grant, GrantStatus, Plan, PlanInfo, Product, QuotaDecision

# ---------------------------------------------------------------------------
# Errors / health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload. Extra keys (feature, limit, ...) are allowed."""

    model_config = ConfigDict(frozen=True, extra="allow")

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Auth -- requests
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    password: str = Field(min_length=8, max_length=255)
    display_name: str = Field(default="", max_length=255)
    role: Role = Role.ADMIN


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login: email+password, or api_key."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: Optional[EmailStr] = None
    password: Optional[str] = Field(default=None, max_length=255)
    api_key: Optional[str] = Field(default=None, max_length=255)

    @model_validator(mode="after")
    def one_credential(self) -> "LoginRequest":
        if self.api_key:
            return self
        if not self.email or not self.password:
            raise ValueError("Provide email and password, or api_key.")
        return self


class RefreshRequest(BaseModel):
    """Optional body for POST /api/v1/auth/refresh (cookie takes precedence)."""

    refresh_token: Optional[str] = None


class ApiKeyCreate(BaseModel):
    """Request body for POST /api/v1/auth/api-keys."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100)


# ---------------------------------------------------------------------------
# Auth -- responses
# ---------------------------------------------------------------------------


class TenantSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str


class LoginResponse(BaseModel):
    """Response for login and refresh. The refresh token travels in a cookie,
    and is echoed here only for non-browser clients."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_token: str
    principal_id: int
    email: str
    roles: list[str]
    tenants: list[TenantSummary]


class PrincipalResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    display_name: str
    role: str
    status: str
    created_at: Optional[datetime] = None


class MeResponse(BaseModel):
    """Response for GET /api/v1/auth/me -- the verified token claims."""

    model_config = ConfigDict(frozen=True)

    principal_id: int
    email: str
    roles: list[str]
    tenants: list[int]
    is_super: bool
    expires_at: Optional[datetime] = None


class OAuthProviderInfo(BaseModel):
    """One entry in GET /api/v1/auth/providers."""

    model_config = ConfigDict(frozen=True)

    name: str
    label: str


class ApiKeyResponse(BaseModel):
    """API key metadata. The raw key is never included."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    key_prefix: str
    created_at: Optional[datetime] = None
    last_used: Optional[datetime] = None


class ApiKeyCreatedResponse(ApiKeyResponse):
    """Returned once on creation; `key` is the only time the raw value is shown."""

    key: str


# ---------------------------------------------------------------------------
# Tenants
# ---------------------------------------------------------------------------


class TenantCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=255)


class TenantResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    created_at: Optional[datetime] = None
    role: Optional[TenantRole] = None


class MemberAdd(BaseModel):
    """Request body for POST /api/v1/tenants/{id}/members.

    principal_id adds an existing account; email adds by address and creates
    a pending account when none exists yet.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    principal_id: Optional[int] = None
    email: Optional[EmailStr] = None
    role: TenantRole = TenantRole.USER

    @model_validator(mode="after")
    def one_identifier(self) -> "MemberAdd":
        if self.principal_id is None and self.email is None:
            raise ValueError("Provide principal_id or email.")
        return self


class MemberResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    tenant_id: int
    principal_id: int
    role: TenantRole
    email: str
    display_name: str
    created_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Licenses
# ---------------------------------------------------------------------------


class GrantUpsert(BaseModel):
    """Request body for POST .../products/{key} (org) and .../members/{id} (member)."""

    plan: Plan
    status: GrantStatus = GrantStatus.ACTIVE
    valid_until: Optional[datetime] = None
    meta: dict[str, Any] = Field(default_factory=dict)


class MemberGrantUpsert(GrantUpsert):
    product_key: str = Field(min_length=1, max_length=64)
    plan: Plan = Plan.FREE


class GrantUpgrade(BaseModel):
    """Request body for POST .../products/{key}/upgrade."""

    plan: Plan
    extension_months: int = Field(default=1, ge=1, le=120)
    valid_until: Optional[datetime] = None
    meta: dict[str, Any] = Field(default_factory=dict)


class UsageRequest(BaseModel):
    """Request body for POST .../products/{key}/usage."""

    feature: str = Field(min_length=1, max_length=64)
    amount: int = Field(default=1, ge=1, le=1_000_000)


class GrantResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    tenant_id: int
    principal_id: Optional[int]
    product_key: str
    product_name: Optional[str] = None
    plan: Plan
    status: GrantStatus
    valid_until: Optional[datetime]
    meta: dict[str, Any]
    license_type: str
    created_at: Optional[datetime] = None

    @classmethod
    def from_grant(cls, grant: Grant) -> "GrantResponse":
        """Factory Method: the domain-to-transport mapping lives beside the model."""
        return cls(
            id=grant.id,
            tenant_id=grant.tenant_id,
            principal_id=grant.principal_id,
            product_key=grant.product_key,
            product_name=grant.product_name,
            plan=grant.plan,
            status=grant.status,
            valid_until=grant.valid_until,
            meta=grant.meta,
            license_type=grant.license_type,
            created_at=grant.created_at,
        )


class AccessResponse(BaseModel):
    """Response for GET .../products/{key}/access."""

    model_config = ConfigDict(frozen=True)

    allowed: bool = True
    scope: str
    plan: Plan
    grant: GrantResponse


class QuotaResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed: bool
    feature: str
    current: int
    requested: int
    limit: Optional[int]
    remaining: Optional[int]

    @classmethod
    def from_decision(cls, decision: QuotaDecision) -> "QuotaResponse":
        return cls(
            allowed=decision.allowed,
            feature=decision.feature,
            current=decision.current,
            requested=decision.requested,
            limit=decision.limit,
            remaining=decision.remaining,
        )


class ProductResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    name: str

    @classmethod
    def from_product(cls, product: Product) -> "ProductResponse":
        return cls(key=product.key, name=product.name)


class PlanResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: Plan
    name: str
    rank: int
    price: Optional[int]
    features: dict[str, Any]

    @classmethod
    def from_info(cls, info: PlanInfo, rank: int) -> "PlanResponse":
        return cls(id=info.plan, name=info.name, rank=rank, price=info.price, features=info.features)
