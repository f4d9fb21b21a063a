"""
licensing/models.py -- Domain types for entitlements (grants), plans and quotas.

Plan is a closed enumeration and PLAN_RANKS is the single source of truth for
plan ordering: free < trial < starter < pro < enterprise. Everything that
needs "at least plan X" semantics goes through get_plan_rank() /
is_plan_sufficient() rather than comparing plan names.

A Grant is one row of the entitlements table. principal_id None means the
grant covers the whole tenant (org scope); otherwise it covers one member.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from core.errors import InvalidPlanError


class Plan(str, Enum):
    FREE = "free"
    TRIAL = "trial"
    STARTER = "starter"
    PRO = "pro"
    ENTERPRISE = "enterprise"

    @classmethod
    def parse(cls, value: Plan | str) -> Plan:
        """Return the Plan for a (case-insensitive) name or raise InvalidPlanError."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise InvalidPlanError(f"Invalid plan: {value}", plan=str(value)) from None


PLAN_RANKS: dict[Plan, int] = {
    Plan.FREE: 0,
    Plan.TRIAL: 1,
    Plan.STARTER: 2,
    Plan.PRO: 3,
    Plan.ENTERPRISE: 4,
}


def get_plan_rank(plan: Plan | str) -> int:
    return PLAN_RANKS[Plan.parse(plan)]


def is_plan_sufficient(current: Plan | str, required: Plan | str) -> bool:
    """True if current ranks at or above required."""
    return get_plan_rank(current) >= get_plan_rank(required)


class GrantStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    EXPIRED = "expired"


class Scope(str, Enum):
    ORG = "org"
    MEMBER = "member"


# Sentinel for "no limit" inside meta["limits"].
UNLIMITED = -1


@dataclass
class Grant:
    """One entitlement row.

    meta holds "limits" (feature -> cap, -1 or absent = unlimited) and
    "usage" (feature -> consumed count) plus free-form audit keys such as
    upgradedAt / previousPlan.
    """

    tenant_id: int
    product_key: str
    plan: Plan = Plan.FREE
    status: GrantStatus = GrantStatus.ACTIVE
    principal_id: int | None = None
    valid_until: datetime | None = None
    meta: dict[str, Any] = field(default_factory=dict)
    id: int | None = None
    created_at: datetime | None = None
    product_name: str | None = None

    @property
    def scope(self) -> Scope:
        return Scope.ORG if self.principal_id is None else Scope.MEMBER

    @property
    def license_type(self) -> str:
        return self.scope.value

    @property
    def limits(self) -> dict[str, Any]:
        return self.meta.get("limits") or {}

    @property
    def usage(self) -> dict[str, Any]:
        return self.meta.get("usage") or {}

    def is_effective(self, now: datetime) -> bool:
        """active AND (perpetual OR not yet lapsed)."""
        if self.status is not GrantStatus.ACTIVE:
            return False
        return self.valid_until is None or self.valid_until > now


@dataclass(frozen=True)
class EffectiveGrant:
    """Outcome of a successful resolution: the winning grant and the path that found it."""

    grant: Grant
    scope: Scope

    @property
    def plan(self) -> Plan:
        return self.grant.plan


@dataclass(frozen=True)
class QuotaDecision:
    """Result of a quota check. limit None means the feature is unlimited."""

    allowed: bool
    feature: str
    current: int
    requested: int
    limit: int | None = None

    @property
    def remaining(self) -> int | None:
        if self.limit is None:
            return None
        return max(self.limit - self.current - self.requested, 0) if self.allowed else 0


@dataclass(frozen=True)
class Product:
    key: str
    name: str
    is_active: bool = True


@dataclass(frozen=True)
class PlanInfo:
    """Catalogue entry for GET /licenses/plans. price None = custom pricing."""

    plan: Plan
    name: str
    price: int | None
    features: dict[str, Any]


PLAN_CATALOG: list[PlanInfo] = [
    PlanInfo(Plan.FREE, "Free", 0, {"max_tickets": 100, "max_orders": 50, "support": "community"}),
    PlanInfo(Plan.TRIAL, "Trial", 0, {"max_tickets": 200, "max_orders": 100, "support": "email"}),
    PlanInfo(Plan.STARTER, "Starter", 29, {"max_tickets": 1000, "max_orders": 500, "support": "email"}),
    PlanInfo(
        Plan.PRO,
        "Professional",
        99,
        {"max_tickets": 10000, "max_orders": 5000, "support": "priority", "custom_branding": True},
    ),
    PlanInfo(
        Plan.ENTERPRISE,
        "Enterprise",
        None,
        {
            "max_tickets": UNLIMITED,
            "max_orders": UNLIMITED,
            "support": "dedicated",
            "custom_branding": True,
            "sla": True,
        },
    ),
]
