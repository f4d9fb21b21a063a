"""
licensing/resolver.py -- Effective entitlement resolution.

Two lookup paths, always evaluated in this fixed order:
  1. Org grant    -- (tenant, principal IS NULL, product), effective.
  2. Member grant -- (tenant, principal, product), effective.
The first effective match wins. Grants are never merged or summed, so an
effective org grant shadows a member grant for the same product even when the
member grant carries a different plan.

No caching: every call goes to the store, which means revocation and expiry
take effect on the next request.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime

from core.clock import ensure_utc, utcnow
from core.errors import LicenseRequiredError, PlanUpgradeRequiredError
from licensing.models import EffectiveGrant, Plan, Scope, is_plan_sufficient
from licensing.store import EntitlementStore

logger = logging.getLogger("licensegate.licensing.resolver")


class EntitlementResolver:
    def __init__(self, store: EntitlementStore) -> None:
        self._store = store

    def resolve(
        self,
        tenant_id: int,
        principal_id: int | None,
        product_key: str,
        now: datetime | None = None,
    ) -> EffectiveGrant | None:
        """Return the effective grant for (tenant, principal, product) or None.

        principal_id None only consults the org path.
        """
        now = ensure_utc(now) if now is not None else utcnow()

        org = self._store.find_effective_org_grant(tenant_id, product_key, now)
        if org is not None:
            return EffectiveGrant(grant=org, scope=Scope.ORG)

        if principal_id is not None:
            member = self._store.find_effective_member_grant(tenant_id, principal_id, product_key, now)
            if member is not None:
                return EffectiveGrant(grant=member, scope=Scope.MEMBER)

        return None

    def require(
        self,
        tenant_id: int,
        principal_id: int | None,
        product_key: str,
        now: datetime | None = None,
    ) -> EffectiveGrant:
        """Like resolve() but raises LicenseRequiredError when nothing is effective."""
        effective = self.resolve(tenant_id, principal_id, product_key, now)
        if effective is None:
            logger.info(
                "License denied: tenant=%s principal=%s product=%s",
                tenant_id,
                principal_id,
                product_key,
            )
            raise LicenseRequiredError(
                f"Active {product_key} license required",
                productKey=product_key,
                tenantId=tenant_id,
            )
        return effective

    def require_plan(
        self,
        tenant_id: int,
        principal_id: int | None,
        product_key: str,
        allowed_plans: Iterable[Plan | str] | None = None,
        minimum_plan: Plan | str | None = None,
        now: datetime | None = None,
    ) -> EffectiveGrant:
        """Resolve, then check the effective plan.

        allowed_plans is an explicit allow-list; minimum_plan is a rank check.
        Either or both may be given.
        """
        effective = self.require(tenant_id, principal_id, product_key, now)
        plan = effective.plan
        allowed = [Plan.parse(p) for p in allowed_plans] if allowed_plans is not None else None

        ok = True
        if allowed is not None and plan not in allowed:
            ok = False
        if minimum_plan is not None and not is_plan_sufficient(plan, minimum_plan):
            ok = False
        if not ok:
            required = [p.value for p in allowed] if allowed is not None else [Plan.parse(minimum_plan).value]
            raise PlanUpgradeRequiredError(
                f"Plan '{plan.value}' insufficient. Required: {', '.join(required)}",
                currentPlan=plan.value,
                requiredPlans=required,
            )
        return effective
