"""
licensing/lifecycle.py -- Create, upgrade, revoke and expire grants.

All writes are upserts keyed on the scope uniqueness constraints, so repeated
calls converge on one row per key (last writer wins; no optimistic
concurrency check).

upgrade() intentionally does not compare plan ranks: a "downgrade via
upgrade" is accepted and recorded in meta.previousPlan. Callers that need
rank checks use get_plan_rank() / is_plan_sufficient() directly.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from dateutil.relativedelta import relativedelta

from core.clock import ensure_utc, utcnow
from licensing.models import Grant, GrantStatus, Plan, get_plan_rank, is_plan_sufficient
from licensing.store import EntitlementStore

logger = logging.getLogger("licensegate.licensing.lifecycle")

__all__ = ["LicenseManager", "add_months", "get_plan_rank", "is_plan_sufficient"]


def add_months(value: datetime, months: int) -> datetime:
    """Calendar-month arithmetic; the day is clamped to the target month's end."""
    return value + relativedelta(months=months)


class LicenseManager:
    def __init__(self, store: EntitlementStore) -> None:
        self._store = store

    # ------------------------------------------------------------------
    # Org-scope grants
    # ------------------------------------------------------------------

    def create_or_update(
        self,
        tenant_id: int,
        product_key: str,
        plan: Plan | str,
        status: GrantStatus | str = GrantStatus.ACTIVE,
        valid_until: datetime | None = None,
        meta: dict[str, Any] | None = None,
    ) -> Grant:
        """Upsert the org grant for (tenant, product). Raises InvalidPlanError for unknown plans."""
        plan = Plan.parse(plan)
        status = GrantStatus(status)
        grant = self._store.upsert_org_grant(
            tenant_id,
            product_key,
            plan,
            status=status,
            valid_until=ensure_utc(valid_until) if valid_until is not None else None,
            meta=meta or {},
        )
        logger.info(
            "License set: tenant=%s product=%s plan=%s status=%s valid_until=%s",
            tenant_id,
            product_key,
            plan.value,
            status.value,
            grant.valid_until.isoformat() if grant.valid_until else "perpetual",
        )
        return grant

    def get(self, tenant_id: int, product_key: str) -> Grant | None:
        """The active org grant for a product (validity window not checked)."""
        return self._store.get_org_grant(tenant_id, product_key, status=GrantStatus.ACTIVE)

    def upgrade(
        self,
        tenant_id: int,
        product_key: str,
        new_plan: Plan | str,
        extension_months: int | None = 1,
        valid_until: datetime | None = None,
        meta: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> Grant:
        """Move the org grant to new_plan.

        Without an explicit valid_until, a current valid_until is extended by
        extension_months (default 1); a perpetual or missing grant stays
        perpetual. meta is merged over the current meta and stamped with
        upgradedAt / previousPlan.
        """
        new_plan = Plan.parse(new_plan)
        current = self.get(tenant_id, product_key)

        if valid_until is None and current is not None and current.valid_until is not None:
            valid_until = add_months(current.valid_until, extension_months or 1)

        merged: dict[str, Any] = {
            **(current.meta if current is not None else {}),
            **(meta or {}),
            "upgradedAt": (ensure_utc(now) if now is not None else utcnow()).isoformat(),
            "previousPlan": current.plan.value if current is not None else None,
        }
        return self.create_or_update(
            tenant_id,
            product_key,
            new_plan,
            status=GrantStatus.ACTIVE,
            valid_until=valid_until,
            meta=merged,
        )

    def revoke(self, tenant_id: int, product_key: str) -> bool:
        """Set the org grant inactive. False means there was no such row."""
        revoked = self._store.set_org_status(tenant_id, product_key, GrantStatus.INACTIVE)
        if revoked:
            logger.info("License revoked: tenant=%s product=%s", tenant_id, product_key)
        return revoked

    def sweep_expired(self, now: datetime | None = None) -> int:
        """Transition lapsed active grants to expired. Returns the number transitioned."""
        expired = self._store.expire_lapsed(ensure_utc(now) if now is not None else utcnow())
        if expired:
            logger.info(
                "%d license(s) expired: %s",
                len(expired),
                ", ".join(
                    f"{g.id}(tenant={g.tenant_id},principal={g.principal_id},product={g.product_key})" for g in expired
                ),
            )
        return len(expired)

    def list(self, tenant_id: int) -> list[Grant]:
        """Every grant of a tenant; Grant.license_type tells org from member."""
        return self._store.list_for_tenant(tenant_id)

    # ------------------------------------------------------------------
    # Member-scope grants
    # ------------------------------------------------------------------

    def assign_member(
        self,
        tenant_id: int,
        principal_id: int,
        product_key: str,
        plan: Plan | str = Plan.FREE,
        status: GrantStatus | str = GrantStatus.ACTIVE,
        valid_until: datetime | None = None,
        meta: dict[str, Any] | None = None,
    ) -> Grant:
        plan = Plan.parse(plan)
        status = GrantStatus(status)
        grant = self._store.upsert_member_grant(
            tenant_id,
            principal_id,
            product_key,
            plan=plan,
            status=status,
            valid_until=ensure_utc(valid_until) if valid_until is not None else None,
            meta=meta or {},
        )
        logger.info(
            "Member license set: tenant=%s principal=%s product=%s plan=%s status=%s",
            tenant_id,
            principal_id,
            product_key,
            plan.value,
            status.value,
        )
        return grant

    def remove_member(self, tenant_id: int, principal_id: int, product_key: str) -> bool:
        """Deactivate a member grant. Rows are kept for audit."""
        return self._store.set_member_status(tenant_id, principal_id, product_key, GrantStatus.INACTIVE)

    def list_member(self, tenant_id: int, principal_id: int, product_key: str | None = None) -> list[Grant]:
        return self._store.list_member_grants(tenant_id, principal_id, product_key)
