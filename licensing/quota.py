"""
licensing/quota.py -- Per-feature quota accounting inside a grant's meta.

meta["limits"][feature] is the cap (-1 or absent = unlimited);
meta["usage"][feature] is the consumed count. Usage is only ever read from,
and written to, the grant that owns it -- never aggregated across grants.

check_quota() is a pure decision on an already-loaded grant.
increment_usage() is a read-modify-write done in one store transaction.
consume() runs check and increment in that same transaction, so two concurrent
consumers of the last unit cannot both succeed. Callers that do
check_quota() followed later by increment_usage() accept that concurrent
requests may overshoot a soft quota.
"""

from __future__ import annotations

import logging
from typing import Any

from core.errors import NotFoundError, PreconditionFailedError, QuotaExceededError
from licensing.models import UNLIMITED, EffectiveGrant, Grant, QuotaDecision
from licensing.store import EntitlementStore

logger = logging.getLogger("licensegate.licensing.quota")


def _as_grant(grant: Grant | EffectiveGrant | None) -> Grant:
    if grant is None:
        raise PreconditionFailedError()
    if isinstance(grant, EffectiveGrant):
        return grant.grant
    return grant


def _limit_for(meta: dict[str, Any], feature: str) -> int | None:
    limit = (meta.get("limits") or {}).get(feature)
    if limit is None or limit == UNLIMITED:
        return None
    return int(limit)


def _usage_for(meta: dict[str, Any], feature: str) -> int:
    return int((meta.get("usage") or {}).get(feature) or 0)


def evaluate(meta: dict[str, Any], feature: str, requested: int) -> QuotaDecision:
    """Decide a request of `requested` units against one grant's meta."""
    current = _usage_for(meta, feature)
    limit = _limit_for(meta, feature)
    if limit is None:
        return QuotaDecision(allowed=True, feature=feature, current=current, requested=requested)
    return QuotaDecision(
        allowed=current + requested <= limit,
        feature=feature,
        current=current,
        requested=requested,
        limit=limit,
    )


def _denied(decision: QuotaDecision) -> QuotaExceededError:
    return QuotaExceededError(
        f"{decision.feature} quota exceeded",
        feature=decision.feature,
        limit=decision.limit,
        current=decision.current,
        requested=decision.requested,
    )


class QuotaAccountant:
    def __init__(self, store: EntitlementStore) -> None:
        self._store = store

    def check_quota(self, grant: Grant | EffectiveGrant | None, feature: str, requested: int = 1) -> QuotaDecision:
        """Decide against the grant as loaded. Raises PreconditionFailedError if grant is None."""
        return evaluate(_as_grant(grant).meta, feature, requested)

    def enforce(self, grant: Grant | EffectiveGrant | None, feature: str, requested: int = 1) -> QuotaDecision:
        """check_quota() that raises QuotaExceededError on denial."""
        decision = self.check_quota(grant, feature, requested)
        if not decision.allowed:
            raise _denied(decision)
        return decision

    def increment_usage(self, grant: Grant | EffectiveGrant | None, feature: str, delta: int = 1) -> Grant:
        """Add delta to usage[feature] and return the grant as persisted."""
        target = _as_grant(grant)

        def bump(meta: dict) -> dict:
            usage = meta.setdefault("usage", {})
            usage[feature] = int(usage.get(feature) or 0) + delta
            return meta

        updated = self._store.update_meta_locked(target.id, bump)
        if updated is None:
            raise NotFoundError("License not found.")
        target.meta = updated.meta
        return updated

    def consume(self, grant: Grant | EffectiveGrant | None, feature: str, amount: int = 1) -> QuotaDecision:
        """Atomically check and increment. Raises QuotaExceededError on denial.

        The decision is taken against the row as locked in the transaction,
        not against the possibly stale in-memory grant.
        """
        target = _as_grant(grant)
        outcome: dict[str, QuotaDecision] = {}

        def check_and_bump(meta: dict) -> dict | None:
            decision = evaluate(meta, feature, amount)
            outcome["decision"] = decision
            if not decision.allowed:
                return None
            usage = meta.setdefault("usage", {})
            usage[feature] = decision.current + amount
            return meta

        updated = self._store.update_meta_locked(target.id, check_and_bump)
        if updated is None:
            raise NotFoundError("License not found.")
        target.meta = updated.meta
        decision = outcome["decision"]
        if not decision.allowed:
            logger.info(
                "Quota exceeded: grant=%s feature=%s current=%s limit=%s requested=%s",
                target.id,
                feature,
                decision.current,
                decision.limit,
                amount,
            )
            raise _denied(decision)
        return decision
