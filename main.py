#!/usr/bin/env python3
"""
LicenseGate -- operator CLI for product entitlements.

Usage:
  python main.py sweep
  python main.py grant 42 tickets pro --valid-until 2026-01-01
  python main.py grant 42 tickets starter --limit max_tickets=1000
  python main.py upgrade 42 tickets enterprise --months 3
  python main.py revoke 42 tickets
  python main.py list 42
  python main.py list 42 --json
  python main.py plans

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the entitlement database (overridden by --db).
  SECRET_KEY    Required unless DEBUG=true, as for the API.

`sweep` is meant for cron when the API's built-in sweep task is not running.
"""

import argparse
import json
import logging
import sys
from typing import Optional

from core.clock import parse_timestamp
from core.errors import GatewayError, NotFoundError
from licensing.lifecycle import LicenseManager, get_plan_rank
from licensing.models import PLAN_CATALOG, UNLIMITED, Grant
from licensing.store import EntitlementStore

logger = logging.getLogger("licensegate.cli")


def _parse_limits(pairs: list[str]) -> dict[str, int]:
    """Turn ["max_tickets=100", "max_orders=unlimited"] into a limits dict."""
    limits: dict[str, int] = {}
    for pair in pairs:
        feature, sep, raw = pair.partition("=")
        if not sep or not feature.strip():
            raise ValueError(f"Expected FEATURE=N, got '{pair}'")
        raw = raw.strip().lower()
        limits[feature.strip()] = UNLIMITED if raw in ("unlimited", "-1") else int(raw)
    return limits


def _require_product(store: EntitlementStore, product_key: str) -> None:
    if product_key not in {p.key for p in store.list_products()}:
        raise NotFoundError("Unknown product.", productKey=product_key)


def _grant_to_dict(grant: Grant) -> dict:
    return {
        "id": grant.id,
        "tenant_id": grant.tenant_id,
        "principal_id": grant.principal_id,
        "product_key": grant.product_key,
        "product_name": grant.product_name,
        "plan": grant.plan.value,
        "status": grant.status.value,
        "valid_until": grant.valid_until.isoformat() if grant.valid_until else None,
        "license_type": grant.license_type,
        "meta": grant.meta,
        "created_at": grant.created_at.isoformat() if grant.created_at else None,
    }


def _print_grant(grant: Grant) -> None:
    until = grant.valid_until.strftime("%Y-%m-%d %H:%M UTC") if grant.valid_until else "perpetual"
    who = "org" if grant.principal_id is None else f"member:{grant.principal_id}"
    print(f"  {grant.product_key:<12} {grant.plan.value:<11} {grant.status.value:<9} {who:<14} {until}")


def _print_grant_table(grants: list[Grant]) -> None:
    print(f"  {'PRODUCT':<12} {'PLAN':<11} {'STATUS':<9} {'SCOPE':<14} VALID UNTIL")
    for grant in grants:
        _print_grant(grant)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="licensegate",
        description="Manage product entitlements (licenses) for tenants.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py grant 42 tickets pro
  python main.py upgrade 42 tickets enterprise --months 3
  python main.py list 42 --json
        """,
    )
    parser.add_argument("--db", metavar="URL", default=None, help="Database URL (default: DATABASE_URL)")
    sub = parser.add_subparsers(dest="command", required=True, metavar="COMMAND")

    sub.add_parser("sweep", help="Expire every active grant whose valid_until has passed")

    grant = sub.add_parser("grant", help="Create or overwrite a tenant's org grant")
    grant.add_argument("tenant_id", type=int)
    grant.add_argument("product_key")
    grant.add_argument("plan")
    grant.add_argument("--valid-until", metavar="ISO_DATE", default=None, help="Expiry (default: perpetual)")
    grant.add_argument(
        "--limit",
        action="append",
        default=[],
        metavar="FEATURE=N",
        help="Feature limit, repeatable; N may be 'unlimited'",
    )

    upgrade = sub.add_parser("upgrade", help="Move an org grant to another plan, extending validity")
    upgrade.add_argument("tenant_id", type=int)
    upgrade.add_argument("product_key")
    upgrade.add_argument("plan")
    upgrade.add_argument("--months", type=int, default=1, help="Extension in calendar months (default: 1)")
    upgrade.add_argument("--valid-until", metavar="ISO_DATE", default=None, help="Explicit expiry instead")

    revoke = sub.add_parser("revoke", help="Set an org grant inactive")
    revoke.add_argument("tenant_id", type=int)
    revoke.add_argument("product_key")

    listing = sub.add_parser("list", help="List every grant of a tenant")
    listing.add_argument("tenant_id", type=int)
    listing.add_argument("--json", action="store_true", help="Output structured JSON")

    sub.add_parser("plans", help="Show the plan catalogue")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(levelname)-5s %(name)s %(message)s")

    if args.command == "plans":
        for info in PLAN_CATALOG:
            price = "custom" if info.price is None else f"{info.price}/mo"
            limits = ", ".join(
                f"{k}={'unlimited' if v == UNLIMITED else v}" for k, v in info.features.items() if k.startswith("max_")
            )
            print(f"  {get_plan_rank(info.plan)}  {info.plan.value:<11} {info.name:<13} {price:<8} {limits}")
        return 0

    store = EntitlementStore(args.db)
    manager = LicenseManager(store)
    try:
        if args.command == "sweep":
            count = manager.sweep_expired()
            print(f"  {count} license(s) expired.")

        elif args.command == "grant":
            _require_product(store, args.product_key)
            meta = {"limits": _parse_limits(args.limit)} if args.limit else {}
            grant = manager.create_or_update(
                args.tenant_id,
                args.product_key,
                args.plan,
                valid_until=parse_timestamp(args.valid_until),
                meta=meta,
            )
            _print_grant(grant)

        elif args.command == "upgrade":
            _require_product(store, args.product_key)
            grant = manager.upgrade(
                args.tenant_id,
                args.product_key,
                args.plan,
                extension_months=args.months,
                valid_until=parse_timestamp(args.valid_until),
            )
            _print_grant(grant)

        elif args.command == "revoke":
            if not manager.revoke(args.tenant_id, args.product_key):
                print(f"  [!] No {args.product_key} license for tenant {args.tenant_id}.")
                return 1
            print(f"  Revoked {args.product_key} for tenant {args.tenant_id}.")

        elif args.command == "list":
            grants = manager.list(args.tenant_id)
            if args.json:
                print(json.dumps([_grant_to_dict(g) for g in grants], indent=2))
            elif not grants:
                print(f"  No licenses for tenant {args.tenant_id}.")
            else:
                _print_grant_table(grants)

    except GatewayError as exc:
        print(f"  [!] {exc.code}: {exc.message}", file=sys.stderr)
        return 1
    except ValueError as exc:
        print(f"  [!] {exc}", file=sys.stderr)
        return 2
    finally:
        store.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
