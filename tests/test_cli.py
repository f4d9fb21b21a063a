"""Tests for main.py -- the operator CLI.

Covers:
- grant / upgrade / revoke / list / sweep against a file-backed database
- --limit parsing including 'unlimited'
- exit codes: 0 success, 1 domain error or missing grant, 2 bad input
"""

import json

import pytest

from licensing.models import GrantStatus, Plan
from licensing.store import EntitlementStore
from main import _parse_limits, main


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'cli.db'}"


def _store(db_url: str) -> EntitlementStore:
    return EntitlementStore(db_url)


def test_parse_limits():
    assert _parse_limits(["max_tickets=100", "max_orders=unlimited", "seats=-1"]) == {
        "max_tickets": 100,
        "max_orders": -1,
        "seats": -1,
    }


@pytest.mark.parametrize("bad", ["max_tickets", "=5", "max_tickets=lots"])
def test_parse_limits_rejects_bad_pairs(bad):
    with pytest.raises(ValueError):
        _parse_limits([bad])


def test_grant_and_list_json(db_url, capsys):
    assert main(["--db", db_url, "grant", "42", "tickets", "pro", "--limit", "max_tickets=1000"]) == 0
    capsys.readouterr()

    assert main(["--db", db_url, "list", "42", "--json"]) == 0
    [row] = json.loads(capsys.readouterr().out)
    assert row["tenant_id"] == 42
    assert row["product_key"] == "tickets"
    assert row["product_name"] == "Tickets"
    assert row["plan"] == "pro"
    assert row["license_type"] == "org"
    assert row["meta"] == {"limits": {"max_tickets": 1000}}


def test_grant_invalid_plan_exits_1(db_url, capsys):
    assert main(["--db", db_url, "grant", "42", "tickets", "gold"]) == 1
    assert "INVALID_PLAN" in capsys.readouterr().err


def test_grant_bad_limit_exits_2(db_url, capsys):
    assert main(["--db", db_url, "grant", "42", "tickets", "pro", "--limit", "oops"]) == 2
    assert "FEATURE=N" in capsys.readouterr().err


def test_upgrade_extends_validity(db_url):
    assert main(["--db", db_url, "grant", "42", "tickets", "pro", "--valid-until", "2025-01-01"]) == 0
    assert main(["--db", db_url, "upgrade", "42", "tickets", "enterprise", "--months", "3"]) == 0

    store = _store(db_url)
    grant = store.get_org_grant(42, "tickets")
    store.close()
    assert grant.plan is Plan.ENTERPRISE
    assert grant.valid_until.date().isoformat() == "2025-04-01"
    assert grant.meta["previousPlan"] == "pro"


def test_revoke(db_url, capsys):
    assert main(["--db", db_url, "revoke", "42", "tickets"]) == 1
    assert main(["--db", db_url, "grant", "42", "tickets", "pro"]) == 0
    assert main(["--db", db_url, "revoke", "42", "tickets"]) == 0
    assert "Revoked tickets for tenant 42" in capsys.readouterr().out


def test_sweep(db_url, capsys):
    main(["--db", db_url, "grant", "1", "tickets", "pro", "--valid-until", "2020-01-01"])
    main(["--db", db_url, "grant", "2", "tickets", "pro"])
    capsys.readouterr()

    assert main(["--db", db_url, "sweep"]) == 0
    assert "1 license(s) expired." in capsys.readouterr().out
    assert main(["--db", db_url, "sweep"]) == 0
    assert "0 license(s) expired." in capsys.readouterr().out

    store = _store(db_url)
    assert store.get_org_grant(1, "tickets").status is GrantStatus.EXPIRED
    store.close()


def test_list_empty_tenant(db_url, capsys):
    assert main(["--db", db_url, "list", "99"]) == 0
    assert "No licenses for tenant 99" in capsys.readouterr().out


def test_plans(capsys):
    assert main(["plans"]) == 0
    out = capsys.readouterr().out
    for name in ("free", "trial", "starter", "pro", "enterprise"):
        assert name in out
    assert "max_tickets=unlimited" in out


@pytest.mark.parametrize("command", ["grant", "upgrade"])
def test_unknown_product_is_rejected(db_url, capsys, command):
    assert main(["--db", db_url, command, "42", "widgets", "pro"]) == 1
    assert "NOT_FOUND" in capsys.readouterr().err
    assert _store(db_url).list_for_tenant(42) == []
