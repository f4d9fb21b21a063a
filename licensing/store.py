"""
licensing/store.py -- SQLAlchemy Core persistence layer for entitlements.

Pattern: Repository + Data Mapper (same as auth/store.py). EntitlementStore is
the single source of truth for grants; nothing above it caches rows across
requests, so a revocation or expiry is visible on the very next read.

Uniqueness:
  Two partial/plain unique indexes carry the scope invariant:
    uq_entitlements_org    (tenant_id, product_key) WHERE principal_id IS NULL
    uq_entitlements_member (tenant_id, principal_id, product_key)
  SQL treats NULLs as distinct, so org rows never collide in the member index.
  Upserts target the matching index with INSERT ... ON CONFLICT DO UPDATE on
  SQLite and PostgreSQL.

Timestamps are fixed-width UTC ISO strings (core/clock.py), so the
effectiveness predicate valid_until > :now is a plain string comparison.

meta is a JSON object serialized to TEXT. Writes that derive a new meta from
the current one (usage counters) go through update_meta_locked(), which reads
and writes inside one transaction and takes a row lock where the dialect
supports SELECT ... FOR UPDATE.

SQLite has no row locks, and pysqlite only opens a transaction at the first
DML statement, so a read-then-write could interleave with another writer.
The engine therefore takes over BEGIN emission (SQLAlchemy's pysqlite
recipe): plain transactions start with BEGIN, read-modify-write transactions
(_locked_transaction) with BEGIN IMMEDIATE, which takes the database write
lock before the read. Competing writers wait out the driver busy timeout.

Error policy: every SQLAlchemyError is logged with its traceback and re-raised
as core.errors.StorageError, whose payload never includes the driver message.

Security: all queries use bound parameters. No f-strings in SQL.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from sqlalchemy import (
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    or_,
    select,
)
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from core.clock import from_db, to_db, utcnow
from core.config import get_settings
from core.errors import StorageError
from licensing.models import Grant, GrantStatus, Plan, Product

logger = logging.getLogger("licensegate.licensing.store")

_DEFAULT_PRODUCTS: list[tuple[str, str]] = [
    ("tickets", "Tickets"),
    ("impulse", "Impulse"),
]

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_entitlements = Table(
    "entitlements",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("tenant_id", Integer, nullable=False),
    Column("principal_id", Integer),  # NULL = org-wide grant
    Column("product_key", String(64), nullable=False),
    Column("plan", String(20), nullable=False, server_default="free"),
    Column("status", String(20), nullable=False, server_default="active"),
    Column("valid_until", String(32)),  # NULL = perpetual
    Column("meta", Text, nullable=False, server_default="{}"),  # JSON object
    Column("created_at", String(32), nullable=False),
)

Index(
    "uq_entitlements_org",
    _entitlements.c.tenant_id,
    _entitlements.c.product_key,
    unique=True,
    sqlite_where=_entitlements.c.principal_id.is_(None),
    postgresql_where=_entitlements.c.principal_id.is_(None),
)
Index(
    "uq_entitlements_member",
    _entitlements.c.tenant_id,
    _entitlements.c.principal_id,
    _entitlements.c.product_key,
    unique=True,
)
Index("ix_entitlements_status_valid_until", _entitlements.c.status, _entitlements.c.valid_until)

_products = Table(
    "products",
    metadata,
    Column("key", String(64), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _disable_pysqlite_begin(dbapi_conn, connection_record) -> None:
    dbapi_conn.isolation_level = None


def _emit_sqlite_begin(conn: Connection) -> None:
    if conn.get_execution_options().get("sqlite_immediate"):
        conn.exec_driver_sql("BEGIN IMMEDIATE")
    else:
        conn.exec_driver_sql("BEGIN")


@contextmanager
def _storage_errors(operation: str) -> Iterator[None]:
    """Translate driver failures into StorageError, logging the original."""
    try:
        yield
    except SQLAlchemyError as exc:
        logger.exception("Entitlement store operation %r failed", operation)
        raise StorageError() from exc


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class EntitlementStore:
    """Repository for Grant and Product entities.

    Usage:
        store = EntitlementStore("sqlite:///licensegate.db")
        grant = store.upsert_org_grant(42, "tickets", Plan.PRO)
        row = store.find_effective_org_grant(42, "tickets", utcnow())
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _disable_pysqlite_begin)
            event.listen(self.engine, "begin", _emit_sqlite_begin)
        if db_url.startswith("sqlite") and ":memory:" not in db_url and "mode=memory" not in db_url:
            event.listen(self.engine, "connect", _set_wal_mode)
        metadata.create_all(self.engine)
        self._seed_products()

    def _seed_products(self) -> None:
        """Insert the default products once. Idempotent on every startup."""
        with self.engine.begin() as conn:
            existing = set(conn.execute(select(_products.c.key)).scalars())
            for key, name in _DEFAULT_PRODUCTS:
                if key not in existing:
                    conn.execute(_products.insert().values(key=key, name=name, is_active=1))

    @contextmanager
    def _locked_transaction(self) -> Iterator[Connection]:
        """Transaction for read-modify-write: BEGIN IMMEDIATE on SQLite."""
        with self.engine.connect() as conn:
            conn.execution_options(sqlite_immediate=True)
            with conn.begin():
                yield conn

    # ------------------------------------------------------------------
    # Upserts
    # ------------------------------------------------------------------

    def upsert_org_grant(
        self,
        tenant_id: int,
        product_key: str,
        plan: Plan,
        status: GrantStatus = GrantStatus.ACTIVE,
        valid_until: datetime | None = None,
        meta: dict[str, Any] | None = None,
    ) -> Grant:
        """Insert or overwrite the org-scope row for (tenant, product). Last writer wins."""
        values = _grant_values(tenant_id, None, product_key, plan, status, valid_until, meta)
        with _storage_errors("upsert_org_grant"), self.engine.begin() as conn:
            self._upsert(conn, values, ["tenant_id", "product_key"], org_scope=True)
            row = conn.execute(_org_key(tenant_id, product_key)).fetchone()
        return _row_to_grant(row)

    def upsert_member_grant(
        self,
        tenant_id: int,
        principal_id: int,
        product_key: str,
        plan: Plan = Plan.FREE,
        status: GrantStatus = GrantStatus.ACTIVE,
        valid_until: datetime | None = None,
        meta: dict[str, Any] | None = None,
    ) -> Grant:
        """Insert or overwrite the member-scope row for (tenant, principal, product)."""
        values = _grant_values(tenant_id, principal_id, product_key, plan, status, valid_until, meta)
        with _storage_errors("upsert_member_grant"), self.engine.begin() as conn:
            self._upsert(conn, values, ["tenant_id", "principal_id", "product_key"], org_scope=False)
            row = conn.execute(_member_key(tenant_id, principal_id, product_key)).fetchone()
        return _row_to_grant(row)

    def _upsert(self, conn: Connection, values: dict, conflict_cols: list[str], org_scope: bool) -> None:
        mutable = {k: values[k] for k in ("plan", "status", "valid_until", "meta")}
        index_where = _entitlements.c.principal_id.is_(None) if org_scope else None
        dialect = conn.dialect.name
        if dialect in ("sqlite", "postgresql"):
            insert = sqlite_insert if dialect == "sqlite" else pg_insert
            stmt = (
                insert(_entitlements)
                .values(**values)
                .on_conflict_do_update(index_elements=conflict_cols, index_where=index_where, set_=mutable)
            )
            conn.execute(stmt)
            return
        # Other dialects: update-then-insert inside the caller's transaction.
        key = (
            _org_key(values["tenant_id"], values["product_key"])
            if org_scope
            else _member_key(values["tenant_id"], values["principal_id"], values["product_key"])
        )
        existing = conn.execute(key.with_for_update()).fetchone()
        if existing is None:
            conn.execute(_entitlements.insert().values(**values))
        else:
            conn.execute(_entitlements.update().where(_entitlements.c.id == existing.id).values(**mutable))

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_by_id(self, grant_id: int) -> Grant | None:
        with _storage_errors("get_by_id"), self.engine.connect() as conn:
            row = conn.execute(_entitlements.select().where(_entitlements.c.id == grant_id)).fetchone()
        return _row_to_grant(row) if row is not None else None

    def get_org_grant(self, tenant_id: int, product_key: str, status: GrantStatus | None = None) -> Grant | None:
        """Return the org row for (tenant, product), optionally filtered by status."""
        stmt = _org_key(tenant_id, product_key)
        if status is not None:
            stmt = stmt.where(_entitlements.c.status == status.value)
        with _storage_errors("get_org_grant"), self.engine.connect() as conn:
            row = conn.execute(stmt).fetchone()
        return _row_to_grant(row) if row is not None else None

    def get_member_grant(self, tenant_id: int, principal_id: int, product_key: str) -> Grant | None:
        with _storage_errors("get_member_grant"), self.engine.connect() as conn:
            row = conn.execute(_member_key(tenant_id, principal_id, product_key)).fetchone()
        return _row_to_grant(row) if row is not None else None

    def find_effective_org_grant(self, tenant_id: int, product_key: str, now: datetime) -> Grant | None:
        stmt = _effective(_org_key(tenant_id, product_key), now)
        with _storage_errors("find_effective_org_grant"), self.engine.connect() as conn:
            row = conn.execute(stmt).fetchone()
        return _row_to_grant(row) if row is not None else None

    def find_effective_member_grant(
        self, tenant_id: int, principal_id: int, product_key: str, now: datetime
    ) -> Grant | None:
        stmt = _effective(_member_key(tenant_id, principal_id, product_key), now)
        with _storage_errors("find_effective_member_grant"), self.engine.connect() as conn:
            row = conn.execute(stmt).fetchone()
        return _row_to_grant(row) if row is not None else None

    def list_for_tenant(self, tenant_id: int) -> list[Grant]:
        """All grants of a tenant (any scope, any status), newest first, with product names."""
        stmt = (
            select(_entitlements, _products.c.name.label("product_name"))
            .select_from(_entitlements.outerjoin(_products, _products.c.key == _entitlements.c.product_key))
            .where(_entitlements.c.tenant_id == tenant_id)
            .order_by(_entitlements.c.created_at.desc(), _entitlements.c.id.desc())
        )
        with _storage_errors("list_for_tenant"), self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_grant(r) for r in rows]

    def list_member_grants(self, tenant_id: int, principal_id: int, product_key: str | None = None) -> list[Grant]:
        stmt = _entitlements.select().where(
            (_entitlements.c.tenant_id == tenant_id) & (_entitlements.c.principal_id == principal_id)
        )
        if product_key is not None:
            stmt = stmt.where(_entitlements.c.product_key == product_key)
        stmt = stmt.order_by(_entitlements.c.product_key)
        with _storage_errors("list_member_grants"), self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_grant(r) for r in rows]

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    def set_org_status(self, tenant_id: int, product_key: str, status: GrantStatus) -> bool:
        """Set status on the org row. Returns True if a row was affected."""
        with _storage_errors("set_org_status"), self.engine.begin() as conn:
            result = conn.execute(
                _entitlements.update()
                .where(
                    (_entitlements.c.tenant_id == tenant_id)
                    & (_entitlements.c.product_key == product_key)
                    & _entitlements.c.principal_id.is_(None)
                )
                .values(status=status.value)
            )
        return result.rowcount > 0

    def set_member_status(self, tenant_id: int, principal_id: int, product_key: str, status: GrantStatus) -> bool:
        with _storage_errors("set_member_status"), self.engine.begin() as conn:
            result = conn.execute(
                _entitlements.update()
                .where(
                    (_entitlements.c.tenant_id == tenant_id)
                    & (_entitlements.c.principal_id == principal_id)
                    & (_entitlements.c.product_key == product_key)
                )
                .values(status=status.value)
            )
        return result.rowcount > 0

    def expire_lapsed(self, now: datetime) -> list[Grant]:
        """Mark every active grant with valid_until <= now as expired.

        Returns the transitioned grants (with their new status). A second call
        with the same clock finds nothing: rows are no longer active.
        """
        cutoff = to_db(now)
        lapsed = (
            (_entitlements.c.status == GrantStatus.ACTIVE.value)
            & _entitlements.c.valid_until.is_not(None)
            & (_entitlements.c.valid_until <= cutoff)
        )
        with _storage_errors("expire_lapsed"), self._locked_transaction() as conn:
            rows = conn.execute(_entitlements.select().where(lapsed)).fetchall()
            if not rows:
                return []
            ids = [r.id for r in rows]
            conn.execute(
                _entitlements.update()
                .where(_entitlements.c.id.in_(ids) & (_entitlements.c.status == GrantStatus.ACTIVE.value))
                .values(status=GrantStatus.EXPIRED.value)
            )
        expired = [_row_to_grant(r) for r in rows]
        for grant in expired:
            grant.status = GrantStatus.EXPIRED
        return expired

    # ------------------------------------------------------------------
    # Metadata (usage counters)
    # ------------------------------------------------------------------

    def update_meta_locked(self, grant_id: int, mutate: Callable[[dict], dict | None]) -> Grant | None:
        """Read-modify-write a grant's meta inside one transaction.

        mutate receives a copy of the current meta and returns the new meta,
        or None to leave the row untouched. The row is locked with
        SELECT ... FOR UPDATE where supported; on SQLite the transaction holds
        the database write lock from its first statement. Returns the grant
        as persisted after the call, or None if the grant does not exist.
        """
        with _storage_errors("update_meta_locked"), self._locked_transaction() as conn:
            stmt = _entitlements.select().where(_entitlements.c.id == grant_id)
            if conn.dialect.name != "sqlite":
                stmt = stmt.with_for_update()
            row = conn.execute(stmt).fetchone()
            if row is None:
                return None
            grant = _row_to_grant(row)
            new_meta = mutate(json.loads(json.dumps(grant.meta)))
            if new_meta is not None:
                conn.execute(
                    _entitlements.update().where(_entitlements.c.id == grant_id).values(meta=json.dumps(new_meta))
                )
                grant.meta = new_meta
        return grant

    # ------------------------------------------------------------------
    # Tenant cascade
    # ------------------------------------------------------------------

    def delete_for_tenant(self, tenant_id: int) -> int:
        """Physically delete every grant of a tenant. Only used by tenant deletion."""
        with _storage_errors("delete_for_tenant"), self.engine.begin() as conn:
            result = conn.execute(_entitlements.delete().where(_entitlements.c.tenant_id == tenant_id))
        return result.rowcount

    # ------------------------------------------------------------------
    # Products
    # ------------------------------------------------------------------

    def list_products(self, active_only: bool = True) -> list[Product]:
        stmt = select(_products).order_by(_products.c.name)
        if active_only:
            stmt = stmt.where(_products.c.is_active == 1)
        with _storage_errors("list_products"), self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [Product(key=r.key, name=r.name, is_active=bool(r.is_active)) for r in rows]

    def ping(self) -> bool:
        with self.engine.connect() as conn:
            conn.execute(select(1))
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Statement helpers
# ---------------------------------------------------------------------------


def _org_key(tenant_id: int, product_key: str):
    return _entitlements.select().where(
        (_entitlements.c.tenant_id == tenant_id)
        & (_entitlements.c.product_key == product_key)
        & _entitlements.c.principal_id.is_(None)
    )


def _member_key(tenant_id: int, principal_id: int, product_key: str):
    return _entitlements.select().where(
        (_entitlements.c.tenant_id == tenant_id)
        & (_entitlements.c.principal_id == principal_id)
        & (_entitlements.c.product_key == product_key)
    )


def _effective(stmt, now: datetime):
    return stmt.where(
        (_entitlements.c.status == GrantStatus.ACTIVE.value)
        & or_(_entitlements.c.valid_until.is_(None), _entitlements.c.valid_until > to_db(now))
    ).limit(1)


def _grant_values(
    tenant_id: int,
    principal_id: int | None,
    product_key: str,
    plan: Plan,
    status: GrantStatus,
    valid_until: datetime | None,
    meta: dict[str, Any] | None,
) -> dict[str, Any]:
    return {
        "tenant_id": tenant_id,
        "principal_id": principal_id,
        "product_key": product_key,
        "plan": plan.value,
        "status": status.value,
        "valid_until": to_db(valid_until),
        "meta": json.dumps(meta or {}),
        "created_at": to_db(utcnow()),
    }


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_grant(row) -> Grant:
    try:
        meta = json.loads(row.meta) if row.meta else {}
    except (TypeError, ValueError):
        logger.warning("Grant %s has unparseable meta; treating as empty", row.id)
        meta = {}
    return Grant(
        id=row.id,
        tenant_id=row.tenant_id,
        principal_id=row.principal_id,
        product_key=row.product_key,
        plan=Plan(row.plan.lower()),
        status=GrantStatus(row.status.lower()),
        valid_until=from_db(row.valid_until),
        meta=meta if isinstance(meta, dict) else {},
        created_at=from_db(row.created_at),
        product_name=getattr(row, "product_name", None),
    )
