"""
auth/store.py -- SQLAlchemy Core persistence for principals, tenants and memberships.

Pattern: Repository + Data Mapper. PrincipalStore is the repository;
_row_to_* functions are the mappers. Route and service code never touches SQL.

Security:
  All queries use bound parameters. No f-strings in SQL.

  UNIQUE(oauth_provider, oauth_subject) is enforced in code rather than SQL
  because SQLite treats two NULL values as distinct in UNIQUE constraints.

Invariants enforced here:
  - emails are stored lower-cased; lookups are case-insensitive.
  - tenant names are unique case-insensitively (name_key column).
  - a membership (tenant, principal) exists at most once; a duplicate add
    raises ConflictError.
  - a tenant keeps at least one owner: removing the last owner raises
    ConflictError.

Layer rule: no imports from api/ or licensing/.
"""

from __future__ import annotations

import logging

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.models import ApiKey, Membership, Principal, PrincipalStatus, Role, Tenant, TenantRole
from core.clock import from_db, to_db, utcnow
from core.config import get_settings
from core.errors import ConflictError, NotFoundError

logger = logging.getLogger("licensegate.auth.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_principals = Table(
    "principals",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("display_name", String(255), nullable=False, server_default=""),
    Column("hashed_password", Text),  # NULL for OAuth-only / invited accounts
    Column("role", String(30), nullable=False, server_default="admin"),
    Column("status", String(30), nullable=False, server_default="active"),
    Column("oauth_provider", String(30)),
    Column("oauth_subject", Text),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

_api_keys = Table(
    "api_keys",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("principal_id", Integer, ForeignKey("principals.id"), nullable=False),
    Column("name", String(100), nullable=False),
    Column("key_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("key_prefix", String(12), nullable=False),  # display only
    Column("created_at", String(32), nullable=False),
    Column("last_used", String(32)),
    Column("is_active", Integer, nullable=False, server_default="1"),
)

_tenants = Table(
    "tenants",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("name_key", String(255), nullable=False, unique=True),  # lower(name)
    Column("created_at", String(32), nullable=False),
)

_members = Table(
    "tenant_members",
    _metadata,
    Column("tenant_id", Integer, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
    Column("principal_id", Integer, ForeignKey("principals.id"), nullable=False),
    Column("role", String(20), nullable=False, server_default="admin"),
    Column("created_at", String(32), nullable=False),
    PrimaryKeyConstraint("tenant_id", "principal_id"),
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety (per connection)."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class PrincipalStore:
    """Repository for Principal, ApiKey, Tenant and Membership entities.

    Usage:
        store = PrincipalStore("sqlite:///licensegate.db")
        pid = store.create_principal(Principal(email="a@example.com", hashed_password=hash_password("pw")))
        tenant = store.create_tenant("Acme", owner_id=pid)
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite") and ":memory:" not in db_url and "mode=memory" not in db_url:
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            conn.execute(select(1))
        return True

    # ------------------------------------------------------------------
    # Principals
    # ------------------------------------------------------------------

    def create_principal(self, principal: Principal) -> int:
        """Insert a new principal and return its id.

        Raises ConflictError if the email is already registered.
        """
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    _principals.insert().values(
                        email=_normalize_email(principal.email),
                        display_name=principal.display_name or "",
                        hashed_password=principal.hashed_password,
                        role=principal.role.value,
                        status=principal.status.value,
                        oauth_provider=principal.oauth_provider,
                        oauth_subject=principal.oauth_subject,
                        created_at=to_db(utcnow()),
                    )
                )
        except IntegrityError as exc:
            raise ConflictError("A principal with that email already exists.") from exc
        return result.inserted_primary_key[0]

    def get_by_id(self, principal_id: int) -> Principal | None:
        with self.engine.connect() as conn:
            row = conn.execute(_principals.select().where(_principals.c.id == principal_id)).fetchone()
        return _row_to_principal(row) if row is not None else None

    def get_by_email(self, email: str) -> Principal | None:
        """Case-insensitive lookup (emails are stored lower-cased)."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _principals.select().where(_principals.c.email == _normalize_email(email))
            ).fetchone()
        return _row_to_principal(row) if row is not None else None

    def get_by_oauth(self, provider: str, subject: str) -> Principal | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _principals.select().where(
                    (_principals.c.oauth_provider == provider) & (_principals.c.oauth_subject == subject)
                )
            ).fetchone()
        return _row_to_principal(row) if row is not None else None

    def link_oauth(self, principal_id: int, provider: str, subject: str) -> None:
        """Associate an OAuth identity with an existing principal.

        A pending (invited) principal becomes active on its first linked login.
        """
        with self.engine.begin() as conn:
            conn.execute(
                _principals.update()
                .where(_principals.c.id == principal_id)
                .values(oauth_provider=provider, oauth_subject=subject)
            )
            conn.execute(
                _principals.update()
                .where((_principals.c.id == principal_id) & (_principals.c.status == PrincipalStatus.PENDING.value))
                .values(status=PrincipalStatus.ACTIVE.value)
            )

    def update_principal(self, principal_id: int, **fields) -> bool:
        """Update mutable fields: display_name, role, status, hashed_password.

        Enum values are accepted and stored by value. Returns True if a row
        was updated.
        """
        for key in ("role", "status"):
            if key in fields and hasattr(fields[key], "value"):
                fields[key] = fields[key].value
        with self.engine.begin() as conn:
            result = conn.execute(_principals.update().where(_principals.c.id == principal_id).values(**fields))
        return result.rowcount > 0

    def update_last_login(self, principal_id: int) -> None:
        with self.engine.begin() as conn:
            conn.execute(_principals.update().where(_principals.c.id == principal_id).values(last_login=to_db(utcnow())))

    # ------------------------------------------------------------------
    # API keys
    # ------------------------------------------------------------------

    def get_api_keys(self, principal_id: int) -> list[ApiKey]:
        """Return all active API keys for a principal (newest first)."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _api_keys.select()
                .where((_api_keys.c.principal_id == principal_id) & (_api_keys.c.is_active == 1))
                .order_by(_api_keys.c.created_at.desc(), _api_keys.c.id.desc())
            ).fetchall()
        return [_row_to_api_key(r) for r in rows]

    def create_api_key(self, api_key: ApiKey) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                _api_keys.insert().values(
                    principal_id=api_key.principal_id,
                    name=api_key.name,
                    key_hash=api_key.key_hash,
                    key_prefix=api_key.key_prefix,
                    created_at=to_db(utcnow()),
                    is_active=1,
                )
            )
        return result.inserted_primary_key[0]

    def get_api_key_by_hash(self, key_hash: str) -> ApiKey | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _api_keys.select().where((_api_keys.c.key_hash == key_hash) & (_api_keys.c.is_active == 1))
            ).fetchone()
        return _row_to_api_key(row) if row is not None else None

    def update_api_key_last_used(self, key_id: int) -> None:
        with self.engine.begin() as conn:
            conn.execute(_api_keys.update().where(_api_keys.c.id == key_id).values(last_used=to_db(utcnow())))

    def revoke_api_key(self, key_id: int, principal_id: int) -> bool:
        """Deactivate a key. principal_id is part of the WHERE clause (IDOR guard)."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _api_keys.update()
                .where((_api_keys.c.id == key_id) & (_api_keys.c.principal_id == principal_id))
                .values(is_active=0)
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Tenants
    # ------------------------------------------------------------------

    def create_tenant(self, name: str, owner_id: int) -> Tenant:
        """Create a tenant and make owner_id its first owner, atomically.

        Raises ConflictError if a tenant with the same name (ignoring case)
        already exists.
        """
        name = name.strip()
        now = to_db(utcnow())
        try:
            with self.engine.begin() as conn:
                result = conn.execute(_tenants.insert().values(name=name, name_key=name.lower(), created_at=now))
                tenant_id = result.inserted_primary_key[0]
                conn.execute(
                    _members.insert().values(
                        tenant_id=tenant_id,
                        principal_id=owner_id,
                        role=TenantRole.OWNER.value,
                        created_at=now,
                    )
                )
        except IntegrityError as exc:
            raise ConflictError("A tenant with that name already exists.") from exc
        logger.info("Tenant %d created by principal %d", tenant_id, owner_id)
        return Tenant(id=tenant_id, name=name, created_at=from_db(now))

    def get_tenant(self, tenant_id: int) -> Tenant | None:
        with self.engine.connect() as conn:
            row = conn.execute(_tenants.select().where(_tenants.c.id == tenant_id)).fetchone()
        return _row_to_tenant(row) if row is not None else None

    def list_tenants(self) -> list[Tenant]:
        """All tenants ordered by id. Super-principal view."""
        with self.engine.connect() as conn:
            rows = conn.execute(_tenants.select().order_by(_tenants.c.id)).fetchall()
        return [_row_to_tenant(r) for r in rows]

    def list_tenants_for_principal(self, principal_id: int) -> list[Tenant]:
        stmt = (
            select(_tenants)
            .join(_members, _members.c.tenant_id == _tenants.c.id)
            .where(_members.c.principal_id == principal_id)
            .order_by(_tenants.c.id)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_tenant(r) for r in rows]

    def delete_tenant(self, tenant_id: int) -> bool:
        """Delete a tenant and its memberships. Grants are removed by the caller."""
        with self.engine.begin() as conn:
            conn.execute(_members.delete().where(_members.c.tenant_id == tenant_id))
            result = conn.execute(_tenants.delete().where(_tenants.c.id == tenant_id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Memberships
    # ------------------------------------------------------------------

    def get_member_role(self, tenant_id: int, principal_id: int) -> TenantRole | None:
        with self.engine.connect() as conn:
            role = conn.execute(
                select(_members.c.role).where(
                    (_members.c.tenant_id == tenant_id) & (_members.c.principal_id == principal_id)
                )
            ).scalar()
        return TenantRole(role.lower()) if role is not None else None

    def list_members(self, tenant_id: int) -> list[Membership]:
        stmt = (
            select(
                _members.c.tenant_id,
                _members.c.principal_id,
                _members.c.role,
                _members.c.created_at,
                _principals.c.email,
                _principals.c.display_name,
            )
            .join(_principals, _principals.c.id == _members.c.principal_id)
            .where(_members.c.tenant_id == tenant_id)
            .order_by(_principals.c.email)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_membership(r) for r in rows]

    def add_member(self, tenant_id: int, principal_id: int, role: TenantRole = TenantRole.ADMIN) -> Membership:
        """Add a principal to a tenant. Raises ConflictError if already a member."""
        if self.get_tenant(tenant_id) is None:
            raise NotFoundError("Tenant not found.")
        now = to_db(utcnow())
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    _members.insert().values(
                        tenant_id=tenant_id,
                        principal_id=principal_id,
                        role=role.value,
                        created_at=now,
                    )
                )
        except IntegrityError as exc:
            raise ConflictError("Principal is already a member of this tenant.") from exc
        return Membership(tenant_id=tenant_id, principal_id=principal_id, role=role, created_at=from_db(now))

    def count_owners(self, tenant_id: int) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_members)
                .where((_members.c.tenant_id == tenant_id) & (func.lower(_members.c.role) == TenantRole.OWNER.value))
            ).scalar()
        return result or 0

    def remove_member(self, tenant_id: int, principal_id: int) -> bool:
        """Remove a membership. Returns False if it did not exist.

        Raises ConflictError when the target is the tenant's last owner.
        """
        role = self.get_member_role(tenant_id, principal_id)
        if role is None:
            return False
        if role is TenantRole.OWNER and self.count_owners(tenant_id) <= 1:
            raise ConflictError("Cannot remove the last owner of a tenant.")
        with self.engine.begin() as conn:
            result = conn.execute(
                _members.delete().where((_members.c.tenant_id == tenant_id) & (_members.c.principal_id == principal_id))
            )
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_principal(row) -> Principal:
    return Principal(
        id=row.id,
        email=row.email,
        display_name=row.display_name or "",
        hashed_password=row.hashed_password,
        role=Role(row.role.lower()),
        status=PrincipalStatus(row.status.lower()),
        oauth_provider=row.oauth_provider,
        oauth_subject=row.oauth_subject,
        created_at=from_db(row.created_at),
        last_login=from_db(row.last_login),
    )


def _row_to_api_key(row) -> ApiKey:
    return ApiKey(
        id=row.id,
        principal_id=row.principal_id,
        name=row.name,
        key_hash=row.key_hash,
        key_prefix=row.key_prefix,
        created_at=from_db(row.created_at),
        last_used=from_db(row.last_used),
        is_active=bool(row.is_active),
    )


def _row_to_tenant(row) -> Tenant:
    return Tenant(id=row.id, name=row.name, created_at=from_db(row.created_at))


def _row_to_membership(row) -> Membership:
    return Membership(
        tenant_id=row.tenant_id,
        principal_id=row.principal_id,
        role=TenantRole(row.role.lower()),
        email=row.email,
        display_name=row.display_name or "",
        created_at=from_db(row.created_at),
    )
