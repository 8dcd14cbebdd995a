"""
auth/store.py -- SQLAlchemy Core persistence layer for principals and roles.

Pattern: Repository + Data Mapper. UserStore is the repository;
_row_to_principal / _row_to_role are the mappers. Service and route code
never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  record_login_failure() increments failed_attempts and applies the lockout
  threshold in ONE UPDATE statement. SET expressions see the pre-update row,
  so two concurrent failures each add one and the second to reach the
  threshold still locks -- no read-modify-write window.

User <-> Role:
  Stored once, in user_roles. The composite primary key indexes
  user_id -> role_id and ix_user_roles_role_id indexes role_id -> user_id,
  giving both lookup directions without a second copy of the data. Only
  assign_role(), revoke_role() and set_user_roles() write the table.

Principals are never hard-deleted; deactivate them instead.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from sqlalchemy import (
    Column,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    case,
    create_engine,
    event,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Connection, Engine

from auth.errors import RoleNotFoundError
from auth.models import Principal, Role, SecurityState
from auth.roles import sort_by_authority, validate_priority, validate_role_name

logger = logging.getLogger("portal.auth")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'portal_auth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(50), nullable=False, unique=True),
    Column("email", String(100), nullable=False, unique=True),
    Column("hashed_password", Text, nullable=False),
    Column("full_name", String(100), nullable=False, server_default=""),
    Column("department", String(100)),
    Column("position", String(50)),
    Column("phone_number", String(20)),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("is_locked", Integer, nullable=False, server_default="0"),
    Column("is_credential_expired", Integer, nullable=False, server_default="0"),
    Column("failed_attempts", Integer, nullable=False, server_default="0"),
    Column("locked_at", String(32)),
    Column("last_login_at", String(32)),
    Column("created_at", String(32), nullable=False),
)

_roles = Table(
    "roles",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(50), nullable=False, unique=True),
    Column("display_name", String(100), nullable=False, server_default=""),
    Column("description", String(500), nullable=False, server_default=""),
    Column("priority", Integer),  # NULL = unranked, sorts as lowest authority
    Column("is_system", Integer, nullable=False, server_default="0"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
)

_user_roles = Table(
    "user_roles",
    _metadata,
    Column("user_id", Integer, ForeignKey("users.id"), primary_key=True),
    Column("role_id", Integer, ForeignKey("roles.id"), primary_key=True),
)

Index("ix_user_roles_role_id", _user_roles.c.role_id)

# Security columns an administrator may overwrite through save_security().
_SECURITY_FIELDS = ("is_active", "is_locked", "is_credential_expired", "failed_attempts", "locked_at")

# Columns update_profile() may change.
_PROFILE_FIELDS = ("email", "full_name", "department", "position", "phone_number")


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers proceed without blocking during writes.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for Principal and Role entities.

    Usage:
        store = UserStore("sqlite:///portal.db")
        store.seed_roles(catalog_roles())
        uid = store.create_user(Principal(...), role_names=["ROLE_EMPLOYEE"])
        principal = store.get_by_username("jdoe")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL, timeout: float = 5.0) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            # sqlite3 busy timeout: bounds how long a store call waits on a lock.
            connect_args["timeout"] = timeout
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Principal queries
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def create_user(self, principal: Principal, role_names: Iterable[str] = ()) -> int:
        """Insert a principal (and its initial roles) and return the new ID.

        Raises sqlalchemy.exc.IntegrityError if the username or email is
        already taken, and RoleNotFoundError if a role name is unknown. Both
        leave nothing behind: user row and role links commit together.
        """
        sec = principal.security
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.insert().values(
                    username=principal.username,
                    email=principal.email,
                    hashed_password=principal.hashed_password,
                    full_name=principal.full_name,
                    department=principal.department,
                    position=principal.position,
                    phone_number=principal.phone_number,
                    is_active=int(sec.is_active),
                    is_locked=int(sec.is_locked),
                    is_credential_expired=int(sec.is_credential_expired),
                    failed_attempts=sec.failed_attempts,
                    created_at=_now_iso(),
                )
            )
            user_id = result.inserted_primary_key[0]
            for name in role_names:
                conn.execute(_user_roles.insert().values(user_id=user_id, role_id=self._role_id(conn, name)))
        return user_id

    def get_by_username(self, username: str) -> Principal | None:
        """Look up a principal by exact username (case-sensitive), roles included."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
            return self._hydrate(conn, row)

    def get_by_id(self, user_id: int) -> Principal | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
            return self._hydrate(conn, row)

    def username_exists(self, username: str) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(select(_users.c.id).where(_users.c.username == username)).fetchone()
        return row is not None

    def email_exists(self, email: str) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(select(_users.c.id).where(_users.c.email == email)).fetchone()
        return row is not None

    def list_users(self, q: str | None = None, department: str | None = None) -> list[Principal]:
        """Return principals ordered by username. Admin-only operation.

        q is a case-insensitive substring of username, full name, or email;
        LIKE wildcards in it match literally. department must match exactly.
        """
        query = _users.select().order_by(_users.c.username)
        if q:
            query = query.where(
                or_(
                    _users.c.username.icontains(q, autoescape=True),
                    _users.c.full_name.icontains(q, autoescape=True),
                    _users.c.email.icontains(q, autoescape=True),
                )
            )
        if department:
            query = query.where(_users.c.department == department)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
            return [self._hydrate(conn, r) for r in rows]

    def update_profile(self, user_id: int, changes: Mapping[str, Any]) -> bool:
        """Apply profile edits. Username, password and security state are not editable here.

        Keys outside _PROFILE_FIELDS are ignored, as is None for the required
        email and full_name. Raises IntegrityError if the new email is taken.
        Returns False if the user does not exist.
        """
        values = {k: v for k, v in changes.items() if k in _PROFILE_FIELDS}
        for required in ("email", "full_name"):
            if values.get(required, "") is None:
                del values[required]
        if not values:
            return self.get_by_id(user_id) is not None
        with self.engine.begin() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**values))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Security state
    # ------------------------------------------------------------------

    def record_login_success(self, user_id: int, last_login_at: str) -> None:
        """Persist the success transition: zero the counter, stamp last login."""
        with self.engine.begin() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(failed_attempts=0, last_login_at=last_login_at)
            )

    def record_login_failure(self, user_id: int, max_attempts: int) -> SecurityState | None:
        """Atomically count one failed login and lock at the threshold.

        Mirrors auth.account.on_login_failure() as a single UPDATE so that
        concurrent failures on the same account cannot lose increments.
        Returns the resulting security state, or None if the user vanished.
        """
        attempts = _users.c.failed_attempts + 1
        reaches_limit = attempts >= max_attempts
        stmt = (
            _users.update()
            .where(_users.c.id == user_id)
            .values(
                failed_attempts=attempts,
                is_locked=case((reaches_limit, 1), else_=_users.c.is_locked),
                locked_at=case(
                    (reaches_limit & (_users.c.is_locked == 0), _now_iso()),
                    else_=_users.c.locked_at,
                ),
            )
        )
        with self.engine.begin() as conn:
            conn.execute(stmt)
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_security(row) if row is not None else None

    def save_security(self, user_id: int, sec: SecurityState) -> bool:
        """Overwrite the administrative security fields (lock/active/counter).

        Used after an explicit admin transition (lock, unlock, activate,
        deactivate). Returns False if the user does not exist.
        """
        values = {name: getattr(sec, name) for name in _SECURITY_FIELDS}
        for flag in ("is_active", "is_locked", "is_credential_expired"):
            values[flag] = int(values[flag])
        with self.engine.begin() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**values))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def seed_roles(self, roles: Iterable[Role]) -> int:
        """Insert catalog roles that do not exist yet. Idempotent; returns the number inserted."""
        inserted = 0
        with self.engine.begin() as conn:
            existing = set(conn.execute(select(_roles.c.name)).scalars())
            for role in roles:
                if role.name in existing:
                    continue
                conn.execute(_role_insert(role))
                inserted += 1
        if inserted:
            logger.info("Seeded %d catalog roles", inserted)
        return inserted

    def create_role(self, role: Role) -> int:
        """Validate and insert a new role. Returns its ID.

        Raises InvalidRoleNameError for a name outside the ROLE_ namespace
        pattern, ValueError for a priority outside 1..999, and
        sqlalchemy.exc.IntegrityError for a duplicate name.
        """
        validate_role_name(role.name)
        validate_priority(role.priority)
        with self.engine.begin() as conn:
            result = conn.execute(_role_insert(role))
        return result.inserted_primary_key[0]

    def get_role(self, role_id: int) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.id == role_id)).fetchone()
        return _row_to_role(row) if row is not None else None

    def get_role_by_name(self, name: str) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.name == name)).fetchone()
        return _row_to_role(row) if row is not None else None

    def list_roles(self, active_only: bool = False) -> list[Role]:
        """Return roles ordered by authority (priority, then name)."""
        query = _roles.select()
        if active_only:
            query = query.where(_roles.c.is_active == 1)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return sort_by_authority(_row_to_role(r) for r in rows)

    def update_role(
        self,
        role_id: int,
        display_name: str | None = None,
        description: str | None = None,
        priority: int | None = None,
    ) -> bool:
        """Update label, description, and/or priority. The name is immutable."""
        values: dict = {}
        if display_name is not None:
            values["display_name"] = display_name
        if description is not None:
            values["description"] = description
        if priority is not None:
            values["priority"] = validate_priority(priority)
        if not values:
            return self.get_role(role_id) is not None
        with self.engine.begin() as conn:
            result = conn.execute(_roles.update().where(_roles.c.id == role_id).values(**values))
        return result.rowcount > 0

    def set_role_active(self, role_id: int, active: bool) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(_roles.update().where(_roles.c.id == role_id).values(is_active=int(active)))
        return result.rowcount > 0

    def delete_role(self, role_id: int) -> None:
        """Delete a custom role that nobody holds.

        Raises RoleNotFoundError if it does not exist and ValueError if it is
        a system role or still assigned to at least one principal.
        """
        with self.engine.begin() as conn:
            row = conn.execute(_roles.select().where(_roles.c.id == role_id)).fetchone()
            if row is None:
                raise RoleNotFoundError(f"Role {role_id} not found")
            if row.is_system:
                raise ValueError("System roles cannot be deleted.")
            holders = conn.execute(
                select(func.count()).select_from(_user_roles).where(_user_roles.c.role_id == role_id)
            ).scalar()
            if holders:
                raise ValueError(f"Role is assigned to {holders} user(s); reassign them first.")
            conn.execute(_roles.delete().where(_roles.c.id == role_id))

    # ------------------------------------------------------------------
    # Assignments (the only writers of user_roles)
    # ------------------------------------------------------------------

    def assign_role(self, user_id: int, role_name: str) -> bool:
        """Grant role_name to user_id. Returns False if already held."""
        with self.engine.begin() as conn:
            role_id = self._role_id(conn, role_name)
            held = conn.execute(
                select(_user_roles.c.role_id).where(
                    (_user_roles.c.user_id == user_id) & (_user_roles.c.role_id == role_id)
                )
            ).fetchone()
            if held is not None:
                return False
            conn.execute(_user_roles.insert().values(user_id=user_id, role_id=role_id))
        return True

    def revoke_role(self, user_id: int, role_name: str) -> bool:
        """Remove role_name from user_id. Returns False if it was not held."""
        with self.engine.begin() as conn:
            role_id = self._role_id(conn, role_name)
            result = conn.execute(
                _user_roles.delete().where((_user_roles.c.user_id == user_id) & (_user_roles.c.role_id == role_id))
            )
        return result.rowcount > 0

    def set_user_roles(self, user_id: int, role_names: Iterable[str]) -> None:
        """Replace the user's role set in one transaction."""
        with self.engine.begin() as conn:
            role_ids = {self._role_id(conn, name) for name in role_names}
            conn.execute(_user_roles.delete().where(_user_roles.c.user_id == user_id))
            for role_id in sorted(role_ids):
                conn.execute(_user_roles.insert().values(user_id=user_id, role_id=role_id))

    def roles_for_user(self, user_id: int) -> list[Role]:
        with self.engine.connect() as conn:
            return self._roles_for(conn, user_id)

    def users_for_role(self, role_id: int) -> list[int]:
        """Return IDs of users holding role_id (reverse index)."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_user_roles.c.user_id).where(_user_roles.c.role_id == role_id).order_by(_user_roles.c.user_id)
            ).scalars()
            return list(rows)

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _role_id(self, conn: Connection, name: str) -> int:
        role_id = conn.execute(select(_roles.c.id).where(_roles.c.name == name)).scalar()
        if role_id is None:
            raise RoleNotFoundError(f"Role {name!r} not found")
        return role_id

    def _roles_for(self, conn: Connection, user_id: int) -> list[Role]:
        rows = conn.execute(
            _roles.select()
            .join(_user_roles, _user_roles.c.role_id == _roles.c.id)
            .where(_user_roles.c.user_id == user_id)
        ).fetchall()
        return sort_by_authority(_row_to_role(r) for r in rows)

    def _hydrate(self, conn: Connection, row) -> Principal | None:
        if row is None:
            return None
        principal = _row_to_principal(row)
        principal.roles = self._roles_for(conn, row.id)
        return principal


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _role_insert(role: Role):
    return _roles.insert().values(
        name=role.name,
        display_name=role.display_name,
        description=role.description,
        priority=role.priority,
        is_system=int(role.is_system),
        is_active=int(role.is_active),
        created_at=_now_iso(),
    )


def _row_to_security(row) -> SecurityState:
    return SecurityState(
        is_active=bool(row.is_active),
        is_locked=bool(row.is_locked),
        is_credential_expired=bool(row.is_credential_expired),
        failed_attempts=row.failed_attempts,
        locked_at=row.locked_at,
        last_login_at=row.last_login_at,
    )


def _row_to_principal(row) -> Principal:
    return Principal(
        id=row.id,
        username=row.username,
        email=row.email,
        hashed_password=row.hashed_password,
        full_name=row.full_name,
        department=row.department,
        position=row.position,
        phone_number=row.phone_number,
        security=_row_to_security(row),
        created_at=row.created_at,
    )


def _row_to_role(row) -> Role:
    return Role(
        id=row.id,
        name=row.name,
        display_name=row.display_name,
        description=row.description,
        priority=row.priority,
        is_system=bool(row.is_system),
        is_active=bool(row.is_active),
        created_at=row.created_at,
    )
