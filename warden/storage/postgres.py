from __future__ import annotations

import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from warden.logging import get_logger
from warden.storage.errors import ConstraintViolation, StoreUnavailable
from warden.storage.memory import OwnershipFinder
from warden.storage.models import (
    Permission,
    Principal,
    PrincipalStatus,
    Role,
    RoleStatus,
    _utcnow,
    split_permission_code,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS principal (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        username TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'active',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        deleted_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS role (
        id UUID PRIMARY KEY,
        code TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        description TEXT,
        is_system BOOLEAN NOT NULL DEFAULT FALSE,
        status TEXT NOT NULL DEFAULT 'active',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS permission (
        id UUID PRIMARY KEY,
        code TEXT NOT NULL UNIQUE,
        module TEXT NOT NULL,
        name TEXT NOT NULL,
        description TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS principal_role (
        principal_id UUID NOT NULL REFERENCES principal(id),
        role_id UUID NOT NULL REFERENCES role(id),
        PRIMARY KEY (principal_id, role_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS role_permission (
        role_id UUID NOT NULL REFERENCES role(id),
        permission_id UUID NOT NULL REFERENCES permission(id),
        PRIMARY KEY (role_id, permission_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS system_setting (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


class PostgresStore:
    """Postgres-backed store of principals, roles and permissions.

    Connectivity failures surface as ``StoreUnavailable``; uniqueness and
    reference failures surface as ``ConstraintViolation``.
    """

    def __init__(
        self,
        dsn: str,
        *,
        pool: Optional[ConnectionPool] = None,
        ensure_schema: bool = True,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        if ensure_schema:
            self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, psycopg.InterfaceError) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable(str(exc), backend="postgres") from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    # row mapping
    @staticmethod
    def _principal_from_row(row: Dict[str, Any]) -> Principal:
        return Principal(
            id=str(row["id"]),
            email=row["email"],
            username=row["username"],
            password_hash=row["password_hash"],
            status=row.get("status") or PrincipalStatus.ACTIVE,
            created_at=row.get("created_at") or _utcnow(),
            deleted_at=row.get("deleted_at"),
        )

    @staticmethod
    def _role_from_row(row: Dict[str, Any]) -> Role:
        return Role(
            id=str(row["id"]),
            code=row["code"],
            name=row["name"],
            is_system=bool(row.get("is_system", False)),
            status=row.get("status") or RoleStatus.ACTIVE,
            description=row.get("description"),
            created_at=row.get("created_at") or _utcnow(),
        )

    @staticmethod
    def _permission_from_row(row: Dict[str, Any]) -> Permission:
        return Permission(
            id=str(row["id"]),
            code=row["code"],
            module=row["module"],
            name=row["name"],
            description=row.get("description"),
            created_at=row.get("created_at") or _utcnow(),
        )

    # principals
    def create_principal(
        self,
        email: str,
        username: str,
        password_hash: str,
        *,
        status: str = PrincipalStatus.ACTIVE,
    ) -> Principal:
        principal_id = str(uuid.uuid4())
        email = email.strip().lower()
        username = username.strip()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO principal (id, email, username, password_hash, status)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (principal_id, email, username, password_hash, status),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = "username" if "username" in str(exc) else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        if not row:
            return Principal(
                id=principal_id,
                email=email,
                username=username,
                password_hash=password_hash,
                status=status,
            )
        return self._principal_from_row(row)

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM principal WHERE id = %s", (principal_id,)
            ).fetchone()
        return self._principal_from_row(row) if row else None

    def get_principal_by_identifier(self, identifier: str) -> Optional[Principal]:
        needle = identifier.strip()
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM principal
                WHERE deleted_at IS NULL AND (email = %s OR username = %s)
                LIMIT 1
                """,
                (needle.lower(), needle),
            ).fetchone()
        return self._principal_from_row(row) if row else None

    def update_password_hash(self, principal_id: str, password_hash: str) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE principal SET password_hash = %s WHERE id = %s",
                (password_hash, principal_id),
            )
            if cur.rowcount == 0:
                raise ConstraintViolation(
                    "principal not found", {"principal_id": principal_id}
                )

    def set_principal_status(self, principal_id: str, status: str) -> Optional[Principal]:
        if status not in PrincipalStatus.ALL:
            raise ValueError(f"unknown principal status {status!r}")
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE principal SET status = %s WHERE id = %s RETURNING *",
                (status, principal_id),
            ).fetchone()
        return self._principal_from_row(row) if row else None

    def soft_delete_principal(self, principal_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE principal SET deleted_at = now(), status = %s
                WHERE id = %s AND deleted_at IS NULL
                """,
                (PrincipalStatus.INACTIVE, principal_id),
            )
            return cur.rowcount > 0

    # roles
    def create_role(
        self,
        code: str,
        name: str,
        *,
        is_system: bool = False,
        status: str = RoleStatus.ACTIVE,
        description: Optional[str] = None,
    ) -> Role:
        role_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO role (id, code, name, description, is_system, status)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (role_id, code, name, description, is_system, status),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("role code already exists", {"field": "code"})
        return Role(
            id=role_id,
            code=code,
            name=name,
            is_system=is_system,
            status=status,
            description=description,
        )

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM role WHERE id = %s", (role_id,)).fetchone()
        return self._role_from_row(row) if row else None

    def get_role_by_code(self, code: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM role WHERE code = %s", (code,)).fetchone()
        return self._role_from_row(row) if row else None

    def list_roles(self) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM role ORDER BY code").fetchall()
        return [self._role_from_row(row) for row in rows]

    def update_role(
        self,
        role_id: str,
        *,
        name: Optional[str] = None,
        status: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Role:
        if status is not None and status not in RoleStatus.ALL:
            raise ValueError(f"unknown role status {status!r}")
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM role WHERE id = %s FOR UPDATE", (role_id,)
            ).fetchone()
            if not row:
                raise ConstraintViolation("role not found", {"role_id": role_id})
            if row.get("is_system"):
                raise ConstraintViolation(
                    "system roles cannot be modified", {"role": row["code"]}
                )
            updated = conn.execute(
                """
                UPDATE role
                SET name = COALESCE(%s, name),
                    status = COALESCE(%s, status),
                    description = COALESCE(%s, description)
                WHERE id = %s
                RETURNING *
                """,
                (name, status, description, role_id),
            ).fetchone()
        return self._role_from_row(updated or row)

    def delete_role(self, role_id: str) -> None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM role WHERE id = %s FOR UPDATE", (role_id,)
            ).fetchone()
            if not row:
                raise ConstraintViolation("role not found", {"role_id": role_id})
            if row.get("is_system"):
                raise ConstraintViolation(
                    "system roles cannot be deleted", {"role": row["code"]}
                )
            held = conn.execute(
                "SELECT COUNT(*) AS n FROM principal_role WHERE role_id = %s",
                (role_id,),
            ).fetchone()
            if held and held["n"]:
                raise ConstraintViolation(
                    "role is still assigned",
                    {"role": row["code"], "assignments": held["n"]},
                )
            conn.execute("DELETE FROM role_permission WHERE role_id = %s", (role_id,))
            conn.execute("DELETE FROM role WHERE id = %s", (role_id,))

    # permissions
    def create_permission(
        self,
        code: str,
        name: str,
        *,
        module: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Permission:
        resource, _ = split_permission_code(code)
        permission_id = str(uuid.uuid4())
        module = module or resource
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO permission (id, code, module, name, description)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (permission_id, code, module, name, description),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("permission code already exists", {"field": "code"})
        return Permission(
            id=permission_id, code=code, module=module, name=name, description=description
        )

    def get_permission_by_code(self, code: str) -> Optional[Permission]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM permission WHERE code = %s", (code,)
            ).fetchone()
        return self._permission_from_row(row) if row else None

    def list_permissions(self) -> List[Permission]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM permission ORDER BY code").fetchall()
        return [self._permission_from_row(row) for row in rows]

    def delete_permission(self, permission_id: str) -> None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM permission WHERE id = %s FOR UPDATE", (permission_id,)
            ).fetchone()
            if not row:
                raise ConstraintViolation(
                    "permission not found", {"permission_id": permission_id}
                )
            held = conn.execute(
                "SELECT COUNT(*) AS n FROM role_permission WHERE permission_id = %s",
                (permission_id,),
            ).fetchone()
            if held and held["n"]:
                raise ConstraintViolation(
                    "permission is still granted",
                    {"permission": row["code"], "grants": held["n"]},
                )
            conn.execute("DELETE FROM permission WHERE id = %s", (permission_id,))

    # assignments / grants
    def grant_permission(self, role_id: str, permission_id: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO role_permission (role_id, permission_id)
                    VALUES (%s, %s)
                    ON CONFLICT (role_id, permission_id) DO NOTHING
                    """,
                    (role_id, permission_id),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "role or permission not found",
                {"role_id": role_id, "permission_id": permission_id},
            )

    def revoke_permission(self, role_id: str, permission_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM role_permission WHERE role_id = %s AND permission_id = %s",
                (role_id, permission_id),
            )

    def assign_role(self, principal_id: str, role_id: str) -> None:
        role = self.get_role(role_id)
        if not role:
            raise ConstraintViolation("role not found", {"role_id": role_id})
        if not role.is_active:
            raise ConstraintViolation("role is disabled", {"role": role.code})
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO principal_role (principal_id, role_id)
                    VALUES (%s, %s)
                    ON CONFLICT (principal_id, role_id) DO NOTHING
                    """,
                    (principal_id, role_id),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "principal not found", {"principal_id": principal_id}
            )

    def revoke_role(self, principal_id: str, role_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM principal_role WHERE principal_id = %s AND role_id = %s",
                (principal_id, role_id),
            )

    def list_principal_roles(self, principal_id: str) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT r.* FROM principal_role pr
                JOIN role r ON r.id = pr.role_id
                WHERE pr.principal_id = %s
                ORDER BY r.code
                """,
                (principal_id,),
            ).fetchall()
        return [self._role_from_row(row) for row in rows]

    def list_role_permissions(self, role_id: str) -> List[Permission]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT p.* FROM role_permission rp
                JOIN permission p ON p.id = rp.permission_id
                WHERE rp.role_id = %s
                ORDER BY p.code
                """,
                (role_id,),
            ).fetchall()
        return [self._permission_from_row(row) for row in rows]

    # system settings
    def get_system_settings(self) -> Dict[str, str]:
        with self._connect() as conn:
            rows = conn.execute("SELECT key, value FROM system_setting").fetchall()
        return {row["key"]: row["value"] for row in rows}

    def set_system_setting(self, key: str, value: Optional[str]) -> None:
        with self._connect() as conn:
            if value is None:
                conn.execute("DELETE FROM system_setting WHERE key = %s", (key,))
                return
            conn.execute(
                """
                INSERT INTO system_setting (key, value, updated_at)
                VALUES (%s, %s, now())
                ON CONFLICT (key) DO UPDATE
                SET value = EXCLUDED.value, updated_at = now()
                """,
                (key, str(value)),
            )

    # owned resources
    def owned_row_finder(
        self,
        table: str,
        owner_field: str = "user_id",
        *,
        id_column: str = "id",
        deleted_column: Optional[str] = "deleted_at",
    ) -> OwnershipFinder:
        """Return ``finder(resource_id, owner_id) -> bool`` over ``table``.

        Table and column names are fixed here, at registration time, and
        quoted as identifiers; the id and owner values are always bound.
        """
        clauses = [
            sql.SQL("{} = %s").format(sql.Identifier(id_column)),
            sql.SQL("{} = %s").format(sql.Identifier(owner_field)),
        ]
        if deleted_column:
            clauses.append(sql.SQL("{} IS NULL").format(sql.Identifier(deleted_column)))
        query = sql.SQL("SELECT 1 FROM {table} WHERE {where} LIMIT 1").format(
            table=sql.Identifier(table),
            where=sql.SQL(" AND ").join(clauses),
        )

        def _finder(resource_id: str, owner_id: str) -> bool:
            with self._connect() as conn:
                row = conn.execute(query, (resource_id, owner_id)).fetchone()
            return row is not None

        return _finder
