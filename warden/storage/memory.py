from __future__ import annotations

import threading
import uuid
from typing import Any, Callable, Dict, List, Optional, Set

from warden.logging import get_logger
from warden.storage.errors import ConstraintViolation
from warden.storage.models import (
    Permission,
    Principal,
    PrincipalStatus,
    Role,
    RoleStatus,
    _utcnow,
    split_permission_code,
)

OwnershipFinder = Callable[[str, str], bool]


class MemoryStore:
    """In-process store of principals, roles, permissions and owned resources.

    Mirrors the relational adapter closely enough for the service layer and
    tests; all mutations happen under a single re-entrant lock.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.principals: Dict[str, Principal] = {}
        self.roles: Dict[str, Role] = {}
        self.permissions: Dict[str, Permission] = {}
        # principal_id -> role ids
        self.assignments: Dict[str, Set[str]] = {}
        # role_id -> permission ids
        self.grants: Dict[str, Set[str]] = {}
        self.system_settings: Dict[str, str] = {}
        # resource_type -> resource_id -> row
        self.resources: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._data_lock = threading.RLock()

    # principals
    def create_principal(
        self,
        email: str,
        username: str,
        password_hash: str,
        *,
        status: str = PrincipalStatus.ACTIVE,
    ) -> Principal:
        email = email.strip().lower()
        username = username.strip()
        with self._data_lock:
            for existing in self.principals.values():
                if existing.email == email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                if existing.username == username:
                    raise ConstraintViolation(
                        "username already exists", {"field": "username"}
                    )
            principal = Principal(
                id=str(uuid.uuid4()),
                email=email,
                username=username,
                password_hash=password_hash,
                status=status,
            )
            self.principals[principal.id] = principal
            return principal

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._data_lock:
            return self.principals.get(principal_id)

    def get_principal_by_identifier(self, identifier: str) -> Optional[Principal]:
        """Look up a live principal by email (case-insensitive) or username."""
        needle = identifier.strip()
        lowered = needle.lower()
        with self._data_lock:
            for principal in self.principals.values():
                if principal.deleted_at is not None:
                    continue
                if principal.email == lowered or principal.username == needle:
                    return principal
            return None

    def update_password_hash(self, principal_id: str, password_hash: str) -> None:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                raise ConstraintViolation(
                    "principal not found", {"principal_id": principal_id}
                )
            principal.password_hash = password_hash

    def set_principal_status(self, principal_id: str, status: str) -> Optional[Principal]:
        if status not in PrincipalStatus.ALL:
            raise ValueError(f"unknown principal status {status!r}")
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                return None
            principal.status = status
            return principal

    def soft_delete_principal(self, principal_id: str) -> bool:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal or principal.deleted_at is not None:
                return False
            principal.deleted_at = _utcnow()
            principal.status = PrincipalStatus.INACTIVE
            return True

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
        with self._data_lock:
            if any(role.code == code for role in self.roles.values()):
                raise ConstraintViolation("role code already exists", {"field": "code"})
            role = Role(
                id=str(uuid.uuid4()),
                code=code,
                name=name,
                is_system=is_system,
                status=status,
                description=description,
            )
            self.roles[role.id] = role
            self.grants.setdefault(role.id, set())
            return role

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._data_lock:
            return self.roles.get(role_id)

    def get_role_by_code(self, code: str) -> Optional[Role]:
        with self._data_lock:
            return next((r for r in self.roles.values() if r.code == code), None)

    def list_roles(self) -> List[Role]:
        with self._data_lock:
            return sorted(self.roles.values(), key=lambda r: r.code)

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
        with self._data_lock:
            role = self.roles.get(role_id)
            if not role:
                raise ConstraintViolation("role not found", {"role_id": role_id})
            if role.is_system:
                raise ConstraintViolation(
                    "system roles cannot be modified", {"role": role.code}
                )
            if name is not None:
                role.name = name
            if status is not None:
                role.status = status
            if description is not None:
                role.description = description
            return role

    def delete_role(self, role_id: str) -> None:
        with self._data_lock:
            role = self.roles.get(role_id)
            if not role:
                raise ConstraintViolation("role not found", {"role_id": role_id})
            if role.is_system:
                raise ConstraintViolation(
                    "system roles cannot be deleted", {"role": role.code}
                )
            holders = sum(1 for ids in self.assignments.values() if role_id in ids)
            if holders:
                raise ConstraintViolation(
                    "role is still assigned", {"role": role.code, "assignments": holders}
                )
            self.roles.pop(role_id, None)
            self.grants.pop(role_id, None)

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
        with self._data_lock:
            if any(p.code == code for p in self.permissions.values()):
                raise ConstraintViolation(
                    "permission code already exists", {"field": "code"}
                )
            permission = Permission(
                id=str(uuid.uuid4()),
                code=code,
                module=module or resource,
                name=name,
                description=description,
            )
            self.permissions[permission.id] = permission
            return permission

    def get_permission_by_code(self, code: str) -> Optional[Permission]:
        with self._data_lock:
            return next((p for p in self.permissions.values() if p.code == code), None)

    def list_permissions(self) -> List[Permission]:
        with self._data_lock:
            return sorted(self.permissions.values(), key=lambda p: p.code)

    def delete_permission(self, permission_id: str) -> None:
        with self._data_lock:
            permission = self.permissions.get(permission_id)
            if not permission:
                raise ConstraintViolation(
                    "permission not found", {"permission_id": permission_id}
                )
            holders = sum(1 for ids in self.grants.values() if permission_id in ids)
            if holders:
                raise ConstraintViolation(
                    "permission is still granted",
                    {"permission": permission.code, "grants": holders},
                )
            self.permissions.pop(permission_id, None)

    # assignments / grants
    def grant_permission(self, role_id: str, permission_id: str) -> None:
        with self._data_lock:
            if role_id not in self.roles:
                raise ConstraintViolation("role not found", {"role_id": role_id})
            if permission_id not in self.permissions:
                raise ConstraintViolation(
                    "permission not found", {"permission_id": permission_id}
                )
            self.grants.setdefault(role_id, set()).add(permission_id)

    def revoke_permission(self, role_id: str, permission_id: str) -> None:
        with self._data_lock:
            self.grants.get(role_id, set()).discard(permission_id)

    def assign_role(self, principal_id: str, role_id: str) -> None:
        with self._data_lock:
            if principal_id not in self.principals:
                raise ConstraintViolation(
                    "principal not found", {"principal_id": principal_id}
                )
            role = self.roles.get(role_id)
            if not role:
                raise ConstraintViolation("role not found", {"role_id": role_id})
            if not role.is_active:
                raise ConstraintViolation("role is disabled", {"role": role.code})
            self.assignments.setdefault(principal_id, set()).add(role_id)

    def revoke_role(self, principal_id: str, role_id: str) -> None:
        with self._data_lock:
            self.assignments.get(principal_id, set()).discard(role_id)

    def list_principal_roles(self, principal_id: str) -> List[Role]:
        with self._data_lock:
            role_ids = self.assignments.get(principal_id, set())
            roles = [self.roles[rid] for rid in role_ids if rid in self.roles]
            return sorted(roles, key=lambda r: r.code)

    def list_role_permissions(self, role_id: str) -> List[Permission]:
        with self._data_lock:
            perm_ids = self.grants.get(role_id, set())
            perms = [self.permissions[pid] for pid in perm_ids if pid in self.permissions]
            return sorted(perms, key=lambda p: p.code)

    # system settings
    def get_system_settings(self) -> Dict[str, str]:
        with self._data_lock:
            return dict(self.system_settings)

    def set_system_setting(self, key: str, value: Optional[str]) -> None:
        with self._data_lock:
            if value is None:
                self.system_settings.pop(key, None)
            else:
                self.system_settings[key] = str(value)

    # owned resources
    def put_resource(self, resource_type: str, row: Dict[str, Any]) -> Dict[str, Any]:
        if "id" not in row:
            raise ValueError("resource rows require an 'id'")
        stored = dict(row)
        stored.setdefault("deleted_at", None)
        with self._data_lock:
            self.resources.setdefault(resource_type, {})[str(stored["id"])] = stored
        return stored

    def owned_resource_finder(
        self, resource_type: str, owner_field: str = "user_id"
    ) -> OwnershipFinder:
        """Return ``finder(resource_id, owner_id) -> bool`` for ``resource_type``."""

        def _finder(resource_id: str, owner_id: str) -> bool:
            with self._data_lock:
                row = self.resources.get(resource_type, {}).get(str(resource_id))
                if row is None or row.get("deleted_at") is not None:
                    return False
                return str(row.get(owner_field)) == str(owner_id)

        return _finder
