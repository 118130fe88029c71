from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol

from warden.logging import get_logger
from warden.storage.models import (
    ADMIN_ROLE,
    GUEST_ROLE,
    USER_ROLE,
    WILDCARD_PERMISSION,
    Permission,
    Role,
)

logger = get_logger(__name__)

SEED_MODULES = ("user", "role", "permission")
SEED_ACTIONS = ("create", "read", "update", "delete")

SYSTEM_ROLE_NAMES = {
    ADMIN_ROLE: "Administrator",
    USER_ROLE: "User",
    GUEST_ROLE: "Guest",
}

# Role code -> granted permission codes; ``None`` means every seeded permission.
DEFAULT_GRANTS: Dict[str, Optional[tuple[str, ...]]] = {
    ADMIN_ROLE: None,
    USER_ROLE: ("user:read", "role:read", "permission:read"),
    GUEST_ROLE: ("user:read",),
}


class SeedStore(Protocol):
    def create_role(self, code: str, name: str, *, is_system: bool = ..., **kwargs) -> Role: ...

    def get_role_by_code(self, code: str) -> Optional[Role]: ...

    def create_permission(self, code: str, name: str, **kwargs) -> Permission: ...

    def get_permission_by_code(self, code: str) -> Optional[Permission]: ...

    def grant_permission(self, role_id: str, permission_id: str) -> None: ...


@dataclass
class SeedReport:
    roles_created: List[str] = field(default_factory=list)
    permissions_created: List[str] = field(default_factory=list)
    grants_applied: int = 0


def default_permission_codes() -> List[str]:
    codes = [f"{module}:{action}" for module in SEED_MODULES for action in SEED_ACTIONS]
    codes.append(WILDCARD_PERMISSION)
    return codes


def _permission_name(code: str) -> str:
    if code == WILDCARD_PERMISSION:
        return "All permissions"
    module, action = code.split(":", 1)
    return f"{action.capitalize()} {module}s"


def seed_defaults(store: SeedStore) -> SeedReport:
    """Create system roles, the default permission set and their grants.

    Safe to run repeatedly: existing roles and permissions are reused and
    grants are idempotent in both stores.
    """
    report = SeedReport()
    permissions: Dict[str, Permission] = {}
    for code in default_permission_codes():
        existing = store.get_permission_by_code(code)
        if existing is None:
            module = "*" if code == WILDCARD_PERMISSION else code.split(":", 1)[0]
            existing = store.create_permission(code, _permission_name(code), module=module)
            report.permissions_created.append(code)
        permissions[code] = existing

    for code, name in SYSTEM_ROLE_NAMES.items():
        role = store.get_role_by_code(code)
        if role is None:
            role = store.create_role(code, name, is_system=True)
            report.roles_created.append(code)
        granted = DEFAULT_GRANTS[code]
        wanted = list(permissions) if granted is None else list(granted)
        for perm_code in wanted:
            store.grant_permission(role.id, permissions[perm_code].id)
            report.grants_applied += 1

    logger.info(
        "seed_completed",
        roles_created=report.roles_created,
        permissions_created=len(report.permissions_created),
    )
    return report
