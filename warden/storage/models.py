from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

WILDCARD_PERMISSION = "*:*"
ADMIN_ROLE = "admin"
USER_ROLE = "user"
GUEST_ROLE = "guest"
SYSTEM_ROLES = (ADMIN_ROLE, USER_ROLE, GUEST_ROLE)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PrincipalStatus:
    ACTIVE = "active"
    INACTIVE = "inactive"
    LOCKED = "locked"

    ALL = (ACTIVE, INACTIVE, LOCKED)


class RoleStatus:
    ACTIVE = "active"
    INACTIVE = "inactive"

    ALL = (ACTIVE, INACTIVE)


@dataclass
class Principal:
    id: str
    email: str
    username: str
    password_hash: str
    status: str = PrincipalStatus.ACTIVE
    created_at: datetime = field(default_factory=_utcnow)
    deleted_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == PrincipalStatus.ACTIVE and self.deleted_at is None


@dataclass
class Role:
    id: str
    code: str
    name: str
    is_system: bool = False
    status: str = RoleStatus.ACTIVE
    description: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == RoleStatus.ACTIVE


@dataclass
class Permission:
    id: str
    code: str
    module: str
    name: str
    description: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)


def split_permission_code(code: str) -> tuple[str, str]:
    """Return ``(resource, action)`` for a ``resource:action`` code."""
    resource, sep, action = code.partition(":")
    if not sep or not resource or not action:
        raise ValueError(f"permission code must be resource:action, got {code!r}")
    return resource, action
