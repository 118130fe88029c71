from __future__ import annotations

import threading
import time
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Protocol, Tuple

from warden.logging import get_logger
from warden.storage.models import ADMIN_ROLE, WILDCARD_PERMISSION, Permission, Role

logger = get_logger(__name__)


class GrantSource(Protocol):
    def list_principal_roles(self, principal_id: str) -> List[Role]: ...

    def list_role_permissions(self, role_id: str) -> List[Permission]: ...


class CachedGrantSource:
    """Read-through cache of role assignments and grants with a short TTL.

    Assignments are cached per principal, grants per role. A TTL of zero turns
    the cache into a pass-through. Call ``invalidate`` after reassigning roles
    so the change is visible before the entry ages out.
    """

    def __init__(
        self,
        source: GrantSource,
        *,
        ttl_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.source = source
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._roles: Dict[str, Tuple[float, List[Role]]] = {}
        self._grants: Dict[str, Tuple[float, List[Permission]]] = {}
        self._lock = threading.Lock()

    def _fresh(self, entry: Optional[Tuple[float, list]]) -> Optional[list]:
        if entry is None:
            return None
        stored_at, value = entry
        if self._clock() - stored_at >= self.ttl_seconds:
            return None
        return value

    def list_principal_roles(self, principal_id: str) -> List[Role]:
        if self.ttl_seconds <= 0:
            return self.source.list_principal_roles(principal_id)
        with self._lock:
            cached = self._fresh(self._roles.get(principal_id))
        if cached is not None:
            return list(cached)
        roles = self.source.list_principal_roles(principal_id)
        with self._lock:
            self._roles[principal_id] = (self._clock(), list(roles))
        return roles

    def list_role_permissions(self, role_id: str) -> List[Permission]:
        if self.ttl_seconds <= 0:
            return self.source.list_role_permissions(role_id)
        with self._lock:
            cached = self._fresh(self._grants.get(role_id))
        if cached is not None:
            return list(cached)
        perms = self.source.list_role_permissions(role_id)
        with self._lock:
            self._grants[role_id] = (self._clock(), list(perms))
        return perms

    def invalidate(self, principal_id: Optional[str] = None) -> None:
        """Drop cached assignments for one principal, or everything when omitted."""
        with self._lock:
            if principal_id is None:
                self._roles.clear()
                self._grants.clear()
            else:
                self._roles.pop(principal_id, None)

    def invalidate_role(self, role_id: str) -> None:
        with self._lock:
            self._grants.pop(role_id, None)


class RBACResolver:
    """Resolve roles and effective permissions for a principal.

    Only active roles count. The ``admin`` role satisfies every role and
    permission check, and the ``*:*`` permission satisfies every permission
    check. Store errors propagate unchanged.
    """

    def __init__(self, source: GrantSource) -> None:
        self.source = source

    def _active_roles(self, principal_id: str) -> List[Role]:
        return [r for r in self.source.list_principal_roles(principal_id) if r.is_active]

    def role_codes(self, principal_id: str) -> Tuple[str, ...]:
        return tuple(role.code for role in self._active_roles(principal_id))

    def effective_permissions(self, principal_id: str) -> FrozenSet[str]:
        codes: set[str] = set()
        for role in self._active_roles(principal_id):
            codes.update(p.code for p in self.source.list_role_permissions(role.id))
        return frozenset(codes)

    def has_role(self, principal_id: str, code: str) -> bool:
        return self.has_any_role(principal_id, (code,))

    def has_any_role(self, principal_id: str, codes: Iterable[str]) -> bool:
        wanted = set(codes)
        if not wanted:
            return True
        held = set(self.role_codes(principal_id))
        return ADMIN_ROLE in held or bool(held & wanted)

    def has_permission(self, principal_id: str, code: str) -> bool:
        return self.has_any_permission(principal_id, (code,))

    def has_any_permission(self, principal_id: str, codes: Iterable[str]) -> bool:
        wanted = set(codes)
        if not wanted:
            return True
        roles = self._active_roles(principal_id)
        if any(role.code == ADMIN_ROLE for role in roles):
            return True
        for role in roles:
            for permission in self.source.list_role_permissions(role.id):
                if permission.code == WILDCARD_PERMISSION or permission.code in wanted:
                    return True
        return False

    def is_super_admin(self, principal_id: str) -> bool:
        roles = self._active_roles(principal_id)
        if any(role.code == ADMIN_ROLE for role in roles):
            return True
        return any(
            permission.code == WILDCARD_PERMISSION
            for role in roles
            for permission in self.source.list_role_permissions(role.id)
        )


__all__ = ["RBACResolver", "CachedGrantSource", "GrantSource"]
