from __future__ import annotations

import threading
from typing import Callable, Dict, Optional, Tuple

OwnershipFinder = Callable[[str, str], bool]

DEFAULT_OWNER_FIELD = "user_id"


class OwnershipRegistry:
    """``(resource type, owner field)`` -> ``finder(resource_id, owner_id) -> bool``.

    Finders are registered once at startup; table and column names live inside
    the finder, so request data only ever reaches it as bound values.
    """

    def __init__(self) -> None:
        self._finders: Dict[Tuple[str, str], OwnershipFinder] = {}
        self._lock = threading.Lock()

    def register(
        self,
        resource_type: str,
        finder: OwnershipFinder,
        *,
        owner_field: str = DEFAULT_OWNER_FIELD,
    ) -> None:
        if not resource_type:
            raise ValueError("resource_type is required")
        key = (resource_type, owner_field)
        with self._lock:
            if key in self._finders:
                raise ValueError(
                    f"ownership finder already registered for {resource_type!r}.{owner_field}"
                )
            self._finders[key] = finder

    def get(
        self, resource_type: str, owner_field: Optional[str] = None
    ) -> Optional[OwnershipFinder]:
        with self._lock:
            return self._finders.get((resource_type, owner_field or DEFAULT_OWNER_FIELD))

    def __contains__(self, resource_type: object) -> bool:
        with self._lock:
            return any(rtype == resource_type for rtype, _ in self._finders)
