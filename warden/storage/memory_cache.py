from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Iterable, Optional, Tuple

from warden.storage.redis_cache import principal_key, token_key


class MemoryCache:
    """Expiring in-process key/value map with the same surface as ``RedisCache``.

    Used under ``TEST_MODE`` and as the development fallback when Redis is
    unreachable. State is per process, so revocations are not shared between
    workers.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def _set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock() + ttl_seconds)

    def _set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and self._clock() < entry[1]:
                return False
            self._entries[key] = (value, self._clock() + ttl_seconds)
            return True

    def _get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._clock() >= expires_at:
                self._entries.pop(key, None)
                return None
            return value

    def _delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            stale = [k for k, (_, exp) in self._entries.items() if now >= exp]
            for key in stale:
                self._entries.pop(key, None)
        return len(stale)

    def verify_connection(self) -> None:
        return None

    async def set_token_revoked(self, token_id: str, ttl_seconds: int) -> None:
        self._set(token_key(token_id), "1", ttl_seconds)

    async def set_tokens_revoked(self, token_ids: Iterable[str], ttl_seconds: int) -> None:
        for token_id in token_ids:
            self._set(token_key(token_id), "1", ttl_seconds)

    async def claim_token_revoked(self, token_id: str, ttl_seconds: int) -> bool:
        return self._set_if_absent(token_key(token_id), "1", ttl_seconds)

    async def is_token_revoked(self, token_id: str) -> bool:
        return self._get(token_key(token_id)) is not None

    async def clear_token_revoked(self, token_id: str) -> None:
        self._delete(token_key(token_id))

    async def set_principal_revoked_at(
        self, principal_id: str, revoked_at_ms: int, ttl_seconds: int
    ) -> None:
        self._set(principal_key(principal_id), str(revoked_at_ms), ttl_seconds)

    async def get_principal_revoked_at(self, principal_id: str) -> Optional[int]:
        raw = self._get(principal_key(principal_id))
        return int(raw) if raw is not None else None

    async def clear_principal_revoked_at(self, principal_id: str) -> None:
        self._delete(principal_key(principal_id))

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
