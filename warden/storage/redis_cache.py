from __future__ import annotations

from typing import Iterable, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from warden.logging import get_logger
from warden.storage.errors import StoreUnavailable

logger = get_logger(__name__)

TOKEN_KEY_PREFIX = "blacklist:token:"
PRINCIPAL_KEY_PREFIX = "blacklist:user:"


def token_key(token_id: str) -> str:
    return f"{TOKEN_KEY_PREFIX}{token_id}"


def principal_key(principal_id: str) -> str:
    return f"{PRINCIPAL_KEY_PREFIX}{principal_id}"


def _parse_revoked_at(raw: Optional[str]) -> Optional[int]:
    if raw is None:
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        # A corrupt entry cannot be interpreted; treat it as "revoke everything"
        logger.warning("principal_revocation_entry_corrupt", value=str(raw)[:32])
        return 2**63 - 1


class RedisCache:
    """Thin Redis wrapper for revocation entries.

    Every Redis failure is re-raised as ``StoreUnavailable`` so callers can
    fail closed without knowing the client library.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set_token_revoked(self, token_id: str, ttl_seconds: int) -> None:
        try:
            await self.client.set(token_key(token_id), "1", ex=ttl_seconds)
        except RedisError as exc:
            raise StoreUnavailable(str(exc), backend="redis") from exc

    async def set_tokens_revoked(self, token_ids: Iterable[str], ttl_seconds: int) -> None:
        try:
            pipe = self.client.pipeline()
            for token_id in token_ids:
                pipe.set(token_key(token_id), "1", ex=ttl_seconds)
            await pipe.execute()
        except RedisError as exc:
            raise StoreUnavailable(str(exc), backend="redis") from exc

    async def claim_token_revoked(self, token_id: str, ttl_seconds: int) -> bool:
        """``SET NX``: true only for the caller that created the entry."""
        try:
            created = await self.client.set(token_key(token_id), "1", ex=ttl_seconds, nx=True)
        except RedisError as exc:
            raise StoreUnavailable(str(exc), backend="redis") from exc
        return bool(created)

    async def is_token_revoked(self, token_id: str) -> bool:
        try:
            return bool(await self.client.exists(token_key(token_id)))
        except RedisError as exc:
            raise StoreUnavailable(str(exc), backend="redis") from exc

    async def clear_token_revoked(self, token_id: str) -> None:
        try:
            await self.client.delete(token_key(token_id))
        except RedisError as exc:
            raise StoreUnavailable(str(exc), backend="redis") from exc

    async def set_principal_revoked_at(
        self, principal_id: str, revoked_at_ms: int, ttl_seconds: int
    ) -> None:
        try:
            await self.client.set(
                principal_key(principal_id), str(revoked_at_ms), ex=ttl_seconds
            )
        except RedisError as exc:
            raise StoreUnavailable(str(exc), backend="redis") from exc

    async def get_principal_revoked_at(self, principal_id: str) -> Optional[int]:
        try:
            raw = await self.client.get(principal_key(principal_id))
        except RedisError as exc:
            raise StoreUnavailable(str(exc), backend="redis") from exc
        return _parse_revoked_at(raw)

    async def clear_principal_revoked_at(self, principal_id: str) -> None:
        try:
            await self.client.delete(principal_key(principal_id))
        except RedisError as exc:
            raise StoreUnavailable(str(exc), backend="redis") from exc

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues in
    pytest, but exposes the same awaitable surface as ``RedisCache``.
    """

    def __init__(
        self,
        redis_url: str = "",
        *,
        socket_timeout: float = RedisCache.DEFAULT_OPERATION_TIMEOUT,
        client: Optional[Redis] = None,
    ):
        self.redis_url = redis_url
        self._sync_client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def set_token_revoked(self, token_id: str, ttl_seconds: int) -> None:
        try:
            self._sync_client.set(token_key(token_id), "1", ex=ttl_seconds)
        except RedisError as exc:
            raise StoreUnavailable(str(exc), backend="redis") from exc

    async def set_tokens_revoked(self, token_ids: Iterable[str], ttl_seconds: int) -> None:
        try:
            pipe = self._sync_client.pipeline()
            for token_id in token_ids:
                pipe.set(token_key(token_id), "1", ex=ttl_seconds)
            pipe.execute()
        except RedisError as exc:
            raise StoreUnavailable(str(exc), backend="redis") from exc

    async def claim_token_revoked(self, token_id: str, ttl_seconds: int) -> bool:
        try:
            created = self._sync_client.set(token_key(token_id), "1", ex=ttl_seconds, nx=True)
        except RedisError as exc:
            raise StoreUnavailable(str(exc), backend="redis") from exc
        return bool(created)

    async def is_token_revoked(self, token_id: str) -> bool:
        try:
            return bool(self._sync_client.exists(token_key(token_id)))
        except RedisError as exc:
            raise StoreUnavailable(str(exc), backend="redis") from exc

    async def clear_token_revoked(self, token_id: str) -> None:
        try:
            self._sync_client.delete(token_key(token_id))
        except RedisError as exc:
            raise StoreUnavailable(str(exc), backend="redis") from exc

    async def set_principal_revoked_at(
        self, principal_id: str, revoked_at_ms: int, ttl_seconds: int
    ) -> None:
        try:
            self._sync_client.set(
                principal_key(principal_id), str(revoked_at_ms), ex=ttl_seconds
            )
        except RedisError as exc:
            raise StoreUnavailable(str(exc), backend="redis") from exc

    async def get_principal_revoked_at(self, principal_id: str) -> Optional[int]:
        try:
            raw = self._sync_client.get(principal_key(principal_id))
        except RedisError as exc:
            raise StoreUnavailable(str(exc), backend="redis") from exc
        return _parse_revoked_at(raw)

    async def clear_principal_revoked_at(self, principal_id: str) -> None:
        try:
            self._sync_client.delete(principal_key(principal_id))
        except RedisError as exc:
            raise StoreUnavailable(str(exc), backend="redis") from exc

    async def close(self) -> None:
        self._sync_client.close()
