from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from warden.config import Settings, get_settings, reset_settings_cache
from warden.logging import get_logger
from warden.service.credentials import FastPasswordHasher, PasswordHasherAdapter
from warden.service.ownership import DEFAULT_OWNER_FIELD, OwnershipRegistry
from warden.service.pipeline import AuthorizationPipeline
from warden.service.rbac import CachedGrantSource, RBACResolver
from warden.service.revocation import RevocationRegistry
from warden.service.seed import seed_defaults
from warden.service.session import SessionService
from warden.service.tokens import TokenCodec
from warden.storage.memory import MemoryStore
from warden.storage.memory_cache import MemoryCache
from warden.storage.postgres import PostgresStore
from warden.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a connection URL with ``***``."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        seed_defaults(self.store)

        self.cache: Union[RedisCache, SyncRedisCache, MemoryCache, None] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to a short-lived event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if self.cache is None:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for token revocation; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; revocations are "
                    "held in process memory and are not shared between workers."
                ),
                mode=fallback_mode,
            )
            self.cache = MemoryCache()

        self.hasher: PasswordHasherAdapter = (
            FastPasswordHasher() if self.settings.test_mode else PasswordHasherAdapter()
        )
        self.codec = TokenCodec.from_settings(
            self.settings, ttl_overrides=self.store.get_system_settings
        )
        self.revocations = RevocationRegistry(
            self.cache, leeway_seconds=self.settings.jwt_leeway_seconds
        )
        self.grant_cache = CachedGrantSource(
            self.store, ttl_seconds=self.settings.rbac_cache_ttl_seconds
        )
        self.rbac = RBACResolver(self.grant_cache)
        self.ownership = OwnershipRegistry()
        self.pipeline = AuthorizationPipeline(
            self.codec, self.revocations, self.rbac, self.ownership
        )
        self.sessions = SessionService(
            self.store,
            self.hasher,
            self.codec,
            self.revocations,
            self.rbac,
            default_role=self.settings.default_role,
            grant_cache=self.grant_cache,
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=not isinstance(self.cache, MemoryCache),
            access_ttl_seconds=self.settings.access_ttl_seconds,
            refresh_ttl_seconds=self.settings.refresh_ttl_seconds,
            rbac_cache_ttl_seconds=self.settings.rbac_cache_ttl_seconds,
        )

    def register_owned_resource(
        self,
        resource_type: str,
        *,
        owner_field: str = DEFAULT_OWNER_FIELD,
        table: Optional[str] = None,
    ) -> None:
        """Register an ownership finder backed by the active store."""
        if isinstance(self.store, PostgresStore):
            finder = self.store.owned_row_finder(table or resource_type, owner_field)
        else:
            finder = self.store.owned_resource_finder(resource_type, owner_field)
        self.ownership.register(resource_type, finder, owner_field=owner_field)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the fast path skips the lock once the runtime
    exists; the slow path re-checks under the lock before building it.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            if isinstance(runtime.cache, RedisCache):
                try:
                    loop = asyncio.get_running_loop()
                    loop.create_task(runtime.cache.close())
                except RuntimeError:
                    asyncio.run(runtime.cache.close())
            elif isinstance(runtime.cache, SyncRedisCache):
                runtime.cache._sync_client.close()

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
