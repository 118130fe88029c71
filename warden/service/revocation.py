from __future__ import annotations

import math
import time
from typing import Callable, Iterable, Optional, Protocol

from warden.logging import get_logger
from warden.service.tokens import TokenClaims
from warden.storage.errors import StoreUnavailable

logger = get_logger(__name__)


class RevocationStoreUnavailable(StoreUnavailable):
    """The expiring key/value store behind the registry could not be reached."""


class RevocationCache(Protocol):
    async def set_token_revoked(self, token_id: str, ttl_seconds: int) -> None: ...

    async def set_tokens_revoked(self, token_ids: Iterable[str], ttl_seconds: int) -> None: ...

    async def claim_token_revoked(self, token_id: str, ttl_seconds: int) -> bool: ...

    async def is_token_revoked(self, token_id: str) -> bool: ...

    async def clear_token_revoked(self, token_id: str) -> None: ...

    async def set_principal_revoked_at(
        self, principal_id: str, revoked_at_ms: int, ttl_seconds: int
    ) -> None: ...

    async def get_principal_revoked_at(self, principal_id: str) -> Optional[int]: ...

    async def clear_principal_revoked_at(self, principal_id: str) -> None: ...


class RevocationRegistry:
    """Per-token and per-principal revocation entries with bounded lifetimes.

    The registry never parses raw tokens. Callers hand it a TTL that covers the
    remaining lifetime of whatever they revoke; a principal-wide entry records
    the revocation instant in epoch milliseconds and revokes every token whose
    ``issued_at`` is strictly earlier. ``leeway_seconds`` must match the
    token codec so entries written from claims outlive verification.
    """

    def __init__(
        self,
        cache: RevocationCache,
        *,
        clock: Callable[[], float] = time.time,
        leeway_seconds: int = 0,
    ):
        self.cache = cache
        self._clock = clock
        self.leeway_seconds = max(0, leeway_seconds)

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def revoke_token(self, token_id: str, ttl_seconds: int) -> bool:
        """Mark ``token_id`` revoked; returns ``False`` when the write was skipped."""
        if ttl_seconds <= 0:
            logger.debug("revocation_skipped_expired", jti=token_id)
            return False
        try:
            await self.cache.set_token_revoked(token_id, int(ttl_seconds))
        except StoreUnavailable as exc:
            logger.error("revocation_write_failed", jti=token_id, error=str(exc))
            raise RevocationStoreUnavailable(str(exc), backend=exc.backend) from exc
        return True

    async def revoke_tokens(self, token_ids: Iterable[str], ttl_seconds: int) -> int:
        ids = [tid for tid in token_ids if tid]
        if ttl_seconds <= 0 or not ids:
            return 0
        try:
            await self.cache.set_tokens_revoked(ids, int(ttl_seconds))
        except StoreUnavailable as exc:
            logger.error("revocation_bulk_write_failed", count=len(ids), error=str(exc))
            raise RevocationStoreUnavailable(str(exc), backend=exc.backend) from exc
        return len(ids)

    def _claims_ttl(self, claims: TokenClaims) -> int:
        return max(0, math.ceil(claims.expires_at + self.leeway_seconds - self._clock()))

    async def revoke_claims(self, claims: TokenClaims) -> bool:
        """Revoke a verified token for as long as it could still verify."""
        return await self.revoke_token(claims.token_id, self._claims_ttl(claims))

    async def consume_token(self, claims: TokenClaims) -> bool:
        """Atomically revoke ``claims`` unless already revoked.

        Returns ``True`` for exactly one caller per token id; later or
        concurrent callers get ``False``. Tokens revoked through a
        principal-wide entry are not checked here.
        """
        ttl = self._claims_ttl(claims)
        if ttl <= 0:
            return False
        try:
            claimed = await self.cache.claim_token_revoked(claims.token_id, ttl)
        except StoreUnavailable as exc:
            logger.error("revocation_claim_failed", jti=claims.token_id, error=str(exc))
            raise RevocationStoreUnavailable(str(exc), backend=exc.backend) from exc
        if not claimed:
            logger.info("token_already_consumed", jti=claims.token_id)
        return claimed

    async def revoke_all_for_principal(
        self, principal_id: str, ttl_seconds: int
    ) -> Optional[int]:
        """Revoke every token issued to ``principal_id`` before now.

        Returns the recorded cut-off in epoch milliseconds, or ``None`` when the
        TTL is non-positive and nothing was written.
        """
        if ttl_seconds <= 0:
            return None
        revoked_at_ms = self._now_ms()
        try:
            await self.cache.set_principal_revoked_at(
                principal_id, revoked_at_ms, int(ttl_seconds)
            )
        except StoreUnavailable as exc:
            logger.error(
                "principal_revocation_write_failed",
                principal_id=principal_id,
                error=str(exc),
            )
            raise RevocationStoreUnavailable(str(exc), backend=exc.backend) from exc
        logger.info("principal_tokens_revoked", principal_id=principal_id)
        return revoked_at_ms

    async def is_revoked(self, token_id: str) -> bool:
        try:
            return await self.cache.is_token_revoked(token_id)
        except StoreUnavailable as exc:
            logger.error("revocation_lookup_failed", jti=token_id, error=str(exc))
            raise RevocationStoreUnavailable(str(exc), backend=exc.backend) from exc

    async def is_revoked_for_principal(self, principal_id: str, issued_at_ms: int) -> bool:
        try:
            revoked_at_ms = await self.cache.get_principal_revoked_at(principal_id)
        except StoreUnavailable as exc:
            logger.error(
                "principal_revocation_lookup_failed",
                principal_id=principal_id,
                error=str(exc),
            )
            raise RevocationStoreUnavailable(str(exc), backend=exc.backend) from exc
        if revoked_at_ms is None:
            return False
        return issued_at_ms < revoked_at_ms

    async def is_claims_revoked(self, claims: TokenClaims) -> bool:
        if await self.is_revoked(claims.token_id):
            return True
        return await self.is_revoked_for_principal(claims.subject, claims.issued_at_ms)

    async def restore_token(self, token_id: str) -> None:
        try:
            await self.cache.clear_token_revoked(token_id)
        except StoreUnavailable as exc:
            raise RevocationStoreUnavailable(str(exc), backend=exc.backend) from exc

    async def restore_principal(self, principal_id: str) -> None:
        try:
            await self.cache.clear_principal_revoked_at(principal_id)
        except StoreUnavailable as exc:
            raise RevocationStoreUnavailable(str(exc), backend=exc.backend) from exc
        logger.info("principal_revocation_lifted", principal_id=principal_id)


__all__ = ["RevocationRegistry", "RevocationStoreUnavailable", "RevocationCache"]
