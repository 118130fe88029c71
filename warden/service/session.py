from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Tuple

from warden.logging import get_logger
from warden.service.credentials import CredentialStore, PasswordHasherAdapter
from warden.service.errors import (
    AuthenticationError,
    DenyReason,
    DuplicateIdentifierError,
    InvalidCredentialsError,
    ServiceError,
    ServiceUnavailableError,
    TokenExpiredError,
    TokenInvalidError,
)
from warden.service.rbac import CachedGrantSource, RBACResolver
from warden.service.revocation import RevocationRegistry, RevocationStoreUnavailable
from warden.service.tokens import IssuedToken, TokenClaims, TokenClass, TokenCodec
from warden.storage.errors import ConstraintViolation
from warden.storage.models import Principal

logger = get_logger(__name__)

_INVALID_CREDENTIALS = "invalid credentials"


@dataclass(frozen=True)
class SessionTokens:
    principal: Principal
    role_codes: Tuple[str, ...]
    access: IssuedToken
    refresh: IssuedToken

    def as_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access.token,
            "refresh_token": self.refresh.token,
            "token_type": "bearer",
            "access_expires_at": self.access.expires_at,
            "refresh_expires_at": self.refresh.expires_at,
            "principal_id": self.principal.id,
            "roles": list(self.role_codes),
        }


def _unavailable(exc: RevocationStoreUnavailable) -> ServiceUnavailableError:
    return ServiceUnavailableError(
        "session store temporarily unavailable",
        reason=DenyReason.REVOCATION_UNAVAILABLE,
        detail={"backend": exc.backend},
    )


class SessionService:
    """Login, registration, refresh rotation, logout and password change."""

    def __init__(
        self,
        store: CredentialStore,
        hasher: PasswordHasherAdapter,
        codec: TokenCodec,
        registry: RevocationRegistry,
        resolver: RBACResolver,
        *,
        default_role: Optional[str] = "user",
        grant_cache: Optional[CachedGrantSource] = None,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.codec = codec
        self.registry = registry
        self.resolver = resolver
        self.default_role = default_role
        self.grant_cache = grant_cache
        self._dummy_digest: Optional[str] = None

    def _burn_verify(self, secret: str) -> None:
        # Unknown identifiers still pay for one hash verification
        if self._dummy_digest is None:
            self._dummy_digest = self.hasher.hash("warden-dummy-secret")
        self.hasher.verify(secret, self._dummy_digest)

    def _issue_pair(self, principal: Principal) -> SessionTokens:
        if self.grant_cache is not None:
            self.grant_cache.invalidate(principal.id)
        role_codes = self.resolver.role_codes(principal.id)
        access = self.codec.issue(principal.id, TokenClass.ACCESS, roles=role_codes)
        refresh = self.codec.issue(principal.id, TokenClass.REFRESH)
        return SessionTokens(
            principal=principal, role_codes=role_codes, access=access, refresh=refresh
        )

    async def login(self, identifier: str, secret: str) -> SessionTokens:
        principal = self.store.get_principal_by_identifier(identifier or "")
        if principal is None:
            self._burn_verify(secret or "")
            logger.info("login_failed", reason="unknown_identifier")
            raise InvalidCredentialsError(_INVALID_CREDENTIALS)
        if not self.hasher.verify(secret or "", principal.password_hash):
            logger.info("login_failed", reason="bad_secret", principal_id=principal.id)
            raise InvalidCredentialsError(_INVALID_CREDENTIALS)
        if not principal.is_active:
            logger.info(
                "login_failed",
                reason="principal_not_active",
                principal_id=principal.id,
                status=principal.status,
            )
            raise InvalidCredentialsError(_INVALID_CREDENTIALS)
        tokens = self._issue_pair(principal)
        logger.info("login_succeeded", principal_id=principal.id)
        return tokens

    async def register(self, email: str, username: str, password: str) -> SessionTokens:
        if not email or not username or not password:
            raise ServiceError("email, username and password are required")
        digest = self.hasher.hash(password)
        try:
            principal = self.store.create_principal(email, username, digest)
        except ConstraintViolation as exc:
            logger.info("register_conflict", field=exc.detail.get("field"))
            raise DuplicateIdentifierError(
                "email or username already registered", detail=exc.detail
            )
        if self.default_role:
            role = self.store.get_role_by_code(self.default_role)
            if role is not None and role.is_active:
                self.store.assign_role(principal.id, role.id)
            else:
                logger.warning("default_role_missing", role=self.default_role)
        logger.info("principal_registered", principal_id=principal.id)
        return self._issue_pair(principal)

    async def refresh(self, refresh_claims: TokenClaims) -> SessionTokens:
        """Rotate a verified refresh token into a new pair with current roles."""
        if refresh_claims.token_class is not TokenClass.REFRESH:
            raise TokenInvalidError("invalid token")
        principal = self.store.get_principal(refresh_claims.subject)
        if principal is None or not principal.is_active:
            logger.info("refresh_denied_principal_inactive", principal_id=refresh_claims.subject)
            raise AuthenticationError("principal is not active", reason="principal_inactive")
        if self.codec.remaining_lifetime(refresh_claims) <= 0:
            raise TokenExpiredError("token expired")
        try:
            consumed = await self.registry.consume_token(refresh_claims)
        except RevocationStoreUnavailable as exc:
            raise _unavailable(exc)
        if not consumed:
            logger.info(
                "refresh_token_reuse_denied",
                principal_id=refresh_claims.subject,
                jti=refresh_claims.token_id,
            )
            raise AuthenticationError("token has been revoked", reason=DenyReason.TOKEN_REVOKED)
        return self._issue_pair(principal)

    async def refresh_with_token(self, raw_token: str) -> SessionTokens:
        claims = self.codec.verify(raw_token, TokenClass.REFRESH)
        try:
            revoked = await self.registry.is_claims_revoked(claims)
        except RevocationStoreUnavailable as exc:
            raise _unavailable(exc)
        if revoked:
            logger.info("refresh_token_reuse_denied", principal_id=claims.subject, jti=claims.token_id)
            raise AuthenticationError("token has been revoked", reason=DenyReason.TOKEN_REVOKED)
        return await self.refresh(claims)

    async def logout(
        self,
        access_claims: TokenClaims,
        *,
        refresh_token: Optional[str] = None,
        everywhere: bool = False,
    ) -> int:
        """Revoke the presented tokens; returns how many entries were written.

        The access token (and the principal-wide entry for ``everywhere``) is
        revoked before the optional refresh token is looked at. An expired or
        unreadable refresh token is skipped; one belonging to another
        principal raises ``TokenInvalidError``.
        """
        written = 0
        try:
            if await self.registry.revoke_token(
                access_claims.token_id, self.codec.remaining_lifetime(access_claims)
            ):
                written += 1
            if everywhere:
                cutoff = await self.registry.revoke_all_for_principal(
                    access_claims.subject, self.codec.max_lifetime(TokenClass.REFRESH)
                )
                if cutoff is not None:
                    written += 1
        except RevocationStoreUnavailable as exc:
            raise _unavailable(exc)

        refresh_claims: Optional[TokenClaims] = None
        if refresh_token:
            try:
                refresh_claims = self.codec.verify(refresh_token, TokenClass.REFRESH)
            except TokenExpiredError:
                refresh_claims = None
            except TokenInvalidError:
                logger.info("logout_refresh_token_unreadable", principal_id=access_claims.subject)
                refresh_claims = None
            if refresh_claims is not None and refresh_claims.subject != access_claims.subject:
                logger.warning(
                    "logout_refresh_token_subject_mismatch",
                    principal_id=access_claims.subject,
                )
                raise TokenInvalidError("invalid token")
        if refresh_claims is not None:
            try:
                if await self.registry.revoke_claims(refresh_claims):
                    written += 1
            except RevocationStoreUnavailable as exc:
                raise _unavailable(exc)
        logger.info(
            "logout",
            principal_id=access_claims.subject,
            everywhere=everywhere,
            entries=written,
        )
        return written

    async def change_password(
        self, principal_id: str, old_password: str, new_password: str
    ) -> SessionTokens:
        """Replace the secret and revoke every outstanding token of the principal."""
        if not new_password:
            raise ServiceError("new password is required")
        principal = self.store.get_principal(principal_id)
        if principal is None or not principal.is_active:
            raise InvalidCredentialsError(_INVALID_CREDENTIALS)
        if not self.hasher.verify(old_password or "", principal.password_hash):
            logger.info("password_change_failed", principal_id=principal_id)
            raise InvalidCredentialsError(_INVALID_CREDENTIALS)
        self.store.update_password_hash(principal_id, self.hasher.hash(new_password))
        try:
            await self.registry.revoke_all_for_principal(
                principal_id, self.codec.max_lifetime(TokenClass.REFRESH)
            )
        except RevocationStoreUnavailable as exc:
            raise _unavailable(exc)
        logger.info("password_changed", principal_id=principal_id)
        return self._issue_pair(principal)


__all__ = ["SessionService", "SessionTokens"]
