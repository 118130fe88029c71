from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, FrozenSet, Mapping, Optional, Tuple

from warden.logging import get_logger
from warden.service.errors import (
    AuthenticationError,
    DenyReason,
    ForbiddenError,
    ServiceUnavailableError,
)
from warden.service.ownership import OwnershipRegistry
from warden.service.rbac import RBACResolver
from warden.service.revocation import RevocationRegistry, RevocationStoreUnavailable
from warden.service.tokens import TokenClaims, TokenClass, TokenCodec
from warden.storage.errors import StoreUnavailable
from warden.storage.models import ADMIN_ROLE, WILDCARD_PERMISSION

logger = get_logger(__name__)

_RESOURCE_FORBIDDEN_MESSAGE = "access to this resource is forbidden"


@dataclass(frozen=True)
class ResourceCheck:
    resource_type: str
    id_param: str = "id"
    owner_field: Optional[str] = None


@dataclass(frozen=True)
class RoutePolicy:
    """Authorization requirements attached to a route at registration time.

    ``required_roles`` and ``required_permissions`` are each OR-combined; an
    empty tuple skips that step.
    """

    public: bool = False
    required_roles: Tuple[str, ...] = ()
    required_permissions: Tuple[str, ...] = ()
    resource: Optional[ResourceCheck] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "required_roles", tuple(self.required_roles))
        object.__setattr__(self, "required_permissions", tuple(self.required_permissions))
        if self.public and (
            self.required_roles or self.required_permissions or self.resource
        ):
            raise ValueError("a public route cannot carry role, permission or resource requirements")


PUBLIC = RoutePolicy(public=True)
AUTHENTICATED = RoutePolicy()


@dataclass(frozen=True)
class PrincipalContext:
    principal_id: str
    role_codes: Tuple[str, ...]
    permissions: FrozenSet[str]
    token_id: str
    issued_at_ms: int
    expires_at: int
    claims: Optional[TokenClaims] = field(default=None, compare=False, repr=False)

    @property
    def is_super_admin(self) -> bool:
        return ADMIN_ROLE in self.role_codes or WILDCARD_PERMISSION in self.permissions


def extract_bearer(header: Optional[str]) -> Optional[str]:
    """Return the token from ``Bearer <token>``; the scheme is case-insensitive."""
    if not header:
        return None
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


class AuthorizationPipeline:
    """Ordered allow/deny decision for one request.

    public -> bearer + access token -> revocation -> roles -> permissions ->
    ownership. Each step fails closed with a typed ``ServiceError`` whose
    ``reason`` names the step.
    """

    def __init__(
        self,
        codec: TokenCodec,
        registry: RevocationRegistry,
        resolver: RBACResolver,
        ownership: Optional[OwnershipRegistry] = None,
    ) -> None:
        self.codec = codec
        self.registry = registry
        self.resolver = resolver
        self.ownership = ownership or OwnershipRegistry()

    async def authenticate(self, authorization: Optional[str]) -> TokenClaims:
        token = extract_bearer(authorization)
        if not token:
            raise AuthenticationError(
                "authentication required", reason=DenyReason.MISSING_CREDENTIAL
            )
        # TokenInvalidError / TokenExpiredError carry their own reason codes
        claims = self.codec.verify(token, TokenClass.ACCESS)
        try:
            revoked = await self.registry.is_claims_revoked(claims)
        except RevocationStoreUnavailable:
            raise ServiceUnavailableError(
                "authorization temporarily unavailable",
                reason=DenyReason.REVOCATION_UNAVAILABLE,
            )
        if revoked:
            logger.info("token_revoked_denied", principal_id=claims.subject, jti=claims.token_id)
            raise AuthenticationError("token has been revoked", reason=DenyReason.TOKEN_REVOKED)
        return claims

    async def authorize(
        self,
        policy: RoutePolicy,
        authorization: Optional[str],
        params: Optional[Mapping[str, Any]] = None,
    ) -> Optional[PrincipalContext]:
        if policy.public:
            return None
        claims = await self.authenticate(authorization)
        principal_id = claims.subject
        try:
            role_codes = self.resolver.role_codes(principal_id)
            self._check_roles(policy, principal_id, role_codes)
            self._check_permissions(policy, principal_id)
            self._check_ownership(policy, principal_id, role_codes, params or {})
            permissions = self.resolver.effective_permissions(principal_id)
        except StoreUnavailable as exc:
            logger.error(
                "authorization_store_unavailable",
                principal_id=principal_id,
                error=str(exc),
            )
            raise ServiceUnavailableError(
                "authorization temporarily unavailable",
                reason=DenyReason.AUTHORIZATION_STORE_UNAVAILABLE,
            )
        return PrincipalContext(
            principal_id=principal_id,
            role_codes=role_codes,
            permissions=permissions,
            token_id=claims.token_id,
            issued_at_ms=claims.issued_at_ms,
            expires_at=claims.expires_at,
            claims=claims,
        )

    def _check_roles(
        self, policy: RoutePolicy, principal_id: str, role_codes: Tuple[str, ...]
    ) -> None:
        if not policy.required_roles:
            return
        if ADMIN_ROLE in role_codes or set(role_codes) & set(policy.required_roles):
            return
        logger.info(
            "role_required_denied",
            principal_id=principal_id,
            required=list(policy.required_roles),
        )
        raise ForbiddenError("insufficient role", reason=DenyReason.ROLE_REQUIRED)

    def _check_permissions(self, policy: RoutePolicy, principal_id: str) -> None:
        if not policy.required_permissions:
            return
        if self.resolver.has_any_permission(principal_id, policy.required_permissions):
            return
        logger.info(
            "permission_required_denied",
            principal_id=principal_id,
            required=list(policy.required_permissions),
        )
        raise ForbiddenError("insufficient permissions", reason=DenyReason.PERMISSION_REQUIRED)

    def _check_ownership(
        self,
        policy: RoutePolicy,
        principal_id: str,
        role_codes: Tuple[str, ...],
        params: Mapping[str, Any],
    ) -> None:
        check = policy.resource
        if check is None or ADMIN_ROLE in role_codes:
            return
        denied = ForbiddenError(_RESOURCE_FORBIDDEN_MESSAGE, reason=DenyReason.RESOURCE_FORBIDDEN)
        resource_id = params.get(check.id_param)
        if resource_id is None or str(resource_id) == "":
            logger.info("resource_param_missing", resource_type=check.resource_type)
            raise denied
        finder = self.ownership.get(check.resource_type, check.owner_field)
        if finder is None:
            logger.warning("ownership_finder_missing", resource_type=check.resource_type)
            raise denied
        try:
            owned = finder(str(resource_id), principal_id)
        except StoreUnavailable:
            raise
        except Exception as exc:
            logger.warning(
                "ownership_lookup_failed",
                resource_type=check.resource_type,
                error=str(exc),
            )
            raise denied
        if not owned:
            logger.info(
                "resource_forbidden_denied",
                principal_id=principal_id,
                resource_type=check.resource_type,
            )
            raise denied


__all__ = [
    "AuthorizationPipeline",
    "PrincipalContext",
    "ResourceCheck",
    "RoutePolicy",
    "PUBLIC",
    "AUTHENTICATED",
    "extract_bearer",
]
