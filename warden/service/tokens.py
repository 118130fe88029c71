from __future__ import annotations

import base64
import hashlib
import hmac
import json
import math
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Mapping, Optional

from warden.config import Settings
from warden.logging import get_logger
from warden.service.durations import parse_duration_or_default
from warden.service.errors import TokenExpiredError, TokenInvalidError
from warden.storage.errors import StoreUnavailable

logger = get_logger(__name__)

_ALGORITHM = "HS256"
_INVALID_MESSAGE = "invalid token"


class TokenClass(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


# System-setting keys an administrator can use to shorten or extend lifetimes
# without a redeploy.
TTL_OVERRIDE_KEYS = {
    TokenClass.ACCESS: "jwt_access_expires_in",
    TokenClass.REFRESH: "jwt_refresh_expires_in",
}


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    token_id: str
    token_class: TokenClass
    issued_at_ms: int
    expires_at: int
    issuer: str
    audience: str
    roles: tuple[str, ...] = field(default_factory=tuple)

    @property
    def issued_at(self) -> float:
        return self.issued_at_ms / 1000.0

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": self.subject,
            "jti": self.token_id,
            "token_type": self.token_class.value,
            "iat": self.issued_at_ms / 1000.0,
            "exp": self.expires_at,
        }
        if self.token_class is TokenClass.ACCESS:
            payload["roles"] = list(self.roles)
        return payload


@dataclass(frozen=True)
class IssuedToken:
    token: str
    claims: TokenClaims

    @property
    def token_id(self) -> str:
        return self.claims.token_id

    @property
    def expires_at(self) -> int:
        return self.claims.expires_at


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenCodec:
    """Issue and verify HS256-signed access and refresh tokens.

    Each token class has its own secret, so a refresh token can never pass as
    an access token (and vice versa) even before the ``token_type`` claim is
    consulted. ``iat`` is written with millisecond precision so revocation
    cut-offs compare exactly.
    """

    def __init__(
        self,
        *,
        access_secret: str,
        refresh_secret: str,
        issuer: str,
        audience: str,
        access_ttl_seconds: int,
        refresh_ttl_seconds: int,
        leeway_seconds: int = 0,
        clock: Callable[[], float] = time.time,
        ttl_overrides: Optional[Callable[[], Mapping[str, str]]] = None,
    ) -> None:
        if access_secret == refresh_secret:
            raise ValueError("access and refresh tokens must use distinct secrets")
        self._secrets = {
            TokenClass.ACCESS: access_secret.encode(),
            TokenClass.REFRESH: refresh_secret.encode(),
        }
        self._configured_ttl = {
            TokenClass.ACCESS: access_ttl_seconds,
            TokenClass.REFRESH: refresh_ttl_seconds,
        }
        self.issuer = issuer
        self.audience = audience
        self.leeway_seconds = max(0, leeway_seconds)
        self._clock = clock
        self._ttl_overrides = ttl_overrides
        # Longest lifetime handed out by this process, per class
        self._longest_issued = {TokenClass.ACCESS: 0, TokenClass.REFRESH: 0}

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
        ttl_overrides: Optional[Callable[[], Mapping[str, str]]] = None,
    ) -> "TokenCodec":
        return cls(
            access_secret=settings.jwt_access_secret,
            refresh_secret=settings.jwt_refresh_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl_seconds=settings.access_ttl_seconds,
            refresh_ttl_seconds=settings.refresh_ttl_seconds,
            leeway_seconds=settings.jwt_leeway_seconds,
            clock=clock,
            ttl_overrides=ttl_overrides,
        )

    # lifetimes
    def _override_for(self, token_class: TokenClass) -> Optional[str]:
        if self._ttl_overrides is None:
            return None
        try:
            overrides = self._ttl_overrides() or {}
        except StoreUnavailable as exc:
            logger.warning("token_ttl_override_unavailable", error=str(exc))
            return None
        return overrides.get(TTL_OVERRIDE_KEYS[token_class])

    def lifetime(self, token_class: TokenClass) -> int:
        """Current lifetime in seconds for newly issued tokens of ``token_class``."""
        configured = self._configured_ttl[token_class]
        return parse_duration_or_default(
            self._override_for(token_class),
            configured,
            setting=TTL_OVERRIDE_KEYS[token_class],
        )

    def max_lifetime(self, token_class: TokenClass) -> int:
        """Upper bound on how long any outstanding token can still verify.

        Covers the configured lifetime, the current override, the longest
        lifetime this codec has issued and the verification leeway.
        """
        longest = max(
            self._configured_ttl[token_class],
            self.lifetime(token_class),
            self._longest_issued[token_class],
        )
        return longest + self.leeway_seconds

    def remaining_lifetime(self, claims: TokenClaims) -> int:
        """Seconds until ``claims`` stops verifying, leeway included."""
        return max(0, math.ceil(claims.expires_at + self.leeway_seconds - self._clock()))

    # signing
    def _sign(self, signing_input: str, token_class: TokenClass) -> str:
        digest = hmac.new(
            self._secrets[token_class], signing_input.encode(), hashlib.sha256
        ).digest()
        return _encode_segment(digest)

    def issue(
        self,
        subject: str,
        token_class: TokenClass,
        roles: Iterable[str] = (),
    ) -> IssuedToken:
        token_class = TokenClass(token_class)
        now = self._clock()
        lifetime = self.lifetime(token_class)
        if lifetime > self._longest_issued[token_class]:
            self._longest_issued[token_class] = lifetime
        claims = TokenClaims(
            subject=str(subject),
            token_id=str(uuid.uuid4()),
            token_class=token_class,
            issued_at_ms=int(now * 1000),
            expires_at=int(now + lifetime),
            issuer=self.issuer,
            audience=self.audience,
            roles=tuple(roles) if token_class is TokenClass.ACCESS else (),
        )
        header_enc = _encode_segment(
            json.dumps({"alg": _ALGORITHM, "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = _encode_segment(
            json.dumps(claims.to_payload(), separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        token = f"{signing_input}.{self._sign(signing_input, token_class)}"
        return IssuedToken(token=token, claims=claims)

    def verify(self, token: str, token_class: TokenClass) -> TokenClaims:
        """Return the claims of ``token`` or raise.

        Any structural, signature, issuer/audience or class problem raises
        ``TokenInvalidError``; a well-formed token past ``exp`` (plus leeway)
        raises ``TokenExpiredError``.
        """
        token_class = TokenClass(token_class)
        if not token or not isinstance(token, str):
            raise TokenInvalidError(_INVALID_MESSAGE)
        parts = token.split(".")
        if len(parts) != 3:
            raise TokenInvalidError(_INVALID_MESSAGE)
        header_b64, payload_b64, sig_b64 = parts

        # Algorithm-confusion guard
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.info("token_header_decode_failed")
            raise TokenInvalidError(_INVALID_MESSAGE)
        if not isinstance(header, dict) or header.get("alg") != _ALGORITHM:
            logger.info("token_invalid_algorithm")
            raise TokenInvalidError(_INVALID_MESSAGE)

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", token_class)
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise TokenInvalidError(_INVALID_MESSAGE)

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError):
            logger.info("token_payload_decode_failed")
            raise TokenInvalidError(_INVALID_MESSAGE)
        claims = self._claims_from_payload(payload, token_class)

        if self._clock() > claims.expires_at + self.leeway_seconds:
            raise TokenExpiredError("token expired")
        return claims

    def _claims_from_payload(self, payload: Any, token_class: TokenClass) -> TokenClaims:
        if not isinstance(payload, dict):
            raise TokenInvalidError(_INVALID_MESSAGE)
        if payload.get("token_type") != token_class.value:
            raise TokenInvalidError(_INVALID_MESSAGE)
        if payload.get("iss") != self.issuer:
            raise TokenInvalidError(_INVALID_MESSAGE)
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise TokenInvalidError(_INVALID_MESSAGE)

        subject = payload.get("sub")
        token_id = payload.get("jti")
        iat = payload.get("iat")
        exp = payload.get("exp")
        if not isinstance(subject, str) or not subject:
            raise TokenInvalidError(_INVALID_MESSAGE)
        if not isinstance(token_id, str) or not token_id:
            raise TokenInvalidError(_INVALID_MESSAGE)
        for value in (iat, exp):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise TokenInvalidError(_INVALID_MESSAGE)

        roles: tuple[str, ...] = ()
        if token_class is TokenClass.ACCESS:
            raw_roles = payload.get("roles", [])
            if not isinstance(raw_roles, list) or not all(
                isinstance(r, str) for r in raw_roles
            ):
                raise TokenInvalidError(_INVALID_MESSAGE)
            roles = tuple(raw_roles)

        try:
            issued_at_ms = int(round(float(iat) * 1000))
            expires_at = int(exp)
        except (OverflowError, ValueError):
            raise TokenInvalidError(_INVALID_MESSAGE)

        return TokenClaims(
            subject=subject,
            token_id=token_id,
            token_class=token_class,
            issued_at_ms=issued_at_ms,
            expires_at=expires_at,
            issuer=self.issuer,
            audience=self.audience,
            roles=roles,
        )


__all__ = ["TokenClass", "TokenClaims", "IssuedToken", "TokenCodec", "TTL_OVERRIDE_KEYS"]
