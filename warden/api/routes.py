from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends

from warden.api.dependencies import get_principal, require
from warden.api.schemas import (
    ChangePasswordRequest,
    Envelope,
    LoginRequest,
    LogoutRequest,
    LogoutResponse,
    PrincipalResponse,
    RegisterRequest,
    TokenPairResponse,
    TokenRefreshRequest,
)
from warden.service.pipeline import PUBLIC, PrincipalContext
from warden.service.runtime import get_runtime
from warden.service.session import SessionTokens

router = APIRouter(prefix="/v1")


def _token_pair(tokens: SessionTokens) -> TokenPairResponse:
    return TokenPairResponse(**tokens.as_dict())


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, _: Optional[PrincipalContext] = Depends(require(PUBLIC))):
    """Authenticate with email or username and password.

    Raises:
        401: If the identifier is unknown, the secret is wrong, or the account
            is not active (same body in every case)
    """
    runtime = get_runtime()
    tokens = await runtime.sessions.login(body.identifier, body.password)
    return Envelope(status="ok", data=_token_pair(tokens))


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, _: Optional[PrincipalContext] = Depends(require(PUBLIC))):
    """Create a principal, assign the default role and issue a token pair.

    Raises:
        409: If the email or username is already registered
    """
    runtime = get_runtime()
    tokens = await runtime.sessions.register(body.email, body.username, body.password)
    return Envelope(status="ok", data=_token_pair(tokens))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: TokenRefreshRequest, _: Optional[PrincipalContext] = Depends(require(PUBLIC))):
    """Rotate a refresh token. The presented token cannot be used again."""
    runtime = get_runtime()
    tokens = await runtime.sessions.refresh_with_token(body.refresh_token)
    return Envelope(status="ok", data=_token_pair(tokens))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    principal: PrincipalContext = Depends(get_principal),
):
    runtime = get_runtime()
    body = body or LogoutRequest()
    written = await runtime.sessions.logout(
        principal.claims,
        refresh_token=body.refresh_token,
        everywhere=body.everywhere,
    )
    return Envelope(
        status="ok",
        data=LogoutResponse(revoked_entries=written, everywhere=body.everywhere),
    )


@router.post("/auth/password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest,
    principal: PrincipalContext = Depends(get_principal),
):
    """Change the caller's password; every previously issued token stops working."""
    runtime = get_runtime()
    tokens = await runtime.sessions.change_password(
        principal.principal_id, body.old_password, body.new_password
    )
    return Envelope(status="ok", data=_token_pair(tokens))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: PrincipalContext = Depends(get_principal)):
    runtime = get_runtime()
    record = runtime.store.get_principal(principal.principal_id)
    return Envelope(
        status="ok",
        data=PrincipalResponse(
            principal_id=principal.principal_id,
            email=record.email if record else None,
            username=record.username if record else None,
            roles=list(principal.role_codes),
            permissions=sorted(principal.permissions),
            token_expires_at=principal.expires_at,
        ),
    )
