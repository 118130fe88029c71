from __future__ import annotations

from typing import Dict, List, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from warden.logging import get_logger
from warden.storage.models import Permission, Principal, Role

logger = get_logger(__name__)


class CredentialStore(Protocol):
    """Relational store of principals, roles and grants.

    Implemented by ``MemoryStore`` and ``PostgresStore``. Connectivity failures
    raise ``StoreUnavailable``; uniqueness or reference failures raise
    ``ConstraintViolation``.
    """

    def create_principal(
        self, email: str, username: str, password_hash: str, *, status: str = ...
    ) -> Principal: ...

    def get_principal(self, principal_id: str) -> Optional[Principal]: ...

    def get_principal_by_identifier(self, identifier: str) -> Optional[Principal]: ...

    def update_password_hash(self, principal_id: str, password_hash: str) -> None: ...

    def get_role_by_code(self, code: str) -> Optional[Role]: ...

    def assign_role(self, principal_id: str, role_id: str) -> None: ...

    def list_principal_roles(self, principal_id: str) -> List[Role]: ...

    def list_role_permissions(self, role_id: str) -> List[Permission]: ...

    def get_system_settings(self) -> Dict[str, str]: ...


class PasswordHasherAdapter:
    """``hash(plain)`` / ``verify(plain, digest)`` over argon2id."""

    algorithm = "argon2id"

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)

    def hash(self, plain: str) -> str:
        return self._hasher.hash(plain)

    def verify(self, plain: str, digest: str) -> bool:
        if not digest:
            return False
        try:
            return self._hasher.verify(digest, plain)
        except (InvalidHash, VerifyMismatchError):
            return False
        except VerificationError:
            logger.warning("password_verification_error")
            return False

    def needs_rehash(self, digest: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(digest)
        except InvalidHash:
            return True


class FastPasswordHasher(PasswordHasherAdapter):
    """argon2id with minimal cost parameters, for tests and local tooling."""

    def __init__(self) -> None:
        super().__init__(
            PasswordHasher(
                time_cost=1,
                memory_cost=8,
                parallelism=1,
                hash_len=16,
                salt_len=8,
                type=Type.ID,
            )
        )
