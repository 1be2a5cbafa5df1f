"""Resolved request identity."""

from dataclasses import dataclass
from datetime import datetime

from teamguard.models import Role, User


@dataclass(frozen=True)
class Principal:
    """Authenticated identity attached to a request.

    Built from a User row; secret fields such as the password hash are
    never copied.
    """
    id: str
    role: Role
    tenant_id: str
    email: str
    first_name: str | None = None
    last_name: str | None = None

    @classmethod
    def from_user(cls, user: User) -> "Principal":
        return cls(
            id=user.id,
            role=Role(user.role),
            tenant_id=user.tenant_id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
        )

    @property
    def is_super_admin(self) -> bool:
        return self.role == Role.SUPER_ADMIN


@dataclass(frozen=True)
class AuthContext:
    """Request-scoped authentication result."""
    principal: Principal
    token_id: str | None
    issued_at: datetime | None
    expires_at: datetime | None
