"""Caller identity as supplied by the auth collaborator."""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

ADMIN_ROLE = "admin"
SYSTEM_ACTOR = "system"


@dataclass(frozen=True)
class Actor:
    """Who is invoking an operation."""

    user_id: UUID | None
    role: str = "user"

    @classmethod
    def system(cls) -> Actor:
        return cls(user_id=None, role=SYSTEM_ACTOR)

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE

    @property
    def is_system(self) -> bool:
        return self.role == SYSTEM_ACTOR

    @property
    def label(self) -> str:
        """Value stored in released_by / audit columns."""
        return str(self.user_id) if self.user_id is not None else SYSTEM_ACTOR

    @property
    def actor_type(self) -> str:
        if self.is_system:
            return SYSTEM_ACTOR
        return ADMIN_ROLE if self.is_admin else "user"
