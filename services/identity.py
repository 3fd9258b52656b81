# services/identity.py
from __future__ import annotations

from dataclasses import dataclass

from models.user import User


@dataclass(frozen=True)
class Identity:
    """Authenticated caller as seen by the service layer."""
    user_id: str
    email: str | None = None
    is_admin: bool = False
    is_staff: bool = False
    is_student: bool = False

    @property
    def is_privileged(self) -> bool:
        return self.is_admin or self.is_staff

    @classmethod
    def from_user(cls, user: User) -> "Identity":
        return cls(
            user_id=user.id,
            email=user.email,
            is_admin=user.admin is not None,
            is_staff=user.staff is not None,
            is_student=user.student is not None,
        )
