"""
Verified caller identity passed from the auth layer into services.
"""
from dataclasses import dataclass
from typing import Optional

from constants import Role, STAFF_ROLES


@dataclass(frozen=True)
class Identity:
    user_id: str
    email: Optional[str] = None
    role: str = Role.STUDENT.value

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN.value

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES
