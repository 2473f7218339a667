from dataclasses import dataclass
from enum import Enum


class PrincipalRole(str, Enum):
    USER = "user"
    ADMIN = "admin"
    ANONYMOUS = "anonymous"


@dataclass(slots=True, frozen=True)
class Principal:
    user_id: str
    role: PrincipalRole = PrincipalRole.USER
    client_ip: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role is PrincipalRole.ADMIN

    def can_access(self, owner_id: str) -> bool:
        return self.is_admin or self.user_id == owner_id


def parse_role(raw: str | None) -> PrincipalRole:
    if not raw:
        return PrincipalRole.USER
    try:
        return PrincipalRole(raw.strip().lower())
    except ValueError:
        return PrincipalRole.USER
