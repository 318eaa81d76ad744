from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class PrincipalType(str, Enum):
    HUMAN = "human"
    MACHINE = "machine"


@dataclass(slots=True)
class Principal:
    principal_type: PrincipalType
    subject: str
    scopes: set[str] = field(default_factory=set)
    role: str | None = None
    actor_id: str | None = None
    email: str | None = None

    def require_scopes(self, required: set[str]) -> None:
        missing = required - self.scopes
        if missing:
            raise PermissionError(f"missing required scopes: {sorted(missing)}")

    @property
    def is_admin(self) -> bool:
        return "admin:write" in self.scopes

    def owns(self, owner: dict[str, Any]) -> bool:
        """Posts owned by an organization are only reachable through admin routes."""
        return owner.get("kind") == "user" and owner.get("id") == self.actor_id
