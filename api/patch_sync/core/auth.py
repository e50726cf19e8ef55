from dataclasses import dataclass
from enum import Enum

SCOPE_READ = "scope:read"
ADMIN_WRITE = "admin:write"
JOBS_READ = "jobs:read"
JOBS_WRITE = "jobs:write"
HIERARCHY_WRITE = "hierarchy:write"

ROLE_SCOPES: dict[str, set[str]] = {
    "admin": {SCOPE_READ, ADMIN_WRITE},
    "lead_organiser": {SCOPE_READ},
    "organiser": {SCOPE_READ},
}


class PrincipalType(str, Enum):
    HUMAN = "human"
    MACHINE = "machine"


@dataclass(slots=True)
class Principal:
    principal_type: PrincipalType
    subject: str
    scopes: set[str]
    role: str | None = None
    actor_id: str | None = None

    def require_scopes(self, required: set[str]) -> None:
        missing = required - self.scopes
        if missing:
            raise PermissionError(f"missing required scopes: {sorted(missing)}")


def scopes_for_role(role: str | None) -> set[str]:
    """Scopes granted to a human principal; unknown roles get none."""
    if not role:
        return set()
    return set(ROLE_SCOPES.get(role, set()))
