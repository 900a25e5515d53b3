from dataclasses import dataclass
from enum import Enum


class PrincipalType(str, Enum):
    SCHEDULER = "scheduler"
    ADMIN = "admin"


@dataclass(slots=True)
class Principal:
    principal_type: PrincipalType
    subject: str
    scopes: set[str]

    def require_scopes(self, required: set[str]) -> None:
        missing = required - self.scopes
        if missing:
            raise PermissionError(f"missing required scopes: {sorted(missing)}")


SCHEDULER_SCOPES = {"dispatch:run", "maintenance:run"}
ADMIN_SCOPES = {"dispatch:run", "maintenance:run", "subjects:read", "subjects:write"}


def parse_bearer_token(authorization: str | None) -> str | None:
    if not authorization or not authorization.lower().startswith("bearer "):
        return None
    token = authorization.split(" ", maxsplit=1)[1].strip()
    return token or None
