import hmac
from dataclasses import dataclass
from enum import Enum


class AuthenticationError(Exception):
    """Raised when a request carries a missing or invalid credential."""


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

    @property
    def actor_type(self) -> str:
        return self.principal_type.value

    def require_scopes(self, required: set[str]) -> None:
        missing = required - self.scopes
        if missing:
            raise PermissionError(f"missing required scopes: {sorted(missing)}")


def verify_shared_secret(presented: str | None, expected: str | None) -> None:
    if not expected:
        raise AuthenticationError("webhook secret is not configured")
    if not presented:
        raise AuthenticationError("missing webhook token")
    if not hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8")):
        raise AuthenticationError("invalid webhook token")
