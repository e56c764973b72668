"""The authenticated caller of one operation."""
from dataclasses import dataclass

from labtrail.models.enums import Role


@dataclass(frozen=True)
class Identity:
    """
    Who is calling, as asserted by the authentication layer.

    Built once per request and passed explicitly to every guard, service
    and audit call. Never stored between requests.
    """
    id: str
    role: Role

    @classmethod
    def from_claims(cls, claims: dict) -> "Identity":
        """Build from decoded token claims (`sub` and `role`)."""
        return cls(id=str(claims["sub"]), role=Role(claims["role"]))
