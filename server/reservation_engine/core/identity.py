"""Caller identity as asserted by the upstream identity service."""

from dataclasses import dataclass, field

ADMIN_ROLE = "admin"
OPERATOR_ROLE = "operator"

# Actor recorded in the audit trail for changes made by background sweeps and webhooks
SYSTEM_ACTOR = "system"


@dataclass(frozen=True)
class Caller:
    """An already-verified caller: subject id plus roles."""

    user_id: str
    roles: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_admin(self) -> bool:
        return ADMIN_ROLE in self.roles

    def has_any_role(self, *roles: str) -> bool:
        return bool(self.roles.intersection(roles))
