# ABOUTME: Role-based access control for table actions
# ABOUTME: Role -> table -> actions lookup with wildcard fallback and explicit-deny entries

from typing import Dict, List, Optional

from tablegate.config import RbacConfig
from tablegate.models.errors import ApiError, forbidden

WILDCARD = "*"


class Rbac:
    """
    Permission lookup over the configured roles.

    An explicit table entry replaces the wildcard entry for that table, so
    ``{"users": []}`` denies everything on ``users`` whatever ``"*"`` allows.
    """

    def __init__(self, config: RbacConfig):
        self.roles: Dict[str, Dict[str, List[str]]] = config.roles

    def is_allowed(self, role: str, table: str, action: str) -> bool:
        perms = self.roles.get(role)
        if perms is None:
            return False
        if table in perms:
            return action in perms[table]
        return action in perms.get(WILDCARD, [])


class RbacGuard:
    """Turns an RBAC decision into a terminal 403 outcome."""

    def __init__(self, rbac: Rbac):
        self.rbac = rbac

    def guard(self, auth_enabled: bool, role: Optional[str], table: Optional[str], action: str) -> Optional[ApiError]:
        """
        Check whether the current role may perform an action on a table.

        Returns:
            None to continue, or a forbidden error. Always None when auth is
            disabled or no table is involved.
        """
        if not auth_enabled or not table:
            return None
        if not role:
            return forbidden("Forbidden: No role assigned")
        if not self.rbac.is_allowed(role, table, action):
            return forbidden(f"Forbidden: {role} cannot {action} on {table}")
        return None
