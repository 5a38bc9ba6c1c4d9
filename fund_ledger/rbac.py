"""
Role-Based Access Control (RBAC) Module

Maps the three organisational roles to engine capabilities. The caller's
identity and role arrive as an explicit ``Actor`` on every privileged call;
the engine never reads a "current user" from ambient state.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional, Union
import logging

from .errors import AuthorizationError
from .logging_config import log_action

logger = logging.getLogger(__name__)


class Permission(Enum):
    """Engine capabilities"""
    # Ledger permissions
    POST_TRANSACTION = "post_transaction"
    VOID_TRANSACTION = "void_transaction"
    MOVE_TRANSACTION_LINES = "move_transaction_lines"

    # Budget permissions
    SAVE_BUDGET = "save_budget"
    VIEW_BUDGETS = "view_budgets"

    # Report permissions
    VIEW_REPORTS = "view_reports"

    # Admin permissions
    MANAGE_CHART_OF_ACCOUNTS = "manage_chart_of_accounts"
    MANAGE_FUNDS = "manage_funds"


class Role(Enum):
    """Organisational roles, lowest privilege last"""
    ADMIN = "admin"
    BOOKKEEPER = "bookkeeper"
    VIEWER = "viewer"


_VIEWER_PERMISSIONS = frozenset({
    Permission.VIEW_BUDGETS,
    Permission.VIEW_REPORTS,
})

_BOOKKEEPER_PERMISSIONS = _VIEWER_PERMISSIONS | frozenset({
    Permission.POST_TRANSACTION,
    Permission.VOID_TRANSACTION,
    Permission.MOVE_TRANSACTION_LINES,
    Permission.SAVE_BUDGET,
})

ROLE_PERMISSIONS: Dict[Role, FrozenSet[Permission]] = {
    Role.ADMIN: frozenset(Permission),  # All permissions
    Role.BOOKKEEPER: _BOOKKEEPER_PERMISSIONS,
    Role.VIEWER: _VIEWER_PERMISSIONS,
}


@dataclass(frozen=True)
class Actor:
    """The caller of a privileged operation, as asserted by the identity layer"""
    actor_id: str
    role: Optional[Role]

    @classmethod
    def of(cls, actor_id: str, role: Union[Role, str, None]) -> 'Actor':
        """Build an Actor from a role value as stored by the identity layer"""
        if isinstance(role, str):
            try:
                role = Role(role.lower())
            except ValueError:
                role = None
        return cls(actor_id=actor_id, role=role)

    @property
    def permissions(self) -> FrozenSet[Permission]:
        if self.role is None:
            return frozenset()
        return ROLE_PERMISSIONS[self.role]

    def has_permission(self, permission: Permission) -> bool:
        """Check if the actor's role grants a permission"""
        return permission in self.permissions


def require_permission(actor: Optional[Actor], permission: Permission) -> Actor:
    """
    Raise AuthorizationError unless ``actor`` holds ``permission``.

    A missing actor or an unknown role holds no permissions.
    """
    if actor is not None and actor.has_permission(permission):
        return actor

    actor_id = actor.actor_id if actor else None
    role = actor.role.value if actor and actor.role else None
    log_action(
        logger, "warning", f"Denied {permission.value} for role {role}",
        user_id=actor_id, action=permission.value, resource="authorization"
    )
    raise AuthorizationError(actor_id, role, permission.value)
