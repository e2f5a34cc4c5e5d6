"""
Administrator Authorization

Every mutating engine entry point checks ``is_admin(actor)`` before doing
anything. Authentication itself is external; the engine receives an actor id
that an upstream layer has already authenticated.
"""

from abc import ABC, abstractmethod
from typing import Iterable, Optional

import structlog

from directory_ops.business.exceptions import AuthorizationError

logger = structlog.get_logger(__name__)


class AdminAuthorizer(ABC):
    """Authorization collaborator answering whether an actor is an administrator."""

    @abstractmethod
    def is_admin(self, actor: Optional[str]) -> bool:
        ...


class StaticAdminAuthorizer(AdminAuthorizer):
    """Authorizer backed by a fixed set of administrator actor ids."""

    def __init__(self, admin_ids: Iterable[str]):
        self.admin_ids = frozenset(admin_ids)

    def is_admin(self, actor: Optional[str]) -> bool:
        return bool(actor) and actor in self.admin_ids


def require_admin(authorizer: AdminAuthorizer, actor: Optional[str], action: str) -> str:
    """
    Fail unless ``actor`` is an administrator.

    Args:
        authorizer: Authorization collaborator
        actor: Acting user id
        action: Entry point name, for logs and error context

    Returns:
        The authorized actor id

    Raises:
        AuthorizationError: If the actor is missing or not an administrator
    """
    if not authorizer.is_admin(actor):
        logger.warning("Admin check failed", actor=actor, action=action)
        raise AuthorizationError(
            message="Administrator privileges required",
            actor=actor,
            context={'action': action},
        )
    return actor
