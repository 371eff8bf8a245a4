"""Team-scoped access control for the shared remote cache."""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)


class AccessLevel(str, Enum):
    READ = "read"
    WRITE = "write"
    ADMIN = "admin"


_GRANTS = {
    AccessLevel.READ: {AccessLevel.READ, AccessLevel.WRITE, AccessLevel.ADMIN},
    AccessLevel.WRITE: {AccessLevel.WRITE, AccessLevel.ADMIN},
    AccessLevel.ADMIN: {AccessLevel.ADMIN},
}


@dataclass
class TeamAccess:
    """Credentials and level of the current user on a team cache.

    Attributes:
        token: Team access token
        level: Granted access level (``read`` when unset)
        restrict_to_team: Deny everything to callers without a token
    """

    token: Optional[str] = None
    level: AccessLevel = AccessLevel.READ
    restrict_to_team: bool = False

    def __post_init__(self):
        self.level = AccessLevel(self.level or AccessLevel.READ)


def has_permission(
    team_id: Optional[str],
    access: Optional[TeamAccess],
    required: AccessLevel,
) -> bool:
    """Check whether ``required`` is granted.

    Without a team, or without team access settings, everything is
    allowed. A restricted team without a token denies everything.

    Examples:
        >>> has_permission("t1", TeamAccess(level="read"), AccessLevel.WRITE)
        False
        >>> has_permission(None, None, AccessLevel.ADMIN)
        True
    """
    if not team_id or access is None:
        return True

    if access.restrict_to_team and not access.token:
        logger.warning("Team access token is required for restricted team cache")
        return False

    return access.level in _GRANTS[AccessLevel(required)]


def team_prefix(team_id: Optional[str]) -> str:
    """Remote key prefix for a team (empty without a team)."""
    return f"teams/{team_id}/" if team_id else ""
