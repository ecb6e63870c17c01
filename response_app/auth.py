"""
Header-based mock authentication.

The caller names itself with ``x-user-id``; roles come from a fixed table.
This only supplies the acting principal to the store. It is not a security
boundary.
"""

import logging
from typing import Dict, List, Optional

from fastapi import Header
from pydantic import BaseModel

from .errors import Forbidden, Unauthenticated

logger = logging.getLogger(__name__)


class Principal(BaseModel):
    id: str
    username: str
    roles: List[str]

    @property
    def is_admin(self) -> bool:
        return "admin" in self.roles


MOCK_USERS: Dict[str, Principal] = {
    u.id: u for u in [
        Principal(id="netrunnerX", username="netrunnerX", roles=["admin", "contributor"]),
        Principal(id="reliefAdmin", username="reliefAdmin", roles=["admin"]),
        Principal(id="citizen1", username="citizen1", roles=["citizen"]),
        Principal(id="volunteerA", username="volunteerA", roles=["contributor"]),
    ]
}


def authenticate(x_user_id: Optional[str] = Header(default=None)) -> Principal:
    if not x_user_id:
        logger.warning("[Auth] no x-user-id header provided")
        raise Unauthenticated("Authentication required. Please provide x-user-id header.")
    user = MOCK_USERS.get(x_user_id)
    if user is None:
        logger.warning(f"[Auth] unknown user id {x_user_id}")
        raise Forbidden("Invalid user ID.")
    return user


def authorize(principal: Principal, *allowed_roles: str) -> Principal:
    if not any(r in principal.roles for r in allowed_roles):
        logger.warning(f"[Auth] {principal.id} lacks roles {list(allowed_roles)} (has {principal.roles})")
        raise Forbidden("Forbidden: You do not have the necessary permissions.")
    return principal


def ensure_owner_or_admin(principal: Principal, owner_id: str) -> None:
    if principal.is_admin or principal.id == owner_id:
        return
    logger.warning(f"[Auth] {principal.id} is neither admin nor owner ({owner_id})")
    raise Forbidden("Forbidden: You do not have permission to modify this disaster.")
