"""Shared FastAPI dependencies for caller identity.

Authentication happens upstream; the gateway forwards the caller's id and
role in the ``X-User-Id`` and ``X-User-Role`` headers.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException

ROLES = ("student", "teacher", "admin")


@dataclass(frozen=True)
class Principal:
    user_id: int
    role: str


def get_current_user(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> Optional[Principal]:
    """Return the caller described by the identity headers, if any."""
    if not x_user_id or not x_user_role:
        return None
    role = x_user_role.strip().lower()
    if role not in ROLES:
        return None
    try:
        user_id = int(x_user_id)
    except ValueError:
        return None
    return Principal(user_id=user_id, role=role)


def require_login(current_user: Optional[Principal] = Depends(get_current_user)) -> Principal:
    """Ensure that the caller identified themselves."""
    if current_user is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return current_user


def require_role(required_roles: list[str]):
    """Dependency factory that enforces one of the given roles."""

    def wrapper(current_user: Principal = Depends(require_login)) -> Principal:
        if current_user.role not in required_roles:
            raise HTTPException(status_code=403, detail="Forbidden")
        return current_user

    return wrapper
