from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import abort, g

from app.campusvoice.constants import ROLE_STUDENT, ROLES
from app.campusvoice.models import User


def role_keys(user: User | None) -> set[str]:
    if not user:
        return set()
    return {r.key for r in (user.roles or [])}


def primary_role(user: User | None) -> str:
    """Highest-ranked campus role held by the user (admin > faculty > student)."""
    keys = role_keys(user)
    for key in reversed(ROLES):
        if key in keys:
            return key
    return ROLE_STUDENT


def user_permissions(user: User | None) -> set[str]:
    if not user or not user.is_active:
        return set()
    perms: set[str] = set()
    for role in user.roles:
        for perm in role.permissions:
            perms.add(perm.key)
    return perms


def user_has_permission(user: User | None, permission_key: str) -> bool:
    if not user or not user.is_active:
        return False
    for role in user.roles:
        for perm in role.permissions:
            if perm.key == permission_key:
                return True
    return False


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            # Unauthenticated → 401 so the client can route to /login.
            if not user or not user.is_active:
                abort(401)
            # Authenticated but unauthorized → 403
            if not user_has_permission(user, permission_key):
                g.missing_permission = permission_key
                abort(403)
            return fn(*args, **kwargs)

        return wrapped

    return decorator
