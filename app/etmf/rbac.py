from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import abort, g

from app.etmf.models import Role, User


def role_allows(role: Role, permission_key: str) -> bool:
    """`permission_key` is "<resource>.<action>", e.g. "documents.approve"."""
    if role.status != "ACTIVE":
        return False
    resource, _, action = permission_key.partition(".")
    flags = (role.permissions or {}).get(resource) or {}
    return bool(flags.get(action))


def user_has_permission(user: User | None, permission_key: str) -> bool:
    if not user or not user.is_active:
        return False
    return any(role_allows(role, permission_key) for role in user.roles)


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            # Unauthenticated → 401, authenticated but unauthorized → 403
            if not user or not user.is_active:
                abort(401)
            if not user_has_permission(user, permission_key):
                g.missing_permission = permission_key
                abort(403)
            return fn(*args, **kwargs)

        return wrapped

    return decorator
