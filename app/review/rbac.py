from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import g, jsonify

from app.review.models import User

# Holders of this permission pass every check.
ADMIN_PERMISSION = "admin.all"


def user_has_permission(user: User | None, permission_key: str) -> bool:
    if not user or not user.is_active:
        return False
    for role in user.roles:
        for perm in role.permissions:
            if perm.key == permission_key or perm.key == ADMIN_PERMISSION:
                return True
    return False


def require_login(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        user: User | None = getattr(g, "current_user", None)
        if not user or not user.is_active:
            return jsonify({"error": "authentication required"}), 401
        return fn(*args, **kwargs)

    return wrapped