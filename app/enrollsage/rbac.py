from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import abort, flash, g, redirect, request, url_for

from app.enrollsage.constants import ALL_PERMISSIONS, ROLE_PERMISSIONS
from app.enrollsage.models import User


def _login_redirect():
    nxt = request.full_path or request.path
    # Avoid trailing '?' from full_path when there is no query string.
    if nxt.endswith("?"):
        nxt = nxt[:-1]
    return redirect(url_for("auth.login_get", next=nxt))


def user_permissions(user: User | None, membership=None) -> frozenset[str]:
    if not user or not user.is_active:
        return frozenset()
    if user.is_superadmin:
        return frozenset(ALL_PERMISSIONS)
    if membership is None:
        membership = getattr(g, "current_membership", None)
    if membership is None or membership.status != "active":
        return frozenset()
    return ROLE_PERMISSIONS.get(membership.role, frozenset())


def user_has_permission(user: User | None, permission_key: str, membership=None) -> bool:
    return permission_key in user_permissions(user, membership)


def require_login(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        user: User | None = getattr(g, "current_user", None)
        if not user or not user.is_active:
            return _login_redirect()
        return fn(*args, **kwargs)

    return wrapped


def require_superadmin(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        user: User | None = getattr(g, "current_user", None)
        if not user or not user.is_active:
            return _login_redirect()
        if not user.is_superadmin:
            g.missing_permission = "superadmin"
            abort(403)
        return fn(*args, **kwargs)

    return wrapped


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    School-scoped staff guard.

    Anonymous -> login; customers without a school membership -> their account page;
    superadmins must have opened a school first; anyone else lacking the key -> 403.
    """

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            if not user or not user.is_active:
                return _login_redirect()
            school = getattr(g, "current_school", None)
            if user.is_superadmin:
                if school is None:
                    flash("Open a school from the platform console first.", "warning")
                    return redirect(url_for("schools.schools_list"))
                return fn(*args, **kwargs)
            if getattr(g, "current_membership", None) is None:
                if user.role == "customer":
                    return redirect(url_for("account.index"))
                g.missing_permission = permission_key
                abort(403)
            if not user_has_permission(user, permission_key):
                g.missing_permission = permission_key
                abort(403)
            return fn(*args, **kwargs)

        return wrapped

    return decorator


def require_shop_admin(fn: Callable[..., Any]) -> Callable[..., Any]:
    """
    Storefront back office. Superadmins, plus school owners/admins (``shop.manage``).
    Unlike school pages, no school needs to be open.
    """

    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        user: User | None = getattr(g, "current_user", None)
        if not user or not user.is_active:
            return _login_redirect()
        if user.is_superadmin or user_has_permission(user, "shop.manage"):
            return fn(*args, **kwargs)
        if user.role == "customer" and getattr(g, "current_membership", None) is None:
            return redirect(url_for("account.index"))
        g.missing_permission = "shop.manage"
        abort(403)

    return wrapped
