import re
import secrets

from flask import Request, session


def ensure_csrf_token() -> str:
    """Ensure a CSRF token exists in the session and return it."""
    token = session.get("csrf_token")
    if not token:
        token = secrets.token_urlsafe(32)
        session["csrf_token"] = token
    return token


def validate_csrf(req: Request) -> bool:
    """Validate CSRF token from form, header, or JSON body."""
    token = req.headers.get("X-CSRF-Token") or req.form.get("csrf_token")
    if not token and req.is_json:
        json_data = req.get_json(silent=True) or {}
        if isinstance(json_data, dict):
            token = json_data.get("csrf_token")
    expected = session.get("csrf_token")
    return bool(token and expected and secrets.compare_digest(str(token), str(expected)))


def password_problems(password: str, confirm: str | None = None) -> list[str]:
    """Registration / reset password rules. Returns list of errors."""
    errors = []
    if len(password) < 8:
        errors.append("Password must be at least 8 characters.")
    if not re.search(r"\d", password):
        errors.append("Password must contain a number.")
    if not re.search(r"[A-Z]", password):
        errors.append("Password must contain an uppercase letter.")
    if confirm is not None and password != confirm:
        errors.append("Passwords do not match.")
    return errors


def is_safe_next(nxt: str | None) -> bool:
    """Only allow local paths to avoid open redirects."""
    return bool(nxt) and nxt.startswith("/") and not nxt.startswith("//")
