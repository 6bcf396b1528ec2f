from __future__ import annotations

import secrets
import uuid
from datetime import datetime, timedelta

from flask import Blueprint, current_app, flash, g, redirect, render_template, request, session, url_for
from sqlalchemy.orm import Session
from werkzeug.security import check_password_hash, generate_password_hash

from app.enrollsage.audit import record_event
from app.enrollsage.constants import SESSION_LIFETIME_DAYS
from app.enrollsage.db import db_session
from app.enrollsage.google_oauth import GoogleOAuthError, google_client_for
from app.enrollsage.models import OAuthAccount, User, UserSession
from app.enrollsage.modules.notifications.events import emit
from app.enrollsage.ratelimit import client_ip, format_wait, login_limiter, register_limiter
from app.enrollsage.security import is_safe_next, password_problems

bp = Blueprint("auth", __name__)

SESSION_LIFETIME = timedelta(days=SESSION_LIFETIME_DAYS)


# ---------- Sessions ----------
def start_session(s: Session, user: User) -> UserSession:
    now = datetime.utcnow()
    us = UserSession(
        id=secrets.token_hex(32),
        user_id=user.id,
        created_at=now,
        expires_at=now + SESSION_LIFETIME,
        user_agent=(request.headers.get("User-Agent") or "")[:512] or None,
    )
    s.add(us)
    session["sid"] = us.id
    session.pop("acting_school_id", None)
    session.permanent = True
    return us


def revoke_sessions(s: Session, user: User, *, keep_id: str | None = None) -> int:
    q = s.query(UserSession).filter(UserSession.user_id == user.id)
    if keep_id:
        q = q.filter(UserSession.id != keep_id)
    return q.delete(synchronize_session=False)


def _clear_identity() -> None:
    session.pop("sid", None)
    session.pop("acting_school_id", None)
    g.current_user = None


def _resolve_school(s: Session, user: User) -> None:
    from app.enrollsage.modules.schools.models import School, SchoolMember

    g.current_membership = None
    g.current_school = None
    if user.is_superadmin:
        acting = session.get("acting_school_id")
        if acting:
            g.current_school = s.get(School, int(acting))
        return
    memberships = (
        s.query(SchoolMember)
        .filter(SchoolMember.user_id == user.id, SchoolMember.status == "active")
        .order_by(SchoolMember.id.asc())
        .all()
    )
    if not memberships:
        return
    preferred = session.get("school_id")
    m = next((m for m in memberships if m.school_id == preferred), memberships[0])
    g.current_membership = m
    g.current_school = m.school


def load_current_user() -> None:
    """
    Loads g.current_user from the session cookie + user_sessions row.
    Also assigns a per-request request_id (for audit/log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = uuid.uuid4().hex
    g.current_user = None
    g.current_membership = None
    g.current_school = None
    if request.path.startswith(("/static/", "/health", "/healthz")):
        return

    sid = session.get("sid")
    if not sid:
        return

    try:
        s = db_session()
        us = s.get(UserSession, sid)
        now = datetime.utcnow()
        if not us or us.expires_at <= now or not us.user.is_active:
            if us:
                s.delete(us)
                s.commit()
            _clear_identity()
            return
        if us.expires_at - now < SESSION_LIFETIME / 2:
            us.expires_at = now + SESSION_LIFETIME
            s.commit()
        g.current_user = us.user
        _resolve_school(s, us.user)
    except Exception as e:
        current_app.logger.error("load_current_user DB error (clearing session): %s", e)
        _clear_identity()


def home_for(user: User) -> str:
    """Where a freshly signed-in user lands."""
    from app.enrollsage.modules.families.models import Guardian
    from app.enrollsage.modules.schools.models import SchoolMember

    if user.is_superadmin:
        return url_for("schools.index")
    s = db_session()
    is_staff = (
        s.query(SchoolMember.id)
        .filter(SchoolMember.user_id == user.id, SchoolMember.status == "active")
        .first()
        is not None
    )
    if user.role == "admin" or is_staff:
        return url_for("admissions.dashboard")
    is_guardian = (
        s.query(Guardian.id).filter(Guardian.user_id == user.id, Guardian.has_portal_access.is_(True)).first()
        is not None
    )
    if is_guardian:
        return url_for("portal.index")
    return url_for("account.index")


# ---------- Login ----------
@bp.get("/login")
def login_get():
    if getattr(g, "current_user", None):
        return redirect(home_for(g.current_user))
    nxt = (request.args.get("next") or "").strip()
    google_enabled = google_client_for(current_app.config) is not None
    return render_template("auth/login.html", next=nxt, google_enabled=google_enabled)


@bp.post("/login")
def login_post():
    email = (request.form.get("email") or "").strip().lower()
    password = request.form.get("password") or ""
    nxt = (request.form.get("next") or "").strip()
    ip = client_ip(request)

    limit = login_limiter.check(ip)
    if not limit.allowed:
        flash(f"Too many login attempts. Please try again in {format_wait(limit.reset_in)}.", "danger")
        return redirect(url_for("auth.login_get"))

    try:
        s = db_session()
        user = s.query(User).filter(User.email == email).one_or_none()
        if (
            not user
            or not user.is_active
            or not user.password_hash
            or not check_password_hash(user.password_hash, password)
        ):
            record_event(
                s,
                actor=None,
                action="auth.login_failed",
                entity_type="User",
                entity_id=email,
                reason="Invalid credentials",
                metadata={"email": email},
            )
            s.commit()
            flash("Invalid email or password.", "danger")
            return redirect(url_for("auth.login_get", next=nxt) if nxt else url_for("auth.login_get"))

        start_session(s, user)
        login_limiter.reset(ip)
        record_event(s, actor=user, action="auth.login", entity_type="User", entity_id=str(user.id))
        s.commit()
        if is_safe_next(nxt):
            return redirect(nxt)
        return redirect(home_for(user))
    except Exception:
        current_app.logger.exception("Login POST crashed (email=%s request_id=%s)", email, getattr(g, "request_id", None))
        raise


# ---------- Register ----------
@bp.get("/register")
def register_get():
    if getattr(g, "current_user", None):
        return redirect(home_for(g.current_user))
    return render_template("auth/register.html", form={})


@bp.post("/register")
def register_post():
    form = {
        "first_name": (request.form.get("first_name") or "").strip(),
        "last_name": (request.form.get("last_name") or "").strip(),
        "email": (request.form.get("email") or "").strip().lower(),
        "marketing_consent": request.form.get("marketing_consent") == "on",
    }
    password = request.form.get("password") or ""
    confirm = request.form.get("confirm_password") or ""

    limit = register_limiter.check(client_ip(request))
    if not limit.allowed:
        flash(f"Too many registration attempts. Please try again in {format_wait(limit.reset_in)}.", "danger")
        return render_template("auth/register.html", form=form), 429

    errors = []
    if not form["first_name"]:
        errors.append("First name is required.")
    if "@" not in form["email"]:
        errors.append("A valid email is required.")
    errors.extend(password_problems(password, confirm))

    s = db_session()
    if not errors and s.query(User.id).filter(User.email == form["email"]).first() is not None:
        errors.append("An account with this email already exists.")
    if errors:
        for e in errors:
            flash(e, "danger")
        return render_template("auth/register.html", form=form), 400

    now = datetime.utcnow()
    user = User(
        email=form["email"],
        password_hash=generate_password_hash(password),
        role="customer",
        first_name=form["first_name"],
        last_name=form["last_name"] or None,
        marketing_consent=form["marketing_consent"],
        created_at=now,
        updated_at=now,
    )
    s.add(user)
    s.flush()
    start_session(s, user)
    record_event(s, actor=user, action="auth.register", entity_type="User", entity_id=str(user.id))
    s.commit()

    emit(
        "user.registered",
        {
            "user_id": user.id,
            "email": user.email,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "marketing_consent": user.marketing_consent,
        },
    )
    flash("Welcome! Your account has been created.", "success")
    return redirect(url_for("account.index"))


# ---------- Logout ----------
@bp.route("/logout", methods=["GET", "POST"])
def logout():
    s = db_session()
    user = getattr(g, "current_user", None)
    sid = session.get("sid")
    if sid:
        s.query(UserSession).filter(UserSession.id == sid).delete(synchronize_session=False)
    if user:
        record_event(s, actor=user, action="auth.logout", entity_type="User", entity_id=str(user.id))
    s.commit()
    _clear_identity()
    return redirect(url_for("routes.index"))


# ---------- Google OAuth ----------
def _google_redirect_uri() -> str:
    return current_app.config["APP_URL"] + url_for("auth.google_callback")


@bp.get("/api/auth/google")
def google_start():
    from app.enrollsage.modules.schools.models import School

    school = None
    slug = (request.args.get("school") or "").strip()
    if slug:
        school = db_session().query(School).filter(School.slug == slug).one_or_none()
    client = google_client_for(current_app.config, school)
    if client is None:
        flash("Google sign-in is not configured.", "danger")
        return redirect(url_for("auth.login_get"))
    state = secrets.token_urlsafe(24)
    session["oauth_state"] = state
    session["oauth_school"] = school.slug if school else None
    nxt = (request.args.get("next") or "").strip()
    session["oauth_next"] = nxt if is_safe_next(nxt) else None
    return redirect(client.auth_url(_google_redirect_uri(), state))


def link_google_account(s: Session, profile: dict, tokens: dict) -> tuple[User, bool]:
    """Find-or-create the user behind a Google profile. Returns (user, is_new)."""
    expires_at = datetime.utcnow() + timedelta(seconds=int(tokens.get("expires_in") or 3600))
    google_id = str(profile["id"])
    email = str(profile["email"]).lower()

    oauth = (
        s.query(OAuthAccount)
        .filter(OAuthAccount.provider == "google", OAuthAccount.provider_account_id == google_id)
        .one_or_none()
    )
    if oauth:
        oauth.access_token = tokens.get("access_token")
        oauth.refresh_token = tokens.get("refresh_token") or oauth.refresh_token
        oauth.expires_at = expires_at
        oauth.updated_at = datetime.utcnow()
        return oauth.user, False

    user = s.query(User).filter(User.email == email).one_or_none()
    is_new = user is None
    if is_new:
        name = (profile.get("name") or "").split(" ")
        user = User(
            email=email,
            first_name=profile.get("given_name") or (name[0] if name and name[0] else None),
            last_name=profile.get("family_name") or (" ".join(name[1:]) or None),
            email_verified=True,
            role="customer",
        )
        s.add(user)
        s.flush()
    s.add(
        OAuthAccount(
            user_id=user.id,
            provider="google",
            provider_account_id=google_id,
            email=email,
            access_token=tokens.get("access_token"),
            refresh_token=tokens.get("refresh_token"),
            expires_at=expires_at,
        )
    )
    return user, is_new


@bp.get("/api/auth/google/callback")
def google_callback():
    from app.enrollsage.modules.schools.models import School

    expected = session.pop("oauth_state", None)
    slug = session.pop("oauth_school", None)
    nxt = session.pop("oauth_next", None)
    if request.args.get("error"):
        flash("Google sign-in was cancelled.", "warning")
        return redirect(url_for("auth.login_get"))
    state = request.args.get("state") or ""
    code = request.args.get("code") or ""
    if not expected or not secrets.compare_digest(state, expected) or not code:
        flash("Google sign-in failed. Please try again.", "danger")
        return redirect(url_for("auth.login_get"))

    s = db_session()
    school = s.query(School).filter(School.slug == slug).one_or_none() if slug else None
    client = google_client_for(current_app.config, school)
    if client is None:
        flash("Google sign-in is not configured.", "danger")
        return redirect(url_for("auth.login_get"))
    try:
        tokens = client.exchange_code(code, _google_redirect_uri())
        profile = client.userinfo(tokens["access_token"])
    except GoogleOAuthError as e:
        current_app.logger.error("Google OAuth error: %s", e)
        flash("Google sign-in failed. Please try again.", "danger")
        return redirect(url_for("auth.login_get"))

    if not profile.get("email") or not profile.get("verified_email"):
        flash("Google account email not verified.", "danger")
        return redirect(url_for("auth.login_get"))

    user, is_new = link_google_account(s, profile, tokens)
    if not user.is_active:
        s.rollback()
        flash("This account has been deactivated.", "danger")
        return redirect(url_for("auth.login_get"))
    start_session(s, user)
    record_event(
        s,
        actor=user,
        action="auth.login_google",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"new_user": is_new},
    )
    s.commit()
    if is_new:
        emit(
            "user.registered",
            {
                "user_id": user.id,
                "email": user.email,
                "first_name": user.first_name,
                "last_name": user.last_name,
                "marketing_consent": False,
            },
        )
    if is_safe_next(nxt):
        return redirect(nxt)
    return redirect(home_for(user))
