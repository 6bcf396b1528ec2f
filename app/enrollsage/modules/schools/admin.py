from __future__ import annotations

from flask import Blueprint, abort, flash, g, redirect, render_template, request, session, url_for
from sqlalchemy import or_

from app.enrollsage.constants import GRADE_LEVELS, USER_ROLES
from app.enrollsage.db import db_session
from app.enrollsage.env_check import ENV_CONFIG, check_all_env_vars
from app.enrollsage.models import User
from app.enrollsage.modules.schools.models import School, SchoolMember, SchoolYear
from app.enrollsage.modules.schools.service import (
    VALID_STATUSES,
    create_school,
    create_school_year,
    platform_stats,
    set_current_school_year,
    set_school_status,
    set_user_active,
    set_user_role,
    update_school,
    validate_school_payload,
)
from app.enrollsage.modules.team.service import InvitationError
from app.enrollsage.rbac import require_superadmin
from app.enrollsage.utils import checkbox

bp = Blueprint("schools", __name__)

_SCHOOL_FIELDS = (
    "name",
    "slug",
    "subdomain",
    "timezone",
    "current_school_year",
    "email",
    "phone",
    "website",
    "address_line1",
    "address_line2",
    "city",
    "state",
    "postal_code",
    "logo_url",
    "primary_color",
    "secondary_color",
    "google_client_id",
    "google_client_secret",
    "owner_email",
)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _school_or_404(school_id: int) -> School:
    school = db_session().get(School, school_id)
    if not school:
        abort(404)
    return school


def _school_payload() -> dict:
    payload = {k: request.form.get(k) for k in _SCHOOL_FIELDS if k in request.form}
    if "grades_offered" in request.form or request.form.get("grades_submitted"):
        payload["grades_offered"] = request.form.getlist("grades_offered")
    return payload


# ---------- Dashboard ----------
@bp.get("/super-admin")
@require_superadmin
def index():
    s = db_session()
    recent = s.query(School).order_by(School.created_at.desc()).limit(5).all()
    return render_template("super_admin/index.html", stats=platform_stats(s), recent_schools=recent)


# ---------- Schools ----------
@bp.get("/super-admin/schools")
@require_superadmin
def schools_list():
    s = db_session()
    search = (request.args.get("q") or "").strip()
    status_filter = (request.args.get("status") or "").strip()

    q = s.query(School)
    if search:
        like = f"%{search}%"
        q = q.filter(or_(School.name.ilike(like), School.slug.ilike(like), School.email.ilike(like)))
    if status_filter:
        q = q.filter(School.status == status_filter)
    schools = q.order_by(School.name.asc()).all()
    return render_template(
        "super_admin/schools/list.html",
        schools=schools,
        search=search,
        status_filter=status_filter,
        statuses=VALID_STATUSES,
    )


@bp.get("/super-admin/schools/new")
@require_superadmin
def schools_new_get():
    return render_template("super_admin/schools/new.html", grades=GRADE_LEVELS, form={})


@bp.post("/super-admin/schools/new")
@require_superadmin
def schools_new_post():
    s = db_session()
    u = _current_user()
    payload = _school_payload()

    errors = validate_school_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("schools.schools_new_get"))

    try:
        school = create_school(s, payload, u)
    except (ValueError, InvitationError) as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("schools.schools_new_get"))
    s.commit()
    flash(f"School '{school.name}' created.", "success")
    return redirect(url_for("schools.school_detail", school_id=school.id))


@bp.get("/super-admin/schools/<int:school_id>")
@require_superadmin
def school_detail(school_id: int):
    s = db_session()
    school = _school_or_404(school_id)
    members = (
        s.query(SchoolMember)
        .filter(SchoolMember.school_id == school.id)
        .order_by(SchoolMember.role.asc(), SchoolMember.id.asc())
        .all()
    )
    years = s.query(SchoolYear).filter(SchoolYear.school_id == school.id).order_by(SchoolYear.start_date.desc()).all()
    return render_template(
        "super_admin/schools/detail.html",
        school=school,
        members=members,
        years=years,
        statuses=VALID_STATUSES,
        grades=GRADE_LEVELS,
    )


@bp.post("/super-admin/schools/<int:school_id>/edit")
@require_superadmin
def school_edit(school_id: int):
    s = db_session()
    u = _current_user()
    school = _school_or_404(school_id)
    payload = _school_payload()
    payload.pop("slug", None)
    payload.pop("owner_email", None)

    errors = validate_school_payload({"name": school.name, **payload})
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("schools.school_detail", school_id=school.id))

    update_school(s, school, payload, u, reason=(request.form.get("reason") or "").strip() or None)
    s.commit()
    flash("School updated.", "success")
    return redirect(url_for("schools.school_detail", school_id=school.id))


@bp.post("/super-admin/schools/<int:school_id>/status")
@require_superadmin
def school_status(school_id: int):
    s = db_session()
    u = _current_user()
    school = _school_or_404(school_id)
    try:
        set_school_status(
            s,
            school,
            (request.form.get("status") or "").strip(),
            u,
            reason=(request.form.get("reason") or "").strip() or None,
        )
    except ValueError as e:
        flash(str(e), "danger")
        return redirect(url_for("schools.school_detail", school_id=school.id))
    s.commit()
    flash(f"School status is now {school.status}.", "success")
    return redirect(url_for("schools.school_detail", school_id=school.id))


@bp.post("/super-admin/schools/<int:school_id>/years")
@require_superadmin
def school_year_new(school_id: int):
    s = db_session()
    u = _current_user()
    school = _school_or_404(school_id)
    payload = {
        "name": request.form.get("name"),
        "start_date": request.form.get("start_date"),
        "end_date": request.form.get("end_date"),
        "enrollment_open_date": request.form.get("enrollment_open_date"),
        "enrollment_close_date": request.form.get("enrollment_close_date"),
        "is_current": checkbox(request.form, "is_current"),
    }
    try:
        year = create_school_year(s, school, payload, u)
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("schools.school_detail", school_id=school.id))
    s.commit()
    flash(f"School year {year.name} added.", "success")
    return redirect(url_for("schools.school_detail", school_id=school.id))


@bp.post("/super-admin/schools/<int:school_id>/years/<int:year_id>/current")
@require_superadmin
def school_year_current(school_id: int, year_id: int):
    s = db_session()
    u = _current_user()
    school = _school_or_404(school_id)
    year = s.get(SchoolYear, year_id)
    if not year or year.school_id != school.id:
        abort(404)
    set_current_school_year(s, school, year, u)
    s.commit()
    flash(f"{year.name} is now the current school year.", "success")
    return redirect(url_for("schools.school_detail", school_id=school.id))


@bp.post("/super-admin/schools/<int:school_id>/open")
@require_superadmin
def school_open(school_id: int):
    school = _school_or_404(school_id)
    session["acting_school_id"] = school.id
    flash(f"You are now acting as an administrator of {school.name}.", "info")
    return redirect(url_for("admissions.dashboard"))


@bp.post("/super-admin/close-school")
@require_superadmin
def school_close():
    session.pop("acting_school_id", None)
    return redirect(url_for("schools.schools_list"))


# ---------- Users ----------
@bp.get("/super-admin/users")
@require_superadmin
def users_list():
    s = db_session()
    search = (request.args.get("q") or "").strip()
    role_filter = (request.args.get("role") or "").strip()
    q = s.query(User)
    if search:
        like = f"%{search}%"
        q = q.filter(or_(User.email.ilike(like), User.first_name.ilike(like), User.last_name.ilike(like)))
    if role_filter:
        q = q.filter(User.role == role_filter)
    users = q.order_by(User.created_at.desc()).limit(500).all()
    return render_template(
        "super_admin/users.html", users=users, search=search, role_filter=role_filter, roles=USER_ROLES
    )


@bp.post("/super-admin/users/<int:user_id>/role")
@require_superadmin
def user_role(user_id: int):
    s = db_session()
    u = _current_user()
    target = s.get(User, user_id)
    if not target:
        abort(404)
    try:
        set_user_role(s, target, (request.form.get("role") or "").strip(), u)
    except ValueError as e:
        flash(str(e), "danger")
        return redirect(url_for("schools.users_list"))
    s.commit()
    flash(f"{target.email} is now {target.role}.", "success")
    return redirect(url_for("schools.users_list"))


@bp.post("/super-admin/users/<int:user_id>/active")
@require_superadmin
def user_active(user_id: int):
    s = db_session()
    u = _current_user()
    target = s.get(User, user_id)
    if not target:
        abort(404)
    active = checkbox(request.form, "active")
    try:
        set_user_active(s, target, active, u)
    except ValueError as e:
        flash(str(e), "danger")
        return redirect(url_for("schools.users_list"))
    s.commit()
    flash(f"{target.email} {'activated' if active else 'deactivated'}.", "success")
    return redirect(url_for("schools.users_list"))


# ---------- Platform settings ----------
@bp.get("/super-admin/settings")
@require_superadmin
def settings():
    status = check_all_env_vars()
    specs = {spec.key: spec for spec in ENV_CONFIG.values()}
    return render_template("super_admin/settings.html", status=status, specs=specs)
