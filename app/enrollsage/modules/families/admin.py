from __future__ import annotations

from flask import Blueprint, abort, flash, g, redirect, render_template, request, url_for

from app.enrollsage.constants import GRADE_LEVELS
from app.enrollsage.db import db_session
from app.enrollsage.models import User
from app.enrollsage.modules.admissions.models import Application
from app.enrollsage.modules.billing.service import household_billing_summary
from app.enrollsage.modules.families.models import Household, Student
from app.enrollsage.modules.families.service import (
    ENROLLMENT_STATUSES,
    HOUSEHOLD_STATUSES,
    PHONE_TYPES,
    RELATIONSHIPS,
    add_guardian,
    add_student,
    create_family,
    list_students,
    search_households,
    set_student_status,
    update_household,
    update_student,
    validate_family_payload,
    validate_guardian_payload,
    validate_student_payload,
)
from app.enrollsage.rbac import require_permission
from app.enrollsage.utils import checkbox

bp = Blueprint("families", __name__)

_GUARDIAN_FIELDS = ("first_name", "last_name", "email", "phone", "phone_type", "relationship", "employer", "occupation")
_STUDENT_FIELDS = (
    "first_name",
    "last_name",
    "preferred_name",
    "date_of_birth",
    "gender",
    "grade_level",
    "previous_school",
    "allergies",
    "medications",
    "medical_notes",
)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _prefixed(prefix: str, fields: tuple[str, ...]) -> dict:
    return {k: request.form.get(f"{prefix}{k}") for k in fields}


def _guardian_form(prefix: str = "") -> dict:
    payload = _prefixed(prefix, _GUARDIAN_FIELDS)
    payload["has_portal_access"] = checkbox(request.form, f"{prefix}has_portal_access")
    payload["is_billing_contact"] = checkbox(request.form, f"{prefix}is_billing_contact")
    payload["is_emergency_contact"] = checkbox(request.form, f"{prefix}is_emergency_contact")
    return payload


def _household_or_404(household_id: int) -> Household:
    h = db_session().get(Household, household_id)
    if not h or h.school_id != g.current_school.id:
        abort(404)
    return h


# ---------- Households ----------
@bp.get("/admin/families")
@require_permission("families.view")
def families_list():
    s = db_session()
    search = (request.args.get("q") or "").strip()
    status_filter = (request.args.get("status") or "").strip()
    households = search_households(s, g.current_school, search, status_filter)
    return render_template(
        "admin/families/list.html",
        households=households,
        search=search,
        status_filter=status_filter,
        statuses=HOUSEHOLD_STATUSES,
    )


@bp.get("/admin/families/new")
@require_permission("families.edit")
def families_new_get():
    return render_template(
        "admin/families/new.html", grades=GRADE_LEVELS, relationships=RELATIONSHIPS, phone_types=PHONE_TYPES
    )


@bp.post("/admin/families/new")
@require_permission("families.edit")
def families_new_post():
    s = db_session()
    u = _current_user()

    student = _prefixed("student_", _STUDENT_FIELDS)
    payload = {
        "household": {
            "name": request.form.get("name"),
            "address_line1": request.form.get("address_line1"),
            "address_line2": request.form.get("address_line2"),
            "city": request.form.get("city"),
            "state": request.form.get("state"),
            "postal_code": request.form.get("postal_code"),
            "notes": request.form.get("notes"),
        },
        "guardians": [_guardian_form("guardian_")],
        # The student block is optional on this form.
        "students": [student] if (student.get("first_name") or "").strip() else [],
    }

    errors = validate_family_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("families.families_new_get"))

    household = create_family(s, g.current_school, payload, u, status=(request.form.get("status") or "active"))
    s.commit()
    flash(f"{household.name} created.", "success")
    return redirect(url_for("families.family_detail", household_id=household.id))


@bp.get("/admin/families/<int:household_id>")
@require_permission("families.view")
def family_detail(household_id: int):
    s = db_session()
    household = _household_or_404(household_id)
    applications = (
        s.query(Application)
        .filter(Application.household_id == household.id)
        .order_by(Application.created_at.desc())
        .all()
    )
    return render_template(
        "admin/families/detail.html",
        household=household,
        applications=applications,
        billing=household_billing_summary(s, household),
        grades=GRADE_LEVELS,
        relationships=RELATIONSHIPS,
        phone_types=PHONE_TYPES,
        statuses=HOUSEHOLD_STATUSES,
    )


@bp.post("/admin/families/<int:household_id>/edit")
@require_permission("families.edit")
def family_edit(household_id: int):
    s = db_session()
    household = _household_or_404(household_id)
    payload = {
        k: request.form.get(k)
        for k in (
            "name",
            "primary_email",
            "primary_phone",
            "address_line1",
            "address_line2",
            "city",
            "state",
            "postal_code",
            "notes",
            "status",
        )
        if k in request.form
    }
    try:
        update_household(s, household, payload, _current_user())
    except ValueError as e:
        flash(str(e), "danger")
        return redirect(url_for("families.family_detail", household_id=household.id))
    s.commit()
    flash("Family updated.", "success")
    return redirect(url_for("families.family_detail", household_id=household.id))


@bp.post("/admin/families/<int:household_id>/guardians")
@require_permission("families.edit")
def family_add_guardian(household_id: int):
    s = db_session()
    household = _household_or_404(household_id)
    payload = _guardian_form()
    errors = validate_guardian_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("families.family_detail", household_id=household.id))
    guardian = add_guardian(s, household, payload, _current_user())
    s.commit()
    flash(f"{guardian.full_name} added.", "success")
    return redirect(url_for("families.family_detail", household_id=household.id))


@bp.post("/admin/families/<int:household_id>/students")
@require_permission("families.edit")
def family_add_student(household_id: int):
    s = db_session()
    household = _household_or_404(household_id)
    payload = _prefixed("", _STUDENT_FIELDS)
    errors = validate_student_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("families.family_detail", household_id=household.id))
    student = add_student(s, household, payload, _current_user())
    s.commit()
    flash(f"{student.full_name} added.", "success")
    return redirect(url_for("families.family_detail", household_id=household.id))


# ---------- Students ----------
@bp.get("/admin/students")
@require_permission("families.view")
def students_list():
    s = db_session()
    grade = (request.args.get("grade") or "").strip()
    status_filter = (request.args.get("status") or "").strip()
    search = (request.args.get("q") or "").strip()
    students = list_students(s, g.current_school, grade=grade, status=status_filter, q=search)
    return render_template(
        "admin/families/students.html",
        students=students,
        grade=grade,
        status_filter=status_filter,
        search=search,
        grades=GRADE_LEVELS,
        statuses=ENROLLMENT_STATUSES,
    )


@bp.post("/admin/students/<int:student_id>/edit")
@require_permission("families.edit")
def student_edit(student_id: int):
    s = db_session()
    student = s.get(Student, student_id)
    if not student or student.school_id != g.current_school.id:
        abort(404)
    payload = {k: request.form.get(k) for k in _STUDENT_FIELDS + ("student_number",) if k in request.form}
    try:
        update_student(s, student, payload, _current_user())
        status = (request.form.get("enrollment_status") or "").strip()
        if status:
            set_student_status(s, student, status, _current_user(), reason=request.form.get("reason"))
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("families.family_detail", household_id=student.household_id))
    s.commit()
    flash(f"{student.full_name} updated.", "success")
    return redirect(url_for("families.family_detail", household_id=student.household_id))
