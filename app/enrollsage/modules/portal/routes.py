"""
Family portal. Everything here is scoped to the households of the guardians linked to the
signed-in user; anything else is a 404.
"""
from __future__ import annotations

from flask import Blueprint, abort, current_app, flash, g, redirect, render_template, request, url_for

from app.enrollsage.constants import GRADE_LEVELS
from app.enrollsage.db import db_session
from app.enrollsage.models import User
from app.enrollsage.modules.admissions.models import Application
from app.enrollsage.modules.admissions.service import (
    DOCUMENT_TYPES,
    AdmissionsError,
    create_application,
    submit_application,
    upload_application_document,
)
from app.enrollsage.modules.billing.service import household_billing_summary
from app.enrollsage.modules.families.models import Guardian, Household
from app.enrollsage.modules.families.service import (
    RELATIONSHIPS,
    add_student,
    create_family,
    guardians_for_user,
    update_guardian,
    update_household,
    validate_family_payload,
    validate_student_payload,
)
from app.enrollsage.modules.notifications.events import emit
from app.enrollsage.modules.schools.models import School
from app.enrollsage.rbac import require_login
from app.enrollsage.storage import StorageError
from app.enrollsage.utils import checkbox

bp = Blueprint("portal", __name__)

_STUDENT_FIELDS = ("first_name", "last_name", "preferred_name", "date_of_birth", "gender", "grade_level", "previous_school")


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _guardians() -> list[Guardian]:
    return guardians_for_user(db_session(), _current_user())


def _households(guardians: list[Guardian]) -> list[Household]:
    seen: dict[int, Household] = {}
    for gdn in guardians:
        seen.setdefault(gdn.household_id, gdn.household)
    return list(seen.values())


def _own_application_or_404(application_id: int) -> Application:
    household_ids = {gdn.household_id for gdn in _guardians()}
    application = db_session().get(Application, application_id)
    if not application or application.household_id not in household_ids:
        abort(404)
    return application


def _open_schools() -> list[School]:
    return (
        db_session()
        .query(School)
        .filter(School.status.in_(("trial", "active")))
        .order_by(School.name.asc())
        .all()
    )


@bp.get("/portal")
@require_login
def index():
    s = db_session()
    guardians = _guardians()
    if not guardians:
        return redirect(url_for("portal.apply_get"))
    households = _households(guardians)
    applications = (
        s.query(Application)
        .filter(Application.household_id.in_([h.id for h in households]))
        .order_by(Application.created_at.desc())
        .all()
    )
    billing = {h.id: household_billing_summary(s, h) for h in households}
    return render_template("portal/index.html", households=households, applications=applications, billing=billing)


# ---------- Applications ----------
@bp.get("/portal/applications")
@require_login
def applications():
    guardians = _guardians()
    if not guardians:
        return redirect(url_for("portal.apply_get"))
    household_ids = [gdn.household_id for gdn in guardians]
    apps = (
        db_session()
        .query(Application)
        .filter(Application.household_id.in_(household_ids))
        .order_by(Application.created_at.desc())
        .all()
    )
    return render_template("portal/applications.html", applications=apps)


@bp.get("/portal/applications/<int:application_id>")
@require_login
def application_detail(application_id: int):
    application = _own_application_or_404(application_id)
    return render_template(
        "portal/application_detail.html",
        application=application,
        document_types=DOCUMENT_TYPES,
        stripe_public_key=current_app.config.get("STRIPE_PUBLIC_KEY"),
    )


@bp.post("/portal/applications/<int:application_id>/documents")
@require_login
def application_document_upload(application_id: int):
    s = db_session()
    application = _own_application_or_404(application_id)
    f = request.files.get("file")
    if not f or not f.filename:
        flash("Choose a file to upload.", "danger")
        return redirect(url_for("portal.application_detail", application_id=application.id))
    try:
        upload_application_document(
            s,
            application,
            file_bytes=f.read(),
            filename=f.filename,
            content_type=f.mimetype,
            document_type=(request.form.get("document_type") or "other").strip(),
            user=_current_user(),
            config=current_app.config,
        )
    except (AdmissionsError, StorageError) as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("portal.application_detail", application_id=application.id))
    s.commit()
    flash("Document uploaded. Thank you!", "success")
    return redirect(url_for("portal.application_detail", application_id=application.id))


# ---------- Apply ----------
@bp.get("/portal/apply")
@require_login
def apply_get():
    guardians = _guardians()
    return render_template(
        "portal/apply.html",
        households=_households(guardians),
        schools=_open_schools(),
        grades=GRADE_LEVELS,
        relationships=RELATIONSHIPS,
    )


@bp.post("/portal/apply")
@require_login
def apply_post():
    s = db_session()
    u = _current_user()
    guardians = _guardians()
    student_payload = {k: request.form.get(f"student_{k}") for k in _STUDENT_FIELDS}

    if guardians:
        household_id = request.form.get("household_id", type=int)
        household = next((h for h in _households(guardians) if h.id == household_id), None)
        if household is None:
            abort(404)
        errors = validate_student_payload(student_payload)
        if errors:
            for e in errors:
                flash(e, "danger")
            return redirect(url_for("portal.apply_get"))
        school = household.school
        student = add_student(s, household, student_payload, u)
    else:
        school = s.get(School, request.form.get("school_id", type=int) or 0)
        if school is None or school.status not in ("trial", "active"):
            flash("Choose a school to apply to.", "danger")
            return redirect(url_for("portal.apply_get"))
        payload = {
            "household": {
                "address_line1": request.form.get("address_line1"),
                "city": request.form.get("city"),
                "state": request.form.get("state"),
                "postal_code": request.form.get("postal_code"),
            },
            "guardians": [
                {
                    "first_name": request.form.get("guardian_first_name") or u.first_name,
                    "last_name": request.form.get("guardian_last_name") or u.last_name,
                    "email": u.email,
                    "phone": request.form.get("guardian_phone"),
                    "relationship": request.form.get("guardian_relationship"),
                    "has_portal_access": True,
                }
            ],
            "students": [student_payload],
        }
        errors = validate_family_payload(payload)
        if errors:
            for e in errors:
                flash(e, "danger")
            return redirect(url_for("portal.apply_get"))
        household = create_family(s, school, payload, u, status="prospective")
        household.guardians[0].user_id = u.id
        student = household.students[0]

    try:
        application = create_application(s, school, student, u, grade=student.grade_level)
        submit_application(s, application, u)
    except AdmissionsError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("portal.apply_get"))
    s.commit()
    emit("application.submitted", {"application_id": application.id})
    flash(f"Application for {student.full_name} submitted to {school.name}.", "success")
    return redirect(url_for("portal.application_detail", application_id=application.id))


# ---------- Billing ----------
@bp.get("/portal/billing")
@require_login
def billing():
    s = db_session()
    guardians = _guardians()
    if not guardians:
        return redirect(url_for("portal.apply_get"))
    households = _households(guardians)
    summaries = {h.id: household_billing_summary(s, h) for h in households}
    return render_template(
        "portal/billing.html",
        households=households,
        summaries=summaries,
        stripe_public_key=current_app.config.get("STRIPE_PUBLIC_KEY"),
    )


# ---------- Settings ----------
@bp.get("/portal/settings")
@require_login
def settings_get():
    guardians = _guardians()
    if not guardians:
        return redirect(url_for("portal.apply_get"))
    return render_template("portal/settings.html", guardians=guardians, households=_households(guardians))


@bp.post("/portal/settings")
@require_login
def settings_post():
    s = db_session()
    u = _current_user()
    guardians = _guardians()
    if not guardians:
        return redirect(url_for("portal.apply_get"))
    guardian = guardians[0]
    household = guardian.household
    try:
        update_guardian(
            s,
            guardian,
            {"phone": request.form.get("phone"), "phone_type": request.form.get("phone_type")},
            u,
        )
        update_household(
            s,
            household,
            {
                "primary_phone": request.form.get("phone"),
                "address_line1": request.form.get("address_line1"),
                "address_line2": request.form.get("address_line2"),
                "city": request.form.get("city"),
                "state": request.form.get("state"),
                "postal_code": request.form.get("postal_code"),
                "auto_pay": checkbox(request.form, "auto_pay"),
            },
            u,
        )
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("portal.settings_get"))
    s.commit()
    flash("Settings saved.", "success")
    return redirect(url_for("portal.settings_get"))
