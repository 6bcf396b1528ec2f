from __future__ import annotations

from flask import Blueprint, abort, current_app, flash, g, redirect, render_template, request, send_file, url_for

from app.enrollsage.audit import record_event
from app.enrollsage.constants import GRADE_LEVELS
from app.enrollsage.db import db_session
from app.enrollsage.models import User
from app.enrollsage.modules.admissions.models import (
    Application,
    ApplicationChecklistItem,
    ApplicationDocument,
    Lead,
    LeadActivity,
)
from app.enrollsage.modules.admissions.service import (
    ACTIVITY_TYPES,
    APPLICATION_STATUSES,
    DOCUMENT_TYPES,
    LEAD_SOURCES,
    LEAD_STAGES,
    STATUS_TRANSITIONS,
    AdmissionsError,
    convert_lead,
    create_lead,
    enroll_student,
    log_lead_activity,
    pipeline_stats,
    submit_application,
    toggle_checklist_item,
    update_application_status,
    update_lead,
    update_lead_stage,
    upload_application_document,
    validate_lead_payload,
)
from app.enrollsage.modules.billing.service import school_billing_stats
from app.enrollsage.modules.notifications.events import emit
from app.enrollsage.rbac import require_permission, user_has_permission
from app.enrollsage.storage import StorageError, storage_from_config
from app.enrollsage.utils import parse_datetime

bp = Blueprint("admissions", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _lead_or_404(lead_id: int) -> Lead:
    lead = db_session().get(Lead, lead_id)
    if not lead or lead.school_id != g.current_school.id:
        abort(404)
    return lead


def _application_or_404(application_id: int) -> Application:
    app_ = db_session().get(Application, application_id)
    if not app_ or app_.school_id != g.current_school.id:
        abort(404)
    return app_


def _lead_payload() -> dict:
    return {
        "first_name": request.form.get("first_name"),
        "last_name": request.form.get("last_name"),
        "email": request.form.get("email"),
        "phone": request.form.get("phone"),
        "source": request.form.get("source"),
        "source_detail": request.form.get("source_detail"),
        "interested_grades": request.form.getlist("interested_grades"),
        "interested_school_year": request.form.get("interested_school_year"),
        "number_of_students": request.form.get("number_of_students"),
        "notes": request.form.get("notes"),
        "next_follow_up_at": request.form.get("next_follow_up_at"),
    }


# ---------- Dashboard ----------
@bp.get("/admin")
@require_permission("dashboard.view")
def dashboard():
    s = db_session()
    school = g.current_school
    u = _current_user()
    recent_leads = (
        s.query(Lead).filter(Lead.school_id == school.id).order_by(Lead.created_at.desc()).limit(5).all()
    )
    recent_applications = (
        s.query(Application)
        .filter(Application.school_id == school.id, Application.status != "draft")
        .order_by(Application.updated_at.desc())
        .limit(5)
        .all()
    )
    billing = school_billing_stats(s, school) if user_has_permission(u, "billing.view") or u.is_superadmin else None
    return render_template(
        "admin/dashboard.html",
        stats=pipeline_stats(s, school),
        billing=billing,
        recent_leads=recent_leads,
        recent_applications=recent_applications,
    )


# ---------- Leads ----------
@bp.get("/admin/leads")
@require_permission("leads.view")
def leads_list():
    s = db_session()
    search = (request.args.get("q") or "").strip()
    stage_filter = (request.args.get("stage") or "").strip()

    q = s.query(Lead).filter(Lead.school_id == g.current_school.id)
    if search:
        like = f"%{search}%"
        q = q.filter(Lead.first_name.ilike(like) | Lead.last_name.ilike(like) | Lead.email.ilike(like))
    if stage_filter:
        q = q.filter(Lead.stage == stage_filter)
    leads = q.order_by(Lead.created_at.desc()).all()
    return render_template(
        "admin/leads/list.html", leads=leads, search=search, stage_filter=stage_filter, stages=LEAD_STAGES
    )


@bp.get("/admin/leads/new")
@require_permission("leads.edit")
def leads_new_get():
    return render_template("admin/leads/new.html", sources=LEAD_SOURCES, grades=GRADE_LEVELS)


@bp.post("/admin/leads/new")
@require_permission("leads.edit")
def leads_new_post():
    s = db_session()
    payload = _lead_payload()
    errors = validate_lead_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("admissions.leads_new_get"))
    lead = create_lead(s, g.current_school, payload, _current_user())
    s.commit()
    flash(f"Lead {lead.full_name} created.", "success")
    return redirect(url_for("admissions.lead_detail", lead_id=lead.id))


@bp.get("/admin/leads/<int:lead_id>")
@require_permission("leads.view")
def lead_detail(lead_id: int):
    s = db_session()
    lead = _lead_or_404(lead_id)
    activities = (
        s.query(LeadActivity).filter(LeadActivity.lead_id == lead.id).order_by(LeadActivity.created_at.desc()).all()
    )
    return render_template(
        "admin/leads/detail.html",
        lead=lead,
        activities=activities,
        stages=LEAD_STAGES,
        sources=LEAD_SOURCES,
        activity_types=[t for t in ACTIVITY_TYPES if t != "stage_change"],
        grades=GRADE_LEVELS,
    )


@bp.post("/admin/leads/<int:lead_id>/edit")
@require_permission("leads.edit")
def lead_edit(lead_id: int):
    s = db_session()
    lead = _lead_or_404(lead_id)
    payload = {k: v for k, v in _lead_payload().items() if k in request.form or k == "interested_grades"}
    errors = validate_lead_payload({**{"first_name": lead.first_name, "last_name": lead.last_name, "email": lead.email}, **payload})
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("admissions.lead_detail", lead_id=lead.id))
    update_lead(s, lead, payload, _current_user())
    s.commit()
    flash("Lead updated.", "success")
    return redirect(url_for("admissions.lead_detail", lead_id=lead.id))


@bp.post("/admin/leads/<int:lead_id>/activities")
@require_permission("leads.edit")
def lead_activity(lead_id: int):
    s = db_session()
    lead = _lead_or_404(lead_id)
    try:
        log_lead_activity(
            s,
            lead,
            type=(request.form.get("type") or "note").strip(),
            user=_current_user(),
            subject=request.form.get("subject"),
            description=request.form.get("description"),
        )
    except AdmissionsError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("admissions.lead_detail", lead_id=lead.id))
    s.commit()
    flash("Activity logged.", "success")
    return redirect(url_for("admissions.lead_detail", lead_id=lead.id))


@bp.post("/admin/leads/<int:lead_id>/stage")
@require_permission("leads.edit")
def lead_stage(lead_id: int):
    s = db_session()
    lead = _lead_or_404(lead_id)
    try:
        update_lead_stage(
            s,
            lead,
            (request.form.get("stage") or "").strip(),
            _current_user(),
            when=parse_datetime(request.form.get("when")),
            reason=request.form.get("reason"),
        )
    except (AdmissionsError, ValueError) as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("admissions.lead_detail", lead_id=lead.id))
    s.commit()
    flash(f"Lead moved to {lead.stage.replace('_', ' ')}.", "success")
    return redirect(url_for("admissions.lead_detail", lead_id=lead.id))


@bp.post("/admin/leads/<int:lead_id>/convert")
@require_permission("leads.edit")
def lead_convert(lead_id: int):
    s = db_session()
    lead = _lead_or_404(lead_id)
    try:
        household, application = convert_lead(s, lead, g.current_school, _current_user())
    except AdmissionsError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("admissions.lead_detail", lead_id=lead.id))
    s.commit()
    flash(f"Lead converted to {household.name}. A draft application was created.", "success")
    return redirect(url_for("admissions.application_detail", application_id=application.id))


# ---------- Applications ----------
@bp.get("/admin/applications")
@require_permission("applications.view")
def applications_list():
    s = db_session()
    status_filter = (request.args.get("status") or "").strip()
    grade = (request.args.get("grade") or "").strip()
    year = (request.args.get("year") or "").strip()

    q = s.query(Application).filter(Application.school_id == g.current_school.id)
    if status_filter:
        q = q.filter(Application.status == status_filter)
    if grade:
        q = q.filter(Application.grade_applying_for == grade)
    if year:
        q = q.filter(Application.school_year == year)
    applications = q.order_by(Application.created_at.desc()).all()
    return render_template(
        "admin/applications/list.html",
        applications=applications,
        status_filter=status_filter,
        grade=grade,
        year=year,
        statuses=APPLICATION_STATUSES,
        grades=GRADE_LEVELS,
    )


@bp.get("/admin/applications/<int:application_id>")
@require_permission("applications.view")
def application_detail(application_id: int):
    application = _application_or_404(application_id)
    return render_template(
        "admin/applications/detail.html",
        application=application,
        next_statuses=sorted(STATUS_TRANSITIONS.get(application.status, set()) - {"enrolled"}),
        document_types=DOCUMENT_TYPES,
    )


@bp.post("/admin/applications/<int:application_id>/submit")
@require_permission("applications.decide")
def application_submit(application_id: int):
    s = db_session()
    application = _application_or_404(application_id)
    try:
        submit_application(s, application, _current_user())
    except AdmissionsError as e:
        flash(str(e), "danger")
        return redirect(url_for("admissions.application_detail", application_id=application.id))
    s.commit()
    emit("application.submitted", {"application_id": application.id})
    flash("Application submitted.", "success")
    return redirect(url_for("admissions.application_detail", application_id=application.id))


@bp.post("/admin/applications/<int:application_id>/status")
@require_permission("applications.decide")
def application_status(application_id: int):
    s = db_session()
    application = _application_or_404(application_id)
    old = application.status
    position = (request.form.get("waitlist_position") or "").strip()
    try:
        update_application_status(
            s,
            application,
            (request.form.get("status") or "").strip(),
            _current_user(),
            notes=request.form.get("notes"),
            interview_at=parse_datetime(request.form.get("interview_at")),
            waitlist_position=int(position) if position.isdigit() else None,
        )
    except (AdmissionsError, ValueError) as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("admissions.application_detail", application_id=application.id))
    s.commit()
    if application.status != old:
        emit("application.status_changed", {"application_id": application.id, "from": old, "to": application.status})
    flash(f"Application is now {application.status.replace('_', ' ')}.", "success")
    return redirect(url_for("admissions.application_detail", application_id=application.id))


@bp.post("/admin/applications/<int:application_id>/enroll")
@require_permission("applications.decide")
def application_enroll(application_id: int):
    s = db_session()
    application = _application_or_404(application_id)
    try:
        enroll_student(s, application, _current_user())
    except AdmissionsError as e:
        flash(str(e), "danger")
        return redirect(url_for("admissions.application_detail", application_id=application.id))
    s.commit()
    emit("enrollment.confirmed", {"application_id": application.id})
    flash(f"{application.student.full_name} is enrolled.", "success")
    return redirect(url_for("admissions.application_detail", application_id=application.id))


@bp.post("/admin/applications/<int:application_id>/checklist/<int:item_id>")
@require_permission("applications.decide")
def application_checklist_toggle(application_id: int, item_id: int):
    s = db_session()
    application = _application_or_404(application_id)
    item = s.get(ApplicationChecklistItem, item_id)
    if not item or item.application_id != application.id:
        abort(404)
    toggle_checklist_item(s, item, _current_user())
    s.commit()
    return redirect(url_for("admissions.application_detail", application_id=application.id))


@bp.post("/admin/applications/<int:application_id>/documents")
@require_permission("applications.decide")
def application_document_upload(application_id: int):
    s = db_session()
    application = _application_or_404(application_id)
    f = request.files.get("file")
    if not f or not f.filename:
        flash("Choose a file to upload.", "danger")
        return redirect(url_for("admissions.application_detail", application_id=application.id))
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
        return redirect(url_for("admissions.application_detail", application_id=application.id))
    s.commit()
    flash("Document uploaded.", "success")
    return redirect(url_for("admissions.application_detail", application_id=application.id))


@bp.get("/admin/applications/<int:application_id>/documents/<int:doc_id>/download")
@require_permission("applications.view")
def application_document_download(application_id: int, doc_id: int):
    s = db_session()
    application = _application_or_404(application_id)
    doc = s.get(ApplicationDocument, doc_id)
    if not doc or doc.application_id != application.id:
        abort(404)
    try:
        fobj = storage_from_config(current_app.config).open(doc.storage_key)
    except StorageError:
        abort(404)
    record_event(
        s,
        actor=_current_user(),
        action="application.document_download",
        entity_type="ApplicationDocument",
        entity_id=str(doc.id),
        school_id=application.school_id,
        metadata={"application_id": application.id, "filename": doc.original_filename},
    )
    s.commit()
    return send_file(
        fobj,
        mimetype=doc.content_type,
        as_attachment=True,
        download_name=doc.original_filename,
        max_age=0,
    )
