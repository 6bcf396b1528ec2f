"""
Admissions service layer.
Handles leads, lead activities, lead conversion, application status changes and enrollment.
"""
from __future__ import annotations

import hashlib
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import func

from app.enrollsage.audit import record_event
from app.enrollsage.constants import APPLICATION_FEE_CENTS, GRADE_LEVELS
from app.enrollsage.modules.families.models import Guardian, Household, Student
from app.enrollsage.modules.families.service import family_name_for, set_student_status
from app.enrollsage.storage import (
    application_document_key,
    check_document_bytes,
    clean_document_name,
    content_type_for,
    storage_from_config,
)
from app.enrollsage.utils import parse_datetime

from .models import Application, ApplicationChecklistItem, ApplicationDocument, Lead, LeadActivity

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.enrollsage.models import User
    from app.enrollsage.modules.schools.models import School


LEAD_SOURCES = ("website", "referral", "event", "social", "advertisement", "other")
LEAD_STAGES = ("inquiry", "tour_scheduled", "tour_completed", "applied", "converted", "lost")
ACTIVITY_TYPES = (
    "email_sent",
    "email_received",
    "call",
    "meeting",
    "tour",
    "note",
    "stage_change",
    "task_completed",
)
CONTACT_ACTIVITIES = frozenset({"email_sent", "email_received", "call", "meeting", "tour"})

APPLICATION_TYPES = ("new", "re_enrollment", "transfer")
APPLICATION_STATUSES = (
    "draft",
    "submitted",
    "under_review",
    "interview_scheduled",
    "interview_completed",
    "accepted",
    "waitlisted",
    "denied",
    "withdrawn",
    "enrolled",
)
DECISION_STATUSES = frozenset({"accepted", "denied", "waitlisted"})
OPEN_STATUSES = ("submitted", "under_review", "interview_scheduled", "interview_completed")

# Statuses an application may move to from each status.
STATUS_TRANSITIONS = {
    "draft": {"submitted", "withdrawn"},
    "submitted": {"under_review", "interview_scheduled", "accepted", "waitlisted", "denied", "withdrawn"},
    "under_review": {"interview_scheduled", "accepted", "waitlisted", "denied", "withdrawn"},
    "interview_scheduled": {"interview_completed", "accepted", "waitlisted", "denied", "withdrawn"},
    "interview_completed": {"accepted", "waitlisted", "denied", "withdrawn"},
    "waitlisted": {"accepted", "denied", "withdrawn"},
    "accepted": {"enrolled", "withdrawn"},
    "denied": set(),
    "withdrawn": set(),
    "enrolled": {"withdrawn"},
}

DEFAULT_CHECKLIST = (
    "Birth certificate",
    "Immunization records",
    "Previous report card",
    "Application fee",
)

DOCUMENT_TYPES = (
    "birth_certificate",
    "immunization_records",
    "report_card",
    "recommendation",
    "transcript",
    "photo",
    "other",
)

# Students follow their application through these statuses.
_STUDENT_STATUS_FOR = {
    "submitted": "applicant",
    "accepted": "accepted",
    "waitlisted": "waitlisted",
    "denied": "denied",
    "enrolled": "enrolled",
}


class AdmissionsError(ValueError):
    pass


# ---------- Leads ----------
def validate_lead_payload(payload: dict) -> list[str]:
    """Validate lead creation/update payload. Returns list of errors."""
    errors = []
    if not (payload.get("first_name") or "").strip():
        errors.append("First name is required.")
    if not (payload.get("last_name") or "").strip():
        errors.append("Last name is required.")
    email = (payload.get("email") or "").strip()
    if not email or "@" not in email:
        errors.append("A valid email is required.")
    source = (payload.get("source") or "").strip()
    if source and source not in LEAD_SOURCES:
        errors.append(f"Invalid source. Must be one of: {', '.join(LEAD_SOURCES)}")
    n = (payload.get("number_of_students") or "").strip() if isinstance(payload.get("number_of_students"), str) else payload.get("number_of_students")
    if n not in (None, ""):
        try:
            if int(n) < 1:
                raise ValueError
        except (TypeError, ValueError):
            errors.append("Number of students must be a positive whole number.")
    for grade in payload.get("interested_grades") or []:
        if grade not in GRADE_LEVELS:
            errors.append(f"Invalid grade: {grade}")
    return errors


def create_lead(s: "Session", school: "School", payload: dict, user: "User | None") -> Lead:
    now = datetime.utcnow()
    lead = Lead(
        school_id=school.id,
        first_name=payload["first_name"].strip(),
        last_name=payload["last_name"].strip(),
        email=payload["email"].strip().lower(),
        phone=(payload.get("phone") or "").strip() or None,
        source=(payload.get("source") or "").strip() or "website",
        source_detail=(payload.get("source_detail") or "").strip() or None,
        stage="inquiry",
        interested_grades=list(payload.get("interested_grades") or []),
        interested_school_year=(payload.get("interested_school_year") or "").strip() or school.current_school_year,
        number_of_students=int(payload.get("number_of_students") or 1),
        notes=(payload.get("notes") or "").strip() or None,
        assigned_to_user_id=payload.get("assigned_to_user_id") or None,
        next_follow_up_at=parse_datetime(payload.get("next_follow_up_at")),
        created_at=now,
        updated_at=now,
    )
    s.add(lead)
    s.flush()
    record_event(
        s,
        actor=user,
        action="lead.create",
        entity_type="Lead",
        entity_id=str(lead.id),
        school_id=school.id,
        metadata={"email": lead.email, "source": lead.source},
    )
    return lead


_LEAD_FIELDS = ("first_name", "last_name", "email", "phone", "source", "source_detail", "notes", "tour_notes", "interested_school_year")


def update_lead(s: "Session", lead: Lead, payload: dict, user: "User") -> Lead:
    changes = {}
    for key in _LEAD_FIELDS:
        if key not in payload:
            continue
        new = (payload.get(key) or "").strip() or None
        if key in ("first_name", "last_name", "email", "source") and not new:
            continue
        if key == "email":
            new = new.lower()
        if new != getattr(lead, key):
            changes[key] = {"old": getattr(lead, key), "new": new}
            setattr(lead, key, new)
    if "interested_grades" in payload:
        grades = list(payload.get("interested_grades") or [])
        if grades != (lead.interested_grades or []):
            changes["interested_grades"] = {"old": lead.interested_grades, "new": grades}
            lead.interested_grades = grades
    if "number_of_students" in payload and payload["number_of_students"]:
        n = int(payload["number_of_students"])
        if n != lead.number_of_students:
            changes["number_of_students"] = {"old": lead.number_of_students, "new": n}
            lead.number_of_students = n
    if "assigned_to_user_id" in payload:
        assigned = payload.get("assigned_to_user_id") or None
        if assigned != lead.assigned_to_user_id:
            changes["assigned_to_user_id"] = {"old": lead.assigned_to_user_id, "new": assigned}
            lead.assigned_to_user_id = assigned
    if "next_follow_up_at" in payload:
        nf = parse_datetime(payload.get("next_follow_up_at"))
        if nf != lead.next_follow_up_at:
            changes["next_follow_up_at"] = {"old": str(lead.next_follow_up_at), "new": str(nf)}
            lead.next_follow_up_at = nf
    if changes:
        lead.updated_at = datetime.utcnow()
        record_event(
            s,
            actor=user,
            action="lead.update",
            entity_type="Lead",
            entity_id=str(lead.id),
            school_id=lead.school_id,
            metadata={"changes": changes},
        )
    return lead


def log_lead_activity(
    s: "Session",
    lead: Lead,
    *,
    type: str,
    user: "User | None",
    subject: str | None = None,
    description: str | None = None,
    metadata: dict | None = None,
) -> LeadActivity:
    if type not in ACTIVITY_TYPES:
        raise AdmissionsError(f"Invalid activity type. Must be one of: {', '.join(ACTIVITY_TYPES)}")
    now = datetime.utcnow()
    activity = LeadActivity(
        lead=lead,
        type=type,
        subject=(subject or "").strip() or None,
        description=(description or "").strip() or None,
        metadata_json=metadata,
        performed_by_user_id=user.id if user else None,
        created_at=now,
    )
    s.add(activity)
    if type in CONTACT_ACTIVITIES:
        lead.last_contacted_at = now
    lead.updated_at = now
    s.flush()
    return activity


def update_lead_stage(
    s: "Session",
    lead: Lead,
    stage: str,
    user: "User",
    *,
    when: datetime | None = None,
    reason: str | None = None,
) -> Lead:
    if stage not in LEAD_STAGES:
        raise AdmissionsError(f"Invalid stage. Must be one of: {', '.join(LEAD_STAGES)}")
    if lead.stage == "converted":
        raise AdmissionsError("Converted leads cannot change stage.")
    if stage == "converted":
        raise AdmissionsError("Use Convert to turn a lead into a family.")
    old = lead.stage
    if old == stage:
        return lead
    now = datetime.utcnow()
    lead.stage = stage
    if stage == "tour_scheduled":
        lead.tour_scheduled_at = when or now
    elif stage == "tour_completed":
        lead.tour_completed_at = when or now
    elif stage == "lost":
        lead.lost_reason = (reason or "").strip() or None
        lead.lost_at = now
    lead.updated_at = now

    log_lead_activity(
        s,
        lead,
        type="stage_change",
        user=user,
        subject=f"Stage changed from {old} to {stage}",
        description=reason,
        metadata={"from": old, "to": stage},
    )
    record_event(
        s,
        actor=user,
        action="lead.stage_change",
        entity_type="Lead",
        entity_id=str(lead.id),
        school_id=lead.school_id,
        reason=reason,
        metadata={"from": old, "to": stage},
    )
    return lead


def convert_lead(s: "Session", lead: Lead, school: "School", user: "User") -> tuple[Household, Application]:
    """Lead -> household + primary guardian + applicant students + draft application for the first."""
    if lead.stage == "converted" or lead.converted_household_id:
        raise AdmissionsError("This lead has already been converted.")
    now = datetime.utcnow()

    household = Household(
        school_id=school.id,
        name=family_name_for(lead.last_name),
        primary_email=lead.email,
        primary_phone=lead.phone,
        status="prospective",
        created_at=now,
        updated_at=now,
    )
    s.add(household)
    s.add(
        Guardian(
            household=household,
            first_name=lead.first_name,
            last_name=lead.last_name,
            email=lead.email,
            phone=lead.phone,
            relationship_type="guardian",
            is_primary=True,
            is_billing_contact=True,
            is_emergency_contact=True,
            created_at=now,
            updated_at=now,
        )
    )
    grade = (lead.interested_grades or ["K"])[0]
    students = []
    for i in range(max(1, lead.number_of_students or 1)):
        student = Student(
            school_id=school.id,
            household=household,
            first_name="Student" if i == 0 else f"Student {i + 1}",
            last_name=lead.last_name,
            grade_level=grade,
            enrollment_status="applicant",
            created_at=now,
            updated_at=now,
        )
        s.add(student)
        students.append(student)
    s.flush()

    application = Application(
        school_id=school.id,
        student_id=students[0].id,
        household_id=household.id,
        lead_id=lead.id,
        school_year=lead.interested_school_year or school.current_school_year,
        grade_applying_for=grade,
        type="new",
        status="draft",
        application_fee_amount=APPLICATION_FEE_CENTS,
        created_at=now,
        updated_at=now,
    )
    s.add(application)
    _add_default_checklist(application)

    old_stage = lead.stage
    lead.stage = "converted"
    lead.converted_household_id = household.id
    lead.converted_at = now
    lead.updated_at = now
    s.flush()

    log_lead_activity(
        s,
        lead,
        type="stage_change",
        user=user,
        subject=f"Converted to {household.name}",
        metadata={"from": old_stage, "to": "converted", "household_id": household.id},
    )
    record_event(
        s,
        actor=user,
        action="lead.convert",
        entity_type="Lead",
        entity_id=str(lead.id),
        school_id=school.id,
        metadata={"household_id": household.id, "application_id": application.id, "students": len(students)},
    )
    return household, application


# ---------- Applications ----------
def _add_default_checklist(application: Application) -> None:
    for i, label in enumerate(DEFAULT_CHECKLIST):
        application.checklist.append(ApplicationChecklistItem(label=label, sort_order=i))


def create_application(
    s: "Session",
    school: "School",
    student: Student,
    user: "User | None",
    *,
    school_year: str | None = None,
    grade: str | None = None,
    type: str = "new",
    status: str = "draft",
) -> Application:
    if type not in APPLICATION_TYPES:
        raise AdmissionsError(f"Invalid application type. Must be one of: {', '.join(APPLICATION_TYPES)}")
    grade = grade or student.grade_level
    if not grade or grade not in GRADE_LEVELS:
        raise AdmissionsError("A valid grade is required.")
    now = datetime.utcnow()
    application = Application(
        school_id=school.id,
        student_id=student.id,
        household_id=student.household_id,
        school_year=school_year or school.current_school_year,
        grade_applying_for=grade,
        type=type,
        status=status,
        submitted_at=now if status == "submitted" else None,
        application_fee_amount=APPLICATION_FEE_CENTS,
        created_at=now,
        updated_at=now,
    )
    s.add(application)
    _add_default_checklist(application)
    s.flush()
    record_event(
        s,
        actor=user,
        action="application.create",
        entity_type="Application",
        entity_id=str(application.id),
        school_id=school.id,
        metadata={"student_id": student.id, "status": status, "grade": grade},
    )
    return application


def submit_application(s: "Session", application: Application, user: "User | None") -> Application:
    if application.status != "draft":
        raise AdmissionsError("Only draft applications can be submitted.")
    now = datetime.utcnow()
    application.status = "submitted"
    application.submitted_at = now
    application.updated_at = now
    set_student_status(s, application.student, "applicant", user)
    record_event(
        s,
        actor=user,
        action="application.submit",
        entity_type="Application",
        entity_id=str(application.id),
        school_id=application.school_id,
    )
    return application


def next_waitlist_position(s: "Session", application: Application) -> int:
    s.flush()
    current = (
        s.query(func.max(Application.waitlist_position))
        .filter(
            Application.school_id == application.school_id,
            Application.school_year == application.school_year,
            Application.grade_applying_for == application.grade_applying_for,
            Application.status == "waitlisted",
        )
        .scalar()
    )
    return (current or 0) + 1


def update_application_status(
    s: "Session",
    application: Application,
    status: str,
    user: "User",
    *,
    notes: str | None = None,
    interview_at: datetime | None = None,
    waitlist_position: int | None = None,
) -> Application:
    if status not in APPLICATION_STATUSES:
        raise AdmissionsError(f"Invalid status. Must be one of: {', '.join(APPLICATION_STATUSES)}")
    old = application.status
    if old == status:
        return application
    if status == "enrolled":
        raise AdmissionsError("Use Enroll to enroll an accepted student.")
    if status not in STATUS_TRANSITIONS.get(old, set()):
        raise AdmissionsError(f"Cannot move an application from {old} to {status}.")
    if status == "interview_scheduled" and interview_at is None:
        raise AdmissionsError("An interview date is required.")

    now = datetime.utcnow()
    application.status = status
    application.updated_at = now
    notes = (notes or "").strip() or None

    if status in DECISION_STATUSES:
        application.decision_at = now
        application.decision_by_user_id = user.id
        if notes:
            application.decision_notes = notes
    if status == "interview_scheduled":
        application.interview_scheduled_at = interview_at
    elif status == "interview_completed":
        application.interview_completed_at = now
        if notes:
            application.interview_notes = notes
    if status == "waitlisted":
        application.waitlist_position = waitlist_position or next_waitlist_position(s, application)
        if notes:
            application.waitlist_notes = notes
    elif old == "waitlisted":
        application.waitlist_position = None
    if status == "submitted" and not application.submitted_at:
        application.submitted_at = now

    student_status = _STUDENT_STATUS_FOR.get(status)
    if status == "withdrawn":
        student_status = "withdrawn" if application.student.enrollment_status == "enrolled" else "prospective"
    if student_status:
        set_student_status(s, application.student, student_status, user)

    record_event(
        s,
        actor=user,
        action="application.status_change",
        entity_type="Application",
        entity_id=str(application.id),
        school_id=application.school_id,
        reason=notes,
        metadata={"from": old, "to": status},
    )
    return application


def enroll_student(s: "Session", application: Application, user: "User") -> Application:
    if application.status != "accepted":
        raise AdmissionsError("Only accepted applications can be enrolled.")
    now = datetime.utcnow()
    application.status = "enrolled"
    application.updated_at = now
    set_student_status(s, application.student, "enrolled", user)
    household = application.household
    if household.status != "active":
        household.status = "active"
        household.updated_at = now
    record_event(
        s,
        actor=user,
        action="application.enroll",
        entity_type="Application",
        entity_id=str(application.id),
        school_id=application.school_id,
        metadata={"student_id": application.student_id},
    )
    return application


def mark_application_fee_paid(s: "Session", application: Application, payment_intent_id: str | None) -> Application:
    if application.application_fee_paid:
        return application
    now = datetime.utcnow()
    application.application_fee_paid = True
    application.application_fee_paid_at = now
    application.application_fee_payment_intent_id = payment_intent_id
    for item in application.checklist:
        if item.label == "Application fee" and not item.is_completed:
            item.is_completed = True
            item.completed_at = now
    record_event(
        s,
        actor=None,
        action="application.fee_paid",
        entity_type="Application",
        entity_id=str(application.id),
        school_id=application.school_id,
        metadata={"payment_intent_id": payment_intent_id},
    )
    return application


def toggle_checklist_item(s: "Session", item: ApplicationChecklistItem, user: "User") -> ApplicationChecklistItem:
    item.is_completed = not item.is_completed
    item.completed_at = datetime.utcnow() if item.is_completed else None
    item.completed_by_user_id = user.id if item.is_completed else None
    record_event(
        s,
        actor=user,
        action="application.checklist_toggle",
        entity_type="Application",
        entity_id=str(item.application_id),
        school_id=item.application.school_id,
        metadata={"item": item.label, "completed": item.is_completed},
    )
    return item


def upload_application_document(
    s: "Session",
    application: Application,
    *,
    file_bytes: bytes,
    filename: str,
    content_type: str | None,
    document_type: str,
    user: "User",
    config: dict,
) -> ApplicationDocument:
    if document_type not in DOCUMENT_TYPES:
        raise AdmissionsError(f"Invalid document type. Must be one of: {', '.join(DOCUMENT_TYPES)}")
    safe_name = clean_document_name(filename)
    check_document_bytes(file_bytes)
    digest = hashlib.sha256(file_bytes).hexdigest()
    storage_key = application_document_key(application.school_id, application.id, digest, safe_name)
    content_type = content_type_for(safe_name, content_type)

    storage_from_config(config).put_bytes(storage_key, file_bytes, content_type=content_type)

    doc = ApplicationDocument(
        application=application,
        document_type=document_type,
        storage_key=storage_key,
        original_filename=safe_name,
        content_type=content_type,
        size_bytes=len(file_bytes),
        sha256=digest,
        uploaded_by_user_id=user.id,
        uploaded_at=datetime.utcnow(),
    )
    s.add(doc)
    s.flush()
    record_event(
        s,
        actor=user,
        action="application.document_upload",
        entity_type="ApplicationDocument",
        entity_id=str(doc.id),
        school_id=application.school_id,
        metadata={"application_id": application.id, "filename": safe_name, "sha256": digest},
    )
    return doc


def pipeline_stats(s: "Session", school: "School") -> dict:
    leads = dict(
        s.query(Lead.stage, func.count(Lead.id)).filter(Lead.school_id == school.id).group_by(Lead.stage).all()
    )
    apps = dict(
        s.query(Application.status, func.count(Application.id))
        .filter(Application.school_id == school.id)
        .group_by(Application.status)
        .all()
    )
    enrolled = (
        s.query(func.count(Student.id))
        .filter(Student.school_id == school.id, Student.enrollment_status == "enrolled")
        .scalar()
        or 0
    )
    return {
        "leads_by_stage": {k: leads.get(k, 0) for k in LEAD_STAGES},
        "applications_by_status": {k: apps.get(k, 0) for k in APPLICATION_STATUSES},
        "open_leads": sum(leads.get(k, 0) for k in ("inquiry", "tour_scheduled", "tour_completed", "applied")),
        "pending_review": sum(apps.get(k, 0) for k in OPEN_STATUSES),
        "enrolled_students": enrolled,
    }
