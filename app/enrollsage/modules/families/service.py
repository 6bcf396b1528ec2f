from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import or_

from app.enrollsage.audit import record_event
from app.enrollsage.constants import GRADE_LEVELS
from app.enrollsage.utils import parse_date

from .models import Guardian, Household, Student

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.enrollsage.models import User
    from app.enrollsage.modules.schools.models import School


HOUSEHOLD_STATUSES = ("prospective", "active", "inactive", "withdrawn")
ENROLLMENT_STATUSES = (
    "prospective",
    "applicant",
    "accepted",
    "waitlisted",
    "enrolled",
    "withdrawn",
    "graduated",
    "denied",
)
RELATIONSHIPS = (
    "mother",
    "father",
    "stepmother",
    "stepfather",
    "grandmother",
    "grandfather",
    "guardian",
    "other",
)
PHONE_TYPES = ("mobile", "home", "work")


def family_name_for(last_name: str) -> str:
    return f"The {last_name.strip()} Family"


def validate_guardian_payload(payload: dict) -> list[str]:
    errors = []
    if not (payload.get("first_name") or "").strip():
        errors.append("Guardian first name is required.")
    if not (payload.get("last_name") or "").strip():
        errors.append("Guardian last name is required.")
    email = (payload.get("email") or "").strip()
    if not email or "@" not in email:
        errors.append("Guardian email is required.")
    rel = (payload.get("relationship") or "").strip()
    if rel and rel not in RELATIONSHIPS:
        errors.append(f"Invalid relationship. Must be one of: {', '.join(RELATIONSHIPS)}")
    phone_type = (payload.get("phone_type") or "").strip()
    if phone_type and phone_type not in PHONE_TYPES:
        errors.append(f"Invalid phone type. Must be one of: {', '.join(PHONE_TYPES)}")
    return errors


def validate_student_payload(payload: dict) -> list[str]:
    errors = []
    if not (payload.get("first_name") or "").strip():
        errors.append("Student first name is required.")
    if not (payload.get("last_name") or "").strip():
        errors.append("Student last name is required.")
    grade = (payload.get("grade_level") or "").strip()
    if not grade:
        errors.append("Student grade is required.")
    elif grade not in GRADE_LEVELS:
        errors.append(f"Invalid grade. Must be one of: {', '.join(GRADE_LEVELS)}")
    dob = (payload.get("date_of_birth") or "").strip()
    if dob:
        try:
            parse_date(dob)
        except ValueError:
            errors.append("Date of birth must be YYYY-MM-DD.")
    return errors


def validate_family_payload(payload: dict) -> list[str]:
    """payload: {"household": {...}, "guardians": [...], "students": [...]}"""
    errors = []
    guardians = payload.get("guardians") or []
    if not guardians:
        errors.append("At least one guardian is required.")
    for i, gp in enumerate(guardians, start=1):
        errors.extend(f"Guardian {i}: {e}" for e in validate_guardian_payload(gp))
    for i, sp in enumerate(payload.get("students") or [], start=1):
        errors.extend(f"Student {i}: {e}" for e in validate_student_payload(sp))
    return errors


def _guardian_from_payload(household: Household, gp: dict, *, primary: bool) -> Guardian:
    now = datetime.utcnow()
    return Guardian(
        household=household,
        first_name=gp["first_name"].strip(),
        last_name=gp["last_name"].strip(),
        email=(gp.get("email") or "").strip().lower() or None,
        phone=(gp.get("phone") or "").strip() or None,
        phone_type=(gp.get("phone_type") or "").strip() or None,
        relationship_type=(gp.get("relationship") or "").strip() or "guardian",
        is_primary=primary,
        has_portal_access=bool(gp.get("has_portal_access")),
        is_billing_contact=primary or bool(gp.get("is_billing_contact")),
        is_emergency_contact=primary or bool(gp.get("is_emergency_contact")),
        can_pickup=gp.get("can_pickup", True) is not False,
        employer=(gp.get("employer") or "").strip() or None,
        occupation=(gp.get("occupation") or "").strip() or None,
        created_at=now,
        updated_at=now,
    )


def _student_from_payload(household: Household, sp: dict, *, status: str) -> Student:
    now = datetime.utcnow()
    return Student(
        school_id=household.school_id,
        household=household,
        first_name=sp["first_name"].strip(),
        last_name=sp["last_name"].strip(),
        preferred_name=(sp.get("preferred_name") or "").strip() or None,
        date_of_birth=parse_date(sp.get("date_of_birth")),
        gender=(sp.get("gender") or "").strip() or None,
        grade_level=(sp.get("grade_level") or "").strip() or None,
        enrollment_status=status,
        medical_notes=(sp.get("medical_notes") or "").strip() or None,
        allergies=(sp.get("allergies") or "").strip() or None,
        medications=(sp.get("medications") or "").strip() or None,
        previous_school=(sp.get("previous_school") or "").strip() or None,
        created_at=now,
        updated_at=now,
    )


def create_family(s: "Session", school: "School", payload: dict, user: "User", *, status: str = "active") -> Household:
    """Create household + guardians (first is primary) + prospective students."""
    hp = payload.get("household") or {}
    guardians = payload.get("guardians") or []
    primary = guardians[0]
    now = datetime.utcnow()

    household = Household(
        school_id=school.id,
        name=(hp.get("name") or "").strip() or family_name_for(primary["last_name"]),
        primary_email=(hp.get("primary_email") or primary.get("email") or "").strip().lower() or None,
        primary_phone=(hp.get("primary_phone") or primary.get("phone") or "").strip() or None,
        address_line1=(hp.get("address_line1") or "").strip() or None,
        address_line2=(hp.get("address_line2") or "").strip() or None,
        city=(hp.get("city") or "").strip() or None,
        state=(hp.get("state") or "").strip() or None,
        postal_code=(hp.get("postal_code") or "").strip() or None,
        status=status,
        notes=(hp.get("notes") or "").strip() or None,
        created_at=now,
        updated_at=now,
    )
    s.add(household)
    for i, gp in enumerate(guardians):
        s.add(_guardian_from_payload(household, gp, primary=i == 0))
    for sp in payload.get("students") or []:
        s.add(_student_from_payload(household, sp, status="prospective"))
    s.flush()

    record_event(
        s,
        actor=user,
        action="family.create",
        entity_type="Household",
        entity_id=str(household.id),
        school_id=school.id,
        metadata={
            "name": household.name,
            "guardians": len(guardians),
            "students": len(payload.get("students") or []),
        },
    )
    return household


def add_guardian(s: "Session", household: Household, payload: dict, user: "User") -> Guardian:
    guardian = _guardian_from_payload(household, payload, primary=not household.guardians)
    s.add(guardian)
    s.flush()
    record_event(
        s,
        actor=user,
        action="family.guardian_add",
        entity_type="Guardian",
        entity_id=str(guardian.id),
        school_id=household.school_id,
        metadata={"household_id": household.id, "email": guardian.email},
    )
    return guardian


def add_student(s: "Session", household: Household, payload: dict, user: "User", *, status: str = "prospective") -> Student:
    student = _student_from_payload(household, payload, status=status)
    s.add(student)
    s.flush()
    record_event(
        s,
        actor=user,
        action="family.student_add",
        entity_type="Student",
        entity_id=str(student.id),
        school_id=household.school_id,
        metadata={"household_id": household.id, "grade": student.grade_level},
    )
    return student


_HOUSEHOLD_FIELDS = (
    "name",
    "primary_email",
    "primary_phone",
    "address_line1",
    "address_line2",
    "city",
    "state",
    "postal_code",
    "notes",
)


def update_household(s: "Session", household: Household, payload: dict, user: "User") -> Household:
    changes = {}
    for key in _HOUSEHOLD_FIELDS:
        if key not in payload:
            continue
        new = (payload.get(key) or "").strip() or None
        if key == "name" and not new:
            continue
        if new != getattr(household, key):
            changes[key] = {"old": getattr(household, key), "new": new}
            setattr(household, key, new)
    status = (payload.get("status") or "").strip()
    if status:
        if status not in HOUSEHOLD_STATUSES:
            raise ValueError(f"Invalid status. Must be one of: {', '.join(HOUSEHOLD_STATUSES)}")
        if status != household.status:
            changes["status"] = {"old": household.status, "new": status}
            household.status = status
    if "auto_pay" in payload and bool(payload["auto_pay"]) != household.auto_pay:
        changes["auto_pay"] = {"old": household.auto_pay, "new": bool(payload["auto_pay"])}
        household.auto_pay = bool(payload["auto_pay"])
    if changes:
        household.updated_at = datetime.utcnow()
        record_event(
            s,
            actor=user,
            action="family.update",
            entity_type="Household",
            entity_id=str(household.id),
            school_id=household.school_id,
            metadata={"changes": changes},
        )
    return household


_STUDENT_FIELDS = (
    "first_name",
    "last_name",
    "preferred_name",
    "gender",
    "grade_level",
    "medical_notes",
    "allergies",
    "medications",
    "previous_school",
    "student_number",
)


def update_student(s: "Session", student: Student, payload: dict, user: "User") -> Student:
    changes = {}
    for key in _STUDENT_FIELDS:
        if key not in payload:
            continue
        new = (payload.get(key) or "").strip() or None
        if key in ("first_name", "last_name") and not new:
            continue
        if key == "grade_level" and new and new not in GRADE_LEVELS:
            raise ValueError(f"Invalid grade. Must be one of: {', '.join(GRADE_LEVELS)}")
        if new != getattr(student, key):
            changes[key] = {"old": getattr(student, key), "new": new}
            setattr(student, key, new)
    if "date_of_birth" in payload:
        dob = parse_date(payload.get("date_of_birth"))
        if dob != student.date_of_birth:
            changes["date_of_birth"] = {"old": str(student.date_of_birth), "new": str(dob)}
            student.date_of_birth = dob
    if changes:
        student.updated_at = datetime.utcnow()
        record_event(
            s,
            actor=user,
            action="student.update",
            entity_type="Student",
            entity_id=str(student.id),
            school_id=student.school_id,
            metadata={"changes": changes},
        )
    return student


def set_student_status(s: "Session", student: Student, status: str, user: "User | None", reason: str | None = None) -> Student:
    if status not in ENROLLMENT_STATUSES:
        raise ValueError(f"Invalid status. Must be one of: {', '.join(ENROLLMENT_STATUSES)}")
    old = student.enrollment_status
    if old == status:
        return student
    student.enrollment_status = status
    student.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="student.status_change",
        entity_type="Student",
        entity_id=str(student.id),
        school_id=student.school_id,
        reason=reason,
        metadata={"from": old, "to": status},
    )
    return student


def search_households(s: "Session", school: "School", q: str = "", status: str = "") -> list[Household]:
    query = s.query(Household).filter(Household.school_id == school.id)
    if q:
        like = f"%{q}%"
        query = query.filter(
            or_(
                Household.name.ilike(like),
                Household.primary_email.ilike(like),
                Household.id.in_(s.query(Guardian.household_id).filter(Guardian.email.ilike(like))),
            )
        )
    if status:
        query = query.filter(Household.status == status)
    return query.order_by(Household.name.asc()).all()


def list_students(s: "Session", school: "School", *, grade: str = "", status: str = "", q: str = "") -> list[Student]:
    query = s.query(Student).filter(Student.school_id == school.id)
    if grade:
        query = query.filter(Student.grade_level == grade)
    if status:
        query = query.filter(Student.enrollment_status == status)
    if q:
        like = f"%{q}%"
        query = query.filter(or_(Student.first_name.ilike(like), Student.last_name.ilike(like)))
    return query.order_by(Student.last_name.asc(), Student.first_name.asc()).all()


def guardians_for_user(s: "Session", user: "User") -> list[Guardian]:
    return (
        s.query(Guardian)
        .filter(Guardian.user_id == user.id, Guardian.has_portal_access.is_(True))
        .order_by(Guardian.id.asc())
        .all()
    )


_GUARDIAN_FIELDS = ("first_name", "last_name", "phone", "phone_type", "employer", "occupation")


def update_guardian(s: "Session", guardian: Guardian, payload: dict, user: "User") -> Guardian:
    changes = {}
    for key in _GUARDIAN_FIELDS:
        if key not in payload:
            continue
        new = (payload.get(key) or "").strip() or None
        if key in ("first_name", "last_name") and not new:
            continue
        if key == "phone_type" and new and new not in PHONE_TYPES:
            raise ValueError(f"Invalid phone type. Must be one of: {', '.join(PHONE_TYPES)}")
        if new != getattr(guardian, key):
            changes[key] = {"old": getattr(guardian, key), "new": new}
            setattr(guardian, key, new)
    if changes:
        guardian.updated_at = datetime.utcnow()
        record_event(
            s,
            actor=user,
            action="guardian.update",
            entity_type="Guardian",
            entity_id=str(guardian.id),
            school_id=guardian.household.school_id,
            metadata={"changes": changes},
        )
    return guardian
