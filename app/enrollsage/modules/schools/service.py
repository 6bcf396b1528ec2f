"""
Schools service layer.
Handles school CRUD, status changes, school years and platform-wide user administration.
"""
from __future__ import annotations

import re
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import func

from app.enrollsage.audit import record_event
from app.enrollsage.constants import DEFAULT_SCHOOL_YEAR, GRADE_LEVELS, USER_ROLES
from app.enrollsage.models import User, UserSession
from app.enrollsage.utils import parse_date, slugify

from .models import School, SchoolMember, SchoolYear

if TYPE_CHECKING:
    from sqlalchemy.orm import Session


VALID_STATUSES = ("trial", "active", "suspended", "cancelled")
TRIAL_DAYS = 30
_HEX_COLOR = re.compile(r"^#[0-9A-Fa-f]{6}$")
_YEAR_NAME = re.compile(r"^\d{4}-\d{4}$")


def validate_school_payload(payload: dict) -> list[str]:
    """Validate school creation/update payload. Returns list of errors."""
    errors = []
    if not (payload.get("name") or "").strip():
        errors.append("School name is required.")
    status = (payload.get("status") or "").strip()
    if status and status not in VALID_STATUSES:
        errors.append(f"Invalid status. Must be one of: {', '.join(VALID_STATUSES)}")
    for key in ("primary_color", "secondary_color"):
        color = (payload.get(key) or "").strip()
        if color and not _HEX_COLOR.match(color):
            errors.append(f"{key.replace('_', ' ').capitalize()} must be a hex color like #5B7F6D.")
    year = (payload.get("current_school_year") or "").strip()
    if year and not _YEAR_NAME.match(year):
        errors.append("School year must look like 2025-2026.")
    email = (payload.get("email") or "").strip()
    if email and "@" not in email:
        errors.append("Contact email is invalid.")
    owner_email = (payload.get("owner_email") or "").strip()
    if owner_email and "@" not in owner_email:
        errors.append("Owner email is invalid.")
    return errors


def parse_grades(raw) -> list[str]:
    if isinstance(raw, (list, tuple)):
        values = [str(v).strip() for v in raw]
    else:
        values = [v.strip() for v in (raw or "").split(",")]
    return [g for g in GRADE_LEVELS if g in set(values)]


def create_school(s: "Session", payload: dict, user: User) -> School:
    """Create a school in trial. Raises ValueError on duplicate slug."""
    name = (payload.get("name") or "").strip()
    slug = slugify((payload.get("slug") or "").strip() or name)
    if not slug:
        raise ValueError("A school slug could not be derived from the name.")
    if s.query(School.id).filter(School.slug == slug).first() is not None:
        raise ValueError("A school with this slug already exists.")

    now = datetime.utcnow()
    school = School(
        name=name,
        slug=slug,
        subdomain=(payload.get("subdomain") or "").strip().lower() or None,
        timezone=(payload.get("timezone") or "").strip() or "America/New_York",
        current_school_year=(payload.get("current_school_year") or "").strip() or DEFAULT_SCHOOL_YEAR,
        grades_offered=parse_grades(payload.get("grades_offered")) or list(GRADE_LEVELS[1:]),
        email=(payload.get("email") or "").strip() or None,
        phone=(payload.get("phone") or "").strip() or None,
        website=(payload.get("website") or "").strip() or None,
        status="trial",
        trial_ends_at=now + timedelta(days=TRIAL_DAYS),
        created_at=now,
        updated_at=now,
    )
    s.add(school)
    s.flush()

    record_event(
        s,
        actor=user,
        action="school.create",
        entity_type="School",
        entity_id=str(school.id),
        school_id=school.id,
        metadata={"name": school.name, "slug": school.slug},
    )

    owner_email = (payload.get("owner_email") or "").strip().lower()
    if owner_email:
        attach_owner(s, school, owner_email, user)
    return school


def attach_owner(s: "Session", school: School, email: str, user: User) -> None:
    """Existing accounts become owners immediately; anyone else gets an owner invitation."""
    owner = s.query(User).filter(User.email == email).one_or_none()
    if owner is None:
        from app.enrollsage.modules.team.service import send_invitation

        send_invitation(s, school, email=email, school_role="owner", inviter=user)
        return
    if owner.role == "customer":
        owner.role = "admin"
    now = datetime.utcnow()
    member = (
        s.query(SchoolMember)
        .filter(SchoolMember.user_id == owner.id, SchoolMember.school_id == school.id)
        .one_or_none()
    )
    if member is None:
        member = SchoolMember(user_id=owner.id, school_id=school.id, invited_by_user_id=user.id, invited_at=now)
        s.add(member)
    member.role = "owner"
    member.status = "active"
    member.accepted_at = member.accepted_at or now
    s.flush()
    record_event(
        s,
        actor=user,
        action="school.owner_attached",
        entity_type="School",
        entity_id=str(school.id),
        school_id=school.id,
        metadata={"email": email},
    )


_UPDATABLE = (
    "name",
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
)


def update_school(s: "Session", school: School, payload: dict, user: User, reason: str | None = None) -> School:
    """Update an existing school."""
    changes = {}
    for key in _UPDATABLE:
        if key not in payload:
            continue
        new = (payload.get(key) or "").strip() or None
        if key == "google_client_secret" and new is None:
            # Blank secret field means "keep current".
            continue
        if key in ("name", "timezone", "current_school_year", "primary_color", "secondary_color") and new is None:
            continue
        old = getattr(school, key)
        if new != old:
            changes[key] = {"old": "***" if key == "google_client_secret" else old, "new": "***" if key == "google_client_secret" else new}
            setattr(school, key, new)

    if "grades_offered" in payload:
        grades = parse_grades(payload.get("grades_offered"))
        if grades != (school.grades_offered or []):
            changes["grades_offered"] = {"old": school.grades_offered, "new": grades}
            school.grades_offered = grades

    if changes:
        school.updated_at = datetime.utcnow()
        record_event(
            s,
            actor=user,
            action="school.update",
            entity_type="School",
            entity_id=str(school.id),
            school_id=school.id,
            reason=reason,
            metadata={"changes": changes},
        )
    return school


def set_school_status(s: "Session", school: School, status: str, user: User, reason: str | None = None) -> School:
    if status not in VALID_STATUSES:
        raise ValueError(f"Invalid status. Must be one of: {', '.join(VALID_STATUSES)}")
    old = school.status
    if old == status:
        return school
    school.status = status
    school.updated_at = datetime.utcnow()
    if status == "active":
        school.trial_ends_at = None
    record_event(
        s,
        actor=user,
        action="school.status_change",
        entity_type="School",
        entity_id=str(school.id),
        school_id=school.id,
        reason=reason,
        metadata={"from": old, "to": status},
    )
    return school


# ---------- School years ----------
def create_school_year(s: "Session", school: School, payload: dict, user: User) -> SchoolYear:
    name = (payload.get("name") or "").strip()
    if not _YEAR_NAME.match(name):
        raise ValueError("School year must look like 2025-2026.")
    start = parse_date(payload.get("start_date"))
    end = parse_date(payload.get("end_date"))
    if not start or not end:
        raise ValueError("Start and end dates are required.")
    if end <= start:
        raise ValueError("End date must be after start date.")
    if s.query(SchoolYear.id).filter(SchoolYear.school_id == school.id, SchoolYear.name == name).first():
        raise ValueError(f"School year {name} already exists.")

    year = SchoolYear(
        school_id=school.id,
        name=name,
        start_date=start,
        end_date=end,
        enrollment_open_date=parse_date(payload.get("enrollment_open_date")),
        enrollment_close_date=parse_date(payload.get("enrollment_close_date")),
        is_current=False,
    )
    s.add(year)
    s.flush()
    record_event(
        s,
        actor=user,
        action="school_year.create",
        entity_type="SchoolYear",
        entity_id=str(year.id),
        school_id=school.id,
        metadata={"name": name},
    )
    if payload.get("is_current"):
        set_current_school_year(s, school, year, user)
    return year


def set_current_school_year(s: "Session", school: School, year: SchoolYear, user: User) -> SchoolYear:
    for other in s.query(SchoolYear).filter(SchoolYear.school_id == school.id).all():
        other.is_current = other.id == year.id
    school.current_school_year = year.name
    school.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="school_year.set_current",
        entity_type="SchoolYear",
        entity_id=str(year.id),
        school_id=school.id,
        metadata={"name": year.name},
    )
    return year


# ---------- Platform ----------
def platform_stats(s: "Session") -> dict:
    from app.enrollsage.modules.admissions.models import Application
    from app.enrollsage.modules.families.models import Household

    by_status = dict(s.query(School.status, func.count(School.id)).group_by(School.status).all())
    return {
        "schools_total": sum(by_status.values()),
        "schools_by_status": {k: by_status.get(k, 0) for k in VALID_STATUSES},
        "users_total": s.query(func.count(User.id)).scalar() or 0,
        "families_total": s.query(func.count(Household.id)).scalar() or 0,
        "applications_total": s.query(func.count(Application.id)).scalar() or 0,
    }


def set_user_role(s: "Session", target: User, role: str, user: User) -> User:
    if role not in USER_ROLES:
        raise ValueError(f"Invalid role. Must be one of: {', '.join(USER_ROLES)}")
    if target.id == user.id and role != "superadmin":
        raise ValueError("You cannot remove your own superadmin role.")
    old = target.role
    if old != role:
        target.role = role
        target.updated_at = datetime.utcnow()
        record_event(
            s,
            actor=user,
            action="user.role_change",
            entity_type="User",
            entity_id=str(target.id),
            metadata={"from": old, "to": role},
        )
    return target


def set_user_active(s: "Session", target: User, active: bool, user: User) -> User:
    if target.id == user.id and not active:
        raise ValueError("You cannot deactivate your own account.")
    if target.is_active == active:
        return target
    target.is_active = active
    target.updated_at = datetime.utcnow()
    if not active:
        s.query(UserSession).filter(UserSession.user_id == target.id).delete(synchronize_session=False)
    record_event(
        s,
        actor=user,
        action="user.activate" if active else "user.deactivate",
        entity_type="User",
        entity_id=str(target.id),
    )
    return target
