from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from werkzeug.security import check_password_hash, generate_password_hash

from app.enrollsage.audit import record_event
from app.enrollsage.constants import MEMBER_ROLES
from app.enrollsage.models import User
from app.enrollsage.modules.schools.models import School, SchoolMember
from app.enrollsage.security import password_problems

from .models import StaffInvitation

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

INVITATION_TTL = timedelta(days=7)
MANAGER_ROLES = ("owner", "admin")


class InvitationError(ValueError):
    pass


def active_membership(s: "Session", user: User, school: School) -> SchoolMember | None:
    return (
        s.query(SchoolMember)
        .filter(
            SchoolMember.user_id == user.id,
            SchoolMember.school_id == school.id,
            SchoolMember.status == "active",
        )
        .one_or_none()
    )


def can_manage_team(s: "Session", user: User, school: School) -> bool:
    if user.is_superadmin:
        return True
    m = active_membership(s, user, school)
    return m is not None and m.role in MANAGER_ROLES


def pending_invitations(s: "Session", school: School) -> list[StaffInvitation]:
    return (
        s.query(StaffInvitation)
        .filter(StaffInvitation.school_id == school.id, StaffInvitation.status == "pending")
        .order_by(StaffInvitation.created_at.desc())
        .all()
    )


def send_invitation(s: "Session", school: School, *, email: str, school_role: str, inviter: User) -> StaffInvitation:
    email = (email or "").strip().lower()
    if "@" not in email:
        raise InvitationError("A valid email address is required.")
    if school_role not in MEMBER_ROLES:
        raise InvitationError(f"Invalid role. Must be one of: {', '.join(MEMBER_ROLES)}")
    if not can_manage_team(s, inviter, school):
        raise InvitationError("Only owners and admins can invite team members.")

    existing_user = s.query(User).filter(User.email == email).one_or_none()
    if existing_user and active_membership(s, existing_user, school):
        raise InvitationError("This person is already a member of your school.")
    already = (
        s.query(StaffInvitation.id)
        .filter(
            StaffInvitation.school_id == school.id,
            StaffInvitation.email == email,
            StaffInvitation.status == "pending",
            StaffInvitation.expires_at > datetime.utcnow(),
        )
        .first()
    )
    if already:
        raise InvitationError("An invitation is already pending for this email.")

    now = datetime.utcnow()
    inv = StaffInvitation(
        school_id=school.id,
        email=email,
        school_role=school_role,
        token=secrets.token_hex(32),
        status="pending",
        invited_by_user_id=inviter.id,
        expires_at=now + INVITATION_TTL,
        created_at=now,
    )
    s.add(inv)
    s.flush()
    record_event(
        s,
        actor=inviter,
        action="team.invite",
        entity_type="StaffInvitation",
        entity_id=str(inv.id),
        school_id=school.id,
        metadata={"email": email, "role": school_role},
    )

    from app.enrollsage.modules.notifications.service import send_staff_invitation

    send_staff_invitation(inv, school, inviter)
    return inv


def revoke_invitation(s: "Session", inv: StaffInvitation, user: User) -> StaffInvitation:
    if inv.status != "pending":
        raise InvitationError("Only pending invitations can be revoked.")
    if not can_manage_team(s, user, inv.school):
        raise InvitationError("Only owners and admins can revoke invitations.")
    inv.status = "revoked"
    record_event(
        s,
        actor=user,
        action="team.invite_revoked",
        entity_type="StaffInvitation",
        entity_id=str(inv.id),
        school_id=inv.school_id,
        metadata={"email": inv.email},
    )
    return inv


def get_valid_invitation(s: "Session", token: str) -> StaffInvitation:
    inv = s.query(StaffInvitation).filter(StaffInvitation.token == (token or "").strip()).one_or_none()
    if inv is None:
        raise InvitationError("This invitation link is invalid.")
    if inv.status == "pending" and inv.expires_at <= datetime.utcnow():
        inv.status = "expired"
        s.flush()
    if inv.status == "expired":
        raise InvitationError("This invitation has expired. Ask your school to send a new one.")
    if inv.status != "pending":
        raise InvitationError(f"This invitation has already been {inv.status}.")
    return inv


def accept_invitation(
    s: "Session",
    token: str,
    *,
    password: str,
    confirm: str | None = None,
    first_name: str | None = None,
    last_name: str | None = None,
    current_user: User | None = None,
) -> tuple[User, SchoolMember]:
    """
    New email: creates an admin account. Existing email: the password must match,
    unless that account is already signed in.
    """
    inv = get_valid_invitation(s, token)
    now = datetime.utcnow()
    user = s.query(User).filter(User.email == inv.email).one_or_none()

    if user is None:
        if not (first_name or "").strip():
            raise InvitationError("First name is required.")
        problems = password_problems(password, confirm)
        if problems:
            raise InvitationError(" ".join(problems))
        user = User(
            email=inv.email,
            password_hash=generate_password_hash(password),
            role="admin",
            first_name=first_name.strip(),
            last_name=(last_name or "").strip() or None,
            email_verified=True,
            created_at=now,
            updated_at=now,
        )
        s.add(user)
        s.flush()
    else:
        signed_in_as_invitee = current_user is not None and current_user.id == user.id
        if not signed_in_as_invitee:
            if not user.password_hash:
                raise InvitationError("Sign in with Google first, then open this invitation link again.")
            if not check_password_hash(user.password_hash, password or ""):
                raise InvitationError("Incorrect password for the existing account.")
        if not user.is_active:
            raise InvitationError("This account has been deactivated.")
        if user.role == "customer":
            user.role = "admin"
        user.email_verified = True
        user.updated_at = now

    member = (
        s.query(SchoolMember)
        .filter(SchoolMember.user_id == user.id, SchoolMember.school_id == inv.school_id)
        .one_or_none()
    )
    if member is None:
        member = SchoolMember(user_id=user.id, school_id=inv.school_id)
        s.add(member)
    member.role = inv.school_role
    member.status = "active"
    member.invited_by_user_id = inv.invited_by_user_id
    member.invited_at = inv.created_at
    member.accepted_at = now

    inv.status = "accepted"
    inv.accepted_at = now
    s.flush()
    record_event(
        s,
        actor=user,
        action="team.invite_accepted",
        entity_type="StaffInvitation",
        entity_id=str(inv.id),
        school_id=inv.school_id,
        metadata={"role": inv.school_role},
    )
    return user, member


def _owner_count(s: "Session", school_id: int) -> int:
    return (
        s.query(SchoolMember)
        .filter(
            SchoolMember.school_id == school_id,
            SchoolMember.role == "owner",
            SchoolMember.status == "active",
        )
        .count()
    )


def change_member_role(s: "Session", member: SchoolMember, role: str, user: User) -> SchoolMember:
    if role not in MEMBER_ROLES:
        raise InvitationError(f"Invalid role. Must be one of: {', '.join(MEMBER_ROLES)}")
    if not can_manage_team(s, user, member.school):
        raise InvitationError("Only owners and admins can change roles.")
    if member.role == role:
        return member
    if member.role == "owner" and _owner_count(s, member.school_id) <= 1:
        raise InvitationError("A school must keep at least one owner.")
    old = member.role
    member.role = role
    record_event(
        s,
        actor=user,
        action="team.role_change",
        entity_type="SchoolMember",
        entity_id=str(member.id),
        school_id=member.school_id,
        metadata={"from": old, "to": role, "email": member.user.email},
    )
    return member


def set_member_active(s: "Session", member: SchoolMember, active: bool, user: User) -> SchoolMember:
    if not can_manage_team(s, user, member.school):
        raise InvitationError("Only owners and admins can change team access.")
    if member.user_id == user.id and not active:
        raise InvitationError("You cannot deactivate yourself.")
    if not active and member.role == "owner" and _owner_count(s, member.school_id) <= 1:
        raise InvitationError("A school must keep at least one owner.")
    new_status = "active" if active else "deactivated"
    if member.status == new_status:
        return member
    member.status = new_status
    record_event(
        s,
        actor=user,
        action="team.member_activate" if active else "team.member_deactivate",
        entity_type="SchoolMember",
        entity_id=str(member.id),
        school_id=member.school_id,
        metadata={"email": member.user.email},
    )
    return member
