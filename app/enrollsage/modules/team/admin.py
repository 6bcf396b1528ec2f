from __future__ import annotations

from flask import Blueprint, abort, flash, g, redirect, render_template, request, session, url_for

from app.enrollsage.auth import start_session
from app.enrollsage.constants import MEMBER_ROLE_LABELS, MEMBER_ROLES
from app.enrollsage.db import db_session
from app.enrollsage.models import User
from app.enrollsage.modules.schools.models import SchoolMember
from app.enrollsage.modules.team.models import StaffInvitation
from app.enrollsage.modules.team.service import (
    InvitationError,
    accept_invitation,
    can_manage_team,
    change_member_role,
    get_valid_invitation,
    pending_invitations,
    revoke_invitation,
    send_invitation,
    set_member_active,
)
from app.enrollsage.rbac import require_permission
from app.enrollsage.utils import checkbox

bp = Blueprint("team", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _member_or_404(member_id: int) -> SchoolMember:
    m = db_session().get(SchoolMember, member_id)
    if not m or m.school_id != g.current_school.id:
        abort(404)
    return m


@bp.get("/admin/team")
@require_permission("team.view")
def team_list():
    s = db_session()
    school = g.current_school
    members = (
        s.query(SchoolMember)
        .filter(SchoolMember.school_id == school.id)
        .order_by(SchoolMember.status.asc(), SchoolMember.id.asc())
        .all()
    )
    return render_template(
        "admin/team/list.html",
        members=members,
        invitations=pending_invitations(s, school),
        roles=MEMBER_ROLES,
        role_labels=MEMBER_ROLE_LABELS,
        can_manage=can_manage_team(s, _current_user(), school),
    )


@bp.post("/admin/team/invite")
@require_permission("team.manage")
def team_invite():
    s = db_session()
    try:
        inv = send_invitation(
            s,
            g.current_school,
            email=request.form.get("email") or "",
            school_role=(request.form.get("role") or "readonly").strip(),
            inviter=_current_user(),
        )
    except InvitationError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("team.team_list"))
    s.commit()
    flash(f"Invitation sent to {inv.email}.", "success")
    return redirect(url_for("team.team_list"))


@bp.post("/admin/team/invitations/<int:invitation_id>/revoke")
@require_permission("team.manage")
def team_invite_revoke(invitation_id: int):
    s = db_session()
    inv = s.get(StaffInvitation, invitation_id)
    if not inv or inv.school_id != g.current_school.id:
        abort(404)
    try:
        revoke_invitation(s, inv, _current_user())
    except InvitationError as e:
        flash(str(e), "danger")
        return redirect(url_for("team.team_list"))
    s.commit()
    flash(f"Invitation for {inv.email} revoked.", "success")
    return redirect(url_for("team.team_list"))


@bp.post("/admin/team/members/<int:member_id>/role")
@require_permission("team.manage")
def team_member_role(member_id: int):
    s = db_session()
    member = _member_or_404(member_id)
    try:
        change_member_role(s, member, (request.form.get("role") or "").strip(), _current_user())
    except InvitationError as e:
        flash(str(e), "danger")
        return redirect(url_for("team.team_list"))
    s.commit()
    flash(f"{member.user.email} is now {MEMBER_ROLE_LABELS.get(member.role, member.role)}.", "success")
    return redirect(url_for("team.team_list"))


@bp.post("/admin/team/members/<int:member_id>/active")
@require_permission("team.manage")
def team_member_active(member_id: int):
    s = db_session()
    member = _member_or_404(member_id)
    active = checkbox(request.form, "active")
    try:
        set_member_active(s, member, active, _current_user())
    except InvitationError as e:
        flash(str(e), "danger")
        return redirect(url_for("team.team_list"))
    s.commit()
    flash(f"{member.user.email} {'reactivated' if active else 'deactivated'}.", "success")
    return redirect(url_for("team.team_list"))


# ---------- Accept (public) ----------
@bp.get("/invite/accept")
def invite_accept_get():
    s = db_session()
    token = (request.args.get("token") or "").strip()
    try:
        inv = get_valid_invitation(s, token)
    except InvitationError as e:
        s.commit()
        return render_template("team/accept.html", error=str(e), invitation=None, token=token), 400
    existing = s.query(User.id).filter(User.email == inv.email).first() is not None
    return render_template("team/accept.html", error=None, invitation=inv, token=token, existing=existing)


@bp.post("/invite/accept")
def invite_accept_post():
    s = db_session()
    token = (request.form.get("token") or "").strip()
    try:
        user, member = accept_invitation(
            s,
            token,
            password=request.form.get("password") or "",
            confirm=request.form.get("confirm_password"),
            first_name=request.form.get("first_name"),
            last_name=request.form.get("last_name"),
            current_user=getattr(g, "current_user", None),
        )
    except InvitationError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("team.invite_accept_get", token=token))
    start_session(s, user)
    session["school_id"] = member.school_id
    s.commit()
    flash(f"Welcome to {member.school.name}!", "success")
    return redirect(url_for("admissions.dashboard"))
