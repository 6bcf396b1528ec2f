from datetime import datetime, timedelta

import pytest

from app.enrollsage.db import session_scope
from app.enrollsage.models import User, UserSession
from app.enrollsage.modules.schools.models import School, SchoolMember, SchoolYear
from app.enrollsage.modules.schools.service import (
    create_school_year,
    platform_stats,
    set_user_active,
    set_user_role,
)
from app.enrollsage.modules.team.models import StaffInvitation


def _fresh_client(app, token="fresh-csrf"):
    c = app.test_client()
    with c.session_transaction() as sess:
        sess["csrf_token"] = token
    return c


def _invite(client, csrf, email, role="admissions"):
    return client.post("/admin/team/invite", data={"csrf_token": csrf, "email": email, "role": role})


def test_invite_and_accept_as_new_user(app, client, login, csrf):
    login()
    assert _invite(client, csrf, "New.Hire@example.com").status_code == 302
    with session_scope(app) as s:
        inv = s.query(StaffInvitation).filter(StaffInvitation.email == "new.hire@example.com").one()
        assert inv.status == "pending"
        assert inv.school_role == "admissions"
        token = inv.token

    r = _invite(client, csrf, "new.hire@example.com")
    assert r.status_code == 302
    with session_scope(app) as s:
        assert s.query(StaffInvitation).filter(StaffInvitation.email == "new.hire@example.com").count() == 1

    invitee = _fresh_client(app)
    assert invitee.get(f"/invite/accept?token={token}").status_code == 200
    assert invitee.get("/invite/accept?token=nope").status_code == 400

    r = invitee.post(
        "/invite/accept",
        data={
            "csrf_token": "fresh-csrf",
            "token": token,
            "password": "Sturdy-pass1",
            "confirm_password": "Sturdy-pass1",
            "first_name": "Nia",
            "last_name": "Hire",
        },
    )
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/admin")
    with session_scope(app) as s:
        user = s.query(User).filter(User.email == "new.hire@example.com").one()
        assert user.role == "admin"
        member = s.query(SchoolMember).filter(SchoolMember.user_id == user.id).one()
        assert member.role == "admissions"
        assert member.status == "active"
        assert s.query(StaffInvitation).filter(StaffInvitation.token == token).one().status == "accepted"

    assert invitee.get("/admin/applications").status_code == 200
    # Accepted invitations cannot be replayed.
    assert invitee.get(f"/invite/accept?token={token}").status_code == 400


def test_existing_account_must_confirm_password(app, client, login, csrf):
    login()
    _invite(client, csrf, "apply@example.com", role="readonly")
    with session_scope(app) as s:
        token = s.query(StaffInvitation.token).filter(StaffInvitation.email == "apply@example.com").scalar()

    invitee = _fresh_client(app)
    invitee.post("/invite/accept", data={"csrf_token": "fresh-csrf", "token": token, "password": "wrong"})
    with session_scope(app) as s:
        assert s.query(StaffInvitation).filter(StaffInvitation.token == token).one().status == "pending"

    r = invitee.post("/invite/accept", data={"csrf_token": "fresh-csrf", "token": token, "password": "apply123"})
    assert r.status_code == 302
    with session_scope(app) as s:
        user = s.query(User).filter(User.email == "apply@example.com").one()
        assert user.role == "admin"
        assert s.query(SchoolMember).filter(SchoolMember.user_id == user.id).one().role == "readonly"


def test_invite_accept_requires_csrf(app, client, login, csrf):
    login()
    _invite(client, csrf, "late@example.com")
    with session_scope(app) as s:
        token = s.query(StaffInvitation.token).filter(StaffInvitation.email == "late@example.com").scalar()
    invitee = app.test_client()
    r = invitee.post("/invite/accept", data={"token": token, "password": "Sturdy-pass1", "first_name": "L"})
    assert r.status_code == 400


def test_revoke_invitation(app, client, login, csrf):
    login()
    _invite(client, csrf, "maybe@example.com")
    with session_scope(app) as s:
        inv_id = s.query(StaffInvitation.id).filter(StaffInvitation.email == "maybe@example.com").scalar()
    client.post(f"/admin/team/invitations/{inv_id}/revoke", data={"csrf_token": csrf})
    with session_scope(app) as s:
        assert s.get(StaffInvitation, inv_id).status == "revoked"


def test_admissions_staff_cannot_invite(app, client, login, csrf):
    login("admissions@example.com", "admissions123")
    _invite(client, csrf, "someone@example.com")
    with session_scope(app) as s:
        assert s.query(StaffInvitation).count() == 0


def test_school_keeps_an_owner(app, client, login, csrf):
    login()
    with session_scope(app) as s:
        owner = s.query(User).filter(User.email == "admin@example.com").one()
        member_id = s.query(SchoolMember.id).filter(SchoolMember.user_id == owner.id).scalar()
        staff = s.query(User).filter(User.email == "admissions@example.com").one()
        staff_member_id = s.query(SchoolMember.id).filter(SchoolMember.user_id == staff.id).scalar()

    r = client.post(
        f"/admin/team/members/{member_id}/role", data={"csrf_token": csrf, "role": "admin"}, follow_redirects=True
    )
    assert b"at least one owner" in r.data
    r = client.post(f"/admin/team/members/{member_id}/active", data={"csrf_token": csrf}, follow_redirects=True)
    assert b"cannot deactivate yourself" in r.data

    client.post(f"/admin/team/members/{staff_member_id}/role", data={"csrf_token": csrf, "role": "readonly"})
    client.post(f"/admin/team/members/{staff_member_id}/active", data={"csrf_token": csrf})
    with session_scope(app) as s:
        member = s.get(SchoolMember, staff_member_id)
        assert member.role == "readonly"
        assert member.status == "deactivated"


def test_superadmin_creates_school_with_existing_owner(app, client, login, csrf):
    login("superadmin@enrollsage.com", "superadmin123")
    r = client.post(
        "/super-admin/schools/new",
        data={"csrf_token": csrf, "name": "Riverside Montessori", "owner_email": "apply@example.com"},
    )
    assert r.status_code == 302
    with session_scope(app) as s:
        school = s.query(School).filter(School.slug == "riverside-montessori").one()
        assert school.status == "trial"
        assert school.trial_ends_at is not None
        owner = s.query(User).filter(User.email == "apply@example.com").one()
        assert owner.role == "admin"
        member = s.query(SchoolMember).filter(SchoolMember.school_id == school.id).one()
        assert member.role == "owner"
        school_id = school.id

    r = client.post(
        "/super-admin/schools/new", data={"csrf_token": csrf, "name": "Riverside Montessori"}, follow_redirects=True
    )
    assert b"already exists" in r.data

    client.post(f"/super-admin/schools/{school_id}/status", data={"csrf_token": csrf, "status": "active"})
    client.post(
        f"/super-admin/schools/{school_id}/years",
        data={
            "csrf_token": csrf,
            "name": "2026-2027",
            "start_date": "2026-08-15",
            "end_date": "2027-06-01",
            "is_current": "on",
        },
    )
    with session_scope(app) as s:
        school = s.get(School, school_id)
        assert school.status == "active"
        assert school.current_school_year == "2026-2027"
        assert s.query(SchoolYear).filter(SchoolYear.school_id == school_id, SchoolYear.is_current).count() == 1

    assert client.get(f"/super-admin/schools/{school_id}").status_code == 200
    assert client.get("/super-admin").status_code == 200


def test_new_owner_email_gets_an_invitation(app, client, login, csrf):
    login("superadmin@enrollsage.com", "superadmin123")
    client.post("/super-admin/schools/new", data={"csrf_token": csrf, "name": "Hillcrest", "owner_email": "head@hill.org"})
    with session_scope(app) as s:
        inv = s.query(StaffInvitation).filter(StaffInvitation.email == "head@hill.org").one()
        assert inv.school_role == "owner"


def test_school_year_rules(app):
    with session_scope(app) as s:
        school = s.query(School).filter(School.slug == "westlake-academy").one()
        boss = s.query(User).filter(User.email == "superadmin@enrollsage.com").one()
        with pytest.raises(ValueError, match="look like"):
            create_school_year(s, school, {"name": "2026", "start_date": "2026-08-01", "end_date": "2027-06-01"}, boss)
        with pytest.raises(ValueError, match="after start"):
            create_school_year(
                s, school, {"name": "2026-2027", "start_date": "2026-08-01", "end_date": "2026-07-01"}, boss
            )


def test_platform_user_administration(app):
    with session_scope(app) as s:
        boss = s.query(User).filter(User.email == "superadmin@enrollsage.com").one()
        target = s.query(User).filter(User.email == "student@example.com").one()
        s.add(UserSession(id="t" * 64, user_id=target.id, expires_at=datetime.utcnow() + timedelta(days=1)))
        s.flush()

        with pytest.raises(ValueError, match="own superadmin"):
            set_user_role(s, boss, "admin", boss)
        with pytest.raises(ValueError, match="Invalid role"):
            set_user_role(s, target, "janitor", boss)
        with pytest.raises(ValueError, match="own account"):
            set_user_active(s, boss, False, boss)

        set_user_active(s, target, False, boss)
        s.flush()
        assert target.is_active is False
        assert s.query(UserSession).filter(UserSession.user_id == target.id).count() == 0

        stats = platform_stats(s)
        assert stats["schools_total"] == 1
        assert stats["families_total"] == 1
