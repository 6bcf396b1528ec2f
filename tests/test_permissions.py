from werkzeug.security import generate_password_hash

from app.enrollsage.constants import ROLE_PERMISSIONS
from app.enrollsage.db import session_scope
from app.enrollsage.models import User
from app.enrollsage.modules.schools.models import School, SchoolMember
from app.enrollsage.rbac import user_has_permission, user_permissions


def _add_staff(app, email, role):
    with session_scope(app) as s:
        school = s.query(School).filter(School.slug == "westlake-academy").one()
        u = User(email=email, password_hash=generate_password_hash("pw"), role="admin", first_name="Staff")
        s.add(u)
        s.flush()
        s.add(SchoolMember(school_id=school.id, user_id=u.id, role=role, status="active"))


def test_readonly_staff_can_view_but_not_edit(app, client, login, csrf):
    _add_staff(app, "viewer@example.com", "readonly")
    login("viewer@example.com", "pw")
    assert client.get("/admin/leads").status_code == 200
    assert client.get("/admin/billing").status_code == 403
    r = client.post(
        "/admin/leads/new",
        data={"csrf_token": csrf, "first_name": "A", "last_name": "B", "email": "a@example.com"},
    )
    assert r.status_code == 403


def test_business_office_cannot_see_leads(app, client, login):
    _add_staff(app, "bursar@example.com", "business_office")
    login("bursar@example.com", "pw")
    assert client.get("/admin/billing").status_code == 200
    assert client.get("/admin/leads").status_code == 403


def test_admissions_staff_cannot_manage_shop_or_team(client, login):
    login("admissions@example.com", "admissions123")
    assert client.get("/admin/applications").status_code == 200
    assert client.get("/admin/products").status_code == 403
    assert client.get("/admin/team").status_code == 200


def test_customer_is_sent_to_account(client, login):
    login("apply@example.com", "apply123")
    r = client.get("/admin/leads")
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/account")


def test_owner_cannot_reach_platform_console(client, login):
    login()
    assert client.get("/super-admin").status_code == 403
    assert client.get("/super-admin/users").status_code == 403


def test_superadmin_must_open_a_school(app, client, login, csrf):
    login("superadmin@enrollsage.com", "superadmin123")
    r = client.get("/admin")
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/super-admin/schools")

    with session_scope(app) as s:
        school_id = s.query(School.id).filter(School.slug == "westlake-academy").scalar()
    r = client.post(f"/super-admin/schools/{school_id}/open", data={"csrf_token": csrf})
    assert r.status_code == 302
    assert client.get("/admin").status_code == 200
    assert client.get("/admin/products").status_code == 200

    client.post("/super-admin/close-school", data={"csrf_token": csrf})
    assert client.get("/admin").status_code == 302


def test_deactivated_membership_loses_access(app, client, login):
    login("admissions@example.com", "admissions123")
    with session_scope(app) as s:
        u = s.query(User).filter(User.email == "admissions@example.com").one()
        s.query(SchoolMember).filter(SchoolMember.user_id == u.id).one().status = "deactivated"
    assert client.get("/admin/leads").status_code == 403


def test_role_permission_table():
    assert ROLE_PERMISSIONS["owner"] == ROLE_PERMISSIONS["admin"]
    assert "billing.view" not in ROLE_PERMISSIONS["readonly"]
    assert not any(p.endswith((".edit", ".manage", ".decide")) for p in ROLE_PERMISSIONS["readonly"])
    assert "applications.decide" in ROLE_PERMISSIONS["admissions"]
    assert "billing.edit" not in ROLE_PERMISSIONS["admissions"]


def test_user_permissions_for_superadmin_and_inactive():
    boss = User(email="x@example.com", role="superadmin", is_active=True)
    assert user_has_permission(boss, "shop.manage")
    gone = User(email="y@example.com", role="admin", is_active=False)
    assert user_permissions(gone, SchoolMember(role="owner", status="active")) == frozenset()
    assert user_permissions(None) == frozenset()
