from app.enrollsage.db import session_scope
from app.enrollsage.modules.families.models import Guardian, Household, Student
from app.enrollsage.modules.families.service import (
    family_name_for,
    list_students,
    search_households,
    validate_family_payload,
)
from app.enrollsage.modules.schools.models import School


def test_family_payload_needs_a_guardian():
    assert validate_family_payload({"guardians": [], "students": []}) == ["At least one guardian is required."]
    errors = validate_family_payload(
        {
            "guardians": [{"first_name": "A", "last_name": "B", "email": "a@b.co", "relationship": "uncle"}],
            "students": [{"first_name": "C", "last_name": "B", "grade_level": "13"}],
        }
    )
    assert any(e.startswith("Guardian 1: Invalid relationship") for e in errors)
    assert any(e.startswith("Student 1: Invalid grade") for e in errors)


def test_family_name_for():
    assert family_name_for(" Park ") == "The Park Family"


def test_create_family_from_admin_form(app, client, login, csrf):
    login()
    r = client.post(
        "/admin/families/new",
        data={
            "csrf_token": csrf,
            "city": "Austin",
            "guardian_first_name": "Min",
            "guardian_last_name": "Park",
            "guardian_email": "Min.Park@example.com",
            "guardian_relationship": "mother",
            "guardian_has_portal_access": "on",
            "student_first_name": "Jae",
            "student_last_name": "Park",
            "student_grade_level": "K",
        },
    )
    assert r.status_code == 302
    with session_scope(app) as s:
        household = s.query(Household).filter(Household.name == "The Park Family").one()
        assert household.primary_email == "min.park@example.com"
        assert household.status == "active"
        guardian = household.guardians[0]
        assert guardian.is_primary and guardian.is_billing_contact and guardian.has_portal_access
        assert household.students[0].enrollment_status == "prospective"
        household_id = household.id

    r = client.post(
        f"/admin/families/{household_id}/guardians",
        data={"csrf_token": csrf, "first_name": "Joon", "last_name": "Park", "email": "joon@example.com"},
    )
    assert r.status_code == 302
    r = client.post(
        f"/admin/families/{household_id}/students",
        data={"csrf_token": csrf, "first_name": "Ara", "last_name": "Park", "grade_level": "2"},
    )
    assert r.status_code == 302
    with session_scope(app) as s:
        household = s.get(Household, household_id)
        assert len(household.guardians) == 2
        assert not s.query(Guardian).filter(Guardian.email == "joon@example.com").one().is_primary
        assert len(household.students) == 2

    page = client.get(f"/admin/families/{household_id}")
    assert page.status_code == 200
    assert b"Ara" in page.data
    assert b"The Park Family" in client.get("/admin/families?q=park").data


def test_invalid_family_form_creates_nothing(app, client, login, csrf):
    login()
    r = client.post("/admin/families/new", data={"csrf_token": csrf, "guardian_first_name": "Solo"})
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/admin/families/new")
    with session_scope(app) as s:
        assert s.query(Household).count() == 1


def test_student_status_change_from_roster(app, client, login, csrf):
    login()
    with session_scope(app) as s:
        emma_id = s.query(Student.id).filter(Student.first_name == "Emma").scalar()
    r = client.post(
        f"/admin/students/{emma_id}/edit",
        data={"csrf_token": csrf, "enrollment_status": "withdrawn", "reason": "Family relocated"},
    )
    assert r.status_code == 302
    with session_scope(app) as s:
        assert s.get(Student, emma_id).enrollment_status == "withdrawn"
    assert client.get("/admin/students?status=withdrawn").status_code == 200


def test_search_and_roster_filters(app):
    with session_scope(app) as s:
        school = s.query(School).filter(School.slug == "westlake-academy").one()
        assert [h.name for h in search_households(s, school, "student@example")] == ["The Johnson Family"]
        assert search_households(s, school, status="withdrawn") == []
        assert [st.first_name for st in list_students(s, school, grade="3")] == ["Emma"]
        assert list_students(s, school, grade="5") == []
