import io

from app.enrollsage.db import session_scope
from app.enrollsage.models import User
from app.enrollsage.modules.admissions.models import Application, ApplicationDocument
from app.enrollsage.modules.admissions.service import create_application
from app.enrollsage.modules.families.models import Guardian, Household, Student
from app.enrollsage.modules.schools.models import School


def test_guardian_pages(client, login):
    login("student@example.com", "student123")
    for path in ("/portal", "/portal/applications", "/portal/apply", "/portal/billing", "/portal/settings"):
        assert client.get(path).status_code == 200, path
    assert b"Emma" in client.get("/portal").data


def test_guardian_applies_for_a_sibling(app, client, login, csrf):
    login("student@example.com", "student123")
    with session_scope(app) as s:
        household_id = s.query(Household.id).filter(Household.name == "The Johnson Family").scalar()

    r = client.post(
        "/portal/apply",
        data={
            "csrf_token": csrf,
            "household_id": household_id,
            "student_first_name": "Noah",
            "student_last_name": "Johnson",
            "student_grade_level": "K",
        },
    )
    assert r.status_code == 302
    assert "/portal/applications/" in r.headers["Location"]
    with session_scope(app) as s:
        noah = s.query(Student).filter(Student.first_name == "Noah").one()
        assert noah.household_id == household_id
        assert noah.enrollment_status == "applicant"
        application = s.query(Application).filter(Application.student_id == noah.id).one()
        assert application.status == "submitted"
        assert application.submitted_at is not None
        app_id = application.id

    assert b"Noah" in client.get(f"/portal/applications/{app_id}").data
    r = client.post(
        f"/portal/applications/{app_id}/documents",
        data={
            "csrf_token": csrf,
            "document_type": "immunization_records",
            "file": (io.BytesIO(b"shots"), "shots.pdf"),
        },
        content_type="multipart/form-data",
    )
    assert r.status_code == 302
    with session_scope(app) as s:
        doc = s.query(ApplicationDocument).filter(ApplicationDocument.application_id == app_id).one()
        assert doc.uploaded_by_user_id is not None


def test_guardian_cannot_apply_into_another_household(app, client, login, csrf):
    login("student@example.com", "student123")
    with session_scope(app) as s:
        school = s.query(School).filter(School.slug == "westlake-academy").one()
        other = Household(school_id=school.id, name="The Lee Family", status="active")
        s.add(other)
        s.flush()
        other_id = other.id
    r = client.post(
        "/portal/apply",
        data={
            "csrf_token": csrf,
            "household_id": other_id,
            "student_first_name": "X",
            "student_last_name": "Lee",
            "student_grade_level": "1",
        },
    )
    assert r.status_code == 404


def test_new_family_applies_from_portal(app, client, login, csrf):
    login("apply@example.com", "apply123")
    r = client.get("/portal")
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/portal/apply")
    assert b"Westlake Academy" in client.get("/portal/apply").data

    with session_scope(app) as s:
        school_id = s.query(School.id).filter(School.slug == "westlake-academy").scalar()
    r = client.post(
        "/portal/apply",
        data={
            "csrf_token": csrf,
            "school_id": school_id,
            "guardian_first_name": "Alex",
            "guardian_last_name": "Rivera",
            "guardian_relationship": "father",
            "city": "Austin",
            "student_first_name": "Sam",
            "student_last_name": "Rivera",
            "student_grade_level": "4",
        },
    )
    assert r.status_code == 302
    with session_scope(app) as s:
        user = s.query(User).filter(User.email == "apply@example.com").one()
        guardian = s.query(Guardian).filter(Guardian.user_id == user.id).one()
        assert guardian.has_portal_access
        household = guardian.household
        assert household.name == "The Rivera Family"
        assert household.status == "prospective"
        application = s.query(Application).filter(Application.household_id == household.id).one()
        assert application.status == "submitted"
        assert application.grade_applying_for == "4"

    assert client.get("/portal/applications").status_code == 200


def test_new_family_must_pick_a_school(client, login, csrf):
    login("apply@example.com", "apply123")
    r = client.post(
        "/portal/apply",
        data={"csrf_token": csrf, "student_first_name": "Sam", "student_last_name": "R", "student_grade_level": "4"},
        follow_redirects=True,
    )
    assert b"Choose a school to apply to." in r.data


def test_applications_of_other_households_are_hidden(app, client, login):
    with session_scope(app) as s:
        school = s.query(School).filter(School.slug == "westlake-academy").one()
        other = Household(school_id=school.id, name="The Lee Family", status="active")
        s.add(other)
        s.flush()
        kid = Student(school_id=school.id, household_id=other.id, first_name="Kai", last_name="Lee", grade_level="2")
        s.add(kid)
        s.flush()
        application_id = create_application(s, school, kid, None).id

    login("student@example.com", "student123")
    assert client.get(f"/portal/applications/{application_id}").status_code == 404


def test_portal_settings_update_household(app, client, login, csrf):
    login("student@example.com", "student123")
    r = client.post(
        "/portal/settings",
        data={"csrf_token": csrf, "phone": "512-555-0199", "city": "Round Rock", "auto_pay": "on"},
    )
    assert r.status_code == 302
    with session_scope(app) as s:
        household = s.query(Household).filter(Household.name == "The Johnson Family").one()
        assert household.city == "Round Rock"
        assert household.auto_pay is True
