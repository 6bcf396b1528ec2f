import io
from datetime import datetime

import pytest

from app.enrollsage.db import session_scope
from app.enrollsage.models import User
from app.enrollsage.modules.admissions.models import Application, ApplicationDocument, Lead, LeadActivity
from app.enrollsage.modules.admissions.service import (
    AdmissionsError,
    create_application,
    create_lead,
    pipeline_stats,
    update_application_status,
    update_lead_stage,
    validate_lead_payload,
)
from app.enrollsage.modules.families.models import Household, Student
from app.enrollsage.modules.schools.models import School


def _school(s):
    return s.query(School).filter(School.slug == "westlake-academy").one()


def _owner(s):
    return s.query(User).filter(User.email == "admin@example.com").one()


def _new_lead(client, csrf, **extra):
    data = {
        "csrf_token": csrf,
        "first_name": "Maria",
        "last_name": "Garcia",
        "email": "Maria@Example.com",
        "source": "referral",
        "interested_grades": ["K"],
        "number_of_students": "2",
    }
    data.update(extra)
    return client.post("/admin/leads/new", data=data)


def test_lead_payload_validation():
    errors = validate_lead_payload({"first_name": "", "last_name": "X", "email": "nope", "source": "billboard"})
    assert "First name is required." in errors
    assert "A valid email is required." in errors
    assert any(e.startswith("Invalid source") for e in errors)
    assert validate_lead_payload({"first_name": "A", "last_name": "B", "email": "a@b.co", "number_of_students": "0"}) == [
        "Number of students must be a positive whole number."
    ]


def test_lead_pipeline_through_conversion(app, client, login, csrf):
    login()
    r = _new_lead(client, csrf)
    assert r.status_code == 302
    with session_scope(app) as s:
        lead = s.query(Lead).filter(Lead.email == "maria@example.com").one()
        assert lead.stage == "inquiry"
        assert lead.interested_school_year == "2025-2026"
        lead_id = lead.id

    assert client.get(f"/admin/leads/{lead_id}").status_code == 200
    assert b"Maria" in client.get("/admin/leads").data

    client.post(f"/admin/leads/{lead_id}/stage", data={"csrf_token": csrf, "stage": "tour_scheduled"})
    client.post(
        f"/admin/leads/{lead_id}/activities",
        data={"csrf_token": csrf, "type": "call", "subject": "Called about tour"},
    )
    with session_scope(app) as s:
        lead = s.get(Lead, lead_id)
        assert lead.stage == "tour_scheduled"
        assert lead.tour_scheduled_at is not None
        assert lead.last_contacted_at is not None
        types = {a.type for a in s.query(LeadActivity).filter(LeadActivity.lead_id == lead_id)}
        assert types == {"stage_change", "call"}

    # Conversion has its own action; the stage form refuses it.
    client.post(f"/admin/leads/{lead_id}/stage", data={"csrf_token": csrf, "stage": "converted"})
    with session_scope(app) as s:
        assert s.get(Lead, lead_id).stage == "tour_scheduled"

    r = client.post(f"/admin/leads/{lead_id}/convert", data={"csrf_token": csrf})
    assert r.status_code == 302
    assert "/admin/applications/" in r.headers["Location"]
    with session_scope(app) as s:
        lead = s.get(Lead, lead_id)
        assert lead.stage == "converted"
        household = s.get(Household, lead.converted_household_id)
        assert household.name == "The Garcia Family"
        assert household.status == "prospective"
        assert len(household.students) == 2
        assert all(st.enrollment_status == "applicant" for st in household.students)
        application = s.query(Application).filter(Application.lead_id == lead_id).one()
        assert application.status == "draft"
        assert application.grade_applying_for == "K"
        assert len(application.checklist) == 4

    r = client.post(f"/admin/leads/{lead_id}/convert", data={"csrf_token": csrf}, follow_redirects=True)
    assert b"already been converted" in r.data
    with session_scope(app) as s:
        assert s.query(Household).filter(Household.name == "The Garcia Family").count() == 1


def test_application_decision_and_enrollment(app, client, login, csrf):
    login()
    with session_scope(app) as s:
        school = _school(s)
        household = s.query(Household).filter(Household.name == "The Johnson Family").one()
        student = Student(
            school_id=school.id, household_id=household.id, first_name="Liam", last_name="Johnson", grade_level="1"
        )
        s.add(student)
        s.flush()
        application = create_application(s, school, student, _owner(s))
        app_id, student_id = application.id, student.id

    client.post(f"/admin/applications/{app_id}/submit", data={"csrf_token": csrf})
    with session_scope(app) as s:
        assert s.get(Application, app_id).status == "submitted"
        assert s.get(Student, student_id).enrollment_status == "applicant"

    # Enrolling before a decision is refused.
    client.post(f"/admin/applications/{app_id}/enroll", data={"csrf_token": csrf})
    with session_scope(app) as s:
        assert s.get(Application, app_id).status == "submitted"

    client.post(
        f"/admin/applications/{app_id}/status",
        data={"csrf_token": csrf, "status": "accepted", "notes": "Strong fit"},
    )
    with session_scope(app) as s:
        application = s.get(Application, app_id)
        assert application.status == "accepted"
        assert application.decision_notes == "Strong fit"
        assert application.decision_at is not None
        assert s.get(Student, student_id).enrollment_status == "accepted"

    client.post(f"/admin/applications/{app_id}/enroll", data={"csrf_token": csrf})
    with session_scope(app) as s:
        assert s.get(Application, app_id).status == "enrolled"
        assert s.get(Student, student_id).enrollment_status == "enrolled"

    r = client.get(f"/admin/applications/{app_id}")
    assert r.status_code == 200
    assert b"Liam" in r.data


def test_checklist_toggle_and_document_upload(app, client, login, csrf):
    login()
    with session_scope(app) as s:
        school = _school(s)
        student = s.query(Student).filter(Student.first_name == "Emma").one()
        application = create_application(s, school, student, _owner(s), type="re_enrollment")
        app_id = application.id
        item_id = application.checklist[0].id

    client.post(f"/admin/applications/{app_id}/checklist/{item_id}", data={"csrf_token": csrf})
    r = client.post(
        f"/admin/applications/{app_id}/documents",
        data={
            "csrf_token": csrf,
            "document_type": "birth_certificate",
            "file": (io.BytesIO(b"%PDF-1.4 birth certificate"), "birth cert.pdf"),
        },
        content_type="multipart/form-data",
    )
    assert r.status_code == 302
    with session_scope(app) as s:
        application = s.get(Application, app_id)
        assert application.checklist[0].is_completed
        doc = s.query(ApplicationDocument).filter(ApplicationDocument.application_id == app_id).one()
        assert doc.original_filename == "birth_cert.pdf"
        assert doc.size_bytes == len(b"%PDF-1.4 birth certificate")
        assert doc.storage_key.startswith(f"schools/{application.school_id}/applications/{app_id}/")
        assert doc.content_type == "application/pdf"
        doc_id = doc.id

    r = client.get(f"/admin/applications/{app_id}/documents/{doc_id}/download")
    assert r.status_code == 200
    assert r.data == b"%PDF-1.4 birth certificate"


def test_document_upload_rejects_unsupported_and_empty_files(app, client, login, csrf):
    login()
    with session_scope(app) as s:
        student = s.query(Student).filter(Student.first_name == "Emma").one()
        app_id = create_application(s, _school(s), student, _owner(s)).id

    for name, body, message in (
        ("payload.exe", b"MZ", "Unsupported file type"),
        ("blank.pdf", b"", "The uploaded file is empty."),
    ):
        r = client.post(
            f"/admin/applications/{app_id}/documents",
            data={"csrf_token": csrf, "document_type": "other", "file": (io.BytesIO(body), name)},
            content_type="multipart/form-data",
            follow_redirects=True,
        )
        assert message in r.get_data(as_text=True)
    with session_scope(app) as s:
        assert s.query(ApplicationDocument).filter(ApplicationDocument.application_id == app_id).count() == 0


def test_other_schools_records_are_hidden(app, client, login):
    login()
    with session_scope(app) as s:
        other = School(name="Eastside Prep", slug="eastside-prep", current_school_year="2025-2026", status="active")
        s.add(other)
        s.flush()
        lead = create_lead(s, other, {"first_name": "Z", "last_name": "Q", "email": "zq@example.com"}, None)
        lead_id = lead.id
    assert client.get(f"/admin/leads/{lead_id}").status_code == 404


def test_status_transition_rules(app):
    with session_scope(app) as s:
        school = _school(s)
        owner = _owner(s)
        student = s.query(Student).filter(Student.first_name == "Emma").one()
        a = create_application(s, school, student, owner, status="submitted")

        with pytest.raises(AdmissionsError):
            update_application_status(s, a, "enrolled", owner)
        with pytest.raises(AdmissionsError, match="interview date"):
            update_application_status(s, a, "interview_scheduled", owner)

        update_application_status(s, a, "interview_scheduled", owner, interview_at=datetime(2025, 3, 1, 10, 0))
        update_application_status(s, a, "denied", owner)
        assert a.decision_by_user_id == owner.id
        with pytest.raises(AdmissionsError, match="Cannot move"):
            update_application_status(s, a, "accepted", owner)


def test_waitlist_positions_count_up_per_grade(app):
    with session_scope(app) as s:
        school = _school(s)
        owner = _owner(s)
        household = s.query(Household).first()
        apps = []
        for name in ("Ava", "Ben", "Cy"):
            st = Student(school_id=school.id, household_id=household.id, first_name=name, last_name="W", grade_level="2")
            s.add(st)
            s.flush()
            apps.append(create_application(s, school, st, owner, status="submitted"))
        for a in apps:
            update_application_status(s, a, "waitlisted", owner)
        assert [a.waitlist_position for a in apps] == [1, 2, 3]

        update_application_status(s, apps[0], "accepted", owner)
        assert apps[0].waitlist_position is None


def test_lost_lead_keeps_reason_and_pipeline_stats(app):
    with session_scope(app) as s:
        school = _school(s)
        owner = _owner(s)
        lead = create_lead(s, school, {"first_name": "P", "last_name": "R", "email": "pr@example.com"}, owner)
        update_lead_stage(s, lead, "lost", owner, reason="Moved away")
        assert lead.lost_reason == "Moved away"
        assert lead.lost_at is not None
        s.flush()
        stats = pipeline_stats(s, school)
        assert stats["leads_by_stage"]["lost"] == 1
        assert stats["enrolled_students"] == 1
