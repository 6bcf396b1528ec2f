from app.enrollsage.db import session_scope
from app.enrollsage.models import AuditEvent, User, UserSession
from app.enrollsage.ratelimit import register_limiter


def test_owner_lands_on_school_dashboard(client):
    r = client.post("/login", data={"email": "admin@example.com", "password": "admin123"})
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/admin")


def test_superadmin_lands_on_platform_console(client):
    r = client.post("/login", data={"email": "superadmin@enrollsage.com", "password": "superadmin123"})
    assert r.headers["Location"].endswith("/super-admin")


def test_guardian_lands_on_portal(client):
    r = client.post("/login", data={"email": "student@example.com", "password": "student123"})
    assert r.headers["Location"].endswith("/portal")


def test_login_is_case_insensitive_on_email(client):
    r = client.post("/login", data={"email": "  Admin@Example.com ", "password": "admin123"})
    assert r.headers["Location"].endswith("/admin")


def test_bad_password_is_rejected_and_audited(app, client):
    r = client.post("/login", data={"email": "admin@example.com", "password": "nope"}, follow_redirects=True)
    assert r.status_code == 200
    assert b"Invalid email or password." in r.data
    assert client.get("/admin").status_code == 302
    with session_scope(app) as s:
        assert s.query(AuditEvent).filter(AuditEvent.action == "auth.login_failed").count() == 1


def test_login_honours_local_next_only(client):
    r = client.post("/login", data={"email": "admin@example.com", "password": "admin123", "next": "/admin/leads"})
    assert r.headers["Location"].endswith("/admin/leads")

    client.post("/logout")
    r = client.post("/login", data={"email": "admin@example.com", "password": "admin123", "next": "//evil.example"})
    assert "evil.example" not in r.headers["Location"]


def test_login_rate_limit_blocks_after_five_failures(client):
    for _ in range(5):
        client.post("/login", data={"email": "admin@example.com", "password": "wrong"})
    r = client.post("/login", data={"email": "admin@example.com", "password": "admin123"}, follow_redirects=True)
    assert b"Too many login attempts" in r.data
    assert client.get("/admin").status_code == 302


def test_logout_revokes_server_session(app, client, login):
    login()
    with session_scope(app) as s:
        assert s.query(UserSession).count() == 1
    r = client.post("/logout")
    assert r.status_code == 302
    with session_scope(app) as s:
        assert s.query(UserSession).count() == 0
    assert client.get("/admin").status_code == 302


def test_register_creates_customer_and_signs_in(app, client):
    r = client.post(
        "/register",
        data={
            "first_name": "Casey",
            "last_name": "Nguyen",
            "email": "casey@example.com",
            "password": "Sturdy-pass1",
            "confirm_password": "Sturdy-pass1",
        },
    )
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/account")
    with session_scope(app) as s:
        u = s.query(User).filter(User.email == "casey@example.com").one()
        assert u.role == "customer"
        assert u.password_hash != "Sturdy-pass1"
    assert client.get("/account").status_code == 200


def test_register_rejects_weak_password_and_duplicate_email(client):
    r = client.post(
        "/register",
        data={"first_name": "Casey", "email": "casey@example.com", "password": "short", "confirm_password": "short"},
    )
    assert r.status_code == 400
    assert b"at least 8 characters" in r.data

    r = client.post(
        "/register",
        data={
            "first_name": "Dana",
            "email": "admin@example.com",
            "password": "Sturdy-pass1",
            "confirm_password": "Sturdy-pass1",
        },
    )
    assert r.status_code == 400
    assert b"already exists" in r.data


def test_register_rate_limit(client):
    register_limiter.max_attempts = 1
    try:
        data = {"first_name": "A", "email": "a@example.com", "password": "x", "confirm_password": "x"}
        client.post("/register", data=data)
        r = client.post("/register", data=data)
        assert r.status_code == 429
    finally:
        register_limiter.max_attempts = 3


def test_deactivated_user_session_is_dropped(app, client, login):
    login()
    with session_scope(app) as s:
        s.query(User).filter(User.email == "admin@example.com").one().is_active = False
    assert client.get("/admin").status_code == 302


def test_post_without_csrf_token_is_rejected(client, login):
    login()
    with client.session_transaction() as sess:
        sess["csrf_token"] = "expected"
    r = client.post("/admin/leads/new", data={"first_name": "A", "last_name": "B", "email": "a@b.c"})
    assert r.status_code == 400
    r = client.post("/api/payments/setup-intent", json={})
    assert r.status_code == 400
    assert r.json["success"] is False


def test_google_start_without_credentials_redirects_to_login(client):
    r = client.get("/api/auth/google", follow_redirects=True)
    assert b"Google sign-in is not configured." in r.data
