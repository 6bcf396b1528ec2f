import pytest

from app.enrollsage import create_app
from app.enrollsage.db import session_scope
from app.enrollsage.models import Base
from app.enrollsage.ratelimit import api_limiter, login_limiter, register_limiter
from scripts.init_db import seed_demo_data

_EXTERNAL_KEYS = (
    "S3_ENDPOINT",
    "S3_REGION",
    "S3_BUCKET",
    "S3_ACCESS_KEY_ID",
    "S3_SECRET_ACCESS_KEY",
    "STRIPE_PUBLIC_KEY",
    "STRIPE_SECRET_KEY",
    "STRIPE_WEBHOOK_SECRET",
    "BREVO_API_KEY",
    "GOOGLE_CLIENT_ID",
    "GOOGLE_CLIENT_SECRET",
)

WEBHOOK_SECRET = "whsec_test"


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "storage"))
    for k in _EXTERNAL_KEYS:
        monkeypatch.delenv(k, raising=False)

    app = create_app({"TESTING": True, "STRIPE_WEBHOOK_SECRET": WEBHOOK_SECRET})

    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        seed_demo_data(s)

    for limiter in (login_limiter, register_limiter, api_limiter):
        limiter.clear()
        limiter.enabled = True
    yield app
    for limiter in (login_limiter, register_limiter, api_limiter):
        limiter.clear()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def csrf(client):
    """Puts a known CSRF token in the client's session and returns it."""
    with client.session_transaction() as sess:
        sess["csrf_token"] = "test-csrf-token"
    return "test-csrf-token"


@pytest.fixture()
def login(client, csrf):
    def _login(email="admin@example.com", password="admin123"):
        r = client.post("/login", data={"email": email, "password": password}, follow_redirects=False)
        assert r.status_code == 302
        with client.session_transaction() as sess:
            sess["csrf_token"] = csrf
        return r

    return _login
