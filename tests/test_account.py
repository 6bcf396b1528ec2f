import pytest
from werkzeug.security import check_password_hash

from app.enrollsage.db import session_scope
from app.enrollsage.models import Address, OAuthAccount, User, UserSession
from app.enrollsage.modules.account.service import AccountError, unlink_google, update_profile


def _user(s, email="apply@example.com"):
    return s.query(User).filter(User.email == email).one()


def test_account_pages(client, login):
    login("apply@example.com", "apply123")
    for path in ("/account", "/account/orders", "/account/addresses", "/account/payment", "/account/settings"):
        assert client.get(path).status_code == 200, path


def test_address_book_keeps_one_default(app, client, login, csrf):
    login("apply@example.com", "apply123")
    home = {"csrf_token": csrf, "name": "Home", "line1": "1 Main St", "city": "Austin", "state": "TX", "postal_code": "78701"}
    client.post("/account/addresses", data=home)
    client.post("/account/addresses", data={**home, "name": "Work", "line1": "9 Office Rd"})
    with session_scope(app) as s:
        addresses = {a.name: a for a in _user(s).addresses}
        assert addresses["Home"].is_default and not addresses["Work"].is_default
        assert addresses["Home"].country == "US"
        home_id, work_id = addresses["Home"].id, addresses["Work"].id

    client.post(f"/account/addresses/{work_id}/default", data={"csrf_token": csrf})
    with session_scope(app) as s:
        assert s.get(Address, work_id).is_default
        assert not s.get(Address, home_id).is_default

    client.post(f"/account/addresses/{work_id}/delete", data={"csrf_token": csrf})
    with session_scope(app) as s:
        assert s.get(Address, work_id) is None
        assert s.get(Address, home_id).is_default

    r = client.post("/account/addresses", data={"csrf_token": csrf, "name": "Nowhere"}, follow_redirects=True)
    assert b"Street address is required." in r.data


def test_other_users_addresses_are_404(app, client, login, csrf):
    with session_scope(app) as s:
        owner = _user(s, "admin@example.com")
        s.add(Address(user_id=owner.id, name="HQ", line1="1 A", city="B", state="TX", postal_code="1", is_default=True))
        s.flush()
        address_id = s.query(Address.id).filter(Address.name == "HQ").scalar()
    login("apply@example.com", "apply123")
    assert client.post(f"/account/addresses/{address_id}/delete", data={"csrf_token": csrf}).status_code == 404


def test_password_change_signs_out_other_sessions(app, client, login, csrf):
    login("apply@example.com", "apply123")
    other = app.test_client()
    other.post("/login", data={"email": "apply@example.com", "password": "apply123"})
    with session_scope(app) as s:
        assert s.query(UserSession).filter(UserSession.user_id == _user(s).id).count() == 2

    r = client.post(
        "/account/settings/password",
        data={
            "csrf_token": csrf,
            "current_password": "wrong",
            "new_password": "Brand-new-pass9",
            "confirm_password": "Brand-new-pass9",
        },
        follow_redirects=True,
    )
    assert b"Current password is incorrect." in r.data

    r = client.post(
        "/account/settings/password",
        data={
            "csrf_token": csrf,
            "current_password": "apply123",
            "new_password": "Brand-new-pass9",
            "confirm_password": "Brand-new-pass9",
        },
        follow_redirects=True,
    )
    assert b"Signed out of 1 other session(s)." in r.data
    with session_scope(app) as s:
        user = _user(s)
        assert check_password_hash(user.password_hash, "Brand-new-pass9")
        assert s.query(UserSession).filter(UserSession.user_id == user.id).count() == 1

    assert client.get("/account").status_code == 200
    r = other.get("/account")
    assert r.status_code == 302
    assert "/login" in r.headers["Location"]


def test_profile_update_requires_first_name(app):
    with session_scope(app) as s:
        user = _user(s)
        with pytest.raises(AccountError, match="First name"):
            update_profile(s, user, {"first_name": " "})
        update_profile(s, user, {"first_name": "Ada", "last_name": "", "marketing_consent": "on"})
        assert user.first_name == "Ada"
        assert user.last_name is None
        assert user.marketing_consent is True


def test_google_unlink_needs_a_password(app):
    with session_scope(app) as s:
        user = _user(s)
        with pytest.raises(AccountError, match="No Google account"):
            unlink_google(s, user)
        user.oauth_accounts.append(OAuthAccount(provider="google", provider_account_id="g-123", email=user.email))
        s.flush()

        password_hash, user.password_hash = user.password_hash, None
        with pytest.raises(AccountError, match="Set a password"):
            unlink_google(s, user)

        user.password_hash = password_hash
        unlink_google(s, user)
        s.flush()
        assert s.query(OAuthAccount).count() == 0
