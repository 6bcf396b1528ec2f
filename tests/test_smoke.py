def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True


def test_healthz_skips_database(client):
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.data == b"ok"


def test_public_pages_render(client):
    for path in ("/", "/about", "/privacy", "/terms", "/contact", "/demo/admin", "/demo/family"):
        r = client.get(path)
        assert r.status_code == 200, path


def test_unknown_api_route_returns_json_404(client):
    r = client.get("/api/does-not-exist")
    assert r.status_code == 404
    assert r.json["success"] is False


def test_install_page_lists_missing_keys(client):
    r = client.get("/install?force=1")
    assert r.status_code == 200
    assert b"STRIPE_SECRET_KEY" in r.data


def test_admin_requires_login(client):
    r = client.get("/admin", follow_redirects=False)
    assert r.status_code == 302
    assert "/login" in r.headers["Location"]
    assert "next=%2Fadmin" in r.headers["Location"] or "next=/admin" in r.headers["Location"]


def test_owner_can_open_admin_dashboard(client, login):
    login()
    r = client.get("/admin")
    assert r.status_code == 200
    assert b"Westlake Academy" in r.data
