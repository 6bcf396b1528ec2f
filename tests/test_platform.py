from collections import defaultdict
from datetime import datetime, timedelta

from app.enrollsage.env_check import check_all_env_vars, check_env_var, env_status_for_client
from app.enrollsage.modules.notifications import events
from app.enrollsage.ratelimit import RateLimiter

GOOD_ENV = {
    "STRIPE_PUBLIC_KEY": "pk_test_123",
    "STRIPE_SECRET_KEY": "sk_test_123",
    "STRIPE_WEBHOOK_SECRET": "whsec_123",
    "DATABASE_URL": "postgresql://u:p@db/enrollsage",
    "BREVO_API_KEY": "xkeysib-abc",
    "SESSION_SECRET": "x" * 32,
}


# ---------- Rate limiting ----------
def test_limiter_blocks_after_max_attempts():
    limiter = RateLimiter(window_seconds=60, max_attempts=2, block_seconds=600)
    t0 = datetime(2025, 1, 1, 12, 0, 0)
    assert limiter.check("ip", now=t0).remaining == 1
    assert limiter.check("ip", now=t0).allowed
    third = limiter.check("ip", now=t0)
    assert not third.allowed
    assert third.blocked
    assert third.reset_in == 600
    # Still blocked after the window slides past.
    assert not limiter.check("ip", now=t0 + timedelta(seconds=120)).allowed
    assert limiter.check("ip", now=t0 + timedelta(seconds=601)).allowed
    assert limiter.check("other", now=t0).allowed


def test_limiter_without_block_uses_window():
    limiter = RateLimiter(window_seconds=60, max_attempts=1)
    t0 = datetime(2025, 1, 1)
    limiter.check("k", now=t0)
    denied = limiter.check("k", now=t0 + timedelta(seconds=10))
    assert not denied.allowed and not denied.blocked
    assert denied.reset_in == 50
    assert limiter.check("k", now=t0 + timedelta(seconds=61)).allowed


def test_limiter_expired_block_starts_fresh_window():
    limiter = RateLimiter(window_seconds=3600, max_attempts=2, block_seconds=60)
    t0 = datetime(2025, 1, 1, 9, 0, 0)
    limiter.check("ip", now=t0)
    limiter.check("ip", now=t0)
    assert limiter.check("ip", now=t0).blocked
    after = limiter.check("ip", now=t0 + timedelta(seconds=61))
    assert after.allowed
    assert after.remaining == 1


def test_limiter_prunes_idle_identifiers():
    limiter = RateLimiter(window_seconds=60, max_attempts=1, block_seconds=3600)
    t0 = datetime(2025, 1, 1, 9, 0, 0)
    for i in range(50):
        limiter.check(f"10.0.0.{i}", now=t0)
    limiter.check("blocked", now=t0)
    limiter.check("blocked", now=t0)
    assert len(limiter._entries) == 51

    limiter.check("fresh", now=t0 + timedelta(minutes=10))
    assert set(limiter._entries) == {"blocked", "fresh"}


def test_limiter_reset_and_disable():
    limiter = RateLimiter(window_seconds=60, max_attempts=1)
    limiter.check("k")
    limiter.reset("k")
    assert limiter.check("k").allowed
    limiter.enabled = False
    assert all(limiter.check("k").allowed for _ in range(5))


# ---------- Environment checks ----------
def test_env_var_rules():
    assert check_env_var("STRIPE_SECRET_KEY", "pk_live").error == 'STRIPE_SECRET_KEY should start with "sk_"'
    assert check_env_var("DATABASE_URL", "sqlite:///dev.db").valid
    assert check_env_var("GOOGLE_CLIENT_ID", "abc").error.endswith('.apps.googleusercontent.com"')
    assert check_env_var("SESSION_SECRET", "short").error == "SESSION_SECRET must be at least 32 characters"
    optional = check_env_var("GOOGLE_CLIENT_SECRET", "")
    assert not optional.present and optional.valid


def test_env_status():
    assert check_all_env_vars(GOOD_ENV).configured
    status = check_all_env_vars({**GOOD_ENV, "BREVO_API_KEY": "", "STRIPE_PUBLIC_KEY": "sk_oops"})
    assert status.missing_required == ["BREVO_API_KEY"]
    assert status.invalid_keys == ["STRIPE_PUBLIC_KEY"]
    assert not status.configured
    client_view = env_status_for_client({})
    assert client_view["configured"] is False
    assert "STRIPE_SECRET_KEY" in client_view["missing_keys"]


# ---------- Events ----------
def test_emit_runs_every_handler_and_survives_failures(monkeypatch, caplog):
    monkeypatch.setattr(events, "_handlers", defaultdict(list))
    seen = []

    @events.on("thing.happened")
    def first(payload):
        seen.append(("first", payload["id"]))

    @events.on("thing.happened")
    def broken(payload):
        raise RuntimeError("boom")

    @events.on("thing.happened")
    def last(payload):
        seen.append(("last", payload["id"]))

    assert events.emit("thing.happened", {"id": 7}) == 2
    assert seen == [("first", 7), ("last", 7)]
    assert "Event handler failed" in caplog.text
    assert events.emit("nobody.listens", {}) == 0
