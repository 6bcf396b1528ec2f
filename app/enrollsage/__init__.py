import logging
import os
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g, jsonify, render_template, request, session
from sqlalchemy import inspect as sa_inspect

from app.enrollsage.auth import bp as auth_bp, load_current_user
from app.enrollsage.config import load_config
from app.enrollsage.constants import SESSION_LIFETIME_DAYS
from app.enrollsage.db import init_db, teardown_db_session
from app.enrollsage.modules.account.routes import bp as account_bp
from app.enrollsage.modules.admissions.admin import bp as admissions_bp
from app.enrollsage.modules.billing.admin import bp as billing_bp
from app.enrollsage.modules.catalog.admin import bp as catalog_bp
from app.enrollsage.modules.catalog.routes import bp as shop_bp
from app.enrollsage.modules.families.admin import bp as families_bp
from app.enrollsage.modules.orders.admin import bp as orders_admin_bp
from app.enrollsage.modules.orders.routes import bp as orders_bp
from app.enrollsage.modules.payments.routes import bp as payments_bp
from app.enrollsage.modules.portal.routes import bp as portal_bp
from app.enrollsage.modules.promotions.admin import bp as promotions_bp
from app.enrollsage.modules.schools.admin import bp as schools_bp
from app.enrollsage.modules.team.admin import bp as team_bp
from app.enrollsage.routes import bp as routes_bp
from app.enrollsage.utils import format_cents, format_money

# Registers the event handlers with the dispatcher.
import app.enrollsage.modules.notifications.service  # noqa: F401

_UNTRACKED_PREFIXES = ("/static/", "/health", "/healthz")
_CSRF_EXEMPT_ENDPOINTS = {"payments.stripe_webhook"}

# Tables the running code expects; a missing one means `alembic upgrade head` was skipped.
_EXPECTED_TABLES = (
    "users",
    "schools",
    "school_members",
    "households",
    "applications",
    "invoices",
    "products",
    "orders",
    "gift_cards",
    "stripe_events",
)


def create_app(config_overrides: dict | None = None) -> Flask:
    load_dotenv()
    app = Flask(__name__, template_folder="templates", static_folder="static")
    app.config.from_mapping(load_config())
    if config_overrides:
        app.config.update(config_overrides)
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(days=SESSION_LIFETIME_DAYS)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    from app.enrollsage.security import ensure_csrf_token, validate_csrf

    @app.context_processor
    def _inject_csrf() -> dict:
        return {"csrf_token": ensure_csrf_token()}

    @app.context_processor
    def _inject_permissions() -> dict:
        from app.enrollsage.rbac import user_has_permission

        def has_perm(key: str) -> bool:
            return user_has_permission(getattr(g, "current_user", None), key)

        return {"has_perm": has_perm}

    @app.context_processor
    def _inject_shell() -> dict:
        from app.enrollsage.modules.orders.cart import cart_count

        return {
            "cart_count": cart_count(session),
            "current_school": getattr(g, "current_school", None),
        }

    @app.template_filter("dateformat")
    def _dateformat_filter(value, format: str = "%Y-%m-%d") -> str:
        if value is None:
            return "-"
        if hasattr(value, "strftime"):
            return value.strftime(format)
        return str(value)

    app.add_template_filter(format_cents, "format_cents")
    app.add_template_filter(format_money, "format_money")

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(_UNTRACKED_PREFIXES):
            return None
        if request.endpoint in _CSRF_EXEMPT_ENDPOINTS:
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            # Login/register/logout carry their own rate limits.
            if (request.endpoint or "").startswith("auth."):
                return None
            if not validate_csrf(request):
                if request.path.startswith("/api/"):
                    return jsonify({"success": False, "error": "CSRF token missing or invalid."}), 400
                return render_template("errors/400.html", message="CSRF token missing or invalid."), 400

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    # Storage health check (fail loudly on misconfiguration)
    if app.config.get("STORAGE_BACKEND") == "s3":
        from app.enrollsage.storage import StorageError, storage_from_config

        try:
            app.logger.info("Storage health check PASSED: %s", storage_from_config(app.config).ping())
        except StorageError as e:
            app.logger.error("STORAGE CONFIG ERROR: %s", e)

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(schools_bp)
    app.register_blueprint(team_bp)
    app.register_blueprint(families_bp)
    app.register_blueprint(admissions_bp)
    app.register_blueprint(billing_bp)
    app.register_blueprint(portal_bp)
    app.register_blueprint(shop_bp)
    app.register_blueprint(catalog_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(orders_admin_bp)
    app.register_blueprint(promotions_bp)
    app.register_blueprint(account_bp)
    app.register_blueprint(payments_bp)

    def _load_user_wrapper():
        if request.path.startswith(_UNTRACKED_PREFIXES):
            g.current_user = None
            return None
        return load_current_user()

    app.before_request(_load_user_wrapper)
    app.teardown_appcontext(teardown_db_session)

    # Schema health: detect a database that is behind the code.
    app.config.setdefault("_schema_health_ok", True)
    app.config.setdefault("_schema_health_missing", [])

    def _run_schema_health_check() -> None:
        engine = app.extensions["sqlalchemy_engine"]
        try:
            insp = sa_inspect(engine)
            missing = [f"{t} (table)" for t in _EXPECTED_TABLES if not insp.has_table(t)]
        except Exception as e:
            app.logger.exception("Schema health check failed: %s", e)
            return
        if missing:
            app.config["_schema_health_ok"] = False
            app.config["_schema_health_missing"] = missing
            app.logger.error("DB schema out of date; run `alembic upgrade head`. Missing: %s", ", ".join(missing))

    if not app.config.get("TESTING"):
        _run_schema_health_check()

    @app.before_request
    def _schema_health_guardrail():  # type: ignore[no-redef]
        if app.config.get("_schema_health_ok"):
            return None
        if request.path.startswith(("/admin", "/super-admin")) and getattr(g, "current_user", None):
            return (
                render_template("errors/schema_out_of_date.html", missing=app.config.get("_schema_health_missing") or []),
                500,
            )
        return None

    @app.errorhandler(400)
    def _err_400(e):  # type: ignore[no-redef]
        return render_template("errors/400.html", message=getattr(e, "description", None)), 400

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        if request.path.startswith("/api/"):
            return jsonify({"success": False, "error": "Not found"}), 404
        return render_template("errors/404.html"), 404

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return render_template("errors/500.html"), 500

    @app.errorhandler(403)
    def _err_403(e):  # type: ignore[no-redef]
        missing = getattr(g, "missing_permission", None)
        if missing:
            app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None))
        return render_template("errors/403.html", missing_permission=missing), 403

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        from flask import flash, redirect, url_for

        flash("File too large. Maximum size is 10MB.", "danger")
        referrer = request.referrer
        if referrer and referrer.startswith(request.host_url):
            return redirect(referrer), 302
        return redirect(url_for("routes.index")), 302

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
