from flask import Blueprint, current_app, flash, redirect, render_template, request, url_for
from sqlalchemy import text

from app.enrollsage.db import db_session
from app.enrollsage.env_check import ENV_CONFIG, check_all_env_vars, is_env_configured
from app.enrollsage.modules.notifications.brevo_client import BrevoError
from app.enrollsage.modules.notifications.service import send_contact_message
from app.enrollsage.ratelimit import api_limiter, client_ip

bp = Blueprint("routes", __name__)


def _install_required() -> bool:
    if current_app.config.get("TESTING") or current_app.config.get("SKIP_INSTALL_CHECK"):
        return False
    return not is_env_configured()


@bp.get("/")
def index():
    if _install_required():
        return redirect(url_for("routes.install"))
    return render_template("public/index.html")


@bp.get("/about")
def about():
    return render_template("public/about.html")


@bp.get("/privacy")
def privacy():
    return render_template("public/privacy.html")


@bp.get("/terms")
def terms():
    return render_template("public/terms.html")


@bp.get("/contact")
def contact_get():
    return render_template("public/contact.html", form={})


@bp.post("/contact")
def contact_post():
    form = {k: (request.form.get(k) or "").strip() for k in ("name", "email", "subject", "message")}
    errors = []
    if not form["name"]:
        errors.append("Name is required.")
    if not form["email"] or "@" not in form["email"]:
        errors.append("A valid email is required.")
    if len(form["message"]) < 10:
        errors.append("Message must be at least 10 characters.")
    if errors:
        for e in errors:
            flash(e, "danger")
        return render_template("public/contact.html", form=form), 400

    limit = api_limiter.check(f"contact:{client_ip(request)}")
    if not limit.allowed:
        flash("Too many messages. Please try again shortly.", "danger")
        return redirect(url_for("routes.contact_get"))

    try:
        send_contact_message(**form)
    except BrevoError as e:
        current_app.logger.error("Contact form email failed: %s", e)
        flash("We couldn't send your message right now. Please email us directly.", "danger")
        return render_template("public/contact.html", form=form), 502
    flash("Thanks! We'll be in touch within one business day.", "success")
    return redirect(url_for("routes.contact_get"))


@bp.get("/demo/admin")
def demo_admin():
    return render_template("public/demo_admin.html")


@bp.get("/demo/family")
def demo_family():
    return render_template("public/demo_family.html")


@bp.get("/install")
def install():
    status = check_all_env_vars()
    if status.configured and request.args.get("force") != "1":
        return redirect(url_for("routes.index"))
    specs = {spec.key: spec for spec in ENV_CONFIG.values()}
    return render_template("public/install.html", status=status, specs=specs)


@bp.get("/health")
def health():
    """Health check endpoint. Returns JSON."""
    try:
        db_session().execute(text("SELECT 1"))
    except Exception as e:
        current_app.logger.error("Health check DB ping failed: %s", e)
        return {"ok": False, "error": "database unavailable"}, 503
    return {"ok": True}


@bp.get("/healthz")
def healthz():
    """
    Fast health check for load balancer probes. No DB access.
    """
    return "ok", 200
