"""
Outbound email and the event handlers that send it.

Every sender returns False (and logs) when Brevo is not configured.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from flask import current_app, render_template

from app.enrollsage.db import db_session
from app.enrollsage.utils import format_cents

from .brevo_client import LISTS, TEMPLATES, BrevoError, brevo_from_config
from .events import on

if TYPE_CHECKING:
    from app.enrollsage.models import User
    from app.enrollsage.modules.billing.models import Invoice
    from app.enrollsage.modules.schools.models import School
    from app.enrollsage.modules.team.models import StaffInvitation

logger = logging.getLogger(__name__)

STATUS_LABELS = {
    "submitted": "Submitted",
    "under_review": "Under Review",
    "interview_scheduled": "Interview Scheduled",
    "interview_completed": "Interview Completed",
    "accepted": "Accepted",
    "waitlisted": "Waitlisted",
    "denied": "Not Accepted",
    "withdrawn": "Withdrawn",
    "enrolled": "Enrolled",
}


def _client():
    client = brevo_from_config(current_app.config)
    if client is None:
        logger.info("BREVO_API_KEY not set; skipping email")
    return client


def _app_url(path: str) -> str:
    return (current_app.config.get("APP_URL") or "").rstrip("/") + path


def send_template(to_email: str, to_name: str | None, template: str, params: dict[str, Any]) -> bool:
    client = _client()
    if client is None:
        return False
    message_id = client.send_transactional(
        to_email=to_email, to_name=to_name, template_id=TEMPLATES[template], params=params
    )
    logger.info("Sent %s email to %s (message_id=%s)", template, to_email, message_id)
    return True


def send_html(to_email: str, to_name: str | None, subject: str, template_name: str, **context: Any) -> bool:
    client = _client()
    if client is None:
        return False
    html = render_template(template_name, app_url=_app_url(""), **context)
    message_id = client.send_email(to_email=to_email, to_name=to_name, subject=subject, html=html)
    logger.info("Sent '%s' to %s (message_id=%s)", subject, to_email, message_id)
    return True


# ---------- Direct senders ----------
def send_staff_invitation(inv: "StaffInvitation", school: "School", inviter: "User") -> bool:
    accept_url = _app_url(f"/invite/accept?token={inv.token}")
    try:
        return send_template(
            inv.email,
            None,
            "STAFF_INVITATION",
            {
                "school_name": school.name,
                "inviter_name": inviter.full_name or inviter.email,
                "role": inv.school_role,
                "accept_url": accept_url,
                "expires_at": inv.expires_at.strftime("%B %d, %Y"),
            },
        )
    except BrevoError:
        logger.exception("Invitation email failed for %s (invitation kept)", inv.email)
        return False


def send_invoice_email(invoice: "Invoice") -> int:
    """Email each billing contact. Returns the number of emails sent."""
    sent = 0
    for guardian in invoice.household.billing_contacts:
        if not guardian.email:
            continue
        try:
            if send_html(
                guardian.email,
                guardian.full_name,
                f"Invoice {invoice.invoice_number} from {invoice.household.school.name}",
                "emails/invoice.html",
                invoice=invoice,
                guardian=guardian,
                pay_url=_app_url("/portal/billing"),
                format_cents=format_cents,
            ):
                sent += 1
        except BrevoError:
            logger.exception("Invoice email failed for %s (%s)", guardian.email, invoice.invoice_number)
    return sent


def send_contact_message(*, name: str, email: str, subject: str, message: str) -> bool:
    to = current_app.config.get("CONTACT_EMAIL") or "support@enrollsage.com"
    return send_html(
        to,
        "EnrollSage Support",
        f"[Contact] {subject or 'New message'}",
        "emails/contact.html",
        name=name,
        email=email,
        subject=subject,
        message=message,
    )


# ---------- Event handlers ----------
@on("user.registered")
def welcome_new_user(payload: dict[str, Any]) -> None:
    send_template(
        payload["email"],
        payload.get("first_name"),
        "WELCOME",
        {"first_name": payload.get("first_name") or "there", "shop_url": _app_url("/shop")},
    )
    if payload.get("marketing_consent"):
        client = _client()
        if client is not None:
            client.upsert_contact(
                email=payload["email"],
                list_ids=[LISTS["NEWSLETTER"]],
                attributes={"FIRSTNAME": payload.get("first_name"), "LASTNAME": payload.get("last_name")},
            )


def _application(payload: dict[str, Any]):
    from app.enrollsage.modules.admissions.models import Application

    application = db_session().get(Application, payload["application_id"])
    if application is None:
        logger.warning("Application %s not found for notification", payload["application_id"])
    return application


def _application_params(application) -> dict[str, Any]:
    return {
        "student_name": application.student.full_name,
        "school_name": application.school.name,
        "school_year": application.school_year,
        "grade": application.grade_applying_for,
        "status": STATUS_LABELS.get(application.status, application.status),
        "portal_url": _app_url(f"/portal/applications/{application.id}"),
    }


@on("application.submitted")
def application_received(payload: dict[str, Any]) -> None:
    application = _application(payload)
    if application is None:
        return
    guardian = application.household.primary_guardian
    if guardian is None or not guardian.email:
        return
    send_template(guardian.email, guardian.full_name, "APPLICATION_RECEIVED", _application_params(application))
    client = _client()
    if client is not None:
        client.upsert_contact(
            email=guardian.email,
            list_ids=[LISTS["ALL_FAMILIES"]],
            attributes={"FIRSTNAME": guardian.first_name, "LASTNAME": guardian.last_name},
        )


@on("application.status_changed")
def application_status_changed(payload: dict[str, Any]) -> None:
    application = _application(payload)
    if application is None or application.status not in STATUS_LABELS:
        return
    guardian = application.household.primary_guardian
    if guardian is None or not guardian.email:
        return
    params = _application_params(application)
    params["previous_status"] = STATUS_LABELS.get(payload.get("from") or "", payload.get("from"))
    send_template(guardian.email, guardian.full_name, "APPLICATION_STATUS", params)


@on("enrollment.confirmed")
def enrollment_confirmed(payload: dict[str, Any]) -> None:
    application = _application(payload)
    if application is None:
        return
    guardian = application.household.primary_guardian
    if guardian is None or not guardian.email:
        return
    send_template(guardian.email, guardian.full_name, "ENROLLMENT_CONFIRMED", _application_params(application))


@on("payment.received")
def payment_received(payload: dict[str, Any]) -> None:
    from app.enrollsage.modules.billing.models import Payment

    payment = db_session().get(Payment, payload["payment_id"])
    if payment is None:
        return
    for guardian in payment.household.billing_contacts:
        if not guardian.email:
            continue
        send_template(
            guardian.email,
            guardian.full_name,
            "PAYMENT_RECEIVED",
            {
                "amount": format_cents(payment.amount),
                "invoice_number": payment.invoice.invoice_number if payment.invoice else "",
                "balance_due": format_cents(payment.invoice.amount_due) if payment.invoice else format_cents(0),
                "method": payment.method,
            },
        )


@on("order.paid")
def order_confirmation(payload: dict[str, Any]) -> None:
    from app.enrollsage.modules.orders.models import Order
    from app.enrollsage.modules.orders.service import add_order_event

    s = db_session()
    order = s.get(Order, payload["order_id"])
    if order is None:
        return
    name = (order.shipping_address or {}).get("name")
    if send_html(order.email, name, f"Order {order.order_number} confirmed", "emails/order_confirmation.html", order=order):
        add_order_event(s, order, "email_sent", "Order confirmation sent")
        s.commit()
