from __future__ import annotations

from datetime import date

from flask import Blueprint, abort, flash, g, redirect, render_template, request, url_for

from app.enrollsage.db import db_session
from app.enrollsage.models import User
from app.enrollsage.modules.billing.models import AccountCredit, Invoice, PaymentPlan
from app.enrollsage.modules.billing.service import (
    INVOICE_STATUSES,
    ITEM_TYPES,
    MANUAL_METHODS,
    PLAN_FREQUENCIES,
    BillingError,
    apply_account_credit,
    cancel_payment_plan,
    create_account_credit,
    create_invoice,
    create_payment_plan,
    mark_overdue_invoices,
    record_payment,
    school_billing_stats,
    send_invoice,
    void_invoice,
)
from app.enrollsage.modules.families.models import Household
from app.enrollsage.modules.notifications.events import emit
from app.enrollsage.rbac import require_permission
from app.enrollsage.utils import checkbox, dollars_to_cents, parse_date

bp = Blueprint("billing", __name__)

MAX_INVOICE_LINES = 10


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _invoice_or_404(invoice_id: int) -> Invoice:
    inv = db_session().get(Invoice, invoice_id)
    if not inv or inv.school_id != g.current_school.id:
        abort(404)
    return inv


def _household_or_404(household_id: int | None) -> Household:
    h = db_session().get(Household, household_id or 0)
    if not h or h.school_id != g.current_school.id:
        abort(404)
    return h


def _households():
    return (
        db_session()
        .query(Household)
        .filter(Household.school_id == g.current_school.id)
        .order_by(Household.name.asc())
        .all()
    )


def _invoice_items_from_form() -> list[dict]:
    """Parallel form lists -> item dicts. Blank rows are skipped."""
    descriptions = request.form.getlist("item_description")
    amounts = request.form.getlist("item_amount")
    quantities = request.form.getlist("item_quantity")
    types = request.form.getlist("item_type")
    students = request.form.getlist("item_student_id")
    items = []
    for i, desc in enumerate(descriptions[:MAX_INVOICE_LINES]):
        amount = amounts[i] if i < len(amounts) else ""
        if not (desc or "").strip() and not (amount or "").strip():
            continue
        qty = quantities[i] if i < len(quantities) else ""
        student = students[i] if i < len(students) else ""
        items.append(
            {
                "description": (desc or "").strip(),
                "unit_amount": dollars_to_cents(amount),
                "quantity": int(qty) if (qty or "").strip().isdigit() else 1,
                "item_type": (types[i] if i < len(types) else "") or "tuition",
                "student_id": int(student) if (student or "").strip().isdigit() else None,
            }
        )
    return items


# ---------- Invoices ----------
@bp.get("/admin/billing")
@require_permission("billing.view")
def billing_index():
    s = db_session()
    status_filter = (request.args.get("status") or "").strip()
    search = (request.args.get("q") or "").strip()

    q = s.query(Invoice).filter(Invoice.school_id == g.current_school.id)
    if status_filter:
        q = q.filter(Invoice.status == status_filter)
    if search:
        like = f"%{search}%"
        q = q.join(Household, Household.id == Invoice.household_id).filter(
            Invoice.invoice_number.ilike(like) | Household.name.ilike(like)
        )
    invoices = q.order_by(Invoice.created_at.desc()).all()
    plans = (
        s.query(PaymentPlan)
        .filter(PaymentPlan.school_id == g.current_school.id)
        .order_by(PaymentPlan.created_at.desc())
        .all()
    )
    return render_template(
        "admin/billing/index.html",
        invoices=invoices,
        plans=plans,
        stats=school_billing_stats(s, g.current_school),
        status_filter=status_filter,
        search=search,
        statuses=INVOICE_STATUSES,
    )


@bp.post("/admin/billing/overdue")
@require_permission("billing.edit")
def billing_mark_overdue():
    s = db_session()
    count = mark_overdue_invoices(s, g.current_school)
    s.commit()
    flash(f"{count} invoice(s) marked overdue.", "success" if count else "info")
    return redirect(url_for("billing.billing_index"))


@bp.get("/admin/billing/invoices/new")
@require_permission("billing.edit")
def invoice_new_get():
    selected = request.args.get("household_id", type=int)
    return render_template(
        "admin/billing/invoice_new.html",
        households=_households(),
        selected_household_id=selected,
        item_types=ITEM_TYPES,
        lines=range(5),
    )


@bp.post("/admin/billing/invoices/new")
@require_permission("billing.edit")
def invoice_new_post():
    s = db_session()
    household = _household_or_404(request.form.get("household_id", type=int))
    try:
        items = _invoice_items_from_form()
        invoice = create_invoice(
            s,
            g.current_school,
            household,
            items,
            _current_user(),
            due_date=parse_date(request.form.get("due_date")),
            issue_date=parse_date(request.form.get("issue_date")),
            period_start=parse_date(request.form.get("period_start")),
            period_end=parse_date(request.form.get("period_end")),
            memo=request.form.get("memo"),
            notes=request.form.get("notes"),
        )
        if checkbox(request.form, "send_now"):
            send_invoice(s, invoice, _current_user())
    except (BillingError, ValueError) as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("billing.invoice_new_get", household_id=household.id))
    s.commit()
    flash(f"Invoice {invoice.invoice_number} created.", "success")
    return redirect(url_for("billing.invoice_detail", invoice_id=invoice.id))


@bp.get("/admin/billing/invoices/<int:invoice_id>")
@require_permission("billing.view")
def invoice_detail(invoice_id: int):
    s = db_session()
    invoice = _invoice_or_404(invoice_id)
    credits = (
        s.query(AccountCredit)
        .filter(AccountCredit.household_id == invoice.household_id, AccountCredit.remaining_amount > 0)
        .order_by(AccountCredit.created_at.asc())
        .all()
    )
    return render_template(
        "admin/billing/invoice_detail.html",
        invoice=invoice,
        credits=credits,
        methods=MANUAL_METHODS,
        today=date.today(),
    )


@bp.post("/admin/billing/invoices/<int:invoice_id>/send")
@require_permission("billing.edit")
def invoice_send(invoice_id: int):
    s = db_session()
    invoice = _invoice_or_404(invoice_id)
    try:
        send_invoice(s, invoice, _current_user())
    except BillingError as e:
        flash(str(e), "danger")
        return redirect(url_for("billing.invoice_detail", invoice_id=invoice.id))
    s.commit()
    flash(f"Invoice {invoice.invoice_number} sent.", "success")
    return redirect(url_for("billing.invoice_detail", invoice_id=invoice.id))


@bp.post("/admin/billing/invoices/<int:invoice_id>/void")
@require_permission("billing.edit")
def invoice_void(invoice_id: int):
    s = db_session()
    invoice = _invoice_or_404(invoice_id)
    reason = (request.form.get("reason") or "").strip()
    try:
        void_invoice(s, invoice, reason, _current_user())
    except BillingError as e:
        flash(str(e), "danger")
        return redirect(url_for("billing.invoice_detail", invoice_id=invoice.id))
    s.commit()
    flash(f"Invoice {invoice.invoice_number} voided.", "success")
    return redirect(url_for("billing.invoice_detail", invoice_id=invoice.id))


@bp.post("/admin/billing/invoices/<int:invoice_id>/payment")
@require_permission("billing.edit")
def invoice_payment(invoice_id: int):
    s = db_session()
    invoice = _invoice_or_404(invoice_id)
    try:
        amount = dollars_to_cents(request.form.get("amount"))
        if not amount or amount <= 0:
            raise BillingError("Payment amount must be greater than zero.")
        payment = record_payment(
            s,
            invoice,
            amount=amount,
            method=(request.form.get("method") or "").strip(),
            user=_current_user(),
            check_number=request.form.get("check_number"),
            reference_number=request.form.get("reference_number"),
            notes=request.form.get("notes"),
        )
    except (BillingError, ValueError) as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("billing.invoice_detail", invoice_id=invoice.id))
    s.commit()
    emit("payment.received", {"payment_id": payment.id})
    flash("Payment recorded.", "success")
    return redirect(url_for("billing.invoice_detail", invoice_id=invoice.id))


@bp.post("/admin/billing/invoices/<int:invoice_id>/credit/<int:credit_id>")
@require_permission("billing.edit")
def invoice_apply_credit(invoice_id: int, credit_id: int):
    s = db_session()
    invoice = _invoice_or_404(invoice_id)
    credit = s.get(AccountCredit, credit_id)
    if not credit or credit.household_id != invoice.household_id:
        abort(404)
    try:
        applied = apply_account_credit(s, invoice, credit, _current_user())
    except BillingError as e:
        flash(str(e), "danger")
        return redirect(url_for("billing.invoice_detail", invoice_id=invoice.id))
    s.commit()
    flash(f"Applied ${applied / 100:,.2f} of account credit.", "success")
    return redirect(url_for("billing.invoice_detail", invoice_id=invoice.id))


# ---------- Credits ----------
@bp.post("/admin/billing/households/<int:household_id>/credits")
@require_permission("billing.edit")
def household_credit(household_id: int):
    s = db_session()
    household = _household_or_404(household_id)
    try:
        amount = dollars_to_cents(request.form.get("amount")) or 0
        create_account_credit(s, household, amount, (request.form.get("reason") or "").strip(), _current_user())
    except (BillingError, ValueError) as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("families.family_detail", household_id=household.id))
    s.commit()
    flash("Account credit added.", "success")
    return redirect(url_for("families.family_detail", household_id=household.id))


# ---------- Payment plans ----------
@bp.get("/admin/billing/plans/new")
@require_permission("billing.edit")
def plan_new_get():
    return render_template(
        "admin/billing/plan_new.html",
        households=_households(),
        selected_household_id=request.args.get("household_id", type=int),
        frequencies=PLAN_FREQUENCIES,
    )


@bp.post("/admin/billing/plans/new")
@require_permission("billing.edit")
def plan_new_post():
    s = db_session()
    household = _household_or_404(request.form.get("household_id", type=int))
    count = (request.form.get("number_of_payments") or "").strip()
    day = (request.form.get("day_of_month") or "").strip()
    try:
        payload = {
            "name": request.form.get("name"),
            "total_amount": dollars_to_cents(request.form.get("total_amount")),
            "number_of_payments": int(count) if count.isdigit() else None,
            "frequency": (request.form.get("frequency") or "monthly").strip(),
            "start_date": parse_date(request.form.get("start_date")),
            "day_of_month": int(day) if day.isdigit() else 1,
            "school_year": request.form.get("school_year"),
            "autopay_enabled": checkbox(request.form, "autopay_enabled"),
        }
        plan = create_payment_plan(s, household, payload, _current_user())
    except (BillingError, ValueError) as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("billing.plan_new_get", household_id=household.id))
    s.commit()
    flash(f"Payment plan '{plan.name}' created with {plan.number_of_payments} payments.", "success")
    return redirect(url_for("families.family_detail", household_id=household.id))


@bp.post("/admin/billing/plans/<int:plan_id>/cancel")
@require_permission("billing.edit")
def plan_cancel(plan_id: int):
    s = db_session()
    plan = s.get(PaymentPlan, plan_id)
    if not plan or plan.school_id != g.current_school.id:
        abort(404)
    try:
        cancel_payment_plan(s, plan, _current_user())
    except BillingError as e:
        flash(str(e), "danger")
        return redirect(url_for("billing.billing_index"))
    s.commit()
    flash("Payment plan cancelled.", "success")
    return redirect(url_for("billing.billing_index"))
