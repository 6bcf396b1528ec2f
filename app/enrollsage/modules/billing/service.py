"""
Billing service layer.
Invoices, payments, payment plans and account credits. All amounts are integer cents.
"""
from __future__ import annotations

import calendar
import logging
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING

from app.enrollsage.audit import record_event

from .models import AccountCredit, Invoice, InvoiceItem, Payment, PaymentPlan, ScheduledPayment

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.enrollsage.models import User
    from app.enrollsage.modules.families.models import Household
    from app.enrollsage.modules.schools.models import School

logger = logging.getLogger(__name__)

INVOICE_STATUSES = ("draft", "pending", "sent", "partially_paid", "paid", "overdue", "void", "refunded")
OPEN_INVOICE_STATUSES = ("pending", "sent", "partially_paid", "overdue")
ITEM_TYPES = (
    "tuition",
    "registration",
    "application",
    "activity",
    "uniform",
    "transportation",
    "lunch",
    "other",
    "discount",
    "credit",
)
NEGATIVE_ITEM_TYPES = ("discount", "credit")
PAYMENT_METHODS = ("card", "ach", "check", "cash", "transfer", "other")
MANUAL_METHODS = ("check", "cash", "transfer", "other")
PAYMENT_STATUSES = ("pending", "processing", "succeeded", "failed", "refunded", "partially_refunded")
PLAN_FREQUENCIES = {"monthly": 1, "quarterly": 3, "semi_annual": 6, "annual": 12}
DEFAULT_DUE_DAYS = 30


class BillingError(ValueError):
    pass


# ---------- Invoices ----------
def next_invoice_number(s: "Session", year: int | None = None) -> str:
    year = year or date.today().year
    prefix = f"INV-{year}-"
    numbers = s.query(Invoice.invoice_number).filter(Invoice.invoice_number.like(f"{prefix}%")).all()
    highest = 0
    for (num,) in numbers:
        try:
            highest = max(highest, int(num[len(prefix):]))
        except ValueError:
            continue
    return f"{prefix}{highest + 1:04d}"


def validate_invoice_items(items: list[dict]) -> list[str]:
    errors = []
    if not items:
        errors.append("An invoice needs at least one line item.")
    for i, item in enumerate(items, start=1):
        if not (item.get("description") or "").strip():
            errors.append(f"Item {i}: description is required.")
        if (item.get("item_type") or "tuition") not in ITEM_TYPES:
            errors.append(f"Item {i}: invalid type.")
        unit = item.get("unit_amount")
        if not isinstance(unit, int) or unit <= 0:
            errors.append(f"Item {i}: amount must be greater than zero.")
        qty = item.get("quantity", 1)
        if not isinstance(qty, int) or qty < 1:
            errors.append(f"Item {i}: quantity must be at least 1.")
    return errors


def recalculate_invoice(invoice: Invoice) -> Invoice:
    subtotal = discount = credit = 0
    for item in invoice.items:
        item.amount = item.quantity * item.unit_amount
        if item.item_type == "discount":
            discount += item.amount
        elif item.item_type == "credit":
            credit += item.amount
        else:
            subtotal += item.amount
    invoice.subtotal = subtotal
    invoice.discount_amount = discount
    invoice.credit_amount = credit
    invoice.total = max(0, subtotal - discount - credit)

    paid = sum(p.amount - (p.refunded_amount or 0) for p in invoice.payments if p.status in ("succeeded", "partially_refunded"))
    refunded = any(p.status in ("refunded", "partially_refunded") for p in invoice.payments)
    invoice.amount_paid = paid
    invoice.amount_due = max(0, invoice.total - paid)

    if invoice.status not in ("void", "draft"):
        # Credits alone can settle an invoice.
        if invoice.amount_due == 0 and (paid > 0 or credit > 0):
            invoice.status = "paid"
            invoice.paid_at = invoice.paid_at or datetime.utcnow()
        elif paid > 0:
            invoice.status = "partially_paid"
            invoice.paid_at = None
        elif invoice.status in ("paid", "partially_paid"):
            invoice.status = "refunded" if refunded else "sent"
            invoice.paid_at = None
    invoice.updated_at = datetime.utcnow()
    return invoice


def create_invoice(
    s: "Session",
    school: "School",
    household: "Household",
    items: list[dict],
    user: "User | None",
    *,
    due_date: date | None = None,
    issue_date: date | None = None,
    period_start: date | None = None,
    period_end: date | None = None,
    memo: str | None = None,
    notes: str | None = None,
    status: str = "draft",
) -> Invoice:
    """items: [{"description", "unit_amount" (cents), "quantity", "item_type", "student_id"}]"""
    errors = validate_invoice_items(items)
    if errors:
        raise BillingError(" ".join(errors))
    if household.school_id != school.id:
        raise BillingError("Household does not belong to this school.")
    issue = issue_date or date.today()
    due = due_date or issue + timedelta(days=DEFAULT_DUE_DAYS)
    if due < issue:
        raise BillingError("Due date cannot be before the issue date.")

    now = datetime.utcnow()
    invoice = Invoice(
        invoice_number=next_invoice_number(s, issue.year),
        school_id=school.id,
        household_id=household.id,
        issue_date=issue,
        due_date=due,
        period_start=period_start,
        period_end=period_end,
        status=status,
        memo=(memo or "").strip() or None,
        notes=(notes or "").strip() or None,
        created_by_user_id=user.id if user else None,
        created_at=now,
        updated_at=now,
    )
    for item in items:
        qty = item.get("quantity", 1)
        invoice.items.append(
            InvoiceItem(
                item_type=item.get("item_type") or "tuition",
                description=item["description"].strip(),
                quantity=qty,
                unit_amount=item["unit_amount"],
                amount=qty * item["unit_amount"],
                student_id=item.get("student_id") or None,
            )
        )
    recalculate_invoice(invoice)
    s.add(invoice)
    s.flush()
    record_event(
        s,
        actor=user,
        action="invoice.create",
        entity_type="Invoice",
        entity_id=str(invoice.id),
        school_id=school.id,
        metadata={"number": invoice.invoice_number, "total": invoice.total, "household_id": household.id},
    )
    return invoice


def send_invoice(s: "Session", invoice: Invoice, user: "User") -> Invoice:
    if invoice.status not in ("draft", "pending"):
        raise BillingError("Only draft or pending invoices can be sent.")
    invoice.status = "sent"
    invoice.sent_at = datetime.utcnow()
    invoice.updated_at = invoice.sent_at
    record_event(
        s,
        actor=user,
        action="invoice.send",
        entity_type="Invoice",
        entity_id=str(invoice.id),
        school_id=invoice.school_id,
        metadata={"number": invoice.invoice_number},
    )

    from app.enrollsage.modules.notifications.service import send_invoice_email

    send_invoice_email(invoice)
    return invoice


def void_invoice(s: "Session", invoice: Invoice, reason: str, user: "User") -> Invoice:
    reason = (reason or "").strip()
    if not reason:
        raise BillingError("A reason is required to void an invoice.")
    if invoice.status == "void":
        raise BillingError("This invoice is already void.")
    if any(p.status in ("succeeded", "partially_refunded") for p in invoice.payments):
        raise BillingError("Invoices with payments cannot be voided. Refund the payments first.")
    old = invoice.status
    now = datetime.utcnow()
    invoice.status = "void"
    invoice.voided_at = now
    invoice.void_reason = reason
    invoice.amount_due = 0
    invoice.updated_at = now
    record_event(
        s,
        actor=user,
        action="invoice.void",
        entity_type="Invoice",
        entity_id=str(invoice.id),
        school_id=invoice.school_id,
        reason=reason,
        metadata={"from": old},
    )
    return invoice


def mark_overdue_invoices(s: "Session", school: "School | None" = None, today: date | None = None) -> int:
    today = today or date.today()
    q = s.query(Invoice).filter(
        Invoice.status.in_(("sent", "partially_paid")),
        Invoice.due_date < today,
        Invoice.amount_due > 0,
    )
    if school is not None:
        q = q.filter(Invoice.school_id == school.id)
    count = 0
    for invoice in q.all():
        invoice.status = "overdue"
        invoice.updated_at = datetime.utcnow()
        count += 1
    if count:
        record_event(
            s,
            actor=None,
            action="invoice.overdue_sweep",
            entity_type="Invoice",
            school_id=school.id if school else None,
            metadata={"count": count, "as_of": today.isoformat()},
        )
    return count


# ---------- Payments ----------
def record_payment(
    s: "Session",
    invoice: Invoice,
    *,
    amount: int,
    method: str,
    user: "User | None",
    check_number: str | None = None,
    reference_number: str | None = None,
    notes: str | None = None,
    stripe_payment_intent_id: str | None = None,
    stripe_charge_id: str | None = None,
) -> Payment:
    if method not in PAYMENT_METHODS:
        raise BillingError(f"Invalid payment method. Must be one of: {', '.join(PAYMENT_METHODS)}")
    if stripe_payment_intent_id is None and method not in MANUAL_METHODS:
        raise BillingError("Card and ACH payments are recorded through Stripe.")
    retried = None
    if stripe_payment_intent_id:
        for existing in s.query(Payment).filter(Payment.stripe_payment_intent_id == stripe_payment_intent_id).all():
            if existing.status != "failed":
                return existing
            retried = existing
    if invoice.status in ("void", "draft"):
        raise BillingError("Payments can only be recorded on sent invoices.")
    if not isinstance(amount, int) or amount <= 0:
        raise BillingError("Payment amount must be greater than zero.")
    if amount > invoice.amount_due:
        raise BillingError("Payment exceeds the amount due.")

    now = datetime.utcnow()
    if retried is not None:
        # A later attempt on the same intent succeeded; the failed row becomes the payment.
        payment = retried
        payment.amount = amount
        payment.status = "succeeded"
        payment.notes = (notes or "").strip() or None
        payment.stripe_charge_id = stripe_charge_id
        payment.processed_at = now
        payment.processed_by_user_id = user.id if user else None
    else:
        payment = Payment(
            school_id=invoice.school_id,
            household_id=invoice.household_id,
            amount=amount,
            method=method,
            status="succeeded",
            check_number=(check_number or "").strip() or None,
            reference_number=(reference_number or "").strip() or None,
            notes=(notes or "").strip() or None,
            stripe_payment_intent_id=stripe_payment_intent_id,
            stripe_charge_id=stripe_charge_id,
            processed_at=now,
            processed_by_user_id=user.id if user else None,
            created_at=now,
        )
        s.add(payment)
    if payment not in invoice.payments:
        invoice.payments.append(payment)
    recalculate_invoice(invoice)
    s.flush()
    sync_plan_progress(s, invoice, payment)
    record_event(
        s,
        actor=user,
        action="payment.record",
        entity_type="Payment",
        entity_id=str(payment.id),
        school_id=invoice.school_id,
        metadata={"invoice": invoice.invoice_number, "amount": amount, "method": method},
    )
    return payment


def sync_plan_progress(s: "Session", invoice: Invoice, payment: Payment | None = None) -> PaymentPlan | None:
    """Mirror an installment invoice's state onto its scheduled payment and recompute the plan totals."""
    sp = s.query(ScheduledPayment).filter(ScheduledPayment.invoice_id == invoice.id).one_or_none()
    if sp is None:
        return None
    if invoice.status == "paid" and sp.status in ("scheduled", "failed"):
        sp.status = "paid"
        if payment is not None:
            sp.payment_id = payment.id
    elif invoice.status != "paid" and sp.status == "paid":
        sp.status = "scheduled"
        sp.payment_id = None

    plan = sp.plan
    plan.amount_paid = sum(x.amount for x in plan.scheduled_payments if x.status == "paid")
    plan.amount_remaining = max(0, plan.total_amount - plan.amount_paid)
    if plan.status == "active" and plan.amount_remaining == 0:
        plan.status = "completed"
    elif plan.status == "completed" and plan.amount_remaining > 0:
        plan.status = "active"
    return plan


def refund_payment(s: "Session", payment: Payment, amount: int, user: "User | None", reason: str | None = None) -> Payment:
    refundable = payment.amount - (payment.refunded_amount or 0)
    if amount <= 0 or amount > refundable:
        raise BillingError("Refund amount is invalid.")
    payment.refunded_amount = (payment.refunded_amount or 0) + amount
    payment.status = "refunded" if payment.refunded_amount >= payment.amount else "partially_refunded"
    if payment.invoice is not None:
        recalculate_invoice(payment.invoice)
        sync_plan_progress(s, payment.invoice)
    record_event(
        s,
        actor=user,
        action="payment.refund",
        entity_type="Payment",
        entity_id=str(payment.id),
        school_id=payment.school_id,
        reason=reason,
        metadata={"amount": amount, "status": payment.status},
    )
    return payment


# ---------- Credits ----------
def create_account_credit(s: "Session", household: "Household", amount: int, reason: str, user: "User") -> AccountCredit:
    if amount <= 0:
        raise BillingError("Credit amount must be greater than zero.")
    if not (reason or "").strip():
        raise BillingError("A reason is required.")
    credit = AccountCredit(
        school_id=household.school_id,
        household_id=household.id,
        amount=amount,
        remaining_amount=amount,
        reason=reason.strip(),
        created_by_user_id=user.id,
    )
    s.add(credit)
    s.flush()
    record_event(
        s,
        actor=user,
        action="credit.create",
        entity_type="AccountCredit",
        entity_id=str(credit.id),
        school_id=household.school_id,
        metadata={"amount": amount, "household_id": household.id},
    )
    return credit


def available_credit(s: "Session", household: "Household") -> int:
    now = datetime.utcnow()
    credits = s.query(AccountCredit).filter(AccountCredit.household_id == household.id, AccountCredit.remaining_amount > 0).all()
    return sum(c.remaining_amount for c in credits if c.expires_at is None or c.expires_at > now)


def apply_account_credit(s: "Session", invoice: Invoice, credit: AccountCredit, user: "User") -> int:
    """Apply as much of the credit as the invoice can absorb. Returns cents applied."""
    if credit.household_id != invoice.household_id:
        raise BillingError("Credit belongs to another household.")
    if invoice.status in ("void", "paid", "refunded"):
        raise BillingError("Credits can only be applied to open invoices.")
    if credit.expires_at is not None and credit.expires_at <= datetime.utcnow():
        raise BillingError("This credit has expired.")
    applied = min(credit.remaining_amount, invoice.amount_due)
    if applied <= 0:
        raise BillingError("Nothing to apply.")
    credit.remaining_amount -= applied
    invoice.items.append(
        InvoiceItem(item_type="credit", description=f"Account credit: {credit.reason}", quantity=1, unit_amount=applied, amount=applied)
    )
    recalculate_invoice(invoice)
    s.flush()
    sync_plan_progress(s, invoice)
    record_event(
        s,
        actor=user,
        action="credit.apply",
        entity_type="Invoice",
        entity_id=str(invoice.id),
        school_id=invoice.school_id,
        metadata={"credit_id": credit.id, "amount": applied},
    )
    return applied


# ---------- Payment plans ----------
def _add_months(d: date, months: int, day: int) -> date:
    month_index = d.month - 1 + months
    year = d.year + month_index // 12
    month = month_index % 12 + 1
    return date(year, month, min(day, calendar.monthrange(year, month)[1]))


def plan_schedule(total: int, count: int, frequency: str, start: date, day_of_month: int) -> list[tuple[date, int]]:
    """Split total into count payments; remainder cents land on the last one."""
    step = PLAN_FREQUENCIES[frequency]
    base = total // count
    out = []
    for i in range(count):
        amount = base if i < count - 1 else total - base * (count - 1)
        out.append((_add_months(start, i * step, day_of_month), amount))
    return out


def create_payment_plan(s: "Session", household: "Household", payload: dict, user: "User") -> PaymentPlan:
    name = (payload.get("name") or "").strip()
    total = payload.get("total_amount")
    count = payload.get("number_of_payments")
    frequency = payload.get("frequency") or "monthly"
    start = payload.get("start_date")
    day = payload.get("day_of_month") or 1
    if not name:
        raise BillingError("Plan name is required.")
    if not isinstance(total, int) or total <= 0:
        raise BillingError("Total amount must be greater than zero.")
    if not isinstance(count, int) or not 1 <= count <= 24:
        raise BillingError("Number of payments must be between 1 and 24.")
    if frequency not in PLAN_FREQUENCIES:
        raise BillingError(f"Invalid frequency. Must be one of: {', '.join(PLAN_FREQUENCIES)}")
    if not isinstance(start, date):
        raise BillingError("Start date is required.")
    if not 1 <= int(day) <= 28:
        raise BillingError("Day of month must be between 1 and 28.")

    schedule = plan_schedule(total, count, frequency, start, int(day))
    plan = PaymentPlan(
        school_id=household.school_id,
        household_id=household.id,
        name=name,
        school_year=(payload.get("school_year") or "").strip() or household.school.current_school_year,
        total_amount=total,
        amount_paid=0,
        amount_remaining=total,
        number_of_payments=count,
        payment_amount=total // count,
        frequency=frequency,
        start_date=start,
        end_date=schedule[-1][0],
        day_of_month=int(day),
        autopay_enabled=bool(payload.get("autopay_enabled")),
        status="active",
    )
    s.add(plan)
    # Each installment is billed through its own draft invoice; sending it is a separate step.
    for i, (due, amount) in enumerate(schedule, start=1):
        invoice = create_invoice(
            s,
            household.school,
            household,
            [{"description": f"{name}: installment {i} of {count}", "unit_amount": amount, "item_type": "tuition"}],
            user,
            issue_date=min(date.today(), due),
            due_date=due,
        )
        plan.scheduled_payments.append(
            ScheduledPayment(due_date=due, amount=amount, status="scheduled", invoice_id=invoice.id)
        )
    s.flush()
    record_event(
        s,
        actor=user,
        action="payment_plan.create",
        entity_type="PaymentPlan",
        entity_id=str(plan.id),
        school_id=household.school_id,
        metadata={"total": total, "payments": count, "frequency": frequency},
    )
    return plan


def cancel_payment_plan(s: "Session", plan: PaymentPlan, user: "User") -> PaymentPlan:
    if plan.status in ("completed", "cancelled"):
        raise BillingError(f"This plan is already {plan.status}.")
    plan.status = "cancelled"
    for sp in plan.scheduled_payments:
        if sp.status != "scheduled":
            continue
        sp.status = "skipped"
        invoice = s.get(Invoice, sp.invoice_id) if sp.invoice_id else None
        if invoice is not None and invoice.status != "void" and invoice.amount_paid == 0 and invoice.credit_amount == 0:
            void_invoice(s, invoice, "Payment plan cancelled", user)
    record_event(
        s,
        actor=user,
        action="payment_plan.cancel",
        entity_type="PaymentPlan",
        entity_id=str(plan.id),
        school_id=plan.school_id,
    )
    return plan


# ---------- Summaries ----------
def household_billing_summary(s: "Session", household: "Household") -> dict:
    invoices = (
        s.query(Invoice)
        .filter(Invoice.household_id == household.id, Invoice.status.notin_(("draft", "void")))
        .order_by(Invoice.due_date.asc())
        .all()
    )
    open_invoices = [i for i in invoices if i.status in OPEN_INVOICE_STATUSES]
    return {
        "invoices": invoices,
        "open_invoices": open_invoices,
        "total_due": sum(i.amount_due for i in open_invoices),
        "total_paid": sum(i.total - i.amount_due for i in invoices),
        "overdue_count": sum(1 for i in open_invoices if i.status == "overdue"),
        "next_due": open_invoices[0] if open_invoices else None,
        "available_credit": available_credit(s, household),
    }


def school_billing_stats(s: "Session", school: "School") -> dict:
    invoices = s.query(Invoice).filter(Invoice.school_id == school.id, Invoice.status.notin_(("draft", "void"))).all()
    return {
        "outstanding": sum(i.amount_due for i in invoices if i.status in OPEN_INVOICE_STATUSES),
        "collected": sum(i.amount_paid for i in invoices),
        "overdue": sum(1 for i in invoices if i.status == "overdue"),
    }
