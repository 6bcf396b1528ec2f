from datetime import date

import pytest

from app.enrollsage.db import session_scope
from app.enrollsage.models import User
from app.enrollsage.modules.billing.models import Invoice, PaymentPlan
from app.enrollsage.modules.billing.service import (
    BillingError,
    apply_account_credit,
    available_credit,
    cancel_payment_plan,
    create_account_credit,
    create_invoice,
    create_payment_plan,
    household_billing_summary,
    mark_overdue_invoices,
    next_invoice_number,
    plan_schedule,
    record_payment,
    refund_payment,
    send_invoice,
    validate_invoice_items,
    void_invoice,
)
from app.enrollsage.modules.families.models import Household
from app.enrollsage.modules.schools.models import School


def _ctx(s):
    school = s.query(School).filter(School.slug == "westlake-academy").one()
    household = s.query(Household).filter(Household.name == "The Johnson Family").one()
    owner = s.query(User).filter(User.email == "admin@example.com").one()
    return school, household, owner


TUITION = [{"description": "Tuition - September", "unit_amount": 120000, "quantity": 1, "item_type": "tuition"}]


def test_invoice_item_validation():
    assert validate_invoice_items([]) == ["An invoice needs at least one line item."]
    errors = validate_invoice_items([{"description": "", "unit_amount": 0, "quantity": 0, "item_type": "bogus"}])
    assert len(errors) == 4


def test_invoice_totals_subtract_discounts_and_credits(app):
    with session_scope(app) as s:
        school, household, owner = _ctx(s)
        invoice = create_invoice(
            s,
            school,
            household,
            TUITION
            + [
                {"description": "Lunch", "unit_amount": 500, "quantity": 20, "item_type": "lunch"},
                {"description": "Sibling discount", "unit_amount": 10000, "item_type": "discount"},
            ],
            owner,
            issue_date=date(2025, 9, 1),
        )
        assert invoice.subtotal == 130000
        assert invoice.discount_amount == 10000
        assert invoice.total == 120000
        assert invoice.amount_due == 120000
        assert invoice.status == "draft"
        assert invoice.due_date == date(2025, 10, 1)
        assert invoice.invoice_number == "INV-2025-0001"
        assert next_invoice_number(s, 2025) == "INV-2025-0002"


def test_due_date_cannot_precede_issue_date(app):
    with session_scope(app) as s:
        school, household, owner = _ctx(s)
        with pytest.raises(BillingError, match="Due date"):
            create_invoice(s, school, household, TUITION, owner, issue_date=date(2025, 9, 1), due_date=date(2025, 8, 1))


def test_manual_payments_settle_invoice(app):
    with app.app_context(), session_scope(app) as s:
        school, household, owner = _ctx(s)
        invoice = create_invoice(s, school, household, TUITION, owner)
        with pytest.raises(BillingError, match="sent invoices"):
            record_payment(s, invoice, amount=1000, method="check", user=owner)
        send_invoice(s, invoice, owner)
        assert invoice.status == "sent"

        with pytest.raises(BillingError, match="through Stripe"):
            record_payment(s, invoice, amount=1000, method="card", user=owner)
        with pytest.raises(BillingError, match="exceeds"):
            record_payment(s, invoice, amount=120001, method="check", user=owner)

        first = record_payment(s, invoice, amount=20000, method="check", user=owner, check_number="1042")
        assert invoice.status == "partially_paid"
        assert invoice.amount_due == 100000
        record_payment(s, invoice, amount=100000, method="transfer", user=owner)
        assert invoice.status == "paid"
        assert invoice.paid_at is not None

        with pytest.raises(BillingError, match="cannot be voided"):
            void_invoice(s, invoice, "Mistake", owner)

        refund_payment(s, first, 20000, owner, reason="Bounced")
        assert first.status == "refunded"
        assert invoice.status == "partially_paid"
        assert invoice.amount_due == 20000


def test_stripe_payment_intent_is_recorded_once(app):
    with app.app_context(), session_scope(app) as s:
        school, household, owner = _ctx(s)
        invoice = create_invoice(s, school, household, TUITION, owner, status="sent")
        p1 = record_payment(s, invoice, amount=50000, method="card", user=None, stripe_payment_intent_id="pi_1")
        p2 = record_payment(s, invoice, amount=50000, method="card", user=None, stripe_payment_intent_id="pi_1")
        assert p1 is p2
        assert invoice.amount_due == 70000


def test_void_requires_reason_and_zeroes_due(app):
    with session_scope(app) as s:
        school, household, owner = _ctx(s)
        invoice = create_invoice(s, school, household, TUITION, owner, status="sent")
        with pytest.raises(BillingError, match="reason"):
            void_invoice(s, invoice, "  ", owner)
        void_invoice(s, invoice, "Duplicate", owner)
        assert invoice.status == "void"
        assert invoice.amount_due == 0
        with pytest.raises(BillingError, match="already void"):
            void_invoice(s, invoice, "Again", owner)


def test_overdue_sweep_only_touches_past_due_open_invoices(app):
    with session_scope(app) as s:
        school, household, owner = _ctx(s)
        late = create_invoice(s, school, household, TUITION, owner, status="sent", issue_date=date(2025, 1, 1))
        draft = create_invoice(s, school, household, TUITION, owner, issue_date=date(2025, 1, 1))
        s.flush()
        assert mark_overdue_invoices(s, school, today=date(2025, 3, 1)) == 1
        assert late.status == "overdue"
        assert draft.status == "draft"


def test_account_credit_applies_up_to_amount_due(app):
    with session_scope(app) as s:
        school, household, owner = _ctx(s)
        invoice = create_invoice(
            s,
            school,
            household,
            [{"description": "Field trip", "unit_amount": 3000, "item_type": "activity"}],
            owner,
            status="sent",
        )
        credit = create_account_credit(s, household, 5000, "Overpayment refund", owner)
        applied = apply_account_credit(s, invoice, credit, owner)
        assert applied == 3000
        assert credit.remaining_amount == 2000
        assert invoice.credit_amount == 3000
        assert invoice.amount_due == 0
        assert available_credit(s, household) == 2000
        with pytest.raises(BillingError):
            create_account_credit(s, household, 0, "Nothing", owner)


def test_credit_that_covers_invoice_marks_it_paid(app):
    with session_scope(app) as s:
        school, household, owner = _ctx(s)
        invoice = create_invoice(
            s,
            school,
            household,
            [{"description": "Field trip", "unit_amount": 3000, "item_type": "activity"}],
            owner,
            status="sent",
            issue_date=date(2025, 1, 1),
            due_date=date(2025, 1, 31),
        )
        credit = create_account_credit(s, household, 5000, "Overpayment refund", owner)
        apply_account_credit(s, invoice, credit, owner)
        assert invoice.status == "paid"
        assert invoice.paid_at is not None
        s.flush()

        assert mark_overdue_invoices(s, school, today=date(2025, 3, 1)) == 0
        assert invoice.status == "paid"
        summary = household_billing_summary(s, household)
        assert summary["overdue_count"] == 0
        assert summary["total_due"] == 0


def test_overdue_sweep_skips_zero_balance_invoices(app):
    with session_scope(app) as s:
        school, household, owner = _ctx(s)
        waived = create_invoice(
            s,
            school,
            household,
            [
                {"description": "Registration", "unit_amount": 5000, "item_type": "registration"},
                {"description": "Waived", "unit_amount": 5000, "item_type": "discount"},
            ],
            owner,
            status="sent",
            issue_date=date(2025, 1, 1),
        )
        s.flush()
        assert waived.amount_due == 0
        assert mark_overdue_invoices(s, school, today=date(2025, 3, 1)) == 0
        assert waived.status == "sent"


def test_plan_schedule_puts_remainder_on_last_payment():
    schedule = plan_schedule(100000, 3, "monthly", date(2025, 1, 31), 28)
    assert [amt for _, amt in schedule] == [33333, 33333, 33334]
    assert [d for d, _ in schedule] == [date(2025, 1, 28), date(2025, 2, 28), date(2025, 3, 28)]
    quarterly = plan_schedule(40000, 2, "quarterly", date(2025, 11, 1), 15)
    assert [d for d, _ in quarterly] == [date(2025, 11, 15), date(2026, 2, 15)]


def test_payment_plan_create_and_cancel(app):
    with session_scope(app) as s:
        school, household, owner = _ctx(s)
        with pytest.raises(BillingError, match="between 1 and 24"):
            create_payment_plan(
                s,
                household,
                {"name": "Tuition", "total_amount": 100, "number_of_payments": 30, "start_date": date(2025, 8, 1)},
                owner,
            )
        plan = create_payment_plan(
            s,
            household,
            {
                "name": "2025-26 Tuition",
                "total_amount": 1000000,
                "number_of_payments": 10,
                "frequency": "monthly",
                "start_date": date(2025, 8, 1),
                "day_of_month": 5,
            },
            owner,
        )
        assert plan.school_year == "2025-2026"
        assert len(plan.scheduled_payments) == 10
        assert plan.end_date == date(2026, 5, 5)
        installments = [s.get(Invoice, sp.invoice_id) for sp in plan.scheduled_payments]
        assert all(i.status == "draft" for i in installments)
        assert [i.due_date for i in installments] == [sp.due_date for sp in plan.scheduled_payments]
        assert sum(i.total for i in installments) == 1000000
        assert installments[0].items[0].description == "2025-26 Tuition: installment 1 of 10"

        cancel_payment_plan(s, plan, owner)
        assert plan.status == "cancelled"
        assert {sp.status for sp in plan.scheduled_payments} == {"skipped"}
        assert {i.status for i in installments} == {"void"}
        with pytest.raises(BillingError, match="already cancelled"):
            cancel_payment_plan(s, plan, owner)


def test_plan_progress_follows_installment_payments(app):
    with app.app_context(), session_scope(app) as s:
        school, household, owner = _ctx(s)
        plan = create_payment_plan(
            s,
            household,
            {"name": "Spring", "total_amount": 90000, "number_of_payments": 3, "start_date": date(2026, 1, 1)},
            owner,
        )
        first, second, third = [s.get(Invoice, sp.invoice_id) for sp in plan.scheduled_payments]

        send_invoice(s, first, owner)
        record_payment(s, first, amount=30000, method="check", user=owner, check_number="311")
        assert plan.scheduled_payments[0].status == "paid"
        assert plan.scheduled_payments[0].payment_id is not None
        assert plan.amount_paid == 30000
        assert plan.amount_remaining == 60000
        assert plan.status == "active"

        # Partial payment leaves the installment open.
        send_invoice(s, second, owner)
        partial = record_payment(s, second, amount=10000, method="cash", user=owner)
        assert plan.scheduled_payments[1].status == "scheduled"
        assert plan.amount_paid == 30000

        record_payment(s, second, amount=20000, method="cash", user=owner)
        credit = create_account_credit(s, household, 30000, "Scholarship", owner)
        send_invoice(s, third, owner)
        apply_account_credit(s, third, credit, owner)
        assert third.status == "paid"
        assert {sp.status for sp in plan.scheduled_payments} == {"paid"}
        assert plan.amount_remaining == 0
        assert plan.status == "completed"

        refund_payment(s, partial, 10000, owner, reason="Returned")
        assert plan.scheduled_payments[1].status == "scheduled"
        assert plan.amount_paid == 60000
        assert plan.status == "active"


def test_billing_admin_flow(app, client, login, csrf):
    login()
    with session_scope(app) as s:
        household_id = s.query(Household.id).filter(Household.name == "The Johnson Family").scalar()

    r = client.post(
        "/admin/billing/invoices/new",
        data={
            "csrf_token": csrf,
            "household_id": household_id,
            "item_description": ["October tuition", ""],
            "item_amount": ["1,250.00", ""],
            "item_quantity": ["1", ""],
            "item_type": ["tuition", "tuition"],
            "send_now": "on",
        },
    )
    assert r.status_code == 302
    with session_scope(app) as s:
        invoice = s.query(Invoice).one()
        assert invoice.total == 125000
        assert invoice.status == "sent"
        invoice_id = invoice.id

    r = client.post(
        f"/admin/billing/invoices/{invoice_id}/payment",
        data={"csrf_token": csrf, "amount": "250.00", "method": "check", "check_number": "881"},
    )
    assert r.status_code == 302
    with session_scope(app) as s:
        invoice = s.get(Invoice, invoice_id)
        assert invoice.amount_due == 100000
        assert invoice.status == "partially_paid"

    r = client.post(
        "/admin/billing/plans/new",
        data={
            "csrf_token": csrf,
            "household_id": household_id,
            "name": "Balance plan",
            "total_amount": "1000.00",
            "number_of_payments": "4",
            "frequency": "monthly",
            "start_date": "2025-10-01",
        },
    )
    assert r.status_code == 302
    with session_scope(app) as s:
        assert s.query(PaymentPlan).one().payment_amount == 25000

    assert client.get("/admin/billing").status_code == 200
    assert client.get(f"/admin/billing/invoices/{invoice_id}").status_code == 200
    with session_scope(app) as s:
        household = s.get(Household, household_id)
        assert household_billing_summary(s, household)["total_due"] == 100000
