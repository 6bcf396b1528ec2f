"""initial schema: platform, schools, families, admissions, billing, storefront

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001_initial_schema'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _created() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now())


def _updated() -> sa.Column:
    return sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now())


def _fk(name: str, target: str, *, nullable: bool = True, ondelete: str = "SET NULL") -> sa.Column:
    return sa.Column(name, sa.Integer(), sa.ForeignKey(target, ondelete=ondelete), nullable=nullable)


def _flag(name: str, default: bool = False) -> sa.Column:
    return sa.Column(name, sa.Boolean(), nullable=False, server_default=sa.true() if default else sa.false())


def _money(name: str, nullable: bool = False, default: str | None = None) -> sa.Column:
    return sa.Column(name, sa.Numeric(10, 2), nullable=nullable, server_default=default)


def _cents(name: str) -> sa.Column:
    return sa.Column(name, sa.Integer(), nullable=False, server_default="0")


# Parent tables first; downgrade drops in reverse.
TABLES = (
    "users",
    "user_sessions",
    "oauth_accounts",
    "addresses",
    "payment_methods",
    "audit_events",
    "schools",
    "school_members",
    "school_years",
    "staff_invitations",
    "households",
    "guardians",
    "students",
    "leads",
    "lead_activities",
    "applications",
    "application_responses",
    "application_documents",
    "application_checklists",
    "invoices",
    "invoice_items",
    "payments",
    "payment_plans",
    "scheduled_payments",
    "account_credits",
    "categories",
    "products",
    "orders",
    "order_items",
    "order_events",
    "product_reviews",
    "discount_codes",
    "discount_usages",
    "gift_cards",
    "gift_card_transactions",
    "stripe_events",
)


def _platform(existing: set[str]) -> None:
    if "users" not in existing:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("email", sa.String(320), nullable=False, unique=True),
            sa.Column("password_hash", sa.String(255), nullable=True),
            sa.Column("role", sa.String(32), nullable=False, server_default="customer"),
            sa.Column("first_name", sa.String(128), nullable=True),
            sa.Column("last_name", sa.String(128), nullable=True),
            sa.Column("phone", sa.String(64), nullable=True),
            _flag("email_verified"),
            _flag("marketing_consent"),
            sa.Column("stripe_customer_id", sa.String(255), nullable=True),
            _flag("is_active", True),
            _created(),
            _updated(),
        )

    if "user_sessions" not in existing:
        op.create_table(
            "user_sessions",
            sa.Column("id", sa.String(64), primary_key=True),
            _fk("user_id", "users.id", nullable=False, ondelete="CASCADE"),
            sa.Column("expires_at", sa.DateTime(), nullable=False),
            _created(),
            sa.Column("user_agent", sa.String(512), nullable=True),
        )
        op.create_index("idx_user_sessions_user", "user_sessions", ["user_id"])

    if "oauth_accounts" not in existing:
        op.create_table(
            "oauth_accounts",
            sa.Column("id", sa.Integer(), primary_key=True),
            _fk("user_id", "users.id", nullable=False, ondelete="CASCADE"),
            sa.Column("provider", sa.String(32), nullable=False),
            sa.Column("provider_account_id", sa.String(255), nullable=False),
            sa.Column("email", sa.String(320), nullable=True),
            sa.Column("access_token", sa.Text(), nullable=True),
            sa.Column("refresh_token", sa.Text(), nullable=True),
            sa.Column("expires_at", sa.DateTime(), nullable=True),
            _created(),
            _updated(),
            sa.UniqueConstraint("provider", "provider_account_id", name="uq_oauth_provider_account"),
        )

    if "addresses" not in existing:
        op.create_table(
            "addresses",
            sa.Column("id", sa.Integer(), primary_key=True),
            _fk("user_id", "users.id", nullable=False, ondelete="CASCADE"),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("line1", sa.String(255), nullable=False),
            sa.Column("line2", sa.String(255), nullable=True),
            sa.Column("city", sa.String(128), nullable=False),
            sa.Column("state", sa.String(64), nullable=False),
            sa.Column("postal_code", sa.String(32), nullable=False),
            sa.Column("country", sa.String(2), nullable=False, server_default="US"),
            _flag("is_default"),
            _created(),
        )

    if "payment_methods" not in existing:
        op.create_table(
            "payment_methods",
            sa.Column("id", sa.Integer(), primary_key=True),
            _fk("user_id", "users.id", nullable=False, ondelete="CASCADE"),
            sa.Column("stripe_payment_method_id", sa.String(255), nullable=False),
            sa.Column("type", sa.String(32), nullable=False, server_default="card"),
            sa.Column("last4", sa.String(4), nullable=True),
            sa.Column("brand", sa.String(32), nullable=True),
            sa.Column("exp_month", sa.Integer(), nullable=True),
            sa.Column("exp_year", sa.Integer(), nullable=True),
            _flag("is_default"),
            _created(),
            sa.UniqueConstraint("stripe_payment_method_id", name="uq_payment_methods_stripe_pm"),
        )

    if "audit_events" not in existing:
        op.create_table(
            "audit_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            _created(),
            sa.Column("request_id", sa.String(64), nullable=True),
            sa.Column("school_id", sa.Integer(), nullable=True),
            _fk("actor_user_id", "users.id"),
            sa.Column("actor_user_email", sa.String(320), nullable=True),
            sa.Column("action", sa.String(128), nullable=False),
            sa.Column("entity_type", sa.String(128), nullable=True),
            sa.Column("entity_id", sa.String(128), nullable=True),
            sa.Column("reason", sa.String(512), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.Column("client_ip", sa.String(64), nullable=True),
        )
        op.create_index("idx_audit_events_entity", "audit_events", ["entity_type", "entity_id"])
        op.create_index("idx_audit_events_school", "audit_events", ["school_id"])


def _schools(existing: set[str]) -> None:
    if "schools" not in existing:
        op.create_table(
            "schools",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("slug", sa.String(128), nullable=False, unique=True),
            sa.Column("subdomain", sa.String(128), nullable=True, unique=True),
            sa.Column("timezone", sa.String(64), nullable=False, server_default="America/New_York"),
            sa.Column("current_school_year", sa.String(16), nullable=False, server_default="2025-2026"),
            sa.Column("grades_offered", sa.JSON(), nullable=True),
            sa.Column("email", sa.String(320), nullable=True),
            sa.Column("phone", sa.String(64), nullable=True),
            sa.Column("website", sa.String(512), nullable=True),
            sa.Column("address_line1", sa.String(255), nullable=True),
            sa.Column("address_line2", sa.String(255), nullable=True),
            sa.Column("city", sa.String(128), nullable=True),
            sa.Column("state", sa.String(64), nullable=True),
            sa.Column("postal_code", sa.String(32), nullable=True),
            sa.Column("logo_url", sa.String(512), nullable=True),
            sa.Column("primary_color", sa.String(16), nullable=False, server_default="#5B7F6D"),
            sa.Column("secondary_color", sa.String(16), nullable=False, server_default="#2D4F3E"),
            sa.Column("stripe_account_id", sa.String(255), nullable=True),
            sa.Column("stripe_account_status", sa.String(32), nullable=True),
            sa.Column("google_client_id", sa.String(255), nullable=True),
            sa.Column("google_client_secret", sa.String(255), nullable=True),
            sa.Column("status", sa.String(32), nullable=False, server_default="trial"),
            sa.Column("trial_ends_at", sa.DateTime(), nullable=True),
            _created(),
            _updated(),
        )
        op.create_index("idx_schools_status", "schools", ["status"])

    if "school_members" not in existing:
        op.create_table(
            "school_members",
            sa.Column("id", sa.Integer(), primary_key=True),
            _fk("user_id", "users.id", nullable=False, ondelete="CASCADE"),
            _fk("school_id", "schools.id", nullable=False, ondelete="CASCADE"),
            sa.Column("role", sa.String(32), nullable=False, server_default="readonly"),
            sa.Column("status", sa.String(32), nullable=False, server_default="pending"),
            _fk("invited_by_user_id", "users.id"),
            sa.Column("invited_at", sa.DateTime(), nullable=True),
            sa.Column("accepted_at", sa.DateTime(), nullable=True),
            _created(),
            sa.UniqueConstraint("user_id", "school_id", name="uq_school_members_user_school"),
        )
        op.create_index("idx_school_members_school", "school_members", ["school_id"])

    if "school_years" not in existing:
        op.create_table(
            "school_years",
            sa.Column("id", sa.Integer(), primary_key=True),
            _fk("school_id", "schools.id", nullable=False, ondelete="CASCADE"),
            sa.Column("name", sa.String(16), nullable=False),
            sa.Column("start_date", sa.Date(), nullable=False),
            sa.Column("end_date", sa.Date(), nullable=False),
            sa.Column("enrollment_open_date", sa.Date(), nullable=True),
            sa.Column("enrollment_close_date", sa.Date(), nullable=True),
            _flag("is_current"),
            sa.Column("notes", sa.Text(), nullable=True),
            _created(),
            sa.UniqueConstraint("school_id", "name", name="uq_school_years_school_name"),
        )

    if "staff_invitations" not in existing:
        op.create_table(
            "staff_invitations",
            sa.Column("id", sa.Integer(), primary_key=True),
            _fk("school_id", "schools.id", nullable=False, ondelete="CASCADE"),
            sa.Column("email", sa.String(320), nullable=False),
            sa.Column("school_role", sa.String(32), nullable=False),
            sa.Column("token", sa.String(64), nullable=False, unique=True),
            sa.Column("status", sa.String(32), nullable=False, server_default="pending"),
            _fk("invited_by_user_id", "users.id"),
            sa.Column("expires_at", sa.DateTime(), nullable=False),
            sa.Column("accepted_at", sa.DateTime(), nullable=True),
            _created(),
        )
        op.create_index("idx_staff_invitations_school", "staff_invitations", ["school_id"])
        op.create_index("idx_staff_invitations_email", "staff_invitations", ["email"])


def _families(existing: set[str]) -> None:
    if "households" not in existing:
        op.create_table(
            "households",
            sa.Column("id", sa.Integer(), primary_key=True),
            _fk("school_id", "schools.id", nullable=False, ondelete="CASCADE"),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("primary_email", sa.String(320), nullable=True),
            sa.Column("primary_phone", sa.String(64), nullable=True),
            sa.Column("address_line1", sa.String(255), nullable=True),
            sa.Column("address_line2", sa.String(255), nullable=True),
            sa.Column("city", sa.String(128), nullable=True),
            sa.Column("state", sa.String(64), nullable=True),
            sa.Column("postal_code", sa.String(32), nullable=True),
            sa.Column("stripe_customer_id", sa.String(255), nullable=True),
            _flag("auto_pay"),
            sa.Column("status", sa.String(32), nullable=False, server_default="prospective"),
            sa.Column("notes", sa.Text(), nullable=True),
            _created(),
            _updated(),
        )
        op.create_index("idx_households_school", "households", ["school_id"])
        op.create_index("idx_households_status", "households", ["status"])

    if "guardians" not in existing:
        op.create_table(
            "guardians",
            sa.Column("id", sa.Integer(), primary_key=True),
            _fk("household_id", "households.id", nullable=False, ondelete="CASCADE"),
            _fk("user_id", "users.id"),
            sa.Column("first_name", sa.String(128), nullable=False),
            sa.Column("last_name", sa.String(128), nullable=False),
            sa.Column("email", sa.String(320), nullable=True),
            sa.Column("phone", sa.String(64), nullable=True),
            sa.Column("phone_type", sa.String(16), nullable=True),
            sa.Column("relationship", sa.String(32), nullable=False, server_default="guardian"),
            _flag("is_primary"),
            _flag("has_portal_access"),
            _flag("is_billing_contact"),
            _flag("is_emergency_contact"),
            _flag("can_pickup", True),
            sa.Column("employer", sa.String(255), nullable=True),
            sa.Column("occupation", sa.String(255), nullable=True),
            _created(),
            _updated(),
        )
        op.create_index("idx_guardians_household", "guardians", ["household_id"])
        op.create_index("idx_guardians_user", "guardians", ["user_id"])
        op.create_index("idx_guardians_email", "guardians", ["email"])

    if "students" not in existing:
        op.create_table(
            "students",
            sa.Column("id", sa.Integer(), primary_key=True),
            _fk("school_id", "schools.id", nullable=False, ondelete="CASCADE"),
            _fk("household_id", "households.id", nullable=False, ondelete="CASCADE"),
            sa.Column("first_name", sa.String(128), nullable=False),
            sa.Column("last_name", sa.String(128), nullable=False),
            sa.Column("preferred_name", sa.String(128), nullable=True),
            sa.Column("date_of_birth", sa.Date(), nullable=True),
            sa.Column("gender", sa.String(32), nullable=True),
            sa.Column("grade_level", sa.String(8), nullable=True),
            sa.Column("enrollment_status", sa.String(32), nullable=False, server_default="prospective"),
            sa.Column("medical_notes", sa.Text(), nullable=True),
            sa.Column("allergies", sa.Text(), nullable=True),
            sa.Column("medications", sa.Text(), nullable=True),
            sa.Column("previous_school", sa.String(255), nullable=True),
            sa.Column("student_number", sa.String(64), nullable=True),
            _created(),
            _updated(),
        )
        op.create_index("idx_students_school", "students", ["school_id"])
        op.create_index("idx_students_household", "students", ["household_id"])
        op.create_index("idx_students_status", "students", ["enrollment_status"])


def _admissions(existing: set[str]) -> None:
    if "leads" not in existing:
        op.create_table(
            "leads",
            sa.Column("id", sa.Integer(), primary_key=True),
            _fk("school_id", "schools.id", nullable=False, ondelete="CASCADE"),
            sa.Column("first_name", sa.String(128), nullable=False),
            sa.Column("last_name", sa.String(128), nullable=False),
            sa.Column("email", sa.String(320), nullable=False),
            sa.Column("phone", sa.String(64), nullable=True),
            sa.Column("source", sa.String(32), nullable=False, server_default="website"),
            sa.Column("source_detail", sa.String(255), nullable=True),
            sa.Column("stage", sa.String(32), nullable=False, server_default="inquiry"),
            sa.Column("interested_grades", sa.JSON(), nullable=True),
            sa.Column("interested_school_year", sa.String(16), nullable=True),
            sa.Column("number_of_students", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("notes", sa.Text(), nullable=True),
            _fk("assigned_to_user_id", "users.id"),
            sa.Column("last_contacted_at", sa.DateTime(), nullable=True),
            sa.Column("next_follow_up_at", sa.DateTime(), nullable=True),
            sa.Column("tour_scheduled_at", sa.DateTime(), nullable=True),
            sa.Column("tour_completed_at", sa.DateTime(), nullable=True),
            sa.Column("tour_notes", sa.Text(), nullable=True),
            _fk("converted_household_id", "households.id"),
            sa.Column("converted_at", sa.DateTime(), nullable=True),
            sa.Column("lost_reason", sa.String(512), nullable=True),
            sa.Column("lost_at", sa.DateTime(), nullable=True),
            _created(),
            _updated(),
        )
        op.create_index("idx_leads_school_stage", "leads", ["school_id", "stage"])
        op.create_index("idx_leads_email", "leads", ["email"])

    if "lead_activities" not in existing:
        op.create_table(
            "lead_activities",
            sa.Column("id", sa.Integer(), primary_key=True),
            _fk("lead_id", "leads.id", nullable=False, ondelete="CASCADE"),
            sa.Column("type", sa.String(32), nullable=False),
            sa.Column("subject", sa.String(255), nullable=True),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("metadata_json", sa.JSON(), nullable=True),
            _fk("performed_by_user_id", "users.id"),
            _created(),
        )
        op.create_index("idx_lead_activities_lead", "lead_activities", ["lead_id"])

    if "applications" not in existing:
        op.create_table(
            "applications",
            sa.Column("id", sa.Integer(), primary_key=True),
            _fk("school_id", "schools.id", nullable=False, ondelete="CASCADE"),
            _fk("student_id", "students.id", nullable=False, ondelete="CASCADE"),
            _fk("household_id", "households.id", nullable=False, ondelete="CASCADE"),
            _fk("lead_id", "leads.id"),
            sa.Column("school_year", sa.String(16), nullable=False),
            sa.Column("grade_applying_for", sa.String(8), nullable=False),
            sa.Column("type", sa.String(32), nullable=False, server_default="new"),
            sa.Column("status", sa.String(32), nullable=False, server_default="draft"),
            sa.Column("submitted_at", sa.DateTime(), nullable=True),
            sa.Column("decision_at", sa.DateTime(), nullable=True),
            _fk("decision_by_user_id", "users.id"),
            sa.Column("decision_notes", sa.Text(), nullable=True),
            sa.Column("application_fee_amount", sa.Integer(), nullable=False, server_default="5000"),
            _flag("application_fee_paid"),
            sa.Column("application_fee_paid_at", sa.DateTime(), nullable=True),
            sa.Column("application_fee_payment_intent_id", sa.String(255), nullable=True),
            sa.Column("interview_scheduled_at", sa.DateTime(), nullable=True),
            sa.Column("interview_completed_at", sa.DateTime(), nullable=True),
            sa.Column("interview_notes", sa.Text(), nullable=True),
            sa.Column("waitlist_position", sa.Integer(), nullable=True),
            sa.Column("waitlist_notes", sa.Text(), nullable=True),
            _created(),
            _updated(),
        )
        op.create_index("idx_applications_school_status", "applications", ["school_id", "status"])
        op.create_index("idx_applications_household", "applications", ["household_id"])
        op.create_index("idx_applications_student", "applications", ["student_id"])

    if "application_responses" not in existing:
        op.create_table(
            "application_responses",
            sa.Column("id", sa.Integer(), primary_key=True),
            _fk("application_id", "applications.id", nullable=False, ondelete="CASCADE"),
            sa.Column("section", sa.String(64), nullable=False),
            sa.Column("answers", sa.JSON(), nullable=True),
            _updated(),
        )

    if "application_documents" not in existing:
        op.create_table(
            "application_documents",
            sa.Column("id", sa.Integer(), primary_key=True),
            _fk("application_id", "applications.id", nullable=False, ondelete="CASCADE"),
            sa.Column("document_type", sa.String(64), nullable=False),
            sa.Column("storage_key", sa.String(512), nullable=False),
            sa.Column("original_filename", sa.String(255), nullable=False),
            sa.Column("content_type", sa.String(128), nullable=True),
            sa.Column("size_bytes", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("sha256", sa.String(64), nullable=False),
            _fk("uploaded_by_user_id", "users.id"),
            sa.Column("uploaded_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )

    if "application_checklists" not in existing:
        op.create_table(
            "application_checklists",
            sa.Column("id", sa.Integer(), primary_key=True),
            _fk("application_id", "applications.id", nullable=False, ondelete="CASCADE"),
            sa.Column("label", sa.String(255), nullable=False),
            sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
            _flag("is_completed"),
            sa.Column("completed_at", sa.DateTime(), nullable=True),
            _fk("completed_by_user_id", "users.id"),
        )


def _billing(existing: set[str]) -> None:
    if "invoices" not in existing:
        op.create_table(
            "invoices",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("invoice_number", sa.String(32), nullable=False, unique=True),
            _fk("school_id", "schools.id", nullable=False, ondelete="CASCADE"),
            _fk("household_id", "households.id", nullable=False, ondelete="CASCADE"),
            _cents("subtotal"),
            _cents("discount_amount"),
            _cents("credit_amount"),
            _cents("total"),
            _cents("amount_paid"),
            _cents("amount_due"),
            sa.Column("issue_date", sa.Date(), nullable=False),
            sa.Column("due_date", sa.Date(), nullable=False),
            sa.Column("period_start", sa.Date(), nullable=True),
            sa.Column("period_end", sa.Date(), nullable=True),
            sa.Column("status", sa.String(32), nullable=False, server_default="draft"),
            sa.Column("sent_at", sa.DateTime(), nullable=True),
            sa.Column("paid_at", sa.DateTime(), nullable=True),
            sa.Column("voided_at", sa.DateTime(), nullable=True),
            sa.Column("void_reason", sa.String(512), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("memo", sa.Text(), nullable=True),
            _fk("created_by_user_id", "users.id"),
            _created(),
            _updated(),
        )
        op.create_index("idx_invoices_school_status", "invoices", ["school_id", "status"])
        op.create_index("idx_invoices_household", "invoices", ["household_id"])

    if "invoice_items" not in existing:
        op.create_table(
            "invoice_items",
            sa.Column("id", sa.Integer(), primary_key=True),
            _fk("invoice_id", "invoices.id", nullable=False, ondelete="CASCADE"),
            _fk("student_id", "students.id"),
            sa.Column("item_type", sa.String(32), nullable=False, server_default="tuition"),
            sa.Column("description", sa.String(255), nullable=False),
            sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("unit_amount", sa.Integer(), nullable=False),
            sa.Column("amount", sa.Integer(), nullable=False),
        )

    if "payments" not in existing:
        op.create_table(
            "payments",
            sa.Column("id", sa.Integer(), primary_key=True),
            _fk("school_id", "schools.id", nullable=False, ondelete="CASCADE"),
            _fk("household_id", "households.id", nullable=False, ondelete="CASCADE"),
            _fk("invoice_id", "invoices.id"),
            sa.Column("amount", sa.Integer(), nullable=False),
            _cents("refunded_amount"),
            sa.Column("method", sa.String(32), nullable=False),
            sa.Column("status", sa.String(32), nullable=False, server_default="pending"),
            sa.Column("stripe_payment_intent_id", sa.String(255), nullable=True),
            sa.Column("stripe_charge_id", sa.String(255), nullable=True),
            sa.Column("check_number", sa.String(64), nullable=True),
            sa.Column("reference_number", sa.String(128), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("processed_at", sa.DateTime(), nullable=True),
            _fk("processed_by_user_id", "users.id"),
            _created(),
        )
        op.create_index("idx_payments_household", "payments", ["household_id"])
        op.create_index("idx_payments_invoice", "payments", ["invoice_id"])
        op.create_index("idx_payments_stripe_pi", "payments", ["stripe_payment_intent_id"])

    if "payment_plans" not in existing:
        op.create_table(
            "payment_plans",
            sa.Column("id", sa.Integer(), primary_key=True),
            _fk("school_id", "schools.id", nullable=False, ondelete="CASCADE"),
            _fk("household_id", "households.id", nullable=False, ondelete="CASCADE"),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("school_year", sa.String(16), nullable=False),
            sa.Column("total_amount", sa.Integer(), nullable=False),
            _cents("amount_paid"),
            sa.Column("amount_remaining", sa.Integer(), nullable=False),
            sa.Column("number_of_payments", sa.Integer(), nullable=False),
            sa.Column("payment_amount", sa.Integer(), nullable=False),
            sa.Column("frequency", sa.String(32), nullable=False, server_default="monthly"),
            sa.Column("start_date", sa.Date(), nullable=False),
            sa.Column("end_date", sa.Date(), nullable=True),
            sa.Column("day_of_month", sa.Integer(), nullable=False, server_default="1"),
            _flag("autopay_enabled"),
            sa.Column("status", sa.String(32), nullable=False, server_default="active"),
            _created(),
        )

    if "scheduled_payments" not in existing:
        op.create_table(
            "scheduled_payments",
            sa.Column("id", sa.Integer(), primary_key=True),
            _fk("payment_plan_id", "payment_plans.id", nullable=False, ondelete="CASCADE"),
            _fk("invoice_id", "invoices.id"),
            _fk("payment_id", "payments.id"),
            sa.Column("due_date", sa.Date(), nullable=False),
            sa.Column("amount", sa.Integer(), nullable=False),
            sa.Column("status", sa.String(32), nullable=False, server_default="scheduled"),
        )

    if "account_credits" not in existing:
        op.create_table(
            "account_credits",
            sa.Column("id", sa.Integer(), primary_key=True),
            _fk("school_id", "schools.id", nullable=False, ondelete="CASCADE"),
            _fk("household_id", "households.id", nullable=False, ondelete="CASCADE"),
            sa.Column("amount", sa.Integer(), nullable=False),
            sa.Column("remaining_amount", sa.Integer(), nullable=False),
            sa.Column("reason", sa.String(255), nullable=False),
            sa.Column("expires_at", sa.DateTime(), nullable=True),
            _fk("created_by_user_id", "users.id"),
            _created(),
        )


def _storefront(existing: set[str]) -> None:
    if "categories" not in existing:
        op.create_table(
            "categories",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("name", sa.String(128), nullable=False),
            sa.Column("slug", sa.String(128), nullable=False, unique=True),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
            _created(),
        )

    if "products" not in existing:
        op.create_table(
            "products",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("slug", sa.String(255), nullable=False, unique=True),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("short_description", sa.String(512), nullable=True),
            _money("price"),
            _money("compare_at_price", nullable=True),
            _fk("category_id", "categories.id"),
            sa.Column("ingredients", sa.Text(), nullable=True),
            sa.Column("images", sa.JSON(), nullable=True),
            sa.Column("stripe_product_id", sa.String(255), nullable=True),
            sa.Column("stripe_price_id", sa.String(255), nullable=True),
            _flag("in_stock", True),
            sa.Column("stock_quantity", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("low_stock_threshold", sa.Integer(), nullable=False, server_default="10"),
            sa.Column("weight_oz", sa.Numeric(6, 2), nullable=True),
            _flag("featured"),
            _flag("is_active", True),
            sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
            _created(),
            _updated(),
        )
        op.create_index("idx_products_category", "products", ["category_id"])
        op.create_index("idx_products_active", "products", ["is_active"])

    if "orders" not in existing:
        op.create_table(
            "orders",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_number", sa.String(32), nullable=False, unique=True),
            _fk("user_id", "users.id"),
            sa.Column("email", sa.String(320), nullable=False),
            sa.Column("status", sa.String(32), nullable=False, server_default="pending"),
            sa.Column("stripe_payment_intent_id", sa.String(255), nullable=True),
            _money("subtotal"),
            _money("shipping", default="0"),
            _money("tax", default="0"),
            _money("discount", default="0"),
            _money("gift_card_amount", default="0"),
            _money("total"),
            sa.Column("discount_code", sa.String(64), nullable=True),
            sa.Column("gift_card_code", sa.String(32), nullable=True),
            sa.Column("shipping_address", sa.JSON(), nullable=True),
            sa.Column("tracking_number", sa.String(128), nullable=True),
            sa.Column("tracking_carrier", sa.String(64), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("customer_notes", sa.Text(), nullable=True),
            sa.Column("paid_at", sa.DateTime(), nullable=True),
            sa.Column("shipped_at", sa.DateTime(), nullable=True),
            sa.Column("delivered_at", sa.DateTime(), nullable=True),
            sa.Column("cancelled_at", sa.DateTime(), nullable=True),
            _created(),
            _updated(),
        )
        op.create_index("idx_orders_user", "orders", ["user_id"])
        op.create_index("idx_orders_email", "orders", ["email"])
        op.create_index("idx_orders_status", "orders", ["status"])
        op.create_index("idx_orders_payment_intent", "orders", ["stripe_payment_intent_id"])

    if "order_items" not in existing:
        op.create_table(
            "order_items",
            sa.Column("id", sa.Integer(), primary_key=True),
            _fk("order_id", "orders.id", nullable=False, ondelete="CASCADE"),
            _fk("product_id", "products.id"),
            sa.Column("product_name", sa.String(255), nullable=False),
            sa.Column("product_slug", sa.String(255), nullable=True),
            _money("unit_price"),
            sa.Column("quantity", sa.Integer(), nullable=False),
            _money("line_total"),
        )

    if "order_events" not in existing:
        op.create_table(
            "order_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            _fk("order_id", "orders.id", nullable=False, ondelete="CASCADE"),
            sa.Column("type", sa.String(32), nullable=False),
            sa.Column("message", sa.Text(), nullable=True),
            _fk("created_by_user_id", "users.id"),
            _created(),
        )

    if "product_reviews" not in existing:
        op.create_table(
            "product_reviews",
            sa.Column("id", sa.Integer(), primary_key=True),
            _fk("product_id", "products.id", nullable=False, ondelete="CASCADE"),
            _fk("user_id", "users.id"),
            _fk("order_id", "orders.id"),
            sa.Column("rating", sa.Integer(), nullable=False),
            sa.Column("title", sa.String(255), nullable=True),
            sa.Column("body", sa.Text(), nullable=True),
            sa.Column("author_name", sa.String(128), nullable=False),
            _flag("is_verified_purchase"),
            _flag("is_approved"),
            sa.Column("helpful_count", sa.Integer(), nullable=False, server_default="0"),
            _created(),
            sa.UniqueConstraint("product_id", "user_id", name="uq_product_reviews_product_user"),
        )
        op.create_index("idx_product_reviews_product", "product_reviews", ["product_id"])

    if "discount_codes" not in existing:
        op.create_table(
            "discount_codes",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("code", sa.String(64), nullable=False, unique=True),
            sa.Column("description", sa.String(255), nullable=True),
            sa.Column("type", sa.String(32), nullable=False),
            _money("value", default="0"),
            _money("min_order_amount", nullable=True),
            _money("max_discount_amount", nullable=True),
            sa.Column("max_uses", sa.Integer(), nullable=True),
            sa.Column("max_uses_per_customer", sa.Integer(), nullable=True, server_default="1"),
            sa.Column("used_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("starts_at", sa.DateTime(), nullable=True),
            sa.Column("expires_at", sa.DateTime(), nullable=True),
            _flag("is_active", True),
            _created(),
            _updated(),
        )

    if "discount_usages" not in existing:
        op.create_table(
            "discount_usages",
            sa.Column("id", sa.Integer(), primary_key=True),
            _fk("discount_code_id", "discount_codes.id", nullable=False, ondelete="CASCADE"),
            _fk("order_id", "orders.id"),
            _fk("user_id", "users.id"),
            sa.Column("email", sa.String(320), nullable=False),
            _money("discount_amount"),
            _created(),
        )
        op.create_index("idx_discount_usages_code_email", "discount_usages", ["discount_code_id", "email"])

    if "gift_cards" not in existing:
        op.create_table(
            "gift_cards",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("code", sa.String(32), nullable=False, unique=True),
            _money("initial_balance"),
            _money("current_balance"),
            sa.Column("status", sa.String(32), nullable=False, server_default="pending"),
            sa.Column("recipient_email", sa.String(320), nullable=True),
            sa.Column("recipient_name", sa.String(255), nullable=True),
            sa.Column("message", sa.Text(), nullable=True),
            _fk("purchased_by_user_id", "users.id"),
            _fk("purchase_order_id", "orders.id"),
            sa.Column("expires_at", sa.DateTime(), nullable=True),
            sa.Column("activated_at", sa.DateTime(), nullable=True),
            _created(),
            _updated(),
        )

    if "gift_card_transactions" not in existing:
        op.create_table(
            "gift_card_transactions",
            sa.Column("id", sa.Integer(), primary_key=True),
            _fk("gift_card_id", "gift_cards.id", nullable=False, ondelete="CASCADE"),
            sa.Column("type", sa.String(32), nullable=False),
            _money("amount"),
            _money("balance_after"),
            _fk("order_id", "orders.id"),
            sa.Column("note", sa.Text(), nullable=True),
            _fk("created_by_user_id", "users.id"),
            _created(),
        )

    if "stripe_events" not in existing:
        op.create_table(
            "stripe_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("event_id", sa.String(255), nullable=False, unique=True),
            sa.Column("type", sa.String(128), nullable=False),
            sa.Column("processed_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )


def upgrade() -> None:
    """Create every table; tables that already exist are left alone."""
    conn = op.get_bind()
    existing = set(sa.inspect(conn).get_table_names())
    _platform(existing)
    _schools(existing)
    _families(existing)
    _admissions(existing)
    _billing(existing)
    _storefront(existing)


def downgrade() -> None:
    conn = op.get_bind()
    existing = set(sa.inspect(conn).get_table_names())
    for table in reversed(TABLES):
        if table in existing:
            op.drop_table(table)
